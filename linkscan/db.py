# db.py
"""
Database module using SQLAlchemy (SQLite by default).

Stores canonical URLs, the host intel collected for them and their latest
verdict. Callers go through a Repository so the analysis code never touches
sessions directly.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, Column, ForeignKey, Integer, String, Text, DateTime
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, declarative_base

from . import config
from .models import Hit, HostIntel, Url, Verdict, VerdictClass, VerdictStatus, utcnow


def make_engine(database_url: str = config.DATABASE_URL, **kwargs):
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(database_url, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
Base = declarative_base()


class UrlRecord(Base):
    __tablename__ = "urls"
    id = Column(Integer, primary_key=True, autoincrement=True)
    canonical = Column(Text, unique=True, nullable=False, index=True)
    first_seen = Column(DateTime, nullable=False, default=utcnow)


class HostIntelRecord(Base):
    __tablename__ = "host_intel"
    url_id = Column(Integer, ForeignKey("urls.id"), primary_key=True)
    domain = Column(Text)
    tld = Column(String(63))
    ip = Column(String(64))  # single best IP (v4/v6)
    domain_age_days = Column(Integer, nullable=True)
    tls_age_days = Column(Integer, nullable=True)
    tls_issuer = Column(Text, nullable=True)
    fetched_at = Column(DateTime, default=utcnow)


class VerdictRecord(Base):
    __tablename__ = "verdicts"
    url_id = Column(Integer, ForeignKey("urls.id"), primary_key=True)
    verdict = Column(String(16), nullable=False, default=VerdictStatus.unknown.value)
    clazz = Column("class", String(16), nullable=False, default=VerdictClass.unknown.value)
    score = Column(Integer)
    reasons_json = Column(Text)  # ordered list of rule hits
    updated_at = Column(DateTime, nullable=False, default=utcnow)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back without tzinfo; everything is stored as UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class Repository(ABC):
    """Persistence used by the scanner. Implementations own their transactions."""

    @abstractmethod
    def find_url_by_canonical(self, canonical: str) -> Optional[Url]:
        pass

    @abstractmethod
    def save_url(self, url: Url) -> Url:
        pass

    @abstractmethod
    def find_host_intel(self, url_id: int) -> Optional[HostIntel]:
        pass

    @abstractmethod
    def save_host_intel(self, intel: HostIntel) -> None:
        pass

    @abstractmethod
    def find_verdict(self, url_id: int) -> Optional[Verdict]:
        pass

    @abstractmethod
    def save_verdict(self, verdict: Verdict) -> None:
        pass


class SqlRepository(Repository):
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def find_url_by_canonical(self, canonical: str) -> Optional[Url]:
        session = self.session_factory()
        try:
            row = session.query(UrlRecord).filter(UrlRecord.canonical == canonical).first()
            if not row:
                return None
            return Url(canonical=row.canonical, id=row.id, first_seen=_aware(row.first_seen))
        finally:
            session.close()

    def save_url(self, url: Url) -> Url:
        session = self.session_factory()
        try:
            row = UrlRecord(canonical=url.canonical, first_seen=url.first_seen)
            session.add(row)
            session.commit()
            return Url(canonical=row.canonical, id=row.id, first_seen=_aware(row.first_seen))
        except IntegrityError:
            # another worker inserted the same canonical URL first
            session.rollback()
            existing = self.find_url_by_canonical(url.canonical)
            if existing is None:
                raise
            return existing
        finally:
            session.close()

    def find_host_intel(self, url_id: int) -> Optional[HostIntel]:
        session = self.session_factory()
        try:
            row = session.get(HostIntelRecord, url_id)
            if not row:
                return None
            return HostIntel(
                domain=row.domain,
                tld=row.tld,
                ip=row.ip,
                domain_age_days=row.domain_age_days,
                tls_age_days=row.tls_age_days,
                tls_issuer=row.tls_issuer,
                fetched_at=_aware(row.fetched_at),
                url_id=row.url_id,
            )
        finally:
            session.close()

    def _upsert(self, make_record) -> None:
        session = self.session_factory()
        try:
            session.merge(make_record())
            session.commit()
        except IntegrityError:
            # another worker inserted the same key between our read and write
            session.rollback()
            session.merge(make_record())
            session.commit()
        finally:
            session.close()

    def save_host_intel(self, intel: HostIntel) -> None:
        self._upsert(lambda: HostIntelRecord(
            url_id=intel.url_id,
            domain=intel.domain,
            tld=intel.tld,
            ip=intel.ip,
            domain_age_days=intel.domain_age_days,
            tls_age_days=intel.tls_age_days,
            tls_issuer=intel.tls_issuer,
            fetched_at=intel.fetched_at,
        ))

    def find_verdict(self, url_id: int) -> Optional[Verdict]:
        session = self.session_factory()
        try:
            row = session.get(VerdictRecord, url_id)
            if not row:
                return None
            hits = [Hit.from_dict(h) for h in json.loads(row.reasons_json or "[]")]
            return Verdict(
                url_id=row.url_id,
                status=VerdictStatus(row.verdict),
                clazz=VerdictClass(row.clazz),
                score=row.score or 0,
                hits=hits,
                updated_at=_aware(row.updated_at),
            )
        finally:
            session.close()

    def save_verdict(self, verdict: Verdict) -> None:
        self._upsert(lambda: VerdictRecord(
            url_id=verdict.url_id,
            verdict=verdict.status.value,
            clazz=verdict.clazz.value,
            score=verdict.score,
            reasons_json=json.dumps([h.to_dict() for h in verdict.hits]),
            updated_at=verdict.updated_at,
        ))
