# models.py
"""
Domain records shared by the analyzers, the job pipeline and the database layer.
"""

import enum
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    CORE_RUNNING = "CORE_RUNNING"
    STATIC_RUNNING = "STATIC_RUNNING"
    SANDBOX_RUNNING = "SANDBOX_RUNNING"
    DONE = "DONE"
    ERROR = "ERROR"

    @property
    def rank(self) -> int:
        # DONE and ERROR share the last rank: neither follows the other
        return _STATUS_RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.CORE_RUNNING: 1,
    JobStatus.STATIC_RUNNING: 2,
    JobStatus.SANDBOX_RUNNING: 3,
    JobStatus.DONE: 4,
    JobStatus.ERROR: 4,
}


class VerdictStatus(str, enum.Enum):
    safe = "safe"
    suspicious = "suspicious"
    malicious = "malicious"
    unknown = "unknown"


class VerdictClass(str, enum.Enum):
    benign = "benign"
    phishing = "phishing"
    malware = "malware"
    scam = "scam"
    unknown = "unknown"


@dataclass(frozen=True)
class Hit:
    """One rule's contribution to a score."""
    name: str
    weight: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Hit":
        return cls(name=data["name"], weight=int(data["weight"]), reason=data.get("reason", ""))


@dataclass
class Url:
    canonical: str
    id: Optional[int] = None
    first_seen: datetime = field(default_factory=utcnow)


@dataclass
class HostIntel:
    """Network-observable signals for a hostname. Any signal may be missing."""
    domain: str
    tld: Optional[str] = None
    ip: Optional[str] = None
    domain_age_days: Optional[int] = None
    tls_age_days: Optional[int] = None
    tls_issuer: Optional[str] = None
    fetched_at: datetime = field(default_factory=utcnow)
    url_id: Optional[int] = None


@dataclass
class Verdict:
    url_id: int
    status: VerdictStatus = VerdictStatus.unknown
    clazz: VerdictClass = VerdictClass.unknown
    score: int = 0
    hits: List[Hit] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)
