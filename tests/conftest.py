import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from linkscan.app.scanner import Scanner
from linkscan.db import SqlRepository, init_db
from linkscan.models import HostIntel


class FakeCollector:
    """Stands in for host_intel.collect; records which hosts were probed."""

    def __init__(self, **signals):
        self.signals = {"ip": "93.184.216.34", "tls_age_days": 400, "tls_issuer": "CN=Test CA"}
        self.signals.update(signals)
        self.calls = []

    def __call__(self, host):
        self.calls.append(host)
        tld = host.rsplit(".", 1)[-1] if "." in host else None
        return HostIntel(domain=host, tld=tld, **self.signals)


@pytest.fixture
def repository():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield SqlRepository(sessionmaker(bind=engine, expire_on_commit=False))
    engine.dispose()


@pytest.fixture
def collector():
    return FakeCollector()


@pytest.fixture
def scanner(repository, collector):
    return Scanner(repository, collector=collector)


def wait_for_terminal(orchestrator, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        snapshot = orchestrator.get_snapshot(job_id)
        if snapshot and snapshot["status"] in ("DONE", "ERROR"):
            return snapshot
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish in {timeout}s")
