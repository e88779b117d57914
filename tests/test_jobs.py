import threading
import time

import pytest
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from linkscan.app.canonicalize import InvalidUrlError
from linkscan.app.scanner import Scanner
from linkscan.db import SqlRepository, init_db, make_engine
from linkscan.jobs import (
    Channel, IllegalTransitionError, JobOrchestrator, JobRegistry, QueueFullError,
)
from linkscan.models import JobStatus, utcnow

from conftest import FakeCollector, wait_for_terminal

ORDER = {"QUEUED": 0, "CORE_RUNNING": 1, "STATIC_RUNNING": 2, "SANDBOX_RUNNING": 3, "DONE": 4, "ERROR": 4}


class GatedAnalyzer:
    """Core stage that blocks until the test opens the gate."""

    def __init__(self, result=None, error=None):
        self.gate = threading.Event()
        self.started = threading.Event()
        self.result = result or {"url": "http://example.com/", "verdict": "safe", "score": 0}
        self.error = error
        self.calls = 0

    def __call__(self, url):
        self.calls += 1
        self.started.set()
        assert self.gate.wait(5), "gate never opened"
        if self.error:
            raise self.error
        return dict(self.result, url=url)


@pytest.fixture
def analyzer():
    a = GatedAnalyzer()
    yield a
    a.gate.set()


@pytest.fixture
def orchestrator(analyzer):
    o = JobOrchestrator(analyzer, workers=2, max_pending=4)
    yield o
    analyzer.gate.set()
    o.shutdown(wait=True)


def statuses(events):
    return [e["status"] for e in events]


def test_submit_returns_immediately_and_job_completes(orchestrator, analyzer):
    job_id = orchestrator.submit("http://example.com/")
    snapshot = orchestrator.get_snapshot(job_id)
    assert snapshot["jobId"] == job_id
    assert snapshot["url"] == "http://example.com/"
    assert snapshot["status"] in ("QUEUED", "CORE_RUNNING")
    assert snapshot["data"] == {}

    analyzer.gate.set()
    final = wait_for_terminal(orchestrator, job_id)
    assert final["status"] == "DONE"
    assert final["data"]["verdict"] == "safe"


def test_subscriber_sees_every_stage_in_order(orchestrator, analyzer):
    job_id = orchestrator.submit("http://example.com/")
    assert analyzer.started.wait(5)
    channel = orchestrator.subscribe(job_id)

    analyzer.gate.set()
    events = list(channel.listen(timeout=None))

    assert statuses(events) == [
        "CORE_RUNNING",   # snapshot at subscribe time
        "CORE_RUNNING",   # verdict payload stored
        "STATIC_RUNNING",
        "SANDBOX_RUNNING",
        "DONE",
    ]
    assert events[0]["data"] == {}
    assert events[1]["data"]["verdict"] == "safe"
    assert events[-1]["data"]["verdict"] == "safe"
    ranks = [ORDER[s] for s in statuses(events)]
    assert ranks == sorted(ranks)
    assert channel.closed


def test_pipeline_failure_becomes_error_snapshot():
    analyzer = GatedAnalyzer(error=InvalidUrlError("Invalid URL: http://"))
    analyzer.gate.set()
    orchestrator = JobOrchestrator(analyzer, workers=1, max_pending=1)
    try:
        job_id = orchestrator.submit("http://")
        final = wait_for_terminal(orchestrator, job_id)
    finally:
        orchestrator.shutdown()
    assert final["status"] == "ERROR"
    assert final["data"] == {"error": "Invalid URL: http://"}


def test_error_is_published_once_and_closes_the_stream(orchestrator, analyzer):
    analyzer.error = RuntimeError("database is down")
    job_id = orchestrator.submit("http://example.com/")
    assert analyzer.started.wait(5)
    channel = orchestrator.subscribe(job_id)
    analyzer.gate.set()

    events = list(channel.listen())
    assert statuses(events) == ["CORE_RUNNING", "ERROR"]
    assert events[-1]["data"] == {"error": "database is down"}


def test_second_subscriber_replaces_the_first(orchestrator, analyzer):
    job_id = orchestrator.submit("http://example.com/")
    assert analyzer.started.wait(5)
    first = orchestrator.subscribe(job_id)
    second = orchestrator.subscribe(job_id)

    assert first.closed
    assert statuses(first.listen()) == ["CORE_RUNNING"]

    analyzer.gate.set()
    assert statuses(second.listen())[-1] == "DONE"


def test_unsubscribe_does_not_cancel_the_job(orchestrator, analyzer):
    job_id = orchestrator.submit("http://example.com/")
    channel = orchestrator.subscribe(job_id)
    orchestrator.unsubscribe(job_id, channel)
    assert channel.closed

    analyzer.gate.set()
    assert wait_for_terminal(orchestrator, job_id)["status"] == "DONE"


def test_subscribe_to_finished_job_gets_one_snapshot(orchestrator, analyzer):
    analyzer.gate.set()
    job_id = orchestrator.submit("http://example.com/")
    wait_for_terminal(orchestrator, job_id)

    channel = orchestrator.subscribe(job_id)
    events = list(channel.listen())
    assert statuses(events) == ["DONE"]


def test_unknown_job(orchestrator):
    assert orchestrator.get_snapshot("missing") is None
    assert orchestrator.subscribe("missing") is None


def test_stage_hooks_can_replace_the_payload(analyzer):
    analyzer.gate.set()
    seen = []

    def static_stage(url, data):
        seen.append(("static", url, data["verdict"]))
        return dict(data, static={"scripts": 0})

    def sandbox_stage(url, data):
        seen.append(("sandbox", url, "static" in data))
        return None

    orchestrator = JobOrchestrator(analyzer, workers=1, static_stage=static_stage, sandbox_stage=sandbox_stage)
    try:
        job_id = orchestrator.submit("http://example.com/")
        final = wait_for_terminal(orchestrator, job_id)
    finally:
        orchestrator.shutdown()

    assert final["status"] == "DONE"
    assert final["data"]["static"] == {"scripts": 0}
    assert seen == [("static", "http://example.com/", "safe"), ("sandbox", "http://example.com/", True)]


def test_queue_full_rejects_then_recovers(analyzer):
    orchestrator = JobOrchestrator(analyzer, workers=1, max_pending=0)
    try:
        job_id = orchestrator.submit("http://example.com/")
        with pytest.raises(QueueFullError):
            orchestrator.submit("http://example.org/")

        analyzer.gate.set()
        wait_for_terminal(orchestrator, job_id)

        deadline = time.monotonic() + 5
        while True:
            try:
                next_id = orchestrator.submit("http://example.org/")
                break
            except QueueFullError:
                assert time.monotonic() < deadline, "slot was never released"
                time.sleep(0.01)
        assert wait_for_terminal(orchestrator, next_id)["status"] == "DONE"
    finally:
        analyzer.gate.set()
        orchestrator.shutdown()


def test_job_runs_at_most_once(analyzer):
    analyzer.gate.set()
    orchestrator = JobOrchestrator(analyzer, workers=1)
    try:
        job_id = orchestrator.submit("http://example.com/")
        wait_for_terminal(orchestrator, job_id)
        orchestrator.run_pipeline(job_id)
    finally:
        orchestrator.shutdown()
    assert analyzer.calls == 1
    assert orchestrator.get_snapshot(job_id)["status"] == "DONE"


def test_duplicate_submissions_converge_on_one_verdict(repository, collector):
    scanner = Scanner(repository, collector=collector)
    orchestrator = JobOrchestrator(scanner.analyze, workers=1)
    try:
        first = orchestrator.submit("http://example.com/?b=2&a=1")
        second = orchestrator.submit("http://example.com/?a=1&b=2")
        one = wait_for_terminal(orchestrator, first)
        two = wait_for_terminal(orchestrator, second)
    finally:
        orchestrator.shutdown()

    assert first != second
    assert one["status"] == two["status"] == "DONE"
    assert one["data"] == two["data"]
    assert one["url"] != two["url"]
    assert scanner.lookup_verdict("http://example.com/?a=1&b=2") == one["data"]
    assert collector.calls == ["example.com"]


class BarrierCollector(FakeCollector):
    """Holds each lookup until a second worker is collecting too."""

    def __init__(self):
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=5)

    def __call__(self, host):
        self.barrier.wait()
        return super().__call__(host)


def test_concurrent_duplicates_upsert_one_verdict(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'scans.db'}")
    init_db(engine)
    repository = SqlRepository(sessionmaker(bind=engine, expire_on_commit=False))
    collector = BarrierCollector()
    scanner = Scanner(repository, collector=collector)
    orchestrator = JobOrchestrator(scanner.analyze, workers=2)
    try:
        job_ids = []
        for n in range(4):
            job_ids.append(orchestrator.submit(f"http://h{n}.com/?b=2&a=1"))
            job_ids.append(orchestrator.submit(f"http://h{n}.com/?a=1&b=2"))
        finals = [wait_for_terminal(orchestrator, job_id, timeout=15) for job_id in job_ids]
    finally:
        orchestrator.shutdown()

    assert [f["status"] for f in finals] == ["DONE"] * 8, [f["data"] for f in finals]
    # both jobs of each pair collected, so both raced to insert intel and verdict
    assert sorted(collector.calls) == sorted(f"h{n}.com" for n in range(4) for _ in range(2))
    with engine.connect() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM urls")).scalar() == 4
        assert conn.execute(text("SELECT COUNT(*) FROM host_intel")).scalar() == 4
        assert conn.execute(text("SELECT COUNT(*) FROM verdicts")).scalar() == 4
    for n in range(4):
        assert scanner.lookup_verdict(f"http://h{n}.com/?a=1&b=2")["verdict"] == "safe"
    engine.dispose()


def test_orchestrator_keeps_the_registry_it_was_given(analyzer):
    analyzer.gate.set()
    registry = JobRegistry()
    orchestrator = JobOrchestrator(analyzer, workers=1, registry=registry)
    try:
        job_id = orchestrator.submit("http://example.com/")
        wait_for_terminal(orchestrator, job_id)
    finally:
        orchestrator.shutdown()

    assert orchestrator.registry is registry
    assert len(registry) == 1
    assert registry.snapshot(job_id)["status"] == "DONE"


class TestJobRegistry:
    def test_claim_is_first_come_first_served(self):
        registry = JobRegistry()
        job = registry.create("http://example.com/")
        assert registry.claim(job.id) is True
        assert registry.claim(job.id) is False
        assert registry.claim("missing") is False

    def test_status_never_regresses(self):
        registry = JobRegistry()
        job = registry.create("http://example.com/")
        registry.claim(job.id)
        registry.transition(job.id, JobStatus.SANDBOX_RUNNING)
        with pytest.raises(IllegalTransitionError):
            registry.transition(job.id, JobStatus.STATIC_RUNNING)
        with pytest.raises(IllegalTransitionError):
            registry.transition(job.id, JobStatus.SANDBOX_RUNNING)

    def test_terminal_states_are_final(self):
        registry = JobRegistry()
        job = registry.create("http://example.com/")
        registry.transition(job.id, JobStatus.ERROR, {"error": "boom"})
        with pytest.raises(IllegalTransitionError):
            registry.transition(job.id, JobStatus.DONE)
        with pytest.raises(IllegalTransitionError):
            registry.update(job.id, {"verdict": "safe"})
        assert registry.snapshot(job.id)["data"] == {"error": "boom"}

    def test_error_reachable_from_queued(self):
        registry = JobRegistry()
        job = registry.create("http://example.com/")
        registry.transition(job.id, JobStatus.ERROR, {"error": "x"})
        assert registry.snapshot(job.id)["status"] == "ERROR"

    def test_status_and_payload_publish_together(self):
        registry = JobRegistry()
        job = registry.create("http://example.com/")
        channel = registry.attach(job.id, Channel())
        registry.claim(job.id)
        registry.update(job.id, {"verdict": "malicious"})
        registry.transition(job.id, JobStatus.DONE)
        registry.detach(job.id)

        events = list(channel.listen())
        assert [(e["status"], e["data"]) for e in events] == [
            ("QUEUED", {}),
            ("CORE_RUNNING", {}),
            ("CORE_RUNNING", {"verdict": "malicious"}),
            ("DONE", {"verdict": "malicious"}),
        ]

    def test_detach_only_removes_matching_channel(self):
        registry = JobRegistry()
        job = registry.create("http://example.com/")
        old = Channel()
        registry.attach(job.id, old)
        new = registry.attach(job.id, Channel())
        registry.detach(job.id, old)
        assert not new.closed
        registry.detach(job.id)
        assert new.closed

    def test_evict_finished(self):
        registry = JobRegistry()
        done = registry.create("http://a.com/")
        running = registry.create("http://b.com/")
        registry.transition(done.id, JobStatus.DONE)
        registry.claim(running.id)

        assert registry.evict_finished(60) == 0
        done.finished_at = utcnow().replace(year=2000)
        assert registry.evict_finished(60) == 1
        assert registry.snapshot(done.id) is None
        assert registry.snapshot(running.id)["status"] == "CORE_RUNNING"
        assert len(registry) == 1


def test_channel_heartbeat():
    channel = Channel()
    events = channel.listen(timeout=0.01)
    assert next(events) is None
    channel.publish({"status": "DONE"})
    assert next(events) == {"status": "DONE"}
    channel.close()
    channel.publish({"status": "late"})
    assert list(events) == []
