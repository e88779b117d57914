# jobs.py
"""
Scan job orchestration.

A submitted URL becomes a Job that a bounded worker pool moves through

    QUEUED -> CORE_RUNNING -> STATIC_RUNNING -> SANDBOX_RUNNING -> DONE

with ERROR reachable from any non-terminal state. Every transition stores a
new snapshot and publishes it to the job's live subscriber (at most one
Channel per job) inside the same critical section, so a reader never sees a
status paired with a stale payload and a subscriber never sees a regression.
"""

import logging
import queue
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Optional

from . import config
from .models import JobStatus, utcnow

logger = logging.getLogger("jobs")

# (url, current payload) -> replacement payload, or None to keep it
StageHook = Callable[[str, Dict[str, Any]], Optional[Dict[str, Any]]]


class QueueFullError(RuntimeError):
    """Raised by submit() when no worker or pending slot is free."""


class IllegalTransitionError(RuntimeError):
    """Raised when a status change would move a job backwards or out of a terminal state."""


@dataclass
class Job:
    id: str
    url: str
    status: JobStatus = JobStatus.QUEUED
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def event(self) -> Dict[str, Any]:
        return {"status": self.status.value, "url": self.url, "data": self.data}

    def snapshot(self) -> Dict[str, Any]:
        return {"jobId": self.id, **self.event()}


class Channel:
    """Queue-backed handle a stream subscriber reads snapshot events from."""

    _CLOSED = object()

    def __init__(self):
        self._queue = queue.Queue()
        self._lock = threading.Lock()
        self.closed = False

    def publish(self, event: Dict[str, Any]) -> None:
        with self._lock:
            if not self.closed:
                self._queue.put_nowait(event)

    def close(self) -> None:
        with self._lock:
            if not self.closed:
                self.closed = True
                self._queue.put_nowait(self._CLOSED)

    def listen(self, timeout: Optional[float] = None) -> Iterator[Optional[Dict[str, Any]]]:
        """
        Yield events until the channel is closed.

        With a timeout, None is yielded whenever no event arrived in time so
        the transport can send a heartbeat and notice a dropped client.
        """
        while True:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                yield None
                continue
            if item is self._CLOSED:
                return
            yield item


class JobRegistry:
    """Thread-safe job store plus the job id -> live Channel mapping."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._subscribers: Dict[str, Channel] = {}
        self._lock = threading.RLock()

    def __len__(self):
        with self._lock:
            return len(self._jobs)

    def create(self, url: str) -> Job:
        job = Job(id=str(uuid.uuid4()), url=url)
        with self._lock:
            self._jobs[job.id] = job
        return job

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            channel = self._subscribers.pop(job_id, None)
        if channel:
            channel.close()

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def url_of(self, job_id: str) -> str:
        with self._lock:
            return self._jobs[job_id].url

    def _publish(self, job: Job) -> None:
        channel = self._subscribers.get(job.id)
        if channel is None:
            return
        if channel.closed:
            del self._subscribers[job.id]
            return
        channel.publish(job.event())

    def claim(self, job_id: str) -> bool:
        """Move a QUEUED job to CORE_RUNNING. Only the first caller wins."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.QUEUED:
                return False
            job.status = JobStatus.CORE_RUNNING
            self._publish(job)
            return True

    def transition(self, job_id: str, status: JobStatus,
                   data: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            job = self._jobs[job_id]
            if job.status.terminal or status.rank <= job.status.rank:
                raise IllegalTransitionError(f"{job_id}: {job.status.value} -> {status.value}")
            job.status = status
            if data is not None:
                job.data = data
            if status.terminal:
                job.finished_at = utcnow()
            self._publish(job)

    def update(self, job_id: str, data: Dict[str, Any]) -> None:
        """Replace the payload of a running job without changing its status."""
        with self._lock:
            job = self._jobs[job_id]
            if job.status.terminal:
                raise IllegalTransitionError(f"{job_id}: {job.status.value} is terminal")
            job.data = data
            self._publish(job)

    def attach(self, job_id: str, channel: Channel) -> Optional[Channel]:
        """
        Make channel the job's only subscriber and send it the current snapshot.

        A previous subscriber is closed. If the job already finished the
        channel is closed right after the snapshot. Returns None for an
        unknown job.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            previous = self._subscribers.pop(job_id, None)
            if previous is not None and previous is not channel:
                previous.close()
            channel.publish(job.event())
            if job.status.terminal:
                channel.close()
            else:
                self._subscribers[job_id] = channel
            return channel

    def detach(self, job_id: str, channel: Optional[Channel] = None) -> None:
        """Close and drop the job's subscriber (only if it is still `channel`, when given)."""
        with self._lock:
            current = self._subscribers.get(job_id)
            if current is None or (channel is not None and current is not channel):
                return
            del self._subscribers[job_id]
        current.close()

    def evict_finished(self, older_than_seconds: float) -> int:
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        with self._lock:
            stale = [job_id for job_id, job in self._jobs.items()
                     if job.status.terminal and job.finished_at and job.finished_at < cutoff]
            for job_id in stale:
                del self._jobs[job_id]
                channel = self._subscribers.pop(job_id, None)
                if channel:
                    channel.close()
        if stale:
            logger.info("Evicted %d finished jobs", len(stale))
        return len(stale)


def _noop_stage(url: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return None


class JobOrchestrator:
    """
    Runs scan pipelines on a fixed-size worker pool.

    analyze is the core stage: it receives the submitted URL and returns the
    verdict payload. static_stage and sandbox_stage are reserved hooks that
    default to no-ops.
    """

    def __init__(self, analyze: Callable[[str], Dict[str, Any]],
                 registry: Optional[JobRegistry] = None,
                 workers: int = config.WORKERS,
                 max_pending: int = config.MAX_PENDING,
                 retention_seconds: float = config.JOB_RETENTION_SECONDS,
                 static_stage: StageHook = _noop_stage,
                 sandbox_stage: StageHook = _noop_stage):
        self.analyze = analyze
        self.registry = registry if registry is not None else JobRegistry()
        self.retention_seconds = retention_seconds
        self.static_stage = static_stage
        self.sandbox_stage = sandbox_stage
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan-worker")
        self._slots = threading.BoundedSemaphore(workers + max_pending)

    def submit(self, url: str) -> str:
        """Queue url for analysis and return the new job id without waiting."""
        if self.retention_seconds and self.retention_seconds > 0:
            self.registry.evict_finished(self.retention_seconds)

        if not self._slots.acquire(blocking=False):
            logger.warning("Scan queue full, rejecting %s", url)
            raise QueueFullError("scan queue is full")

        job = self.registry.create(url)
        try:
            future = self.executor.submit(self.run_pipeline, job.id)
        except RuntimeError:
            self._slots.release()
            self.registry.discard(job.id)
            raise
        future.add_done_callback(lambda _f: self._slots.release())
        logger.info("[job_id=%s] Submitted scan job. url=%s", job.id, url)
        return job.id

    def get_snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.registry.snapshot(job_id)

    def subscribe(self, job_id: str) -> Optional[Channel]:
        return self.registry.attach(job_id, Channel())

    def unsubscribe(self, job_id: str, channel: Channel) -> None:
        self.registry.detach(job_id, channel)

    def _run_stage(self, job_id: str, status: JobStatus, hook: StageHook,
                   url: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.registry.transition(job_id, status)
        updated = hook(url, data)
        if updated is not None:
            self.registry.update(job_id, updated)
            return updated
        return data

    def run_pipeline(self, job_id: str) -> None:
        """Drive one job to DONE or ERROR. Never raises."""
        if not self.registry.claim(job_id):
            logger.warning("[job_id=%s] Job is not queued, skipping", job_id)
            return
        try:
            url = self.registry.url_of(job_id)
            logger.info("[job_id=%s] Started scan job.", job_id)

            data = self.analyze(url)
            self.registry.update(job_id, data)

            data = self._run_stage(job_id, JobStatus.STATIC_RUNNING, self.static_stage, url, data)
            data = self._run_stage(job_id, JobStatus.SANDBOX_RUNNING, self.sandbox_stage, url, data)

            self.registry.transition(job_id, JobStatus.DONE)
            logger.info("[job_id=%s] Completed scan job. verdict=%s", job_id, data.get("verdict"))
        except Exception as e:
            logger.exception("[job_id=%s] Scan job failed: %s", job_id, e)
            try:
                self.registry.transition(job_id, JobStatus.ERROR, {"error": str(e) or e.__class__.__name__})
            except (IllegalTransitionError, KeyError):
                logger.error("[job_id=%s] Could not mark job as failed", job_id)
        finally:
            self.registry.detach(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
