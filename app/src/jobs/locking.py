"""
Job lock ownership for stage workers.

A worker claims the job with a check-and-set, keeps the lock alive from a
heartbeat thread and calls ``checkpoint`` before every outbound provider
call. ``checkpoint`` raises as soon as the owner cancelled the job or the
heartbeat found the lock taken over.
"""

import logging
import threading
from typing import Dict, Optional

from configs.config import get_config
from src.database import job_repository
from src.jobs.models import WorkerKind

logger = logging.getLogger(__name__)

cfg = get_config()


class JobCancelledError(Exception):
    """The job was cancelled while a worker was processing it."""


class LockLostError(Exception):
    """Another worker (or the watchdog) took the job over."""


class JobLock:
    """Lock held by one worker on one job for the length of a stage."""

    def __init__(self, job_id: str, worker: WorkerKind,
                 lock_seconds: int = None, heartbeat_seconds: float = None):
        self.job_id = job_id
        self.worker = worker
        self.lock_seconds = lock_seconds or cfg.LOCK_DURATION_SECONDS
        self.heartbeat_seconds = heartbeat_seconds or cfg.HEARTBEAT_INTERVAL_SECONDS
        self.token: Optional[str] = None
        self.job: Optional[Dict] = None
        self._lost = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Claim / release ──────────────────────────────────────────────────

    def claim(self) -> Optional[Dict]:
        """Take the lock; returns the claimed job or None when not claimable."""
        job = job_repository.claim_job_lock(self.job_id, self.worker, self.lock_seconds)
        if job is None:
            return None
        self.job = job
        self.token = job["lock_token"]
        self._thread = threading.Thread(
            target=self._heartbeat_loop,
            name=f"heartbeat-{self.job_id}",
            daemon=True,
        )
        self._thread.start()
        return job

    def stop(self) -> None:
        """Stop the heartbeat thread; the lock itself is left as is."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.heartbeat_seconds + 1)

    def release(self) -> None:
        """Stop heartbeating and clear the lock if we still own it."""
        self.stop()
        if self.token and not self._lost.is_set():
            job_repository.release_lock(self.job_id, self.token)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    # ── Heartbeat ────────────────────────────────────────────────────────

    def beat(self) -> bool:
        """One heartbeat; marks the lock lost when the token no longer matches."""
        if not job_repository.refresh_heartbeat(self.job_id, self.token, self.lock_seconds):
            self._lost.set()
            return False
        return True

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_seconds):
            if not self.beat():
                logger.warning("Job %s: heartbeat lost the lock, stopping", self.job_id)
                return

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    # ── Checkpoint ───────────────────────────────────────────────────────

    def checkpoint(self) -> None:
        """Raise if the job was cancelled or the lock is no longer ours."""
        if job_repository.is_job_cancelled(self.job_id):
            raise JobCancelledError(f"Job {self.job_id} was cancelled")
        if self._lost.is_set():
            raise LockLostError(f"Job {self.job_id} lock lost")
