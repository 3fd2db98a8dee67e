from __future__ import annotations

"""Background simulation jobs with a message log per job.

Each job wraps one engine invocation running on a worker thread. The engine
talks back through its progress callback; the job turns that into an ordered
event log (`progress`, then exactly one of `done`, `cancelled` or `error`) that
HTTP clients poll with a sequence cursor. Cancellation sets the job's token,
which the engine observes at its next progress point.
"""

import datetime as dt
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from slotsim.models.domain import ResultMeta, SimulationInputs, SimulationResult
from slotsim.simulation.engine import CancelToken, PayoutModel, SimulationRun, simulate

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"done", "cancelled", "error"}


def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def stamp_result(result: SimulationResult, app_version: str, name: str = "") -> SimulationResult:
    """Return a copy of `result` carrying fresh id/created_at metadata."""
    stamped = result.model_copy(deep=True)
    stamped.meta = ResultMeta(id=str(uuid.uuid4()), name=name, created_at=now_iso(), app_version=app_version)
    return stamped


@dataclass
class JobRecord:
    """State and event log of one simulation job."""

    job_id: str
    inputs: SimulationInputs
    created_at: str
    status: str = "queued"
    completed: int = 0
    total: int = 0
    error: Optional[str] = None
    run: Optional[SimulationRun] = None
    result: Optional[SimulationResult] = None
    events: List[Dict[str, Any]] = field(default_factory=list)
    next_seq: int = 1
    max_events: int = 8_000
    token: CancelToken = field(default_factory=CancelToken)
    future: Optional[Future] = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    def append_event(self, kind: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self.lock:
            item = {"seq": self.next_seq, "type": kind, "payload": payload or {}, "timestamp": now_iso()}
            self.next_seq += 1
            self.events.append(item)
            if len(self.events) > self.max_events:
                self.events = self.events[-self.max_events :]
            return item

    def events_after(self, seq: int) -> List[Dict[str, Any]]:
        with self.lock:
            return [e for e in self.events if e["seq"] > seq]

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "job_id": self.job_id,
                "status": self.status,
                "completed": self.completed,
                "total": self.total,
                "created_at": self.created_at,
                "error": self.error,
                "completed_runs": len(self.run.runs) if self.run else 0,
            }


class JobStore:
    """Owns the worker pool and every job submitted to it.

    The store keeps the `max_finished_jobs` most recently submitted finished
    jobs around so results can be fetched or resampled after the fact; older
    finished jobs are dropped together with their trajectory matrices. The
    most recent finished result is remembered separately for the export
    endpoint.
    """

    def __init__(
        self,
        max_workers: int = 2,
        payout_model: PayoutModel = "mixture",
        cap_samples: int = 2_000_000,
        sample_step: int = 100,
        app_version: str = "0.1.0",
        max_events: int = 8_000,
        max_finished_jobs: int = 50,
    ) -> None:
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="slotsim-job")
        self.payout_model = payout_model
        self.cap_samples = cap_samples
        self.sample_step = sample_step
        self.app_version = app_version
        self.max_events = max_events
        self.max_finished_jobs = max_finished_jobs
        self.jobs: Dict[str, JobRecord] = {}
        self.last_result: Optional[SimulationResult] = None
        self._lock = threading.Lock()

    def submit(self, inputs: SimulationInputs) -> JobRecord:
        job = JobRecord(
            job_id=str(uuid.uuid4()),
            inputs=inputs,
            created_at=now_iso(),
            total=inputs.runs,
            max_events=self.max_events,
        )
        with self._lock:
            self.jobs[job.job_id] = job
        job.future = self.executor.submit(self._run, job)
        return job

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self.jobs.get(job_id)

    def cancel(self, job_id: str) -> Optional[JobRecord]:
        job = self.get(job_id)
        if job is not None and job.status not in TERMINAL_STATUSES:
            job.token.cancel()
        return job

    def run_sync(self, inputs: SimulationInputs) -> SimulationResult:
        """Run a simulation on the caller's thread and store its result."""
        run = simulate(
            inputs,
            payout_model=self.payout_model,
            cap_samples=self.cap_samples,
            sample_step=self.sample_step,
        )
        result = stamp_result(run.result, self.app_version)
        self.last_result = result
        return result

    def _run(self, job: JobRecord) -> None:
        try:
            self._execute(job)
        finally:
            self._evict_finished()

    def _execute(self, job: JobRecord) -> None:
        job.status = "running"

        def on_progress(completed: int, total: int) -> None:
            job.completed = completed
            job.total = total
            job.append_event("progress", {"completed": completed, "total": total})

        try:
            run = simulate(
                job.inputs,
                progress_callback=on_progress,
                cancel_token=job.token,
                payout_model=self.payout_model,
                cap_samples=self.cap_samples,
                sample_step=self.sample_step,
            )
        except Exception as exc:
            logger.exception("job %s failed", job.job_id)
            job.error = str(exc)
            job.append_event("error", {"message": str(exc)})
            job.status = "error"
            return

        job.run = run
        if run.status == "cancelled":
            job.append_event("cancelled", {"completed_runs": len(run.runs)})
            job.status = "cancelled"
            return

        job.result = stamp_result(run.result, self.app_version)
        self.last_result = job.result
        job.append_event("done", {"result": job.result.model_dump(mode="json")})
        job.status = "done"

    def _evict_finished(self) -> None:
        with self._lock:
            finished = [job_id for job_id, job in self.jobs.items() if job.status in TERMINAL_STATUSES]
            stale = finished[: max(0, len(finished) - self.max_finished_jobs)]
            for job_id in stale:
                del self.jobs[job_id]
        if stale:
            logger.debug("evicted %d finished jobs", len(stale))

    def shutdown(self) -> None:
        for job in list(self.jobs.values()):
            job.token.cancel()
        self.executor.shutdown(wait=True)
