from __future__ import annotations

"""FastAPI surface for the slot session simulator.

Exposes a synchronous `/simulate` call, a job API that streams progress
messages and honors cancellation, trajectory re-sampling for finished jobs,
export/import of results, and the tier tuning report.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware

from slotsim.infra.logging import setup_logging
from slotsim.infra.settings import get_settings
from slotsim.jobs import JobRecord, JobStore, stamp_result
from slotsim.models.domain import (
    SimulationInputs,
    SimulationResult,
    Volatility,
    VolatilityTuningStats,
)
from slotsim.simulation.session import estimate_minutes, expected_spin_count
from slotsim.simulation.stats import TRAJECTORY_SAMPLE_STEPS, estimate_sample_count
from slotsim.simulation.tuning import (
    DEFAULT_TUNING_SPINS,
    format_volatility_report,
    run_volatility_sweep,
    run_volatility_tuning,
)

settings = get_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

store = JobStore(
    max_workers=settings.max_jobs,
    payout_model=settings.payout_model,
    cap_samples=settings.cap_samples,
    sample_step=settings.sample_step,
    app_version=settings.app_version,
    max_events=settings.max_events,
    max_finished_jobs=settings.max_finished_jobs,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    store.shutdown()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_job(job_id: str) -> JobRecord:
    job = store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Unknown simulation job")
    return job


def _plan(inputs: SimulationInputs) -> Dict[str, Any]:
    """Outcome-independent size of a run, with warnings for very large ones."""
    spins = expected_spin_count(inputs.bet_size, inputs.coin_in_target or 0.0)
    plan = {
        "spins_per_run": spins,
        "minutes_per_run": estimate_minutes(spins, inputs.spins_per_sec),
        "trajectory_samples": estimate_sample_count(inputs.runs, settings.sample_step),
        "runtime_warning": spins > settings.spins_warning,
        "runs_warning": inputs.runs > settings.runs_warning,
    }
    if plan["runtime_warning"] or plan["runs_warning"]:
        logger.warning(
            "large simulation requested: %d spins per run, %d runs",
            spins,
            inputs.runs,
        )
    return plan


@app.get("/health")
def health() -> dict:
    """Liveness probe that touches no simulation state."""
    return {"status": "ok"}


@app.post("/plan")
def plan_simulation(inputs: SimulationInputs) -> dict:
    """Preview spins per session, time per session and sample size for `inputs`."""
    return _plan(inputs)


@app.post("/simulate")
def run_simulation(inputs: SimulationInputs) -> SimulationResult:
    """Run a full simulation on the request thread and return the result.

    Convenient for small runs and scripts; long runs should go through the
    job API so the client can follow progress and cancel.
    """
    _plan(inputs)
    return store.run_sync(inputs)


@app.post("/simulations")
def start_simulation(inputs: SimulationInputs) -> dict:
    """Start a background simulation job and return its id."""
    plan = _plan(inputs)
    job = store.submit(inputs)
    return {"job_id": job.job_id, "status": job.status, "plan": plan}


@app.get("/simulations/{job_id}")
def get_simulation(job_id: str) -> dict:
    """Job status, progress counters and, once done, the stamped result."""
    job = _require_job(job_id)
    snapshot = job.snapshot()
    snapshot["result"] = job.result.model_dump(mode="json") if job.result else None
    return snapshot


@app.get("/simulations/{job_id}/events")
def get_simulation_events(job_id: str, after: int = Query(0, ge=0)) -> List[dict]:
    """Messages with a sequence number greater than `after`, oldest first.

    Progress messages carry `(completed, total)`; the log ends with one `done`
    (with the result), `cancelled` or `error` message.
    """
    return _require_job(job_id).events_after(after)


@app.post("/simulations/{job_id}/cancel")
def cancel_simulation(job_id: str) -> dict:
    """Request cancellation; it takes effect at the job's next progress point."""
    if store.cancel(job_id) is None:
        raise HTTPException(status_code=404, detail="Unknown simulation job")
    return {"job_id": job_id, "cancel_requested": True}


@app.post("/simulations/{job_id}/resample")
def resample_simulation(job_id: str, step: int = Query(TRAJECTORY_SAMPLE_STEPS[0], ge=1)) -> SimulationResult:
    """Re-draw the trajectory sample of a finished job at another step."""
    job = _require_job(job_id)
    if job.status != "done" or job.run is None or job.result is None:
        raise HTTPException(status_code=409, detail="Simulation has not finished")
    resampled = job.run.resample(step)
    resampled.meta = job.result.meta
    job.result = resampled
    store.last_result = resampled
    return resampled


@app.get("/export")
def export_result() -> SimulationResult:
    """Return the most recent simulation result or raise a 404 if none exists."""
    if store.last_result is None:
        raise HTTPException(status_code=404, detail="No simulation has been run yet")
    return store.last_result


@app.post("/import")
def import_result(result: SimulationResult) -> SimulationResult:
    """Accept a previously exported result and make it the current one.

    Results without metadata (for example straight from the engine) get a
    fresh id so later exports are identifiable.
    """
    if result.meta is None:
        result = stamp_result(result, settings.app_version)
    store.last_result = result
    return result


@app.get("/tuning")
def tuning_report(
    rtp: float = Query(88.0, gt=0, le=100),
    tier: Optional[Volatility] = None,
    spins: int = Query(DEFAULT_TUNING_SPINS, ge=1),
    seed: Optional[str] = None,
    bet: float = Query(1.0, gt=0),
) -> List[VolatilityTuningStats]:
    """Spin-level statistics of one calibrated tier, or of all tiers."""
    if tier is None:
        return run_volatility_sweep(rtp, spins, seed, bet)
    return [run_volatility_tuning(tier, rtp, spins, seed, bet)]



@app.get("/tuning/report", response_class=PlainTextResponse)
def tuning_report_text(
    rtp: float = Query(88.0, gt=0, le=100),
    tier: Optional[Volatility] = None,
    spins: int = Query(DEFAULT_TUNING_SPINS, ge=1),
    seed: Optional[str] = None,
    bet: float = Query(1.0, gt=0),
) -> PlainTextResponse:
    """Same statistics as `/tuning`, as the plain-text report used when tuning presets.

    Tiers are separated by a blank line, in LOW, MEDIUM, HIGH order.
    """
    stats = tuning_report(rtp=rtp, tier=tier, spins=spins, seed=seed, bet=bet)
    return PlainTextResponse("\n\n".join(format_volatility_report(s) for s in stats) + "\n")
