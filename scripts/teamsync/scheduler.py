"""APScheduler-based periodic consistency check of desired memberships."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.blocking import BlockingScheduler

from scripts.teamsync.config import TeamSyncConfig
from scripts.teamsync.desired_state import load_desired_state
from scripts.teamsync.exceptions import DirectoryError
from scripts.teamsync.reconciler import MembershipReconciler

logger = logging.getLogger("teamsync.scheduler")


def run_consistency_check(
    desired_path: str | Path,
    client_factory: Callable,
    auto_correct: bool,
) -> dict[str, int]:
    """Test every desired record once, applying drifted ones when auto_correct is set.

    A record that fails is logged and counted; the pass continues with the
    next record.
    """
    client = client_factory()
    reconciler = MembershipReconciler(client)
    records = load_desired_state(desired_path, organization=client.auth.organization)

    mode = "ApplyAndAutoCorrect" if auto_correct else "ApplyAndMonitor"
    counts = {"converged": 0, "drifted": 0, "corrected": 0, "failed": 0}
    for desired in records:
        log_extra = {"team": desired.team_name, "user": desired.user, "mode": mode}
        try:
            if reconciler.reconcile(desired, auto_correct=auto_correct):
                counts["converged"] += 1
                continue
            counts["drifted"] += 1
            if auto_correct:
                counts["corrected"] += 1
                logger.info("Drift corrected", extra=log_extra)
            else:
                logger.warning("Drift detected, not correcting in monitor mode", extra=log_extra)
        except DirectoryError as exc:
            counts["failed"] += 1
            logger.error(
                "Consistency check failed for record: %s", exc, exc_info=exc, extra=log_extra
            )

    logger.info("Consistency check complete: %s", counts, extra={"mode": mode})
    return counts


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error(
        "Job %s raised an exception: %s",
        event.job_id,
        event.exception,
    )


def start_scheduler(
    config: TeamSyncConfig, desired_path: str | Path, client_factory: Callable
) -> None:
    """Start the blocking scheduler with the consistency-check interval job."""
    scheduler = BlockingScheduler()
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    sched = config.scheduler
    auto_correct = sched.configuration_mode == "ApplyAndAutoCorrect"

    scheduler.add_job(
        run_consistency_check,
        "interval",
        minutes=sched.consistency_interval_min,
        args=[desired_path, client_factory, auto_correct],
        id="consistency_check",
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )

    logger.info(
        "Starting scheduler in %s mode, checking every %d min",
        sched.configuration_mode, sched.consistency_interval_min,
    )
    scheduler.start()
