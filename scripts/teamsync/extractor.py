"""Bulk extraction of every team membership in a tenant.

Teams are split into contiguous batches, one worker per batch. Each worker
authenticates on its own, reads the members of its teams and renders them
as configuration blocks. The orchestrator polls the worker pool on a fixed
interval and merges finished batches in the order they complete.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

from scripts.teamsync.config import ExtractionConfig
from scripts.teamsync.exceptions import DirectoryError, PermissionDeniedError
from scripts.teamsync.export import ORGANIZATION_TOKEN, render_block
from scripts.teamsync.models import MembershipRecord, Team
from scripts.teamsync.reconciler import MembershipReconciler

logger = logging.getLogger("teamsync.extractor")


class JobState(str, Enum):
    RUNNING = "Running"
    COMPLETE = "Complete"
    FAILED = "Failed"


@dataclass(frozen=True)
class BatchResult:
    batch_index: int
    blocks: tuple[str, ...] = ()
    records: int = 0
    skipped_teams: tuple[str, ...] = ()


@dataclass
class ExtractionJob:
    index: int
    batch: list[Team]
    future: Future
    state: JobState = JobState.RUNNING
    partial_result: Optional[BatchResult] = None


@dataclass(frozen=True)
class ExtractionProgress:
    completed: int
    total: int
    elapsed_s: float


@dataclass
class ExtractionResult:
    content: str = ""
    records: int = 0
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: list[int] = field(default_factory=list)
    skipped_teams: list[str] = field(default_factory=list)
    elapsed_s: float = 0.0
    # set when the tenant's teams could not be enumerated
    error: Optional[str] = None


def partition_teams(teams: Sequence[Team], max_concurrency: int) -> list[list[Team]]:
    """Split teams into at most max_concurrency contiguous batches.

    Batch sizes differ by at most one. Fewer teams than workers gives one
    team per batch.
    """
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
    if not teams:
        return []

    workers = min(max_concurrency, len(teams))
    size, extra = divmod(len(teams), workers)
    batches: list[list[Team]] = []
    start = 0
    for i in range(workers):
        end = start + size + (1 if i < extra else 0)
        batches.append(list(teams[start:end]))
        start = end
    return batches


def extract_batch(
    batch_index: int,
    batch: Sequence[Team],
    client_factory: Callable,
    organization: Optional[str],
    fmt: str = "dsc",
    credential_placeholder: str = "$Credsglobaladmin",
    organization_token: str = ORGANIZATION_TOKEN,
) -> BatchResult:
    """Worker body: render every membership of every team in the batch.

    A team whose members cannot be read, for whatever reason, is logged and
    skipped. Failing to authenticate or to render fails the whole batch.
    """
    client = client_factory()
    reconciler = MembershipReconciler(client)
    blocks: list[str] = []
    skipped: list[str] = []

    for team in batch:
        log_extra = {"team": team.display_name, "group_id": team.group_id, "batch": batch_index}
        try:
            members = client.list_members(team.group_id)
        except PermissionDeniedError as exc:
            logger.warning("No permission to read members, skipping team: %s", exc, extra=log_extra)
            skipped.append(team.display_name)
            continue
        except DirectoryError as exc:
            logger.warning("Reading members failed, skipping team: %s", exc, extra=log_extra)
            skipped.append(team.display_name)
            continue
        except Exception:
            logger.exception("Unexpected error reading members, skipping team", extra=log_extra)
            skipped.append(team.display_name)
            continue

        for member in members:
            desired = MembershipRecord(
                team_name=team.display_name, user=member.user, role=member.role
            )
            current = reconciler.current_state(desired, team, (member,))
            blocks.append(
                render_block(
                    current, fmt, credential_placeholder, organization, organization_token
                )
            )

    logger.debug(
        "Batch finished",
        extra={"batch": batch_index, "records": len(blocks), "skipped_teams": skipped},
    )
    return BatchResult(
        batch_index=batch_index,
        blocks=tuple(blocks),
        records=len(blocks),
        skipped_teams=tuple(skipped),
    )


class BulkExtractor:
    """Fan the tenant's teams out to a worker pool and merge the output.

    ``client`` enumerates teams with the caller's session; ``client_factory``
    builds a freshly authenticated client inside every worker.
    """

    def __init__(self, client, client_factory: Callable, config: ExtractionConfig) -> None:
        self.client = client
        self.client_factory = client_factory
        self.config = config

    def _executor(self, workers: int) -> Executor:
        if self.config.worker_mode == "thread":
            return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="extract")
        return ProcessPoolExecutor(max_workers=workers)

    def extract(
        self,
        max_concurrency: Optional[int] = None,
        on_progress: Optional[Callable[[ExtractionProgress], None]] = None,
    ) -> ExtractionResult:
        """Extract every membership.

        Never raises for directory failures. An enumeration failure leaves
        ``error`` set on an empty result; failed batches land in ``failed_jobs``.
        """
        started = time.monotonic()
        try:
            teams = self.client.list_teams()
        except DirectoryError as exc:
            logger.error("Cannot enumerate teams, nothing extracted: %s", exc)
            return ExtractionResult(error=str(exc), elapsed_s=time.monotonic() - started)
        batches = partition_teams(teams, max_concurrency or self.config.max_concurrency)
        result = ExtractionResult(total_jobs=len(batches))
        logger.info(
            "Extracting %d teams in %d batches", len(teams), len(batches),
            extra={"total": len(batches)},
        )
        if not batches:
            return result

        organization = self.client.auth.organization
        deadline = started + self.config.deadline_s if self.config.deadline_s else None
        blocks: list[str] = []
        jobs: dict[Future, ExtractionJob] = {}
        timed_out = False

        executor = self._executor(len(batches))
        try:
            for index, batch in enumerate(batches):
                future = executor.submit(
                    extract_batch,
                    index,
                    batch,
                    self.client_factory,
                    organization,
                    self.config.export_format,
                    self.config.credential_placeholder,
                    self.config.organization_placeholder,
                )
                jobs[future] = ExtractionJob(index=index, batch=batch, future=future)

            while jobs:
                done, _ = wait(
                    list(jobs), timeout=self.config.poll_interval_s, return_when=FIRST_COMPLETED
                )
                for job in sorted((jobs.pop(f) for f in done), key=lambda j: j.index):
                    self._collect(job, result, blocks)
                self._report(result, started, on_progress)

                if jobs and deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    self._abandon(jobs, result)
        finally:
            executor.shutdown(wait=not timed_out, cancel_futures=True)

        result.content = "".join(blocks)
        result.elapsed_s = time.monotonic() - started
        logger.info(
            "Extraction finished: %d records, %d/%d jobs complete, %d failed, %d teams skipped",
            result.records, result.completed_jobs, result.total_jobs,
            len(result.failed_jobs), len(result.skipped_teams),
            extra={
                "records": result.records,
                "elapsed_s": round(result.elapsed_s, 2),
                "failed_jobs": result.failed_jobs,
                "skipped_teams": result.skipped_teams,
            },
        )
        return result

    @staticmethod
    def _collect(job: ExtractionJob, result: ExtractionResult, blocks: list[str]) -> None:
        exc = job.future.exception()
        if exc is not None:
            job.state = JobState.FAILED
            result.failed_jobs.append(job.index)
            logger.warning(
                "Extraction job failed, its %d teams are not exported: %s",
                len(job.batch), exc, extra={"batch": job.index, "job_state": job.state.value},
            )
            return

        job.state = JobState.COMPLETE
        job.partial_result = job.future.result()
        blocks.extend(job.partial_result.blocks)
        result.records += job.partial_result.records
        result.skipped_teams.extend(job.partial_result.skipped_teams)
        result.completed_jobs += 1
        logger.debug(
            "Extraction job complete",
            extra={
                "batch": job.index,
                "job_state": job.state.value,
                "records": job.partial_result.records,
            },
        )

    @staticmethod
    def _abandon(jobs: dict[Future, ExtractionJob], result: ExtractionResult) -> None:
        """Give up on jobs still running at the deadline."""
        for future, job in sorted(jobs.items(), key=lambda item: item[1].index):
            future.cancel()
            job.state = JobState.FAILED
            result.failed_jobs.append(job.index)
            logger.warning(
                "Extraction job timed out",
                extra={"batch": job.index, "job_state": job.state.value},
            )
        jobs.clear()

    @staticmethod
    def _report(
        result: ExtractionResult,
        started: float,
        on_progress: Optional[Callable[[ExtractionProgress], None]],
    ) -> None:
        progress = ExtractionProgress(
            completed=result.completed_jobs,
            total=result.total_jobs,
            elapsed_s=time.monotonic() - started,
        )
        logger.debug(
            "Progress %d/%d", progress.completed, progress.total,
            extra={"completed": progress.completed, "total": progress.total},
        )
        if on_progress is not None:
            on_progress(progress)
