"""
Batch coordinator.

Turns a list of uploaded résumés into candidates and drives each one
through the funnel.  Concurrency is bounded twice: a per-batch
``asyncio.Semaphore`` caps in-flight items, and every item waits for the
:class:`~hirefunnel.governor.ResourceGovernor` to admit it as a job.

Each item runs inside its own failure boundary.  Whatever goes wrong
with one résumé becomes a failed candidate with the error message kept,
``failed_count`` goes up and the batch carries on.  Only a failure in
the batch bookkeeping itself marks the batch ``failed`` and propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..errors import NotFoundError, ValidationError
from ..governor.resource_governor import ResourceGovernor
from ..models.schema import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    CANONICAL_STAGES,
    STAGE_FAILED,
    STAGE_RESUME,
    STAGE_SCORING,
    Candidate,
    JobProfile,
    ProcessingBatch,
    ResumeFile,
    utcnow,
)
from ..rank.scoring import ScoringEngine, ScoringThresholds
from ..stages.analyzers import ResumeAnalyzer
from ..stages.scheduler import StageScheduler
from ..storage.memory_store import MemoryRepository
from .progress import (
    EVENT_CANCELLED,
    EVENT_COMPLETED,
    EVENT_ERROR,
    EVENT_PROGRESS,
    BatchEvent,
    ItemOutcome,
    ProgressBroadcaster,
    Subscriber,
)

logger = logging.getLogger(__name__)


@dataclass
class BatchConfig:
    max_concurrency: int = 5
    # None waits for a job slot indefinitely.
    admission_timeout: Optional[float] = None


@dataclass
class BatchProgress:
    batch_id: str
    status: str
    total: int
    processed: int
    failed: int
    percentage: float
    cancelled: bool
    started_at: datetime
    completed_at: Optional[datetime]
    processing_time: Optional[float]


class BatchCoordinator:
    def __init__(
        self,
        governor: ResourceGovernor,
        scheduler: StageScheduler,
        scoring: ScoringEngine,
        repository: MemoryRepository,
        broadcaster: Optional[ProgressBroadcaster] = None,
        config: Optional[BatchConfig] = None,
        thresholds: Optional[ScoringThresholds] = None,
    ) -> None:
        self.governor = governor
        self.scheduler = scheduler
        self.scoring = scoring
        self.repository = repository
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.config = config or BatchConfig()
        self.thresholds = thresholds
        self._active: Dict[str, ProcessingBatch] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _create_batch(self, items: Sequence[ResumeFile], job_profile: JobProfile) -> ProcessingBatch:
        if not items:
            raise ValidationError("A batch needs at least one résumé")
        if not self.governor.is_batch_size_allowed(len(items)):
            raise ValidationError(
                f"Batch of {len(items)} files exceeds the limit of "
                f"{self.governor.get_processing_limits().max_batch_size}"
            )
        batch = ProcessingBatch(job_profile_id=job_profile.id, total_count=len(items))
        self._active[batch.id] = batch
        self.repository.save_batch(batch)
        logger.info("Batch %s created: %d files for job profile %s", batch.id, len(items), job_profile.id)
        return batch

    async def process_batch(
        self,
        items: Sequence[ResumeFile],
        job_profile: JobProfile,
        on_event: Optional[Subscriber] = None,
    ) -> ProcessingBatch:
        """Process every item and return the finished batch."""
        batch = self._create_batch(items, job_profile)
        if on_event is not None:
            self.broadcaster.subscribe(batch.id, on_event)
        await self._run_batch(batch, items, job_profile)
        return batch

    def start_batch(self, items: Sequence[ResumeFile], job_profile: JobProfile) -> ProcessingBatch:
        """Register the batch and process it on a background task."""
        batch = self._create_batch(items, job_profile)
        task = asyncio.get_running_loop().create_task(self._run_batch(batch, items, job_profile))
        self._tasks[batch.id] = task

        def _done(finished: asyncio.Task) -> None:
            self._tasks.pop(batch.id, None)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error("Batch %s failed: %s", batch.id, finished.exception())

        task.add_done_callback(_done)
        return batch

    def subscribe(self, batch_id: str, callback: Subscriber):
        return self.broadcaster.subscribe(batch_id, callback)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _run_batch(
        self, batch: ProcessingBatch, items: Sequence[ResumeFile], job_profile: JobProfile
    ) -> None:
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        try:
            results = await asyncio.gather(
                *(self._process_item(batch, item, job_profile, semaphore) for item in items)
            )
            outcomes = [outcome for outcome in results if outcome is not None]
            batch.completed_at = batch.completed_at or utcnow()
            if batch.cancelled:
                kind = EVENT_CANCELLED
            else:
                batch.status = BATCH_COMPLETED
                kind = EVENT_COMPLETED
            self.repository.save_batch(batch)
            logger.info("Batch %s %s\n%s", batch.id, kind, batch.summary())
            await self.broadcaster.publish(self._event(batch, kind, outcomes=outcomes, message=batch.summary()))
        except Exception as exc:
            batch.status = BATCH_FAILED
            batch.completed_at = utcnow()
            self.repository.save_batch(batch)
            logger.exception("Batch %s failed", batch.id)
            await self.broadcaster.publish(self._event(batch, EVENT_ERROR, message=str(exc)))
            raise
        finally:
            self._active.pop(batch.id, None)

    async def _process_item(
        self,
        batch: ProcessingBatch,
        item: ResumeFile,
        job_profile: JobProfile,
        semaphore: asyncio.Semaphore,
    ) -> Optional[ItemOutcome]:
        async with semaphore:
            if batch.cancelled:
                return None
            candidate = Candidate(job_profile_id=job_profile.id, file_name=item.file_name, batch_id=batch.id)
            batch.candidate_ids.append(candidate.id)
            job_id = f"{batch.id}:{candidate.id}"
            admitted = False
            try:
                await self.governor.wait_for_admission(self.config.admission_timeout)
                self.governor.register_job(job_id)
                admitted = True
                outcome = await self._run_candidate(candidate, item, job_profile)
            except Exception as exc:  # noqa: BLE001
                message = str(exc) or exc.__class__.__name__
                logger.warning("Item %s in batch %s failed: %s", item.file_name, batch.id, message)
                self._mark_failed(candidate, message)
                outcome = ItemOutcome(candidate.id, item.file_name, False, message)
            finally:
                if admitted:
                    self.governor.unregister_job(job_id)
            self.repository.save_candidate(candidate)
            # The repository now owns the candidate; drop the bytes and scheduler state.
            self.scheduler.remove(candidate.id)

        batch.processed_count += 1
        if not outcome.success:
            batch.failed_count += 1
        await self.broadcaster.publish(self._event(batch, EVENT_PROGRESS, current_file=item.file_name))
        return outcome

    async def _run_candidate(self, candidate: Candidate, item: ResumeFile, job_profile: JobProfile) -> ItemOutcome:
        if not self.governor.is_file_size_allowed(len(item.content)):
            raise ValidationError(
                f"{item.file_name} is {len(item.content)} bytes, above the "
                f"{self.governor.get_processing_limits().max_file_size} byte limit"
            )
        self.scheduler.register(candidate)
        analyzer = self.scheduler.analyzer_for(STAGE_RESUME)
        if isinstance(analyzer, ResumeAnalyzer):
            analyzer.add_document(candidate.id, item.file_name, item.content)
        await self.finish_candidate(candidate.id, job_profile)
        if candidate.stage == STAGE_FAILED:
            return ItemOutcome(candidate.id, item.file_name, False, candidate.stage_errors.get(STAGE_RESUME))
        return ItemOutcome(candidate.id, item.file_name, True)

    async def finish_candidate(self, candidate_id: str, job_profile: JobProfile) -> Candidate:
        """Run the remaining stages of a candidate and score it."""
        candidate = await self.scheduler.run_until_scoring(candidate_id, job_profile)
        if candidate.stage == STAGE_SCORING:
            score = self.scoring.calculate_candidate_score(candidate, job_profile, self.thresholds)
            self.scheduler.complete_scoring(candidate_id, score)
        self.repository.save_candidate(candidate)
        return candidate

    @staticmethod
    def _mark_failed(candidate: Candidate, message: str) -> None:
        stage = candidate.stage if candidate.stage in CANONICAL_STAGES else STAGE_RESUME
        candidate.stage_errors[stage] = message
        candidate.stage = STAGE_FAILED
        candidate.touch()

    @staticmethod
    def _event(
        batch: ProcessingBatch,
        kind: str,
        current_file: Optional[str] = None,
        outcomes: Optional[List[ItemOutcome]] = None,
        message: Optional[str] = None,
    ) -> BatchEvent:
        return BatchEvent(
            kind=kind,
            batch_id=batch.id,
            processed=batch.processed_count,
            failed=batch.failed_count,
            total=batch.total_count,
            current_file=current_file,
            outcomes=outcomes or [],
            message=message,
        )

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def get_batch(self, batch_id: str) -> ProcessingBatch:
        batch = self._active.get(batch_id)
        return batch if batch is not None else self.repository.get_batch(batch_id)

    def get_batch_progress(self, batch_id: str) -> BatchProgress:
        batch = self.get_batch(batch_id)
        return BatchProgress(
            batch_id=batch.id,
            status=batch.status,
            total=batch.total_count,
            processed=batch.processed_count,
            failed=batch.failed_count,
            percentage=round((batch.processed_count / batch.total_count) * 100, 1) if batch.total_count else 0.0,
            cancelled=batch.cancelled,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
            processing_time=batch.processing_time,
        )

    def get_active_batches(self) -> List[ProcessingBatch]:
        return list(self._active.values())

    def cancel_batch(self, batch_id: str) -> ProcessingBatch:
        """Stop dispatching new items; calls already in flight finish."""
        batch = self._active.pop(batch_id, None)
        if batch is None:
            raise NotFoundError(f"No active batch: {batch_id}")
        batch.cancelled = True
        batch.status = BATCH_FAILED
        batch.completed_at = utcnow()
        self.repository.save_batch(batch)
        logger.info("Batch %s cancelled after %d/%d items", batch_id, batch.processed_count, batch.total_count)
        return batch

    async def shutdown(self) -> None:
        for batch_id in list(self._active):
            self.cancel_batch(batch_id)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
