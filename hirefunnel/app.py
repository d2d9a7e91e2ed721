"""
Application root.

:class:`FunnelApp` builds and owns every component: governor, connection
pool, scheduler with its analyzers, scoring engine, batch coordinator,
repository and stage queue.  Nothing is a module-level singleton; the
CLI and the HTTP API each create one app and drive it through the
methods below.

    async with FunnelApp(FunnelConfig.from_yaml("config.yaml")) as app:
        profile = app.create_job_profile({...})
        batch = await app.run_batch(files, profile.id)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from .batch.coordinator import BatchCoordinator
from .batch.progress import ProgressBroadcaster, Subscriber
from .config import FunnelConfig
from .errors import FunnelError, ValidationError
from .governor.resource_governor import MemorySnapshot, ResourceGovernor
from .models.schema import (
    STAGE_COMPLETED,
    STAGE_RESUME,
    Candidate,
    CandidateScore,
    JobProfile,
    ProcessingBatch,
    ResumeFile,
)
from .pool.cache import ResponseCache
from .pool.connection_pool import ConnectionPool
from .queue import StageMessage, StageQueue
from .rank.llm_providers import LLMProvider, get_default_provider
from .rank.scoring import RankingOptions, ScoringEngine
from .stages.analyzers import (
    GitHubAnalyzer,
    InterviewAnalyzer,
    LinkedInAnalyzer,
    RelevanceAnalyzer,
    ResumeAnalyzer,
    StageAnalyzer,
)
from .stages.interview import InterviewTracker
from .stages.scheduler import CandidateProgress, StageScheduler
from .storage.memory_store import CandidateQuery, MemoryRepository

logger = logging.getLogger(__name__)


class FunnelApp:
    def __init__(
        self,
        config: Optional[FunnelConfig] = None,
        *,
        provider: Optional[LLMProvider] = None,
        sampler: Optional[Callable[[], MemorySnapshot]] = None,
        repository: Optional[MemoryRepository] = None,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.config = config or FunnelConfig()
        self.governor = ResourceGovernor(self.config.governor, sampler)
        self.pool = pool or ConnectionPool(self.config.endpoints, ResponseCache(self.config.cache_ttl))
        self.repository = repository or MemoryRepository()
        self.scoring = ScoringEngine(self.config.thresholds)
        self.provider = provider or get_default_provider()
        self.interviews = InterviewTracker(self.config.interview.max_retries)
        self.scheduler = StageScheduler(self._build_analyzers())
        self.broadcaster = ProgressBroadcaster()
        self.coordinator = BatchCoordinator(
            self.governor,
            self.scheduler,
            self.scoring,
            self.repository,
            broadcaster=self.broadcaster,
            config=self.config.batch,
            thresholds=self.config.thresholds,
        )
        self.queue = StageQueue(self._handle_stage_message, self.config.queue)
        self.initialized = False

    def _build_analyzers(self) -> List[StageAnalyzer]:
        ttl = self.config.cache_ttl
        analyzers: List[StageAnalyzer] = [ResumeAnalyzer(), RelevanceAnalyzer(self.provider)]
        if self.pool.has_endpoint("linkedin"):
            analyzers.append(LinkedInAnalyzer(self.pool, cache_ttl=ttl))
        if self.pool.has_endpoint("github"):
            analyzers.append(GitHubAnalyzer(self.pool, cache_ttl=ttl))
        if self.config.interview.enabled and self.pool.has_endpoint("voice"):
            analyzers.append(
                InterviewAnalyzer(
                    self.pool,
                    tracker=self.interviews,
                    provider=self.provider,
                    poll_interval=self.config.interview.poll_interval,
                    max_call_duration=self.config.interview.max_call_duration,
                    call_grace_period=self.config.interview.call_grace_period,
                )
            )
        logger.info("Stage analyzers: %s", ", ".join(a.stage for a in analyzers))
        return analyzers

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self.initialized:
            return
        self.governor.register_cleanup_callback(self.pool.cache.purge_expired)
        self.governor.start()
        self.queue.start()
        self.initialized = True
        logger.info("Funnel initialised (provider=%s)", self.provider.name)

    async def shutdown(self) -> None:
        logger.info("Shutting down funnel")
        await self.coordinator.shutdown()
        await self.queue.stop()
        await self.governor.shutdown()
        await self.pool.close()
        self.initialized = False

    async def __aenter__(self) -> "FunnelApp":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Job profiles
    # ------------------------------------------------------------------

    def create_job_profile(self, data: Dict[str, Any]) -> JobProfile:
        profile = JobProfile.create(data)
        self.repository.save_job_profile(profile)
        logger.info("Job profile created: %s (%s)", profile.id, profile.title)
        return profile

    def get_job_profile(self, profile_id: str) -> JobProfile:
        return self.repository.get_job_profile(profile_id)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def submit_batch(self, files: Sequence[ResumeFile], job_profile_id: str) -> ProcessingBatch:
        """Start a batch in the background and return it straight away."""
        return self.coordinator.start_batch(files, self.get_job_profile(job_profile_id))

    async def run_batch(
        self,
        files: Sequence[ResumeFile],
        job_profile_id: str,
        on_event: Optional[Subscriber] = None,
    ) -> ProcessingBatch:
        return await self.coordinator.process_batch(files, self.get_job_profile(job_profile_id), on_event)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def get_candidate(self, candidate_id: str) -> Candidate:
        if candidate_id in self.scheduler:
            return self.scheduler.get(candidate_id)
        return self.repository.get_candidate(candidate_id)

    def get_candidate_progress(self, candidate_id: str) -> CandidateProgress:
        if candidate_id in self.scheduler:
            return self.scheduler.get_progress(candidate_id)
        self.scheduler.register(self.repository.get_candidate(candidate_id))
        try:
            return self.scheduler.get_progress(candidate_id)
        finally:
            self.scheduler.remove(candidate_id)

    async def retry_candidate(self, candidate_id: str, stage: str) -> Candidate:
        """Rewind a candidate to ``stage`` and queue the re-run.

        Résumé bytes are released once a candidate finishes its batch, so
        the resume stage cannot be re-run without a new upload.
        """
        if stage == STAGE_RESUME:
            raise ValidationError("The resume stage cannot be retried; upload the résumé in a new batch")
        candidate = self.get_candidate(candidate_id)
        borrowed = candidate_id not in self.scheduler
        if borrowed:
            self.scheduler.register(candidate)
        try:
            self.scheduler.retry_from_stage(candidate_id, stage)
        finally:
            if borrowed:
                self.scheduler.remove(candidate_id)
        self.repository.save_candidate(candidate)
        await self.queue.enqueue(
            StageMessage(
                candidate_id=candidate.id,
                job_profile_id=candidate.job_profile_id,
                batch_id=candidate.batch_id,
                stage=stage,
            )
        )
        return candidate

    async def _handle_stage_message(self, message: StageMessage) -> None:
        job_profile = self.get_job_profile(message.job_profile_id)
        borrowed = message.candidate_id not in self.scheduler
        if borrowed:
            self.scheduler.register(self.repository.get_candidate(message.candidate_id))
        try:
            if message.attempt > 1:
                self.scheduler.retry_from_stage(message.candidate_id, message.stage)
            candidate = await self.coordinator.finish_candidate(message.candidate_id, job_profile)
        finally:
            if borrowed:
                self.scheduler.remove(message.candidate_id)
        error = candidate.stage_errors.get(message.stage)
        if error:
            raise FunnelError(f"Stage {message.stage} failed again for candidate {candidate.id}: {error}")

    # ------------------------------------------------------------------
    # Scores and rankings
    # ------------------------------------------------------------------

    def get_candidate_score(self, candidate_id: str) -> CandidateScore:
        candidate = self.get_candidate(candidate_id)
        if candidate.final_score is not None:
            return candidate.final_score
        return self.scoring.calculate_candidate_score(candidate, self.get_job_profile(candidate.job_profile_id))

    def rank(
        self,
        job_profile_id: str,
        options: Optional[RankingOptions] = None,
        min_score: Optional[float] = None,
        recommendation: Optional[str] = None,
    ) -> List[CandidateScore]:
        job_profile = self.get_job_profile(job_profile_id)
        query = CandidateQuery(job_profile_id=job_profile_id, stage=STAGE_COMPLETED, limit=1_000_000)
        candidates = self.repository.query_candidates(query).items
        options = options or RankingOptions()
        if min_score is not None or recommendation:
            options = replace(options, min_score=min_score, recommendation=recommendation)
        return self.scoring.rank_candidates(candidates, job_profile, options)

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------

    def system_stats(self) -> Dict[str, Any]:
        cache = self.pool.cache.stats()
        return {
            "connection_pool": self.pool.stats_dict(),
            "memory": self.governor.health_check(),
            "cache": {**asdict(cache), "hit_rate": cache.hit_rate},
            "queue": asdict(self.queue.stats()),
            "active_batches": len(self.coordinator.get_active_batches()),
        }

    def reset_stats(self, endpoint: Optional[str] = None) -> None:
        self.pool.reset_stats(endpoint)
