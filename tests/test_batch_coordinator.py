"""
Tests for batch coordination: admission, failure isolation, progress
events and cancellation.

Résumés are plain-text bytes run through the real résumé analyzer; the
later stages are fixed-score stand-ins so no service or LLM is needed.
"""

from __future__ import annotations

import asyncio
import unittest
from typing import List, Optional

from hirefunnel.batch.coordinator import BatchConfig, BatchCoordinator
from hirefunnel.batch.progress import (
    EVENT_CANCELLED,
    EVENT_COMPLETED,
    EVENT_PROGRESS,
    FINAL_EVENTS,
    BatchEvent,
    ItemOutcome,
    ProgressBroadcaster,
)
from hirefunnel.errors import NotFoundError, ValidationError
from hirefunnel.governor.resource_governor import MB, GovernorConfig, MemorySnapshot, ResourceGovernor
from hirefunnel.models.schema import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    STAGE_AI_ANALYSIS,
    STAGE_COMPLETED,
    STAGE_FAILED,
    STAGE_GITHUB,
    STAGE_INTERVIEW,
    STAGE_LINKEDIN,
    Candidate,
    JobProfile,
    ResumeFile,
    StageResult,
)
from hirefunnel.rank.scoring import ScoringEngine
from hirefunnel.stages.analyzers import ResumeAnalyzer, StageAnalyzer
from hirefunnel.stages.scheduler import StageScheduler
from hirefunnel.storage.memory_store import CandidateQuery, MemoryRepository

PROFILE = JobProfile(title="Data Engineer", description="", required_skills=["python"], id="job-1")


def _sampler() -> MemorySnapshot:
    return MemorySnapshot(used=200 * MB, total=1000 * MB, free=800 * MB, percentage=20.0, rss=50 * MB)


class FixedAnalyzer(StageAnalyzer):
    def __init__(self, stage: str, score: float = 80.0, gate: Optional[asyncio.Event] = None) -> None:
        self.stage = stage
        self.score = score
        self.gate = gate

    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> StageResult:
        if self.gate is not None:
            await self.gate.wait()
        return StageResult(score=self.score)


def _coordinator(
    gate: Optional[asyncio.Event] = None, concurrency: int = 3
) -> BatchCoordinator:
    governor = ResourceGovernor(GovernorConfig(admission_poll_interval=0.01), _sampler)
    scheduler = StageScheduler(
        [
            ResumeAnalyzer(),
            FixedAnalyzer(STAGE_AI_ANALYSIS, 80, gate),
            FixedAnalyzer(STAGE_LINKEDIN, 70),
            FixedAnalyzer(STAGE_GITHUB, 60),
            FixedAnalyzer(STAGE_INTERVIEW, 90),
        ]
    )
    return BatchCoordinator(
        governor,
        scheduler,
        ScoringEngine(),
        MemoryRepository(),
        ProgressBroadcaster(),
        BatchConfig(max_concurrency=concurrency),
    )


def _files(good: int, bad: int = 0) -> List[ResumeFile]:
    files = [ResumeFile(f"good-{i}.txt", b"Jane Doe\njane@example.com\nPython developer") for i in range(good)]
    files += [ResumeFile(f"bad-{i}.txt", b"   ") for i in range(bad)]
    return files


class TestProcessBatch(unittest.TestCase):
    def test_failures_are_isolated(self) -> None:
        coordinator = _coordinator()
        events: List[BatchEvent] = []

        batch = asyncio.run(coordinator.process_batch(_files(3, 2), PROFILE, events.append))

        self.assertEqual(batch.status, BATCH_COMPLETED)
        self.assertEqual(batch.processed_count, 5)
        self.assertEqual(batch.failed_count, 2)
        self.assertEqual(batch.succeeded_count, 3)
        self.assertIsNotNone(batch.completed_at)
        self.assertEqual(len(batch.candidate_ids), 5)

        progress = [e for e in events if e.kind == EVENT_PROGRESS]
        self.assertEqual([e.processed for e in progress], [1, 2, 3, 4, 5])
        final = events[-1]
        self.assertEqual(final.kind, EVENT_COMPLETED)
        self.assertEqual(final.failed, 2)
        self.assertEqual(final.percentage, 100.0)
        self.assertEqual(len(final.outcomes), 5)
        failures = [o for o in final.outcomes if not o.success]
        self.assertEqual(sorted(o.file_name for o in failures), ["bad-0.txt", "bad-1.txt"])
        self.assertTrue(all("No text could be extracted" in (o.error or "") for o in failures))
        self.assertEqual(coordinator.get_active_batches(), [])
        self.assertEqual(coordinator.governor.get_active_jobs(), {})

    def test_candidates_are_scored_and_stored(self) -> None:
        coordinator = _coordinator()
        batch = asyncio.run(coordinator.process_batch(_files(2, 1), PROFILE))
        result = coordinator.repository.query_candidates(CandidateQuery(batch_id=batch.id))
        self.assertEqual(result.total, 3)
        stages = sorted(c.stage for c in result.items)
        self.assertEqual(stages, [STAGE_COMPLETED, STAGE_COMPLETED, STAGE_FAILED])
        scored = [c for c in result.items if c.final_score is not None]
        # 80*.25 + 70*.20 + 60*.25 + 90*.30 = 76
        self.assertEqual([c.final_score.composite_score for c in scored], [76, 76])
        self.assertEqual(scored[0].final_score.recommendation, "hire")
        self.assertIs(coordinator.get_batch(batch.id), batch)
        self.assertEqual(coordinator.get_batch_progress(batch.id).percentage, 100.0)

    def test_oversized_file_fails_only_that_item(self) -> None:
        coordinator = _coordinator()
        coordinator.governor.update_processing_limits(max_file_size=100)
        files = _files(2) + [ResumeFile("huge.txt", b"x" * 101)]
        events: List[BatchEvent] = []
        batch = asyncio.run(coordinator.process_batch(files, PROFILE, events.append))
        self.assertEqual(batch.failed_count, 1)
        (failure,) = [o for o in events[-1].outcomes if not o.success]
        self.assertEqual(failure.file_name, "huge.txt")
        self.assertIn("byte limit", failure.error)
        self.assertEqual(coordinator.repository.get_candidate(failure.candidate_id).stage, STAGE_FAILED)

    def test_admission_limit_serialises_jobs(self) -> None:
        coordinator = _coordinator(concurrency=4)
        coordinator.governor.update_processing_limits(max_concurrent_jobs=1)
        batch = asyncio.run(coordinator.process_batch(_files(4), PROFILE))
        self.assertEqual(batch.status, BATCH_COMPLETED)
        self.assertEqual(batch.failed_count, 0)

    def test_batch_validation(self) -> None:
        coordinator = _coordinator()
        with self.assertRaises(ValidationError):
            asyncio.run(coordinator.process_batch([], PROFILE))
        coordinator.governor.update_processing_limits(max_batch_size=2)
        with self.assertRaises(ValidationError):
            asyncio.run(coordinator.process_batch(_files(3), PROFILE))

    def test_finished_candidates_are_released(self) -> None:
        coordinator = _coordinator()
        batch = asyncio.run(coordinator.process_batch(_files(3, 1), PROFILE))
        analyzer = coordinator.scheduler.analyzer_for("resume")
        assert isinstance(analyzer, ResumeAnalyzer)
        self.assertEqual(analyzer.documents, {})
        for candidate_id in batch.candidate_ids:
            self.assertNotIn(candidate_id, coordinator.scheduler)
            self.assertIsNotNone(coordinator.repository.get_candidate(candidate_id))


def test_cancel_stops_dispatching() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        coordinator = _coordinator(gate=gate, concurrency=1)
        events: List[BatchEvent] = []
        finished = asyncio.Event()

        def on_event(event: BatchEvent) -> None:
            events.append(event)
            if event.kind in FINAL_EVENTS:
                finished.set()

        batch = coordinator.start_batch(_files(3), PROFILE)
        coordinator.subscribe(batch.id, on_event)
        await asyncio.sleep(0.05)
        assert coordinator.get_active_batches() == [batch]

        cancelled = coordinator.cancel_batch(batch.id)
        assert cancelled.cancelled
        assert cancelled.status == BATCH_FAILED
        gate.set()
        await asyncio.wait_for(finished.wait(), timeout=2)

        assert events[-1].kind == EVENT_CANCELLED
        assert batch.processed_count == 1
        assert len(events[-1].outcomes) == 1
        assert batch.status == BATCH_FAILED
        assert coordinator.get_batch(batch.id) is batch
        try:
            coordinator.cancel_batch(batch.id)
        except NotFoundError:
            pass
        else:
            raise AssertionError("cancelling a finished batch should fail")

    asyncio.run(scenario())


def test_event_serialisation() -> None:
    event = BatchEvent(
        kind=EVENT_COMPLETED,
        batch_id="b1",
        processed=1,
        failed=0,
        total=4,
        outcomes=[ItemOutcome("c1", "a.txt", True)],
    )
    data = event.to_dict()
    assert data["percentage"] == 25.0
    assert data["outcomes"] == [{"candidate_id": "c1", "file_name": "a.txt", "success": True, "error": None}]


def test_broadcaster_isolates_failing_subscribers() -> None:
    async def scenario() -> List[str]:
        broadcaster = ProgressBroadcaster()
        seen: List[str] = []

        def broken(event: BatchEvent) -> None:
            raise RuntimeError("subscriber bug")

        async def recorder(event: BatchEvent) -> None:
            seen.append(event.kind)

        broadcaster.subscribe("b1", broken)
        broadcaster.subscribe("b1", recorder)
        everything: List[str] = []
        broadcaster.subscribe_all(lambda e: everything.append(e.batch_id))

        await broadcaster.publish(BatchEvent(EVENT_PROGRESS, "b1", 1, 0, 2))
        await broadcaster.publish(BatchEvent(EVENT_COMPLETED, "b1", 2, 0, 2))
        assert broadcaster.subscriber_count("b1") == 0
        await broadcaster.publish(BatchEvent(EVENT_PROGRESS, "b1", 2, 0, 2))
        assert everything == ["b1", "b1", "b1"]
        return seen

    assert asyncio.run(scenario()) == [EVENT_PROGRESS, EVENT_COMPLETED]
