"""Tests for the stage scheduler and interview session tracking."""

from __future__ import annotations

import asyncio
import unittest
from typing import Dict, List

from hirefunnel.errors import NotFoundError, StageOrderError, ValidationError
from hirefunnel.models.schema import (
    CANONICAL_STAGES,
    STAGE_AI_ANALYSIS,
    STAGE_COMPLETED,
    STAGE_FAILED,
    STAGE_GITHUB,
    STAGE_INTERVIEW,
    STAGE_LINKEDIN,
    STAGE_RESUME,
    STAGE_SCORING,
    Candidate,
    CandidateScore,
    JobProfile,
    StageResult,
)
from hirefunnel.stages.analyzers import StageAnalyzer
from hirefunnel.stages.interview import (
    COMPLETED,
    FAILED,
    IN_PROGRESS,
    NO_ANSWER,
    SCHEDULED,
    InterviewTracker,
    session_status_for,
)
from hirefunnel.stages.scheduler import StageScheduler


class FixedAnalyzer(StageAnalyzer):
    """Returns a fixed score, or raises when ``error`` is set."""

    def __init__(self, stage: str, score: float = 75.0, error: Exception | None = None) -> None:
        self.stage = stage
        self.score = score
        self.error = error
        self.calls: List[str] = []

    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> StageResult:
        self.calls.append(candidate_id)
        if self.error is not None:
            raise self.error
        return StageResult(score=self.score)


PROFILE = JobProfile(title="Data Engineer", description="Pipelines", required_skills=["python"], id="job-1")


def _score(candidate_id: str) -> CandidateScore:
    return CandidateScore(
        candidate_id=candidate_id,
        job_profile_id="job-1",
        composite_score=80,
        stage_scores={},
        applied_weights={},
        recommendation="hire",
        reasoning="",
    )


class TestCursor(unittest.TestCase):
    def setUp(self) -> None:
        self.scheduler = StageScheduler()
        self.candidate = self.scheduler.register(Candidate(job_profile_id="job-1", id="c1"))

    def test_advance_moves_through_canonical_order(self) -> None:
        for stage in CANONICAL_STAGES[:-1]:
            self.assertEqual(self.candidate.stage, stage)
            self.scheduler.advance("c1", stage, StageResult(score=50))
        self.assertEqual(self.candidate.stage, STAGE_SCORING)
        self.scheduler.complete_scoring("c1", _score("c1"))
        self.assertEqual(self.candidate.stage, STAGE_COMPLETED)
        self.assertTrue(self.candidate.is_terminal)

    def test_advance_out_of_order_is_rejected(self) -> None:
        with self.assertRaises(StageOrderError) as ctx:
            self.scheduler.advance("c1", STAGE_GITHUB, StageResult(score=50))
        self.assertEqual(ctx.exception.expected, STAGE_RESUME)
        self.assertEqual(ctx.exception.received, STAGE_GITHUB)
        self.assertEqual(self.candidate.stage, STAGE_RESUME)
        self.assertEqual(self.candidate.results, {})

    def test_complete_scoring_requires_scoring_stage(self) -> None:
        with self.assertRaises(StageOrderError):
            self.scheduler.complete_scoring("c1", _score("c1"))

    def test_failure_skips_stage(self) -> None:
        self.scheduler.advance("c1", STAGE_RESUME, StageResult(score=90))
        self.scheduler.advance("c1", STAGE_AI_ANALYSIS, StageResult(score=70))
        self.scheduler.record_failure("c1", STAGE_LINKEDIN, "profile is private")
        self.assertEqual(self.candidate.stage, STAGE_GITHUB)
        self.assertNotIn(STAGE_LINKEDIN, self.candidate.results)
        self.assertEqual(self.candidate.stage_errors[STAGE_LINKEDIN], "profile is private")

    def test_resume_failure_is_terminal(self) -> None:
        self.scheduler.record_failure("c1", STAGE_RESUME, "unreadable")
        self.assertEqual(self.candidate.stage, STAGE_FAILED)
        self.assertTrue(self.candidate.is_terminal)

    def test_retry_from_stage_discards_later_output(self) -> None:
        for stage in CANONICAL_STAGES[:-1]:
            self.scheduler.advance("c1", stage, StageResult(score=60))
        self.scheduler.complete_scoring("c1", _score("c1"))

        self.scheduler.retry_from_stage("c1", STAGE_GITHUB)
        self.assertEqual(self.candidate.stage, STAGE_GITHUB)
        self.assertEqual(self.candidate.retry_count, 1)
        self.assertIsNone(self.candidate.final_score)
        self.assertEqual(
            sorted(self.candidate.results), sorted([STAGE_RESUME, STAGE_AI_ANALYSIS, STAGE_LINKEDIN])
        )

    def test_retry_from_unknown_stage(self) -> None:
        with self.assertRaises(ValidationError):
            self.scheduler.retry_from_stage("c1", "onsite")

    def test_unknown_candidate(self) -> None:
        with self.assertRaises(NotFoundError):
            self.scheduler.get("nobody")
        self.assertNotIn("nobody", self.scheduler)
        self.assertIn("c1", self.scheduler)

    def test_remove_releases_analyzer_state(self) -> None:
        released: List[str] = []

        class Holding(FixedAnalyzer):
            def release(self, candidate_id: str) -> None:
                released.append(candidate_id)

        self.scheduler.register_analyzer(Holding(STAGE_GITHUB))
        self.assertIs(self.scheduler.remove("c1"), self.candidate)
        self.assertNotIn("c1", self.scheduler)
        self.assertEqual(released, ["c1"])
        self.assertIsNone(self.scheduler.remove("c1"))

    def test_progress(self) -> None:
        self.scheduler.advance("c1", STAGE_RESUME, StageResult(score=90))
        self.scheduler.record_failure("c1", STAGE_AI_ANALYSIS, "llm down")
        progress = self.scheduler.get_progress("c1")
        self.assertEqual(progress.current_stage, STAGE_LINKEDIN)
        by_stage = {s.stage: s for s in progress.stages}
        self.assertEqual([s.stage for s in progress.stages], list(CANONICAL_STAGES))
        self.assertTrue(by_stage[STAGE_RESUME].completed)
        self.assertEqual(by_stage[STAGE_RESUME].score, 90)
        self.assertFalse(by_stage[STAGE_AI_ANALYSIS].completed)
        self.assertEqual(by_stage[STAGE_AI_ANALYSIS].error, "llm down")
        self.assertFalse(by_stage[STAGE_SCORING].completed)
        self.assertEqual(progress.to_dict()["candidate_id"], "c1")


class TestRunStage(unittest.TestCase):
    def _scheduler(self, overrides: Dict[str, FixedAnalyzer]) -> StageScheduler:
        analyzers = [
            overrides.get(stage, FixedAnalyzer(stage)) for stage in CANONICAL_STAGES if stage != STAGE_SCORING
        ]
        return StageScheduler(analyzers)

    def test_run_until_scoring_isolates_failures(self) -> None:
        github = FixedAnalyzer(STAGE_GITHUB, error=RuntimeError("rate limited"))
        scheduler = self._scheduler({STAGE_GITHUB: github})
        candidate = scheduler.register(Candidate(job_profile_id="job-1", id="c1"))

        asyncio.run(scheduler.run_until_scoring("c1", PROFILE))

        self.assertEqual(candidate.stage, STAGE_SCORING)
        self.assertEqual(github.calls, ["c1"])
        self.assertEqual(candidate.stage_errors, {STAGE_GITHUB: "rate limited"})
        self.assertEqual(
            sorted(candidate.results), sorted([STAGE_RESUME, STAGE_AI_ANALYSIS, STAGE_LINKEDIN, STAGE_INTERVIEW])
        )

    def test_resume_failure_stops_the_run(self) -> None:
        resume = FixedAnalyzer(STAGE_RESUME, error=ValidationError("empty file"))
        ai = FixedAnalyzer(STAGE_AI_ANALYSIS)
        scheduler = self._scheduler({STAGE_RESUME: resume, STAGE_AI_ANALYSIS: ai})
        candidate = scheduler.register(Candidate(job_profile_id="job-1", id="c1"))

        asyncio.run(scheduler.run_until_scoring("c1", PROFILE))

        self.assertEqual(candidate.stage, STAGE_FAILED)
        self.assertEqual(ai.calls, [])

    def test_missing_analyzer_is_recorded_as_failure(self) -> None:
        scheduler = StageScheduler([FixedAnalyzer(STAGE_RESUME), FixedAnalyzer(STAGE_AI_ANALYSIS)])
        candidate = scheduler.register(Candidate(job_profile_id="job-1", id="c1"))
        asyncio.run(scheduler.run_until_scoring("c1", PROFILE))
        self.assertEqual(candidate.stage, STAGE_SCORING)
        self.assertIn("No analyzer registered", candidate.stage_errors[STAGE_LINKEDIN])
        self.assertIn(STAGE_INTERVIEW, candidate.stage_errors)

    def test_scoring_stage_cannot_have_an_analyzer(self) -> None:
        with self.assertRaises(ValidationError):
            StageScheduler([FixedAnalyzer(STAGE_SCORING)])


class TestInterviewTracker(unittest.TestCase):
    def test_status_mapping(self) -> None:
        self.assertEqual(session_status_for("queued"), SCHEDULED)
        self.assertEqual(session_status_for("ringing"), SCHEDULED)
        self.assertEqual(session_status_for("in-progress"), IN_PROGRESS)
        self.assertEqual(session_status_for("ended", "customer-ended-call"), COMPLETED)
        self.assertEqual(session_status_for("ended", "busy"), NO_ANSWER)
        self.assertEqual(session_status_for("ended", "assistant-not-responding"), FAILED)
        self.assertEqual(session_status_for("ended"), COMPLETED)
        self.assertEqual(session_status_for("exploded"), FAILED)

    def test_lifecycle_and_retry_limit(self) -> None:
        tracker = InterviewTracker(max_retries=1)
        session = tracker.schedule("c1", "job-1", "call-1")
        tracker.update_status("c1", IN_PROGRESS)
        self.assertFalse(tracker.can_retry("c1"))
        tracker.update_status("c1", NO_ANSWER)
        self.assertTrue(tracker.can_retry("c1"))

        tracker.retry("c1", "call-2")
        self.assertEqual(session.call_id, "call-2")
        self.assertEqual(session.status, SCHEDULED)
        self.assertEqual(session.retry_count, 1)

        tracker.update_status("c1", FAILED)
        self.assertFalse(tracker.can_retry("c1"))
        with self.assertRaises(ValidationError):
            tracker.retry("c1", "call-3")
        tracker.mark_exhausted("c1")
        self.assertEqual(tracker.get("c1").status, FAILED)

    def test_ended_session_cannot_restart(self) -> None:
        tracker = InterviewTracker()
        tracker.schedule("c1", "job-1", "call-1")
        tracker.update_status("c1", COMPLETED, transcript="hello", duration=42.0)
        self.assertEqual(tracker.get("c1").transcript, "hello")
        with self.assertRaises(ValidationError):
            tracker.update_status("c1", IN_PROGRESS)

    def test_unknown_session(self) -> None:
        tracker = InterviewTracker()
        self.assertIsNone(tracker.get("c1"))
        with self.assertRaises(NotFoundError):
            tracker.update_status("c1", COMPLETED)
        tracker.remove("c1")
