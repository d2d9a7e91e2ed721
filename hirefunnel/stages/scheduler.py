"""
Stage scheduler.

Owns the stage cursor of every candidate it tracks.  A candidate only
moves forward through :data:`~hirefunnel.models.schema.CANONICAL_STAGES`:

* :meth:`StageScheduler.advance` stores the result of the current stage
  and moves to the next one;
* :meth:`StageScheduler.record_failure` stores the error, leaves the
  result absent and moves on.  A failed ``resume`` stage is terminal
  because every later stage reads the extracted résumé;
* :meth:`StageScheduler.retry_from_stage` is the only way back.

Failures are isolated per candidate and are never retried here.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional

from ..errors import NotFoundError, StageOrderError, ValidationError
from ..models.schema import (
    CANONICAL_STAGES,
    STAGE_COMPLETED,
    STAGE_FAILED,
    STAGE_RESUME,
    STAGE_SCORING,
    Candidate,
    CandidateScore,
    JobProfile,
    StageResult,
    next_stage,
)
from .analyzers import StageAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class StageProgress:
    stage: str
    completed: bool
    score: Optional[float] = None
    error: Optional[str] = None


@dataclass
class CandidateProgress:
    candidate_id: str
    current_stage: str
    retry_count: int
    stages: List[StageProgress] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class StageScheduler:
    def __init__(self, analyzers: Iterable[StageAnalyzer] = ()) -> None:
        self._candidates: Dict[str, Candidate] = {}
        self._analyzers: Dict[str, StageAnalyzer] = {}
        for analyzer in analyzers:
            self.register_analyzer(analyzer)

    def register_analyzer(self, analyzer: StageAnalyzer) -> None:
        if analyzer.stage not in CANONICAL_STAGES or analyzer.stage == STAGE_SCORING:
            raise ValidationError(f"Cannot register an analyzer for stage '{analyzer.stage}'")
        self._analyzers[analyzer.stage] = analyzer

    def analyzer_for(self, stage: str) -> Optional[StageAnalyzer]:
        return self._analyzers.get(stage)

    # ------------------------------------------------------------------
    # Candidate registry
    # ------------------------------------------------------------------

    def register(self, candidate: Candidate) -> Candidate:
        self._candidates[candidate.id] = candidate
        return candidate

    def get(self, candidate_id: str) -> Candidate:
        try:
            return self._candidates[candidate_id]
        except KeyError:
            raise NotFoundError(f"Candidate not found: {candidate_id}") from None

    def remove(self, candidate_id: str) -> Optional[Candidate]:
        """Forget a candidate and the per-candidate state its analyzers hold."""
        for analyzer in self._analyzers.values():
            analyzer.release(candidate_id)
        return self._candidates.pop(candidate_id, None)

    def __contains__(self, candidate_id: object) -> bool:
        return candidate_id in self._candidates

    # ------------------------------------------------------------------
    # Cursor movement
    # ------------------------------------------------------------------

    def _require_current(self, candidate: Candidate, stage: str) -> None:
        if candidate.stage != stage:
            raise StageOrderError(candidate.id, candidate.stage, stage)

    def advance(self, candidate_id: str, stage: str, result: StageResult) -> Candidate:
        candidate = self.get(candidate_id)
        self._require_current(candidate, stage)
        candidate.results[stage] = result
        candidate.stage_errors.pop(stage, None)
        candidate.stage = next_stage(stage)
        candidate.touch()
        logger.debug(
            "Candidate %s completed %s (score %.1f), now at %s",
            candidate_id, stage, result.score, candidate.stage,
        )
        return candidate

    def record_failure(self, candidate_id: str, stage: str, error: str) -> Candidate:
        candidate = self.get(candidate_id)
        self._require_current(candidate, stage)
        candidate.stage_errors[stage] = error
        candidate.results.pop(stage, None)
        candidate.stage = STAGE_FAILED if stage == STAGE_RESUME else next_stage(stage)
        candidate.touch()
        logger.warning("Candidate %s failed %s: %s (now at %s)", candidate_id, stage, error, candidate.stage)
        return candidate

    def complete_scoring(self, candidate_id: str, score: CandidateScore) -> Candidate:
        candidate = self.get(candidate_id)
        self._require_current(candidate, STAGE_SCORING)
        candidate.final_score = score
        candidate.stage = STAGE_COMPLETED
        candidate.touch()
        logger.debug("Candidate %s scored %d (%s)", candidate_id, score.composite_score, score.recommendation)
        return candidate

    def retry_from_stage(self, candidate_id: str, stage: str) -> Candidate:
        """Rewind a candidate to ``stage``, discarding that stage's and later output."""
        if stage not in CANONICAL_STAGES:
            raise ValidationError(f"Invalid stage: {stage}")
        candidate = self.get(candidate_id)
        for later in CANONICAL_STAGES[CANONICAL_STAGES.index(stage):]:
            candidate.results.pop(later, None)
            candidate.stage_errors.pop(later, None)
        candidate.final_score = None
        candidate.stage = stage
        candidate.retry_count += 1
        candidate.touch()
        logger.info(
            "Candidate %s rewound to %s (retry %d)", candidate_id, stage, candidate.retry_count
        )
        return candidate

    def get_progress(self, candidate_id: str) -> CandidateProgress:
        candidate = self.get(candidate_id)
        stages = []
        for stage in CANONICAL_STAGES:
            if stage == STAGE_SCORING:
                completed = candidate.final_score is not None
                score = float(candidate.final_score.composite_score) if completed else None
            else:
                result = candidate.results.get(stage)
                completed = result is not None
                score = result.score if result else None
            stages.append(
                StageProgress(stage=stage, completed=completed, score=score, error=candidate.stage_errors.get(stage))
            )
        return CandidateProgress(
            candidate_id=candidate_id,
            current_stage=candidate.stage,
            retry_count=candidate.retry_count,
            stages=stages,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_stage(self, candidate_id: str, job_profile: JobProfile) -> Candidate:
        """Run the analyzer for the candidate's current stage once."""
        candidate = self.get(candidate_id)
        stage = candidate.stage
        if candidate.is_terminal or stage == STAGE_SCORING:
            return candidate
        analyzer = self._analyzers.get(stage)
        if analyzer is None:
            return self.record_failure(candidate_id, stage, f"No analyzer registered for stage '{stage}'")
        try:
            result = await analyzer.analyze(candidate_id, candidate, job_profile)
        except Exception as exc:  # noqa: BLE001
            return self.record_failure(candidate_id, stage, str(exc) or exc.__class__.__name__)
        return self.advance(candidate_id, stage, result)

    async def run_until_scoring(self, candidate_id: str, job_profile: JobProfile) -> Candidate:
        candidate = self.get(candidate_id)
        while not candidate.is_terminal and candidate.stage != STAGE_SCORING:
            candidate = await self.run_stage(candidate_id, job_profile)
        return candidate
