"""
Composite scoring and ranking.

Combines the stage scores of a candidate into a single ``composite_score``
using the job profile's weights.  Weights are percentages named after
the four scored stages (``resume_analysis``, ``linkedin_analysis``,
``github_analysis`` and ``interview_performance``).

A stage without a result is excluded from the denominator instead of
being scored as zero: the weighted sum is divided by the fraction of
weight that is actually available.  With weights 25/20/25/30 and only
resume (80) and github (60) present, the composite is
``round((80*0.25 + 60*0.25) / 0.5) == 70``.

The engine expects weights that sum to 100; that is checked when a job
profile is created, not here.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..errors import ScoringError
from ..models.schema import (
    WEIGHTED_STAGES,
    Candidate,
    CandidateScore,
    JobProfile,
    ScoreBreakdown,
    ScoringWeights,
    StageContribution,
)

logger = logging.getLogger(__name__)

STAGE_LABELS = {
    "resume_analysis": "Resume Analysis",
    "linkedin_analysis": "LinkedIn Analysis",
    "github_analysis": "GitHub Analysis",
    "interview_performance": "Interview Performance",
}

CLOSING_SENTENCES = {
    "strong-hire": "Excellent candidate with strong performance across multiple areas.",
    "hire": "Good candidate who meets most requirements.",
    "maybe": "Candidate shows potential but has some gaps or concerns.",
    "no-hire": "Candidate does not meet minimum requirements for this role.",
}


@dataclass
class ScoringThresholds:
    """Lower bounds (inclusive) of each recommendation tier."""

    strong_hire: float = 85
    hire: float = 70
    maybe: float = 50


@dataclass
class RankingOptions:
    thresholds: Optional[ScoringThresholds] = None
    # Weight name -> minimum raw stage score.  Missing stages count as 0.
    min_stage_scores: Dict[str, float] = field(default_factory=dict)
    min_score: Optional[float] = None
    recommendation: Optional[str] = None


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def recommendation_for(composite_score: float, thresholds: ScoringThresholds) -> str:
    if composite_score >= thresholds.strong_hire:
        return "strong-hire"
    if composite_score >= thresholds.hire:
        return "hire"
    if composite_score >= thresholds.maybe:
        return "maybe"
    return "no-hire"


class ScoringEngine:
    """Pure functions over candidate stage results and weights."""

    def __init__(self, thresholds: Optional[ScoringThresholds] = None) -> None:
        self.default_thresholds = thresholds or ScoringThresholds()

    def calculate_breakdown(self, candidate: Candidate, weights: ScoringWeights) -> ScoreBreakdown:
        """Compute per-stage contributions and the renormalized composite."""
        try:
            weight_values = weights.as_dict()
            contributions: Dict[str, StageContribution] = {}
            missing: List[str] = []
            for name, stage in WEIGHTED_STAGES.items():
                weight = weight_values[name]
                result = candidate.results.get(stage)
                if result is None:
                    raw = 0.0
                    missing.append(name)
                else:
                    raw = float(result.score)
                contributions[name] = StageContribution(
                    raw_score=raw,
                    weight=weight,
                    weighted_contribution=raw * weight / 100,
                )
            available = (100 - sum(weight_values[name] for name in missing)) / 100
            weighted_sum = sum(c.weighted_contribution for c in contributions.values())
            composite = round_half_up(weighted_sum / available) if available > 0 else 0
            composite = max(0, min(100, composite))
        except Exception as exc:  # noqa: BLE001
            raise ScoringError(f"Failed to calculate score breakdown for {candidate.id}: {exc}") from exc
        logger.debug("Breakdown for %s: composite=%s missing=%s", candidate.id, composite, missing)
        return ScoreBreakdown(
            candidate_id=candidate.id,
            contributions=contributions,
            composite_score=composite,
            missing_stages=missing,
            available_weight_fraction=available,
        )

    def calculate_candidate_score(
        self,
        candidate: Candidate,
        job_profile: JobProfile,
        thresholds: Optional[ScoringThresholds] = None,
    ) -> CandidateScore:
        """Score one candidate, assign a tier and build the reasoning text."""
        used = thresholds or self.default_thresholds
        breakdown = self.calculate_breakdown(candidate, job_profile.scoring_weights)
        recommendation = recommendation_for(breakdown.composite_score, used)
        return CandidateScore(
            candidate_id=candidate.id,
            job_profile_id=job_profile.id,
            composite_score=breakdown.composite_score,
            stage_scores={name: c.raw_score for name, c in breakdown.contributions.items()},
            applied_weights=job_profile.scoring_weights.as_dict(),
            recommendation=recommendation,
            reasoning=self.generate_reasoning(breakdown, recommendation),
            missing_stages=list(breakdown.missing_stages),
        )

    def generate_reasoning(self, breakdown: ScoreBreakdown, recommendation: str) -> str:
        parts = [f"Composite score: {breakdown.composite_score}/100."]
        present = [
            (name, c.raw_score)
            for name, c in breakdown.contributions.items()
            if name not in breakdown.missing_stages
        ]
        if present:
            # max/min keep the first of equal scores, in weight order
            strongest = max(present, key=lambda item: item[1])
            weakest = min(present, key=lambda item: item[1])
            parts.append(f"Strongest area: {STAGE_LABELS[strongest[0]]} ({strongest[1]:g}/100).")
            if weakest[1] < strongest[1]:
                parts.append(f"Area for improvement: {STAGE_LABELS[weakest[0]]} ({weakest[1]:g}/100).")
        if breakdown.missing_stages:
            labels = ", ".join(STAGE_LABELS[name] for name in breakdown.missing_stages)
            parts.append(f"Missing analysis: {labels}.")
        parts.append(CLOSING_SENTENCES[recommendation])
        return " ".join(parts)

    def rank_candidates(
        self,
        candidates: Iterable[Candidate],
        job_profile: JobProfile,
        options: Optional[RankingOptions] = None,
    ) -> List[CandidateScore]:
        """Score, filter, sort (stable, descending) and assign dense ranks."""
        options = options or RankingOptions()
        scores = [
            self.calculate_candidate_score(candidate, job_profile, options.thresholds)
            for candidate in candidates
        ]
        if options.min_stage_scores:
            scores = self.apply_stage_filters(scores, options.min_stage_scores)
        if options.min_score is not None:
            scores = self.filter_by_threshold(scores, options.min_score)
        if options.recommendation:
            scores = self.filter_by_recommendation(scores, options.recommendation)
        scores.sort(key=lambda s: s.composite_score, reverse=True)
        for index, score in enumerate(scores, start=1):
            score.rank = index
        logger.info("Ranked %d candidates for job profile %s", len(scores), job_profile.id)
        return scores

    @staticmethod
    def apply_stage_filters(
        scores: Iterable[CandidateScore], min_stage_scores: Dict[str, float]
    ) -> List[CandidateScore]:
        kept: List[CandidateScore] = []
        for score in scores:
            if any(
                score.stage_scores.get(name, 0.0) < minimum
                for name, minimum in min_stage_scores.items()
                if minimum
            ):
                logger.debug("Filtering out %s due to stage minimums", score.candidate_id)
                continue
            kept.append(score)
        return kept

    @staticmethod
    def filter_by_threshold(scores: Iterable[CandidateScore], min_score: float) -> List[CandidateScore]:
        return [s for s in scores if s.composite_score >= min_score]

    @staticmethod
    def filter_by_recommendation(scores: Iterable[CandidateScore], recommendation: str) -> List[CandidateScore]:
        return [s for s in scores if s.recommendation == recommendation]
