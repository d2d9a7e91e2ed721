"""
Data model for the candidate funnel.

Candidates move through the canonical stages in order::

    resume -> ai-analysis -> linkedin -> github -> interview -> scoring -> completed

Each processing stage may attach a :class:`StageResult`.  A stage with
no result is "missing" for scoring purposes.  Batches group the
candidates created from one upload against a single job profile.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..errors import ValidationError

STAGE_RESUME = "resume"
STAGE_AI_ANALYSIS = "ai-analysis"
STAGE_LINKEDIN = "linkedin"
STAGE_GITHUB = "github"
STAGE_INTERVIEW = "interview"
STAGE_SCORING = "scoring"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"

CANONICAL_STAGES = (
    STAGE_RESUME,
    STAGE_AI_ANALYSIS,
    STAGE_LINKEDIN,
    STAGE_GITHUB,
    STAGE_INTERVIEW,
    STAGE_SCORING,
)
TERMINAL_STAGES = (STAGE_COMPLETED, STAGE_FAILED)

BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"

# Weight name -> stage whose result feeds it.
WEIGHTED_STAGES = {
    "resume_analysis": STAGE_AI_ANALYSIS,
    "linkedin_analysis": STAGE_LINKEDIN,
    "github_analysis": STAGE_GITHUB,
    "interview_performance": STAGE_INTERVIEW,
}

RECOMMENDATIONS = ("strong-hire", "hire", "maybe", "no-hire")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def next_stage(stage: str) -> str:
    """Return the canonical stage following ``stage``."""
    index = CANONICAL_STAGES.index(stage)
    if index + 1 < len(CANONICAL_STAGES):
        return CANONICAL_STAGES[index + 1]
    return STAGE_COMPLETED


@dataclass
class ResumeFile:
    """A raw upload: the original file name and its bytes."""

    file_name: str
    content: bytes


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


@dataclass
class StageResult:
    """Outcome of one processing stage.

    ``score`` is always in [0, 100].  Stage specific evidence lives in
    the subclass fields and in the free-form ``evidence`` dict.
    """

    score: float
    evidence: Dict[str, object] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.score = max(0.0, min(100.0, float(self.score)))


@dataclass
class ResumeData(StageResult):
    extracted_text: str = ""
    contact_info: Dict[str, object] = field(default_factory=dict)
    extraction_errors: List[str] = field(default_factory=list)


@dataclass
class AIAnalysisResult(StageResult):
    provider: str = "placeholder"
    skills_matched: List[str] = field(default_factory=list)
    skills_missing: List[str] = field(default_factory=list)
    experience_assessment: str = ""
    reasoning: str = ""
    confidence: float = 0.0


@dataclass
class LinkedInAnalysis(StageResult):
    profile_accessible: bool = True
    total_years: float = 0.0
    relevant_roles: int = 0
    company_quality: str = "unknown"
    connections: int = 0
    endorsements: int = 0
    credibility_indicators: List[str] = field(default_factory=list)


@dataclass
class GitHubAnalysis(StageResult):
    public_repos: int = 0
    followers: int = 0
    skills_evidence: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    popular_repos: int = 0


@dataclass
class InterviewAnalysisResult(StageResult):
    call_id: str = ""
    transcript: str = ""
    duration: float = 0.0
    strengths: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)


@dataclass
class InterviewSession:
    """Lifecycle of an externally driven voice interview call."""

    candidate_id: str
    job_profile_id: str
    call_id: str
    status: str = "scheduled"
    retry_count: int = 0
    scheduled_at: datetime = field(default_factory=utcnow)
    transcript: Optional[str] = None
    duration: Optional[float] = None


# ---------------------------------------------------------------------------
# Job profile and scoring
# ---------------------------------------------------------------------------


@dataclass
class ScoringWeights:
    """Stage weights as percentages; nominally they sum to 100."""

    resume_analysis: float = 25.0
    linkedin_analysis: float = 20.0
    github_analysis: float = 25.0
    interview_performance: float = 30.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)

    def validate(self) -> None:
        weights = self.as_dict()
        negative = [name for name, value in weights.items() if value < 0]
        if negative:
            raise ValidationError(f"Scoring weights must be non-negative: {', '.join(negative)}")
        total = sum(weights.values())
        if abs(total - 100.0) > 1e-6:
            raise ValidationError(f"Scoring weights must sum to 100, got {total:g}")

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ScoringWeights":
        unknown = set(data) - set(WEIGHTED_STAGES)
        if unknown:
            raise ValidationError(f"Unknown scoring weights: {', '.join(sorted(unknown))}")
        try:
            return cls(**{name: float(value) for name, value in data.items()})  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Scoring weights must be numeric: {exc}") from exc


@dataclass
class JobProfile:
    title: str
    description: str
    required_skills: List[str] = field(default_factory=list)
    experience_level: str = "mid"
    scoring_weights: ScoringWeights = field(default_factory=ScoringWeights)
    interview_questions: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, data: Dict[str, object]) -> "JobProfile":
        """Build and validate a job profile from a plain mapping."""
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationError("Job profile title is required")
        weights_data = data.get("scoring_weights") or {}
        if not isinstance(weights_data, dict):
            raise ValidationError("scoring_weights must be a mapping")
        weights = ScoringWeights.from_dict(weights_data) if weights_data else ScoringWeights()
        weights.validate()
        profile = cls(
            title=title,
            description=str(data.get("description") or ""),
            required_skills=[str(s) for s in data.get("required_skills") or []],
            experience_level=str(data.get("experience_level") or "mid"),
            scoring_weights=weights,
            interview_questions=[str(q) for q in data.get("interview_questions") or []],
        )
        if data.get("id"):
            profile.id = str(data["id"])
        return profile


@dataclass
class StageContribution:
    raw_score: float
    weight: float
    weighted_contribution: float


@dataclass
class ScoreBreakdown:
    candidate_id: str
    contributions: Dict[str, StageContribution]
    composite_score: int
    missing_stages: List[str]
    available_weight_fraction: float


@dataclass
class CandidateScore:
    candidate_id: str
    job_profile_id: str
    composite_score: int
    stage_scores: Dict[str, float]
    applied_weights: Dict[str, float]
    recommendation: str
    reasoning: str
    missing_stages: List[str] = field(default_factory=list)
    rank: int = 0

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Candidates and batches
# ---------------------------------------------------------------------------


@dataclass
class Candidate:
    job_profile_id: str
    file_name: str = ""
    batch_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    stage: str = STAGE_RESUME
    results: Dict[str, StageResult] = field(default_factory=dict)
    stage_errors: Dict[str, str] = field(default_factory=dict)
    retry_count: int = 0
    interview_session: Optional[InterviewSession] = None
    final_score: Optional[CandidateScore] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def resume(self) -> Optional[ResumeData]:
        result = self.results.get(STAGE_RESUME)
        return result if isinstance(result, ResumeData) else None

    @property
    def contact_info(self) -> Dict[str, object]:
        return self.resume.contact_info if self.resume else {}

    @property
    def has_linkedin(self) -> bool:
        return bool(self.contact_info.get("linkedin_url"))

    @property
    def has_github(self) -> bool:
        return bool(self.contact_info.get("github_url"))

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def touch(self) -> None:
        self.updated_at = utcnow()


@dataclass
class ProcessingBatch:
    job_profile_id: str
    total_count: int
    id: str = field(default_factory=new_id)
    processed_count: int = 0
    failed_count: int = 0
    status: str = BATCH_PROCESSING
    candidate_ids: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    cancelled: bool = False

    @property
    def succeeded_count(self) -> int:
        return self.processed_count - self.failed_count

    @property
    def success_rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return (self.succeeded_count / self.total_count) * 100

    @property
    def processing_time(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def summary(self) -> str:
        lines = [
            "Batch Processing Summary:",
            f"- Total Files: {self.total_count}",
            f"- Successfully Processed: {self.succeeded_count}",
            f"- Failed: {self.failed_count}",
            f"- Success Rate: {self.success_rate:.1f}%",
            f"- Status: {self.status}",
        ]
        if self.processing_time is not None:
            lines.append(f"- Processing Time: {round(self.processing_time)}s")
        return "\n".join(lines)
