"""
Data model for the funnel: candidates, batches, job profiles, stage
results and score breakdowns.
"""

from .schema import (  # noqa: F401
    CANONICAL_STAGES,
    AIAnalysisResult,
    Candidate,
    CandidateScore,
    GitHubAnalysis,
    InterviewAnalysisResult,
    InterviewSession,
    JobProfile,
    LinkedInAnalysis,
    ProcessingBatch,
    ResumeData,
    ResumeFile,
    ScoreBreakdown,
    ScoringWeights,
    StageContribution,
    StageResult,
)
