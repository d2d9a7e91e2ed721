"""
LLM judgement schema.

Dataclasses for what a provider returns when it evaluates a résumé
against a job profile, and when it assesses an interview transcript.
Scores are on the 0-100 scale used by every funnel stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass
class RelevanceJudgement:
    """Result of an LLM résumé-to-job relevance evaluation."""

    score: float
    matched: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    experience_assessment: str = ""
    reasoning: str = ""
    confidence: float = 0.5


@dataclass
class InterviewAssessment:
    """Result of an LLM assessment of an interview transcript."""

    score: float
    strengths: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)
