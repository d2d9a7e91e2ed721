"""
LLM provider abstractions.

This module defines a common interface for the large language model
(LLM) providers used by the funnel to judge how relevant a résumé is to
a job profile and to assess interview transcripts.  Concrete
implementations are provided for OpenAI and Gemini (Google Generative
AI).  A deterministic keyword-matching placeholder is used when no API
keys are configured or the optional dependencies are not installed.

Select the provider with the ``LLM_PROVIDER`` environment variable or
pass an :class:`LLMProvider` instance to the analyzers directly.  The
model can be overridden with ``OPENAI_MODEL`` or ``GEMINI_MODEL``.
"""

from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Dict, List

from ..models.schema import JobProfile
from .llm_schema import InterviewAssessment, RelevanceJudgement

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9+#.]+")


def _relevance_prompt(resume_text: str, job_profile: JobProfile) -> str:
    return (
        "You are a recruiting assistant. Given a candidate résumé and a job profile, "
        "assess how well the candidate fits the role. Return ONLY a JSON object with keys "
        "'score' (0 to 100), 'matched' (required skills the candidate has), 'missing' "
        "(required skills the candidate lacks), 'experience_assessment' (one sentence), "
        "'reasoning' (short paragraph) and 'confidence' (0 to 1).\n"
        f"Job Title: {job_profile.title}\n"
        f"Experience Level: {job_profile.experience_level}\n"
        f"Required Skills: {', '.join(job_profile.required_skills)}\n"
        f"Job Description: {job_profile.description}\n"
        f"Résumé:\n{resume_text[:12000]}"
    )


def _interview_prompt(transcript: str, job_profile: JobProfile) -> str:
    return (
        "You are an interview assessor. Given a phone interview transcript for the role "
        f"'{job_profile.title}', return ONLY a JSON object with keys 'score' (0 to 100 "
        "overall interview performance), 'strengths' (list of strings) and 'concerns' "
        "(list of strings).\n"
        f"Required Skills: {', '.join(job_profile.required_skills)}\n"
        f"Transcript:\n{transcript[:12000]}"
    )


def _strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.lower().startswith("json"):
            content = content[4:]
    return content.strip()


def _parse_relevance(content: str) -> RelevanceJudgement:
    data: Dict[str, object] = json.loads(_strip_fences(content))
    return RelevanceJudgement(
        score=max(0.0, min(100.0, float(data.get("score", 0.0)))),
        matched=list(data.get("matched", []) or []),
        missing=list(data.get("missing", []) or []),
        experience_assessment=str(data.get("experience_assessment", "")),
        reasoning=str(data.get("reasoning", "")),
        confidence=float(data.get("confidence", 0.5)),
    )


def _parse_interview(content: str) -> InterviewAssessment:
    data: Dict[str, object] = json.loads(_strip_fences(content))
    return InterviewAssessment(
        score=max(0.0, min(100.0, float(data.get("score", 0.0)))),
        strengths=list(data.get("strengths", []) or []),
        concerns=list(data.get("concerns", []) or []),
    )


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    name = "base"

    @abstractmethod
    def judge(self, resume_text: str, job_profile: JobProfile) -> RelevanceJudgement:
        """Judge the relevance of a résumé to a job profile."""
        raise NotImplementedError

    @abstractmethod
    def assess_interview(self, transcript: str, job_profile: JobProfile) -> InterviewAssessment:
        """Score an interview transcript against a job profile."""
        raise NotImplementedError


class PlaceholderProvider(LLMProvider):
    """Fallback provider that does not call any external API.

    Relevance is the share of required skills mentioned in the résumé;
    interview performance is the share of required skills discussed,
    lightly credited for answer length.
    """

    name = "placeholder"

    @staticmethod
    def _skill_hits(text: str, skills: List[str]) -> List[str]:
        lowered = text.lower()
        return [s for s in skills if s.lower() in lowered]

    def judge(self, resume_text: str, job_profile: JobProfile) -> RelevanceJudgement:
        skills = job_profile.required_skills
        matched = self._skill_hits(resume_text, skills)
        missing = [s for s in skills if s not in matched]
        score = (len(matched) / len(skills)) * 100 if skills else 50.0
        return RelevanceJudgement(
            score=round(score, 1),
            matched=matched,
            missing=missing,
            experience_assessment=f"Keyword comparison against {job_profile.title}",
            reasoning=f"{len(matched)} of {len(skills)} required skills found in résumé",
            confidence=0.3,
        )

    def assess_interview(self, transcript: str, job_profile: JobProfile) -> InterviewAssessment:
        skills = job_profile.required_skills
        matched = self._skill_hits(transcript, skills)
        coverage = (len(matched) / len(skills)) * 70 if skills else 35.0
        words = len(_WORD_RE.findall(transcript.lower()))
        depth = min(30.0, words / 20)
        concerns = [f"Did not discuss {s}" for s in skills if s not in matched]
        return InterviewAssessment(
            score=round(coverage + depth, 1),
            strengths=[f"Discussed {s}" for s in matched],
            concerns=concerns,
        )


class OpenAIProvider(LLMProvider):
    """Provider that uses the OpenAI chat completions API."""

    name = "openai"

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        try:
            from openai import OpenAI  # type: ignore
        except ImportError as exc:
            raise RuntimeError(
                "openai package is required for OpenAIProvider. Install it via pip."
            ) from exc
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY not provided")
        self.model = model or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.client = OpenAI(api_key=self.api_key)

    def _complete(self, prompt: str) -> str:
        logger.debug("Sending prompt to OpenAI: %s", prompt[:200])
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.0,
        )
        return response.choices[0].message.content or ""

    def judge(self, resume_text: str, job_profile: JobProfile) -> RelevanceJudgement:
        try:
            return _parse_relevance(self._complete(_relevance_prompt(resume_text, job_profile)))
        except Exception as exc:  # noqa: BLE001
            logger.warning("OpenAI relevance judgement failed, using fallback: %s", exc)
            return PlaceholderProvider().judge(resume_text, job_profile)

    def assess_interview(self, transcript: str, job_profile: JobProfile) -> InterviewAssessment:
        try:
            return _parse_interview(self._complete(_interview_prompt(transcript, job_profile)))
        except Exception as exc:  # noqa: BLE001
            logger.warning("OpenAI interview assessment failed, using fallback: %s", exc)
            return PlaceholderProvider().assess_interview(transcript, job_profile)


class GeminiProvider(LLMProvider):
    """Provider that uses Google Generative AI (Gemini) via google-generativeai."""

    name = "gemini"

    def __init__(self, api_key: str | None = None, model: str = "gemini-1.5-pro") -> None:
        try:
            import google.generativeai as genai  # type: ignore
        except ImportError as exc:
            raise RuntimeError(
                "google-generativeai package is required for GeminiProvider. Install it via pip."
            ) from exc
        self.genai = genai
        # API key resolution: explicit argument > env variables
        self.api_key = api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        self.model_name = os.getenv("GEMINI_MODEL") or os.getenv("GOOGLE_MODEL") or model
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY/GOOGLE_API_KEY not provided")
        self.genai.configure(api_key=self.api_key)
        try:
            self.model = self.genai.GenerativeModel(self.model_name)
        except Exception as exc:
            raise RuntimeError(f"Failed to load Gemini model {self.model_name}: {exc}") from exc

    def _complete(self, prompt: str) -> str:
        logger.debug("Sending prompt to Gemini: %s", prompt[:200])
        response = self.model.generate_content(prompt)
        return response.text

    def judge(self, resume_text: str, job_profile: JobProfile) -> RelevanceJudgement:
        try:
            return _parse_relevance(self._complete(_relevance_prompt(resume_text, job_profile)))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Gemini relevance judgement failed, using fallback: %s", exc)
            return PlaceholderProvider().judge(resume_text, job_profile)

    def assess_interview(self, transcript: str, job_profile: JobProfile) -> InterviewAssessment:
        try:
            return _parse_interview(self._complete(_interview_prompt(transcript, job_profile)))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Gemini interview assessment failed, using fallback: %s", exc)
            return PlaceholderProvider().assess_interview(transcript, job_profile)


def get_default_provider() -> LLMProvider:
    """Return an LLMProvider instance based on configuration and API keys.

    The resolution order is:

    1. If ``LLM_PROVIDER`` is ``"openai"``, ``"gemini"`` or
       ``"placeholder"``, the corresponding provider is selected.  If it
       cannot be initialised a warning is logged and automatic detection
       is used.
    2. If ``OPENAI_API_KEY`` is present, return :class:`OpenAIProvider`.
    3. If ``GEMINI_API_KEY`` or ``GOOGLE_API_KEY`` is present, return
       :class:`GeminiProvider`.
    4. Otherwise, return :class:`PlaceholderProvider`.
    """
    preferred = os.getenv("LLM_PROVIDER")
    if preferred:
        pref = preferred.lower()
        if pref == "openai":
            try:
                return OpenAIProvider()
            except Exception as exc:  # noqa: BLE001
                logger.warning("LLM_PROVIDER=openai but failed to initialise OpenAIProvider: %s", exc)
        elif pref == "gemini":
            try:
                return GeminiProvider()
            except Exception as exc:  # noqa: BLE001
                logger.warning("LLM_PROVIDER=gemini but failed to initialise GeminiProvider: %s", exc)
        elif pref == "placeholder":
            logger.info("LLM_PROVIDER=placeholder; using placeholder provider")
            return PlaceholderProvider()
        else:
            logger.warning("Unknown LLM_PROVIDER value '%s'; falling back to automatic detection", preferred)
    if os.getenv("OPENAI_API_KEY"):
        try:
            return OpenAIProvider()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to initialise OpenAIProvider: %s", exc)
    if os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"):
        try:
            return GeminiProvider()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to initialise GeminiProvider: %s", exc)
    logger.info("No LLM API keys found; using placeholder provider")
    return PlaceholderProvider()
