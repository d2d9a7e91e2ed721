"""
Analysis collaborators, one per funnel stage.

Every analyzer exposes ``async analyze(candidate_id, candidate, job_profile)``
and returns a :class:`~hirefunnel.models.schema.StageResult` subclass or
raises.  The scheduler records a raised error against the stage; it is
never retried automatically.

* :class:`ResumeAnalyzer` – text extraction from PDF, Word or plain text
  plus regex contact heuristics.
* :class:`RelevanceAnalyzer` – LLM judgement of résumé/job fit.
* :class:`LinkedInAnalyzer` – professional profile via the scraper endpoint.
* :class:`GitHubAnalyzer` – public repositories via the GitHub API.
* :class:`InterviewAnalyzer` – places a voice call, follows it to the end
  and has the LLM assess the transcript.

Blocking work (document parsing, LLM SDK calls) runs in the loop's
default executor.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ExternalServiceError, ValidationError
from ..models.schema import (
    STAGE_AI_ANALYSIS,
    STAGE_GITHUB,
    STAGE_INTERVIEW,
    STAGE_LINKEDIN,
    STAGE_RESUME,
    AIAnalysisResult,
    Candidate,
    GitHubAnalysis,
    InterviewAnalysisResult,
    JobProfile,
    LinkedInAnalysis,
    ResumeData,
    StageResult,
)
from ..pool.connection_pool import ConnectionPool
from ..rank.llm_providers import LLMProvider, get_default_provider
from .interview import COMPLETED, ENDED_STATUSES, FAILED, InterviewTracker, session_status_for

logger = logging.getLogger(__name__)

# Optional imports for document handling.  They may be ``None`` if the
# ``documents`` extra is not installed.
try:
    import pdfplumber  # type: ignore
except ImportError:
    pdfplumber = None  # type: ignore
try:
    import docx  # type: ignore
except ImportError:
    docx = None  # type: ignore

EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.I)
PHONE_RE = re.compile(r"\+?\d[\d\s\-().]{7,}\d")
LINKEDIN_RE = re.compile(r"(?:https?://)?(?:www\.)?linkedin\.com/in/[a-zA-Z0-9-]+/?", re.I)
GITHUB_PROFILE_RE = re.compile(r"(?:https?://)?(?:www\.)?github\.com/([a-zA-Z0-9_-]+)", re.I)
GITHUB_REPO_RE = re.compile(
    r"(?:https?://)?(?:www\.)?github\.com/([a-zA-Z0-9_-]+)/([a-zA-Z0-9_.-]+)", re.I
)
URL_RE = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.I)

TOP_TIER_COMPANIES = ("google", "microsoft", "apple", "amazon", "meta", "netflix", "tesla")
TECH_COMPANY_KEYWORDS = ("startup", "tech", "software", "digital", "innovation")
COMPANY_QUALITY_POINTS = {"top-tier": 15, "tech-focused": 10, "standard": 5}
FRAMEWORKS = ("react", "angular", "vue", "node", "express", "django", "flask", "spring")


def _normalise_url(url: str) -> str:
    url = url.rstrip("/.,;)")
    if not url.lower().startswith(("http://", "https://")):
        url = "https://" + url
    return url


class StageAnalyzer(ABC):
    """Produces the result of one funnel stage for a candidate."""

    stage = ""

    @abstractmethod
    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> StageResult:
        raise NotImplementedError

    def release(self, candidate_id: str) -> None:
        """Drop any per-candidate state once the candidate leaves the scheduler."""


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


def extract_text(file_name: str, content: bytes) -> Tuple[str, List[str]]:
    """Extract text from résumé bytes.

    Returns the text and a list of non-fatal extraction problems.  PDFs
    fall back to a latin-1 decode when ``pdfplumber`` is missing; Word
    documents require ``python-docx``.
    """
    errors: List[str] = []
    ext = os.path.splitext(file_name)[1].lower()
    if ext == ".pdf":
        if pdfplumber is None:
            errors.append("pdfplumber not installed; decoded PDF bytes as latin-1")
            return content.decode("latin-1", errors="ignore"), errors
        pages: List[str] = []
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            for number, page in enumerate(pdf.pages, start=1):
                page_text = page.extract_text() or ""
                if not page_text:
                    errors.append(f"No text on page {number}")
                pages.append(page_text)
        return "\n".join(pages), errors
    if ext in {".doc", ".docx"}:
        if docx is None:
            raise RuntimeError("python-docx is required to parse Word résumés; install it via pip")
        document = docx.Document(io.BytesIO(content))
        return "\n".join(p.text for p in document.paragraphs), errors
    text = content.decode("utf-8", errors="replace")
    if "\ufffd" in text:
        errors.append("Invalid UTF-8 sequences replaced")
    return text, errors


def extract_contact_info(text: str) -> Dict[str, object]:
    email_match = EMAIL_RE.search(text)
    phone_match = PHONE_RE.search(text)
    linkedin_match = LINKEDIN_RE.search(text)
    github_match = GITHUB_PROFILE_RE.search(text)

    project_urls: List[str] = []
    for repo in GITHUB_REPO_RE.finditer(text):
        project_urls.append(_normalise_url(repo.group(0)))
    for url in URL_RE.findall(text):
        lowered = url.lower()
        if "linkedin.com" in lowered or "github.com" in lowered:
            continue
        project_urls.append(_normalise_url(url))

    return {
        "email": email_match.group(0) if email_match else "",
        "phone": phone_match.group(0).strip() if phone_match else "",
        "linkedin_url": _normalise_url(linkedin_match.group(0)) if linkedin_match else "",
        "github_url": f"https://github.com/{github_match.group(1)}" if github_match else "",
        "project_urls": list(dict.fromkeys(project_urls)),
    }


def extraction_completeness(text: str, contact: Dict[str, object]) -> float:
    """Share of expected résumé signals that were found, as 0-100."""
    score = 40.0 if text.strip() else 0.0
    for key in ("email", "phone"):
        if contact.get(key):
            score += 20.0
    for key in ("linkedin_url", "github_url"):
        if contact.get(key):
            score += 10.0
    return score


class ResumeAnalyzer(StageAnalyzer):
    stage = STAGE_RESUME

    def __init__(self, documents: Dict[str, Tuple[str, bytes]] | None = None) -> None:
        # candidate id -> (file name, raw bytes); filled by the batch coordinator
        self.documents: Dict[str, Tuple[str, bytes]] = documents if documents is not None else {}

    def add_document(self, candidate_id: str, file_name: str, content: bytes) -> None:
        self.documents[candidate_id] = (file_name, content)

    def release(self, candidate_id: str) -> None:
        self.documents.pop(candidate_id, None)

    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> ResumeData:
        try:
            file_name, content = self.documents[candidate_id]
        except KeyError:
            raise ValidationError(f"No résumé content for candidate {candidate_id}") from None
        loop = asyncio.get_running_loop()
        text, errors = await loop.run_in_executor(None, extract_text, file_name, content)
        if not text.strip():
            raise ValidationError(f"No text could be extracted from {file_name}")
        contact = extract_contact_info(text)
        logger.debug("Extracted %d characters from %s", len(text), file_name)
        return ResumeData(
            score=extraction_completeness(text, contact),
            evidence={"characters": len(text), "file_name": file_name},
            extracted_text=text,
            contact_info=contact,
            extraction_errors=errors,
        )


# ---------------------------------------------------------------------------
# AI relevance
# ---------------------------------------------------------------------------


class RelevanceAnalyzer(StageAnalyzer):
    stage = STAGE_AI_ANALYSIS

    def __init__(self, provider: Optional[LLMProvider] = None) -> None:
        self.provider = provider or get_default_provider()

    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> AIAnalysisResult:
        resume = candidate.resume
        if resume is None or not resume.extracted_text:
            raise ValidationError(f"Candidate {candidate_id} has no extracted résumé text")
        loop = asyncio.get_running_loop()
        judgement = await loop.run_in_executor(
            None, self.provider.judge, resume.extracted_text, job_profile
        )
        return AIAnalysisResult(
            score=judgement.score,
            evidence={"provider": self.provider.name},
            provider=self.provider.name,
            skills_matched=judgement.matched,
            skills_missing=judgement.missing,
            experience_assessment=judgement.experience_assessment,
            reasoning=judgement.reasoning,
            confidence=judgement.confidence,
        )


# ---------------------------------------------------------------------------
# LinkedIn
# ---------------------------------------------------------------------------


def parse_duration(duration: str) -> float:
    """Years in strings such as ``"2 yrs 3 mos"``; 0.5 when nothing parses."""
    if not duration:
        return 0.0
    years = 0.0
    year_match = re.search(r"(\d+)\s*(year|yr)", duration, re.I)
    month_match = re.search(r"(\d+)\s*(month|mo)", duration, re.I)
    if year_match:
        years += int(year_match.group(1))
    if month_match:
        years += int(month_match.group(1)) / 12
    return years or 0.5


def company_quality(company: str) -> str:
    company = company.lower()
    if any(name in company for name in TOP_TIER_COMPANIES):
        return "top-tier"
    if any(keyword in company for keyword in TECH_COMPANY_KEYWORDS):
        return "tech-focused"
    return "standard"


def _is_relevant_role(experience: Dict[str, Any], job_profile: JobProfile) -> bool:
    title = str(experience.get("title") or "").lower()
    description = str(experience.get("description") or "").lower()
    title_words = [w for w in job_profile.title.lower().split() if len(w) > 3]
    if any(word in title for word in title_words):
        return True
    skills = [s.lower() for s in job_profile.required_skills]
    return any(skill in title or skill in description for skill in skills)


def linkedin_credibility(profile: Dict[str, Any], job_profile: JobProfile) -> List[str]:
    indicators: List[str] = []
    summary = profile.get("profile") or {}
    experiences = profile.get("experience") or []
    if summary.get("headline"):
        indicators.append("Complete professional headline")
    if summary.get("summary"):
        indicators.append("Detailed professional summary")
    if len(experiences) >= 3:
        indicators.append("Extensive work history")
    if any(len(str(e.get("description") or "")) > 100 for e in experiences):
        indicators.append("Detailed role descriptions")
    if profile.get("education"):
        indicators.append("Educational background provided")
    skill_names = [str(s.get("name", "")).lower() for s in profile.get("skills") or []]
    matched = [
        req for req in (s.lower() for s in job_profile.required_skills)
        if any(req in name or name in req for name in skill_names if name)
    ]
    if matched:
        indicators.append(f"{len(matched)} relevant skills listed")
    if sum(int(e.get("count", 0) or 0) for e in profile.get("endorsements") or []) >= 10:
        indicators.append("Well-endorsed by peers")
    if profile.get("recommendations"):
        indicators.append("Professional recommendations received")
    connections = int(summary.get("connections") or 0)
    if connections >= 500:
        indicators.append("Extensive professional network")
    elif connections >= 100:
        indicators.append("Active professional network")
    return indicators


def analyze_linkedin_profile(profile: Dict[str, Any], job_profile: JobProfile) -> LinkedInAnalysis:
    """Score a scraped LinkedIn profile.

    Experience up to 40 points, connections and endorsements up to 10
    each, credibility indicators up to 25 and company quality up to 15.
    """
    experiences = profile.get("experience") or []
    total_years = round(sum(parse_duration(str(e.get("duration") or "")) for e in experiences), 1)
    relevant_roles = sum(1 for e in experiences if _is_relevant_role(e, job_profile))
    qualities = {company_quality(str(e.get("company") or "")) for e in experiences}
    if "top-tier" in qualities:
        quality = "top-tier"
    elif "tech-focused" in qualities:
        quality = "tech-focused"
    else:
        quality = "standard"
    connections = int((profile.get("profile") or {}).get("connections") or 0)
    endorsements = sum(int(e.get("count", 0) or 0) for e in profile.get("endorsements") or [])
    indicators = linkedin_credibility(profile, job_profile)

    score = min(40.0, (total_years / 10) * 20 + relevant_roles * 5)
    score += min(10.0, (connections / 500) * 10)
    score += min(10.0, (endorsements / 50) * 10)
    score += min(25.0, len(indicators) * 3)
    score += COMPANY_QUALITY_POINTS.get(quality, 0)
    return LinkedInAnalysis(
        score=min(100, round(score)),
        evidence={"experience_entries": len(experiences)},
        profile_accessible=True,
        total_years=total_years,
        relevant_roles=relevant_roles,
        company_quality=quality,
        connections=connections,
        endorsements=endorsements,
        credibility_indicators=indicators,
    )


class LinkedInAnalyzer(StageAnalyzer):
    stage = STAGE_LINKEDIN

    def __init__(self, pool: ConnectionPool, endpoint: str = "linkedin", cache_ttl: float = 3600.0) -> None:
        self.pool = pool
        self.endpoint = endpoint
        self.cache_ttl = cache_ttl

    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> LinkedInAnalysis:
        url = str(candidate.contact_info.get("linkedin_url") or "")
        if not url:
            raise ValidationError(f"Candidate {candidate_id} has no LinkedIn profile URL")
        response = await self.pool.get(self.endpoint, "/v1/profile", {"url": url}, ttl=self.cache_ttl)
        payload = response.data if isinstance(response.data, dict) else {}
        if not payload.get("success", True):
            raise ExternalServiceError(
                f"LinkedIn scraping failed: {payload.get('error') or payload.get('message') or 'unknown error'}",
                endpoint=self.endpoint,
                status=response.status,
            )
        profile = payload.get("data", payload)
        return analyze_linkedin_profile(profile, job_profile)


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def contribution_streak(events: List[Dict[str, Any]], now: Optional[datetime] = None) -> int:
    """Consecutive days with public activity, ending today or yesterday."""
    now = now or datetime.now(timezone.utc)
    days = set()
    for event in events:
        created = _parse_timestamp(event.get("created_at"))
        if created is not None:
            days.add(created.date())
    day = now.date()
    if day not in days:
        day -= timedelta(days=1)
    streak = 0
    while day in days:
        streak += 1
        day -= timedelta(days=1)
    return streak


def github_skills_evidence(repos: List[Dict[str, Any]], job_profile: JobProfile, now: Optional[datetime] = None) -> List[str]:
    now = now or datetime.now(timezone.utc)
    evidence: List[str] = []
    skills = [s.lower() for s in job_profile.required_skills]

    languages: Dict[str, int] = {}
    for repo in repos:
        if repo.get("language"):
            lang = str(repo["language"]).lower()
            languages[lang] = languages.get(lang, 0) + 1
    for skill in skills:
        if skill in languages:
            evidence.append(f"{languages[skill]} repositories using {skill}")

    def mentions(repo: Dict[str, Any], word: str) -> bool:
        text = f"{repo.get('name') or ''} {repo.get('description') or ''} {' '.join(repo.get('topics') or [])}"
        return word in text.lower()

    for skill in skills:
        if skill in languages or skill in FRAMEWORKS:
            continue
        if any(mentions(repo, skill) for repo in repos):
            evidence.append(f"Experience with {skill} (from repository analysis)")
    for framework in FRAMEWORKS:
        count = sum(1 for repo in repos if mentions(repo, framework))
        if count and framework in skills:
            evidence.append(f"{count} projects using {framework}")

    popular = [r for r in repos if int(r.get("stargazers_count") or 0) >= 10 or int(r.get("forks_count") or 0) >= 5]
    if popular:
        evidence.append(f"{len(popular)} repositories with community engagement")
    cutoff = now - timedelta(days=182)
    recent = [r for r in repos if (_parse_timestamp(r.get("updated_at")) or cutoff) > cutoff]
    if recent:
        evidence.append(f"{len(recent)} repositories updated in last 6 months")
    return evidence


def analyze_github_profile(
    user: Dict[str, Any],
    repos: List[Dict[str, Any]],
    events: List[Dict[str, Any]],
    job_profile: JobProfile,
    project_urls: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> GitHubAnalysis:
    """Score a GitHub account.

    Activity (repositories, followers, contribution streak) up to 30
    points, skills evidence up to 25, project authenticity up to 25 and
    engagement plus language diversity up to 20.
    """
    public_repos = int(user.get("public_repos") or len(repos))
    followers = int(user.get("followers") or 0)
    streak = contribution_streak(events, now)
    evidence = github_skills_evidence(repos, job_profile, now)

    score = min(15.0, (public_repos / 20) * 15)
    score += min(5.0, (followers / 50) * 5)
    score += min(10.0, (streak / 30) * 10)
    score += min(25.0, len(evidence) * 3)

    login = str(user.get("login") or "").lower()
    repo_names = {str(r.get("name") or "").lower() for r in repos}
    claimed = []
    for url in project_urls or []:
        match = GITHUB_REPO_RE.search(url)
        if match and match.group(1).lower() == login:
            claimed.append(match.group(2).lower().removesuffix(".git"))
    if claimed:
        authentic = sum(1 for name in claimed if name in repo_names)
        score += (authentic / len(claimed)) * 25
    else:
        quality = sum(
            1 for r in repos
            if int(r.get("stargazers_count") or 0) > 0 or int(r.get("forks_count") or 0) > 0 or int(r.get("size") or 0) > 100
        )
        score += min(15.0, quality * 3)

    popular = sum(1 for r in repos if int(r.get("stargazers_count") or 0) >= 5 or int(r.get("forks_count") or 0) >= 2)
    languages = sorted({str(r["language"]) for r in repos if r.get("language")})
    score += min(10.0, popular * 2)
    score += min(10.0, len(languages) * 2)

    return GitHubAnalysis(
        score=min(100, round(score)),
        evidence={"contribution_streak": streak, "claimed_projects": len(claimed)},
        public_repos=public_repos,
        followers=followers,
        skills_evidence=evidence,
        languages=languages,
        popular_repos=popular,
    )


class GitHubAnalyzer(StageAnalyzer):
    stage = STAGE_GITHUB

    def __init__(self, pool: ConnectionPool, endpoint: str = "github", cache_ttl: float = 3600.0) -> None:
        self.pool = pool
        self.endpoint = endpoint
        self.cache_ttl = cache_ttl

    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> GitHubAnalysis:
        url = str(candidate.contact_info.get("github_url") or "")
        match = GITHUB_PROFILE_RE.search(url)
        if not match:
            raise ValidationError(f"Candidate {candidate_id} has no GitHub profile URL")
        username = match.group(1)
        user = await self.pool.get(self.endpoint, f"/users/{username}", ttl=self.cache_ttl)
        repos = await self.pool.get(
            self.endpoint, f"/users/{username}/repos", {"sort": "updated", "per_page": 100}, ttl=self.cache_ttl
        )
        events = await self.pool.get(
            self.endpoint, f"/users/{username}/events", {"per_page": 100}, ttl=self.cache_ttl
        )
        return analyze_github_profile(
            user.data if isinstance(user.data, dict) else {},
            repos.data if isinstance(repos.data, list) else [],
            events.data if isinstance(events.data, list) else [],
            job_profile,
            list(candidate.contact_info.get("project_urls") or []),
        )


# ---------------------------------------------------------------------------
# Interview
# ---------------------------------------------------------------------------


def build_call_request(phone_number: str, job_profile: JobProfile, max_duration: int) -> Dict[str, Any]:
    questions = job_profile.interview_questions[:8] or [
        f"Tell me about your experience with {skill}." for skill in job_profile.required_skills[:5]
    ]
    system_message = (
        f"You are a professional AI interviewer conducting a phone screening for the position of "
        f"{job_profile.title}.\n"
        f"Required Skills: {', '.join(job_profile.required_skills)}\n"
        f"Experience Level: {job_profile.experience_level}\n"
        "Ask the prepared questions in a natural flow and keep the call under 25 minutes.\n"
        "PREPARED QUESTIONS:\n"
        + "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1))
    )
    return {
        "phoneNumber": re.sub(r"[^\d+]", "", phone_number),
        "assistant": {
            "firstMessage": (
                "Hello! This is an AI assistant calling regarding your job application. "
                "Do you have a few minutes to discuss the position?"
            ),
            "systemMessage": system_message,
            "recordingEnabled": True,
            "maxDurationSeconds": max_duration,
        },
        "metadata": {"jobProfileId": job_profile.id, "jobTitle": job_profile.title, "interviewType": "screening"},
    }


class InterviewAnalyzer(StageAnalyzer):
    stage = STAGE_INTERVIEW

    def __init__(
        self,
        pool: ConnectionPool,
        tracker: Optional[InterviewTracker] = None,
        provider: Optional[LLMProvider] = None,
        endpoint: str = "voice",
        poll_interval: float = 10.0,
        max_call_duration: int = 1800,
        call_grace_period: float = 60.0,
    ) -> None:
        self.pool = pool
        self.tracker = tracker or InterviewTracker()
        self.provider = provider or get_default_provider()
        self.endpoint = endpoint
        self.poll_interval = poll_interval
        self.max_call_duration = max_call_duration
        self.call_grace_period = call_grace_period

    def release(self, candidate_id: str) -> None:
        self.tracker.remove(candidate_id)

    async def _place_call(self, phone: str, job_profile: JobProfile) -> str:
        response = await self.pool.post(
            self.endpoint, "/call", build_call_request(phone, job_profile, self.max_call_duration)
        )
        call_id = response.data.get("id") if isinstance(response.data, dict) else None
        if not call_id:
            raise ExternalServiceError("Voice provider did not return a call id", endpoint=self.endpoint)
        return str(call_id)

    async def _follow_call(self, candidate_id: str, call_id: str) -> str:
        # The provider should end the call at max_call_duration; stop polling shortly after.
        deadline = time.monotonic() + self.max_call_duration + self.call_grace_period
        while True:
            response = await self.pool.get(self.endpoint, f"/call/{call_id}", cacheable=False)
            data = response.data if isinstance(response.data, dict) else {}
            status = session_status_for(str(data.get("status") or ""), data.get("endedReason"))
            duration = data.get("duration")
            self.tracker.update_status(
                candidate_id,
                status,
                transcript=data.get("transcript"),
                duration=float(duration) if duration is not None else None,
            )
            if status in ENDED_STATUSES:
                return status
            if time.monotonic() >= deadline:
                logger.warning(
                    "Interview call %s for candidate %s still %s past its %ss limit; marking it failed",
                    call_id, candidate_id, status, self.max_call_duration,
                )
                self.tracker.update_status(candidate_id, FAILED)
                return FAILED
            await asyncio.sleep(self.poll_interval)

    async def analyze(self, candidate_id: str, candidate: Candidate, job_profile: JobProfile) -> InterviewAnalysisResult:
        phone = str(candidate.contact_info.get("phone") or "")
        if len(re.sub(r"\D", "", phone)) < 10:
            raise ValidationError(f"Candidate {candidate_id} has no valid phone number")

        session = self.tracker.schedule(candidate_id, job_profile.id, await self._place_call(phone, job_profile))
        candidate.interview_session = session
        status = await self._follow_call(candidate_id, session.call_id)
        while status != COMPLETED:
            if not self.tracker.can_retry(candidate_id):
                self.tracker.mark_exhausted(candidate_id)
                raise ExternalServiceError(
                    f"Interview call ended '{status}' after {session.retry_count + 1} attempts",
                    endpoint=self.endpoint,
                )
            self.tracker.retry(candidate_id, await self._place_call(phone, job_profile))
            status = await self._follow_call(candidate_id, session.call_id)

        transcript = session.transcript or ""
        if not transcript.strip():
            raise ValidationError(f"Interview for candidate {candidate_id} produced no transcript")
        loop = asyncio.get_running_loop()
        assessment = await loop.run_in_executor(
            None, self.provider.assess_interview, transcript, job_profile
        )
        return InterviewAnalysisResult(
            score=assessment.score,
            evidence={"attempts": session.retry_count + 1, "provider": self.provider.name},
            call_id=session.call_id,
            transcript=transcript,
            duration=session.duration or 0.0,
            strengths=assessment.strengths,
            concerns=assessment.concerns,
        )
