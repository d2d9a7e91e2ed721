"""
Tests for the per-stage analyzers.

External services are replaced by ``ScriptedPool``, which serves canned
payloads per path and records every call, so no network access is
needed.  The LLM stages use the deterministic placeholder provider.
"""

from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest  # type: ignore

from hirefunnel.errors import ExternalServiceError, ValidationError
from hirefunnel.models.schema import STAGE_RESUME, Candidate, JobProfile, ResumeData
from hirefunnel.pool.connection_pool import PooledResponse
from hirefunnel.rank.llm_providers import PlaceholderProvider
from hirefunnel.stages.analyzers import (
    GitHubAnalyzer,
    InterviewAnalyzer,
    LinkedInAnalyzer,
    RelevanceAnalyzer,
    ResumeAnalyzer,
    analyze_github_profile,
    analyze_linkedin_profile,
    build_call_request,
    company_quality,
    contribution_streak,
    extract_contact_info,
    extract_text,
    extraction_completeness,
    parse_duration,
)
from hirefunnel.stages.interview import FAILED, InterviewTracker

RESUME_TEXT = (
    "Jane Doe\n"
    "jane.doe@example.com | +1 (555) 123-4567\n"
    "linkedin.com/in/janedoe\n"
    "https://github.com/janedoe/pipeline-kit\n"
    "Portfolio: https://janedoe.dev\n"
    "Skills: Python, SQL"
)

PROFILE = JobProfile(
    title="Backend Engineer",
    description="Build data APIs",
    required_skills=["python", "sql"],
    id="job-1",
)

NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


class ScriptedPool:
    """Serves queued payloads per path; the last payload repeats."""

    def __init__(self, payloads: Dict[str, List[Any]]) -> None:
        self.payloads = payloads
        self.calls: List[Tuple[str, str, str, Any]] = []

    def _reply(self, path: str) -> PooledResponse:
        queue = self.payloads[path]
        data = queue.pop(0) if len(queue) > 1 else queue[0]
        return PooledResponse(status=200, data=data, headers={}, correlation_id="test", elapsed=0.0)

    async def get(
        self,
        endpoint: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        cacheable: bool = True,
        ttl: Optional[float] = None,
    ) -> PooledResponse:
        self.calls.append(("GET", endpoint, path, params))
        return self._reply(path)

    async def post(self, endpoint: str, path: str, json: Optional[Any] = None) -> PooledResponse:
        self.calls.append(("POST", endpoint, path, json))
        return self._reply(path)


def _candidate(contact: Dict[str, object], text: str = RESUME_TEXT) -> Candidate:
    candidate = Candidate(job_profile_id="job-1", id="c1")
    candidate.results[STAGE_RESUME] = ResumeData(score=100, extracted_text=text, contact_info=contact)
    return candidate


class TestResumeExtraction(unittest.TestCase):
    def test_contact_info(self) -> None:
        contact = extract_contact_info(RESUME_TEXT)
        self.assertEqual(contact["email"], "jane.doe@example.com")
        self.assertEqual(contact["phone"], "+1 (555) 123-4567")
        self.assertEqual(contact["linkedin_url"], "https://linkedin.com/in/janedoe")
        self.assertEqual(contact["github_url"], "https://github.com/janedoe")
        self.assertEqual(
            contact["project_urls"], ["https://github.com/janedoe/pipeline-kit", "https://janedoe.dev"]
        )

    def test_contact_info_absent(self) -> None:
        contact = extract_contact_info("Just a name and some words")
        self.assertEqual(contact["email"], "")
        self.assertEqual(contact["linkedin_url"], "")
        self.assertEqual(contact["project_urls"], [])
        self.assertEqual(extraction_completeness("Just a name", contact), 40.0)
        self.assertEqual(extraction_completeness("", contact), 0.0)

    def test_plain_text_with_bad_bytes(self) -> None:
        text, errors = extract_text("resume.txt", b"caf\xe9 python")
        self.assertIn("python", text)
        self.assertEqual(errors, ["Invalid UTF-8 sequences replaced"])

    def test_resume_analyzer(self) -> None:
        analyzer = ResumeAnalyzer()
        analyzer.add_document("c1", "jane.txt", RESUME_TEXT.encode("utf-8"))
        result = asyncio.run(analyzer.analyze("c1", Candidate(job_profile_id="job-1", id="c1"), PROFILE))
        self.assertEqual(result.score, 100.0)
        self.assertEqual(result.contact_info["email"], "jane.doe@example.com")
        self.assertEqual(result.evidence["file_name"], "jane.txt")

    def test_resume_analyzer_rejects_empty_and_missing(self) -> None:
        analyzer = ResumeAnalyzer()
        analyzer.add_document("c1", "blank.txt", b"   \n")
        candidate = Candidate(job_profile_id="job-1", id="c1")
        with self.assertRaises(ValidationError):
            asyncio.run(analyzer.analyze("c1", candidate, PROFILE))
        analyzer.release("c1")
        with self.assertRaises(ValidationError):
            asyncio.run(analyzer.analyze("c1", candidate, PROFILE))


def test_relevance_analyzer_uses_provider() -> None:
    profile = JobProfile(title="Backend Engineer", description="", required_skills=["python", "sql", "kubernetes"])
    analyzer = RelevanceAnalyzer(PlaceholderProvider())
    result = asyncio.run(analyzer.analyze("c1", _candidate({}), profile))
    assert result.score == pytest.approx(66.7)
    assert result.skills_matched == ["python", "sql"]
    assert result.skills_missing == ["kubernetes"]
    assert result.provider == "placeholder"


def test_relevance_analyzer_needs_resume_text() -> None:
    analyzer = RelevanceAnalyzer(PlaceholderProvider())
    with pytest.raises(ValidationError):
        asyncio.run(analyzer.analyze("c1", Candidate(job_profile_id="job-1"), PROFILE))


# ---------------------------------------------------------------------------
# LinkedIn
# ---------------------------------------------------------------------------


LINKEDIN_PROFILE = {
    "profile": {"headline": "Backend engineer", "connections": 500},
    "experience": [
        {
            "title": "Senior Backend Engineer",
            "company": "Google",
            "duration": "5 yrs",
            "description": "python services",
        }
    ],
    "endorsements": [{"skill": "Python", "count": 50}],
}


@pytest.mark.parametrize(
    "duration, years",
    [("2 yrs 6 mos", 2.5), ("3 years", 3.0), ("Present", 0.5), ("", 0.0)],
)
def test_parse_duration(duration: str, years: float) -> None:
    assert parse_duration(duration) == years


def test_company_quality() -> None:
    assert company_quality("Google LLC") == "top-tier"
    assert company_quality("Acme Software") == "tech-focused"
    assert company_quality("City Bakery") == "standard"


def test_linkedin_scoring() -> None:
    result = analyze_linkedin_profile(LINKEDIN_PROFILE, PROFILE)
    # experience 15 + connections 10 + endorsements 10 + 3 indicators 9 + top-tier 15
    assert result.score == 59
    assert result.total_years == 5.0
    assert result.relevant_roles == 1
    assert result.company_quality == "top-tier"
    assert result.credibility_indicators == [
        "Complete professional headline",
        "Well-endorsed by peers",
        "Extensive professional network",
    ]


def test_linkedin_analyzer_fetches_profile() -> None:
    pool = ScriptedPool({"/v1/profile": [{"success": True, "data": LINKEDIN_PROFILE}]})
    analyzer = LinkedInAnalyzer(pool)  # type: ignore[arg-type]
    candidate = _candidate({"linkedin_url": "https://linkedin.com/in/janedoe"})
    result = asyncio.run(analyzer.analyze("c1", candidate, PROFILE))
    assert result.score == 59
    assert pool.calls == [("GET", "linkedin", "/v1/profile", {"url": "https://linkedin.com/in/janedoe"})]


def test_linkedin_analyzer_errors() -> None:
    pool = ScriptedPool({"/v1/profile": [{"success": False, "error": "profile is private"}]})
    analyzer = LinkedInAnalyzer(pool)  # type: ignore[arg-type]
    with pytest.raises(ExternalServiceError, match="profile is private"):
        asyncio.run(analyzer.analyze("c1", _candidate({"linkedin_url": "https://linkedin.com/in/x"}), PROFILE))
    with pytest.raises(ValidationError):
        asyncio.run(analyzer.analyze("c1", _candidate({}), PROFILE))


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


def test_contribution_streak() -> None:
    events = [
        {"created_at": "2024-06-01T08:00:00Z"},
        {"created_at": "2024-05-31T08:00:00Z"},
        {"created_at": "2024-05-29T08:00:00Z"},
    ]
    assert contribution_streak(events, NOW) == 2
    assert contribution_streak(events[1:], NOW) == 1
    assert contribution_streak([], NOW) == 0


class TestGitHubScoring(unittest.TestCase):
    def setUp(self) -> None:
        self.user = {"login": "octo", "public_repos": 20, "followers": 50}
        self.repos = [
            {
                "name": "api",
                "language": "Python",
                "stargazers_count": 10,
                "forks_count": 5,
                "size": 200,
                "updated_at": (NOW - timedelta(days=10)).isoformat(),
            }
        ]
        self.events = [{"created_at": "2024-06-01T08:00:00Z"}, {"created_at": "2024-05-31T08:00:00Z"}]

    def test_claimed_projects_verified(self) -> None:
        result = analyze_github_profile(
            self.user, self.repos, self.events, PROFILE, ["https://github.com/octo/api"], now=NOW
        )
        self.assertEqual(result.score, 59)
        self.assertEqual(
            result.skills_evidence,
            [
                "1 repositories using python",
                "1 repositories with community engagement",
                "1 repositories updated in last 6 months",
            ],
        )
        self.assertEqual(result.languages, ["Python"])
        self.assertEqual(result.evidence["claimed_projects"], 1)

    def test_repository_quality_without_claims(self) -> None:
        result = analyze_github_profile(self.user, self.repos, self.events, PROFILE, now=NOW)
        self.assertEqual(result.score, 37)

    def test_claimed_project_not_found(self) -> None:
        result = analyze_github_profile(
            self.user, self.repos, self.events, PROFILE, ["https://github.com/octo/missing"], now=NOW
        )
        self.assertEqual(result.score, 34)


def test_github_analyzer_fetches_user_repos_and_events() -> None:
    pool = ScriptedPool(
        {
            "/users/janedoe": [{"login": "janedoe", "public_repos": 1, "followers": 0}],
            "/users/janedoe/repos": [[{"name": "pipeline-kit", "language": "Python"}]],
            "/users/janedoe/events": [[]],
        }
    )
    analyzer = GitHubAnalyzer(pool)  # type: ignore[arg-type]
    contact = extract_contact_info(RESUME_TEXT)
    result = asyncio.run(analyzer.analyze("c1", _candidate(contact), PROFILE))
    assert [call[2] for call in pool.calls] == ["/users/janedoe", "/users/janedoe/repos", "/users/janedoe/events"]
    assert all(call[1] == "github" for call in pool.calls)
    # repos 0.75 + evidence 3 + verified project 25 + one language 2
    assert result.score == 31


def test_github_analyzer_needs_profile_url() -> None:
    analyzer = GitHubAnalyzer(ScriptedPool({}))  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        asyncio.run(analyzer.analyze("c1", _candidate({"github_url": ""}), PROFILE))


# ---------------------------------------------------------------------------
# Interview
# ---------------------------------------------------------------------------


TRANSCRIPT = "I have built python services and tuned sql queries for several years."


def _interview(pool: ScriptedPool, max_retries: int = 1) -> Tuple[InterviewAnalyzer, InterviewTracker]:
    tracker = InterviewTracker(max_retries=max_retries)
    analyzer = InterviewAnalyzer(
        pool, tracker, PlaceholderProvider(), poll_interval=0  # type: ignore[arg-type]
    )
    return analyzer, tracker


def test_build_call_request() -> None:
    request = build_call_request("+1 (555) 123-4567", PROFILE, 1800)
    assert request["phoneNumber"] == "+15551234567"
    assert request["assistant"]["maxDurationSeconds"] == 1800
    assert "Tell me about your experience with python." in request["assistant"]["systemMessage"]
    assert request["metadata"]["jobProfileId"] == "job-1"


def test_interview_retries_unanswered_call() -> None:
    pool = ScriptedPool(
        {
            "/call": [{"id": "call-1"}, {"id": "call-2"}],
            "/call/call-1": [{"status": "ended", "endedReason": "no-answer"}],
            "/call/call-2": [
                {"status": "in-progress"},
                {
                    "status": "ended",
                    "endedReason": "customer-ended-call",
                    "transcript": TRANSCRIPT,
                    "duration": 300,
                },
            ],
        }
    )
    analyzer, tracker = _interview(pool)
    candidate = _candidate({"phone": "+1 (555) 123-4567"})
    result = asyncio.run(analyzer.analyze("c1", candidate, PROFILE))

    assert result.call_id == "call-2"
    assert result.duration == 300.0
    assert result.transcript == TRANSCRIPT
    assert result.evidence["attempts"] == 2
    assert result.strengths == ["Discussed python", "Discussed sql"]
    assert 70 <= result.score <= 100
    assert candidate.interview_session is tracker.get("c1")
    posts = [call for call in pool.calls if call[0] == "POST"]
    assert len(posts) == 2
    assert posts[0][3]["phoneNumber"] == "+15551234567"


def test_interview_gives_up_after_retry_limit() -> None:
    pool = ScriptedPool(
        {
            "/call": [{"id": "call-1"}, {"id": "call-2"}],
            "/call/call-1": [{"status": "ended", "endedReason": "busy"}],
            "/call/call-2": [{"status": "ended", "endedReason": "no-answer"}],
        }
    )
    analyzer, tracker = _interview(pool, max_retries=1)
    with pytest.raises(ExternalServiceError, match="after 2 attempts"):
        asyncio.run(analyzer.analyze("c1", _candidate({"phone": "555-123-4567"}), PROFILE))
    session = tracker.get("c1")
    assert session.status == FAILED
    assert session.retry_count == 1


def test_interview_requires_transcript_and_phone() -> None:
    pool = ScriptedPool(
        {
            "/call": [{"id": "call-1"}],
            "/call/call-1": [{"status": "ended", "endedReason": "assistant-ended-call", "transcript": ""}],
        }
    )
    analyzer, _ = _interview(pool)
    with pytest.raises(ValidationError, match="no transcript"):
        asyncio.run(analyzer.analyze("c1", _candidate({"phone": "5551234567"}), PROFILE))
    with pytest.raises(ValidationError, match="phone"):
        asyncio.run(analyzer.analyze("c1", _candidate({"phone": "12345"}), PROFILE))


def test_interview_requires_call_id() -> None:
    analyzer, _ = _interview(ScriptedPool({"/call": [{}]}))
    with pytest.raises(ExternalServiceError, match="call id"):
        asyncio.run(analyzer.analyze("c1", _candidate({"phone": "5551234567"}), PROFILE))


def test_interview_stops_following_a_call_that_never_ends() -> None:
    pool = ScriptedPool(
        {
            "/call": [{"id": "call-1"}, {"id": "call-2"}],
            "/call/call-1": [{"status": "in-progress"}],
            "/call/call-2": [{"status": "in-progress"}],
        }
    )
    tracker = InterviewTracker(max_retries=1)
    analyzer = InterviewAnalyzer(
        pool,  # type: ignore[arg-type]
        tracker,
        PlaceholderProvider(),
        poll_interval=0.01,
        max_call_duration=0,
        call_grace_period=0.05,
    )
    candidate = _candidate({"phone": "555-123-4567"})
    with pytest.raises(ExternalServiceError, match="ended 'failed' after 2 attempts"):
        asyncio.run(asyncio.wait_for(analyzer.analyze("c1", candidate, PROFILE), timeout=2))
    assert tracker.get("c1").status == FAILED
    assert len([call for call in pool.calls if call[0] == "POST"]) == 2

    analyzer.release("c1")
    assert tracker.get("c1") is None
