"""
Voice interview session tracking.

An interview is an externally driven phone call.  The voice provider
reports a raw call status (``queued``, ``ringing``, ``in-progress``,
``ended``) plus an ``endedReason``; :func:`session_status_for` maps that
to the funnel's session status::

    scheduled -> in-progress -> completed | failed | no-answer

A call that ends ``failed`` or ``no-answer`` may be re-placed up to
``max_retries`` times.  After that the session is terminal-failed.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..errors import NotFoundError, ValidationError
from ..models.schema import InterviewSession, utcnow

logger = logging.getLogger(__name__)

SCHEDULED = "scheduled"
IN_PROGRESS = "in-progress"
COMPLETED = "completed"
FAILED = "failed"
NO_ANSWER = "no-answer"

ENDED_STATUSES = (COMPLETED, FAILED, NO_ANSWER)

_TRANSITIONS = {
    SCHEDULED: {SCHEDULED, IN_PROGRESS, COMPLETED, FAILED, NO_ANSWER},
    IN_PROGRESS: {IN_PROGRESS, COMPLETED, FAILED, NO_ANSWER},
}

_ENDED_REASONS = {
    "customer-ended-call": COMPLETED,
    "assistant-ended-call": COMPLETED,
    "exceeded-max-duration": COMPLETED,
    "no-answer": NO_ANSWER,
    "busy": NO_ANSWER,
    "phone-call-provider-closed-websocket": FAILED,
    "assistant-not-responding": FAILED,
    "failed": FAILED,
}


def session_status_for(call_status: str, ended_reason: Optional[str] = None) -> str:
    """Map a provider call status to an interview session status."""
    if call_status in ("queued", "ringing", SCHEDULED):
        return SCHEDULED
    if call_status == IN_PROGRESS:
        return IN_PROGRESS
    if call_status == "ended":
        if not ended_reason:
            return COMPLETED
        return _ENDED_REASONS.get(ended_reason, COMPLETED)
    return FAILED


class InterviewTracker:
    """Keeps one :class:`InterviewSession` per candidate."""

    def __init__(self, max_retries: int = 3) -> None:
        self.max_retries = max_retries
        self._sessions: Dict[str, InterviewSession] = {}

    def get(self, candidate_id: str) -> Optional[InterviewSession]:
        return self._sessions.get(candidate_id)

    def _require(self, candidate_id: str) -> InterviewSession:
        session = self._sessions.get(candidate_id)
        if session is None:
            raise NotFoundError(f"No interview session for candidate {candidate_id}")
        return session

    def schedule(self, candidate_id: str, job_profile_id: str, call_id: str) -> InterviewSession:
        session = InterviewSession(
            candidate_id=candidate_id,
            job_profile_id=job_profile_id,
            call_id=call_id,
        )
        self._sessions[candidate_id] = session
        logger.info("Interview scheduled for candidate %s (call %s)", candidate_id, call_id)
        return session

    def update_status(
        self,
        candidate_id: str,
        status: str,
        transcript: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> InterviewSession:
        session = self._require(candidate_id)
        allowed = _TRANSITIONS.get(session.status, set())
        if status not in allowed:
            raise ValidationError(
                f"Interview for candidate {candidate_id} cannot move from "
                f"'{session.status}' to '{status}'"
            )
        session.status = status
        if transcript is not None:
            session.transcript = transcript
        if duration is not None:
            session.duration = duration
        logger.debug("Interview %s for candidate %s is %s", session.call_id, candidate_id, status)
        return session

    def can_retry(self, candidate_id: str) -> bool:
        session = self._require(candidate_id)
        return session.status in (FAILED, NO_ANSWER) and session.retry_count < self.max_retries

    def retry(self, candidate_id: str, call_id: str) -> InterviewSession:
        """Re-place the call for a failed or unanswered session."""
        session = self._require(candidate_id)
        if not self.can_retry(candidate_id):
            raise ValidationError(
                f"Interview for candidate {candidate_id} cannot be retried "
                f"(status={session.status}, retries={session.retry_count}/{self.max_retries})"
            )
        session.retry_count += 1
        session.call_id = call_id
        session.status = SCHEDULED
        session.scheduled_at = utcnow()
        session.transcript = None
        session.duration = None
        logger.info(
            "Retrying interview for candidate %s, attempt %d (call %s)",
            candidate_id, session.retry_count + 1, call_id,
        )
        return session

    def mark_exhausted(self, candidate_id: str) -> InterviewSession:
        session = self._require(candidate_id)
        session.status = FAILED
        logger.warning(
            "Interview for candidate %s failed after %d retries", candidate_id, session.retry_count
        )
        return session

    def remove(self, candidate_id: str) -> None:
        self._sessions.pop(candidate_id, None)
