"""
In-memory repository for candidates, batches and job profiles.

Lookups by id raise :class:`~hirefunnel.errors.NotFoundError` for an
unknown id.  :meth:`MemoryRepository.query_candidates` filters, sorts
and paginates candidates; candidates that have not been scored yet never
match a score or recommendation filter and sort after scored ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ..errors import NotFoundError, ValidationError
from ..models.schema import Candidate, JobProfile, ProcessingBatch

logger = logging.getLogger(__name__)

SORT_FIELDS = ("composite_score", "created_at")


@dataclass
class CandidateQuery:
    job_profile_id: Optional[str] = None
    batch_id: Optional[str] = None
    stage: Optional[str] = None
    min_score: Optional[float] = None
    max_score: Optional[float] = None
    recommendation: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    has_linkedin: Optional[bool] = None
    has_github: Optional[bool] = None
    sort_by: str = "created_at"
    descending: bool = True
    limit: int = 50
    offset: int = 0


@dataclass
class QueryResult:
    items: List[Candidate] = field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def _matches(candidate: Candidate, query: CandidateQuery) -> bool:
    if query.job_profile_id and candidate.job_profile_id != query.job_profile_id:
        return False
    if query.batch_id and candidate.batch_id != query.batch_id:
        return False
    if query.stage and candidate.stage != query.stage:
        return False
    if query.created_after and candidate.created_at < query.created_after:
        return False
    if query.created_before and candidate.created_at > query.created_before:
        return False
    if query.has_linkedin is not None and candidate.has_linkedin != query.has_linkedin:
        return False
    if query.has_github is not None and candidate.has_github != query.has_github:
        return False
    score = candidate.final_score
    if query.min_score is not None and (score is None or score.composite_score < query.min_score):
        return False
    if query.max_score is not None and (score is None or score.composite_score > query.max_score):
        return False
    if query.recommendation and (score is None or score.recommendation != query.recommendation):
        return False
    return True


class MemoryRepository:
    def __init__(self) -> None:
        self._candidates: Dict[str, Candidate] = {}
        self._batches: Dict[str, ProcessingBatch] = {}
        self._job_profiles: Dict[str, JobProfile] = {}

    # Candidates

    def save_candidate(self, candidate: Candidate) -> Candidate:
        self._candidates[candidate.id] = candidate
        return candidate

    def get_candidate(self, candidate_id: str) -> Candidate:
        try:
            return self._candidates[candidate_id]
        except KeyError:
            raise NotFoundError(f"Candidate not found: {candidate_id}") from None

    def delete_candidate(self, candidate_id: str) -> None:
        if self._candidates.pop(candidate_id, None) is None:
            raise NotFoundError(f"Candidate not found: {candidate_id}")

    def query_candidates(self, query: Optional[CandidateQuery] = None) -> QueryResult:
        query = query or CandidateQuery()
        if query.sort_by not in SORT_FIELDS:
            raise ValidationError(f"Cannot sort by '{query.sort_by}'; use one of {', '.join(SORT_FIELDS)}")
        if query.limit < 1 or query.offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        matched = [c for c in self._candidates.values() if _matches(c, query)]
        if query.sort_by == "created_at":
            matched.sort(key=lambda c: c.created_at, reverse=query.descending)
        else:
            scored = [c for c in matched if c.final_score is not None]
            unscored = [c for c in matched if c.final_score is None]
            scored.sort(key=lambda c: c.final_score.composite_score, reverse=query.descending)
            matched = scored + unscored

        page = matched[query.offset:query.offset + query.limit]
        return QueryResult(items=page, total=len(matched), limit=query.limit, offset=query.offset)

    # Batches

    def save_batch(self, batch: ProcessingBatch) -> ProcessingBatch:
        self._batches[batch.id] = batch
        return batch

    def get_batch(self, batch_id: str) -> ProcessingBatch:
        try:
            return self._batches[batch_id]
        except KeyError:
            raise NotFoundError(f"Batch not found: {batch_id}") from None

    def list_batches(self, job_profile_id: Optional[str] = None) -> List[ProcessingBatch]:
        batches = [b for b in self._batches.values() if job_profile_id in (None, b.job_profile_id)]
        return sorted(batches, key=lambda b: b.started_at, reverse=True)

    # Job profiles

    def save_job_profile(self, profile: JobProfile) -> JobProfile:
        self._job_profiles[profile.id] = profile
        logger.debug("Saved job profile %s (%s)", profile.id, profile.title)
        return profile

    def get_job_profile(self, profile_id: str) -> JobProfile:
        try:
            return self._job_profiles[profile_id]
        except KeyError:
            raise NotFoundError(f"Job profile not found: {profile_id}") from None

    def list_job_profiles(self) -> List[JobProfile]:
        return list(self._job_profiles.values())

    def clear(self) -> None:
        self._candidates.clear()
        self._batches.clear()
        self._job_profiles.clear()
