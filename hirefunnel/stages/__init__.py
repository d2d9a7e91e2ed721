"""
Funnel stages.

* `scheduler` – Per-candidate stage cursor with failure isolation.
* `analyzers` – The collaborators that produce each stage's result.
* `interview` – Voice interview session lifecycle and retry limit.
"""

from .analyzers import (  # noqa: F401
    GitHubAnalyzer,
    InterviewAnalyzer,
    LinkedInAnalyzer,
    RelevanceAnalyzer,
    ResumeAnalyzer,
    StageAnalyzer,
)
from .interview import InterviewTracker  # noqa: F401
from .scheduler import StageScheduler  # noqa: F401
