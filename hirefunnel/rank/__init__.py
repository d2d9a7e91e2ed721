"""
Scoring subsystem for the funnel.

* `scoring` – Combines the stage scores into a renormalized composite,
  assigns a recommendation tier and ranks candidates.
* `llm_providers` – LLM back ends used by the AI relevance and
  interview stages.
"""

from .scoring import RankingOptions, ScoringEngine, ScoringThresholds  # noqa: F401
from .llm_providers import LLMProvider, PlaceholderProvider, get_default_provider  # noqa: F401
