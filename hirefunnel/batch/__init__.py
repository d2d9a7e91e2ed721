"""
Batch processing.

* `coordinator` – Admission-controlled, failure-isolated processing of
  a batch of résumés.
* `progress` – Ordered delivery of progress and completion events.
"""

from .coordinator import BatchConfig, BatchCoordinator  # noqa: F401
from .progress import BatchEvent, ItemOutcome, ProgressBroadcaster  # noqa: F401
