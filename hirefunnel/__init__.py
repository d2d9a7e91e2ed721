"""
hirefunnel: candidate funnel processing engine.

Résumés are uploaded in batches against a job profile.  Each résumé
becomes a candidate that moves through the analysis stages::

    resume -> ai-analysis -> linkedin -> github -> interview -> scoring

Sub-packages:

* `governor` – memory-pressure based admission control.
* `pool` – rate-limited, retrying, caching access to external services.
* `stages` – the stage scheduler and the per-stage analyzers.
* `batch` – batch coordination and progress events.
* `rank` – composite scoring, ranking and LLM providers.
* `storage` – candidate, batch and job profile persistence.

`app.FunnelApp` wires everything together; `cli` and `api` are the
command line and HTTP entry points.
"""

__version__ = "0.1.0"
