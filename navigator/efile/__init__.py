"""E-file submission layer.

Moves tax returns from "ready" to an agency acknowledgment:
  - Federal queue (IRS MeF): priority ordering, backoff retries, dead-letter
  - Maryland queue (iFile): federal-first gating, county tax validation,
    peak-season tuning
  - Per-gateway circuit breaker
  - In-process polling worker
"""
