"""AI call scheduling and fallback layer.

Provides async infrastructure for generating text through flaky,
quota-limited providers with:
  - Adaptive Rate Tracker (per-model spacing that reacts to 429s)
  - Provider Adapters (wire format per vendor)
  - Request Executor (one call with timeout, cancellation, usage accounting)
  - Fallback Orchestrator (candidate queue, lifecycle events, aggregate error)
"""
