"""
Domain layer for the subscription lifecycle.

This layer contains:
- Data models (subscriber records, outcomes, summaries)
- Error taxonomy (user-facing vs retryable)
- Business logic (add/confirm transitions, scrub pass)
"""
