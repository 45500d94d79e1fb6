"""
Job Queue

Broker (in-memory and Redis), retry classification and backoff, worker
pool, job processor, stage timer and dead-letter handling.
"""
