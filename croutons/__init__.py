"""
Croutons Graph Service

Signed NDJSON ingestion of croutons (atomic facts) and triples into Postgres,
with a trigger-fed transactional outbox drained by idempotent projectors.
"""

__version__ = "0.1.0"
