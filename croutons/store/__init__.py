"""
Persistent store: schema, capture rules, fact writes and the outbox protocol.

Postgres is the single source of truth. Nothing in this package caches rows
across requests.
"""
