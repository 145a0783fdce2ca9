"""NDJSON batch ingestion: parsing and the coordinator that persists a batch atomically."""
