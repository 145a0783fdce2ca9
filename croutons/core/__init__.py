"""Core primitives: configuration-free building blocks shared by ingest and drain."""
