"""Persistence layer: index store, link tables and note sources."""
