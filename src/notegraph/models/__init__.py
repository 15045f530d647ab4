"""Data models for the notegraph index."""
