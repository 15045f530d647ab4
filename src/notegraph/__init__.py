"""
notegraph - a local knowledge-base index with a bidirectional link graph.

This package maintains a derived SQLite index over a collection of notes:
full-text search (FTS5), key/value metadata, and a wikilink graph extracted
from note bodies. It also versions the index schema, migrates it, and offers
link suggestions and auto-linking on top of the graph.

All operations are synchronous.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notegraph")
except PackageNotFoundError:
    __version__ = "0.3.0"
