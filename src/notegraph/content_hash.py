"""Content fingerprints for optimistic concurrency checks.

A fingerprint is ``"sha256:<hex>"`` of the UTF-8 encoded content. The
algorithm tag lets other digests coexist later without ambiguity.
"""
import hashlib
import json
from typing import Any, Dict, Optional

from notegraph.exceptions import ContentConflictError, MissingFingerprintError

HASH_ALGORITHM = "sha256"
HASH_PREFIX = f"{HASH_ALGORITHM}:"


def generate_content_hash(content: str) -> str:
    """Compute the fingerprint of note content."""
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return f"{HASH_PREFIX}{digest}"


def validate_content_hash(
    current_content: str,
    provided_hash: str,
    note_id: Optional[str] = None,
) -> None:
    """Check a caller's last-known fingerprint against current content.

    Raises:
        ContentConflictError: If the content changed since the caller read it.
    """
    current_hash = generate_content_hash(current_content)
    if current_hash != provided_hash:
        raise ContentConflictError(current_hash, provided_hash, note_id=note_id)


def require_content_hash(provided_hash: Optional[str], operation: str) -> str:
    """Return the fingerprint or raise MissingFingerprintError if absent."""
    if not provided_hash:
        raise MissingFingerprintError(operation)
    return provided_hash


def create_note_type_hashable_content(
    description: Optional[str] = None,
    agent_instructions: Optional[str] = None,
    metadata_schema: Optional[Dict[str, Any]] = None,
) -> str:
    """Canonical JSON of a note-type definition.

    Keys are sorted at every level so two schemas differing only in key
    order produce the same text.
    """
    payload = {
        "description": description or "",
        "agent_instructions": agent_instructions or "",
        "metadata_schema": metadata_schema or {},
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def generate_note_type_hash(
    description: Optional[str] = None,
    agent_instructions: Optional[str] = None,
    metadata_schema: Optional[Dict[str, Any]] = None,
) -> str:
    """Fingerprint of a note-type definition, for detecting definition drift."""
    return generate_content_hash(
        create_note_type_hashable_content(
            description, agent_instructions, metadata_schema
        )
    )
