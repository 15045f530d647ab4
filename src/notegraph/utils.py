"""Small helpers shared by the storage and service layers."""
import datetime
import re
from typing import Optional, Tuple

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


def utc_now() -> datetime.datetime:
    """Timezone-aware current time, used for created/updated stamps."""
    return datetime.datetime.now(datetime.timezone.utc)


def make_note_id(note_type: str, filename: str) -> str:
    """Build the stable ``type/filename`` identifier of a note."""
    return f"{note_type}/{filename}"


def split_note_id(identifier: str) -> Tuple[Optional[str], str]:
    """Split ``type/filename`` into its parts.

    A bare filename yields ``(None, filename)``. Only the first slash
    separates the type, so nested filenames are kept intact.
    """
    if "/" not in identifier:
        return None, identifier
    note_type, filename = identifier.split("/", 1)
    return note_type, filename


def strip_md_extension(filename: str) -> str:
    if filename.lower().endswith(".md"):
        return filename[:-3]
    return filename


def looks_like_date(value: str) -> bool:
    """True for strings starting with an ISO ``YYYY-MM-DD`` date."""
    return bool(_DATE_PREFIX.match(value))


def parse_version(version: str) -> Tuple[int, ...]:
    """Parse a dot-separated numeric version such as ``"1.10.2"``.

    Raises:
        ValueError: If any component is not a non-negative integer.
    """
    parts = version.strip().split(".")
    if not version.strip() or any(not p.isdigit() for p in parts):
        raise ValueError(f"Invalid version string: {version!r}")
    return tuple(int(p) for p in parts)


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 comparing versions left to right.

    Missing trailing components count as zero, so ``"1.1"`` equals ``"1.1.0"``.
    """
    pa, pb = parse_version(a), parse_version(b)
    width = max(len(pa), len(pb))
    pa = pa + (0,) * (width - len(pa))
    pb = pb + (0,) * (width - len(pb))
    return (pa > pb) - (pa < pb)


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Use together with ``ESCAPE '\\'`` in the LIKE clause.

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\\\_name'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)
