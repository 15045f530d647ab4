"""Parsing and rewriting of ``[[target|display]]`` wikilinks."""
import re
from typing import Dict, Iterable, List, Optional, Tuple

from notegraph.models.schema import (LinkOpportunity, LinkSuggestion,
                                     NoteLookupResult, ParsedWikilink)
from notegraph.utils import split_note_id

WIKILINK_PATTERN = re.compile(r"\[\[([^\]|]+)(\|([^\]]+))?\]\]")

# Titles shorter than this are too ambiguous to auto-link
MIN_LINKABLE_TITLE_LENGTH = 3


def parse_wikilinks(content: str) -> List[ParsedWikilink]:
    """Find every wikilink in ``content``, in document order.

    Targets and display text are stripped of surrounding whitespace; an
    empty display after stripping counts as absent.
    """
    links = []
    for match in WIKILINK_PATTERN.finditer(content):
        target = match.group(1).strip()
        display = (match.group(3) or "").strip() or None
        links.append(
            ParsedWikilink(
                raw=match.group(0),
                target=target,
                display=display,
                start=match.start(),
                end=match.end(),
                line_number=content.count("\n", 0, match.start()) + 1,
            )
        )
    return links


def parse_target(target: str) -> Tuple[Optional[str], str]:
    """Split a target into ``(type, filename)``; type is None if omitted."""
    note_type, filename = split_note_id(target.strip())
    if note_type is not None and "/" in filename:
        # Only a single type/filename separator is a typed target
        return None, target.strip()
    return note_type, filename


def create_wikilink(note_type: str, filename: str, display: Optional[str] = None) -> str:
    target = f"{note_type}/{filename}"
    return f"[[{target}|{display}]]" if display else f"[[{target}]]"


def count_wikilinks(content: str) -> int:
    return len(WIKILINK_PATTERN.findall(content))


def remove_wikilinks(content: str) -> str:
    """Replace each wikilink with its visible text."""
    return WIKILINK_PATTERN.sub(
        lambda m: (m.group(3) or m.group(1)).strip(), content
    )


def replace_wikilinks(content: str, replacements: Dict[str, str]) -> str:
    """Swap whole wikilinks for new markup.

    ``replacements`` is keyed by either the raw link text (``[[a|b]]``) or
    its target. Edits are applied from the end of the document backwards
    so earlier offsets stay valid.
    """
    updated = content
    for link in sorted(parse_wikilinks(content), key=lambda l: l.start, reverse=True):
        replacement = replacements.get(link.raw, replacements.get(link.target))
        if replacement is not None:
            updated = updated[:link.start] + replacement + updated[link.end:]
    return updated


def is_inside_wikilink(links: Iterable[ParsedWikilink], start: int, end: int) -> bool:
    return any(start >= link.start and end <= link.end for link in links)


def find_linkable_text(
    content: str,
    available_notes: Iterable[NoteLookupResult],
    scorer=None,
) -> List[LinkOpportunity]:
    """Find plain-text occurrences of note titles that could become links.

    Matching is whole-word and case-insensitive; text already inside a
    wikilink is ignored. ``scorer(query, title, filename)`` rates each
    candidate against the matched text; without one every candidate
    scores 1.0. Results are ordered by position.
    """
    by_title: Dict[str, List[NoteLookupResult]] = {}
    for note in available_notes:
        by_title.setdefault(note.title.lower(), []).append(note)

    existing = parse_wikilinks(content)
    opportunities = []
    for title, notes in by_title.items():
        if len(title) < MIN_LINKABLE_TITLE_LENGTH:
            continue
        pattern = re.compile(rf"\b{re.escape(title)}\b", re.IGNORECASE)
        for match in pattern.finditer(content):
            if is_inside_wikilink(existing, match.start(), match.end()):
                continue
            suggestions = [
                LinkSuggestion(
                    note_id=note.id,
                    title=note.title,
                    note_type=note.note_type,
                    filename=note.filename,
                    relevance=(
                        scorer(match.group(0), note.title, note.filename)
                        if scorer else 1.0
                    ),
                )
                for note in notes
            ]
            suggestions.sort(key=lambda s: s.relevance, reverse=True)
            opportunities.append(
                LinkOpportunity(
                    text=match.group(0),
                    start=match.start(),
                    end=match.end(),
                    suggestions=suggestions,
                )
            )
    opportunities.sort(key=lambda o: (o.start, -(o.end - o.start)))
    return opportunities
