"""Link suggestions, wikilink validation and auto-linking."""
import logging
import re
from typing import Dict, List, Optional

from notegraph.config import config
from notegraph.models.schema import (AppliedLink, AutoLinkResult, LinkAggressiveness,
                                     LinkOpportunity, LinkReport, LinkSuggestion,
                                     LinkValidationResult, NoteLookupResult)
from notegraph.observability import traced
from notegraph.services.note_source import NoteSource
from notegraph.services.wikilink_parser import (create_wikilink, find_linkable_text,
                                                parse_target, parse_wikilinks,
                                                replace_wikilinks)

logger = logging.getLogger(__name__)

# Candidate pool sizes for the cheaper checks
OPPORTUNITY_CHECK_CANDIDATES = 50
REPORT_CANDIDATES = 100

MAX_CONTEXT_BOOST = 0.3


def calculate_relevance(query: str, title: str, filename: str) -> float:
    """Score how well a note matches ``query``.

    1.0 for an exact title or filename match, 0.8 for a prefix, 0.6 for a
    substring. Otherwise the share of query words found inside some title
    word, scaled to at most 0.4. Case-insensitive throughout.
    """
    query_lower = query.lower()
    title_lower = title.lower()
    filename_lower = filename.lower()

    if query_lower in (title_lower, filename_lower):
        return 1.0
    if title_lower.startswith(query_lower) or filename_lower.startswith(query_lower):
        return 0.8
    if query_lower in title_lower or query_lower in filename_lower:
        return 0.6

    query_words = re.split(r"\s+", query_lower)
    title_words = re.split(r"\s+", title_lower)
    matching = [w for w in query_words if any(w in tw for tw in title_words)]
    return len(matching) / len(query_words) * 0.4


def _resolve_overlaps(opportunities: List[LinkOpportunity]) -> List[LinkOpportunity]:
    """Drop spans that overlap an earlier kept span.

    Input is ordered by start, longest first at equal starts, so the
    earliest-starting longest span wins.
    """
    kept: List[LinkOpportunity] = []
    for opportunity in opportunities:
        if kept and opportunity.start < kept[-1].end:
            continue
        kept.append(opportunity)
    return kept


class LinkingService:
    """Suggestion engine over a :class:`NoteSource`.

    All lookups go through the note source, so the engine works the same
    against the index store or a directory of markdown files.
    """

    def __init__(
        self,
        note_source: NoteSource,
        suggestion_limit: Optional[int] = None,
        candidate_limit: Optional[int] = None,
    ):
        self.note_source = note_source
        self.suggestion_limit = (
            config.suggestion_limit if suggestion_limit is None else suggestion_limit
        )
        self.candidate_limit = (
            config.auto_link_candidate_limit if candidate_limit is None else candidate_limit
        )

    calculate_relevance = staticmethod(calculate_relevance)

    def _suggestion(
        self, note: NoteLookupResult, query: str, boost: float = 0.0
    ) -> LinkSuggestion:
        return LinkSuggestion(
            note_id=note.id,
            title=note.title,
            note_type=note.note_type,
            filename=note.filename,
            relevance=calculate_relevance(query, note.title, note.filename) + boost,
        )

    def target_exists(self, target: str) -> bool:
        return self.note_source.get_note(target) is not None

    @traced("get_suggestions_for_broken_link")
    def get_suggestions_for_broken_link(
        self,
        target: str,
        display: Optional[str] = None,
        note_type: Optional[str] = None,
    ) -> List[LinkSuggestion]:
        """Candidate notes for a wikilink target that does not resolve."""
        _, filename = parse_target(target)
        query = filename or display or target
        notes = self.note_source.search_notes(
            query, note_type=note_type, limit=self.suggestion_limit
        )
        # sorted() is stable, so search order breaks ties
        return sorted(
            (self._suggestion(note, query) for note in notes),
            key=lambda s: s.relevance,
            reverse=True,
        )

    @traced("validate_wikilinks")
    def validate_wikilinks(
        self, content: str, note_type: Optional[str] = None
    ) -> LinkValidationResult:
        result = LinkValidationResult()
        for link in parse_wikilinks(content):
            if self.target_exists(link.target):
                result.valid.append(link)
                continue
            result.broken.append(link)
            suggestions = self.get_suggestions_for_broken_link(
                link.target, link.display, note_type
            )
            if suggestions:
                result.suggestions[link.target] = suggestions
        return result

    def _linkable_opportunities(
        self, content: str, note_type: Optional[str], limit: int
    ) -> List[LinkOpportunity]:
        candidates = self.note_source.search_notes("", note_type=note_type, limit=limit)
        return find_linkable_text(content, candidates, scorer=calculate_relevance)

    @traced("auto_link_content")
    def auto_link_content(
        self,
        content: str,
        note_type: Optional[str] = None,
        aggressiveness: LinkAggressiveness = LinkAggressiveness.MODERATE,
    ) -> AutoLinkResult:
        """Turn plain-text mentions of note titles into wikilinks.

        Only opportunities whose best suggestion clears the aggressiveness
        threshold are applied.
        """
        aggressiveness = LinkAggressiveness(aggressiveness)
        opportunities = self._linkable_opportunities(
            content, note_type, self.candidate_limit
        )
        eligible = [
            o for o in opportunities
            if o.best is not None and o.best.relevance >= aggressiveness.threshold
        ]

        updated = content
        applied: List[AppliedLink] = []
        for opportunity in reversed(_resolve_overlaps(eligible)):
            best = opportunity.best
            wikilink = create_wikilink(best.note_type, best.filename, best.title)
            updated = updated[:opportunity.start] + wikilink + updated[opportunity.end:]
            applied.append(
                AppliedLink(
                    original_text=opportunity.text,
                    wikilink=wikilink,
                    start=opportunity.start,
                    note_id=best.note_id,
                    relevance=best.relevance,
                )
            )
        applied.reverse()

        if applied:
            logger.debug(f"Auto-linked {len(applied)} mention(s)")
        return AutoLinkResult(content=updated, applied=applied, opportunities=opportunities)

    def has_linking_opportunities(
        self, content: str, note_type: Optional[str] = None
    ) -> bool:
        return bool(
            self._linkable_opportunities(content, note_type, OPPORTUNITY_CHECK_CANDIDATES)
        )

    @traced("get_smart_link_suggestions")
    def get_smart_link_suggestions(
        self,
        partial_query: str,
        note_type: Optional[str] = None,
        context: Optional[str] = None,
        limit: int = 10,
    ) -> List[LinkSuggestion]:
        """Suggestions for a partially typed link, boosted by surrounding text.

        Each title or filename word that also appears in ``context`` adds
        0.1, up to 0.3.
        """
        notes = self.note_source.search_notes(
            partial_query, note_type=note_type, limit=limit * 2
        )
        context_words = set()
        if context:
            context_words = {
                w for w in re.split(r"\W+", context.lower()) if len(w) > 2
            }

        suggestions = []
        for note in notes:
            boost = 0.0
            if context_words:
                words = re.split(r"\W+", note.title.lower()) + re.split(
                    r"\W+", note.filename.lower()
                )
                matches = sum(1 for w in words if w in context_words)
                boost = min(matches * 0.1, MAX_CONTEXT_BOOST)
            suggestions.append(self._suggestion(note, partial_query, boost))

        suggestions.sort(key=lambda s: s.relevance, reverse=True)
        return suggestions[:limit]

    @traced("generate_link_report")
    def generate_link_report(
        self, content: str, note_type: Optional[str] = None
    ) -> LinkReport:
        links = parse_wikilinks(content)
        validation = self.validate_wikilinks(content, note_type)
        opportunities = self._linkable_opportunities(content, note_type, REPORT_CANDIDATES)

        word_count = len(re.split(r"\s+", content))
        density = len(links) / max(word_count, 1)
        return LinkReport(
            total_wikilinks=len(links),
            valid_links=len(links) - len(validation.broken),
            broken_links=len(validation.broken),
            linking_opportunities=len(opportunities),
            link_density=round(density, 3),
            broken_targets=[link.target for link in validation.broken],
        )

    def format_content_with_validated_links(
        self, content: str, validation: LinkValidationResult
    ) -> str:
        """Replace each broken wikilink that has suggestions with the best one."""
        replacements: Dict[str, str] = {}
        for broken in validation.broken:
            suggestions = validation.suggestions.get(broken.target)
            if not suggestions:
                continue
            best = suggestions[0]
            replacements[broken.raw] = create_wikilink(
                best.note_type, best.filename, broken.display or best.title
            )
        if not replacements:
            return content
        return replace_wikilinks(content, replacements)


