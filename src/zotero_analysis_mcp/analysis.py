"""Queries over the "Elicit Analysis" notes attached to a collection's items."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections import Counter
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from .logging_utils import Timer, configure_logging, log_event
from .models import Item, Note
from .notes import (
    NO_INTERVENTION,
    NOT_SPECIFIED,
    AnalysisField,
    NoteSelection,
    context_snippet,
    extract_field,
    has_label,
    html_to_text,
    is_informative,
    mentions_intervention,
    select_structured_note,
)
from .zotero_client import ZoteroConfig, list_all_collection_items, list_all_item_children

logger = configure_logging()

DEFAULT_CONCURRENCY = 8

FOCUS_AREAS: Dict[str, AnalysisField] = {
    "study_design": AnalysisField.STUDY_DESIGN,
    "statistical_techniques": AnalysisField.STATISTICAL_TECHNIQUES,
    "interventions": AnalysisField.INTERVENTION,
    "outcomes": AnalysisField.OUTCOME_MEASURED,
}

GAP_THEMES = (
    "machine learning",
    "intervention",
    "longitudinal",
    "causal",
    "randomized",
    "sample size",
    "methodology",
)


class NoteProvider(Protocol):
    async def fetch_items(self, collection_key: str) -> List[Item]: ...

    async def fetch_child_notes(self, item_key: str) -> List[Note]: ...


class ZoteroNoteProvider:
    """Reads items and child notes through the blocking Zotero client in worker threads."""

    def __init__(self, config: ZoteroConfig) -> None:
        self._config = config

    async def fetch_items(self, collection_key: str) -> List[Item]:
        raw_items = await asyncio.to_thread(
            list_all_collection_items,
            config=self._config,
            collection_key=collection_key,
        )
        return [Item.from_zotero(raw) for raw in raw_items]

    async def fetch_child_notes(self, item_key: str) -> List[Note]:
        children = await asyncio.to_thread(list_all_item_children, config=self._config, item_key=item_key)
        return [Note.from_zotero(child) for child in children]


def load_concurrency_from_env() -> int:
    try:
        value = int(os.environ.get("ZOTERO_NOTE_FETCH_CONCURRENCY", str(DEFAULT_CONCURRENCY)))
    except ValueError:
        return DEFAULT_CONCURRENCY
    return value if value > 0 else DEFAULT_CONCURRENCY


def load_selection_from_env() -> NoteSelection:
    raw = os.environ.get("ZOTERO_NOTE_SELECTION", NoteSelection.FIRST.value).strip().lower()
    try:
        return NoteSelection(raw)
    except ValueError:
        return NoteSelection.FIRST


class NoteAnalyzer:
    def __init__(
        self,
        provider: NoteProvider,
        *,
        selection: NoteSelection = NoteSelection.FIRST,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._provider = provider
        self._selection = selection
        self._concurrency = max(1, concurrency)

    async def _analysed(self, items: List[Item]) -> AsyncIterator[Tuple[Item, Note]]:
        """Yield ``(item, analysis note)`` pairs in collection order.

        Child notes are fetched concurrently one batch at a time, so a
        consumer that stops early never triggers lookups past its batch.
        A failed batch raises the error of its earliest failing item.
        """
        for offset in range(0, len(items), self._concurrency):
            batch = items[offset : offset + self._concurrency]
            batch_notes = await asyncio.gather(
                *(self._provider.fetch_child_notes(item.key) for item in batch),
                return_exceptions=True,
            )
            for outcome in batch_notes:
                if isinstance(outcome, BaseException):
                    raise outcome
            for item, notes in zip(batch, batch_notes):
                note = select_structured_note(notes, self._selection)
                if note is not None:
                    yield item, note

    async def search(
        self,
        collection_key: str,
        query: str,
        *,
        field: Optional[str] = None,
        study_design: Optional[str] = None,
        has_intervention: Optional[bool] = None,
        limit: int = 10,
    ) -> Dict[str, Any]:
        timer = Timer()
        target: Optional[AnalysisField] = None
        if field and field.strip().lower() != "all":
            target = AnalysisField.lookup(field)
            if target is None:
                raise ValueError(f"Unknown analysis field: {field}")
        pattern = re.compile(re.escape(query), re.IGNORECASE)
        design_filter = study_design.lower() if study_design else None

        items = await self._provider.fetch_items(collection_key)
        results: List[Dict[str, Any]] = []
        if limit > 0:
            async for item, note in self._analysed(items):
                if target is None:
                    haystack = html_to_text(note.content)
                else:
                    haystack = extract_field(note.content, target.label) or ""
                # Matched on the original text; lower() can change string length.
                found = pattern.search(haystack)
                if found is None:
                    continue
                lowered = note.content.lower()
                if design_filter and design_filter not in lowered:
                    continue
                if has_intervention is not None and mentions_intervention(lowered) != has_intervention:
                    continue
                match = item.reference()
                match["context"] = context_snippet(haystack, found.start())
                match["matched_field"] = target.label if target else "all"
                match["note_key"] = note.key
                results.append(match)
                if len(results) >= limit:
                    break

        log_event(
            logger,
            level=logging.INFO,
            event="analysis.search",
            collection_key=collection_key,
            items=len(items),
            matches=len(results),
            duration_ms=timer.elapsed_ms(),
        )
        return {
            "query": query,
            "search_field": target.key if target else "all",
            "filters": {"study_design": study_design, "has_intervention": has_intervention},
            "total_matches": len(results),
            "results": results,
        }

    async def summarize(self, collection_key: str, *, include_details: bool = False) -> Dict[str, Any]:
        items = await self._provider.fetch_items(collection_key)
        analysed = 0
        designs: Counter = Counter()
        regions: Counter = Counter()
        coverage: Dict[str, int] = {field.label: 0 for field in AnalysisField}
        papers: List[Dict[str, Any]] = []

        async for item, note in self._analysed(items):
            analysed += 1
            design = extract_field(note.content, AnalysisField.STUDY_DESIGN.label)
            if design:
                designs[design] += 1
            region = extract_field(note.content, AnalysisField.REGION.label)
            if region:
                regions[region] += 1
            present = [field.label for field in AnalysisField if has_label(note.content, field.label)]
            for label in present:
                coverage[label] += 1
            if include_details:
                papers.append({"key": item.key, "title": item.title, "fields_present": present})

        total = len(items)
        summary: Dict[str, Any] = {
            "total_items": total,
            "items_with_analysis": analysed,
            # Half-up rounding, so 1 of 8 reports 13.
            "coverage_percentage": int(100 * analysed / total + 0.5) if total else None,
            "study_designs": dict(designs.most_common()),
            "regions": dict(regions.most_common()),
            "field_coverage": coverage,
        }
        if include_details:
            summary["papers"] = papers
        log_event(
            logger,
            level=logging.INFO,
            event="analysis.summary",
            collection_key=collection_key,
            items=total,
            analysed=analysed,
        )
        return summary

    async def compare(self, collection_key: str, focus_area: str, *, limit: int = 20) -> Dict[str, Any]:
        field = FOCUS_AREAS.get(focus_area)
        if field is None:
            raise ValueError(f"Unknown focus area: {focus_area}")
        default = NO_INTERVENTION if field is AnalysisField.INTERVENTION else NOT_SPECIFIED

        items = await self._provider.fetch_items(collection_key)
        groups: Dict[str, List[Dict[str, Any]]] = {}
        grouped = 0
        if limit > 0:
            async for item, note in self._analysed(items):
                value = extract_field(note.content, field.label) or default
                groups.setdefault(value, []).append(item.reference())
                grouped += 1
                if grouped >= limit:
                    break

        return {
            "focus_area": focus_area,
            "field": field.label,
            "unique_approaches": len(groups),
            "total_papers": grouped,
            "groups": groups,
        }

    async def extract_gaps(self, collection_key: str, *, group_similar: bool = True) -> Dict[str, Any]:
        items = await self._provider.fetch_items(collection_key)
        gaps: List[Dict[str, Any]] = []
        papers = 0
        sources = (
            (AnalysisField.RESEARCH_GAPS, None),
            (AnalysisField.FUTURE_RESEARCH, "future_research"),
        )
        async for item, note in self._analysed(items):
            found = False
            for field, marker in sources:
                value = extract_field(note.content, field.label)
                if not is_informative(value):
                    continue
                record: Dict[str, Any] = {"paper_key": item.key, "paper_title": item.title, "gap": value}
                if marker:
                    record["type"] = marker
                gaps.append(record)
                found = True
            if found:
                papers += 1

        result: Dict[str, Any] = {"total_gaps": len(gaps), "papers_with_gaps": papers, "gaps": gaps}
        if group_similar:
            themes: Dict[str, List[Dict[str, Any]]] = {}
            for keyword in GAP_THEMES:
                matching = [gap for gap in gaps if keyword in gap["gap"].lower()]
                if matching:
                    themes[keyword] = matching
            result["themes"] = themes
        log_event(
            logger,
            level=logging.INFO,
            event="analysis.gaps",
            collection_key=collection_key,
            gaps=len(gaps),
            papers=papers,
        )
        return result
