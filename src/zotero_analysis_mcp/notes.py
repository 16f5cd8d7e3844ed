"""Recognition and field extraction for "Elicit Analysis" child notes.

Zotero stores notes as HTML fragments. An analysis note holds a series of
labelled sections, each label followed by the value in a paragraph::

    <h2>Elicit Analysis</h2>
    <h3>Study Design</h3><p>Randomized Controlled Trial</p>

Extraction is a best-effort scan over that markup. A missing or malformed
section yields ``None`` and is never an error.
"""

from __future__ import annotations

import enum
import re
from typing import Iterable, List, Optional

from .models import Note

STRUCTURED_MARKER = "Elicit Analysis"
STRUCTURED_TAG_MARKER = "elicit-analysis"
NOT_SPECIFIED = "Not specified"
NO_INTERVENTION = "No intervention"
MIN_INFORMATIVE_CHARS = 10

_BREAK_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
# &amp; is decoded last so "&amp;lt;" becomes "&lt;" and not "<".
_ENTITIES = (
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
)


class AnalysisField(enum.Enum):
    SUMMARY = ("summary", "Summary")
    FINDINGS = ("findings", "Main Findings")
    METHODOLOGY = ("methodology", "Methodology")
    LIMITATIONS = ("limitations", "Limitations")
    RESEARCH_QUESTION = ("research_question", "Research Question")
    INTERVENTION = ("intervention", "Intervention")
    STATISTICAL_TECHNIQUES = ("statistical_techniques", "Statistical Techniques")
    STUDY_DESIGN = ("study_design", "Study Design")
    REGION = ("region", "Region")
    RESEARCH_GAPS = ("research_gaps", "Research Gaps")
    FUTURE_RESEARCH = ("future_research", "Future Research")
    OUTCOME_MEASURED = ("outcome_measured", "Outcome Measured")

    def __init__(self, key: str, label: str) -> None:
        self.key = key
        self.label = label

    @classmethod
    def lookup(cls, name: str) -> Optional["AnalysisField"]:
        """Resolve a field by snake_case key or by its label, ignoring case."""
        wanted = name.strip().lower()
        for field in cls:
            if wanted in (field.key, field.label.lower()):
                return field
        return None

    @classmethod
    def keys(cls) -> List[str]:
        return [field.key for field in cls]


class NoteSelection(enum.Enum):
    """How to pick the analysis note of an item that has several."""

    FIRST = "first"
    MERGE = "merge"


def html_to_text(value: Optional[str]) -> str:
    if not value:
        return ""
    text = _BREAK_RE.sub(" ", str(value))
    text = _TAG_RE.sub("", text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return text.strip()


def is_structured_note(note: Note) -> bool:
    if note.note_type != "note" or not note.content:
        return False
    return STRUCTURED_MARKER in note.content or STRUCTURED_TAG_MARKER in note.content.lower()


def select_structured_note(
    notes: Iterable[Note],
    selection: NoteSelection = NoteSelection.FIRST,
) -> Optional[Note]:
    structured = [note for note in notes if is_structured_note(note)]
    if not structured:
        return None
    first = structured[0]
    if selection is NoteSelection.FIRST or len(structured) == 1:
        return first
    return Note(
        key=first.key,
        parent_key=first.parent_key,
        content="\n".join(note.content for note in structured),
        note_type=first.note_type,
    )


def _find_paragraph_open(content: str, start: int) -> Optional[int]:
    """Return the index just past the next ``<p>``/``<p ...>`` tag at or after ``start``."""
    lowered = content.lower()
    position = start
    while True:
        index = lowered.find("<p", position)
        if index == -1:
            return None
        after = index + 2
        if after < len(lowered) and (lowered[after] == ">" or lowered[after].isspace()):
            close = lowered.find(">", after)
            return None if close == -1 else close + 1
        position = after


def extract_field(content: Optional[str], label: str) -> Optional[str]:
    if not isinstance(content, str) or not content or not label:
        return None
    label_index = content.lower().find(label.lower())
    if label_index == -1:
        return None
    value_start = _find_paragraph_open(content, label_index + len(label))
    if value_start is None:
        return None
    value_end = content.lower().find("</p>", value_start)
    if value_end == -1:
        return None
    return html_to_text(content[value_start:value_end])


def has_label(content: Optional[str], label: str) -> bool:
    return isinstance(content, str) and label.lower() in content.lower()


def is_informative(value: Optional[str]) -> bool:
    return bool(value) and value != NOT_SPECIFIED and len(value) > MIN_INFORMATIVE_CHARS


def mentions_intervention(content: Optional[str]) -> bool:
    # Substring heuristic: "intervention-free" counts as having one.
    lowered = (content or "").lower()
    return "intervention" in lowered and "no intervention" not in lowered


def context_snippet(text: str, index: int, before: int = 100, after: int = 200) -> str:
    start = max(0, index - before)
    return text[start : index + after]
