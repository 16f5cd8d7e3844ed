"""Read-only views of Zotero items and child notes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple


def _data(raw: Dict[str, Any]) -> Dict[str, Any]:
    return raw.get("data") if isinstance(raw.get("data"), dict) else {}


def normalize_creators(creators: Any) -> List[Dict[str, str]]:
    if not isinstance(creators, list):
        return []
    normalized: List[Dict[str, str]] = []
    for creator in creators:
        if not isinstance(creator, dict):
            continue
        entry: Dict[str, str] = {}
        if creator.get("creatorType"):
            entry["creator_type"] = str(creator["creatorType"])
        if creator.get("name"):
            entry["name"] = str(creator["name"])
        else:
            if creator.get("firstName"):
                entry["first_name"] = str(creator["firstName"])
            if creator.get("lastName"):
                entry["last_name"] = str(creator["lastName"])
        if entry.keys() - {"creator_type"}:
            normalized.append(entry)
    return normalized


def normalize_tags(tags: Any) -> List[str]:
    if not isinstance(tags, list):
        return []
    output: List[str] = []
    for tag in tags:
        if isinstance(tag, dict) and tag.get("tag"):
            output.append(str(tag["tag"]))
        elif isinstance(tag, str) and tag:
            output.append(tag)
    return output


def creator_display_name(creator: Dict[str, str]) -> str:
    if creator.get("name"):
        return creator["name"]
    parts = [creator.get("last_name", ""), creator.get("first_name", "")]
    return ", ".join(part for part in parts if part)


@dataclass(frozen=True)
class Item:
    key: str
    title: str = ""
    item_type: str = ""
    creators: Tuple[Dict[str, str], ...] = ()
    tags: Tuple[str, ...] = ()
    date: str = ""
    date_added: str = ""

    @classmethod
    def from_zotero(cls, raw: Dict[str, Any]) -> "Item":
        data = _data(raw)
        return cls(
            key=str(raw.get("key") or data.get("key") or ""),
            title=str(data.get("title") or ""),
            item_type=str(data.get("itemType") or ""),
            creators=tuple(normalize_creators(data.get("creators"))),
            tags=tuple(normalize_tags(data.get("tags"))),
            date=str(data.get("date") or ""),
            date_added=str(data.get("dateAdded") or ""),
        )

    def reference(self) -> Dict[str, Any]:
        """The identifying fields every query result carries."""
        return {"key": self.key, "title": self.title, "creators": [dict(c) for c in self.creators]}


@dataclass(frozen=True)
class Note:
    key: str
    parent_key: str
    content: str
    note_type: str = "note"

    @classmethod
    def from_zotero(cls, raw: Dict[str, Any]) -> "Note":
        data = _data(raw)
        content = data.get("note")
        return cls(
            key=str(raw.get("key") or data.get("key") or ""),
            parent_key=str(data.get("parentItem") or ""),
            content=content if isinstance(content, str) else "",
            note_type=str(data.get("itemType") or ""),
        )
