"""MCP stdio server exposing a Zotero collection and its analysis notes (SDK-based)."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import mcp.server.stdio
import mcp.types as types
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from . import __version__
from .analysis import (
    FOCUS_AREAS,
    NoteAnalyzer,
    ZoteroNoteProvider,
    load_concurrency_from_env,
    load_selection_from_env,
)
from .logging_utils import Timer, configure_logging, correlation_id_scope, log_event
from .models import Item
from .notes import AnalysisField, html_to_text
from .overview import build_collection_overview, recent_items
from .zotero_client import (
    ZoteroConfig,
    ZoteroError,
    export_collection_items,
    get_collection,
    get_item,
    get_items_with_bibliography,
    list_all_collection_items,
    list_all_item_children,
    list_collection_items,
    list_collection_tags,
    list_collections,
    load_config_from_env,
    parse_next_start,
    parse_total_results,
    search_collection_items,
)

server = Server("zotero-analysis-mcp")
logger = configure_logging()

ITEM_FORMATS = ["json", "bibtex", "ris"]
BIBLIOGRAPHY_FORMATS = ["html", "text"]
SEARCH_FIELDS = ["all"] + AnalysisField.keys()
DEFAULT_STYLE = "apa"
MAX_RECENT_DAYS = 3650

_ERROR_SCHEMA = {
    "type": ["object", "null"],
    "properties": {
        "code": {"type": "string"},
        "message": {"type": "string"},
        "details": {"type": "object"},
    },
}

_COLLECTION_KEY_PROPERTY = {
    "type": "string",
    "minLength": 1,
    "description": "Collection to read. Defaults to ZOTERO_COLLECTION_ID.",
}


def _envelope(data_properties: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "ok": {"type": "boolean"},
            "data": {"type": ["object", "null"], "properties": data_properties},
            "error": _ERROR_SCHEMA,
        },
        "required": ["ok", "data", "error"],
    }


def _limit_property(default: int) -> Dict[str, Any]:
    return {"type": "integer", "minimum": 1, "maximum": 100, "default": default}


def _input(properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "additionalProperties": False, "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _tool_list() -> List[types.Tool]:
    return [
        types.Tool(
            name="zotero_list_collections",
            description="List collections in the Zotero library.",
            inputSchema=_input(
                {
                    "limit": _limit_property(25),
                    "start": {"type": "integer", "minimum": 0, "default": 0},
                }
            ),
            outputSchema=_envelope(
                {
                    "collections": {"type": "array"},
                    "total": {"type": "integer"},
                    "next_start": {"type": "integer"},
                }
            ),
        ),
        types.Tool(
            name="zotero_get_collection_info",
            description="Get the name, parent and item counts of the configured collection.",
            inputSchema=_input({"collection_key": _COLLECTION_KEY_PROPERTY}),
            outputSchema=_envelope({"collection": {"type": "object"}}),
        ),
        types.Tool(
            name="zotero_list_items",
            description="List top-level items in the collection as JSON, BibTeX or RIS.",
            inputSchema=_input(
                {
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "limit": _limit_property(25),
                    "start": {"type": "integer", "minimum": 0, "default": 0},
                    "format": {"type": "string", "enum": ITEM_FORMATS, "default": "json"},
                }
            ),
            outputSchema=_envelope(
                {
                    "collection_key": {"type": "string"},
                    "format": {"type": "string"},
                    "items": {"type": "array"},
                    "content": {"type": "string"},
                    "total": {"type": "integer"},
                    "next_start": {"type": "integer"},
                }
            ),
        ),
        types.Tool(
            name="zotero_search_items",
            description="Search items within the collection using Zotero quick search.",
            inputSchema=_input(
                {
                    "query": {"type": "string", "minLength": 1},
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "item_type": {"type": "string", "minLength": 1},
                    "tag": {"type": "string", "minLength": 1},
                    "limit": _limit_property(25),
                    "start": {"type": "integer", "minimum": 0, "default": 0},
                },
                required=["query"],
            ),
            outputSchema=_envelope(
                {
                    "query": {"type": "string"},
                    "items": {"type": "array"},
                    "total": {"type": "integer"},
                    "next_start": {"type": "integer"},
                }
            ),
        ),
        types.Tool(
            name="zotero_get_item_details",
            description="Fetch full metadata for one item, optionally with its notes and attachments.",
            inputSchema=_input(
                {
                    "item_key": {"type": "string", "minLength": 1},
                    "include_children": {"type": "boolean", "default": False},
                },
                required=["item_key"],
            ),
            outputSchema=_envelope({"item": {"type": "object"}}),
        ),
        types.Tool(
            name="zotero_get_collection_tags",
            description="List tags used in the collection with their item counts.",
            inputSchema=_input(
                {
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "limit": _limit_property(100),
                }
            ),
            outputSchema=_envelope({"tags": {"type": "array"}, "total": {"type": "integer"}}),
        ),
        types.Tool(
            name="zotero_generate_bibliography",
            description=(
                "Render a bibliography with a Zotero citation style."
                " Uses the first items of the collection when item_keys is omitted."
            ),
            inputSchema=_input(
                {
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "item_keys": {
                        "type": "array",
                        "items": {"type": "string", "minLength": 1},
                        "uniqueItems": True,
                        "maxItems": 100,
                    },
                    "style": {"type": "string", "minLength": 1, "default": DEFAULT_STYLE},
                    "format": {"type": "string", "enum": BIBLIOGRAPHY_FORMATS, "default": "html"},
                    "limit": _limit_property(50),
                }
            ),
            outputSchema=_envelope(
                {
                    "style": {"type": "string"},
                    "format": {"type": "string"},
                    "entries": {"type": "array"},
                    "total": {"type": "integer"},
                }
            ),
        ),
        types.Tool(
            name="zotero_get_recent_items",
            description="List items added to the collection in the last N days, newest first.",
            inputSchema=_input(
                {
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "limit": _limit_property(10),
                    "days": {"type": "integer", "minimum": 1, "maximum": MAX_RECENT_DAYS, "default": 30},
                }
            ),
            outputSchema=_envelope(
                {"days": {"type": "integer"}, "items": {"type": "array"}, "total": {"type": "integer"}}
            ),
        ),
        types.Tool(
            name="zotero_get_collection_overview",
            description="Summarize the collection: item types, publication years and top authors.",
            inputSchema=_input({"collection_key": _COLLECTION_KEY_PROPERTY}),
            outputSchema=_envelope(
                {
                    "total_items": {"type": "integer"},
                    "item_types": {"type": "object"},
                    "years": {"type": "object"},
                    "top_authors": {"type": "array"},
                }
            ),
        ),
        types.Tool(
            name="zotero_search_analysis",
            description="Search the Elicit Analysis notes of the collection, optionally within one field.",
            inputSchema=_input(
                {
                    "query": {"type": "string", "minLength": 1},
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "search_field": {"type": "string", "enum": SEARCH_FIELDS, "default": "all"},
                    "study_design": {"type": "string", "minLength": 1},
                    "has_intervention": {"type": "boolean"},
                    "limit": _limit_property(10),
                },
                required=["query"],
            ),
            outputSchema=_envelope(
                {
                    "query": {"type": "string"},
                    "search_field": {"type": "string"},
                    "filters": {"type": "object"},
                    "total_matches": {"type": "integer"},
                    "results": {"type": "array"},
                }
            ),
        ),
        types.Tool(
            name="zotero_get_analysis_summary",
            description="Report how many papers carry an analysis note and which fields they cover.",
            inputSchema=_input(
                {
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "include_details": {"type": "boolean", "default": False},
                }
            ),
            outputSchema=_envelope(
                {
                    "total_items": {"type": "integer"},
                    "items_with_analysis": {"type": "integer"},
                    "coverage_percentage": {"type": ["integer", "null"]},
                    "study_designs": {"type": "object"},
                    "regions": {"type": "object"},
                    "field_coverage": {"type": "object"},
                    "papers": {"type": "array"},
                }
            ),
        ),
        types.Tool(
            name="zotero_compare_methodologies",
            description="Group analysed papers by study design, statistics, intervention or outcome.",
            inputSchema=_input(
                {
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "focus_area": {"type": "string", "enum": list(FOCUS_AREAS), "default": "study_design"},
                    "limit": _limit_property(20),
                }
            ),
            outputSchema=_envelope(
                {
                    "focus_area": {"type": "string"},
                    "field": {"type": "string"},
                    "unique_approaches": {"type": "integer"},
                    "total_papers": {"type": "integer"},
                    "groups": {"type": "object"},
                }
            ),
        ),
        types.Tool(
            name="zotero_extract_research_gaps",
            description="Collect research gaps and future research directions, optionally grouped by theme.",
            inputSchema=_input(
                {
                    "collection_key": _COLLECTION_KEY_PROPERTY,
                    "group_similar": {"type": "boolean", "default": True},
                }
            ),
            outputSchema=_envelope(
                {
                    "total_gaps": {"type": "integer"},
                    "papers_with_gaps": {"type": "integer"},
                    "gaps": {"type": "array"},
                    "themes": {"type": "object"},
                }
            ),
        ),
    ]


@server.list_tools()
async def list_tools() -> List[types.Tool]:
    return _tool_list()


def _validation_error(message: str) -> ZoteroError:
    return ZoteroError("ZOTERO_VALIDATION_ERROR", message)


def _require_object(args: Any) -> Dict[str, Any]:
    if not isinstance(args, dict):
        raise _validation_error("Arguments must be an object.")
    return args


def _int_arg(args: Dict[str, Any], name: str, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    value = args.get(name, default)
    if value is None:
        value = default
    if isinstance(value, bool) or not isinstance(value, int):
        raise _validation_error(f"{name} must be an integer.")
    if maximum is not None and (value < minimum or value > maximum):
        raise _validation_error(f"{name} must be between {minimum} and {maximum}.")
    if value < minimum:
        raise _validation_error(f"{name} must be greater than or equal to {minimum}.")
    return value


def _bool_arg(args: Dict[str, Any], name: str, default: Optional[bool]) -> Optional[bool]:
    value = args.get(name, default)
    if value is not None and not isinstance(value, bool):
        raise _validation_error(f"{name} must be a boolean.")
    return value


def _optional_str(args: Dict[str, Any], name: str) -> Optional[str]:
    value = args.get(name)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise _validation_error(f"{name} must be a non-empty string when provided.")
    return value.strip()


def _required_str(args: Dict[str, Any], name: str) -> str:
    value = args.get(name)
    if not isinstance(value, str) or not value.strip():
        raise _validation_error(f"{name} is required and must be a non-empty string.")
    return value.strip()


def _choice_arg(args: Dict[str, Any], name: str, choices: List[str], default: str) -> str:
    value = args.get(name, default)
    if value is None:
        value = default
    if not isinstance(value, str) or value.strip().lower() not in choices:
        raise _validation_error(f"{name} must be one of: {', '.join(choices)}.")
    return value.strip().lower()


def _validate_list_collections_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {"limit": _int_arg(args, "limit", 25, 1, 100), "start": _int_arg(args, "start", 0, 0)}


def _validate_collection_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {"collection_key": _optional_str(args, "collection_key")}


def _validate_list_items_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "collection_key": _optional_str(args, "collection_key"),
        "limit": _int_arg(args, "limit", 25, 1, 100),
        "start": _int_arg(args, "start", 0, 0),
        "format": _choice_arg(args, "format", ITEM_FORMATS, "json"),
    }


def _validate_search_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "query": _required_str(args, "query"),
        "collection_key": _optional_str(args, "collection_key"),
        "item_type": _optional_str(args, "item_type"),
        "tag": _optional_str(args, "tag"),
        "limit": _int_arg(args, "limit", 25, 1, 100),
        "start": _int_arg(args, "start", 0, 0),
    }


def _validate_item_details_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "item_key": _required_str(args, "item_key"),
        "include_children": _bool_arg(args, "include_children", False),
    }


def _validate_tags_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {"collection_key": _optional_str(args, "collection_key"), "limit": _int_arg(args, "limit", 100, 1, 100)}


def _validate_bibliography_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    item_keys = args.get("item_keys")
    if item_keys is not None:
        if not isinstance(item_keys, list) or not all(isinstance(key, str) and key.strip() for key in item_keys):
            raise _validation_error("item_keys must be an array of non-empty strings.")
        item_keys = list(dict.fromkeys(key.strip() for key in item_keys))
        if len(item_keys) > 100:
            raise _validation_error("item_keys must contain at most 100 keys.")
    style = args.get("style", DEFAULT_STYLE)
    if style is None:
        style = DEFAULT_STYLE
    if not isinstance(style, str) or not style.strip():
        raise _validation_error("style must be a non-empty string.")
    return {
        "collection_key": _optional_str(args, "collection_key"),
        "item_keys": item_keys or None,
        "style": style.strip(),
        "format": _choice_arg(args, "format", BIBLIOGRAPHY_FORMATS, "html"),
        "limit": _int_arg(args, "limit", 50, 1, 100),
    }


def _validate_recent_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "collection_key": _optional_str(args, "collection_key"),
        "limit": _int_arg(args, "limit", 10, 1, 100),
        "days": _int_arg(args, "days", 30, 1, MAX_RECENT_DAYS),
    }


def _validate_analysis_search_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "query": _required_str(args, "query"),
        "collection_key": _optional_str(args, "collection_key"),
        "search_field": _choice_arg(args, "search_field", SEARCH_FIELDS, "all"),
        "study_design": _optional_str(args, "study_design"),
        "has_intervention": _bool_arg(args, "has_intervention", None),
        "limit": _int_arg(args, "limit", 10, 1, 100),
    }


def _validate_summary_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "collection_key": _optional_str(args, "collection_key"),
        "include_details": _bool_arg(args, "include_details", False),
    }


def _validate_compare_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "collection_key": _optional_str(args, "collection_key"),
        "focus_area": _choice_arg(args, "focus_area", list(FOCUS_AREAS), "study_design"),
        "limit": _int_arg(args, "limit", 20, 1, 100),
    }


def _validate_gaps_args(args: Any) -> Dict[str, Any]:
    args = _require_object(args)
    return {
        "collection_key": _optional_str(args, "collection_key"),
        "group_similar": _bool_arg(args, "group_similar", True),
    }


def _resolve_collection_key(config: ZoteroConfig, requested: Optional[str]) -> str:
    collection_key = requested or config.collection_key
    if not collection_key:
        raise _validation_error("collection_key is required when ZOTERO_COLLECTION_ID is not set.")
    return collection_key


def _normalize_collection(collection: Dict[str, Any]) -> Dict[str, Any]:
    data = collection.get("data") if isinstance(collection.get("data"), dict) else {}
    meta = collection.get("meta") if isinstance(collection.get("meta"), dict) else {}
    payload: Dict[str, Any] = {
        "collection_key": collection.get("key", ""),
        "name": data.get("name", ""),
        "parent_key": data.get("parentCollection") or None,
    }
    for source, target in (("numItems", "num_items"), ("numCollections", "num_collections")):
        if isinstance(meta.get(source), int):
            payload[target] = meta[source]
    return payload


def _item_payload(item: Item) -> Dict[str, Any]:
    payload = item.reference()
    payload.update(
        {
            "item_type": item.item_type,
            "date": item.date,
            "date_added": item.date_added,
            "tags": list(item.tags),
        }
    )
    return payload


def _item_summary(raw: Dict[str, Any]) -> Dict[str, Any]:
    return _item_payload(Item.from_zotero(raw))


def _item_details(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    payload = _item_summary(raw)
    payload.update(
        {
            "abstract": data.get("abstractNote", ""),
            "publication": data.get("publicationTitle", ""),
            "volume": data.get("volume", ""),
            "issue": data.get("issue", ""),
            "pages": data.get("pages", ""),
            "doi": data.get("DOI", ""),
            "url": data.get("url", ""),
            "collections": list(data.get("collections") or []),
        }
    )
    return payload


def _normalize_child(child: Dict[str, Any]) -> Dict[str, Any]:
    data = child.get("data") if isinstance(child.get("data"), dict) else {}
    entry: Dict[str, Any] = {
        "key": child.get("key", ""),
        "type": data.get("itemType", ""),
        "title": data.get("title", ""),
    }
    if data.get("note"):
        entry["note"] = html_to_text(data["note"])
    if data.get("contentType"):
        entry["content_type"] = data["contentType"]
    return entry


def _normalize_tag(tag: Dict[str, Any]) -> Dict[str, Any]:
    meta = tag.get("meta") if isinstance(tag.get("meta"), dict) else {}
    return {"name": tag.get("tag", ""), "num_items": meta.get("numItems", 0) or 0}


def _page_payload(headers: Dict[str, str], count: int) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"total": parse_total_results(headers) or count}
    next_start = parse_next_start(headers)
    if next_start is not None:
        payload["next_start"] = next_start
    return payload


def _build_analyzer(config: ZoteroConfig) -> NoteAnalyzer:
    return NoteAnalyzer(
        ZoteroNoteProvider(config),
        selection=load_selection_from_env(),
        concurrency=load_concurrency_from_env(),
    )


async def _list_collections(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_list_collections_args(arguments)
    config = load_config_from_env()
    raw_collections, headers = await asyncio.to_thread(list_collections, config=config, **validated)
    collections = [_normalize_collection(collection) for collection in raw_collections]
    payload: Dict[str, Any] = {"collections": collections}
    payload.update(_page_payload(headers, len(collections)))
    return payload


async def _get_collection_info(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_collection_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    collection = await asyncio.to_thread(get_collection, config=config, collection_key=collection_key)
    return {"collection": _normalize_collection(collection)}


async def _list_items(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_list_items_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    if validated["format"] != "json":
        content = await asyncio.to_thread(
            export_collection_items,
            config=config,
            collection_key=collection_key,
            export_format=validated["format"],
            limit=validated["limit"],
            start=validated["start"],
        )
        return {"collection_key": collection_key, "format": validated["format"], "content": content}
    raw_items, headers = await asyncio.to_thread(
        list_collection_items,
        config=config,
        collection_key=collection_key,
        limit=validated["limit"],
        start=validated["start"],
    )
    items = [_item_summary(item) for item in raw_items]
    payload: Dict[str, Any] = {"collection_key": collection_key, "format": "json", "items": items}
    payload.update(_page_payload(headers, len(items)))
    return payload


async def _search_items(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_search_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated.pop("collection_key"))
    raw_items, headers = await asyncio.to_thread(
        search_collection_items,
        config=config,
        collection_key=collection_key,
        **validated,
    )
    items = [_item_summary(item) for item in raw_items]
    payload: Dict[str, Any] = {"query": validated["query"], "items": items}
    payload.update(_page_payload(headers, len(items)))
    return payload


async def _get_item_details(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_item_details_args(arguments)
    config = load_config_from_env()
    raw_item, _headers = await asyncio.to_thread(get_item, config=config, item_key=validated["item_key"])
    item = _item_details(raw_item)
    if validated["include_children"]:
        children = await asyncio.to_thread(list_all_item_children, config=config, item_key=validated["item_key"])
        item["children"] = [_normalize_child(child) for child in children]
    return {"item": item}


async def _get_collection_tags(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_tags_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    raw_tags, headers = await asyncio.to_thread(
        list_collection_tags,
        config=config,
        collection_key=collection_key,
        limit=validated["limit"],
    )
    tags = [_normalize_tag(tag) for tag in raw_tags if isinstance(tag, dict)]
    payload: Dict[str, Any] = {"tags": tags}
    payload.update(_page_payload(headers, len(tags)))
    return payload


async def _generate_bibliography(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_bibliography_args(arguments)
    config = load_config_from_env()
    collection_key = None
    if not validated["item_keys"]:
        collection_key = _resolve_collection_key(config, validated["collection_key"])
    raw_items = await asyncio.to_thread(
        get_items_with_bibliography,
        config=config,
        style=validated["style"],
        item_keys=validated["item_keys"],
        collection_key=collection_key,
        limit=validated["limit"],
    )
    entries = []
    for raw in raw_items:
        bib = raw.get("bib") if isinstance(raw.get("bib"), str) else ""
        entries.append({"key": raw.get("key", ""), "entry": html_to_text(bib) if validated["format"] == "text" else bib})
    return {"style": validated["style"], "format": validated["format"], "entries": entries, "total": len(entries)}


async def _get_recent_items(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_recent_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    # Sorted newest first, so one page of `limit` items is enough.
    raw_items, _headers = await asyncio.to_thread(
        list_collection_items,
        config=config,
        collection_key=collection_key,
        limit=validated["limit"],
        sort="dateAdded",
        direction="desc",
    )
    items = recent_items(
        [Item.from_zotero(raw) for raw in raw_items],
        days=validated["days"],
        limit=validated["limit"],
    )
    payload = [_item_payload(item) for item in items]
    return {"days": validated["days"], "items": payload, "total": len(payload)}


async def _get_collection_overview(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_collection_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    raw_items = await asyncio.to_thread(list_all_collection_items, config=config, collection_key=collection_key)
    return build_collection_overview(Item.from_zotero(raw) for raw in raw_items)


async def _search_analysis(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_analysis_search_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    return await _build_analyzer(config).search(
        collection_key,
        validated["query"],
        field=validated["search_field"],
        study_design=validated["study_design"],
        has_intervention=validated["has_intervention"],
        limit=validated["limit"],
    )


async def _get_analysis_summary(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_summary_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    return await _build_analyzer(config).summarize(collection_key, include_details=validated["include_details"])


async def _compare_methodologies(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_compare_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    return await _build_analyzer(config).compare(collection_key, validated["focus_area"], limit=validated["limit"])


async def _extract_research_gaps(arguments: Dict[str, Any]) -> Dict[str, Any]:
    validated = _validate_gaps_args(arguments)
    config = load_config_from_env()
    collection_key = _resolve_collection_key(config, validated["collection_key"])
    return await _build_analyzer(config).extract_gaps(collection_key, group_similar=validated["group_similar"])


_HANDLERS: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
    "zotero_list_collections": _list_collections,
    "zotero_get_collection_info": _get_collection_info,
    "zotero_list_items": _list_items,
    "zotero_search_items": _search_items,
    "zotero_get_item_details": _get_item_details,
    "zotero_get_collection_tags": _get_collection_tags,
    "zotero_generate_bibliography": _generate_bibliography,
    "zotero_get_recent_items": _get_recent_items,
    "zotero_get_collection_overview": _get_collection_overview,
    "zotero_search_analysis": _search_analysis,
    "zotero_get_analysis_summary": _get_analysis_summary,
    "zotero_compare_methodologies": _compare_methodologies,
    "zotero_extract_research_gaps": _extract_research_gaps,
}


def _ok(data: Any) -> Dict[str, Any]:
    return {"ok": True, "data": data, "error": None}


def _err(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"ok": False, "data": None, "error": {"code": code, "message": message, "details": details or {}}}


@server.call_tool()
async def call_tool(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    handler = _HANDLERS.get(name)
    if handler is None:
        raise ValueError(f"Unknown tool: {name}")
    correlation_id = str(uuid.uuid4())
    with correlation_id_scope(correlation_id):
        timer = Timer()
        log_event(logger, level=logging.INFO, event="tool.call", tool=name, args=arguments or {})
        try:
            response = _ok(await handler(arguments if arguments is not None else {}))
        except ZoteroError as exc:
            log_event(
                logger,
                level=logging.WARNING,
                event="tool.error",
                tool=name,
                code=exc.code,
                message=exc.message,
                details=exc.details,
                duration_ms=timer.elapsed_ms(),
            )
            return _err(exc.code, exc.message, exc.details)
        log_event(logger, level=logging.INFO, event="tool.success", tool=name, duration_ms=timer.elapsed_ms())
        return response


async def run() -> None:
    log_event(
        logger,
        level=logging.INFO,
        event="server.start",
        version=__version__,
        collection_key=os.environ.get("ZOTERO_COLLECTION_ID") or None,
        debug=os.environ.get("ZOTERO_MCP_DEBUG") == "1",
    )

    async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            InitializationOptions(
                server_name="zotero-analysis-mcp",
                server_version=__version__,
                capabilities=server.get_capabilities(
                    notification_options=NotificationOptions(),
                    experimental_capabilities={},
                ),
            ),
        )


def main() -> int:
    asyncio.run(run())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
