"""Zotero Web API v3 read client (minimal, stdlib only)."""

from __future__ import annotations

import json
import logging
import os
import random
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .logging_utils import Timer, configure_logging, log_event

logger = configure_logging()

DEFAULT_API_BASE = "https://api.zotero.org"
MAX_PAGE_SIZE = 100
EXPORT_FORMATS = ("bibtex", "ris")


class ZoteroError(RuntimeError):
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


@dataclass(frozen=True)
class ZoteroConfig:
    api_key: str
    library_id: str
    api_base: str = DEFAULT_API_BASE
    library_type: str = "user"
    collection_key: Optional[str] = None

    @property
    def library_prefix(self) -> str:
        segment = "groups" if self.library_type == "group" else "users"
        return f"/{segment}/{urllib.parse.quote(self.library_id)}"


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int
    base_delay: float
    max_delay: float


def load_config_from_env() -> ZoteroConfig:
    library_type = os.environ.get("ZOTERO_LIBRARY_TYPE", "user").strip().lower() or "user"
    if library_type not in ("user", "group"):
        raise ZoteroError(
            "ZOTERO_CONFIG_ERROR",
            "ZOTERO_LIBRARY_TYPE must be 'user' or 'group'.",
            {"library_type": library_type},
        )
    id_var = "ZOTERO_GROUP_ID" if library_type == "group" else "ZOTERO_USER_ID"
    missing = [key for key in ("ZOTERO_API_KEY", id_var) if not os.environ.get(key)]
    if missing:
        log_event(logger, level=logging.WARNING, event="auth.missing", missing=missing)
        raise ZoteroError(
            "ZOTERO_AUTH_ERROR",
            f"Zotero credentials missing. Set ZOTERO_API_KEY and {id_var}.",
            {"missing": missing},
        )
    api_base = os.environ.get("ZOTERO_API_BASE", DEFAULT_API_BASE)
    collection_key = os.environ.get("ZOTERO_COLLECTION_ID", "").strip() or None
    return ZoteroConfig(
        api_key=os.environ["ZOTERO_API_KEY"],
        library_id=os.environ[id_var],
        api_base=api_base.rstrip("/"),
        library_type=library_type,
        collection_key=collection_key,
    )


def _load_retry_config() -> RetryConfig:
    max_attempts = int(os.environ.get("ZOTERO_RETRY_MAX_ATTEMPTS", "3"))
    base_delay = float(os.environ.get("ZOTERO_RETRY_BASE_DELAY", "0.5"))
    max_delay = float(os.environ.get("ZOTERO_RETRY_MAX_DELAY", "4.0"))
    if max_attempts < 1:
        max_attempts = 1
    if base_delay < 0:
        base_delay = 0.0
    if max_delay < base_delay:
        max_delay = base_delay
    return RetryConfig(max_attempts=max_attempts, base_delay=base_delay, max_delay=max_delay)


def _sleep_backoff(attempt: int, config: RetryConfig) -> None:
    if attempt <= 1:
        return
    delay = min(config.max_delay, config.base_delay * (2 ** (attempt - 2)))
    if delay <= 0:
        return
    jitter = delay * random.uniform(0.0, 0.2)
    time.sleep(delay + jitter)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value or not value.strip():
        return None
    text = value.strip()
    try:
        seconds = float(text)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    return max(0.0, dt.timestamp() - time.time())


def _should_retry_http(status: int) -> bool:
    return status == 429 or 500 <= status <= 599


def _normalize_headers(headers: Optional[Any]) -> Dict[str, str]:
    if not headers:
        return {}
    try:
        return {str(key).lower(): str(value) for key, value in headers.items()}
    except (AttributeError, TypeError):
        return {}


def _build_http_error_details(status: int, payload: str, headers: Optional[Any]) -> Dict[str, Any]:
    details: Dict[str, Any] = {"status": status}
    if payload:
        details["message"] = payload
    normalized = _normalize_headers(headers)
    retry_after = normalized.get("retry-after")
    if retry_after:
        details["retry_after"] = retry_after
    request_id = normalized.get("x-zotero-requestid") or normalized.get("x-zotero-request-id")
    if request_id:
        details["request_id"] = request_id
    return details


def _raise_for_http_error(status: int, payload: str, headers: Optional[Any]) -> None:
    details = _build_http_error_details(status, payload, headers)
    if status in (401, 403):
        raise ZoteroError("ZOTERO_AUTH_ERROR", "Zotero authentication failed.", details)
    if status == 404:
        raise ZoteroError("ZOTERO_NOT_FOUND", "Zotero resource not found.", details)
    if status == 429:
        raise ZoteroError("ZOTERO_RATE_LIMITED", "Zotero rate limit exceeded.", details)
    if status in (400, 409, 412, 413, 415, 422):
        raise ZoteroError("ZOTERO_VALIDATION_ERROR", "Zotero rejected the request.", details)
    if 500 <= status <= 599:
        raise ZoteroError("ZOTERO_UPSTREAM_ERROR", "Zotero service error.", details)
    raise ZoteroError("ZOTERO_UPSTREAM_ERROR", "Zotero request failed.", details)


def _build_query(params: Iterable[Tuple[str, str]]) -> str:
    return urllib.parse.urlencode(list(params), doseq=True)


def _request(
    *,
    config: ZoteroConfig,
    method: str,
    path: str,
    query: Optional[Iterable[Tuple[str, str]]] = None,
) -> Tuple[str, Dict[str, str]]:
    """Perform one API call with retries and return the decoded body and headers."""
    timer = Timer()
    url = f"{config.api_base}{path}"
    if query:
        url = f"{url}?{_build_query(query)}"
    headers = {
        "Zotero-API-Key": config.api_key,
        "Zotero-API-Version": "3",
    }

    retry_config = _load_retry_config()
    last_error: Optional[Exception] = None
    retry_after_seconds: Optional[float] = None
    for attempt in range(1, retry_config.max_attempts + 1):
        if retry_after_seconds is not None:
            log_event(
                logger,
                level=logging.INFO,
                event="zotero.retry_after",
                method=method,
                path=path,
                seconds=retry_after_seconds,
                attempt=attempt,
            )
            if retry_after_seconds > 0:
                time.sleep(retry_after_seconds)
            retry_after_seconds = None
        else:
            _sleep_backoff(attempt, retry_config)
        request = urllib.request.Request(url=url, method=method, headers=headers)
        try:
            with urllib.request.urlopen(request, timeout=30) as response:
                body = response.read().decode("utf-8")
                headers_out = _normalize_headers(response.headers)
                headers_out["status"] = str(response.status)
                log_event(
                    logger,
                    level=logging.INFO,
                    event="zotero.request",
                    method=method,
                    path=path,
                    status=response.status,
                    attempt=attempt,
                    duration_ms=timer.elapsed_ms(),
                    secrets=[config.api_key],
                )
                return body, headers_out
        except urllib.error.HTTPError as exc:
            status = exc.code
            payload = exc.read().decode("utf-8") if exc.fp else ""
            log_event(
                logger,
                level=logging.WARNING,
                event="zotero.request_error",
                method=method,
                path=path,
                status=status,
                attempt=attempt,
                duration_ms=timer.elapsed_ms(),
                secrets=[config.api_key],
            )
            if status == 429:
                retry_after_seconds = _parse_retry_after(_normalize_headers(exc.headers).get("retry-after"))
            if _should_retry_http(status) and attempt < retry_config.max_attempts:
                last_error = exc
                continue
            _raise_for_http_error(status, payload, exc.headers)
        except urllib.error.URLError as exc:
            log_event(
                logger,
                level=logging.WARNING,
                event="zotero.request_error",
                method=method,
                path=path,
                status=None,
                attempt=attempt,
                duration_ms=timer.elapsed_ms(),
                secrets=[config.api_key],
            )
            if attempt < retry_config.max_attempts:
                last_error = exc
                continue
            raise ZoteroError("ZOTERO_UPSTREAM_ERROR", "Zotero request failed.", {"reason": str(exc.reason)}) from exc

    reason = str(last_error) if last_error else "unknown"
    raise ZoteroError("ZOTERO_UPSTREAM_ERROR", "Zotero request failed.", {"reason": reason})


def _decode_json(body: str, headers: Dict[str, str]) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise ZoteroError(
            "ZOTERO_UPSTREAM_ERROR",
            "Zotero returned invalid JSON.",
            {"status": headers.get("status")},
        ) from exc


def _request_json(
    *,
    config: ZoteroConfig,
    path: str,
    query: Optional[Iterable[Tuple[str, str]]] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    body, headers = _request(config=config, method="GET", path=path, query=query)
    data = _decode_json(body, headers)
    if data is None:
        return [], headers
    if not isinstance(data, list):
        raise ZoteroError(
            "ZOTERO_UPSTREAM_ERROR",
            "Unexpected Zotero response format.",
            {"status": headers.get("status")},
        )
    return data, headers


def _request_json_object(
    *,
    config: ZoteroConfig,
    path: str,
    query: Optional[Iterable[Tuple[str, str]]] = None,
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    body, headers = _request(config=config, method="GET", path=path, query=query)
    data = _decode_json(body, headers)
    if data is None:
        return {}, headers
    if not isinstance(data, dict):
        raise ZoteroError(
            "ZOTERO_UPSTREAM_ERROR",
            "Unexpected Zotero response format.",
            {"status": headers.get("status")},
        )
    return data, headers


def parse_total_results(headers: Dict[str, str]) -> Optional[int]:
    for key in ("total-results", "totalresults"):
        if key in headers:
            try:
                return int(headers[key])
            except ValueError:
                return None
    return None


def parse_next_start(headers: Dict[str, str]) -> Optional[int]:
    link_header = headers.get("link")
    if not link_header:
        return None
    for part in (part.strip() for part in link_header.split(",")):
        if 'rel="next"' not in part:
            continue
        start_index = part.find("start=")
        if start_index == -1:
            continue
        digits = []
        for ch in part[start_index + len("start=") :]:
            if not ch.isdigit():
                break
            digits.append(ch)
        if digits:
            return int("".join(digits))
    return None


def _page_params(limit: int, start: int) -> List[Tuple[str, str]]:
    params = [("limit", str(limit))]
    if start:
        params.append(("start", str(start)))
    return params


def _collection_path(config: ZoteroConfig, collection_key: str) -> str:
    return f"{config.library_prefix}/collections/{urllib.parse.quote(collection_key)}"


def list_collections(
    *,
    config: ZoteroConfig,
    limit: int,
    start: int,
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    path = f"{config.library_prefix}/collections"
    return _request_json(config=config, path=path, query=_page_params(limit, start))


def get_collection(*, config: ZoteroConfig, collection_key: str) -> Dict[str, Any]:
    data, _headers = _request_json_object(config=config, path=_collection_path(config, collection_key))
    return data


def list_collection_items(
    *,
    config: ZoteroConfig,
    collection_key: str,
    limit: int,
    start: int = 0,
    sort: Optional[str] = None,
    direction: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    """List top-level items of a collection (child notes and attachments excluded)."""
    params = _page_params(limit, start)
    if sort:
        params.append(("sort", sort))
    if direction:
        params.append(("direction", direction))
    path = f"{_collection_path(config, collection_key)}/items/top"
    return _request_json(config=config, path=path, query=params)


def _collect_pages(
    fetch_page: Callable[[int], Tuple[List[Dict[str, Any]], Dict[str, str]]],
) -> List[Dict[str, Any]]:
    """Follow ``rel="next"`` links from ``start=0`` until the last page."""
    items: List[Dict[str, Any]] = []
    start = 0
    while True:
        page, headers = fetch_page(start)
        items.extend(page)
        next_start = parse_next_start(headers)
        if next_start is None or next_start <= start or not page:
            return items
        start = next_start


def list_all_collection_items(*, config: ZoteroConfig, collection_key: str) -> List[Dict[str, Any]]:
    return _collect_pages(
        lambda start: list_collection_items(
            config=config,
            collection_key=collection_key,
            limit=MAX_PAGE_SIZE,
            start=start,
        )
    )


def export_collection_items(
    *,
    config: ZoteroConfig,
    collection_key: str,
    export_format: str,
    limit: int,
    start: int = 0,
) -> str:
    if export_format not in EXPORT_FORMATS:
        raise ZoteroError(
            "ZOTERO_VALIDATION_ERROR",
            "Unsupported export format.",
            {"format": export_format, "supported": list(EXPORT_FORMATS)},
        )
    params = _page_params(limit, start) + [("format", export_format)]
    path = f"{_collection_path(config, collection_key)}/items/top"
    body, _headers = _request(config=config, method="GET", path=path, query=params)
    return body


def search_collection_items(
    *,
    config: ZoteroConfig,
    collection_key: str,
    query: str,
    limit: int,
    start: int = 0,
    item_type: Optional[str] = None,
    tag: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    params: List[Tuple[str, str]] = [("q", query)] + _page_params(limit, start)
    if item_type:
        params.append(("itemType", item_type))
    if tag:
        params.append(("tag", tag))
    path = f"{_collection_path(config, collection_key)}/items"
    return _request_json(config=config, path=path, query=params)


def get_item(*, config: ZoteroConfig, item_key: str) -> Tuple[Dict[str, Any], Dict[str, str]]:
    path = f"{config.library_prefix}/items/{urllib.parse.quote(item_key)}"
    return _request_json_object(config=config, path=path)


def list_item_children(
    *,
    config: ZoteroConfig,
    item_key: str,
    limit: int = MAX_PAGE_SIZE,
    start: int = 0,
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    path = f"{config.library_prefix}/items/{urllib.parse.quote(item_key)}/children"
    return _request_json(config=config, path=path, query=_page_params(limit, start))


def list_all_item_children(*, config: ZoteroConfig, item_key: str) -> List[Dict[str, Any]]:
    """All notes and attachments of an item; Zotero pages ``/children`` like any listing."""
    return _collect_pages(
        lambda start: list_item_children(config=config, item_key=item_key, limit=MAX_PAGE_SIZE, start=start)
    )


def list_collection_tags(
    *,
    config: ZoteroConfig,
    collection_key: str,
    limit: int,
    start: int = 0,
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    path = f"{_collection_path(config, collection_key)}/tags"
    return _request_json(config=config, path=path, query=_page_params(limit, start))


def get_items_with_bibliography(
    *,
    config: ZoteroConfig,
    style: str,
    item_keys: Optional[Sequence[str]] = None,
    collection_key: Optional[str] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """Fetch items with a Zotero-rendered ``bib`` entry in the requested CSL style.

    Explicit ``item_keys`` take precedence; otherwise the first ``limit``
    top-level items of ``collection_key`` are used.
    """
    params: List[Tuple[str, str]] = [("include", "bib"), ("style", style)]
    if item_keys:
        path = f"{config.library_prefix}/items"
        params = [("itemKey", ",".join(item_keys))] + params + [("limit", str(min(len(item_keys), MAX_PAGE_SIZE)))]
    elif collection_key:
        path = f"{_collection_path(config, collection_key)}/items/top"
        params = params + [("limit", str(limit))]
    else:
        raise ZoteroError("ZOTERO_VALIDATION_ERROR", "Provide item_keys or a collection.")
    data, _headers = _request_json(config=config, path=path, query=params)
    return data
