"""Notion command-line client with block-tree replication.

Commands:
- page duplicate: Copy a page and its whole block tree under the same parent
- block append: Append children from JSON in bounded, throttled batches
- block list: List (or stream) the children of a page or block
- auth check: Verify the token
- serve: Expose the same operations as MCP tools

Token: Passed via --token-file <path>, or the NOTION_TOKEN environment variable.
"""

import argparse
import asyncio
import json
import logging
import math
import os
import random
import re
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum, auto
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-cli")

T = TypeVar("T")


# =============================================================================
# Errors
# =============================================================================


class NotionAPIError(Exception):
    """Raw failure reported by the Notion API or by the HTTP transport.

    Carries everything the retry layer needs to classify the failure: the
    machine-readable code, the HTTP status (absent for transport faults), and
    the response headers/body where a rate-limit hint may live.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status: Optional[int] = None,
        headers: Optional[dict[str, str]] = None,
        body: Optional[dict] = None
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.headers = headers or {}
        self.body = body or {}

    @classmethod
    def from_response(cls, response: httpx.Response) -> "NotionAPIError":
        """Build an error from a non-2xx response."""
        body: dict = {}
        try:
            parsed = response.json()
            if isinstance(parsed, dict):
                body = parsed
        except ValueError:
            pass

        status = response.status_code
        code = body.get("code") or STATUS_CODES.get(status, f"http_{status}")
        message = body.get("message") or response.text[:300] or f"HTTP {status}"
        return cls(
            code,
            message,
            status=status,
            headers=dict(response.headers),
            body=body
        )


class NotionCliError(Exception):
    """Classified error with a stable code and a human-readable message."""

    def __init__(self, code: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause


class StructuralError(NotionCliError):
    """A container could not be created, or a creation response does not
    line up with its request. Never retried; partial containers cannot be
    repaired."""


class ReplicationCancelled(NotionCliError):
    """Cooperative cancellation stopped a batched write or a replication job."""


# Fallback codes when the response body does not carry one
STATUS_CODES = {
    400: "validation_error",
    401: "unauthorized",
    403: "restricted_resource",
    404: "object_not_found",
    409: "conflict_error",
    429: "rate_limited",
    500: "internal_server_error",
    502: "bad_gateway",
    503: "service_unavailable",
    504: "gateway_timeout",
}

ERROR_MESSAGES = {
    "unauthorized": "Invalid API token. Check the token file or NOTION_TOKEN.",
    "restricted_resource": (
        "This integration does not have access to the requested resource. "
        "Share the page with the integration in Notion."
    ),
    "object_not_found": (
        "The requested page, database, or block was not found. "
        "Verify the ID is correct and the integration has access."
    ),
    "rate_limited": "Rate limited by Notion API. Please wait a moment and try again.",
    "invalid_json": "Invalid request format.",
    "invalid_request_url": "Invalid request URL.",
    "invalid_request": "This request is not supported.",
    "validation_error": "Invalid request parameters.",
    "missing_version": "Missing Notion-Version header.",
    "conflict_error": "Conflict with current state. The resource may have been modified.",
    "internal_server_error": "Notion API internal error. Please try again later.",
    "service_unavailable": "Notion API is temporarily unavailable. Please try again later.",
    "database_connection_unavailable": "Notion's database is unavailable. Please try again later.",
    "gateway_timeout": "Notion API timed out. Please try again later.",
    "request_timeout": "Request timed out. Check your internet connection.",
    "response_error": "Invalid response from Notion API.",
    "no_auth": "Not authenticated. Pass --token-file <path> or set NOTION_TOKEN.",
}


def user_friendly_message(code: str) -> str:
    """Return the fixed message for an error code."""
    return ERROR_MESSAGES.get(code, f"unknown error: {code}")


def classify_error(error: NotionAPIError) -> NotionCliError:
    """Wrap a raw API failure with its stable code and table message."""
    return NotionCliError(error.code, user_friendly_message(error.code), cause=error)


def format_error(error: BaseException, verbose: bool = False) -> str:
    """Format an error as a single line, plus the cause chain when verbose.

    Args:
        error: The error to render.
        verbose: Include the chain of underlying causes.

    Returns:
        "error: <code> - <message>" with optional "cause:" lines.
    """
    if isinstance(error, NotionCliError):
        parts = [f"error: {error.code} - {error.message}"]
    else:
        parts = [f"error: {type(error).__name__} - {error}"]

    if verbose:
        cause = getattr(error, "cause", None) or error.__cause__
        seen = {id(error)}
        while cause is not None and id(cause) not in seen:
            seen.add(id(cause))
            detail = getattr(cause, "message", None) or str(cause)
            code = getattr(cause, "code", None)
            label = f"{type(cause).__name__}[{code}]" if code else type(cause).__name__
            parts.append(f"cause: {label}: {detail}")
            cause = getattr(cause, "cause", None) or cause.__cause__

    return "\n".join(parts)


# =============================================================================
# Resilient Invoker
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff bounds for one remote call (seconds)."""
    max_retries: int = 4
    base_delay: float = 0.5
    max_delay: float = 10.0
    retry_after_jitter: float = 0.25


DEFAULT_RETRY_POLICY = RetryPolicy()

RETRYABLE_CODES = {
    "rate_limited",
    "internal_server_error",
    "service_unavailable",
    "database_connection_unavailable",
    "gateway_timeout",
    "request_timeout",
    "response_error",
}


def is_retryable(error: BaseException) -> bool:
    """Rate limits, 5xx responses and transport faults are retryable."""
    if not isinstance(error, NotionAPIError):
        return False
    if error.code in RETRYABLE_CODES:
        return True
    return error.status is not None and (error.status == 429 or error.status >= 500)


def _header(headers: dict[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def retry_after_seconds(error: NotionAPIError, now: Optional[datetime] = None) -> Optional[float]:
    """Extract the server's retry hint in seconds.

    The Retry-After header wins over a retry_after body field. The header may
    hold a delay in seconds or an HTTP date.

    Args:
        error: The failed call.
        now: Reference time for date-valued headers (defaults to now, UTC).

    Returns:
        Non-negative delay in seconds, or None if no usable hint exists.
    """
    header = _header(error.headers, "retry-after")
    if header:
        try:
            seconds = float(header)
            if math.isfinite(seconds):
                return max(0.0, seconds)
        except ValueError:
            try:
                when = parsedate_to_datetime(header)
            except (TypeError, ValueError):
                when = None
            if when is not None:
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                now = now or datetime.now(timezone.utc)
                return max(0.0, (when - now).total_seconds())

    retry_after = error.body.get("retry_after")
    if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool):
        if math.isfinite(retry_after):
            return max(0.0, float(retry_after))
    return None


def compute_retry_delay(
    attempt: int,
    retry_after: Optional[float],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    rng: Optional[random.Random] = None
) -> float:
    """Compute the wait before retry number `attempt` (counted from 1).

    A server hint is honoured as a floor plus a small jitter; otherwise full
    jitter over an exponential cap.
    """
    rng = rng or random
    if retry_after is not None:
        return retry_after + rng.uniform(0, policy.retry_after_jitter)
    cap = min(policy.max_delay, policy.base_delay * (2 ** (attempt - 1)))
    return rng.uniform(0, cap)


class ResilientInvoker:
    """Runs remote operations with classification, backoff and a retry budget."""

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        self.policy = policy
        self.sleep = sleep
        self._rng = rng or random.Random()

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None
    ) -> T:
        """Await `operation()` until it succeeds or the budget runs out.

        Args:
            operation: Zero-argument coroutine function performing one call.
            policy: Overrides the invoker's policy for this call.

        Returns:
            Whatever the operation returns.

        Raises:
            NotionCliError: On a fatal failure, or once retries are exhausted
                (carrying the last failure's code).
        """
        policy = policy or self.policy
        retries = 0
        while True:
            try:
                return await operation()
            except NotionAPIError as e:
                if not is_retryable(e) or retries >= policy.max_retries:
                    if is_retryable(e):
                        logger.warning(f"Giving up after {retries + 1} attempts: {e.code}")
                    raise classify_error(e) from e

                retries += 1
                delay = compute_retry_delay(retries, retry_after_seconds(e), policy, self._rng)
                logger.warning(
                    f"{e.code} (HTTP {e.status}), waiting {delay:.2f}s "
                    f"(retry {retries}/{policy.max_retries})"
                )
                if delay > 0:
                    await self.sleep(delay)


# =============================================================================
# Paginator
# =============================================================================


@dataclass
class ListPage:
    """One page of a cursor-paginated listing."""
    items: list[dict]
    has_more: bool = False
    next_cursor: Optional[str] = None

    @classmethod
    def from_api(cls, result: dict) -> "ListPage":
        return cls(
            items=list(result.get("results", [])),
            has_more=bool(result.get("has_more")),
            next_cursor=result.get("next_cursor")
        )


PageFetcher = Callable[[Optional[str]], Awaitable[ListPage]]


async def drain(fetch: PageFetcher, invoker: ResilientInvoker) -> list[dict]:
    """Fetch every page and return all items in listing order."""
    items: list[dict] = []
    cursor: Optional[str] = None

    while True:
        page = await invoker.call(partial(fetch, cursor))
        items.extend(page.items)

        if not page.has_more or not page.next_cursor:
            return items
        cursor = page.next_cursor


async def stream(fetch: PageFetcher, invoker: ResilientInvoker) -> AsyncIterator[dict]:
    """Yield items lazily, fetching the next page only when needed.

    Forward-only: iterating again requires a fresh call, which starts over
    from the first page.
    """
    cursor: Optional[str] = None

    while True:
        page = await invoker.call(partial(fetch, cursor))
        for item in page.items:
            yield item

        if not page.has_more or not page.next_cursor:
            return
        cursor = page.next_cursor


async def take(fetch: PageFetcher, invoker: ResilientInvoker, limit: int) -> list[dict]:
    """Return at most `limit` items, fetching no more pages than needed."""
    items: list[dict] = []
    if limit < 1:
        return items

    async for item in stream(fetch, invoker):
        items.append(item)
        if len(items) >= limit:
            break
    return items


# =============================================================================
# Batched Mutator
# =============================================================================

# Hard ceiling of the append-children endpoint
MAX_CHILDREN_PER_REQUEST = 100
DEFAULT_BATCH_SIZE = 100
DEFAULT_DELAY_MS = 350
TABLE_ROW_BATCH_SIZE = 50


def plan_batches(items: list[T], size: int) -> list[list[T]]:
    """Split `items` into contiguous chunks of at most `size`."""
    if size < 1 or size > MAX_CHILDREN_PER_REQUEST:
        raise ValueError(f"Batch size must be between 1 and {MAX_CHILDREN_PER_REQUEST}, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


async def append_in_batches(
    api: "BlockApi",
    invoker: ResilientInvoker,
    parent_id: str,
    children: list[dict],
    chunk_size: int = DEFAULT_BATCH_SIZE,
    delay: float = 0.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    cancel_event: Optional[asyncio.Event] = None,
    on_chunk: Optional[Callable[[int, list[dict]], None]] = None
) -> list[list[dict]]:
    """Append children under a parent, one chunk at a time.

    Chunks go out strictly in order, each through the invoker. `delay` is a
    proactive throttle between chunks, separate from retry backoff. No chunk
    is sent once `cancel_event` is set, and an exception from `on_chunk`
    stops the remaining chunks.

    A chunk retried after a server-side success whose response was lost is
    applied twice: the endpoint is not idempotent, and this is accepted
    at-least-once behaviour.

    Args:
        api: Remote block API.
        invoker: Retry wrapper for each chunk.
        parent_id: Block or page receiving the children.
        children: Ordered creation requests.
        chunk_size: Maximum children per request (1-100).
        delay: Seconds to wait between chunks (not after the last).
        sleep: Sleep coroutine, replaceable in tests.
        cancel_event: Checked before every chunk.
        on_chunk: Called with (chunk index, created blocks) as each chunk lands.

    Returns:
        Created blocks, one list per chunk, in chunk order.

    Raises:
        ReplicationCancelled: The cancel event was set; earlier chunks stay.
    """
    plan = plan_batches(children, chunk_size)
    responses: list[list[dict]] = []

    for index, chunk in enumerate(plan):
        if cancel_event is not None and cancel_event.is_set():
            raise ReplicationCancelled(
                "cancelled",
                f"Cancelled after {index} of {len(plan)} chunks; appended blocks were left in place."
            )
        created = await invoker.call(partial(api.append_block_children, parent_id, chunk))
        responses.append(created)
        logger.debug(f"Appended chunk {index + 1}/{len(plan)} ({len(chunk)} blocks) to {parent_id}")
        if on_chunk is not None:
            on_chunk(index, created)

        if index < len(plan) - 1 and delay > 0:
            await sleep(delay)

    return responses


def parse_batch_size(value: Optional[str], fallback: int = DEFAULT_BATCH_SIZE) -> int:
    """Parse a --batch-size value."""
    if value is None:
        return fallback
    try:
        parsed = int(value)
    except ValueError:
        raise ValueError("Batch size must be a positive integer.")
    if parsed <= 0:
        raise ValueError("Batch size must be a positive integer.")
    if parsed > MAX_CHILDREN_PER_REQUEST:
        raise ValueError(f"Batch size cannot exceed {MAX_CHILDREN_PER_REQUEST}.")
    return parsed


def parse_delay_ms(value: Optional[str], fallback: int = DEFAULT_DELAY_MS) -> int:
    """Parse a --delay-ms value."""
    if value is None:
        return fallback
    try:
        parsed = int(value)
    except ValueError:
        raise ValueError("Delay must be a non-negative integer.")
    if parsed < 0:
        raise ValueError("Delay must be a non-negative integer.")
    return parsed


def parse_children_input(
    children_json: Optional[str] = None,
    children_file: Optional[str] = None
) -> Optional[list[dict]]:
    """Read block children from inline JSON or a file.

    Accepts either a JSON array or an object with a "children" array.

    Returns:
        The children list, or None when neither source was given.

    Raises:
        ValueError: On conflicting sources, unreadable files, bad JSON, or an
            empty/missing children array.
    """
    if children_json and children_file:
        raise ValueError("Provide either --children or --children-file, not both.")
    if not children_json and not children_file:
        return None

    raw = children_json
    if not raw and children_file:
        try:
            raw = Path(children_file).expanduser().read_text(encoding="utf-8")
        except OSError:
            raise ValueError(f"Unable to read children file: {children_file}")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        raise ValueError("Invalid JSON for children input.")

    if isinstance(parsed, dict):
        children = parsed.get("children")
    else:
        children = parsed

    if not isinstance(children, list) or not children:
        raise ValueError("Children input must be a non-empty JSON array.")
    return children


# =============================================================================
# Content Normalizer
# =============================================================================


class BlockKind(Enum):
    """Closed set of block variants the replicator knows how to handle."""
    TEXT = auto()
    LIST_ITEM = auto()
    TO_DO = auto()
    CALLOUT = auto()
    CODE = auto()
    EQUATION = auto()
    MARKER = auto()
    EMBED = auto()
    LINK_TO_PAGE = auto()
    MEDIA = auto()
    TABLE = auto()
    TABLE_ROW = auto()
    COLUMN_LIST = auto()
    COLUMN = auto()
    SYNCED_BLOCK = auto()
    CHILD_OBJECT = auto()
    UNSUPPORTED = auto()


BLOCK_KINDS = {
    "paragraph": BlockKind.TEXT,
    "heading_1": BlockKind.TEXT,
    "heading_2": BlockKind.TEXT,
    "heading_3": BlockKind.TEXT,
    "quote": BlockKind.TEXT,
    "toggle": BlockKind.TEXT,
    "template": BlockKind.TEXT,
    "bulleted_list_item": BlockKind.LIST_ITEM,
    "numbered_list_item": BlockKind.LIST_ITEM,
    "to_do": BlockKind.TO_DO,
    "callout": BlockKind.CALLOUT,
    "code": BlockKind.CODE,
    "equation": BlockKind.EQUATION,
    "divider": BlockKind.MARKER,
    "breadcrumb": BlockKind.MARKER,
    "table_of_contents": BlockKind.MARKER,
    "embed": BlockKind.EMBED,
    "bookmark": BlockKind.EMBED,
    "link_to_page": BlockKind.LINK_TO_PAGE,
    "image": BlockKind.MEDIA,
    "video": BlockKind.MEDIA,
    "file": BlockKind.MEDIA,
    "audio": BlockKind.MEDIA,
    "pdf": BlockKind.MEDIA,
    "table": BlockKind.TABLE,
    "table_row": BlockKind.TABLE_ROW,
    "column_list": BlockKind.COLUMN_LIST,
    "column": BlockKind.COLUMN,
    "synced_block": BlockKind.SYNCED_BLOCK,
    "child_page": BlockKind.CHILD_OBJECT,
    "child_database": BlockKind.CHILD_OBJECT,
}

HEADING_TYPES = {"heading_1", "heading_2", "heading_3"}

ANNOTATION_FLAGS = ("bold", "italic", "strikethrough", "underline", "code")

PLACEHOLDER_TEMPLATE = "Unsupported block type: {block_type}"

DEFAULT_COLUMN_COUNT = 2


def classify_block_type(block_type: str) -> BlockKind:
    return BLOCK_KINDS.get(block_type, BlockKind.UNSUPPORTED)


@dataclass
class BlockNode:
    """A block as listed from the API, tagged with its variant."""
    id: str
    kind: BlockKind
    block_type: str
    payload: dict = field(default_factory=dict)
    has_children: bool = False

    @classmethod
    def from_api(cls, block: dict) -> "BlockNode":
        block_type = block.get("type") or "unsupported"
        payload = block.get(block_type)
        return cls(
            id=block.get("id", ""),
            kind=classify_block_type(block_type),
            block_type=block_type,
            payload=payload if isinstance(payload, dict) else {},
            has_children=bool(block.get("has_children"))
        )

    @property
    def synced_from_id(self) -> Optional[str]:
        """Original block ID for a synced-block reference, else None."""
        if self.kind is not BlockKind.SYNCED_BLOCK:
            return None
        synced_from = self.payload.get("synced_from")
        if not isinstance(synced_from, dict):
            return None
        block_id = synced_from.get("block_id")
        return block_id if isinstance(block_id, str) and block_id else None


@dataclass
class RichTextRun:
    """A styled text or equation fragment. Exactly one of text/expression."""
    text: Optional[str] = None
    expression: Optional[str] = None
    link: Optional[str] = None
    annotations: dict = field(default_factory=dict)

    def __post_init__(self):
        if (self.text is None) == (self.expression is None):
            raise ValueError("RichTextRun needs exactly one of text or expression")

    @classmethod
    def from_api(cls, item: Any) -> Optional["RichTextRun"]:
        """Read a rich_text item, degrading mentions to their display text.

        Returns None for items that carry nothing recreatable.
        """
        if not isinstance(item, dict):
            return None
        item_type = item.get("type")

        if item_type == "text":
            text = item.get("text") or {}
            content = text.get("content")
            if not isinstance(content, str):
                return None
            link = text.get("link")
            url = link.get("url") if isinstance(link, dict) else None
            return cls(
                text=content,
                link=url if isinstance(url, str) else None,
                annotations=normalize_annotations(item.get("annotations"))
            )

        if item_type == "equation":
            expression = (item.get("equation") or {}).get("expression")
            if not isinstance(expression, str):
                return None
            return cls(
                expression=expression,
                annotations=normalize_annotations(item.get("annotations"))
            )

        # Mentions and anything newer: the target cannot be recreated across
        # documents, so keep what the reader saw (styled, linked via href)
        plain_text = item.get("plain_text")
        if isinstance(plain_text, str) and plain_text:
            href = item.get("href")
            return cls(
                text=plain_text,
                link=href if isinstance(href, str) and href else None,
                annotations=normalize_annotations(item.get("annotations"))
            )
        return None

    def to_request(self) -> dict:
        if self.expression is not None:
            request: dict = {"type": "equation", "equation": {"expression": self.expression}}
        else:
            text: dict = {"content": self.text}
            if self.link:
                text["link"] = {"url": self.link}
            request = {"type": "text", "text": text}
        if self.annotations:
            request["annotations"] = dict(self.annotations)
        return request


def normalize_annotations(value: Any) -> dict:
    """Keep only the recognized style flags and a string color."""
    if not isinstance(value, dict):
        return {}
    annotations = {
        key: value[key] for key in ANNOTATION_FLAGS
        if isinstance(value.get(key), bool)
    }
    if isinstance(value.get("color"), str):
        annotations["color"] = value["color"]
    return annotations


def normalize_rich_text(value: Any) -> list[dict]:
    """Convert a retrieved rich_text array into its creation shape."""
    if not isinstance(value, list):
        return []
    runs = (RichTextRun.from_api(item) for item in value)
    return [run.to_request() for run in runs if run is not None]


def _compact(values: dict) -> dict:
    return {key: value for key, value in values.items() if value is not None}


def _block(block_type: str, body: dict) -> dict:
    return {"object": "block", "type": block_type, block_type: body}


def placeholder_block(message: str) -> dict:
    """Plain paragraph standing in for content that cannot be recreated."""
    return _block("paragraph", {
        "rich_text": [{"type": "text", "text": {"content": message}}]
    })


def unsupported_placeholder(block_type: str) -> dict:
    return placeholder_block(PLACEHOLDER_TEMPLATE.format(block_type=block_type))


def normalize_icon(icon: Any) -> Optional[dict]:
    """Keep emoji, external and custom emoji icons; drop hosted files."""
    if not isinstance(icon, dict):
        return None
    icon_type = icon.get("type")

    if icon_type == "emoji" and isinstance(icon.get("emoji"), str):
        return {"type": "emoji", "emoji": icon["emoji"]}

    if icon_type == "external":
        url = (icon.get("external") or {}).get("url")
        if isinstance(url, str):
            return {"type": "external", "external": {"url": url}}

    if icon_type == "custom_emoji":
        custom = icon.get("custom_emoji") or {}
        if isinstance(custom.get("id"), str):
            payload = {"id": custom["id"]}
            for key in ("name", "url"):
                if isinstance(custom.get(key), str):
                    payload[key] = custom[key]
            return {"type": "custom_emoji", "custom_emoji": payload}

    return None


def normalize_media(payload: dict) -> Optional[dict]:
    """Externally hosted media only; Notion-hosted files have no stable URL."""
    external = payload.get("external")
    url = external.get("url") if isinstance(external, dict) else None
    if not isinstance(url, str) or not url:
        return None

    media: dict = {"type": "external", "external": {"url": url}}
    caption = normalize_rich_text(payload.get("caption"))
    if caption:
        media["caption"] = caption
    name = payload.get("name")
    if isinstance(name, str) and name:
        media["name"] = name
    return media


def normalize_link_to_page(payload: dict) -> Optional[dict]:
    link_type = payload.get("type")
    if link_type in ("page_id", "database_id", "comment_id") and payload.get(link_type):
        return {"type": link_type, link_type: payload[link_type]}
    return None


def table_width(node: BlockNode) -> int:
    width = node.payload.get("table_width")
    if isinstance(width, int) and not isinstance(width, bool) and width > 0:
        return width
    return 1


def table_row_request(node: BlockNode, width: Optional[int] = None) -> dict:
    """Row creation request; with `width`, cells are padded or truncated to fit."""
    raw_cells = node.payload.get("cells")
    cells = [normalize_rich_text(cell) for cell in raw_cells] if isinstance(raw_cells, list) else []
    if width is not None:
        cells = cells[:width] + [[] for _ in range(width - len(cells))]
    return _block("table_row", {"cells": cells})


def empty_table_row_request(width: int) -> dict:
    return _block("table_row", {"cells": [[] for _ in range(max(1, width))]})


def table_request(node: BlockNode, first_row: Optional[BlockNode] = None) -> dict:
    """Table creation request seeded with one row (the API requires at least one)."""
    width = table_width(node)
    if first_row is not None and first_row.kind is BlockKind.TABLE_ROW:
        row = table_row_request(first_row, width)
    else:
        row = empty_table_row_request(width)

    body: dict = {"table_width": width}
    for flag in ("has_column_header", "has_row_header"):
        if isinstance(node.payload.get(flag), bool):
            body[flag] = node.payload[flag]
    body["children"] = [row]
    return _block("table", body)


def column_list_request(column_count: int) -> dict:
    """Column list with `column_count` empty columns, created in one call."""
    count = column_count if column_count > 0 else DEFAULT_COLUMN_COUNT
    return _block("column_list", {
        "children": [_block("column", {"children": []}) for _ in range(count)]
    })


def normalize_block(
    node: BlockNode,
    id_map: Optional[dict[str, str]] = None
) -> tuple[dict, Optional[str]]:
    """Map a retrieved block to a creation request.

    Args:
        node: The source block.
        id_map: Source → target IDs created so far in this job, used to
            re-point synced-block references.

    Returns:
        Tuple of (request, loss) where loss is None for a faithful copy, or a
        short reason when the block was replaced by a placeholder.
    """
    raw = node.payload
    kind = node.kind
    block_type = node.block_type

    if kind is BlockKind.TEXT:
        body = {"rich_text": normalize_rich_text(raw.get("rich_text")), "color": raw.get("color")}
        if block_type in HEADING_TYPES and isinstance(raw.get("is_toggleable"), bool):
            body["is_toggleable"] = raw["is_toggleable"]
        return _block(block_type, _compact(body)), None

    if kind is BlockKind.LIST_ITEM:
        return _block(block_type, _compact({
            "rich_text": normalize_rich_text(raw.get("rich_text")),
            "color": raw.get("color"),
        })), None

    if kind is BlockKind.TO_DO:
        return _block(block_type, _compact({
            "rich_text": normalize_rich_text(raw.get("rich_text")),
            "color": raw.get("color"),
            "checked": raw.get("checked") if isinstance(raw.get("checked"), bool) else None,
        })), None

    if kind is BlockKind.CALLOUT:
        return _block(block_type, _compact({
            "rich_text": normalize_rich_text(raw.get("rich_text")),
            "color": raw.get("color"),
            "icon": normalize_icon(raw.get("icon")),
        })), None

    if kind is BlockKind.CODE:
        return _block(block_type, _compact({
            "rich_text": normalize_rich_text(raw.get("rich_text")),
            "language": raw.get("language"),
            "caption": normalize_rich_text(raw.get("caption")),
        })), None

    if kind is BlockKind.EQUATION:
        return _block(block_type, {"expression": raw.get("expression") or ""}), None

    if kind is BlockKind.MARKER:
        if block_type == "table_of_contents":
            return _block(block_type, _compact({"color": raw.get("color")})), None
        return _block(block_type, {}), None

    if kind is BlockKind.EMBED:
        url = raw.get("url")
        if not isinstance(url, str) or not url:
            return unsupported_placeholder(block_type), f"{block_type} without a URL"
        return _block(block_type, {
            "url": url,
            "caption": normalize_rich_text(raw.get("caption")),
        }), None

    if kind is BlockKind.LINK_TO_PAGE:
        link = normalize_link_to_page(raw)
        if link is None:
            return unsupported_placeholder(block_type), "link target is not recreatable"
        return _block(block_type, link), None

    if kind is BlockKind.MEDIA:
        media = normalize_media(raw)
        if media is None:
            return unsupported_placeholder(block_type), "Notion-hosted file has no stable external URL"
        return _block(block_type, media), None

    if kind is BlockKind.TABLE:
        return table_request(node), None

    if kind is BlockKind.TABLE_ROW:
        return table_row_request(node), None

    if kind is BlockKind.COLUMN_LIST:
        return column_list_request(DEFAULT_COLUMN_COUNT), None

    if kind is BlockKind.COLUMN:
        # Columns only exist inside a column list, which builds its own
        return unsupported_placeholder(block_type), "column outside a column list"

    if kind is BlockKind.SYNCED_BLOCK:
        original_id = node.synced_from_id
        if original_id is None:
            return _block(block_type, {"synced_from": None}), None
        target_id = (id_map or {}).get(original_id)
        if target_id is None:
            return unsupported_placeholder(block_type), "synced original is outside the copied subtree or not yet created"
        return _block(block_type, {
            "synced_from": {"type": "block_id", "block_id": target_id}
        }), None

    if kind is BlockKind.CHILD_OBJECT:
        return unsupported_placeholder(block_type), f"{block_type} cannot be created as a block"

    if kind is BlockKind.UNSUPPORTED:
        return unsupported_placeholder(block_type), "block type is not supported"

    raise AssertionError(f"Unhandled block kind: {kind}")


# =============================================================================
# Block Tree Replicator
# =============================================================================


class BlockApi(Protocol):
    """The remote calls the replication core depends on."""

    async def list_block_children(self, block_id: str, cursor: Optional[str] = None) -> ListPage:
        ...

    async def append_block_children(self, block_id: str, children: list[dict]) -> list[dict]:
        ...

    async def create_container(self, parent_id: str, request: dict) -> dict:
        ...


class JobState(Enum):
    """Replication job states."""
    PENDING = auto()
    LISTING_SOURCE = auto()
    COPYING_PLAIN = auto()
    EXPANDING_COLUMNS = auto()
    EXPANDING_TABLE = auto()
    RECURSING = auto()
    DONE = auto()
    FAILED = auto()
    CANCELLED = auto()


@dataclass
class Substitution:
    """A source block replaced by a placeholder."""
    source_id: str
    block_type: str
    reason: str


@dataclass
class _PendingChild:
    node: BlockNode
    request: dict
    recurse: bool


MAX_REPLICATION_DEPTH = 64


class ReplicationJob:
    """Recreates a source block subtree under a target parent.

    One job copies one subtree, sequentially: children are created and
    recursed into in listing order, and every remote call goes through the
    invoker. A job is single-use; its ID mapping lives and dies with it.

    Failures are not rolled back. Content created before the first fatal
    error stays in place, and callers that need atomicity must delete the
    target themselves.
    """

    def __init__(
        self,
        api: BlockApi,
        invoker: Optional[ResilientInvoker] = None,
        chunk_size: int = DEFAULT_BATCH_SIZE,
        chunk_delay: float = 0.0,
        row_batch_size: int = TABLE_ROW_BATCH_SIZE,
        cancel_event: Optional[asyncio.Event] = None,
        max_depth: int = MAX_REPLICATION_DEPTH
    ):
        for name, size in (("chunk_size", chunk_size), ("row_batch_size", row_batch_size)):
            if size < 1 or size > MAX_CHILDREN_PER_REQUEST:
                raise ValueError(f"{name} must be between 1 and {MAX_CHILDREN_PER_REQUEST}, got {size}")

        self.api = api
        self.invoker = invoker or ResilientInvoker()
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.row_batch_size = row_batch_size
        self.max_depth = max_depth
        self._cancel_event = cancel_event

        self.state = JobState.PENDING
        self.id_map: dict[str, str] = {}
        self.substitutions: list[Substitution] = []
        self.created_count = 0

    async def run(self, source_id: str, target_id: str) -> "ReplicationJob":
        """Copy the children of `source_id` under `target_id`.

        Returns:
            This job, with id_map, substitutions and created_count filled in.

        Raises:
            NotionCliError: The first fatal remote failure.
            StructuralError: A container or response shape problem.
            ReplicationCancelled: The cancel event was set.
        """
        if self.state is not JobState.PENDING:
            raise RuntimeError("A ReplicationJob can only run once")

        logger.info(f"Replicating children of {source_id} into {target_id}")
        try:
            await self._copy_children(source_id, target_id, depth=0)
        except ReplicationCancelled:
            self._transition(JobState.CANCELLED)
            raise
        except Exception:
            self._transition(JobState.FAILED)
            raise

        self._transition(JobState.DONE)
        logger.info(
            f"Replication done: {self.created_count} blocks created, "
            f"{len(self.substitutions)} substituted"
        )
        return self

    def _transition(self, state: JobState) -> None:
        if state is not self.state:
            logger.debug(f"{self.state.name} -> {state.name}")
        self.state = state

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ReplicationCancelled(
                "cancelled",
                "Replication cancelled; content created so far was left in place."
            )

    def _record(self, node: BlockNode, created: dict) -> str:
        created_id = created.get("id") if isinstance(created, dict) else None
        if not created_id:
            raise StructuralError("response_mismatch", f"Created block for {node.id} has no ID")
        self.id_map[node.id] = created_id
        self.created_count += 1
        return created_id

    def _substitute(self, node: BlockNode, reason: str) -> None:
        logger.warning(f"Replacing {node.block_type} {node.id} with a placeholder: {reason}")
        self.substitutions.append(Substitution(node.id, node.block_type, reason))

    async def _list_children(self, block_id: str) -> list[BlockNode]:
        items = await drain(partial(self.api.list_block_children, block_id), self.invoker)
        # Partial objects (no "type") are skipped
        return [BlockNode.from_api(item) for item in items if isinstance(item, dict) and "type" in item]

    async def _append(self, parent_id: str, nodes: list[BlockNode], requests: list[dict], chunk_size: int) -> list[str]:
        """Append requests, pairing each chunk's created blocks with their
        sources by position before the next chunk goes out."""
        node_chunks = plan_batches(nodes, chunk_size)
        created_ids: list[str] = []

        def pair(index: int, created: list[dict]) -> None:
            chunk = node_chunks[index]
            if len(created) != len(chunk):
                raise StructuralError(
                    "response_mismatch",
                    f"Appended {len(chunk)} blocks to {parent_id} but the response listed {len(created)}"
                )
            created_ids.extend(self._record(node, block) for node, block in zip(chunk, created))

        await append_in_batches(
            self.api,
            self.invoker,
            parent_id,
            requests,
            chunk_size=chunk_size,
            delay=self.chunk_delay,
            sleep=self.invoker.sleep,
            cancel_event=self._cancel_event,
            on_chunk=pair
        )
        return created_ids

    async def _copy_children(self, source_id: str, target_id: str, depth: int) -> None:
        if depth > self.max_depth:
            raise StructuralError(
                "max_depth_exceeded",
                f"Block tree under {source_id} is nested deeper than {self.max_depth} levels"
            )
        self._check_cancelled()
        self._transition(JobState.LISTING_SOURCE)
        children = await self._list_children(source_id)

        pending: list[_PendingChild] = []
        for node in children:
            if node.kind is BlockKind.COLUMN_LIST:
                await self._flush(pending, target_id, depth)
                await self._copy_column_list(node, target_id, depth)
                continue

            if node.kind is BlockKind.TABLE:
                await self._flush(pending, target_id, depth)
                await self._copy_table(node, target_id)
                continue

            original_id = node.synced_from_id
            if original_id and original_id not in self.id_map and any(
                p.node.id == original_id or p.recurse for p in pending
            ):
                # The original (or a buffered ancestor of it) must be created
                # before a reference can point at it
                await self._flush(pending, target_id, depth)

            request, loss = normalize_block(node, self.id_map)
            if loss:
                self._substitute(node, loss)
            recurse = node.has_children and loss is None and original_id is None
            pending.append(_PendingChild(node, request, recurse))

        await self._flush(pending, target_id, depth)

    async def _flush(self, pending: list[_PendingChild], target_id: str, depth: int) -> None:
        if not pending:
            return
        batch = list(pending)
        pending.clear()

        self._check_cancelled()
        self._transition(JobState.COPYING_PLAIN)
        created_ids = await self._append(
            target_id,
            [p.node for p in batch],
            [p.request for p in batch],
            self.chunk_size
        )

        for child, created_id in zip(batch, created_ids):
            if not child.recurse:
                continue
            self._check_cancelled()
            self._transition(JobState.RECURSING)
            await self._copy_children(child.node.id, created_id, depth + 1)

    async def _create_container(self, target_id: str, node: BlockNode, request: dict) -> str:
        try:
            created = await self.invoker.call(partial(self.api.create_container, target_id, request))
        except NotionCliError as e:
            raise StructuralError(
                e.code,
                f"Could not create {node.block_type} container: {e.message}",
                cause=e
            ) from e

        if not isinstance(created, dict) or created.get("type") != request["type"]:
            raise StructuralError(
                "response_mismatch",
                f"Creation response for {node.block_type} {node.id} did not include the container"
            )
        return self._record(node, created)

    async def _copy_column_list(self, node: BlockNode, target_id: str, depth: int) -> None:
        self._check_cancelled()
        self._transition(JobState.EXPANDING_COLUMNS)
        source_columns = [c for c in await self._list_children(node.id) if c.kind is BlockKind.COLUMN]
        column_count = len(source_columns) or DEFAULT_COLUMN_COUNT

        container_id = await self._create_container(target_id, node, column_list_request(column_count))

        target_columns = [c for c in await self._list_children(container_id) if c.kind is BlockKind.COLUMN]
        if len(target_columns) != column_count:
            raise StructuralError(
                "response_mismatch",
                f"Created column list {container_id} has {len(target_columns)} columns, expected {column_count}"
            )

        # Columns have no stable identity besides their position
        for source_column, target_column in zip(source_columns, target_columns):
            self.id_map[source_column.id] = target_column.id
            self.created_count += 1
            if not source_column.has_children:
                continue
            self._check_cancelled()
            self._transition(JobState.RECURSING)
            await self._copy_children(source_column.id, target_column.id, depth + 2)

    async def _copy_table(self, node: BlockNode, target_id: str) -> None:
        self._check_cancelled()
        self._transition(JobState.EXPANDING_TABLE)
        rows = [r for r in await self._list_children(node.id) if r.kind is BlockKind.TABLE_ROW]
        width = table_width(node)

        table_id = await self._create_container(
            target_id, node, table_request(node, rows[0] if rows else None)
        )
        if rows:
            self.created_count += 1
        else:
            logger.debug(f"Table {node.id} has no rows; seeded an empty row")

        remaining = rows[1:]
        if not remaining:
            return

        self._check_cancelled()
        await self._append(
            table_id,
            remaining,
            [table_row_request(row, width) for row in remaining],
            self.row_batch_size
        )


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"
REQUEST_TIMEOUT = 30.0
LIST_PAGE_SIZE = 100


class NotionClient:
    """Async Notion REST client owning one httpx connection pool.

    Raises NotionAPIError for every failure; retries are the caller's job
    (see ResilientInvoker). Use as an async context manager.
    """

    def __init__(
        self,
        token: str,
        notion_version: str = NOTION_VERSION,
        base_url: str = NOTION_API_BASE,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if not token:
            raise NotionCliError("no_auth", user_friendly_message("no_auth"))
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": notion_version,
                "Content-Type": "application/json",
            }
        )

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None
    ) -> dict:
        """Make one authenticated request and return the decoded body."""
        try:
            response = await self._client.request(method, endpoint, json=json_body, params=params)
        except httpx.TimeoutException as e:
            raise NotionAPIError("request_timeout", f"{method} {endpoint} timed out") from e
        except httpx.TransportError as e:
            raise NotionAPIError("response_error", f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise NotionAPIError.from_response(response)

        try:
            result = response.json()
        except ValueError as e:
            raise NotionAPIError(
                "response_error",
                "Response body is not valid JSON",
                status=response.status_code
            ) from e
        if not isinstance(result, dict):
            raise NotionAPIError("response_error", "Response body is not a JSON object", status=response.status_code)
        return result

    async def list_block_children(self, block_id: str, cursor: Optional[str] = None) -> ListPage:
        params: dict = {"page_size": LIST_PAGE_SIZE}
        if cursor:
            params["start_cursor"] = cursor
        result = await self.request("GET", f"/blocks/{block_id}/children", params=params)
        return ListPage.from_api(result)

    async def append_block_children(self, block_id: str, children: list[dict]) -> list[dict]:
        result = await self.request(
            "PATCH",
            f"/blocks/{block_id}/children",
            json_body={"children": children}
        )
        return result.get("results", [])

    async def create_container(self, parent_id: str, request: dict) -> dict:
        """Append one container block; return it, or {} if the response lacks it."""
        created = await self.append_block_children(parent_id, [request])
        for block in created:
            if block.get("type") == request.get("type"):
                return block
        return {}

    async def retrieve_block(self, block_id: str) -> dict:
        return await self.request("GET", f"/blocks/{block_id}")

    async def retrieve_page(self, page_id: str) -> dict:
        return await self.request("GET", f"/pages/{page_id}")

    async def create_page(self, params: dict) -> dict:
        return await self.request("POST", "/pages", json_body=params)

    async def retrieve_me(self) -> dict:
        return await self.request("GET", "/users/me")


# =============================================================================
# ID Parsing
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to the dashed form.

    Raises:
        ValueError: If input is not a valid UUID.
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract the UUID at the end of a Notion URL path, if any."""
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def resolve_id(ref: str) -> str:
    """Accept a UUID (with or without dashes) or a Notion URL."""
    ref = ref.strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    extracted = extract_uuid_from_url(ref)
    if extracted:
        return extracted
    raise ValueError(f"Could not resolve reference: {ref}")


# =============================================================================
# Page Duplication
# =============================================================================


def get_title_property_key(page: dict) -> Optional[str]:
    for key, prop in page.get("properties", {}).items():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return key
    return None


def get_page_title(page: dict) -> str:
    """Extract title from page properties."""
    key = get_title_property_key(page)
    if key is None:
        return "Untitled"
    parts = []
    for item in page["properties"][key].get("title", []):
        text = item.get("plain_text") or (item.get("text") or {}).get("content") or ""
        parts.append(text)
    return "".join(parts) or "Untitled"


def normalize_page_parent(parent: Any) -> dict:
    """Reduce a retrieved parent to the shape page creation accepts."""
    if not isinstance(parent, dict):
        raise ValueError("Source page has no parent")
    parent_type = parent.get("type")
    if parent_type == "workspace":
        return {"type": "workspace", "workspace": True}
    if parent_type in ("page_id", "database_id", "data_source_id") and parent.get(parent_type):
        return {"type": parent_type, parent_type: parent[parent_type]}
    raise ValueError(f"Pages cannot be created under a {parent_type} parent")


def normalize_page_cover(cover: Any) -> Optional[dict]:
    if isinstance(cover, dict) and cover.get("type") == "external":
        url = (cover.get("external") or {}).get("url")
        if isinstance(url, str):
            return {"type": "external", "external": {"url": url}}
    return None


async def duplicate_page(
    client: NotionClient,
    page_id: str,
    title: Optional[str] = None,
    invoker: Optional[ResilientInvoker] = None,
    **job_options
) -> tuple[dict, ReplicationJob]:
    """Copy a page, including its whole block tree, under the same parent.

    Args:
        client: Notion API client.
        page_id: Source page UUID.
        title: Title for the copy (default "Copy of <source title>").
        invoker: Retry wrapper shared by every call of the duplication.
        **job_options: Forwarded to ReplicationJob (chunk_size, chunk_delay,
            cancel_event, ...).

    Returns:
        Tuple of (new page object, finished replication job).
    """
    invoker = invoker or ResilientInvoker()
    source = await invoker.call(partial(client.retrieve_page, page_id))

    title_key = get_title_property_key(source) or "title"
    new_title = title or f"Copy of {get_page_title(source)}"
    params: dict = {
        "parent": normalize_page_parent(source.get("parent")),
        "properties": {
            title_key: {"title": [{"type": "text", "text": {"content": new_title}}]}
        },
    }
    icon = normalize_icon(source.get("icon"))
    if icon:
        params["icon"] = icon
    cover = normalize_page_cover(source.get("cover"))
    if cover:
        params["cover"] = cover

    new_page = await invoker.call(partial(client.create_page, params))
    logger.info(f"Created page {new_page.get('id')} ({new_title!r})")

    job = ReplicationJob(client, invoker=invoker, **job_options)
    try:
        await job.run(page_id, new_page["id"])
    except NotionCliError:
        logger.warning(f"Copy of {page_id} is incomplete; partial page {new_page['id']} left in place")
        raise
    return new_page, job


def replication_summary(new_page: dict, job: ReplicationJob) -> dict:
    return {
        "id": new_page.get("id"),
        "url": new_page.get("url"),
        "created_blocks": job.created_count,
        "substitutions": [
            {"source_id": s.source_id, "type": s.block_type, "reason": s.reason}
            for s in job.substitutions
        ],
    }


# =============================================================================
# Settings
# =============================================================================


def load_token(token_file: Optional[str] = None, env: Optional[dict] = None) -> str:
    """Read the API token from a file, falling back to NOTION_TOKEN."""
    env = os.environ if env is None else env

    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            raise NotionCliError("no_auth", f"Token file not found: {token_path}")
        token = token_path.read_text().strip()
        if not token:
            raise NotionCliError("no_auth", "Token file is empty")
        logger.debug(f"Notion token loaded from {token_path}")
        return token

    token = (env.get("NOTION_TOKEN") or "").strip()
    if not token:
        raise NotionCliError("no_auth", user_friendly_message("no_auth"))
    return token


@dataclass
class Settings:
    """Runtime configuration shared by the CLI and the MCP server."""
    token: str
    notion_version: str = NOTION_VERSION
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    chunk_size: int = DEFAULT_BATCH_SIZE
    chunk_delay: float = 0.0

    def client(self) -> NotionClient:
        return NotionClient(self.token, notion_version=self.notion_version)

    def invoker(self) -> ResilientInvoker:
        return ResilientInvoker(self.retry_policy)


def parse_max_retries(value: int) -> int:
    """Validate a --max-retries value."""
    if value < 0:
        raise ValueError("Max retries must be a non-negative integer.")
    return value


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        token=load_token(args.token_file),
        notion_version=args.notion_version,
        retry_policy=RetryPolicy(max_retries=parse_max_retries(args.max_retries)),
        chunk_size=parse_batch_size(getattr(args, "batch_size", None)),
        chunk_delay=parse_delay_ms(getattr(args, "delay_ms", None), fallback=0) / 1000,
    )


# =============================================================================
# Commands
# =============================================================================


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False))


async def cmd_page_duplicate(args, settings: Settings, client: NotionClient, cancel_event: asyncio.Event) -> int:
    new_page, job = await duplicate_page(
        client,
        resolve_id(args.page_id),
        title=args.title,
        invoker=settings.invoker(),
        chunk_size=settings.chunk_size,
        chunk_delay=settings.chunk_delay,
        cancel_event=cancel_event
    )
    _print_json(replication_summary(new_page, job))
    return 0


async def cmd_block_append(args, settings: Settings, client: NotionClient, cancel_event: asyncio.Event) -> int:
    children = parse_children_input(args.children, args.children_file)
    if children is None:
        raise ValueError("Provide --children or --children-file.")

    responses = await append_in_batches(
        client,
        settings.invoker(),
        resolve_id(args.block_id),
        children,
        chunk_size=settings.chunk_size,
        delay=parse_delay_ms(args.delay_ms) / 1000,
        cancel_event=cancel_event
    )
    _print_json({
        "chunks": len(responses),
        "created": [block.get("id") for response in responses for block in response],
    })
    return 0


async def cmd_block_list(args, settings: Settings, client: NotionClient, cancel_event: asyncio.Event) -> int:
    fetch = partial(client.list_block_children, resolve_id(args.block_id))
    invoker = settings.invoker()

    blocks: list[dict] = []
    async for block in stream(fetch, invoker):
        if args.stream:
            print(json.dumps(block, ensure_ascii=False))
        else:
            blocks.append(block)
        if cancel_event.is_set():
            raise NotionCliError("cancelled", "Listing cancelled.")

    if not args.stream:
        _print_json(blocks)
    return 0


async def cmd_auth_check(args, settings: Settings, client: NotionClient, cancel_event: asyncio.Event) -> int:
    result = await settings.invoker().call(client.retrieve_me)
    workspace = (result.get("bot") or {}).get("workspace_name", "Unknown workspace")
    print(
        f"authenticated as '{result.get('name', 'Unknown')}' ({result.get('type', 'unknown')}) "
        f"in workspace '{workspace}'"
    )
    return 0


def _install_cancel_handler(cancel_event: asyncio.Event) -> None:
    """First Ctrl-C asks the running command to stop between remote calls;
    a second one interrupts immediately."""
    loop = asyncio.get_running_loop()

    def request_cancel() -> None:
        logger.warning("Cancelling after the current request (Ctrl-C again to abort)")
        cancel_event.set()
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, request_cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable; Ctrl-C will interrupt immediately")


async def run_command(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    cancel_event = asyncio.Event()
    _install_cancel_handler(cancel_event)

    async with settings.client() as client:
        return await args.handler(args, settings, client, cancel_event)


# =============================================================================
# MCP Server
# =============================================================================


def build_mcp_server(settings: Settings, host: str = "127.0.0.1", port: int = 2052) -> FastMCP:
    """Expose duplication, batched append and listing as MCP tools.

    Each tool call opens its own NotionClient and closes it when done.
    """
    server = FastMCP("notion-cli", host=host, port=port)

    @server.tool()
    async def notion_duplicate_page(page: str, title: Optional[str] = None) -> str:
        """Duplicate a Notion page with its full block tree.

        Args:
            page: Page UUID or Notion URL.
            title: Title for the copy (default "Copy of <title>").

        Returns:
            JSON summary with the new page ID, block count and any blocks
            replaced by placeholders.
        """
        try:
            async with settings.client() as client:
                new_page, job = await duplicate_page(
                    client,
                    resolve_id(page),
                    title=title,
                    invoker=settings.invoker(),
                    chunk_size=settings.chunk_size,
                    chunk_delay=settings.chunk_delay
                )
        except (NotionCliError, ValueError) as e:
            return format_error(e)
        return json.dumps(replication_summary(new_page, job), indent=2)

    @server.tool()
    async def notion_append_blocks(parent: str, children: list[dict], batch_size: int = DEFAULT_BATCH_SIZE) -> str:
        """Append block children in batches of at most 100.

        Args:
            parent: Page/block UUID or Notion URL.
            children: Notion block objects, in order.
            batch_size: Children per request (1-100).

        Returns:
            JSON with the number of requests made and the created block IDs.
        """
        try:
            async with settings.client() as client:
                responses = await append_in_batches(
                    client,
                    settings.invoker(),
                    resolve_id(parent),
                    children,
                    chunk_size=batch_size,
                    delay=settings.chunk_delay
                )
        except (NotionCliError, ValueError) as e:
            return format_error(e)
        return json.dumps({
            "chunks": len(responses),
            "created": [block.get("id") for response in responses for block in response],
        }, indent=2)

    @server.tool()
    async def notion_list_children(parent: str, limit: int = 100) -> str:
        """List the children of a page or block, in order.

        Args:
            parent: Page/block UUID or Notion URL.
            limit: Stop after this many blocks.
        """
        try:
            async with settings.client() as client:
                fetch = partial(client.list_block_children, resolve_id(parent))
                blocks = await take(fetch, settings.invoker(), limit)
        except (NotionCliError, ValueError) as e:
            return format_error(e)
        return json.dumps(blocks, indent=2, ensure_ascii=False)

    @server.tool()
    async def notion_check_auth() -> str:
        """Verify Notion authentication and return workspace info."""
        try:
            async with settings.client() as client:
                result = await settings.invoker().call(client.retrieve_me)
        except NotionCliError as e:
            return format_error(e)
        workspace = (result.get("bot") or {}).get("workspace_name", "Unknown workspace")
        return f"authenticated as '{result.get('name', 'Unknown')}' in workspace '{workspace}'"

    return server


def make_health_endpoint(settings: Settings) -> Callable[[Request], Awaitable[JSONResponse]]:
    """Build the /health route for HTTP mode."""

    async def health_endpoint(request: Request) -> JSONResponse:
        try:
            async with settings.client() as client:
                result = await client.retrieve_me()
            workspace = (result.get("bot") or {}).get("workspace_name", "connected")
        except NotionAPIError as e:
            workspace = f"error: {e.code}"

        return JSONResponse({
            "status": "ok",
            "token_loaded": bool(settings.token),
            "workspace": workspace,
        })

    return health_endpoint


def serve(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    server = build_mcp_server(settings, host=args.host, port=args.port)

    if args.http:
        import uvicorn

        app = server.streamable_http_app()
        app.add_route("/health", make_health_endpoint(settings), methods=["GET"])

        logger.info(f"Starting MCP server on http://{args.host}:{args.port}")
        uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
    else:
        server.run()
    return 0


# =============================================================================
# Main Entry Point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notion-cli", description="Notion command-line client")
    parser.add_argument("--token-file", help="Path to file containing Notion API token (default: $NOTION_TOKEN)")
    parser.add_argument("--notion-version", default=NOTION_VERSION, help="Notion-Version header")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=DEFAULT_RETRY_POLICY.max_retries,
        help="Retries per call for rate limits and transient errors"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging and error causes")

    commands = parser.add_subparsers(dest="command", required=True)

    page = commands.add_parser("page", help="Page operations")
    page_actions = page.add_subparsers(dest="action", required=True)
    duplicate = page_actions.add_parser("duplicate", help="Duplicate a page with all its content")
    duplicate.add_argument("page_id", help="Page UUID or Notion URL")
    duplicate.add_argument("--title", help="Title for the copy")
    duplicate.add_argument("--batch-size", help=f"Blocks per append request (max {MAX_CHILDREN_PER_REQUEST})")
    duplicate.add_argument("--delay-ms", help="Pause between append requests")
    duplicate.set_defaults(handler=cmd_page_duplicate)

    block = commands.add_parser("block", help="Block operations")
    block_actions = block.add_subparsers(dest="action", required=True)

    append = block_actions.add_parser("append", help="Append child blocks from JSON")
    append.add_argument("block_id", help="Page/block UUID or Notion URL")
    append.add_argument("--children", help="JSON array of block objects")
    append.add_argument("--children-file", help="File holding the JSON array")
    append.add_argument("--batch-size", help=f"Blocks per request (default {DEFAULT_BATCH_SIZE})")
    append.add_argument("--delay-ms", help=f"Pause between requests (default {DEFAULT_DELAY_MS})")
    append.set_defaults(handler=cmd_block_append)

    list_cmd = block_actions.add_parser("list", help="List child blocks")
    list_cmd.add_argument("block_id", help="Page/block UUID or Notion URL")
    list_cmd.add_argument("--stream", action="store_true", help="Print one JSON object per line as pages arrive")
    list_cmd.set_defaults(handler=cmd_block_list)

    auth = commands.add_parser("auth", help="Authentication")
    auth_actions = auth.add_subparsers(dest="action", required=True)
    check = auth_actions.add_parser("check", help="Verify the token")
    check.set_defaults(handler=cmd_auth_check)

    serve_cmd = commands.add_parser("serve", help="Run as an MCP server")
    serve_cmd.add_argument("--http", action="store_true", help="Serve over HTTP instead of stdio")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=2052)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Run the notion-cli command line."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    try:
        if args.command == "serve":
            return serve(args)
        return asyncio.run(run_command(args))
    except (NotionCliError, ValueError) as e:
        print(format_error(e, verbose=args.verbose), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
