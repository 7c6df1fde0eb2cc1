from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import httpx
import structlog

from keymeter.errors import VendorAPIError
from keymeter.models import TimeWindow, UsageReport, VendorKey

logger = structlog.get_logger()

# hard cap on pages per listing, independent of wall clock time
MAX_PAGES = 20

# error types vendors return when a key authenticated but was throttled
RATE_LIMIT_ERROR_TYPES = frozenset(
    {"rate_limit_error", "overloaded_error", "rate_limit_exceeded"}
)
RATE_LIMIT_STATUS_CODES = frozenset({429, 529})


class UsageAdapter(Protocol):
    """
    UsageAdapter stands as a common protocol that every vendor adapter
    must satisfy.

    Adapters are long lived and hold one HTTP client; the admin
    credential is passed on each call so one adapter instance can serve
    every platform account of its vendor.
    """

    @property
    def platform(self) -> "str": ...

    async def fetch_usage(
        self,
        credential: "Any",
        window: "TimeWindow",
    ) -> "UsageReport": ...

    async def fetch_keys(self, credential: "Any") -> "list[VendorKey]": ...

    async def verify_key(self, api_key: "str") -> "bool": ...

    async def close(self) -> "None": ...


@dataclass(slots=True)
class Pages:
    """
    Pages holds the raw items collected by paginate().
    """

    items: "list[dict[str, Any]]" = field(default_factory=list)
    pages_fetched: "int" = 0
    truncated: "bool" = False


def _error_payload(resp: "httpx.Response") -> "Any":
    try:
        return resp.json()
    except ValueError:
        return None


def vendor_error(resp: "httpx.Response", default: "str") -> "VendorAPIError":
    """
    builds a VendorAPIError out of a failed vendor response, picking the
    vendor's own message and code where the body carries them.
    """
    payload = _error_payload(resp)
    message = default
    code = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message") or default
            code = error.get("code") or error.get("type")
        elif isinstance(error, str) and error:
            message = error
    elif resp.text:
        message = f"{default}: {resp.text[:200]}"

    return VendorAPIError(
        message,
        status_code=resp.status_code or None,
        code=str(code) if code is not None else None,
    )


def check_response(resp: "httpx.Response", default: "str") -> "dict[str, Any]":
    """
    returns the JSON body of a successful vendor response, raises
    VendorAPIError otherwise. A 2xx body that still carries an `error`
    object is treated as a failure.
    """
    if resp.is_success:
        payload = _error_payload(resp)
        if isinstance(payload, dict) and not payload.get("error"):
            return payload
    raise vendor_error(resp, default)


def is_rate_limited(resp: "httpx.Response") -> "bool":
    """
    reaching a rate limit or overload proves the credential was accepted.
    """
    if resp.status_code in RATE_LIMIT_STATUS_CODES:
        return True

    payload = _error_payload(resp)
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        return (error.get("type") or error.get("code")) in RATE_LIMIT_ERROR_TYPES
    return False


def next_page_cursor(data: "dict[str, Any]") -> "str | None":
    return data.get("next_page") or None


def last_id_cursor(data: "dict[str, Any]") -> "str | None":
    return data.get("last_id") or None


async def paginate(
    fetch_page: "Callable[[str | None], Awaitable[dict[str, Any]]]",
    source: "str",
    next_cursor: "Callable[[dict[str, Any]], str | None]" = next_page_cursor,
    max_pages: "int" = MAX_PAGES,
) -> "Pages":
    """
    pages through a vendor listing until `has_more` is false or
    max_pages pages were fetched.

    A failure on the first page is fatal and propagates. A failure on
    any later page stops pagination and keeps what was collected.
    """
    pages = Pages()
    cursor: "str | None" = None

    while pages.pages_fetched < max_pages:
        try:
            data = await fetch_page(cursor)
        except (VendorAPIError, httpx.HTTPError) as exc:
            if pages.pages_fetched == 0:
                if isinstance(exc, httpx.HTTPError):
                    raise VendorAPIError(f"{source} request failed: {exc}") from exc
                raise

            logger.warning(
                "pagination_stopped",
                source=source,
                pages_fetched=pages.pages_fetched,
                error=str(exc),
            )
            pages.truncated = True
            break

        pages.items.extend(data.get("data") or [])
        pages.pages_fetched += 1

        # break if there are no more pages to fetch
        if not data.get("has_more"):
            break

        cursor = next_cursor(data)
        if cursor is None:
            logger.warning("pagination_missing_cursor", source=source)
            break
    else:
        logger.warning("pagination_page_cap_reached", source=source, max_pages=max_pages)

    logger.debug(
        "pagination_done",
        source=source,
        pages_fetched=pages.pages_fetched,
        item_count=len(pages.items),
    )
    return pages
