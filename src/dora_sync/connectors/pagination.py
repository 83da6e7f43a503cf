"""Link-header pagination walker shared by the GitHub collectors.

Follows the ``rel="next"`` locator of each page until upstream stops
returning one. A failed page fetch aborts the whole walk: the exception
propagates to the caller and no partial result is returned.

Reference: https://docs.github.com/en/rest/using-the-rest-api/using-pagination-in-the-rest-api
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import httpx

logger = logging.getLogger("dora_sync.pagination")

PageFetcher = Callable[[str, Optional[dict[str, str]]], Awaitable[httpx.Response]]


def parse_next_link(link_header: Optional[str], base_url: str) -> Optional[str]:
    """Extract the ``rel="next"`` URL from a Link header.

    Format: <https://api.github.com/...?page=2>; rel="next", <...>; rel="last"

    Args:
        link_header: Raw Link header value
        base_url: Only URLs under this base are followed

    Returns:
        Next page URL or None if there is no next page
    """
    if not link_header:
        return None

    for entry in link_header.split(","):
        segments = [s.strip() for s in entry.split(";")]
        if len(segments) < 2:
            continue
        target = segments[0]
        if not (target.startswith("<") and target.endswith(">")):
            continue
        if 'rel="next"' not in segments[1:]:
            continue

        url = target[1:-1]
        # A crafted Link header must not redirect the walk to another host
        if not url.startswith(base_url.rstrip("/") + "/"):
            logger.warning("Rejecting Link header URL not matching base_url: %.100s", url)
            return None
        return url
    return None


async def walk_pages(
    fetch: PageFetcher,
    path: str,
    params: Optional[dict[str, str]] = None,
    *,
    base_url: str,
    items_key: Optional[str] = None,
    stop_when: Optional[Callable[[dict[str, Any]], bool]] = None,
    max_pages: int = 100,
) -> list[dict[str, Any]]:
    """Fetch every page of a Link-paginated endpoint.

    Args:
        fetch: Issues one GET and returns the response (raises on failure)
        path: Path of the first page
        params: Query parameters of the first page; later pages carry theirs in the link
        base_url: API base, stripped from next links before they are fetched
        items_key: Key holding the page's items when the body is an object
        stop_when: Predicate marking the first item past the wanted window;
            that item and everything after it are dropped and the walk ends
        max_pages: Safety limit to prevent runaway pagination

    Returns:
        Items of all pages, in upstream order
    """
    items: list[dict[str, Any]] = []
    current_path = path
    current_params = params

    for page in range(1, max_pages + 1):
        response = await fetch(current_path, current_params)
        body = response.json()

        if isinstance(body, list):
            page_items = body
        elif isinstance(body, dict) and items_key:
            page_items = body.get(items_key) or []
        else:
            page_items = []

        for item in page_items:
            if stop_when is not None and stop_when(item):
                logger.debug(
                    "Stopping pagination at page %d: item outside sync window", page
                )
                return items
            items.append(item)

        next_url = parse_next_link(response.headers.get("Link"), base_url)
        if not next_url:
            break

        current_path = next_url[len(base_url.rstrip("/")):]
        current_params = None  # Parameters are embedded in the Link URL

        logger.debug("Paginating: page %d, %d items so far", page, len(items))
    else:
        logger.warning(
            "Pagination stopped after max_pages=%d for %s", max_pages, path
        )

    return items
