"""Cursor-following listing for Resource Manager collections.

List responses carry a ``value`` array and, when more results exist, a
``nextLink`` URL. PaginatedLister keeps requesting pages until no link is
returned and hands back a single list. The listing is all-or-nothing: a
failed page discards what was already collected.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from azure.core.exceptions import AzureError

logger = logging.getLogger(__name__)

# Guard against a server handing back the same link forever
MAX_PAGES = 1000

PageFetcher = Callable[[str], dict[str, Any]]


class PaginationError(Exception):
    """Raised when any page of a listing cannot be fetched.

    The underlying error is chained as ``__cause__`` and its message is kept
    in this error's message.
    """

    def __init__(self, message: str, pages_fetched: int) -> None:
        super().__init__(message)
        self.pages_fetched = pages_fetched


class PaginatedLister:
    """Materialize a complete listing by following continuation links.

    Args:
        fetch_first: Callable issuing the initial listing request.
        fetch_next: Callable taking a ``nextLink`` URL and returning that page.
    """

    def __init__(
        self,
        fetch_first: Callable[[], dict[str, Any]],
        fetch_next: PageFetcher,
    ) -> None:
        self._fetch_first = fetch_first
        self._fetch_next = fetch_next

    def list_all(self) -> list[dict[str, Any]]:
        """Return every item across all pages in server order.

        Raises:
            PaginationError: If any page fetch fails or the page limit is hit.
        """
        items: list[dict[str, Any]] = []
        pages = 0
        next_link: str | None = None

        while True:
            try:
                page = self._fetch_first() if pages == 0 else self._fetch_next(next_link or "")
            except (AzureError, ValueError) as e:
                logger.error(
                    "Listing aborted on page fetch failure",
                    extra={"page": pages + 1, "error": str(e)},
                )
                raise PaginationError(
                    f"Failed to fetch page {pages + 1}: {e}", pages_fetched=pages
                ) from e

            if not isinstance(page, dict):
                raise PaginationError(
                    f"Page {pages + 1} is not a listing object: {type(page).__name__}",
                    pages_fetched=pages,
                )

            pages += 1
            items.extend(page.get("value") or [])
            next_link = page.get("nextLink")

            if not next_link:
                break
            if pages >= MAX_PAGES:
                raise PaginationError(
                    f"Listing exceeded {MAX_PAGES} pages without completing",
                    pages_fetched=pages,
                )

        logger.debug("Listing complete", extra={"pages": pages, "items": len(items)})
        return items


def list_resources(
    arm: Any,
    path: str,
    api_version: str,
    params: dict[str, str] | None = None,
) -> list[dict[str, Any]]:
    """List a collection through an ArmClient, following every nextLink."""
    lister = PaginatedLister(
        fetch_first=lambda: arm.request("GET", path, api_version=api_version, params=params),
        fetch_next=lambda link: arm.request("GET", link),
    )
    return lister.list_all()
