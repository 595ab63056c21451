"""
Position recovery by bounded page search.

When no trustworthy saved position exists, the page holding a known
order ID is found again by probing the newest-first listing: pages
1, 2, 4, 8, ... until the target is bracketed, then a binary search
inside the bracket. The upstream list only grows at the head, so page
ranges shift towards higher page numbers over time but stay ordered.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..storage.models import PositionSource
from ..upstream.client import AuthenticationFailedError, UpstreamAPIError
from ..upstream.models import Page

logger = logging.getLogger(__name__)


class RecoveryError(Exception):
    """Raised when the page holding a target ID cannot be determined."""
    pass


@dataclass(frozen=True)
class LocatedPage:
    """
    Result of a locate() search.

    Attributes:
        page: Page number found
        first_id: Highest ID on that page (None if the page is empty)
        last_id: Lowest ID on that page (None if the page is empty)
        exact: True if the page brackets the target ID
        probes: Number of page fetches spent
        source: Always recovered; the page was derived, not scanned
        snapshot: The page as fetched during the search
    """
    page: int
    first_id: Optional[int]
    last_id: Optional[int]
    exact: bool
    probes: int
    source: PositionSource = PositionSource.RECOVERED
    snapshot: Optional[Page] = None


class PositionRecovery:
    """
    Locates the page containing a target order ID.

    Usage:
        recovery = PositionRecovery(fetch=client.fetch, max_probes=100)
        located = recovery.locate("natu", 17097)
        if not located.exact:
            ...  # widen the following scan
    """

    def __init__(
        self,
        fetch: Callable[[int], Page],
        max_probes: int = 100,
        pagination: str = "page",
    ):
        """
        Args:
            fetch: Fetches one page by number (already rate governed and retried)
            max_probes: Upper bound on page fetches per search
            pagination: "page" or "cursor"; cursor listings cannot be searched
        """
        self._fetch = fetch
        self.max_probes = max_probes
        self.pagination = pagination

    def locate(self, store_id: str, target_id: int) -> LocatedPage:
        """
        Find the page whose ID range brackets target_id.

        If no page brackets it (the order was removed upstream), the
        nearest page on the newer side is returned with exact=False.

        Raises:
            RecoveryError: If the listing cannot be searched, a probe
                fails, or the probe budget runs out
            AuthenticationFailedError: If the store rejects the token
        """
        if self.pagination != "page":
            raise RecoveryError(f"{store_id}: cursor-paginated listing cannot be searched by page")

        pages: dict[int, Page] = {}

        def probe(number: int) -> Page:
            if number in pages:
                return pages[number]
            if len(pages) >= self.max_probes:
                raise RecoveryError(
                    f"{store_id}: gave up locating order {target_id} after {len(pages)} probes"
                )
            try:
                page = self._fetch(number)
            except AuthenticationFailedError:
                raise
            except UpstreamAPIError as e:
                raise RecoveryError(f"{store_id}: probe of page {number} failed: {e}") from e
            pages[number] = page
            return page

        def found(number: int, exact: bool) -> LocatedPage:
            page = probe(number)
            return LocatedPage(
                page=number,
                first_id=page.first_id,
                last_id=page.last_id,
                exact=exact,
                probes=len(pages),
                snapshot=page,
            )

        # Highest-numbered page seen whose IDs are all newer than the target
        newer: Optional[int] = None

        # Range finding: 1, 2, 4, 8, ...
        left, right = 1, None
        number = 1
        while right is None:
            page = probe(number)
            if page.is_empty or page.first_id < target_id:
                right = number - 1
            elif page.brackets(target_id):
                logger.info(f"{store_id}: order {target_id} found on page {number} ({len(pages)} probes)")
                return found(number, exact=True)
            else:
                newer = number
                left = number + 1
                number *= 2

        # Binary search inside [left, right]
        while left <= right:
            mid = (left + right) // 2
            page = probe(mid)
            if page.is_empty:
                right = mid - 1
            elif page.brackets(target_id):
                logger.info(f"{store_id}: order {target_id} found on page {mid} ({len(pages)} probes)")
                return found(mid, exact=True)
            elif page.last_id > target_id:
                newer = mid
                left = mid + 1
            else:
                right = mid - 1

        nearest = newer or 1
        logger.warning(
            f"{store_id}: order {target_id} not found upstream, "
            f"using nearest page {nearest} ({len(pages)} probes)"
        )
        return found(nearest, exact=False)
