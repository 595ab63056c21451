"""
EcoManager order API client.

Fetches one page of orders per call, newest first, and normalizes the
response. Every request is gated by the rate governor. Retrying is the
caller's decision: errors are classified and raised, never looped on.
All tokens are passed via configuration and never logged.
"""

import logging
from typing import Optional, Union

import requests
from requests.adapters import HTTPAdapter

from .models import OrderSnapshot, Page

logger = logging.getLogger(__name__)


DEFAULT_RETRY_AFTER_SECONDS = 60.0


class UpstreamAPIError(Exception):
    """Raised when the upstream order API returns an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(UpstreamAPIError):
    """HTTP 429. The caller should retry the same token after backing off."""

    def __init__(self, message: str, retry_after: float = DEFAULT_RETRY_AFTER_SECONDS):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class AuthenticationFailedError(UpstreamAPIError):
    """HTTP 401/403. Fatal for the store until its configuration changes."""
    pass


class TransientNetworkError(UpstreamAPIError):
    """Timeouts, connection failures and 5xx responses. Retryable."""
    pass


class MalformedPageError(UpstreamAPIError):
    """The response could not be parsed into a page of orders."""
    pass


class EcoManagerClient:
    """
    Client for one store's EcoManager order API.

    Handles:
    - Bearer token authentication
    - Page-number or cursor pagination, always sorted by descending ID
    - Rate governance (acquire before every request, defer on 429)
    - Error classification for the caller's retry policy

    Usage:
        client = EcoManagerClient(store, governor)

        page = client.fetch(1)
        for order in page.orders:
            print(order.id, order.status)
    """

    ORDERS_ENDPOINT = "/orders"

    def __init__(
        self,
        store,
        governor,
        page_size: int = 20,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize EcoManager client.

        Args:
            store: StoreCredential for the store (token never logged)
            governor: RateGovernor shared by every client of this store
            page_size: Orders per page (per_page)
            timeout: Request timeout in seconds
            session: Optional pre-built requests session
        """
        self.store_id = store.identifier
        self.base_url = store.base_url.rstrip("/")
        self.pagination = store.pagination
        self.page_size = page_size
        self.timeout = timeout
        self._governor = governor

        self._session = session or requests.Session()

        # No transport-level retries; the sync engine owns the retry budget
        adapter = HTTPAdapter(max_retries=0)
        self._session.mount("https://", adapter)

        self._session.headers.update({
            "Authorization": f"Bearer {store.api_token}",
            "Accept": "application/json",
        })

        logger.debug(f"EcoManager client initialized for {self.store_id} ({self.pagination} mode)")

    def __repr__(self) -> str:
        """Never expose token in repr."""
        return f"EcoManagerClient(store='{self.store_id}', base_url='{self.base_url}')"

    @property
    def head_token(self) -> Union[int, None]:
        """Token of the newest page."""
        return 1 if self.pagination == "page" else None

    def fetch(self, token: Union[int, str, None] = None) -> Page:
        """
        Fetch one page of orders.

        Args:
            token: Page number (page mode) or cursor (cursor mode);
                None means the newest page

        Returns:
            Normalized Page

        Raises:
            RateLimitedError: On HTTP 429, after deferring the governor
            AuthenticationFailedError: On HTTP 401/403
            TransientNetworkError: On timeouts, connection errors, 5xx
            MalformedPageError: If the body is not a page of orders
            UpstreamAPIError: On any other error status
        """
        params = {"per_page": self.page_size, "sort": "-id"}
        if self.pagination == "page":
            token = int(token) if token is not None else 1
            params["page"] = token
        elif token is not None:
            params["cursor"] = token

        body = self._get(self.ORDERS_ENDPOINT, params)
        return self._parse_page(body, token)

    def check_connection(self) -> None:
        """
        Probe the API with a one-order request.

        Raises:
            The same errors as fetch(); nothing is retried here
        """
        self._get(self.ORDERS_ENDPOINT, {"per_page": 1, "sort": "-id"})
        logger.info(f"Connection test passed for {self.store_id}")

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()

    def _get(self, endpoint: str, params: dict):
        """
        Make one governed, authenticated GET request.

        Returns:
            Parsed JSON body
        """
        self._governor.acquire(self.store_id)

        url = f"{self.base_url}{endpoint}"
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(f"{self.store_id}: request timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientNetworkError(f"{self.store_id}: connection failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamAPIError(f"{self.store_id}: request failed: {e}") from e

        status = response.status_code

        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"{self.store_id}: rate limited by upstream, backing off {retry_after:.0f}s")
            self._governor.defer(self.store_id, retry_after)
            raise RateLimitedError(
                f"{self.store_id}: rate limited (retry after {retry_after:.0f}s)",
                retry_after=retry_after,
            )

        if status in (401, 403):
            raise AuthenticationFailedError(
                f"{self.store_id}: authentication failed (HTTP {status})",
                status_code=status,
            )

        if status >= 500:
            raise TransientNetworkError(
                f"{self.store_id}: upstream error (HTTP {status})",
                status_code=status,
            )

        if status >= 400:
            raise UpstreamAPIError(
                f"{self.store_id}: request rejected (HTTP {status})",
                status_code=status,
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedPageError(
                f"{self.store_id}: response is not valid JSON",
                status_code=status,
            ) from e

    def _parse_page(self, body, token) -> Page:
        """
        Normalize an API body into a Page.

        Accepts {data: [...], meta: {...}} or a bare list. Individual
        malformed orders are skipped; a malformed page raises.
        """
        if isinstance(body, list):
            records, meta = body, {}
        elif isinstance(body, dict) and isinstance(body.get("data"), list):
            records, meta = body["data"], body.get("meta") or {}
        else:
            raise MalformedPageError(f"{self.store_id}: unexpected response shape for page {token}")

        if not isinstance(meta, dict):
            raise MalformedPageError(f"{self.store_id}: unexpected meta for page {token}")

        orders = []
        skipped = 0
        for record in records:
            try:
                orders.append(OrderSnapshot.from_api_response(record))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                skipped += 1
                logger.warning(f"{self.store_id}: skipping malformed order on page {token}: {e}")

        if self.pagination == "page":
            if "next_page" in meta:
                next_token = self._parse_next_page(meta["next_page"], token)
            else:
                next_token = token + 1
        else:
            next_token = meta.get("next_cursor")

        return Page(token=token, orders=tuple(orders), next_token=next_token, skipped=skipped)

    def _parse_next_page(self, value, token) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise MalformedPageError(
                f"{self.store_id}: invalid next_page {value!r} for page {token}"
            ) from e


def _parse_retry_after(value: Optional[str]) -> float:
    if value is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0.0, float(value))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
