"""WooCommerce REST API client.

WHAT:
    Async wrapper for the WooCommerce REST API (wc/v3) with:
    - Basic authentication with consumer key/secret
    - Page-number pagination (X-WP-Total / X-WP-TotalPages headers)
    - Typed errors for network, auth and remote failures
    - A non-raising connection test for the store wizard

WHY:
    Encapsulates all storefront interaction for the sync pipeline. The client
    is stateless and has no local side effects: every fetch can be repeated
    and returns the same page barring remote changes.

    Failed requests are NOT retried. A failure surfaces to the orchestrator,
    which fails the current sync step; the user retries by starting a new sync.

REFERENCES:
    - WooCommerce REST API: https://woocommerce.github.io/woocommerce-rest-api-docs/
    - Pagination: https://woocommerce.github.io/woocommerce-rest-api-docs/#pagination
    - app/services/store_sync_service.py (consumer)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

API_PATH = "/wp-json/wc/v3"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 100  # WooCommerce caps per_page at 100
USER_AGENT = "StoreSync/1.0"


# =============================================================================
# ERRORS
# =============================================================================

class RemoteStoreError(Exception):
    """Base class for storefront API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RemoteConnectionError(RemoteStoreError):
    """Store unreachable: DNS, refused connection, TLS failure or timeout."""


class RemoteAuthError(RemoteStoreError):
    """Credentials rejected (401/403). Terminal until credentials change."""


class RemoteError(RemoteStoreError):
    """Store answered with a non-2xx status for a specific request."""


def describe_remote_error(error: RemoteStoreError) -> str:
    """Human-readable reason shown in the store wizard and in `sync_error`."""
    if isinstance(error, RemoteAuthError):
        if error.code == "woocommerce_rest_cannot_view":
            return "The API key does not have permission to read store data."
        if error.status_code == 403:
            return "Access denied. Make sure the API key has Read/Write permissions."
        return "Invalid API credentials. Check the Consumer Key and Consumer Secret."
    if isinstance(error, RemoteConnectionError):
        return str(error)
    if error.status_code == 404:
        return "WooCommerce REST API not found. Make sure WooCommerce is installed and permalinks are enabled."
    if error.status_code == 429:
        return "The store is rate limiting requests. Try again in a few minutes."
    return f"Store API error ({error.status_code}): {error}"


def _describe_transport_error(exc: httpx.RequestError) -> str:
    text = str(exc).lower()
    if isinstance(exc, httpx.TimeoutException):
        return "Connection timed out. The store may be slow or unreachable."
    if "ssl" in text or "certificate" in text:
        return "SSL certificate error. Make sure the store uses a valid HTTPS certificate."
    if (
        "name or service not known" in text
        or "nodename nor servname" in text
        or "getaddrinfo" in text
        or "no address associated" in text
        or "name resolution" in text
    ):
        return "Store not found. Check the store URL."
    if "refused" in text:
        return "Connection refused. Is the store online?"
    return f"Could not reach the store: {exc}"


# =============================================================================
# HELPERS
# =============================================================================

def normalize_store_url(url: str) -> str:
    """Canonical store URL persisted on the Store row.

    Lowercases, forces https:// when no scheme is given and strips trailing
    slashes and a pasted REST suffix.
    """
    normalized = url.strip().lower()
    if not normalized.startswith("http://") and not normalized.startswith("https://"):
        normalized = f"https://{normalized}"
    normalized = normalized.rstrip("/")
    if normalized.endswith(API_PATH):
        normalized = normalized[: -len(API_PATH)]
    return normalized.rstrip("/")


def build_api_url(store_url: str) -> str:
    """Append the wc/v3 REST prefix to a store URL unless already present."""
    base = store_url.strip().rstrip("/")
    if base.endswith(API_PATH):
        return base
    return f"{base}{API_PATH}"


@dataclass
class RemotePage:
    """One page of raw WooCommerce records plus pagination metadata."""

    records: List[Dict[str, Any]]
    page: int
    total_pages: int
    total: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


def _header_int(response: httpx.Response, name: str) -> Optional[int]:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


# =============================================================================
# CLIENT
# =============================================================================

class WooCommerceClient:
    """REST client for one WooCommerce store.

    WHAT: Fetches paginated products, variations and orders; pushes stock edits
    WHY: Single place for auth, timeouts and error classification

    Usage:
        client = WooCommerceClient("https://shop.example.com", "ck_xxx", "cs_xxx")
        page = await client.get_products(page=1, per_page=100)
        while page.has_more: ...
    """

    def __init__(
        self,
        store_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize WooCommerce client.

        Args:
            store_url: Store base URL (with or without /wp-json/wc/v3)
            consumer_key: REST API consumer key (ck_...)
            consumer_secret: REST API consumer secret (cs_...)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.store_url = store_url
        self.api_url = build_api_url(store_url)
        self._auth = (consumer_key, consumer_secret)
        self.timeout = timeout
        self._transport = transport

        logger.info("[WOO_CLIENT] Initialized for %s (timeout=%ss)", self.api_url, timeout)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one request and classify failures.

        Raises:
            RemoteConnectionError: Network, DNS, TLS or timeout failure
            RemoteAuthError: 401/403 from the store
            RemoteError: Any other non-2xx response
        """
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}

        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                auth=self._auth,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, params=params, json=json)
        except httpx.RequestError as e:
            message = _describe_transport_error(e)
            logger.warning("[WOO_CLIENT] %s %s failed: %s", method, path, message)
            raise RemoteConnectionError(message) from e

        if response.is_success:
            return response

        code, message = self._parse_error_body(response)
        logger.warning(
            "[WOO_CLIENT] %s %s returned %s (code=%s): %s",
            method, path, response.status_code, code, message,
        )
        if response.status_code in (401, 403):
            raise RemoteAuthError(message, status_code=response.status_code, code=code)
        raise RemoteError(message, status_code=response.status_code, code=code)

    @staticmethod
    def _parse_error_body(response: httpx.Response) -> Tuple[Optional[str], str]:
        try:
            body = response.json()
        except ValueError:
            return None, response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            return body.get("code"), body.get("message") or response.reason_phrase
        return None, response.reason_phrase

    async def _get_page(self, path: str, params: Dict[str, Any]) -> RemotePage:
        response = await self._request("GET", path, params=params)
        try:
            records = response.json()
        except ValueError as e:
            raise RemoteError(
                f"Invalid JSON from {path}", status_code=response.status_code
            ) from e
        if not isinstance(records, list):
            raise RemoteError(f"Expected a list from {path}", status_code=response.status_code)

        page = int(params.get("page", 1))
        total_pages = _header_int(response, "X-WP-TotalPages")
        if total_pages is None:
            # Header missing: keep paging only while pages come back full
            total_pages = page + 1 if len(records) >= int(params.get("per_page", DEFAULT_PAGE_SIZE)) else page

        return RemotePage(
            records=records,
            page=page,
            total_pages=total_pages,
            total=_header_int(response, "X-WP-Total"),
        )

    # =========================================================================
    # CONNECTION
    # =========================================================================

    async def ping(self) -> None:
        """Cheapest authenticated call; raises a typed error on failure."""
        await self._request("GET", "/products", params={"per_page": 1})

    async def test_connection(self) -> Dict[str, Any]:
        """Check reachability and credentials without raising.

        Returns:
            {"success": True} or {"success": False, "error": "<reason>"}
        """
        try:
            await self.ping()
        except RemoteStoreError as e:
            return {"success": False, "error": describe_remote_error(e)}

        logger.info("[WOO_CLIENT] Connection test passed for %s", self.api_url)
        return {"success": True}

    # =========================================================================
    # READS
    # =========================================================================

    async def get_products(
        self,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> RemotePage:
        """Fetch one page of products (all statuses, ascending ID)."""
        params: Dict[str, Any] = {
            "page": page,
            "per_page": min(per_page, MAX_PAGE_SIZE),
            "status": "any",
            "orderby": "id",
            "order": "asc",
        }
        return await self._get_page("/products", params)

    async def get_variations(
        self,
        wc_product_id: int,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> RemotePage:
        """Fetch one page of variations for a variable product."""
        params = {
            "page": page,
            "per_page": min(per_page, MAX_PAGE_SIZE),
            "orderby": "id",
            "order": "asc",
        }
        return await self._get_page(f"/products/{wc_product_id}/variations", params)

    async def get_orders(
        self,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
        after: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> RemotePage:
        """Fetch one page of orders, newest first.

        Args:
            after: Only orders created after this timestamp
            status: Single WooCommerce order status filter (e.g. "processing")
        """
        params: Dict[str, Any] = {
            "page": page,
            "per_page": min(per_page, MAX_PAGE_SIZE),
            "orderby": "date",
            "order": "desc",
        }
        if after:
            params["after"] = after.strftime("%Y-%m-%dT%H:%M:%S")
        if status:
            params["status"] = status
        return await self._get_page("/orders", params)

    # =========================================================================
    # WRITES (local stock edits)
    # =========================================================================

    async def update_product_stock(self, wc_product_id: int, quantity: int) -> Dict[str, Any]:
        """Set stock for a simple product and enable stock management."""
        response = await self._request(
            "PUT",
            f"/products/{wc_product_id}",
            json={"manage_stock": True, "stock_quantity": quantity},
        )
        logger.info("[WOO_CLIENT] Stock for product %s set to %s", wc_product_id, quantity)
        return response.json()

    async def update_variation_stock(
        self, wc_product_id: int, wc_variation_id: int, quantity: int
    ) -> Dict[str, Any]:
        """Set stock for one variation and enable stock management."""
        response = await self._request(
            "PUT",
            f"/products/{wc_product_id}/variations/{wc_variation_id}",
            json={"manage_stock": True, "stock_quantity": quantity},
        )
        logger.info(
            "[WOO_CLIENT] Stock for variation %s/%s set to %s",
            wc_product_id, wc_variation_id, quantity,
        )
        return response.json()
