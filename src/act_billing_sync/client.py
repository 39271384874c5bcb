"""
Act! API Client

Synchronous, multi-tenant HTTP client with:
- Per-tenant rate limiting (sliding window + minimum spacing)
- Bearer token reuse via TokenCache, one self-healing retry on 401
- Retry with exponential backoff for transport errors
- Typed ApiResult values instead of exceptions at the call boundary
- Per-connection API call accounting
"""

import logging
import time
from typing import Any, Callable

import httpx
import structlog
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from act_billing_sync.config import SyncSettings
from act_billing_sync.models import (
    ActOpportunity,
    ActProduct,
    ActTask,
    ApiResult,
    Connection,
)
from act_billing_sync.rate_limiter import RateLimitExceeded, TenantRateLimiter
from act_billing_sync.store import SyncStore
from act_billing_sync.tokens import (
    DATABASE_HEADER,
    CredentialCipher,
    TokenCache,
    count_api_call,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ActAPIError(Exception):
    """Base exception for Act! API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class ActRateLimitError(ActAPIError):
    """Raised when the tenant's call budget is spent (locally or 429)."""
    pass


class ActAuthError(ActAPIError):
    """Raised when no bearer token can be obtained or the vendor refuses it."""
    pass


class ActTokenRejectedError(ActAuthError):
    """First 401 for a logical call: token dropped, retried once."""
    pass


class ActServerError(ActAPIError):
    """Raised on server errors (5xx)."""
    pass


class ActNotFoundError(ActAPIError):
    """Raised when resource not found (404)."""
    pass


# ---------------------------------------------------------------------------
# Retry Configuration
# ---------------------------------------------------------------------------

def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry."""
    if isinstance(exception, ActTokenRejectedError):
        return True
    if isinstance(exception, httpx.TransportError):
        return True
    return False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ActClient:
    """
    Act! Web API client shared by all tenants in the process.

    Token and rate-limit state is keyed by tenant id, so one client can
    serve every connection in a batch.

    Example:
        with ActClient(store, settings) as client:
            result = client.get_opportunities(connection)
            if result.success:
                for opportunity in result.data:
                    print(opportunity.name)
    """

    OPPORTUNITIES_ENDPOINT = "/api/opportunities"
    TASKS_ENDPOINT = "/api/tasks"
    PRODUCTS_ENDPOINT = "/api/opportunities/{opportunity_id}/products"
    PRODUCT_ENDPOINT = "/api/opportunities/{opportunity_id}/products/{product_id}"

    def __init__(
        self,
        store: SyncStore,
        settings: SyncSettings | None = None,
        cipher: CredentialCipher | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.store = store
        self.settings = settings or SyncSettings()
        self.max_retries = self.settings.max_retries

        self._clock = clock or time.time
        self._sleep = sleep or time.sleep
        self._owns_http = http_client is None
        self._http = http_client or self._build_http()

        self.rate_limiter = TenantRateLimiter(
            calls_per_window=self.settings.rate_limit_calls,
            window_seconds=self.settings.rate_limit_window_seconds,
            min_interval_seconds=self.settings.min_request_interval_seconds,
            max_window_wait_seconds=self.settings.max_window_wait_seconds,
            clock=self._clock,
            sleep=self._sleep,
        )
        self.tokens = TokenCache(
            store,
            self._http,
            self.rate_limiter,
            settings=self.settings,
            cipher=cipher,
            clock=self._clock,
        )

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0

    def _build_http(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.settings.http_timeout_seconds,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers={"User-Agent": "act-billing-sync/1.0"},
        )

    def __enter__(self) -> "ActClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            self._http.close()

    def _url(self, endpoint: str, connection: Connection) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{connection.base_url(self.settings.default_api_base_url)}{endpoint}"

    # -------------------------------------------------------------------------
    # Core request
    # -------------------------------------------------------------------------

    def call(
        self,
        endpoint: str,
        connection: Connection,
        retry_count: int = 0,
        method: str = "GET",
        payload: dict[str, Any] | None = None,
    ) -> ApiResult:
        """
        Make one logical, rate-limited, authenticated call.

        At most max_retries + 1 - retry_count round trips are made. A 401
        drops the cached token and is retried once; a second 401 is
        terminal. Other HTTP errors are returned without retry.
        """
        tenant_id = connection.tenant_id
        log = logger.bind(tenant_id=tenant_id, endpoint=endpoint, method=method)

        if retry_count > self.max_retries:
            log.error("Max retries exceeded")
            return ApiResult(success=False, error="Max retries exceeded", attempts=0)

        url = self._url(endpoint, connection)
        attempts = 0
        rejected = 0

        def _do_request() -> httpx.Response:
            nonlocal attempts, rejected
            attempts += 1

            try:
                self.rate_limiter.check_or_wait(tenant_id)
            except RateLimitExceeded as e:
                raise ActRateLimitError("Rate limit exceeded", status_code=None) from e

            token = self.tokens.get(connection)
            if not token:
                raise ActAuthError("Failed to obtain bearer token")

            self._request_count += 1
            request_id = self._request_count
            log.debug("API request", request_id=request_id, attempt=attempts)

            start_time = time.monotonic()
            response = self._http.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {token}",
                    DATABASE_HEADER: connection.database_name,
                },
                json=payload,
            )
            elapsed = time.monotonic() - start_time
            count_api_call(self.store, connection.id)

            log.debug(
                "API response",
                request_id=request_id,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000),
            )

            if response.status_code == 401:
                self._error_count += 1
                rejected += 1
                if rejected == 1:
                    log.info("Received 401, refreshing token and retrying")
                    self.tokens.invalidate(tenant_id)
                    raise ActTokenRejectedError(
                        "Bearer token rejected", status_code=401
                    )
                raise ActAuthError(
                    f"401: {response.text[:500]}",
                    status_code=401,
                    response_body=response.text[:500],
                )

            if response.status_code == 429:
                self._error_count += 1
                raise ActRateLimitError(
                    f"429: {response.text[:500]}",
                    status_code=429,
                    response_body=response.text[:500],
                )

            if response.status_code == 404:
                self._error_count += 1
                raise ActNotFoundError(
                    f"404: {response.text[:500]}",
                    status_code=404,
                    response_body=response.text[:500],
                )

            if response.status_code >= 500:
                self._error_count += 1
                raise ActServerError(
                    f"{response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                )

            if response.status_code >= 400:
                self._error_count += 1
                raise ActAPIError(
                    f"{response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                )

            return response

        retryer = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries + 1 - retry_count),
            wait=wait_exponential(multiplier=0.5, min=0, max=8),
            before_sleep=before_sleep_log(log, logging.INFO),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            response = retryer(_do_request)
        except ActAPIError as e:
            log.warning("API call failed", error=str(e), attempts=attempts)
            return ApiResult(
                success=False,
                error=e.args[0],
                status_code=e.status_code,
                rate_limited=isinstance(e, ActRateLimitError),
                attempts=attempts,
            )
        except httpx.HTTPError as e:
            self._error_count += 1
            log.warning("API transport error", error=str(e), attempts=attempts)
            return ApiResult(success=False, error=str(e), attempts=attempts)

        if not response.content:
            data: Any = None
        else:
            try:
                data = response.json()
            except ValueError as e:
                return ApiResult(
                    success=False,
                    error=f"Invalid JSON response: {e}",
                    status_code=response.status_code,
                    attempts=attempts,
                )

        return ApiResult(
            success=True,
            data=data,
            status_code=response.status_code,
            attempts=attempts,
        )

    # -------------------------------------------------------------------------
    # Opportunities, products, tasks
    # -------------------------------------------------------------------------

    @staticmethod
    def _as_list(data: Any) -> list[dict[str, Any]]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("value"), list):
            return data["value"]
        return []

    def _parse_list(self, result: ApiResult, model: type, log: Any) -> ApiResult:
        if not result.success:
            return result

        items = []
        for raw in self._as_list(result.data):
            try:
                items.append(model.model_validate(raw))
            except ValueError as e:
                log.warning("Skipping unparseable record", record_id=raw.get("id"), error=str(e))
        return result.model_copy(update={"data": items})

    def get_opportunities(self, connection: Connection) -> ApiResult:
        """Fetch all opportunities. data: list[ActOpportunity]."""
        log = logger.bind(tenant_id=connection.tenant_id)
        log.info("Fetching opportunities")
        return self._parse_list(
            self.call(self.OPPORTUNITIES_ENDPOINT, connection), ActOpportunity, log
        )

    def get_tasks(self, connection: Connection) -> ApiResult:
        """Fetch all tasks. data: list[ActTask]."""
        log = logger.bind(tenant_id=connection.tenant_id)
        log.info("Fetching tasks")
        return self._parse_list(self.call(self.TASKS_ENDPOINT, connection), ActTask, log)

    def get_opportunity_products(self, connection: Connection, opportunity_id: str) -> ApiResult:
        """Fetch products of one opportunity. data: list[ActProduct]."""
        log = logger.bind(tenant_id=connection.tenant_id, opportunity_id=opportunity_id)
        result = self._parse_list(
            self.call(self.PRODUCTS_ENDPOINT.format(opportunity_id=opportunity_id), connection),
            ActProduct,
            log,
        )
        if result.success:
            # The products endpoint does not always echo the parent id
            for product in result.data:
                if not product.opportunity_id:
                    product.opportunity_id = opportunity_id
        return result

    def update_product(
        self,
        connection: Connection,
        opportunity_id: str,
        product_id: str,
        payload: dict[str, Any],
    ) -> ApiResult:
        """
        Update a product in Act!.

        Act! recalculates opportunity pricing asynchronously after a product
        PUT, and the first write is not always reflected. The update is
        committed, then reconfirmed after product_settle_seconds.
        """
        endpoint = self.PRODUCT_ENDPOINT.format(
            opportunity_id=opportunity_id, product_id=product_id
        )
        return self.commit_and_reconfirm(endpoint, connection, payload)

    def commit_and_reconfirm(
        self,
        endpoint: str,
        connection: Connection,
        payload: dict[str, Any],
    ) -> ApiResult:
        """PUT, wait for vendor-side pricing to settle, PUT again."""
        log = logger.bind(tenant_id=connection.tenant_id, endpoint=endpoint)

        committed = self.call(endpoint, connection, method="PUT", payload=payload)
        if not committed.success or not self.settings.product_settle_enabled:
            return committed

        log.debug("Waiting for product pricing to settle", seconds=self.settings.product_settle_seconds)
        self._sleep(self.settings.product_settle_seconds)

        confirmed = self.call(endpoint, connection, method="PUT", payload=payload)
        if not confirmed.success:
            log.warning("Product reconfirm failed", error=confirmed.error)
        return confirmed

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def test_connection(self, connection: Connection) -> ApiResult:
        """Authenticate (or reuse a valid token). data: bool."""
        try:
            token = self.tokens.get(connection)
        except Exception as e:
            return ApiResult(success=False, error=str(e))

        if token:
            return ApiResult(success=True, data=True)
        return ApiResult(success=False, error="Authentication failed")

    def clear_tenant_cache(self, tenant_id: str) -> None:
        """Drop token and rate-limit state for a tenant."""
        self.tokens.forget(tenant_id)
        self.rate_limiter.reset(tenant_id)
        logger.info("Cleared tenant cache", tenant_id=tenant_id)

    def rate_limit_status(self, tenant_id: str) -> dict[str, Any]:
        return self.rate_limiter.status(tenant_id)

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics."""
        return {
            "request_count": self._request_count,
            "error_count": self._error_count,
            "rate_limiter": self.rate_limiter.get_stats(),
            "tokens": self.tokens.get_stats(),
        }
