"""
ApiClient - the request dispatcher every backend call goes through.

Combines:
- CacheManager for GET response caching with background revalidation
- NetworkMonitor to fail fast while offline
- TokenRefreshCoordinator for single-flight token renewal
- RequestLifecycleRegistry so in-flight calls can be cancelled
- ErrorHandler to classify and surface failures
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Coroutine

import pydantic
from loguru import logger

from netlayer.services.cache import CacheManager
from netlayer.services.envelope import (
    ENVELOPE_HEADER,
    Envelope,
    backend_message,
    error_for_status,
    error_for_text_body,
)
from netlayer.services.error_handler import ErrorHandler
from netlayer.services.errors import (
    AuthError,
    BusinessError,
    NetworkError,
    RequestCancelledError,
    ServiceError,
    TokenExpiredError,
    TransportError,
)
from netlayer.services.lifecycle import RequestLifecycleRegistry
from netlayer.services.network import NetworkListener, NetworkMonitor
from netlayer.services.notifier import LoggingNotifier, Notifier
from netlayer.services.token import (
    CredentialStore,
    MemoryCredentialStore,
    ReloginFn,
    TokenGrant,
    TokenRefreshCoordinator,
)
from netlayer.services.transport import (
    HttpxTransport,
    Transport,
    TransportRequest,
    TransportResponse,
)
from netlayer.settings import Settings, global_settings

GeoProvider = Callable[[], tuple[float, float] | None]

_request_counter = itertools.count(1)

# Methods whose body travels as the query string
_QUERY_METHODS = frozenset({"GET", "DELETE"})


@dataclass(frozen=True)
class RequestDescriptor:
    """Everything needed to perform one call. Immutable per call."""

    url: str
    method: str = "GET"
    body: Any = None
    use_cache: bool = False
    cache_ttl: float | None = None  # seconds, settings default when None
    retry: bool | int = False  # True means one retry
    retry_base_delay: float | None = None
    skip_auth: bool = False
    context: str | None = None  # tag for bulk cancellation
    request_id: str | None = None
    loading: bool = True
    loading_text: str = "Loading..."
    silent: bool = False  # never surface failures to the UI

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        if self.request_id is None:
            object.__setattr__(
                self,
                "request_id",
                f"{self.method}_{self.url}_{int(time.time() * 1000)}_{next(_request_counter)}",
            )

    @property
    def retry_count(self) -> int:
        if isinstance(self.retry, bool):
            return 1 if self.retry else 0
        return max(0, self.retry)

    @property
    def is_cacheable(self) -> bool:
        return self.use_cache and self.method == "GET"


class ApiClient:
    """
    Request dispatcher with caching, token renewal, retry and cancellation.

    Usage:
        async with ApiClient(settings) as client:
            me = await client.request("/v1/users/me", use_cache=True, cache_ttl=300)

            orders = await client.dispatch(RequestDescriptor(
                url="/v1/orders",
                context="orders_page",
                retry=3,
            ))

            # page closed
            client.cancel_by_context("orders_page")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: Transport | None = None,
        notifier: Notifier | None = None,
        credentials: CredentialStore | None = None,
        tokens: TokenRefreshCoordinator | None = None,
        cache: CacheManager | None = None,
        registry: RequestLifecycleRegistry | None = None,
        network: NetworkMonitor | None = None,
        errors: ErrorHandler | None = None,
        relogin: ReloginFn | None = None,
        geo_provider: GeoProvider | None = None,
    ):
        self._settings = settings or global_settings
        s = self._settings

        self._notifier = notifier or LoggingNotifier()
        self._transport = transport or HttpxTransport(
            base_url=s.api_base_url, timeout=s.request_timeout
        )
        if credentials is None:
            credentials = tokens.credentials if tokens else MemoryCredentialStore()
        self._credentials = credentials
        self._tokens = tokens or TokenRefreshCoordinator(
            credentials,
            renew=self._renew_access_token,
            relogin=relogin,
            refresh_threshold=s.token_refresh_threshold,
            refresh_timeout=s.token_refresh_timeout,
            settle_window=s.token_settle_window,
            debug=s.debug,
        )
        self._cache = cache or CacheManager(
            max_size=s.cache_max_size,
            default_ttl=s.default_cache_ttl,
            debug=s.debug,
        )
        self._registry = registry or RequestLifecycleRegistry(
            stale_after=s.stale_task_age,
            sweep_interval=s.sweep_interval,
            debug=s.debug,
        )
        self._network = network or NetworkMonitor(self._notifier)
        self._errors = errors or ErrorHandler(
            self._notifier,
            credentials,
            redirect_on_auth_failure=s.redirect_on_auth_failure,
            auth_route=s.auth_route,
        )
        self._geo_provider = geo_provider

        self._background: set[asyncio.Task[Any]] = set()
        self._revalidating: set[str] = set()

    @property
    def cache(self) -> CacheManager:
        return self._cache

    @property
    def registry(self) -> RequestLifecycleRegistry:
        return self._registry

    @property
    def network(self) -> NetworkMonitor:
        return self._network

    @property
    def tokens(self) -> TokenRefreshCoordinator:
        return self._tokens

    @property
    def errors(self) -> ErrorHandler:
        return self._errors

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    async def request(self, url: str, **options: Any) -> Any:
        """Shorthand for ``dispatch(RequestDescriptor(url, **options))``."""
        return await self.dispatch(RequestDescriptor(url=url, **options))

    async def dispatch(self, descriptor: RequestDescriptor) -> Any:
        """
        Perform a call and return the envelope's ``data``.

        Raises:
            NetworkError: Offline, transport failure, gateway or 5xx response
            AuthError: Token could not be refreshed or was rejected twice
            BusinessError: The backend answered with a non-success code
        """
        cache_key: str | None = None

        if descriptor.is_cacheable:
            cache_key = self._cache.generate_key(descriptor.url, descriptor.body)
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Cache hit: {descriptor.url} (age {cached.age:.1f}s)")
                if cached.needs_refresh:
                    self._schedule_revalidation(descriptor, cache_key)
                return cached.data

        if not self._network.is_online():
            error = NetworkError(
                f"Network unavailable ({descriptor.method})",
                code="offline",
                context=descriptor.url,
            )
            if not descriptor.silent:
                self._spawn(self._offer_retry(error, descriptor))
            raise error

        if descriptor.loading:
            self._notifier.show_loading(descriptor.loading_text)
        try:
            data = await self._send_with_retry(descriptor)
        finally:
            if descriptor.loading:
                self._notifier.hide_loading()

        if cache_key is not None:
            self._cache.set(cache_key, data, self._ttl_for(descriptor))
        return data

    async def _send_with_retry(self, descriptor: RequestDescriptor) -> Any:
        attempts = descriptor.retry_count
        base_delay = (
            descriptor.retry_base_delay
            if descriptor.retry_base_delay is not None
            else self._settings.retry_base_delay
        )
        attempt = 0
        # One refresh-and-retransmit per dispatch, whatever the transport retries do
        auth_retried = False

        while True:
            try:
                return await self._send(descriptor)
            except TokenExpiredError as expired:
                # Unauthenticated calls (login, the refresh itself) never refresh
                if descriptor.skip_auth:
                    raise
                if auth_retried:
                    error = AuthError(
                        f"Token rejected again after refresh: {expired}",
                        user_message="Your session has expired, please try again",
                        code=expired.code,
                    )
                    error.__cause__ = expired
                    raise self._auth_failure(error, descriptor.url, descriptor.silent)

                auth_retried = True
                logger.warning(f"Token rejected, refreshing: {descriptor.method} {descriptor.url}")
                try:
                    await self._tokens.refresh(force=True)
                except AuthError as e:
                    raise self._auth_failure(e, descriptor.url, descriptor.silent)
                logger.info(f"Token refreshed, retrying: {descriptor.method} {descriptor.url}")
            except RequestCancelledError:
                # Cancelled on purpose (or replaced by a newer request): never retried or shown
                raise
            except TransportError as e:
                if attempt >= attempts:
                    if attempts:
                        error = TransportError(
                            f"Request failed after {attempts} retries: {e}",
                            user_message="Network request failed, please try again later",
                            code=e.code,
                            context=descriptor.url,
                            backend_unavailable=e.backend_unavailable,
                        )
                        self._surface(error, descriptor)
                        raise error from e
                    e.context = descriptor.url
                    self._surface(e, descriptor)
                    raise

                delay = min(base_delay * 2**attempt, self._settings.retry_max_delay)
                attempt += 1
                logger.warning(
                    f"Request failed, retry {attempt}/{attempts} in {delay:.1f}s: "
                    f"{descriptor.method} {descriptor.url}: {e}"
                )
                await asyncio.sleep(delay)
            except NetworkError as e:
                e.context = descriptor.url
                self._surface(e, descriptor)
                raise

    async def _send(self, descriptor: RequestDescriptor) -> Any:
        """Make sure the token is usable, then transmit once."""
        if not descriptor.skip_auth:
            try:
                await self._tokens.ensure_valid()
            except AuthError as e:
                raise self._auth_failure(e, descriptor.url, descriptor.silent)

        return await self._transmit(descriptor)

    async def _transmit(self, descriptor: RequestDescriptor) -> Any:
        request = self._build_request(descriptor)
        logger.debug(f"API request: {request.method} {request.url} ({descriptor.request_id})")
        response = await self._perform(request, descriptor.request_id, descriptor.context)
        return self._parse(descriptor, response)

    async def _perform(
        self,
        request: TransportRequest,
        request_id: str,
        context: str | None,
    ) -> TransportResponse:
        handle = self._transport.send(request)
        self._registry.register(request_id, handle, context)
        try:
            return await handle.wait(request_id)
        finally:
            self._registry.unregister(request_id, handle)

    def _build_request(self, descriptor: RequestDescriptor) -> TransportRequest:
        headers = self._base_headers()
        headers["Content-Type"] = "application/json"
        headers[ENVELOPE_HEADER] = "1"

        if descriptor.method in _QUERY_METHODS:
            params = descriptor.body if isinstance(descriptor.body, dict) else None
            return TransportRequest(
                method=descriptor.method,
                url=descriptor.url,
                headers=headers,
                params=params,
            )

        return TransportRequest(
            method=descriptor.method,
            url=descriptor.url,
            headers=headers,
            json=descriptor.body,
        )

    def _base_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        token = self._credentials.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self._settings.api_key:
            headers["apikey"] = self._settings.api_key
        location = self._geo_provider() if self._geo_provider else None
        if location is not None:
            latitude, longitude = location
            headers["X-User-Latitude"] = str(latitude)
            headers["X-User-Longitude"] = str(longitude)
        return headers

    def _parse(self, descriptor: RequestDescriptor, response: TransportResponse) -> Any:
        status = response.status_code
        body = response.body
        where = f"{descriptor.method} {descriptor.url}"

        if status == 401:
            raise TokenExpiredError("HTTP 401: token rejected", code=401)

        if status not in (200, 201):
            logger.debug(f"HTTP {status}: {where}")
            raise error_for_status(status, body)

        if isinstance(body, str):
            raise error_for_text_body(body)

        if not isinstance(body, dict):
            raise BusinessError(
                f"Malformed API response: body is {type(body).__name__}, not an object",
                user_message="The server responded unexpectedly, please try again later",
            )

        try:
            envelope = Envelope.model_validate(body)
        except pydantic.ValidationError as e:
            raise BusinessError(
                "Malformed API response: missing or invalid code field",
                user_message="The server responded unexpectedly, please try again later",
            ) from e

        if envelope.code == self._settings.success_code:
            logger.debug(f"API success: {where}")
            return envelope.data

        if envelope.code == self._settings.token_expired_code:
            raise TokenExpiredError(
                f"Token expired [{envelope.code}]: {envelope.message}",
                code=envelope.code,
            )

        logger.warning(f"API business error: {where} [{envelope.code}] {envelope.message}")
        raise BusinessError(
            f"API error [{envelope.code}]: {envelope.message}",
            user_message=envelope.message or "Unknown error",
            code=envelope.code,
            context=descriptor.url,
            details=envelope.data,
        )

    def _surface(self, error: ServiceError, descriptor: RequestDescriptor) -> None:
        if descriptor.silent:
            logger.debug(f"Silent request failed: {descriptor.url}: {error}")
            return
        self._errors.report(error)

    def _auth_failure(self, error: AuthError, url: str, silent: bool = False) -> AuthError:
        error.context = url
        if silent:
            self._credentials.clear_token()
        else:
            self._errors.report(error)
        return error

    def _ttl_for(self, descriptor: RequestDescriptor) -> float:
        if descriptor.cache_ttl is not None:
            return descriptor.cache_ttl
        return self._settings.default_cache_ttl

    # Background work

    def _schedule_revalidation(self, descriptor: RequestDescriptor, cache_key: str) -> None:
        if cache_key in self._revalidating:
            return
        self._revalidating.add(cache_key)
        logger.debug(f"Revalidating cache in background: {descriptor.url}")
        self._spawn(self._revalidate(descriptor, cache_key))

    async def _revalidate(self, descriptor: RequestDescriptor, cache_key: str) -> None:
        fresh_descriptor = replace(
            descriptor,
            use_cache=False,
            loading=False,
            silent=True,
            request_id=f"{descriptor.request_id}_revalidate",
        )
        try:
            fresh = await self.dispatch(fresh_descriptor)
        except ServiceError as e:
            logger.debug(f"Background revalidation failed, keeping cached value: {e}")
        else:
            self._cache.set(cache_key, fresh, self._ttl_for(descriptor))
        finally:
            self._revalidating.discard(cache_key)

    async def _offer_retry(self, error: NetworkError, descriptor: RequestDescriptor) -> None:
        confirmed = await self._notifier.show_modal(
            title="Network error",
            content=error.user_message,
            confirm_text="Retry",
            cancel_text="Cancel",
        )
        if not confirmed:
            return
        try:
            await self.dispatch(descriptor)
        except ServiceError as e:
            logger.debug(f"Retry from dialog failed: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Token renewal

    async def _renew_access_token(self, refresh_token: str) -> TokenGrant:
        data = await self.dispatch(
            RequestDescriptor(
                url=self._settings.token_renew_path,
                method="POST",
                body={"refresh_token": refresh_token},
                skip_auth=True,
                loading=False,
                silent=True,
            )
        )
        return TokenGrant.model_validate(data)

    # Uploads

    async def upload_file(
        self,
        file_path: str | Path,
        url: str = "/upload/image",
        field: str = "file",
        extra_fields: dict[str, Any] | None = None,
        context: str | None = None,
    ) -> Any:
        """
        Upload a file as multipart form data.

        Returns the envelope ``data`` (or the raw body when the endpoint does
        not use the envelope). A 401 triggers one token refresh and one retry.
        """
        if self._credentials.is_near_expiry(self._settings.upload_refresh_threshold):
            try:
                await self._tokens.refresh(force=True)
            except AuthError as e:
                logger.warning(f"Token refresh before upload failed, uploading anyway: {e}")

        path = Path(file_path)
        content = path.read_bytes()
        target = f"{self._settings.upload_base_url or ''}{url}"
        request_id = f"UPLOAD_{url}_{int(time.time() * 1000)}_{next(_request_counter)}"
        refreshed = False

        while True:
            request = TransportRequest(
                method="POST",
                url=target,
                headers=self._base_headers(),
                data=extra_fields or {},
                files={field: (path.name, content)},
            )
            try:
                response = await self._perform(request, request_id, context)
            except RequestCancelledError:
                raise
            except TransportError as e:
                e.context = url
                self._errors.report(e)
                raise

            status = response.status_code
            body = response.body

            if status in (200, 201):
                return self._parse_upload_body(body, url)

            if status == 401 and not refreshed:
                refreshed = True
                logger.warning(f"Token expired during upload, refreshing: {url}")
                try:
                    await self._tokens.refresh(force=True)
                except AuthError as e:
                    raise self._auth_failure(e, url)
                continue

            if status == 401:
                raise self._auth_failure(
                    AuthError(
                        "Upload rejected again after token refresh",
                        user_message="Your session has expired, please try again",
                        code=401,
                    ),
                    url,
                )

            message = backend_message(body) or "file upload failed"
            logger.warning(f"Upload failed HTTP {status}: {url}")
            raise NetworkError(
                f"HTTP {status}: {message}",
                user_message="File upload failed",
                code=status,
                context=url,
                details=body,
            )

    def _parse_upload_body(self, body: Any, url: str) -> Any:
        if not (isinstance(body, dict) and "code" in body):
            return body
        try:
            envelope = Envelope.model_validate(body)
        except pydantic.ValidationError:
            return body
        if envelope.code == self._settings.success_code:
            logger.debug(f"Upload succeeded: {url}")
            return envelope.data
        raise BusinessError(
            f"Upload failed: {envelope.message}",
            user_message=envelope.message or "File upload failed",
            code=envelope.code,
            context=url,
        )

    # Cancellation and subscriptions

    def cancel(self, request_id: str) -> bool:
        return self._registry.cancel(request_id)

    def cancel_by_context(self, context: str) -> int:
        return self._registry.cancel_by_context(context)

    def cancel_all(self) -> int:
        return self._registry.cancel_all()

    def subscribe_network(self, listener: NetworkListener) -> Callable[[], None]:
        return self._network.subscribe(listener)

    def handle_error(self, error: Any, context: str | None = None) -> ServiceError:
        """Generic entry point for failures outside the request path."""
        return self._errors.handle(error, context)

    # Lifecycle

    def start(self) -> None:
        """Start the stale request sweeper. Requires a running event loop."""
        self._registry.start_sweeper()

    async def close(self) -> None:
        """Cancel everything in flight and close the transport."""
        self._registry.stop_sweeper()
        self._registry.cancel_all()

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        await self._transport.close()
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        """Async context manager entry."""
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Health and status

    def get_health_status(self) -> dict[str, Any]:
        return {
            "cache": self._cache.get_stats().to_dict(),
            "registry": self._registry.get_stats().to_dict(),
            "tokens": self._tokens.get_stats().to_dict(),
            "network": self._network.get_state().to_dict(),
            "background_tasks": len(self._background),
        }
