"""Tests for the request dispatcher."""

import asyncio
import time

import pytest
from conftest import (
    FakeClock,
    FakeNotifier,
    FakeTransport,
    drain,
    envelope,
    hang,
    ok,
    wait_until,
)

from netlayer.services import (
    ApiClient,
    AuthError,
    BusinessError,
    MemoryCredentialStore,
    NetworkError,
    RequestCancelledError,
    RequestDescriptor,
    TransportError,
    TransportResponse,
)
from netlayer.services.token import TokenState
from netlayer.settings import Settings

REFRESH_PATH = "/v1/auth/refresh"


def auth_header(transport: FakeTransport, index: int) -> str | None:
    return transport.requests[index].headers.get("Authorization")


class TestRequestDescriptor:
    """Tests for descriptor defaults."""

    def test_generated_id_and_method(self) -> None:
        descriptor = RequestDescriptor(url="/v1/orders", method="post")

        assert descriptor.method == "POST"
        assert descriptor.request_id.startswith("POST_/v1/orders_")

    def test_generated_ids_are_unique(self) -> None:
        first = RequestDescriptor(url="/v1/orders")
        second = RequestDescriptor(url="/v1/orders")
        assert first.request_id != second.request_id

    def test_retry_count(self) -> None:
        assert RequestDescriptor(url="/a").retry_count == 0
        assert RequestDescriptor(url="/a", retry=True).retry_count == 1
        assert RequestDescriptor(url="/a", retry=3).retry_count == 3

    def test_only_get_is_cacheable(self) -> None:
        assert RequestDescriptor(url="/a", use_cache=True).is_cacheable is True
        assert RequestDescriptor(url="/a", method="POST", use_cache=True).is_cacheable is False


class TestDispatch:
    """Tests for the basic request path."""

    async def test_returns_envelope_data(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/users/me", ok({"id": 1}))

        assert await client.request("/v1/users/me") == {"id": 1}
        headers = transport.requests[0].headers
        assert headers["Authorization"] == "Bearer token-1"
        assert headers["Content-Type"] == "application/json"
        assert headers["X-Response-Envelope"] == "1"

    async def test_get_body_is_sent_as_query(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/search", ok([]))
        await client.request("/v1/search", body={"q": "coffee"})

        request = transport.requests[0]
        assert request.params == {"q": "coffee"}
        assert request.json is None

    async def test_post_body_is_sent_as_json(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/orders", ok({"id": 9}))
        await client.request("/v1/orders", method="POST", body={"sku": "A1"})

        request = transport.requests[0]
        assert request.method == "POST"
        assert request.json == {"sku": "A1"}
        assert request.params is None

    async def test_api_key_and_location_headers(
        self,
        settings: Settings,
        transport: FakeTransport,
        notifier: FakeNotifier,
        credentials: MemoryCredentialStore,
    ) -> None:
        settings = settings.model_copy(update={"api_key": "key-123"})
        api = ApiClient(
            settings,
            transport=transport,
            notifier=notifier,
            credentials=credentials,
            geo_provider=lambda: (31.23, 121.47),
        )
        transport.script("/v1/stores", ok([]))
        await api.request("/v1/stores")
        await api.close()

        headers = transport.requests[0].headers
        assert headers["apikey"] == "key-123"
        assert headers["X-User-Latitude"] == "31.23"
        assert headers["X-User-Longitude"] == "121.47"

    async def test_loading_shown_and_hidden_on_failure(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script("/v1/orders", envelope(1001, "Insufficient balance"))

        with pytest.raises(BusinessError):
            await client.request("/v1/orders", loading_text="Submitting...")
        assert notifier.loading == ["show:Submitting...", "hide"]

    async def test_loading_can_be_disabled(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script("/v1/orders", ok([]))
        await client.request("/v1/orders", loading=False)
        assert notifier.loading == []


class TestCaching:
    """Tests for the cache tiers and background revalidation."""

    async def test_fresh_entry_served_without_transport(
        self, client: ApiClient, transport: FakeTransport, clock: FakeClock
    ) -> None:
        transport.script("/v1/banners", ok(["a"]))

        first = await client.request("/v1/banners", use_cache=True, cache_ttl=10)
        clock.advance(5)
        second = await client.request("/v1/banners", use_cache=True, cache_ttl=10)

        assert first == second == ["a"]
        assert transport.calls("/v1/banners") == 1

    async def test_aging_entry_served_then_revalidated(
        self, client: ApiClient, transport: FakeTransport, clock: FakeClock
    ) -> None:
        """Test that a hit past 80% of the TTL returns the old value and refreshes it."""
        transport.script("/v1/banners", ok(["old"]), ok(["new"]))

        await client.request("/v1/banners", use_cache=True, cache_ttl=10)
        clock.advance(8.5)

        assert await client.request("/v1/banners", use_cache=True, cache_ttl=10) == ["old"]
        await drain(client)

        assert transport.calls("/v1/banners") == 2
        assert await client.request("/v1/banners", use_cache=True, cache_ttl=10) == ["new"]
        assert transport.calls("/v1/banners") == 2

    async def test_revalidation_is_not_duplicated(
        self, client: ApiClient, transport: FakeTransport, clock: FakeClock
    ) -> None:
        transport.script("/v1/banners", ok(["old"]), ok(["new"]))

        await client.request("/v1/banners", use_cache=True, cache_ttl=10)
        clock.advance(9)
        for _ in range(3):
            await client.request("/v1/banners", use_cache=True, cache_ttl=10)
        await drain(client)

        assert transport.calls("/v1/banners") == 2

    async def test_failed_revalidation_keeps_entry_and_is_silent(
        self,
        client: ApiClient,
        transport: FakeTransport,
        notifier: FakeNotifier,
        clock: FakeClock,
    ) -> None:
        transport.script(
            "/v1/banners", ok(["old"]), TransportError("reset", code="connection_failed")
        )

        await client.request("/v1/banners", use_cache=True, cache_ttl=10)
        clock.advance(9)
        await client.request("/v1/banners", use_cache=True, cache_ttl=10)
        await drain(client)

        assert notifier.toasts == []
        assert await client.request("/v1/banners", use_cache=True, cache_ttl=10) == ["old"]

    async def test_expired_entry_blocks_on_fetch(
        self, client: ApiClient, transport: FakeTransport, clock: FakeClock
    ) -> None:
        transport.script("/v1/banners", ok(["old"]), ok(["new"]))

        await client.request("/v1/banners", use_cache=True, cache_ttl=10)
        clock.advance(10)

        assert await client.request("/v1/banners", use_cache=True, cache_ttl=10) == ["new"]
        assert client.get_health_status()["background_tasks"] == 0

    async def test_params_are_part_of_the_key(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/orders", ok([1]), ok([2]))

        assert await client.request("/v1/orders", body={"page": 1}, use_cache=True) == [1]
        assert await client.request("/v1/orders", body={"page": 2}, use_cache=True) == [2]

    async def test_post_is_never_cached(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/orders", ok({"id": 1}))

        await client.request("/v1/orders", method="POST", use_cache=True)
        await client.request("/v1/orders", method="POST", use_cache=True)
        assert transport.calls("/v1/orders") == 2


class TestOffline:
    """Tests for the offline fast path."""

    async def test_offline_fails_without_transmitting(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        client.network.update(False)

        with pytest.raises(NetworkError) as exc_info:
            await client.request("/v1/orders")
        await drain(client)

        assert exc_info.value.code == "offline"
        assert transport.requests == []
        assert notifier.modals[0]["title"] == "Network error"

    async def test_offline_serves_fresh_cache(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/banners", ok(["a"]))
        await client.request("/v1/banners", use_cache=True)

        client.network.update(False)
        assert await client.request("/v1/banners", use_cache=True) == ["a"]

    async def test_retry_from_dialog_after_reconnect(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script("/v1/orders", ok([1]))
        notifier.answers.append(True)
        client.network.update(False)

        with pytest.raises(NetworkError):
            await client.request("/v1/orders")
        client.network.update(True, "wifi")
        await drain(client)

        assert transport.calls("/v1/orders") == 1

    async def test_silent_request_skips_dialog(
        self, client: ApiClient, notifier: FakeNotifier
    ) -> None:
        client.network.update(False)

        with pytest.raises(NetworkError):
            await client.request("/v1/orders", silent=True)
        await drain(client)
        assert notifier.modals == []


class TestTokenRenewal:
    """Tests for token expiry handling on the request path."""

    async def test_expired_code_refreshes_once_and_retransmits_once(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/orders", envelope(40100, "token expired"), ok([1]))
        transport.script(REFRESH_PATH, ok({"access_token": "token-2", "refresh_token": "refresh-2"}))

        assert await client.request("/v1/orders") == [1]
        assert [r.url for r in transport.requests] == ["/v1/orders", REFRESH_PATH, "/v1/orders"]
        assert transport.requests[1].json == {"refresh_token": "refresh-1"}
        assert auth_header(transport, 2) == "Bearer token-2"
        assert client.tokens.get_stats().refreshes == 1
        assert client.credentials.get_refresh_token() == "refresh-2"

    async def test_http_401_is_treated_as_expiry(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/orders", TransportResponse(401, {"message": "unauthorized"}), ok([1]))
        transport.script(REFRESH_PATH, ok({"access_token": "token-2"}))

        assert await client.request("/v1/orders") == [1]
        assert transport.calls(REFRESH_PATH) == 1

    async def test_second_rejection_fails_without_recursing(
        self,
        client: ApiClient,
        transport: FakeTransport,
        notifier: FakeNotifier,
    ) -> None:
        """Test that a token rejected after refresh ends in AuthError, not a loop."""
        transport.script("/v1/orders", envelope(40100, "token expired"))
        transport.script(REFRESH_PATH, ok({"access_token": "token-2"}))

        with pytest.raises(AuthError):
            await client.request("/v1/orders")

        assert transport.calls("/v1/orders") == 2
        assert transport.calls(REFRESH_PATH) == 1
        assert client.credentials.get_token() is None
        assert notifier.toasts == []

    async def test_transport_retry_does_not_grant_a_second_refresh(
        self,
        settings: Settings,
        transport: FakeTransport,
        notifier: FakeNotifier,
        credentials: MemoryCredentialStore,
    ) -> None:
        """Test that one dispatch refreshes at most once, even across transport retries."""
        settings = settings.model_copy(update={"token_settle_window": 0})
        api = ApiClient(settings, transport=transport, notifier=notifier, credentials=credentials)
        transport.script(
            "/v1/orders",
            envelope(40100, "token expired"),
            TransportError("reset", code="connection_failed"),
            envelope(40100, "token expired"),
            ok([1]),
        )
        transport.script(REFRESH_PATH, ok({"access_token": "token-2"}))

        with pytest.raises(AuthError):
            await api.request("/v1/orders", retry=2)
        await api.close()

        assert transport.calls("/v1/orders") == 3
        assert transport.calls(REFRESH_PATH) == 1
        assert credentials.get_token() is None

    async def test_refresh_lost_to_gateway_still_relaunches(
        self,
        settings: Settings,
        transport: FakeTransport,
        notifier: FakeNotifier,
        credentials: MemoryCredentialStore,
    ) -> None:
        """Test that an auth failure caused by a 502 keeps its redirect."""
        settings = settings.model_copy(
            update={"redirect_on_auth_failure": True, "auth_route": "/login"}
        )

        async def relogin():
            raise NetworkError("Gateway error (502): backend unavailable", backend_unavailable=True)

        api = ApiClient(
            settings,
            transport=transport,
            notifier=notifier,
            credentials=credentials,
            relogin=relogin,
        )
        transport.script("/v1/orders", envelope(40100, "token expired"))
        transport.script(REFRESH_PATH, TransportResponse(502, "<html>502 Bad Gateway</html>"))

        with pytest.raises(AuthError):
            await api.request("/v1/orders")
        await api.close()

        assert credentials.get_token() is None
        assert notifier.relaunched == ["/login"]
        assert notifier.toasts == []

    async def test_failed_refresh_raises_auth_error(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/orders", envelope(40100, "token expired"))
        transport.script(REFRESH_PATH, envelope(40100, "refresh token expired"))

        with pytest.raises(AuthError):
            await client.request("/v1/orders")

        assert transport.calls("/v1/orders") == 1
        assert client.credentials.get_token() is None

    async def test_concurrent_requests_share_one_refresh(
        self,
        settings: Settings,
        transport: FakeTransport,
        notifier: FakeNotifier,
    ) -> None:
        credentials = MemoryCredentialStore(
            TokenState(
                access_token="token-1",
                expires_at=time.time() + 10,
                refresh_token="refresh-1",
            )
        )
        api = ApiClient(settings, transport=transport, notifier=notifier, credentials=credentials)
        transport.script(REFRESH_PATH, ok({"access_token": "token-2"}))
        urls = [f"/v1/items/{i}" for i in range(5)]
        for url in urls:
            transport.script(url, ok(url))

        results = await asyncio.gather(*(api.request(url) for url in urls))
        await api.close()

        assert results == urls
        assert transport.calls(REFRESH_PATH) == 1
        assert all(
            r.headers["Authorization"] == "Bearer token-2"
            for r in transport.requests
            if r.url != REFRESH_PATH
        )

    async def test_skip_auth_never_refreshes(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/auth/login", envelope(40100, "expired"))

        with pytest.raises(AuthError):
            await client.request("/v1/auth/login", method="POST", skip_auth=True)
        assert transport.calls(REFRESH_PATH) == 0

    async def test_missing_credentials_fail_before_transmitting(
        self, settings: Settings, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        api = ApiClient(
            settings, transport=transport, notifier=notifier, credentials=MemoryCredentialStore()
        )

        with pytest.raises(AuthError):
            await api.request("/v1/orders")
        await api.close()

        assert transport.requests == []


class TestRetry:
    """Tests for transport retry with backoff."""

    async def test_transport_failures_are_retried(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script(
            "/v1/feed",
            TransportError("reset", code="connection_failed"),
            TransportError("reset", code="connection_failed"),
            ok(["post"]),
        )

        assert await client.request("/v1/feed", retry=3) == ["post"]
        assert transport.calls("/v1/feed") == 3
        assert notifier.toasts == []

    async def test_exhausted_retries_surface_one_error(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script("/v1/feed", TransportError("reset", code="connection_failed"))

        with pytest.raises(NetworkError, match="after 2 retries"):
            await client.request("/v1/feed", retry=2)

        assert transport.calls("/v1/feed") == 3
        assert notifier.toasts == ["Network request failed, please try again later"]

    async def test_no_retry_without_option(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script("/v1/feed", TransportError("reset", code="connection_failed"))

        with pytest.raises(TransportError):
            await client.request("/v1/feed")
        assert transport.calls("/v1/feed") == 1
        assert len(notifier.toasts) == 1

    async def test_business_errors_are_not_retried(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script("/v1/pay", envelope(1001, "Insufficient balance"))

        with pytest.raises(BusinessError) as exc_info:
            await client.request("/v1/pay", method="POST", retry=3)

        assert exc_info.value.code == 1001
        assert exc_info.value.user_message == "Insufficient balance"
        assert transport.calls("/v1/pay") == 1
        assert notifier.toasts == []


class TestBackendUnavailable:
    """Tests for gateway and 5xx responses."""

    async def test_gateway_status_is_logged_not_shown(
        self,
        client: ApiClient,
        transport: FakeTransport,
        notifier: FakeNotifier,
        log_messages: list,
    ) -> None:
        transport.script("/v1/orders", TransportResponse(502, "<html>nginx</html>"))

        with pytest.raises(NetworkError) as exc_info:
            await client.request("/v1/orders", retry=2)

        assert exc_info.value.backend_unavailable is True
        assert transport.calls("/v1/orders") == 1
        assert notifier.toasts == []
        assert len([m for _, m in log_messages if m.startswith("[backend unavailable]")]) == 1

    async def test_html_page_with_200_is_backend_unavailable(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        page = "<!DOCTYPE html><html><body><center>nginx</center></body></html>"
        transport.script("/v1/orders", TransportResponse(200, page))

        with pytest.raises(NetworkError) as exc_info:
            await client.request("/v1/orders")

        assert exc_info.value.backend_unavailable is True
        assert notifier.toasts == []

    async def test_not_found_is_network_error(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        with pytest.raises(NetworkError) as exc_info:
            await client.request("/v1/missing")
        assert exc_info.value.code == 404

    async def test_client_error_is_business_error(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/orders", TransportResponse(409, {"message": "Already paid"}))

        with pytest.raises(BusinessError) as exc_info:
            await client.request("/v1/orders", method="POST")
        assert exc_info.value.user_message == "Already paid"

    async def test_malformed_envelope(self, client: ApiClient, transport: FakeTransport) -> None:
        transport.script("/v1/orders", TransportResponse(200, {"data": []}))

        with pytest.raises(BusinessError, match="Malformed"):
            await client.request("/v1/orders")


class TestCancellation:
    """Tests for the in-flight registry on the request path."""

    async def test_registry_empty_after_success_and_failure(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/ok", ok(1))
        transport.script("/v1/bad", envelope(1001, "nope"))

        await client.request("/v1/ok")
        with pytest.raises(BusinessError):
            await client.request("/v1/bad")

        assert client.registry.get_in_flight_count() == 0

    async def test_cancel_by_context(
        self, client: ApiClient, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        transport.script("/v1/slow", hang)

        task = asyncio.create_task(client.request("/v1/slow", context="orders_page"))
        await wait_until(lambda: client.registry.get_in_flight_count() == 1)

        assert client.cancel_by_context("orders_page") == 1
        with pytest.raises(RequestCancelledError):
            await task

        assert client.registry.get_in_flight_count() == 0
        assert notifier.toasts == []

    async def test_cancelled_request_is_not_retried(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/slow", hang)

        task = asyncio.create_task(client.request("/v1/slow", request_id="slow", retry=3))
        await wait_until(lambda: client.registry.get("slow") is not None)
        client.cancel("slow")

        with pytest.raises(RequestCancelledError):
            await task
        assert transport.calls("/v1/slow") == 1

    async def test_duplicate_id_replaces_previous_request(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/search", hang)
        transport.script("/v1/search/v2", ok(["result"]))

        first = asyncio.create_task(client.request("/v1/search", request_id="search"))
        await wait_until(lambda: client.registry.get("search") is not None)

        assert await client.request("/v1/search/v2", request_id="search") == ["result"]
        with pytest.raises(RequestCancelledError):
            await first
        assert client.registry.get_in_flight_count() == 0

    async def test_close_cancels_everything(
        self, client: ApiClient, transport: FakeTransport
    ) -> None:
        transport.script("/v1/slow", hang)

        task = asyncio.create_task(client.request("/v1/slow"))
        await wait_until(lambda: client.registry.get_in_flight_count() == 1)
        await client.close()

        with pytest.raises(RequestCancelledError):
            await task
        assert transport.closed is True


class TestUpload:
    """Tests for multipart uploads."""

    async def test_upload_returns_envelope_data(
        self, client: ApiClient, transport: FakeTransport, tmp_path
    ) -> None:
        image = tmp_path / "photo.jpg"
        image.write_bytes(b"jpeg")
        transport.script("/upload/image", ok({"url": "https://cdn.test.dev/photo.jpg"}))

        data = await client.upload_file(image, extra_fields={"album": "1"}, context="editor")

        assert data == {"url": "https://cdn.test.dev/photo.jpg"}
        request = transport.requests[0]
        assert request.files == {"file": ("photo.jpg", b"jpeg")}
        assert request.data == {"album": "1"}
        assert "Content-Type" not in request.headers
        assert client.registry.get_in_flight_count() == 0

    async def test_upload_returns_raw_body_without_envelope(
        self, client: ApiClient, transport: FakeTransport, tmp_path
    ) -> None:
        image = tmp_path / "photo.jpg"
        image.write_bytes(b"jpeg")
        transport.script("/upload/image", TransportResponse(201, {"url": "u"}))

        assert await client.upload_file(image) == {"url": "u"}

    async def test_upload_refreshes_on_401_once(
        self, client: ApiClient, transport: FakeTransport, tmp_path
    ) -> None:
        image = tmp_path / "photo.jpg"
        image.write_bytes(b"jpeg")
        transport.script("/upload/image", TransportResponse(401, None), ok({"url": "u"}))
        transport.script(REFRESH_PATH, ok({"access_token": "token-2"}))

        assert await client.upload_file(image) == {"url": "u"}
        assert transport.calls(REFRESH_PATH) == 1
        assert auth_header(transport, 2) == "Bearer token-2"

    async def test_upload_second_401_raises_auth_error(
        self, client: ApiClient, transport: FakeTransport, tmp_path
    ) -> None:
        image = tmp_path / "photo.jpg"
        image.write_bytes(b"jpeg")
        transport.script("/upload/image", TransportResponse(401, None))
        transport.script(REFRESH_PATH, ok({"access_token": "token-2"}))

        with pytest.raises(AuthError):
            await client.upload_file(image)
        assert transport.calls("/upload/image") == 2

    async def test_upload_server_error(
        self, client: ApiClient, transport: FakeTransport, tmp_path
    ) -> None:
        image = tmp_path / "photo.jpg"
        image.write_bytes(b"jpeg")
        transport.script("/upload/image", TransportResponse(413, {"message": "File too large"}))

        with pytest.raises(NetworkError, match="HTTP 413: File too large"):
            await client.upload_file(image)

    async def test_upload_refreshes_token_close_to_expiry(
        self,
        settings: Settings,
        transport: FakeTransport,
        notifier: FakeNotifier,
        tmp_path,
    ) -> None:
        credentials = MemoryCredentialStore(
            TokenState(access_token="token-1", expires_at=time.time() + 30, refresh_token="r")
        )
        api = ApiClient(settings, transport=transport, notifier=notifier, credentials=credentials)
        image = tmp_path / "photo.jpg"
        image.write_bytes(b"jpeg")
        transport.script(REFRESH_PATH, ok({"access_token": "token-2"}))
        transport.script("/upload/image", ok({"url": "u"}))

        await api.upload_file(image)
        await api.close()

        assert [r.url for r in transport.requests] == [REFRESH_PATH, "/upload/image"]


class TestHealth:
    """Tests for status reporting."""

    async def test_health_status(self, client: ApiClient, transport: FakeTransport) -> None:
        transport.script("/v1/banners", ok([]))
        await client.request("/v1/banners", use_cache=True)

        health = client.get_health_status()
        assert health["cache"]["size"] == 1
        assert health["registry"]["registered"] == 1
        assert health["tokens"]["refreshes"] == 0
        assert health["network"]["is_connected"] is True

    async def test_context_manager_starts_and_stops_sweeper(
        self, settings: Settings, transport: FakeTransport, notifier: FakeNotifier
    ) -> None:
        async with ApiClient(settings, transport=transport, notifier=notifier) as api:
            assert api.registry._scheduler is not None
        assert api.registry._scheduler is None
        assert transport.closed is True

    async def test_handle_error_delegates(
        self, client: ApiClient, notifier: FakeNotifier
    ) -> None:
        record = client.handle_error("something broke", context="profile")
        assert record.context == "profile"
        assert notifier.toasts == ["Operation failed, please try again later"]
