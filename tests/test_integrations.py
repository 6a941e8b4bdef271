import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from marketsync.integrations.base import PlatformRequestError, UnsupportedPlatformError
from marketsync.integrations.gateway import HttpPlatformAdapter
from marketsync.integrations.mock import MockMarketplaceAdapter
from marketsync.integrations.platforms import PlatformAdapterRegistry, build_default_registry
from marketsync.services.error_classifier import classify
from marketsync.models.db.enums import ErrorKind


def instant_mock(**kwargs):
    return MockMarketplaceAdapter(latency_range=(0.0, 0.0), **kwargs)


@pytest.mark.asyncio
async def test_mock_adapter_success_is_seeded():
    first = await instant_mock(failure_rate=0.0, seed=42).perform_request("shopee", {"sku": "A"})
    second = await instant_mock(failure_rate=0.0, seed=42).perform_request("shopee", {"sku": "A"})
    assert first == second
    assert first["status"] == "synced"
    assert first["external_id"].startswith("shopee-")


@pytest.mark.asyncio
async def test_mock_adapter_always_failing_raises_classifiable_errors():
    adapter = instant_mock(failure_rate=1.0, seed=1)
    for _ in range(5):
        with pytest.raises(PlatformRequestError) as exc_info:
            await adapter.perform_request("tiktok", {"sku": "A"})
        assert classify(exc_info.value).retryable
    assert adapter.calls == 5


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "forced,kind",
    [
        ("VALIDATION_ERROR", ErrorKind.VALIDATION),
        ("PRODUCT_ALREADY_EXISTS", ErrorKind.CONFLICT),
        (401, ErrorKind.PERMISSION_DENIED),
        (503, ErrorKind.PLATFORM_UNAVAILABLE),
    ],
)
async def test_mock_adapter_simulated_errors(forced, kind):
    adapter = instant_mock(failure_rate=0.0)
    with pytest.raises(PlatformRequestError) as exc_info:
        await adapter.perform_request("shopee", {"sku": "A", "simulate_error": forced})
    assert classify(exc_info.value).kind == kind
    assert exc_info.value.platform == "shopee"


@pytest.mark.asyncio
async def test_registry_dispatches_by_platform():
    shopee = instant_mock(failure_rate=0.0)
    registry = PlatformAdapterRegistry({"Shopee": shopee})
    result = await registry.perform_request("shopee", {"sku": "A"})
    assert result["platform"] == "shopee"
    assert registry.platforms == ["shopee"]
    with pytest.raises(UnsupportedPlatformError) as exc_info:
        registry.get("amazon")
    assert exc_info.value.supported == ["shopee"]


def test_default_registry_covers_supported_platforms():
    registry = build_default_registry("mock")
    assert registry.platforms == ["shopee", "tiktok"]
    assert isinstance(registry.get("tiktok"), MockMarketplaceAdapter)
    assert isinstance(build_default_registry("http").get("shopee"), HttpPlatformAdapter)


@pytest_asyncio.fixture()
async def gateway_server():
    received = []

    async def sync_handler(request: web.Request) -> web.Response:
        body = await request.json()
        received.append((request.match_info["platform"], body))
        if body["payload"].get("sku") == "throttled":
            return web.json_response(
                {"message": "slow down", "error_code": "RATE_LIMITED"},
                status=429,
                headers={"Retry-After": "12"},
            )
        if body["payload"].get("sku") == "broken":
            return web.Response(status=502, text="bad gateway")
        return web.json_response({"external_id": "ext-1", "status": "synced"})

    app = web.Application()
    app.router.add_post("/{platform}/sync", sync_handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")), received
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_http_adapter_posts_payload(gateway_server):
    base_url, received = gateway_server
    adapter = HttpPlatformAdapter(base_url, timeout_seconds=5)
    try:
        result = await adapter.perform_request("shopee", {"sku": "A"})
    finally:
        await adapter.close()
    assert result == {"external_id": "ext-1", "status": "synced"}
    assert received == [("shopee", {"platform": "shopee", "payload": {"sku": "A"}})]


@pytest.mark.asyncio
async def test_http_adapter_maps_error_responses(gateway_server):
    base_url, _ = gateway_server
    adapter = HttpPlatformAdapter(base_url, timeout_seconds=5)
    try:
        with pytest.raises(PlatformRequestError) as throttled:
            await adapter.perform_request("tiktok", {"sku": "throttled"})
        with pytest.raises(PlatformRequestError) as broken:
            await adapter.perform_request("tiktok", {"sku": "broken"})
    finally:
        await adapter.close()

    assert throttled.value.status_code == 429
    assert throttled.value.error_code == "RATE_LIMITED"
    assert throttled.value.retry_after == 12.0
    record = classify(throttled.value)
    assert record.kind == ErrorKind.RATE_LIMITED
    assert record.suggested_retry_after_seconds == 12.0

    assert broken.value.status_code == 502
    assert str(broken.value) == "bad gateway"
    assert classify(broken.value).kind == ErrorKind.PLATFORM_UNAVAILABLE
