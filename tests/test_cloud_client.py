"""HTTP client behaviour against the fake server and hand-built responses."""

from datetime import datetime, timezone

import httpx
import pytest

from momentsync.sync.cloud import MomentsCloudClient
from momentsync.sync.errors import (
    EnrichmentInProgress, NetworkError, NotFound, RateLimited, Unauthorized, UnexpectedResponse,
    ValidationFailed,
)
from momentsync.sync.schemas import CreateMomentRequest, DaySummaryState

from conftest import FakeMomentsServer, make_settings


def _client(handler) -> MomentsCloudClient:
    return MomentsCloudClient(make_settings(), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_identity_headers_sent_except_on_health(fake_server):
    async with MomentsCloudClient(make_settings(), transport=fake_server.transport()) as cloud:
        assert await cloud.get_moment_by_client_id("nobody") is None
        assert await cloud.health() is True

    lookup_headers, health_headers = fake_server.seen_headers
    assert lookup_headers["x-user-id"] == "user-1"
    assert lookup_headers["x-api-key"] == "test-token"
    assert "x-user-id" not in health_headers
    assert "x-api-key" not in health_headers


@pytest.mark.asyncio
async def test_create_sends_camel_case_body(fake_server):
    async with MomentsCloudClient(make_settings(), transport=fake_server.transport()) as cloud:
        dto = await cloud.create_moment(CreateMomentRequest(
            client_id="c-1", text="made tea", submitted_at="2025-03-01T12:00:00.000Z",
            tz="UTC", time_ago=60,
        ))

    assert dto.id == "srv-1"
    assert dto.client_id == "c-1"
    assert dto.time_ago == 60
    assert dto.is_enriched is False
    stored = fake_server.moments["srv-1"]
    assert stored.submitted_at == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_enrichment_conflict_raises_in_progress(fake_server):
    fake_server.default_enrich_conflicts = 1
    async with MomentsCloudClient(make_settings(), transport=fake_server.transport()) as cloud:
        created = await cloud.create_moment(CreateMomentRequest(
            client_id="c-1", text="x", submitted_at="2025-03-01T12:00:00.000Z", tz="UTC",
        ))
        with pytest.raises(EnrichmentInProgress) as exc:
            await cloud.enrich_moment(created.id)
        assert exc.value.status_code == 409
        enriched = await cloud.enrich_moment(created.id)

    assert enriched.praise == "Great job: x"
    assert enriched.tags == ["win", "daily"]


@pytest.mark.asyncio
async def test_not_found_on_get(fake_server):
    async with MomentsCloudClient(make_settings(), transport=fake_server.transport()) as cloud:
        with pytest.raises(NotFound):
            await cloud.get_moment("srv-404")


@pytest.mark.asyncio
async def test_retry_after_header_parsed():
    def handler(request):
        return httpx.Response(
            429,
            json={"error": {"code": "RATE_LIMIT_EXCEEDED", "message": "slow down"}},
            headers={"Retry-After": "7"},
        )

    async with _client(handler) as cloud:
        with pytest.raises(RateLimited) as exc:
            await cloud.list_moments()
    assert exc.value.retry_after == 7.0
    assert exc.value.is_retryable


@pytest.mark.asyncio
async def test_retry_after_from_meta():
    def handler(request):
        return httpx.Response(
            429,
            json={"error": {"code": "RATE_LIMIT_EXCEEDED", "message": "x"}, "meta": {"retryAfter": 3}},
        )

    async with _client(handler) as cloud:
        with pytest.raises(RateLimited) as exc:
            await cloud.list_moments()
    assert exc.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_error_without_envelope_falls_back_to_status():
    def handler(request):
        return httpx.Response(400, text="bad request")

    async with _client(handler) as cloud:
        with pytest.raises(ValidationFailed) as exc:
            await cloud.list_moments()
    assert exc.value.code == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_malformed_success_body():
    def handler(request):
        return httpx.Response(200, json={"unexpected": True})

    async with _client(handler) as cloud:
        with pytest.raises(UnexpectedResponse):
            await cloud.get_moment("srv-1")


@pytest.mark.asyncio
async def test_non_json_success_body():
    def handler(request):
        return httpx.Response(200, text="<html>proxy</html>")

    async with _client(handler) as cloud:
        with pytest.raises(UnexpectedResponse):
            await cloud.get_moment("srv-1")


@pytest.mark.asyncio
async def test_transport_failure_maps_to_network_error(fake_server):
    fake_server.fail_network("list")
    async with MomentsCloudClient(make_settings(), transport=fake_server.transport()) as cloud:
        with pytest.raises(NetworkError):
            await cloud.list_moments()
        assert await cloud.health() is True


@pytest.mark.asyncio
async def test_list_moments_passes_filters(fake_server):
    fake_server.seed("fav", datetime(2025, 3, 1, tzinfo=timezone.utc), is_favorite=True)
    fake_server.seed("plain", datetime(2025, 3, 2, tzinfo=timezone.utc))

    async with MomentsCloudClient(make_settings(), transport=fake_server.transport()) as cloud:
        page = await cloud.list_moments(limit=10, is_favorite=True)

    assert [m.text for m in page.data] == ["fav"]
    assert page.has_next_page is False
    assert page.limit_reached is False


@pytest.mark.asyncio
async def test_timeline_defaults_limit_reached(fake_server):
    fake_server.days = [
        {"id": "d1", "date": "2025-03-02", "text": "Busy day", "tags": ["work"],
         "momentsCount": 3, "timesOfDay": ["morning"], "state": "FINALISED"},
        {"id": "d2", "date": "2025-03-01", "momentsCount": 1, "state": "INPROGRESS"},
    ]
    async with MomentsCloudClient(make_settings(), transport=fake_server.transport()) as cloud:
        page = await cloud.list_timeline(limit=1)

    assert page.limit_reached is False
    assert page.has_next_page is True
    assert page.data[0].state == DaySummaryState.finalised
    assert page.data[0].moments_count == 3


@pytest.mark.asyncio
async def test_missing_user_id_rejected():
    server = FakeMomentsServer()
    settings = make_settings(user_id_header="x-wrong-header")
    async with MomentsCloudClient(settings, transport=server.transport()) as cloud:
        with pytest.raises(Unauthorized):
            await cloud.list_moments()


@pytest.mark.asyncio
async def test_missing_app_token_fails_before_sending(fake_server):
    settings = make_settings(api_app_token=None)
    async with MomentsCloudClient(settings, transport=fake_server.transport()) as cloud:
        with pytest.raises(Unauthorized, match="api_app_token"):
            await cloud.list_moments()
        assert fake_server.requests == []
        assert await cloud.health() is True
