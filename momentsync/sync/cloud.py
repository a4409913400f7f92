"""
HTTP client for the remote moments API.

Every call except the liveness check carries two identity headers:
  {app_token_header}: application token
  {user_id_header}:   user identity

Endpoints (relative to settings.api_base_url):
  POST   /moments                          create
  POST   /moments/{id}/enrich              enrich (idempotent, 409 while running)
  GET    /moments?cursor=&limit=           list (newest first)
  GET    /moments/{id}                     get
  GET    /moments/by-client-id/{clientId}  lookup for reconciliation
  PUT    /moments/{id}                     update {isFavorite}
  DELETE /moments/{id}                     archive (soft delete)
  POST   /moments/{id}/restore             un-archive
  GET    /timeline?cursor=&limit=          day summaries
  GET    /health                           liveness, no auth
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from momentsync.config.settings import Settings
from momentsync.sync.errors import (
    NotFound, RemoteError, Unauthorized, UnexpectedResponse, error_for, from_transport,
)
from momentsync.sync.schemas import (
    CreateMomentRequest, DaySummaryDTO, ErrorEnvelope, MomentDTO,
    MomentEnvelope, Page, UpdateMomentRequest,
)

logger = logging.getLogger(__name__)


class MomentsCloudClient:
    """Async client for the remote moments API."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._settings.api_base_url,
                timeout=self._settings.network_timeout_seconds,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "MomentsCloudClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _auth_headers(self) -> dict[str, str]:
        if not self._settings.api_app_token:
            raise Unauthorized("api_app_token is not configured")
        return {
            self._settings.app_token_header: self._settings.api_app_token,
            self._settings.user_id_header: self._settings.api_user_id,
        }

    # ── Transport ───────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        auth: bool = True,
    ) -> Any:
        headers = self._auth_headers() if auth else {}
        logger.debug("API request: %s %s", method, path)
        try:
            resp = await self.client.request(
                method, path, json=json, params=params, headers=headers,
            )
        except httpx.HTTPError as e:
            raise from_transport(e) from e

        logger.debug("API response: %s %s -> %d", method, path, resp.status_code)
        if not resp.is_success:
            raise self._error_from_response(resp)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise UnexpectedResponse(
                f"Response body is not JSON: {e}", status_code=resp.status_code,
            ) from e

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> RemoteError:
        code = None
        message = resp.reason_phrase or f"HTTP {resp.status_code}"
        meta: dict[str, Any] = {}
        try:
            envelope = ErrorEnvelope.model_validate(resp.json())
            code = envelope.error.code
            message = envelope.error.message or message
            meta = envelope.meta or {}
        except (ValueError, ValidationError):
            pass
        return error_for(
            resp.status_code, code, message,
            retry_after=_retry_after(resp, meta),
            meta=meta,
        )

    @staticmethod
    def _parse(model, payload: Any, what: str):
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise UnexpectedResponse(f"Malformed {what} response: {e}") from e

    # ── Moments ─────────────────────────────────────────────────────

    async def create_moment(self, request: CreateMomentRequest) -> MomentDTO:
        payload = await self._request(
            "POST", "/moments",
            json=request.model_dump(by_alias=True, exclude_none=True),
        )
        return self._parse(MomentEnvelope, payload, "create").item

    async def enrich_moment(self, server_id: str) -> MomentDTO:
        payload = await self._request("POST", f"/moments/{server_id}/enrich")
        return self._parse(MomentEnvelope, payload, "enrich").item

    async def get_moment(self, server_id: str) -> MomentDTO:
        payload = await self._request("GET", f"/moments/{server_id}")
        return self._parse(MomentEnvelope, payload, "get").item

    async def get_moment_by_client_id(self, client_id: str) -> Optional[MomentDTO]:
        """Returns None when the server has never seen this clientId."""
        try:
            payload = await self._request("GET", f"/moments/by-client-id/{client_id}")
        except NotFound:
            return None
        return self._parse(MomentEnvelope, payload, "lookup").item

    async def update_moment(self, server_id: str, is_favorite: bool) -> None:
        body = UpdateMomentRequest(is_favorite=is_favorite)
        await self._request("PUT", f"/moments/{server_id}", json=body.model_dump(by_alias=True))

    async def archive_moment(self, server_id: str) -> None:
        await self._request("DELETE", f"/moments/{server_id}")

    async def restore_moment(self, server_id: str) -> None:
        await self._request("POST", f"/moments/{server_id}/restore")

    async def list_moments(
        self,
        cursor: Optional[str] = None,
        limit: int = 20,
        is_favorite: Optional[bool] = None,
    ) -> Page[MomentDTO]:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        if is_favorite is not None:
            params["isFavorite"] = "true" if is_favorite else "false"
        payload = await self._request("GET", "/moments", params=params)
        return self._parse(Page[MomentDTO], payload, "list")

    # ── Timeline ────────────────────────────────────────────────────

    async def list_timeline(
        self,
        cursor: Optional[str] = None,
        limit: int = 20,
    ) -> Page[DaySummaryDTO]:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        payload = await self._request("GET", "/timeline", params=params)
        return self._parse(Page[DaySummaryDTO], payload, "timeline")

    # ── Liveness ────────────────────────────────────────────────────

    async def health(self) -> bool:
        try:
            await self._request("GET", "/health", auth=False)
            return True
        except RemoteError as e:
            logger.warning("Health check failed: %s", e.describe())
            return False


def _retry_after(resp: httpx.Response, meta: dict[str, Any]) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        raw = meta.get("retryAfter", meta.get("retryAfterSeconds"))
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None
