"""
Slack Web API Client
Paginated listing of members, conversations and history for one workspace

The client is stateless apart from the shared httpx connection pool: the
credential is passed with every call and every list call returns one page
plus the cursor for the next one. Slack reports API errors as HTTP 200 with
{"ok": false, "error": "<code>"}, so each response is classified into the
sync error taxonomy here.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

import httpx

from app.core.circuit_breakers import provider_retrying
from app.services.sync.errors import (
    ProviderApiError,
    ProviderPermissionError,
    ProviderRateLimitError,
    ProviderTransportError,
)
from app.services.sync.records import ALL_CONTAINER_KINDS, ContainerKind

logger = logging.getLogger(__name__)


# Slack error codes that mean "this credential cannot read this channel"
PERMISSION_ERRORS = frozenset({
    "not_in_channel",
    "channel_not_found",
    "access_denied",
    "restricted_action",
    "method_not_supported_for_channel_type",
})

# Slack error codes worth retrying
TRANSIENT_ERRORS = frozenset({
    "internal_error",
    "fatal_error",
    "service_unavailable",
    "request_timeout",
})

CONVERSATION_TYPES = {
    ContainerKind.PUBLIC: "public_channel",
    ContainerKind.PRIVATE: "private_channel",
    ContainerKind.DIRECT: "im",
    ContainerKind.GROUP_DIRECT: "mpim",
}


@dataclass(frozen=True)
class ProviderCredentials:
    access_token: str
    workspace_id: Optional[str] = None


class Page(NamedTuple):
    items: List[Dict[str, Any]]
    next_cursor: Optional[str]


RetryListener = Optional[Callable[[BaseException], None]]


class SlackClient:
    """Thin async wrapper over the Slack Web API endpoints the sync needs."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = "https://slack.com/api",
        page_size: int = 100,
        max_retries: int = 3,
        retry_min_wait: float = 1.0,
        retry_max_wait: float = 30.0,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait

    # ========================================================================
    # LIST OPERATIONS
    # ========================================================================

    async def list_members(
        self,
        credentials: ProviderCredentials,
        cursor: Optional[str] = None,
        on_retry: RetryListener = None,
    ) -> Page:
        params: Dict[str, Any] = {"limit": self.page_size}
        if cursor:
            params["cursor"] = cursor

        payload = await self._call("users.list", credentials, params=params, on_retry=on_retry)
        return Page(payload.get("members") or [], _next_cursor(payload))

    async def list_containers(
        self,
        credentials: ProviderCredentials,
        kinds: Iterable[ContainerKind] = ALL_CONTAINER_KINDS,
        cursor: Optional[str] = None,
        on_retry: RetryListener = None,
    ) -> Page:
        params: Dict[str, Any] = {
            "types": ",".join(CONVERSATION_TYPES[ContainerKind(k)] for k in kinds),
            "limit": self.page_size,
        }
        if cursor:
            params["cursor"] = cursor

        payload = await self._call("conversations.list", credentials, params=params, on_retry=on_retry)
        return Page(payload.get("channels") or [], _next_cursor(payload))

    async def list_content(
        self,
        credentials: ProviderCredentials,
        container_id: str,
        since: Optional[datetime] = None,
        cursor: Optional[str] = None,
        on_retry: RetryListener = None,
    ) -> Page:
        """
        List messages in a conversation, newest first.

        Args:
            credentials: Bearer token for the workspace
            container_id: Slack conversation id
            since: Inclusive lower bound; items stamped exactly at `since` are returned again
            cursor: Cursor from the previous page

        Returns:
            Page of raw Slack message dicts
        """
        params: Dict[str, Any] = {"channel": container_id, "limit": self.page_size}
        if since is not None:
            params["oldest"] = f"{since.timestamp():.6f}"
            params["inclusive"] = "true"
        if cursor:
            params["cursor"] = cursor

        payload = await self._call("conversations.history", credentials, params=params, on_retry=on_retry)
        return Page(payload.get("messages") or [], _next_cursor(payload))

    async def join_container(
        self,
        credentials: ProviderCredentials,
        container_id: str,
        on_retry: RetryListener = None,
    ) -> Dict[str, Any]:
        payload = await self._call(
            "conversations.join",
            credentials,
            data={"channel": container_id},
            http_method="POST",
            on_retry=on_retry,
        )
        logger.info(f"✅ Joined Slack channel {container_id}")
        return payload.get("channel") or {}

    # ========================================================================
    # TRANSPORT
    # ========================================================================

    async def _call(
        self,
        method: str,
        credentials: ProviderCredentials,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        http_method: str = "GET",
        on_retry: RetryListener = None,
    ) -> Dict[str, Any]:
        retrying = provider_retrying(
            max_retries=self.max_retries,
            min_wait=self.retry_min_wait,
            max_wait=self.retry_max_wait,
            on_retry=on_retry,
        )
        async for attempt in retrying:
            with attempt:
                return await self._request(method, credentials, params, data, http_method)

    async def _request(
        self,
        method: str,
        credentials: ProviderCredentials,
        params: Optional[Dict[str, Any]],
        data: Optional[Dict[str, Any]],
        http_method: str,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{method}"
        headers = {"Authorization": f"Bearer {credentials.access_token}"}

        try:
            response = await self.http_client.request(
                http_method, url, params=params, data=data, headers=headers
            )
        except httpx.TransportError as e:
            raise ProviderTransportError(f"Slack {method} transport failure: {e}") from e

        if response.status_code == 429:
            raise ProviderRateLimitError(
                f"Slack {method} rate limited",
                code="ratelimited",
                status_code=429,
                retry_after=_retry_after(response),
            )
        if response.status_code >= 500:
            raise ProviderTransportError(
                f"Slack {method} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderApiError(
                f"Slack {method} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderApiError(f"Slack {method} returned invalid JSON") from e

        if not payload.get("ok"):
            raise _classify(method, payload.get("error") or "unknown_error", response)

        return payload


def _next_cursor(payload: Dict[str, Any]) -> Optional[str]:
    cursor = (payload.get("response_metadata") or {}).get("next_cursor")
    return cursor or None


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _classify(method: str, code: str, response: httpx.Response) -> Exception:
    message = f"Slack {method} failed: {code}"
    if code in PERMISSION_ERRORS:
        return ProviderPermissionError(message, code=code, status_code=response.status_code)
    if code == "ratelimited":
        return ProviderRateLimitError(
            message, code=code, status_code=response.status_code, retry_after=_retry_after(response)
        )
    if code in TRANSIENT_ERRORS:
        return ProviderTransportError(message, code=code, status_code=response.status_code)
    return ProviderApiError(message, code=code, status_code=response.status_code)
