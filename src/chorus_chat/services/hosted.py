"""Message store for a hosted PostgREST-style backend.

Rows live in a hosted ``messages`` table reachable over HTTP. Channel
filters, cursors and ordering are expressed with PostgREST query operators.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from chorus_chat.core.settings import settings
from chorus_chat.db.time import as_utc
from chorus_chat.schemas.message import MUTABLE_FIELDS, HistoryCursor
from chorus_chat.services.addressing import ChannelKey, ChannelKind
from chorus_chat.services.errors import (
    ChannelPermissionError,
    ChatSyncError,
    PersistenceWriteError,
    TransientFetchError,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_BAD_REQUEST = 400

Row = dict[str, Any]


@dataclass(frozen=True)
class HostedConfig:
    """Connection settings for the hosted backend."""

    base_url: str | None
    api_key: str | None
    table: str = "messages"
    timeout_seconds: float = 10.0


def load_hosted_config() -> HostedConfig:
    """Build configuration object from global settings."""

    return HostedConfig(
        base_url=settings.hosted_base_url,
        api_key=settings.hosted_api_key,
        table=settings.hosted_messages_table,
        timeout_seconds=float(settings.hosted_http_timeout_seconds),
    )


def _quote(value: Any) -> str:
    text = value.isoformat() if isinstance(value, datetime) else str(value)
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def channel_conditions(channel: ChannelKey) -> list[str]:
    """PostgREST logic-tree conditions selecting the rows of ``channel``."""
    if channel.kind is ChannelKind.COMMUNITY:
        return [f"community_id.eq.{channel.community_id}"]
    low, high = (_quote(peer) for peer in channel.participants)  # type: ignore[union-attr]
    return [
        "community_id.is.null",
        f"or(and(sender_id.eq.{low},receiver_id.eq.{high}),"
        f"and(sender_id.eq.{high},receiver_id.eq.{low}))",
    ]


def cursor_condition(cursor: HistoryCursor, *, before: bool) -> str:
    sent_at = _quote(as_utc(cursor.sent_at))
    if cursor.id is None:
        return f"sent_at.{'lt' if before else 'gte'}.{sent_at}"
    op = "lt" if before else "gt"
    return f"or(sent_at.{op}.{sent_at},and(sent_at.eq.{sent_at},id.{op}.{cursor.id}))"


def _jsonable(record: Mapping[str, Any]) -> Row:
    payload: Row = {}
    for name, value in record.items():
        if name == "id":
            continue
        payload[name] = as_utc(value).isoformat() if isinstance(value, datetime) else value
    return payload


class HostedMessageStore:
    """HTTP client wrapper for the hosted messages table."""

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        path: str
        json_data: Any | None = None
        params: Mapping[str, Any] | None = None
        prefer: str | None = None

    def __init__(
        self,
        config: HostedConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_hosted_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def table_path(self) -> str:
        return f"/rest/v1/{self.config.table}"

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.config.base_url:
            raise ChannelPermissionError("Hosted backend is not configured")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )

        return self._client

    def _build_headers(self, *, prefer: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        params: RequestParams,
        error_cls: type[ChatSyncError],
    ) -> httpx.Response:
        client = await self._ensure_client()
        endpoint = f"{params.method} {params.path}"
        try:
            response = await client.request(
                params.method,
                params.path,
                json=params.json_data,
                params=params.params,
                headers=self._build_headers(prefer=params.prefer),
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"Hosted request {endpoint} failed: {exc}") from exc

        if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            raise ChannelPermissionError(
                f"Hosted backend denied {endpoint} with {response.status_code}"
            )
        if response.status_code >= HTTP_BAD_REQUEST:
            logger.warning("Hosted request %s returned %s", endpoint, response.status_code)
            raise error_cls(f"Hosted backend responded with {response.status_code}")
        return response

    @staticmethod
    def _rows(response: httpx.Response, error_cls: type[ChatSyncError]) -> list[Row]:
        try:
            body = response.json()
        except ValueError as exc:
            raise error_cls("Hosted backend returned invalid JSON") from exc
        if not isinstance(body, list):
            raise error_cls("Hosted backend returned an unexpected payload")
        return [row for row in body if isinstance(row, dict)]

    async def fetch_messages(
        self,
        channel: ChannelKey,
        *,
        before: HistoryCursor | None = None,
        after: HistoryCursor | None = None,
        limit: int,
    ) -> list[Row]:
        conditions = channel_conditions(channel)
        if before is not None:
            conditions.append(cursor_condition(before, before=True))
        if after is not None:
            conditions.append(cursor_condition(after, before=False))

        descending = after is None
        query: dict[str, Any] = {
            "select": "*",
            "and": f"({','.join(conditions)})",
            "order": "sent_at.desc,id.desc" if descending else "sent_at.asc,id.asc",
            "limit": str(limit),
        }
        response = await self._request(
            self.RequestParams(method="GET", path=self.table_path, params=query),
            TransientFetchError,
        )
        rows = self._rows(response, TransientFetchError)
        if descending:
            rows.reverse()
        logger.debug("Fetched %d hosted rows for %s", len(rows), channel)
        return rows

    async def insert_message(self, record: Mapping[str, Any]) -> Row:
        response = await self._request(
            self.RequestParams(
                method="POST",
                path=self.table_path,
                json_data=_jsonable(record),
                prefer="return=representation",
            ),
            PersistenceWriteError,
        )
        rows = self._rows(response, PersistenceWriteError)
        if not rows:
            raise PersistenceWriteError("Hosted backend did not return the inserted row")
        return rows[0]

    async def update_message(self, message_id: int, fields: Mapping[str, Any]) -> Row:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise PersistenceWriteError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        response = await self._request(
            self.RequestParams(
                method="PATCH",
                path=self.table_path,
                json_data=_jsonable(fields),
                params={"id": f"eq.{message_id}"},
                prefer="return=representation",
            ),
            PersistenceWriteError,
        )
        rows = self._rows(response, PersistenceWriteError)
        if not rows:
            raise PersistenceWriteError(f"Message {message_id} not found")
        return rows[0]

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
