from __future__ import annotations

import json
import logging
from typing import Any, Protocol, Sequence

import aiohttp

from payflow.common import log_event, sanitize_text

from .errors import RemoteCallError, error_text

Filters = Sequence[tuple[str, str]]


class SupabaseGateway(Protocol):
    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any:
        ...

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        ...

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Filters = (),
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        return None

    return seconds if seconds > 0 else None


def _preview(body: str, limit: int = 300) -> str:
    text = sanitize_text(body.strip())
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def _error_code(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("code", "error_code", "errorCode"):
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


class SupabaseClient:
    """Thin aiohttp client for Supabase edge functions, RPCs and table reads."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        base_url: str,
        api_key: str,
        access_token: str | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._logger = logger
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._access_token = access_token or api_key
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._base_url:
            raise RuntimeError("SUPABASE_URL must be configured.")
        if not self._api_key:
            raise RuntimeError("SUPABASE_ANON_KEY must be configured.")
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.connect()

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
        params: Filters | None = None,
    ) -> Any:
        await self.connect()
        session = self._session
        if session is None:
            raise RuntimeError("Supabase session is not connected.")
        url = f"{self._base_url}{path}"

        try:
            async with session.request(
                method,
                url,
                json=json_body,
                params=list(params) if params else None,
                headers=self._headers(),
            ) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                body = await response.text()
        except aiohttp.ClientError as error:
            log_event(
                self._logger,
                level="warning",
                event="supabase_request_failed",
                message="Supabase request failed before a response was received",
                operation=operation,
                error=str(error),
            )
            raise

        data: Any = None
        if body.strip():
            try:
                data = json.loads(body)
            except json.JSONDecodeError:
                data = None

        if status >= 400:
            message = error_text(data) if data is not None else ""
            if not message:
                message = _preview(body) or f"HTTP {status}"
            log_event(
                self._logger,
                level="warning",
                event="supabase_http_error",
                message="Supabase returned an error status",
                operation=operation,
                status=status,
                retry_after_seconds=retry_after_seconds,
                body_preview=_preview(body),
            )
            raise RemoteCallError(
                f"{operation} failed with status {status}: {message}",
                status=status,
                code=_error_code(data),
                retry_after_seconds=retry_after_seconds,
                payload=data,
            )

        if data is None and body.strip():
            raise RemoteCallError(
                f"{operation} returned a non-JSON body",
                status=status,
                payload=_preview(body),
            )
        return data

    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any:
        return await self._request(
            "POST",
            f"/functions/v1/{name}",
            operation=f"function:{name}",
            json_body=payload,
        )

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        return await self._request(
            "POST",
            f"/rest/v1/rpc/{name}",
            operation=f"rpc:{name}",
            json_body=params,
        )

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Filters = (),
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("select", columns)]
        params.extend(filters)
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(max(1, int(limit)))))

        data = await self._request(
            "GET",
            f"/rest/v1/{table}",
            operation=f"select:{table}",
            params=params,
        )
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]
