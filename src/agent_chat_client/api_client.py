from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from agent_chat_client.errors import ApiError, StreamConnectionError
from agent_chat_client.models import Message, Session

DEFAULT_APPROVE_ROUTE = "/approvals/{approval_id}/approve"
DEFAULT_REJECT_ROUTE = "/approvals/{approval_id}/reject"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, ApiError) and exc.status_code is not None:
        return exc.status_code == 429 or exc.status_code >= 500
    return False


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt})...")


def _api_error_from_response(response: httpx.Response) -> ApiError:
    code = "UNKNOWN_ERROR"
    message = f"HTTP {response.status_code}"
    details: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = str(body.get("code") or code)
        message = str(body.get("message") or message)
        details = body.get("details")
    return ApiError(message, code=code, status_code=response.status_code, details=details)


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


class ChatApiClient:
    """HTTP collaborators of the chat core: turn stream, history, approvals, session metadata."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        approve_route: str = DEFAULT_APPROVE_ROUTE,
        reject_route: str = DEFAULT_REJECT_ROUTE,
        history_retry_attempts: int = 3,
        retry_wait_multiplier: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._timeout = timeout
        self._routes = {"approve": approve_route, "reject": reject_route}
        self._history_retry_attempts = max(1, history_retry_attempts)
        self._retry_wait_multiplier = max(0.0, retry_wait_multiplier)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @asynccontextmanager
    async def open_stream(self, session_id: str, content: str) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST one turn and yield the response body as raw byte chunks."""
        request = self._client.build_request(
            "POST",
            f"/sessions/{session_id}/stream",
            json={"content": content},
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        logger.debug(f"Opening stream for session {session_id} ({len(content)} chars)")
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as ex:
            raise StreamConnectionError(f"Could not open stream: {ex}", cause=ex) from ex

        try:
            if response.status_code >= 400:
                await response.aread()
                error = _api_error_from_response(response)
                raise StreamConnectionError(
                    f"Stream request failed: {error}",
                    status_code=response.status_code,
                    cause=error,
                )
            yield self._iter_body(response)
        finally:
            await response.aclose()

    async def _iter_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as ex:
            raise StreamConnectionError(f"Stream interrupted: {ex}", cause=ex) from ex

    async def fetch_messages(self, session_id: str) -> list[Message]:
        data = await self._get_with_retry(f"/sessions/{session_id}/messages")
        if not isinstance(data, list):
            raise ApiError("History response is not a list", code="INVALID_RESPONSE")
        try:
            return [Message.from_wire(item) for item in data]
        except (ValueError, TypeError, KeyError) as ex:
            raise ApiError(f"History contains an undecodable message: {ex}", code="INVALID_RESPONSE") from ex

    async def get_session(self, session_id: str) -> Session:
        data = await self._get_with_retry(f"/sessions/{session_id}")
        if not isinstance(data, dict):
            raise ApiError("Session response is not an object", code="INVALID_RESPONSE")
        try:
            return Session.from_wire(data)
        except (ValueError, TypeError, KeyError) as ex:
            raise ApiError(f"Session response is malformed: {ex}", code="INVALID_RESPONSE") from ex

    async def submit_approval(self, approval_id: str, decision: str) -> dict[str, Any]:
        route = self._routes.get(decision)
        if route is None:
            raise ValueError(f"Unknown approval decision: {decision!r}")
        path = route.format(approval_id=approval_id)
        try:
            response = await self._client.post(path, json={"decision": decision})
        except httpx.HTTPError as ex:
            raise ApiError(f"Approval request failed: {ex}", code="NETWORK_ERROR") from ex
        if response.status_code >= 400:
            raise _api_error_from_response(response)
        try:
            data = _unwrap(response.json()) if response.content else {}
        except ValueError as ex:
            raise ApiError(
                "Approval response is not JSON", code="INVALID_RESPONSE", status_code=response.status_code
            ) from ex
        logger.info(f"Approval {approval_id}: {decision} acknowledged")
        return data if isinstance(data, dict) else {}

    async def _get_with_retry(self, path: str) -> Any:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_transient),
                wait=wait_exponential(multiplier=self._retry_wait_multiplier, max=8),
                stop=stop_after_attempt(self._history_retry_attempts),
                before_sleep=_on_retry,
                reraise=True,
            ):
                with attempt:
                    return await self._get_json(path)
        except httpx.HTTPError as ex:
            raise ApiError(f"GET {path} failed: {ex}", code="NETWORK_ERROR") from ex

    async def _get_json(self, path: str) -> Any:
        response = await self._client.get(path)
        if response.status_code >= 400:
            raise _api_error_from_response(response)
        try:
            payload = response.json()
        except ValueError as ex:
            raise ApiError(
                f"GET {path} returned a non-JSON body", code="INVALID_RESPONSE", status_code=response.status_code
            ) from ex
        return _unwrap(payload)
