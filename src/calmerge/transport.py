from __future__ import annotations
from typing import Any, Dict, Optional, Protocol
import asyncio

import requests

Envelope = Dict[str, Any]


class TransportError(RuntimeError):
    """Network, auth or protocol failure from the API. Never cached; safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Transport(Protocol):
    async def get(self, path: str, query: Optional[Dict[str, Any]] = None) -> Envelope: ...

    async def post(
        self, path: str, data: Optional[Dict[str, Any]] = None, query: Optional[Dict[str, Any]] = None
    ) -> Envelope: ...

    async def put(
        self, path: str, data: Optional[Dict[str, Any]] = None, query: Optional[Dict[str, Any]] = None
    ) -> Envelope: ...

    async def delete(self, path: str, query: Optional[Dict[str, Any]] = None) -> Envelope: ...


class RequestsTransport:
    """Blocking requests session run off the event loop.

    Responses use the API envelope ``{"success": bool, "data": ..., "message": str}``.
    Anything else, including ``success: false``, raises TransportError.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        user_agent: str = "calmerge/1.0",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
        if token:
            self._session.headers.update({"Authorization": f"Bearer {token}"})

    async def get(self, path: str, query: Optional[Dict[str, Any]] = None) -> Envelope:
        return await self._send("GET", path, query=query)

    async def post(
        self, path: str, data: Optional[Dict[str, Any]] = None, query: Optional[Dict[str, Any]] = None
    ) -> Envelope:
        return await self._send("POST", path, query=query, data=data)

    async def put(
        self, path: str, data: Optional[Dict[str, Any]] = None, query: Optional[Dict[str, Any]] = None
    ) -> Envelope:
        # The API only accepts PUT tunnelled through POST.
        return await self._send(
            "POST", path, query=query, data=data, headers={"X-HTTP-Method-Override": "PUT"}
        )

    async def delete(self, path: str, query: Optional[Dict[str, Any]] = None) -> Envelope:
        return await self._send("DELETE", path, query=query)

    async def _send(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Envelope:
        return await asyncio.to_thread(self.request, method, path, query, data, headers)

    def request(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Envelope:
        url = self.base_url + path.lstrip("/")
        try:
            resp = self._session.request(
                method,
                url,
                params=query or None,
                json=data if data is not None else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if not resp.ok:
            message = _message_from(payload) or f"HTTP {resp.status_code}"
            raise TransportError(message, status_code=resp.status_code)
        if not isinstance(payload, dict):
            raise TransportError("Unexpected response structure", status_code=resp.status_code)
        if not payload.get("success"):
            raise TransportError(
                _message_from(payload) or "Unexpected response structure",
                status_code=resp.status_code,
            )
        return payload


def _message_from(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
    return ""
