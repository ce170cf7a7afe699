"""Liveness/readiness endpoints served with ``asyncio.start_server``.

``/healthz`` answers 200 while the event loop is alive. ``/readyz`` answers
with the readiness dict, and 503 when it (or any dict directly inside it)
carries ``"status": "error"``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from contextlib import suppress
from http import HTTPStatus
from typing import Any

import structlog

logger = structlog.get_logger()

ReadinessCheck = Callable[[], Awaitable[dict[str, Any]]]
Reply = tuple[HTTPStatus, dict[str, Any]]

_READ_TIMEOUT_SECONDS = 5.0


class HealthServer:
    def __init__(
        self,
        port: int,
        readiness_check: ReadinessCheck,
        host: str = "0.0.0.0",  # noqa: S104
    ) -> None:
        self._host = host
        self._port = port
        self._readiness_check = readiness_check
        self._server: asyncio.Server | None = None
        self._routes: dict[str, Callable[[], Awaitable[Reply]]] = {
            "/healthz": self._liveness,
            "/readyz": self._readiness,
        }

    @property
    def port(self) -> int:
        """Bound port (differs from the configured one when that was 0)."""
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._serve, host=self._host, port=self._port
        )
        logger.info("health.server_started", host=self._host, port=self.port)

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info("health.server_stopped")

    async def _liveness(self) -> Reply:
        return HTTPStatus.OK, {"status": "ok"}

    async def _readiness(self) -> Reply:
        body = await self._readiness_check()
        if _reports_error(body):
            return HTTPStatus.SERVICE_UNAVAILABLE, body
        return HTTPStatus.OK, body

    async def _dispatch(self, reader: asyncio.StreamReader) -> Reply:
        line = await asyncio.wait_for(reader.readline(), _READ_TIMEOUT_SECONDS)
        route = self._routes.get(_request_path(line))
        if route is None:
            return HTTPStatus.NOT_FOUND, {"error": "not found"}
        return await route()

    async def _serve(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            status, body = await self._dispatch(reader)
        except Exception:
            logger.warning("health.request_error", exc_info=True)
            status, body = (
                HTTPStatus.INTERNAL_SERVER_ERROR,
                {"error": "internal server error"},
            )
        try:
            writer.write(_render(status, body))
            await writer.drain()
        except ConnectionError:
            logger.debug("health.client_disconnected")
        finally:
            writer.close()
            with suppress(ConnectionError):
                await writer.wait_closed()


def _reports_error(body: dict[str, Any]) -> bool:
    candidates = [body, *(v for v in body.values() if isinstance(v, dict))]
    return any(c.get("status") == "error" for c in candidates)


def _request_path(request_line: bytes) -> str:
    # "GET /readyz HTTP/1.1"
    parts = request_line.decode("latin-1").split()
    return parts[1] if len(parts) > 1 else ""


def _render(status: HTTPStatus, body: dict[str, Any]) -> bytes:
    payload = json.dumps(body, default=str).encode()
    head = "\r\n".join(
        [
            f"HTTP/1.1 {status.value} {status.phrase}",
            "Content-Type: application/json",
            f"Content-Length: {len(payload)}",
            "Connection: close",
            "",
            "",
        ]
    )
    return head.encode() + payload
