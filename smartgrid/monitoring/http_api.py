"""
Management HTTP surface for the grid engine.

Endpoints:
- GET  /health                 liveness (no auth)
- GET  /metrics                Prometheus text (no auth)
- GET  /api/grids              active grids
- GET  /api/grids/{id}         one grid, active or completed
- GET  /api/history?limit=N    completed grids, newest first
- GET  /api/stats              module statistics
- POST /api/grids              create a grid from {pair, direction, entryPoint, confidence?}
- POST /api/grids/{id}/close   close a grid ({reason?}, default MANUAL; 502 when a market close fails)

Every /api response is JSON {"success": bool, ...}. When a token is set,
/api/* requires "Authorization: Bearer <token>".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from smartgrid.core.errors import GridCreationError
from smartgrid.core.json_utils import dumps, dumps_bytes, loads
from smartgrid.core.models import Signal

if TYPE_CHECKING:
    from smartgrid.monitoring.metrics_rich import GridMetrics
    from smartgrid.orchestrator.grid_coordinator import GridCoordinator

log = logging.getLogger("smartgrid")

MAX_BODY_BYTES = 64 * 1024

_REASONS = {
    200: "OK",
    201: "Created",
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    413: "Payload Too Large",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    502: "Bad Gateway",
}

Response = Tuple[int, str, bytes]


def _json(status: int, payload: Dict[str, Any]) -> Response:
    return status, "application/json", dumps_bytes(payload)


def _error(status: int, message: str, **extra: Any) -> Response:
    return _json(status, {"success": False, "error": message, **extra})


class ApiHandler:
    """Routes parsed requests to the coordinator."""

    def __init__(
        self,
        coordinator: "GridCoordinator",
        metrics: Optional["GridMetrics"] = None,
        auth_token: Optional[str] = None,
    ) -> None:
        self.coordinator = coordinator
        self.metrics = metrics
        self.auth_token = auth_token

    def _authorized(self, headers: Dict[str, str]) -> bool:
        if not self.auth_token:
            return True
        return headers.get("authorization", "") == f"Bearer {self.auth_token}"

    async def dispatch(
        self,
        method: str,
        target: str,
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
    ) -> Response:
        headers = headers or {}
        parsed = urlparse(target)
        path = parsed.path.rstrip("/") or "/"
        query = parse_qs(parsed.query)

        if path == "/health":
            return _json(200, {"healthy": True, "running": self.coordinator.is_running})
        if path == "/metrics":
            if self.metrics is None:
                return _error(404, "metrics disabled")
            return 200, "text/plain; version=0.0.4", self.metrics.render()

        if not path.startswith("/api/"):
            return _error(404, "not found")
        if not self._authorized(headers):
            return _error(401, "unauthorized")

        parts = path.split("/")[2:]
        try:
            if method == "GET":
                return self._get(parts, query)
            if method == "POST":
                return await self._post(parts, body)
        except Exception as exc:
            log.error(dumps({"event": "api_error", "method": method, "path": path, "error": str(exc)}))
            return _error(500, "internal error")
        return _error(405, "method not allowed")

    def _get(self, parts: list, query: Dict[str, list]) -> Response:
        c = self.coordinator
        if parts == ["grids"]:
            grids = [g.to_dict() for g in c.get_active_grids()]
            return _json(200, {"success": True, "grids": grids})
        if len(parts) == 2 and parts[0] == "grids":
            grid = c.get_grid(parts[1])
            if grid is None:
                return _error(404, f"grid {parts[1]} not found")
            return _json(200, {"success": True, "grid": grid.to_dict()})
        if parts == ["history"]:
            try:
                limit = int(query.get("limit", ["50"])[0])
            except ValueError:
                return _error(400, "limit must be an integer")
            history = [g.to_dict() for g in c.get_grid_history(limit)]
            return _json(200, {"success": True, "history": history})
        if parts == ["stats"]:
            return _json(200, {"success": True, "stats": c.get_stats()})
        return _error(404, "not found")

    async def _post(self, parts: list, body: bytes) -> Response:
        payload: Any = {}
        if body:
            try:
                payload = loads(body)
            except ValueError:
                return _error(400, "body must be JSON")
        if not isinstance(payload, dict):
            return _error(400, "body must be a JSON object")

        if parts == ["grids"]:
            return await self._create_grid(payload)
        if len(parts) == 3 and parts[0] == "grids" and parts[2] == "close":
            reason = payload.get("reason") or "MANUAL"
            grid = self.coordinator.get_grid(parts[1])
            if grid is None or not grid.is_active:
                return _error(404, f"grid {parts[1]} not found or not active")
            if not await self.coordinator.close_grid(parts[1], reason):
                return _error(502, "market close failed, grid left active", gridId=parts[1])
            return _json(200, {"success": True, "gridId": parts[1]})
        return _error(404, "not found")

    async def _create_grid(self, payload: Dict[str, Any]) -> Response:
        missing = [k for k in ("pair", "direction", "entryPoint") if payload.get(k) in (None, "")]
        if missing:
            return _error(400, "missing required fields", fields=missing)
        try:
            signal = Signal.from_dict(payload)
        except GridCreationError as exc:
            return _error(400, str(exc), reason=exc.reason)
        try:
            grid = await self.coordinator.create_grid_from_signal(signal)
        except GridCreationError as exc:
            status = 409 if exc.is_admission else 422
            return _error(status, str(exc), reason=exc.reason)
        return _json(201, {"success": True, "grid": grid.to_dict()})


async def _read_request(reader: asyncio.StreamReader) -> Tuple[str, str, Dict[str, str], bytes]:
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    request_line = lines[0].split(" ")
    if len(request_line) < 2:
        raise ValueError("malformed request line")
    method, target = request_line[0].upper(), request_line[1]
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if ":" in line:
            k, v = line.split(":", 1)
            headers[k.strip().lower()] = v.strip()
    length = int(headers.get("content-length", "0") or 0)
    if length > MAX_BODY_BYTES:
        raise OverflowError("body too large")
    body = await reader.readexactly(length) if length > 0 else b""
    return method, target, headers, body


async def start_api_server(
    handler: ApiHandler,
    host: str = "0.0.0.0",
    port: int = 9095,
) -> asyncio.AbstractServer:
    """Serve ApiHandler over HTTP/1.1 (one request per connection)."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            try:
                method, target, headers, body = await asyncio.wait_for(_read_request(reader), timeout=10.0)
            except OverflowError:
                status, ctype, payload = _error(413, "body too large")
            except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, asyncio.TimeoutError, ValueError):
                status, ctype, payload = _error(400, "malformed request")
            else:
                status, ctype, payload = await handler.dispatch(method, target, headers, body)

            writer.write(
                f"HTTP/1.1 {status} {_REASONS.get(status, 'OK')}\r\n"
                f"Content-Type: {ctype}\r\n"
                f"Content-Length: {len(payload)}\r\n"
                "Connection: close\r\n\r\n".encode("latin-1")
                + payload
            )
            await writer.drain()
        except ConnectionError as exc:
            log.debug("api client disconnected: %s", exc)
        finally:
            writer.close()

    server = await asyncio.start_server(handle, host, port)
    log.info(dumps({"event": "http_api_started", "host": host, "port": port}))
    return server
