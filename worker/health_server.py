"""
Health check HTTP server for the processing worker.

Provides Kubernetes-compatible health endpoints:
- /health (liveness): Process is running
- /ready (readiness): Worker can take jobs (storage reachable, FFmpeg available,
  scheduler running)
- /metrics: Prometheus metrics in text format

Runs on port 8080 by default (configurable via HLSFORGE_WORKER_HEALTH_PORT).
"""

import asyncio
import json
import logging
import shutil
from http import HTTPStatus
from typing import Any, Callable, Dict, Optional, Tuple

from api.metrics import get_metrics, metrics_content_type
from config import WORKER_HEALTH_PORT

logger = logging.getLogger(__name__)


class HealthServer:
    """Simple async HTTP health server for worker liveness/readiness probes."""

    def __init__(
        self,
        port: int = WORKER_HEALTH_PORT,
        stats_fn: Optional[Callable[[], Dict[str, Any]]] = None,
        host: str = "0.0.0.0",
    ):
        """
        Initialize health server.

        Args:
            port: Port to listen on (0 picks a free port)
            stats_fn: Optional callback returning scheduler stats for /ready
            host: Interface to bind
        """
        self.port = port
        self.host = host
        self.stats_fn = stats_fn
        self._server: Optional[asyncio.Server] = None
        self._is_ready = False

    def set_ready(self, ready: bool):
        """Set readiness state (called once storage and database are connected)."""
        self._is_ready = ready

    def _check_ffmpeg(self) -> bool:
        return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

    def _route(self, path: str) -> Tuple[HTTPStatus, str, bytes]:
        if path == "/health":
            return HTTPStatus.OK, "application/json", json.dumps({"status": "alive"}).encode()

        if path == "/ready":
            stats = self.stats_fn() if self.stats_fn else {}
            checks = {
                "ffmpeg": self._check_ffmpeg(),
                "connected": self._is_ready,
                "scheduler_running": bool(stats.get("running", self.stats_fn is None)),
            }
            all_ok = all(checks.values())
            body = {"status": "ready" if all_ok else "not_ready", "checks": checks, "queue": stats}
            status = HTTPStatus.OK if all_ok else HTTPStatus.SERVICE_UNAVAILABLE
            return status, "application/json", json.dumps(body).encode()

        if path == "/metrics":
            return HTTPStatus.OK, metrics_content_type(), get_metrics()

        if path == "/":
            return HTTPStatus.OK, "application/json", json.dumps({"service": "hlsforge-worker"}).encode()

        return HTTPStatus.NOT_FOUND, "application/json", json.dumps({"error": "not found"}).encode()

    async def _handle_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle incoming HTTP request."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            parts = request_line.decode("utf-8", errors="replace").split()
            path = parts[1] if len(parts) > 1 else "/"
            path = path.split("?", 1)[0]

            # Headers are not used
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            try:
                status, content_type, body = self._route(path)
            except Exception as e:
                logger.error(f"Health endpoint {path} failed: {e}")
                status, content_type, body = (
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    "application/json",
                    json.dumps({"error": "server error"}).encode(),
                )

            head = (
                f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                f"Content-Type: {content_type}\r\n"
                f"Content-Length: {len(body)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
            )
            writer.write(head.encode() + body)
            await writer.drain()

        except (asyncio.TimeoutError, ConnectionError):
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def start(self):
        """Start the health server."""
        self._server = await asyncio.start_server(self._handle_request, self.host, self.port)
        # Resolve the real port when 0 was requested
        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info(f"Health server listening on port {self.port}")

    async def stop(self):
        """Stop the health server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
