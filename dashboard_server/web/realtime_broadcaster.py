"""Real-time broadcaster pushing work item updates to dashboard WebSocket clients."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RealtimeBroadcaster:
    """
    Push-based fan-out of processed webhook events to connected dashboards.

    Clients connect to ``/ws/metrics`` with an optional ``project`` filter and
    receive only updates for that project (all projects when unfiltered).

    WebSocket Message Format:
        {
            "type": "work_item_update",
            "action": "updated",
            "project": "Alpha",
            "workItem": {"id": 42, "title": "...", "state": "Active", ...},
            "metadata": {"eventId": "...", "invalidated": "cache:workItems:Alpha:*"},
            "timestamp": "2025-11-24T12:34:56.789000+00:00"
        }

    Example:
        broadcaster = RealtimeBroadcaster(logger)
        await broadcaster.handle_websocket(websocket, project="Alpha")
    """

    def __init__(self, logger: logging.Logger, clock: Callable[[], datetime] = _utc_now) -> None:
        """
        Initialize the broadcaster.

        Architecture guarantees:
        - logger is ALWAYS provided (required parameter) - no defensive checks needed
        - _connections starts empty - legitimate to check size
        """
        self.logger = logger
        self.clock = clock
        self._connections: dict[WebSocket, str | None] = {}
        self._messages_sent = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def shutdown(self) -> None:
        """Close all active WebSocket connections during application shutdown."""
        self.logger.info(f"Shutting down RealtimeBroadcaster with {len(self._connections)} active connections")

        # Copy to avoid modification during iteration
        for ws in list(self._connections):
            try:
                await ws.close(code=1001, reason="Server shutdown")
            except Exception:
                # Keep closing the remaining connections
                self.logger.exception("Error closing WebSocket connection during shutdown")

        self._connections.clear()
        self.logger.info("RealtimeBroadcaster shutdown completed")

    async def handle_websocket(self, websocket: WebSocket, project: str | None = None) -> None:
        """
        Register a dashboard client and keep the connection open until it disconnects.

        Incoming text frames are only used for liveness: ``ping`` is answered with
        a ``pong`` message, anything else is ignored.
        """
        await websocket.accept()
        self._connections[websocket] = project

        try:
            self.logger.info(f"WebSocket connection established for metrics updates (project={project})")
            await websocket.send_json({
                "type": "connection_status",
                "status": "connected",
                "project": project,
                "timestamp": self.clock().isoformat(),
            })

            while True:
                message = await websocket.receive_text()
                if message.strip().lower() == "ping":
                    await websocket.send_json({"type": "pong", "timestamp": self.clock().isoformat()})

        except WebSocketDisconnect:
            self.logger.info("WebSocket client disconnected")
        except Exception:
            self.logger.exception("Error in WebSocket handler")
            try:
                await websocket.close(code=1011, reason="Internal server error")
            except Exception:
                self.logger.debug("WebSocket already closed")
        finally:
            self._connections.pop(websocket, None)

    async def broadcast_work_item_update(
        self,
        action: str,
        project: str | None,
        work_item: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """
        Send a work item update to every client subscribed to `project`.

        Connections that fail to receive are dropped.

        Returns:
            Number of clients the update was delivered to
        """
        message = {
            "type": "work_item_update",
            "action": action,
            "project": project,
            "workItem": work_item,
            "metadata": metadata or {},
            "timestamp": self.clock().isoformat(),
        }

        delivered = 0
        for ws, subscribed_project in list(self._connections.items()):
            if subscribed_project is not None and subscribed_project != project:
                continue

            try:
                await ws.send_json(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, ConnectionError):
                self.logger.debug("Dropping dead WebSocket connection")
                self._connections.pop(ws, None)

        self._messages_sent += delivered
        self.logger.debug(f"Broadcasted {action} for work item {work_item.get('id')} to {delivered} client(s)")
        return delivered

    def get_stats(self) -> dict[str, Any]:
        return {"connections": self.connection_count, "messagesSent": self._messages_sent}
