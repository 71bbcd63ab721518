"""WebSocket front end: one Session per connected viewer."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, Mapping, Optional

from PySide6.QtCore import QObject
from PySide6.QtNetwork import QAbstractSocket, QHostAddress
from PySide6.QtWebSockets import QWebSocket, QWebSocketServer

from .broadcast import BroadcastChannel
from .capture_process import qt_process_factory
from .config import ServerConfig
from .messages import encode_message, handle_client_message
from .supervisor import ProcessFactory
from .session import Session

logger = logging.getLogger(__name__)


class ServerError(RuntimeError):
    """Raised when the WebSocket server cannot listen."""


class WebSocketSubscriber:
    """Subscriber writing JSON text frames to a QWebSocket.

    Qt buffers outgoing frames without blocking; once more than
    ``max_pending_bytes`` are waiting, new messages are dropped.
    """

    def __init__(self, socket: QWebSocket, *, max_pending_bytes: int) -> None:
        self.socket = socket
        self.max_pending_bytes = max_pending_bytes

    def send(self, event: str, payload: Mapping[str, Any]) -> bool:
        if self.socket.state() != QAbstractSocket.SocketState.ConnectedState:
            return False
        pending = self.socket.bytesToWrite()
        if pending > self.max_pending_bytes:
            logger.debug("Dropping %s: %d bytes already pending", event, pending)
            return False
        self.socket.sendTextMessage(encode_message(event, payload))
        return True


@dataclass
class _Connection:
    socket: QWebSocket
    subscriber: WebSocketSubscriber
    session: Session


class TrafficGraphServer(QObject):
    """Accepts viewer connections and owns their sessions."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        *,
        process_factory: Optional[ProcessFactory] = None,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self.config = config or ServerConfig()
        self.channel = BroadcastChannel()
        self._process_factory = process_factory or qt_process_factory(self.config.capture)
        self._connections: Dict[str, _Connection] = {}

        self._server = QWebSocketServer(
            "trafficgraph",
            QWebSocketServer.SslMode.NonSecureMode,
            self,
        )
        self._server.newConnection.connect(self._on_new_connection)

    # ------------------------------------------------------------------
    def listen(self) -> None:
        address = QHostAddress(self.config.host)
        if not self._server.listen(address, self.config.port):
            raise ServerError(
                f"Failed to listen on {self.config.host}:{self.config.port}: "
                f"{self._server.errorString()}"
            )
        logger.info("Server running on ws://%s:%d", self.config.host, self.port)

    @property
    def port(self) -> int:
        return int(self._server.serverPort())

    def session_count(self) -> int:
        return len(self._connections)

    def close(self) -> None:
        logger.info("Cleaning up...")
        for session_id in list(self._connections):
            self._drop_connection(session_id)
        self._server.close()

    # ------------------------------------------------------------------
    def _on_new_connection(self) -> None:
        while self._server.hasPendingConnections():
            socket = self._server.nextPendingConnection()
            session_id = uuid.uuid4().hex
            subscriber = WebSocketSubscriber(
                socket,
                max_pending_bytes=self.config.max_pending_bytes,
            )
            session = Session(
                session_id,
                self.channel,
                subscriber,
                process_factory=self._process_factory,
                config=self.config,
            )
            self._connections[session_id] = _Connection(socket, subscriber, session)

            socket.textMessageReceived.connect(partial(self._on_text_message, session_id))
            socket.disconnected.connect(partial(self._on_disconnected, session_id))
            logger.info(
                "Client connected from %s (session %s)",
                socket.peerAddress().toString(),
                session_id,
            )

    def _on_text_message(self, session_id: str, text: str) -> None:
        connection = self._connections.get(session_id)
        if connection is None:
            return
        try:
            reply = handle_client_message(connection.session, text)
        except Exception:
            logger.exception("Failed to handle message for session %s", session_id)
            reply = ("error", {"message": "Failed to start capture"})
        if reply is not None:
            event, payload = reply
            connection.subscriber.send(event, payload)

    def _on_disconnected(self, session_id: str) -> None:
        logger.info("Client disconnected (session %s)", session_id)
        self._drop_connection(session_id)

    def _drop_connection(self, session_id: str) -> None:
        connection = self._connections.pop(session_id, None)
        if connection is None:
            return
        connection.session.close()
        connection.socket.deleteLater()


__all__ = ["ServerError", "TrafficGraphServer", "WebSocketSubscriber"]
