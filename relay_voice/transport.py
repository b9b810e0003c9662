"""
Remote streaming transports

The session manager only needs to open a connection, send text over it and
hear about its closure. Provider wire formats live behind this interface.
WebSocketTransport is a generic JSON-over-WebSocket implementation.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect as ws_connect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable snapshot of everything needed to (re)open a connection"""
    url: str
    headers: Tuple[Tuple[str, str], ...] = ()
    instructions: Optional[str] = None
    language: str = "en-US"
    open_timeout: float = 10.0


class Connection(ABC):
    """One underlying connection of a session"""

    @abstractmethod
    def send_text(self, text: str) -> None:
        """Send a text message to the endpoint"""

    @abstractmethod
    def close(self) -> None:
        """Close the connection"""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the connection is no longer usable"""


MessageCallback = Callable[[str], None]
CloseCallback = Callable[[Connection, Optional[str]], None]


class Transport(ABC):
    """Factory for connections"""

    @abstractmethod
    def open(
        self,
        config: ProviderConfig,
        on_message: MessageCallback,
        on_close: CloseCallback,
    ) -> Connection:
        """
        Open a connection

        on_close(connection, reason) must be called exactly once when the
        connection ends, whether closed locally or by the remote side.
        Raises on failure to connect.
        """


class WebSocketConnection(Connection):
    """
    A websockets sync client owned by its receiver thread

    The thread opens the connection as a context manager, sends the setup
    frame, then reads until the connection ends. open() blocks until the
    handshake has completed or failed.
    """

    def __init__(self, config: ProviderConfig, on_message: MessageCallback, on_close: CloseCallback):
        self.config = config
        self._ws = None
        self._on_message = on_message
        self._on_close = on_close
        self._opened = threading.Event()
        self._open_error: Optional[Exception] = None
        self._closed = threading.Event()
        self._receiver = threading.Thread(
            target=self._run,
            name="relay-voice-ws-receiver",
            daemon=True,
        )

    def open(self) -> None:
        """Connect and wait for the handshake; raises if it fails"""
        self._receiver.start()
        # Bounded by ws_connect's open_timeout
        self._opened.wait()
        if self._open_error is not None:
            raise self._open_error

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send_text(self, text: str) -> None:
        self._ws.send(json.dumps({"type": "text", "text": text}))

    def close(self) -> None:
        if self._ws is None:
            return
        try:
            self._ws.close()
        except Exception as e:
            logger.debug(f"WebSocket close failed: {e}")

    def _run(self) -> None:
        reason: Optional[str] = None
        try:
            with ws_connect(
                self.config.url,
                additional_headers=list(self.config.headers) or None,
                open_timeout=self.config.open_timeout,
                close_timeout=5,
            ) as websocket:
                self._ws = websocket
                if self.config.instructions:
                    websocket.send(json.dumps({
                        "type": "setup",
                        "instructions": self.config.instructions,
                        "language": self.config.language,
                    }))
                self._opened.set()
                reason = self._receive(websocket)
        except Exception as e:
            if not self._opened.is_set():
                self._open_error = e
                self._opened.set()
                return
            reason = f"transport error: {e}"

        self._closed.set()
        logger.info(f"WebSocket closed ({reason or 'normal closure'})")
        self._on_close(self, reason)

    def _receive(self, websocket) -> Optional[str]:
        """Forward messages until the connection ends; returns the close reason"""
        try:
            for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                try:
                    self._on_message(message)
                except Exception as e:
                    logger.error(f"Error in message callback: {e}")
        except ConnectionClosed as e:
            return str(e)
        except OSError as e:
            return f"transport error: {e}"
        return None


class WebSocketTransport(Transport):
    """
    JSON text frames over a WebSocket

    On open an optional setup frame carries instructions and language; every
    text message is sent as {"type": "text", "text": ...}.
    """

    def open(
        self,
        config: ProviderConfig,
        on_message: MessageCallback,
        on_close: CloseCallback,
    ) -> Connection:
        connection = WebSocketConnection(config, on_message, on_close)
        connection.open()
        logger.info(f"WebSocket connected to {config.url}")
        return connection
