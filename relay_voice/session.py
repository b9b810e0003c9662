"""
Session continuity manager

Presents one continuous conversation with a remote streaming endpoint
despite dropped connections. Unexpected closures trigger a bounded,
strictly sequential reconnect loop that replays recent conversation
context on the new connection. A user close is sticky: once set, no
further network attempt is made and late connection results are discarded.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from relay_voice.errors import ReconnectExhausted, SessionClosed
from relay_voice.history import DEFAULT_CONTEXT_TURNS, ConversationHistory
from relay_voice.transport import Connection, ProviderConfig, Transport

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = 2.0


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


# Status kinds surfaced to callers
CONNECTING = "connecting"
CONNECTED = "connected"
RECONNECTING = "reconnecting"
RECONNECTED = "reconnected"
CLOSED = "closed"
FAILED = "failed"


@dataclass(frozen=True)
class SessionStatus:
    kind: str
    attempt: Optional[int] = None
    max_attempts: Optional[int] = None
    reason: Optional[str] = None

    def __str__(self) -> str:
        if self.kind == RECONNECTING:
            return f"{RECONNECTING} ({self.attempt}/{self.max_attempts})"
        if self.kind == FAILED:
            return f"{FAILED}: {self.reason}"
        return self.kind


class SessionManager:
    """
    One logical conversation over many underlying connections

    The attempt counter only resets on a fresh top-level connect(), never
    after a successful reconnection, so rapid successive drops cannot retry
    forever.
    """

    def __init__(
        self,
        config: ProviderConfig,
        transport: Transport,
        on_status: Optional[Callable[[SessionStatus], None]] = None,
        on_message: Optional[Callable[[str], None]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
        context_turns: int = DEFAULT_CONTEXT_TURNS,
        history: Optional[ConversationHistory] = None,
    ):
        """
        Initialize session

        Args:
            config: Provider configuration, reused verbatim for every reconnect
            transport: Opens the underlying connections
            on_status: Callback for status changes
            on_message: Callback for text received from the endpoint
            max_attempts: Reconnection attempts before giving up
            backoff: Seconds to wait before each reconnection attempt
            context_turns: How many recent turns are replayed after reconnecting
            history: Conversation history (a fresh one by default)
        """
        self.config = config
        self.transport = transport
        self.on_status = on_status
        self.on_message = on_message
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.context_turns = context_turns
        self.history = history if history is not None else ConversationHistory()

        self._lock = threading.Lock()
        # Held while reporting status so nothing is reported after "closed"
        self._status_lock = threading.RLock()
        self._state = SessionState.DISCONNECTED
        self._connection: Optional[Connection] = None
        self._attempts = 0
        self._user_closed = False
        self._cancel = threading.Event()
        self._reconnect_thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def user_closed(self) -> bool:
        return self._user_closed

    @property
    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    def connect(self) -> bool:
        """
        Fresh top-level connect; resets the attempt counter

        Returns:
            True once connected, False if the connection failed

        Raises:
            SessionClosed: the session was closed by the user
        """
        with self._lock:
            if self._user_closed:
                raise SessionClosed("Session was closed; start a new session")
            if self._state in (SessionState.CONNECTING, SessionState.CONNECTED, SessionState.RECONNECTING):
                logger.warning(f"Connect ignored, session is {self._state.value}")
                return self._state == SessionState.CONNECTED
            self._attempts = 0
            self._state = SessionState.CONNECTING

        self._emit(SessionStatus(CONNECTING))

        try:
            connection = self._open()
        except Exception as e:
            logger.error(f"Failed to connect to {self.config.url}: {e}")
            with self._lock:
                if self._user_closed:
                    return False
                self._state = SessionState.FAILED
            self._emit_unless_closed(SessionStatus(FAILED, reason=str(e)))
            return False

        with self._lock:
            discard = self._user_closed
            if not discard:
                self._connection = connection
                self._state = SessionState.CONNECTED

        if discard:
            logger.info("Session closed while connecting, discarding connection")
            self._close_quietly(connection)
            return False

        logger.info("Session connected")
        self._emit_unless_closed(SessionStatus(CONNECTED))

        if connection.closed:
            self._on_transport_closed(connection, "closed during connect")
        return True

    def close(self) -> None:
        """Close the session for good; no further network attempt is made"""
        with self._status_lock, self._lock:
            if self._user_closed:
                return
            self._user_closed = True
            self._cancel.set()
            connection = self._connection
            self._connection = None
            self._state = SessionState.CLOSED

        if connection is not None:
            self._close_quietly(connection)

        logger.info("Session closed by user")
        self._emit(SessionStatus(CLOSED))

    def send_text(self, text: str) -> bool:
        """Send text on the live connection. Returns False when not connected."""
        with self._lock:
            connection = self._connection if self._state == SessionState.CONNECTED else None
        if connection is None:
            return False
        try:
            connection.send_text(text)
            return True
        except Exception as e:
            logger.error(f"Failed to send text: {e}")
            return False

    def record_turn(self, user_utterance: str, assistant_reply: str) -> bool:
        """Remember a completed exchange for context replay"""
        return self.history.add(user_utterance, assistant_reply)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for a running reconnect loop to finish"""
        thread = self._reconnect_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _open(self) -> Connection:
        return self.transport.open(self.config, self._on_remote_message, self._on_transport_closed)

    def _on_remote_message(self, text: str) -> None:
        if self.on_message:
            self.on_message(text)

    def _on_transport_closed(self, connection: Connection, reason: Optional[str]) -> None:
        exhausted = False

        with self._lock:
            if connection is not self._connection:
                return
            self._connection = None

            if self._user_closed:
                return
            # The reconnect loop notices a drop of its own fresh connection
            if self._state != SessionState.CONNECTED:
                return

            logger.warning(f"Session dropped: {reason or 'connection closed'}")
            if self._attempts >= self.max_attempts:
                self._state = SessionState.FAILED
                exhausted = True
            else:
                self._state = SessionState.RECONNECTING
                self._reconnect_thread = threading.Thread(
                    target=self._reconnect_loop,
                    name="relay-voice-reconnect",
                    daemon=True,
                )
                self._reconnect_thread.start()

        if exhausted:
            self._emit_exhausted()

    def _reconnect_loop(self) -> None:
        while True:
            with self._lock:
                if self._user_closed:
                    return
                if self._attempts >= self.max_attempts:
                    self._state = SessionState.FAILED
                    break
                self._attempts += 1
                attempt = self._attempts

            logger.info(f"Reconnection attempt {attempt}/{self.max_attempts}")
            if not self._emit_unless_closed(
                SessionStatus(RECONNECTING, attempt=attempt, max_attempts=self.max_attempts)
            ):
                return

            if self._cancel.wait(self.backoff):
                logger.info("Reconnection cancelled")
                return

            try:
                connection = self._open()
            except Exception as e:
                logger.error(f"Reconnection attempt {attempt} failed: {e}")
                continue

            with self._lock:
                discard = self._user_closed
                if not discard:
                    self._connection = connection

            if discard:
                logger.info("Session closed during reconnection, discarding connection")
                self._close_quietly(connection)
                return

            self._replay_context(connection)

            with self._lock:
                if self._user_closed:
                    return
                alive = self._connection is connection and not connection.closed
                if alive:
                    self._state = SessionState.CONNECTED
                elif self._connection is connection:
                    self._connection = None

            if alive:
                logger.info("Session reconnected successfully")
                self._emit_unless_closed(SessionStatus(RECONNECTED))
                return

            logger.warning(f"Reconnection attempt {attempt} dropped immediately")

        self._emit_exhausted()

    def _replay_context(self, connection: Connection) -> None:
        message = self.history.context_message(self.context_turns)
        if not message:
            return
        try:
            logger.info("Restoring conversation context...")
            connection.send_text(message)
        except Exception as e:
            # Reconnection proceeds without context
            logger.error(f"Failed to restore context: {e}")

    def _emit_exhausted(self) -> None:
        error = ReconnectExhausted(
            f"Tried {self.max_attempts} times to reconnect. "
            "Check your network and restart the session manually."
        )
        logger.error(f"Max reconnection attempts reached: {error}")
        self._emit_unless_closed(SessionStatus(FAILED, reason=str(error)))

    @staticmethod
    def _close_quietly(connection: Connection) -> None:
        try:
            connection.close()
        except Exception as e:
            logger.debug(f"Connection close failed: {e}")

    def _emit_unless_closed(self, status: SessionStatus) -> bool:
        with self._status_lock:
            if self._user_closed:
                return False
            self._emit(status)
            return True

    def _emit(self, status: SessionStatus) -> None:
        if self.on_status:
            try:
                self.on_status(status)
            except Exception as e:
                logger.error(f"Error in status callback: {e}")
