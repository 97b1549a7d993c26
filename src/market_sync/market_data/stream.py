# src/market_sync/market_data/stream.py

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from websockets.asyncio.client import connect as websockets_connect
from websockets.exceptions import WebSocketException

from market_sync.logging_config import structured_log_extra
from market_sync.market_data.exceptions import StreamExhaustedError
from market_sync.market_data.models import ConnectionStatus
from market_sync.metrics import FeedMetrics

logger = logging.getLogger(__name__)

BINANCE_STREAM_URL = "wss://stream.binance.com:9443/ws"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 1.0

MessageHandler = Callable[[Dict[str, Any]], None]
StatusHandler = Callable[[ConnectionStatus], None]


def reconnect_delay(
    attempts: int,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
) -> Optional[float]:
    """
    Delay before reconnecting after a close, given the number of consecutive
    failed connections before that close. None once the close would use up
    the last attempt.
    """
    # Counted against the closes so far: five consecutive failed connections
    # give four reconnects, and the fifth close is terminal.
    if attempts + 1 >= max_attempts:
        return None
    return base_delay * (attempts + 1)


@dataclass
class ConnectionState:
    """
    Connection state machine for one subscription:
    disconnected -> connecting -> open -> erroring -> disconnected.

    Once exhausted the state is terminal and further events are ignored.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    attempts: int = 0
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    exhausted: bool = False

    def on_connecting(self) -> None:
        if not self.exhausted:
            self.status = ConnectionStatus.CONNECTING

    def on_open(self) -> None:
        if not self.exhausted:
            self.attempts = 0
            self.status = ConnectionStatus.OPEN

    def on_error(self) -> None:
        if not self.exhausted:
            self.status = ConnectionStatus.ERRORING

    def on_close(self) -> Optional[float]:
        """Registers a close and returns the reconnect delay, or None if exhausted."""
        if self.exhausted:
            return None
        delay = reconnect_delay(self.attempts, self.max_attempts, self.base_delay)
        self.attempts += 1
        if delay is None:
            self.exhausted = True
            self.status = ConnectionStatus.ERRORING
            return None
        self.status = ConnectionStatus.DISCONNECTED
        return delay


class StreamSubscription:
    """
    One push connection for a (symbol, channel) pair. Reconnects after
    unexpected closes until the state machine is exhausted; ``close()`` stops
    everything and is safe to call more than once.
    """

    def __init__(
        self,
        url: str,
        symbol: str,
        channel: str,
        on_message: MessageHandler,
        state: ConnectionState,
        connect: Callable[[str], Any] = websockets_connect,
        on_status_change: Optional[StatusHandler] = None,
        on_terminal_error: Optional[Callable[[Exception], None]] = None,
        on_reconnect_scheduled: Optional[Callable[[int], None]] = None,
        metrics: Optional[FeedMetrics] = None,
    ):
        self.url = url
        self.symbol = symbol
        self.channel = channel
        self._on_message = on_message
        self._state = state
        self._connect = connect
        self._on_status_change = on_status_change
        self._on_terminal_error = on_terminal_error
        self._on_reconnect_scheduled = on_reconnect_scheduled
        self._metrics = metrics

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def attempts(self) -> int:
        return self._state.attempts

    @property
    def exhausted(self) -> bool:
        return self._state.exhausted

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def _log_extra(self, event: str, **kwargs: Any) -> Dict[str, Any]:
        return structured_log_extra(event=event, symbol=self.symbol, channel=self.channel, **kwargs)

    def start(self) -> None:
        """Opens the first connection. Must be called from a running event loop."""
        self._loop = asyncio.get_running_loop()
        self._open_connection()

    def _open_connection(self) -> None:
        assert self._loop is not None
        self._task = self._loop.create_task(self._run())

    def _transition(self, event: Callable[[], Any]) -> Any:
        previous = self._state.status
        result = event()
        if self._state.status != previous:
            self._safe_call(self._on_status_change, self._state.status)
        return result

    def _safe_call(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(
                "Stream callback failed for %s %s.",
                self.symbol,
                self.channel,
                extra=self._log_extra("stream_callback_failed"),
            )

    async def _run(self) -> None:
        self._transition(self._state.on_connecting)
        try:
            async with self._connect(self.url) as ws:
                if self._closed:
                    return
                self._transition(self._state.on_open)
                logger.info(
                    "WebSocket connection established for %s.",
                    self.url,
                    extra=self._log_extra("stream_open"),
                )
                async for raw in ws:
                    if self._closed:
                        return
                    self._dispatch(raw)
        except asyncio.CancelledError:
            logger.debug("Stream reader cancelled for %s.", self.url)
            raise
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            if self._closed:
                return
            logger.warning(
                "WebSocket error on %s: %s",
                self.url,
                e,
                extra=self._log_extra("stream_error", attempt=self._state.attempts),
            )
            self._transition(self._state.on_error)
        except Exception:
            if self._closed:
                return
            logger.exception(
                "Unexpected failure reading %s.",
                self.url,
                extra=self._log_extra("stream_reader_failed", attempt=self._state.attempts),
            )
            self._transition(self._state.on_error)

        self._handle_close()

    def _dispatch(self, raw: Any) -> None:
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            message = json.loads(raw)
        except ValueError as e:
            logger.warning(
                "Dropping undecodable message on %s: %s",
                self.url,
                e,
                extra=self._log_extra("stream_message_malformed"),
            )
            if self._metrics:
                self._metrics.record_malformed_message(f"{self.symbol} {self.channel}: {e}")
            return

        if self._metrics:
            self._metrics.record_message()
        self._safe_call(self._on_message, message)

    def _handle_close(self) -> None:
        if self._closed:
            return

        delay = self._transition(self._state.on_close)
        if delay is None:
            error = StreamExhaustedError(self.symbol, self.channel, self._state.attempts)
            logger.error(
                "%s",
                error,
                extra=self._log_extra("stream_exhausted", attempt=self._state.attempts),
            )
            if self._metrics:
                self._metrics.record_stream_exhausted(str(error))
            self._safe_call(self._on_terminal_error, error)
            return

        logger.info(
            "Reconnecting %s in %.1fs (attempt %d).",
            self.url,
            delay,
            self._state.attempts,
            extra=self._log_extra("reconnect_scheduled", attempt=self._state.attempts, delay=delay),
        )
        if self._metrics:
            self._metrics.record_reconnect()
        assert self._loop is not None
        self._reconnect_handle = self._loop.call_later(delay, self._reconnect)
        self._safe_call(self._on_reconnect_scheduled, self._state.attempts)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._closed:
            return
        self._open_connection()

    def close(self) -> None:
        """Tears the subscription down; later calls are no-ops."""
        if self._closed:
            return
        self._closed = True

        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        if self._task is not None and not self._task.done():
            self._task.cancel()

        if self._state.status != ConnectionStatus.DISCONNECTED:
            self._state.status = ConnectionStatus.DISCONNECTED
            self._safe_call(self._on_status_change, ConnectionStatus.DISCONNECTED)

        logger.debug("Stream subscription closed for %s.", self.url, extra=self._log_extra("stream_closed"))


class StreamSubscriber:
    """Opens push subscriptions against the venue's stream endpoint."""

    def __init__(
        self,
        base_url: str = BINANCE_STREAM_URL,
        connect: Optional[Callable[[str], Any]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        metrics: Optional[FeedMetrics] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._connect = connect or websockets_connect
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._metrics = metrics

    def stream_url(self, symbol: str, channel: str) -> str:
        return f"{self._base_url}/{symbol.lower()}@{channel}"

    def subscribe(
        self,
        symbol: str,
        channel: str,
        on_message: MessageHandler,
        on_status_change: Optional[StatusHandler] = None,
        on_terminal_error: Optional[Callable[[Exception], None]] = None,
        on_reconnect_scheduled: Optional[Callable[[int], None]] = None,
    ) -> StreamSubscription:
        """Starts a fresh subscription with its own connection state."""
        subscription = StreamSubscription(
            url=self.stream_url(symbol, channel),
            symbol=symbol,
            channel=channel,
            on_message=on_message,
            state=ConnectionState(max_attempts=self._max_attempts, base_delay=self._base_delay),
            connect=self._connect,
            on_status_change=on_status_change,
            on_terminal_error=on_terminal_error,
            on_reconnect_scheduled=on_reconnect_scheduled,
            metrics=self._metrics,
        )
        subscription.start()
        return subscription
