"""
Subscription multiplexer: one change-feed channel per tenant.

Every tenant gets a single :class:`TenantChannel` no matter how many
consumers subscribe. The channel's supervisor thread connects the transport,
waits for it to fail, and reconnects with exponential backoff. Incoming
notifications are fanned out to per-handle queues; each handle drains its
queue on its own consumer thread, so delivery order per channel is kept and a
slow consumer does not hold up the others.

Channel states::

    CONNECTING -> OPEN -> (ERROR -> RECONNECTING -> OPEN)* -> CLOSED

CLOSED is reached only by teardown. After ``max_attempts`` consecutive failed
reconnects the channel reports :class:`ExhaustedReconnect` to every handle and
stops; the next ``open`` for that tenant builds a fresh channel.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from typing import Callable, Dict, Iterable, Optional, Sequence

from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import ChannelError, ExhaustedReconnect, log_exception
from ..schemas.changes import ChangeNotification, SubscriptionDescriptor
from .reconciler import CacheStore
from .transport import ChangeFeedTransport


logger = logging.getLogger("multiplexer")

TransportFactory = Callable[[str], ChangeFeedTransport]
NotificationCallback = Callable[["Handle", ChangeNotification], None]
ErrorCallback = Callable[["Handle", Exception], None]
StatusCallback = Callable[["Handle", "ConnectionStatus"], None]


def compute_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect ``attempt`` (0-based): ``min(2**attempt * base, max)``."""
    return min((2 ** max(0, attempt)) * base_delay, max_delay)


class ChannelState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


_STOP = object()


class Handle:
    """A consumer's view of a tenant channel. Close it (or use ``with``) when done."""

    def __init__(
        self,
        channel: "TenantChannel",
        descriptors: Sequence[SubscriptionDescriptor],
        on_notification: NotificationCallback,
        *,
        on_error: Optional[ErrorCallback] = None,
        on_status: Optional[StatusCallback] = None,
        release: Optional[Callable[["Handle"], None]] = None,
        store: Optional[CacheStore] = None,
    ) -> None:
        self.channel = channel
        self.store = store
        self.tenant_id = channel.tenant_id
        self.descriptors = tuple(descriptors)
        self._on_notification = on_notification
        self._on_error = on_error
        self._on_status = on_status
        self._release = release
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = threading.Event()
        self.error: Optional[Exception] = None
        self._thread = threading.Thread(
            target=self._consume, name=f"handle-{self.tenant_id}-{id(self)}", daemon=True
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def status(self) -> ConnectionStatus:
        if isinstance(self.error, ExhaustedReconnect):
            return ConnectionStatus.FAILED
        return self.channel.status

    def deliver(self, notification: ChangeNotification) -> None:
        if not self.closed:
            self._queue.put(("change", notification))

    def notify_status(self, status: ConnectionStatus) -> None:
        if not self.closed:
            self._queue.put(("status", status))

    def fail(self, exc: Exception) -> None:
        if not self.closed:
            self._queue.put(("error", exc))

    def flush(self) -> None:
        """Block until everything queued so far has been handled."""
        if not self.closed:
            self._queue.join()

    def raise_if_failed(self) -> None:
        if self.error is not None:
            raise self.error

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if self.closed:
                    continue
                kind, value = item
                if kind == "change":
                    self._on_notification(self, value)
                elif kind == "status":
                    if self._on_status:
                        self._on_status(self, value)
                elif kind == "error":
                    self.error = value
                    if self._on_error:
                        self._on_error(self, value)
            except Exception as exc:
                log_exception(logger, "Subscription consumer failed", extra={"tenant": self.tenant_id}, exc=exc)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_STOP)
        if self._release:
            self._release(self)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=5)

    def __enter__(self) -> "Handle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class TenantChannel:
    """One supervised transport connection for one tenant."""

    def __init__(
        self,
        tenant_id: str,
        transport_factory: TransportFactory,
        *,
        base_delay: float,
        max_delay: float,
        max_attempts: int,
        connect_timeout: Optional[float] = None,
        wait: Optional[Callable[[float], object]] = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.transport_factory = transport_factory
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.connect_timeout = connect_timeout
        self.state = ChannelState.CONNECTING
        self.attempt = 0
        self.failure: Optional[ExhaustedReconnect] = None
        self._handles: list[Handle] = []
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._finished = threading.Event()
        self._signals: "queue.Queue" = queue.Queue()
        self._generation = 0
        self._transport: Optional[ChangeFeedTransport] = None
        self._wait = wait or self._closed.wait
        self._thread = threading.Thread(target=self._run, name=f"channel-{tenant_id}", daemon=True)

    # --- consumer side -----------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        if self.failure is not None:
            return ConnectionStatus.FAILED
        if self.state == ChannelState.OPEN:
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.RECONNECTING

    @property
    def finished(self) -> bool:
        """True once the channel stopped for good (exhausted or closed)."""
        return self._finished.is_set()

    def handles(self) -> list[Handle]:
        with self._lock:
            return list(self._handles)

    def attach(self, handle: Handle) -> None:
        with self._lock:
            self._handles.append(handle)

    def detach(self, handle: Handle) -> int:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)
            return len(self._handles)

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._signals.put(("closed", self._generation, None))
        if threading.current_thread() is not self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._drop_transport()
        self.state = ChannelState.CLOSED
        self._finished.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    # --- supervisor ----------------------------------------------------------

    def _set_state(self, state: ChannelState) -> None:
        previous = self.status
        self.state = state
        logger.debug("Channel tenant=%s state=%s", self.tenant_id, state.value)
        if self.status != previous:
            for handle in self.handles():
                handle.notify_status(self.status)

    def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            transport.close()
        except Exception as exc:
            log_exception(logger, "Transport close failed", extra={"tenant": self.tenant_id}, exc=exc)

    def _connect(self) -> int:
        self._generation += 1
        generation = self._generation
        transport = self.transport_factory(self.tenant_id)
        self._transport = transport
        try:
            transport.connect(
                on_open=lambda: self._signals.put(("open", generation, None)),
                on_message=lambda body: self._dispatch(generation, body),
                on_error=lambda exc: self._signals.put(("error", generation, exc)),
            )
        except Exception as exc:
            self._signals.put(("error", generation, exc))
        return generation

    def _next_signal(self, generation: int, timeout: Optional[float]) -> tuple:
        while True:
            try:
                kind, gen, value = self._signals.get(timeout=timeout)
            except queue.Empty:
                return ("error", generation, ChannelError("connect timed out"))
            if kind == "closed" or gen == generation:
                return (kind, gen, value)
            # Stale callbacks from a transport we already dropped.

    def _run(self) -> None:
        failures = 0
        while not self._closed.is_set():
            generation = self._connect()
            kind, _, value = self._next_signal(generation, self.connect_timeout)
            if kind == "open":
                failures = 0
                self.attempt = 0
                self._set_state(ChannelState.OPEN)
                logger.info("Channel open tenant=%s", self.tenant_id)
                kind, _, value = self._next_signal(generation, None)
            if kind == "closed" or self._closed.is_set():
                break

            self._drop_transport()
            self._set_state(ChannelState.ERROR)
            failures += 1
            self.attempt = failures
            if failures > self.max_attempts:
                self._exhaust(failures - 1, value)
                return
            delay = compute_backoff(failures - 1, self.base_delay, self.max_delay)
            logger.warning(
                "Channel error tenant=%s attempt=%s/%s retry_in=%.1fs err=%s",
                self.tenant_id,
                failures,
                self.max_attempts,
                delay,
                value,
            )
            self._set_state(ChannelState.RECONNECTING)
            self._wait(delay)
        self._drop_transport()

    def _exhaust(self, attempts: int, last_error: Optional[Exception]) -> None:
        self.failure = ExhaustedReconnect(self.tenant_id, attempts, last_error)
        logger.error("%s", self.failure)
        self._finished.set()
        for handle in self.handles():
            handle.notify_status(ConnectionStatus.FAILED)
            handle.fail(self.failure)

    def _dispatch(self, generation: int, body: dict) -> None:
        if generation != self._generation or self._closed.is_set():
            return
        try:
            notification = ChangeNotification.model_validate(body)
        except ValidationError as exc:
            logger.warning("Invalid change notification tenant=%s err=%s", self.tenant_id, exc)
            return
        if notification.tenant_id != self.tenant_id:
            logger.warning(
                "Dropping change for tenant=%s on channel tenant=%s", notification.tenant_id, self.tenant_id
            )
            return
        for handle in self.handles():
            handle.deliver(notification)


class SubscriptionMultiplexer:
    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        base_delay: float | None = None,
        max_delay: float | None = None,
        max_attempts: int | None = None,
        connect_timeout: float | None = None,
        wait: Optional[Callable[[float], object]] = None,
    ) -> None:
        self.transport_factory = transport_factory
        self.base_delay = base_delay if base_delay is not None else settings.reconnect_base_delay_sec
        self.max_delay = max_delay if max_delay is not None else settings.reconnect_max_delay_sec
        self.max_attempts = max_attempts if max_attempts is not None else settings.reconnect_max_attempts
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.channel_connect_timeout_sec
        self._wait = wait
        self._channels: Dict[str, TenantChannel] = {}
        self._lock = threading.Lock()

    def open(
        self,
        tenant_id: str,
        descriptors: Iterable[SubscriptionDescriptor],
        on_notification: NotificationCallback,
        *,
        on_error: Optional[ErrorCallback] = None,
        on_status: Optional[StatusCallback] = None,
        store: Optional[CacheStore] = None,
    ) -> Handle:
        with self._lock:
            channel = self._channels.get(tenant_id)
            fresh = channel is None or channel.finished
            if fresh:
                if channel is not None:
                    channel.close()
                channel = TenantChannel(
                    tenant_id,
                    self.transport_factory,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    max_attempts=self.max_attempts,
                    connect_timeout=self.connect_timeout,
                    wait=self._wait,
                )
                self._channels[tenant_id] = channel
            handle = Handle(
                channel,
                list(descriptors),
                on_notification,
                on_error=on_error,
                on_status=on_status,
                release=self._release,
                store=store,
            )
            channel.attach(handle)
            if fresh:
                channel.start()
        return handle

    def _release(self, handle: Handle) -> None:
        channel = handle.channel
        with self._lock:
            remaining = channel.detach(handle)
            if remaining:
                return
            if self._channels.get(channel.tenant_id) is channel:
                del self._channels[channel.tenant_id]
        channel.close()

    def channel_for(self, tenant_id: str) -> Optional[TenantChannel]:
        with self._lock:
            return self._channels.get(tenant_id)

    def statuses(self) -> Dict[str, ConnectionStatus]:
        with self._lock:
            return {tenant: ch.status for tenant, ch in self._channels.items()}

    def close_all(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            for handle in channel.handles():
                handle.close()
            channel.close()
