"""Fan-out of assignment and status events to connected users.

One ``Session`` per connected user owns a duplex channel, the user's event
subscriptions and an outbox drained by a writer task. ``publish`` only
enqueues; a single dispatch loop matches events to sessions so publishers
never wait on slow clients. Delivery is best-effort: nothing is persisted and
a user who is offline misses what was published meanwhile.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from app.config import (
    NOTIFY_QUEUE_SIZE,
    NOTIFY_RECONNECT_ATTEMPTS,
    NOTIFY_RECONNECT_DELAY,
    NOTIFY_RECONNECT_MAX_DELAY,
)
from app.models.notification import NotificationEvent

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None] | None]
Sleep = Callable[[float], Awaitable[None]]


class ChannelError(Exception):
    """Raised by a channel whose underlying transport is unusable."""


class NotificationChannelDown(Exception):
    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(f"notification channel for {user_id} down after {attempts} attempts")
        self.user_id = user_id
        self.attempts = attempts


class NotificationChannel(Protocol):
    async def open(self) -> None: ...

    async def send(self, event: dict) -> None: ...

    async def close(self) -> None: ...


# Marks a closed QueueChannel so a pending ``receive`` wakes up.
_CLOSED = object()


class QueueChannel:
    """In-process channel; the WebSocket endpoint drains it with ``receive``.

    A closed channel stays closed: ``receive`` raises ``ChannelError`` so its
    reader can tell the client and stop.
    """

    def __init__(self, user_id: str, maxsize: int = NOTIFY_QUEUE_SIZE) -> None:
        self.user_id = user_id
        self._maxsize = maxsize
        self._queue: asyncio.Queue | None = None
        self.closed = True

    async def open(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        elif self.closed:
            raise ChannelError(f"channel for {self.user_id} was closed")
        self.closed = False

    async def send(self, event: dict) -> None:
        if self.closed or self._queue is None:
            raise ChannelError(f"channel for {self.user_id} is closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Channel queue full for %s, dropping %s", self.user_id, event.get("type"))

    async def receive(self) -> dict:
        if self._queue is None:
            raise ChannelError(f"channel for {self.user_id} was never opened")
        event = await self._queue.get()
        if event is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise ChannelError(f"channel for {self.user_id} is closed")
        return event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay: float = NOTIFY_RECONNECT_DELAY
    max_delay: float = NOTIFY_RECONNECT_MAX_DELAY
    max_attempts: int = NOTIFY_RECONNECT_ATTEMPTS
    factor: float = 2.0

    def delays(self) -> list[float]:
        """Wait before each retry: doubling from the base, capped, ``max_attempts`` long."""
        return [min(self.base_delay * self.factor**i, self.max_delay) for i in range(self.max_attempts)]


class Session:
    def __init__(
        self,
        user_id: str,
        channel: NotificationChannel,
        groups: Iterable[str],
        policy: ReconnectPolicy,
        sleep: Sleep,
    ) -> None:
        self.user_id = user_id
        self.channel = channel
        self.groups = frozenset(groups)
        self.subscriptions: dict[str, list[Handler]] = {}
        self.connected = False
        self.error: NotificationChannelDown | None = None
        self._policy = policy
        self._sleep = sleep
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=NOTIFY_QUEUE_SIZE)
        self._writer: asyncio.Task | None = None

    def matches(self, recipients: frozenset[str] | None) -> bool:
        if recipients is None:
            return True
        return self.user_id in recipients or not self.groups.isdisjoint(recipients)

    def forward(self, event: dict) -> None:
        """Default handler: queue the event for delivery over the channel."""
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Outbox full for %s, dropping %s", self.user_id, event.get("type"))

    async def open(self) -> None:
        attempts = 0
        delays = self._policy.delays()
        while True:
            attempts += 1
            try:
                await self.channel.open()
                self.connected = True
                return
            except ChannelError as exc:
                if attempts > len(delays):
                    self.connected = False
                    raise NotificationChannelDown(self.user_id, attempts) from exc
                delay = delays[attempts - 1]
                logger.info(
                    "Channel open failed for %s (attempt %d), retrying in %.1fs: %s",
                    self.user_id, attempts, delay, exc,
                )
                await self._sleep(delay)

    def start_writer(self, on_down: Callable[["Session"], None]) -> None:
        self._writer = asyncio.create_task(self._write_loop(on_down))

    async def _write_loop(self, on_down: Callable[["Session"], None]) -> None:
        while True:
            event = await self._outbox.get()
            try:
                await self.channel.send(event)
            except ChannelError as exc:
                # The event that failed is not retried after reconnecting.
                logger.warning("Send to %s failed, reconnecting: %s", self.user_id, exc)
                if not await self._reconnect():
                    self._outbox.task_done()
                    self._discard_outbox()
                    on_down(self)
                    return
            self._outbox.task_done()

    async def _reconnect(self) -> bool:
        self.connected = False
        await self.channel.close()
        try:
            await self.open()
        except NotificationChannelDown as down:
            logger.error("%s", down)
            self.error = down
            return False
        return True

    def _discard_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    async def drain(self) -> None:
        if self._writer is not None and not self._writer.done():
            await self._outbox.join()

    async def close(self) -> None:
        self.connected = False
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        await self.channel.close()


class NotificationDispatcher:
    """Explicitly constructed fan-out hub with a ``start``/``stop`` lifecycle."""

    def __init__(
        self,
        channel_factory: Callable[[str], NotificationChannel] = QueueChannel,
        policy: ReconnectPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        queue_size: int = NOTIFY_QUEUE_SIZE,
    ) -> None:
        self._channel_factory = channel_factory
        self._policy = policy or ReconnectPolicy()
        self._sleep = sleep
        self._queue_size = queue_size
        self._sessions: dict[str, Session] = {}
        self._connect_locks: dict[str, asyncio.Lock] = {}
        self._connect_waiters: dict[str, int] = {}
        self._handler_tasks: set[asyncio.Task] = set()
        self._queue: asyncio.Queue | None = None
        self._loop_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._loop_task = asyncio.create_task(self._dispatch_loop(self._queue))
        logger.info("Notification dispatcher started")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()
        for task in list(self._handler_tasks):
            task.cancel()
        self._handler_tasks.clear()
        logger.info("Notification dispatcher stopped")

    def session(self, user_id: str) -> Session | None:
        return self._sessions.get(user_id)

    async def connect(
        self,
        user_id: str,
        groups: Iterable[str] = (),
        channel: NotificationChannel | None = None,
    ) -> Session:
        """Open a session for ``user_id``.

        Without a ``channel`` this is a no-op returning the live session if one
        exists. A caller bringing its own channel (a new socket) replaces the
        live session; the old channel is closed so its reader can stop.
        """
        lock = self._connect_locks.setdefault(user_id, asyncio.Lock())
        self._connect_waiters[user_id] = self._connect_waiters.get(user_id, 0) + 1
        try:
            async with lock:
                existing = self._sessions.get(user_id)
                if existing is not None and existing.connected:
                    if channel is None or channel is existing.channel:
                        return existing
                    logger.info("Replacing notification session for %s", user_id)
                    del self._sessions[user_id]
                    await existing.close()

                session = Session(
                    user_id,
                    channel or self._channel_factory(user_id),
                    groups,
                    self._policy,
                    self._sleep,
                )
                await session.open()
                session.start_writer(self._drop_session)
                self._sessions[user_id] = session
                logger.info("User %s connected to notifications", user_id)
                return session
        finally:
            self._connect_waiters[user_id] -= 1
            if not self._connect_waiters[user_id]:
                del self._connect_waiters[user_id]
                del self._connect_locks[user_id]

    async def disconnect(self, user_id: str, session: Session | None = None) -> None:
        """Close the user's session; with ``session``, only if it is still the live one."""
        current = self._sessions.get(user_id)
        if session is not None and current is not session:
            await session.close()
            return
        if current is not None:
            del self._sessions[user_id]
            await current.close()
            logger.info("User %s disconnected from notifications", user_id)

    def _drop_session(self, session: Session) -> None:
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]

    def subscribe(self, user_id: str, event_type: str, handler: Handler | None = None) -> Handler:
        """Register interest in ``event_type``; without a handler events go out over the channel."""
        session = self._sessions.get(user_id)
        if session is None:
            raise LookupError(f"user {user_id} is not connected")
        handler = handler or session.forward
        handlers = session.subscriptions.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
        return handler

    def unsubscribe(self, user_id: str, event_type: str, handler: Handler | None = None) -> None:
        session = self._sessions.get(user_id)
        if session is None:
            return
        handlers = session.subscriptions.get(event_type)
        if not handlers:
            return
        if handler is None:
            del session.subscriptions[event_type]
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del session.subscriptions[event_type]

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        recipients: Iterable[str] | None = None,
    ) -> None:
        """Queue an event for every matching session. Drops it if the dispatcher is stopped."""
        if not self.running or self._queue is None:
            logger.warning("Dispatcher not running, dropping %s event", event_type)
            return
        event = NotificationEvent(type=event_type, payload=payload).model_dump()
        target = frozenset(recipients) if recipients is not None else None
        try:
            self._queue.put_nowait((event, target))
        except asyncio.QueueFull:
            logger.warning("Dispatch queue full, dropping %s event", event_type)

    async def drain(self) -> None:
        """Wait until every queued event has been handed to its sessions' channels."""
        if self._queue is not None and self.running:
            await self._queue.join()
        for session in list(self._sessions.values()):
            await session.drain()

    async def _dispatch_loop(self, queue: asyncio.Queue) -> None:
        while True:
            event, recipients = await queue.get()
            try:
                self._deliver(event, recipients)
            finally:
                queue.task_done()

    def _deliver(self, event: dict, recipients: frozenset[str] | None) -> None:
        for session in list(self._sessions.values()):
            if not session.matches(recipients):
                continue
            for handler in list(session.subscriptions.get(event["type"], ())):
                self._invoke(handler, event)

    def _invoke(self, handler: Handler, event: dict) -> None:
        try:
            result = handler(event)
        except Exception:
            logger.exception("Notification handler failed for %s", event.get("type"))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async notification handler failed: %s", task.exception())
