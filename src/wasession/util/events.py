from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Awaitable[Any]] | Callable[..., Any]


class AsyncEventEmitter:
    """
    Minimal async-friendly event emitter.

    The transport emits into one of these per connection.

    - `on(event, fn)` registers a listener (sync or async).
    - `emit(event, *args, **kwargs)` awaits async listeners.
    - `wait_for(event, predicate, timeout)` waits for the next matching emission.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._waiters: dict[str, list[tuple[Callable[..., bool] | None, asyncio.Future[Any]]]] = (
            defaultdict(list)
        )

    def wait_for_future(
        self, event: str, *, predicate: Callable[..., bool] | None = None
    ) -> asyncio.Future[Any]:
        """
        Register a waiter *synchronously* and return its Future.

        This avoids a race where the event is emitted between constructing an
        awaitable and actually awaiting it.
        """
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Any] = loop.create_future()
        self._waiters[event].append((predicate, fut))
        return fut

    def remove_waiter_future(self, event: str, fut: asyncio.Future[Any]) -> None:
        waiters = self._waiters.get(event)
        if not waiters:
            return
        self._waiters[event] = [(p, f) for (p, f) in waiters if f is not fut and not f.done()]
        if not self._waiters[event]:
            self._waiters.pop(event, None)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        with contextlib.suppress(ValueError):
            listeners.remove(listener)

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
            for waiters in self._waiters.values():
                for _, fut in waiters:
                    fut.cancel()
            self._waiters.clear()
            return
        self._listeners.pop(event, None)
        for _, fut in self._waiters.pop(event, []):
            fut.cancel()

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, *args: Any, **kwargs: Any) -> bool:
        any_triggered = False

        waiters = self._waiters.get(event)
        if waiters:
            remaining: list[tuple[Callable[..., bool] | None, asyncio.Future[Any]]] = []
            for predicate, fut in waiters:
                if fut.done():
                    continue
                ok = True if predicate is None else bool(predicate(*args, **kwargs))
                if ok:
                    fut.set_result(args[0] if len(args) == 1 and not kwargs else (args, kwargs))
                    any_triggered = True
                else:
                    remaining.append((predicate, fut))
            if remaining:
                self._waiters[event] = remaining
            else:
                self._waiters.pop(event, None)

        for listener in list(self._listeners.get(event, [])):
            any_triggered = True
            res = listener(*args, **kwargs)
            if asyncio.iscoroutine(res):
                await res

        return any_triggered

    async def wait_for(
        self,
        event: str,
        *,
        predicate: Callable[..., bool] | None = None,
        timeout_s: float | None = None,
    ) -> Any:
        fut = self.wait_for_future(event, predicate=predicate)
        try:
            if timeout_s is None:
                return await fut
            return await asyncio.wait_for(fut, timeout=timeout_s)
        finally:
            self.remove_waiter_future(event, fut)


class SessionEvent(str, Enum):
    READY = "ready"
    REGISTERED = "registered"
    DISCONNECT = "disconnect"
    INCOMING_MESSAGE = "incoming_message"
    OUTGOING_MESSAGE = "outgoing_message"
    MESSAGE_BLOCKED = "message_blocked"
    MESSAGE_UPDATE = "message_update"
    ERROR = "error"
    UPDATE = "update"
    REMOVE = "remove"


class SessionEvents:
    """
    Typed subscription registry for the callbacks an account session fires.

    Unlike the transport emitter, a failing subscriber is logged and skipped:
    callers' code must never break the connection lifecycle. Events nobody
    subscribed to are no-ops.
    """

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        self._subscribers: dict[SessionEvent, list[Listener]] = defaultdict(list)

    def subscribe(self, event: SessionEvent, listener: Listener) -> Callable[[], None]:
        self._subscribers[event].append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers[event].remove(listener)

        return unsubscribe

    def on_ready(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.READY, listener)

    def on_registered(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.REGISTERED, listener)

    def on_disconnect(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.DISCONNECT, listener)

    def on_incoming_message(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.INCOMING_MESSAGE, listener)

    def on_outgoing_message(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.OUTGOING_MESSAGE, listener)

    def on_message_blocked(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.MESSAGE_BLOCKED, listener)

    def on_message_update(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.MESSAGE_UPDATE, listener)

    def on_error(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.ERROR, listener)

    def on_update(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.UPDATE, listener)

    def on_remove(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(SessionEvent.REMOVE, listener)

    async def fire(self, event: SessionEvent, *args: Any) -> None:
        for listener in list(self._subscribers.get(event, [])):
            try:
                res = listener(*args)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("[%s] %s subscriber failed", self.account_id, event.value)

    def clear(self) -> None:
        self._subscribers.clear()
