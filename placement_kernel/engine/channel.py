"""
In-process publish/subscribe channels.

``Channel`` delivers values to observers in subscription order. Observers may
be plain callables or coroutine functions. An observer that raises is logged
and skipped; delivery to the others continues.

``Signal`` is a value-less channel used by guards to ask for a re-run.
"""

import inspect
from typing import Any, Callable, Generic, List, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class Channel(Generic[T]):
    """Ordered fan-out of published values to observers."""

    def __init__(self, name: str = "channel"):
        self.name = name
        self._observers: List[Callable[[T], Any]] = []

    def subscribe(self, observer: Callable[[T], Any]) -> Unsubscribe:
        """
        Register ``observer``. Repeat subscriptions of the same callable are
        ignored. Returns a callable that removes the subscription.
        """
        if observer not in self._observers:
            self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def publish(self, value: T) -> None:
        for observer in list(self._observers):
            try:
                result = observer(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "channel.observer_failed",
                    channel=self.name,
                    observer=getattr(observer, "__qualname__", repr(observer)),
                )

    def clear(self) -> None:
        self._observers.clear()


class Signal:
    """
    A trigger with no payload.

    Listeners are plain callables; firing calls each one synchronously. The
    engine subscribes ``request_refresh`` to every guard's signal.
    """

    def __init__(self, name: str = "signal"):
        self.name = name
        self._listeners: List[Callable[[], Any]] = []

    def connect(self, listener: Callable[[], Any]) -> Unsubscribe:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def disconnect() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return disconnect

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def fire(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("signal.listener_failed", signal=self.name)
