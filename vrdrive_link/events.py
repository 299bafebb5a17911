import logging
import typing

logger = logging.getLogger(__name__)

Handler = typing.Callable[..., typing.Any]


class Signal:
    """Named observer list.

    Handlers run synchronously, in subscription order, on the thread that
    calls emit() (the control loop for every component in this package).
    A failing handler is logged and does not stop the others.
    """
    def __init__(self, name: str):
        self.name = name
        self._handlers: list[Handler] = []

    def connect(self, handler: Handler) -> typing.Callable[[], None]:
        self._handlers.append(handler)
        return lambda: self.disconnect(handler)

    def disconnect(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, *args) -> None:
        for handler in list(self._handlers):
            try:
                handler(*args)
            except Exception:
                logger.error("EV: handler %r of %s failed", handler, self.name, exc_info=True)

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        return f"<Signal {self.name} ({len(self._handlers)} handlers)>"


def release(unsubscribers: list[typing.Callable[[], None]]) -> None:
    for unsubscribe in unsubscribers:
        unsubscribe()
    unsubscribers.clear()
