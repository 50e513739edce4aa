import logging
from typing import Callable

import sentry_sdk

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ChangeNotifier:
    """
    Minimal observable base for stores.

    Listeners are plain callables invoked synchronously, in registration
    order, every time the store changes. A listener that raises is logged and
    reported; the remaining listeners still run.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    @property
    def has_listeners(self) -> bool:
        return len(self._listeners) > 0

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def notify_listeners(self) -> None:
        # listeners may add or remove listeners while we iterate
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.exception(f"Listener {listener!r} of {type(self).__name__} failed")
                sentry_sdk.capture_exception(e)
