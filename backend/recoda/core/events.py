from typing import Callable, Generic, List, TypeVar

from recoda.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """Minimal subscription point: ``subscribe(callback) -> unsubscribe``."""

    def __init__(self):
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: T):
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber {callback!r} failed on {type(event).__name__}: {e}")

    def __len__(self) -> int:
        return len(self._subscribers)
