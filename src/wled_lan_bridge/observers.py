"""Typed observer registries with isolated fan-out."""

from __future__ import annotations

import logging
from typing import Callable, Generic, List, Mapping, TypeVar

from .metrics import record_listener_error
from .models import DeviceState, DiscoveredDevice, Preset

T = TypeVar("T")

StateObserver = Callable[[DeviceState], None]
PresetObserver = Callable[[Mapping[str, Preset]], None]
DiscoveryObserver = Callable[[List[DiscoveredDevice]], None]


class ObserverRegistry(Generic[T]):
    """Ordered set of callbacks notified synchronously with a value.

    A callback that raises is logged and skipped; the remaining callbacks are
    still invoked.
    """

    def __init__(self, kind: str, logger: logging.Logger) -> None:
        self.kind = kind
        self.logger = logger
        self._observers: List[Callable[[T], None]] = []

    def add(self, observer: Callable[[T], None]) -> Callable[[], None]:
        """Register ``observer`` and return a handle that removes it again."""

        self._observers.append(observer)

        def remove() -> None:
            self.remove(observer)

        return remove

    def remove(self, observer: Callable[[T], None]) -> bool:
        try:
            self._observers.remove(observer)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._observers.clear()

    def notify(self, value: T) -> None:
        for observer in list(self._observers):
            self.call(observer, value)

    def call(self, observer: Callable[[T], None], value: T) -> None:
        try:
            observer(value)
        except Exception:
            record_listener_error(self.kind)
            self.logger.exception("Listener raised", extra={"listener_kind": self.kind})

    def __len__(self) -> int:
        return len(self._observers)

    def __contains__(self, observer: object) -> bool:
        return observer in self._observers
