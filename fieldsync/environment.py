from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from .state import dispatch

_LOGGER = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Any]


class Environment(Protocol):
    """Wall clock and connectivity signal supplied by the host platform."""

    @property
    def is_online(self) -> bool: ...

    def now_ms(self) -> int: ...

    def set_online(self, online: bool) -> None: ...

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]: ...


class SystemEnvironment:
    """Environment backed by the system clock and a manually driven online flag."""

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        _LOGGER.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            dispatch(listener, online)

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove


__all__ = ["ConnectivityListener", "Environment", "SystemEnvironment"]
