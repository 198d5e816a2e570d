"""Signals from the hosting environment and extended execution grants.

A desktop process is rarely suspended, but recording still has to react to
competing audio, lost input devices and the app being sent to the background.
Whatever integrates coati (a menu bar app, a service manager) posts those
events here; capture sessions and pipeline runs subscribe to them.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SignalCallback = Callable[..., None]


class HostSignal(str, Enum):
    INTERRUPTION_BEGAN = "interruption_began"
    INTERRUPTION_ENDED = "interruption_ended"
    BACKGROUNDED = "backgrounded"
    FOREGROUNDED = "foregrounded"
    ROUTE_CHANGED = "route_changed"


class ExtendedExecution:
    """A grant to keep working for ``grace_period`` seconds in the background."""

    def __init__(
        self,
        name: str,
        grace_period: float,
        on_expire: Optional[Callable[[], None]] = None,
        on_release: Optional[Callable[["ExtendedExecution"], None]] = None,
    ) -> None:
        self.name = name
        self.grace_period = grace_period
        self.started_at = time.monotonic()
        self._on_expire = on_expire
        self._on_release = on_release
        self._lock = threading.Lock()
        self._active = True
        self.expired = False
        self._timer: Any = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            timer = threading.Timer(grace_period, self._expire)
            timer.daemon = True
            timer.start()
            self._timer = timer
        else:
            self._timer = loop.call_later(grace_period, self._expire)

    @property
    def active(self) -> bool:
        return self._active

    def release(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._timer.cancel()
        logger.debug("Released extended execution %r", self.name)
        if self._on_release is not None:
            self._on_release(self)

    def _expire(self) -> None:
        with self._lock:
            if not self._active:
                return
            self.expired = True
        logger.warning("Extended execution %r expired after %.0fs", self.name, self.grace_period)
        if self._on_expire is not None:
            try:
                self._on_expire()
            except Exception:  # noqa: BLE001 - expiry handlers must not break the timer
                logger.exception("Expiry handler for %r failed", self.name)
        self.release()


class HostEnvironment:
    """In-process hub for host signals and extended execution tokens."""

    def __init__(self) -> None:
        self._subscribers: Dict[HostSignal, List[SignalCallback]] = {signal: [] for signal in HostSignal}
        self._tokens: List[ExtendedExecution] = []
        self._lock = threading.Lock()

    def subscribe(self, signal: HostSignal, callback: SignalCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers[signal].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[signal]:
                    self._subscribers[signal].remove(callback)

        return unsubscribe

    def post(self, signal: HostSignal, **info: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers[signal])
        logger.debug("Host signal %s (%d subscribers) %s", signal.value, len(callbacks), info)
        for callback in callbacks:
            callback(**info)

    def begin_extended_execution(
        self,
        name: str,
        grace_period: float,
        on_expire: Optional[Callable[[], None]] = None,
    ) -> ExtendedExecution:
        token = ExtendedExecution(name, grace_period, on_expire=on_expire, on_release=self._forget)
        with self._lock:
            self._tokens.append(token)
        logger.debug("Granted extended execution %r for %.0fs", name, grace_period)
        return token

    @property
    def active_tokens(self) -> List[ExtendedExecution]:
        with self._lock:
            return [token for token in self._tokens if token.active]

    def _forget(self, token: ExtendedExecution) -> None:
        with self._lock:
            if token in self._tokens:
                self._tokens.remove(token)
