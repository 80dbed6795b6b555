"""Responsiveness-change events and their subscription plumbing."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from stall_profiler.errors import on_unexpected_error

if TYPE_CHECKING:
    from stall_profiler.session import Target

log = structlog.get_logger()


@dataclass(frozen=True)
class ResponsiveStateChangeEvent:
    """A target became responsive or unresponsive."""

    target: "Target"
    is_responsive: bool


Listener = Callable[[ResponsiveStateChangeEvent], None]


class Subscription:
    """Handle for a registered listener. Disposing it unregisters the listener."""

    def __init__(self, source: "ResponsivenessSource", listener: Listener) -> None:
        self._source = source
        self._listener: Listener | None = listener

    @property
    def disposed(self) -> bool:
        return self._listener is None

    def dispose(self) -> None:
        if self._listener is None:
            return
        self._source._remove(self._listener)
        self._listener = None

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()


class ResponsivenessSource:
    """Delivers responsiveness changes to subscribers, in the order fired."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self, listener)

    def _remove(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def fire(self, event: ResponsiveStateChangeEvent) -> None:
        """Deliver an event to every listener.

        A listener that raises is reported and does not stop delivery to the rest.
        """
        log.debug(
            "responsive_state_changed",
            target=repr(event.target),
            is_responsive=event.is_responsive,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                on_unexpected_error(e)
