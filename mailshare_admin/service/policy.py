"""Inactivity threshold providers for the request gate."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

SHORT_INACTIVITY_THRESHOLD = timedelta(hours=24)
LONG_INACTIVITY_THRESHOLD = timedelta(days=30)


@dataclass(frozen=True)
class InactivityThreshold:
    duration: timedelta
    label: str


SHORT_THRESHOLD = InactivityThreshold(SHORT_INACTIVITY_THRESHOLD, "24 hours")
LONG_THRESHOLD = InactivityThreshold(LONG_INACTIVITY_THRESHOLD, "30 days")


def threshold_for(short_session_timeout: bool) -> InactivityThreshold:
    return SHORT_THRESHOLD if short_session_timeout else LONG_THRESHOLD


class InactivityPolicy(Protocol):
    def current_threshold(self) -> InactivityThreshold: ...


class StoreInactivityPolicy:
    """Reads ``short_session_timeout`` from the system settings on every call.

    Operators can flip the flag at runtime and the next request picks it up.
    """

    def __init__(self, store) -> None:
        self.store = store

    def current_threshold(self) -> InactivityThreshold:
        return threshold_for(self.store.get_system_settings().short_session_timeout)


class StaticInactivityPolicy:
    def __init__(
        self,
        *,
        short_session_timeout: bool = False,
        threshold: Optional[InactivityThreshold] = None,
    ) -> None:
        self.short_session_timeout = short_session_timeout
        self._threshold = threshold

    def current_threshold(self) -> InactivityThreshold:
        if self._threshold is not None:
            return self._threshold
        return threshold_for(self.short_session_timeout)
