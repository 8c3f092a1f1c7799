from __future__ import annotations

from typing import Protocol, Sequence

from trackrelay.models import Occurrence


class OccurrenceListener(Protocol):
    """Receives batches of occurrences from a provider."""

    def on_occurrences(self, occurrences: Sequence[Occurrence]) -> None: ...


class OccurrenceSource(Protocol):
    """Small internal provider interface used by the delivery controller."""

    def subscribe(self, listener: OccurrenceListener) -> None: ...

    def unsubscribe(self) -> None: ...
