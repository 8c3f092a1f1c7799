from .base import OccurrenceListener, OccurrenceSource
from .mock import MockLocationSource

__all__ = [
    "MockLocationSource",
    "OccurrenceListener",
    "OccurrenceSource",
]
