"""Progress events emitted by the pipeline.

The pipeline never renders output itself; callers pass an ``EventSink`` and
decide how to present events. ``log_event`` is the default sink.
"""

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    RESOLUTION_STARTED = "resolution_started"
    RESOLUTION_COMPLETED = "resolution_completed"
    RESOLUTION_WARNING = "resolution_warning"
    DOWNLOAD_STARTED = "download_started"
    DOWNLOAD_COMPLETED = "download_completed"
    DOWNLOAD_FAILED = "download_failed"
    EXTRACTION_STARTED = "extraction_started"
    EXTRACTION_COMPLETED = "extraction_completed"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"


class Event(BaseModel):
    kind: EventKind
    package: str | None = None
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


type EventSink = Callable[[Event], None]


def log_event(event: Event) -> None:
    """Default sink: write events to the ``deblayer.events`` logger."""
    level = logging.INFO
    if event.kind == EventKind.DOWNLOAD_FAILED or event.kind == EventKind.RESOLUTION_WARNING:
        level = logging.WARNING
    elif event.kind in (EventKind.DOWNLOAD_STARTED, EventKind.EXTRACTION_STARTED):
        level = logging.DEBUG

    subject = f"{event.package}: " if event.package else ""
    logger.log(level, f"[{event.kind.value}] {subject}{event.message}")


def null_sink(event: Event) -> None:
    pass
