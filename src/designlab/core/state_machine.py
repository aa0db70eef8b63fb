"""Generation request state machine.

A generation request moves through::

    pending -> processing -> {completed, failed, cancelled}

The orchestrator never writes a status directly.  It names the *event* that
just happened and asks :func:`transition` for the resulting status, and
:data:`PROGRESS_BY_EVENT` for the progress value that event implies.  This
keeps the transition table in one place and lets tests drive it without a
provider.

Transition table
----------------
==========  =======================  ==========  ==========
From        Event                    To          Progress
==========  =======================  ==========  ==========
pending     started                  processing  0
processing  provider_accepted        processing  10
processing  base_image_resolved      processing  30
processing  provider_returned        processing  80
processing  compositing_attempted    completed   100
pending     failed                   failed      (kept)
processing  failed                   failed      (kept)
pending     cancelled                cancelled   (kept)
processing  cancelled                cancelled   (kept)
==========  =======================  ==========  ==========

``base_image_resolved`` only occurs for typography iterations.  Terminal
states accept no events at all.
"""

from __future__ import annotations

from enum import Enum

from designlab.core.errors import InvalidTransitionError
from designlab.core.models import GenerationStatus


class GenerationEvent(str, Enum):
    STARTED = "started"
    PROVIDER_ACCEPTED = "provider_accepted"
    BASE_IMAGE_RESOLVED = "base_image_resolved"
    PROVIDER_RETURNED = "provider_returned"
    COMPOSITING_ATTEMPTED = "compositing_attempted"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[GenerationStatus] = frozenset(
    {
        GenerationStatus.COMPLETED,
        GenerationStatus.FAILED,
        GenerationStatus.CANCELLED,
    }
)

_ACTIVE = (GenerationStatus.PENDING, GenerationStatus.PROCESSING)

_TRANSITIONS: dict[tuple[GenerationStatus, GenerationEvent], GenerationStatus] = {
    (GenerationStatus.PENDING, GenerationEvent.STARTED): GenerationStatus.PROCESSING,
    (
        GenerationStatus.PROCESSING,
        GenerationEvent.PROVIDER_ACCEPTED,
    ): GenerationStatus.PROCESSING,
    (
        GenerationStatus.PROCESSING,
        GenerationEvent.BASE_IMAGE_RESOLVED,
    ): GenerationStatus.PROCESSING,
    (
        GenerationStatus.PROCESSING,
        GenerationEvent.PROVIDER_RETURNED,
    ): GenerationStatus.PROCESSING,
    (
        GenerationStatus.PROCESSING,
        GenerationEvent.COMPOSITING_ATTEMPTED,
    ): GenerationStatus.COMPLETED,
}
for _status in _ACTIVE:
    _TRANSITIONS[(_status, GenerationEvent.FAILED)] = GenerationStatus.FAILED
    _TRANSITIONS[(_status, GenerationEvent.CANCELLED)] = GenerationStatus.CANCELLED

# Progress implied by each event.  Events absent from this mapping leave the
# progress where it was.
PROGRESS_BY_EVENT: dict[GenerationEvent, int] = {
    GenerationEvent.STARTED: 0,
    GenerationEvent.PROVIDER_ACCEPTED: 10,
    GenerationEvent.BASE_IMAGE_RESOLVED: 30,
    GenerationEvent.PROVIDER_RETURNED: 80,
    GenerationEvent.COMPOSITING_ATTEMPTED: 100,
}


def transition(status: GenerationStatus, event: GenerationEvent) -> GenerationStatus:
    """Return the status reached by applying *event* in *status*.

    Args:
        status: Current request status.
        event: The event that just occurred.

    Returns:
        The resulting status.

    Raises:
        InvalidTransitionError: If *event* is not legal in *status*
            (including any event on a terminal status).
    """
    try:
        return _TRANSITIONS[(GenerationStatus(status), GenerationEvent(event))]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot apply '{GenerationEvent(event).value}' to a request that is "
            f"'{GenerationStatus(status).value}'"
        ) from None


def next_progress(current: int, event: GenerationEvent) -> int:
    """Progress after *event*, never lower than *current*."""
    return max(current, PROGRESS_BY_EVENT.get(event, current))


def is_terminal(status: GenerationStatus) -> bool:
    return GenerationStatus(status) in TERMINAL_STATUSES


def is_cancellable(status: GenerationStatus) -> bool:
    return GenerationStatus(status) in _ACTIVE
