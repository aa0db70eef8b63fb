"""Tests for designlab.core.state_machine - generation request transitions."""

from __future__ import annotations

import pytest

from designlab.core.errors import InvalidTransitionError
from designlab.core.models import GenerationStatus
from designlab.core.state_machine import (
    PROGRESS_BY_EVENT,
    GenerationEvent,
    is_cancellable,
    is_terminal,
    next_progress,
    transition,
)


class TestTransitions:
    """Test the transition table."""

    def test_start_moves_pending_to_processing(self):
        assert transition(GenerationStatus.PENDING, GenerationEvent.STARTED) == "processing"

    @pytest.mark.parametrize(
        "event",
        [
            GenerationEvent.PROVIDER_ACCEPTED,
            GenerationEvent.BASE_IMAGE_RESOLVED,
            GenerationEvent.PROVIDER_RETURNED,
        ],
    )
    def test_progress_events_stay_processing(self, event):
        assert transition(GenerationStatus.PROCESSING, event) == GenerationStatus.PROCESSING

    def test_compositing_attempted_completes(self):
        result = transition(GenerationStatus.PROCESSING, GenerationEvent.COMPOSITING_ATTEMPTED)
        assert result == GenerationStatus.COMPLETED

    @pytest.mark.parametrize("status", [GenerationStatus.PENDING, GenerationStatus.PROCESSING])
    def test_active_requests_can_fail_or_cancel(self, status):
        assert transition(status, GenerationEvent.FAILED) == GenerationStatus.FAILED
        assert transition(status, GenerationEvent.CANCELLED) == GenerationStatus.CANCELLED

    @pytest.mark.parametrize(
        "status",
        [GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.CANCELLED],
    )
    @pytest.mark.parametrize("event", list(GenerationEvent))
    def test_terminal_states_accept_nothing(self, status, event):
        with pytest.raises(InvalidTransitionError):
            transition(status, event)

    def test_cannot_skip_start(self):
        with pytest.raises(InvalidTransitionError, match="pending"):
            transition(GenerationStatus.PENDING, GenerationEvent.PROVIDER_RETURNED)

    def test_accepts_plain_strings(self):
        assert transition("pending", "started") == GenerationStatus.PROCESSING


class TestProgress:
    def test_progress_values(self):
        assert PROGRESS_BY_EVENT[GenerationEvent.STARTED] == 0
        assert PROGRESS_BY_EVENT[GenerationEvent.PROVIDER_ACCEPTED] == 10
        assert PROGRESS_BY_EVENT[GenerationEvent.BASE_IMAGE_RESOLVED] == 30
        assert PROGRESS_BY_EVENT[GenerationEvent.PROVIDER_RETURNED] == 80
        assert PROGRESS_BY_EVENT[GenerationEvent.COMPOSITING_ATTEMPTED] == 100

    def test_progress_never_decreases(self):
        assert next_progress(80, GenerationEvent.PROVIDER_ACCEPTED) == 80

    def test_failure_keeps_progress(self):
        assert next_progress(30, GenerationEvent.FAILED) == 30

    def test_base_generation_sequence_is_monotonic(self):
        progress = 0
        seen = []
        for event in (
            GenerationEvent.STARTED,
            GenerationEvent.PROVIDER_ACCEPTED,
            GenerationEvent.PROVIDER_RETURNED,
            GenerationEvent.COMPOSITING_ATTEMPTED,
        ):
            progress = next_progress(progress, event)
            seen.append(progress)
        assert seen == [0, 10, 80, 100]


class TestPredicates:
    def test_terminal(self):
        assert is_terminal(GenerationStatus.COMPLETED)
        assert is_terminal("cancelled")
        assert not is_terminal(GenerationStatus.PROCESSING)

    def test_cancellable(self):
        assert is_cancellable(GenerationStatus.PENDING)
        assert is_cancellable(GenerationStatus.PROCESSING)
        assert not is_cancellable(GenerationStatus.FAILED)
