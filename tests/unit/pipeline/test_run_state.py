"""Unit tests for run status transitions."""

import pytest

from ndaflow.core.exceptions import InvalidTransitionError
from ndaflow.pipeline.state import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AnalysisStatus,
    can_transition,
    ensure_transition,
)


class TestStatusTransitions:
    """Test suite for the run state machine."""

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "processing"),
            ("pending", "pending_ocr"),
            ("pending_ocr", "processing"),
            ("processing", "completed"),
            ("processing", "cancelled"),
            ("failed", "pending"),
            ("cancelled", "pending"),
        ],
    )
    def test_allowed_transitions(self, current, target):
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("completed", "pending"),
            ("completed", "processing"),
            ("processing", "pending"),
            ("failed", "processing"),
            ("pending_ocr", "completed"),
            ("cancelled", "completed"),
        ],
    )
    def test_forbidden_transitions(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.current == current
        assert exc_info.value.target == target

    def test_unknown_status_is_rejected(self):
        with pytest.raises(ValueError):
            can_transition("paused", "processing")

    def test_every_status_is_active_or_terminal(self):
        assert ACTIVE_STATUSES | TERMINAL_STATUSES == set(AnalysisStatus)
        assert not ACTIVE_STATUSES & TERMINAL_STATUSES
