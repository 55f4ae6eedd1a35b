"""Tests for audit run lifecycle validation."""

import pytest

from asymaudit.orchestrator.exceptions import InvalidStateTransitionError
from asymaudit.orchestrator.models import RunStatus
from asymaudit.orchestrator.state_machine import VALID_TRANSITIONS, RunStateMachine


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (RunStatus.PENDING, RunStatus.COLLECTING),
        (RunStatus.COLLECTING, RunStatus.ANALYZING),
        (RunStatus.COLLECTING, RunStatus.FAILED),
        (RunStatus.ANALYZING, RunStatus.COMPLETE),
        (RunStatus.ANALYZING, RunStatus.FAILED),
    ],
)
def test_forward_transitions_are_allowed(from_status, to_status):
    machine = RunStateMachine()

    transition = machine.validate_transition("run-1", from_status, to_status)

    assert transition.is_valid()


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (RunStatus.ANALYZING, RunStatus.COLLECTING),
        (RunStatus.COMPLETE, RunStatus.FAILED),
        (RunStatus.FAILED, RunStatus.PENDING),
        (RunStatus.PENDING, RunStatus.COMPLETE),
        (RunStatus.PENDING, RunStatus.FAILED),
        (RunStatus.COMPLETE, RunStatus.COMPLETE),
    ],
)
def test_backward_and_skipping_transitions_are_rejected(from_status, to_status):
    machine = RunStateMachine()

    with pytest.raises(InvalidStateTransitionError):
        machine.validate_transition("run-1", from_status, to_status)


def test_same_state_is_accepted_for_live_runs():
    machine = RunStateMachine()

    machine.validate_transition("run-1", RunStatus.COLLECTING, RunStatus.COLLECTING)

    assert machine.history("run-1")[0].is_idempotent()


def test_terminal_states_have_no_exits():
    assert VALID_TRANSITIONS[RunStatus.COMPLETE] == set()
    assert VALID_TRANSITIONS[RunStatus.FAILED] == set()


def test_history_is_bounded_and_filterable():
    machine = RunStateMachine(history_limit=3)
    for index in range(5):
        machine.validate_transition(f"run-{index}", RunStatus.PENDING, RunStatus.COLLECTING)

    assert [t.run_id for t in machine.history()] == ["run-2", "run-3", "run-4"]
    assert len(machine.history("run-4")) == 1
    assert machine.history("run-0") == []
