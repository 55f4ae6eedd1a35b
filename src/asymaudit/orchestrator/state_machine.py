"""State machine validation for the audit run lifecycle.

Run status only moves forward: ``pending -> collecting -> analyzing ->
complete``, with ``failed`` reachable from ``collecting`` or ``analyzing``.
Same-state transitions are accepted so an interrupted attempt can resume
without rewriting history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from .exceptions import InvalidStateTransitionError
from .models import RunStatus


logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[RunStatus, Set[RunStatus]] = {
    RunStatus.PENDING: {
        RunStatus.COLLECTING,  # Worker picked the run up
    },
    RunStatus.COLLECTING: {
        RunStatus.ANALYZING,  # Raw data and snapshots stored
        RunStatus.FAILED,  # Collection exhausted its retries
    },
    RunStatus.ANALYZING: {
        RunStatus.COMPLETE,
        RunStatus.FAILED,
    },
    RunStatus.COMPLETE: set(),
    RunStatus.FAILED: set(),
}


@dataclass
class RunTransition:
    """Records a run status transition attempt."""

    run_id: str
    from_status: RunStatus
    to_status: RunStatus
    timestamp: datetime
    reason: Optional[str] = None

    def is_valid(self) -> bool:
        return self.to_status in VALID_TRANSITIONS.get(self.from_status, set())

    def is_idempotent(self) -> bool:
        return self.from_status == self.to_status


@dataclass
class RunStateMachine:
    """Validates run transitions and keeps a bounded transition history."""

    history_limit: int = 500
    _history: List[RunTransition] = field(default_factory=list)

    def validate_transition(
        self,
        run_id: str,
        from_status: RunStatus,
        to_status: RunStatus,
        *,
        reason: Optional[str] = None,
    ) -> RunTransition:
        """Validate a transition before it is written.

        Args:
            run_id: Audit run identifier
            from_status: Currently persisted status
            to_status: Requested status
            reason: Optional free-form reason for the audit trail

        Returns:
            The recorded RunTransition

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        transition = RunTransition(
            run_id=run_id,
            from_status=from_status,
            to_status=to_status,
            timestamp=datetime.now(timezone.utc),
            reason=reason,
        )
        if transition.is_idempotent() and not from_status.is_terminal:
            logger.debug(
                "Idempotent run transition",
                extra={"run_id": run_id, "status": from_status.value},
            )
        elif not transition.is_valid():
            logger.error(
                "Invalid run transition",
                extra={
                    "run_id": run_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidStateTransitionError(
                f"Invalid transition: {from_status.value} → {to_status.value}"
            )

        self._history.append(transition)
        if len(self._history) > self.history_limit:
            del self._history[: len(self._history) - self.history_limit]
        return transition

    def history(self, run_id: Optional[str] = None) -> List[RunTransition]:
        if run_id is None:
            return list(self._history)
        return [t for t in self._history if t.run_id == run_id]
