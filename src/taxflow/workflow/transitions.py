"""Legal filing workflow transitions.

The table is an immutable tuple of rules; self-loops on ``filed`` model the
GSTR-3B sub-steps, which append audit rows and publish events without
changing the coarse status.
"""

from dataclasses import dataclass
from types import MappingProxyType

from taxflow.models.enums import FilingStepType as Step
from taxflow.models.enums import StepStatus
from taxflow.models.enums import WorkflowStatus as Status


@dataclass(frozen=True)
class TransitionRule:
    from_status: Status
    to_status: Status
    step: Step


TRANSITION_TABLE: tuple[TransitionRule, ...] = (
    TransitionRule(Status.DRAFT, Status.PREPARED, Step.GSTR1_PREPARE),
    TransitionRule(Status.PREPARED, Status.VALIDATED, Step.GSTR1_VALIDATE),
    TransitionRule(Status.VALIDATED, Status.FILED, Step.GSTR1_FILE),
    TransitionRule(Status.FILED, Status.FILED, Step.GSTR3B_PREPARE),
    TransitionRule(Status.FILED, Status.FILED, Step.GSTR3B_VALIDATE),
    TransitionRule(Status.FILED, Status.FILED, Step.GSTR3B_FILE),
    TransitionRule(Status.FILED, Status.AMENDMENT, Step.AMENDMENT),
    TransitionRule(Status.AMENDMENT, Status.FILED, Step.AMENDMENT),
    TransitionRule(Status.FILED, Status.LOCKED, Step.LOCK_MONTH),
    TransitionRule(Status.LOCKED, Status.FILED, Step.UNLOCK_MONTH),
    TransitionRule(Status.LOCKED, Status.ARCHIVED, Step.ARCHIVE),
)

_LEGAL = frozenset((r.from_status, r.to_status, r.step) for r in TRANSITION_TABLE)
_LEGAL_PAIRS = frozenset((r.from_status, r.to_status) for r in TRANSITION_TABLE)

STEP_TITLES = MappingProxyType({
    Step.GSTR1_PREPARE: "Prepare GSTR-1",
    Step.GSTR1_VALIDATE: "Validate GSTR-1",
    Step.GSTR1_FILE: "File GSTR-1",
    Step.GSTR3B_PREPARE: "Prepare GSTR-3B",
    Step.GSTR3B_VALIDATE: "Validate GSTR-3B",
    Step.GSTR3B_FILE: "File GSTR-3B",
    Step.AMENDMENT: "Amendment",
    Step.LOCK_MONTH: "Lock Month",
    Step.UNLOCK_MONTH: "Unlock Month",
    Step.ARCHIVE: "Archive",
})

STEP_DESCRIPTIONS = MappingProxyType({
    Step.GSTR1_PREPARE: "Preparing GSTR-1 with sales invoice details",
    Step.GSTR1_VALIDATE: "Validating GSTR-1 data before filing",
    Step.GSTR1_FILE: "Filing GSTR-1 with GST authorities",
    Step.GSTR3B_PREPARE: "Preparing GSTR-3B with tax liability",
    Step.GSTR3B_VALIDATE: "Validating GSTR-3B calculation",
    Step.GSTR3B_FILE: "Filing GSTR-3B with GST authorities",
    Step.AMENDMENT: "Filing amendment for corrections",
    Step.LOCK_MONTH: "Locking month to prevent further modifications",
    Step.UNLOCK_MONTH: "Unlocking month for amendments",
    Step.ARCHIVE: "Archiving locked filing period",
})

# Steps that finish their unit of work in the same transition
_COMPLETING_STEPS = frozenset({
    Step.GSTR1_FILE,
    Step.GSTR3B_FILE,
    Step.LOCK_MONTH,
    Step.UNLOCK_MONTH,
    Step.ARCHIVE,
})


def _coerce(from_status, to_status, step):
    try:
        return (
            Status(from_status),
            Status(to_status),
            Step(step) if step is not None else None,
        )
    except ValueError:
        return None


def can_transition(from_status: str, to_status: str, step: str | None = None) -> bool:
    """Return True if the triple is in the table.

    Without a step, any rule for the (from, to) pair matches. Unknown statuses
    or step kinds are never legal.
    """
    coerced = _coerce(from_status, to_status, step)
    if coerced is None:
        return False
    frm, to, stp = coerced
    if stp is None:
        return (frm, to) in _LEGAL_PAIRS
    return (frm, to, stp) in _LEGAL


def next_steps(status: str) -> list[Step]:
    """Step kinds legal from ``status``, in table order."""
    try:
        current = Status(status)
    except ValueError:
        return []
    return [r.step for r in TRANSITION_TABLE if r.from_status == current]


def initial_step_status(to_status: str, step: str) -> StepStatus:
    """Status an audit row starts in; returning from amendment closes the amendment."""
    if Step(step) in _COMPLETING_STEPS:
        return StepStatus.COMPLETED
    if Step(step) == Step.AMENDMENT and Status(to_status) == Status.FILED:
        return StepStatus.COMPLETED
    return StepStatus.IN_PROGRESS
