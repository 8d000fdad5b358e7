from __future__ import annotations

from typing import Literal

from app.crm.errors import StateError, ValidationError
from app.metrics import observe_rejected_mutation


Stage = Literal["prospecting", "qualification", "proposal", "negotiation", "closed-won", "closed-lost"]

PROSPECTING = "prospecting"
QUALIFICATION = "qualification"
PROPOSAL = "proposal"
NEGOTIATION = "negotiation"
CLOSED_WON = "closed-won"
CLOSED_LOST = "closed-lost"

# Display order only; any open stage may move to any other stage.
STAGE_ORDER: tuple[str, ...] = (PROSPECTING, QUALIFICATION, PROPOSAL, NEGOTIATION, CLOSED_WON, CLOSED_LOST)
TERMINAL_STAGES: frozenset[str] = frozenset({CLOSED_WON, CLOSED_LOST})

CLOSED_MESSAGE = "read-only: opportunity closed"


def stage_position(stage: str) -> int:
    return STAGE_ORDER.index(validate_stage(stage)) + 1


def is_terminal(stage: str) -> bool:
    return stage in TERMINAL_STAGES


def validate_stage(stage: str) -> str:
    if stage not in STAGE_ORDER:
        raise ValidationError("stage", f"unknown stage '{stage}', expected one of {', '.join(STAGE_ORDER)}")
    return stage


def validate_transition(current: str, target: str, reason: str | None) -> str:
    """Check a stage change and return the cleaned reason.

    Closed source stages are checked first, then same-stage moves, then the
    reason, so each failure carries a distinct code.
    """
    validate_stage(target)
    if is_terminal(current):
        observe_rejected_mutation("stage_change_closed")
        raise StateError("cannot change stage of closed opportunity", code="opportunity_closed")
    if target == current:
        observe_rejected_mutation("same_stage")
        raise StateError(f"opportunity is already in stage '{current}'", code="same_stage")
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("reason", "a reason is required to change stage")
    return cleaned


def ensure_open(stage: str, operation: str) -> None:
    if is_terminal(stage):
        observe_rejected_mutation(operation)
        raise StateError(CLOSED_MESSAGE, code="opportunity_closed", details={"operation": operation, "stage": stage})


def stage_change_subject(from_stage: str | None, to_stage: str) -> str:
    if from_stage is None:
        return f"Stage set to {to_stage}"
    return f"Stage changed from {from_stage} to {to_stage}"
