"""Deal pipeline stage resolution and agent-driven stage/status changes.

The resolver only ever moves a deal forward. Moving backward, and closing,
are agent decisions made through ``apply_agent_transition`` and
``apply_status_change``.
"""

from datetime import datetime
from typing import Iterable, Optional
from pydantic import BaseModel, Field

from src.models.activity import Activity, ActionKind
from src.models.deal import (
    CLOSING_STATUSES,
    STAGE_ORDER,
    DealMetadata,
    DealStage,
    DealStatus,
    StageChange,
)
from src.utils.errors import StageTransitionError

DEFAULT_ENGAGED_THRESHOLD = 40

STAGE_TRANSITIONS: dict[DealStage, tuple[DealStage, ...]] = {
    DealStage.CREATED: (DealStage.SHARED, DealStage.ACCESSED),
    DealStage.SHARED: (DealStage.ACCESSED, DealStage.ENGAGED),
    DealStage.ACCESSED: (DealStage.ENGAGED, DealStage.QUALIFIED),
    DealStage.ENGAGED: (DealStage.QUALIFIED, DealStage.ADVANCED, DealStage.SHARED),
    DealStage.QUALIFIED: (DealStage.ADVANCED, DealStage.CLOSED, DealStage.ENGAGED),
    DealStage.ADVANCED: (DealStage.CLOSED, DealStage.QUALIFIED),
    DealStage.CLOSED: (),
}

STATUS_TRANSITIONS: dict[DealStatus, tuple[DealStatus, ...]] = {
    DealStatus.ACTIVE: (DealStatus.QUALIFIED, DealStatus.NURTURING, DealStatus.CLOSED_LOST),
    DealStatus.QUALIFIED: (DealStatus.NURTURING, DealStatus.CLOSED_WON, DealStatus.CLOSED_LOST),
    DealStatus.NURTURING: (DealStatus.QUALIFIED, DealStatus.CLOSED_WON, DealStatus.CLOSED_LOST),
    DealStatus.CLOSED_WON: (),
    DealStatus.CLOSED_LOST: (DealStatus.ACTIVE,),
}

STAGE_REQUIREMENTS: dict[DealStage, tuple[str, ...]] = {
    DealStage.CREATED: ("Property collection prepared", "Link generated"),
    DealStage.SHARED: ("Link shared with client",),
    DealStage.ACCESSED: ("Client opened the link", "Properties viewed"),
    DealStage.ENGAGED: ("Engagement score at or above the engaged threshold",),
    DealStage.QUALIFIED: ("Agent confirmed client qualification",),
    DealStage.ADVANCED: ("Agent confirmed showing or offer interest",),
    DealStage.CLOSED: ("Deal closed by the agent",),
}


class StageEvidence(BaseModel):
    """Everything the resolver looks at for one deal."""
    current_stage: Optional[str] = None
    has_share_code: bool = False
    action_kinds: set[str] = Field(default_factory=set)
    engagement_score: int = 0
    agent_confirmed_stage: Optional[DealStage] = None
    # set after an agent moved the deal back and no activity has arrived since
    paused: bool = False


def _max_stage(*stages: DealStage) -> DealStage:
    return max(stages, key=lambda s: s.rank)


def entry_satisfied(stage: DealStage, evidence: StageEvidence, engaged_threshold: int) -> bool:
    """Whether the automatic entry condition for ``stage`` holds."""
    confirmed = evidence.agent_confirmed_stage
    if stage == DealStage.CREATED:
        return True
    if stage == DealStage.SHARED:
        return evidence.has_share_code
    if stage == DealStage.ACCESSED:
        # session_start counts too: the link page reports session_started on load, before any view
        return bool(evidence.action_kinds & {ActionKind.VIEW.value, ActionKind.SESSION_START.value})
    if stage == DealStage.ENGAGED:
        return evidence.engagement_score >= engaged_threshold
    if stage in (DealStage.QUALIFIED, DealStage.ADVANCED):
        return confirmed is not None and confirmed != DealStage.CLOSED and confirmed.rank >= stage.rank
    return False


def resolve_stage(evidence: StageEvidence, engaged_threshold: int = DEFAULT_ENGAGED_THRESHOLD) -> DealStage:
    """Highest automatically reachable stage, never below the current one."""
    current = DealStage.coerce(evidence.current_stage)
    if current == DealStage.CLOSED or evidence.paused:
        return current

    reached = DealStage.CREATED
    for stage in STAGE_ORDER:
        if stage == DealStage.CLOSED:
            break
        if entry_satisfied(stage, evidence, engaged_threshold):
            reached = stage

    return _max_stage(current, reached)


def build_evidence(
    current_stage: Optional[str],
    share_code: Optional[str],
    activities: Iterable[Activity],
    engagement_score: int,
    metadata: Optional[DealMetadata] = None,
) -> StageEvidence:
    activities = list(activities)
    paused = False
    regressed_at = metadata.last_regression_at() if metadata else None
    if regressed_at is not None:
        paused = not any(a.created_at > regressed_at for a in activities)

    return StageEvidence(
        current_stage=current_stage,
        has_share_code=bool(share_code),
        action_kinds={a.action for a in activities},
        engagement_score=engagement_score,
        agent_confirmed_stage=metadata.agent_confirmed_stage if metadata else None,
        paused=paused,
    )


def next_suggested_stage(current: DealStage) -> Optional[DealStage]:
    """The next stage forward, for UI hints; None at the end of the pipeline."""
    if current == DealStage.CLOSED:
        return None
    return STAGE_ORDER[current.rank + 1]


def apply_agent_transition(
    current: DealStage,
    target: DealStage,
    metadata: DealMetadata,
    now: datetime,
    confirm_backward: bool = False,
    notes: Optional[str] = None,
) -> DealMetadata:
    """Validate an agent's stage change and return the updated metadata.

    The returned metadata records the change in ``stage_history`` and moves
    ``agent_confirmed_stage`` so the resolver honours the agent's decision in
    both directions.
    """
    if current == target:
        raise StageTransitionError(
            f"Deal is already in stage {current.value}",
            {"currentStage": current.value, "attemptedStage": target.value},
        )

    details = {"currentStage": current.value, "attemptedStage": target.value}
    if current == DealStage.CLOSED:
        raise StageTransitionError("Cannot change stage of closed deals", details)

    # the table only bounds forward jumps; any earlier stage is reachable once confirmed
    backward = target.rank < current.rank
    if not backward and target not in STAGE_TRANSITIONS[current]:
        raise StageTransitionError("Stage progression must follow sequential progression", details)

    if backward and not confirm_backward:
        raise StageTransitionError(
            "Backward stage transitions require explicit confirmation",
            {**details, "requiresConfirmation": True},
        )

    updated = metadata.model_copy(deep=True)
    confirmed = updated.agent_confirmed_stage
    if backward:
        if confirmed is not None and confirmed.rank > target.rank:
            updated.agent_confirmed_stage = target
    elif confirmed is None or target.rank > confirmed.rank:
        updated.agent_confirmed_stage = target

    updated.stage_history.append(
        StageChange(from_stage=current, to_stage=target, at=now, source="agent", notes=notes)
    )
    return updated


def stage_before_close(metadata: DealMetadata) -> DealStage:
    """Stage a deal held before it was last closed; CREATED when unknown."""
    for change in reversed(metadata.stage_history):
        if change.to_stage == DealStage.CLOSED:
            return change.from_stage
    return DealStage.CREATED


def apply_status_change(
    current: DealStatus,
    target: DealStatus,
    current_stage: DealStage,
    metadata: DealMetadata,
) -> Optional[DealStage]:
    """Validate a status change; returns the stage it forces, if any.

    Closing statuses force CLOSED. Reopening a closed-lost deal puts it back
    in the stage it held before it was closed. Any other status change on a
    deal in the closed stage is rejected.
    """
    if current == target:
        return None
    if target not in STATUS_TRANSITIONS[current]:
        raise StageTransitionError(
            f"Invalid status change from {current.value} to {target.value}",
            {"currentStatus": current.value, "attemptedStatus": target.value},
        )
    if target in CLOSING_STATUSES:
        return DealStage.CLOSED if current_stage != DealStage.CLOSED else None
    if current_stage != DealStage.CLOSED:
        return None
    if current == DealStatus.CLOSED_LOST and target == DealStatus.ACTIVE:
        return stage_before_close(metadata)
    raise StageTransitionError(
        "Cannot change status of closed deals",
        {"currentStatus": current.value, "attemptedStatus": target.value, "currentStage": current_stage.value},
    )
