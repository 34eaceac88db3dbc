"""Deal pipeline - score, resolve stage and run automation for one deal.

Each entry point reads the deal, computes its new state, writes it back in a
single update and then hands the before/after snapshots to task automation.
Task failures are reported in the result and never undo the deal update.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from src.models.activity import Activity
from src.models.deal import Deal, DealMetadata, DealStage, DealStatus, StageChange
from src.services.cache import TTLCache
from src.services.crm_dashboard import DASHBOARD_CACHE_PREFIX
from src.services.engagement_scorer import (
    EngagementResult,
    ScoringConfig,
    compute_engagement,
    engagement_columns,
)
from src.services.pipeline_stage import (
    apply_agent_transition,
    apply_status_change,
    build_evidence,
    resolve_stage,
)
from src.services.supabase_client import get_activities_for_deal, get_deal, update_deal
from src.services.task_automation import (
    AutomationOutcome,
    DealSnapshot,
    default_rules,
    evaluate_rules,
    execute_intents,
)
from src.utils.config import CRMConfig
from src.utils.dates import utc_now
from src.utils.errors import NotFoundError
from src.utils.logging import get_structured_logger, get_correlation_id, log_timing

logger = get_structured_logger(__name__)


class DealUpdateResult(BaseModel):
    """What one pipeline pass did to a deal."""
    deal_id: str
    previous_stage: DealStage
    stage: DealStage
    status: DealStatus
    engagement: Optional[EngagementResult] = None
    tasks_created: list[dict] = Field(default_factory=list)
    tasks_skipped: list[str] = Field(default_factory=list)
    tasks_failed: list[str] = Field(default_factory=list)

    @property
    def stage_changed(self) -> bool:
        return self.previous_stage != self.stage

    def to_response(self) -> dict:
        data = self.model_dump(mode="json")
        data["stage_changed"] = self.stage_changed
        return data


def snapshot(deal: Deal, stage: Optional[DealStage] = None, result: Optional[EngagementResult] = None) -> DealSnapshot:
    return DealSnapshot(
        deal_id=deal.id,
        stage=stage or deal.deal_stage,
        score=result.score if result else deal.engagement_score,
        temperature=result.temperature if result else deal.temperature,
        agent_id=deal.agent_id,
        client_id=deal.client_id,
    )


async def load_deal(deal_id: str) -> Deal:
    row = await get_deal(deal_id)
    if row is None:
        raise NotFoundError(f"Deal not found: {deal_id}")
    return Deal(**row)


def _invalidate(cache: Optional[TTLCache]) -> None:
    if cache is None:
        return
    # dashboards are keyed per agent and for the all-agents view
    cache.invalidate_prefix(DASHBOARD_CACHE_PREFIX)


async def _run_automation(
    old: DealSnapshot,
    new: DealSnapshot,
    config: ScoringConfig,
    now: datetime,
) -> AutomationOutcome:
    intents = evaluate_rules(old, new, default_rules(config.hot_threshold), now)
    if not intents:
        return AutomationOutcome()
    return await execute_intents(intents, now)


async def refresh_deal(
    deal_id: str,
    now: Optional[datetime] = None,
    config: Optional[ScoringConfig] = None,
    cache: Optional[TTLCache] = None,
    engaged_threshold: Optional[int] = None,
) -> DealUpdateResult:
    """Recompute score, temperature and stage from the activity log.

    Idempotent: a second call with no new activity writes the same columns
    and creates no tasks. Expired links are still scored but get no new
    automated tasks. ``cache`` only has its dashboard entries invalidated.
    """
    now = now or utc_now()
    config = config or CRMConfig.scoring_config()
    if engaged_threshold is None:
        engaged_threshold = CRMConfig.ENGAGED_THRESHOLD

    correlation_id = get_correlation_id()

    with log_timing("refresh_deal", logger=logger, deal_id=deal_id):
        deal = await load_deal(deal_id)
        rows = await get_activities_for_deal(deal_id)
        activities = [Activity(**row) for row in rows]

        result = compute_engagement(activities, now, config)
        evidence = build_evidence(
            deal.deal_stage.value,
            deal.code,
            activities,
            result.score,
            deal.metadata,
        )
        stage = resolve_stage(evidence, engaged_threshold)

        updates = engagement_columns(result)
        if stage != deal.deal_stage:
            metadata = deal.metadata.model_copy(deep=True)
            metadata.stage_history.append(
                StageChange(from_stage=deal.deal_stage, to_stage=stage, at=now, source="resolver")
            )
            updates["deal_stage"] = stage.value
            updates["metadata"] = metadata.to_storage()
            updates["updated_at"] = now.isoformat()

        await update_deal(deal_id, updates)

    logger.info(
        "Deal refreshed",
        correlation_id=correlation_id,
        deal_id=deal_id,
        score=result.score,
        temperature=result.temperature.value,
        previous_stage=deal.deal_stage.value,
        stage=stage.value
    )

    if deal.is_closed or deal.is_expired(now):
        outcome = AutomationOutcome()
    else:
        outcome = await _run_automation(snapshot(deal), snapshot(deal, stage, result), config, now)

    refreshed = DealUpdateResult(
        deal_id=deal_id,
        previous_stage=deal.deal_stage,
        stage=stage,
        status=deal.deal_status,
        engagement=result,
        tasks_created=outcome.created,
        tasks_skipped=outcome.skipped,
        tasks_failed=outcome.failed,
    )

    _invalidate(cache)
    return refreshed


async def change_deal_stage(
    deal_id: str,
    stage: DealStage,
    confirm_backward: bool = False,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    config: Optional[ScoringConfig] = None,
    cache: Optional[TTLCache] = None,
) -> DealUpdateResult:
    """Apply an agent's explicit stage change, then run automation."""
    now = now or utc_now()
    config = config or CRMConfig.scoring_config()

    deal = await load_deal(deal_id)
    metadata = apply_agent_transition(
        deal.deal_stage,
        stage,
        deal.metadata,
        now,
        confirm_backward=confirm_backward,
        notes=notes,
    )

    await update_deal(deal_id, {
        "deal_stage": stage.value,
        "metadata": metadata.to_storage(),
        "updated_at": now.isoformat(),
    })

    logger.info(
        "Deal stage changed by agent",
        correlation_id=get_correlation_id(),
        deal_id=deal_id,
        previous_stage=deal.deal_stage.value,
        stage=stage.value,
        backward=stage.rank < deal.deal_stage.rank
    )

    outcome = await _run_automation(snapshot(deal), snapshot(deal, stage), config, now)
    _invalidate(cache)

    return DealUpdateResult(
        deal_id=deal_id,
        previous_stage=deal.deal_stage,
        stage=stage,
        status=deal.deal_status,
        tasks_created=outcome.created,
        tasks_skipped=outcome.skipped,
        tasks_failed=outcome.failed,
    )


async def change_deal_status(
    deal_id: str,
    status: DealStatus,
    now: Optional[datetime] = None,
    cache: Optional[TTLCache] = None,
) -> DealUpdateResult:
    """Apply an agent's status change; closing statuses also close the stage."""
    now = now or utc_now()

    deal = await load_deal(deal_id)
    forced = apply_status_change(deal.deal_status, status, deal.deal_stage, deal.metadata)

    updates = {"deal_status": status.value, "updated_at": now.isoformat()}
    stage = deal.deal_stage
    if forced is not None and forced != deal.deal_stage:
        metadata: DealMetadata = deal.metadata.model_copy(deep=True)
        metadata.stage_history.append(
            StageChange(
                from_stage=deal.deal_stage,
                to_stage=forced,
                at=now,
                source="agent",
                notes=f"status changed to {status.value}",
            )
        )
        stage = forced
        updates["deal_stage"] = forced.value
        updates["metadata"] = metadata.to_storage()

    await update_deal(deal_id, updates)

    logger.info(
        "Deal status changed by agent",
        correlation_id=get_correlation_id(),
        deal_id=deal_id,
        previous_status=deal.deal_status.value,
        status=status.value,
        stage=stage.value
    )

    _invalidate(cache)
    return DealUpdateResult(
        deal_id=deal_id,
        previous_stage=deal.deal_stage,
        stage=stage,
        status=status,
    )
