"""Task automation rules.

Rule evaluation is a pure function of the deal before and after an update;
it returns task intents. ``execute_intents`` is the only part that writes,
and it never raises: a failed task is reported, the deal update stands.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, NamedTuple, Optional
from pydantic import BaseModel, Field
from ulid import ULID

from src.models.deal import DealStage, Temperature
from src.models.task import AutomationTrigger, TaskPriority, TaskStatus, TaskType
from src.services.supabase_client import create_task, get_automated_tasks_for_deal
from src.utils.logging import get_structured_logger, get_correlation_id

logger = get_structured_logger(__name__)


class DealSnapshot(NamedTuple):
    """The fields rules look at, taken before or after an update."""
    deal_id: str
    stage: DealStage
    score: int
    temperature: Temperature
    agent_id: Optional[str] = None
    client_id: Optional[str] = None


@dataclass(frozen=True)
class TaskTemplate:
    type: TaskType
    title: str
    description: str
    priority: TaskPriority
    due_in: timedelta


@dataclass(frozen=True)
class AutomationRule:
    trigger: str
    description: str
    condition: Callable[[Optional[DealSnapshot], DealSnapshot], bool]
    template: TaskTemplate


class TaskIntent(BaseModel):
    """A task a rule wants created. Not persisted yet."""
    deal_id: str
    trigger: str
    type: TaskType
    title: str
    description: str
    priority: TaskPriority
    due_date: datetime
    agent_id: Optional[str] = None
    client_id: Optional[str] = None
    score: int = 0

    def to_row(self, now: datetime) -> dict:
        trigger = AutomationTrigger(
            trigger=self.trigger,
            generated_at=now,
            description=self.description,
            score=self.score,
        )
        return {
            "id": str(ULID()),
            "deal_id": self.deal_id,
            "agent_id": self.agent_id,
            "client_id": self.client_id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": TaskStatus.PENDING.value,
            "due_date": self.due_date.isoformat(),
            "is_automated": True,
            "automation_trigger": trigger.to_storage(),
        }


class AutomationOutcome(BaseModel):
    created: list[dict] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


def crossed_score(threshold: int) -> Callable[[Optional[DealSnapshot], DealSnapshot], bool]:
    """Score moved from below threshold to at or above it."""
    def condition(old: Optional[DealSnapshot], new: DealSnapshot) -> bool:
        before = old.score if old else 0
        return before < threshold <= new.score
    return condition


def entered_stage(stage: DealStage) -> Callable[[Optional[DealSnapshot], DealSnapshot], bool]:
    """Deal moved into (or past) stage during this update."""
    def condition(old: Optional[DealSnapshot], new: DealSnapshot) -> bool:
        before = old.stage if old else DealStage.CREATED
        return before.rank < stage.rank <= new.stage.rank and new.stage != DealStage.CLOSED
    return condition


def warmed_up(old: Optional[DealSnapshot], new: DealSnapshot) -> bool:
    before = old.temperature if old else Temperature.COLD
    return before == Temperature.COLD and new.temperature == Temperature.WARM


def default_rules(hot_threshold: int = 70) -> list[AutomationRule]:
    return [
        AutomationRule(
            trigger="hot_lead",
            description=f"Engagement score reached {hot_threshold}",
            condition=crossed_score(hot_threshold),
            template=TaskTemplate(
                type=TaskType.CALL,
                title="Hot lead: call now",
                description="High engagement detected. Client shows strong interest.",
                priority=TaskPriority.URGENT,
                due_in=timedelta(hours=1),
            ),
        ),
        AutomationRule(
            trigger="warm_lead",
            description="Lead warmed up from cold",
            condition=warmed_up,
            template=TaskTemplate(
                type=TaskType.FOLLOW_UP,
                title="Warm lead: follow up within 24 hours",
                description="Moderate engagement detected. Schedule a follow-up.",
                priority=TaskPriority.HIGH,
                due_in=timedelta(hours=24),
            ),
        ),
        AutomationRule(
            trigger="link_accessed",
            description="Client opened the shared link",
            condition=entered_stage(DealStage.ACCESSED),
            template=TaskTemplate(
                type=TaskType.FOLLOW_UP,
                title="Client viewed properties: follow up",
                description="Reach out about property preferences and questions.",
                priority=TaskPriority.HIGH,
                due_in=timedelta(hours=2),
            ),
        ),
        AutomationRule(
            trigger="deal_qualified",
            description="Deal entered qualified",
            condition=entered_stage(DealStage.QUALIFIED),
            template=TaskTemplate(
                type=TaskType.SHOWING,
                title="Arrange property showings",
                description="Coordinate viewing times for the properties the client liked.",
                priority=TaskPriority.HIGH,
                due_in=timedelta(hours=48),
            ),
        ),
        AutomationRule(
            trigger="deal_advanced",
            description="Deal entered advanced",
            condition=entered_stage(DealStage.ADVANCED),
            template=TaskTemplate(
                type=TaskType.DOCUMENT,
                title="Prepare offer documentation",
                description="Get paperwork ready for a potential offer.",
                priority=TaskPriority.HIGH,
                due_in=timedelta(hours=24),
            ),
        ),
    ]


def evaluate_rules(
    old: Optional[DealSnapshot],
    new: DealSnapshot,
    rules: Iterable[AutomationRule],
    now: datetime,
) -> list[TaskIntent]:
    """Intents for every rule whose condition holds for this update."""
    intents = []
    for rule in rules:
        if not rule.condition(old, new):
            continue
        template = rule.template
        intents.append(TaskIntent(
            deal_id=new.deal_id,
            trigger=rule.trigger,
            type=template.type,
            title=template.title,
            description=template.description,
            priority=template.priority,
            due_date=now + template.due_in,
            agent_id=new.agent_id,
            client_id=new.client_id,
            score=new.score,
        ))
    return intents


async def existing_triggers(deal_id: str) -> set[str]:
    """Trigger keys of automated tasks already recorded for a deal."""
    rows = await get_automated_tasks_for_deal(deal_id)
    triggers = set()
    for row in rows:
        parsed = AutomationTrigger.from_raw(row.get("automation_trigger"))
        if parsed is not None:
            triggers.add(parsed.trigger)
    return triggers


async def execute_intents(
    intents: list[TaskIntent],
    now: datetime,
    known_triggers: Optional[set[str]] = None,
) -> AutomationOutcome:
    """Persist intents not already created for their deal and trigger."""
    outcome = AutomationOutcome()
    if not intents:
        return outcome

    correlation_id = get_correlation_id()
    seen_by_deal: dict[str, set[str]] = {}

    for intent in intents:
        seen = seen_by_deal.get(intent.deal_id)
        if seen is None:
            if known_triggers is not None:
                seen = set(known_triggers)
            else:
                try:
                    seen = await existing_triggers(intent.deal_id)
                except Exception as e:
                    logger.error(
                        "Could not load existing automated tasks",
                        correlation_id=correlation_id,
                        deal_id=intent.deal_id,
                        error=str(e)
                    )
                    outcome.failed.append(intent.trigger)
                    continue
            seen_by_deal[intent.deal_id] = seen

        if intent.trigger in seen:
            outcome.skipped.append(intent.trigger)
            continue

        try:
            row = await create_task(intent.to_row(now))
        except Exception as e:
            logger.error(
                "Failed to create automated task",
                correlation_id=correlation_id,
                deal_id=intent.deal_id,
                trigger=intent.trigger,
                error=str(e)
            )
            outcome.failed.append(intent.trigger)
            continue

        seen.add(intent.trigger)
        outcome.created.append(row)
        logger.info(
            "Automated task created",
            correlation_id=correlation_id,
            deal_id=intent.deal_id,
            trigger=intent.trigger,
            task_id=row.get("id")
        )

    return outcome
