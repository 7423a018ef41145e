"""
Scheduling Trigger Evaluator.

Decides whether an agent's run is due and when the next one becomes
eligible. The evaluator is pure: it never reads the clock, so the same
agent state and ``now`` always produce the same answer.
"""

from datetime import datetime
from typing import Optional

from ..models.agent import AgentDefinition, AgentStatus
from .schedule import (
    DEFAULT_SEARCH_HORIZON_DAYS,
    CronSchedule,
    IntervalSchedule,
    parse_schedule,
    resolve_timezone,
)


def _latest(*moments: Optional[datetime]) -> Optional[datetime]:
    present = [m for m in moments if m is not None]
    return max(present) if present else None


class TriggerEvaluator:
    """Computes due-ness and next eligible run times for agents"""

    def __init__(self, horizon_days: int = DEFAULT_SEARCH_HORIZON_DAYS):
        self.horizon_days = horizon_days

    def earliest_eligible(self, agent: AgentDefinition) -> Optional[datetime]:
        """
        The instant from which the agent's next run may start.

        Interval schedules count from the later of the last run and the
        last resume; with neither, the agent is eligible right away.
        Cron schedules wait for the first occurrence not yet consumed by
        a run and not earlier than the latest activation/resume.

        Returns:
            Eligible instant, or None if a cron schedule never fires again
        """
        schedule = parse_schedule(agent.schedule)

        if isinstance(schedule, IntervalSchedule):
            base = _latest(agent.last_run_at, agent.resumed_at)
            if base is None:
                return agent.activated_at or agent.created_at
            return base + schedule.interval

        return self._earliest_cron(agent, schedule)

    def _earliest_cron(
        self,
        agent: AgentDefinition,
        schedule: CronSchedule,
    ) -> Optional[datetime]:
        tz = resolve_timezone(agent.timezone)
        anchor = agent.resumed_at or agent.activated_at or agent.created_at

        candidate = schedule.next_at_or_after(anchor, tz, self.horizon_days)
        if candidate is None:
            return None

        if agent.last_run_at is not None:
            unconsumed = schedule.next_after(agent.last_run_at, tz, self.horizon_days)
            if unconsumed is None:
                return None
            candidate = max(candidate, unconsumed)
        return candidate

    def is_due(self, agent: AgentDefinition, now: datetime) -> bool:
        """Whether an ACTIVE agent should start a run at ``now``"""
        if agent.status != AgentStatus.ACTIVE:
            return False
        eligible = self.earliest_eligible(agent)
        return eligible is not None and now >= eligible

    def next_run_after(self, agent: AgentDefinition, from_: datetime) -> Optional[datetime]:
        """
        Next eligible run time at or after ``from_``.

        Monotonic in ``from_`` for an unchanged schedule. Status is not
        consulted, so the result can be shown for paused agents too.
        """
        eligible = self.earliest_eligible(agent)
        if eligible is None:
            return None
        return max(eligible, from_)
