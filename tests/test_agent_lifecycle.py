"""
Tests for the agent lifecycle manager over the in-memory store.

Covers:
- create/get/update/delete with ownership checks
- the status state machine and its rejected edges
- run recording: start, claim, outcome, retries
- concurrent run starts
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from scanagents.core.errors import (
    AgentNotFoundError,
    AgentNotRunnableError,
    AgentValidationError,
    AppError,
    ConcurrentModificationError,
    ErrorCode,
    InvalidTransitionError,
    RunAlreadyFinishedError,
    RunAlreadyInProgressError,
    RunNotFoundError,
    UnknownStrategyError,
)
from scanagents.models.agent import (
    AgentAction,
    AgentRun,
    AgentStatus,
    LogLevel,
    RunOutcome,
    RunTrigger,
)
from scanagents.models.strategy import StrategyDescriptor
from scanagents.services.agent_lifecycle import AgentLifecycleManager
from scanagents.services.strategy_catalog import StrategyCatalog

OWNER_ID = "user-123"
OTHER_OWNER_ID = "user-456"


async def _active_agent(lifecycle, submission, now):
    agent = await lifecycle.create_agent(submission, OWNER_ID, now)
    return await lifecycle.transition(agent.id, AgentAction.ACTIVATE, OWNER_ID, now)


# ======================== Definitions ========================

class TestDefinitions:
    @pytest.mark.asyncio
    async def test_create_stores_draft(self, lifecycle, store, valid_submission, now):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)

        stored = await store.get_agent(agent.id)
        assert stored == agent
        assert stored.status == AgentStatus.DRAFT

        logs = await store.list_logs(agent.id)
        assert [entry.message for entry in logs] == ["Agent 'BTC momentum scanner' created"]

    @pytest.mark.asyncio
    async def test_create_invalid_stores_nothing(self, lifecycle, store, now):
        with pytest.raises(AgentValidationError):
            await lifecycle.create_agent({"name": ""}, OWNER_ID, now)
        assert await store.list_agents() == []

    @pytest.mark.asyncio
    async def test_get_enforces_ownership(self, lifecycle, valid_submission, now):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)

        assert (await lifecycle.get_agent(agent.id, OWNER_ID)).id == agent.id
        with pytest.raises(AgentNotFoundError):
            await lifecycle.get_agent(agent.id, OTHER_OWNER_ID)

    @pytest.mark.asyncio
    async def test_get_missing(self, lifecycle):
        with pytest.raises(AgentNotFoundError) as exc_info:
            await lifecycle.get_agent("nope")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_list_filters_owner_and_status(self, lifecycle, valid_submission, now):
        first = await lifecycle.create_agent(valid_submission, OWNER_ID, now)
        await _active_agent(lifecycle, valid_submission, now + timedelta(seconds=1))
        await lifecycle.create_agent(valid_submission, OTHER_OWNER_ID, now)

        mine = await lifecycle.list_agents(OWNER_ID)
        assert len(mine) == 2
        drafts = await lifecycle.list_agents(OWNER_ID, status=AgentStatus.DRAFT)
        assert [a.id for a in drafts] == [first.id]

    @pytest.mark.asyncio
    async def test_update(self, lifecycle, valid_submission, now):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)
        later = now + timedelta(minutes=1)

        updated = await lifecycle.update_agent(agent.id, OWNER_ID, {"name": "Renamed"}, later)

        assert updated.name == "Renamed"
        assert updated.updated_at == later
        assert (await lifecycle.get_agent(agent.id)).name == "Renamed"

    @pytest.mark.asyncio
    async def test_update_schedule_recomputes_next_run(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        await lifecycle.record_run_start(agent.id, now)

        updated = await lifecycle.update_agent(agent.id, OWNER_ID, {"schedule": "1h"}, now)
        assert updated.next_run_at == now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_update_invalid_leaves_agent(self, lifecycle, valid_submission, now):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)
        with pytest.raises(AgentValidationError):
            await lifecycle.update_agent(agent.id, OWNER_ID, {"symbols": "nope"}, now)
        assert (await lifecycle.get_agent(agent.id)).symbols == agent.symbols

    @pytest.mark.asyncio
    async def test_update_disabled_rejected(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        await lifecycle.transition(agent.id, AgentAction.DISABLE, OWNER_ID, now)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await lifecycle.update_agent(agent.id, OWNER_ID, {"name": "x"}, now)
        assert exc_info.value.action == "edit"

    @pytest.mark.asyncio
    async def test_delete_cascades(self, lifecycle, store, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)

        await lifecycle.delete_agent(agent.id, OWNER_ID)

        assert await store.get_agent(agent.id) is None
        assert await store.get_run(run.id) is None
        assert await store.list_logs(agent.id) == []

    @pytest.mark.asyncio
    async def test_delete_other_owner(self, lifecycle, store, valid_submission, now):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)
        with pytest.raises(AgentNotFoundError):
            await lifecycle.delete_agent(agent.id, OTHER_OWNER_ID)
        assert await store.get_agent(agent.id) is not None


# ======================== State machine ========================

class TestTransitions:
    @pytest.mark.asyncio
    async def test_activate(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)

        assert agent.status == AgentStatus.ACTIVE
        assert agent.activated_at == now
        assert agent.next_run_at == now

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)

        paused = await lifecycle.transition(agent.id, AgentAction.PAUSE, OWNER_ID, now)
        assert paused.status == AgentStatus.PAUSED
        assert paused.next_run_at is None

        resumed_at = now + timedelta(hours=3)
        resumed = await lifecycle.transition(agent.id, AgentAction.RESUME, OWNER_ID, resumed_at)
        assert resumed.status == AgentStatus.ACTIVE
        assert resumed.resumed_at == resumed_at
        assert resumed.next_run_at == resumed_at + timedelta(minutes=5)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", [["pause", "disable"], ["disable"]])
    async def test_disable(self, lifecycle, valid_submission, now, path):
        agent = await _active_agent(lifecycle, valid_submission, now)
        for action in path:
            agent = await lifecycle.transition(agent.id, AgentAction(action), OWNER_ID, now)
        assert agent.status == AgentStatus.DISABLED
        assert agent.next_run_at is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "setup,action",
        [
            ([], "pause"),
            ([], "resume"),
            ([], "disable"),
            (["activate"], "activate"),
            (["activate"], "resume"),
            (["activate", "pause"], "pause"),
            (["activate", "pause"], "activate"),
            (["activate", "disable"], "activate"),
            (["activate", "disable"], "resume"),
            (["activate", "disable"], "pause"),
            (["activate", "disable"], "disable"),
        ],
    )
    async def test_rejected_edges(self, lifecycle, valid_submission, now, setup, action):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)
        for step in setup:
            agent = await lifecycle.transition(agent.id, AgentAction(step), OWNER_ID, now)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await lifecycle.transition(agent.id, AgentAction(action), OWNER_ID, now)

        assert exc_info.value.status_code == 409
        assert exc_info.value.current == agent.status.value
        assert (await lifecycle.get_agent(agent.id)).status == agent.status

    @pytest.mark.asyncio
    async def test_transition_logged(self, lifecycle, store, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        logs = await store.list_logs(agent.id)
        assert logs[0].message == "Status changed draft -> active"
        assert logs[0].context == {"action": "activate"}

    @pytest.mark.asyncio
    async def test_activate_requires_catalog_strategy(self, store, validator, valid_submission, now):
        full = AgentLifecycleManager(store, validator=validator, max_backoff_seconds=60)
        agent = await full.create_agent(valid_submission, OWNER_ID, now)

        narrow = AgentLifecycleManager(
            store,
            catalog=StrategyCatalog([StrategyDescriptor(id="breakout", label="Breakout")]),
            max_backoff_seconds=60,
        )
        with pytest.raises(UnknownStrategyError):
            await narrow.transition(agent.id, AgentAction.ACTIVATE, OWNER_ID, now)
        assert (await store.get_agent(agent.id)).status == AgentStatus.DRAFT

    @pytest.mark.asyncio
    async def test_conditional_save_conflict(self, lifecycle, store, valid_submission, now, monkeypatch):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)
        monkeypatch.setattr(store, "save_agent", AsyncMock(return_value=False))

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await lifecycle.transition(agent.id, AgentAction.ACTIVATE, OWNER_ID, now)
        assert exc_info.value.code == ErrorCode.CONCURRENT_MODIFICATION

    @pytest.mark.asyncio
    async def test_stale_expected_status_rejected(self, store, valid_submission, validator, now):
        agent = validator.validate(valid_submission, OWNER_ID, now)
        await store.save_agent(agent)

        stale = agent.model_copy(update={"status": AgentStatus.ACTIVE})
        assert await store.save_agent(stale, expected_status=AgentStatus.PAUSED) is False
        assert (await store.get_agent(agent.id)).status == AgentStatus.DRAFT


# ======================== Runs ========================

class TestRuns:
    @pytest.mark.asyncio
    async def test_start_requires_active(self, lifecycle, valid_submission, now):
        agent = await lifecycle.create_agent(valid_submission, OWNER_ID, now)
        with pytest.raises(AgentNotRunnableError) as exc_info:
            await lifecycle.record_run_start(agent.id, now)
        assert exc_info.value.code == ErrorCode.AGENT_NOT_RUNNABLE

    @pytest.mark.asyncio
    async def test_start_creates_pending_run(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)

        assert run.agent_id == agent.id
        assert run.outcome == RunOutcome.PENDING
        assert run.trigger == RunTrigger.SCHEDULE
        assert run.scheduled_for == now
        assert run.attempts == 0

        stored = await lifecycle.get_agent(agent.id)
        assert stored.last_run_at == now
        assert stored.next_run_at == now + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_late_start_keeps_scheduled_instant(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        late = now + timedelta(minutes=2)
        run = await lifecycle.record_run_start(agent.id, late)
        assert run.scheduled_for == now
        assert run.started_at == late

    @pytest.mark.asyncio
    async def test_second_start_rejected(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        await lifecycle.record_run_start(agent.id, now)

        with pytest.raises(RunAlreadyInProgressError):
            await lifecycle.record_run_start(agent.id, now, trigger=RunTrigger.MANUAL)

    @pytest.mark.asyncio
    async def test_concurrent_starts_single_winner(self, lifecycle, store, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)

        results = await asyncio.gather(
            lifecycle.record_run_start(agent.id, now),
            lifecycle.record_run_start(agent.id, now),
            return_exceptions=True,
        )

        runs = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(runs) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], RunAlreadyInProgressError)
        assert len(await store.list_runs(agent.id)) == 1

    @pytest.mark.asyncio
    async def test_pause_before_start_wins(self, lifecycle, store, valid_submission, now, monkeypatch):
        agent = await _active_agent(lifecycle, valid_submission, now)
        start_run = store.start_run

        async def pause_then_start(snapshot, run):
            await lifecycle.transition(agent.id, AgentAction.PAUSE, OWNER_ID, now)
            return await start_run(snapshot, run)

        monkeypatch.setattr(store, "start_run", pause_then_start)

        with pytest.raises(AgentNotRunnableError):
            await lifecycle.record_run_start(agent.id, now)
        assert await store.list_runs(agent.id) == []
        assert (await store.get_agent(agent.id)).status == AgentStatus.PAUSED

    @pytest.mark.asyncio
    async def test_store_refuses_start_for_stale_active_copy(self, lifecycle, store, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        await lifecycle.transition(agent.id, AgentAction.PAUSE, OWNER_ID, now)

        run = AgentRun(id="run-1", agent_id=agent.id, scheduled_for=now, started_at=now)

        assert agent.status == AgentStatus.ACTIVE
        assert await store.start_run(agent, run) is False
        assert await store.get_run("run-1") is None

    @pytest.mark.asyncio
    async def test_claim_marks_running(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)

        claimed = await lifecycle.claim_run(run.id, now)
        assert claimed.outcome == RunOutcome.RUNNING
        assert claimed.attempts == 1

        # Claiming again is a no-op while running
        again = await lifecycle.claim_run(run.id, now)
        assert again.attempts == 1

    @pytest.mark.asyncio
    async def test_success_releases_slot(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)
        await lifecycle.claim_run(run.id, now)

        done = await lifecycle.record_run_outcome(
            run.id, RunOutcome.SUCCEEDED, signal_ids=["sig-1", "sig-2"], now=now + timedelta(seconds=5)
        )
        assert done.outcome == RunOutcome.SUCCEEDED
        assert done.generated_signal_ids == ["sig-1", "sig-2"]
        assert done.finished_at == now + timedelta(seconds=5)

        later = now + timedelta(minutes=5)
        next_run = await lifecycle.record_run_start(agent.id, later)
        assert next_run.id != run.id

    @pytest.mark.asyncio
    async def test_outcome_idempotent(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)

        first = await lifecycle.record_run_outcome(run.id, RunOutcome.SKIPPED, error_detail="market closed", now=now)
        second = await lifecycle.record_run_outcome(run.id, RunOutcome.SKIPPED, now=now + timedelta(minutes=1))
        assert second == first

    @pytest.mark.asyncio
    async def test_conflicting_outcome_rejected(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)
        await lifecycle.record_run_outcome(run.id, RunOutcome.SUCCEEDED, now=now)

        with pytest.raises(RunAlreadyFinishedError) as exc_info:
            await lifecycle.record_run_outcome(run.id, RunOutcome.FAILED, now=now)
        assert exc_info.value.status_code == 409
        assert (await lifecycle.store.get_run(run.id)).outcome == RunOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_non_terminal_outcome_rejected(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)

        with pytest.raises(AppError) as exc_info:
            await lifecycle.record_run_outcome(run.id, RunOutcome.RUNNING, now=now)
        assert exc_info.value.code == ErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_unknown_run(self, lifecycle):
        with pytest.raises(RunNotFoundError):
            await lifecycle.record_run_outcome("missing", RunOutcome.SUCCEEDED)

    @pytest.mark.asyncio
    async def test_finished_run_cannot_be_claimed(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)
        await lifecycle.record_run_outcome(run.id, RunOutcome.SKIPPED, now=now)

        with pytest.raises(RunAlreadyFinishedError):
            await lifecycle.claim_run(run.id, now)

    @pytest.mark.asyncio
    async def test_outcome_after_pause(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)
        await lifecycle.transition(agent.id, AgentAction.PAUSE, OWNER_ID, now)

        done = await lifecycle.record_run_outcome(run.id, RunOutcome.SUCCEEDED, now=now)
        assert done.outcome == RunOutcome.SUCCEEDED
        with pytest.raises(AgentNotRunnableError):
            await lifecycle.record_run_start(agent.id, now)

    @pytest.mark.asyncio
    async def test_run_history_newest_first(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        ids = []
        for step in range(3):
            at = now + timedelta(minutes=5 * step)
            run = await lifecycle.record_run_start(agent.id, at)
            await lifecycle.record_run_outcome(run.id, RunOutcome.SUCCEEDED, now=at)
            ids.append(run.id)

        runs = await lifecycle.list_runs(agent.id, OWNER_ID)
        assert [r.id for r in runs] == list(reversed(ids))


class TestRetries:
    @pytest.mark.asyncio
    async def test_backoff_then_failed(self, lifecycle, store, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)

        await lifecycle.claim_run(run.id, now)
        retry = await lifecycle.record_run_failure(run.id, "exchange timeout", now=now)
        assert retry.outcome == RunOutcome.PENDING
        assert retry.scheduled_for == now + timedelta(seconds=2)
        assert retry.error_detail == "exchange timeout"

        # Still in flight while waiting for the retry
        with pytest.raises(RunAlreadyInProgressError):
            await lifecycle.record_run_start(agent.id, now + timedelta(minutes=10))

        await lifecycle.claim_run(run.id, now)
        retry = await lifecycle.record_run_failure(run.id, "exchange timeout", now=now)
        assert retry.scheduled_for == now + timedelta(seconds=4)

        await lifecycle.claim_run(run.id, now)
        failed = await lifecycle.record_run_failure(run.id, "exchange timeout", now=now)
        assert failed.outcome == RunOutcome.FAILED
        assert failed.attempts == 3

        logs = await store.list_logs(agent.id)
        assert logs[0].level == LogLevel.ERROR

        await lifecycle.record_run_start(agent.id, now + timedelta(minutes=10))

    @pytest.mark.asyncio
    async def test_backoff_capped(self, store, validator, valid_submission, now):
        lifecycle = AgentLifecycleManager(store, validator=validator, max_backoff_seconds=3)
        agent = await _active_agent(lifecycle, {**valid_submission, "max_attempts": 5}, now)
        run = await lifecycle.record_run_start(agent.id, now)

        for _ in range(3):
            await lifecycle.claim_run(run.id, now)
            retry = await lifecycle.record_run_failure(run.id, "boom", now=now)
        assert retry.attempts == 3
        assert retry.scheduled_for == now + timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_single_attempt(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, {**valid_submission, "max_attempts": 1}, now)
        run = await lifecycle.record_run_start(agent.id, now)
        await lifecycle.claim_run(run.id, now)

        failed = await lifecycle.record_run_failure(run.id, "boom", now=now)
        assert failed.outcome == RunOutcome.FAILED


class TestStaleRuns:
    @pytest.mark.asyncio
    async def test_running_past_limit_released(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, {**valid_submission, "max_attempts": 1}, now)
        run = await lifecycle.record_run_start(agent.id, now)
        await lifecycle.claim_run(run.id, now)

        assert await lifecycle.release_stale_runs(now + timedelta(seconds=59)) == []

        released = await lifecycle.release_stale_runs(now + timedelta(seconds=60))
        assert [r.id for r in released] == [run.id]
        assert released[0].outcome == RunOutcome.FAILED
        assert released[0].error_detail == "run abandoned after 60s without an outcome"

        again = await lifecycle.record_run_start(agent.id, now + timedelta(minutes=5))
        assert again.id != run.id

    @pytest.mark.asyncio
    async def test_released_run_retried(self, lifecycle, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)
        await lifecycle.claim_run(run.id, now)

        released = await lifecycle.release_stale_runs(now + timedelta(minutes=2))

        assert released[0].outcome == RunOutcome.PENDING
        assert released[0].attempts == 1

    @pytest.mark.asyncio
    async def test_pending_runs_untouched(self, lifecycle, store, valid_submission, now):
        agent = await _active_agent(lifecycle, valid_submission, now)
        run = await lifecycle.record_run_start(agent.id, now)

        assert await lifecycle.release_stale_runs(now + timedelta(hours=1)) == []
        assert (await store.get_run(run.id)).outcome == RunOutcome.PENDING
