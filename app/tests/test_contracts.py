"""
Tests for kernel contracts.

These tests verify that:
1. Task transitions follow the lifecycle
2. Timestamps are set exactly once
3. Records serialize cleanly
"""

import pytest

import switchboard.core.config as config_module
from switchboard.core.config import SchedulerConfig, SwitchboardConfig
from switchboard.kernel.contracts import (
    InvalidTransitionError,
    ScheduledJob,
    Task,
    TaskEventKind,
    TaskMetadata,
    TaskStatus,
)


class TestTaskLifecycle:
    def test_new_task_defaults(self):
        task = Task(channel_id="c1")
        assert task.status == TaskStatus.QUEUED
        assert task.id
        assert task.started_at is None
        assert task.completed_at is None
        assert not task.abort.is_set()

    def test_ids_are_unique(self):
        assert Task(channel_id="c1").id != Task(channel_id="c1").id

    def test_run_then_complete(self):
        task = Task(channel_id="c1")
        task.transition(TaskStatus.RUNNING)
        assert task.started_at is not None

        task.transition(TaskStatus.COMPLETED, result="done")
        assert task.result == "done"
        assert task.completed_at >= task.started_at
        assert task.is_terminal

    def test_failed_keeps_error(self):
        task = Task(channel_id="c1")
        task.transition(TaskStatus.RUNNING)
        task.transition(TaskStatus.FAILED, error="boom")
        assert task.error == "boom"
        assert task.result is None

    @pytest.mark.parametrize(
        "terminal", [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED]
    )
    def test_terminal_states_are_final(self, terminal):
        task = Task(channel_id="c1")
        task.transition(TaskStatus.RUNNING)
        task.transition(terminal)
        completed_at = task.completed_at

        for target in TaskStatus:
            with pytest.raises(InvalidTransitionError):
                task.transition(target)
        assert task.completed_at == completed_at

    def test_cannot_complete_without_running(self):
        task = Task(channel_id="c1")
        with pytest.raises(InvalidTransitionError):
            task.transition(TaskStatus.COMPLETED, result="x")

    def test_queued_can_be_cancelled_without_start(self):
        task = Task(channel_id="c1")
        task.transition(TaskStatus.CANCELLED, error="Task was cancelled")
        assert task.started_at is None
        assert task.completed_at is not None


class TestSerialization:
    def test_to_dict(self):
        task = Task(
            channel_id="c1",
            metadata=TaskMetadata(message_preview="hi", platform="web", user_name="ana"),
        )
        data = task.to_dict()
        assert data["channel_id"] == "c1"
        assert data["status"] == "queued"
        assert data["started_at"] is None
        assert data["platform"] == "web"
        assert data["user_name"] == "ana"

    def test_event_kind_topics(self):
        assert TaskEventKind.STARTED.topic == "task.started"
        assert TaskEventKind("cancelled").topic == "task.cancelled"
        assert TaskStatus.FAILED.is_terminal
        assert not TaskStatus.RUNNING.is_terminal


class TestScheduledJob:
    def _job(self, **kwargs) -> ScheduledJob:
        return ScheduledJob(
            id="j1",
            name="Briefing",
            prompt="Summarize my day",
            cron_expression="0 8 * * *",
            platform="telegram",
            channel_id="42",
            **kwargs,
        )

    def test_timezone_defaults_to_configured_zone(self, monkeypatch):
        monkeypatch.setattr(
            config_module,
            "config",
            SwitchboardConfig(
                scheduler=SchedulerConfig(default_timezone="America/New_York")
            ),
        )
        assert self._job().timezone == "America/New_York"

    def test_explicit_timezone_wins(self):
        assert self._job(timezone="Asia/Tokyo").timezone == "Asia/Tokyo"
