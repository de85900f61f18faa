"""Unit tests for the job state machine."""

import pytest

from containers_up.errors import InvalidTransitionError
from containers_up.jobs.state import TRANSITIONS, JobAction, can_apply, next_status
from containers_up.models import JobStatus


class TestNextStatus:
    """Tests for next_status()."""

    @pytest.mark.parametrize(
        ("current", "action", "expected"),
        [
            (None, JobAction.OPEN, JobStatus.OPEN),
            (JobStatus.OPEN, JobAction.START, JobStatus.RUNNING),
            (JobStatus.OPEN, JobAction.QUEUE, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobAction.START, JobStatus.RUNNING),
            (JobStatus.QUEUED, JobAction.TIMEOUT, JobStatus.FAILED),
            (JobStatus.RUNNING, JobAction.COMPLETE, JobStatus.COMPLETED),
            (JobStatus.RUNNING, JobAction.FAIL, JobStatus.FAILED),
            (JobStatus.OPEN, JobAction.CLOSE, JobStatus.CLOSED),
            (JobStatus.FAILED, JobAction.START, JobStatus.RUNNING),
            (JobStatus.COMPLETED, JobAction.OPEN, JobStatus.OPEN),
        ],
    )
    def test_allowed_transitions(self, current, action, expected):
        assert next_status(current, action) == expected

    @pytest.mark.parametrize(
        ("current", "action"),
        [
            (JobStatus.RUNNING, JobAction.START),
            (JobStatus.RUNNING, JobAction.QUEUE),
            (JobStatus.RUNNING, JobAction.OPEN),
            (JobStatus.RUNNING, JobAction.CLOSE),
            (JobStatus.QUEUED, JobAction.OPEN),
            (JobStatus.OPEN, JobAction.COMPLETE),
            (JobStatus.RUNNING, JobAction.TIMEOUT),
            (JobStatus.QUEUED, JobAction.FAIL),
            (None, JobAction.COMPLETE),
        ],
    )
    def test_rejected_transitions(self, current, action):
        with pytest.raises(InvalidTransitionError):
            next_status(current, action)

    def test_error_names_action_and_state(self):
        with pytest.raises(InvalidTransitionError, match="Cannot start a running job"):
            next_status(JobStatus.RUNNING, JobAction.START)

    def test_error_for_missing_job(self):
        with pytest.raises(InvalidTransitionError, match="new job"):
            next_status(None, JobAction.FAIL)


class TestTransitionTable:
    """Properties of the transition table as a whole."""

    def test_running_is_only_entered_by_start(self):
        actions = {action for (_, action), status in TRANSITIONS.items() if status == "running"}
        assert actions == {JobAction.START}

    def test_nothing_leaves_running_except_complete_or_fail(self):
        actions = {action for (current, action) in TRANSITIONS if current == JobStatus.RUNNING}
        assert actions == {JobAction.COMPLETE, JobAction.FAIL}

    def test_can_apply_matches_table(self):
        assert can_apply(None, JobAction.OPEN) is True
        assert can_apply(JobStatus.RUNNING, JobAction.OPEN) is False

    def test_timeout_only_fails_queued_jobs(self):
        sources = {current for (current, action) in TRANSITIONS if action == JobAction.TIMEOUT}
        assert sources == {JobStatus.QUEUED}
