"""
Tests for follow-up Celery tasks, run in-process through Task.run
"""

import pytest
from datetime import timedelta

from extensions import db
from flowstack_database import FollowUpTask
from services.common.errors import TransportError
from services.enums import FollowUpStatus
from services.whatsapp_client import SendResult
from tasks.follow_up_tasks import check_pending_follow_ups, enqueue_follow_up, process_follow_up_task
from utils.datetime_utils import utc_now
from tests.conftest import create_test_task


class TestProcessFollowUpTask:

    def test_delivers_due_task(self, app, whatsapp, conversation, mocker):
        mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.T1'))
        task = create_test_task(conversation)

        result = process_follow_up_task.run(task.id)

        assert result['task_id'] == task.id
        assert result['outcome'] == 'sent'
        assert db.session.get(FollowUpTask, task.id).status == FollowUpStatus.COMPLETED.value

    def test_second_run_is_skipped(self, app, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.T2'))
        task = create_test_task(conversation)

        process_follow_up_task.run(task.id)
        result = process_follow_up_task.run(task.id)

        assert result['outcome'] == 'skipped'
        assert send.call_count == 1

    def test_transient_failure_is_raised_for_retry(self, app, whatsapp, conversation, mocker):
        mocker.patch.object(whatsapp, 'send_message', side_effect=TransportError('gateway timeout', 504))
        task = create_test_task(conversation)

        # Outside a worker, Task.retry re-raises the original exception
        with pytest.raises(TransportError):
            process_follow_up_task.run(task.id)

        stored = db.session.get(FollowUpTask, task.id)
        assert stored.status == FollowUpStatus.PENDING.value
        assert stored.attempt_count == 1
        assert stored.claim_token is None


class TestRecoverySweep:

    def test_sweep_dispatches_due_tasks(self, app, conversation, dispatched):
        due = create_test_task(conversation)
        create_test_task(conversation, scheduled_time=utc_now() + timedelta(hours=3))

        result = check_pending_follow_ups.run()

        assert result['status'] == 'success'
        assert result['dispatched'] == 1
        assert dispatched.task_ids == [due.id]


class TestEnqueue:

    def test_enqueue_with_and_without_eta(self, mocker):
        task = mocker.patch('tasks.follow_up_tasks.process_follow_up_task')
        eta = utc_now() + timedelta(minutes=5)

        enqueue_follow_up(7)
        enqueue_follow_up(8, eta=eta)

        assert task.apply_async.call_args_list[0] == mocker.call(args=[7])
        assert task.apply_async.call_args_list[1] == mocker.call(args=[8], eta=eta)
