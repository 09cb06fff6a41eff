"""Tests for generation attempts, the settlement queue and its worker"""
import json
from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from credit_ledger.core.config import settings
from credit_ledger.db.task_queue import (
    META_KEY_PREFIX, PROCESSING_SET_KEY, QUEUE_KEY_PREFIX, SETTLEMENT_TASK,
    cleanup_stale_tasks, enqueue_task, get_task_status, mark_task_failed, mark_task_processing,
    pop_task_nowait, publish_settlement_event
)
from credit_ledger.models.credit_reservation import CreditReservation, ReservationStatus
from credit_ledger.models.generation_attempt import GenerationStatus
from credit_ledger.services.generation_service import (
    record_generation_failed, record_generation_started, record_generation_succeeded
)
from credit_ledger.services.reservation_service import commit, reserve
from credit_ledger.tasks.settlement_worker import handle_settlement_event, process_settlement_task


def _status(db_session, request_id):
    db_session.expire_all()
    return db_session.query(CreditReservation).filter(CreditReservation.request_id == request_id).one().status


class TestTaskQueue:
    """Test the Redis-backed event queue"""

    def test_publish_and_pop(self, mock_redis):
        task_id = publish_settlement_event("req1", 7, GenerationStatus.SUCCEEDED)

        task = pop_task_nowait(SETTLEMENT_TASK)

        assert task["task_id"] == task_id
        assert task["payload"] == {"request_id": "req1", "user_id": 7, "status": "succeeded", "error": None}
        assert get_task_status(task_id)["status"] == "pending"
        assert pop_task_nowait(SETTLEMENT_TASK) is None

    def test_failed_task_is_requeued_with_backoff(self, mock_redis):
        task_id = enqueue_task(SETTLEMENT_TASK, {"request_id": "req1"}, max_retries=1)
        pop_task_nowait(SETTLEMENT_TASK)
        mark_task_processing(task_id)

        retry_id = mark_task_failed(task_id, "database is locked")

        assert retry_id is not None
        assert get_task_status(task_id)["status"] == "retrying"
        retry = get_task_status(retry_id)
        assert retry["retry_count"] == 1
        assert "retry_after" in retry
        assert not mock_redis.sismember(PROCESSING_SET_KEY, task_id)

        # Retries exhausted
        assert mark_task_failed(retry_id, "database is locked") is None
        assert get_task_status(retry_id)["status"] == "failed"

    def test_no_retry_for_rejected_task(self, mock_redis):
        task_id = enqueue_task(SETTLEMENT_TASK, {})

        assert mark_task_failed(task_id, "bad payload", retry=False) is None
        assert get_task_status(task_id)["status"] == "failed"
        assert mock_redis.llen(f"{QUEUE_KEY_PREFIX}{SETTLEMENT_TASK}") == 1  # only the original push

    def test_cleanup_stale_tasks(self, mock_redis):
        task_id = enqueue_task(SETTLEMENT_TASK, {})
        mark_task_processing(task_id)
        mock_redis.hset(f"{META_KEY_PREFIX}{task_id}", "started_at", "2020-01-01T00:00:00+00:00")

        assert cleanup_stale_tasks(timeout_seconds=60) == 1
        assert get_task_status(task_id)["status"] == "failed"


@pytest.mark.critical
class TestGenerationAttempts:
    """Test job records reported by generation workers"""

    def test_started_is_idempotent(self, test_user, db_session, mock_redis):
        first = record_generation_started(test_user.id, "req1", db_session, feature="scene_image", credits_amount=3)
        second = record_generation_started(test_user.id, "req1", db_session)

        assert first["status"] == GenerationStatus.STARTED
        assert second["idempotent"] is True
        assert second["credits_amount"] == 3

    def test_started_request_id_of_other_user(self, test_user, test_user_2, db_session, mock_redis):
        record_generation_started(test_user.id, "req1", db_session)
        assert record_generation_started(test_user_2.id, "req1", db_session)["reason"] == "request_id_conflict"

    def test_outcome_publishes_settlement_event(self, test_user, db_session, mock_redis):
        record_generation_started(test_user.id, "req1", db_session)

        result = record_generation_failed("req1", db_session, error_stage="render", error_message="timeout")

        assert result["ok"] is True
        assert result["status"] == GenerationStatus.FAILED
        task = pop_task_nowait(SETTLEMENT_TASK)
        assert task["task_id"] == result["settlement_task_id"]
        assert task["payload"]["status"] == "failed"
        assert task["payload"]["error"] == "timeout"

    def test_failure_is_final(self, test_user, db_session, mock_redis):
        record_generation_started(test_user.id, "req1", db_session)
        record_generation_failed("req1", db_session)

        result = record_generation_succeeded("req1", db_session)

        assert result["ok"] is False
        assert result["reason"] == "invalid_transition"

    def test_success_can_turn_into_failure(self, test_user, db_session, mock_redis):
        record_generation_started(test_user.id, "req1", db_session)
        record_generation_succeeded("req1", db_session)

        result = record_generation_failed("req1", db_session, error_stage="post_process")

        assert result["ok"] is True
        assert result["status"] == GenerationStatus.FAILED

    def test_repeated_outcome_does_not_republish(self, test_user, db_session, mock_redis):
        record_generation_started(test_user.id, "req1", db_session)
        record_generation_succeeded("req1", db_session)
        pop_task_nowait(SETTLEMENT_TASK)

        again = record_generation_succeeded("req1", db_session)

        assert again["idempotent"] is True
        assert pop_task_nowait(SETTLEMENT_TASK) is None

    def test_outcome_without_attempt(self, test_user, db_session, mock_redis):
        assert record_generation_failed("nope", db_session)["reason"] == "missing_attempt"

        created = record_generation_failed("late", db_session, user_id=test_user.id)
        assert created["ok"] is True
        assert created["user_id"] == test_user.id

    def test_queue_disabled(self, test_user, db_session, mock_redis):
        record_generation_started(test_user.id, "req1", db_session)

        with patch.object(settings, "SETTLEMENT_QUEUE_ENABLED", False):
            result = record_generation_succeeded("req1", db_session)

        assert "settlement_task_id" not in result
        assert pop_task_nowait(SETTLEMENT_TASK) is None

    def test_redis_outage_does_not_lose_the_outcome(self, test_user, db_session, mock_redis):
        record_generation_started(test_user.id, "req1", db_session)

        with patch("credit_ledger.services.generation_service.publish_settlement_event",
                   side_effect=RedisConnectionError("down")):
            result = record_generation_failed("req1", db_session)

        assert result["ok"] is True
        assert result["settlement_task_id"] is None
        assert result["status"] == GenerationStatus.FAILED


@pytest.mark.critical
class TestSettlementWorker:
    """Test applying outcome events to reservations"""

    def test_success_commits(self, test_user, funded_balance, db_session):
        reserve(test_user.id, "req1", 3, db_session)

        result = handle_settlement_event(
            {"request_id": "req1", "user_id": test_user.id, "status": "succeeded"}, db_session
        )

        assert result["ok"] is True
        assert _status(db_session, "req1") == ReservationStatus.COMMITTED

    def test_failure_releases(self, test_user, funded_balance, db_session):
        reserve(test_user.id, "req1", 3, db_session)

        result = handle_settlement_event(
            {"request_id": "req1", "user_id": test_user.id, "status": "failed", "error": "nsfw filter"}, db_session
        )

        assert result["released_monthly"] == 3
        assert _status(db_session, "req1") == ReservationStatus.RELEASED

    def test_failure_after_commit_refunds(self, test_user, funded_balance, db_session):
        reserve(test_user.id, "req1", 3, db_session)
        commit(test_user.id, "req1", db_session)

        result = handle_settlement_event(
            {"request_id": "req1", "user_id": test_user.id, "status": "failed"}, db_session
        )

        assert result["delegated_to"] == "refund"
        assert result["remaining_monthly"] == 10

    def test_unreserved_request_is_reported(self, test_user, funded_balance, db_session):
        result = handle_settlement_event(
            {"request_id": "ghost", "user_id": test_user.id, "status": "succeeded"}, db_session
        )
        assert result["reason"] == "missing_reservation"

    @pytest.mark.parametrize("payload", [
        {"user_id": 1, "status": "failed"},
        {"request_id": "req1", "status": "failed"},
        {"request_id": "req1", "user_id": 1, "status": "started"},
    ])
    def test_malformed_payload(self, db_session, payload):
        with pytest.raises(ValueError):
            handle_settlement_event(payload, db_session)

    def test_process_task_end_to_end(self, test_user, funded_balance, db_session, session_factory, mock_redis):
        reserve(test_user.id, "req1", 3, db_session)
        publish_settlement_event("req1", test_user.id, GenerationStatus.SUCCEEDED)
        task = pop_task_nowait(SETTLEMENT_TASK)

        with patch("credit_ledger.tasks.settlement_worker.SessionLocal", session_factory):
            process_settlement_task(task)

        meta = get_task_status(task["task_id"])
        assert meta["status"] == "completed"
        assert json.loads(meta["result"])["ok"] is True
        assert _status(db_session, "req1") == ReservationStatus.COMMITTED

    def test_process_malformed_task_is_not_retried(self, db_session, session_factory, mock_redis):
        task_id = enqueue_task(SETTLEMENT_TASK, {"status": "failed"})
        task = pop_task_nowait(SETTLEMENT_TASK)

        with patch("credit_ledger.tasks.settlement_worker.SessionLocal", session_factory):
            process_settlement_task(task)

        assert get_task_status(task_id)["status"] == "failed"
        assert pop_task_nowait(SETTLEMENT_TASK) is None

    def test_store_error_is_retried(self, test_user, db_session, session_factory, mock_redis):
        task_id = publish_settlement_event("req1", test_user.id, GenerationStatus.SUCCEEDED)
        task = pop_task_nowait(SETTLEMENT_TASK)
        error = OperationalError("SELECT", {}, Exception("database is locked"))

        with patch("credit_ledger.tasks.settlement_worker.SessionLocal", session_factory):
            with patch("credit_ledger.tasks.settlement_worker.commit", side_effect=error):
                process_settlement_task(task)

        assert get_task_status(task_id)["status"] == "retrying"
        retry = pop_task_nowait(SETTLEMENT_TASK)
        assert retry["retry_count"] == 1
        assert retry["payload"]["request_id"] == "req1"
