"""Redis task queue and IPN worker tests"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import fakeredis
import pytest
from sqlalchemy.orm import sessionmaker

from ipnledger.db import task_queue
from ipnledger.models import IpnRawLog, ProductOrder
from ipnledger.tasks.ipn_worker import process_ipn_task


@pytest.mark.high
class TestQueueLanes:
    """Test enqueue and task metadata"""

    def test_enqueue_defaults_to_task_type_lane(self, mock_redis):
        task_id = task_queue.enqueue_task("owner_notification", {"kind": "sale"})

        assert task_queue.queue_length("owner_notification") == 1
        queued = json.loads(mock_redis.lindex("task:queue:owner_notification", 0))
        assert queued["task_id"] == task_id
        assert queued["payload"] == {"kind": "sale"}

    def test_named_lanes_are_separate(self, mock_redis):
        task_queue.enqueue_task("process_ipn", {"ipn_log_id": 1}, queue="ipn")
        task_queue.enqueue_task("blacklist_incident", {"kind": "refund"}, queue="blacklist_incidents")

        assert task_queue.queue_length("ipn") == 1
        assert task_queue.queue_length("blacklist_incidents") == 1

    def test_status_metadata(self, mock_redis):
        task_id = task_queue.enqueue_task("process_ipn", {"ipn_log_id": 3}, queue="ipn", max_retries=2)

        status = task_queue.get_task_status(task_id)
        assert status["status"] == "pending"
        assert status["payload"] == {"ipn_log_id": 3}
        assert status["max_retries"] == 2

    def test_unknown_task_status(self, mock_redis):
        assert task_queue.get_task_status("nope") is None

    def test_completed_stores_result(self, mock_redis):
        task_id = task_queue.enqueue_task("process_ipn", {"ipn_log_id": 1}, queue="ipn")
        task_queue.mark_task_processing(task_id)
        task_queue.mark_task_completed(task_id, {"ok": True, "outcome": "processed"})

        status = task_queue.get_task_status(task_id)
        assert status["status"] == "completed"
        assert status["result"] == {"ok": True, "outcome": "processed"}
        assert task_queue.get_processing_tasks() == []

    def test_failed_is_not_requeued(self, mock_redis):
        task_id = task_queue.enqueue_task("process_ipn", {"ipn_log_id": 1}, queue="ipn")
        mock_redis.delete("task:queue:ipn")
        task_queue.mark_task_processing(task_id)

        task_queue.mark_task_failed(task_id, "Product not found for IPN")

        status = task_queue.get_task_status(task_id)
        assert status["status"] == "failed"
        assert status["error"] == "Product not found for IPN"
        assert task_queue.queue_length("ipn") == 0

    def test_cleanup_stale_tasks(self, mock_redis):
        task_id = task_queue.enqueue_task("process_ipn", {"ipn_log_id": 1}, queue="ipn")
        task_queue.mark_task_processing(task_id)
        two_hours_ago = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
        mock_redis.hset(f"task:meta:{task_id}", "started_at", two_hours_ago)

        assert task_queue.cleanup_stale_tasks(timeout_seconds=3600) == 1
        assert task_queue.get_task_status(task_id)["status"] == "failed"

    @pytest.mark.asyncio
    async def test_dequeue_pops_oldest_first(self):
        fake_async = fakeredis.aioredis.FakeRedis(decode_responses=True)
        await fake_async.lpush("task:queue:ipn", json.dumps({"task_id": "first"}))
        await fake_async.lpush("task:queue:ipn", json.dumps({"task_id": "second"}))

        with patch('ipnledger.db.task_queue.get_async_redis_client', return_value=fake_async):
            task = await task_queue.dequeue_task("ipn", timeout=1)

        assert task["task_id"] == "first"


@pytest.mark.critical
class TestIpnWorker:
    """Test the process_ipn task body"""

    @pytest.fixture(autouse=True)
    def worker_session(self, db_session):
        """Worker sessions share the test engine"""
        worker_sessions = sessionmaker(autocommit=False, autoflush=False, bind=db_session.get_bind())
        with patch('ipnledger.tasks.ipn_worker.SessionLocal', worker_sessions):
            yield

    def _queue(self, db_session, processor, event, params):
        raw_log = IpnRawLog(processor=processor, transaction_type=event.get("type", "unknown"),
                            ipn_data=json.dumps(event), params=params)
        db_session.add(raw_log)
        db_session.commit()
        task_id = task_queue.enqueue_task("process_ipn", {"ipn_log_id": raw_log.id}, queue="ipn")
        return {"task_id": task_id, "task_type": "process_ipn", "payload": {"ipn_log_id": raw_log.id}}

    def test_processed_task_completes(self, db_session, catalog, stripe_payment_intent):
        task = self._queue(db_session, "stripe", stripe_payment_intent(),
                           {"product_id": catalog.product.id, "product_pricing_id": catalog.one_time.id})

        process_ipn_task(task)

        status = task_queue.get_task_status(task["task_id"])
        assert status["status"] == "completed"
        assert status["result"]["outcome"] == "processed"
        assert db_session.query(ProductOrder).count() == 1

    def test_fatal_event_fails_without_retry(self, db_session, catalog, stripe_payment_intent):
        task = self._queue(db_session, "stripe", stripe_payment_intent(), {"product_id": 9999})
        task_queue.get_redis_client().delete("task:queue:ipn")

        process_ipn_task(task)

        status = task_queue.get_task_status(task["task_id"])
        assert status["status"] == "failed"
        assert "Product not found" in status["error"]
        assert task_queue.queue_length("ipn") == 0

    def test_missing_log(self, db_session):
        task_id = task_queue.enqueue_task("process_ipn", {"ipn_log_id": 424242}, queue="ipn")

        process_ipn_task({"task_id": task_id, "payload": {"ipn_log_id": 424242}})

        assert task_queue.get_task_status(task_id)["error"] == "IPN log 424242 not found"

    def test_missing_log_id(self, db_session):
        task_id = task_queue.enqueue_task("process_ipn", {}, queue="ipn")

        process_ipn_task({"task_id": task_id, "payload": {}})

        assert task_queue.get_task_status(task_id)["status"] == "failed"

    def test_unexpected_error_marks_failed(self, db_session, catalog, stripe_payment_intent):
        task = self._queue(db_session, "stripe", stripe_payment_intent(),
                           {"product_id": catalog.product.id, "product_pricing_id": catalog.one_time.id})

        with patch('ipnledger.tasks.ipn_worker.handle_ipn', side_effect=RuntimeError("db gone")):
            process_ipn_task(task)

        status = task_queue.get_task_status(task["task_id"])
        assert status["status"] == "failed"
        assert status["error"] == "db gone"
