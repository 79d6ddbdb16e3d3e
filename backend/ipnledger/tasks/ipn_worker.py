"""Background worker for processing IPN tasks from the Redis queue

Each task names a stored raw log. Tasks are handled one at a time; a failed
task is marked failed and never re-enqueued, since the payment provider
redelivers webhooks on its own schedule.
"""
import asyncio
import logging
from typing import Any, Dict

from ipnledger.core.config import settings
from ipnledger.core.logging import ipn_logger
from ipnledger.db.session import SessionLocal
from ipnledger.db.task_queue import (
    dequeue_task, mark_task_processing, mark_task_completed,
    mark_task_failed, cleanup_stale_tasks
)
from ipnledger.models import IpnRawLog
from ipnledger.services.ipn_handler import handle_ipn

logger = logging.getLogger(__name__)


def process_ipn_task(task_data: Dict[str, Any]) -> None:
    """Process a single process_ipn task

    Args:
        task_data: Task data from queue
    """
    task_id = task_data.get("task_id")
    payload = task_data.get("payload", {})
    ipn_log_id = payload.get("ipn_log_id")

    if not ipn_log_id:
        logger.error(f"Task {task_id} missing ipn_log_id in payload")
        mark_task_failed(task_id, "Missing ipn_log_id in task payload")
        return

    mark_task_processing(task_id)

    db = SessionLocal()
    try:
        raw_log = db.get(IpnRawLog, ipn_log_id)
        if raw_log is None:
            mark_task_failed(task_id, f"IPN log {ipn_log_id} not found")
            return

        result = handle_ipn(raw_log, db)

        if result.ok:
            mark_task_completed(task_id, result.model_dump())
            ipn_logger.info(f"Task {task_id}: IPN log {ipn_log_id} {result.outcome}")
        else:
            mark_task_failed(task_id, result.reason or result.outcome)

    except Exception as e:
        logger.error(f"Task {task_id} failed: {e}", exc_info=True)
        db.rollback()
        mark_task_failed(task_id, str(e))

    finally:
        try:
            db.close()
        except Exception as e:
            logger.warning(f"Error closing DB session for task {task_id}: {e}")


async def ipn_worker_task() -> None:
    """Main worker loop that polls the IPN lane and processes tasks in order"""
    logger.info(f"Starting IPN worker on queue '{settings.IPN_QUEUE}'")

    while True:
        try:
            # Clean up tasks left in processing by crashed workers
            cleanup_stale_tasks(timeout_seconds=3600)

            task_data = await dequeue_task(settings.IPN_QUEUE, timeout=5)

            if task_data is None:
                continue

            if task_data.get("task_type") != "process_ipn":
                logger.warning(f"Ignoring task {task_data.get('task_id')} of type {task_data.get('task_type')}")
                continue

            # Handler code is synchronous (SQLAlchemy session); keep the loop responsive
            await asyncio.to_thread(process_ipn_task, task_data)

        except Exception as e:
            logger.error(f"Error in IPN worker loop: {e}", exc_info=True)
            await asyncio.sleep(5)
