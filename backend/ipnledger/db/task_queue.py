"""Redis-based task queue for background job processing

Tasks are pushed onto named lanes (Redis lists) and their metadata kept in
hashes. The IPN worker consumes the "ipn" lane; abuse incidents and owner
notifications go to their own lanes for separate consumers.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ipnledger.db.redis import get_redis_client, get_async_redis_client

logger = logging.getLogger(__name__)

# Redis key prefixes
QUEUE_KEY_PREFIX = "task:queue:"
META_KEY_PREFIX = "task:meta:"
PROCESSING_SET_KEY = "task:processing"

# Task TTL (24 hours for completed/failed tasks metadata)
TASK_META_TTL = 24 * 60 * 60


def enqueue_task(
    task_type: str,
    payload: Dict[str, Any],
    queue: Optional[str] = None,
    max_retries: int = 0
) -> str:
    """Enqueue a task to the Redis queue

    Args:
        task_type: Type of task (e.g., 'process_ipn')
        payload: JSON-serializable task payload
        queue: Lane to push onto (defaults to the task type)
        max_retries: Kept in metadata for consumers that retry; the IPN worker never does

    Returns:
        task_id: Unique task identifier
    """
    task_id = str(uuid.uuid4())
    queue_name = queue or task_type
    created_at = datetime.now(timezone.utc).isoformat()

    task_data = {
        "task_id": task_id,
        "task_type": task_type,
        "queue": queue_name,
        "payload": payload,
        "max_retries": max_retries,
        "created_at": created_at,
        "status": "pending"
    }

    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()
    client.hset(meta_key, mapping={
        "task_id": task_id,
        "task_type": task_type,
        "queue": queue_name,
        "payload": json.dumps(payload),
        "max_retries": str(max_retries),
        "created_at": created_at,
        "status": "pending"
    })
    client.expire(meta_key, TASK_META_TTL)

    client.lpush(f"{QUEUE_KEY_PREFIX}{queue_name}", json.dumps(task_data))

    logger.info(f"Enqueued task {task_id} of type {task_type} on queue {queue_name}")
    return task_id


async def dequeue_task(queue: str, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Dequeue a task from a lane (blocking)

    Args:
        queue: Lane to pop from
        timeout: Blocking timeout in seconds

    Returns:
        Task dict if task available, None if timeout
    """
    client = get_async_redis_client()

    if client is None:
        logger.error("Async Redis client not available")
        return None

    try:
        result = await client.brpop(f"{QUEUE_KEY_PREFIX}{queue}", timeout=timeout)

        if result is None:
            return None

        _, task_json = result
        return json.loads(task_json)
    except Exception as e:
        logger.error(f"Error dequeuing task: {e}", exc_info=True)
        return None


def queue_length(queue: str) -> int:
    """Number of tasks waiting on a lane"""
    return get_redis_client().llen(f"{QUEUE_KEY_PREFIX}{queue}")


def get_task_status(task_id: str) -> Optional[Dict[str, Any]]:
    """Get task status and metadata

    Args:
        task_id: Task identifier

    Returns:
        Task metadata dict or None if not found
    """
    meta = get_redis_client().hgetall(f"{META_KEY_PREFIX}{task_id}")
    if not meta:
        return None

    if "payload" in meta:
        meta["payload"] = json.loads(meta["payload"])
    if "result" in meta:
        meta["result"] = json.loads(meta["result"])
    if "max_retries" in meta:
        meta["max_retries"] = int(meta["max_retries"])

    return meta


def mark_task_processing(task_id: str) -> None:
    """Mark task as processing"""
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()

    client.hset(meta_key, "status", "processing")
    client.hset(meta_key, "started_at", datetime.now(timezone.utc).isoformat())
    client.sadd(PROCESSING_SET_KEY, task_id)
    logger.debug(f"Marked task {task_id} as processing")


def mark_task_completed(task_id: str, result: Optional[Dict[str, Any]] = None) -> None:
    """Mark task as completed

    Args:
        task_id: Task identifier
        result: Optional result data to store
    """
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()

    client.hset(meta_key, "status", "completed")
    client.hset(meta_key, "completed_at", datetime.now(timezone.utc).isoformat())

    if result:
        client.hset(meta_key, "result", json.dumps(result))

    client.srem(PROCESSING_SET_KEY, task_id)

    logger.info(f"Marked task {task_id} as completed")


def mark_task_failed(task_id: str, error: str) -> None:
    """Mark task as permanently failed.

    Redelivery is the payment provider's job, so nothing is re-enqueued here.
    """
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client = get_redis_client()

    client.hset(meta_key, "status", "failed")
    client.hset(meta_key, "error", error)
    client.hset(meta_key, "failed_at", datetime.now(timezone.utc).isoformat())
    client.srem(PROCESSING_SET_KEY, task_id)

    logger.warning(f"Task {task_id} failed: {error}")


def get_processing_tasks() -> list[str]:
    """Get list of currently processing task IDs"""
    return list(get_redis_client().smembers(PROCESSING_SET_KEY))


def cleanup_stale_tasks(timeout_seconds: int = 3600) -> int:
    """Clean up tasks that have been in processing state too long (likely crashed)

    Args:
        timeout_seconds: Time in seconds after which a processing task is considered stale

    Returns:
        Number of tasks cleaned up
    """
    client = get_redis_client()
    cleaned = 0

    for task_id in get_processing_tasks():
        meta_key = f"{META_KEY_PREFIX}{task_id}"
        started_at_str = client.hget(meta_key, "started_at")

        if not started_at_str:
            continue

        try:
            started_at = datetime.fromisoformat(started_at_str.replace('Z', '+00:00'))
            elapsed = (datetime.now(timezone.utc) - started_at).total_seconds()

            if elapsed > timeout_seconds:
                logger.warning(
                    f"Cleaning up stale task {task_id} "
                    f"(processing for {elapsed:.0f}s, timeout={timeout_seconds}s)"
                )
                client.srem(PROCESSING_SET_KEY, task_id)
                client.hset(meta_key, "status", "failed")
                client.hset(meta_key, "error", f"Task timeout after {elapsed:.0f} seconds")
                cleaned += 1
        except (ValueError, TypeError) as e:
            logger.warning(f"Error parsing started_at for task {task_id}: {e}")
            client.srem(PROCESSING_SET_KEY, task_id)
            cleaned += 1

    return cleaned
