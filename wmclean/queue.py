"""
Queue Client

Redis job queue carrying worker protocol messages between hosts and
queue workers.

Keys:
    wmclean:jobs:pending            list of job ids, FIFO
    wmclean:jobs:processing         set of job ids being worked on
    wmclean:jobs:<id>:data          hash with request, status and progress
    wmclean:jobs:<id>:messages      list of response messages, in order
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import redis

from .config import get_settings
from .errors import ChannelError
from .protocol import (
    CompletedMessage,
    ErrorMessage,
    ProcessRequest,
    ProgressMessage,
    encode_message,
    parse_message,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class QueueClient:
    """Redis job queue client."""

    QUEUE_PREFIX = "wmclean:jobs"
    PENDING_QUEUE = f"{QUEUE_PREFIX}:pending"
    PROCESSING_SET = f"{QUEUE_PREFIX}:processing"

    def __init__(self, client: Optional[redis.Redis] = None):
        """Initialize Redis connection."""
        settings = get_settings()
        self.redis = client or redis.from_url(settings.redis_url, decode_responses=True)
        self.worker_id = settings.worker_id

    def _data_key(self, job_id: str) -> str:
        return f"{self.QUEUE_PREFIX}:{job_id}:data"

    def _messages_key(self, job_id: str) -> str:
        return f"{self.QUEUE_PREFIX}:{job_id}:messages"

    def enqueue(self, request: ProcessRequest) -> str:
        """
        Submit a process request.

        Returns:
            Job identifier
        """
        job_id = uuid.uuid4().hex
        self.redis.hset(self._data_key(job_id), mapping={
            "request": encode_message(request).decode("utf-8"),
            "status": "pending",
            "progress": "0",
            "created_at": _now(),
        })
        self.redis.rpush(self.PENDING_QUEUE, job_id)
        logger.info(f"Enqueued job {job_id} ({request.buffer.width}x{request.buffer.height})")
        return job_id

    def dequeue(self) -> tuple[str, ProcessRequest] | None:
        """
        Get the next job from the queue.

        Returns:
            (job_id, request) or None if the queue is empty. Jobs whose stored
            request is unreadable are failed and skipped.
        """
        try:
            job_id = self.redis.lpop(self.PENDING_QUEUE)
            if not job_id:
                return None

            raw = self.redis.hget(self._data_key(job_id), "request")
            if not raw:
                logger.warning(f"Job {job_id} not found in data store")
                return None

            self.redis.sadd(self.PROCESSING_SET, job_id)
            self.redis.hset(self._data_key(job_id), mapping={
                "status": "processing",
                "worker_id": self.worker_id,
                "started_at": _now(),
            })
        except redis.RedisError as e:
            logger.error(f"Failed to dequeue job: {e}")
            return None

        try:
            request = parse_message(raw)
            if not isinstance(request, ProcessRequest):
                raise ChannelError(f"Job holds a {request.type} message, expected process")
        except ChannelError as e:
            logger.error(f"Job {job_id} has an invalid request: {e}")
            self.publish(job_id, ErrorMessage(error=str(e), kind=e.kind))
            return None

        logger.info(f"Dequeued job {job_id}")
        return job_id, request

    def publish(
        self,
        job_id: str,
        message: ProgressMessage | CompletedMessage | ErrorMessage,
    ) -> bool:
        """
        Append a response message and update the job status.

        Returns:
            True if the message was stored
        """
        try:
            data_key = self._data_key(job_id)
            self.redis.rpush(self._messages_key(job_id), encode_message(message).decode("utf-8"))

            if isinstance(message, ProgressMessage):
                self.redis.hset(data_key, "progress", str(message.progress))
            else:
                status = "completed" if isinstance(message, CompletedMessage) else "failed"
                updates = {"status": status, "completed_at": _now()}
                if isinstance(message, CompletedMessage):
                    updates["progress"] = "100"
                else:
                    updates["error"] = message.error
                self.redis.hset(data_key, mapping=updates)
                self.redis.srem(self.PROCESSING_SET, job_id)
                logger.info(f"Job {job_id} {status}")
            return True

        except redis.RedisError as e:
            logger.error(f"Failed to publish {message.type} for job {job_id}: {e}")
            return False

    def read_messages(self, job_id: str) -> list:
        """All response messages published for a job, oldest first."""
        raw_messages = self.redis.lrange(self._messages_key(job_id), 0, -1)
        return [parse_message(raw) for raw in raw_messages]

    def status(self, job_id: str) -> dict:
        """Job status fields (without the request payload)."""
        data = self.redis.hgetall(self._data_key(job_id))
        data.pop("request", None)
        return data

    def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            self.redis.ping()
            return True
        except redis.RedisError:
            return False


# Singleton
_queue_client: QueueClient | None = None


def get_queue_client() -> QueueClient:
    """Get or create queue client singleton."""
    global _queue_client
    if _queue_client is None:
        _queue_client = QueueClient()
    return _queue_client
