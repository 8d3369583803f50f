"""
Idempotency guard.

A client-supplied key is claimed by inserting a ``pending`` record under a
unique index; whoever wins the insert runs the operation and stores its
result. Later callers with the same key get the stored result back.
"""
import logging
import time
from typing import Any, Callable, Optional

from pymongo.errors import DuplicateKeyError

from database import now_utc
from errors import ConflictError

logger = logging.getLogger(__name__)

COLLECTION = "idempotencyrecord"


class IdempotencyGuard:
    def __init__(self, db, wait_seconds: float = 5.0, poll_interval: float = 0.1, sleep: Callable[[float], None] = time.sleep):
        self.col = db[COLLECTION]
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.col.create_index("key", unique=True)

    def run(self, key: Optional[str], fn: Callable[[], Any]) -> Any:
        if not key:
            return fn()

        try:
            self.col.insert_one({"key": key, "status": "pending", "result": None, "created_at": now_utc()})
        except DuplicateKeyError:
            return self._await_existing(key)

        try:
            result = fn()
        except Exception:
            # release the claim so a retry with the same key can run again
            self.col.delete_one({"key": key, "status": "pending"})
            raise

        self.col.update_one({"key": key}, {"$set": {"status": "done", "result": result}})
        return result

    def _await_existing(self, key: str) -> Any:
        waited = 0.0
        while True:
            record = self.col.find_one({"key": key})
            if record is None:
                # the owner failed and released the key
                raise ConflictError("idempotency_retry", "A previous attempt with this key failed, retry the request")
            if record.get("status") == "done":
                logger.info(f"Idempotency key {key} replayed stored result")
                return record.get("result")
            if waited >= self.wait_seconds:
                raise ConflictError("idempotency_in_flight", "A request with this Idempotency-Key is still being processed")
            self.sleep(self.poll_interval)
            waited += self.poll_interval
