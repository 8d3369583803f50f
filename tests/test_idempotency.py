import pytest

from errors import ConflictError
from idempotency import COLLECTION, IdempotencyGuard
from database import now_utc


class Counter:
    def __init__(self, result=None, error=None):
        self.calls = 0
        self.result = result
        self.error = error

    def __call__(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result if self.result is not None else {"n": self.calls}


def test_without_key_runs_every_time(db):
    guard = IdempotencyGuard(db)
    fn = Counter()
    guard.run(None, fn)
    guard.run("", fn)
    assert fn.calls == 2


def test_same_key_executes_once(db):
    guard = IdempotencyGuard(db)
    fn = Counter()
    results = [guard.run("key-1", fn) for _ in range(5)]
    assert fn.calls == 1
    assert all(r == {"n": 1} for r in results)
    assert db[COLLECTION].count_documents({"key": "key-1", "status": "done"}) == 1


def test_failure_releases_key_for_retry(db):
    guard = IdempotencyGuard(db)
    with pytest.raises(RuntimeError):
        guard.run("key-2", Counter(error=RuntimeError("boom")))
    assert db[COLLECTION].count_documents({"key": "key-2"}) == 0

    fn = Counter(result={"ok": True})
    assert guard.run("key-2", fn) == {"ok": True}
    assert fn.calls == 1


def test_duplicate_waits_for_in_flight_result(db):
    db[COLLECTION].insert_one({"key": "key-3", "status": "pending", "result": None, "created_at": now_utc()})

    def finish_other_request(_):
        db[COLLECTION].update_one({"key": "key-3"}, {"$set": {"status": "done", "result": {"order": "abc"}}})

    guard = IdempotencyGuard(db, wait_seconds=1, poll_interval=0.1, sleep=finish_other_request)
    fn = Counter()
    assert guard.run("key-3", fn) == {"order": "abc"}
    assert fn.calls == 0


def test_duplicate_gives_up_with_conflict(db):
    db[COLLECTION].insert_one({"key": "key-4", "status": "pending", "result": None, "created_at": now_utc()})
    guard = IdempotencyGuard(db, wait_seconds=0.3, poll_interval=0.1, sleep=lambda _: None)
    fn = Counter()
    with pytest.raises(ConflictError) as exc:
        guard.run("key-4", fn)
    assert exc.value.code == "idempotency_in_flight"
    assert fn.calls == 0
