"""
Order projection.

An order is a point-in-time copy of a build taken at checkout. Its pricing,
buyer, delivery and selections are never recomputed from the live build; only
status, contract and payment move afterwards.
"""
import logging
from typing import List, Optional

from auth import AuthContext, ensure_owner
from database import get_documents, now_utc, oid, serialize
from idempotency import IdempotencyGuard
from schemas import Order, TimelineEvent

logger = logging.getLogger(__name__)

COLLECTION = "order"


def snapshot_order(build: dict, settings: dict) -> Order:
    return Order(
        user_id=build["user_id"],
        build_id=str(build["_id"]),
        status="created",
        model={"slug": build.get("model_slug", ""), "name": build.get("model_name", "")},
        selections=build.get("selections") or {},
        buyer_info=build.get("buyer_info") or {},
        delivery=build.get("delivery") or {},
        pricing=build.get("pricing") or {},
        pricing_snapshot=dict(settings.get("pricing") or {}),
        contract=build.get("contract") or {},
        payment=build.get("payment") or {},
        timeline=[TimelineEvent(event="order_created", at=now_utc())],
    )


def materialize_order(db, build: dict, settings: dict) -> dict:
    """Return the order for ``build``, creating it on first call."""
    build_id = str(build["_id"])
    existing = db[COLLECTION].find_one({"build_id": build_id})
    if existing:
        return existing

    doc = snapshot_order(build, settings).model_dump()
    doc.pop("build_id")
    now = now_utc()
    doc["created_at"] = now
    doc["updated_at"] = now
    result = db[COLLECTION].update_one({"build_id": build_id}, {"$setOnInsert": doc}, upsert=True)
    if result.upserted_id is not None:
        logger.info(f"Order {result.upserted_id} materialized from build {build_id}")
    return db[COLLECTION].find_one({"build_id": build_id})


def mirror_to_order(db, build_id: str, changes: dict, event: Optional[str] = None) -> bool:
    """Copy payment/contract changes from a build onto its order, if one exists."""
    update = {"$set": {**changes, "updated_at": now_utc()}, "$inc": {"version": 1}}
    if event:
        update["$push"] = {"timeline": {"event": event, "at": now_utc()}}
    result = db[COLLECTION].update_one({"build_id": str(build_id)}, update)
    return result.matched_count > 0


def create_order(db, auth: AuthContext, build: dict, settings: dict, guard: IdempotencyGuard, key: Optional[str]) -> dict:
    ensure_owner(build, auth, "build")
    return guard.run(key, lambda: serialize(materialize_order(db, build, settings)))


def list_orders(db, auth: AuthContext, status: Optional[str] = None, limit: int = 100) -> List[dict]:
    query = {"user_id": auth.user_id}
    if status:
        query["status"] = status
    return get_documents(db, COLLECTION, query, limit=limit)


def list_all_orders(db, status: Optional[str] = None, limit: int = 200) -> List[dict]:
    query = {"status": status} if status else {}
    return get_documents(db, COLLECTION, query, limit=limit)


def get_order(db, order_id: str, auth: AuthContext) -> dict:
    doc = db[COLLECTION].find_one({"_id": oid(order_id)})
    return ensure_owner(doc, auth, "order")


def change_status(db, order: dict, status: str, changed_by: str) -> dict:
    db[COLLECTION].update_one(
        {"_id": order["_id"]},
        {
            "$set": {"status": status, "updated_at": now_utc()},
            "$inc": {"version": 1},
            "$push": {"timeline": {"event": f"status:{status}", "at": now_utc(), "by": changed_by}},
        },
    )
    logger.info(f"Order {order['_id']} status {order.get('status')} -> {status} by {changed_by}")
    return db[COLLECTION].find_one({"_id": order["_id"]})
