"""
Payment reconciliation.

Processor webhooks are applied to local state exactly once. Records are found
only by the processor's own object id, and every write is a conditional update
that cannot move a record out of ``paid`` or set a milestone flag twice, so
replayed and out-of-order deliveries are harmless.
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pymongo import ReturnDocument

from database import create_document, get_documents, now_utc, oid
from errors import NotFoundError
from orders import mirror_to_order
from schemas import DeadLetter, IntentStatus, Milestone, TERMINAL_INTENT_STATUSES

logger = logging.getLogger(__name__)

RECORDS = "paymentintentrecord"
BUILDS = "build"
DEAD_LETTERS = "deadletter"


class PaymentEvent(str, Enum):
    payment_intent_succeeded = "payment_intent.succeeded"
    payment_intent_failed = "payment_intent.payment_failed"
    invoice_paid = "invoice.paid"
    invoice_payment_succeeded = "invoice.payment_succeeded"
    invoice_payment_failed = "invoice.payment_failed"
    setup_intent_succeeded = "setup_intent.succeeded"
    setup_intent_failed = "setup_intent.setup_failed"


def plan_milestones(plan: Optional[dict]):
    if (plan or {}).get("type") == "full":
        return [Milestone.full.value]
    return [Milestone.deposit.value, Milestone.final.value]


# Milestone transitions

def mark_milestone_paid(db, build_id: str, milestone: str, at=None) -> bool:
    """Set the milestone flag once. Returns False if it was already paid."""
    at = at or now_utc()
    result = db[BUILDS].update_one(
        {"_id": oid(build_id), f"payment.{milestone}_paid": {"$ne": True}},
        {
            "$set": {
                f"payment.{milestone}_paid": True,
                f"payment.{milestone}_paid_at": at,
                "payment.status": f"{milestone}_paid",
                "updated_at": at,
            },
            "$inc": {"version": 1},
        },
    )
    if result.modified_count == 0:
        logger.info(f"Build {build_id} milestone {milestone} already paid, skipping")
        return False

    build = db[BUILDS].find_one({"_id": oid(build_id)})
    payment = build.get("payment") or {}
    if all(payment.get(f"{m}_paid") for m in plan_milestones(payment.get("plan"))):
        db[BUILDS].update_one(
            {"_id": build["_id"], "payment.fully_paid_at": None},
            {"$set": {"payment.status": "fully_paid", "payment.fully_paid_at": at}, "$inc": {"version": 1}},
        )
        build = db[BUILDS].find_one({"_id": build["_id"]})
        logger.info(f"Build {build_id} is fully paid")

    mirror_to_order(db, build_id, {"payment": build.get("payment") or {}}, event=f"{milestone}_paid")
    logger.info(f"Build {build_id} milestone {milestone} marked paid")
    return True


def mark_milestone_failed(db, build_id: str, milestone: str, error: Optional[str]) -> bool:
    result = db[BUILDS].update_one(
        {"_id": oid(build_id), f"payment.{milestone}_paid": {"$ne": True}},
        {
            "$set": {"payment.status": f"{milestone}_failed", "payment.last_error": error, "updated_at": now_utc()},
            "$inc": {"version": 1},
        },
    )
    if result.modified_count:
        build = db[BUILDS].find_one({"_id": oid(build_id)})
        mirror_to_order(db, build_id, {"payment": build.get("payment") or {}}, event=f"{milestone}_failed")
        logger.warning(f"Build {build_id} milestone {milestone} payment failed: {error}")
    return bool(result.modified_count)


def settle_record(db, provider_ref: str, paid: bool, error: Optional[str] = None, amount: Optional[int] = None) -> Optional[dict]:
    """
    Move the record for ``provider_ref`` to paid or payment_failed.

    A failed attempt can still be followed by a successful one on the same
    intent or invoice, so only ``paid`` closes a record.
    """
    now = now_utc()
    if paid:
        changes = {"status": IntentStatus.paid.value, "paid_at": now, "updated_at": now}
        open_statuses = {"$ne": IntentStatus.paid.value}
    else:
        changes = {"status": IntentStatus.payment_failed.value, "failed_at": now, "last_error": error, "updated_at": now}
        open_statuses = {"$nin": list(TERMINAL_INTENT_STATUSES)}

    record = db[RECORDS].find_one_and_update(
        {"provider_ref": provider_ref, "status": open_statuses},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if record is None:
        logger.info(f"No open payment record for {provider_ref}, nothing to apply")
        return None

    if paid and amount is not None and amount != record.get("expected_amount"):
        logger.warning(
            f"Payment {provider_ref} settled {amount} cents, expected {record.get('expected_amount')} "
            f"for build {record['build_id']} {record['milestone']}"
        )

    if paid:
        mark_milestone_paid(db, record["build_id"], record["milestone"], now)
    else:
        mark_milestone_failed(db, record["build_id"], record["milestone"], error)
    return record


# Event handlers

def _failure_message(obj: dict) -> Optional[str]:
    err = obj.get("last_payment_error") or obj.get("last_setup_error") or {}
    return err.get("message") or err.get("code")


def on_payment_succeeded(db, obj: dict):
    return settle_record(db, obj["id"], paid=True, amount=obj.get("amount_received"))


def on_payment_failed(db, obj: dict):
    return settle_record(db, obj["id"], paid=False, error=_failure_message(obj))


def on_invoice_paid(db, obj: dict):
    return settle_record(db, obj["id"], paid=True, amount=obj.get("amount_paid"))


def on_invoice_failed(db, obj: dict):
    return settle_record(db, obj["id"], paid=False, error="invoice_payment_failed")


def on_setup_succeeded(db, obj: dict):
    changes = {"payment.ach.verified": True, "updated_at": now_utc()}
    if obj.get("payment_method"):
        changes["payment.ach.payment_method_id"] = obj["payment_method"]
    result = db[BUILDS].update_one(
        {"payment.ach.setup_intent_id": obj["id"], "payment.ach.verified": {"$ne": True}},
        {"$set": changes, "$inc": {"version": 1}},
    )
    if result.modified_count:
        logger.info(f"Bank account verified for setup intent {obj['id']}")
    return result.modified_count


def on_setup_failed(db, obj: dict):
    result = db[BUILDS].update_one(
        {"payment.ach.setup_intent_id": obj["id"], "payment.ach.verified": {"$ne": True}},
        {"$set": {"payment.ach.last_error": _failure_message(obj), "updated_at": now_utc()}, "$inc": {"version": 1}},
    )
    if result.modified_count:
        logger.warning(f"Bank account setup {obj['id']} failed")
    return result.modified_count


PAYMENT_HANDLERS: Dict[PaymentEvent, Callable[[Any, dict], Any]] = {
    PaymentEvent.payment_intent_succeeded: on_payment_succeeded,
    PaymentEvent.payment_intent_failed: on_payment_failed,
    PaymentEvent.invoice_paid: on_invoice_paid,
    PaymentEvent.invoice_payment_succeeded: on_invoice_paid,
    PaymentEvent.invoice_payment_failed: on_invoice_failed,
    PaymentEvent.setup_intent_succeeded: on_setup_succeeded,
    PaymentEvent.setup_intent_failed: on_setup_failed,
}

_unhandled = set(PaymentEvent) - set(PAYMENT_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Payment events without a handler: {sorted(e.value for e in _unhandled)}")


def parse_payment_event(event: Any):
    """Return (PaymentEvent, data object) or None for anything we don't reconcile."""
    if not isinstance(event, dict):
        return None
    try:
        kind = PaymentEvent(event.get("type"))
    except ValueError:
        return None
    obj = (event.get("data") or {}).get("object")
    if not isinstance(obj, dict) or not obj.get("id"):
        return None
    return kind, obj


def handle_payment_event(db, event: dict) -> str:
    parsed = parse_payment_event(event)
    if parsed is None:
        logger.info(f"Ignoring payment event {event.get('type') if isinstance(event, dict) else None!r}")
        return "ignored"
    kind, obj = parsed
    logger.info(f"Applying payment event {kind.value} for {obj['id']}")
    PAYMENT_HANDLERS[kind](db, obj)
    return "processed"


# Dead letters

def record_dead_letter(db, source: str, payload: dict, error: Exception) -> str:
    letter = DeadLetter(source=source, payload=payload, error=f"{type(error).__name__}: {error}")
    return create_document(db, DEAD_LETTERS, letter)


def process_webhook(db, source: str, payload: dict, handler: Callable[[dict], Any]) -> dict:
    """
    Run a webhook handler. Failures are logged and parked in the dead-letter
    log; the provider still gets an acknowledgement.
    """
    try:
        outcome = handler(payload)
    except Exception as e:
        logger.exception(f"{source} webhook processing failed")
        letter_id = record_dead_letter(db, source, payload, e)
        return {"received": True, "dead_letter_id": letter_id}
    return {"received": True, "outcome": outcome}


def list_dead_letters(db, status: Optional[str] = None):
    return get_documents(db, DEAD_LETTERS, {"status": status} if status else {})


def replay_dead_letter(db, letter_id: str, handlers: Dict[str, Callable[[dict], Any]]) -> dict:
    letter = db[DEAD_LETTERS].find_one({"_id": oid(letter_id)})
    if not letter:
        raise NotFoundError("not_found", "Dead letter not found")
    if letter.get("status") == "replayed":
        return letter

    try:
        handlers[letter["source"]](letter["payload"])
    except Exception as e:
        logger.exception(f"Replay of dead letter {letter_id} failed")
        db[DEAD_LETTERS].update_one(
            {"_id": letter["_id"]},
            {"$set": {"error": f"{type(e).__name__}: {e}", "updated_at": now_utc()}, "$inc": {"attempts": 1}},
        )
    else:
        db[DEAD_LETTERS].update_one(
            {"_id": letter["_id"]},
            {"$set": {"status": "replayed", "updated_at": now_utc()}, "$inc": {"attempts": 1}},
        )
        logger.info(f"Dead letter {letter_id} replayed")
    return db[DEAD_LETTERS].find_one({"_id": letter["_id"]})
