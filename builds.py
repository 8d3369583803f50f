"""
Build state machine.

A build is a customer's in-progress configuration. Checkout progress is an
integer step from 1 to 8; advancing is gated on the stored build, retreating
is always allowed.
"""
import logging
from typing import List, Optional

from auth import AuthContext, ensure_owner
from database import create_document, get_documents, oid, update_versioned
from delivery import DeliveryQuoter
from errors import ConflictError, ValidationError
from pricing import compute_pricing
from schemas import Build, BuildCreate, BuildPatch, BuildStatus, ContractStatus

logger = logging.getLogger(__name__)

COLLECTION = "build"

MIN_STEP = 1
MAX_STEP = 8
BUYER_INFO_STEP = 4
PAYMENT_METHOD_STEP = 6
CONFIRMATION_STEP = 7

REQUIRED_BUYER_FIELDS = ("first_name", "last_name", "email", "address")


def missing_buyer_fields(build: dict) -> List[str]:
    buyer = build.get("buyer_info") or {}
    return [f for f in REQUIRED_BUYER_FIELDS if not str(buyer.get(f) or "").strip()]


def check_step_gates(build: dict, target: int) -> None:
    """Raise the first gate the current build fails for ``target``."""
    if not isinstance(target, int) or isinstance(target, bool) or not MIN_STEP <= target <= MAX_STEP:
        raise ValidationError("invalid_step", f"Step must be between {MIN_STEP} and {MAX_STEP}")

    current = int(build.get("step") or MIN_STEP)
    if target <= current:
        return

    if target >= BUYER_INFO_STEP:
        missing = missing_buyer_fields(build)
        if missing:
            raise ValidationError("incomplete_buyer", f"Buyer information is incomplete: {', '.join(missing)}")
    if target >= PAYMENT_METHOD_STEP:
        if not (build.get("financing") or {}).get("method"):
            raise ValidationError("missing_payment_method", "Select a payment method before continuing")
    if target >= CONFIRMATION_STEP:
        if (build.get("contract") or {}).get("status") != ContractStatus.signed.value:
            raise ValidationError("contract_not_signed", "The purchase agreement must be signed before continuing")


def advance(db, build: dict, target: int) -> dict:
    check_step_gates(build, target)
    if target == build.get("step"):
        return build
    updated = update_versioned(db, COLLECTION, build, {"step": target})
    logger.info(f"Build {build['_id']} moved from step {build.get('step')} to {target}")
    return updated


def delivery_destination(buyer: dict) -> str:
    if buyer.get("delivery_address"):
        return buyer["delivery_address"].strip()
    parts = [buyer.get("address"), buyer.get("city"), buyer.get("state"), buyer.get("zip")]
    return ", ".join(p.strip() for p in parts if p and p.strip())


# CRUD

def get_owned_build(db, build_id: str, auth: AuthContext) -> dict:
    doc = db[COLLECTION].find_one({"_id": oid(build_id)})
    return ensure_owner(doc, auth, "build")


def list_builds(db, auth: AuthContext, limit: int = 100) -> List[dict]:
    return get_documents(db, COLLECTION, {"user_id": auth.user_id}, limit=limit)


def create_build(db, auth: AuthContext, payload: BuildCreate, settings: dict, quoter: Optional[DeliveryQuoter] = None) -> dict:
    build = Build(
        user_id=auth.user_id,
        model_slug=payload.model_slug,
        model_name=payload.model_name,
        selections=payload.selections,
        buyer_info=payload.buyer_info,
        financing=payload.financing,
    ).model_dump()
    build["payment"]["method"] = build["financing"].get("method")

    destination = delivery_destination(build["buyer_info"])
    if destination and quoter is not None:
        build["delivery"] = quoter.quote_or_fallback(destination, settings).as_delivery()
    if build["selections"].get("base_price"):
        build["status"] = BuildStatus.configured.value
    build["pricing"] = compute_pricing(build, settings).model_dump()

    build_id = create_document(db, COLLECTION, build)
    logger.info(f"Build {build_id} created for user {auth.user_id}")
    return db[COLLECTION].find_one({"_id": oid(build_id)})


def patch_build(db, build: dict, patch: BuildPatch, settings: dict, quoter: Optional[DeliveryQuoter] = None) -> dict:
    if patch.version is not None and patch.version != build.get("version", 0):
        raise ConflictError("stale_build", "The build was modified concurrently, reload and retry")

    data = patch.model_dump(exclude_unset=True, exclude={"version"})
    changes = {}
    for field in ("model_slug", "model_name"):
        if data.get(field) is not None:
            changes[field] = data[field].strip()
    if patch.selections is not None:
        changes["selections"] = patch.selections.model_dump()
    if patch.financing is not None:
        changes["financing"] = patch.financing.model_dump()
        changes["payment.method"] = changes["financing"].get("method")
    if patch.buyer_info is not None:
        changes["buyer_info"] = patch.buyer_info.model_dump()

    merged = {**build, **{k: v for k, v in changes.items() if "." not in k}}

    old_destination = delivery_destination(build.get("buyer_info") or {})
    new_destination = delivery_destination(merged.get("buyer_info") or {})
    if new_destination and quoter is not None and new_destination != old_destination:
        changes["delivery"] = quoter.quote_or_fallback(new_destination, settings).as_delivery()
        merged["delivery"] = changes["delivery"]

    if build.get("status") == BuildStatus.draft.value and (merged.get("selections") or {}).get("base_price"):
        changes["status"] = BuildStatus.configured.value

    changes["pricing"] = compute_pricing(merged, settings).model_dump()
    return update_versioned(db, COLLECTION, build, changes)


def reprice(db, build: dict, settings: dict) -> dict:
    pricing = compute_pricing(build, settings).model_dump()
    if pricing == build.get("pricing"):
        return build
    return update_versioned(db, COLLECTION, build, {"pricing": pricing})


def duplicate_build(db, build: dict, auth: AuthContext, settings: dict) -> dict:
    copy = Build(
        user_id=auth.user_id,
        model_slug=build.get("model_slug", ""),
        model_name=f"{build.get('model_name') or 'Build'} (copy)",
        selections=build.get("selections") or {},
        buyer_info=build.get("buyer_info") or {},
        delivery=build.get("delivery") or {},
        financing=build.get("financing") or {},
    ).model_dump()
    copy["payment"]["method"] = copy["financing"].get("method")
    if copy["selections"].get("base_price"):
        copy["status"] = BuildStatus.configured.value
    copy["pricing"] = compute_pricing(copy, settings).model_dump()
    new_id = create_document(db, COLLECTION, copy)
    logger.info(f"Build {build['_id']} duplicated as {new_id}")
    return db[COLLECTION].find_one({"_id": oid(new_id)})


def delete_build(db, build: dict) -> None:
    status = build.get("status")
    payment = build.get("payment") or {}
    if status not in (BuildStatus.draft.value, BuildStatus.configured.value) or payment.get("ready"):
        raise ConflictError("build_locked", "Builds with payment or contract activity cannot be deleted")
    db[COLLECTION].delete_one({"_id": build["_id"], "version": build.get("version", 0)})
    logger.info(f"Build {build['_id']} deleted")


def set_payment_method(db, build: dict, method: str) -> dict:
    updated = update_versioned(db, COLLECTION, build, {"financing.method": method, "payment.method": method})
    logger.info(f"Build {build['_id']} payment method set to {method}")
    return updated
