"""
Contract submission and e-signature reconciliation.
"""
import hmac
import logging
from typing import Any, Dict, List, Optional

import requests
from pymongo.errors import DuplicateKeyError

from builds import missing_buyer_fields
from config import Config
from database import create_document, now_utc, oid, update_with_retry
from errors import AuthError, ConfigurationError, ConflictError, NotFoundError, UpstreamError, ValidationError
from org_settings import get_org_settings
from orders import materialize_order, mirror_to_order
from schemas import BuildStatus, ContractStatus, ContractSubmission, SignedDocument, SubmissionStatus

logger = logging.getLogger(__name__)

BUILDS = "build"
SIGNED_DOCUMENTS = "signeddocument"
PURCHASE_AGREEMENT = "purchase_agreement"
TEMPLATE_KEYS = (PURCHASE_AGREEMENT, "delivery")

# ready -> signing -> completed | voided
STATUS_RANK = {
    SubmissionStatus.ready.value: 0,
    SubmissionStatus.signing.value: 1,
    SubmissionStatus.completed.value: 2,
    SubmissionStatus.voided.value: 2,
}

EVENT_STATUS = {
    "created": SubmissionStatus.ready.value,
    "started": SubmissionStatus.signing.value,
    "opened": SubmissionStatus.signing.value,
    "completed": SubmissionStatus.completed.value,
    "declined": SubmissionStatus.voided.value,
    "expired": SubmissionStatus.voided.value,
}

OPEN_STATUSES = (SubmissionStatus.ready.value, SubmissionStatus.signing.value)

# a start claim older than this is treated as abandoned
START_CLAIM_SECONDS = 120


class ESignClient:
    def __init__(self, api_base: str, api_key: Optional[str], timeout: float = 15, session=None):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Config) -> "ESignClient":
        return cls(config.docuseal_api_base, config.docuseal_api_key, timeout=config.external_timeout_seconds)

    def _headers(self) -> dict:
        if not self.api_key:
            raise ConfigurationError("DOCUSEAL_API_KEY is not configured")
        return {"X-Auth-Token": self.api_key, "Content-Type": "application/json"}

    def create_submission(self, template_id: str, prefill: List[dict], submitter: dict,
                          completed_redirect_url: Optional[str] = None) -> Dict[str, str]:
        body = {
            "template_id": int(template_id) if str(template_id).isdigit() else template_id,
            "send_email": False,
            "order": "preserved",
            "completed_redirect_url": completed_redirect_url,
            "submitters": [{**submitter, "fields": prefill}],
        }
        try:
            res = self.session.post(f"{self.api_base}/submissions", json=body, headers=self._headers(), timeout=self.timeout)
            res.raise_for_status()
            data = res.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"E-sign submission for template {template_id} failed: {e}")
            raise UpstreamError("upstream_failure", "The signing service could not create the document")

        first = data[0] if isinstance(data, list) and data else data if isinstance(data, dict) else {}
        submission_id = first.get("submission_id") or first.get("id")
        signer_url = first.get("embed_src") or first.get("url")
        if not submission_id or not signer_url:
            logger.error(f"E-sign submission response for template {template_id} had no submission id or url")
            raise UpstreamError("upstream_failure", "The signing service returned an unexpected response")
        return {"submission_id": str(submission_id), "signer_url": signer_url}

    def document_url(self, submission_id: str) -> Optional[str]:
        try:
            res = self.session.get(f"{self.api_base}/submissions/{submission_id}/documents",
                                   headers=self._headers(), timeout=self.timeout)
            res.raise_for_status()
            documents = res.json().get("documents") or []
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Document lookup for submission {submission_id} failed: {e}")
            raise UpstreamError("upstream_failure", "The signing service could not list the signed documents")
        return documents[0].get("url") if documents else None

    def download(self, url: str) -> bytes:
        try:
            res = self.session.get(url, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Signed document download failed: {e}")
            raise UpstreamError("upstream_failure", "The signed document could not be downloaded")
        return res.content


def _money(value: Any) -> str:
    return f"{float(value or 0):.2f}"


def build_prefill(order: dict, settings: dict) -> Dict[str, Any]:
    """Map an order snapshot onto the agreement template's named fields."""
    buyer = order.get("buyer_info") or {}
    co_buyer = buyer.get("co_buyer") or {}
    pricing = order.get("pricing") or {}
    delivery = order.get("delivery") or {}
    snapshot = order.get("pricing_snapshot") or (settings.get("pricing") or {})
    options = (order.get("selections") or {}).get("options") or []
    created = order.get("created_at") or now_utc()

    quantities = [int(o.get("quantity") or 1) for o in options]
    unit_prices = [float(o.get("unit_price") or 0) for o in options]

    return {
        "order_number": str(order.get("_id", "")),
        "order_date": created.strftime("%Y-%m-%d"),
        "buyer1_full_name": " ".join(p for p in (buyer.get("first_name"), buyer.get("last_name")) if p),
        "buyer1_email": buyer.get("email") or "",
        "buyer1_phone": buyer.get("phone") or "",
        "buyer1_mailing_address": ", ".join(p for p in (buyer.get("address"), buyer.get("city"), buyer.get("state"), buyer.get("zip")) if p),
        "buyer2_full_name": co_buyer.get("full_name") or "",
        "buyer2_email": co_buyer.get("email") or "",
        "buyer2_phone": co_buyer.get("phone") or "",
        "buyer2_mailing_address": co_buyer.get("address") or "",
        "delivery_address": delivery.get("address") or buyer.get("delivery_address") or "",
        "brand": (settings.get("factory") or {}).get("name") or "",
        "model_no": (order.get("model") or {}).get("slug") or "",
        "model_name": (order.get("model") or {}).get("name") or "",
        "option_description": [o.get("label") or o.get("key") or "" for o in options],
        "option_quantity": quantities,
        "option_unit_price": [_money(p) for p in unit_prices],
        "option_line_total": [_money(p * q) for p, q in zip(unit_prices, quantities)],
        "base_price": _money(pricing.get("base")),
        "options_subtotal": _money(pricing.get("options_subtotal")),
        "delivery_fee": _money(pricing.get("delivery_fee")),
        "title_fee": _money(pricing.get("title_fee")),
        "setup_fee": _money(pricing.get("setup_fee")),
        "tax_rate": f"{float(pricing.get('tax_rate_percent') or snapshot.get('tax_rate_percent') or 0):g}",
        "sales_tax": _money(pricing.get("sales_tax")),
        "total_purchase_price": _money(pricing.get("total")),
        "deposit_percent": f"{float(pricing.get('deposit_percent') or snapshot.get('deposit_percent') or 0):g}",
        "deposit_due_amount": _money(pricing.get("deposit_due")),
        "final_payment_total": _money(pricing.get("final_payment")),
        "delivery_miles": f"{float(delivery.get('miles') or 0):g}",
        "delivery_rate_per_mile": _money(snapshot.get("delivery_rate_per_mile")),
    }


def prefill_fields(prefill: Dict[str, Any]) -> List[dict]:
    fields = []
    for name, value in prefill.items():
        if isinstance(value, list):
            value = "\n".join(str(v) for v in value)
        fields.append({"name": name, "default_value": "" if value is None else str(value), "readonly": True})
    return fields


def derive_contract_status(submissions: List[dict]) -> str:
    agreements = [s for s in submissions if s.get("template_key") == PURCHASE_AGREEMENT]
    if not agreements:
        return ContractStatus.none.value
    latest = agreements[-1]["status"]
    if latest == SubmissionStatus.completed.value:
        return ContractStatus.signed.value
    return latest


def submission_id_from_event(payload: dict) -> Optional[str]:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    candidates = [data.get("submission_id"), (data.get("submission") or {}).get("id")]
    if str(payload.get("event_type") or "").startswith("submission."):
        candidates.append(data.get("id"))
    candidates.append(payload.get("submission_id"))
    for value in candidates:
        if value not in (None, ""):
            return str(value)
    return None


def status_for_event(event_type: str) -> Optional[str]:
    suffix = str(event_type or "").rsplit(".", 1)[-1]
    return EVENT_STATUS.get(suffix)


def _open_submission(build: dict, template_key: str) -> Optional[dict]:
    for submission in (build.get("contract") or {}).get("submissions") or []:
        if submission.get("template_key") == template_key and submission.get("status") in OPEN_STATUSES:
            logger.info(f"Reusing contract submission {submission['submission_id']} for build {build['_id']}")
            return {"submission_id": submission["submission_id"], "signer_url": submission["signer_url"], "reused": True}
    return None


class ContractService:
    def __init__(self, db, config: Config, client: ESignClient):
        self.db = db
        self.config = config
        self.client = client
        self.db[SIGNED_DOCUMENTS].create_index("submission_id", unique=True)

    def verify_signature(self, header: Optional[str]) -> None:
        secret = self.config.docuseal_webhook_secret
        if not secret:
            raise ConfigurationError("DOCUSEAL_WEBHOOK_SECRET is not configured")
        if not header or not hmac.compare_digest(header.encode(), secret.encode()):
            logger.warning("Contract webhook rejected: signature mismatch")
            raise AuthError("invalid_signature", "Invalid webhook signature")

    def _claim_start(self, build: dict, template_key: str) -> None:
        """Reserve the right to create a submission; one caller per build and template."""
        field = f"contract_starts.{template_key}"
        now = now_utc().timestamp()
        result = self.db[BUILDS].update_one(
            {"_id": build["_id"], "$or": [{field: None}, {field: {"$lt": now - START_CLAIM_SECONDS}}]},
            {"$set": {field: now}},
        )
        if not result.modified_count:
            raise ConflictError("contract_start_in_flight", "This contract is already being prepared, retry shortly")

    def _release_start(self, build: dict, template_key: str) -> None:
        self.db[BUILDS].update_one({"_id": build["_id"]}, {"$unset": {f"contract_starts.{template_key}": ""}})

    def start(self, build: dict, template_key: str) -> dict:
        if template_key not in TEMPLATE_KEYS:
            raise NotFoundError("unknown_template", f"Unknown contract template: {template_key}")
        template_id = self.config.template_id(template_key)
        missing = missing_buyer_fields(build)
        if missing:
            raise ValidationError("incomplete_buyer", f"Buyer information is incomplete: {', '.join(missing)}")
        if not (build.get("payment") or {}).get("ready"):
            raise ValidationError("payment_not_ready", "Set up payment before signing")

        reused = _open_submission(build, template_key)
        if reused:
            return reused

        self._claim_start(build, template_key)
        try:
            # another caller may have finished between the scan and the claim
            build = self.db[BUILDS].find_one({"_id": build["_id"]})
            reused = _open_submission(build, template_key)
            if reused:
                return reused
            return self._create_submission(build, template_key, template_id)
        finally:
            self._release_start(build, template_key)

    def _create_submission(self, build: dict, template_key: str, template_id: str) -> dict:
        settings = get_org_settings(self.db, self.config)
        order = materialize_order(self.db, build, settings)
        buyer = build.get("buyer_info") or {}
        submitter = {
            "role": "Buyer",
            "email": buyer.get("email"),
            "name": " ".join(p for p in (buyer.get("first_name"), buyer.get("last_name")) if p),
        }
        created = self.client.create_submission(
            template_id,
            prefill_fields(build_prefill(order, settings)),
            submitter,
            completed_redirect_url=f"{self.config.app_url.rstrip('/')}/checkout/{build['_id']}/confirm",
        )
        submission = ContractSubmission(
            template_key=template_key,
            template_id=str(template_id),
            submission_id=created["submission_id"],
            signer_url=created["signer_url"],
            created_at=now_utc(),
        ).model_dump()

        def mutate(doc):
            contract = doc.get("contract") or {}
            submissions = list(contract.get("submissions") or []) + [submission]
            changes = {
                "contract.submissions": submissions,
                "contract.status": derive_contract_status(submissions),
            }
            if doc.get("status") != BuildStatus.contract_signed.value and template_key == PURCHASE_AGREEMENT:
                changes["status"] = BuildStatus.contract_pending.value
            return changes

        fresh = update_with_retry(self.db, BUILDS, build["_id"], mutate)
        mirror_to_order(self.db, str(build["_id"]), {"contract": fresh["contract"]}, event=f"{template_key}_sent")
        logger.info(f"Contract submission {created['submission_id']} created for build {build['_id']} ({template_key})")
        return {"submission_id": created["submission_id"], "signer_url": created["signer_url"], "reused": False}

    def status(self, build: dict) -> dict:
        contract = build.get("contract") or {}
        return {
            "build_id": str(build["_id"]),
            "status": contract.get("status", ContractStatus.none.value),
            "submissions": [
                {k: s.get(k) for k in ("template_key", "submission_id", "signer_url", "status", "completed_at")}
                for s in contract.get("submissions") or []
            ],
        }

    def handle_event(self, payload: Any) -> str:
        """Apply one provider event. Unknown or malformed events change nothing."""
        if not isinstance(payload, dict):
            return "ignored"
        event_type = str(payload.get("event_type") or payload.get("type") or "")
        submission_id = submission_id_from_event(payload)
        if not submission_id:
            logger.info(f"Contract event {event_type!r} has no submission id, ignoring")
            return "ignored"

        build = self.db[BUILDS].find_one({"contract.submissions.submission_id": submission_id})
        if build is None:
            logger.info(f"Contract event {event_type!r} for unknown submission {submission_id}, ignoring")
            return "ignored"

        target = status_for_event(event_type)
        transitioned = {}

        def mutate(doc):
            contract = doc.get("contract") or {}
            submissions = [dict(s) for s in contract.get("submissions") or []]
            events = list(contract.get("events") or [])
            now = now_utc()
            transitioned.clear()
            for s in submissions:
                if s.get("submission_id") != submission_id:
                    continue
                if target and STATUS_RANK[target] > STATUS_RANK.get(s.get("status"), 0):
                    transitioned["from"] = s.get("status")
                    transitioned["template_key"] = s.get("template_key")
                    s["status"] = target
                    if target == SubmissionStatus.completed.value:
                        s["completed_at"] = now
            events.append({"version": len(events) + 1, "type": event_type, "submission_id": submission_id, "at": now})
            status = derive_contract_status(submissions)
            changes = {"contract.submissions": submissions, "contract.events": events, "contract.status": status}
            if status == ContractStatus.signed.value and doc.get("status") in (
                BuildStatus.draft.value, BuildStatus.configured.value,
                BuildStatus.payment_pending.value, BuildStatus.contract_pending.value,
            ):
                changes["status"] = BuildStatus.contract_signed.value
            return changes

        fresh = update_with_retry(self.db, BUILDS, build["_id"], mutate)
        mirror_to_order(self.db, str(build["_id"]), {"contract": fresh["contract"]}, event=f"contract_{target or event_type}")

        if target == SubmissionStatus.completed.value:
            if transitioned:
                logger.info(f"Contract submission {submission_id} completed for build {build['_id']}")
            # redeliveries retry an archive that never finished; the claim keeps it to one download
            current = next(s for s in fresh["contract"]["submissions"] if s.get("submission_id") == submission_id)
            if current.get("status") == SubmissionStatus.completed.value and not current.get("document_id"):
                self.archive_signed_document(fresh, submission_id, current.get("template_key"), payload)
        elif transitioned:
            logger.info(f"Contract submission {submission_id} {transitioned['from']} -> {target}")
        return "processed"

    def archive_signed_document(self, build: dict, submission_id: str, template_key: str, payload: dict) -> Optional[str]:
        try:
            doc_id = create_document(self.db, SIGNED_DOCUMENTS, SignedDocument(
                build_id=str(build["_id"]),
                submission_id=submission_id,
                template_key=template_key,
            ))
        except DuplicateKeyError:
            logger.info(f"Signed document for submission {submission_id} is already archived or in progress")
            return None

        try:
            data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
            documents = data.get("documents") or []
            url = documents[0].get("url") if documents else None
            if not url:
                url = self.client.document_url(submission_id)
            content = self.client.download(url) if url else None
        except Exception:
            self.db[SIGNED_DOCUMENTS].delete_one({"_id": oid(doc_id)})
            raise
        if content is None:
            self.db[SIGNED_DOCUMENTS].delete_one({"_id": oid(doc_id)})
            logger.warning(f"No signed document available for submission {submission_id}")
            return None

        self.db[SIGNED_DOCUMENTS].update_one(
            {"_id": oid(doc_id)},
            {"$set": {"status": "archived", "source_url": url, "content": content, "updated_at": now_utc()}},
        )

        def mutate(doc):
            submissions = [dict(s) for s in (doc.get("contract") or {}).get("submissions") or []]
            for s in submissions:
                if s.get("submission_id") == submission_id:
                    s["document_id"] = doc_id
            return {"contract.submissions": submissions}

        update_with_retry(self.db, BUILDS, build["_id"], mutate)
        logger.info(f"Signed document {doc_id} archived for submission {submission_id}")
        return doc_id
