"""
Payment provisioning.

``PaymentProcessor`` is a thin wrapper over the stripe SDK so the rest of the
code never touches module-level stripe state; ``PaymentService`` provisions
card, ACH debit and bank-transfer payments for a build's milestones.
"""
import json
import logging
import secrets
from typing import Any, Dict, List, Optional

import stripe

from config import Config
from database import create_document, now_utc, oid, update_with_retry
from errors import AuthError, CardDeclinedError, ConfigurationError, ConflictError, NotFoundError, UpstreamError, ValidationError
from org_settings import get_org_settings
from orders import mirror_to_order
from pricing import compute_pricing, current_milestone, milestone_amount_cents
from reconciliation import plan_milestones, settle_record
from schemas import (
    BuildStatus,
    ContractStatus,
    IntentStatus,
    Milestone,
    PaymentIntentRecord,
    PaymentMethod,
    TERMINAL_INTENT_STATUSES,
)

logger = logging.getLogger(__name__)

RECORDS = "paymentintentrecord"
BUILDS = "build"


def _field(obj: Any, key: str, default=None):
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


class PaymentProcessor:
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None, currency: str = "usd", stripe_client=stripe):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self._stripe = stripe_client

    @classmethod
    def from_config(cls, config: Config) -> "PaymentProcessor":
        return cls(config.stripe_secret_key, config.stripe_webhook_secret, config.currency)

    def _call(self, action: str, fn, *args, **kwargs):
        if not self.api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.CardError as e:
            body = e.json_body or {}
            decline_code = (body.get("error") or {}).get("decline_code") or e.code
            logger.warning(f"Card declined during {action}: {decline_code}")
            raise CardDeclinedError(e.user_message, decline_code)
        except stripe.StripeError as e:
            logger.error(f"Processor call {action} failed: {e}")
            raise UpstreamError("upstream_failure", "The payment processor could not complete the request")

    # Customers and intents

    def create_customer(self, email: Optional[str], name: str, metadata: dict):
        return self._call("create_customer", self._stripe.Customer.create, email=email, name=name, metadata=metadata)

    def create_payment_intent(self, amount: int, customer: str, metadata: dict, idempotency_key: str, save_card: bool = False):
        params = {
            "amount": amount,
            "currency": self.currency,
            "customer": customer,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if save_card:
            params["setup_future_usage"] = "off_session"
        return self._call("create_payment_intent", self._stripe.PaymentIntent.create, **params)

    def charge_off_session(self, amount: int, customer: str, payment_method: str, method_types: List[str], metadata: dict, idempotency_key: str):
        return self._call(
            "charge_off_session",
            self._stripe.PaymentIntent.create,
            amount=amount,
            currency=self.currency,
            customer=customer,
            payment_method=payment_method,
            payment_method_types=method_types,
            off_session=True,
            confirm=True,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    def retrieve_payment_intent(self, intent_id: str):
        return self._call("retrieve_payment_intent", self._stripe.PaymentIntent.retrieve, intent_id)

    def create_setup_intent(self, customer: str, metadata: dict):
        return self._call(
            "create_setup_intent",
            self._stripe.SetupIntent.create,
            customer=customer,
            payment_method_types=["us_bank_account"],
            usage="off_session",
            metadata=metadata,
        )

    def retrieve_setup_intent(self, setup_intent_id: str):
        return self._call("retrieve_setup_intent", self._stripe.SetupIntent.retrieve, setup_intent_id)

    def attach_payment_method(self, payment_method: str, customer: str):
        return self._call("attach_payment_method", self._stripe.PaymentMethod.attach, payment_method, customer=customer)

    # Invoices for customer-initiated bank transfers

    def create_invoice(self, customer: str, amount: int, description: str, metadata: dict):
        invoice = self._call(
            "create_invoice",
            self._stripe.Invoice.create,
            customer=customer,
            collection_method="send_invoice",
            days_until_due=30,
            payment_settings={"payment_method_types": ["customer_balance", "us_bank_account"]},
            metadata=metadata,
        )
        self._call(
            "create_invoice_item",
            self._stripe.InvoiceItem.create,
            customer=customer,
            invoice=invoice["id"],
            amount=amount,
            currency=self.currency,
            description=description,
        )
        return self._call("finalize_invoice", self._stripe.Invoice.finalize_invoice, invoice["id"])

    def retrieve_invoice(self, invoice_id: str):
        return self._call("retrieve_invoice", self._stripe.Invoice.retrieve, invoice_id)

    # Webhooks

    def verify_webhook(self, payload: bytes, sig_header: Optional[str]) -> Optional[dict]:
        """
        Check the Stripe-Signature header and return the event as a plain dict.
        A body that verifies but is not a JSON object returns None.
        """
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        if not sig_header:
            raise AuthError("invalid_signature", "Missing webhook signature")
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            text = None
        try:
            self._stripe.WebhookSignature.verify_header(
                text or "", sig_header, self.webhook_secret, tolerance=self._stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError:
            logger.warning("Payment webhook signature verification failed")
            raise AuthError("invalid_signature", "Invalid webhook signature")
        try:
            event = json.loads(text) if text is not None else None
        except ValueError:
            event = None
        if not isinstance(event, dict):
            logger.warning("Payment webhook body is not a JSON object, acknowledging")
            return None
        return event


class PaymentService:
    def __init__(self, db, config: Config, processor: PaymentProcessor):
        self.db = db
        self.config = config
        self.processor = processor

    # Helpers

    def _settings(self) -> dict:
        return get_org_settings(self.db, self.config)

    def _update_build(self, build: dict, changes: dict) -> dict:
        return update_with_retry(self.db, BUILDS, build["_id"], lambda doc: changes)

    def _amount(self, build: dict, milestone: str) -> int:
        pricing = compute_pricing(build, self._settings())
        amount = milestone_amount_cents(pricing, milestone)
        if amount <= 0:
            raise ValidationError("invalid_amount", f"Nothing is due for the {milestone} milestone")
        return amount

    def _metadata(self, build: dict, milestone: Optional[str] = None) -> dict:
        metadata = {"build_id": str(build["_id"]), "user_id": build.get("user_id", "")}
        if milestone:
            metadata["milestone"] = milestone
        return metadata

    def _resolve_milestone(self, build: dict, requested: Optional[str]) -> str:
        payment = build.get("payment") or {}
        allowed = plan_milestones(payment.get("plan"))
        if requested:
            if requested not in allowed:
                raise ValidationError("invalid_milestone", f"Milestone {requested} is not part of this payment plan")
            milestone = requested
        else:
            milestone = current_milestone(payment.get("plan"))
            if milestone == Milestone.deposit.value and payment.get("deposit_paid"):
                milestone = Milestone.final.value
        if payment.get(f"{milestone}_paid"):
            raise ConflictError("milestone_already_paid", f"The {milestone} payment has already been made")
        if milestone == Milestone.final.value and not build.get("fulfillment"):
            raise ConflictError("final_not_active", "The final payment opens once the home is complete")
        return milestone

    def _open_record(self, build: dict, milestone: str, method: str) -> Optional[dict]:
        return self.db[RECORDS].find_one({
            "build_id": str(build["_id"]),
            "milestone": milestone,
            "method": method,
            "status": {"$nin": list(TERMINAL_INTENT_STATUSES)},
        })

    def _create_record(self, build: dict, milestone: str, method: str, amount: int, **fields) -> dict:
        record = PaymentIntentRecord(
            build_id=str(build["_id"]),
            milestone=milestone,
            method=method,
            expected_amount=amount,
            **fields,
        )
        record_id = create_document(self.db, RECORDS, record)
        return self.db[RECORDS].find_one({"_id": oid(record_id)})

    def ensure_customer(self, build: dict) -> str:
        payment = build.get("payment") or {}
        if payment.get("customer_id"):
            return payment["customer_id"]
        buyer = build.get("buyer_info") or {}
        name = " ".join(p for p in (buyer.get("first_name"), buyer.get("last_name")) if p).strip()
        customer = self.processor.create_customer(buyer.get("email"), name, self._metadata(build))

        def mutate(doc):
            if (doc.get("payment") or {}).get("customer_id"):
                return None
            return {"payment.customer_id": customer["id"]}

        fresh = update_with_retry(self.db, BUILDS, build["_id"], mutate)
        logger.info(f"Processor customer {customer['id']} linked to build {build['_id']}")
        return fresh["payment"]["customer_id"]

    # Card

    def setup_card(self, build: dict, requested: Optional[str] = None) -> dict:
        milestone = self._resolve_milestone(build, requested)
        amount = self._amount(build, milestone)
        customer_id = self.ensure_customer(build)
        build_id = str(build["_id"])

        record = self._open_record(build, milestone, PaymentMethod.card.value)
        if record and record.get("provider_ref") and record.get("expected_amount") == amount:
            intent = self.processor.retrieve_payment_intent(record["provider_ref"])
        else:
            intent = self.processor.create_payment_intent(
                amount,
                customer_id,
                self._metadata(build, milestone),
                idempotency_key=f"build-{build_id}-{milestone}-{amount}",
                save_card=milestone == Milestone.deposit.value,
            )
            if record:
                self.db[RECORDS].update_one(
                    {"_id": record["_id"]},
                    {"$set": {"provider_ref": intent["id"], "expected_amount": amount, "updated_at": now_utc()}},
                )
            else:
                self._create_record(
                    build, milestone, PaymentMethod.card.value, amount,
                    provider_ref=intent["id"], status=IntentStatus.awaiting_funds.value,
                )
            logger.info(f"Card payment intent {intent['id']} created for build {build_id} {milestone} ({amount} cents)")

        self._update_build(build, {"payment.method": PaymentMethod.card.value, "payment.status": "requires_payment"})
        return {
            "client_secret": intent["client_secret"],
            "payment_intent_id": intent["id"],
            "amount": amount,
            "currency": self.processor.currency,
            "milestone": milestone,
        }

    def _charge_saved_card(self, build: dict, milestone: str) -> dict:
        payment = build.get("payment") or {}
        payment_method = (payment.get("card") or {}).get("payment_method_id")
        if not payment_method or not payment.get("customer_id"):
            raise ValidationError("no_saved_card", "No saved card is available for this payment")
        amount = self._amount(build, milestone)
        intent = self.processor.charge_off_session(
            amount,
            payment["customer_id"],
            payment_method,
            ["card"],
            self._metadata(build, milestone),
            idempotency_key=f"build-{build['_id']}-{milestone}-{amount}-offsession",
        )
        return self._create_record(
            build, milestone, PaymentMethod.card.value, amount,
            provider_ref=intent["id"], status=IntentStatus.awaiting_funds.value,
        )

    def process_card_payment(self, build: dict, requested: Optional[str] = None) -> dict:
        milestone = self._resolve_milestone(build, requested)
        record = self._open_record(build, milestone, PaymentMethod.card.value)
        if record is None:
            if milestone != Milestone.final.value:
                raise NotFoundError("payment_not_started", "Start the card payment before processing it")
            record = self._charge_saved_card(build, milestone)

        intent = self.processor.retrieve_payment_intent(record["provider_ref"])
        status = _field(intent, "status")

        if status == "succeeded":
            if _field(intent, "payment_method"):
                self._update_build(build, {"payment.card.payment_method_id": intent["payment_method"]})
            settle_record(self.db, record["provider_ref"], paid=True, amount=_field(intent, "amount_received"))
            return {"status": "succeeded", "milestone": milestone, "payment_intent_id": intent["id"]}
        if status == "requires_action":
            return {"status": "requires_action", "milestone": milestone, "client_secret": intent["client_secret"]}
        if status == "processing":
            return {"status": "processing", "milestone": milestone, "payment_intent_id": intent["id"]}

        error = _field(intent, "last_payment_error", {})
        message = _field(error, "message")
        self.db[RECORDS].update_one({"_id": record["_id"]}, {"$set": {"last_error": message, "updated_at": now_utc()}})
        raise CardDeclinedError(message, _field(error, "decline_code") or _field(error, "code"))

    # ACH debit

    def setup_ach(self, build: dict) -> dict:
        customer_id = self.ensure_customer(build)
        setup_intent = self.processor.create_setup_intent(customer_id, self._metadata(build))
        self._update_build(build, {
            "payment.method": PaymentMethod.ach_debit.value,
            "payment.ach": {"setup_intent_id": setup_intent["id"], "verified": False},
        })
        logger.info(f"ACH setup intent {setup_intent['id']} created for build {build['_id']}")
        return {"client_secret": setup_intent["client_secret"], "setup_intent_id": setup_intent["id"]}

    def save_ach_method(self, build: dict, setup_intent_id: str, mandate_accepted: bool) -> dict:
        payment = build.get("payment") or {}
        ach = payment.get("ach") or {}
        if not ach.get("setup_intent_id") or ach["setup_intent_id"] != setup_intent_id:
            raise ValidationError("setup_intent_mismatch", "This bank account setup does not belong to the build")
        if not mandate_accepted:
            raise ValidationError("mandate_required", "The debit authorization must be accepted")

        setup_intent = self.processor.retrieve_setup_intent(setup_intent_id)
        status = _field(setup_intent, "status")
        if status not in ("succeeded", "processing", "requires_action"):
            raise ValidationError("ach_setup_failed", "The bank account could not be verified")

        payment_method = _field(setup_intent, "payment_method")
        verified = status == "succeeded"
        if verified and payment_method:
            self.processor.attach_payment_method(payment_method, payment["customer_id"])

        changes = {
            "payment.method": PaymentMethod.ach_debit.value,
            "payment.ach.payment_method_id": payment_method,
            "payment.ach.verified": verified,
            "payment.ach.mandate_accepted_at": now_utc(),
        }
        self._update_build(build, changes)
        logger.info(f"ACH method saved for build {build['_id']} (status {status})")
        return {"status": status, "verified": verified, "payment_method_id": payment_method}

    def collect_ach(self, build: dict, requested: Optional[str] = None) -> dict:
        milestone = self._resolve_milestone(build, requested)
        payment = build.get("payment") or {}
        ach = payment.get("ach") or {}
        if not ach.get("verified") or not ach.get("payment_method_id"):
            raise ValidationError("ach_not_verified", "A verified bank account is required")

        record = self._open_record(build, milestone, PaymentMethod.ach_debit.value)
        if record:
            return {"status": record["status"], "milestone": milestone, "payment_intent_id": record.get("provider_ref")}

        amount = self._amount(build, milestone)
        intent = self.processor.charge_off_session(
            amount,
            payment["customer_id"],
            ach["payment_method_id"],
            ["us_bank_account"],
            self._metadata(build, milestone),
            idempotency_key=f"build-{build['_id']}-{milestone}-{amount}-ach",
        )
        self._create_record(
            build, milestone, PaymentMethod.ach_debit.value, amount,
            provider_ref=intent["id"], status=IntentStatus.awaiting_funds.value,
        )
        logger.info(f"ACH debit {intent['id']} started for build {build['_id']} {milestone} ({amount} cents)")
        if _field(intent, "status") == "succeeded":
            settle_record(self.db, intent["id"], paid=True, amount=_field(intent, "amount_received"))
        return {"status": _field(intent, "status"), "milestone": milestone, "payment_intent_id": intent["id"]}

    # Bank transfer

    def _reference_code(self, build: dict, milestone: str) -> str:
        while True:
            code = f"FF-{str(build['_id'])[-6:].upper()}-{milestone[:3].upper()}-{secrets.token_hex(3).upper()}"
            if not self.db[RECORDS].find_one({"reference_code": code}):
                return code

    def provision_bank_transfer(self, build: dict, plan: dict, payer_info: dict, commitments: dict) -> dict:
        if not all(commitments.get(k) for k in ("customer_initiated", "funds_clearing", "storage_fees_acknowledged")):
            raise ValidationError("commitments_required", "All bank transfer commitments must be accepted")

        build = self._update_build(build, {
            "payment.plan": plan,
            "payment.method": PaymentMethod.bank_transfer.value,
            "financing.method": PaymentMethod.bank_transfer.value,
        })
        pricing = compute_pricing(build, self._settings())
        build = self._update_build(build, {"pricing": pricing.model_dump()})
        build_id = str(build["_id"])
        milestones = plan_milestones(plan)

        self.db[RECORDS].delete_many({
            "build_id": build_id,
            "method": PaymentMethod.bank_transfer.value,
            "milestone": {"$nin": milestones},
            "status": {"$in": [IntentStatus.pending_contract.value, IntentStatus.awaiting_activation.value]},
        })

        intents = []
        for milestone in milestones:
            amount = milestone_amount_cents(pricing, milestone)
            # a final milestone provisioned after fulfillment starts out active
            initial = IntentStatus.pending_contract.value
            if milestone == Milestone.final.value and build.get("fulfillment"):
                initial = IntentStatus.awaiting_activation.value
            record = self._open_record(build, milestone, PaymentMethod.bank_transfer.value)
            if record:
                if record["status"] in (IntentStatus.pending_contract.value, IntentStatus.awaiting_activation.value):
                    self.db[RECORDS].update_one(
                        {"_id": record["_id"]},
                        {"$set": {"expected_amount": amount, "payer_info": payer_info, "status": initial, "updated_at": now_utc()}},
                    )
                record = self.db[RECORDS].find_one({"_id": record["_id"]})
            elif build.get("payment", {}).get(f"{milestone}_paid"):
                continue
            else:
                record = self._create_record(
                    build, milestone, PaymentMethod.bank_transfer.value, amount,
                    reference_code=self._reference_code(build, milestone),
                    payer_info=payer_info,
                    status=initial,
                )
            intents.append({
                "milestone": milestone,
                "expected_amount": record["expected_amount"],
                "reference_code": record["reference_code"],
                "status": record["status"],
            })

        logger.info(f"Bank transfer provisioned for build {build_id}: {[i['milestone'] for i in intents]}")
        return {"build_id": build_id, "intents": intents}

    def bank_transfer_instructions(self, build: dict, requested: Optional[str] = None) -> dict:
        if (build.get("contract") or {}).get("status") != ContractStatus.signed.value:
            raise ConflictError("contract_not_signed", "Instructions are issued after the purchase agreement is signed")
        milestone = self._resolve_milestone(build, requested)
        record = self._open_record(build, milestone, PaymentMethod.bank_transfer.value)
        if record is None:
            raise NotFoundError("bank_transfer_not_provisioned", "Bank transfer has not been set up for this milestone")
        if milestone == Milestone.final.value and record["status"] == IntentStatus.pending_contract.value:
            raise ConflictError("final_not_active", "The final payment opens once the home is complete")

        if record.get("provider_ref") and record["status"] == IntentStatus.awaiting_funds.value:
            invoice = self.processor.retrieve_invoice(record["provider_ref"])
        else:
            customer_id = self.ensure_customer(build)
            invoice = self.processor.create_invoice(
                customer_id,
                record["expected_amount"],
                f"{milestone.capitalize()} payment, reference {record['reference_code']}",
                {**self._metadata(build, milestone), "reference_code": record["reference_code"]},
            )
            result = self.db[RECORDS].update_one(
                {"_id": record["_id"], "status": {"$in": [IntentStatus.pending_contract.value, IntentStatus.awaiting_activation.value]}},
                {"$set": {"provider_ref": invoice["id"], "status": IntentStatus.awaiting_funds.value, "updated_at": now_utc()}},
            )
            if result.modified_count:
                logger.info(f"Invoice {invoice['id']} issued for build {build['_id']} {milestone}")

        return {
            "milestone": milestone,
            "amount": record["expected_amount"],
            "currency": self.processor.currency,
            "reference_code": record["reference_code"],
            "invoice_id": invoice["id"],
            "hosted_invoice_url": _field(invoice, "hosted_invoice_url"),
            "due_date": _field(invoice, "due_date"),
        }

    # Readiness and fulfillment

    def mark_ready(self, build: dict, plan: dict, method: str, mandate_accepted: bool) -> dict:
        payment = build.get("payment") or {}
        if method == PaymentMethod.ach_debit.value:
            if not mandate_accepted or not (payment.get("ach") or {}).get("payment_method_id"):
                raise ValidationError("ach_not_ready", "Link a bank account and accept the debit authorization first")
        elif method == PaymentMethod.bank_transfer.value:
            if not self.db[RECORDS].find_one({"build_id": str(build["_id"]), "method": method}):
                raise ValidationError("bank_transfer_not_provisioned", "Bank transfer has not been set up")
        elif method == PaymentMethod.card.value:
            if not self.db[RECORDS].find_one({"build_id": str(build["_id"]), "method": method}):
                raise ValidationError("card_not_ready", "Start the card payment first")

        build = self._update_build(build, {
            "payment.plan": plan,
            "payment.method": method,
            "payment.ready": True,
            "financing.method": method,
        })

        def mutate(doc):
            changes = {"pricing": compute_pricing(doc, self._settings()).model_dump()}
            if doc.get("status") in (BuildStatus.draft.value, BuildStatus.configured.value, BuildStatus.payment_pending.value):
                changes["status"] = BuildStatus.contract_pending.value
            return changes

        build = update_with_retry(self.db, BUILDS, build["_id"], mutate)
        mirror_to_order(self.db, str(build["_id"]), {"payment": build["payment"]}, event="payment_ready")
        logger.info(f"Build {build['_id']} payment ready ({method}, plan {plan.get('type')})")
        return build

    def _activate_final(self, build_id: str) -> int:
        activated = self.db[RECORDS].update_many(
            {"build_id": build_id, "milestone": Milestone.final.value, "status": IntentStatus.pending_contract.value},
            {"$set": {"status": IntentStatus.awaiting_activation.value, "updated_at": now_utc()}},
        )
        return activated.modified_count

    def record_fulfillment(self, build: dict, signal: Dict[str, Any], recorded_by: str) -> dict:
        """Record the fulfillment signal once; final records are activated on every call."""
        fulfillment = {
            "completed_at": signal.get("completed_at") or now_utc(),
            "reference": signal.get("reference"),
            "source": signal.get("source", "factory"),
            "recorded_by": recorded_by,
        }
        recorded = []

        def mutate(doc):
            if doc.get("fulfillment"):
                return None
            recorded.append(True)
            return {"fulfillment": fulfillment, "status": BuildStatus.factory_complete.value}

        build = update_with_retry(self.db, BUILDS, build["_id"], mutate)
        activated = self._activate_final(str(build["_id"]))
        if recorded:
            mirror_to_order(self.db, str(build["_id"]), {"status": BuildStatus.factory_complete.value}, event="factory_complete")
        logger.info(f"Build {build['_id']} fulfillment recorded, {activated} final payment(s) activated")
        return build
