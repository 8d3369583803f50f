import json
import logging
import os
from datetime import timedelta
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

import builds
import orders
from auth import AuthContext, create_access_token, get_password_hash, require_admin, require_auth, verify_password
from config import Config, get_config
from contracts import ContractService, ESignClient
from database import get_db, serialize
from delivery import DeliveryQuoter
from errors import ApiError, AuthError, ForbiddenError, ValidationError, api_error_handler, request_validation_handler
from idempotency import IdempotencyGuard
from org_settings import get_org_settings, public_settings, update_org_settings
from payments import PaymentProcessor, PaymentService
from reconciliation import handle_payment_event, list_dead_letters, process_webhook, replay_dead_letter
from schemas import (
    AdminUser,
    BuildCreate,
    BuildPatch,
    BuildRef,
    CheckoutStepRequest,
    FulfillmentSignal,
    LoginPayload,
    MarkReadyRequest,
    MilestoneRequest,
    OrderCreate,
    OrderStatusChange,
    PaymentMethodRequest,
    ProvisionBankTransferRequest,
    SaveAchRequest,
    SettingsUpdate,
    Token,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Configurator Checkout API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ApiError, api_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)


# Injected collaborators

def get_processor(config: Config = Depends(get_config)) -> PaymentProcessor:
    return PaymentProcessor.from_config(config)


def get_esign_client(config: Config = Depends(get_config)) -> ESignClient:
    return ESignClient.from_config(config)


def get_delivery_quoter(config: Config = Depends(get_config)) -> DeliveryQuoter:
    return DeliveryQuoter.from_config(config)


def get_settings(db=Depends(get_db), config: Config = Depends(get_config)) -> dict:
    return get_org_settings(db, config)


def get_payment_service(db=Depends(get_db), config: Config = Depends(get_config),
                        processor: PaymentProcessor = Depends(get_processor)) -> PaymentService:
    return PaymentService(db, config, processor)


def get_contract_service(db=Depends(get_db), config: Config = Depends(get_config),
                         client: ESignClient = Depends(get_esign_client)) -> ContractService:
    return ContractService(db, config, client)


@app.get("/")
def root():
    return {"message": "Configurator checkout backend running"}


# Auth endpoints
@app.post("/auth/login", response_model=Token)
def login(payload: LoginPayload, db=Depends(get_db), config: Config = Depends(get_config)):
    user = db["adminuser"].find_one({"username": payload.username, "is_active": True})
    if not user or not verify_password(payload.password, user["password_hash"]):
        raise AuthError("invalid_credentials", "Incorrect username or password")

    access_token = create_access_token(
        data={"sub": str(user["_id"]), "role": user.get("role", "admin")},
        secret_key=config.secret_key,
        expires_delta=timedelta(minutes=config.access_token_expire_minutes),
    )
    return {"access_token": access_token, "token_type": "bearer"}


# Seed the first admin user; refused once any admin exists
@app.post("/auth/seed-admin")
def seed_admin(username: str = Body(...), password: str = Body(...), db=Depends(get_db)):
    if db["adminuser"].find_one({"username": username}):
        return {"status": "exists"}
    if db["adminuser"].count_documents({}) > 0:
        raise ForbiddenError("admin_exists", "An administrator already exists")
    user = AdminUser(username=username, password_hash=get_password_hash(password))
    db["adminuser"].insert_one(user.model_dump())
    logger.info(f"Seeded admin user {username}")
    return {"status": "created"}


# Settings
@app.get("/settings")
def read_public_settings(settings: dict = Depends(get_settings)):
    return public_settings(settings)


@app.get("/admin/settings")
def admin_read_settings(settings: dict = Depends(get_settings), admin: AuthContext = Depends(require_admin)):
    return serialize(settings)


@app.put("/admin/settings")
def admin_update_settings(payload: SettingsUpdate, db=Depends(get_db), config: Config = Depends(get_config),
                          admin: AuthContext = Depends(require_admin)):
    factory = payload.factory.model_dump(exclude_none=True) if payload.factory else None
    settings = update_org_settings(db, config, factory, payload.pricing, updated_by=admin.user_id)
    return serialize(settings)


# Delivery
@app.get("/delivery/quote")
def delivery_quote(zip: str, settings: dict = Depends(get_settings), quoter: DeliveryQuoter = Depends(get_delivery_quoter)):
    zip = zip.strip()
    if not zip or len(zip) > 10 or not zip.replace("-", "").isdigit():
        raise ValidationError("invalid_zip", "Provide a valid ZIP code")
    return quoter.quote_or_fallback(zip, settings).to_dict()


# Builds
@app.post("/builds")
def create_build(payload: BuildCreate, db=Depends(get_db), settings: dict = Depends(get_settings),
                 quoter: DeliveryQuoter = Depends(get_delivery_quoter), auth: AuthContext = Depends(require_auth())):
    return serialize(builds.create_build(db, auth, payload, settings, quoter))


@app.get("/builds")
def list_builds(db=Depends(get_db), auth: AuthContext = Depends(require_auth())):
    return serialize(builds.list_builds(db, auth))


@app.get("/builds/{build_id}")
def get_build(build_id: str, db=Depends(get_db), auth: AuthContext = Depends(require_auth())):
    return serialize(builds.get_owned_build(db, build_id, auth))


@app.patch("/builds/{build_id}")
def patch_build(build_id: str, payload: BuildPatch, db=Depends(get_db), settings: dict = Depends(get_settings),
                quoter: DeliveryQuoter = Depends(get_delivery_quoter), auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, build_id, auth)
    return serialize(builds.patch_build(db, build, payload, settings, quoter))


@app.delete("/builds/{build_id}")
def delete_build(build_id: str, db=Depends(get_db), auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, build_id, auth)
    builds.delete_build(db, build)
    return {"status": "deleted"}


@app.post("/builds/{build_id}/duplicate")
def duplicate_build(build_id: str, db=Depends(get_db), settings: dict = Depends(get_settings),
                    auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, build_id, auth)
    return serialize(builds.duplicate_build(db, build, auth, settings))


@app.post("/builds/{build_id}/checkout-step")
def checkout_step(build_id: str, payload: CheckoutStepRequest, db=Depends(get_db), auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, build_id, auth)
    return serialize(builds.advance(db, build, payload.step))


@app.post("/builds/{build_id}/payment-method")
def select_payment_method(build_id: str, payload: PaymentMethodRequest, db=Depends(get_db),
                          auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, build_id, auth)
    return serialize(builds.set_payment_method(db, build, payload.method.value))


@app.post("/builds/{build_id}/fulfillment-complete")
def fulfillment_complete(build_id: str, payload: FulfillmentSignal, db=Depends(get_db),
                         service: PaymentService = Depends(get_payment_service), admin: AuthContext = Depends(require_admin)):
    build = builds.get_owned_build(db, build_id, admin)
    return serialize(service.record_fulfillment(build, payload.model_dump(), recorded_by=admin.user_id))


# Orders
@app.post("/orders")
def create_order(payload: OrderCreate, idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
                 db=Depends(get_db), config: Config = Depends(get_config), settings: dict = Depends(get_settings),
                 auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    guard = IdempotencyGuard(db, wait_seconds=config.idempotency_wait_seconds)
    key = f"order:{auth.user_id}:{idempotency_key}" if idempotency_key else None
    return orders.create_order(db, auth, build, settings, guard, key)


@app.get("/orders")
def list_orders(status: Optional[str] = None, db=Depends(get_db), auth: AuthContext = Depends(require_auth())):
    return serialize(orders.list_orders(db, auth, status))


@app.get("/orders/{order_id}")
def get_order(order_id: str, db=Depends(get_db), auth: AuthContext = Depends(require_auth())):
    return serialize(orders.get_order(db, order_id, auth))


# Orders admin
@app.get("/admin/orders")
def admin_list_orders(status: Optional[str] = None, db=Depends(get_db), admin: AuthContext = Depends(require_admin)):
    return serialize(orders.list_all_orders(db, status))


@app.post("/admin/orders/{order_id}/status")
def admin_change_status(order_id: str, payload: OrderStatusChange, db=Depends(get_db),
                        admin: AuthContext = Depends(require_admin)):
    order = orders.get_order(db, order_id, admin)
    return serialize(orders.change_status(db, order, payload.status, changed_by=admin.user_id))


# Payments
@app.post("/payments/setup-card")
def setup_card(payload: MilestoneRequest, db=Depends(get_db), service: PaymentService = Depends(get_payment_service),
               auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return service.setup_card(build, payload.milestone.value if payload.milestone else None)


@app.post("/payments/process-card-payment")
def process_card_payment(payload: MilestoneRequest, db=Depends(get_db), service: PaymentService = Depends(get_payment_service),
                         auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return service.process_card_payment(build, payload.milestone.value if payload.milestone else None)


@app.post("/payments/setup-ach")
def setup_ach(payload: BuildRef, db=Depends(get_db), service: PaymentService = Depends(get_payment_service),
              auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return service.setup_ach(build)


@app.post("/payments/save-ach-method")
def save_ach_method(payload: SaveAchRequest, db=Depends(get_db), service: PaymentService = Depends(get_payment_service),
                    auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return service.save_ach_method(build, payload.setup_intent_id, payload.mandate_accepted)


@app.post("/payments/collect-ach")
def collect_ach(payload: MilestoneRequest, db=Depends(get_db), service: PaymentService = Depends(get_payment_service),
                auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return service.collect_ach(build, payload.milestone.value if payload.milestone else None)


@app.post("/payments/provision-bank-transfer")
def provision_bank_transfer(payload: ProvisionBankTransferRequest, db=Depends(get_db),
                            service: PaymentService = Depends(get_payment_service), auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return service.provision_bank_transfer(
        build,
        payload.plan.model_dump(),
        payload.payer_info.model_dump(),
        payload.commitments.model_dump(),
    )


@app.post("/payments/bank-transfer-instructions")
def bank_transfer_instructions(payload: MilestoneRequest, db=Depends(get_db),
                               service: PaymentService = Depends(get_payment_service), auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return service.bank_transfer_instructions(build, payload.milestone.value if payload.milestone else None)


@app.post("/payments/mark-ready")
def mark_ready(payload: MarkReadyRequest, db=Depends(get_db), service: PaymentService = Depends(get_payment_service),
               auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    return serialize(service.mark_ready(build, payload.plan.model_dump(), payload.method.value, payload.mandate_accepted))


# Contracts
@app.post("/contracts/{template_key}/start")
def start_contract(template_key: str, payload: BuildRef, db=Depends(get_db),
                   service: ContractService = Depends(get_contract_service), auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, payload.build_id, auth)
    result = service.start(build, template_key)
    return {"submissionId": result["submission_id"], "signerUrl": result["signer_url"], "reused": result["reused"]}


@app.get("/contracts/status")
def contract_status(build_id: str, db=Depends(get_db), service: ContractService = Depends(get_contract_service),
                    auth: AuthContext = Depends(require_auth())):
    build = builds.get_owned_build(db, build_id, auth)
    return serialize(service.status(build))


# Webhooks
@app.post("/webhooks/payment")
async def payment_webhook(request: Request, db=Depends(get_db), processor: PaymentProcessor = Depends(get_processor)):
    payload = await request.body()
    event = await run_in_threadpool(processor.verify_webhook, payload, request.headers.get("Stripe-Signature"))
    if event is None:
        return {"received": True}
    return await run_in_threadpool(process_webhook, db, "payment", event, lambda e: handle_payment_event(db, e))


@app.post("/webhooks/contracts")
async def contracts_webhook(request: Request, db=Depends(get_db), service: ContractService = Depends(get_contract_service)):
    service.verify_signature(request.headers.get("X-DocuSeal-Signature"))
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Contract webhook body is not valid JSON, acknowledging")
        return {"received": True}
    if not isinstance(payload, dict):
        return {"received": True}
    return await run_in_threadpool(process_webhook, db, "contract", payload, service.handle_event)


# Dead letters
@app.get("/admin/dead-letters")
def admin_dead_letters(status: Optional[str] = None, db=Depends(get_db), admin: AuthContext = Depends(require_admin)):
    return serialize(list_dead_letters(db, status))


@app.post("/admin/dead-letters/{letter_id}/replay")
def admin_replay_dead_letter(letter_id: str, db=Depends(get_db), contracts: ContractService = Depends(get_contract_service),
                             admin: AuthContext = Depends(require_admin)):
    handlers = {
        "payment": lambda payload: handle_payment_event(db, payload),
        "contract": contracts.handle_event,
    }
    return serialize(replay_dead_letter(db, letter_id, handlers))


# Simple health and db test
@app.get("/test")
def test_database(db=Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        logger.warning(f"Database check failed: {e}")
        return {"backend": "ok", "db": f"error: {str(e)}"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
