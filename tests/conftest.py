import hashlib
import hmac
import threading
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from contracts import ESignClient
from database import get_db
from delivery import DeliveryQuoteError, DeliveryQuoter
from errors import CardDeclinedError
from main import app, get_delivery_quoter, get_esign_client, get_processor
from payments import PaymentProcessor

SECRET_KEY = "test-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test"
DOCUSEAL_WEBHOOK_SECRET = "docuseal-shared-secret"

BUYER = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@fireflyhomes.com",
    "phone": "555-0100",
    "address": "12 Elm St",
    "city": "Austin",
    "state": "TX",
    "zip": "78701",
}


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", SECRET_KEY)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setenv("DOCUSEAL_API_KEY", "ds_test")
    monkeypatch.setenv("DOCUSEAL_WEBHOOK_SECRET", DOCUSEAL_WEBHOOK_SECRET)
    monkeypatch.setenv("DOCUSEAL_TEMPLATE_ID_PURCHASE", "1001")
    monkeypatch.setenv("DOCUSEAL_TEMPLATE_ID_DELIVERY", "1002")
    monkeypatch.delenv("GOOGLE_MAPS_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


class FakeProcessor(PaymentProcessor):
    """Processor double: real webhook verification, in-memory objects otherwise."""

    def __init__(self):
        super().__init__("sk_test_123", STRIPE_WEBHOOK_SECRET)
        self.intents = {}
        self.setup_intents = {}
        self.invoices = {}
        self.calls = []
        self.next_status = "requires_payment_method"
        self.decline = None

    def _new_id(self, prefix, store):
        return f"{prefix}_{len(store) + 1}"

    def create_customer(self, email, name, metadata):
        self.calls.append("create_customer")
        return {"id": "cus_1", "email": email}

    def create_payment_intent(self, amount, customer, metadata, idempotency_key, save_card=False):
        self.calls.append("create_payment_intent")
        intent_id = self._new_id("pi", self.intents)
        self.intents[intent_id] = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "status": self.next_status,
            "amount": amount,
            "amount_received": 0,
            "payment_method": None,
            "metadata": metadata,
        }
        return self.intents[intent_id]

    def charge_off_session(self, amount, customer, payment_method, method_types, metadata, idempotency_key):
        self.calls.append("charge_off_session")
        if self.decline:
            raise CardDeclinedError("Your card has insufficient funds.", self.decline)
        intent_id = self._new_id("pi", self.intents)
        self.intents[intent_id] = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "status": "processing",
            "amount": amount,
            "payment_method": payment_method,
        }
        return self.intents[intent_id]

    def retrieve_payment_intent(self, intent_id):
        self.calls.append("retrieve_payment_intent")
        return self.intents[intent_id]

    def create_setup_intent(self, customer, metadata):
        self.calls.append("create_setup_intent")
        si_id = self._new_id("seti", self.setup_intents)
        self.setup_intents[si_id] = {"id": si_id, "client_secret": f"{si_id}_secret", "status": "requires_payment_method"}
        return self.setup_intents[si_id]

    def retrieve_setup_intent(self, setup_intent_id):
        return self.setup_intents[setup_intent_id]

    def attach_payment_method(self, payment_method, customer):
        self.calls.append("attach_payment_method")
        return {"id": payment_method, "customer": customer}

    def create_invoice(self, customer, amount, description, metadata):
        self.calls.append("create_invoice")
        invoice_id = self._new_id("in", self.invoices)
        self.invoices[invoice_id] = {
            "id": invoice_id,
            "amount_due": amount,
            "hosted_invoice_url": f"https://invoice.test/{invoice_id}",
            "due_date": 1767225600,
            "description": description,
        }
        return self.invoices[invoice_id]

    def retrieve_invoice(self, invoice_id):
        self.calls.append("retrieve_invoice")
        return self.invoices[invoice_id]


class FakeESignClient(ESignClient):
    def __init__(self):
        super().__init__("https://esign.test", "ds_test")
        self.created = []
        self.downloads = []

    def create_submission(self, template_id, prefill, submitter, completed_redirect_url=None):
        submission_id = str(500 + len(self.created) + 1)
        self.created.append({"template_id": template_id, "fields": prefill, "submitter": submitter})
        return {"submission_id": submission_id, "signer_url": f"https://esign.test/s/{submission_id}"}

    def document_url(self, submission_id):
        return f"https://esign.test/files/{submission_id}.pdf"

    def download(self, url):
        self.downloads.append(url)
        return b"%PDF-1.7 signed"


class FakeQuoter(DeliveryQuoter):
    def __init__(self, miles=80.0):
        super().__init__("maps-key")
        self.miles = miles
        self.fail = False

    def distance_miles(self, origin, destination):
        if self.fail:
            raise DeliveryQuoteError("ZERO_RESULTS")
        return self.miles, destination


@pytest.fixture
def db():
    return mongomock.MongoClient()["checkout_test"]


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def esign():
    return FakeESignClient()


@pytest.fixture
def quoter():
    return FakeQuoter()


@pytest.fixture
def client(db, processor, esign, quoter):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_esign_client] = lambda: esign
    app.dependency_overrides[get_delivery_quoter] = lambda: quoter
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def bearer(user_id, role=None):
    data = {"sub": user_id}
    if role:
        data["role"] = role
    return {"Authorization": f"Bearer {create_access_token(data, SECRET_KEY)}"}


@pytest.fixture
def user_headers():
    return bearer("user-1")


@pytest.fixture
def other_headers():
    return bearer("user-2")


@pytest.fixture
def admin_headers():
    return bearer("admin-1", role="admin")


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def make_build(client, user_headers):
    def _make(buyer=True, **overrides):
        body = {
            "model_slug": "magnolia",
            "model_name": "Magnolia",
            "selections": {
                "base_price": 50000,
                "options": [{"key": "loft", "label": "Sleeping loft", "unit_price": 3000, "quantity": 1}],
            },
        }
        if buyer:
            body["buyer_info"] = dict(BUYER)
        body.update(overrides)
        res = client.post("/builds", json=body, headers=user_headers)
        assert res.status_code == 200, res.text
        return res.json()

    return _make


class SerializedCollection:
    """Runs every collection call under one lock; mongomock is not thread safe."""

    def __init__(self, collection, lock):
        self._collection = collection
        self._lock = lock

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)

        return call


class SerializedDatabase:
    def __init__(self, db):
        self._db = db
        self._lock = threading.RLock()

    def __getitem__(self, name):
        return SerializedCollection(self._db[name], self._lock)

    def __getattr__(self, name):
        return getattr(self._db, name)
