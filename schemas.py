"""
Database Schemas for the configurator checkout backend

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase
class name (e.g., Build -> "build", PaymentIntentRecord -> "paymentintentrecord").
Request payload models live at the bottom of the file.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True, protected_namespaces=())


class Role(str, Enum):
    admin = "admin"


class AdminUser(Document):
    username: str = Field(..., min_length=3)
    password_hash: str
    role: Role = Role.admin
    is_active: bool = True


# Enumerations

class BuildStatus(str, Enum):
    draft = "draft"
    configured = "configured"
    payment_pending = "payment_pending"
    contract_pending = "contract_pending"
    contract_signed = "contract_signed"
    in_production = "in_production"
    factory_complete = "factory_complete"
    ready_for_delivery = "ready_for_delivery"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentMethod(str, Enum):
    card = "card"
    ach_debit = "ach_debit"
    bank_transfer = "bank_transfer"


class Milestone(str, Enum):
    deposit = "deposit"
    final = "final"
    full = "full"


class IntentStatus(str, Enum):
    pending_contract = "pending_contract"
    awaiting_activation = "awaiting_activation"
    awaiting_funds = "awaiting_funds"
    paid = "paid"
    payment_failed = "payment_failed"


TERMINAL_INTENT_STATUSES = (IntentStatus.paid.value, IntentStatus.payment_failed.value)


class SubmissionStatus(str, Enum):
    ready = "ready"
    signing = "signing"
    completed = "completed"
    voided = "voided"


class ContractStatus(str, Enum):
    none = "none"
    ready = "ready"
    signing = "signing"
    signed = "signed"
    voided = "voided"


# Build sub-documents

class OptionSelection(Document):
    key: str
    label: str = ""
    unit_price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=1)


class Selections(Document):
    base_price: float = Field(0, ge=0)
    options: List[OptionSelection] = Field(default_factory=list)
    notes: Optional[str] = None


class CoBuyer(Document):
    full_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class BuyerInfo(Document):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    delivery_address: Optional[str] = None
    co_buyer: Optional[CoBuyer] = None


class DeliveryInfo(Document):
    address: str = ""
    miles: float = 0
    rate_per_mile: float = 0
    minimum: float = 0
    fee: float = 0
    fallback: bool = False


class PricingBreakdown(Document):
    base: float = 0
    options_subtotal: float = 0
    delivery_fee: float = 0
    title_fee: float = 0
    setup_fee: float = 0
    taxable_subtotal: float = 0
    tax_rate_percent: float = 0
    sales_tax: float = 0
    total: float = 0
    deposit_percent: float = 0
    deposit_due: float = 0
    final_payment: float = 0


class PaymentPlan(Document):
    type: Literal["deposit", "full"] = "deposit"
    percent: Optional[float] = Field(default=None, gt=0, le=100)


class Financing(Document):
    method: Optional[PaymentMethod] = None
    lender: Optional[str] = None
    preapproval_id: Optional[str] = None


class PaymentState(Document):
    method: Optional[PaymentMethod] = None
    plan: Optional[PaymentPlan] = None
    customer_id: Optional[str] = None
    ready: bool = False
    status: str = "none"
    deposit_paid: bool = False
    deposit_paid_at: Optional[datetime] = None
    final_paid: bool = False
    final_paid_at: Optional[datetime] = None
    full_paid: bool = False
    full_paid_at: Optional[datetime] = None
    fully_paid_at: Optional[datetime] = None
    card: Dict[str, Any] = Field(default_factory=dict)
    ach: Dict[str, Any] = Field(default_factory=dict)


class ContractSubmission(Document):
    template_key: str
    template_id: str
    submission_id: str
    signer_url: Optional[str] = None
    status: SubmissionStatus = SubmissionStatus.ready
    document_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ContractState(Document):
    status: ContractStatus = ContractStatus.none
    submissions: List[ContractSubmission] = Field(default_factory=list)
    events: List[Dict[str, Any]] = Field(default_factory=list)


class Build(Document):
    user_id: str
    model_slug: str = ""
    model_name: str = ""
    status: BuildStatus = BuildStatus.draft
    step: int = Field(1, ge=1, le=8)
    selections: Selections = Field(default_factory=Selections)
    buyer_info: BuyerInfo = Field(default_factory=BuyerInfo)
    delivery: DeliveryInfo = Field(default_factory=DeliveryInfo)
    pricing: PricingBreakdown = Field(default_factory=PricingBreakdown)
    financing: Financing = Field(default_factory=Financing)
    payment: PaymentState = Field(default_factory=PaymentState)
    contract: ContractState = Field(default_factory=ContractState)
    fulfillment: Optional[Dict[str, Any]] = None
    version: int = 0


class TimelineEvent(Document):
    event: str
    at: datetime


class Order(Document):
    user_id: str
    build_id: str
    status: str = "draft"
    model: Dict[str, Any] = Field(default_factory=dict)
    selections: Selections = Field(default_factory=Selections)
    buyer_info: BuyerInfo = Field(default_factory=BuyerInfo)
    delivery: DeliveryInfo = Field(default_factory=DeliveryInfo)
    pricing: PricingBreakdown = Field(default_factory=PricingBreakdown)
    pricing_snapshot: Dict[str, float] = Field(default_factory=dict)
    contract: ContractState = Field(default_factory=ContractState)
    payment: PaymentState = Field(default_factory=PaymentState)
    timeline: List[TimelineEvent] = Field(default_factory=list)
    version: int = 0


class IdempotencyRecord(Document):
    key: str
    status: Literal["pending", "done"] = "pending"
    result: Optional[Any] = None
    created_at: datetime


class PaymentIntentRecord(Document):
    build_id: str
    milestone: Milestone
    method: PaymentMethod
    expected_amount: int = Field(..., ge=0, description="Amount in cents")
    provider_ref: Optional[str] = None
    reference_code: Optional[str] = None
    status: IntentStatus = IntentStatus.pending_contract
    payer_info: Optional[Dict[str, Any]] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_error: Optional[str] = None


class FactoryInfo(Document):
    name: Optional[str] = None
    address: Optional[str] = None


class PricingSettings(Document):
    deposit_percent: float = 25
    tax_rate_percent: float = 6.25
    delivery_rate_per_mile: float = 12.5
    delivery_minimum: float = 1500
    title_fee_default: float = 500
    setup_fee_default: float = 3000


class OrgSettings(Document):
    key: str = "org"
    factory: FactoryInfo = Field(default_factory=FactoryInfo)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    updated_by: Optional[str] = None


class DeadLetter(Document):
    source: Literal["payment", "contract"]
    payload: Dict[str, Any]
    error: str
    attempts: int = 1
    status: Literal["failed", "replayed"] = "failed"


class SignedDocument(Document):
    build_id: str
    submission_id: str
    template_key: str
    status: Literal["archiving", "archived"] = "archiving"
    source_url: Optional[str] = None
    content: Optional[bytes] = None


# Request payloads

class LoginPayload(BaseModel):
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class BuildCreate(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_slug: str = ""
    model_name: str = ""
    selections: Selections = Field(default_factory=Selections)
    buyer_info: BuyerInfo = Field(default_factory=BuyerInfo)
    financing: Financing = Field(default_factory=Financing)


class BuildPatch(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_slug: Optional[str] = None
    model_name: Optional[str] = Field(default=None, max_length=200)
    selections: Optional[Selections] = None
    buyer_info: Optional[BuyerInfo] = None
    financing: Optional[Financing] = None
    version: Optional[int] = None


class CheckoutStepRequest(BaseModel):
    step: int


class PaymentMethodRequest(BaseModel):
    method: PaymentMethod


class FulfillmentSignal(BaseModel):
    """Fulfillment-completion signal that unlocks the final payment milestone."""
    completed_at: Optional[datetime] = None
    reference: Optional[str] = Field(default=None, max_length=200)
    source: Literal["factory"] = "factory"


class OrderCreate(BaseModel):
    build_id: str


class OrderStatusChange(BaseModel):
    status: str = Field(..., min_length=1, max_length=50)


class BuildRef(BaseModel):
    build_id: str


class MilestoneRequest(BaseModel):
    build_id: str
    milestone: Optional[Milestone] = None


class SaveAchRequest(BaseModel):
    build_id: str
    setup_intent_id: str
    mandate_accepted: bool = False


class BillingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., pattern=r"^\d{5}(-\d{4})?$")


class PayerInfo(BaseModel):
    full_legal_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    preferred_transfer_type: Literal["ach_credit", "wire"]
    billing_address: BillingAddress
    planned_send_date: Optional[str] = None


class Commitments(BaseModel):
    customer_initiated: bool = False
    funds_clearing: bool = False
    storage_fees_acknowledged: bool = False


class ProvisionBankTransferRequest(BaseModel):
    build_id: str
    plan: PaymentPlan
    payer_info: PayerInfo
    commitments: Commitments


class MarkReadyRequest(BaseModel):
    build_id: str
    plan: PaymentPlan
    method: PaymentMethod
    mandate_accepted: bool = False


class SettingsUpdate(BaseModel):
    factory: Optional[FactoryInfo] = None
    pricing: Optional[Dict[str, Any]] = None
