"""SQLAlchemy ORM models and enums.

This module defines the billing schema using UUID primary keys and explicit
relationships. Money is stored as Numeric(12, 2) and handled as Decimal in
Python; timestamps are naive UTC.

Uniqueness that the webhook pipeline relies on:
    - payments.transaction_id: one Payment per gateway transaction
    - subscriptions.subscription_id: one Subscription per gateway subscription
      (or per synthetic SUB-{txn} / SUB-ADDON-{txn} id for one-time purchases)
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class PlanTypeEnum(str, enum.Enum):
    free = "FREE"
    business = "BUSINESS"
    agency = "AGENCY"


class RegistrationSourceEnum(str, enum.Enum):
    direct = "DIRECT"
    ad = "AD"
    affiliate = "AFFILIATE"


class PaymentTypeEnum(str, enum.Enum):
    plan_purchase = "PLAN_PURCHASE"
    addon_purchase = "ADDON_PURCHASE"


class ItemTypeEnum(str, enum.Enum):
    plan = "PLAN"
    addon = "ADDON"


class SubscriptionStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    canceled = "CANCELED"
    expired = "EXPIRED"


class IntervalUnitEnum(str, enum.Enum):
    year = "YEAR"
    month = "MONTH"
    week = "WEEK"
    day = "DAY"


class AddOnTypeEnum(str, enum.Enum):
    """Purchasable add-on types.

    EXTRA_WORKSPACE is user-level (it raises the account's workspace quota).
    Every other type is attached to a single workspace.
    """
    extra_workspace = "EXTRA_WORKSPACE"
    extra_funnel = "EXTRA_FUNNEL"
    extra_page = "EXTRA_PAGE"
    extra_admin = "EXTRA_ADMIN"
    extra_custom_domain = "EXTRA_CUSTOM_DOMAIN"
    extra_subdomain = "EXTRA_SUBDOMAIN"


USER_SCOPED_ADDON_TYPES = frozenset({AddOnTypeEnum.extra_workspace})


class AddOnStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    expired = "EXPIRED"
    canceled = "CANCELED"


class CommissionStatusEnum(str, enum.Enum):
    pending = "PENDING"
    released = "RELEASED"


class BalanceTransactionTypeEnum(str, enum.Enum):
    commission_hold = "COMMISSION_HOLD"
    commission_release = "COMMISSION_RELEASE"
    adjustment = "ADJUSTMENT"


# Models --------------------------------------------------------

class User(Base):
    """Account that can buy plans/add-ons and refer other buyers.

    Affiliate economics live on the account itself:
    - balance: available (settled) commission funds
    - pending_balance: commissions still inside the hold window
    - partner_level / commission_percentage: promoted by total_sales
    """
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    password_hash = Column(String, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)

    plan = Column(Enum(PlanTypeEnum, values_callable=_enum_values), default=PlanTypeEnum.free, nullable=False)
    registration_source = Column(
        Enum(RegistrationSourceEnum, values_callable=_enum_values),
        default=RegistrationSourceEnum.direct,
        nullable=False,
    )

    # Trial window; trial_end_date NULL means lifetime access
    trial_start_date = Column(DateTime, nullable=True)
    trial_end_date = Column(DateTime, nullable=True)

    # Referral link this account signed up / bought through (set once)
    # users <-> affiliate_links reference each other, so this FK is added after both tables exist
    referral_link_used_id = Column(
        UUID(as_uuid=True),
        ForeignKey("affiliate_links.id", use_alter=True, name="fk_users_referral_link_used_id"),
        nullable=True,
    )
    referral_link_used = relationship("AffiliateLink", foreign_keys=[referral_link_used_id])

    partner_level = Column(Integer, default=1, nullable=False)
    total_sales = Column(Integer, default=0, nullable=False)
    balance = Column(Numeric(12, 2), default=0, nullable=False)
    pending_balance = Column(Numeric(12, 2), default=0, nullable=False)
    commission_percentage = Column(Numeric(5, 2), default=5, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    affiliate_links = relationship(
        "AffiliateLink",
        back_populates="owner",
        foreign_keys="AffiliateLink.user_id",
    )
    workspaces = relationship("Workspace", back_populates="owner")
    payments = relationship("Payment", back_populates="user", foreign_keys="Payment.user_id")
    subscriptions = relationship("Subscription", back_populates="user")
    addons = relationship("AddOn", back_populates="user")

    def __str__(self):
        return f"{self.username} ({self.email})"


class Workspace(Base):
    """Workspace owned by an account. Only the fields billing needs."""
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    owner = relationship("User", back_populates="workspaces")

    def __str__(self):
        return self.name


class AffiliateLink(Base):
    """Referral link owned by an affiliate.

    `token` is an optional signed JWT that may embed a workspaceId to clone
    for buyers coming through this link.
    """
    __tablename__ = "affiliate_links"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    code = Column(String, unique=True, index=True, nullable=False)
    token = Column(Text, nullable=True)
    clicks = Column(Integer, default=0, nullable=False)
    total_amount = Column(Numeric(12, 2), default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    owner = relationship("User", back_populates="affiliate_links", foreign_keys=[user_id])

    def __str__(self):
        return self.code


class Payment(Base):
    """One row per gateway transaction (`transaction_id` is the idempotency key).

    Immutable after creation except for commission state transitions
    (PENDING -> RELEASED) and the add-on back-reference.
    """
    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(String, nullable=False)
    payment_type = Column(Enum(PaymentTypeEnum, values_callable=_enum_values), nullable=False)
    plan_type = Column(Enum(PlanTypeEnum, values_callable=_enum_values), nullable=True)
    addon_type = Column(Enum(AddOnTypeEnum, values_callable=_enum_values), nullable=True)
    addon_quantity = Column(Integer, nullable=True)
    frequency = Column(String, nullable=True)

    affiliate_link_id = Column(UUID(as_uuid=True), ForeignKey("affiliate_links.id"), nullable=True)
    addon_id = Column(UUID(as_uuid=True), ForeignKey("addons.id"), nullable=True)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=True)

    commission_amount = Column(Numeric(12, 2), default=0, nullable=False)
    commission_status = Column(Enum(CommissionStatusEnum, values_callable=_enum_values), nullable=True)
    commission_held_until = Column(DateTime, nullable=True)
    commission_released_at = Column(DateTime, nullable=True)
    affiliate_paid = Column(Boolean, default=False, nullable=False)

    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="payments", foreign_keys=[user_id])
    affiliate_link = relationship("AffiliateLink")
    addon = relationship("AddOn", foreign_keys=[addon_id])
    workspace = relationship("Workspace")


class Subscription(Base):
    """Validity window for a plan or add-on purchase."""
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(String, unique=True, index=True, nullable=False)
    subscriber_id = Column(String, nullable=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)

    status = Column(Enum(SubscriptionStatusEnum, values_callable=_enum_values), nullable=False)
    item_type = Column(Enum(ItemTypeEnum, values_callable=_enum_values), nullable=False)
    subscription_type = Column(Enum(PlanTypeEnum, values_callable=_enum_values), nullable=True)
    addon_type = Column(Enum(AddOnTypeEnum, values_callable=_enum_values), nullable=True)
    # The add-on this subscription keeps alive; null for plans
    addon_id = Column(UUID(as_uuid=True), ForeignKey("addons.id"), nullable=True)
    interval_unit = Column(Enum(IntervalUnitEnum, values_callable=_enum_values), nullable=False)
    interval_count = Column(Integer, default=1, nullable=False)

    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="subscriptions")
    addon = relationship("AddOn", foreign_keys=[addon_id])


class AddOn(Base):
    """Purchased add-on. Scoped to the account or to one workspace, never both."""
    __tablename__ = "addons"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=True)

    type = Column(Enum(AddOnTypeEnum, values_callable=_enum_values), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    price_per_unit = Column(Numeric(12, 2), nullable=False)
    status = Column(Enum(AddOnStatusEnum, values_callable=_enum_values), nullable=False)
    billing_cycle = Column(Enum(IntervalUnitEnum, values_callable=_enum_values), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="addons")
    workspace = relationship("Workspace")


class BalanceTransaction(Base):
    """Append-only affiliate ledger entry.

    balance_before/balance_after snapshot the *available* balance. A hold
    leaves it unchanged; the matching release row records the increase.
    """
    __tablename__ = "balance_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type = Column(Enum(BalanceTransactionTypeEnum, values_callable=_enum_values), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, index=True, nullable=True)
    released_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User")


class PaymentWebhookEvent(Base):
    """Audit trail of every gateway delivery and how it was handled.

    Not the idempotency key: replays produce additional rows, the Payment
    unique constraint is what prevents double processing.
    """
    __tablename__ = "payment_webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(String, index=True, nullable=True)
    event_type = Column(String, nullable=True)
    processing_result = Column(Text, nullable=False)
    payload_json = Column(JSON, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
