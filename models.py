"""
Account Ledger - Database Schema
================================

Schema for the account ledger and transaction lifecycle:
- Accounts with four balance buckets (deposit, interest, bonus, withdraw)
- Transaction records for every balance-affecting event
- Gift cards, virtual cards and investment plans
- Administrative audit trail

All monetary columns use Numeric(38, 18) and bucket columns are guarded by
CHECK constraints so no bucket can ever be persisted negative.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

MONEY = Numeric(38, 18)

ONE_PENDING_PREDICATE = "status = 'pending' AND type IN ('withdrawal', 'deposit')"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionType(Enum):
    """Every kind of balance-affecting event"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTERNAL_TRANSFER = "internal_transfer"
    EXTERNAL_TRANSFER = "external_transfer"
    CRYPTO_DEPOSIT = "crypto_deposit"
    CRYPTO_WITHDRAWAL = "crypto_withdrawal"
    GIFT_CARD_PURCHASE = "gift_card_purchase"
    GIFT_CARD_REDEMPTION = "gift_card_redemption"
    VIRTUAL_CARD_PURCHASE = "virtual_card_purchase"
    CARD_FUNDING = "card_funding"
    CARD_REFUND = "card_refund"
    FLIGHT_BOOKING = "flight_booking"
    CONTRACT = "contract"
    INTEREST_PAYOUT = "interest_payout"
    BONUS = "bonus"
    REFERRAL_BONUS = "referral_bonus"


class TransactionDirection(Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    EITHER = "either"


# Sign of TransactionRecord.amount implied by each type, from the account's perspective
TRANSACTION_DIRECTIONS: Dict[TransactionType, TransactionDirection] = {
    TransactionType.DEPOSIT: TransactionDirection.CREDIT,
    TransactionType.CRYPTO_DEPOSIT: TransactionDirection.CREDIT,
    TransactionType.GIFT_CARD_REDEMPTION: TransactionDirection.CREDIT,
    TransactionType.CARD_REFUND: TransactionDirection.CREDIT,
    TransactionType.INTEREST_PAYOUT: TransactionDirection.CREDIT,
    TransactionType.BONUS: TransactionDirection.CREDIT,
    TransactionType.REFERRAL_BONUS: TransactionDirection.CREDIT,
    TransactionType.WITHDRAWAL: TransactionDirection.DEBIT,
    TransactionType.EXTERNAL_TRANSFER: TransactionDirection.DEBIT,
    TransactionType.CRYPTO_WITHDRAWAL: TransactionDirection.DEBIT,
    TransactionType.GIFT_CARD_PURCHASE: TransactionDirection.DEBIT,
    TransactionType.VIRTUAL_CARD_PURCHASE: TransactionDirection.DEBIT,
    TransactionType.CARD_FUNDING: TransactionDirection.DEBIT,
    TransactionType.FLIGHT_BOOKING: TransactionDirection.DEBIT,
    TransactionType.CONTRACT: TransactionDirection.DEBIT,
    TransactionType.INTERNAL_TRANSFER: TransactionDirection.EITHER,
}


class TransactionStatus(Enum):
    """Transaction lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_MANUAL = "requires_manual"


class PayoutProviderName(Enum):
    NOWPAYMENTS = "nowpayments"
    MANUAL = "manual"


class BalanceBucket(Enum):
    """Account balance buckets"""
    DEPOSIT = "deposit"
    INTEREST = "interest"
    BONUS = "bonus"
    WITHDRAW = "withdraw"


class GiftCardStatus(Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class VirtualCardStatus(Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class CardBrand(Enum):
    VISA = "visa"
    MASTERCARD = "mastercard"


# ============================================================================
# CORE MODELS
# ============================================================================

class Account(Base):
    """User account holding the four balance buckets"""
    __tablename__ = 'accounts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Username of the referring account, if any
    referral_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Balance buckets
    deposit: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    interest: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    bonus: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    withdraw: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    # Optimistic concurrency for balance writes
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    transactions: Mapped[list["TransactionRecord"]] = relationship(
        "TransactionRecord", back_populates="account", foreign_keys="TransactionRecord.account_id"
    )

    __table_args__ = (
        CheckConstraint('deposit >= 0', name='ck_account_deposit_positive'),
        CheckConstraint('interest >= 0', name='ck_account_interest_positive'),
        CheckConstraint('bonus >= 0', name='ck_account_bonus_positive'),
        CheckConstraint('withdraw >= 0', name='ck_account_withdraw_positive'),
    )

    @property
    def available_balance(self) -> Decimal:
        return (
            Decimal(self.deposit or 0) + Decimal(self.interest or 0)
            + Decimal(self.bonus or 0) - Decimal(self.withdraw or 0)
        )

    def balance_snapshot(self) -> Dict[str, str]:
        return {
            "deposit": str(self.deposit),
            "interest": str(self.interest),
            "bonus": str(self.bonus),
            "withdraw": str(self.withdraw),
        }


class TransactionRecord(Base):
    """One row per balance-affecting event"""
    __tablename__ = 'transaction_records'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)

    # Signed: negative for debits, positive for credits
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")

    account_id: Mapped[int] = mapped_column(Integer, ForeignKey('accounts.id'), nullable=False, index=True)
    counterparty_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('accounts.id', ondelete='SET NULL'), nullable=True)

    # Open passthrough data (fees, beneficiary, provider payloads)
    extra_data: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, default=dict, nullable=False)
    # Typed payloads: {address, network, coin_name, converted_amount}
    wallet_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    # {plan, duration, interest}
    plan_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # External settlement
    payout_provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    provider_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    auto_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions", foreign_keys=[account_id])

    __table_args__ = (
        Index('ix_transaction_records_account_type_status', 'account_id', 'type', 'status'),
        # At most one pending withdrawal and one pending deposit per account
        Index(
            'uq_transaction_records_one_pending',
            'account_id', 'type',
            unique=True,
            sqlite_where=text(ONE_PENDING_PREDICATE),
            postgresql_where=text(ONE_PENDING_PREDICATE),
        ),
    )

    @property
    def transaction_type(self) -> TransactionType:
        return TransactionType(self.type)

    @property
    def transaction_status(self) -> TransactionStatus:
        return TransactionStatus(self.status)


class GiftCard(Base):
    """Prepaid value instrument, redeemable exactly once"""
    __tablename__ = 'gift_cards'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(16), unique=True, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=GiftCardStatus.ACTIVE.value)

    issued_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('accounts.id', ondelete='SET NULL'), nullable=True, index=True)
    recipient_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    redeemed_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('accounts.id', ondelete='SET NULL'), nullable=True)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_gift_card_amount_positive'),
    )


class VirtualCard(Base):
    """Funded spending card tied to an account"""
    __tablename__ = 'virtual_cards'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey('accounts.id'), nullable=False, index=True)

    card_number: Mapped[str] = mapped_column(String(19), unique=True, nullable=False)
    cvv: Mapped[str] = mapped_column(String(4), nullable=False)
    expiry_month: Mapped[int] = mapped_column(Integer, nullable=False)
    expiry_year: Mapped[int] = mapped_column(Integer, nullable=False)
    cardholder_name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand: Mapped[str] = mapped_column(String(20), nullable=False, default=CardBrand.VISA.value)

    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    funding_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    spending_limit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("10000"))
    daily_limit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("2500"))
    monthly_limit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("25000"))
    total_spent: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=VirtualCardStatus.ACTIVE.value)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_virtual_card_balance_positive'),
    )

    @property
    def last4(self) -> str:
        return self.card_number[-4:]


class Plan(Base):
    """Fixed-term investment plan backing contracts"""
    __tablename__ = 'plans'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    roi_percent: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AuditLog(Base):
    """Audit trail of administrative and balance-affecting decisions"""
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    actor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    actor_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    actor_is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    target_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    before: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    after: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    diff: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
