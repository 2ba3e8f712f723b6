"""
Virtual Card Service

Funded spending cards. Value moves between the account buckets and
``card.balance`` without being created or lost: funding debits the account by
exactly the amount credited to the card, cancelling credits the account with
exactly the card's remaining balance.
"""

import logging
import secrets
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    CardBrand, TransactionStatus, TransactionType, VirtualCard, VirtualCardStatus, utcnow
)
from services.audit_logger import AuditLogger, audit_logger
from services.ledger_service import LedgerService, ledger_service
from services.transaction_store import TransactionStore, transaction_store
from utils.atomic_transactions import atomic_transaction
from utils.authorization import Principal, ensure_admin, ensure_can_act
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import Conflict, Forbidden, InvalidAmount, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

BRAND_PREFIXES = {
    CardBrand.VISA: "4532",
    CardBrand.MASTERCARD: "5412",
}
CARD_NUMBER_LENGTH = 16


def luhn_check_digit(partial_number: str) -> str:
    """Check digit that makes partial_number + digit pass the Luhn check"""
    total = 0
    double = True
    for char in reversed(partial_number):
        digit = int(char)
        if double:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
        double = not double
    return str((10 - total % 10) % 10)


def is_luhn_valid(number: str) -> bool:
    if not number or not number.isdigit():
        return False
    return luhn_check_digit(number[:-1]) == number[-1]


def generate_card_number(brand: CardBrand = CardBrand.VISA) -> str:
    prefix = BRAND_PREFIXES[brand]
    body = prefix + ''.join(str(secrets.randbelow(10)) for _ in range(CARD_NUMBER_LENGTH - len(prefix) - 1))
    return body + luhn_check_digit(body)


def generate_cvv() -> str:
    return str(100 + secrets.randbelow(900))


def serialize_card(card: VirtualCard, reveal: bool = False) -> Dict[str, Any]:
    data = {
        'id': card.id,
        'card_number': card.card_number if reveal else f"**** **** **** {card.last4}",
        'cardholder_name': card.cardholder_name,
        'expiry_month': card.expiry_month,
        'expiry_year': card.expiry_year,
        'brand': card.brand,
        'status': card.status,
        'balance': str(card.balance),
        'spending_limit': str(card.spending_limit),
        'daily_limit': str(card.daily_limit),
        'monthly_limit': str(card.monthly_limit),
        'total_spent': str(card.total_spent),
    }
    if reveal:
        data['cvv'] = card.cvv
    return data


class VirtualCardService:
    """Issue, fund, freeze and cancel virtual cards"""

    def __init__(
        self,
        ledger: Optional[LedgerService] = None,
        store: Optional[TransactionStore] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.ledger = ledger or ledger_service
        self.store = store or transaction_store
        self.audit = audit or audit_logger

    def _load_card(self, session: Session, principal: Principal, card_id: int) -> VirtualCard:
        card = session.execute(
            select(VirtualCard)
            .where(VirtualCard.id == card_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if card is None:
            raise NotFound("Card not found")
        if not principal.is_admin and card.account_id != principal.account_id:
            raise Forbidden("Access denied")
        return card

    def _write_card(self, session: Session, card: VirtualCard, **values) -> None:
        """Version-guarded card update"""
        expected_version = card.version
        session.flush()
        result = session.execute(
            update(VirtualCard)
            .where(VirtualCard.id == card.id, VirtualCard.version == expected_version)
            .values(**values, version=expected_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"🔒 Optimistic lock conflict: VirtualCard id={card.id} expected_version={expected_version}")
            raise Conflict(f"Card {card.id} was modified by another request. Please retry.")
        session.refresh(card)

    def issue(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        funding_amount,
        brand: str = CardBrand.VISA.value,
        cardholder_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Debit funding + issuance fee and issue an active card holding the funding amount"""
        ensure_can_act(principal, account_id)
        funding_amount = MonetaryDecimal.to_decimal(funding_amount or 0, "card_funding")
        if funding_amount < 0:
            raise InvalidAmount("Funding amount must not be negative")
        try:
            card_brand = CardBrand(str(brand).lower())
        except ValueError:
            raise ValidationFailed(f"Unsupported card brand: {brand}")

        fee = Config.VIRTUAL_CARD_FEE
        total_debit = funding_amount + fee

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.debit(session, account, total_debit)

            now = utcnow()
            card = VirtualCard(
                account_id=account.id,
                card_number=generate_card_number(card_brand),
                cvv=generate_cvv(),
                expiry_month=now.month,
                expiry_year=now.year + Config.VIRTUAL_CARD_VALIDITY_YEARS,
                cardholder_name=(cardholder_name or account.name or account.username).upper(),
                brand=card_brand.value,
                balance=funding_amount,
                funding_amount=funding_amount,
                status=VirtualCardStatus.ACTIVE.value,
            )
            session.add(card)
            session.flush()

            self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.VIRTUAL_CARD_PURCHASE,
                amount=-total_debit,
                status=TransactionStatus.COMPLETED,
                metadata={
                    'cardId': card.id,
                    'cardLast4': card.last4,
                    'fee': str(fee),
                    'fundingAmount': str(funding_amount),
                },
            )

        logger.info(f"💳 Virtual card {card.id} (**** {card.last4}) issued to account {account_id}, funded {funding_amount}")
        return {
            'success': True,
            'message': 'Virtual card issued successfully',
            'card': serialize_card(card, reveal=True),
            'fee': str(fee),
            'total_charged': str(total_debit),
            'new_balance': str(self.ledger.available_balance(account)),
        }

    def fund(self, session: Session, principal: Principal, card_id: int, amount) -> Dict[str, Any]:
        """Move amount from the account to the card"""
        amount = MonetaryDecimal.validate_positive(amount, "card_funding")

        with atomic_transaction(session):
            card = self._load_card(session, principal, card_id)
            if card.status != VirtualCardStatus.ACTIVE.value:
                raise ValidationFailed("Card is not active")

            account = self.ledger.get_account(session, card.account_id)
            self.ledger.debit(session, account, amount)
            self._write_card(
                session, card,
                balance=MonetaryDecimal.normalize(card.balance) + amount,
                funding_amount=MonetaryDecimal.normalize(card.funding_amount) + amount,
            )
            self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.CARD_FUNDING,
                amount=-amount,
                status=TransactionStatus.COMPLETED,
                metadata={'cardId': card.id, 'description': f"Card funding - **** {card.last4}"},
            )

        logger.info(f"💳 Card {card_id} funded with {amount}")
        return {
            'success': True,
            'message': 'Card funded successfully',
            'card_balance': str(card.balance),
            'new_balance': str(self.ledger.available_balance(account)),
        }

    def toggle_freeze(self, session: Session, principal: Principal, card_id: int) -> Dict[str, Any]:
        """active <-> frozen; cancelled and expired cards cannot change"""
        with atomic_transaction(session):
            card = self._load_card(session, principal, card_id)
            if card.status in (VirtualCardStatus.CANCELLED.value, VirtualCardStatus.EXPIRED.value):
                raise ValidationFailed("Cannot modify this card")
            new_status = (
                VirtualCardStatus.ACTIVE if card.status == VirtualCardStatus.FROZEN.value
                else VirtualCardStatus.FROZEN
            )
            self._write_card(session, card, status=new_status.value)

        verb = "frozen" if new_status == VirtualCardStatus.FROZEN else "unfrozen"
        logger.info(f"❄️ Card {card_id} {verb}")
        return {'success': True, 'message': f"Card {verb} successfully", 'status': card.status}

    def cancel(self, session: Session, principal: Principal, card_id: int) -> Dict[str, Any]:
        """Refund the remaining card balance to deposit and zero the card"""
        with atomic_transaction(session):
            card = self._load_card(session, principal, card_id)
            if card.status == VirtualCardStatus.CANCELLED.value:
                raise ValidationFailed("Card is already cancelled")

            refund = MonetaryDecimal.normalize(card.balance)
            account = self.ledger.get_account(session, card.account_id)
            self._write_card(session, card, status=VirtualCardStatus.CANCELLED.value, balance=Decimal("0"))

            if refund > 0:
                self.ledger.reverse_debit(session, account, refund)
                self.store.create(
                    session,
                    account_id=account.id,
                    transaction_type=TransactionType.CARD_REFUND,
                    amount=refund,
                    status=TransactionStatus.COMPLETED,
                    metadata={'cardId': card.id, 'description': f"Card cancelled - **** {card.last4}"},
                )

        logger.info(f"🚫 Card {card_id} cancelled, {refund} refunded to account {card.account_id}")
        return {
            'success': True,
            'message': 'Card cancelled successfully',
            'refunded': str(refund),
            'new_balance': str(self.ledger.available_balance(account)),
        }

    def update_limits(
        self,
        session: Session,
        actor: Principal,
        card_id: int,
        spending_limit=None,
        daily_limit=None,
        monthly_limit=None,
    ) -> Dict[str, Any]:
        """Admin-only limit changes; omitted limits keep their value"""
        ensure_admin(actor)
        values = {}
        for name, raw in (
            ('spending_limit', spending_limit),
            ('daily_limit', daily_limit),
            ('monthly_limit', monthly_limit),
        ):
            if raw is None:
                continue
            value = MonetaryDecimal.to_decimal(raw, name)
            if value < 0:
                raise InvalidAmount(f"{name} must not be negative")
            values[name] = value

        with atomic_transaction(session):
            card = self._load_card(session, actor, card_id)
            before = {
                'spending_limit': str(card.spending_limit),
                'daily_limit': str(card.daily_limit),
                'monthly_limit': str(card.monthly_limit),
            }
            if values:
                self._write_card(session, card, **values)
            limits = {
                'spending_limit': str(card.spending_limit),
                'daily_limit': str(card.daily_limit),
                'monthly_limit': str(card.monthly_limit),
            }
            self.audit.log(
                session,
                action="CARD_LIMITS_UPDATED",
                entity_type="virtual_card",
                entity_id=card.id,
                actor=actor,
                target_user_id=card.account_id,
                before=before,
                after=limits,
                message="Card limits updated",
            )

        return {'success': True, 'message': 'Card limits updated', 'limits': limits}

    def list_cards(self, session: Session, principal: Principal, account_id: int) -> Dict[str, Any]:
        ensure_can_act(principal, account_id)
        cards = session.execute(
            select(VirtualCard).where(VirtualCard.account_id == account_id).order_by(VirtualCard.created_at.desc())
        ).scalars().all()
        return {'cards': [serialize_card(card) for card in cards], 'total': len(cards)}


# Global virtual card service instance
virtual_card_service = VirtualCardService()
