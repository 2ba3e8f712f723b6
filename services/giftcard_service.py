"""
Gift Card Service
Issue prepaid gift cards from an account balance and redeem them exactly once
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import GiftCard, GiftCardStatus, TransactionStatus, TransactionType, utcnow
from services.ledger_service import LedgerService, ledger_service
from services.notification_service import NotificationEvent, NotificationService, notification_service
from services.transaction_store import TransactionStore, transaction_store
from utils.atomic_transactions import atomic_transaction
from utils.authorization import Principal, ensure_can_act
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import Conflict, Forbidden, LedgerError, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

# No 0/O or 1/I to keep codes readable
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10


def generate_code() -> str:
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def serialize_gift_card(card: GiftCard) -> Dict[str, Any]:
    return {
        'id': card.id,
        'code': card.code,
        'amount': str(card.amount),
        'currency': card.currency,
        'status': card.status,
        'recipient': card.recipient_email,
        'expires_at': card.expires_at.isoformat() if card.expires_at else None,
        'created_at': card.created_at.isoformat() if card.created_at else None,
        'redeemed_at': card.redeemed_at.isoformat() if card.redeemed_at else None,
    }


class GiftCardService:
    """Gift card issuance and single-use redemption"""

    def __init__(
        self,
        ledger: Optional[LedgerService] = None,
        store: Optional[TransactionStore] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.ledger = ledger or ledger_service
        self.store = store or transaction_store
        self.notifier = notifier or notification_service

    def _unique_code(self, session: Session) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_code()
            exists = session.execute(select(GiftCard.id).where(GiftCard.code == code)).first()
            if exists is None:
                return code
        logger.error(f"❌ Failed to generate a unique gift card code after {MAX_CODE_ATTEMPTS} attempts")
        raise LedgerError("Failed to generate unique code")

    def purchase(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        amount,
        recipient_email: Optional[str] = None,
        message: Optional[str] = None,
        currency: str = "USD",
    ) -> Dict[str, Any]:
        """Debit amount plus the issuance fee and issue an active card valid for one year"""
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.to_decimal(amount, "gift_card")
        if amount < Config.GIFT_CARD_MIN_AMOUNT:
            raise ValidationFailed(f"Minimum gift card amount is ${Config.GIFT_CARD_MIN_AMOUNT}")
        if amount > Config.GIFT_CARD_MAX_AMOUNT:
            raise ValidationFailed(f"Maximum gift card amount is ${Config.GIFT_CARD_MAX_AMOUNT:,}")

        fee = Config.GIFT_CARD_FEE
        total_cost = amount + fee

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.debit(session, account, total_cost)

            card = GiftCard(
                code=self._unique_code(session),
                amount=amount,
                currency=currency.upper(),
                fee=fee,
                status=GiftCardStatus.ACTIVE.value,
                issued_by_id=account.id,
                recipient_email=recipient_email,
                message=message,
                expires_at=utcnow() + timedelta(days=Config.GIFT_CARD_VALIDITY_DAYS),
            )
            session.add(card)
            session.flush()

            self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.GIFT_CARD_PURCHASE,
                amount=-total_cost,
                currency=currency,
                status=TransactionStatus.COMPLETED,
                metadata={
                    'giftCardId': card.id,
                    'giftCardCode': card.code,
                    'cardAmount': str(amount),
                    'fee': str(fee),
                    'recipient': recipient_email,
                },
            )

        logger.info(f"🎁 Gift card {card.code} issued by account {account_id}: {amount} {card.currency}")
        return {
            'success': True,
            'message': 'Gift card issued successfully',
            'giftcard': serialize_gift_card(card),
            'fee': str(fee),
            'total_charged': str(total_cost),
            'new_balance': str(self.ledger.available_balance(account)),
        }

    def redeem(self, session: Session, principal: Principal, account_id: int, code: str) -> Dict[str, Any]:
        """
        Credit the card value to the redeeming account's deposit.

        The card flips active -> redeemed through a conditional UPDATE in the
        same unit of work as the credit, so only one of two racing redemptions
        can succeed; the other gets Conflict.
        """
        ensure_can_act(principal, account_id)
        if not code or not isinstance(code, str):
            raise ValidationFailed("Gift card code is required")
        code = code.strip().upper()

        with atomic_transaction(session):
            card = session.execute(
                select(GiftCard).where(GiftCard.code == code).execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if card is None:
                raise NotFound("Gift card not found")
            if card.status != GiftCardStatus.ACTIVE.value:
                raise ValidationFailed(f"Gift card is {card.status}")
            expired = card.expires_at is not None and card.expires_at < utcnow()

        if expired:
            with atomic_transaction(session):
                session.execute(
                    update(GiftCard)
                    .where(GiftCard.id == card.id, GiftCard.status == GiftCardStatus.ACTIVE.value)
                    .values(status=GiftCardStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
            logger.info(f"⌛ Gift card {code} expired at {card.expires_at}")
            raise ValidationFailed("Gift card has expired")

        with atomic_transaction(session):
            now = utcnow()
            result = session.execute(
                update(GiftCard)
                .where(GiftCard.id == card.id, GiftCard.status == GiftCardStatus.ACTIVE.value)
                .values(status=GiftCardStatus.REDEEMED.value, redeemed_by_id=account_id, redeemed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = session.execute(
                    select(GiftCard.status).where(GiftCard.id == card.id)
                ).scalar_one()
                logger.warning(f"🔒 Gift card {code} redemption lost race, card is {current}")
                raise Conflict(f"Gift card is {current}")

            account = self.ledger.get_account(session, account_id)
            amount = MonetaryDecimal.to_decimal(card.amount)
            self.ledger.credit(session, account, amount)
            self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.GIFT_CARD_REDEMPTION,
                amount=amount,
                currency=card.currency,
                status=TransactionStatus.COMPLETED,
                counterparty_id=card.issued_by_id,
                metadata={'giftCardId': card.id, 'giftCardCode': code},
            )

        self.notifier.notify(
            NotificationEvent.GIFT_CARD_REDEEMED, account, {'code': code, 'amount': str(amount)}
        )
        logger.info(f"✅ Gift card {code} redeemed by account {account_id}: {amount}")
        return {
            'success': True,
            'message': 'Gift card redeemed successfully',
            'amount': str(amount),
            'new_balance': str(self.ledger.available_balance(account)),
        }

    def list_cards(self, session: Session, principal: Principal, account_id: int) -> Dict[str, Any]:
        ensure_can_act(principal, account_id)
        cards: List[GiftCard] = session.execute(
            select(GiftCard).where(GiftCard.issued_by_id == account_id).order_by(GiftCard.created_at.desc())
        ).scalars().all()
        return {'giftcards': [serialize_gift_card(card) for card in cards], 'total': len(cards)}

    def get_card(self, session: Session, principal: Principal, card_id: int) -> Dict[str, Any]:
        card = session.get(GiftCard, card_id)
        if card is None:
            raise NotFound("Gift card not found")
        # Only the issuer (or an admin) sees full details
        if not principal.is_admin and card.issued_by_id != principal.account_id:
            raise Forbidden("Access denied")
        return serialize_gift_card(card)


# Global gift card service instance
giftcard_service = GiftCardService()
