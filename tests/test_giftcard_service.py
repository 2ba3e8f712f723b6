"""
Tests for gift card issuance and single-use redemption, including two
redemptions racing on the same code
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from models import GiftCard, GiftCardStatus, TransactionRecord, TransactionStatus, TransactionType, utcnow
from services.giftcard_service import CODE_ALPHABET, CODE_LENGTH, generate_code, giftcard_service
from services.ledger_service import ledger_service
from services.notification_service import NotificationEvent
from utils.authorization import Principal
from utils.exceptions import Conflict, Forbidden, InsufficientFunds, NotFound, ValidationFailed


@pytest.fixture
def issuer(make_account):
    return make_account(deposit="200", username="issuer")


@pytest.fixture
def issued_code(session, issuer):
    result = giftcard_service.purchase(session, Principal.from_account(issuer), issuer.id, "50")
    return result['giftcard']['code']


class TestCodes:

    def test_code_shape(self):
        code = generate_code()

        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)


class TestPurchase:

    def test_purchase_debits_amount_plus_fee(self, session, reload, issuer):
        result = giftcard_service.purchase(
            session, Principal.from_account(issuer), issuer.id, "50", recipient_email="friend@example.com"
        )

        assert result['success'] is True
        assert Decimal(result['fee']) == Decimal("4.5")
        assert Decimal(result['total_charged']) == Decimal("54.5")
        assert result['giftcard']['status'] == GiftCardStatus.ACTIVE.value
        assert ledger_service.bucket_value(reload(issuer), 'deposit') == Decimal("145.5")

        record = session.execute(
            select(TransactionRecord).where(TransactionRecord.type == TransactionType.GIFT_CARD_PURCHASE.value)
        ).scalar_one()
        assert record.amount == Decimal("-54.5")
        assert record.status == TransactionStatus.COMPLETED.value

    def test_card_valid_for_a_year(self, session, issuer, issued_code):
        card = session.execute(select(GiftCard).where(GiftCard.code == issued_code)).scalar_one()

        assert timedelta(days=364) < card.expires_at - card.created_at <= timedelta(days=366)

    @pytest.mark.parametrize("amount,message", [
        ("5", "Minimum gift card amount is $10"),
        ("1500", "Maximum gift card amount is $1,000"),
    ])
    def test_amount_bounds(self, session, issuer, amount, message):
        with pytest.raises(ValidationFailed) as exc_info:
            giftcard_service.purchase(session, Principal.from_account(issuer), issuer.id, amount)

        assert exc_info.value.message == message

    def test_insufficient_balance_issues_nothing(self, session, make_account):
        poor = make_account(deposit="20")

        with pytest.raises(InsufficientFunds):
            giftcard_service.purchase(session, Principal.from_account(poor), poor.id, "20")

        assert session.execute(select(GiftCard)).first() is None


class TestRedeem:

    def test_redeem_credits_deposit_once(self, session, reload, make_account, issuer, issued_code, notifications):
        redeemer = make_account(username="redeemer")
        principal = Principal.from_account(redeemer)

        result = giftcard_service.redeem(session, principal, redeemer.id, issued_code.lower())

        assert Decimal(result['amount']) == Decimal("50")
        assert ledger_service.bucket_value(reload(redeemer), 'deposit') == Decimal("50")
        assert notifications[-1].event == NotificationEvent.GIFT_CARD_REDEEMED

        card = session.execute(select(GiftCard).where(GiftCard.code == issued_code)).scalar_one()
        assert card.status == GiftCardStatus.REDEEMED.value
        assert card.redeemed_by_id == redeemer.id

        with pytest.raises(ValidationFailed) as exc_info:
            giftcard_service.redeem(session, principal, redeemer.id, issued_code)
        assert exc_info.value.message == "Gift card is redeemed"
        assert ledger_service.bucket_value(reload(redeemer), 'deposit') == Decimal("50")

    def test_unknown_code(self, session, account, owner):
        with pytest.raises(NotFound):
            giftcard_service.redeem(session, owner, account.id, "ZZZZZZZZ")

    def test_expired_card(self, session, reload, account, owner, issued_code):
        session.execute(
            update(GiftCard).where(GiftCard.code == issued_code).values(expires_at=utcnow() - timedelta(days=1))
        )
        session.commit()

        with pytest.raises(ValidationFailed) as exc_info:
            giftcard_service.redeem(session, owner, account.id, issued_code)

        assert exc_info.value.message == "Gift card has expired"
        session.expire_all()
        card = session.execute(select(GiftCard).where(GiftCard.code == issued_code)).scalar_one()
        assert card.status == GiftCardStatus.EXPIRED.value
        assert ledger_service.bucket_value(reload(account), 'deposit') == Decimal("100")

    def test_racing_redemptions_credit_exactly_once(
        self, session_factory, reload, make_account, issued_code, monkeypatch
    ):
        first_account = make_account(username="racer1")
        second_account = make_account(username="racer2")
        first = session_factory()
        second = session_factory()
        original_execute = second.execute
        raced = []

        def racing_execute(statement, *args, **kwargs):
            # The other redemption commits between our read and our conditional update
            if not raced and getattr(statement, 'is_update', False) and statement.table.name == 'gift_cards':
                raced.append(
                    giftcard_service.redeem(first, Principal.from_account(first_account), first_account.id, issued_code)
                )
            return original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(second, 'execute', racing_execute)
        try:
            with pytest.raises(Conflict) as exc_info:
                giftcard_service.redeem(
                    second, Principal.from_account(second_account), second_account.id, issued_code
                )
        finally:
            first.close()
            second.close()

        assert exc_info.value.message == "Gift card is redeemed"
        assert raced[0]['success'] is True
        assert ledger_service.bucket_value(reload(first_account), 'deposit') == Decimal("50")
        assert ledger_service.bucket_value(reload(second_account), 'deposit') == Decimal("0")


class TestVisibility:

    def test_issuer_lists_and_reads_cards(self, session, issuer, issued_code):
        principal = Principal.from_account(issuer)

        listing = giftcard_service.list_cards(session, principal, issuer.id)
        card_id = listing['giftcards'][0]['id']

        assert listing['total'] == 1
        assert giftcard_service.get_card(session, principal, card_id)['code'] == issued_code

    def test_other_accounts_cannot_read_card(self, session, account, owner, issuer, issued_code):
        card = session.execute(select(GiftCard).where(GiftCard.code == issued_code)).scalar_one()

        with pytest.raises(Forbidden):
            giftcard_service.get_card(session, owner, card.id)
        with pytest.raises(Forbidden):
            giftcard_service.list_cards(session, owner, issuer.id)
