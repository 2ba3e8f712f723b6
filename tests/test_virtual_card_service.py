"""
Tests for virtual cards: Luhn-valid numbers, value conservation between the
account and the card, freeze/cancel rules and admin-only limit changes
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from models import AuditLog, CardBrand, VirtualCard, VirtualCardStatus
from services.ledger_service import ledger_service
from services.virtual_card_service import (
    generate_card_number, is_luhn_valid, luhn_check_digit, virtual_card_service as cards
)
from utils.authorization import Principal
from utils.exceptions import Forbidden, InsufficientFunds, NotFound, ValidationFailed


@pytest.fixture
def holder(make_account):
    return make_account(deposit="500", username="holder")


@pytest.fixture
def holder_principal(holder):
    return Principal.from_account(holder)


@pytest.fixture
def card_id(session, holder, holder_principal):
    return cards.issue(session, holder_principal, holder.id, "100")['card']['id']


class TestCardNumbers:

    def test_known_luhn_number(self):
        assert luhn_check_digit("7992739871") == "3"
        assert is_luhn_valid("79927398713") is True
        assert is_luhn_valid("79927398710") is False

    @pytest.mark.parametrize("brand,prefix", [(CardBrand.VISA, "4532"), (CardBrand.MASTERCARD, "5412")])
    def test_generated_numbers(self, brand, prefix):
        number = generate_card_number(brand)

        assert len(number) == 16
        assert number.startswith(prefix)
        assert is_luhn_valid(number)


class TestIssue:

    def test_issue_debits_funding_plus_fee(self, session, reload, holder, holder_principal):
        result = cards.issue(session, holder_principal, holder.id, "100", brand="mastercard", cardholder_name="Jo Holder")

        card = result['card']
        assert is_luhn_valid(card['card_number'])
        assert len(card['cvv']) == 3
        assert card['cardholder_name'] == "JO HOLDER"
        assert card['brand'] == "mastercard"
        assert Decimal(card['balance']) == Decimal("100")
        assert Decimal(result['total_charged']) == Decimal("149")
        assert ledger_service.bucket_value(reload(holder), 'deposit') == Decimal("351")

    def test_listing_masks_number(self, session, holder, holder_principal, card_id):
        listing = cards.list_cards(session, holder_principal, holder.id)

        assert listing['total'] == 1
        assert listing['cards'][0]['card_number'].startswith("**** **** **** ")
        assert 'cvv' not in listing['cards'][0]

    def test_unsupported_brand(self, session, holder, holder_principal):
        with pytest.raises(ValidationFailed):
            cards.issue(session, holder_principal, holder.id, "10", brand="amex")

    def test_cannot_afford_fee(self, session, make_account):
        poor = make_account(deposit="60")

        with pytest.raises(InsufficientFunds):
            cards.issue(session, Principal.from_account(poor), poor.id, "20")

        assert session.execute(select(VirtualCard)).first() is None


class TestValueConservation:

    def test_fund_then_cancel_conserves_value(self, session, reload, holder, holder_principal, card_id):
        before = ledger_service.available_balance(reload(holder))

        cards.fund(session, holder_principal, card_id, "50")
        funded = reload(holder)
        card = session.get(VirtualCard, card_id)
        assert ledger_service.available_balance(funded) + card.balance == before + Decimal("100")

        result = cards.cancel(session, holder_principal, card_id)

        assert Decimal(result['refunded']) == Decimal("150")
        assert ledger_service.available_balance(reload(holder)) == before + Decimal("100")
        card = reload(card)
        assert card.status == VirtualCardStatus.CANCELLED.value
        assert card.balance == Decimal("0")

    def test_frozen_card_cannot_be_funded(self, session, holder_principal, card_id):
        cards.toggle_freeze(session, holder_principal, card_id)

        with pytest.raises(ValidationFailed) as exc_info:
            cards.fund(session, holder_principal, card_id, "10")
        assert exc_info.value.message == "Card is not active"

    def test_cancel_twice(self, session, holder_principal, card_id):
        cards.cancel(session, holder_principal, card_id)

        with pytest.raises(ValidationFailed) as exc_info:
            cards.cancel(session, holder_principal, card_id)
        assert exc_info.value.message == "Card is already cancelled"


class TestFreeze:

    def test_toggle(self, session, holder_principal, card_id):
        frozen = cards.toggle_freeze(session, holder_principal, card_id)
        unfrozen = cards.toggle_freeze(session, holder_principal, card_id)

        assert frozen['message'] == "Card frozen successfully"
        assert frozen['status'] == VirtualCardStatus.FROZEN.value
        assert unfrozen['message'] == "Card unfrozen successfully"
        assert unfrozen['status'] == VirtualCardStatus.ACTIVE.value

    def test_cancelled_card_cannot_toggle(self, session, holder_principal, card_id):
        cards.cancel(session, holder_principal, card_id)

        with pytest.raises(ValidationFailed):
            cards.toggle_freeze(session, holder_principal, card_id)


class TestAccessAndLimits:

    def test_other_account_cannot_touch_card(self, session, owner, card_id):
        with pytest.raises(Forbidden):
            cards.fund(session, owner, card_id, "10")

    def test_missing_card(self, session, holder_principal):
        with pytest.raises(NotFound):
            cards.toggle_freeze(session, holder_principal, 31337)

    def test_admin_updates_limits_with_audit(self, session, admin, card_id):
        result = cards.update_limits(session, admin, card_id, daily_limit="500")

        assert Decimal(result['limits']['daily_limit']) == Decimal("500")
        assert Decimal(result['limits']['spending_limit']) == Decimal("10000")
        entry = session.execute(
            select(AuditLog).where(AuditLog.action == "CARD_LIMITS_UPDATED")
        ).scalar_one()
        assert entry.entity_id == str(card_id)
        assert 'daily_limit' in entry.diff

    def test_holder_cannot_update_limits(self, session, holder_principal, card_id):
        with pytest.raises(Forbidden):
            cards.update_limits(session, holder_principal, card_id, daily_limit="999999")
