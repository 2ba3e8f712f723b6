"""
Tests for the transaction state machine and its balance side effects:
withdrawal approval/completion/failure, deposits with referral commission,
contracts and the generic admin decisions on pre-debited flows
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from models import AuditLog, TransactionRecord, TransactionStatus, TransactionType
from services.ledger_service import ledger_service
from services.notification_service import NotificationEvent
from services.transaction_state_machine import transaction_state_machine as machine
from services.transaction_store import transaction_store
from utils.authorization import Principal
from utils.exceptions import Conflict, Forbidden, InsufficientFunds, ValidationFailed

ETH_ADDRESS = "0x" + "a" * 40


@pytest.fixture
def withdrawal(session, banking, account, owner):
    """A pending withdrawal of 40 from an account holding 100"""
    result = banking.request_withdrawal(session, owner, account.id, "40", "eth", ETH_ADDRESS)
    return result['transaction_id']


def buckets(reload, account):
    stored = reload(account)
    return {
        name: ledger_service.bucket_value(stored, name)
        for name in ('deposit', 'interest', 'bonus', 'withdraw')
    }


class TestWithdrawalLifecycle:

    def test_request_does_not_debit(self, reload, account, withdrawal):
        assert buckets(reload, account)['deposit'] == Decimal("100")
        assert buckets(reload, account)['withdraw'] == Decimal("0")

    def test_approve_reserves_in_withdraw(self, session, reload, account, admin, withdrawal, notifications):
        result = machine.approve_withdrawal(session, admin, withdrawal)

        assert result['success'] is True
        assert result['status'] == TransactionStatus.APPROVED.value
        state = buckets(reload, account)
        assert state['deposit'] == Decimal("100")
        assert state['withdraw'] == Decimal("40")
        assert ledger_service.available_balance(reload(account)) == Decimal("60")

        audit = session.execute(
            select(AuditLog).where(AuditLog.action == "WITHDRAWAL_STATUS_UPDATED")
        ).scalar_one()
        assert audit.entity_id == str(withdrawal)
        assert audit.actor_id == admin.account_id
        assert [n.event for n in notifications][-1] == NotificationEvent.WITHDRAW_STATUS

    def test_complete_drains_buckets_and_clears_withdraw(self, session, reload, account, admin, withdrawal):
        machine.approve_withdrawal(session, admin, withdrawal)

        result = machine.complete_withdrawal(session, withdrawal, actor=admin, tx_hash="0xfeed")

        assert result['status'] == TransactionStatus.COMPLETED.value
        state = buckets(reload, account)
        assert state['deposit'] == Decimal("60")
        assert state['withdraw'] == Decimal("0")
        record = transaction_store.find_by_id(session, withdrawal)
        assert record.tx_hash == "0xfeed"
        assert record.processed_at is not None

    def test_failure_after_approval_is_compensated(self, session, reload, account, admin, withdrawal):
        machine.approve_withdrawal(session, admin, withdrawal)

        result = machine.fail_withdrawal(session, withdrawal, "Provider rejected payout")

        assert result['success'] is False
        assert result['status'] == TransactionStatus.FAILED.value
        state = buckets(reload, account)
        assert state['deposit'] == Decimal("100")
        assert state['withdraw'] == Decimal("0")
        assert transaction_store.find_by_id(session, withdrawal).error_reason == "Provider rejected payout"

    def test_approving_most_of_the_balance_keeps_available_non_negative(
        self, session, banking, reload, account, owner, admin
    ):
        transaction_id = banking.request_withdrawal(
            session, owner, account.id, "60", "eth", ETH_ADDRESS
        )['transaction_id']

        machine.approve_withdrawal(session, admin, transaction_id)

        state = buckets(reload, account)
        assert state['deposit'] == Decimal("100")
        assert state['withdraw'] == Decimal("60")
        assert ledger_service.available_balance(reload(account)) == Decimal("40")

        machine.complete_withdrawal(session, transaction_id, actor=admin)

        assert ledger_service.available_balance(reload(account)) == Decimal("40")
        assert buckets(reload, account)['withdraw'] == Decimal("0")

    def test_failure_of_pending_withdrawal_moves_no_funds(self, session, reload, account, withdrawal):
        machine.fail_withdrawal(session, withdrawal, "Missing wallet data (currency or address)")

        state = buckets(reload, account)
        assert state['deposit'] == Decimal("100")
        assert state['withdraw'] == Decimal("0")

    def test_reject_moves_no_funds(self, session, reload, account, admin, withdrawal):
        result = machine.reject_withdrawal(session, admin, withdrawal, reason="Suspicious address")

        assert result['status'] == TransactionStatus.REJECTED.value
        assert buckets(reload, account)['deposit'] == Decimal("100")

    def test_approve_rechecks_current_balance(self, session, reload, account, admin, withdrawal):
        ledger_service.admin_set_buckets(session, admin, account, {'deposit': "10"})

        with pytest.raises(InsufficientFunds):
            machine.approve_withdrawal(session, admin, withdrawal)

        assert transaction_store.find_by_id(session, withdrawal).status == TransactionStatus.PENDING.value
        assert buckets(reload, account)['withdraw'] == Decimal("0")

    def test_second_approval_conflicts(self, session, reload, account, admin, withdrawal):
        machine.approve_withdrawal(session, admin, withdrawal)

        with pytest.raises(Conflict):
            machine.approve_withdrawal(session, admin, withdrawal)

        state = buckets(reload, account)
        assert state['deposit'] == Decimal("100")
        assert state['withdraw'] == Decimal("40")

    def test_terminal_withdrawal_cannot_fail(self, session, admin, withdrawal):
        machine.reject_withdrawal(session, admin, withdrawal)

        with pytest.raises(Conflict):
            machine.fail_withdrawal(session, withdrawal, "too late")

    def test_pending_withdrawal_cannot_complete(self, session, admin, withdrawal):
        with pytest.raises(ValidationFailed):
            machine.complete_withdrawal(session, withdrawal, actor=admin)

    def test_non_admin_cannot_approve(self, session, owner, withdrawal):
        with pytest.raises(Forbidden):
            machine.approve_withdrawal(session, owner, withdrawal)

    def test_generic_approve_dispatches_by_status(self, session, reload, account, admin, withdrawal):
        first = machine.approve_transaction(session, admin, withdrawal)
        second = machine.approve_transaction(session, admin, withdrawal)

        assert first['status'] == TransactionStatus.APPROVED.value
        assert second['status'] == TransactionStatus.COMPLETED.value
        assert buckets(reload, account)['withdraw'] == Decimal("0")


class TestDeposits:

    def test_approve_credits_deposit(self, session, banking, reload, account, owner, admin):
        transaction_id = banking.request_deposit(session, owner, account.id, "50", method="bank")['transaction_id']
        assert buckets(reload, account)['deposit'] == Decimal("100")

        result = machine.approve_deposit(session, admin, transaction_id)

        assert result['status'] == TransactionStatus.APPROVED.value
        assert buckets(reload, account)['deposit'] == Decimal("150")

    def test_referrer_earns_commission(self, session, banking, reload, make_account, admin, notifications):
        referrer = make_account(username="alice")
        referred = make_account(username="bob", referral_code="alice")
        transaction_id = banking.request_deposit(
            session, Principal.from_account(referred), referred.id, "200"
        )['transaction_id']

        machine.approve_deposit(session, admin, transaction_id)

        assert buckets(reload, referred)['deposit'] == Decimal("200")
        assert buckets(reload, referrer)['deposit'] == Decimal("10")
        bonus = session.execute(
            select(TransactionRecord).where(TransactionRecord.type == TransactionType.REFERRAL_BONUS.value)
        ).scalar_one()
        assert bonus.account_id == referrer.id
        assert bonus.counterparty_id == referred.id
        assert bonus.status == TransactionStatus.COMPLETED.value
        assert NotificationEvent.REFERRAL_COMMISSION in [n.event for n in notifications]

    def test_unknown_referral_code_pays_nothing(self, session, banking, make_account, admin):
        referred = make_account(username="carol", referral_code="nobody")
        transaction_id = banking.request_deposit(
            session, Principal.from_account(referred), referred.id, "200"
        )['transaction_id']

        machine.approve_deposit(session, admin, transaction_id)

        assert session.execute(
            select(TransactionRecord).where(TransactionRecord.type == TransactionType.REFERRAL_BONUS.value)
        ).first() is None

    def test_reject_deposit(self, session, banking, reload, account, owner, admin):
        transaction_id = banking.request_deposit(session, owner, account.id, "50")['transaction_id']

        result = machine.reject_deposit(session, admin, transaction_id, reason="No funds received")

        assert result['status'] == TransactionStatus.REJECTED.value
        assert buckets(reload, account)['deposit'] == Decimal("100")


class TestContracts:

    def test_create_debits_stake(self, session, reload, account, owner, plan):
        result = machine.create_contract(session, owner, account.id, plan.id, "100")

        record = transaction_store.find_by_id(session, result['transaction_id'])
        assert record.status == TransactionStatus.PENDING.value
        assert record.amount == Decimal("-100")
        assert record.plan_data['plan'] == "Gold"
        assert Decimal(record.plan_data['interest']) == Decimal("10")
        assert buckets(reload, account)['deposit'] == Decimal("0")

    def test_reject_refunds_stake_and_zeroes_amount(self, session, reload, account, owner, admin, plan):
        transaction_id = machine.create_contract(session, owner, account.id, plan.id, "100")['transaction_id']

        result = machine.reject_contract(session, admin, transaction_id, reason="Plan closed")

        assert result['status'] == TransactionStatus.REJECTED.value
        assert buckets(reload, account)['deposit'] == Decimal("100")
        assert transaction_store.find_by_id(session, transaction_id).amount == Decimal("0")

    def test_complete_returns_principal_and_interest(self, session, reload, account, owner, admin, plan):
        transaction_id = machine.create_contract(session, owner, account.id, plan.id, "100")['transaction_id']
        machine.approve_contract(session, admin, transaction_id)

        machine.complete_contract(session, admin, transaction_id)

        state = buckets(reload, account)
        assert state['deposit'] == Decimal("100")
        assert state['interest'] == Decimal("10")

    def test_stake_must_come_from_deposit(self, session, make_account, plan):
        account = make_account(deposit="40", interest="100")

        with pytest.raises(InsufficientFunds):
            machine.create_contract(session, Principal.from_account(account), account.id, plan.id, "60")

    def test_below_plan_minimum(self, session, account, owner, plan):
        with pytest.raises(ValidationFailed):
            machine.create_contract(session, owner, account.id, plan.id, "20")


class TestPreDebitedFlows:

    def test_rejected_external_transfer_refunds_amount_and_fee(self, session, banking, reload, make_account, admin):
        account = make_account(deposit="200")
        transaction_id = banking.external_transfer(
            session, Principal.from_account(account), account.id, "100", beneficiary="Jane Doe"
        )['transaction_id']
        assert buckets(reload, account)['deposit'] == Decimal("97.5")

        result = machine.reject_transaction(session, admin, transaction_id, reason="Invalid IBAN")

        assert result['status'] == TransactionStatus.REJECTED.value
        assert buckets(reload, account)['deposit'] == Decimal("200")

    def test_failed_crypto_withdrawal_refunds(self, session, banking, reload, account, owner):
        transaction_id = banking.crypto_withdrawal(
            session, owner, account.id, "30", address=ETH_ADDRESS
        )['transaction_id']
        assert buckets(reload, account)['deposit'] == Decimal("70")

        result = machine.fail_pre_debited(session, transaction_id, "Chain congestion")

        assert result['status'] == TransactionStatus.FAILED.value
        assert buckets(reload, account)['deposit'] == Decimal("100")

    def test_completed_crypto_deposit_credits(self, session, banking, reload, account, owner, admin):
        transaction_id = banking.crypto_deposit(session, owner, account.id, "25")['transaction_id']

        machine.approve_transaction(session, admin, transaction_id)

        assert buckets(reload, account)['deposit'] == Decimal("125")
