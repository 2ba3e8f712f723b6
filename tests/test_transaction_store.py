"""
Tests for the transaction record store: sign rules, the single pending
withdrawal/deposit rule, paging and conditional status updates
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import TransactionRecord, TransactionStatus, TransactionType, utcnow
from services.transaction_store import UNIQUE_PENDING_MESSAGES, transaction_store
from utils.exceptions import Conflict, NotFound, ValidationFailed


class TestCreate:

    def test_create_pending_withdrawal(self, session, account):
        record = transaction_store.create(
            session,
            account_id=account.id,
            transaction_type=TransactionType.WITHDRAWAL,
            amount=Decimal("-25"),
            wallet_data={'address': '0xabc', 'coin_name': 'ETH'},
        )
        session.commit()

        assert record.id is not None
        assert record.status == TransactionStatus.PENDING.value
        assert record.currency == "USD"
        assert record.attempts == 0
        assert record.auto_processed is False
        assert record.processed_at is None

    def test_completed_records_are_stamped_processed(self, session, account):
        record = transaction_store.create(
            session, account.id, TransactionType.BONUS, "5", status=TransactionStatus.COMPLETED
        )

        assert record.processed_at is not None

    @pytest.mark.parametrize("transaction_type,amount", [
        (TransactionType.WITHDRAWAL, "25"),
        (TransactionType.DEPOSIT, "-25"),
        (TransactionType.GIFT_CARD_REDEMPTION, "-10"),
        (TransactionType.CONTRACT, "100"),
        (TransactionType.DEPOSIT, "0"),
    ])
    def test_amount_sign_must_match_type(self, session, account, transaction_type, amount):
        with pytest.raises(ValidationFailed):
            transaction_store.create(session, account.id, transaction_type, amount)

    def test_internal_transfer_accepts_either_sign(self, session, account):
        out = transaction_store.create(
            session, account.id, TransactionType.INTERNAL_TRANSFER, "-5", status=TransactionStatus.COMPLETED
        )
        back = transaction_store.create(
            session, account.id, TransactionType.INTERNAL_TRANSFER, "5", status=TransactionStatus.COMPLETED
        )

        assert out.amount < 0 < back.amount

    def test_second_pending_withdrawal_conflicts(self, session, account):
        transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")
        session.commit()

        with pytest.raises(Conflict) as exc_info:
            transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")
        assert "pending withdrawal" in exc_info.value.message

    def test_second_pending_deposit_conflicts(self, session, account):
        transaction_store.create(session, account.id, TransactionType.DEPOSIT, "10")
        session.commit()

        with pytest.raises(Conflict):
            transaction_store.create(session, account.id, TransactionType.DEPOSIT, "10")

    @pytest.mark.parametrize("transaction_type,amount", [
        (TransactionType.WITHDRAWAL, "-10"),
        (TransactionType.DEPOSIT, "10"),
    ])
    def test_database_rejects_second_pending_past_the_check(
        self, session_factory, account, monkeypatch, transaction_type, amount
    ):
        first = session_factory()
        second = session_factory()
        try:
            assert not transaction_store.has_pending(first, account.id, transaction_type)
            assert not transaction_store.has_pending(second, account.id, transaction_type)
            # Both requests already passed the check before either inserted
            monkeypatch.setattr(transaction_store, 'has_pending', lambda *args, **kwargs: False)

            transaction_store.create(first, account.id, transaction_type, amount)
            first.commit()

            with pytest.raises(Conflict) as exc_info:
                transaction_store.create(second, account.id, transaction_type, amount)
            second.rollback()

            assert exc_info.value.message == UNIQUE_PENDING_MESSAGES[transaction_type]
            pending = transaction_store.find_by_account(
                second, account.id, transaction_type=transaction_type.value, status=TransactionStatus.PENDING
            )
            assert pending['total'] == 1
        finally:
            first.close()
            second.close()

    def test_pending_index_ignores_other_types_and_statuses(self, session, account):
        transaction_store.create(session, account.id, TransactionType.CRYPTO_WITHDRAWAL, "-5")
        transaction_store.create(session, account.id, TransactionType.CRYPTO_WITHDRAWAL, "-5")
        transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-5", status=TransactionStatus.FAILED)
        transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-5", status=TransactionStatus.FAILED)
        transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-5")
        session.commit()

        assert transaction_store.find_by_account(session, account.id)['total'] == 5

    def test_new_withdrawal_allowed_after_previous_settles(self, session, account):
        first = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")
        transaction_store.update_status(session, first.id, TransactionStatus.REJECTED)
        session.commit()

        second = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")
        assert second.id != first.id


class TestQueries:

    def test_find_by_id_missing(self, session):
        with pytest.raises(NotFound) as exc_info:
            transaction_store.find_by_id(session, 9999)
        assert exc_info.value.message == "Transaction not found"

    def test_find_by_account_pages_newest_first(self, session, account):
        base = utcnow() - timedelta(days=1)
        for index in range(5):
            record = transaction_store.create(
                session, account.id, TransactionType.BONUS, str(index + 1), status=TransactionStatus.COMPLETED
            )
            record.created_at = base + timedelta(minutes=index)
        session.commit()

        page = transaction_store.find_by_account(session, account.id, page=1, page_size=2)

        assert page['total'] == 5
        assert page['pages'] == 3
        assert [item.amount for item in page['items']] == [Decimal("5"), Decimal("4")]

        last = transaction_store.find_by_account(session, account.id, page=3, page_size=2)
        assert [item.amount for item in last['items']] == [Decimal("1")]

    def test_find_by_account_filters(self, session, account, make_account):
        other = make_account(username="other")
        transaction_store.create(session, account.id, TransactionType.DEPOSIT, "10")
        transaction_store.create(
            session, account.id, TransactionType.BONUS, "1", status=TransactionStatus.COMPLETED
        )
        transaction_store.create(session, other.id, TransactionType.DEPOSIT, "10")
        session.commit()

        deposits = transaction_store.find_by_account(session, account.id, transaction_type="deposit")
        completed = transaction_store.find_by_account(session, account.id, status=TransactionStatus.COMPLETED)
        future = transaction_store.find_by_account(session, account.id, date_from=utcnow() + timedelta(days=1))

        assert deposits['total'] == 1
        assert completed['total'] == 1
        assert completed['items'][0].type == TransactionType.BONUS.value
        assert future['total'] == 0
        assert future['pages'] == 0


class TestStatusUpdates:

    def test_update_status_follows_transition_table(self, session, account):
        record = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")

        approved = transaction_store.update_status(session, record.id, TransactionStatus.APPROVED)
        assert approved.status == TransactionStatus.APPROVED.value
        assert approved.processed_at is None

        completed = transaction_store.update_status(
            session, record.id, TransactionStatus.COMPLETED, tx_hash="0xhash"
        )
        assert completed.status == TransactionStatus.COMPLETED.value
        assert completed.tx_hash == "0xhash"
        assert completed.processed_at is not None

    def test_invalid_transition_conflicts(self, session, account):
        record = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")

        with pytest.raises(Conflict) as exc_info:
            transaction_store.update_status(session, record.id, TransactionStatus.PENDING)
        assert "Invalid transition" in exc_info.value.message

    def test_terminal_record_never_moves(self, session, account):
        record = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")
        transaction_store.update_status(session, record.id, TransactionStatus.REJECTED)

        with pytest.raises(Conflict) as exc_info:
            transaction_store.update_status(session, record.id, TransactionStatus.APPROVED)
        assert exc_info.value.message == "Transaction already rejected"

    def test_expected_status_mismatch_conflicts(self, session, account):
        record = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")
        transaction_store.update_status(session, record.id, TransactionStatus.REQUIRES_MANUAL)

        with pytest.raises(Conflict) as exc_info:
            transaction_store.update_status(
                session, record.id, TransactionStatus.PROCESSING, expected_status=TransactionStatus.PENDING
            )
        assert exc_info.value.message == "Transaction is requires_manual, expected pending"

    def test_racing_sessions_apply_transition_once(self, session_factory, account):
        with session_factory() as setup:
            record_id = transaction_store.create(setup, account.id, TransactionType.WITHDRAWAL, "-10").id
            setup.commit()

        first = session_factory()
        second = session_factory()
        try:
            transaction_store.update_status(first, record_id, TransactionStatus.REJECTED)
            first.commit()

            with pytest.raises(Conflict):
                transaction_store.update_status(second, record_id, TransactionStatus.APPROVED)
            second.rollback()
        finally:
            first.close()
            second.close()

    def test_update_status_missing_record(self, session):
        with pytest.raises(NotFound):
            transaction_store.update_status(session, 424242, TransactionStatus.APPROVED)

    def test_metadata_maps_to_extra_data(self, session, account):
        record = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")

        updated = transaction_store.update_status(
            session, record.id, TransactionStatus.FAILED, metadata={'provider_status': 'failed'}
        )

        assert updated.extra_data == {'provider_status': 'failed'}


class TestFieldUpdates:

    def test_terminal_record_accepts_only_provider_references(self, session, account):
        record = transaction_store.create(
            session, account.id, TransactionType.WITHDRAWAL, "-10", status=TransactionStatus.COMPLETED
        )

        updated = transaction_store.update_fields(session, record.id, tx_hash="0xlate", provider_id="np-1")
        assert updated.tx_hash == "0xlate"

        with pytest.raises(Conflict):
            transaction_store.update_fields(session, record.id, amount=Decimal("-1"))

    def test_status_cannot_change_through_update_fields(self, session, account):
        record = transaction_store.create(session, account.id, TransactionType.WITHDRAWAL, "-10")

        with pytest.raises(ValueError):
            transaction_store.update_fields(session, record.id, status="completed")

    def test_delete_for_account(self, session, account, make_account):
        other = make_account(username="keeper")
        transaction_store.create(session, account.id, TransactionType.DEPOSIT, "10")
        transaction_store.create(session, account.id, TransactionType.BONUS, "1", status=TransactionStatus.COMPLETED)
        transaction_store.create(session, other.id, TransactionType.DEPOSIT, "10")
        session.commit()

        removed = transaction_store.delete_for_account(session, account.id)
        session.commit()

        assert removed == 2
        assert session.query(TransactionRecord).count() == 1
