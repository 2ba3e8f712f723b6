"""
Transaction Record Store

Durable, queryable log of every TransactionRecord. Status changes go through a
conditional UPDATE guarded on the valid predecessor statuses, so two actors
racing on the same record cannot both apply their transition.
"""

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    TRANSACTION_DIRECTIONS, TransactionDirection, TransactionRecord,
    TransactionStatus, TransactionType, utcnow
)
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import Conflict, NotFound, ValidationFailed
from utils.transaction_state_validator import TransactionStateValidator

logger = logging.getLogger(__name__)

# Fields that may still be appended once a record is terminal
POST_TERMINAL_FIELDS = {"provider_id", "tx_hash"}

# At most one pending record of these types per account
UNIQUE_PENDING_MESSAGES = {
    TransactionType.WITHDRAWAL: "You have a pending withdrawal. Please wait for it to be processed before making another request.",
    TransactionType.DEPOSIT: "You already have a pending deposit. Please wait for it to be processed.",
}


def _as_type(value: Union[str, TransactionType]) -> TransactionType:
    return value if isinstance(value, TransactionType) else TransactionType(value)


def _as_status(value: Union[str, TransactionStatus]) -> TransactionStatus:
    return value if isinstance(value, TransactionStatus) else TransactionStatus(value)


class TransactionStore:
    """Create, query and conditionally update TransactionRecords"""

    def validate_amount_sign(self, transaction_type: TransactionType, amount: Decimal) -> None:
        """The sign of amount must match the direction the type implies"""
        if amount == 0:
            raise ValidationFailed(f"Amount for {transaction_type.value} must not be zero")

        direction = TRANSACTION_DIRECTIONS[transaction_type]
        if direction == TransactionDirection.CREDIT and amount < 0:
            raise ValidationFailed(f"{transaction_type.value} is a credit and requires a positive amount")
        if direction == TransactionDirection.DEBIT and amount > 0:
            raise ValidationFailed(f"{transaction_type.value} is a debit and requires a negative amount")

    def has_pending(self, session: Session, account_id: int, transaction_type: TransactionType) -> bool:
        stmt = select(func.count(TransactionRecord.id)).where(
            TransactionRecord.account_id == account_id,
            TransactionRecord.type == transaction_type.value,
            TransactionRecord.status == TransactionStatus.PENDING.value,
        )
        return session.execute(stmt).scalar_one() > 0

    def create(
        self,
        session: Session,
        account_id: int,
        transaction_type: Union[str, TransactionType],
        amount,
        currency: str = "USD",
        status: Union[str, TransactionStatus] = TransactionStatus.PENDING,
        counterparty_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        wallet_data: Optional[Dict[str, Any]] = None,
        plan_data: Optional[Dict[str, Any]] = None,
    ) -> TransactionRecord:
        """
        Create a TransactionRecord in the caller's unit of work.

        Raises:
            ValidationFailed: amount sign does not match the type
            Conflict: a pending withdrawal/deposit already exists for the account
        """
        transaction_type = _as_type(transaction_type)
        status = _as_status(status)
        amount = MonetaryDecimal.to_decimal(amount, f"{transaction_type.value}_record")
        self.validate_amount_sign(transaction_type, amount)

        unique_pending = status == TransactionStatus.PENDING and transaction_type in UNIQUE_PENDING_MESSAGES
        if unique_pending and self.has_pending(session, account_id, transaction_type):
            raise Conflict(UNIQUE_PENDING_MESSAGES[transaction_type])

        record = TransactionRecord(
            account_id=account_id,
            type=transaction_type.value,
            status=status.value,
            amount=amount,
            currency=currency.upper(),
            counterparty_id=counterparty_id,
            extra_data=dict(metadata or {}),
            wallet_data=wallet_data,
            plan_data=plan_data,
            attempts=0,
            auto_processed=False,
            created_at=utcnow(),
        )
        if TransactionStateValidator.is_terminal_state(status):
            record.processed_at = record.created_at

        session.add(record)
        try:
            session.flush()
        except IntegrityError as e:
            if not unique_pending:
                raise
            # A concurrent request inserted its pending record after our check
            logger.warning(
                f"🔒 Pending {transaction_type.value} for account {account_id} already exists: {e.orig}"
            )
            raise Conflict(UNIQUE_PENDING_MESSAGES[transaction_type]) from e

        logger.info(
            f"📝 Transaction {record.id} created: {transaction_type.value} {amount} {record.currency} "
            f"account={account_id} status={status.value}"
        )
        return record

    def find_by_id(self, session: Session, transaction_id: int, for_update: bool = False) -> TransactionRecord:
        stmt = select(TransactionRecord).where(TransactionRecord.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update()
        record = session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
        if record is None:
            raise NotFound("Transaction not found")
        return record

    def find_by_account(
        self,
        session: Session,
        account_id: int,
        transaction_type: Optional[Union[str, TransactionType]] = None,
        status: Optional[Union[str, TransactionStatus]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """Filtered, newest-first page of an account's records"""
        page = max(1, int(page))
        page_size = max(1, min(int(page_size), 100))

        filters = [TransactionRecord.account_id == account_id]
        if transaction_type is not None:
            filters.append(TransactionRecord.type == _as_type(transaction_type).value)
        if status is not None:
            filters.append(TransactionRecord.status == _as_status(status).value)
        if date_from is not None:
            filters.append(TransactionRecord.created_at >= date_from)
        if date_to is not None:
            filters.append(TransactionRecord.created_at <= date_to)

        total = session.execute(
            select(func.count(TransactionRecord.id)).where(*filters)
        ).scalar_one()

        items = session.execute(
            select(TransactionRecord)
            .where(*filters)
            .order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()

        return {
            'items': list(items),
            'total': total,
            'page': page,
            'page_size': page_size,
            'pages': math.ceil(total / page_size) if total else 0,
        }

    def update_status(
        self,
        session: Session,
        transaction_id: int,
        new_status: Union[str, TransactionStatus],
        expected_status: Optional[Union[str, TransactionStatus]] = None,
        **fields,
    ) -> TransactionRecord:
        """
        Conditionally move a record to new_status.

        The UPDATE only matches while the stored status is a valid predecessor
        (or exactly expected_status when given). Zero matched rows means another
        actor got there first.

        Raises:
            NotFound: no such record
            Conflict: stored status is not a valid predecessor
        """
        new_status = _as_status(new_status)
        allowed = TransactionStateValidator.predecessors_of(new_status)
        if expected_status is not None:
            expected_status = _as_status(expected_status)
            allowed = allowed & {expected_status}

        values = dict(fields)
        values['status'] = new_status.value
        if TransactionStateValidator.is_terminal_state(new_status):
            values.setdefault('processed_at', utcnow())
        if 'metadata' in values:
            values['extra_data'] = values.pop('metadata')

        session.flush()
        result = session.execute(
            update(TransactionRecord)
            .where(
                TransactionRecord.id == transaction_id,
                TransactionRecord.status.in_([s.value for s in allowed]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = session.get(TransactionRecord, transaction_id, populate_existing=True)
            if current is None:
                raise NotFound("Transaction not found")
            current_status = TransactionStatus(current.status)
            if expected_status is not None and current_status != expected_status:
                reason = f"Transaction is {current_status.value}, expected {expected_status.value}"
            else:
                _, reason = TransactionStateValidator.validate_transition(
                    current_status, new_status, transaction_id
                )
            logger.warning(f"🔒 Status conflict on transaction {transaction_id}: {reason}")
            raise Conflict(reason)

        record = session.get(TransactionRecord, transaction_id, populate_existing=True)
        logger.info(f"🔄 Transaction {transaction_id} -> {new_status.value}")
        return record

    def update_fields(self, session: Session, transaction_id: int, **fields) -> TransactionRecord:
        """Update non-status fields; terminal records only accept provider references"""
        if 'status' in fields:
            raise ValueError("Use update_status to change status")
        if 'metadata' in fields:
            fields['extra_data'] = fields.pop('metadata')

        record = self.find_by_id(session, transaction_id)
        if TransactionStateValidator.is_terminal_state(TransactionStatus(record.status)):
            blocked = set(fields) - POST_TERMINAL_FIELDS
            if blocked:
                raise Conflict(
                    f"Transaction {transaction_id} is {record.status}; cannot modify {sorted(blocked)}"
                )

        for key, value in fields.items():
            setattr(record, key, value)
        session.flush()
        return record

    def delete_for_account(self, session: Session, account_id: int) -> int:
        result = session.execute(
            delete(TransactionRecord)
            .where(TransactionRecord.account_id == account_id)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"🗑️ Deleted {result.rowcount} transactions for account {account_id}")
        return result.rowcount


# Global store instance
transaction_store = TransactionStore()
