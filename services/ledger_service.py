"""
Balance Ledger Service

Owns the balance invariants for every Account:
- no bucket is ever negative
- available balance = deposit + interest + bonus - withdraw
- debits drain deposit, then interest, then bonus
- every write is version-guarded so a stale read can never be written back

The ledger never commits. Callers run it inside an ``atomic_transaction``
together with the TransactionRecord write that explains the balance change.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import Account, BalanceBucket, utcnow
from services.audit_logger import audit_logger
from utils.atomic_transactions import atomic_transaction
from utils.authorization import Principal, ensure_admin
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import Conflict, InsufficientFunds, InvalidAmount, NotFound, RestrictedAccount

logger = logging.getLogger(__name__)

BucketLike = Union[str, BalanceBucket]


def _as_bucket(bucket: BucketLike) -> BalanceBucket:
    return bucket if isinstance(bucket, BalanceBucket) else BalanceBucket(bucket)


class LedgerService:
    """Debit/credit primitives over the four account buckets"""

    # Bonus funds are protected and spent last
    DEBIT_PRECEDENCE = (BalanceBucket.DEPOSIT, BalanceBucket.INTEREST, BalanceBucket.BONUS)
    CREDITABLE_BUCKETS = {BalanceBucket.DEPOSIT, BalanceBucket.INTEREST, BalanceBucket.BONUS}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_account(self, session: Session, account_id: int, for_update: bool = True) -> Account:
        """
        Load the latest persisted state of an account.

        Rows are locked with SELECT ... FOR UPDATE on backends that support it;
        the version guard on every write covers the rest.
        """
        stmt = select(Account).where(Account.id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        account = session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        return account

    @staticmethod
    def bucket_value(account: Account, bucket: BucketLike) -> Decimal:
        return MonetaryDecimal.normalize(getattr(account, _as_bucket(bucket).value))

    @classmethod
    def available_balance(cls, account: Account) -> Decimal:
        return (
            cls.bucket_value(account, BalanceBucket.DEPOSIT)
            + cls.bucket_value(account, BalanceBucket.INTEREST)
            + cls.bucket_value(account, BalanceBucket.BONUS)
            - cls.bucket_value(account, BalanceBucket.WITHDRAW)
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def ensure_mutable(account: Account) -> None:
        if account.is_admin:
            logger.warning(f"⚠️ Blocked balance mutation on admin account {account.id}")
            raise RestrictedAccount()

    def _write_buckets(self, session: Session, account: Account, new_values: Dict[str, Decimal]) -> None:
        """Persist bucket values only if nobody else wrote the account since it was read"""
        for name, value in new_values.items():
            if value < 0:
                raise InvalidAmount(f"Bucket {name} would become negative ({value})")

        expected_version = account.version
        session.flush()
        result = session.execute(
            update(Account)
            .where(Account.id == account.id, Account.version == expected_version)
            .values(**new_values, version=expected_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: Account id={account.id} expected_version={expected_version}"
            )
            raise Conflict(
                f"Account {account.id} was modified by another request. Please retry."
            )

        session.refresh(account)

    def debit(self, session: Session, account: Account, amount) -> Dict[str, Decimal]:
        """
        Deduct amount across deposit -> interest -> bonus.

        Returns:
            dict: amount drawn from each bucket

        Raises:
            InvalidAmount, RestrictedAccount, InsufficientFunds, Conflict
        """
        amount = MonetaryDecimal.validate_positive(amount, "debit")
        self.ensure_mutable(account)

        available = self.available_balance(account)
        if available < amount:
            logger.warning(
                f"Insufficient balance for account {account.id}: available {available} < required {amount}"
            )
            raise InsufficientFunds(available=available, required=amount)

        drawn, new_values = self._drain(account, amount)
        self._write_buckets(session, account, new_values)

        logger.info(
            f"💰 Debited {amount} from account {account.id}: "
            + ", ".join(f"{name}={value}" for name, value in drawn.items() if value)
        )
        return drawn

    def _drain(self, account: Account, amount: Decimal) -> Tuple[Dict[str, Decimal], Dict[str, Decimal]]:
        remaining = amount
        drawn: Dict[str, Decimal] = {}
        new_values: Dict[str, Decimal] = {}
        for bucket in self.DEBIT_PRECEDENCE:
            current = self.bucket_value(account, bucket)
            take = min(current, remaining)
            drawn[bucket.value] = take
            new_values[bucket.value] = current - take
            remaining -= take

        if remaining > 0:
            available = self.available_balance(account)
            raise InsufficientFunds(available=available, required=amount)
        return drawn, new_values

    def credit(
        self,
        session: Session,
        account: Account,
        amount,
        bucket: BucketLike = BalanceBucket.DEPOSIT,
    ) -> Decimal:
        """Add amount to a bucket and return the bucket's new value"""
        amount = MonetaryDecimal.validate_positive(amount, "credit")
        bucket = _as_bucket(bucket)
        if bucket not in self.CREDITABLE_BUCKETS:
            raise InvalidAmount(f"Cannot credit the {bucket.value} bucket")
        self.ensure_mutable(account)

        new_value = self.bucket_value(account, bucket) + amount
        self._write_buckets(session, account, {bucket.value: new_value})

        logger.info(f"💰 Credited {amount} to account {account.id} ({bucket.value})")
        return new_value

    def reverse_debit(
        self,
        session: Session,
        account: Account,
        amount,
        bucket: Optional[BucketLike] = None,
    ) -> Decimal:
        """
        Compensate an earlier debit.

        Per-transaction bucket attribution is not tracked, so reversals land in
        deposit unless the caller names a bucket.
        """
        target = _as_bucket(bucket) if bucket is not None else BalanceBucket.DEPOSIT
        logger.info(f"↩️ Reversing debit of {amount} for account {account.id} into {target.value}")
        return self.credit(session, account, amount, target)

    # ------------------------------------------------------------------
    # Withdrawal holds (the withdraw bucket)
    # ------------------------------------------------------------------

    def record_withdrawal_hold(self, session: Session, account: Account, amount) -> Decimal:
        """
        Reserve funds for an approved withdrawal: withdraw += amount.

        The spending buckets are left untouched until the payout settles, so the
        reservation lowers available balance exactly once. Funds are re-checked
        against the latest balance at approval time.
        """
        amount = MonetaryDecimal.validate_positive(amount, "withdrawal_hold")
        self.ensure_mutable(account)

        available = self.available_balance(account)
        if available < amount:
            logger.warning(
                f"Insufficient balance to approve withdrawal for account {account.id}: {available} < {amount}"
            )
            raise InsufficientFunds(available=available, required=amount)

        new_withdraw = self.bucket_value(account, BalanceBucket.WITHDRAW) + amount
        self._write_buckets(session, account, {BalanceBucket.WITHDRAW.value: new_withdraw})

        logger.info(f"🔒 Withdrawal of {amount} reserved for account {account.id}")
        return new_withdraw

    def _reduce_withdraw(self, account: Account, amount: Decimal) -> Decimal:
        held = self.bucket_value(account, BalanceBucket.WITHDRAW)
        if held < amount:
            # An admin adjustment may have reset the bucket while the payout was in flight
            logger.warning(
                f"⚠️ Account {account.id} withdraw bucket {held} is below {amount}, clamping to 0"
            )
            return Decimal("0")
        return held - amount

    def _drain_settled(self, account: Account, amount: Decimal) -> Tuple[Dict[str, Decimal], Dict[str, Decimal]]:
        try:
            return self._drain(account, amount)
        except InsufficientFunds:
            # The money already left; an admin adjustment shrank the buckets under the reservation
            logger.warning(
                f"⚠️ Account {account.id} buckets no longer cover settled withdrawal of {amount}, draining to 0"
            )
            drawn = {bucket.value: self.bucket_value(account, bucket) for bucket in self.DEBIT_PRECEDENCE}
            return drawn, {bucket.value: Decimal("0") for bucket in self.DEBIT_PRECEDENCE}

    def settle_withdrawal(self, session: Session, account: Account, amount) -> Dict[str, Decimal]:
        """
        Funds left the platform: drain deposit -> interest -> bonus by amount and
        drop the reservation, in one version-guarded write.

        Returns:
            dict: amount drawn from each bucket
        """
        amount = MonetaryDecimal.validate_positive(amount, "withdrawal_settle")
        self.ensure_mutable(account)

        drawn, new_values = self._drain_settled(account, amount)
        new_values[BalanceBucket.WITHDRAW.value] = self._reduce_withdraw(account, amount)
        self._write_buckets(session, account, new_values)

        logger.info(f"✅ Settled withdrawal of {amount} for account {account.id}")
        return drawn

    def release_withdrawal(self, session: Session, account: Account, amount) -> Decimal:
        """
        Compensation for a reserved withdrawal that failed: withdraw -= amount.

        Nothing was drained at approval, so no bucket is credited. Returns the
        available balance after the release.
        """
        amount = MonetaryDecimal.validate_positive(amount, "withdrawal_release")
        self.ensure_mutable(account)

        new_withdraw = self._reduce_withdraw(account, amount)
        self._write_buckets(session, account, {BalanceBucket.WITHDRAW.value: new_withdraw})

        logger.info(f"↩️ Released withdrawal reservation of {amount} for account {account.id}")
        return self.available_balance(account)

    # ------------------------------------------------------------------
    # Administrative
    # ------------------------------------------------------------------

    def set_buckets(self, session: Session, account: Account, updates: Dict[str, object]) -> Dict[str, Decimal]:
        """Absolute bucket assignment; every value must be finite and >= 0"""
        self.ensure_mutable(account)

        new_values: Dict[str, Decimal] = {}
        for name, raw in updates.items():
            bucket = _as_bucket(name)
            value = MonetaryDecimal.to_decimal(raw, f"admin_{bucket.value}")
            if value < 0:
                raise InvalidAmount(f"{bucket.value} must not be negative")
            new_values[bucket.value] = value

        if not new_values:
            return {}

        self._write_buckets(session, account, new_values)
        logger.info(f"🛠️ Buckets set for account {account.id}: {new_values}")
        return new_values

    def admin_set_buckets(
        self, session: Session, actor: Principal, account: Account, updates: Dict[str, object]
    ) -> Dict[str, Decimal]:
        """Audited absolute adjustment by an administrator, committed as one unit"""
        ensure_admin(actor)
        before = account.balance_snapshot()

        if account.is_admin:
            # The refusal itself is part of the audit trail
            with atomic_transaction(session):
                audit_logger.log(
                    session,
                    action="USER_ADMIN_UPDATED",
                    entity_type="user",
                    entity_id=account.id,
                    actor=actor,
                    target_user_id=account.id,
                    target_email=account.email,
                    before=before,
                    success=False,
                    error=RestrictedAccount().message,
                )
            raise RestrictedAccount()

        with atomic_transaction(session):
            new_values = self.set_buckets(session, account, updates)
            audit_logger.log(
                session,
                action="USER_ADMIN_UPDATED",
                entity_type="user",
                entity_id=account.id,
                actor=actor,
                target_user_id=account.id,
                target_email=account.email,
                before=before,
                after=account.balance_snapshot(),
                message="Account balances adjusted by admin",
            )
        return new_values


# Global ledger instance
ledger_service = LedgerService()
