"""
Transaction State Machine

Drives TransactionRecords through their lifecycle and applies the balance side
effects of each transition in the same unit of work:

- withdrawal: approval reserves the amount in withdraw, completion drains it
  from the buckets and clears the reservation, failure afterwards releases it
- deposit: approval credits deposit and pays the referral commission
- contract: the stake is debited at creation, rejection refunds it to deposit,
  completion returns principal to deposit and pays plan interest
- pre-debited flows (external transfer, crypto withdrawal): rejection or failure
  refunds the original debit including fees

Status changes are conditional on the stored predecessor status, so a second
actor racing on the same record gets a Conflict instead of double-applying.
Notifications fire after commit and never affect the transition.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import (
    Account, BalanceBucket, Plan, TransactionRecord, TransactionStatus,
    TransactionType
)
from services.audit_logger import AuditLogger, audit_logger
from services.ledger_service import LedgerService, ledger_service
from services.notification_service import NotificationEvent, NotificationService, notification_service
from services.transaction_store import TransactionStore, transaction_store
from utils.atomic_transactions import atomic_transaction
from utils.authorization import Principal, ensure_admin, ensure_can_act
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    Conflict, InsufficientFunds, InvalidAmount, NotFound, RestrictedAccount, ValidationFailed
)
from utils.transaction_state_validator import TransactionStateValidator

logger = logging.getLogger(__name__)

# Flows that debit the account when the pending record is created
PRE_DEBITED_TYPES = {TransactionType.EXTERNAL_TRANSFER, TransactionType.CRYPTO_WITHDRAWAL}

# Flows that credit the account only once an admin completes them
CREDIT_ON_COMPLETION_TYPES = {TransactionType.CRYPTO_DEPOSIT}


class TransactionStateMachine:
    """Lifecycle transitions with their ledger side effects"""

    def __init__(
        self,
        ledger: Optional[LedgerService] = None,
        store: Optional[TransactionStore] = None,
        audit: Optional[AuditLogger] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.ledger = ledger or ledger_service
        self.store = store or transaction_store
        self.audit = audit or audit_logger
        self.notifier = notifier or notification_service

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(
        self,
        session: Session,
        transaction_id: int,
        expected_type: Optional[TransactionType] = None,
    ) -> Tuple[TransactionRecord, Account]:
        record = self.store.find_by_id(session, transaction_id, for_update=True)
        if expected_type is not None and record.type != expected_type.value:
            raise ValidationFailed(f"Transaction {transaction_id} is not a {expected_type.value}")

        account = self.ledger.get_account(session, record.account_id)
        if account.is_admin:
            raise RestrictedAccount()
        return record, account

    @staticmethod
    def _snapshot(record: TransactionRecord, account: Account) -> Dict[str, Any]:
        return {
            'status': record.status,
            'amount': str(record.amount),
            'userEmail': account.email,
            **account.balance_snapshot(),
        }

    @staticmethod
    def original_debit(record: TransactionRecord) -> Decimal:
        """Total debited at creation for pre-debited flows; record amounts already include fees"""
        return abs(MonetaryDecimal.to_decimal(record.amount))

    def _audit(
        self,
        session: Session,
        action: str,
        actor: Optional[Principal],
        record: TransactionRecord,
        account: Account,
        before: Dict[str, Any],
        message: str,
    ) -> None:
        self.audit.log(
            session,
            action=action,
            entity_type="transaction",
            entity_id=record.id,
            actor=actor,
            target_user_id=account.id,
            target_email=account.email,
            before=before,
            after=self._snapshot(record, account),
            success=True,
            message=message,
        )

    @staticmethod
    def _result(record: TransactionRecord, message: str) -> Dict[str, Any]:
        return {
            'success': True,
            'status': record.status,
            'message': message,
            'transaction_id': record.id,
        }

    # ------------------------------------------------------------------
    # Generic transition
    # ------------------------------------------------------------------

    def transition(
        self,
        session: Session,
        transaction_id: int,
        new_status: TransactionStatus,
        actor: Optional[Principal] = None,
        expected_status: Optional[TransactionStatus] = None,
        **fields,
    ) -> TransactionRecord:
        """Guarded status change with no balance side effects"""
        with atomic_transaction(session):
            record = self.store.update_status(
                session, transaction_id, new_status, expected_status=expected_status, **fields
            )
            if actor is not None:
                self.audit.log(
                    session,
                    action="TRANSACTION_STATUS_UPDATED",
                    entity_type="transaction",
                    entity_id=transaction_id,
                    actor=actor,
                    target_user_id=record.account_id,
                    after={'status': record.status},
                    message=f"Transaction moved to {new_status.value}",
                )
        return record

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def approve_withdrawal(self, session: Session, actor: Principal, transaction_id: int) -> Dict[str, Any]:
        """
        pending/requires_manual -> approved.

        Funds are re-verified against the current balance and reserved in the
        withdraw bucket; InsufficientFunds leaves everything unchanged.
        """
        ensure_admin(actor)
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.WITHDRAWAL)
            before = self._snapshot(record, account)
            amount = abs(MonetaryDecimal.to_decimal(record.amount))

            record = self.store.update_status(session, transaction_id, TransactionStatus.APPROVED)
            self.ledger.record_withdrawal_hold(session, account, amount)
            self._audit(session, "WITHDRAWAL_STATUS_UPDATED", actor, record, account, before,
                        "Withdrawal status changed to approved")
            payload = {'transaction_id': record.id, 'status': record.status, 'amount': str(amount)}

        self.notifier.notify(NotificationEvent.WITHDRAW_STATUS, account, payload)
        logger.info(f"✅ Withdrawal {transaction_id} approved, {amount} reserved")
        return self._result(record, "Withdrawal approved")

    def reject_withdrawal(
        self, session: Session, actor: Principal, transaction_id: int, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """pending/requires_manual -> rejected; nothing was held, so no balance change"""
        ensure_admin(actor)
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.WITHDRAWAL)
            before = self._snapshot(record, account)
            record = self.store.update_status(
                session, transaction_id, TransactionStatus.REJECTED, error_reason=reason
            )
            self._audit(session, "WITHDRAWAL_STATUS_UPDATED", actor, record, account, before,
                        "Withdrawal status changed to rejected")
            payload = {'transaction_id': record.id, 'status': record.status, 'reason': reason}

        self.notifier.notify(NotificationEvent.WITHDRAW_STATUS, account, payload)
        logger.info(f"🚫 Withdrawal {transaction_id} rejected")
        return self._result(record, "Withdrawal rejected")

    def complete_withdrawal(
        self,
        session: Session,
        transaction_id: int,
        actor: Optional[Principal] = None,
        tx_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        """approved/processing -> completed; the reserved amount is drained from the buckets"""
        if actor is not None:
            ensure_admin(actor)
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.WITHDRAWAL)
            current = TransactionStatus(record.status)
            if not TransactionStateValidator.has_funds_held(current):
                _, reason = TransactionStateValidator.validate_transition(
                    current, TransactionStatus.COMPLETED, transaction_id
                )
                if TransactionStateValidator.is_terminal_state(current):
                    raise Conflict(reason)
                raise ValidationFailed(f"Withdrawal {transaction_id} has no held funds to settle ({current.value})")

            before = self._snapshot(record, account)
            amount = abs(MonetaryDecimal.to_decimal(record.amount))
            fields = {'tx_hash': tx_hash} if tx_hash else {}
            record = self.store.update_status(
                session, transaction_id, TransactionStatus.COMPLETED, expected_status=current, **fields
            )
            self.ledger.settle_withdrawal(session, account, amount)
            self._audit(session, "WITHDRAWAL_STATUS_UPDATED", actor, record, account, before,
                        "Withdrawal completed")
            payload = {'transaction_id': record.id, 'status': record.status, 'amount': str(amount)}

        self.notifier.notify(NotificationEvent.WITHDRAW_STATUS, account, payload)
        logger.info(f"✅ Withdrawal {transaction_id} completed")
        return self._result(record, "Withdrawal completed")

    def fail_withdrawal(
        self,
        session: Session,
        transaction_id: int,
        reason: str,
        actor: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Any non-terminal withdrawal -> failed.

        When funds were already reserved (approved/processing) the failure is
        compensated in the same unit of work.
        """
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.WITHDRAWAL)
            current = TransactionStatus(record.status)
            before = self._snapshot(record, account)

            record = self.store.update_status(
                session, transaction_id, TransactionStatus.FAILED,
                expected_status=current, error_reason=reason,
            )
            if TransactionStateValidator.has_funds_held(current):
                self.compensate_failed_payout(session, record, account)

            self._audit(session, "WITHDRAWAL_STATUS_UPDATED", actor, record, account, before,
                        f"Withdrawal failed: {reason}")
            payload = {'transaction_id': record.id, 'status': record.status, 'reason': reason}

        self.notifier.notify(NotificationEvent.WITHDRAW_STATUS, account, payload)
        logger.warning(f"⚠️ Withdrawal {transaction_id} failed: {reason}")
        return {
            'success': False,
            'status': record.status,
            'message': reason,
            'transaction_id': record.id,
        }

    def compensate_failed_payout(self, session: Session, record: TransactionRecord, account: Account) -> Decimal:
        """Release the reservation of a withdrawal that did not settle"""
        amount = self.original_debit(record)
        self.ledger.release_withdrawal(session, account, amount)
        logger.info(f"↩️ Compensated failed payout {record.id}: {amount} released for account {account.id}")
        return amount

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    def approve_deposit(self, session: Session, actor: Principal, transaction_id: int) -> Dict[str, Any]:
        """pending -> approved; credits deposit and pays the referrer's commission"""
        ensure_admin(actor)
        referral = None
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.DEPOSIT)
            before = self._snapshot(record, account)
            amount = MonetaryDecimal.to_decimal(record.amount)

            record = self.store.update_status(session, transaction_id, TransactionStatus.APPROVED)
            self.ledger.credit(session, account, amount, BalanceBucket.DEPOSIT)
            referral = self._pay_referral_bonus(session, account, record, amount)

            self._audit(session, "DEPOSIT_STATUS_UPDATED", actor, record, account, before,
                        "Deposit status changed to approved")
            payload = {'transaction_id': record.id, 'status': record.status, 'amount': str(amount)}

        self.notifier.notify(NotificationEvent.DEPOSIT_STATUS, account, payload)
        if referral:
            referrer, bonus = referral
            self.notifier.notify(
                NotificationEvent.REFERRAL_COMMISSION, referrer,
                {'amount': str(bonus), 'referred_user': account.username},
            )
        logger.info(f"✅ Deposit {transaction_id} approved, {amount} credited")
        return self._result(record, "Deposit approved")

    def _pay_referral_bonus(
        self, session: Session, account: Account, deposit: TransactionRecord, amount: Decimal
    ) -> Optional[Tuple[Account, Decimal]]:
        if not account.referral_code:
            return None

        referrer = session.execute(
            select(Account).where(Account.username == account.referral_code)
        ).scalar_one_or_none()
        if referrer is None or referrer.id == account.id:
            logger.warning(f"⚠️ Referral code '{account.referral_code}' on account {account.id} has no valid referrer")
            return None
        if referrer.is_admin:
            logger.warning(f"⚠️ Skipping referral commission to admin account {referrer.id}")
            return None

        bonus = MonetaryDecimal.percent_of(amount, Config.REFERRAL_BONUS_PERCENT)
        if bonus <= 0:
            return None

        referrer = self.ledger.get_account(session, referrer.id)
        self.ledger.credit(session, referrer, bonus, BalanceBucket.DEPOSIT)
        self.store.create(
            session,
            account_id=referrer.id,
            transaction_type=TransactionType.REFERRAL_BONUS,
            amount=bonus,
            currency=deposit.currency,
            status=TransactionStatus.COMPLETED,
            counterparty_id=account.id,
            metadata={
                'fromUserId': account.id,
                'depositId': deposit.id,
                'percent': str(Config.REFERRAL_BONUS_PERCENT),
            },
        )
        logger.info(f"🎁 Referral commission {bonus} paid to account {referrer.id} for deposit {deposit.id}")
        return referrer, bonus

    def reject_deposit(
        self, session: Session, actor: Principal, transaction_id: int, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        ensure_admin(actor)
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.DEPOSIT)
            before = self._snapshot(record, account)
            record = self.store.update_status(
                session, transaction_id, TransactionStatus.REJECTED, error_reason=reason
            )
            self._audit(session, "DEPOSIT_STATUS_UPDATED", actor, record, account, before,
                        "Deposit status changed to rejected")
            payload = {'transaction_id': record.id, 'status': record.status, 'reason': reason}

        self.notifier.notify(NotificationEvent.DEPOSIT_STATUS, account, payload)
        return self._result(record, "Deposit rejected")

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def create_contract(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        plan_id: int,
        amount,
        interest=None,
    ) -> Dict[str, Any]:
        """Stake amount on an active plan; the stake leaves deposit immediately"""
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.validate_positive(amount, "contract")

        with atomic_transaction(session):
            plan = session.get(Plan, plan_id)
            if plan is None:
                raise NotFound("Plan not found")
            if not plan.is_active:
                raise ValidationFailed("Plan is not active")
            min_amount = MonetaryDecimal.normalize(plan.min_amount)
            if amount < min_amount:
                raise ValidationFailed(f"Minimum amount for this plan is {min_amount}")

            account = self.ledger.get_account(session, account_id)
            deposit = self.ledger.bucket_value(account, BalanceBucket.DEPOSIT)
            if deposit < amount:
                raise InsufficientFunds(available=deposit, required=amount,
                                        message="Insufficient deposit balance for this contract")

            if interest is not None:
                plan_interest = MonetaryDecimal.to_decimal(interest, "contract_interest")
                if plan_interest < 0:
                    raise InvalidAmount("Contract interest must not be negative")
            else:
                plan_interest = MonetaryDecimal.percent_of(amount, MonetaryDecimal.normalize(plan.roi_percent))

            self.ledger.debit(session, account, amount)
            record = self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.CONTRACT,
                amount=-amount,
                plan_data={
                    'plan': plan.name,
                    'plan_id': plan.id,
                    'duration': plan.duration_days,
                    'interest': str(plan_interest),
                },
            )

        logger.info(f"📈 Contract {record.id} created for account {account_id}: {amount} on plan {plan.name}")
        return self._result(record, "Contract created")

    def approve_contract(self, session: Session, actor: Principal, transaction_id: int) -> Dict[str, Any]:
        ensure_admin(actor)
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.CONTRACT)
            before = self._snapshot(record, account)
            record = self.store.update_status(session, transaction_id, TransactionStatus.APPROVED)
            self._audit(session, "CONTRACT_STATUS_UPDATED", actor, record, account, before,
                        "Contract approved")
            payload = {'transaction_id': record.id, 'plan': (record.plan_data or {}).get('plan')}

        self.notifier.notify(NotificationEvent.CONTRACT_APPROVED, account, payload)
        return self._result(record, "Contract approved")

    def reject_contract(
        self, session: Session, actor: Principal, transaction_id: int, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """pending -> rejected; refunds the stake to deposit and zeroes the record amount"""
        ensure_admin(actor)
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.CONTRACT)
            before = self._snapshot(record, account)
            stake = abs(MonetaryDecimal.to_decimal(record.amount))

            record = self.store.update_status(
                session, transaction_id, TransactionStatus.REJECTED,
                amount=Decimal("0"), error_reason=reason,
            )
            if stake > 0:
                self.ledger.reverse_debit(session, account, stake, BalanceBucket.DEPOSIT)

            self._audit(session, "CONTRACT_STATUS_UPDATED", actor, record, account, before,
                        "Contract rejected, stake refunded")
            payload = {'transaction_id': record.id, 'refunded': str(stake)}

        self.notifier.notify(NotificationEvent.CONTRACT_REJECTED, account, payload)
        logger.info(f"↩️ Contract {transaction_id} rejected, {stake} refunded")
        return self._result(record, "Contract rejected")

    def complete_contract(self, session: Session, actor: Principal, transaction_id: int) -> Dict[str, Any]:
        """pending/approved -> completed; principal back to deposit, plan interest to interest"""
        ensure_admin(actor)
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id, TransactionType.CONTRACT)
            before = self._snapshot(record, account)
            principal = abs(MonetaryDecimal.to_decimal(record.amount))
            interest = MonetaryDecimal.to_decimal((record.plan_data or {}).get('interest') or 0, "plan_interest")

            record = self.store.update_status(session, transaction_id, TransactionStatus.COMPLETED)
            if principal > 0:
                self.ledger.credit(session, account, principal, BalanceBucket.DEPOSIT)
            if interest > 0:
                self.ledger.credit(session, account, interest, BalanceBucket.INTEREST)

            self._audit(session, "CONTRACT_STATUS_UPDATED", actor, record, account, before,
                        "Contract completed")
            payload = {'transaction_id': record.id, 'principal': str(principal), 'interest': str(interest)}

        self.notifier.notify(NotificationEvent.CONTRACT_COMPLETED, account, payload)
        logger.info(f"✅ Contract {transaction_id} completed: principal {principal}, interest {interest}")
        return self._result(record, "Contract completed")

    # ------------------------------------------------------------------
    # Generic admin decisions
    # ------------------------------------------------------------------

    def approve_transaction(self, session: Session, actor: Principal, transaction_id: int) -> Dict[str, Any]:
        """Admin completion for any transaction type, dispatching to the type's lifecycle"""
        ensure_admin(actor)
        record = self.store.find_by_id(session, transaction_id)
        transaction_type = TransactionType(record.type)

        if transaction_type == TransactionType.WITHDRAWAL:
            if TransactionStateValidator.has_funds_held(TransactionStatus(record.status)):
                return self.complete_withdrawal(session, transaction_id, actor=actor)
            return self.approve_withdrawal(session, actor, transaction_id)
        if transaction_type == TransactionType.DEPOSIT:
            return self.approve_deposit(session, actor, transaction_id)
        if transaction_type == TransactionType.CONTRACT:
            return self.complete_contract(session, actor, transaction_id)

        with atomic_transaction(session):
            record, account = self._load(session, transaction_id)
            before = self._snapshot(record, account)
            record = self.store.update_status(session, transaction_id, TransactionStatus.COMPLETED)
            if transaction_type in CREDIT_ON_COMPLETION_TYPES:
                self.ledger.credit(session, account, MonetaryDecimal.to_decimal(record.amount))
            self._audit(session, "TRANSACTION_STATUS_UPDATED", actor, record, account, before,
                        "Transaction approved")
        return self._result(record, "Transaction approved")

    def reject_transaction(
        self, session: Session, actor: Principal, transaction_id: int, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Admin rejection for any transaction type, compensating pre-debited flows"""
        ensure_admin(actor)
        record = self.store.find_by_id(session, transaction_id)
        transaction_type = TransactionType(record.type)

        if transaction_type == TransactionType.WITHDRAWAL:
            if TransactionStateValidator.has_funds_held(TransactionStatus(record.status)):
                return self.fail_withdrawal(session, transaction_id, reason or "Rejected by admin", actor=actor)
            return self.reject_withdrawal(session, actor, transaction_id, reason)
        if transaction_type == TransactionType.DEPOSIT:
            return self.reject_deposit(session, actor, transaction_id, reason)
        if transaction_type == TransactionType.CONTRACT:
            return self.reject_contract(session, actor, transaction_id, reason)

        with atomic_transaction(session):
            record, account = self._load(session, transaction_id)
            before = self._snapshot(record, account)
            refund = self.original_debit(record) if transaction_type in PRE_DEBITED_TYPES else Decimal("0")
            record = self.store.update_status(
                session, transaction_id, TransactionStatus.REJECTED, error_reason=reason
            )
            if refund > 0:
                self.ledger.reverse_debit(session, account, refund)
            self._audit(session, "TRANSACTION_STATUS_UPDATED", actor, record, account, before,
                        f"Transaction rejected{', refunded ' + str(refund) if refund > 0 else ''}")
        return self._result(record, "Transaction rejected")

    def fail_pre_debited(self, session: Session, transaction_id: int, reason: str) -> Dict[str, Any]:
        """External settlement of a pre-debited flow failed: refund the original debit"""
        with atomic_transaction(session):
            record, account = self._load(session, transaction_id)
            transaction_type = TransactionType(record.type)
            if transaction_type not in PRE_DEBITED_TYPES:
                raise ValidationFailed(f"{transaction_type.value} is not a pre-debited flow")
            refund = self.original_debit(record)
            record = self.store.update_status(
                session, transaction_id, TransactionStatus.FAILED, error_reason=reason
            )
            self.ledger.reverse_debit(session, account, refund)
        logger.warning(f"⚠️ {record.type} {transaction_id} failed, {refund} refunded: {reason}")
        return {'success': False, 'status': record.status, 'message': reason, 'transaction_id': record.id}


# Global state machine instance
transaction_state_machine = TransactionStateMachine()
