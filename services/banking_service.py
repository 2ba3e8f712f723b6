"""
Banking Service

User-facing money movement: withdrawal and deposit requests, transfers, crypto
deposits and withdrawals, flight bookings, plus the account administration
operations that touch balances.

Every balance change and the TransactionRecord that explains it are written in
one ``atomic_transaction``. Notifications are sent only after commit.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from config import Config
from models import Account, TransactionStatus, TransactionType, VirtualCard
from services.audit_logger import AuditLogger, audit_logger
from services.ledger_service import LedgerService, ledger_service
from services.notification_service import NotificationEvent, NotificationService, notification_service
from services.transaction_store import TransactionStore, transaction_store
from utils.atomic_transactions import atomic_transaction
from utils.authorization import Principal, ensure_admin, ensure_can_act
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import Conflict, InsufficientFunds, RestrictedAccount, ValidationFailed
from utils.rate_limit_store import KeyedRateLimitStore, rate_limit_key

logger = logging.getLogger(__name__)


class BankingService:
    """Product flows that move money in and out of account buckets"""

    def __init__(
        self,
        ledger: Optional[LedgerService] = None,
        store: Optional[TransactionStore] = None,
        audit: Optional[AuditLogger] = None,
        notifier: Optional[NotificationService] = None,
        rate_limits: Optional[KeyedRateLimitStore] = None,
    ):
        self.ledger = ledger or ledger_service
        self.store = store or transaction_store
        self.audit = audit or audit_logger
        self.notifier = notifier or notification_service
        self.rate_limits = rate_limits or KeyedRateLimitStore()

    def _throttle(self, principal: Principal, account_id: int, action: str) -> None:
        # Skip rate limiting for admins
        if principal.is_admin:
            return
        self.rate_limits.enforce(rate_limit_key(account_id, action), action)

    def _balance_result(self, account: Account, message: str, **extra) -> Dict[str, Any]:
        result = {
            'success': True,
            'message': message,
            'new_balance': str(self.ledger.available_balance(account)),
        }
        result.update(extra)
        return result

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        session: Session,
        email: str,
        username: str,
        name: Optional[str] = None,
        referral_code: Optional[str] = None,
        is_admin: bool = False,
    ) -> Account:
        """Open an account with every bucket at zero"""
        email = email.strip().lower()
        username = username.strip()
        if not email or not username:
            raise ValidationFailed("Email and username are required")

        with atomic_transaction(session):
            existing = session.execute(
                select(Account.id).where(or_(Account.email == email, Account.username == username))
            ).first()
            if existing is not None:
                raise Conflict("An account with this email or username already exists")

            account = Account(
                email=email,
                username=username,
                name=name,
                referral_code=referral_code or None,
                is_admin=is_admin,
                deposit=Decimal("0"),
                interest=Decimal("0"),
                bonus=Decimal("0"),
                withdraw=Decimal("0"),
            )
            session.add(account)
            session.flush()

        logger.info(f"👤 Account {account.id} created for {email}")
        return account

    def get_balance(self, session: Session, principal: Principal, account_id: int) -> Dict[str, Any]:
        ensure_can_act(principal, account_id)
        account = self.ledger.get_account(session, account_id, for_update=False)
        return {
            'account_id': account.id,
            'deposit': str(self.ledger.bucket_value(account, 'deposit')),
            'interest': str(self.ledger.bucket_value(account, 'interest')),
            'bonus': str(self.ledger.bucket_value(account, 'bonus')),
            'withdraw': str(self.ledger.bucket_value(account, 'withdraw')),
            'available': str(self.ledger.available_balance(account)),
        }

    def admin_adjust_balances(
        self, session: Session, actor: Principal, account_id: int, updates: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Absolute bucket assignment by an administrator"""
        ensure_admin(actor)
        account = self.ledger.get_account(session, account_id)
        new_values = self.ledger.admin_set_buckets(session, actor, account, updates)
        return self._balance_result(
            account, "User updated", buckets={name: str(value) for name, value in new_values.items()}
        )

    def delete_account(self, session: Session, actor: Principal, account_id: int) -> Dict[str, Any]:
        """
        Remove an account and everything that references it.

        Admin accounts cannot be deleted; the blocked attempt is audited.
        """
        ensure_admin(actor)
        account = self.ledger.get_account(session, account_id)
        email = account.email
        before = {'email': email, 'username': account.username, **account.balance_snapshot()}

        if account.is_admin:
            with atomic_transaction(session):
                self.audit.log(
                    session,
                    action="USER_DELETE_BLOCKED",
                    entity_type="user",
                    entity_id=account_id,
                    actor=actor,
                    target_user_id=account_id,
                    target_email=email,
                    before=before,
                    success=False,
                    error="Admin accounts cannot be deleted",
                )
            raise RestrictedAccount("Admin accounts cannot be deleted")

        with atomic_transaction(session):
            removed = self.store.delete_for_account(session, account_id)
            session.execute(
                delete(VirtualCard)
                .where(VirtualCard.account_id == account_id)
                .execution_options(synchronize_session=False)
            )
            session.expunge(account)
            session.execute(
                delete(Account).where(Account.id == account_id).execution_options(synchronize_session=False)
            )
            self.audit.log(
                session,
                action="USER_DELETED",
                entity_type="user",
                entity_id=account_id,
                actor=actor,
                target_user_id=account_id,
                target_email=email,
                before=before,
                message=f"User deleted with {removed} transactions",
            )

        logger.info(f"🗑️ Account {account_id} deleted by admin {actor.account_id}")
        return {'success': True, 'message': 'User deleted successfully', 'transactions_removed': removed}

    # ------------------------------------------------------------------
    # Withdrawals and deposits (admin approved)
    # ------------------------------------------------------------------

    def request_withdrawal(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        amount,
        coin_name: str,
        address: str,
        network: Optional[str] = None,
        converted_amount=None,
    ) -> Dict[str, Any]:
        """
        Create a pending withdrawal for admin or orchestrator handling.

        Funds are checked now but not reserved; the reservation happens on approval.
        """
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.validate_positive(amount, "withdrawal")
        if not coin_name or not address:
            raise ValidationFailed("Coin and wallet address are required")
        self._throttle(principal, account_id, "withdrawal")

        wallet_data = {
            'address': address.strip(),
            'network': network,
            'coin_name': coin_name.upper(),
            'converted_amount': str(MonetaryDecimal.to_decimal(converted_amount, "converted_amount"))
            if converted_amount is not None else None,
        }

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.ensure_mutable(account)
            available = self.ledger.available_balance(account)
            if available < amount:
                raise InsufficientFunds(available=available, required=amount,
                                        message="Insufficient balance in your account.")

            record = self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.WITHDRAWAL,
                amount=-amount,
                wallet_data=wallet_data,
            )
            payload = {'transaction_id': record.id, 'amount': str(amount), 'coin': wallet_data['coin_name']}

        self.notifier.notify(NotificationEvent.WITHDRAW_REQUESTED, account, payload)
        self.notifier.notify(NotificationEvent.ADMIN_ALERT, account, {**payload, 'kind': 'withdrawal'})
        logger.info(f"💸 Withdrawal {record.id} requested: {amount} to {wallet_data['coin_name']} for account {account_id}")
        return {
            'success': True,
            'status': TransactionStatus.PENDING.value,
            'transaction_id': record.id,
            'message': "Withdrawal request submitted and pending approval.",
        }

    def request_deposit(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        amount,
        method: Optional[str] = None,
        currency: str = "USD",
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a pending deposit; the account is credited only on approval"""
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.validate_positive(amount, "deposit")
        self._throttle(principal, account_id, "deposit")

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.ensure_mutable(account)
            record = self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.DEPOSIT,
                amount=amount,
                currency=currency,
                metadata={'method': method, 'reference': reference},
            )
            payload = {'transaction_id': record.id, 'amount': str(amount), 'method': method}

        self.notifier.notify(NotificationEvent.DEPOSIT_REQUESTED, account, payload)
        self.notifier.notify(NotificationEvent.ADMIN_ALERT, account, {**payload, 'kind': 'deposit'})
        return {
            'success': True,
            'status': TransactionStatus.PENDING.value,
            'transaction_id': record.id,
            'message': "Deposit request sent. Awaiting approval.",
        }

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def internal_transfer(
        self,
        session: Session,
        principal: Principal,
        from_account_id: int,
        to_account_id: int,
        amount,
        currency: str = "USD",
        memo: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Zero-fee transfer between platform accounts, settled immediately"""
        ensure_can_act(principal, from_account_id)
        amount = MonetaryDecimal.validate_positive(amount, "internal_transfer")
        if from_account_id == to_account_id:
            raise ValidationFailed("Cannot transfer to the same account")

        with atomic_transaction(session):
            # Lock in id order so opposing transfers cannot deadlock
            first, second = sorted((from_account_id, to_account_id))
            locked = {
                first: self.ledger.get_account(session, first),
                second: self.ledger.get_account(session, second),
            }
            sender, receiver = locked[from_account_id], locked[to_account_id]

            self.ledger.debit(session, sender, amount)
            self.ledger.credit(session, receiver, amount)

            outgoing = self.store.create(
                session,
                account_id=sender.id,
                transaction_type=TransactionType.INTERNAL_TRANSFER,
                amount=-amount,
                currency=currency,
                status=TransactionStatus.COMPLETED,
                counterparty_id=receiver.id,
                metadata={'toUserId': receiver.id, 'fee': 0, 'description': memo or f"Transfer to {receiver.email}"},
            )
            self.store.create(
                session,
                account_id=receiver.id,
                transaction_type=TransactionType.INTERNAL_TRANSFER,
                amount=amount,
                currency=currency,
                status=TransactionStatus.COMPLETED,
                counterparty_id=sender.id,
                metadata={'fromUserId': sender.id, 'fee': 0, 'description': memo or f"Transfer from {sender.email}"},
            )

        logger.info(f"🔁 Internal transfer {amount} {currency}: {sender.id} -> {receiver.id}")
        return self._balance_result(sender, "Internal transfer completed", transaction_id=outgoing.id)

    def external_transfer(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        amount,
        beneficiary: str,
        bank_details: Optional[Dict[str, Any]] = None,
        currency: str = "USD",
        memo: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Bank transfer out; amount plus fee is debited now and the record waits for settlement"""
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.validate_positive(amount, "external_transfer")
        if not beneficiary:
            raise ValidationFailed("Beneficiary is required")

        fee_pct = Config.EXTERNAL_TRANSFER_FEE_PERCENT
        fee = MonetaryDecimal.percent_of(amount, fee_pct)
        total_debit = amount + fee

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.debit(session, account, total_debit)
            record = self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.EXTERNAL_TRANSFER,
                amount=-total_debit,
                currency=currency,
                metadata={
                    'beneficiary': beneficiary,
                    'bankDetails': bank_details or {},
                    'feePct': str(fee_pct),
                    'fee': str(fee),
                    'description': memo or f"External transfer to {beneficiary}",
                },
            )

        logger.info(f"🏦 External transfer {record.id}: {amount} + fee {fee} from account {account_id}")
        return self._balance_result(
            account, "External transfer created (pending)",
            transaction_id=record.id, status=record.status, fee=str(fee), total_debit=str(total_debit),
        )

    # ------------------------------------------------------------------
    # Crypto
    # ------------------------------------------------------------------

    def crypto_deposit(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        amount,
        currency: str = "USDC",
        address: Optional[str] = None,
        chain: str = "ETH",
        memo: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Pending inbound crypto; credited to deposit when an admin completes it"""
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.validate_positive(amount, "crypto_deposit")

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.ensure_mutable(account)
            record = self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.CRYPTO_DEPOSIT,
                amount=amount,
                currency=currency,
                metadata={'address': address, 'chain': chain, 'description': memo or f"crypto_deposit {chain}"},
            )

        return {
            'success': True,
            'status': record.status,
            'transaction_id': record.id,
            'message': "Crypto deposit created (pending)",
        }

    def crypto_withdrawal(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        amount,
        address: str,
        currency: str = "USDC",
        chain: str = "ETH",
        memo: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Outbound crypto, debited immediately; a rejection refunds the debit"""
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.validate_positive(amount, "crypto_withdrawal")
        if not address:
            raise ValidationFailed("Wallet address is required")

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.debit(session, account, amount)
            record = self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.CRYPTO_WITHDRAWAL,
                amount=-amount,
                currency=currency,
                metadata={'address': address, 'chain': chain, 'description': memo or f"crypto_withdrawal {chain}"},
            )

        return self._balance_result(
            account, "Crypto withdrawal created (pending)", transaction_id=record.id, status=record.status
        )

    # ------------------------------------------------------------------
    # Flights
    # ------------------------------------------------------------------

    def flight_booking(
        self,
        session: Session,
        principal: Principal,
        account_id: int,
        amount,
        route: Optional[str] = None,
        vendor: Optional[str] = None,
        flight_details: Optional[Dict[str, Any]] = None,
        passengers: Optional[list] = None,
        currency: str = "USD",
    ) -> Dict[str, Any]:
        """Pay for a flight from the balance; the booking fee is a percentage of the fare"""
        ensure_can_act(principal, account_id)
        amount = MonetaryDecimal.validate_positive(amount, "flight_booking")

        fee_pct = Config.FLIGHT_BOOKING_FEE_PERCENT
        fee = MonetaryDecimal.percent_of(amount, fee_pct)
        total_debit = amount + fee

        with atomic_transaction(session):
            account = self.ledger.get_account(session, account_id)
            self.ledger.debit(session, account, total_debit)
            record = self.store.create(
                session,
                account_id=account.id,
                transaction_type=TransactionType.FLIGHT_BOOKING,
                amount=-total_debit,
                currency=currency,
                status=TransactionStatus.COMPLETED,
                metadata={
                    'vendor': vendor,
                    'route': route,
                    'fee': str(fee),
                    'feePct': str(fee_pct),
                    'basePrice': str(amount),
                    'flightDetails': flight_details or {},
                    'passengers': passengers or [],
                },
            )

        confirmation = f"IG{uuid.uuid4().hex[:8].upper()}"
        logger.info(f"✈️ Flight booked for account {account_id}: {route} total {total_debit} ({confirmation})")
        return self._balance_result(
            account, "Flight booked successfully",
            transaction_id=record.id,
            booking={
                'confirmation_number': confirmation,
                'route': route,
                'total_paid': str(total_debit),
                'fee': str(fee),
            },
        )


# Global banking service instance
banking_service = BankingService()
