"""
Payout Orchestrator

Decides whether a pending withdrawal is settled automatically through the
payout provider or routed to manual review, and drives the record through
processing to its final state.

Routing rules:
- validation errors fail the withdrawal without contacting the provider for a payout
- an unreachable provider or a provider balance below the amount routes to
  requires_manual, which is a successful outcome of routing
- otherwise funds are reserved, the record moves to processing and the payout is
  submitted with bounded retries; provider errors leave the record failed with
  the reservation released and error_reason set

Database work happens in short units of work between provider calls so no
transaction stays open across network I/O.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import PayoutProviderName, TransactionRecord, TransactionStatus, TransactionType, utcnow
from services.ledger_service import LedgerService, ledger_service
from services.payout_provider import (
    PayoutProvider, PayoutProviderAPIError, PayoutRequest, PayoutResult, get_payout_provider
)
from services.transaction_state_machine import TransactionStateMachine, transaction_state_machine
from services.transaction_store import TransactionStore, transaction_store
from utils.atomic_transactions import atomic_transaction
from utils.currency_constants import MEMO_CURRENCIES, MIN_ADDRESS_LENGTH
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    Conflict, InsufficientFunds, LedgerError, NotFound, ProviderUnavailable, RestrictedAccount
)

logger = logging.getLogger(__name__)

MANUAL_ROUTING_REASON = "NOWPayments unavailable or insufficient balance"

# Provider status -> internal status
PROVIDER_STATUS_MAP = {
    'waiting': TransactionStatus.PROCESSING,
    'confirming': TransactionStatus.PROCESSING,
    'sending': TransactionStatus.PROCESSING,
    'confirmed': TransactionStatus.COMPLETED,
    'finished': TransactionStatus.COMPLETED,
    'failed': TransactionStatus.FAILED,
    'refunded': TransactionStatus.FAILED,
    'rejected': TransactionStatus.FAILED,
}


@dataclass
class WithdrawalSnapshot:
    """What the orchestrator needs from a withdrawal once its session is closed"""
    transaction_id: int
    account_id: int
    status: str
    hold_amount: Decimal
    payout_amount: Decimal
    currency: Optional[str]
    address: Optional[str]
    memo: Optional[str]

    def to_request(self) -> PayoutRequest:
        return PayoutRequest(
            address=self.address,
            currency=self.currency,
            amount=self.payout_amount,
            memo=self.memo,
            reference=self.reference,
        )

    @property
    def reference(self) -> str:
        return f"withdrawal-{self.transaction_id}"


class PayoutOrchestrator:
    """Automatic vs manual settlement of outbound withdrawals"""

    def __init__(
        self,
        provider: Optional[PayoutProvider] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        state_machine: Optional[TransactionStateMachine] = None,
        store: Optional[TransactionStore] = None,
        ledger: Optional[LedgerService] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.provider = provider or get_payout_provider()
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.state_machine = state_machine or transaction_state_machine
        self.store = store or transaction_store
        self.ledger = ledger or ledger_service
        self.max_attempts = max(1, max_attempts if max_attempts is not None else Config.PAYOUT_MAX_ATTEMPTS)
        self.retry_delay = retry_delay if retry_delay is not None else Config.PAYOUT_RETRY_DELAY_SECONDS

    # ------------------------------------------------------------------
    # Status mapping
    # ------------------------------------------------------------------

    @staticmethod
    def map_provider_status(provider_status: Optional[str]) -> TransactionStatus:
        """waiting/confirming -> processing, confirmed/finished -> completed,
        failed/refunded -> failed, anything else -> pending"""
        return PROVIDER_STATUS_MAP.get(str(provider_status or '').lower(), TransactionStatus.PENDING)

    # ------------------------------------------------------------------
    # Provider checks
    # ------------------------------------------------------------------

    async def can_auto_process(self, currency: str, amount) -> bool:
        """True only if the provider is reachable and holds at least amount of currency"""
        try:
            connectivity = await self.provider.test_connectivity()
            if not connectivity.get('connected'):
                logger.warning(f"⚠️ Payout provider not connected: {connectivity.get('detail')}")
                return False

            balance = await self.provider.get_balance(currency)
            available = MonetaryDecimal.to_decimal(balance.get('available', 0), "provider_balance")
            required = MonetaryDecimal.to_decimal(amount, "payout_amount")
            if available < required:
                logger.warning(
                    f"⚠️ Provider balance too low for {currency}: available {available} < required {required}"
                )
                return False
            return True

        except Exception as e:
            # Fail closed: any provider problem routes to manual review
            logger.warning(f"⚠️ Cannot verify provider for auto-processing, routing to manual: {e}")
            return False

    async def validate_payout(self, amount, currency: Optional[str], address: Optional[str]) -> Dict[str, Any]:
        """
        Validate a payout before submission.

        Errors block the withdrawal; warnings record lookups that could not be
        completed and never block.
        """
        errors: List[str] = []
        warnings: List[str] = []

        try:
            amount = MonetaryDecimal.to_decimal(amount, "payout_validation")
        except LedgerError:
            amount = None

        if amount is None or amount <= 0:
            errors.append("Amount must be positive")
        if not address or len(address) < MIN_ADDRESS_LENGTH:
            errors.append("Invalid wallet address")
        if not currency or len(currency) < 2:
            errors.append("Invalid currency")
        if errors:
            return {'valid': False, 'errors': errors, 'warnings': warnings}

        try:
            minimum = await self.provider.get_minimum_amount(currency)
            if minimum is not None and amount < minimum:
                errors.append(f"Amount below minimum: {minimum} {currency.upper()}")
        except Exception as e:
            logger.warning(f"⚠️ Minimum amount lookup failed for {currency}: {e}")
            warnings.append("Could not verify minimum amount requirements")

        try:
            address_check = await self.provider.validate_address(currency, address)
            if not address_check.get('valid'):
                errors.append(f"Invalid address: {address_check.get('message')}")
        except Exception as e:
            logger.warning(f"⚠️ Address validation failed for {currency}: {e}")
            warnings.append(f"Could not verify address format: {e}")

        return {'valid': not errors, 'errors': errors, 'warnings': warnings}

    # ------------------------------------------------------------------
    # Unit-of-work helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot(record: TransactionRecord) -> WithdrawalSnapshot:
        wallet = record.wallet_data or {}
        hold_amount = abs(MonetaryDecimal.to_decimal(record.amount))
        converted = wallet.get('converted_amount')
        payout_amount = MonetaryDecimal.to_decimal(converted, "converted_amount") if converted else hold_amount
        currency = wallet.get('coin_name')
        currency = currency.upper() if currency else None
        memo = None
        if currency in MEMO_CURRENCIES:
            memo = wallet.get('memo') or wallet.get('network')
        return WithdrawalSnapshot(
            transaction_id=record.id,
            account_id=record.account_id,
            status=record.status,
            hold_amount=hold_amount,
            payout_amount=payout_amount,
            currency=currency,
            address=wallet.get('address'),
            memo=memo,
        )

    def _fail(self, transaction_id: int, reason: str) -> Dict[str, Any]:
        """Mark failed (releasing any reserved funds) and return the failure result"""
        with self.session_factory() as session:
            try:
                return self.state_machine.fail_withdrawal(session, transaction_id, reason)
            except (Conflict, NotFound, RestrictedAccount) as e:
                logger.error(f"❌ Could not mark withdrawal {transaction_id} failed ({reason}): {e}")
                current = self._current_status(session, transaction_id)
                return {'success': False, 'status': current, 'message': reason, 'transaction_id': transaction_id}

    def _current_status(self, session: Session, transaction_id: int) -> str:
        try:
            return self.store.find_by_id(session, transaction_id).status
        except NotFound:
            return TransactionStatus.FAILED.value

    def _begin_processing(self, snapshot: WithdrawalSnapshot) -> None:
        """pending -> processing with the withdrawal reserved, in one unit of work"""
        with self.session_factory() as session:
            with atomic_transaction(session):
                self.store.update_status(
                    session,
                    snapshot.transaction_id,
                    TransactionStatus.PROCESSING,
                    expected_status=TransactionStatus.PENDING,
                    payout_provider=self.provider.name,
                )
                account = self.ledger.get_account(session, snapshot.account_id)
                self.ledger.record_withdrawal_hold(session, account, snapshot.hold_amount)

    def _record_attempt(self, transaction_id: int) -> int:
        with self.session_factory() as session:
            with atomic_transaction(session):
                record = self.store.find_by_id(session, transaction_id, for_update=True)
                attempts = (record.attempts or 0) + 1
                self.store.update_fields(session, transaction_id, attempts=attempts, last_attempt_at=utcnow())
        return attempts

    def _apply_payout_result(self, transaction_id: int, result: PayoutResult) -> TransactionStatus:
        """Store provider references and move the record to the mapped status"""
        mapped = self.map_provider_status(result.status)
        with self.session_factory() as session:
            with atomic_transaction(session):
                record = self.store.find_by_id(session, transaction_id, for_update=True)
                metadata = dict(record.extra_data or {})
                metadata['provider_status'] = result.status
                if result.error:
                    metadata['provider_error'] = result.error
                self.store.update_fields(
                    session,
                    transaction_id,
                    provider_id=result.provider_id,
                    tx_hash=result.tx_hash,
                    auto_processed=True,
                    metadata=metadata,
                )

                if mapped == TransactionStatus.COMPLETED:
                    self.state_machine.complete_withdrawal(session, transaction_id, tx_hash=result.tx_hash)
                elif mapped == TransactionStatus.FAILED:
                    self.state_machine.fail_withdrawal(
                        session, transaction_id, result.error or f"Provider reported {result.status}"
                    )
                else:
                    # Still settling (or unknown): stays processing until a status sync
                    mapped = TransactionStatus.PROCESSING
        return mapped

    async def _submit_with_retries(self, snapshot: WithdrawalSnapshot) -> PayoutResult:
        """
        Submit one payout, retrying a bounded number of times while the provider
        answers with a retryable error (5xx/429).

        A timeout or network failure is not retried: the payout may have been
        accepted, so a second POST could pay out twice.
        """
        last_error: Optional[Exception] = None
        request = snapshot.to_request()
        for attempt in range(1, self.max_attempts + 1):
            self._record_attempt(snapshot.transaction_id)
            try:
                return await self.provider.create_payout(request)
            except ProviderUnavailable as e:
                logger.error(
                    f"❌ Payout for withdrawal {snapshot.transaction_id} ({request.reference}) "
                    f"has an unknown outcome, not retrying: {e}"
                )
                raise
            except PayoutProviderAPIError as e:
                last_error = e
                if not e.retryable or attempt >= self.max_attempts:
                    break
                logger.warning(
                    f"🔄 Payout attempt {attempt}/{self.max_attempts} for withdrawal "
                    f"{snapshot.transaction_id} failed, retrying: {e}"
                )
                await asyncio.sleep(self.retry_delay * attempt)
        raise last_error

    # ------------------------------------------------------------------
    # Single withdrawal
    # ------------------------------------------------------------------

    async def process_withdrawal(self, transaction_id: int) -> Dict[str, Any]:
        """Route one pending withdrawal to automatic or manual settlement"""
        with self.session_factory() as session:
            try:
                record = self.store.find_by_id(session, transaction_id)
            except NotFound:
                return {'success': False, 'status': TransactionStatus.FAILED.value, 'message': 'Transaction not found'}

            if record.type != TransactionType.WITHDRAWAL.value or record.status != TransactionStatus.PENDING.value:
                return {
                    'success': False,
                    'status': record.status,
                    'message': f"Transaction is not a pending withdrawal (status: {record.status})",
                }
            snapshot = self._snapshot(record)

        if not snapshot.currency or not snapshot.address:
            return self._fail(transaction_id, "Missing wallet data (currency or address)")

        try:
            validation = await self.validate_payout(snapshot.payout_amount, snapshot.currency, snapshot.address)
            if not validation['valid']:
                result = self._fail(transaction_id, f"Validation failed: {', '.join(validation['errors'])}")
                result['errors'] = validation['errors']
                result['warnings'] = validation['warnings']
                return result

            if not await self.can_auto_process(snapshot.currency, snapshot.payout_amount):
                with self.session_factory() as session:
                    self.state_machine.transition(
                        session,
                        transaction_id,
                        TransactionStatus.REQUIRES_MANUAL,
                        expected_status=TransactionStatus.PENDING,
                        payout_provider=PayoutProviderName.MANUAL.value,
                        error_reason=MANUAL_ROUTING_REASON,
                    )
                logger.info(f"📋 Withdrawal {transaction_id} routed to manual processing")
                return {
                    'success': True,
                    'status': TransactionStatus.REQUIRES_MANUAL.value,
                    'message': 'Withdrawal marked for manual processing',
                    'warnings': validation['warnings'],
                }

            try:
                self._begin_processing(snapshot)
            except InsufficientFunds as e:
                return self._fail(transaction_id, f"Insufficient funds: {e.message}")

            try:
                payout = await self._submit_with_retries(snapshot)
            except Exception as e:
                logger.error(f"❌ Payout submission failed for withdrawal {transaction_id}: {e}")
                return self._fail(transaction_id, f"Processing error: {e}")

            final_status = self._apply_payout_result(transaction_id, payout)
            success = final_status != TransactionStatus.FAILED
            return {
                'success': success,
                'status': final_status.value,
                'message': (
                    f"Withdrawal processed automatically via {self.provider.name}"
                    if success else f"Provider reported {payout.status}"
                ),
                'provider_id': payout.provider_id,
                'tx_hash': payout.tx_hash,
            }

        except Conflict as e:
            logger.warning(f"⚠️ Withdrawal {transaction_id} changed concurrently: {e}")
            with self.session_factory() as session:
                current = self._current_status(session, transaction_id)
            return {'success': False, 'status': current, 'message': e.message}
        except Exception as e:
            logger.error(f"❌ Unexpected error processing withdrawal {transaction_id}: {e}")
            return self._fail(transaction_id, f"Processing error: {e}")

    # ------------------------------------------------------------------
    # Mass payouts
    # ------------------------------------------------------------------

    async def process_mass_withdrawals(self, transaction_ids: List[int]) -> Dict[str, Any]:
        """
        Settle many pending withdrawals with one provider batch per currency.

        Per-item results are applied positionally. A failing batch fails only
        its own currency group.
        """
        if not transaction_ids:
            return {'success': False, 'status': TransactionStatus.FAILED.value, 'message': 'No transactions provided'}

        unique_ids = list(OrderedDict.fromkeys(transaction_ids))
        with self.session_factory() as session:
            records = session.execute(
                select(TransactionRecord).where(
                    TransactionRecord.id.in_(unique_ids),
                    TransactionRecord.type == TransactionType.WITHDRAWAL.value,
                    TransactionRecord.status == TransactionStatus.PENDING.value,
                )
            ).scalars().all()
            if len(records) != len(unique_ids):
                return {
                    'success': False,
                    'status': TransactionStatus.FAILED.value,
                    'message': 'Some transactions not found or not in pending status',
                }
            by_id = {record.id: self._snapshot(record) for record in records}

        processed = 0
        failed = 0
        results: List[Dict[str, Any]] = []

        groups: "OrderedDict[str, List[WithdrawalSnapshot]]" = OrderedDict()
        for transaction_id in unique_ids:
            snapshot = by_id[transaction_id]
            if not snapshot.currency or not snapshot.address:
                self._fail(transaction_id, "Missing wallet data (currency or address)")
                failed += 1
                results.append({'transaction_id': transaction_id, 'status': TransactionStatus.FAILED.value})
                continue
            groups.setdefault(snapshot.currency, []).append(snapshot)

        for currency, snapshots in groups.items():
            ready: List[WithdrawalSnapshot] = []
            for snapshot in snapshots:
                try:
                    self._begin_processing(snapshot)
                    self._record_attempt(snapshot.transaction_id)
                    ready.append(snapshot)
                except (InsufficientFunds, Conflict, RestrictedAccount) as e:
                    self._fail(snapshot.transaction_id, f"Mass payout failed: {e.message}")
                    failed += 1
                    results.append({'transaction_id': snapshot.transaction_id, 'status': TransactionStatus.FAILED.value})
            if not ready:
                continue

            try:
                batch = await self.provider.create_mass_payout([snapshot.to_request() for snapshot in ready])
            except Exception as e:
                logger.error(f"❌ Mass payout for {currency} failed ({len(ready)} withdrawals): {e}")
                for snapshot in ready:
                    self._fail(snapshot.transaction_id, f"Mass payout failed: {e}")
                    failed += 1
                    results.append({'transaction_id': snapshot.transaction_id, 'status': TransactionStatus.FAILED.value})
                continue

            for index, snapshot in enumerate(ready):
                if index >= len(batch.results):
                    self._fail(snapshot.transaction_id, "Mass payout failed: no result returned for this withdrawal")
                    failed += 1
                    results.append({'transaction_id': snapshot.transaction_id, 'status': TransactionStatus.FAILED.value})
                    continue

                try:
                    status = self._apply_payout_result(snapshot.transaction_id, batch.results[index])
                except LedgerError as e:
                    logger.error(f"❌ Could not apply mass payout result to {snapshot.transaction_id}: {e}")
                    status = TransactionStatus.FAILED
                    self._fail(snapshot.transaction_id, f"Mass payout failed: {e.message}")

                if status == TransactionStatus.FAILED:
                    failed += 1
                else:
                    processed += 1
                results.append({'transaction_id': snapshot.transaction_id, 'status': status.value})

        logger.info(f"📦 Mass withdrawal processed: {processed} successful, {failed} failed")
        return {
            'success': processed > 0,
            'status': TransactionStatus.COMPLETED.value if failed == 0 else 'partial',
            'processed': processed,
            'failed': failed,
            'results': results,
            'message': f"Mass withdrawal processed: {processed} successful, {failed} failed",
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def sync_payout_status(self, transaction_id: int) -> Dict[str, Any]:
        """Poll the provider for a processing withdrawal and apply the mapped status"""
        with self.session_factory() as session:
            try:
                record = self.store.find_by_id(session, transaction_id)
            except NotFound:
                return {'success': False, 'status': TransactionStatus.FAILED.value, 'message': 'Transaction not found'}
            status, provider_id, tx_hash = record.status, record.provider_id, record.tx_hash

        if status != TransactionStatus.PROCESSING.value or not provider_id:
            return {'success': False, 'status': status, 'message': 'Withdrawal is not awaiting provider settlement'}

        provider_status = await self.provider.get_payout_status(provider_id)
        if provider_status is None:
            return {'success': False, 'status': status, 'message': 'Provider status unavailable'}

        final_status = self._apply_payout_result(
            transaction_id, PayoutResult(provider_id=provider_id, status=provider_status, tx_hash=tx_hash)
        )
        return {'success': True, 'status': final_status.value, 'message': f"Provider status: {provider_status}"}

    def get_withdrawal_status(self, transaction_id: int) -> Dict[str, Any]:
        with self.session_factory() as session:
            try:
                record = self.store.find_by_id(session, transaction_id)
            except NotFound:
                return {'success': False, 'message': 'Transaction not found'}

            return {
                'success': True,
                'transaction_id': record.id,
                'status': record.status,
                'amount': str(abs(MonetaryDecimal.to_decimal(record.amount))),
                'currency': record.currency,
                'wallet': record.wallet_data,
                'payout_provider': record.payout_provider,
                'provider_id': record.provider_id,
                'tx_hash': record.tx_hash,
                'auto_processed': record.auto_processed,
                'attempts': record.attempts,
                'last_attempt_at': record.last_attempt_at.isoformat() if record.last_attempt_at else None,
                'processed_at': record.processed_at.isoformat() if record.processed_at else None,
                'error_reason': record.error_reason,
            }


_payout_orchestrator: Optional[PayoutOrchestrator] = None


def get_payout_orchestrator() -> PayoutOrchestrator:
    """Get the global payout orchestrator instance"""
    global _payout_orchestrator
    if _payout_orchestrator is None:
        _payout_orchestrator = PayoutOrchestrator()
    return _payout_orchestrator
