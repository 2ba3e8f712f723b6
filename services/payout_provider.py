"""
Payout Provider capability

The payout orchestrator talks to an external payout-capable provider only
through this interface. Two implementations exist: the NOWPayments HTTP
adapter and a deterministic in-process stub; configuration picks one.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import Config
from utils.currency_constants import ADDRESS_PATTERNS, MIN_ADDRESS_LENGTH, get_minimum_payout

logger = logging.getLogger(__name__)


class PayoutProviderAPIError(Exception):
    """Non-2xx response from a payout provider, carrying the raw error body"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


@dataclass
class PayoutRequest:
    """One outbound payout"""
    address: str
    currency: str
    amount: Decimal
    memo: Optional[str] = None
    # Stable per withdrawal so the provider can reject a duplicate submission
    reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'address': self.address,
            'currency': self.currency.lower(),
            'amount': float(self.amount),
        }
        if self.memo:
            data['extra_id'] = self.memo
        if self.reference:
            data['unique_external_id'] = self.reference
        return data


@dataclass
class PayoutResult:
    """Provider's view of a single payout"""
    provider_id: Optional[str]
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MassPayoutResult:
    """Batch payout; results correspond positionally to the submitted requests"""
    batch_id: Optional[str]
    status: str
    results: List[PayoutResult] = field(default_factory=list)


class PayoutProvider(ABC):
    """External payout provider capability"""

    name = "provider"

    @abstractmethod
    async def test_connectivity(self) -> Dict[str, Any]:
        """{'connected': bool, 'detail': str}"""

    @abstractmethod
    async def get_balance(self, currency: str) -> Dict[str, Decimal]:
        """{'available': Decimal, 'pending': Decimal}"""

    @abstractmethod
    async def get_minimum_amount(self, currency: str) -> Decimal:
        pass

    @abstractmethod
    async def create_payout(self, request: PayoutRequest) -> PayoutResult:
        pass

    @abstractmethod
    async def create_mass_payout(self, requests: List[PayoutRequest]) -> MassPayoutResult:
        pass

    @abstractmethod
    async def get_payout_status(self, provider_id: str) -> Optional[str]:
        pass

    async def validate_address(self, currency: str, address: str) -> Dict[str, Any]:
        """Shape check of a destination address for the currency"""
        if not address or len(address) < MIN_ADDRESS_LENGTH:
            return {'valid': False, 'message': 'Address too short'}

        patterns = ADDRESS_PATTERNS.get(currency.upper())
        if not patterns:
            # No known shape for this currency; length check only
            return {'valid': True, 'message': 'Address format not verified for this currency'}

        if any(re.match(pattern, address) for pattern in patterns):
            return {'valid': True, 'message': 'Valid address format'}
        return {'valid': False, 'message': f'Invalid {currency.upper()} address format'}

    async def close(self) -> None:
        pass


class StubPayoutProvider(PayoutProvider):
    """
    Deterministic provider for development and tests.

    Balances, minimums and the status returned for new payouts are plain
    attributes; ``failures`` maps a method name to an exception it raises.
    """

    name = "stub"

    def __init__(
        self,
        connected: bool = True,
        balances: Optional[Dict[str, Decimal]] = None,
        minimums: Optional[Dict[str, Decimal]] = None,
        payout_status: str = "finished",
        failures: Optional[Dict[str, Exception]] = None,
    ):
        self.connected = connected
        self.balances = {k.upper(): Decimal(str(v)) for k, v in (balances or {}).items()}
        self.minimums = {k.upper(): Decimal(str(v)) for k, v in (minimums or {}).items()}
        self.payout_status = payout_status
        self.failures = dict(failures or {})
        self.payouts: Dict[str, PayoutResult] = {}
        self.calls: List[str] = []
        self._sequence = 0

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}-{self._sequence}"

    async def test_connectivity(self) -> Dict[str, Any]:
        self._maybe_fail('test_connectivity')
        return {'connected': self.connected, 'detail': 'stub provider'}

    async def get_balance(self, currency: str) -> Dict[str, Decimal]:
        self._maybe_fail('get_balance')
        return {'available': self.balances.get(currency.upper(), Decimal("0")), 'pending': Decimal("0")}

    async def get_minimum_amount(self, currency: str) -> Decimal:
        self._maybe_fail('get_minimum_amount')
        return self.minimums.get(currency.upper(), get_minimum_payout(currency))

    async def create_payout(self, request: PayoutRequest) -> PayoutResult:
        self._maybe_fail('create_payout')
        payout_id = self._next_id("stub")
        result = PayoutResult(
            provider_id=payout_id,
            status=self.payout_status,
            tx_hash=f"stubtx-{payout_id}" if self.payout_status in ("confirmed", "finished") else None,
        )
        self.payouts[payout_id] = result
        logger.info(f"🧪 Stub payout {payout_id}: {request.amount} {request.currency} -> {request.address}")
        return result

    async def create_mass_payout(self, requests: List[PayoutRequest]) -> MassPayoutResult:
        self._maybe_fail('create_mass_payout')
        failure = self.failures.get(f'create_mass_payout:{requests[0].currency.upper()}') if requests else None
        if failure is not None:
            raise failure

        batch_id = self._next_id("stub-batch")
        results = []
        for request in requests:
            payout_id = self._next_id("stub")
            result = PayoutResult(provider_id=payout_id, status=self.payout_status)
            self.payouts[payout_id] = result
            results.append(result)
        return MassPayoutResult(batch_id=batch_id, status=self.payout_status, results=results)

    async def get_payout_status(self, provider_id: str) -> Optional[str]:
        self._maybe_fail('get_payout_status')
        result = self.payouts.get(provider_id)
        return result.status if result else None


_payout_provider: Optional[PayoutProvider] = None


def build_payout_provider(name: Optional[str] = None) -> PayoutProvider:
    """Construct the provider implementation selected by configuration"""
    name = (name or Config.PAYOUT_PROVIDER).lower()
    if name == "nowpayments":
        from services.nowpayments_service import NOWPaymentsService
        return NOWPaymentsService()
    if name != "stub":
        logger.error(f"❌ Unknown payout provider '{name}', using stub provider")
    return StubPayoutProvider()


def get_payout_provider() -> PayoutProvider:
    global _payout_provider
    if _payout_provider is None:
        _payout_provider = build_payout_provider()
        logger.info(f"✅ Payout provider initialized: {_payout_provider.name}")
    return _payout_provider


def set_payout_provider(provider: Optional[PayoutProvider]) -> None:
    global _payout_provider
    _payout_provider = provider
