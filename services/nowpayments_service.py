"""NOWPayments Payout API Service - automatic crypto withdrawal settlement"""

import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from services.payout_provider import (
    MassPayoutResult, PayoutProvider, PayoutProviderAPIError, PayoutRequest, PayoutResult
)
from utils.currency_constants import get_minimum_payout
from utils.exceptions import ProviderUnavailable

logger = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except (InvalidOperation, ValueError):
        return Decimal("0")


class NOWPaymentsService(PayoutProvider):
    """Service for NOWPayments payouts, balances and address checks"""

    name = "nowpayments"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else Config.NOWPAYMENTS_API_KEY
        self.base_url = (base_url or Config.NOWPAYMENTS_BASE_URL).rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.PAYOUT_PROVIDER_TIMEOUT)

        if not self.api_key:
            logger.warning("NOWPayments API key not configured - payouts will route to manual review")
        else:
            logger.info(f"NOWPayments API initialized with key: {Config.masked_api_key()}")

    def _get_headers(self) -> Dict[str, str]:
        return {
            'accept': 'application/json',
            'content-type': 'application/json',
            'x-api-key': self.api_key or '',
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one API call.

        Raises:
            PayoutProviderAPIError: non-2xx response (raw body attached)
            ProviderUnavailable: timeout or network failure
        """
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(
                    method, url, headers=self._get_headers(), params=params, json=payload
                ) as response:
                    body = await response.text()
                    if response.status < 200 or response.status >= 300:
                        logger.error(f"❌ NOWPayments API error: HTTP {response.status} {method} {path}: {body}")
                        raise PayoutProviderAPIError(
                            f"NOWPayments API Error ({response.status}): {body}",
                            status_code=response.status,
                            body=body,
                        )
                    return json.loads(body) if body else {}
        except asyncio.TimeoutError:
            logger.error(f"❌ NOWPayments request timed out: {method} {path}")
            raise ProviderUnavailable(f"NOWPayments request timed out after {self.timeout.total}s")
        except aiohttp.ClientError as e:
            logger.error(f"❌ Network error connecting to NOWPayments: {e}")
            raise ProviderUnavailable(f"Network error: {e}")

    async def test_connectivity(self) -> Dict[str, Any]:
        """Check the API is reachable and the key is accepted"""
        if not self.api_key:
            return {'connected': False, 'detail': 'API key not configured'}

        try:
            status = await self._request('GET', '/v1/status')
            await self._request('GET', '/v1/currencies')
            return {'connected': True, 'detail': (status or {}).get('message', 'OK')}
        except (PayoutProviderAPIError, ProviderUnavailable) as e:
            logger.warning(f"⚠️ NOWPayments connectivity check failed: {e}")
            return {'connected': False, 'detail': str(e)}

    async def get_balance(self, currency: str) -> Dict[str, Decimal]:
        """Custody balance for one currency; a 403 (no custody access) reads as empty"""
        try:
            data = await self._request('GET', f'/v1/balance/{currency.lower()}')
        except PayoutProviderAPIError as e:
            if e.status_code == 403:
                logger.warning("⚠️ NOWPayments balance endpoint forbidden for this API key")
                return {'available': Decimal("0"), 'pending': Decimal("0")}
            raise

        entries: List[Dict[str, Any]]
        if isinstance(data, list):
            entries = data
        elif isinstance(data, dict) and currency.lower() in data:
            entry = data[currency.lower()] or {}
            entries = [{
                'currency': currency.lower(),
                'available_amount': entry.get('amount'),
                'pending_amount': entry.get('pendingAmount'),
            }]
        else:
            entries = [data] if isinstance(data, dict) else []

        for entry in entries:
            if str(entry.get('currency', '')).lower() == currency.lower():
                return {
                    'available': _to_decimal(entry.get('available_amount')),
                    'pending': _to_decimal(entry.get('pending_amount')),
                }
        return {'available': Decimal("0"), 'pending': Decimal("0")}

    async def get_minimum_amount(self, currency: str) -> Decimal:
        """Provider minimum for a payout; falls back to the static table"""
        try:
            data = await self._request(
                'GET', '/v1/min-amount',
                params={'currency_from': currency.lower(), 'currency_to': currency.lower()},
            )
            min_amount = data.get('min_amount') if isinstance(data, dict) else None
            if min_amount is not None:
                return _to_decimal(min_amount)
        except (PayoutProviderAPIError, ProviderUnavailable) as e:
            logger.warning(f"⚠️ NOWPayments minimum lookup failed for {currency}, using default: {e}")
        return get_minimum_payout(currency)

    async def create_payout(self, request: PayoutRequest) -> PayoutResult:
        data = await self._request('POST', '/v1/payout', payload=request.to_dict())
        result = PayoutResult(
            provider_id=str(data.get('id')) if data.get('id') is not None else None,
            status=str(data.get('status', 'waiting')).lower(),
            tx_hash=data.get('hash') or data.get('txid'),
        )
        logger.info(
            f"✅ NOWPayments payout created: {result.provider_id} {request.amount} {request.currency} status={result.status}"
        )
        return result

    async def create_mass_payout(self, requests: List[PayoutRequest]) -> MassPayoutResult:
        data = await self._request(
            'POST', '/v1/payout/mass',
            payload={'withdrawals': [request.to_dict() for request in requests]},
        )
        results = [
            PayoutResult(
                provider_id=str(item.get('id')) if item.get('id') is not None else None,
                status=str(item.get('status', 'waiting')).lower(),
                tx_hash=item.get('hash') or item.get('txid'),
                error=item.get('error'),
            )
            for item in data.get('withdrawals', [])
        ]
        logger.info(f"✅ NOWPayments mass payout {data.get('id')}: {len(results)}/{len(requests)} items accepted")
        return MassPayoutResult(
            batch_id=str(data.get('id')) if data.get('id') is not None else None,
            status=str(data.get('status', 'waiting')).lower(),
            results=results,
        )

    async def get_payout_status(self, provider_id: str) -> Optional[str]:
        try:
            data = await self._request('GET', f'/v1/payout/{provider_id}')
        except (PayoutProviderAPIError, ProviderUnavailable) as e:
            logger.error(f"❌ Failed to fetch NOWPayments payout status for {provider_id}: {e}")
            return None
        status = data.get('status') if isinstance(data, dict) else None
        return str(status).lower() if status else None
