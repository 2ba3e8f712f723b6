"""
Centralized currency and payout constants
"""

from decimal import Decimal

# Supported currencies
SUPPORTED_FIAT = ["USD"]
SUPPORTED_CRYPTO = ["BTC", "ETH", "USDT", "USDC", "LTC", "BCH", "XRP", "ADA", "DOT", "BNB", "EOS"]
ALL_CURRENCIES = SUPPORTED_FIAT + SUPPORTED_CRYPTO

# Currency display names
CURRENCY_NAMES = {
    "USD": "US Dollar",
    "BTC": "Bitcoin",
    "ETH": "Ethereum",
    "USDT": "Tether",
    "USDC": "USD Coin",
    "LTC": "Litecoin",
    "BCH": "Bitcoin Cash",
    "XRP": "Ripple",
    "ADA": "Cardano",
    "DOT": "Polkadot",
    "BNB": "BNB",
    "EOS": "EOS",
}

# Fallback payout minimums when the provider lookup is unavailable
DEFAULT_MINIMUM_PAYOUTS = {
    "BTC": Decimal("0.0001"),
    "ETH": Decimal("0.001"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
    "LTC": Decimal("0.001"),
    "BCH": Decimal("0.001"),
    "XRP": Decimal("1"),
    "ADA": Decimal("1"),
    "DOT": Decimal("0.1"),
    "BNB": Decimal("0.001"),
}
DEFAULT_MINIMUM_PAYOUT = Decimal("1")

# Address shape checks; not a guarantee the address exists on-chain
BTC_ADDRESS_PATTERN = r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$|^bc1[a-z0-9]{39,59}$"
ETH_ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
ADDRESS_PATTERNS = {
    "BTC": [BTC_ADDRESS_PATTERN],
    "ETH": [ETH_ADDRESS_PATTERN],
    "USDT": [BTC_ADDRESS_PATTERN, ETH_ADDRESS_PATTERN],
    "USDC": [ETH_ADDRESS_PATTERN],
    "BNB": [ETH_ADDRESS_PATTERN],
    "LTC": [r"^[LM3][a-km-zA-HJ-NP-Z1-9]{26,33}$"],
    "XRP": [r"^r[0-9a-zA-Z]{24,34}$"],
}
MIN_ADDRESS_LENGTH = 10

# Currencies whose payouts carry a destination tag / memo
MEMO_CURRENCIES = {"XRP", "EOS"}


def get_minimum_payout(currency: str) -> Decimal:
    return DEFAULT_MINIMUM_PAYOUTS.get(currency.upper(), DEFAULT_MINIMUM_PAYOUT)
