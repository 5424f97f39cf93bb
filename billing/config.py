"""
Billing configuration: settlement constants live here and nowhere else.

All monetary amounts are Decimal GHS unless otherwise noted. Conversion to
pesewas happens only inside billing.gateways.paystack.
Safe to import from views, services, and gateways.
"""
from decimal import Decimal

CURRENCY = "GHS"

# Order references look like OE-LZ3K9Q1A-7F2K9D
ORDER_REFERENCE_PREFIX = "OE"
TOPUP_REFERENCE_PREFIX = "TOPUP"
# Compensating credit written when a wallet-funded delivery fails
WALLET_REVERSAL_PREFIX = "REF"
# Credit written by an operator refund
ADMIN_REFUND_PREFIX = "REFUND"

# Ghana numbering plan
COUNTRY_CODE = "233"
NATIONAL_NUMBER_LENGTH = 9
NETWORK_PREFIXES = {
    "MTN": ("24", "25", "53", "54", "55", "59"),
    "TELECEL": ("20", "50"),
    "AIRTELTIGO": ("26", "27", "56", "57"),
}
UNKNOWN_NETWORK = "UNKNOWN"

PAYMENT_METHODS = ("card", "mobile_money")
# Channels offered on the payment page per requested method
PAYMENT_CHANNELS = {
    "card": ["card", "mobile_money"],
    "mobile_money": ["mobile_money"],
}

MIN_TOPUP_AMOUNT = Decimal("1.00")
MAX_TOPUP_AMOUNT = Decimal("5000.00")

# Version-check conflicts are retried this many times before surfacing a 503
SETTLEMENT_MAX_CONFLICT_RETRIES = 3
# A delivery claim older than this may be taken over by an operator retry
DELIVERY_CLAIM_TIMEOUT_SECONDS = 300

WALLET_HISTORY_DEFAULT_LIMIT = 20
WALLET_HISTORY_MAX_LIMIT = 100

# Public order lookup by recipient phone returns at most this many orders, newest first
PHONE_LOOKUP_LIMIT = 20
