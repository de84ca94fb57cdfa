"""Chain and game constants that are not operator-tunable."""
from __future__ import annotations

GWEI = 10**9
WEI_PER_TOKEN = 10**18

# Fallbacks when the node does not report fee data.
DEFAULT_GAS_PRICE = 100 * GWEI
DEFAULT_BASE_FEE = 80 * GWEI
DEFAULT_PRIORITY_FEE = 2 * GWEI

# Plain value transfer.
TRANSFER_GAS_UNITS = 21_000

# Refund overhead margins, in percent.
REFUND_GAS_PRICE_MARGIN = 10
REFUND_PRIORITY_MARGIN = 20

MAX_UINT_APPROVAL = 9_999_999_999_999_999_999_999

INVENTORY_PAGE_LIMIT = 200

CHALLENGE_TEMPLATE = (
    "Welcome to Karmaverse, in order to verify your identity, "
    "please sign this message. Your sign code is: {nonce}"
)
