class TransactionStatus:
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    TERMINAL = (SUCCESS, FAILED)


class ElectionStatus:
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class CreditSourceKind:
    UNLIMITED = "unlimited"
    SHARED = "shared"
    LEGACY = "legacy"


CREDIT_SOURCE_KINDS = (CreditSourceKind.UNLIMITED, CreditSourceKind.SHARED, CreditSourceKind.LEGACY)

# Unlimited windows first, then the shared pool, then deprecated legacy grants.
DEFAULT_CREDIT_SOURCE_PRIORITY = (
    CreditSourceKind.UNLIMITED,
    CreditSourceKind.SHARED,
    CreditSourceKind.LEGACY,
)


class LedgerEntryType:
    PURCHASE = "purchase"
    UNLIMITED_PURCHASE = "unlimited_purchase"
    DEBIT = "debit"
    RELEASE = "release"
    CLAIM = "claim"


UNLIMITED_VOTER_LIMIT = -1

# Gateway statuses observed on the mobile-money webhook.
GATEWAY_SUCCESS_STATUSES = {"success", "received", "completed"}
GATEWAY_FAILED_STATUSES = {"failed", "cancelled", "canceled", "reversed"}

# Prices are in minor currency units.
DEFAULT_PRICING_PLANS = [
    {"code": "starter", "name": "Starter", "price": 50000, "voter_limit": 100, "enabled": True},
    {"code": "standard", "name": "Standard", "price": 200000, "voter_limit": 500, "enabled": True},
    {"code": "premium", "name": "Premium", "price": 350000, "voter_limit": 1000, "enabled": True},
    {"code": "unlimited", "name": "Unlimited", "price": 800000, "voter_limit": UNLIMITED_VOTER_LIMIT, "enabled": True},
]
