"""
Coin Ledger Configuration and Constants

Resource pricing, plan defaults, accrual timing and error messages are defined here.
Prices are in coins; resource quantities are in panel units (cpu %, MB, counts).
"""

import os

# ==================== RESOURCES ====================
RESOURCE_KEYS = ("cpu", "ram", "disk", "backup", "database", "allocation")

# Units of resource granted per purchased unit
RESOURCE_MULTIPLIERS = {
    "cpu": 100,       # 100% of one core
    "ram": 1024,      # MB
    "disk": 1024,     # MB
    "backup": 1,
    "database": 1,
    "allocation": 1
}

# Coin cost per purchased unit
RESOURCE_COSTS = {
    "cpu": int(os.environ.get("CPU_COST", "10")),
    "ram": int(os.environ.get("RAM_COST", "10")),
    "disk": int(os.environ.get("DISK_COST", "5")),
    "backup": int(os.environ.get("BACKUP_COST", "5")),
    "database": int(os.environ.get("DATABASE_COST", "5")),
    "allocation": int(os.environ.get("ALLOCATION_COST", "5"))
}

MAX_PURCHASE_UNITS = 10

# Starting balance for freshly registered accounts
DEFAULT_RESOURCES = {
    "cpu": 100,
    "ram": 1024,
    "disk": 10240,
    "backup": 2,
    "database": 2,
    "allocation": 2
}

# ==================== PLANS ====================
PLANS_FILE = os.environ.get("PLANS_FILE", "")
DEFAULT_PLAN = os.environ.get("DEFAULT_PLAN", "BASIC")

# Used when PLANS_FILE is not set. BASIC matches DEFAULT_RESOURCES.
DEFAULT_PLANS = {
    "BASIC": {
        "id": 1,
        "name": "Basic",
        "price": 0,
        "resources": dict(DEFAULT_RESOURCES)
    },
    "STANDARD": {
        "id": 2,
        "name": "Standard",
        "price": 250,
        "resources": {"cpu": 200, "ram": 2048, "disk": 20480, "backup": 4, "database": 4, "allocation": 4}
    },
    "PREMIUM": {
        "id": 3,
        "name": "Premium",
        "price": 750,
        "resources": {"cpu": 400, "ram": 4096, "disk": 40960, "backup": 8, "database": 8, "allocation": 8}
    }
}

# ==================== SETTINGS DEFAULTS ====================
DEFAULT_SETTINGS = {
    "daily_coins_enabled": False,
    "daily_coins": 0,
    "maintenance": False,
    "join_guild_enabled": False,
    "join_guild_id": ""
}

# ==================== AFK ACCRUAL ====================
AFK_INTERVAL_SECONDS = int(os.environ.get("AFK_TIME", "60"))
AFK_COINS_PER_INTERVAL = 1
# A push slower than this ends the session (stuck or backpressured client)
AFK_PUSH_TIMEOUT_SECONDS = float(os.environ.get("AFK_PUSH_TIMEOUT_SECONDS", "5"))

# ==================== CONCURRENCY ====================
# Versioned write attempts before an operation reports STORE_FAILURE
LEDGER_MAX_RETRIES = int(os.environ.get("LEDGER_MAX_RETRIES", "3"))

# ==================== EXTERNAL CALLS ====================
NOTIFY_TIMEOUT_SECONDS = float(os.environ.get("NOTIFY_TIMEOUT_SECONDS", "5"))
NOTIFY_MAX_RETRIES = int(os.environ.get("NOTIFY_MAX_RETRIES", "2"))
PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "10"))
PROVIDER_MAX_RETRIES = int(os.environ.get("PROVIDER_MAX_RETRIES", "2"))

# ==================== ERROR CODES ====================
ERROR_MESSAGES = {
    "NOT_FOUND": "Account or plan not found.",
    "INVALID_PARAMS": "Missing or malformed parameters.",
    "INVALID_AMOUNT": "Amount must be a valid non-negative number.",
    "INSUFFICIENT_BALANCE": "Not enough coins.",
    "ALREADY_CLAIMED": "Daily coins already claimed today.",
    "ALREADY_ON_PLAN": "You are already on this plan.",
    "ALREADY_ACTIVE": "An AFK session is already running for this account.",
    "BANNED": "This account is banned.",
    "FORBIDDEN": "Admin access required.",
    "FEATURE_DISABLED": "This feature is currently disabled.",
    "STORE_FAILURE": "Internal error. Please try again later."
}
