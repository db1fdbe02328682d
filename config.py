import os
from decimal import Decimal
from dotenv import load_dotenv

# Load .env
load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///matrix.db")

# Telegram admin bot
API_TOKEN = os.getenv("TELEGRAM_API_TOKEN")
ADMINS = [int(admin) for admin in os.getenv("ADMINS", "").split(",") if admin.strip()]

# Cron
CRON_INTERVAL = int(os.getenv("CRON_INTERVAL", "300"))  # Seconds between scheduler ticks
CRON_BATCH_SIZE = int(os.getenv("CRON_BATCH_SIZE", "24"))  # Entries per run
CRON_STUCK_AFTER = int(os.getenv("CRON_STUCK_AFTER", "1800"))  # Running longer than this is reported as stuck

# Ledger
LEDGER_TIMEOUT = float(os.getenv("LEDGER_TIMEOUT", "10"))
RESERVE_PERCENTAGE = Decimal(os.getenv("RESERVE_PERCENTAGE", "0"))  # Percent of each credit held in reserve

# Placement
ALLOW_SPONSOR_LOOKUP = os.getenv("ALLOW_SPONSOR_LOOKUP", "1") == "1"
SPONSOR_LOOKUP_DEPTH = int(os.getenv("SPONSOR_LOOKUP_DEPTH", "5"))
ORPHAN_PLACEMENT = os.getenv("ORPHAN_PLACEMENT", "global")  # global, reject
ROOT_POLICY = os.getenv("ROOT_POLICY", "open")  # open, single
PLACEMENT_SEARCH_DEPTH = int(os.getenv("PLACEMENT_SEARCH_DEPTH", "0"))  # Levels searched below the start nodes, 0 = unlimited

# Cycling
SYSTEM_USERNAME = os.getenv("SYSTEM_USERNAME", "")  # Account whose positions never recycle, empty = none
CROSS_ENTRY_SPACING = int(os.getenv("CROSS_ENTRY_SPACING", "0"))  # Seconds between a member's entries into one level

# Commissions
MAX_CASCADE_DEPTH = int(os.getenv("MAX_CASCADE_DEPTH", "10"))
PAY_REENTRY_REFERRAL = os.getenv("PAY_REENTRY_REFERRAL", "1") == "1"  # Re-entry positions pay the referral cascade
MATCHING_REQUIRES_POSITION = os.getenv("MATCHING_REQUIRES_POSITION", "0") == "1"  # Matching only to sponsors holding an active position in the level

# Levels written on first start when the registry is empty
MATRIX_LEVELS = {
    1: {
        "name": "Starter",
        "price": Decimal("100"),
        "width": 2,
        "depth": 2,
        "referralBonusPct": Decimal("10"),
        "matrixBonusPct": Decimal("30"),
        "matchingBonusPct": Decimal("0"),
        "referralDepthPcts": ["10", "5"],
        "reentryEnabled": True,
        "reentryCount": 1,
        "crossEntries": [{"level": 2, "count": 1}],
    },
    2: {
        "name": "Pro",
        "price": Decimal("500"),
        "width": 3,
        "depth": 2,
        "referralBonusPct": Decimal("10"),
        "matrixBonusPct": Decimal("40"),
        "matchingBonusPct": Decimal("5"),
        "referralDepthPcts": ["10", "4", "2"],
        "reentryEnabled": True,
        "reentryCount": 1,
    },
}
