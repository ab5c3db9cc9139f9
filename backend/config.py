import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

COORDINATOR_KEY  = os.environ.get("COORDINATOR_KEY", "admin321")
FINANCE_KEY      = os.environ.get("FINANCE_KEY",     "finance123")
SCANNER_KEY      = os.environ.get("SCANNER_KEY",     "scanner123")
_raw_origins     = os.environ.get("CORS_ORIGINS", "*")
CORS_ORIGINS     = [o.strip() for o in _raw_origins.split(",")] if _raw_origins != "*" else ["*"]

# ── Server (python main.py) ──────────────────────────────────────────────────
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

# ── SMTP (attendance confirmations) ──────────────────────────────────────────
# Leave SMTP_USER / SMTP_PASS blank to disable notifications (scanning still works).
SMTP_HOST = os.environ.get("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASS = os.environ.get("SMTP_PASS", "")
SMTP_FROM = os.environ.get("SMTP_FROM", "")   # defaults to SMTP_USER if blank

# ── Scanner timing ────────────────────────────────────────────────────────────
SCAN_COOLDOWN_SECONDS = float(os.environ.get("SCAN_COOLDOWN_SECONDS", "20"))
SCAN_RESUME_SECONDS   = float(os.environ.get("SCAN_RESUME_SECONDS", "2"))

# ── Payments ──────────────────────────────────────────────────────────────────
AMOUNT_EPSILON          = Decimal("0.01")
PAYMENT_QR_AMOUNT_LIMIT = Decimal(os.environ.get("PAYMENT_QR_AMOUNT_LIMIT", "2000"))
PAYMENT_URI_SCHEME      = os.environ.get("PAYMENT_URI_SCHEME", "upi")

# Used when no override exists in the settings table.
SETTING_DEFAULTS = {
    "festival_name": "College Fest",
    "payee_id":      "festival@bank",
    "payee_name":    "Festival Committee",
    "currency":      "INR",
}
