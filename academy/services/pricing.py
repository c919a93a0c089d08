"""Catalog prices that do not live in the database. Amounts are in cents."""

from decimal import Decimal, ROUND_HALF_UP

MEMBERSHIPS = {
    "BASIC": {
        "name": "Basic Membership",
        "price": 19900,
        "features": [
            "Access to all basic courses",
            "Monthly live Q&A sessions",
            "Community forum access",
            "Email support",
        ],
    },
    "PROFESSIONAL": {
        "name": "Professional Membership",
        "price": 34900,
        "features": [
            "All Basic features",
            "Access to advanced courses",
            "Weekly live workshops",
            "Priority support",
        ],
    },
    "PREMIUM": {
        "name": "Premium Membership",
        "price": 69900,
        "features": [
            "All Professional features",
            "Unlimited course access",
            "Daily live sessions",
            "Weekly 1-on-1 consultations",
        ],
    },
}

PROGRAMS = {
    "SO_WHAT_MINDSET": {
        "name": "So What Mindset Program",
        "price": 49900,
        "duration_days": 90,
        "features": [
            "8-week intensive program",
            "Weekly coaching calls",
            "Certificate of completion",
        ],
    },
    "LEAP_AND_LAUNCH": {
        "name": "Leap & Launch Program",
        "price": 29900,
        "duration_days": 60,
        "features": [
            "6-week action program",
            "Goal setting framework",
            "Certificate of completion",
        ],
    },
}

# Extensions are sold by the day
EXTENSION_PRICE_PER_DAY = 100
EXTENSION_MIN_DAYS = 7
EXTENSION_MAX_DAYS = 365

INSTALLMENT_OPTIONS = (2, 3)

# Applied to one-off purchases; programs fall back to a year
DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_PROGRAM_DURATION_DAYS = 365

TEXAS_TAX_RATE = Decimal("0.0825")
TAXABLE_STATES = {"tx", "texas"}


def calculate_sales_tax(amount: int, state: str = None) -> int:
    """Tax owed on top of ``amount``; zero outside Texas."""
    if not state or state.strip().lower() not in TAXABLE_STATES:
        return 0
    tax = (Decimal(amount) * TEXAS_TAX_RATE).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(tax)


def installment_amount(total: int, installments: int) -> int:
    # Ceiling division; the plan may collect up to installments - 1 cents extra
    return -(-total // installments)
