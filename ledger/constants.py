"""Money and identifier helpers shared across the ledger.

- Amounts are Decimal; rounding is applied explicitly at each computation
  boundary rather than globally.
- to_money quantizes to cents, to_rate to three places (withdrawal fee).
- Order codes look like "#ORD-7K2Q9A"; stock codes like "COD48213".
"""

import calendar
import random
import re
import string
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")
RATE_QUANT = Decimal("0.001")
ZERO = Decimal("0.00")

ORDER_CODE_PREFIX = "#ORD-"
ORDER_CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits

DAYS_PER_UNIT = {
    "day": 1, "days": 1, "dia": 1, "dias": 1, "día": 1, "días": 1,
    "week": 7, "weeks": 7, "semana": 7, "semanas": 7,
    "month": 30, "months": 30, "mes": 30, "meses": 30,
    "year": 365, "years": 365, "año": 365, "años": 365,
}
_DURATION_RE = re.compile(r"(\d+)\s*([^\d\s]*)", re.UNICODE)


def to_money(value) -> Decimal:
    """
    Quantize any numeric (or numeric string) to a 2-decimal amount
    """
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_rate(value) -> Decimal:
    return Decimal(str(value)).quantize(RATE_QUANT, rounding=ROUND_HALF_UP)


def random_code(length: int = ORDER_CODE_LENGTH) -> str:
    return "".join(random.choice(CODE_ALPHABET) for _ in range(length))


def new_order_code() -> str:
    return f"{ORDER_CODE_PREFIX}{random_code()}"


def order_code_from_id(transaction_id) -> str:
    """
    Deterministic order code for legacy rows that were stored without one.

    The last six characters of the id are used; an empty id gets a random code.
    """
    base = str(transaction_id if transaction_id is not None else "").strip()
    if not base:
        return new_order_code()
    return f"{ORDER_CODE_PREFIX}{base[-ORDER_CODE_LENGTH:].upper()}"


def new_stock_code() -> str:
    return f"COD{random.randint(10000, 99999)}"


def new_referral_code() -> str:
    letters = "".join(random.choice(string.ascii_uppercase) for _ in range(3))
    digits = "".join(random.choice(string.digits) for _ in range(3))
    return letters + digits


def parse_duration_days(label, default: int = 30) -> int:
    """
    Extract the subscription length in days from a label like "30 days",
    "1 month" or "90 Días". Unknown units count as days. Never below 1.
    """
    if not label:
        return max(1, default)
    match = _DURATION_RE.search(str(label))
    if not match:
        return max(1, default)
    number = int(match.group(1))
    unit = match.group(2).lower().strip(".,")
    return max(1, number * DAYS_PER_UNIT.get(unit, 1))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month addition, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)
