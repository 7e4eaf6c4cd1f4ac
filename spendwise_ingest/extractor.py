"""Field extractor: ordered pattern tables turning message text into a candidate expense.

Each field has its own rule table, evaluated top to bottom.  Only the
first occurrence of each rule's pattern is considered; the first rule
whose value passes the field's acceptance check wins.  A field with no
accepted rule falls back independently of the others, so extraction as a
whole never fails.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from dateutil import parser as date_parser

from .models import CandidateExpense

TITLE_PLACEHOLDER = "Gmail Expense"
TITLE_MAX_LENGTH = 100
TITLE_MIN_LENGTH = 4
VENDOR_MAX_LENGTH = 50
AMOUNT_QUANTUM = Decimal("0.01")
MIN_YEAR = 2021

# Missing date components come from here, never from the clock, so a
# year-less date lands in 2000 and is rejected.
_DATE_DEFAULT = datetime(2000, 1, 1)


@dataclass(frozen=True)
class Rule:
    """A named pattern whose first capture group is the field value."""

    name: str
    pattern: re.Pattern[str]

    def first(self, text: str) -> str | None:
        match = self.pattern.search(text)
        return match.group(1) if match else None


def _labeled(label: str, value: str) -> re.Pattern[str]:
    return re.compile(rf"{label}[:\s]*{value}", re.IGNORECASE)


_NUMBER = r"([\d,]+\.?\d*)"
_CURRENCY = r"(?:₹|\$|Rs\.?|INR)?\s*"
_LINE = r"([^\r\n]+)"

AMOUNT_RULES: tuple[Rule, ...] = (
    Rule("amount", _labeled("Amount", _CURRENCY + _NUMBER)),
    Rule("total", _labeled("Total", _CURRENCY + _NUMBER)),
    Rule("price", _labeled("Price", _CURRENCY + _NUMBER)),
    Rule("cost", _labeled("Cost", _CURRENCY + _NUMBER)),
    Rule("paid", _labeled("paid", _CURRENCY + _NUMBER)),
    Rule("charged", _labeled("charged", _CURRENCY + _NUMBER)),
    Rule("bill", _labeled("bill", _CURRENCY + _NUMBER)),
    Rule("rupee_symbol", re.compile(r"₹\s*" + _NUMBER)),
    Rule("inr", re.compile(r"INR[:\s]*" + _NUMBER, re.IGNORECASE)),
    Rule("rs", re.compile(r"Rs\.?\s*" + _NUMBER, re.IGNORECASE)),
    Rule("dollar_symbol", re.compile(r"\$\s*" + _NUMBER)),
)

TITLE_RULES: tuple[Rule, ...] = tuple(
    Rule(label.lower(), _labeled(label, _LINE))
    for label in (
        "Item",
        "Product",
        "Service",
        "Purchase",
        "Transaction",
        "Description",
        "For",
        "Order",
    )
)

VENDOR_RULES: tuple[Rule, ...] = tuple(
    Rule(label.lower(), _labeled(label, _LINE))
    for label in ("Vendor", "Merchant", "Store", "From", "Shop", "Company")
)

DATE_RULES: tuple[Rule, ...] = (
    Rule("date_of_purchase", _labeled("Date of Purchase", _LINE)),
    Rule("transaction_date", _labeled("Transaction Date", _LINE)),
    Rule("purchase_date", _labeled("Purchase Date", _LINE)),
    Rule("date", _labeled("Date", _LINE)),
    Rule("on", _labeled("On", _LINE)),
    Rule("purchased_on", _labeled("Purchased on", _LINE)),
)

_REPLY_PREFIX = re.compile(r"^(?:Re|Fwd|FW):\s*", re.IGNORECASE)
_ANGLE_ADDRESS = re.compile(r"<(.+)>")


# ---------------------------------------------------------------------------
# Per-field extraction
# ---------------------------------------------------------------------------


def parse_amount(raw: str) -> Decimal | None:
    """Parse a matched number, dropping thousands separators.

    Rounded half-up to cents, the precision of a stored amount.
    """
    try:
        return Decimal(raw.replace(",", "")).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def extract_amount(text: str) -> Decimal:
    for rule in AMOUNT_RULES:
        raw = rule.first(text)
        if raw is None:
            continue
        value = parse_amount(raw)
        if value is not None and value > 0:
            return value
    return Decimal(0)


def strip_reply_prefix(subject: str) -> str:
    return _REPLY_PREFIX.sub("", subject.strip())


def extract_title(text: str, subject: str = "") -> str:
    for rule in TITLE_RULES:
        raw = rule.first(text)
        if raw is None:
            continue
        title = raw.strip()[:TITLE_MAX_LENGTH]
        if len(title) >= TITLE_MIN_LENGTH:
            return title
    return strip_reply_prefix(subject) or TITLE_PLACEHOLDER


def vendor_from_sender(sender: str) -> str:
    """Derive a vendor token from a From header: ``Amazon <a@amazon.in>`` → ``amazon``."""
    match = _ANGLE_ADDRESS.search(sender)
    address = (match.group(1) if match else sender).strip()
    if "@" in address:
        domain = address.split("@", 1)[1]
        return domain.split(".", 1)[0]
    return address


def extract_vendor(text: str, sender: str = "") -> str:
    for rule in VENDOR_RULES:
        raw = rule.first(text)
        if raw is None:
            continue
        vendor = raw.strip()[:VENDOR_MAX_LENGTH]
        if vendor:
            return vendor
    return vendor_from_sender(sender)


def parse_date(raw: str) -> datetime | None:
    """Parse a matched date string; ``None`` unless it lands after 2020.

    Naive results are taken to be UTC.
    """
    try:
        parsed = date_parser.parse(raw.strip(), default=_DATE_DEFAULT)
    except (ValueError, OverflowError):
        return None
    if parsed.year < MIN_YEAR:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def extract_date(text: str, now: datetime) -> datetime:
    for rule in DATE_RULES:
        raw = rule.first(text)
        if raw is None:
            continue
        parsed = parse_date(raw)
        if parsed is not None:
            return parsed
    return now


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def extract(
    plain_text: str,
    headers: dict[str, str],
    *,
    now: datetime | None = None,
) -> CandidateExpense:
    """Build a :class:`CandidateExpense` from message text and headers.

    *headers* are keyed by lower-cased name.  *now* is the processing
    instant used when no date is found; passing it makes the result a
    pure function of the inputs.
    """
    if now is None:
        now = datetime.now(UTC)
    return CandidateExpense(
        title=extract_title(plain_text, headers.get("subject", "")),
        amount=extract_amount(plain_text),
        vendor=extract_vendor(plain_text, headers.get("from", "")),
        occurred_at=extract_date(plain_text, now),
    )
