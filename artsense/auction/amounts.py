"""Parsing of bid amounts into exact currency values."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

CURRENCY_PLACES = 2
_QUANTUM = Decimal(1).scaleb(-CURRENCY_PLACES)
# Largest value a NUMERIC(18, 2) column holds.
MAX_AMOUNT = Decimal("9999999999999999.99")

_CURRENCY_SYMBOLS = re.compile(r"[$€£¥₹]")
_CURRENCY_CODE = re.compile(r"^([A-Za-z]{3})(?=[\s\d.])|(?<=[\d.\s])([A-Za-z]{3})$")
_CURRENCY_CODES = frozenset(
    {
        "AUD", "BRL", "CAD", "CHF", "CNY", "DKK", "EUR", "GBP", "HKD", "INR",
        "JPY", "KRW", "MXN", "NOK", "NZD", "SEK", "SGD", "USD", "ZAR",
    }
)
_IGNORED_SEPARATORS = re.compile(r"[\s_']")
_GROUPED = re.compile(r"^\d{1,3}(,\d{3})+(\.\d*)?$")


class InvalidAmountError(ValueError):
    """Raised when a bid amount cannot be read as a positive currency value."""


def _strip_known_code(match: re.Match) -> str:
    code = match.group(1) or match.group(2)
    return "" if code.upper() in _CURRENCY_CODES else match.group(0)


def parse_amount(value: Any) -> Decimal:
    """Normalize a decorated or plain amount into a two-place ``Decimal``.

    Accepts ints, Decimals, floats (via their shortest repr) and strings such
    as ``"$1,250.50"``, ``"USD 300"`` or ``"1 000"``.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmountError("amount is not numeric")
    if isinstance(value, (int, float, Decimal)):
        text = str(value)
    elif isinstance(value, str):
        text = value.strip()
    else:
        raise InvalidAmountError("amount is not numeric")
    text = _CURRENCY_SYMBOLS.sub("", text).strip()
    text = _CURRENCY_CODE.sub(_strip_known_code, text)
    text = _IGNORED_SEPARATORS.sub("", text)
    if "," in text:
        if not _GROUPED.match(text):
            raise InvalidAmountError(f"malformed thousands grouping in {value!r}")
        text = text.replace(",", "")
    if not text:
        raise InvalidAmountError("amount is empty")
    try:
        amount = Decimal(text)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmountError(f"amount {value!r} is not numeric") from exc
    if not amount.is_finite():
        raise InvalidAmountError("amount must be finite")
    if amount <= 0:
        raise InvalidAmountError("amount must be positive")
    if amount > MAX_AMOUNT:
        raise InvalidAmountError(f"amount exceeds the maximum of {MAX_AMOUNT}")
    normalized = amount.quantize(_QUANTUM)
    # Trailing zeros beyond the currency precision are harmless.
    if normalized != amount:
        raise InvalidAmountError(
            f"amount has more than {CURRENCY_PLACES} fractional digits"
        )
    return normalized
