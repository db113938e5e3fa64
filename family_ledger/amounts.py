"""
Amount Codec Module

Converts between integer minor units (cents) and the decimal strings people
type in and read. NEVER uses float for monetary values: amounts are integers
end to end and only become strings at the display boundary.
"""

from enum import Enum
import re

from .errors import InvalidAmount

CURRENCY_MARKER = "€"
DISPLAY_WIDTH = 8
MINOR_UNITS = 100
# Significant digits allowed in the integer part; far above any ledger bound
MAX_WHOLE_DIGITS = 15

# Integer part, then optionally a separator with one or two significant
# fraction digits followed by any number of zeros. The lazy quantifier makes
# "12.30" capture "3" (tenths) instead of "30".
_AMOUNT_PATTERN = re.compile(r'([0-9]+)(?:[,.]([0-9]{1,2}?)0*)?')


class TransactionKind(Enum):
    """Direction of a caller-entered amount"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    
    @property
    def sign(self) -> int:
        return -1 if self is TransactionKind.WITHDRAWAL else 1


def format_amount(amount: int, marker: str = CURRENCY_MARKER, width: int = DISPLAY_WIDTH) -> str:
    """
    Format minor units for tabular display
    
    The sign belongs to the numeral, never to the currency marker:
    format_amount(-1234) == "€   -12,34".
    
    Args:
        amount: Signed amount in minor units
        marker: Currency marker printed in front of the numeral
        width: Width the numeral is right-aligned to
        
    Returns:
        Display string
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer number of minor units, got {amount!r}")
    
    negative = amount < 0
    digits = str(abs(amount))
    if len(digits) < 3:
        # Under one major unit: zero-pad the minor digits, never truncate
        numeral = "0," + digits.rjust(2, "0")
    else:
        numeral = digits[:-2] + "," + digits[-2:]
    if negative:
        numeral = "-" + numeral
    return f"{marker} {numeral.rjust(width)}"


def parse_amount(text: str, marker: str = CURRENCY_MARKER) -> int:
    """
    Parse a user-entered amount into non-negative minor units
    
    Accepts "12", "12,5", "12.50", "12.300" and the output of format_amount
    for non-negative values. A single fraction digit means tenths, and a bare
    single-digit magnitude is read as tenths too ("5" == 50). Signs are never
    accepted; apply them with signed_amount().
    
    Args:
        text: Amount as entered
        marker: Currency marker that may prefix the amount
        
    Returns:
        Magnitude in minor units
        
    Raises:
        InvalidAmount: If the text is not a valid amount
    """
    if not isinstance(text, str):
        raise InvalidAmount(f"Amount must be a string, got {type(text).__name__}")
    
    clean = text.strip()
    if marker and clean.startswith(marker):
        clean = clean[len(marker):].strip()
    
    match = _AMOUNT_PATTERN.fullmatch(clean)
    if not match:
        raise InvalidAmount(f"Invalid amount: {text!r}")
    
    whole, fraction = match.group(1), match.group(2)
    if len(whole.lstrip("0")) > MAX_WHOLE_DIGITS:
        raise InvalidAmount(f"Amount too large: {len(whole)} integer digits")
    
    if fraction is None and len(whole) == 1:
        return int(whole) * 10
    
    minor = 0
    if fraction:
        minor = int(fraction.ljust(2, "0"))
    return int(whole) * MINOR_UNITS + minor


def signed_amount(magnitude: int, kind: TransactionKind) -> int:
    """Apply the sign convention of the transaction kind to a parsed magnitude"""
    if magnitude < 0:
        raise InvalidAmount("Magnitude must not be negative")
    return magnitude * kind.sign


def validate_amount(amount: int, maximum: int) -> int:
    """
    Check that a signed amount can be appended to the ledger
    
    Raises:
        InvalidAmount: If amount is not an int, is zero, or exceeds maximum in magnitude
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer number of minor units, got {amount!r}")
    if amount == 0:
        raise InvalidAmount("Amount must not be zero")
    if abs(amount) > maximum:
        raise InvalidAmount(f"Amount {amount} exceeds the maximum of {maximum}")
    return amount
