"""GST Tax Engine.

Pure computation, no I/O:
- Intra-state supply (seller and buyer in the same state): CGST + SGST, half the rate each
- Inter-state supply: IGST at the full rate
- Every amount is rounded half-up to paise per line, CGST and SGST independently
- Document totals are sums of the rounded line values and are never re-derived
  from the header subtotal, so they may differ from subtotal * rate / 100 by a few paise

Example (18%, taxable 10,000):
    Intra: CGST 900.00 + SGST 900.00
    Inter: IGST 1,800.00
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, List, Optional

from app.core.exceptions import ValidationError
from app.services.gst_validation import is_valid_hsn_sac, parse_gst_rate, GST_RATE_SLABS


PAISE = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(PAISE, rounding=ROUND_HALF_UP)


class SupplyType(str, Enum):
    INTRA = "INTRA"  # CGST + SGST
    INTER = "INTER"  # IGST


@dataclass(frozen=True)
class TaxSplit:
    cgst: Decimal
    sgst: Decimal
    igst: Decimal

    @property
    def total(self) -> Decimal:
        return self.cgst + self.sgst + self.igst


@dataclass
class LineItemInput:
    """A line to be taxed: quantity, unit price, HSN/SAC and GST slab."""
    description: str
    quantity: Decimal
    unit_price: Decimal
    hsn_sac_code: str
    gst_rate: Decimal
    is_service: bool = False
    unit: str = "pcs"
    category: Optional[str] = None


@dataclass(frozen=True)
class ComputedLine:
    item: LineItemInput
    gst_rate: Decimal
    taxable_value: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    total_tax: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    cgst_total: Decimal
    sgst_total: Decimal
    igst_total: Decimal
    tax_amount: Decimal
    discount: Decimal
    total_with_gst: Decimal


def classify_supply(
    seller_state_code: str,
    buyer_state_code: Optional[str],
    force_inter_state: bool = False,
) -> SupplyType:
    """
    Intra-state when both codes match.

    A buyer without a state code (B2C walk-in) is treated as being in the
    seller's state unless the supply is explicitly flagged inter-state.
    """
    if force_inter_state:
        return SupplyType.INTER
    if not buyer_state_code:
        return SupplyType.INTRA
    if seller_state_code == buyer_state_code:
        return SupplyType.INTRA
    return SupplyType.INTER


def compute_line_tax(taxable_value: Decimal, gst_rate: Decimal, supply_type: SupplyType) -> TaxSplit:
    if supply_type == SupplyType.INTRA:
        half = round_money(taxable_value * gst_rate / Decimal("200"))
        return TaxSplit(cgst=half, sgst=half, igst=ZERO)
    igst = round_money(taxable_value * gst_rate / Decimal("100"))
    return TaxSplit(cgst=ZERO, sgst=ZERO, igst=igst)


def validate_line(item: LineItemInput, field_prefix: str = "") -> List[dict]:
    """Collect every problem with one line; empty list when valid."""
    errors = []

    if not is_valid_hsn_sac(item.hsn_sac_code, item.is_service):
        if item.is_service:
            message = f"SAC code must be exactly 6 digits, got '{item.hsn_sac_code}'"
        else:
            message = f"HSN code must be 4, 6 or 8 digits, got '{item.hsn_sac_code}'"
        errors.append({"field": f"{field_prefix}hsn_sac_code", "message": message})

    if parse_gst_rate(item.gst_rate) is None:
        slabs = ", ".join(str(s) for s in GST_RATE_SLABS)
        errors.append({
            "field": f"{field_prefix}gst_rate",
            "message": f"GST rate must be one of {slabs}, got {item.gst_rate}",
        })

    if item.quantity is None or Decimal(item.quantity) <= 0:
        errors.append({"field": f"{field_prefix}quantity", "message": "Quantity must be greater than zero"})

    if item.unit_price is None or Decimal(item.unit_price) < 0:
        errors.append({"field": f"{field_prefix}unit_price", "message": "Unit price cannot be negative"})

    return errors


def compute_line(item: LineItemInput, supply_type: SupplyType) -> ComputedLine:
    """Validate and tax a single line."""
    errors = validate_line(item)
    if errors:
        raise ValidationError(errors)

    rate = parse_gst_rate(item.gst_rate)
    taxable_value = round_money(Decimal(item.quantity) * Decimal(item.unit_price))
    split = compute_line_tax(taxable_value, rate, supply_type)
    total_tax = split.total

    return ComputedLine(
        item=item,
        gst_rate=rate,
        taxable_value=taxable_value,
        cgst_amount=split.cgst,
        sgst_amount=split.sgst,
        igst_amount=split.igst,
        total_tax=total_tax,
        line_total=taxable_value + total_tax,
    )


def compute_lines(items: Iterable[LineItemInput], supply_type: SupplyType) -> List[ComputedLine]:
    """Validate all lines first, reporting every failure, then compute."""
    items = list(items)
    errors = []
    for index, item in enumerate(items):
        errors.extend(validate_line(item, field_prefix=f"items[{index}]."))
    if errors:
        raise ValidationError(errors)
    return [compute_line(item, supply_type) for item in items]


def summarize(lines: Iterable[ComputedLine], discount: Decimal = ZERO) -> DocumentTotals:
    lines = list(lines)
    subtotal = sum((line.taxable_value for line in lines), ZERO)
    cgst_total = sum((line.cgst_amount for line in lines), ZERO)
    sgst_total = sum((line.sgst_amount for line in lines), ZERO)
    igst_total = sum((line.igst_amount for line in lines), ZERO)
    tax_amount = cgst_total + sgst_total + igst_total
    discount = round_money(discount or ZERO)

    return DocumentTotals(
        subtotal=subtotal,
        cgst_total=cgst_total,
        sgst_total=sgst_total,
        igst_total=igst_total,
        tax_amount=tax_amount,
        discount=discount,
        total_with_gst=subtotal + tax_amount - discount,
    )


def validate_discount(totals: DocumentTotals, field: str = "discount") -> List[dict]:
    """A discount may not be negative or take the document total below zero."""
    if totals.discount < ZERO:
        return [{"field": field, "message": "Discount cannot be negative"}]
    gross = totals.subtotal + totals.tax_amount
    if totals.discount > gross:
        return [{"field": field, "message": f"Discount {totals.discount} exceeds the document total {gross}"}]
    return []


def reverse_calculate(inclusive_amount: Decimal, gst_rate: Decimal) -> dict:
    """Split a tax-inclusive amount into its taxable value and GST."""
    rate = parse_gst_rate(gst_rate)
    if rate is None:
        raise ValidationError.single("gst_rate", f"GST rate must be one of the GST slabs, got {gst_rate}")
    inclusive_amount = Decimal(inclusive_amount)
    taxable_value = round_money(inclusive_amount * Decimal("100") / (Decimal("100") + rate))
    return {
        "taxable_value": taxable_value,
        "gst_amount": round_money(inclusive_amount) - taxable_value,
        "gst_rate": rate,
    }


_UNITS = ["", "One", "Two", "Three", "Four", "Five", "Six", "Seven", "Eight", "Nine"]
_TEENS = ["Ten", "Eleven", "Twelve", "Thirteen", "Fourteen", "Fifteen",
          "Sixteen", "Seventeen", "Eighteen", "Nineteen"]
_TENS = ["", "", "Twenty", "Thirty", "Forty", "Fifty", "Sixty", "Seventy", "Eighty", "Ninety"]


def _words(n: int) -> str:
    """Indian numbering: Thousand, Lakh, Crore."""
    if n < 10:
        return _UNITS[n]
    elif n < 20:
        return _TEENS[n - 10]
    elif n < 100:
        return _TENS[n // 10] + (" " + _UNITS[n % 10] if n % 10 else "")
    elif n < 1000:
        return _UNITS[n // 100] + " Hundred" + (" " + _words(n % 100) if n % 100 else "")
    elif n < 100000:
        return _words(n // 1000) + " Thousand" + (" " + _words(n % 1000) if n % 1000 else "")
    elif n < 10000000:
        return _words(n // 100000) + " Lakh" + (" " + _words(n % 100000) if n % 100000 else "")
    return _words(n // 10000000) + " Crore" + (" " + _words(n % 10000000) if n % 10000000 else "")


def amount_in_words(amount: Decimal) -> str:
    """
    Rupee amount in words for printed documents.

    >>> amount_in_words(Decimal("118000.50"))
    'Rupees One Lakh Eighteen Thousand and Fifty Paise Only'
    """
    amount = round_money(amount)
    rupees = int(amount)
    paise = int((amount - rupees) * 100)

    text = "Rupees " + (_words(rupees) if rupees else "Zero")
    if paise:
        text += " and " + _words(paise) + " Paise"
    return text + " Only"
