"""GST identifier validation: GSTIN, HSN/SAC codes, state codes and rate slabs."""
import re
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional


GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$")

# Goods: 4, 6 or 8 digit HSN. Services: 6 digit SAC (starting 99).
HSN_PATTERN = re.compile(r"^[0-9]{4}(?:[0-9]{2})?(?:[0-9]{2})?$")
SAC_PATTERN = re.compile(r"^[0-9]{6}$")

GST_RATE_SLABS = (Decimal("0"), Decimal("5"), Decimal("12"), Decimal("18"), Decimal("28"))

# GST State Code mapping
GST_STATE_CODES = {
    "01": "Jammu & Kashmir", "02": "Himachal Pradesh", "03": "Punjab",
    "04": "Chandigarh", "05": "Uttarakhand", "06": "Haryana",
    "07": "Delhi", "08": "Rajasthan", "09": "Uttar Pradesh",
    "10": "Bihar", "11": "Sikkim", "12": "Arunachal Pradesh",
    "13": "Nagaland", "14": "Manipur", "15": "Mizoram",
    "16": "Tripura", "17": "Meghalaya", "18": "Assam",
    "19": "West Bengal", "20": "Jharkhand", "21": "Odisha",
    "22": "Chhattisgarh", "23": "Madhya Pradesh", "24": "Gujarat",
    "26": "Dadra & Nagar Haveli and Daman & Diu", "27": "Maharashtra",
    "28": "Andhra Pradesh (Old)", "29": "Karnataka", "30": "Goa",
    "31": "Lakshadweep", "32": "Kerala", "33": "Tamil Nadu",
    "34": "Puducherry", "35": "Andaman & Nicobar Islands",
    "36": "Telangana", "37": "Andhra Pradesh",
    "38": "Ladakh", "97": "Other Territory"
}


def normalize_gstin(gstin: Optional[str]) -> Optional[str]:
    if gstin is None:
        return None
    gstin = gstin.strip().upper()
    return gstin or None


def is_valid_gstin(gstin: Optional[str]) -> bool:
    """Check the 15 character GSTIN format: state code, PAN, entity, Z, checksum."""
    if not gstin:
        return False
    return bool(GSTIN_PATTERN.match(gstin))


def state_code_from_gstin(gstin: Optional[str]) -> Optional[str]:
    """First two digits of a GSTIN are the registering state's code."""
    if not is_valid_gstin(gstin):
        return None
    return gstin[:2]


def is_valid_state_code(state_code: Optional[str]) -> bool:
    return bool(state_code) and state_code in GST_STATE_CODES


def state_name(state_code: Optional[str]) -> str:
    return GST_STATE_CODES.get(state_code or "", "")


def is_valid_hsn_sac(code: Optional[str], is_service: bool) -> bool:
    code = (code or "").strip()
    if not code:
        return False
    if is_service:
        return bool(SAC_PATTERN.match(code))
    return bool(HSN_PATTERN.match(code))


def parse_gst_rate(value) -> Optional[Decimal]:
    """Return the rate as a Decimal if it is one of the GST slabs, else None."""
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not rate.is_finite():
        return None
    for slab in GST_RATE_SLABS:
        if rate == slab:
            return slab
    return None


def validate_gstin(gstin: Optional[str], field: str = "gstin") -> List[Dict[str, str]]:
    """Errors for a GSTIN, including a state code prefix that is not a GST state."""
    if not gstin:
        return [{"field": field, "message": "GSTIN is required"}]
    if not is_valid_gstin(gstin):
        return [{"field": field, "message": f"Invalid GSTIN format: {gstin}"}]
    if gstin[:2] not in GST_STATE_CODES:
        return [{"field": field, "message": f"GSTIN state code {gstin[:2]} is not a valid GST state"}]
    return []
