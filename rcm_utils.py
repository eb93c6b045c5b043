# rcm_utils.py
"""
Shared RCM vocabulary: claim statuses, timeframes, money/rate helpers,
aging buckets and follow-up hints.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional


class ClaimStatus(str, Enum):
    draft = "draft"
    submitted = "submitted"
    accepted = "accepted"
    rejected = "rejected"
    paid = "paid"
    denied = "denied"
    appealed = "appealed"


# claims still carrying receivable balance
OUTSTANDING_STATUSES = (
    ClaimStatus.submitted.value,
    ClaimStatus.accepted.value,
    ClaimStatus.denied.value,
    ClaimStatus.appealed.value,
)

SUBMITTABLE_STATUSES = {ClaimStatus.draft.value, ClaimStatus.rejected.value}

TIMEFRAMES: Dict[str, str] = {
    "7d": "7 days",
    "30d": "30 days",
    "90d": "90 days",
    "1y": "1 year",
}
DEFAULT_TIMEFRAME = "30d"

AGING_BUCKETS = ("0-30", "31-60", "61-90", "91-120", "120+")
# inclusive day ranges per bucket; None means open-ended
AGING_BUCKET_DAYS: Dict[str, tuple] = {
    "0-30": (0, 30),
    "31-60": (31, 60),
    "61-90": (61, 90),
    "91-120": (91, 120),
    "120+": (121, None),
}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

def timeframe_interval(timeframe: Optional[str]) -> str:
    """Postgres interval literal for a dashboard timeframe; unknown values mean 30 days."""
    return TIMEFRAMES.get(timeframe or DEFAULT_TIMEFRAME, TIMEFRAMES[DEFAULT_TIMEFRAME])

def to_amount(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

def to_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)

def round_half_up(value: Any) -> int:
    """Nearest integer, halves away from zero (123.5 -> 124). None -> 0."""
    if value is None or value == "":
        return 0
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def _percent(numerator: Any, denominator: Any) -> float:
    num = Decimal(str(numerator or 0))
    den = Decimal(str(denominator or 0))
    if den == 0:
        return 0.0
    return float((num / den * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

def collection_rate(collected: Any, billed: Any) -> float:
    return _percent(collected, billed)

def denial_rate(denied: Any, total: Any) -> float:
    return _percent(denied, total)

def aging_bucket(days: Optional[int]) -> str:
    days = days or 0
    if days <= 30:
        return "0-30"
    if days <= 60:
        return "31-60"
    if days <= 90:
        return "61-90"
    if days <= 120:
        return "91-120"
    return "120+"

def collectability_score(days: Optional[int]) -> int:
    return {
        "0-30": 95,
        "31-60": 85,
        "61-90": 70,
        "91-120": 50,
        "120+": 25,
    }[aging_bucket(days)]

def claim_recommendations(claim: Dict[str, Any]) -> List[str]:
    status = claim.get("status")
    days = claim.get("days_in_ar") or 0
    recs: List[str] = []
    if status == ClaimStatus.draft.value:
        recs.append("Complete and submit claim")
    elif status == ClaimStatus.rejected.value:
        recs.append("Correct rejection errors and resubmit")
    elif status == ClaimStatus.denied.value:
        recs.append("Review denial reason and consider appeal")
    elif status in (ClaimStatus.submitted.value, ClaimStatus.accepted.value):
        if days > 30:
            recs.append("Follow up with payer on claim status")
        if days > 90:
            recs.append("Escalate aged claim to collections review")
    elif status == ClaimStatus.appealed.value and days > 60:
        recs.append("Check appeal status with payer")
    return recs
