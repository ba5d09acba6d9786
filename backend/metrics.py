from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Optional, Tuple

SUMMED_FIELDS = ("spend", "revenue", "clicks", "impressions", "conversions", "leads", "messages")

COST_METRICS = ("cpa", "cpc", "cpm")

METRIC_FORMATS = {
    "spend": "currency",
    "revenue": "currency",
    "cpa": "currency",
    "cpc": "currency",
    "cpm": "currency",
    "roas": "multiplier",
    "ctr": "percentage",
    "clicks": "number",
    "impressions": "number",
    "conversions": "number",
    "leads": "number",
    "messages": "number",
}


def to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _ratio(numerator: float, denominator: float, factor: float = 1.0) -> float:
    return (numerator / denominator) * factor if denominator else 0.0


def safe_ratios(spend: float, impressions: float, clicks: float, conversions: float, revenue: float) -> Dict[str, float]:
    return {
        "ctr": _ratio(clicks, impressions, 100),
        "cpc": _ratio(spend, clicks),
        "cpm": _ratio(spend, impressions, 1000),
        "cpa": _ratio(spend, conversions),
        "roas": _ratio(revenue, spend),
    }


def aggregate_daily_rows(rows: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """
    Soma as linhas de daily_metrics e deriva ctr/cpc/cpm/cpa/roas.
    """
    totals = {field: 0.0 for field in SUMMED_FIELDS}
    for row in rows or []:
        for field in SUMMED_FIELDS:
            totals[field] += to_float(row.get(field))
    totals.update(
        safe_ratios(
            totals["spend"],
            totals["impressions"],
            totals["clicks"],
            totals["conversions"],
            totals["revenue"],
        )
    )
    return totals


def consolidate(
    google: Optional[Dict[str, Any]],
    meta: Optional[Dict[str, Any]],
    ga4: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    google = google or {}
    meta = meta or {}
    ga4 = ga4 or {}

    investment = to_float(google.get("investment")) + to_float(meta.get("investment"))
    clicks = to_float(google.get("clicks")) + to_float(meta.get("clicks"))
    impressions = to_float(google.get("impressions")) + to_float(meta.get("impressions"))
    leads = to_float(google.get("conversions")) + to_float(meta.get("leads"))

    campaigns = [dict(item, source="Google Ads") for item in google.get("campaigns") or []]
    campaigns += [dict(item, source="Meta Ads") for item in meta.get("campaigns") or []]

    return {
        "investment": investment,
        # receita depende de input manual / integração de e-commerce
        "revenue": 0,
        "roas": 0,
        "leads": leads,
        "cpa": _ratio(investment, leads),
        "ctr": _ratio(clicks, impressions, 100),
        "cpc": _ratio(investment, clicks),
        "conversion_rate": to_float(ga4.get("conversion_rate")),
        "sessions": int(to_float(ga4.get("sessions"))),
        "events": int(to_float(ga4.get("events"))),
        "all_campaigns": campaigns,
    }


def _group_thousands(digits: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return ".".join(groups)


def format_decimal_br(value: float, min_decimals: int = 0, max_decimals: int = 3) -> str:
    """Formatação pt-BR: milhar com '.' e decimais com ','."""
    quantum = Decimal(1).scaleb(-max_decimals)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_EVEN)
    sign = "-" if rounded < 0 else ""
    text = f"{abs(rounded):.{max_decimals}f}"
    integer, _, fraction = text.partition(".")
    fraction = fraction.rstrip("0")
    if len(fraction) < min_decimals:
        fraction = fraction.ljust(min_decimals, "0")
    result = _group_thousands(integer)
    if fraction:
        result = f"{result},{fraction}"
    if sign and result.strip("0.,") == "":
        sign = ""
    return f"{sign}{result}"


def format_currency_brl(value: float) -> str:
    return f"R$ {format_decimal_br(value, 2, 2)}"


def format_metric_value(value: float, fmt: str = "number") -> str:
    value = to_float(value)
    if fmt == "currency":
        return format_currency_brl(value)
    if fmt == "percentage":
        return f"{value:.2f}%"
    if fmt == "multiplier":
        return f"{value:.2f}x"
    return format_decimal_br(value)


def _sentiment(metric_type: str, direction: str) -> str:
    if direction == "neutral":
        return "neutral"
    if metric_type == "cost":
        return "negative" if direction == "up" else "positive"
    if metric_type in ("revenue", "volume", "efficiency"):
        return "positive" if direction == "up" else "negative"
    return "neutral"


def calculate_trend(
    current: float,
    previous: Optional[float],
    metric_type: str = "revenue",
    fmt: str = "number",
    thresholds: Tuple[float, float] = (5, 15),
) -> Dict[str, Any]:
    low, medium = thresholds
    formatted_value = format_metric_value(current, fmt)
    formatted_previous = format_metric_value(previous, fmt) if previous is not None else None

    if previous is None or previous == 0:
        return {
            "percentage_change": 0,
            "direction": "neutral",
            "absolute_difference": 0,
            "severity": "low",
            "sentiment": "neutral",
            "formatted_value": formatted_value,
            "formatted_previous": formatted_previous,
        }

    difference = current - previous
    pct = (difference / previous) * 100
    direction = "up" if difference > 0 else "down" if difference < 0 else "neutral"

    severity = "low"
    if abs(pct) > medium:
        severity = "high"
    elif abs(pct) > low:
        severity = "medium"

    return {
        "percentage_change": pct,
        "direction": direction,
        "absolute_difference": abs(difference),
        "severity": severity,
        "sentiment": _sentiment(metric_type, direction),
        "formatted_value": formatted_value,
        "formatted_previous": formatted_previous,
    }


def round_half_up(value: float, places: int = 0) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
