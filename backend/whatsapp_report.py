from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional

from metrics import format_decimal_br, round_half_up, to_float

SEPARATOR = "━━━━━━━━━━━━━━━━━━"
HEADER = "📊 *Adscape • Resumo de Performance*"
FOOTER = "_Relatório automático • Adscape_"

# send_time é gravado em horário de Brasília (UTC-3)
BRT_OFFSET_HOURS = 3
BRT = timezone(timedelta(hours=-BRT_OFFSET_HOURS))

DEFAULT_REPORT_METRICS: Dict[str, bool] = {
    "investment": True,
    "revenue": True,
    "roas": True,
    "cpa": True,
    "cpc": False,
    "cpm": False,
    "clicks": True,
    "impressions": True,
    "ctr": True,
    "conversions": True,
    "leads": False,
    "messages": False,
}


def format_currency(value: float) -> str:
    return f"R$ {to_float(value):.2f}".replace(".", ",")


def format_number(value: float) -> str:
    return format_decimal_br(to_float(value))


def format_pct(value: float) -> str:
    sign = "+" if value > 0 else ""
    return f"{sign}{int(round_half_up(value))}%"


def pct_change(current: float, previous: float) -> Optional[float]:
    if previous == 0:
        return None if current > 0 else 0.0
    return ((current - previous) / previous) * 100


class MetricDef(NamedTuple):
    key: str
    data_key: str
    emoji: str
    label: str
    fmt: Callable[[float], str]


PRIMARY_METRICS: List[MetricDef] = [
    MetricDef("investment", "spend", "💰", "Investimento", format_currency),
    MetricDef("revenue", "revenue", "💵", "Receita", format_currency),
    MetricDef("roas", "roas", "📈", "ROAS", lambda v: f"{v:.2f}x"),
    MetricDef("conversions", "conversions", "🎯", "Conversões", format_number),
    MetricDef("leads", "leads", "📋", "Leads", format_number),
    MetricDef("messages", "messages", "💬", "Mensagens", format_number),
]

SECONDARY_METRICS: List[MetricDef] = [
    MetricDef("clicks", "clicks", "🖱", "Cliques", format_number),
    MetricDef("impressions", "impressions", "👁", "Impressões", format_number),
    MetricDef("ctr", "ctr", "📊", "CTR", lambda v: f"{v:.2f}%"),
    MetricDef("cpa", "cpa", "💸", "CPA", format_currency),
    MetricDef("cpc", "cpc", "🔗", "CPC", format_currency),
    MetricDef("cpm", "cpm", "📢", "CPM", format_currency),
]

ALL_METRICS = PRIMARY_METRICS + SECONDARY_METRICS


def _fmt_date(value: str) -> str:
    year, month, day = value.split("-")
    return f"{day}/{month}/{year}"


def _metric_lines(defs: List[MetricDef], data: Mapping[str, Any], selected: Mapping[str, Any]) -> List[str]:
    return [
        f"{d.emoji} {d.label}: *{d.fmt(to_float(data.get(d.data_key)))}*"
        for d in defs
        if selected.get(d.key)
    ]


def build_report(
    data: Mapping[str, Any],
    selected: Mapping[str, Any],
    include_comparison: bool,
    previous: Optional[Mapping[str, Any]],
    client_name: str,
    start: str,
    end: str,
) -> str:
    lines: List[str] = [HEADER, "", f"Conta: *{client_name}*"]
    if start == end:
        lines.append(f"Período: {_fmt_date(start)}")
    else:
        lines.append(f"Período: {_fmt_date(start)} — {_fmt_date(end)}")

    if selected.get("roas") and data.get("roas") is not None:
        roas = to_float(data.get("roas"))
        lines.append("")
        if roas >= 2:
            lines.append("🟢 Resultado positivo no período")
        elif roas < 1:
            lines.append("🔴 Retorno abaixo do investimento")

    primary = _metric_lines(PRIMARY_METRICS, data, selected)
    if primary:
        lines.extend(["", SEPARATOR, ""])
        lines.extend(primary)

    secondary = _metric_lines(SECONDARY_METRICS, data, selected)
    if secondary:
        lines.extend(["", SEPARATOR, "", "_Outros indicadores:_"])
        lines.extend(secondary)

    if include_comparison and previous is not None:
        lines.append("")
        has_base = any(
            selected.get(d.key) and to_float(previous.get(d.data_key)) > 0
            for d in ALL_METRICS
        )
        if not has_base:
            lines.append("_Comparativo indisponível (sem base anterior)_")
        else:
            lines.append("_Comparado ao período anterior:_")
            for d in ALL_METRICS:
                if not selected.get(d.key):
                    continue
                change = pct_change(to_float(data.get(d.data_key)), to_float(previous.get(d.data_key)))
                if change is None:
                    continue
                lines.append(f"• {d.label}: {format_pct(change)}")

    lines.extend(["", FOOTER])
    return "\n".join(lines)


def merge_metrics(stored: Optional[Mapping[str, Any]]) -> Dict[str, bool]:
    merged = dict(DEFAULT_REPORT_METRICS)
    for key, value in (stored or {}).items():
        if key in merged:
            merged[key] = bool(value)
    return merged


def _now(now_utc: Optional[datetime]) -> datetime:
    now = now_utc or datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def is_time_match(send_time: Optional[str], now_utc: Optional[datetime] = None, tolerance: int = 5) -> bool:
    if not send_time:
        return False
    try:
        hours, minutes = (int(part) for part in send_time.split(":")[:2])
    except ValueError:
        return False
    now = _now(now_utc)
    now_minutes = now.hour * 60 + now.minute
    target = ((hours + BRT_OFFSET_HOURS) * 60 + minutes) % 1440
    diff = abs(now_minutes - target)
    return diff <= tolerance or (1440 - diff) <= tolerance


def brt_day_start(now_utc: Optional[datetime] = None) -> datetime:
    """Meia-noite do dia corrente em Brasília, em UTC."""
    local = _now(now_utc).astimezone(BRT)
    return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def is_weekday_match(weekday: Optional[int], now_utc: Optional[datetime] = None) -> bool:
    """weekday segue a convenção 0 = domingo, no calendário de Brasília."""
    if weekday is None:
        return False
    return (_now(now_utc).astimezone(BRT).weekday() + 1) % 7 == int(weekday)
