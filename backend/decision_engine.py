from typing import Any, Dict, Optional

STRATEGY_TYPES = ("REVENUE", "DEMAND", "MESSAGE")
DEFAULT_STRATEGY = "DEMAND"

RECOMMENDATIONS = {
    "CRITICAL": "Performance em queda relevante. Revisar criativos, segmentação e estrutura imediatamente.",
    "ATTENTION": "Oscilação detectada. Monitorar métricas e testar variações estratégicas.",
    "STABLE": "Performance estável. Manter estratégia e acompanhar tendências.",
    "GROWING": "Performance positiva. Avaliar aumento gradual de orçamento.",
}

PRIORITIES = {
    "CRITICAL": 1,
    "ATTENTION": 2,
    "STABLE": 3,
    "GROWING": 4,
}


def normalize_strategy_type(value: Optional[str]) -> str:
    candidate = str(value or "").strip().upper()
    return candidate if candidate in STRATEGY_TYPES else DEFAULT_STRATEGY


def variation(current: float, previous: float) -> float:
    if previous == 0:
        return 0.0 if current == 0 else 100.0
    return ((current - previous) / previous) * 100


def _num(snapshot: Dict[str, Any], key: str) -> float:
    try:
        return float(snapshot.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def calculate_client_health(strategy: str, current: Dict[str, Any], previous: Dict[str, Any]) -> Dict[str, Any]:
    """
    Score 0-100 e status de saúde do cliente conforme a estratégia.

    REVENUE olha a variação de ROAS; DEMAND e MESSAGE combinam eficiência (CPA)
    e crescimento (conversões), com limites diferentes para cada uma.
    """
    roas_var = variation(_num(current, "roas"), _num(previous, "roas"))
    cpa_var = variation(_num(current, "cpa"), _num(previous, "cpa"))
    conv_var = variation(_num(current, "conversions"), _num(previous, "conversions"))

    if strategy == "REVENUE":
        change = roas_var
        score = 50 + roas_var * 0.8
        if roas_var < -20:
            status = "CRITICAL"
            score -= 10
        elif roas_var < -10:
            status = "ATTENTION"
        elif roas_var > 10:
            status = "GROWING"
        else:
            status = "STABLE"
    elif strategy == "DEMAND":
        change = conv_var
        score = 50 - cpa_var * 0.5 + conv_var * 0.3
        if cpa_var > 25:
            status = "CRITICAL"
        elif cpa_var > 15:
            status = "ATTENTION"
        elif conv_var > 15:
            status = "GROWING"
        else:
            status = "STABLE"
    elif strategy == "MESSAGE":
        change = conv_var
        score = 50 - cpa_var * 0.5 + conv_var * 0.3
        if cpa_var > 30:
            status = "CRITICAL"
            score -= 8
        elif conv_var < -25:
            status = "ATTENTION"
            score -= 5
        elif conv_var > 15:
            status = "GROWING"
        else:
            status = "STABLE"
    else:
        raise ValueError(f"Unsupported strategy type: {strategy}")

    score = max(0.0, min(100.0, score))
    return {
        "status": status,
        "score": round(score, 2),
        "variation": round(change, 2),
        "recommendation": RECOMMENDATIONS[status],
        "priority": PRIORITIES[status],
    }
