"""
Derived analytics over Search Console rows.

Rows are the dicts returned by searchanalytics.query:
    {"keys": [...], "clicks": 10, "impressions": 200, "ctr": 0.05, "position": 4.2}
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

PLACEHOLDER = "N/A"
KEY_SEPARATOR = "|"


@dataclass(frozen=True)
class QuickWinThresholds:
    min_impressions: float = 100
    max_ctr: float = 3.0  # percent
    position_min: float = 4
    position_max: float = 20
    limit: int = 50


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round_fixed(value: float, places: int) -> float:
    """Round to `places` decimals with ties away from zero, like JavaScript's toFixed."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def _metric(row: Optional[Dict[str, Any]], name: str) -> float:
    if not row:
        return 0
    return row.get(name) or 0


def target_ctr_for_position(position: float) -> int:
    if position <= 5:
        return 8
    if position <= 10:
        return 5
    return 3


def opportunity_tier(additional_clicks: int) -> str:
    if additional_clicks >= 100:
        return "High"
    if additional_clicks >= 30:
        return "Medium"
    return "Low"


def detect_quick_wins(rows: Iterable[Dict[str, Any]], thresholds: QuickWinThresholds) -> List[Dict[str, Any]]:
    """
    Rank query/page rows with high impressions and low CTR in striking distance.

    Rows are expected to carry keys [query, page]. Results are sorted by
    additional clicks (descending, stable) and truncated to `thresholds.limit`.
    """
    quick_wins = []
    for row in rows:
        impressions = _metric(row, "impressions")
        clicks = _metric(row, "clicks")
        ctr = _metric(row, "ctr") * 100
        position = _metric(row, "position")

        if impressions < thresholds.min_impressions or ctr > thresholds.max_ctr:
            continue
        if not thresholds.position_min <= position <= thresholds.position_max:
            continue

        target_ctr = target_ctr_for_position(position)
        potential_clicks = _round_half_up(impressions * target_ctr / 100)
        additional_clicks = max(0, potential_clicks - clicks)
        keys = row.get("keys") or []

        quick_wins.append({
            "query": (keys[0] if len(keys) > 0 else None) or PLACEHOLDER,
            "page": (keys[1] if len(keys) > 1 else None) or PLACEHOLDER,
            "currentPosition": _round_fixed(position, 1),
            "impressions": impressions,
            "currentClicks": clicks,
            "currentCtr": _round_fixed(ctr, 2),
            "potentialClicks": potential_clicks,
            "additionalClicks": additional_clicks,
            "opportunity": opportunity_tier(additional_clicks),
            "optimizationNote": f"Position {_round_fixed(position, 1):.1f} -> Target top 3 for {target_ctr}% CTR",
        })

    quick_wins.sort(key=lambda qw: qw["additionalClicks"], reverse=True)
    return quick_wins[:max(0, int(thresholds.limit))]


def summarize_quick_wins(quick_wins: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "totalQuickWins": len(quick_wins),
        "highOpportunities": sum(1 for qw in quick_wins if qw["opportunity"] == "High"),
        "potentialAdditionalClicks": sum(qw["additionalClicks"] for qw in quick_wins),
    }


def percent_change(current: float, previous: float) -> Optional[float]:
    if previous > 0:
        return _round_fixed((current - previous) / previous * 100, 1)
    return None


def _join_key(row: Dict[str, Any]) -> str:
    return KEY_SEPARATOR.join(str(k) for k in (row.get("keys") or []))


def _period_metrics(row: Optional[Dict[str, Any]]) -> Dict[str, float]:
    return {
        "clicks": _metric(row, "clicks"),
        "impressions": _metric(row, "impressions"),
        "position": _round_fixed(_metric(row, "position"), 1),
        "ctr": _round_fixed(_metric(row, "ctr") * 100, 2),
    }


def _totals(rows: List[Dict[str, Any]]) -> Dict[str, float]:
    return {
        "clicks": sum(_metric(row, "clicks") for row in rows),
        "impressions": sum(_metric(row, "impressions") for row in rows),
    }


def compare_periods(current_rows: Iterable[Dict[str, Any]], previous_rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Join current-period rows to previous-period rows by dimension keys.

    Every current row appears once; unmatched rows compare against zeros.
    Rows are ordered by click delta, largest gain first. The summary totals
    cover every row of each period, matched or not.
    """
    current_rows = list(current_rows)
    previous_rows = list(previous_rows)
    previous_lookup = {_join_key(row): row for row in previous_rows}

    comparison = []
    for row in current_rows:
        previous = previous_lookup.get(_join_key(row))

        current_clicks = _metric(row, "clicks")
        previous_clicks = _metric(previous, "clicks")
        current_position = _metric(row, "position")
        previous_position = _metric(previous, "position")
        current_ctr = _metric(row, "ctr") * 100
        previous_ctr = _metric(previous, "ctr") * 100

        comparison.append({
            "keys": row.get("keys") or [],
            "current": _period_metrics(row),
            "previous": _period_metrics(previous),
            "change": {
                "clicks": current_clicks - previous_clicks,
                "clicksPercent": percent_change(current_clicks, previous_clicks),
                "impressions": _metric(row, "impressions") - _metric(previous, "impressions"),
                # Positive means the ranking moved toward position 1
                "position": _round_fixed(previous_position - current_position, 1),
                "ctr": _round_fixed(current_ctr - previous_ctr, 2),
            },
        })

    comparison.sort(key=lambda r: r["change"]["clicks"], reverse=True)

    current_totals = _totals(current_rows)
    previous_totals = _totals(previous_rows)
    return {
        "comparison": comparison,
        "summary": {
            "currentPeriod": current_totals,
            "previousPeriod": previous_totals,
            "change": {
                "clicks": current_totals["clicks"] - previous_totals["clicks"],
                "clicksPercent": percent_change(current_totals["clicks"], previous_totals["clicks"]),
                "impressions": current_totals["impressions"] - previous_totals["impressions"],
            },
        },
    }
