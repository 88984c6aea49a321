"""Report-level scores derived from clause assessments and gap findings."""

from typing import Dict, Iterable, Mapping, Optional, Tuple

RISK_VALUES: Dict[str, float] = {
    "aggressive": 1.0,
    "cautious": 0.5,
    "standard": 0.0,
    "unknown": 0.25,
}

# Categories whose terms matter more to the overall score
CATEGORY_WEIGHTS: Dict[str, float] = {
    "Non-Compete": 1.5,
    "Exclusivity": 1.5,
    "Uncapped Liability": 1.5,
    "Ip Ownership Assignment": 1.3,
    "Liquidated Damages": 1.3,
    "Governing Law": 0.8,
    "Notice Period To Terminate Renewal": 0.8,
}

GAP_SCORE_WEIGHTS: Dict[str, int] = {
    "missing_critical": 15,
    "missing_important": 8,
    "missing_optional": 3,
    "weak": 5,
}


def weighted_risk(
    assessments: Iterable[Mapping[str, str]],
    category_weights: Optional[Mapping[str, float]] = None,
) -> Tuple[int, str]:
    """Weighted average risk on a 0-100 scale and its level.

    Each assessment needs ``risk_level`` and ``category``.
    """
    weights = CATEGORY_WEIGHTS if category_weights is None else category_weights
    weighted_sum = 0.0
    total_weight = 0.0
    for assessment in assessments:
        weight = weights.get(assessment["category"], 1.0)
        weighted_sum += RISK_VALUES.get(assessment["risk_level"], RISK_VALUES["unknown"]) * weight
        total_weight += weight

    if total_weight == 0:
        return 0, "standard"

    score = round(weighted_sum / total_weight * 100)
    if score >= 60:
        level = "aggressive"
    elif score >= 30:
        level = "cautious"
    else:
        level = "standard"
    return score, level


def gap_score(gaps: Iterable[Mapping[str, str]]) -> int:
    """Composite 0-100 severity of missing and weak clauses."""
    score = 0
    for gap in gaps:
        if gap["status"] == "weak":
            score += GAP_SCORE_WEIGHTS["weak"]
        else:
            score += GAP_SCORE_WEIGHTS[f"missing_{gap['importance']}"]
    return min(100, score)


def risk_distribution(assessments: Iterable[Mapping[str, str]]) -> Dict[str, int]:
    distribution = {level: 0 for level in RISK_VALUES}
    for assessment in assessments:
        distribution[assessment["risk_level"]] = distribution.get(assessment["risk_level"], 0) + 1
    return distribution
