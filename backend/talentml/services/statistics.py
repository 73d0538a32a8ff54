"""
Two-proportion z-test for A/B conversion rates.

Control and treatment conversions are treated as independent binomial
proportions. The null-hypothesis baseline is the pooled rate.
"""

import math
from dataclasses import dataclass
from typing import Dict, Tuple

from talentml.exceptions import ConfigurationError

Z_CRITICAL: Dict[float, float] = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}


def normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


def z_critical(confidence_level: float) -> float:
    """
    Two-tailed critical value for a confidence level.

    Common levels come from the table; anything else is solved by
    bisection on the normal CDF.

    Raises:
        ConfigurationError: If confidence_level is outside (0, 1)
    """
    if not 0.0 < confidence_level < 1.0:
        raise ConfigurationError(f"Confidence level must be in (0, 1), got {confidence_level}")

    for level, value in Z_CRITICAL.items():
        if math.isclose(level, confidence_level):
            return value

    target = 1.0 - (1.0 - confidence_level) / 2.0
    low, high = 0.0, 10.0
    for _ in range(100):
        mid = (low + high) / 2.0
        if normal_cdf(mid) < target:
            low = mid
        else:
            high = mid
    return (low + high) / 2.0


@dataclass
class SignificanceResult:
    control_rate: float
    treatment_rate: float
    difference: float
    z_score: float
    p_value: float
    confidence_interval: Tuple[float, float]
    is_significant: bool
    recommended_winner: str  # control, treatment, inconclusive
    winner_confidence: float
    confidence_level: float = 0.95

    def to_dict(self) -> Dict:
        return {
            "control_rate": self.control_rate,
            "treatment_rate": self.treatment_rate,
            "difference": self.difference,
            "z_score": self.z_score,
            "p_value": self.p_value,
            "confidence_interval": list(self.confidence_interval),
            "is_significant": self.is_significant,
            "recommended_winner": self.recommended_winner,
            "winner_confidence": self.winner_confidence,
            "confidence_level": self.confidence_level,
        }


def calculate_statistical_significance(
    control_conversions: int,
    control_participants: int,
    treatment_conversions: int,
    treatment_participants: int,
    confidence_level: float = 0.95,
) -> SignificanceResult:
    """
    Compare two conversion rates.

    Significant when p_value < 1 - confidence_level. The winner is the side
    with the higher rate when significant, otherwise "inconclusive". With an
    empty group, or a degenerate pooled rate of 0 or 1, the result is
    z=0, p=1 and inconclusive.
    """
    critical = z_critical(confidence_level)

    if control_participants <= 0 or treatment_participants <= 0:
        return SignificanceResult(
            control_rate=control_conversions / control_participants if control_participants > 0 else 0.0,
            treatment_rate=treatment_conversions / treatment_participants if treatment_participants > 0 else 0.0,
            difference=0.0,
            z_score=0.0,
            p_value=1.0,
            confidence_interval=(0.0, 0.0),
            is_significant=False,
            recommended_winner="inconclusive",
            winner_confidence=0.0,
            confidence_level=confidence_level,
        )

    control_rate = control_conversions / control_participants
    treatment_rate = treatment_conversions / treatment_participants
    difference = treatment_rate - control_rate

    pooled_rate = (control_conversions + treatment_conversions) / (control_participants + treatment_participants)
    pooled_se = math.sqrt(
        pooled_rate * (1 - pooled_rate) * (1 / control_participants + 1 / treatment_participants)
    )

    if pooled_se == 0:
        z_score, p_value = 0.0, 1.0
    else:
        z_score = difference / pooled_se
        p_value = 2.0 * (1.0 - normal_cdf(abs(z_score)))

    margin = critical * pooled_se
    is_significant = p_value < (1.0 - confidence_level)

    winner = "inconclusive"
    if is_significant and difference > 0:
        winner = "treatment"
    elif is_significant and difference < 0:
        winner = "control"

    return SignificanceResult(
        control_rate=control_rate,
        treatment_rate=treatment_rate,
        difference=difference,
        z_score=z_score,
        p_value=p_value,
        confidence_interval=(difference - margin, difference + margin),
        is_significant=is_significant,
        recommended_winner=winner,
        winner_confidence=1.0 - p_value if winner != "inconclusive" else 0.0,
        confidence_level=confidence_level,
    )
