"""
Robust anomaly scoring of discovered states.

Each state is compared with the population of states on a few behavioural
metrics. Deviation is measured with the median and the median absolute
deviation (MAD), so a single extreme state cannot hide itself by inflating
the spread it is measured against.

Score workflow:
1. Per metric: robust z = |x - median| / (1.4826 * MAD)
   (MAD == 0 falls back to 1.4826 * 0.1 * |median|, or to 1.2533 * mean
   absolute deviation when the median is 0; all deviations 0 -> z = 0)
2. Per state: combined = sqrt(sum(z^2)), score = min(100, round(100 * combined / 3.5))
3. Factors: metrics with z >= 2.0, largest first, at most 3
"""

from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, replace

import numpy as np
import structlog

from .models import StateProfile

logger = structlog.get_logger(__name__)

# Consistency constants: scale MAD / mean absolute deviation to a normal sigma
MAD_SCALE = 1.4826
MEAN_AD_SCALE = 1.2533

# Share of |median| used as the spread when MAD is 0, independent of state count
RELATIVE_MAD_FLOOR = 0.1

SATURATION_Z = 3.5  # Combined robust z that maps to a score of 100
FACTOR_THRESHOLD = 2.0
MAX_FACTORS = 3

METRICS: dict[str, Callable[[StateProfile], float]] = {
    "bytes_ratio": lambda p: p.bytes_ratio,
    "duration": lambda p: p.avg_duration_ms,
    "pkts_per_sec": lambda p: p.avg_pkts_per_sec,
    "protocol_skew": lambda p: p.protocol_dist.skew,
}


def severity_band(score: int) -> str:
    """Severity band of a 0-100 anomaly score"""
    if score >= 80:
        return "critical"
    elif score >= 60:
        return "high"
    elif score >= 40:
        return "medium"
    else:
        return "low"


@dataclass
class AnomalyScore:
    state_id: int
    anomaly_score: int
    anomaly_factors: list[str]

    @property
    def severity(self) -> str:
        return severity_band(self.anomaly_score)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["severity"] = self.severity
        return data


def robust_z_scores(values: Sequence[float]) -> np.ndarray:
    """Absolute robust z-score of every value against the whole set"""
    values = np.asarray(values, dtype=float)
    median = np.median(values)
    deviations = np.abs(values - median)

    scale = MAD_SCALE * np.median(deviations)
    if scale == 0:
        scale = MAD_SCALE * RELATIVE_MAD_FLOOR * abs(median)
    if scale == 0:
        scale = MEAN_AD_SCALE * deviations.mean()
    if scale == 0:
        return np.zeros_like(values)

    return deviations / scale


def score_anomalies(profiles: Sequence[StateProfile]) -> list[AnomalyScore]:
    """Score every state relative to the others

    Pure function of its input: same profiles, same scores, in input order.
    Fewer than two states cannot be compared and all score 0.
    """
    if len(profiles) < 2:
        return [
            AnomalyScore(state_id=p.state_id, anomaly_score=0, anomaly_factors=[])
            for p in profiles
        ]

    names = list(METRICS)
    z = np.column_stack(
        [robust_z_scores([METRICS[name](p) for p in profiles]) for name in names]
    )

    scores = []
    for profile, z_row in zip(profiles, z, strict=True):
        combined = float(np.sqrt(np.sum(z_row**2)))
        score = min(100, int(round(100 * combined / SATURATION_Z)))

        # Stable sort keeps METRICS order among equal contributions
        ranked = sorted(range(len(names)), key=lambda i: -z_row[i])
        factors = [names[i] for i in ranked if z_row[i] >= FACTOR_THRESHOLD][:MAX_FACTORS]

        scores.append(
            AnomalyScore(state_id=profile.state_id, anomaly_score=score, anomaly_factors=factors)
        )

    logger.debug(
        "Scored state anomalies",
        n_states=len(scores),
        max_score=max(s.anomaly_score for s in scores),
    )
    return scores


def apply_anomaly_scores(profiles: Sequence[StateProfile]) -> list[StateProfile]:
    """Return copies of ``profiles`` carrying their anomaly score and factors"""
    by_state = {score.state_id: score for score in score_anomalies(profiles)}
    return [
        replace(
            profile,
            anomaly_score=by_state[profile.state_id].anomaly_score,
            anomaly_factors=tuple(by_state[profile.state_id].anomaly_factors),
        )
        for profile in profiles
    ]
