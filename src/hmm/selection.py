"""
Model-order selection: choose the number of hidden states by BIC.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np
import structlog

from .gaussian_hmm import GaussianHMM
from .models import HMMConfig

logger = structlog.get_logger(__name__)

BIC_PROGRESS_START = 25
BIC_PROGRESS_SPAN = 15


@dataclass
class SelectionResult:
    n_states: int
    bic_scores: dict[int, float] = field(default_factory=dict)
    stopped_early: bool = False


def select_n_states(
    scaled: np.ndarray,
    config: HMMConfig | None = None,
    on_progress: Callable[[int, str], None] | None = None,
) -> SelectionResult:
    """Sweep candidate state counts and keep the one with the lowest BIC

    Each candidate gets a cheap fit (few iterations, loose tolerance) on the
    whole matrix as one sequence, or on its first ``bic_subsample_size`` rows
    when the matrix is larger than ``bic_subsample_threshold``. The sweep stops
    once BIC has failed to improve for ``bic_patience`` consecutive candidates.

    Args:
        scaled: Standardised feature matrix (N, D)
        config: Engine configuration, defaults to HMMConfig()
        on_progress: Optional ``on_progress(percent, phase)`` callback

    Returns:
        SelectionResult with the chosen K and the BIC of every candidate tried
    """
    config = config or HMMConfig()
    scaled = np.asarray(scaled, dtype=float)
    n_features = scaled.shape[1]

    data = scaled
    if len(scaled) > config.bic_subsample_threshold:
        data = scaled[: config.bic_subsample_size]
        logger.debug("Subsampled data for BIC sweep", rows=len(data), total=len(scaled))

    best_bic = np.inf
    best_k = config.min_states
    misses = 0
    result = SelectionResult(n_states=best_k)
    span = max(config.max_states - config.min_states + 1, 1)

    for k in range(config.min_states, config.max_states + 1):
        candidate = GaussianHMM(
            k,
            n_features,
            max_iter=config.bic_max_iter,
            tol=config.bic_tol,
            seed=config.seed,
            self_transition=config.self_transition,
            min_variance=config.min_variance,
            kmeans_iterations=config.kmeans_iterations,
        )
        candidate.fit([data])
        bic = candidate.bic([data])
        result.bic_scores[k] = float(bic)
        logger.debug("BIC candidate scored", n_states=k, bic=round(float(bic), 2))

        if bic < best_bic:
            best_bic = bic
            best_k = k
            misses = 0
        else:
            misses += 1
            if misses >= config.bic_patience:
                result.stopped_early = k < config.max_states
                break

        if on_progress is not None:
            done = k - config.min_states + 1
            percent = BIC_PROGRESS_START + round(done / span * BIC_PROGRESS_SPAN)
            on_progress(percent, "bic-selection")

    result.n_states = best_k
    logger.info(
        "Selected number of states",
        n_states=best_k,
        candidates=len(result.bic_scores),
        stopped_early=result.stopped_early,
    )
    return result
