"""
In-process training pipeline: scale -> select K -> fit -> decode.

This is the function the isolated training process runs; HMMTrainer in
``worker.py`` also calls it directly when no separate process is available.
"""

from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass

import numpy as np
import structlog

from .features import StandardScaler
from .gaussian_hmm import GaussianHMM
from .models import HMMConfig
from .selection import select_n_states

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, str], None]


@dataclass
class TrainResult:
    """Per-row state labels plus training diagnostics"""

    states: list[int]
    n_states: int
    converged: bool
    iterations: int
    log_likelihood: float
    model: dict | None = None  # GaussianHMM.to_dict()
    scaler: dict | None = None  # StandardScaler.to_dict()

    def to_dict(self) -> dict:
        return asdict(self)


class ProgressReporter:
    """Forwards (percent, phase) to a callback, never moving backwards

    Callback errors are logged and dropped so a misbehaving callback cannot
    break the training loop.
    """

    def __init__(self, callback: ProgressCallback | None = None):
        self.callback = callback
        self.percent = 0

    def __call__(self, percent: int, phase: str) -> None:
        self.percent = max(self.percent, int(percent))
        if self.callback is None:
            return
        try:
            self.callback(self.percent, phase)
        except Exception as e:
            logger.warning("Progress callback failed", phase=phase, error=str(e))


def group_indices(group_ids: Sequence) -> list[list[int]]:
    """Row indices per group, groups ordered by first appearance"""
    groups: dict = {}
    for i, gid in enumerate(group_ids):
        groups.setdefault(gid, []).append(i)
    return list(groups.values())


def build_sequences(scaled: np.ndarray, group_ids: Sequence | None = None) -> list[np.ndarray]:
    """Split rows into one sequence per group, or a single sequence without groups"""
    if group_ids is None:
        return [scaled]
    return [scaled[indices] for indices in group_indices(group_ids)]


def predict_and_reassemble(
    model: GaussianHMM,
    scaled: np.ndarray,
    group_ids: Sequence | None = None,
) -> list[int]:
    """Decode each group independently and return labels in original row order"""
    if group_ids is None:
        return model.predict(scaled)

    states = np.empty(len(scaled), dtype=int)
    for indices in group_indices(group_ids):
        states[indices] = model.predict(scaled[indices])
    return states.tolist()


def train_states(
    matrix,
    requested_states: int | None = 0,
    on_progress: ProgressCallback | None = None,
    group_ids: Sequence | None = None,
    config: HMMConfig | None = None,
) -> TrainResult:
    """Fit an HMM to a feature matrix and label every row with its hidden state

    Args:
        matrix: Raw (unscaled) feature matrix (N, D)
        requested_states: Fixed number of states; 0 or None selects K by BIC
        on_progress: Optional ``on_progress(percent, phase)`` callback
        group_ids: Optional per-row group identifiers; each group is trained
            and decoded as an independent sequence
        config: Engine configuration, defaults to HMMConfig()

    Returns:
        TrainResult with one state per input row, in input order

    Raises:
        ValueError: On an empty matrix, bad state count or mismatched group ids
    """
    config = config or HMMConfig()
    progress = ProgressReporter(on_progress)
    matrix = np.asarray(matrix, dtype=float)

    if matrix.ndim != 2 or len(matrix) == 0:
        raise ValueError("Cannot train on an empty feature matrix")
    if requested_states is not None and requested_states < 0:
        raise ValueError(f"requested_states must be >= 0, got {requested_states}")
    if group_ids is not None and len(group_ids) != len(matrix):
        raise ValueError(f"Got {len(group_ids)} group ids for {len(matrix)} rows")

    progress(10, "scaling")
    scaler = StandardScaler()
    scaled = scaler.fit_transform(matrix)
    n_features = scaled.shape[1]
    progress(20, "scaling")

    if requested_states:
        n_states = int(requested_states)
    else:
        progress(25, "bic-selection")
        n_states = select_n_states(scaled, config, on_progress=progress).n_states

    progress(40, "training")
    sequences = build_sequences(scaled, group_ids)

    model = GaussianHMM(
        n_states,
        n_features,
        max_iter=config.max_iter,
        tol=config.tol,
        seed=config.seed,
        self_transition=config.self_transition,
        min_variance=config.min_variance,
        kmeans_iterations=config.kmeans_iterations,
    )
    fit_result = model.fit(
        sequences,
        on_progress=lambda iteration, max_iter, _ll: progress(
            40 + round(iteration / max_iter * 40), "training"
        ),
    )

    progress(80, "predicting")
    states = predict_and_reassemble(model, scaled, group_ids)
    progress(100, "complete")

    logger.info(
        "HMM training finished",
        rows=len(matrix),
        sequences=len(sequences),
        n_states=n_states,
        converged=fit_result.converged,
        iterations=fit_result.iterations,
        log_likelihood=round(fit_result.log_likelihood, 3),
    )

    return TrainResult(
        states=states,
        n_states=n_states,
        converged=fit_result.converged,
        iterations=fit_result.iterations,
        log_likelihood=fit_result.log_likelihood,
        model=model.to_dict(),
        scaler=scaler.to_dict(),
    )
