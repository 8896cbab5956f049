"""
Gaussian Hidden Markov Model with diagonal covariance.

Training uses Baum-Welch (EM) initialised by K-means++ and decoding uses
Viterbi. Transition and initial-state probabilities are kept as logs and
every probability sum goes through log-sum-exp, so long sequences never
underflow.
"""

from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from enum import Enum

import numpy as np
import structlog
from scipy.special import logsumexp

from .errors import ModelNotFittedError

logger = structlog.get_logger(__name__)

LOG_2PI = np.log(2.0 * np.pi)
MIN_VARIANCE = 1e-4
LOG_FLOOR = 1e-300  # Smallest probability kept before taking logs
FORMAT_VERSION = 1

ProgressFn = Callable[[int, int, float], None]


class ModelStatus(Enum):
    UNINITIALIZED = "uninitialized"
    FITTING = "fitting"
    FITTED = "fitted"


@dataclass
class FitResult:
    """Outcome of one Baum-Welch run"""

    log_likelihood: float
    iterations: int
    converged: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _log_prob(prob: np.ndarray) -> np.ndarray:
    return np.log(np.maximum(prob, LOG_FLOOR))


class GaussianHMM:
    """K-state HMM whose states emit diagonal-covariance Gaussians over D features"""

    def __init__(
        self,
        n_states: int,
        n_features: int,
        max_iter: int = 100,
        tol: float = 1e-4,
        seed: int = 42,
        self_transition: float = 0.7,
        min_variance: float = MIN_VARIANCE,
        kmeans_iterations: int = 10,
    ):
        if n_states < 1:
            raise ValueError(f"n_states must be >= 1, got {n_states}")
        if n_features < 1:
            raise ValueError(f"n_features must be >= 1, got {n_features}")

        self.n_states = n_states
        self.n_features = n_features
        self.max_iter = max_iter
        self.tol = tol
        self.seed = seed
        self.self_transition = self_transition
        self.min_variance = min_variance
        self.kmeans_iterations = kmeans_iterations

        self.means_: np.ndarray | None = None  # (K, D)
        self.variances_: np.ndarray | None = None  # (K, D)
        self.log_transmat_: np.ndarray | None = None  # (K, K), [from, to]
        self.log_startprob_: np.ndarray | None = None  # (K,)
        self._status = ModelStatus.UNINITIALIZED

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def is_fitted(self) -> bool:
        return self._status is ModelStatus.FITTED

    @property
    def transition_matrix(self) -> np.ndarray:
        self._check_fitted()
        return np.exp(self.log_transmat_)

    @property
    def initial_probs(self) -> np.ndarray:
        self._check_fitted()
        return np.exp(self.log_startprob_)

    @property
    def n_parameters(self) -> int:
        """Free parameters: initial probs, transitions, means and diagonal variances"""
        k, d = self.n_states, self.n_features
        return (k - 1) + k * (k - 1) + 2 * k * d

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def fit(self, sequences: Sequence, on_progress: ProgressFn | None = None) -> FitResult:
        """Fit the model with Baum-Welch on independent observation sequences

        Args:
            sequences: Iterable of (T_i, n_features) arrays; transitions are never
                counted across sequence boundaries
            on_progress: Called as ``on_progress(iteration, max_iter, log_likelihood)``
                after every EM iteration

        Returns:
            FitResult with the last log-likelihood, iterations used and convergence flag

        Raises:
            ValueError: If there are no observations or a dimension mismatches
        """
        seqs = self._validate_sequences(sequences)

        previous = (
            self.means_,
            self.variances_,
            self.log_transmat_,
            self.log_startprob_,
            self._status,
        )
        self._status = ModelStatus.FITTING
        try:
            result = self._fit(seqs, on_progress)
        except Exception:
            (
                self.means_,
                self.variances_,
                self.log_transmat_,
                self.log_startprob_,
                self._status,
            ) = previous
            raise

        self._status = ModelStatus.FITTED
        logger.debug(
            "HMM fitted",
            n_states=self.n_states,
            n_sequences=len(seqs),
            iterations=result.iterations,
            converged=result.converged,
            log_likelihood=round(result.log_likelihood, 3),
        )
        return result

    def _fit(self, seqs: list[np.ndarray], on_progress: ProgressFn | None) -> FitResult:
        self._init_params(np.concatenate(seqs, axis=0))

        prev_ll = -np.inf
        converged = False
        iteration = 0

        for iteration in range(1, self.max_iter + 1):
            stats = self._empty_stats()
            total_ll = 0.0

            for seq in seqs:
                total_ll += self._accumulate(seq, stats)

            self._m_step(stats)

            ll_change = abs(total_ll - prev_ll)
            prev_ll = total_ll

            if on_progress is not None:
                on_progress(iteration, self.max_iter, total_ll)

            if iteration > 1 and ll_change < self.tol:
                converged = True
                break

        return FitResult(
            log_likelihood=float(prev_ll),
            iterations=iteration,
            converged=converged,
        )

    def _validate_sequences(self, sequences: Sequence) -> list[np.ndarray]:
        seqs = [np.asarray(seq, dtype=float) for seq in sequences]
        seqs = [seq.reshape(0, self.n_features) if seq.size == 0 else seq for seq in seqs]
        if not seqs or all(len(seq) == 0 for seq in seqs):
            raise ValueError("Cannot fit on empty sequences")

        for seq in seqs:
            if seq.ndim != 2 or seq.shape[1] != self.n_features:
                width = seq.shape[-1] if seq.ndim else 0
                raise ValueError(f"Expected {self.n_features} features but got {width}")

        return [seq for seq in seqs if len(seq) > 0]

    # ------------------------------------------------------------------
    # Initialisation (K-means++ seeding + Lloyd refinement)
    # ------------------------------------------------------------------

    def _init_params(self, observations: np.ndarray) -> None:
        n_obs = len(observations)
        k = self.n_states
        rng = np.random.default_rng(self.seed)

        if n_obs <= k:
            # Fewer observations than states: cycle through them
            centroids = observations[np.arange(k) % n_obs].copy()
        else:
            centroids = np.empty((k, self.n_features))
            centroids[0] = observations[rng.integers(n_obs)]
            min_dist = self._sq_distances(observations, centroids[:1])[:, 0]
            for c in range(1, k):
                threshold = rng.random() * min_dist.sum()
                idx = int(np.searchsorted(np.cumsum(min_dist), threshold, side="left"))
                centroids[c] = observations[min(idx, n_obs - 1)]
                new_dist = self._sq_distances(observations, centroids[c : c + 1])[:, 0]
                min_dist = np.minimum(min_dist, new_dist)

        assignments = np.zeros(n_obs, dtype=int)
        for _ in range(self.kmeans_iterations):
            assignments = np.argmin(self._sq_distances(observations, centroids), axis=1)
            for c in range(k):
                members = observations[assignments == c]
                if len(members):
                    centroids[c] = members.mean(axis=0)

        variances = np.full((k, self.n_features), self.min_variance)
        for c in range(k):
            members = observations[assignments == c]
            if len(members) > 1:
                variances[c] = ((members - centroids[c]) ** 2).mean(axis=0)
        variances = np.maximum(variances, self.min_variance)

        self.means_ = centroids
        self.variances_ = variances
        self.log_startprob_ = np.full(k, -np.log(k))

        if k == 1:
            transmat = np.ones((1, 1))
        else:
            off_diagonal = (1.0 - self.self_transition) / (k - 1)
            transmat = np.full((k, k), off_diagonal)
            np.fill_diagonal(transmat, self.self_transition)
        self.log_transmat_ = _log_prob(transmat)

    @staticmethod
    def _sq_distances(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        diff = points[:, None, :] - centroids[None, :, :]
        return np.einsum("nkd,nkd->nk", diff, diff)

    # ------------------------------------------------------------------
    # E-step
    # ------------------------------------------------------------------

    def _log_emission(self, seq: np.ndarray) -> np.ndarray:
        """log N(x_t | mu_k, diag(var_k)) for every (t, k), shape (T, K)"""
        log_det = np.log(self.variances_).sum(axis=1)
        diff = seq[:, None, :] - self.means_[None, :, :]
        mahalanobis = (diff**2 / self.variances_[None, :, :]).sum(axis=2)
        return -0.5 * (self.n_features * LOG_2PI + log_det[None, :] + mahalanobis)

    def _forward_backward(self, log_emission: np.ndarray):
        n_steps, k = log_emission.shape
        log_a = self.log_transmat_

        log_alpha = np.empty((n_steps, k))
        log_alpha[0] = self.log_startprob_ + log_emission[0]
        for t in range(1, n_steps):
            log_alpha[t] = logsumexp(log_alpha[t - 1][:, None] + log_a, axis=0) + log_emission[t]

        seq_ll = float(logsumexp(log_alpha[-1]))

        log_beta = np.zeros((n_steps, k))
        for t in range(n_steps - 2, -1, -1):
            future = log_emission[t + 1] + log_beta[t + 1]
            log_beta[t] = logsumexp(log_a + future[None, :], axis=1)

        return log_alpha, log_beta, seq_ll

    def _empty_stats(self) -> dict[str, np.ndarray]:
        k, d = self.n_states, self.n_features
        return {
            "start": np.zeros(k),
            "trans_num": np.zeros((k, k)),
            "trans_den": np.zeros(k),
            "post": np.zeros(k),
            "obs": np.zeros((k, d)),
            "gamma": [],
        }

    def _accumulate(self, seq: np.ndarray, stats: dict) -> float:
        """Run forward-backward on one sequence and add its posteriors to ``stats``"""
        log_emission = self._log_emission(seq)
        log_alpha, log_beta, seq_ll = self._forward_backward(log_emission)

        log_gamma = log_alpha + log_beta
        gamma = np.exp(log_gamma - logsumexp(log_gamma, axis=1, keepdims=True))

        if len(seq) > 1:
            log_xi = (
                log_alpha[:-1, :, None]
                + self.log_transmat_[None, :, :]
                + (log_emission[1:] + log_beta[1:])[:, None, :]
            )
            log_xi -= logsumexp(log_xi, axis=(1, 2), keepdims=True)
            stats["trans_num"] += np.exp(log_xi).sum(axis=0)
            stats["trans_den"] += gamma[:-1].sum(axis=0)

        stats["start"] += gamma[0]
        stats["post"] += gamma.sum(axis=0)
        stats["obs"] += gamma.T @ seq
        stats["gamma"].append((gamma, seq))
        return seq_ll

    # ------------------------------------------------------------------
    # M-step
    # ------------------------------------------------------------------

    def _m_step(self, stats: dict) -> None:
        k = self.n_states

        start_total = stats["start"].sum()
        startprob = stats["start"] / start_total if start_total > 0 else np.full(k, 1.0 / k)
        self.log_startprob_ = _log_prob(startprob)

        den = stats["trans_den"][:, None]
        with np.errstate(divide="ignore", invalid="ignore"):
            transmat = np.where(den > 0, stats["trans_num"] / den, 1.0 / k)
        self.log_transmat_ = _log_prob(transmat)

        post = stats["post"]
        occupied = post > 0
        means = self.means_.copy()
        means[occupied] = stats["obs"][occupied] / post[occupied, None]

        # Variance around the new means; unoccupied states keep their variance
        sq_dev = np.zeros_like(means)
        for gamma, seq in stats["gamma"]:
            diff = seq[:, None, :] - means[None, :, :]
            sq_dev += np.einsum("tk,tkd->kd", gamma, diff**2)

        variances = self.variances_.copy()
        variances[occupied] = np.maximum(
            sq_dev[occupied] / post[occupied, None], self.min_variance
        )
        if not occupied.all():
            logger.debug(
                "States without occupancy kept their variance",
                states=np.flatnonzero(~occupied).tolist(),
            )

        self.means_ = means
        self.variances_ = variances

    # ------------------------------------------------------------------
    # Decoding and scoring
    # ------------------------------------------------------------------

    def predict(self, sequence) -> list[int]:
        """Most likely state path (Viterbi); ties resolve to the lowest state index

        Raises:
            ModelNotFittedError: If the model has not been fitted
            ValueError: If an observation's dimensionality mismatches the model
        """
        self._check_fitted()
        seq = self._as_sequence(sequence)
        n_steps = len(seq)
        if n_steps == 0:
            return []

        log_emission = self._log_emission(seq)
        viterbi = self.log_startprob_ + log_emission[0]
        backpointers = np.zeros((n_steps, self.n_states), dtype=int)

        for t in range(1, n_steps):
            candidates = viterbi[:, None] + self.log_transmat_
            backpointers[t] = np.argmax(candidates, axis=0)
            viterbi = candidates[backpointers[t], np.arange(self.n_states)] + log_emission[t]

        states = np.empty(n_steps, dtype=int)
        states[-1] = int(np.argmax(viterbi))
        for t in range(n_steps - 2, -1, -1):
            states[t] = backpointers[t + 1][states[t + 1]]

        return states.tolist()

    def score(self, sequences: Sequence) -> float:
        """Total log-likelihood of independent sequences under the model"""
        self._check_fitted()
        total = 0.0
        for sequence in sequences:
            seq = self._as_sequence(sequence)
            if len(seq):
                _, _, seq_ll = self._forward_backward(self._log_emission(seq))
                total += seq_ll
        return total

    def bic(self, sequences: Sequence) -> float:
        """Bayesian information criterion; only comparable across K on the same data"""
        self._check_fitted()
        seqs = [self._as_sequence(s) for s in sequences]
        n_samples = sum(len(seq) for seq in seqs)
        if n_samples == 0:
            raise ValueError("BIC needs at least one observation")
        total_ll = self.score(seqs)
        return -2.0 * total_ll + self.n_parameters * np.log(n_samples)

    def _as_sequence(self, sequence) -> np.ndarray:
        seq = np.asarray(sequence, dtype=float)
        if seq.size == 0:
            return seq.reshape(0, self.n_features)
        if seq.ndim != 2 or seq.shape[1] != self.n_features:
            width = seq.shape[-1] if seq.ndim else 0
            raise ValueError(f"Expected {self.n_features} features but got {width}")
        return seq

    def _check_fitted(self) -> None:
        if not self.is_fitted:
            raise ModelNotFittedError("Model not fitted. Call fit() first.")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        """Plain-probability representation, stable across releases via format_version"""
        self._check_fitted()
        return {
            "format_version": FORMAT_VERSION,
            "n_states": self.n_states,
            "n_features": self.n_features,
            "means": self.means_.tolist(),
            "variances": self.variances_.tolist(),
            "transition_matrix": np.exp(self.log_transmat_).tolist(),
            "initial_probs": np.exp(self.log_startprob_).tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict, **kwargs) -> "GaussianHMM":
        """Restore a fitted model from :meth:`to_dict` output

        Raises:
            ValueError: If the format version is unknown or array shapes mismatch
        """
        version = data.get("format_version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported model format version: {version}")

        k, d = int(data["n_states"]), int(data["n_features"])
        means = np.asarray(data["means"], dtype=float)
        variances = np.asarray(data["variances"], dtype=float)
        transmat = np.asarray(data["transition_matrix"], dtype=float)
        startprob = np.asarray(data["initial_probs"], dtype=float)

        expected = {
            "means": ((k, d), means.shape),
            "variances": ((k, d), variances.shape),
            "transition_matrix": ((k, k), transmat.shape),
            "initial_probs": ((k,), startprob.shape),
        }
        for name, (want, got) in expected.items():
            if want != got:
                raise ValueError(f"Model field '{name}' has shape {got}, expected {want}")

        model = cls(k, d, **kwargs)
        model.means_ = means
        model.variances_ = variances
        model.log_transmat_ = _log_prob(transmat)
        model.log_startprob_ = _log_prob(startprob)
        model._status = ModelStatus.FITTED
        return model

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(n_states={self.n_states}, "
            f"n_features={self.n_features}, status={self._status.value})"
        )
