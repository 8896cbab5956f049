"""
HMM State Discovery Engine

Discovers latent behavioural states in network flows with a Gaussian HMM and
scores each state for anomalousness.

Architecture:
- Features: 16 engineered features per flow, standardised by StandardScaler
- Model: diagonal-covariance Gaussian HMM (K-means++ init, Baum-Welch, Viterbi, BIC)
- Selection: BIC sweep over K with early stopping when K is not fixed
- Training: scale -> select -> fit -> decode, in a child process when possible
- Scoring: median/MAD robust anomaly scores per state
"""

from .anomaly import AnomalyScore, apply_anomaly_scores, score_anomalies, severity_band
from .errors import InsufficientDataError, ModelNotFittedError, TrainingError
from .features import FEATURE_NAMES, FeatureMatrix, FlowRecord, StandardScaler
from .gaussian_hmm import FitResult, GaussianHMM, ModelStatus
from .models import HMMConfig, StateProfile
from .selection import SelectionResult, select_n_states
from .training import TrainResult, train_states
from .worker import HMMTrainer

__all__ = [
    "AnomalyScore",
    "FEATURE_NAMES",
    "FeatureMatrix",
    "FitResult",
    "FlowRecord",
    "GaussianHMM",
    "HMMConfig",
    "HMMTrainer",
    "InsufficientDataError",
    "ModelNotFittedError",
    "ModelStatus",
    "SelectionResult",
    "StandardScaler",
    "StateProfile",
    "TrainResult",
    "TrainingError",
    "apply_anomaly_scores",
    "score_anomalies",
    "select_n_states",
    "severity_band",
    "train_states",
]
