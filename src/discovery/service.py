"""
State discovery workflow over a flow store.

Pipeline:
1. Make sure the store can hold a state label per flow
2. Sample raw flow rows and build the feature matrix
3. Train the HMM (isolated process when available) and label every row
4. Write the labels back, read per-state signatures
5. Score each state for anomalousness, optionally cache the fitted model
"""

import time
from typing import Optional

import structlog

from src.hmm.anomaly import apply_anomaly_scores
from src.hmm.errors import InsufficientDataError
from src.hmm.features import FeatureMatrix
from src.hmm.models import StateProfile
from src.hmm.training import ProgressCallback, ProgressReporter
from src.hmm.worker import HMMTrainer

from .cache import ModelCache
from .models import DiscoveryConfig, DiscoveryResult
from .store import FlowStore

logger = structlog.get_logger(__name__)


class DiscoveryService:
    """Discovers behavioural states in the flows of one store"""

    def __init__(
        self,
        store: FlowStore,
        trainer: Optional[HMMTrainer] = None,
        cache: Optional[ModelCache] = None,
        config: Optional[DiscoveryConfig] = None,
    ):
        self.config = config or DiscoveryConfig()
        self.store = store
        self.trainer = trainer or HMMTrainer(self.config.hmm)
        self.cache = cache

        logger.info(
            "Discovery service initialized",
            store=type(store).__name__,
            cache=type(cache).__name__ if cache else None,
            use_process=self.trainer.config.use_process,
        )

    def discover_states(
        self,
        requested_states: Optional[int] = None,
        sample_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DiscoveryResult:
        """Run one full discovery over the store

        Args:
            requested_states: Fixed number of states; 0 selects by BIC,
                None uses ``config.requested_states``
            sample_size: Flows to sample; None uses ``config.sample_size``
            on_progress: Optional ``on_progress(percent, phase)`` callback

        Returns:
            DiscoveryResult with one scored profile per discovered state

        Raises:
            InsufficientDataError: Fewer than ``config.min_flows`` usable flows
            TrainingError: Training process failed
        """
        if requested_states is None:
            requested_states = self.config.requested_states
        if sample_size is None:
            sample_size = self.config.sample_size

        progress = ProgressReporter(on_progress)
        start_time = time.time()

        # 1. Store preparation
        self.store.ensure_hmm_state_column()

        # 2. Feature extraction
        progress(0, "extracting")
        frame = self.store.extract_features(sample_size)
        if len(frame) < self.config.min_flows:
            raise InsufficientDataError(
                f"Need at least {self.config.min_flows} flows for state discovery, got {len(frame)}"
            )
        matrix = FeatureMatrix.from_frame(frame)
        if len(matrix) < self.config.min_flows:
            raise InsufficientDataError(
                f"Need at least {self.config.min_flows} usable flows for state discovery, "
                f"got {len(matrix)}"
            )
        progress(10, "extracting")

        # 3. Training
        result = self.trainer.train(
            matrix.values,
            requested_states,
            on_progress=lambda percent, phase: progress(10 + round(percent * 0.7), phase),
            group_ids=matrix.group_ids,
        )
        progress(80, "writing")

        # 4. Write-back and signatures
        assignments = dict(zip(matrix.row_ids, result.states))
        self.store.write_state_assignments(assignments)
        progress(90, "profiling")

        signatures = self.store.get_state_signatures()
        profiles = [StateProfile.from_signature(row) for row in signatures.to_dict("records")]

        # 5. Scoring and caching
        profiles = apply_anomaly_scores(profiles)

        if self.cache is not None:
            if not self.cache.save_model(self.config.model_key, result):
                logger.warning("Model trained but failed to cache", key=self.config.model_key)

        progress(100, "complete")

        logger.info(
            "State discovery completed",
            flows=len(matrix),
            n_states=result.n_states,
            profiles=len(profiles),
            converged=result.converged,
            iterations=result.iterations,
            elapsed_sec=round(time.time() - start_time, 1),
        )

        return DiscoveryResult(
            profiles=profiles,
            n_states=result.n_states,
            converged=result.converged,
            iterations=result.iterations,
            log_likelihood=result.log_likelihood,
        )
