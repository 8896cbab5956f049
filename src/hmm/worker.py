"""
Runs HMM training in a separate process so the caller is not blocked.

Parent and child talk only through a queue:

    TrainRequest -> ProgressMessage* -> ResultMessage | ErrorMessage

When no process can be started, or the request cannot be pickled for one,
the same pipeline runs in-process and the progress callback is invoked
synchronously at the same checkpoints.
"""

import logging
import multiprocessing
import pickle
import queue
import threading
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import structlog

from src.core.logger import json_logs_enabled, setup_logging

from .errors import TrainingError
from .models import HMMConfig
from .training import ProgressCallback, ProgressReporter, TrainResult, train_states

logger = structlog.get_logger(__name__)


@dataclass
class TrainRequest:
    matrix: np.ndarray
    requested_states: int
    group_ids: list | None
    config: HMMConfig
    log_level: int
    json_logs: bool = False


@dataclass
class ProgressMessage:
    percent: int
    phase: str


@dataclass
class ResultMessage:
    result: TrainResult


@dataclass
class ErrorMessage:
    message: str


def _worker_main(request: TrainRequest, outbox) -> None:
    """Entry point of the training process"""
    setup_logging(level=request.log_level, json_logs=request.json_logs)

    try:
        result = train_states(
            request.matrix,
            request.requested_states,
            on_progress=lambda percent, phase: outbox.put(ProgressMessage(percent, phase)),
            group_ids=request.group_ids,
            config=request.config,
        )
        outbox.put(ResultMessage(result))
    except Exception as e:
        outbox.put(ErrorMessage(str(e) or "HMM training failed in worker"))


class HMMTrainer:
    """Trains one model at a time, in a child process when one is available"""

    def __init__(self, config: HMMConfig | None = None):
        self.config = config or HMMConfig()
        self._lock = threading.Lock()

    def train(
        self,
        matrix,
        requested_states: int | None = 0,
        on_progress: ProgressCallback | None = None,
        group_ids: Sequence | None = None,
    ) -> TrainResult:
        """Scale, select K, fit and decode; see :func:`train_states`

        Raises:
            RuntimeError: If a training run is already in flight on this trainer
            TrainingError: If the training process fails or dies
        """
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("A training run is already in progress on this trainer")

        try:
            context = self._process_context()
            if context is None:
                logger.info("Training in-process", rows=len(matrix))
                return train_states(
                    matrix,
                    requested_states,
                    on_progress=on_progress,
                    group_ids=group_ids,
                    config=self.config,
                )
            return self._train_in_subprocess(
                context, matrix, requested_states or 0, on_progress, group_ids
            )
        finally:
            self._lock.release()

    def _process_context(self):
        if not self.config.use_process:
            return None
        try:
            return multiprocessing.get_context(self.config.start_method)
        except ValueError as e:
            logger.warning(
                "Process start method unavailable, training in-process",
                start_method=self.config.start_method,
                error=str(e),
            )
            return None

    def _train_in_subprocess(
        self,
        context,
        matrix,
        requested_states: int,
        on_progress: ProgressCallback | None,
        group_ids: Sequence | None,
    ) -> TrainResult:
        request = TrainRequest(
            matrix=np.asarray(matrix, dtype=float),
            requested_states=requested_states,
            group_ids=list(group_ids) if group_ids is not None else None,
            config=self.config,
            log_level=logging.getLogger().getEffectiveLevel(),
            json_logs=json_logs_enabled(),
        )

        outbox = None
        try:
            outbox = context.Queue()
            process = context.Process(
                target=_worker_main,
                args=(request, outbox),
                name="hmm-trainer",
                daemon=True,
            )
            process.start()
        except (OSError, pickle.PicklingError, TypeError) as e:
            # Spawn pickles the request inside start()
            if outbox is not None:
                outbox.close()
            logger.warning("Could not start training process, training in-process", error=str(e))
            return train_states(
                request.matrix,
                requested_states,
                on_progress=on_progress,
                group_ids=group_ids,
                config=self.config,
            )

        logger.info("Training process started", pid=process.pid, rows=len(request.matrix))
        progress = ProgressReporter(on_progress)

        try:
            while True:
                try:
                    message = outbox.get(timeout=self.config.poll_interval_seconds)
                except queue.Empty:
                    if process.is_alive():
                        continue
                    try:
                        message = outbox.get(timeout=self.config.poll_interval_seconds)
                    except queue.Empty:
                        raise TrainingError(
                            f"Training process exited unexpectedly (exit code {process.exitcode})"
                        ) from None

                if isinstance(message, ProgressMessage):
                    progress(message.percent, message.phase)
                elif isinstance(message, ResultMessage):
                    return message.result
                elif isinstance(message, ErrorMessage):
                    raise TrainingError(message.message)
        finally:
            if process.is_alive():
                process.terminate()
            process.join()
            outbox.close()
            logger.debug("Training process torn down", pid=process.pid, exit_code=process.exitcode)
