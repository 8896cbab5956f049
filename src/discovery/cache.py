"""
Redis cache for trained HMM models and their feature scalers.
"""

import json
import time
from typing import Optional

import redis
import structlog

from src.hmm.features import FEATURE_NAMES, StandardScaler
from src.hmm.gaussian_hmm import GaussianHMM
from src.hmm.training import TrainResult

from .models import DiscoveryConfig

logger = structlog.get_logger(__name__)


class ModelCache:
    """Redis cache backend for trained models"""

    def __init__(self, config: DiscoveryConfig):
        try:
            self.redis = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
            )
            self.ttl = config.model_cache_ttl_seconds
            self.redis.ping()
            logger.info("Model cache initialized", host=config.redis_host, port=config.redis_port)
        except Exception as e:
            logger.error("Failed to initialize Redis", error=str(e))
            raise

    def save_model(self, key: str, result: TrainResult) -> bool:
        """Store the fitted model and scaler of a training run under ``key``"""
        if result.model is None or result.scaler is None:
            logger.warning("Training result carries no model, nothing to cache", key=key)
            return False

        payload = {
            "model": result.model,
            "scaler": result.scaler,
            "n_states": result.n_states,
            "feature_names": list(FEATURE_NAMES),
            "trained_at": time.time(),
        }
        try:
            self.redis.setex(key, self.ttl, json.dumps(payload))
            logger.debug("Model saved to Redis", key=key, n_states=result.n_states)
            return True
        except Exception as e:
            logger.error("Failed to save model to Redis", key=key, error=str(e))
            return False

    def load_model(self, key: str) -> Optional[tuple[GaussianHMM, StandardScaler]]:
        """Rebuild the cached model and scaler, or None if absent or unreadable"""
        try:
            data = self.redis.get(key)
            if data is None:
                return None

            payload = json.loads(data)
            if payload.get("feature_names") != list(FEATURE_NAMES):
                logger.warning("Cached model was trained on a different feature set", key=key)
                return None

            return GaussianHMM.from_dict(payload["model"]), StandardScaler.from_dict(payload["scaler"])

        except Exception as e:
            logger.error("Failed to load model from Redis", key=key, error=str(e))
            return None
