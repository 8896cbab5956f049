"""
Configuration and result models for the state discovery service.
"""

from dataclasses import dataclass, field
from typing import Optional

from src.hmm.models import HMMConfig, StateProfile


@dataclass
class DiscoveryConfig:
    """Configuration for a state discovery run"""

    requested_states: int = 0  # 0 = choose by BIC
    sample_size: Optional[int] = 50_000  # None = every flow
    min_flows: int = 10  # Fewer usable flows than this is rejected

    # Flow store
    flow_table: str = "flows"
    write_batch_size: int = 1000

    hmm: HMMConfig = field(default_factory=HMMConfig)

    # PostgreSQL settings
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "flows_db"
    postgres_user: str = "flows"
    postgres_password: str = "flows_password"

    # Redis model cache
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    model_cache_ttl_seconds: int = 7 * 24 * 3600
    model_key: str = "hmm:model:flows"


@dataclass
class DiscoveryResult:
    """Scored state profiles plus training diagnostics of one discovery run"""

    profiles: list[StateProfile]
    n_states: int
    converged: bool
    iterations: int
    log_likelihood: float

    def to_dict(self) -> dict:
        return {
            "profiles": [profile.to_dict() for profile in self.profiles],
            "n_states": self.n_states,
            "converged": self.converged,
            "iterations": self.iterations,
            "log_likelihood": self.log_likelihood,
        }
