"""
CLI for discovering behavioural states in stored network flows.

Usage:
    python -m src.discovery.discover [options]
"""

import argparse
import json
import logging
import os
import sys

import pandas as pd
import structlog

from src.core.logger import setup_logging
from src.hmm.anomaly import severity_band
from src.hmm.models import HMMConfig

from .cache import ModelCache
from .database import FlowDatabase
from .models import DiscoveryConfig, DiscoveryResult
from .service import DiscoveryService

logger = structlog.get_logger(__name__)

PROFILE_COLUMNS = [
    "state_id",
    "flow_count",
    "avg_in_bytes",
    "avg_out_bytes",
    "bytes_ratio",
    "avg_duration_ms",
    "avg_pkts_per_sec",
    "anomaly_score",
    "severity",
    "anomaly_factors",
]


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Discover behavioural flow states with a Gaussian HMM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Choose the number of states by BIC
        python -m src.discovery.discover

        # Fixed number of states on a smaller sample
        python -m src.discovery.discover --states 6 --sample-size 20000

        # Cache the fitted model in Redis and print JSON
        python -m src.discovery.discover --save-model --json
        """,
    )

    # Discovery configuration
    parser.add_argument(
        "--states",
        type=int,
        default=0,
        help="Number of hidden states, 0 selects by BIC (default: 0)",
    )
    parser.add_argument(
        "--sample-size",
        type=int,
        default=50_000,
        help="Flows to sample for training, 0 for all (default: 50000)",
    )
    parser.add_argument(
        "--table",
        default=os.getenv("FLOW_TABLE", "flows"),
        help="Flow table name (default: flows or FLOW_TABLE env var)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Seed for K-means++ initialisation (default: 42)",
    )
    parser.add_argument(
        "--no-process",
        action="store_true",
        help="Train in the current process instead of a separate one",
    )

    # PostgreSQL settings
    parser.add_argument(
        "--postgres-host",
        default=os.getenv("POSTGRES_HOST", "localhost"),
        help="PostgreSQL host (default: localhost or POSTGRES_HOST env var)",
    )
    parser.add_argument(
        "--postgres-port",
        type=int,
        default=int(os.getenv("POSTGRES_PORT", "5432")),
        help="PostgreSQL port (default: 5432)",
    )
    parser.add_argument(
        "--postgres-db",
        default=os.getenv("POSTGRES_DB", "flows_db"),
        help="PostgreSQL database (default: flows_db)",
    )
    parser.add_argument(
        "--postgres-user",
        default=os.getenv("POSTGRES_USER", "flows"),
        help="PostgreSQL user (default: flows)",
    )
    parser.add_argument(
        "--postgres-password",
        default=os.getenv("POSTGRES_PASSWORD", "flows_password"),
        help="PostgreSQL password",
    )

    # Redis model cache
    parser.add_argument(
        "--save-model",
        action="store_true",
        help="Cache the fitted model and scaler in Redis",
    )
    parser.add_argument(
        "--model-key",
        default="hmm:model:flows",
        help="Redis key for the cached model (default: hmm:model:flows)",
    )
    parser.add_argument(
        "--redis-host",
        default=os.getenv("REDIS_HOST", "localhost"),
        help="Redis host (default: localhost or REDIS_HOST env var)",
    )
    parser.add_argument(
        "--redis-port",
        type=int,
        default=int(os.getenv("REDIS_PORT", "6379")),
        help="Redis port (default: 6379)",
    )

    # Output
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the discovery result as JSON instead of a table",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_config(args) -> DiscoveryConfig:
    """Build configuration from arguments"""
    return DiscoveryConfig(
        requested_states=args.states,
        sample_size=args.sample_size or None,
        flow_table=args.table,
        hmm=HMMConfig(seed=args.seed, use_process=not args.no_process),
        postgres_host=args.postgres_host,
        postgres_port=args.postgres_port,
        postgres_database=args.postgres_db,
        postgres_user=args.postgres_user,
        postgres_password=args.postgres_password,
        redis_host=args.redis_host,
        redis_port=args.redis_port,
        model_key=args.model_key,
    )


def format_profiles(result: DiscoveryResult) -> str:
    """Render discovered states as a fixed-width table"""
    rows = []
    for profile in result.profiles:
        row = profile.to_dict()
        row["severity"] = severity_band(profile.anomaly_score or 0)
        row["anomaly_factors"] = ", ".join(profile.anomaly_factors)
        rows.append(row)

    if not rows:
        return "No states discovered"

    table = pd.DataFrame(rows, columns=PROFILE_COLUMNS)
    return table.to_string(index=False, float_format=lambda value: f"{value:.2f}")


def run_discovery(config: DiscoveryConfig, save_model: bool = False) -> DiscoveryResult:
    """Run discovery once against PostgreSQL"""
    db = FlowDatabase(config)
    try:
        if not db.check_health():
            raise RuntimeError("Database health check failed")

        cache = ModelCache(config) if save_model else None
        service = DiscoveryService(db, cache=cache, config=config)
        return service.discover_states(
            on_progress=lambda percent, phase: logger.info(
                "Discovery progress", percent=percent, phase=phase
            )
        )
    finally:
        db.close()


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    # Setup logging
    log_level = getattr(logging, args.log_level)
    setup_logging(level=log_level)

    logger.info("Starting state discovery", table=args.table, states=args.states or "auto")

    try:
        config = build_config(args)
        result = run_discovery(config, save_model=args.save_model)

        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(format_profiles(result))

        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("State discovery failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
