"""
PostgreSQL flow store for state discovery.

Handles:
- Sampling raw flow rows (with destination address as sequence group)
- Writing HMM state labels back onto flows
- Aggregating per-state signatures over the written labels
- Drill-down queries for a single state (sample flows, hosts, connection states)
"""

from collections.abc import Mapping

import pandas as pd
import psycopg2.extras
import structlog
from psycopg2 import sql

from src.core.database import PostgresConnection

from .models import DiscoveryConfig

logger = structlog.get_logger(__name__)


class FlowDatabase(PostgresConnection):
    """Flow store backed by a PostgreSQL ``flows`` table"""

    def __init__(self, config: DiscoveryConfig):
        super().__init__(
            host=config.postgres_host,
            port=config.postgres_port,
            database=config.postgres_database,
            user=config.postgres_user,
            password=config.postgres_password,
        )
        self.config = config
        self.table = sql.Identifier(config.flow_table)

    def ensure_hmm_state_column(self) -> None:
        query = sql.SQL("ALTER TABLE {table} ADD COLUMN IF NOT EXISTS hmm_state INTEGER").format(
            table=self.table
        )
        self.execute(query)
        logger.info("Ensured hmm_state column exists", table=self.config.flow_table)

    def extract_features(self, sample_size: int | None = None) -> pd.DataFrame:
        """Random sample of raw flow rows, ordered by flow start time

        The inter-flow gap is the time since the previous flow to the same
        destination within the sample (0 for the first one).
        """
        limit = sql.SQL("LIMIT {}").format(sql.Literal(int(sample_size))) if sample_size else sql.SQL("")

        query = sql.SQL(
            """
            WITH sample AS (
                SELECT *
                FROM {table}
                ORDER BY random()
                {limit}
            )
            SELECT
                id AS row_id,
                ipv4_dst_addr AS group_id,
                in_bytes,
                out_bytes,
                in_pkts,
                out_pkts,
                flow_duration_milliseconds AS flow_duration_ms,
                protocol,
                l4_dst_port,
                COALESCE(src_to_dst_iat_avg, 0) AS src_to_dst_iat_avg,
                COALESCE(conn_state, '') AS conn_state,
                COALESCE(GREATEST(
                    flow_start_milliseconds - LAG(flow_start_milliseconds) OVER (
                        PARTITION BY ipv4_dst_addr ORDER BY flow_start_milliseconds, id
                    ),
                    0
                ), 0) AS inter_flow_gap_ms
            FROM sample
            ORDER BY flow_start_milliseconds, id
            """
        ).format(table=self.table, limit=limit)

        df = self.fetch_frame(query)
        logger.debug("Extracted flow rows", rows=len(df), sample_size=sample_size)
        return df

    def write_state_assignments(self, assignments: Mapping, replace: bool = True) -> None:
        """Label flows with their state, ``config.write_batch_size`` rows per statement

        Args:
            assignments: Mapping of flow id to state index
            replace: Clear labels from any previous run first, so signatures
                only reflect this run's flows
        """
        if not assignments:
            return

        update = sql.SQL(
            """
            UPDATE {table} AS f
            SET hmm_state = v.state
            FROM (VALUES %s) AS v(row_id, state)
            WHERE f.id = v.row_id
            """
        ).format(table=self.table)
        rows = [(row_id, int(state)) for row_id, state in assignments.items()]

        with self.get_cursor() as cursor:
            if replace:
                cursor.execute(
                    sql.SQL("UPDATE {table} SET hmm_state = NULL WHERE hmm_state IS NOT NULL").format(
                        table=self.table
                    )
                )
            psycopg2.extras.execute_values(
                cursor, update, rows, page_size=self.config.write_batch_size
            )

        logger.info("Wrote state assignments", rows=len(rows))

    def get_state_signatures(self) -> pd.DataFrame:
        query = sql.SQL(
            """
            SELECT
                hmm_state AS state_id,
                COUNT(*) AS flow_count,
                AVG(in_bytes) AS avg_in_bytes,
                AVG(out_bytes) AS avg_out_bytes,
                AVG(in_bytes::double precision / (out_bytes + 1)) AS bytes_ratio,
                AVG(flow_duration_milliseconds) AS avg_duration_ms,
                AVG((in_pkts + out_pkts)::double precision
                    / GREATEST(flow_duration_milliseconds / 1000.0, 0.001)) AS avg_pkts_per_sec,
                AVG(CASE WHEN protocol = 6 THEN 1.0 ELSE 0.0 END) AS tcp_pct,
                AVG(CASE WHEN protocol = 17 THEN 1.0 ELSE 0.0 END) AS udp_pct,
                AVG(CASE WHEN protocol = 1 THEN 1.0 ELSE 0.0 END) AS icmp_pct,
                AVG(CASE WHEN l4_dst_port <= 1023 THEN 1.0 ELSE 0.0 END) AS well_known_pct,
                AVG(CASE WHEN l4_dst_port BETWEEN 1024 AND 49151 THEN 1.0 ELSE 0.0 END)
                    AS registered_pct,
                AVG(CASE WHEN l4_dst_port >= 49152 THEN 1.0 ELSE 0.0 END) AS ephemeral_pct,
                AVG(CASE WHEN conn_state = 'SF' THEN 1.0 ELSE 0.0 END) AS conn_complete_pct,
                AVG(CASE WHEN conn_state = 'S0' THEN 1.0 ELSE 0.0 END) AS no_reply_pct,
                AVG(CASE WHEN conn_state IN ('REJ', 'RSTO', 'RSTR') THEN 1.0 ELSE 0.0 END)
                    AS rejected_pct,
                AVG((in_bytes + out_bytes)::double precision
                    / GREATEST(in_pkts + out_pkts, 1)) AS avg_bytes_per_pkt,
                AVG(gap_ms) AS avg_inter_flow_gap_ms
            FROM (
                SELECT
                    *,
                    flow_start_milliseconds - LAG(flow_start_milliseconds) OVER (
                        PARTITION BY ipv4_dst_addr ORDER BY flow_start_milliseconds, id
                    ) AS gap_ms
                FROM {table}
            ) AS f
            WHERE hmm_state IS NOT NULL
            GROUP BY hmm_state
            ORDER BY hmm_state
            """
        ).format(table=self.table)

        df = self.fetch_frame(query)
        logger.debug("Computed state signatures", states=len(df))
        return df

    # ========================================
    # Single-state drill-down
    # ========================================

    def get_sample_flows(self, state_id: int, limit: int = 20) -> pd.DataFrame:
        """Random flows labelled with ``state_id``"""
        query = sql.SQL(
            """
            SELECT
                ipv4_src_addr, ipv4_dst_addr, protocol, l4_dst_port,
                in_bytes, out_bytes, flow_duration_milliseconds,
                conn_state, service, mitre_tactic, mitre_technique
            FROM {table}
            WHERE hmm_state = %s
            ORDER BY random()
            LIMIT %s
            """
        ).format(table=self.table)
        return self.fetch_frame(query, (int(state_id), int(limit)))

    def get_state_top_hosts(self, state_id: int, limit: int = 5) -> dict[str, pd.DataFrame]:
        """Most frequent source and destination addresses of a state"""
        hosts = {}
        for key, column in (("src_hosts", "ipv4_src_addr"), ("dst_hosts", "ipv4_dst_addr")):
            query = sql.SQL(
                """
                SELECT {column} AS ip, COUNT(*) AS count
                FROM {table}
                WHERE hmm_state = %s
                GROUP BY {column}
                ORDER BY count DESC
                LIMIT %s
                """
            ).format(column=sql.Identifier(column), table=self.table)
            hosts[key] = self.fetch_frame(query, (int(state_id), int(limit)))
        return hosts

    def get_state_timeline(self, state_id: int, bucket_minutes: int = 60) -> pd.DataFrame:
        """Flow counts of a state per time bucket of flow start"""
        bucket_ms = int(bucket_minutes) * 60_000
        query = sql.SQL(
            """
            SELECT (flow_start_milliseconds / %s) * %s AS bucket, COUNT(*) AS count
            FROM {table}
            WHERE hmm_state = %s
            GROUP BY bucket
            ORDER BY bucket
            """
        ).format(table=self.table)
        return self.fetch_frame(query, (bucket_ms, bucket_ms, int(state_id)))

    def get_state_conn_states(self, state_id: int, limit: int = 10) -> pd.DataFrame:
        """Connection-state distribution of a state"""
        query = sql.SQL(
            """
            SELECT conn_state AS state, COUNT(*) AS count
            FROM {table}
            WHERE hmm_state = %s AND conn_state IS NOT NULL
            GROUP BY conn_state
            ORDER BY count DESC
            LIMIT %s
            """
        ).format(table=self.table)
        return self.fetch_frame(query, (int(state_id), int(limit)))

    def update_state_tactic(self, state_id: int, tactic: str) -> int:
        """Tag every flow of a state with an analyst-assigned MITRE tactic"""
        query = sql.SQL("UPDATE {table} SET mitre_tactic = %s WHERE hmm_state = %s").format(
            table=self.table
        )
        updated = self.execute(query, (tactic, int(state_id)))
        logger.info("Updated state tactic", state_id=state_id, tactic=tactic, flows=updated)
        return updated
