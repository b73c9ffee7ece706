"""
Centralized Prometheus metrics definitions for the Repertoire Builder.

This module uses the prometheus-client library to define all metrics that will
be exposed by the application for monitoring and alerting. Grouping them here
provides a single, clear overview of the application's instrumentation points.
"""
from prometheus_client import Counter, Histogram

# A common prefix for all application-specific metrics.
PREFIX = "repertoire_builder"

# --- Tree Builder Metrics ---

TREE_NODES_ADDED_TOTAL = Counter(
    f"{PREFIX}_tree_nodes_added_total",
    "Total number of move nodes created by the tree builder.",
)

TREE_BUILDS_TOTAL = Counter(
    f"{PREFIX}_tree_builds_total",
    "Total number of tree-build runs, by terminal outcome.",
    ["outcome"],  # e.g., outcome="completed", "no_progress", "cancelled", "failed"
)

TREE_NODES_SKIPPED_TOTAL = Counter(
    f"{PREFIX}_tree_nodes_skipped_total",
    "Total number of nodes the builder did not expand.",
    ["reason"],  # e.g., reason="transposition", "no_candidate", "game_over"
)

# --- Engine & Cache Metrics ---

RECOMMENDATIONS_TOTAL = Counter(
    f"{PREFIX}_recommendations_total",
    "Total number of engine move recommendations requested.",
    ["source"],  # e.g., source="cache_hit", "engine_run"
)

ENGINE_QUERY_DURATION_SECONDS = Histogram(
    f"{PREFIX}_engine_query_duration_seconds",
    "Histogram of the time taken for an engine to return lines for one position."
)

QUEUE_WAIT_SECONDS = Histogram(
    f"{PREFIX}_queue_wait_seconds",
    "Time a task spent waiting for its turn in an exclusive queue.",
    ["queue"],
)

# --- Batch Analysis Metrics ---

GAMES_ANALYZED_TOTAL = Counter(
    f"{PREFIX}_games_analyzed_total",
    "Total number of games successfully analyzed and saved.",
)

GAMES_FAILED_TOTAL = Counter(
    f"{PREFIX}_games_failed_total",
    "Total number of games whose analysis failed.",
    ["error_type"],
)

GAME_ANALYSIS_DURATION_SECONDS = Histogram(
    f"{PREFIX}_game_analysis_duration_seconds",
    "Histogram of the time taken to fully analyze a single game.",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, float("inf"))
)

# --- Persistence Metrics ---

DB_TRANSIENT_ERRORS_TOTAL = Counter(
    f"{PREFIX}_db_transient_errors_total",
    "Total number of transient database errors that triggered a retry.",
    ["db_type"] # e.g., db_type="cache", "stats"
)
