"""Prometheus metrics definitions for cellttl.

All metrics use the ``cellttl_`` prefix for namespace isolation. They are
registered in the global ``prometheus_client`` registry; exposing them is
left to the embedding application.

Counters reset to zero on restart. Module-level references stay ``None``
until ``init_metrics()`` is called, and every call site checks for that,
so a process that never enables metrics registers no collectors.
"""

from __future__ import annotations

from prometheus_client import Counter

_initialized: bool = False

# ---------------------------------------------------------------------------
# Reaper pass counter  (labels: status)
# ---------------------------------------------------------------------------
reaper_runs_total: Counter | None = None

# ---------------------------------------------------------------------------
# Per-table counters  (labels: table)
# ---------------------------------------------------------------------------
cells_expired_total: Counter | None = None
reaper_chunk_failures_total: Counter | None = None
bulk_rejections_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; only the first call registers collectors.
    """
    global _initialized
    global reaper_runs_total, cells_expired_total
    global reaper_chunk_failures_total, bulk_rejections_total

    if _initialized:
        return

    reaper_runs_total = Counter(
        "cellttl_reaper_runs_total",
        "Total reaper passes by outcome",
        ["status"],
    )

    cells_expired_total = Counter(
        "cellttl_cells_expired_total",
        "Total cells deleted by the reaper after their TTL elapsed",
        ["table"],
    )

    reaper_chunk_failures_total = Counter(
        "cellttl_reaper_chunk_failures_total",
        "Total reaper chunks whose deletions failed",
        ["table"],
    )

    bulk_rejections_total = Counter(
        "cellttl_bulk_rejections_total",
        "Total bulk inserts rejected for exceeding the configured limit",
        ["table"],
    )

    _initialized = True
