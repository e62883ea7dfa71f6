"""
Prometheus instruments for the scan pipeline (exposed at /metrics).
"""
from __future__ import annotations

from prometheus_client import Counter, Histogram

scans_admitted = Counter(
    "ghostscan_scans_admitted_total",
    "Scan jobs admitted by the plan limiter",
)

scans_rejected = Counter(
    "ghostscan_scans_rejected_total",
    "Scan submissions rejected at admission",
    ["reason"],
)

scans_finished = Counter(
    "ghostscan_scans_finished_total",
    "Scan jobs that reached a terminal state",
    ["status"],
)

scan_duration = Histogram(
    "ghostscan_scan_duration_seconds",
    "Wall-clock duration of one pipeline run",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 900),
)

followers_classified = Counter(
    "ghostscan_followers_classified_total",
    "Follower records scored by the ghost classifier",
)

scan_dispatch_failures = Counter(
    "ghostscan_scan_dispatch_failures_total",
    "Queued scans that could not be handed to an executor",
)

scans_redispatched = Counter(
    "ghostscan_scans_redispatched_total",
    "Queued scans handed out again by the stale scan sweep",
)
