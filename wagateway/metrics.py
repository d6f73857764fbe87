from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS = Gauge(
    "wagateway_sessions",
    "Number of account connections grouped by lifecycle status",
    ["status"],
)
RECONNECTS_TOTAL = Counter(
    "wagateway_reconnects_total",
    "Total number of scheduled reconnection attempts",
)
EVENT_ERRORS = Counter(
    "wagateway_event_errors_total",
    "Session event processing errors grouped by category",
    ["type"],
)
PAIRING_CODES_TOTAL = Counter(
    "wagateway_pairing_codes_total",
    "Total number of pairing codes delivered by session clients",
)
DISPATCH_TOTAL = Counter(
    "wagateway_dispatch_total",
    "Outbound operations grouped by operation and outcome",
    ["operation", "outcome"],
)

__all__ = [
    "SESSIONS",
    "RECONNECTS_TOTAL",
    "EVENT_ERRORS",
    "PAIRING_CODES_TOTAL",
    "DISPATCH_TOTAL",
]
