"""Prometheus counters for the chat core."""

from prometheus_client import CollectorRegistry, Counter, generate_latest

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

MESSAGES_SENT = Counter(
    "chat_messages_sent_total", "Messages confirmed by the backend", ["kind"], registry=CUSTOM_REGISTRY
)
SEND_FAILURES = Counter(
    "chat_send_failures_total", "Sends rolled back after a backend failure", ["kind"], registry=CUSTOM_REGISTRY
)
MESSAGES_RECEIVED = Counter(
    "chat_messages_received_total", "Messages pushed over the room channel", registry=CUSTOM_REGISTRY
)
READ_RECEIPTS_POSTED = Counter(
    "chat_read_receipts_posted_total", "Mark-read requests by outcome", ["outcome"], registry=CUSTOM_REGISTRY
)
PRESENCE_EVENTS = Counter(
    "chat_presence_events_total", "Presence events received by status", ["status"], registry=CUSTOM_REGISTRY
)
STALE_RESULTS = Counter(
    "chat_stale_results_total", "Network results discarded because their room was left", registry=CUSTOM_REGISTRY
)


def render_metrics() -> bytes:
    """Render the chat metrics in the Prometheus text format."""
    return generate_latest(CUSTOM_REGISTRY)
