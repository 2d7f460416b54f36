from prometheus_client import Counter, Histogram

# Business Metrics
ecomm_checkout_total = Counter(
    "ecomm_checkout_total",
    "Total checkouts processed",
    ["status"] # Labels: 'success', 'failed'
)

ecomm_checkout_duration_seconds = Histogram(
    "ecomm_checkout_duration_seconds",
    "Checkout duration in seconds"
)

ecomm_inventory_decrement_failures_total = Counter(
    "ecomm_inventory_decrement_failures_total",
    "Post-commit inventory decrements that did not apply",
    ["reason"] # Labels: 'insufficient', 'store_error'
)

ecomm_inventory_reconciled_total = Counter(
    "ecomm_inventory_reconciled_total",
    "Outbox entries resolved by reconciliation",
    ["outcome"] # Labels: 'applied', 'retried', 'abandoned'
)

ecomm_payment_transitions_total = Counter(
    "ecomm_payment_transitions_total",
    "Payment status transitions applied",
    ["processor", "status"]
)

ecomm_webhook_events_total = Counter(
    "ecomm_webhook_events_total",
    "Payment processor webhook deliveries",
    ["processor", "outcome"] # Labels: 'processed', 'duplicate', 'ignored', 'rejected'
)
