from .setup import setup_observability
from .metrics import (
    ecomm_checkout_total,
    ecomm_checkout_duration_seconds,
    ecomm_inventory_decrement_failures_total,
    ecomm_inventory_reconciled_total,
    ecomm_payment_transitions_total,
    ecomm_webhook_events_total,
)
