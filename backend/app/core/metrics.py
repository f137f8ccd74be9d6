"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'onsite_billing_webhook_events_total',
        'Total number of Stripe webhook events received',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('onsite_billing_webhook_events_total')

# Checkout metrics
try:
    checkout_sessions_counter = Counter(
        'onsite_billing_checkout_sessions_total',
        'Total number of Stripe checkout session attempts',
        ['app', 'status']
    )
except ValueError:
    checkout_sessions_counter = REGISTRY._names_to_collectors.get('onsite_billing_checkout_sessions_total')

# Token metrics
try:
    token_validations_counter = Counter(
        'onsite_billing_token_validations_total',
        'Total number of checkout token validations',
        ['result']
    )
except ValueError:
    token_validations_counter = REGISTRY._names_to_collectors.get('onsite_billing_token_validations_total')
