"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

try:
    ipn_events_counter = Counter(
        'ipnledger_ipn_events_total',
        'Total number of processed IPN events',
        ['processor', 'outcome']
    )
except ValueError:
    ipn_events_counter = REGISTRY._names_to_collectors.get('ipnledger_ipn_events_total')

try:
    deliveries_counter = Counter(
        'ipnledger_deliveries_total',
        'Total number of product delivery attempts',
        ['method', 'status']
    )
except ValueError:
    deliveries_counter = REGISTRY._names_to_collectors.get('ipnledger_deliveries_total')

try:
    order_create_conflicts_counter = Counter(
        'ipnledger_order_create_conflicts_total',
        'Order inserts that lost a race on subscription_id and fell back to update'
    )
except ValueError:
    order_create_conflicts_counter = REGISTRY._names_to_collectors.get('ipnledger_order_create_conflicts_total')
