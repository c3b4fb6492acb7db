# Overview: State names and allowed-transition tables for orders, payments, refunds and fulfillments.

"""
Lifecycle state tables.

These are plain data so that models can expose next_states in to_dict()
without importing the service layer. Guards (content checks such as
"payments cover the total") live in services/order_state_service.py.
"""

# =============================================================================
# ORDER STATES
# =============================================================================

ORDER_ADDING_ITEMS = "AddingItems"
ORDER_ARRANGING_PAYMENT = "ArrangingPayment"
ORDER_PAYMENT_AUTHORIZED = "PaymentAuthorized"
ORDER_PAYMENT_SETTLED = "PaymentSettled"
ORDER_PARTIALLY_SHIPPED = "PartiallyShipped"
ORDER_SHIPPED = "Shipped"
ORDER_PARTIALLY_DELIVERED = "PartiallyDelivered"
ORDER_DELIVERED = "Delivered"
ORDER_CANCELLED = "Cancelled"
ORDER_MODIFYING = "Modifying"
ORDER_ARRANGING_ADDITIONAL_PAYMENT = "ArrangingAdditionalPayment"

ORDER_STATES = (
    ORDER_ADDING_ITEMS,
    ORDER_ARRANGING_PAYMENT,
    ORDER_PAYMENT_AUTHORIZED,
    ORDER_PAYMENT_SETTLED,
    ORDER_PARTIALLY_SHIPPED,
    ORDER_SHIPPED,
    ORDER_PARTIALLY_DELIVERED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_MODIFYING,
    ORDER_ARRANGING_ADDITIONAL_PAYMENT,
)

TERMINAL_ORDER_STATES = (ORDER_CANCELLED, ORDER_DELIVERED)

ORDER_TRANSITIONS = {
    ORDER_ADDING_ITEMS: (ORDER_ARRANGING_PAYMENT, ORDER_CANCELLED),
    ORDER_ARRANGING_PAYMENT: (
        ORDER_ADDING_ITEMS,
        ORDER_PAYMENT_AUTHORIZED,
        ORDER_PAYMENT_SETTLED,
        ORDER_CANCELLED,
    ),
    ORDER_PAYMENT_AUTHORIZED: (ORDER_PAYMENT_SETTLED, ORDER_MODIFYING, ORDER_CANCELLED),
    ORDER_PAYMENT_SETTLED: (
        ORDER_PARTIALLY_SHIPPED,
        ORDER_SHIPPED,
        ORDER_PARTIALLY_DELIVERED,
        ORDER_DELIVERED,
        ORDER_MODIFYING,
        ORDER_CANCELLED,
    ),
    ORDER_PARTIALLY_SHIPPED: (
        ORDER_SHIPPED,
        ORDER_PARTIALLY_DELIVERED,
        ORDER_DELIVERED,
        ORDER_MODIFYING,
        ORDER_CANCELLED,
    ),
    ORDER_SHIPPED: (ORDER_PARTIALLY_DELIVERED, ORDER_DELIVERED, ORDER_MODIFYING),
    ORDER_PARTIALLY_DELIVERED: (ORDER_DELIVERED, ORDER_MODIFYING),
    ORDER_MODIFYING: (
        ORDER_ARRANGING_ADDITIONAL_PAYMENT,
        ORDER_PAYMENT_AUTHORIZED,
        ORDER_PAYMENT_SETTLED,
        ORDER_PARTIALLY_SHIPPED,
        ORDER_SHIPPED,
        ORDER_PARTIALLY_DELIVERED,
    ),
    ORDER_ARRANGING_ADDITIONAL_PAYMENT: (
        ORDER_PAYMENT_AUTHORIZED,
        ORDER_PAYMENT_SETTLED,
        ORDER_CANCELLED,
    ),
    ORDER_DELIVERED: (),
    ORDER_CANCELLED: (),
}


def next_order_states(state: str) -> list[str]:
    return list(ORDER_TRANSITIONS.get(state, ()))


# =============================================================================
# PAYMENT STATES
# =============================================================================

PAYMENT_CREATED = "Created"
PAYMENT_AUTHORIZED = "Authorized"
PAYMENT_SETTLED = "Settled"
PAYMENT_DECLINED = "Declined"
PAYMENT_CANCELLED = "Cancelled"
PAYMENT_ERROR = "Error"

PAYMENT_STATES = (
    PAYMENT_CREATED,
    PAYMENT_AUTHORIZED,
    PAYMENT_SETTLED,
    PAYMENT_DECLINED,
    PAYMENT_CANCELLED,
    PAYMENT_ERROR,
)

# Settled payments are never cancelled; money goes back through a Refund.
PAYMENT_TRANSITIONS = {
    PAYMENT_CREATED: (
        PAYMENT_AUTHORIZED,
        PAYMENT_SETTLED,
        PAYMENT_DECLINED,
        PAYMENT_ERROR,
        PAYMENT_CANCELLED,
    ),
    PAYMENT_AUTHORIZED: (PAYMENT_SETTLED, PAYMENT_CANCELLED, PAYMENT_DECLINED, PAYMENT_ERROR),
    PAYMENT_SETTLED: (),
    PAYMENT_DECLINED: (),
    PAYMENT_CANCELLED: (),
    PAYMENT_ERROR: (),
}


def next_payment_states(state: str) -> list[str]:
    return list(PAYMENT_TRANSITIONS.get(state, ()))


# =============================================================================
# REFUND STATES
# =============================================================================

REFUND_PENDING = "Pending"
REFUND_SETTLED = "Settled"
REFUND_FAILED = "Failed"

REFUND_TRANSITIONS = {
    REFUND_PENDING: (REFUND_SETTLED, REFUND_FAILED),
    REFUND_SETTLED: (),
    REFUND_FAILED: (),
}


# =============================================================================
# FULFILLMENT STATES
# =============================================================================

FULFILLMENT_PENDING = "Pending"
FULFILLMENT_SHIPPED = "Shipped"
FULFILLMENT_DELIVERED = "Delivered"
FULFILLMENT_CANCELLED = "Cancelled"

FULFILLMENT_STATES = (
    FULFILLMENT_PENDING,
    FULFILLMENT_SHIPPED,
    FULFILLMENT_DELIVERED,
    FULFILLMENT_CANCELLED,
)

FULFILLMENT_TRANSITIONS = {
    FULFILLMENT_PENDING: (FULFILLMENT_SHIPPED, FULFILLMENT_DELIVERED, FULFILLMENT_CANCELLED),
    FULFILLMENT_SHIPPED: (FULFILLMENT_DELIVERED, FULFILLMENT_CANCELLED),
    FULFILLMENT_DELIVERED: (),
    FULFILLMENT_CANCELLED: (),
}


def next_fulfillment_states(state: str) -> list[str]:
    return list(FULFILLMENT_TRANSITIONS.get(state, ()))
