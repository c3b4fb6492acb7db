# Overview: Pluggable payment handlers keyed by handler code (cash, card, mpesa, credit).

"""
Payment handlers

WHY: The method a payment uses decides how it behaves: which state a new
payment starts in, whether settlement or cancellation may be refused, which
ledger account the money lands in, and how refunds start.

DESIGN:
- One handler instance per handler code, held in a module registry.
- PaymentMethod.handler selects the handler; the method code is free text.
- register_handler() lets deployments (and tests) plug in their own.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..states import (
    PAYMENT_AUTHORIZED,
    PAYMENT_SETTLED,
    REFUND_PENDING,
    REFUND_SETTLED,
)
from .ledger_service import (
    ACCOUNT_CASH_ON_HAND,
    ACCOUNT_CLEARING_CARD,
    ACCOUNT_CLEARING_MPESA,
)


class PaymentHandlerError(Exception):
    """Raised when no handler is registered for a code."""
    pass


@dataclass
class HandlerResult:
    """Outcome of a handler call. state is the resulting payment/refund state."""
    state: str | None = None
    success: bool = True
    transaction_id: str | None = None
    error_message: str | None = None
    metadata: dict = field(default_factory=dict)


class PaymentHandler:
    code: str = ""
    account_code: str | None = None
    # Money that physically passes through a cashier (session-tagged, counted at close)
    cashier_controlled: bool = False
    # Needs a "method" reconciliation before an accounting period can close
    requires_method_reconciliation: bool = False

    def create_payment(self, order, amount_cents: int, metadata: dict | None) -> HandlerResult:
        return HandlerResult(state=PAYMENT_AUTHORIZED)

    def settle_payment(self, payment) -> HandlerResult:
        return HandlerResult(success=True)

    def cancel_payment(self, payment) -> HandlerResult:
        return HandlerResult(success=True)

    def create_refund(self, payment, amount_cents: int) -> HandlerResult:
        return HandlerResult(state=REFUND_SETTLED)


class CashPaymentHandler(PaymentHandler):
    code = "cash"
    account_code = ACCOUNT_CASH_ON_HAND
    cashier_controlled = True

    def create_payment(self, order, amount_cents, metadata):
        return HandlerResult(state=PAYMENT_SETTLED)


class CardPaymentHandler(PaymentHandler):
    """Authorize now, capture on settle; refunds wait for the processor."""
    code = "card"
    account_code = ACCOUNT_CLEARING_CARD
    requires_method_reconciliation = True

    def create_refund(self, payment, amount_cents):
        return HandlerResult(state=REFUND_PENDING)


class MpesaPaymentHandler(PaymentHandler):
    code = "mpesa"
    account_code = ACCOUNT_CLEARING_MPESA
    cashier_controlled = True
    requires_method_reconciliation = True


class CreditPaymentHandler(PaymentHandler):
    """
    Customer credit (on account).

    Authorizes the order against the customer's account. The money arrives
    later through bulk allocation, which settles with a real tender and
    cancels these authorizations.
    """
    code = "credit"
    account_code = None

    def settle_payment(self, payment):
        return HandlerResult(
            success=False,
            error_message="Credit payments are settled by allocating a customer payment",
        )


_HANDLERS: dict[str, PaymentHandler] = {}


def register_handler(handler: PaymentHandler) -> PaymentHandler:
    _HANDLERS[handler.code] = handler
    return handler


def unregister_handler(code: str) -> None:
    _HANDLERS.pop(code, None)


def get_handler(code: str) -> PaymentHandler:
    handler = _HANDLERS.get(code)
    if handler is None:
        raise PaymentHandlerError(f"No payment handler registered for '{code}'")
    return handler


def handler_codes() -> list[str]:
    return sorted(_HANDLERS)


for _handler in (
    CashPaymentHandler(),
    CardPaymentHandler(),
    MpesaPaymentHandler(),
    CreditPaymentHandler(),
):
    register_handler(_handler)
