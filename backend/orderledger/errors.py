# Overview: Typed business-error results returned by order, payment and refund mutations.

"""
Result-union error members.

WHY: Expected business failures (illegal transition, insufficient stock,
over-refund, ...) are part of a mutation's return type, not transport errors.
Each class below is one union member with a stable error_code and the extra
fields clients pattern-match on.

USAGE:
- Services may `raise` a member internally to abort; the service boundary
  (services.concurrency.run_mutation) rolls back and RETURNS it.
- Routes serialize the returned object with to_dict(); `__typename` is the
  discriminator.
- None of these are retryable by re-issuing the same input.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    ORDER_STATE_TRANSITION_ERROR = "ORDER_STATE_TRANSITION_ERROR"
    CANCEL_ACTIVE_ORDER_ERROR = "CANCEL_ACTIVE_ORDER_ERROR"
    EMPTY_ORDER_LINE_SELECTION_ERROR = "EMPTY_ORDER_LINE_SELECTION_ERROR"
    QUANTITY_TOO_GREAT_ERROR = "QUANTITY_TOO_GREAT_ERROR"
    MULTIPLE_ORDER_ERROR = "MULTIPLE_ORDER_ERROR"
    ORDER_MODIFICATION_ERROR = "ORDER_MODIFICATION_ERROR"
    INSUFFICIENT_STOCK_ERROR = "INSUFFICIENT_STOCK_ERROR"
    NEGATIVE_QUANTITY_ERROR = "NEGATIVE_QUANTITY_ERROR"
    ORDER_LIMIT_ERROR = "ORDER_LIMIT_ERROR"
    INELIGIBLE_SHIPPING_METHOD_ERROR = "INELIGIBLE_SHIPPING_METHOD_ERROR"
    COUPON_CODE_EXPIRED_ERROR = "COUPON_CODE_EXPIRED_ERROR"
    COUPON_CODE_INVALID_ERROR = "COUPON_CODE_INVALID_ERROR"
    COUPON_CODE_LIMIT_ERROR = "COUPON_CODE_LIMIT_ERROR"
    NO_CHANGES_SPECIFIED_ERROR = "NO_CHANGES_SPECIFIED_ERROR"
    ORDER_MODIFICATION_STATE_ERROR = "ORDER_MODIFICATION_STATE_ERROR"
    PAYMENT_METHOD_MISSING_ERROR = "PAYMENT_METHOD_MISSING_ERROR"
    REFUND_PAYMENT_ID_MISSING_ERROR = "REFUND_PAYMENT_ID_MISSING_ERROR"
    ITEMS_ALREADY_FULFILLED_ERROR = "ITEMS_ALREADY_FULFILLED_ERROR"
    INSUFFICIENT_STOCK_ON_HAND_ERROR = "INSUFFICIENT_STOCK_ON_HAND_ERROR"
    FULFILLMENT_STATE_TRANSITION_ERROR = "FULFILLMENT_STATE_TRANSITION_ERROR"
    MANUAL_PAYMENT_STATE_ERROR = "MANUAL_PAYMENT_STATE_ERROR"
    ORDER_PAYMENT_STATE_ERROR = "ORDER_PAYMENT_STATE_ERROR"
    INELIGIBLE_PAYMENT_METHOD_ERROR = "INELIGIBLE_PAYMENT_METHOD_ERROR"
    PAYMENT_DECLINED_ERROR = "PAYMENT_DECLINED_ERROR"
    PAYMENT_FAILED_ERROR = "PAYMENT_FAILED_ERROR"
    PAYMENT_STATE_TRANSITION_ERROR = "PAYMENT_STATE_TRANSITION_ERROR"
    SETTLE_PAYMENT_ERROR = "SETTLE_PAYMENT_ERROR"
    CANCEL_PAYMENT_ERROR = "CANCEL_PAYMENT_ERROR"
    ALREADY_REFUNDED_ERROR = "ALREADY_REFUNDED_ERROR"
    NOTHING_TO_REFUND_ERROR = "NOTHING_TO_REFUND_ERROR"
    PAYMENT_ORDER_MISMATCH_ERROR = "PAYMENT_ORDER_MISMATCH_ERROR"
    REFUND_AMOUNT_ERROR = "REFUND_AMOUNT_ERROR"
    REFUND_ORDER_STATE_ERROR = "REFUND_ORDER_STATE_ERROR"
    REFUND_STATE_TRANSITION_ERROR = "REFUND_STATE_TRANSITION_ERROR"


class ErrorResult(Exception):
    """Base class for every result-union error member."""

    error_code: ErrorCode
    default_message = ""

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def typename(self) -> str:
        return type(self).__name__

    def extra_fields(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        payload = {
            "__typename": self.typename,
            "errorCode": self.error_code.value,
            "message": self.message,
        }
        payload.update(self.extra_fields())
        return payload


class _TransitionError(ErrorResult):
    """Shared shape for state-transition errors: fromState, toState, transitionError."""

    def __init__(self, from_state: str, to_state: str, transition_error: str, message: str | None = None):
        self.from_state = from_state
        self.to_state = to_state
        self.transition_error = transition_error
        super().__init__(message or transition_error)

    def extra_fields(self) -> dict:
        return {
            "fromState": self.from_state,
            "toState": self.to_state,
            "transitionError": self.transition_error,
        }


class _PaymentMessageError(ErrorResult):
    """Shared shape for handler-originated failures: paymentErrorMessage."""

    def __init__(self, payment_error_message: str, message: str | None = None):
        self.payment_error_message = payment_error_message
        super().__init__(message)

    def extra_fields(self) -> dict:
        return {"paymentErrorMessage": self.payment_error_message}


class _CouponError(ErrorResult):
    def __init__(self, coupon_code: str, message: str | None = None):
        self.coupon_code = coupon_code
        super().__init__(message or self.default_message.format(coupon_code=coupon_code))

    def extra_fields(self) -> dict:
        return {"couponCode": self.coupon_code}


# =============================================================================
# ORDER STATE MACHINE
# =============================================================================

class OrderStateTransitionError(_TransitionError):
    error_code = ErrorCode.ORDER_STATE_TRANSITION_ERROR


class CancelActiveOrderError(ErrorResult):
    error_code = ErrorCode.CANCEL_ACTIVE_ORDER_ERROR
    default_message = "Cannot cancel OrderLines from an Order in the \"{order_state}\" state"

    def __init__(self, order_state: str):
        self.order_state = order_state
        super().__init__(self.default_message.format(order_state=order_state))

    def extra_fields(self) -> dict:
        return {"orderState": self.order_state}


class EmptyOrderLineSelectionError(ErrorResult):
    error_code = ErrorCode.EMPTY_ORDER_LINE_SELECTION_ERROR
    default_message = "At least one OrderLine must be specified"


class QuantityTooGreatError(ErrorResult):
    error_code = ErrorCode.QUANTITY_TOO_GREAT_ERROR
    default_message = "The specified quantity is greater than the available OrderItems"


class MultipleOrderError(ErrorResult):
    error_code = ErrorCode.MULTIPLE_ORDER_ERROR
    default_message = "The given OrderItems belong to multiple Orders"


# =============================================================================
# ORDER CONTENTS (active order building and modification)
# =============================================================================

class OrderModificationError(ErrorResult):
    error_code = ErrorCode.ORDER_MODIFICATION_ERROR
    default_message = "Order contents may only be modified when in the \"AddingItems\" state"


class InsufficientStockError(ErrorResult):
    error_code = ErrorCode.INSUFFICIENT_STOCK_ERROR

    def __init__(self, quantity_available: int, message: str | None = None):
        self.quantity_available = quantity_available
        super().__init__(
            message or f"Only {quantity_available} items were available due to insufficient stock"
        )

    def extra_fields(self) -> dict:
        return {"quantityAvailable": self.quantity_available}


class NegativeQuantityError(ErrorResult):
    error_code = ErrorCode.NEGATIVE_QUANTITY_ERROR
    default_message = "The quantity for an OrderItem cannot be negative"


class OrderLimitError(ErrorResult):
    error_code = ErrorCode.ORDER_LIMIT_ERROR

    def __init__(self, max_items: int):
        self.max_items = max_items
        super().__init__(f"Cannot add items. An order may consist of a maximum of {max_items} items")

    def extra_fields(self) -> dict:
        return {"maxItems": self.max_items}


class IneligibleShippingMethodError(ErrorResult):
    error_code = ErrorCode.INELIGIBLE_SHIPPING_METHOD_ERROR
    default_message = "This Order is not eligible for the selected ShippingMethod"


class CouponCodeExpiredError(_CouponError):
    error_code = ErrorCode.COUPON_CODE_EXPIRED_ERROR
    default_message = "Coupon code \"{coupon_code}\" has expired"


class CouponCodeInvalidError(_CouponError):
    error_code = ErrorCode.COUPON_CODE_INVALID_ERROR
    default_message = "Coupon code \"{coupon_code}\" is not valid"


class CouponCodeLimitError(_CouponError):
    error_code = ErrorCode.COUPON_CODE_LIMIT_ERROR
    default_message = "Coupon code \"{coupon_code}\" cannot be used more than {limit} time(s)"

    def __init__(self, coupon_code: str, limit: int):
        self.limit = limit
        super().__init__(coupon_code, self.default_message.format(coupon_code=coupon_code, limit=limit))

    def extra_fields(self) -> dict:
        return {"couponCode": self.coupon_code, "limit": self.limit}


# =============================================================================
# ORDER MODIFICATION
# =============================================================================

class NoChangesSpecifiedError(ErrorResult):
    error_code = ErrorCode.NO_CHANGES_SPECIFIED_ERROR
    default_message = "No changes were specified"


class OrderModificationStateError(ErrorResult):
    error_code = ErrorCode.ORDER_MODIFICATION_STATE_ERROR
    default_message = "An Order can only be modified when in the \"Modifying\" state"


class PaymentMethodMissingError(ErrorResult):
    error_code = ErrorCode.PAYMENT_METHOD_MISSING_ERROR
    default_message = "A payment method must be specified when the price of the Order increases"


class RefundPaymentIdMissingError(ErrorResult):
    error_code = ErrorCode.REFUND_PAYMENT_ID_MISSING_ERROR
    default_message = "A refund paymentId must be specified when the price of the Order decreases"


# =============================================================================
# FULFILLMENT
# =============================================================================

class ItemsAlreadyFulfilledError(ErrorResult):
    error_code = ErrorCode.ITEMS_ALREADY_FULFILLED_ERROR
    default_message = "One or more OrderItems are already fulfilled"


class InsufficientStockOnHandError(ErrorResult):
    error_code = ErrorCode.INSUFFICIENT_STOCK_ON_HAND_ERROR

    def __init__(self, product_variant_id: int, product_variant_name: str, stock_on_hand: int):
        self.product_variant_id = product_variant_id
        self.product_variant_name = product_variant_name
        self.stock_on_hand = stock_on_hand
        super().__init__(
            f"Cannot create a Fulfillment as \"{product_variant_name}\" has insufficient stockOnHand ({stock_on_hand})"
        )

    def extra_fields(self) -> dict:
        return {
            "productVariantId": self.product_variant_id,
            "productVariantName": self.product_variant_name,
            "stockOnHand": self.stock_on_hand,
        }


class FulfillmentStateTransitionError(_TransitionError):
    error_code = ErrorCode.FULFILLMENT_STATE_TRANSITION_ERROR


# =============================================================================
# PAYMENTS
# =============================================================================

class ManualPaymentStateError(ErrorResult):
    error_code = ErrorCode.MANUAL_PAYMENT_STATE_ERROR
    default_message = (
        "A manual payment may only be added when in the \"ArrangingPayment\" "
        "or \"ArrangingAdditionalPayment\" states"
    )


class OrderPaymentStateError(ErrorResult):
    error_code = ErrorCode.ORDER_PAYMENT_STATE_ERROR
    default_message = "A Payment may only be added when Order is in \"ArrangingPayment\" state"


class IneligiblePaymentMethodError(ErrorResult):
    error_code = ErrorCode.INELIGIBLE_PAYMENT_METHOD_ERROR

    def __init__(self, eligibility_checker_message: str):
        self.eligibility_checker_message = eligibility_checker_message
        super().__init__("This Order is not eligible for the selected PaymentMethod")

    def extra_fields(self) -> dict:
        return {"eligibilityCheckerMessage": self.eligibility_checker_message}


class PaymentDeclinedError(_PaymentMessageError):
    error_code = ErrorCode.PAYMENT_DECLINED_ERROR
    default_message = "The payment was declined"


class PaymentFailedError(_PaymentMessageError):
    error_code = ErrorCode.PAYMENT_FAILED_ERROR
    default_message = "The payment failed"


class PaymentStateTransitionError(_TransitionError):
    error_code = ErrorCode.PAYMENT_STATE_TRANSITION_ERROR


class SettlePaymentError(_PaymentMessageError):
    error_code = ErrorCode.SETTLE_PAYMENT_ERROR
    default_message = "Settling the payment failed"


class CancelPaymentError(_PaymentMessageError):
    error_code = ErrorCode.CANCEL_PAYMENT_ERROR
    default_message = "Cancelling the payment failed"


# =============================================================================
# REFUNDS
# =============================================================================

class AlreadyRefundedError(ErrorResult):
    error_code = ErrorCode.ALREADY_REFUNDED_ERROR

    def __init__(self, refund_id: int):
        self.refund_id = refund_id
        super().__init__("Cannot refund an OrderItem which has already been refunded")

    def extra_fields(self) -> dict:
        return {"refundId": self.refund_id}


class NothingToRefundError(ErrorResult):
    error_code = ErrorCode.NOTHING_TO_REFUND_ERROR
    default_message = "Nothing to refund"


class PaymentOrderMismatchError(ErrorResult):
    error_code = ErrorCode.PAYMENT_ORDER_MISMATCH_ERROR
    default_message = "The Payment and OrderLines do not belong to the same Order"


class RefundAmountError(ErrorResult):
    error_code = ErrorCode.REFUND_AMOUNT_ERROR

    def __init__(self, maximum_refundable: int):
        self.maximum_refundable = maximum_refundable
        super().__init__(f"The refund amount exceeds the maximum refundable amount of {maximum_refundable}")

    def extra_fields(self) -> dict:
        return {"maximumRefundable": self.maximum_refundable}


class RefundOrderStateError(ErrorResult):
    error_code = ErrorCode.REFUND_ORDER_STATE_ERROR

    def __init__(self, order_state: str):
        self.order_state = order_state
        super().__init__(f"Cannot refund an Order in the \"{order_state}\" state")

    def extra_fields(self) -> dict:
        return {"orderState": self.order_state}


class RefundStateTransitionError(_TransitionError):
    error_code = ErrorCode.REFUND_STATE_TRANSITION_ERROR
