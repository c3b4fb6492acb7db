from .channels import Channel, Account, PaymentMethod
from .catalog import ProductVariant, ShippingMethod, Promotion
from .customers import Customer, Supplier, Purchase, PurchasePayment
from .orders import (
    Order, OrderLine, ShippingLine, Surcharge, AppliedCoupon,
    OrderModification, OrderModificationLine, Fulfillment, FulfillmentLine,
)
from .payments import Payment, Refund, RefundLine
from .cashier import CashierSession, CashierSessionBalance, CashDrawerCount
from .ledger import JournalEntry, JournalLine, Reconciliation, ReconciliationAccount, AccountingPeriod
from .audit import AuditEvent

__all__ = [
    'Channel', 'Account', 'PaymentMethod',
    'ProductVariant', 'ShippingMethod', 'Promotion',
    'Customer', 'Supplier', 'Purchase', 'PurchasePayment',
    'Order', 'OrderLine', 'ShippingLine', 'Surcharge', 'AppliedCoupon',
    'OrderModification', 'OrderModificationLine', 'Fulfillment', 'FulfillmentLine',
    'Payment', 'Refund', 'RefundLine',
    'CashierSession', 'CashierSessionBalance', 'CashDrawerCount',
    'JournalEntry', 'JournalLine', 'Reconciliation', 'ReconciliationAccount', 'AccountingPeriod',
    'AuditEvent',
]
