# Overview: Service-layer suppliers, purchases and bulk supplier payment allocation.

"""
Supplier Service

RULES:
- A credit purchase posts Dr PURCHASES / Cr ACCOUNTS_PAYABLE and starts
  "pending"; a cash purchase is paid at once from the paying account.
- Bulk supplier payments settle unpaid credit purchases oldest first (or in
  the order of purchase_ids), each getting min(remaining, owed).
- payment_status: pending (nothing paid) -> partial -> paid.
- Same conservation as customer allocation:
    sum(amountPaid) + excessPayment == payment_amount
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import Purchase, PurchasePayment, Supplier
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import ACCOUNT_BANK_MAIN, ACCOUNT_CASH_ON_HAND, ACCOUNT_PAYABLE, get_account
from .posting_service import post_purchase, post_supplier_payment


class SupplierError(Exception):
    """Raised for supplier, purchase and allocation input errors."""
    pass


STATUS_PENDING = "pending"
STATUS_PARTIAL = "partial"
STATUS_PAID = "paid"


def _run(func):
    try:
        return run_with_retry(func)
    except Exception:
        db.session.rollback()
        raise


def _paying_account(channel_id: int, account_code: str | None, default: str) -> str:
    code = account_code or default
    if code == ACCOUNT_PAYABLE:
        raise SupplierError("Suppliers cannot be paid from ACCOUNTS_PAYABLE")
    if not get_account(channel_id, code):
        raise SupplierError(f"Unknown account {code}")
    return code


def _status_for(purchase: Purchase) -> str:
    paid = purchase.paid_cents
    if paid <= 0:
        return STATUS_PENDING
    if paid >= purchase.total_cents:
        return STATUS_PAID
    return STATUS_PARTIAL


@dataclass
class SupplierPaymentAllocationResult:
    purchases_paid: list[dict] = field(default_factory=list)
    total_allocated: int = 0
    remaining_balance: int = 0
    excess_payment: int = 0

    def to_dict(self) -> dict:
        return {
            "__typename": "SupplierPaymentAllocationResult",
            "purchasesPaid": [
                {
                    "purchaseId": item["purchase_id"],
                    "purchaseReference": item["purchase_reference"],
                    "amountPaid": str(item["amount_paid"]),
                }
                for item in self.purchases_paid
            ],
            "totalAllocated": str(self.total_allocated),
            "remainingBalance": str(self.remaining_balance),
            "excessPayment": str(self.excess_payment),
        }


# =============================================================================
# SUPPLIERS & PURCHASES
# =============================================================================

def create_supplier(*, channel_id: int, name: str) -> Supplier:
    name = (name or "").strip()
    if not name:
        raise SupplierError("Supplier name is required")

    def _op():
        supplier = Supplier(channel_id=channel_id, name=name)
        db.session.add(supplier)
        db.session.commit()
        return supplier

    return _run(_op)


def get_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if not supplier:
        raise SupplierError(f"Supplier {supplier_id} not found")
    return supplier


def record_purchase(
    *,
    supplier_id: int,
    reference: str,
    total_cents: int,
    is_credit_purchase: bool = True,
    paid_from_account: str | None = None,
    actor_user_id: int | None = None,
) -> Purchase:
    """
    Record a stock purchase and post it.

    Args:
        supplier_id: Supplier the stock came from
        reference: Supplier invoice / delivery note number
        total_cents: Purchase total (cents, > 0)
        is_credit_purchase: True to owe the supplier, False to pay now
        paid_from_account: Paying account for cash purchases (default CASH_ON_HAND)

    Raises:
        SupplierError: unknown supplier/account or a non-positive total
    """
    if total_cents is None or int(total_cents) <= 0:
        raise SupplierError("total_cents must be a positive integer number of cents")
    if not (reference or "").strip():
        raise SupplierError("Purchase reference is required")

    def _op():
        supplier = get_supplier(supplier_id)
        purchase = Purchase(
            channel_id=supplier.channel_id,
            supplier=supplier,
            reference=reference.strip(),
            total_cents=int(total_cents),
            is_credit_purchase=bool(is_credit_purchase),
            payment_status=STATUS_PENDING if is_credit_purchase else STATUS_PAID,
        )
        db.session.add(purchase)
        db.session.flush()
        if is_credit_purchase:
            post_purchase(purchase)
        else:
            post_purchase(
                purchase,
                paid_from_account=_paying_account(supplier.channel_id, paid_from_account, ACCOUNT_CASH_ON_HAND),
            )

        append_audit_event(
            channel_id=supplier.channel_id,
            event_type="PURCHASE_RECORDED",
            event_category="purchasing",
            entity_type="purchase",
            entity_id=purchase.id,
            actor_user_id=actor_user_id,
            payload={"supplier_id": supplier.id, "total": purchase.total_cents, "credit": purchase.is_credit_purchase},
        )
        db.session.commit()
        return purchase

    return _run(_op)


# =============================================================================
# BULK SUPPLIER PAYMENT
# =============================================================================

def _unpaid_purchases(supplier: Supplier, purchase_ids: list[int] | None) -> list[Purchase]:
    base = db.session.query(Purchase).filter(
        Purchase.supplier_id == supplier.id,
        Purchase.is_credit_purchase.is_(True),
        Purchase.payment_status != STATUS_PAID,
    )
    if purchase_ids:
        ids = [int(purchase_id) for purchase_id in purchase_ids]
        found = {p.id: p for p in base.filter(Purchase.id.in_(ids)).all()}
        missing = [purchase_id for purchase_id in ids if purchase_id not in found]
        if missing:
            raise SupplierError(f"Purchases {missing} are not unpaid credit purchases of supplier {supplier.id}")
        return [found[purchase_id] for purchase_id in dict.fromkeys(ids)]
    return base.order_by(Purchase.created_at.asc(), Purchase.id.asc()).all()


def allocate_bulk_supplier_payment(
    *,
    supplier_id: int,
    payment_amount: int,
    purchase_ids: list[int] | None = None,
    debit_account_code: str | None = None,
    actor_user_id: int | None = None,
) -> SupplierPaymentAllocationResult:
    """
    Spread one payment to a supplier across their unpaid credit purchases.

    debit_account_code names the account the money leaves (default BANK_MAIN).
    """
    if payment_amount is None or int(payment_amount) <= 0:
        raise SupplierError("payment_amount must be a positive integer number of cents")
    payment_amount = int(payment_amount)

    def _op():
        supplier = lock_for_update(db.session.query(Supplier).filter_by(id=supplier_id)).first()
        if not supplier:
            raise SupplierError(f"Supplier {supplier_id} not found")
        supplier.last_allocation_at = utcnow()
        paying_account = _paying_account(supplier.channel_id, debit_account_code, ACCOUNT_BANK_MAIN)

        result = SupplierPaymentAllocationResult()
        remaining = payment_amount
        for purchase in _unpaid_purchases(supplier, purchase_ids):
            owed = max(0, purchase.total_cents - purchase.paid_cents)
            pay = min(remaining, owed)
            if pay > 0:
                purchase_payment = PurchasePayment(
                    channel_id=supplier.channel_id,
                    purchase=purchase,
                    supplier_id=supplier.id,
                    amount_cents=pay,
                )
                db.session.add(purchase_payment)
                db.session.flush()
                post_supplier_payment(purchase_payment, paid_from_account=paying_account)
                purchase.payment_status = _status_for(purchase)
                result.purchases_paid.append({
                    "purchase_id": purchase.id,
                    "purchase_reference": purchase.reference,
                    "amount_paid": pay,
                })
                result.total_allocated += pay
                remaining -= pay
            result.remaining_balance += owed - pay

        result.excess_payment = remaining

        append_audit_event(
            channel_id=supplier.channel_id,
            event_type="SUPPLIER_PAYMENT_ALLOCATED",
            event_category="purchasing",
            entity_type="supplier",
            entity_id=supplier.id,
            actor_user_id=actor_user_id,
            payload={
                "payment_amount": payment_amount,
                "total_allocated": result.total_allocated,
                "excess_payment": result.excess_payment,
                "purchases": [item["purchase_id"] for item in result.purchases_paid],
            },
        )
        db.session.commit()
        current_app.logger.info(
            "Supplier %s paid %s across %d purchase(s); excess %s",
            supplier.id, result.total_allocated, len(result.purchases_paid), result.excess_payment,
        )
        return result

    return _run(_op)
