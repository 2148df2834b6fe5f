from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from invoicing.models.invoice import STATUSES, Invoice
from invoicing.services.lifecycle import effective_status

TOP_CLIENTS_DEFAULT = 10
TOP_CLIENTS_MAX = 50
HISTORY_DAYS_DEFAULT = 30
HISTORY_DAYS_MAX = 365


class StatusBucket(BaseModel):
    count: int = 0
    total: Decimal = Decimal("0.00")


class InvoiceStatistics(BaseModel):
    total_invoices: int = 0
    status_breakdown: Dict[str, StatusBucket] = Field(default_factory=dict)
    overdue_invoices: int = 0
    revenue_by_currency: Dict[str, Decimal] = Field(default_factory=dict)


class ClientRevenue(BaseModel):
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    currency: str
    total_revenue: Decimal = Decimal("0.00")
    invoice_count: int = 0
    last_invoice_date: Optional[date] = None


class PaymentHistory(BaseModel):
    days: int
    payments: List[Invoice] = Field(default_factory=list)
    count: int = 0
    total_by_currency: Dict[str, Decimal] = Field(default_factory=dict)


def statistics(records: Iterable[Invoice], now: Optional[datetime] = None) -> InvoiceStatistics:
    """Répartition par statut stocké ; le retard est dérivé à ``now``."""
    stats = InvoiceStatistics(status_breakdown={s: StatusBucket() for s in STATUSES})
    for inv in records:
        stats.total_invoices += 1
        bucket = stats.status_breakdown[inv.status]
        bucket.count += 1
        bucket.total += inv.total
        if effective_status(inv, now) == "overdue":
            stats.overdue_invoices += 1
        if inv.status == "paid":
            cur = inv.currency
            stats.revenue_by_currency[cur] = stats.revenue_by_currency.get(cur, Decimal("0.00")) + inv.total
    return stats


def top_clients(records: Iterable[Invoice], limit: int = TOP_CLIENTS_DEFAULT) -> List[ClientRevenue]:
    """Chiffre encaissé par client (et par devise : on n'additionne pas des devises)."""
    groups: Dict[Tuple[Optional[str], str], ClientRevenue] = {}
    for inv in records:
        if inv.status != "paid":
            continue
        key = (inv.client_id, inv.currency)
        row = groups.get(key)
        if row is None:
            row = groups[key] = ClientRevenue(client_id=inv.client_id, client_name=inv.client_name, currency=inv.currency)
        row.total_revenue += inv.total
        row.invoice_count += 1
        if row.last_invoice_date is None or inv.issue_date > row.last_invoice_date:
            row.last_invoice_date = inv.issue_date
            row.client_name = inv.client_name or row.client_name
    rows = sorted(groups.values(), key=lambda r: (-r.total_revenue, r.client_id or "", r.currency))
    return rows[:limit]


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def payment_history(records: Iterable[Invoice], now: datetime, days: int = HISTORY_DAYS_DEFAULT) -> PaymentHistory:
    """Factures payées sur les ``days`` derniers jours, plus récentes d'abord."""
    now = _aware(now)
    since = now - timedelta(days=days)
    paid = [
        inv for inv in records
        if inv.status == "paid" and inv.paid_date is not None and since <= _aware(inv.paid_date) <= now
    ]
    paid.sort(key=lambda inv: (_aware(inv.paid_date), inv.id), reverse=True)
    totals: Dict[str, Decimal] = {}
    for inv in paid:
        totals[inv.currency] = totals.get(inv.currency, Decimal("0.00")) + inv.total
    return PaymentHistory(days=days, payments=paid, count=len(paid), total_by_currency=totals)
