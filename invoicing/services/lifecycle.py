"""
Cycle de vie d'une facture : table des transitions, validation avant envoi,
dérivation du retard de paiement.

Toutes les opérations renvoient une NOUVELLE facture (ou lèvent) : jamais
d'application partielle.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from invoicing.errors import FieldError, InvalidTransition, ValidationFailed
from invoicing.models.common import today, to_decimal, utcnow
from invoicing.models.invoice import STATUSES, Invoice

log = logging.getLogger(__name__)

TERMINAL: FrozenSet[str] = frozenset({"paid", "cancelled"})
OPEN: FrozenSet[str] = frozenset({"sent", "viewed"})

# from -> statuts cibles autorisés (la ré-entrée from == to est toujours permise)
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "draft": frozenset({"sent", "cancelled"}),
    "sent": frozenset({"viewed", "paid", "overdue", "cancelled"}),
    "viewed": frozenset({"paid", "overdue", "cancelled"}),
    "overdue": frozenset({"paid", "cancelled"}),
    "paid": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return current in TRANSITIONS
    return target in TRANSITIONS.get(current, frozenset())


def allowed_targets(current: str) -> List[str]:
    targets = TRANSITIONS.get(current, frozenset())
    return [s for s in STATUSES if s in targets]


# ---------- Dates ----------

def _parse_date(v: Any) -> Optional[date]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v).strip()[:10])
    except ValueError:
        return None


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else utcnow()


def is_overdue(invoice: Invoice, now: Optional[datetime | date] = None) -> bool:
    """Envoyée (ou vue), non payée, échéance dépassée. Jamais persisté par une lecture."""
    if invoice.status not in OPEN or invoice.due_date is None:
        return False
    return invoice.due_date < today(now)


def effective_status(invoice: Invoice, now: Optional[datetime | date] = None) -> str:
    return "overdue" if is_overdue(invoice, now) else invoice.status


def days_until_due(invoice: Invoice, now: Optional[datetime | date] = None) -> Optional[int]:
    if invoice.due_date is None:
        return None
    return (invoice.due_date - today(now)).days


# ---------- Validation ----------

def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _blank(v: Any) -> bool:
    return v is None or not str(v).strip()


def validate_for_submission(invoice: Invoice | Mapping[str, Any]) -> List[FieldError]:
    """
    Vérifie une facture avant sa sortie de ``draft``.

    Toutes les erreurs sont renvoyées ensemble (une seule par champ), dans
    l'ordre : titre, client, échéance, lignes, puis pour chaque ligne
    description / quantité / prix. Liste vide = OK.
    """
    errors: List[FieldError] = []

    if _blank(_get(invoice, "title")):
        errors.append(FieldError(field="title", message="Title is required"))
    if _blank(_get(invoice, "client_id")):
        errors.append(FieldError(field="client_id", message="Client is required"))

    raw_due = _get(invoice, "due_date")
    if _blank(raw_due):
        errors.append(FieldError(field="due_date", message="Due date is required"))
    elif _parse_date(raw_due) is None:
        errors.append(FieldError(field="due_date", message="Due date is not a valid date"))

    items: Sequence[Any] = _get(invoice, "items") or []
    if not items:
        errors.append(FieldError(field="items", message="At least one item is required"))
    for i, it in enumerate(items):
        if _blank(_get(it, "description")):
            errors.append(FieldError(field=f"items.{i}.description", message="Item description is required"))
        if to_decimal(_get(it, "quantity")) <= 0:
            errors.append(FieldError(field=f"items.{i}.quantity", message="Quantity must be greater than 0"))
        if to_decimal(_get(it, "rate")) <= 0:
            errors.append(FieldError(field=f"items.{i}.rate", message="Rate must be greater than 0"))

    return errors


def check_invariants(invoice: Invoice) -> List[FieldError]:
    """Invariants d'une facture sortie de draft : lignes décrites et échéance."""
    if invoice.status == "draft":
        return []
    errors: List[FieldError] = []
    if not invoice.items:
        errors.append(FieldError(field="items", message="At least one item is required"))
    for i, it in enumerate(invoice.items):
        if _blank(it.description):
            errors.append(FieldError(field=f"items.{i}.description", message="Item description is required"))
    if invoice.due_date is None:
        errors.append(FieldError(field="due_date", message="Due date is required"))
    return errors


# ---------- Transitions ----------

def transition(invoice: Invoice, target: str, now: Optional[datetime] = None, **details: Any) -> Invoice:
    """
    Applique ``invoice.status -> target``.

    Effets : ``sent_date`` à l'envoi, ``paid_date`` au paiement, chacun posé
    une seule fois. ``details`` : recipients (envoi), payment_method,
    payment_reference, paid_date (paiement).
    """
    current = invoice.status
    if target not in TRANSITIONS:
        raise InvalidTransition(current, target, "unknown status")

    if current == target:
        errors = check_invariants(invoice)
        if errors:
            raise ValidationFailed(errors)
        return invoice.model_copy()

    if not can_transition(current, target):
        log.info("Rejected transition %s -> %s for invoice %s", current, target, invoice.id)
        raise InvalidTransition(current, target)

    ts = _now(now)
    update: Dict[str, Any] = {"status": target}

    if target == "sent":
        errors = validate_for_submission(invoice)
        if errors:
            log.info("Invoice %s not sendable: %d field error(s)", invoice.id, len(errors))
            raise ValidationFailed(errors)
        if invoice.sent_date is None:
            update["sent_date"] = ts
        recipients = [r for r in (details.get("recipients") or []) if r]
        if not recipients and invoice.client_email:
            recipients = [invoice.client_email]
        update["sent_to"] = recipients

    elif target == "viewed":
        if invoice.viewed_date is None:
            update["viewed_date"] = ts

    elif target == "overdue":
        if not is_overdue(invoice, ts):
            raise InvalidTransition(current, target, "due date has not passed")

    elif target == "paid":
        if invoice.paid_date is None:
            update["paid_date"] = details.get("paid_date") or ts
        if details.get("payment_method"):
            update["payment_method"] = details["payment_method"]
        if details.get("payment_reference"):
            update["payment_reference"] = details["payment_reference"]

    log.info("Invoice %s: %s -> %s", invoice.id, current, target)
    return invoice.model_copy(update=update)


def mark_sent(invoice: Invoice, now: Optional[datetime] = None, recipients: Optional[Sequence[str]] = None) -> Invoice:
    return transition(invoice, "sent", now, recipients=list(recipients or []))


def mark_viewed(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    """
    Suivi de lecture : ``sent -> viewed`` puis compteur de vues.
    Sur une facture déjà vue / en retard / payée, seul le compteur bouge.
    """
    if invoice.status == "sent":
        inv = transition(invoice, "viewed", now)
    elif invoice.status in ("viewed", "overdue", "paid"):
        inv = invoice.model_copy()
    else:
        raise InvalidTransition(invoice.status, "viewed")
    return inv.model_copy(update={
        "viewed_date": inv.viewed_date or _now(now),
        "view_count": inv.view_count + 1,
    })


def mark_paid(
    invoice: Invoice,
    now: Optional[datetime] = None,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    paid_date: Optional[datetime] = None,
) -> Invoice:
    return transition(
        invoice, "paid", now,
        payment_method=payment_method, payment_reference=payment_reference, paid_date=paid_date,
    )


def mark_overdue(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    return transition(invoice, "overdue", now)


def cancel(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    return transition(invoice, "cancelled", now)
