"""
Moteur de calcul des factures.

Fonctions pures : aucune I/O, aucun état partagé. Appelées à chaque frappe
(quantité, prix, taux) par tous les écrans qui éditent une facture, pour que
création et édition tombent au centime près sur le même résultat.

Ordre d'arrondi (à ne pas modifier) :
  1. montant brut de chaque ligne (quantity x rate, pleine précision)
  2. sous-total brut, arrondi une seule fois
  3. taxe et remise calculées sur le sous-total ARRONDI, puis arrondies
  4. total = sous-total + taxe - remise, arrondi
"""
from __future__ import annotations

import logging
from decimal import Decimal, localcontext
from typing import Any, Dict, List, Mapping, Sequence, Union

from invoicing.errors import FieldError, ValidationFailed
from invoicing.models.common import ZERO, round2, to_decimal
from invoicing.models.invoice import Invoice, LineItem, TotalsSnapshot

log = logging.getLogger(__name__)

HUNDRED = Decimal("100")
WORKING_PRECISION = 60

ItemLike = Union[LineItem, Mapping[str, Any]]

__all__ = [
    "compute_totals",
    "apply_totals",
    "add_item",
    "remove_item",
    "round2",
    "to_decimal",
]


# ---------- Helpers ----------

def _item_dict(item: Any) -> Dict[str, Any]:
    if isinstance(item, Mapping):
        return dict(item)
    if hasattr(item, "model_dump"):
        return item.model_dump()
    return {}


def _normalise_item(item: Any) -> LineItem:
    d = _item_dict(item)
    return LineItem(
        description=d.get("description"),
        quantity=to_decimal(d.get("quantity", d.get("qty"))),
        rate=to_decimal(d.get("rate")),
    )


# ---------- Calcul ----------

def compute_totals(items: Sequence[ItemLike] | None, tax_rate: Any = 0, discount_rate: Any = 0) -> TotalsSnapshot:
    """
    Dérive montants de lignes et totaux de document.

    Quantités / prix manquants, illisibles, négatifs ou démesurés valent 0 ;
    un taux illisible ou négatif vaut 0. Ne lève jamais d'exception.
    """
    tax_pct = to_decimal(tax_rate)
    discount_pct = to_decimal(discount_rate)

    out_items: List[LineItem] = []
    raw_subtotal = ZERO
    with localcontext() as ctx:
        # produits et sommes exacts : les arrondis ci-dessous sont les seuls
        ctx.prec = WORKING_PRECISION
        for it in items or []:
            line = _normalise_item(it)
            raw_amount = line.quantity * line.rate
            raw_subtotal += raw_amount
            line.amount = round2(raw_amount)
            out_items.append(line)

        subtotal = round2(raw_subtotal)
        tax_amount = round2(subtotal * tax_pct / HUNDRED)
        discount_amount = round2(subtotal * discount_pct / HUNDRED)
        total = round2(subtotal + tax_amount - discount_amount)

    warnings: List[str] = []
    if total < 0:
        warnings.append("Discount exceeds subtotal plus tax: total is negative")

    return TotalsSnapshot(
        items=out_items,
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total=total,
        warnings=warnings,
    )


def apply_totals(invoice: Invoice) -> Invoice:
    """Copie de la facture avec lignes et champs dérivés recalculés."""
    snap = compute_totals(invoice.items, invoice.tax_rate, invoice.discount_rate)
    for w in snap.warnings:
        log.warning("Invoice %s: %s", invoice.invoice_number or invoice.id, w)
    return invoice.model_copy(update={
        "items": snap.items,
        "tax_rate": to_decimal(invoice.tax_rate),
        "discount_rate": to_decimal(invoice.discount_rate),
        "subtotal": snap.subtotal,
        "tax_amount": snap.tax_amount,
        "discount_amount": snap.discount_amount,
        "total": snap.total,
    })


# ---------- Edition des lignes ----------

def add_item(items: Sequence[ItemLike] | None) -> List[LineItem]:
    """Ajoute une ligne vide (quantité 1, prix 0) en fin de liste."""
    out = [_normalise_item(it) for it in items or []]
    out.append(LineItem(description="", quantity=Decimal("1"), rate=ZERO, amount=ZERO))
    return out


def remove_item(items: Sequence[ItemLike] | None, index: int, *, finalizing: bool = False) -> List[LineItem]:
    """
    Retire la ligne ``index``.
    En édition on peut descendre à zéro ligne ; pas lors de la finalisation.
    """
    out = [_normalise_item(it) for it in items or []]
    if index < 0 or index >= len(out):
        raise IndexError(f"No line item at position {index}")
    if finalizing and len(out) == 1:
        raise ValidationFailed([FieldError(field="items", message="At least one item is required")])
    out.pop(index)
    return out
