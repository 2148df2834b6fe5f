from __future__ import annotations

import math
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, computed_field, field_validator

from invoicing.errors import from_pydantic
from invoicing.models.invoice import STATUSES, Invoice

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


class InvoiceQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT)
    search: Optional[str] = None
    status: Optional[str] = None  # None / "all" = pas de filtre
    client_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        if v is not None and v != "all" and v not in STATUSES:
            raise ValueError(f"status must be one of: all, {', '.join(STATUSES)}")
        return v


class InvoicePage(BaseModel):
    invoices: List[Invoice] = Field(default_factory=list)
    page: int = 1
    limit: int = DEFAULT_LIMIT
    total: int = 0
    pages: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_prev(self) -> bool:
        return self.page > 1


def parse_query(params: Mapping[str, Any] | None = None) -> InvoiceQuery:
    """Construit une requête depuis des paramètres bruts ; ValidationFailed sinon."""
    clean = {k: v for k, v in (params or {}).items() if v not in (None, "")}
    try:
        return InvoiceQuery(**clean)
    except ValidationError as e:
        raise from_pydantic(e) from e


def _matches(inv: Invoice, q: InvoiceQuery) -> bool:
    if q.status and q.status != "all" and inv.status != q.status:
        return False
    if q.client_id and inv.client_id != q.client_id:
        return False
    if q.search:
        needle = q.search.strip().casefold()
        if needle:
            haystack = (inv.invoice_number or "", inv.title or "", inv.client_name or "")
            if not any(needle in h.casefold() for h in haystack):
                return False
    return True


def list_invoices(records: Iterable[Invoice], query: InvoiceQuery | None = None) -> InvoicePage:
    """
    Filtre, trie (création décroissante, id en départage) et pagine.
    Une page au-delà de la dernière renvoie une liste vide, pas une erreur.
    """
    q = query or InvoiceQuery()
    rows = [inv for inv in records if _matches(inv, q)]
    rows.sort(key=lambda inv: (inv.created_at, inv.id), reverse=True)

    total = len(rows)
    pages = math.ceil(total / q.limit)
    start = (q.page - 1) * q.limit
    return InvoicePage(
        invoices=rows[start:start + q.limit],
        page=q.page,
        limit=q.limit,
        total=total,
        pages=pages,
    )
