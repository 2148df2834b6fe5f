# invoicing/services/invoice_service.py
from __future__ import annotations
import logging
import os
from datetime import date, datetime, timedelta
from typing import Any, Callable, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ValidationError

from invoicing.config import Settings, load_settings
from invoicing.errors import Conflict, FieldError, InvalidTransition, NotFound, ValidationFailed, from_pydantic
from invoicing.models.common import gen_id, utcnow
from invoicing.models.invoice import (
    Invoice,
    InvoiceDraft,
    InvoiceUpdate,
    ReminderRequest,
    ReminderScheduleUpdate,
)
from invoicing.services import analytics, lifecycle, reminders
from invoicing.services.analytics import ClientRevenue, InvoiceStatistics, PaymentHistory
from invoicing.services.client_service import ClientService
from invoicing.services.computation import apply_totals
from invoicing.services.document_service import DocumentService, document_filename
from invoicing.services.listing import InvoicePage, InvoiceQuery, list_invoices, parse_query
from invoicing.storage.json_repo import JsonRepository

log = logging.getLogger(__name__)

DocumentFormat = Literal["pdf", "html"]

# écrits hors version (send_reminder, render_document)
TRACKING_FIELDS = {"download_count", "reminders"}


def _validate(model: type[BaseModel], payload: Any) -> Any:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise from_pydantic(e) from e


def _check_range(field: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValidationFailed([FieldError(field=field, message=f"{field} must be between {low} and {high}")])


# ---------- Service ----------
class InvoiceService:
    """
    Hôte du moteur : CRUD, transitions et listing au-dessus d'un repo JSON.
    Chaque écriture recalcule les totaux ; les totaux reçus ne sont jamais repris.
    Toute écriture est conditionnée à la version lue : une écriture concurrente
    donne Conflict, jamais un retour en arrière.
    """

    def __init__(
        self,
        path: Optional[os.PathLike | str] = None,
        *,
        settings: Optional[Settings] = None,
        clients: Optional[ClientService] = None,
        documents: Optional[DocumentService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or load_settings()
        self.repo = JsonRepository(path or self.settings.invoices_path, entity_name="invoice", key="id")
        self.clients = clients
        self.documents = documents or DocumentService(self.settings)
        self.clock = clock

    # ----------- lecture -----------
    def _hydrate(self, d: Mapping[str, Any]) -> Optional[Invoice]:
        try:
            return Invoice(**d)
        except ValidationError:
            log.warning("Skipping invalid invoice record %s", d.get("id"))
            return None

    def list_all(self) -> List[Invoice]:
        out: List[Invoice] = []
        for d in self.repo.list_all():
            inv = self._hydrate(d)
            if inv is not None:
                out.append(inv)
        return out

    def get_by_id(self, invoice_id: str) -> Invoice:
        d = self.repo.get_by_id(invoice_id)
        inv = self._hydrate(d) if d else None
        if inv is None:
            raise NotFound("invoice", invoice_id)
        return inv

    def list_invoices(self, query: InvoiceQuery | Mapping[str, Any] | None = None) -> InvoicePage:
        if not isinstance(query, InvoiceQuery):
            params = dict(query or {})
            params.setdefault("limit", self.settings.page_limit)
            query = parse_query(params)
        if query.limit > self.settings.max_page_limit:
            raise ValidationFailed([FieldError(
                field="limit", message=f"limit cannot exceed {self.settings.max_page_limit}",
            )])
        return list_invoices(self.list_all(), query)

    def list_overdue(self) -> List[Invoice]:
        now = self.clock()
        rows = [
            inv for inv in self.list_all()
            if inv.status == "overdue" or lifecycle.is_overdue(inv, now)
        ]
        rows.sort(key=lambda inv: (inv.due_date or date.max, inv.id))
        return rows

    # ----------- analytics -----------
    def statistics(self) -> InvoiceStatistics:
        return analytics.statistics(self.list_all(), self.clock())

    def top_clients(self, limit: int = analytics.TOP_CLIENTS_DEFAULT) -> List[ClientRevenue]:
        _check_range("limit", limit, 1, analytics.TOP_CLIENTS_MAX)
        return analytics.top_clients(self.list_all(), limit)

    def payment_history(self, days: int = analytics.HISTORY_DAYS_DEFAULT) -> PaymentHistory:
        _check_range("days", days, 1, analytics.HISTORY_DAYS_MAX)
        return analytics.payment_history(self.list_all(), self.clock(), days)

    # ----------- écriture -----------
    def _check_currency(self, currency: str, errors: List[FieldError]) -> str:
        code = (currency or "").strip().upper()
        if code not in self.settings.currencies:
            errors.append(FieldError(
                field="currency", message=f"Currency must be one of: {', '.join(self.settings.currencies)}",
            ))
        return code

    @staticmethod
    def _check_rates(values: Mapping[str, Any], errors: List[FieldError]) -> None:
        for name in ("tax_rate", "discount_rate"):
            v = values.get(name)
            if v is not None and v > 100:
                errors.append(FieldError(field=name, message="Rate cannot exceed 100%"))

    def _persist(self, inv: Invoice, expected_version: int) -> Invoice:
        inv = apply_totals(inv)
        inv.touch()
        # les compteurs de suivi avancent sans version : on garde ceux du disque
        record = self.repo.update(
            inv.model_dump(mode="json", exclude=TRACKING_FIELDS), expected_version=expected_version,
        )
        return Invoice(**record)

    def create(self, payload: InvoiceDraft | Mapping[str, Any]) -> Invoice:
        draft: InvoiceDraft = _validate(InvoiceDraft, payload)
        errors: List[FieldError] = []

        if not draft.title.strip():
            errors.append(FieldError(field="title", message="Title is required"))

        client_name, client_email = draft.client_name, draft.client_email
        if not (draft.client_id or "").strip():
            errors.append(FieldError(field="client_id", message="Client is required"))
        elif self.clients is not None:
            snap = self.clients.snapshot(draft.client_id)
            if snap is not None:
                client_name, client_email = snap.client_name, snap.client_email
            elif not client_name:
                errors.append(FieldError(field="client_id", message="Client not found"))

        currency = self._check_currency(draft.currency or self.settings.default_currency, errors)
        self._check_rates({"tax_rate": draft.tax_rate, "discount_rate": draft.discount_rate}, errors)
        if errors:
            raise ValidationFailed(errors)

        now = self.clock()
        inv = Invoice(
            id=gen_id(),
            title=draft.title.strip(),
            description=draft.description,
            client_id=draft.client_id,
            client_name=client_name,
            client_email=client_email,
            project_id=draft.project_id,
            items=draft.items,
            tax_rate=draft.tax_rate,
            discount_rate=draft.discount_rate,
            currency=currency,
            status="draft",
            issue_date=now.date(),
            due_date=draft.due_date,
            notes=draft.notes,
            terms=draft.terms,
            created_at=now,
            updated_at=now,
        )
        inv = apply_totals(inv)

        with self.repo.lock:
            # numéro autoritaire : le brouillon éventuel du client est ignoré
            inv.invoice_number = self._next_invoice_number(now)
            record = self.repo.add(inv)
        log.info("Created invoice %s (%s)", inv.invoice_number, inv.id)
        return Invoice(**record)

    def update(
        self,
        invoice_id: str,
        changes: InvoiceUpdate | Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> Invoice:
        upd: InvoiceUpdate = _validate(InvoiceUpdate, changes)
        if expected_version is None:
            expected_version = upd.version

        fields = upd.model_dump(exclude_unset=True, exclude={"version"})
        errors: List[FieldError] = []
        if "title" in fields and not (fields["title"] or "").strip():
            errors.append(FieldError(field="title", message="Title is required"))
        if "currency" in fields:
            fields["currency"] = self._check_currency(fields["currency"], errors)
        self._check_rates(fields, errors)
        if "items" in fields:
            fields["items"] = upd.items or []
        if errors:
            raise ValidationFailed(errors)

        inv = self.get_by_id(invoice_id)
        new = inv.model_copy(update=fields)
        errors = lifecycle.check_invariants(new)
        if errors:
            raise ValidationFailed(errors)
        # sans jeton fourni, la version lue en tient lieu
        return self._persist(new, inv.version if expected_version is None else expected_version)

    def delete(self, invoice_id: str, force: bool = False) -> None:
        inv = self.get_by_id(invoice_id)
        if inv.status == "paid" and not force:
            raise InvalidTransition(inv.status, "deleted", "paid invoices are kept unless forced")
        self.repo.delete(invoice_id)
        log.info("Deleted invoice %s (%s)", inv.invoice_number, inv.id)

    # ----------- transitions -----------
    def _apply(
        self,
        invoice_id: str,
        step: Callable[[Invoice, datetime], Invoice],
        expected_version: Optional[int] = None,
    ) -> Invoice:
        inv = self.get_by_id(invoice_id)
        if expected_version is not None and expected_version != inv.version:
            raise Conflict(expected_version, inv.version)
        new = step(inv, self.clock())
        if new == inv:
            # ré-entrée sans effet : rien à écrire
            return inv
        # la version lue sert de jeton : une transition concurrente -> Conflict
        return self._persist(new, inv.version)

    def send(self, invoice_id: str, recipients: Optional[List[str]] = None, expected_version: Optional[int] = None) -> Invoice:
        return self._apply(
            invoice_id, lambda inv, now: lifecycle.mark_sent(inv, now, recipients), expected_version,
        )

    def mark_viewed(self, invoice_id: str) -> Invoice:
        return self._apply(invoice_id, lambda inv, now: lifecycle.mark_viewed(inv, now))

    def mark_paid(
        self,
        invoice_id: str,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
        paid_date: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> Invoice:
        return self._apply(
            invoice_id,
            lambda inv, now: lifecycle.mark_paid(inv, now, payment_method, payment_reference, paid_date),
            expected_version,
        )

    def cancel(self, invoice_id: str, expected_version: Optional[int] = None) -> Invoice:
        return self._apply(invoice_id, lambda inv, now: lifecycle.cancel(inv, now), expected_version)

    def sweep_overdue(self) -> List[Invoice]:
        """Persiste ``overdue`` pour les factures ouvertes dont l'échéance est passée."""
        now = self.clock()
        out: List[Invoice] = []
        for inv in self.list_all():
            if not lifecycle.is_overdue(inv, now):
                continue
            try:
                out.append(self._persist(lifecycle.mark_overdue(inv, now), inv.version))
            except Conflict as e:
                # modifiée entre-temps : on la reprendra au prochain passage
                log.warning("Overdue sweep skipped invoice %s: %s", inv.id, e.message)
        return out

    # ----------- relances -----------
    def send_reminder(self, invoice_id: str, request: ReminderRequest | Mapping[str, Any] | None = None) -> Invoice:
        """Journalise une relance ; la version n'avance pas (suivi, pas une édition)."""
        req: ReminderRequest = _validate(ReminderRequest, request)
        with self.repo.lock:
            inv = self.get_by_id(invoice_id)
            new = reminders.record_reminder(inv, self.clock(), req)
            record = self.repo.update(
                {"id": inv.id, "reminders": [r.model_dump(mode="json") for r in new.reminders]},
                bump_version=False,
            )
        return Invoice(**record)

    def reminders_needed(self) -> List[Invoice]:
        now = self.clock()
        rows = [
            inv for inv in self.list_all()
            if reminders.needs_reminder(inv, now, self.settings.reminder_interval_days)
        ]
        rows.sort(key=lambda inv: (inv.due_date or date.max, inv.id))
        return rows

    def set_reminder_schedule(
        self,
        invoice_id: str,
        payload: ReminderScheduleUpdate | Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> Invoice:
        upd: ReminderScheduleUpdate = _validate(ReminderScheduleUpdate, payload)
        if expected_version is None:
            expected_version = upd.version
        return self._apply(
            invoice_id,
            lambda inv, now: reminders.apply_schedule(inv, upd.enabled, upd.schedule),
            expected_version,
        )

    def duplicate(self, invoice_id: str) -> Invoice:
        """Copie en brouillon : numéro, suivi, relances et paiement remis à zéro."""
        src = self.get_by_id(invoice_id)
        now = self.clock()
        inv = Invoice(
            **src.model_dump(include={
                "title", "description", "client_id", "client_name", "client_email", "project_id",
                "items", "tax_rate", "discount_rate", "currency", "notes", "terms", "reminder_settings",
            }),
            id=gen_id(),
            status="draft",
            issue_date=now.date(),
            due_date=now.date() + timedelta(days=self.settings.due_days),
            created_at=now,
            updated_at=now,
        )
        inv = apply_totals(inv)
        with self.repo.lock:
            inv.invoice_number = self._next_invoice_number(now)
            record = self.repo.add(inv)
        log.info("Duplicated invoice %s as %s", src.invoice_number, inv.invoice_number)
        return Invoice(**record)

    # ----------- document -----------
    def render_document(self, invoice_id: str, fmt: DocumentFormat = "pdf") -> Tuple[bytes, str, str]:
        """Retourne (contenu, media type, nom de fichier) et compte le téléchargement."""
        inv = self.get_by_id(invoice_id)
        now = self.clock()
        if fmt == "html":
            content = self.documents.render_html(inv, now).encode("utf-8")
            media_type = "text/html; charset=utf-8"
        else:
            content = self.documents.render_pdf(inv, now)
            media_type = "application/pdf"
        with self.repo.lock:
            current = self.get_by_id(invoice_id)
            # compteur de suivi : ne périme pas le jeton de version des éditeurs
            self.repo.update(
                {"id": current.id, "download_count": current.download_count + 1}, bump_version=False,
            )
        return content, media_type, document_filename(inv, fmt)

    # ----------- numérotation -----------
    def _next_invoice_number(self, now: datetime) -> str:
        prefix = f"{self.settings.number_prefix}{now:%y%m}-"
        max_n = 0
        for d in self.repo.list_all():
            num = d.get("invoice_number") or ""
            if isinstance(num, str) and num.startswith(prefix):
                try:
                    max_n = max(max_n, int(num[len(prefix):]))
                except ValueError:
                    continue
        return f"{prefix}{max_n + 1:03d}"
