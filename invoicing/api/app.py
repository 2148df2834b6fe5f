from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Body, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from invoicing.config import load_settings
from invoicing.errors import InvoicingError, from_pydantic
from invoicing.log import setup_logging
from invoicing.models.invoice import (
    Invoice,
    InvoiceDraft,
    InvoiceUpdate,
    PaymentDetails,
    ReminderRequest,
    ReminderScheduleUpdate,
    SendRequest,
)
from invoicing.services.analytics import ClientRevenue, InvoiceStatistics, PaymentHistory
from invoicing.services.client_service import ClientService
from invoicing.services.invoice_service import InvoiceService
from invoicing.services.listing import InvoicePage

log = logging.getLogger(__name__)

VERSION = "1.0.0"


def _service(request: Request) -> InvoiceService:
    return request.app.state.invoices


def create_app(service: Optional[InvoiceService] = None) -> FastAPI:
    """
    Construit l'application. Sans ``service``, le lifespan en crée un depuis
    les réglages (data/settings.json + variables d'environnement).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "invoices", None) is None:
            settings = load_settings()
            setup_logging(settings.log_level)
            app.state.invoices = InvoiceService(
                settings=settings, clients=ClientService(settings.clients_path),
            )
        log.info("Invoicing API ready | data: %s", app.state.invoices.repo.filepath)
        yield
        log.info("Invoicing API shutting down")

    app = FastAPI(
        title="Invoicing",
        description="Invoice computation, lifecycle and listing for freelancers and agencies.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.invoices = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Erreurs ────────────────────────────────────────────────────────────────

    @app.exception_handler(InvoicingError)
    async def invoicing_error(request: Request, exc: InvoicingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        err = from_pydantic(exc)
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    # ── Info ───────────────────────────────────────────────────────────────────

    @app.get("/health", tags=["Info"])
    def health():
        return {"status": "ok", "version": VERSION}

    # ── Listing ────────────────────────────────────────────────────────────────

    @app.get("/invoices", response_model=InvoicePage, tags=["Invoices"])
    def get_invoices(
        request: Request,
        page: int = Query(default=1),
        limit: Optional[int] = Query(default=None),
        search: Optional[str] = Query(default=None),
        status: Optional[str] = Query(default=None),
        client_id: Optional[str] = Query(default=None),
    ):
        return _service(request).list_invoices({
            "page": page, "limit": limit, "search": search, "status": status, "client_id": client_id,
        })

    @app.get("/invoices/overdue", response_model=List[Invoice], tags=["Invoices"])
    def get_overdue(request: Request):
        return _service(request).list_overdue()

    @app.get("/invoices/statistics", response_model=InvoiceStatistics, tags=["Invoices"])
    def get_statistics(request: Request):
        return _service(request).statistics()

    @app.get("/invoices/analytics/top-clients", response_model=List[ClientRevenue], tags=["Analytics"])
    def get_top_clients(request: Request, limit: int = Query(default=10)):
        return _service(request).top_clients(limit)

    @app.get("/invoices/analytics/payment-history", response_model=PaymentHistory, tags=["Analytics"])
    def get_payment_history(request: Request, days: int = Query(default=30)):
        return _service(request).payment_history(days)

    @app.get("/invoices/reminders/needed", response_model=List[Invoice], tags=["Reminders"])
    def get_reminders_needed(request: Request):
        return _service(request).reminders_needed()

    # ── CRUD ───────────────────────────────────────────────────────────────────

    @app.post("/invoices", response_model=Invoice, status_code=201, tags=["Invoices"])
    def create_invoice(request: Request, payload: InvoiceDraft):
        return _service(request).create(payload)

    @app.get("/invoices/{invoice_id}", response_model=Invoice, tags=["Invoices"])
    def get_invoice(request: Request, invoice_id: str):
        return _service(request).get_by_id(invoice_id)

    @app.put("/invoices/{invoice_id}", response_model=Invoice, tags=["Invoices"])
    def update_invoice(request: Request, invoice_id: str, payload: InvoiceUpdate):
        return _service(request).update(invoice_id, payload)

    @app.delete("/invoices/{invoice_id}", status_code=204, tags=["Invoices"])
    def delete_invoice(request: Request, invoice_id: str, force: bool = Query(default=False)):
        _service(request).delete(invoice_id, force=force)
        return Response(status_code=204)

    # ── Transitions ────────────────────────────────────────────────────────────

    @app.post("/invoices/{invoice_id}/send", response_model=Invoice, tags=["Lifecycle"])
    def send_invoice(request: Request, invoice_id: str, payload: Optional[SendRequest] = Body(default=None)):
        payload = payload or SendRequest()
        return _service(request).send(invoice_id, payload.recipients, expected_version=payload.version)

    @app.post("/invoices/{invoice_id}/mark-paid", response_model=Invoice, tags=["Lifecycle"])
    def mark_paid(request: Request, invoice_id: str, payload: Optional[PaymentDetails] = Body(default=None)):
        payload = payload or PaymentDetails()
        return _service(request).mark_paid(
            invoice_id,
            payment_method=payload.payment_method,
            payment_reference=payload.payment_reference,
            paid_date=payload.paid_date,
            expected_version=payload.version,
        )

    @app.post("/invoices/{invoice_id}/view", response_model=Invoice, tags=["Lifecycle"])
    def view_invoice(request: Request, invoice_id: str):
        return _service(request).mark_viewed(invoice_id)

    @app.post("/invoices/{invoice_id}/cancel", response_model=Invoice, tags=["Lifecycle"])
    def cancel_invoice(request: Request, invoice_id: str, version: Optional[int] = Query(default=None)):
        return _service(request).cancel(invoice_id, expected_version=version)

    @app.post("/invoices/{invoice_id}/duplicate", response_model=Invoice, status_code=201, tags=["Invoices"])
    def duplicate_invoice(request: Request, invoice_id: str):
        return _service(request).duplicate(invoice_id)

    # ── Relances ───────────────────────────────────────────────────────────────

    @app.post("/invoices/{invoice_id}/reminders", response_model=Invoice, tags=["Reminders"])
    def send_reminder(request: Request, invoice_id: str, payload: Optional[ReminderRequest] = Body(default=None)):
        return _service(request).send_reminder(invoice_id, payload)

    @app.put("/invoices/{invoice_id}/reminders/schedule", response_model=Invoice, tags=["Reminders"])
    def set_reminder_schedule(request: Request, invoice_id: str, payload: ReminderScheduleUpdate):
        return _service(request).set_reminder_schedule(invoice_id, payload)

    # ── Document ───────────────────────────────────────────────────────────────

    @app.get("/invoices/{invoice_id}/document", tags=["Invoices"])
    def get_document(
        request: Request,
        invoice_id: str,
        format: Literal["pdf", "html"] = Query(default="pdf", description="**pdf** (download) | **html**"),
    ):
        content, media_type, filename = _service(request).render_document(invoice_id, format)
        disposition = "attachment" if format == "pdf" else "inline"
        return Response(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f'{disposition}; filename="{filename}"'},
        )

    return app


app = create_app()
