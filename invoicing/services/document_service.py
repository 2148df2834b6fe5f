# invoicing/services/document_service.py
from __future__ import annotations
import logging
import os
import re
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from shutil import which
from typing import Optional

import pdfkit  # utilisé si wkhtmltopdf dispo
from jinja2 import Environment, FileSystemLoader, select_autoescape

from invoicing.config import TEMPLATES_DIR, Settings
from invoicing.models.invoice import Invoice
from invoicing.services.lifecycle import effective_status

log = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "CAD": "CA$", "AUD": "A$"}


# ---------- Formats ----------
def format_money(amount: Decimal, currency: str) -> str:
    sym = CURRENCY_SYMBOLS.get((currency or "").upper())
    sign = "-" if amount < 0 else ""
    txt = f"{abs(amount):,.2f}"
    return f"{sign}{sym}{txt}" if sym else f"{sign}{txt} {currency}"


def format_number(value: Decimal) -> str:
    return format(Decimal(value).normalize(), "f")


def _slug(text: str) -> str:
    text = (text or "").strip()
    text = re.sub(r'[\\/:*?"<>|\n\r\t]', "_", text)
    text = re.sub(r"\s+", " ", text)
    return text or "invoice"


def document_filename(inv: Invoice, ext: str = "pdf") -> str:
    return f"Invoice-{_slug(inv.invoice_number or inv.id)}.{ext}"


# ---------- PDF helpers ----------
def _clean_path(p: str) -> str:
    """Corrige 'C\\:\\Program Files\\...' -> 'C:\\Program Files\\...' et normalise."""
    if not p:
        return ""
    p = p.strip().strip('"').strip("'")
    p = p.replace("\\:", ":")
    return os.path.normpath(p)


def find_wkhtmltopdf(settings: Settings) -> Optional[str]:
    """
    Localise wkhtmltopdf :
    - réglage (settings.json / WKHTMLTOPDF / WKHTMLTOPDF_CMD)
    - chemins Windows connus
    - PATH
    """
    if settings.wkhtmltopdf_path:
        path = _clean_path(settings.wkhtmltopdf_path)
        if Path(path).is_file():
            return path

    for c in (
        r"C:\Program Files\wkhtmltopdf\bin\wkhtmltopdf.exe",
        r"C:\Program Files (x86)\wkhtmltopdf\bin\wkhtmltopdf.exe",
    ):
        if Path(c).is_file():
            return c

    found = which("wkhtmltopdf")
    return _clean_path(found) if found else None


def _render_pdf_with_weasyprint(html: str, base_url: Optional[str]) -> bytes:
    """Fallback WeasyPrint (si wkhtmltopdf absent)."""
    try:
        from weasyprint import HTML, CSS
    except ImportError as e:
        raise RuntimeError(
            "No wkhtmltopdf found and WeasyPrint is not installed. "
            "Install WeasyPrint (pip install 'invoicing[pdf]') or configure wkhtmltopdf.\n"
            f"Details: {e}"
        ) from e

    css_file = TEMPLATES_DIR / "stylesheet.css"
    styles = [CSS(filename=str(css_file))] if css_file.exists() else None
    return HTML(string=html, base_url=base_url).write_pdf(stylesheets=styles)


# ---------- Service ----------
class DocumentService:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
        )
        self.env.filters["money"] = format_money
        self.env.filters["num"] = format_number

    def render_html(self, inv: Invoice, now: Optional[datetime] = None) -> str:
        """Rend le HTML de facture en mémoire via Jinja2: templates/pdf/invoice.html"""
        tpl = self.env.get_template("invoice.html")
        return tpl.render(
            invoice=inv,
            status=effective_status(inv, now),
            company=self.settings.company,
        )

    def render_pdf(self, inv: Invoice, now: Optional[datetime] = None) -> bytes:
        """
        Génère le PDF de facture en mémoire.
        Essaie wkhtmltopdf (pdfkit) en priorité, sinon fallback WeasyPrint.
        """
        html = self.render_html(inv, now)
        base_url = str(TEMPLATES_DIR.resolve())

        wkhtml = find_wkhtmltopdf(self.settings)
        if wkhtml:
            try:
                config = pdfkit.configuration(wkhtmltopdf=wkhtml)
                options = {
                    "enable-local-file-access": None,
                    "quiet": "",
                    "encoding": "UTF-8",
                }
                css = TEMPLATES_DIR / "stylesheet.css"
                return pdfkit.from_string(
                    html, False, options=options, configuration=config,
                    css=str(css.resolve()) if css.exists() else None,
                )
            except OSError as e:
                log.warning("wkhtmltopdf failed (%s). Falling back to WeasyPrint...", e)

        return _render_pdf_with_weasyprint(html, base_url=base_url)
