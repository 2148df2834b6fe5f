"""
Relances de paiement.

Une relance ne change jamais le statut : elle s'ajoute au journal
``invoice.reminders``. Deux déclencheurs :
  - calendrier activé : chaque règle (J-n / J+n par rapport à l'échéance)
    ouvre une relance, une seule par règle échue ;
  - sans calendrier : facture en retard, relancée au plus tous les
    ``interval_days`` jours.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from invoicing.errors import FieldError, ValidationFailed
from invoicing.models.common import today
from invoicing.models.invoice import Invoice, Reminder, ReminderRequest, ReminderSettings
from invoicing.services.lifecycle import is_overdue

log = logging.getLogger(__name__)

REMINDABLE = ("sent", "viewed", "overdue")


def trigger_dates(invoice: Invoice) -> List[date]:
    if invoice.due_date is None or not invoice.reminder_settings.enabled:
        return []
    out: List[date] = []
    for rule in invoice.reminder_settings.schedule:
        if rule.days_before_due is not None:
            out.append(invoice.due_date - timedelta(days=rule.days_before_due))
        else:
            out.append(invoice.due_date + timedelta(days=rule.days_after_due))
    return sorted(out)


def last_reminder_date(invoice: Invoice) -> Optional[date]:
    if not invoice.reminders:
        return None
    return max(r.sent_at for r in invoice.reminders).date()


def needs_reminder(invoice: Invoice, now: Optional[datetime | date] = None, interval_days: int = 7) -> bool:
    if invoice.status not in REMINDABLE or invoice.due_date is None:
        return False
    day = today(now)
    last = last_reminder_date(invoice)

    if invoice.reminder_settings.enabled and invoice.reminder_settings.schedule:
        reached = [d for d in trigger_dates(invoice) if d <= day]
        if not reached:
            return False
        return last is None or last < max(reached)

    if invoice.status != "overdue" and not is_overdue(invoice, day):
        return False
    return last is None or (day - last).days >= interval_days


def record_reminder(invoice: Invoice, now: datetime, request: Optional[ReminderRequest] = None) -> Invoice:
    """Ajoute une relance au journal ; refusée avant envoi et une fois la facture close."""
    req = request or ReminderRequest()
    if invoice.is_draft() or invoice.is_terminal():
        raise ValidationFailed(
            [FieldError(field="status", message=f"Cannot send a reminder for a {invoice.status} invoice")],
            message="Reminder refused",
        )
    recipients = [str(r) for r in req.recipients or []]
    if not recipients and invoice.client_email:
        recipients = [invoice.client_email]
    if not recipients:
        raise ValidationFailed([FieldError(field="recipients", message="No recipient for this reminder")])

    reminder = Reminder(
        reminder_type=req.reminder_type,
        sent_to=recipients,
        message=req.message or f"Payment reminder for invoice {invoice.invoice_number or invoice.id}",
        sent_at=now,
    )
    log.info("Reminder (%s) for invoice %s to %s", reminder.reminder_type, invoice.id, ", ".join(recipients))
    return invoice.model_copy(update={"reminders": [*invoice.reminders, reminder]})


def apply_schedule(invoice: Invoice, enabled: bool, schedule=None) -> Invoice:
    """Active / coupe les relances ; un calendrier fourni avec ``enabled`` remplace l'ancien."""
    current = invoice.reminder_settings
    if enabled and schedule is not None:
        settings = ReminderSettings(enabled=True, schedule=list(schedule))
    else:
        settings = current.model_copy(update={"enabled": enabled})
    return invoice.model_copy(update={"reminder_settings": settings})
