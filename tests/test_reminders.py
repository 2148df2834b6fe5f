from datetime import date, datetime, timezone

import pytest

from invoicing.errors import ValidationFailed
from invoicing.models.invoice import Invoice, LineItem, Reminder, ReminderRequest, ReminderRule, ReminderSettings
from invoicing.services import reminders

NOW = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)


def make_invoice(**overrides) -> Invoice:
    data = dict(
        title="Retainer",
        client_id="c-1",
        client_email="ada@example.com",
        status="sent",
        due_date=date(2026, 4, 20),
        items=[LineItem(description="May", quantity=1, rate=900)],
    )
    data.update(overrides)
    return Invoice(**data)


def test_trigger_dates_follow_the_schedule() -> None:
    inv = make_invoice(reminder_settings=ReminderSettings(enabled=True, schedule=[
        ReminderRule(days_after_due=7),
        ReminderRule(days_before_due=2),
    ]))

    assert reminders.trigger_dates(inv) == [date(2026, 4, 18), date(2026, 4, 27)]


def test_disabled_schedule_has_no_triggers() -> None:
    inv = make_invoice(reminder_settings=ReminderSettings(enabled=False, schedule=[ReminderRule(days_before_due=2)]))

    assert reminders.trigger_dates(inv) == []


def test_overdue_invoice_without_schedule_needs_reminder() -> None:
    assert reminders.needs_reminder(make_invoice(), NOW) is True
    assert reminders.needs_reminder(make_invoice(due_date=date(2026, 5, 30)), NOW) is False


@pytest.mark.parametrize("status", ["draft", "paid", "cancelled"])
def test_closed_or_unsent_invoices_never_need_reminders(status) -> None:
    assert reminders.needs_reminder(make_invoice(status=status), NOW) is False


def test_interval_between_reminders() -> None:
    recent = Reminder(sent_to=["ada@example.com"], message="1st", sent_at=datetime(2026, 4, 28, tzinfo=timezone.utc))
    inv = make_invoice(reminders=[recent])

    assert reminders.needs_reminder(inv, NOW, interval_days=7) is False
    assert reminders.needs_reminder(inv, NOW, interval_days=3) is True


def test_each_schedule_rule_fires_once() -> None:
    schedule = ReminderSettings(enabled=True, schedule=[ReminderRule(days_after_due=5)])
    reminded = Reminder(sent_to=["ada@example.com"], sent_at=datetime(2026, 4, 25, 9, tzinfo=timezone.utc))

    assert reminders.needs_reminder(make_invoice(reminder_settings=schedule), NOW) is True
    assert reminders.needs_reminder(make_invoice(reminder_settings=schedule, reminders=[reminded]), NOW) is False


def test_record_reminder_appends_to_the_log() -> None:
    inv = make_invoice(invoice_number="INV-2604-007")

    out = reminders.record_reminder(inv, NOW, ReminderRequest(recipients=["billing@acme.test"]))

    assert inv.reminders == []
    assert out.status == "sent"
    assert out.reminders[0].sent_to == ["billing@acme.test"]
    assert out.reminders[0].message == "Payment reminder for invoice INV-2604-007"


def test_reminder_needs_a_recipient() -> None:
    with pytest.raises(ValidationFailed) as exc:
        reminders.record_reminder(make_invoice(client_email=None), NOW)

    assert exc.value.errors[0].field == "recipients"
