from datetime import date, datetime, timedelta, timezone

import pytest

from invoicing.errors import InvalidTransition, ValidationFailed
from invoicing.models.invoice import Invoice, LineItem
from invoicing.services import lifecycle

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
YESTERDAY = NOW.date() - timedelta(days=1)


def make_invoice(**overrides) -> Invoice:
    data = dict(
        title="Logo design",
        client_id="c-1",
        client_email="ada@example.com",
        due_date=NOW.date() + timedelta(days=30),
        items=[LineItem(description="Logo", quantity=1, rate=400)],
    )
    data.update(overrides)
    return Invoice(**data)


# ---------- validate_for_submission ----------

def test_valid_invoice_has_no_errors() -> None:
    assert lifecycle.validate_for_submission(make_invoice()) == []


def test_zero_rate_is_reported_and_blocks_send() -> None:
    inv = make_invoice(items=[LineItem(description="Logo", quantity=1, rate=0)])

    errors = lifecycle.validate_for_submission(inv)

    assert [e.field for e in errors] == ["items.0.rate"]
    with pytest.raises(ValidationFailed) as exc:
        lifecycle.mark_sent(inv, NOW)
    assert exc.value.errors[0].field == "items.0.rate"


def test_all_errors_are_batched_in_order() -> None:
    raw = {
        "title": "  ",
        "client_id": None,
        "due_date": "",
        "items": [],
    }

    fields = [e.field for e in lifecycle.validate_for_submission(raw)]

    assert fields == ["title", "client_id", "due_date", "items"]


def test_item_errors_are_reported_per_line() -> None:
    raw = {
        "title": "Retainer",
        "client_id": "c-1",
        "due_date": "2026-04-01",
        "items": [
            {"description": "ok", "quantity": 1, "rate": 10},
            {"description": "", "quantity": -2, "rate": "abc"},
        ],
    }

    fields = [e.field for e in lifecycle.validate_for_submission(raw)]

    assert fields == ["items.1.description", "items.1.quantity", "items.1.rate"]


def test_unparseable_due_date_is_reported() -> None:
    raw = {"title": "T", "client_id": "c-1", "due_date": "2026-02-30", "items": [{"description": "a", "quantity": 1, "rate": 1}]}

    errors = lifecycle.validate_for_submission(raw)

    assert [(e.field, e.message) for e in errors] == [("due_date", "Due date is not a valid date")]


# ---------- transitions ----------

def test_send_sets_sent_date_and_recipients() -> None:
    sent = lifecycle.mark_sent(make_invoice(), NOW)

    assert sent.status == "sent"
    assert sent.sent_date == NOW
    assert sent.sent_to == ["ada@example.com"]


def test_send_with_explicit_recipients() -> None:
    sent = lifecycle.mark_sent(make_invoice(), NOW, ["billing@acme.test"])

    assert sent.sent_to == ["billing@acme.test"]


def test_transition_does_not_mutate_input() -> None:
    inv = make_invoice()

    lifecycle.mark_sent(inv, NOW)

    assert inv.status == "draft"
    assert inv.sent_date is None


def test_paid_date_is_set_once() -> None:
    sent = lifecycle.mark_sent(make_invoice(), NOW)
    paid = lifecycle.mark_paid(sent, NOW + timedelta(days=2), payment_method="bank_transfer", payment_reference="TX-1")

    again = lifecycle.mark_paid(paid, NOW + timedelta(days=5))

    assert paid.paid_date == NOW + timedelta(days=2)
    assert paid.payment_method == "bank_transfer"
    assert again == paid


def test_paid_invoice_cannot_be_sent() -> None:
    paid = lifecycle.mark_paid(lifecycle.mark_sent(make_invoice(), NOW), NOW)

    with pytest.raises(InvalidTransition) as exc:
        lifecycle.mark_sent(paid, NOW)

    assert exc.value.current == "paid"
    assert exc.value.requested == "sent"


@pytest.mark.parametrize(
    "current, target",
    [
        ("paid", "draft"),
        ("cancelled", "sent"),
        ("draft", "paid"),
        ("draft", "viewed"),
        ("viewed", "sent"),
        ("overdue", "viewed"),
        ("paid", "cancelled"),
        ("sent", "draft"),
    ],
)
def test_illegal_transitions(current, target) -> None:
    assert not lifecycle.can_transition(current, target)
    with pytest.raises(InvalidTransition):
        lifecycle.transition(make_invoice(status=current), target, NOW)


@pytest.mark.parametrize("current", ["draft", "sent", "viewed", "overdue"])
def test_cancel_from_any_open_state(current) -> None:
    inv = make_invoice(status=current)

    assert lifecycle.cancel(inv, NOW).status == "cancelled"


def test_terminal_states_have_no_targets() -> None:
    assert lifecycle.allowed_targets("paid") == []
    assert lifecycle.allowed_targets("cancelled") == []
    assert lifecycle.allowed_targets("draft") == ["sent", "cancelled"]


def test_unknown_target_status() -> None:
    with pytest.raises(InvalidTransition):
        lifecycle.transition(make_invoice(), "archived", NOW)


def test_overdue_requires_past_due_date() -> None:
    sent = lifecycle.mark_sent(make_invoice(), NOW)

    with pytest.raises(InvalidTransition):
        lifecycle.mark_overdue(sent, NOW)

    late = lifecycle.mark_overdue(sent, NOW + timedelta(days=31))
    assert late.status == "overdue"


def test_overdue_invoice_can_still_be_paid() -> None:
    late = make_invoice(status="overdue", due_date=YESTERDAY)

    assert lifecycle.mark_paid(late, NOW).status == "paid"


def test_reentrant_edit_checks_invariants() -> None:
    broken = make_invoice(status="sent", items=[])

    with pytest.raises(ValidationFailed):
        lifecycle.transition(broken, "sent", NOW)


def test_mark_viewed_counts_views() -> None:
    sent = lifecycle.mark_sent(make_invoice(), NOW)

    first = lifecycle.mark_viewed(sent, NOW + timedelta(hours=1))
    second = lifecycle.mark_viewed(first, NOW + timedelta(hours=2))

    assert first.status == second.status == "viewed"
    assert second.viewed_date == NOW + timedelta(hours=1)
    assert second.view_count == 2


def test_mark_viewed_on_draft_is_rejected() -> None:
    with pytest.raises(InvalidTransition):
        lifecycle.mark_viewed(make_invoice(), NOW)


# ---------- overdue derivation ----------

def test_sent_invoice_due_yesterday_is_overdue() -> None:
    inv = make_invoice(status="sent", due_date=YESTERDAY)

    assert lifecycle.is_overdue(inv, NOW) is True
    assert lifecycle.effective_status(inv, NOW) == "overdue"
    assert inv.status == "sent"


def test_paid_invoice_is_never_overdue() -> None:
    inv = make_invoice(status="paid", due_date=YESTERDAY)

    assert lifecycle.is_overdue(inv, NOW) is False


def test_due_today_is_not_overdue() -> None:
    inv = make_invoice(status="viewed", due_date=NOW.date())

    assert lifecycle.is_overdue(inv, NOW) is False
    assert lifecycle.is_overdue(inv, date(2026, 3, 11)) is True


def test_days_until_due() -> None:
    inv = make_invoice(due_date=date(2026, 3, 20))

    assert lifecycle.days_until_due(inv, NOW) == 10
    assert lifecycle.days_until_due(make_invoice(due_date=None), NOW) is None
