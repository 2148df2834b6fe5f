from datetime import datetime, timedelta, timezone

import pytest

from invoicing.errors import ValidationFailed
from invoicing.models.invoice import Invoice
from invoicing.services.listing import InvoiceQuery, list_invoices, parse_query

T0 = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def records() -> list:
    statuses = ["draft", "sent", "paid", "overdue", "cancelled"]
    out = []
    for i in range(25):
        out.append(Invoice(
            id=f"inv-{i:02d}",
            invoice_number=f"INV-2601-{i + 1:03d}",
            title="Maintenance" if i % 3 == 0 else f"Project {i}",
            client_id="c-1" if i % 2 == 0 else "c-2",
            client_name="Acme Corp" if i % 2 == 0 else "Globex",
            status=statuses[i % len(statuses)],
            created_at=T0 + timedelta(hours=i),
        ))
    return out


def test_pages_partition_the_sorted_set(records) -> None:
    p1 = list_invoices(records, InvoiceQuery(page=1, limit=20))
    p2 = list_invoices(records, InvoiceQuery(page=2, limit=20))

    assert p1.total == p2.total == 25
    assert p1.pages == 2
    assert len(p1.invoices) == 20
    assert len(p2.invoices) == 5
    ids1 = {inv.id for inv in p1.invoices}
    ids2 = {inv.id for inv in p2.invoices}
    assert not ids1 & ids2
    assert ids1 | ids2 == {inv.id for inv in records}
    assert p1.has_next and not p1.has_prev
    assert p2.has_prev and not p2.has_next


def test_newest_first() -> None:
    older = Invoice(id="a", created_at=T0)
    newer = Invoice(id="b", created_at=T0 + timedelta(days=1))

    page = list_invoices([older, newer])

    assert [inv.id for inv in page.invoices] == ["b", "a"]


def test_ties_on_creation_date_are_stable() -> None:
    rows = [Invoice(id=i, created_at=T0) for i in ("x", "z", "y")]

    first = list_invoices(rows, InvoiceQuery(limit=2))
    second = list_invoices(list(reversed(rows)), InvoiceQuery(limit=2, page=2))

    assert [inv.id for inv in first.invoices] == ["z", "y"]
    assert [inv.id for inv in second.invoices] == ["x"]


def test_page_past_the_end_is_empty(records) -> None:
    page = list_invoices(records, InvoiceQuery(page=9, limit=10))

    assert page.invoices == []
    assert page.total == 25
    assert page.pages == 3
    assert page.has_next is False


def test_empty_store() -> None:
    page = list_invoices([])

    assert page.total == 0
    assert page.pages == 0
    assert page.invoices == []


def test_status_filter(records) -> None:
    page = list_invoices(records, InvoiceQuery(status="paid", limit=100))

    assert page.total == 5
    assert {inv.status for inv in page.invoices} == {"paid"}


def test_status_all_is_no_filter(records) -> None:
    assert list_invoices(records, InvoiceQuery(status="all")).total == 25


@pytest.mark.parametrize(
    "search, expected",
    [
        ("maint", 9),
        ("GLOBEX", 12),
        ("inv-2601-001", 1),
        ("nothing matches", 0),
    ],
)
def test_search_is_case_insensitive(records, search, expected) -> None:
    page = list_invoices(records, InvoiceQuery(search=search, limit=100))

    assert page.total == expected


def test_filters_combine(records) -> None:
    page = list_invoices(records, InvoiceQuery(client_id="c-1", status="draft", limit=100))

    # draft = i % 5 == 0, c-1 = i pair -> 0, 10, 20
    assert sorted(inv.id for inv in page.invoices) == ["inv-00", "inv-10", "inv-20"]


@pytest.mark.parametrize(
    "params, field",
    [
        ({"status": "archived"}, "status"),
        ({"limit": 0}, "limit"),
        ({"limit": 101}, "limit"),
        ({"page": 0}, "page"),
        ({"page": "two"}, "page"),
    ],
)
def test_invalid_query_parameters(params, field) -> None:
    with pytest.raises(ValidationFailed) as exc:
        parse_query(params)

    assert [e.field for e in exc.value.errors] == [field]


def test_blank_parameters_fall_back_to_defaults() -> None:
    q = parse_query({"page": None, "limit": "", "search": "", "status": None})

    assert q.page == 1
    assert q.limit == 20
    assert q.search is None
