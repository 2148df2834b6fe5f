from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from invoicing.config import Settings
from invoicing.models.client import Client
from invoicing.services.client_service import ClientService
from invoicing.services.invoice_service import InvoiceService


class FakeClock:
    """Horloge déterministe : avance d'une seconde à chaque appel."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current

    def jump(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path)


@pytest.fixture
def clients(settings: Settings) -> ClientService:
    svc = ClientService(settings.clients_path)
    svc.add_client(Client(id="c-1", first_name="Ada", last_name="Lovelace", email="ada@example.com"))
    return svc


@pytest.fixture
def service(settings: Settings, clients: ClientService, clock: FakeClock) -> InvoiceService:
    return InvoiceService(settings=settings, clients=clients, clock=clock)


@pytest.fixture
def draft_payload() -> dict:
    return {
        "title": "Website redesign",
        "client_id": "c-1",
        "due_date": "2026-04-09",
        "tax_rate": 8,
        "discount_rate": 5,
        "items": [
            {"description": "Design", "quantity": 10, "rate": "50.00"},
            {"description": "Dev", "quantity": 5, "rate": "120.00"},
        ],
    }
