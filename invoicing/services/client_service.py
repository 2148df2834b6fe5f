from __future__ import annotations
from typing import Optional
import logging
import os

from pydantic import ValidationError

from invoicing.config import DATA_DIR
from invoicing.models.client import Client, ClientSnapshot
from invoicing.storage.json_repo import JsonRepository

log = logging.getLogger(__name__)

CLIENTS_JSON = os.path.join(DATA_DIR, "clients.json")


class ClientService:
    """Annuaire clients en lecture pour figer le snapshot des factures."""

    def __init__(self, path: os.PathLike | str = CLIENTS_JSON):
        self.repo = JsonRepository(path, entity_name="client", key="id", version_key=None)

    def add_client(self, client: Client) -> Client:
        self.repo.add(client)
        return client

    def get_by_id(self, client_id: str) -> Optional[Client]:
        d = self.repo.get_by_id(client_id)
        if not d:
            return None
        try:
            return Client(**d)
        except ValidationError:
            log.warning("Skipping invalid client record %s", client_id)
            return None

    def snapshot(self, client_id: str) -> Optional[ClientSnapshot]:
        c = self.get_by_id(client_id)
        if c is None:
            return None
        return ClientSnapshot(
            client_id=c.id,
            client_name=c.full_name or "Client",
            client_email=str(c.email) if c.email else None,
        )
