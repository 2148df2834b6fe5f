from __future__ import annotations
from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from .common import gen_id


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class Client(BaseModel):
    id: str = Field(default_factory=gen_id)
    first_name: str = ""
    last_name: str = ""
    company: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    notes: Optional[str] = None

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or (self.company or "")


class ClientSnapshot(BaseModel):
    """Copie figée du client au moment de la facturation (pas de lien vivant)."""

    client_id: str
    client_name: str
    client_email: Optional[str] = None
