from __future__ import annotations
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from typing import List, Literal, Optional
from datetime import date, datetime
from decimal import Decimal
from .common import TimeStamped, gen_id, to_decimal, today

InvoiceStatus = Literal["draft", "sent", "viewed", "paid", "overdue", "cancelled"]
PaymentMethod = Literal["bank_transfer", "credit_card", "paypal", "stripe", "cash", "check", "other"]
ReminderType = Literal["email", "sms", "manual"]

STATUSES: tuple[str, ...] = ("draft", "sent", "viewed", "paid", "overdue", "cancelled")


def _parse_optional_date(v):
    # chaîne vide d'un champ date de formulaire -> pas de date
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    if isinstance(v, datetime):
        return v.date()
    return v


class LineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: str = ""
    quantity: Decimal = Decimal("1")
    rate: Decimal = Decimal("0")
    amount: Decimal = Decimal("0.00")  # dérivé, recalculé par compute_totals

    @field_validator("description", mode="before")
    @classmethod
    def description_as_text(cls, v):
        return "" if v is None else str(v)

    @field_validator("quantity", "rate", "amount", mode="before")
    @classmethod
    def normalise_numbers(cls, v):
        return to_decimal(v)


class TotalsSnapshot(BaseModel):
    items: List[LineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    warnings: List[str] = Field(default_factory=list)


# ---------- Relances ----------

class Reminder(BaseModel):
    """Relance envoyée (journal, jamais modifiée)."""

    reminder_type: ReminderType = "email"
    sent_to: List[str] = Field(default_factory=list)
    message: str = ""
    sent_at: datetime


class ReminderRule(BaseModel):
    days_before_due: Optional[int] = Field(default=None, ge=1, le=30)
    days_after_due: Optional[int] = Field(default=None, ge=1, le=90)
    reminder_type: Literal["email", "sms"] = "email"

    @model_validator(mode="after")
    def single_offset(self):
        if (self.days_before_due is None) == (self.days_after_due is None):
            raise ValueError("Set exactly one of days_before_due or days_after_due")
        return self


class ReminderSettings(BaseModel):
    enabled: bool = False
    schedule: List[ReminderRule] = Field(default_factory=list)


class Invoice(TimeStamped):
    model_config = ConfigDict(extra="ignore")  # tolère d'anciennes clés dans les JSON

    id: str = Field(default_factory=gen_id)
    invoice_number: Optional[str] = None
    title: str = ""
    description: Optional[str] = None

    # snapshot client figé à la création
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    project_id: Optional[str] = None

    items: List[LineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0.00")
    discount_rate: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    currency: str = "USD"

    status: InvoiceStatus = "draft"
    issue_date: date = Field(default_factory=today)
    due_date: Optional[date] = None

    sent_date: Optional[datetime] = None
    sent_to: List[str] = Field(default_factory=list)
    viewed_date: Optional[datetime] = None
    view_count: int = 0
    paid_date: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = None
    download_count: int = 0

    reminders: List[Reminder] = Field(default_factory=list)
    reminder_settings: ReminderSettings = Field(default_factory=ReminderSettings)

    notes: Optional[str] = None
    terms: Optional[str] = None

    version: int = 1

    @field_validator("due_date", mode="before")
    @classmethod
    def blank_due_date(cls, v):
        return _parse_optional_date(v)

    @field_validator("tax_rate", "discount_rate", mode="before")
    @classmethod
    def normalise_rate(cls, v):
        return to_decimal(v)

    # helpers
    def is_draft(self) -> bool:
        return self.status == "draft"

    def is_terminal(self) -> bool:
        return self.status in ("paid", "cancelled")


# ---------- Payloads (création / mise à jour) ----------

class InvoiceDraft(BaseModel):
    """Champs acceptés à la création ; le numéro fourni n'est qu'un brouillon."""

    model_config = ConfigDict(extra="ignore")

    invoice_number: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    project_id: Optional[str] = None
    items: List[LineItem] = Field(default_factory=list)
    tax_rate: Decimal = Decimal("0")
    discount_rate: Decimal = Decimal("0")
    currency: Optional[str] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    terms: Optional[str] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def blank_due_date(cls, v):
        return _parse_optional_date(v)

    @field_validator("tax_rate", "discount_rate", mode="before")
    @classmethod
    def normalise_rate(cls, v):
        return to_decimal(v)


class InvoiceUpdate(BaseModel):
    """Champs modifiables (PUT) ; les totaux envoyés par le client sont ignorés."""

    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    items: Optional[List[LineItem]] = None
    tax_rate: Optional[Decimal] = None
    discount_rate: Optional[Decimal] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    version: Optional[int] = None

    @field_validator("tax_rate", "discount_rate", mode="before")
    @classmethod
    def normalise_rate(cls, v):
        return None if v is None else to_decimal(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def blank_due_date(cls, v):
        return _parse_optional_date(v)


class PaymentDetails(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = Field(default=None, max_length=100)
    paid_date: Optional[datetime] = None
    version: Optional[int] = None


class SendRequest(BaseModel):
    recipients: Optional[List[str]] = None
    version: Optional[int] = None


class ReminderRequest(BaseModel):
    reminder_type: ReminderType = "email"
    recipients: Optional[List[EmailStr]] = None
    message: Optional[str] = Field(default=None, max_length=1000)


class ReminderScheduleUpdate(BaseModel):
    """``enabled`` seul bascule les relances ; ``schedule`` remplace les règles."""

    enabled: bool
    schedule: Optional[List[ReminderRule]] = None
    version: Optional[int] = None
