from __future__ import annotations
from pydantic import BaseModel, Field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Any, Optional
import re
import uuid

CENT = Decimal("0.01")
ZERO = Decimal("0")
# au-delà : hors de portée d'une facture, traité comme une saisie illisible
MAX_VALUE = Decimal("1e15")


def gen_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today(now: Optional[datetime | date] = None) -> date:
    """Date du jour (UTC) ou partie date de ``now``."""
    if now is None:
        return utcnow().date()
    if isinstance(now, datetime):
        return now.date()
    return now


# ---------- Nombres ----------

_SYMBOLS_RE = re.compile(r"[\s$€£¥]")
_CODE_RE = re.compile(r"^[A-Z]{2,3}|[A-Z]{2,3}$")
_AMOUNT_RE = re.compile(r"-?[\d.,]+")
_COMMA_THOUSANDS_RE = re.compile(r"-?\d{1,3}(,\d{3})+")
_DOT_THOUSANDS_RE = re.compile(r"-?\d{1,3}(\.\d{3}){2,}")


def _parse_formatted(s: str) -> Optional[Decimal]:
    """
    Saisie "formulaire" : symbole / code devise et espaces autour d'un montant.
    Renvoie None si le reste n'est pas un montant complet.
    """
    s = _CODE_RE.sub("", _SYMBOLS_RE.sub("", s))
    if not _AMOUNT_RE.fullmatch(s):
        return None
    if "," in s and "." in s:
        # le dernier séparateur est la décimale : "1,200.50" / "1.200,50"
        if s.rfind(",") < s.rfind("."):
            s = s.replace(",", "")
        else:
            s = s.replace(".", "").replace(",", ".")
    elif "," in s:
        if _COMMA_THOUSANDS_RE.fullmatch(s):
            s = s.replace(",", "")
        elif s.count(",") == 1:
            s = s.replace(",", ".")
        else:
            return None
    elif _DOT_THOUSANDS_RE.fullmatch(s):
        s = s.replace(".", "")
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def to_decimal(val: Any) -> Decimal:
    """
    Conversion "souple" -> Decimal >= 0.
    Accepte int/float/Decimal/str ("1e3", "1,200", "1 200,50", "$99.90").
    Négatif, NaN, illisible ou démesuré vaut 0 ; un nombre n'est jamais
    "réparé" en un autre. Ne lève jamais d'exception : un formulaire en cours
    de saisie doit rester réactif.
    """
    if val is None or isinstance(val, bool):
        return ZERO
    if isinstance(val, Decimal):
        d = val
    elif isinstance(val, (int, float)):
        try:
            d = Decimal(str(val))
        except InvalidOperation:
            return ZERO
    else:
        s = str(val).strip()
        if not s:
            return ZERO
        try:
            d = Decimal(s)
        except InvalidOperation:
            parsed = _parse_formatted(s)
            if parsed is None:
                return ZERO
            d = parsed
    if not d.is_finite() or d < 0 or d >= MAX_VALUE:
        return ZERO
    return d


def round2(val: Any) -> Decimal:
    d = val if isinstance(val, Decimal) else Decimal(str(val or 0))
    if not d.is_finite():
        return ZERO
    with localcontext() as ctx:
        # quantize exige assez de chiffres pour la partie entière + 2 décimales
        ctx.prec = max(ctx.prec, d.adjusted() + 4)
        return d.quantize(CENT, rounding=ROUND_HALF_UP)


class TimeStamped(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self):
        object.__setattr__(self, "updated_at", utcnow())
