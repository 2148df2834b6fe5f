from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# --- Chemins de base ---
ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = ROOT_DIR / "data"
TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "pdf"

SETTINGS_FILE = "settings.json"


class Company(BaseModel):
    name: str = "My Company"
    email: str = ""
    address: str = ""


class Settings(BaseModel):
    data_dir: Path = DATA_DIR
    currencies: List[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP", "CAD", "AUD"])
    default_currency: str = "USD"
    due_days: int = 30
    reminder_interval_days: int = 7
    page_limit: int = 20
    max_page_limit: int = 100
    number_prefix: str = "INV-"
    log_level: str = "INFO"
    wkhtmltopdf_path: Optional[str] = None
    company: Company = Field(default_factory=Company)

    @property
    def invoices_path(self) -> Path:
        return self.data_dir / "invoices.json"

    @property
    def clients_path(self) -> Path:
        return self.data_dir / "clients.json"


# ---------- Utils JSON ----------
def _load_json(path: os.PathLike | str) -> Optional[Dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return None
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _env_overrides() -> Dict[str, Any]:
    env: Dict[str, Any] = {}
    mapping = {
        "INVOICING_DEFAULT_CURRENCY": "default_currency",
        "INVOICING_DUE_DAYS": "due_days",
        "INVOICING_REMINDER_INTERVAL_DAYS": "reminder_interval_days",
        "INVOICING_PAGE_LIMIT": "page_limit",
        "INVOICING_MAX_PAGE_LIMIT": "max_page_limit",
        "INVOICING_NUMBER_PREFIX": "number_prefix",
        "INVOICING_LOG_LEVEL": "log_level",
    }
    for env_key, field in mapping.items():
        val = os.environ.get(env_key)
        if val:
            env[field] = val
    cur = os.environ.get("INVOICING_CURRENCIES")
    if cur:
        env["currencies"] = [c.strip().upper() for c in cur.split(",") if c.strip()]
    for env_key in ("WKHTMLTOPDF", "WKHTMLTOPDF_CMD"):
        val = os.environ.get(env_key)
        if val:
            env["wkhtmltopdf_path"] = val
            break
    return env


def load_settings(data_dir: Optional[os.PathLike | str] = None) -> Settings:
    """
    Ordre de priorité : variables d'environnement (.env compris)
    > data/settings.json > valeurs par défaut.
    """
    load_dotenv()
    base = Path(data_dir or os.environ.get("INVOICING_DATA_DIR") or DATA_DIR)

    raw = _load_json(base / SETTINGS_FILE) or {}
    # ancien format : chemin wkhtmltopdf sous "pdf"
    pdf_conf = raw.pop("pdf", None)
    if isinstance(pdf_conf, dict) and pdf_conf.get("wkhtmltopdf_path") and not raw.get("wkhtmltopdf_path"):
        raw["wkhtmltopdf_path"] = pdf_conf["wkhtmltopdf_path"]

    values = {**raw, **_env_overrides(), "data_dir": base}
    settings = Settings(**values)
    settings.currencies = [c.upper() for c in settings.currencies]
    settings.default_currency = settings.default_currency.upper()
    return settings
