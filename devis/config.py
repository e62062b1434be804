from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[1]
TEMPLATES_DIR = ROOT_DIR / "templates" / "pdf"
DEFAULT_DATA_DIR = ROOT_DIR / "data"

STORAGE_KEY = "devis-app-data"
STORAGE_CAPACITY_BYTES = 5 * 1024 * 1024  # 5 Mo approximatif


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    exports_dir: Optional[Path] = None
    autosave_delay_s: float = 2.0
    storage_capacity_bytes: int = STORAGE_CAPACITY_BYTES
    storage_warning_ratio: float = 0.8
    retention_keep: int = 50
    retention_months: int = 6
    wkhtmltopdf_path: Optional[str] = None
    log_level: str = "INFO"

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def quotes_exports_dir(self) -> Path:
        return self.exports_dir or (ROOT_DIR / "exports" / "devis")


# ---------- Utils JSON ----------
def _load_json(path: os.PathLike | str) -> Optional[Any]:
    p = Path(path)
    if not p.exists():
        return None
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Lecture impossible de %s (%s), paramètres par défaut", p, e)
        return None


def _env_overrides(env: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for env_key, field in (
        ("DEVIS_DATA_DIR", "data_dir"),
        ("DEVIS_AUTOSAVE_DELAY", "autosave_delay_s"),
        ("DEVIS_STORAGE_CAPACITY", "storage_capacity_bytes"),
        ("DEVIS_LOG_LEVEL", "log_level"),
        ("WKHTMLTOPDF_PATH", "wkhtmltopdf_path"),
    ):
        val = env.get(env_key)
        if val:
            out[field] = val
    return out


def load_settings(env: Optional[Dict[str, str]] = None) -> Settings:
    """
    Paramètres de l'application:
    - variables d'environnement (prioritaires)
    - <data_dir>/settings.json
    - valeurs par défaut
    """
    env = dict(os.environ if env is None else env)
    overrides = _env_overrides(env)
    data_dir = Path(overrides.get("data_dir") or DEFAULT_DATA_DIR)

    raw = _load_json(data_dir / "settings.json")
    file_values = raw if isinstance(raw, dict) else {}

    try:
        return Settings(**{**file_values, "data_dir": data_dir, **overrides})
    except ValidationError as e:
        logger.warning("Paramètres invalides (%s), valeurs par défaut", e)
        return Settings(data_dir=data_dir)
