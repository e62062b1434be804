from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from devis.config import STORAGE_CAPACITY_BYTES, STORAGE_KEY, Settings
from devis.exceptions import QuotaExceededError, StorageFullError
from devis.models.party import Company
from devis.models.quote import Conditions, Quote, QuoteFormData
from devis.models.storage import StorageDocument, StorageUsage
from devis.storage.backends import FileBackend, KeyValueBackend
from devis.storage.retention import RETENTION_KEEP, RETENTION_MONTHS, select_retained, sort_by_recency

logger = logging.getLogger(__name__)

Listener = Callable[[StorageDocument], None]


class DocumentStore:
    """
    Tout l'état de l'application dans un seul document JSON, sous une seule clé.
    - Lecture tolérante: document absent ou illisible → document par défaut
    - Écriture = remplacement du document complet (dernier écrivain gagnant)
    - Quota dépassé → nettoyage des anciens devis puis une seule nouvelle tentative
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        key: str = STORAGE_KEY,
        clock: Optional[Callable[[], datetime]] = None,
        capacity_bytes: int = STORAGE_CAPACITY_BYTES,
        warning_ratio: float = 0.8,
        retention_keep: int = RETENTION_KEEP,
        retention_months: int = RETENTION_MONTHS,
    ) -> None:
        self.backend = backend
        self.key = key
        self.clock = clock or datetime.now
        self.capacity_bytes = capacity_bytes
        self.warning_ratio = warning_ratio
        self.retention_keep = retention_keep
        self.retention_months = retention_months
        self._listeners: List[Listener] = []
        # lecture-fusion-écriture atomique (minuteur de sauvegarde automatique)
        self._lock = threading.RLock()
        self._seen_mtime = self._backend_mtime()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Callable[[], datetime]] = None) -> "DocumentStore":
        backend = FileBackend(settings.data_dir, capacity_bytes=settings.storage_capacity_bytes)
        return cls(
            backend,
            clock=clock,
            capacity_bytes=settings.storage_capacity_bytes,
            warning_ratio=settings.storage_warning_ratio,
            retention_keep=settings.retention_keep,
            retention_months=settings.retention_months,
        )

    # ---------------- I/O bas niveau ---------------- #

    def _backend_mtime(self) -> Optional[float]:
        mtime = getattr(self.backend, "mtime", None)
        return mtime(self.key) if callable(mtime) else None

    def _read_raw(self) -> Optional[Dict[str, Any]]:
        raw = self.backend.get(self.key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("Document %s illisible (%s), valeurs par défaut", self.key, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Document %s inattendu (%s), valeurs par défaut", self.key, type(data).__name__)
            return None
        return data

    @staticmethod
    def _serialize(doc: StorageDocument) -> str:
        # les champs absents (acompte non demandé, pas de brouillon...) ne sont pas écrits
        return doc.model_dump_json(indent=2, exclude_none=True)

    def _write(self, doc: StorageDocument) -> None:
        self.backend.set(self.key, self._serialize(doc))
        self._seen_mtime = self._backend_mtime()

    # ---------------- Document ---------------- #

    def load(self) -> StorageDocument:
        data = self._read_raw()
        if data is None:
            return StorageDocument()
        try:
            return StorageDocument.model_validate(data)
        except ValidationError as e:
            logger.warning("Document %s invalide, valeurs par défaut: %s", self.key, e)
            return StorageDocument()

    def save(self, **fields: Any) -> StorageDocument:
        """Fusionne ``fields`` (premier niveau) dans le document courant et réécrit le tout."""
        unknown = set(fields) - set(StorageDocument.model_fields)
        if unknown:
            raise TypeError(f"unknown document fields: {sorted(unknown)}")

        with self._lock:
            merged = StorageDocument.model_validate({**dict(self.load()), **fields})
            try:
                self._write(merged)
            except QuotaExceededError as e:
                logger.warning("Quota dépassé (%s): nettoyage des anciens devis puis nouvel essai", e)
                kept = select_retained(merged.quotes, self.clock(), self.retention_keep, self.retention_months)
                merged = merged.model_copy(update={"quotes": kept})
                try:
                    self._write(merged)
                except QuotaExceededError as retry_error:
                    logger.error("Sauvegarde impossible même après nettoyage: %s", retry_error)
                    raise StorageFullError("Espace de stockage insuffisant, même après nettoyage") from retry_error
        self._notify(merged)
        return merged

    def reset(self) -> None:
        with self._lock:
            self.backend.remove(self.key)
            self._seen_mtime = self._backend_mtime()
        self._notify(StorageDocument())

    # ---------------- Numérotation ---------------- #

    def next_quote_number(self) -> str:
        # compteur global: jamais remis à zéro au changement d'année
        with self._lock:
            seq = self.load().last_sequence_number + 1
            self.save(last_sequence_number=seq)
        return f"DEVIS-{self.clock().year:04d}-{seq:04d}"

    # ---------------- Devis ---------------- #

    def upsert_quote(self, quote: Quote) -> Quote:
        with self._lock:
            quotes = list(self.load().quotes)
            for idx, existing in enumerate(quotes):
                if existing.id == quote.id:
                    quotes[idx] = quote
                    break
            else:
                quotes.append(quote)
            self.save(quotes=quotes)
        return quote

    def delete_quote(self, quote_id: str) -> bool:
        with self._lock:
            quotes = self.load().quotes
            kept = [q for q in quotes if q.id != quote_id]
            if len(kept) == len(quotes):
                return False
            self.save(quotes=kept)
        return True

    def get_quote(self, quote_id: str) -> Optional[Quote]:
        for q in self.load().quotes:
            if q.id == quote_id:
                return q
        return None

    def list_quotes(self) -> List[Quote]:
        """Tous les devis, du plus récemment modifié au plus ancien."""
        return sort_by_recency(self.load().quotes)

    def retention_sweep(self) -> int:
        """Supprime les devis hors politique de conservation; retourne le nombre de devis supprimés."""
        with self._lock:
            quotes = self.load().quotes
            kept = select_retained(quotes, self.clock(), self.retention_keep, self.retention_months)
            removed = len(quotes) - len(kept)
            if removed:
                logger.info("Nettoyage: %d devis supprimé(s)", removed)
                self.save(quotes=kept)
        return removed

    # ---------------- Brouillon ---------------- #

    def save_draft(self, draft: QuoteFormData) -> None:
        self.save(draft=draft)

    def get_draft(self) -> Optional[QuoteFormData]:
        return self.load().draft

    def clear_draft(self) -> None:
        self.save(draft=None)

    # ---------------- Valeurs par défaut ---------------- #

    def save_default_company(self, company: Company) -> None:
        self.save(default_company=company)

    def get_default_company(self) -> Optional[Company]:
        return self.load().default_company

    def save_default_conditions(self, conditions: Conditions) -> None:
        self.save(default_conditions=conditions)

    def get_default_conditions(self) -> Optional[Conditions]:
        return self.load().default_conditions

    def save_custom_legal_notices(self, notices: List[str]) -> None:
        self.save(custom_legal_notices=list(notices))

    def get_custom_legal_notices(self) -> List[str]:
        return list(self.load().custom_legal_notices)

    # ---------------- Export / import ---------------- #

    def export_snapshot(self) -> str:
        return self._serialize(self.load())

    def import_snapshot(self, text: str) -> bool:
        """Valide d'abord, écrit ensuite: en cas d'échec les données existantes restent intactes."""
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            logger.warning("Import refusé, JSON invalide: %s", e)
            return False
        if not isinstance(data, dict) or not isinstance(data.get("quotes"), list):
            logger.warning("Import refusé: structure de données invalide")
            return False
        try:
            incoming = StorageDocument.model_validate(data)
        except ValidationError as e:
            logger.warning("Import refusé: %s", e)
            return False

        fields = {name: getattr(incoming, name) for name in data if name in StorageDocument.model_fields}
        try:
            self.save(**fields)
        except StorageFullError as e:
            logger.error("Import impossible: %s", e)
            return False
        return True

    def storage_usage(self) -> StorageUsage:
        raw = self.backend.get(self.key) or ""
        used = len(raw.encode("utf-8"))
        ratio = used / self.capacity_bytes if self.capacity_bytes else 0.0
        return StorageUsage(
            used_bytes=used,
            percentage=int(ratio * 100 + 0.5),
            near_capacity=ratio >= self.warning_ratio,
        )

    # ---------------- Notifications ---------------- #

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Listener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, doc: StorageDocument) -> None:
        for cb in list(self._listeners):
            try:
                cb(doc)
            except Exception:
                logger.exception("Listener %r en échec", cb)

    def poll_external_changes(self) -> Optional[StorageDocument]:
        """
        Détecte une écriture faite par un autre processus (backend fichier uniquement).
        Aucune fusion: le document relu est notifié tel quel.
        """
        mtime = self._backend_mtime()
        if mtime is None or mtime == self._seen_mtime:
            return None
        self._seen_mtime = mtime
        doc = self.load()
        self._notify(doc)
        return doc
