from __future__ import annotations
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    code: str


class QuoteValidationError(ValueError):
    """Champs métier manquants ou invalides: rien n'a été enregistré."""

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = list(issues)
        detail = "; ".join(f"{i.field}: {i.message}" for i in self.issues)
        super().__init__(f"Devis invalide ({detail})" if detail else "Devis invalide")


class QuoteNotFoundError(KeyError):
    def __init__(self, quote_id: str):
        self.quote_id = quote_id
        super().__init__(f"quote with id={quote_id} not found")


class QuotaExceededError(OSError):
    """Levée par un backend quand la valeur ne tient plus dans l'espace alloué."""


class StorageFullError(RuntimeError):
    """Écriture impossible même après nettoyage des anciens devis."""
