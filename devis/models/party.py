from __future__ import annotations
from typing import Literal, Optional
from .common import DevisModel

LegalForm = Literal["Auto-entrepreneur", "EURL", "SASU", "SAS", "SARL"]


class Company(DevisModel):
    """Émetteur du devis. Les champs vides sont permis tant que le devis n'est pas enregistré."""
    name: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    siret: str = ""
    vat_number: Optional[str] = None
    legal_form: LegalForm = "Auto-entrepreneur"
    activity: str = ""


class Client(DevisModel):
    name: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    siret: Optional[str] = None  # optionnel pour les particuliers
