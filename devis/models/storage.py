from __future__ import annotations
from pydantic import Field
from typing import List, Optional
from .common import DevisModel
from .party import Company
from .quote import Conditions, Quote, QuoteFormData, default_conditions


class StorageDocument(DevisModel):
    """Document racine persisté sous une seule clé."""
    quotes: List[Quote] = Field(default_factory=list)
    draft: Optional[QuoteFormData] = None
    default_company: Optional[Company] = None
    default_conditions: Optional[Conditions] = Field(default_factory=default_conditions)
    custom_legal_notices: List[str] = Field(default_factory=list)
    last_sequence_number: int = 0


class StorageUsage(DevisModel):
    used_bytes: int = 0
    percentage: int = 0
    near_capacity: bool = False
