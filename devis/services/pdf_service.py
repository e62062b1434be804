from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from shutil import which
from typing import Any, Dict, List, Optional

import pdfkit  # utilisé si wkhtmltopdf dispo
from jinja2 import Environment, FileSystemLoader, select_autoescape

from devis.config import TEMPLATES_DIR, Settings, load_settings
from devis.models.quote import STATUS_LABELS, UNIT_LABELS, Quote
from devis.services.formatting import format_currency, format_date, format_percentage
from devis.services.totals import vat_breakdown
from devis.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)


def _clean_path(p: str) -> str:
    """Chemin saisi à la main (guillemets, "C\\:" échappé) -> chemin normalisé."""
    if not p:
        return ""
    p = p.strip().strip('"').strip("'")
    p = p.replace("\\:", ":")
    return os.path.normpath(p)


def _slug(text: str) -> str:
    text = re.sub(r'[\\/:*?"<>|\n\r\t]', "_", (text or "").strip())
    return re.sub(r"\s+", " ", text) or "devis"


def find_wkhtmltopdf(settings: Settings) -> Optional[str]:
    """
    Localise wkhtmltopdf :
    - paramètre wkhtmltopdf_path (settings.json ou WKHTMLTOPDF_PATH)
    - chemins Windows connus
    - PATH
    """
    if settings.wkhtmltopdf_path:
        path = _clean_path(settings.wkhtmltopdf_path)
        if Path(path).is_file():
            return path
    for c in (
        r"C:\Program Files\wkhtmltopdf\bin\wkhtmltopdf.exe",
        r"C:\Program Files (x86)\wkhtmltopdf\bin\wkhtmltopdf.exe",
    ):
        if Path(c).is_file():
            return c
    found = which("wkhtmltopdf")
    return _clean_path(found) if found else None


def legal_mentions(quote: Quote, custom: Optional[List[str]] = None) -> List[str]:
    mentions = [
        f"Ce devis est valable {quote.conditions.validity_days} jours à compter de sa date d'émission.",
        "L'acceptation du présent devis implique l'adhésion entière aux conditions générales de vente.",
    ]
    if quote.company.legal_form == "Auto-entrepreneur":
        mentions.append("TVA non applicable, art. 293 B du CGI (régime micro-entrepreneur).")
    mentions.append(
        "En cas de retard de paiement, des pénalités de retard au taux de 3 fois "
        "le taux d'intérêt légal seront applicables."
    )
    mentions.extend(m for m in (custom or []) if m and m.strip())
    return mentions


class QuotePdfService:
    def __init__(self, store: Optional[DocumentStore] = None, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or load_settings()
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
        )
        self.env.filters["currency"] = format_currency
        self.env.filters["percent"] = format_percentage
        self.env.filters["frdate"] = format_date

    def _context(self, quote: Quote) -> Dict[str, Any]:
        breakdown = vat_breakdown(quote.line_items)
        custom = self.store.get_custom_legal_notices() if self.store else []
        return {
            "quote": quote,
            "status_label": STATUS_LABELS.get(quote.status, quote.status),
            "unit_labels": UNIT_LABELS,
            "totals": quote.totals,
            "vat_breakdown": breakdown,
            # récapitulatif TVA seulement si plusieurs taux
            "show_vat_recap": len(breakdown) > 1,
            "mentions": legal_mentions(quote, custom),
        }

    def render_html(self, quote: Quote) -> str:
        """Rend le HTML du devis en mémoire via Jinja2: templates/pdf/quote.html"""
        return self.env.get_template("quote.html").render(**self._context(quote))

    def export_pdf(self, quote: Quote, out_dir: Optional[str | Path] = None) -> str:
        """
        Génère le PDF du devis.
        wkhtmltopdf (pdfkit) si on le trouve, WeasyPrint sinon.
        """
        html = self.render_html(quote)
        exports_dir = Path(out_dir) if out_dir else self.settings.quotes_exports_dir
        exports_dir.mkdir(parents=True, exist_ok=True)
        out_path = exports_dir / f"{_slug(quote.number)}.pdf"
        css_file = TEMPLATES_DIR / "stylesheet.css"

        wkhtml = find_wkhtmltopdf(self.settings)
        if wkhtml:
            try:
                config = pdfkit.configuration(wkhtmltopdf=wkhtml)
                options = {"enable-local-file-access": None, "quiet": "", "encoding": "UTF-8"}
                pdfkit.from_string(html, str(out_path), options=options, configuration=config, css=str(css_file))
                return str(out_path)
            except OSError as e:
                logger.warning("Échec wkhtmltopdf (%s). Fallback WeasyPrint...", e)

        try:
            from weasyprint import CSS, HTML
        except (ImportError, OSError) as e:
            raise RuntimeError(
                f"Export PDF impossible: ni wkhtmltopdf ni WeasyPrint ne sont utilisables ({e}). "
                "Renseigner WKHTMLTOPDF_PATH ou installer WeasyPrint."
            ) from e
        styles = [CSS(filename=str(css_file))] if css_file.exists() else None
        HTML(string=html, base_url=str(TEMPLATES_DIR.resolve())).write_pdf(str(out_path), stylesheets=styles)
        return str(out_path)
