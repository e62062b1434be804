from __future__ import annotations
from typing import List, Optional
from PySide6.QtWidgets import (
    QDialog, QVBoxLayout, QHBoxLayout, QFormLayout, QGroupBox, QComboBox, QLineEdit,
    QTextEdit, QDialogButtonBox, QPushButton, QTableWidget, QTableWidgetItem,
    QHeaderView, QDoubleSpinBox, QSpinBox, QLabel, QMessageBox
)

from devis.exceptions import QuoteValidationError
from devis.models.quote import UNIT_LABELS, VAT_RATES, Deposit, LineItem, Quote, QuoteFormData
from devis.services.autosave import DraftAutosaver
from devis.services.formatting import format_currency, format_percentage
from devis.services.quote_service import QuoteService
from devis.services.totals import compute_totals


class _AddLineDialog(QDialog):
    """Saisie d'une prestation."""
    def __init__(self, parent=None, line: Optional[LineItem] = None):
        super().__init__(parent)
        self.setWindowTitle("Prestation")
        self.setModal(True)
        self._line = line or QuoteService.new_line_item()

        self.ed_designation = QLineEdit(self._line.designation)
        self.sp_qty = QDoubleSpinBox(); self.sp_qty.setRange(0.0, 1e6); self.sp_qty.setDecimals(2); self.sp_qty.setValue(self._line.quantity)
        self.cb_unit = QComboBox()
        for code, label in UNIT_LABELS.items():
            self.cb_unit.addItem(label, code)
        self.cb_unit.setCurrentIndex(max(0, self.cb_unit.findData(self._line.unit)))
        self.sp_price = QDoubleSpinBox(); self.sp_price.setRange(0.0, 999999.99); self.sp_price.setDecimals(2); self.sp_price.setSuffix(" €")
        self.sp_price.setValue(self._line.unit_price_ht)
        self.cb_vat = QComboBox()
        for rate in VAT_RATES:
            self.cb_vat.addItem(format_percentage(rate), rate)
        self.cb_vat.setCurrentIndex(max(0, self.cb_vat.findData(self._line.vat_rate)))
        btns = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel)

        form = QFormLayout()
        form.addRow("Désignation", self.ed_designation)
        form.addRow("Quantité", self.sp_qty)
        form.addRow("Unité", self.cb_unit)
        form.addRow("Prix unitaire HT", self.sp_price)
        form.addRow("TVA", self.cb_vat)

        lay = QVBoxLayout(self)
        lay.addLayout(form)
        lay.addWidget(btns)
        btns.accepted.connect(self.accept)
        btns.rejected.connect(self.reject)

    def get_line(self) -> LineItem:
        return self._line.model_copy(update={
            "designation": self.ed_designation.text().strip(),
            "quantity": float(self.sp_qty.value()),
            "unit": self.cb_unit.currentData(),
            "unit_price_ht": float(self.sp_price.value()),
            "vat_rate": float(self.cb_vat.currentData()),
        })


class QuoteEditor(QDialog):
    """
    Édition d'un devis. Un nouveau devis est sauvegardé en brouillon
    automatiquement (debounce); un devis existant ne touche pas au brouillon.
    """
    def __init__(self, parent=None, service: Optional[QuoteService] = None,
                 autosaver: Optional[DraftAutosaver] = None, quote: Optional[Quote] = None):
        super().__init__(parent)
        self.setWindowTitle(f"Devis {quote.number}" if quote else "Nouveau devis")
        self.setModal(True)
        self.resize(900, 760)
        self.service = service
        self.autosaver = autosaver if quote is None else None
        self._quote_orig = quote
        self.saved_quote: Optional[Quote] = None

        form = quote.to_form() if quote else service.new_form()
        self._lines: List[LineItem] = [ln.model_copy(deep=True) for ln in form.line_items]
        self._company = form.company
        self._client = form.client
        self._conditions = form.conditions

        # --- Émetteur / destinataire
        self.ed_company = {k: QLineEdit(getattr(form.company, k) or "") for k in
                           ("name", "siret", "address", "postal_code", "city", "phone", "email")}
        self.ed_client = {k: QLineEdit(getattr(form.client, k) or "") for k in
                          ("name", "address", "postal_code", "city", "phone", "email")}
        labels = {"name": "Nom", "siret": "SIRET", "address": "Adresse", "postal_code": "Code postal",
                  "city": "Ville", "phone": "Téléphone", "email": "Email"}
        box_company = QGroupBox("Émetteur"); fl_company = QFormLayout(box_company)
        for k, w in self.ed_company.items():
            fl_company.addRow(labels[k], w)
        box_client = QGroupBox("Destinataire"); fl_client = QFormLayout(box_client)
        for k, w in self.ed_client.items():
            fl_client.addRow(labels[k], w)
        parties = QHBoxLayout(); parties.addWidget(box_company); parties.addWidget(box_client)

        # --- Objet / conditions
        self.ed_subject = QLineEdit(form.subject or "")
        self.sp_validity = QSpinBox(); self.sp_validity.setRange(1, 365); self.sp_validity.setValue(form.conditions.validity_days)
        self.sp_deposit = QDoubleSpinBox(); self.sp_deposit.setRange(0.0, 100.0); self.sp_deposit.setSuffix(" %")
        self.sp_deposit.setValue(form.conditions.deposit_percent or 0.0)
        self.ed_comments = QTextEdit(); self.ed_comments.setPlainText(form.comments or "")
        top = QFormLayout()
        top.addRow("Objet", self.ed_subject)
        top.addRow("Validité (jours)", self.sp_validity)
        top.addRow("Acompte", self.sp_deposit)
        top.addRow("Commentaires", self.ed_comments)

        # --- Prestations
        self.tbl = QTableWidget(0, 6)
        self.tbl.setHorizontalHeaderLabels(["Désignation", "Qté", "Unité", "P.U. HT", "TVA", "Total HT"])
        self.tbl.horizontalHeader().setSectionResizeMode(QHeaderView.Stretch)
        self.tbl.setSelectionBehavior(self.tbl.SelectionBehavior.SelectRows)
        self.tbl.setEditTriggers(self.tbl.EditTrigger.NoEditTriggers)

        btn_add = QPushButton("Ajouter une prestation")
        btn_edit = QPushButton("Modifier")
        btn_del = QPushButton("Supprimer la prestation")
        btn_add.clicked.connect(self._add_line)
        btn_edit.clicked.connect(self._edit_line)
        btn_del.clicked.connect(self._del_line)
        self.tbl.doubleClicked.connect(lambda *_: self._edit_line())

        self.lab_total = QLabel()
        bar = QHBoxLayout()
        bar.addWidget(btn_add); bar.addWidget(btn_edit); bar.addWidget(btn_del); bar.addStretch(1); bar.addWidget(self.lab_total)

        btns = QDialogButtonBox(QDialogButtonBox.Save | QDialogButtonBox.Cancel)
        btns.accepted.connect(self._save)
        btns.rejected.connect(self.reject)

        lay = QVBoxLayout(self)
        lay.addLayout(parties)
        lay.addLayout(top)
        lay.addLayout(bar)
        lay.addWidget(self.tbl, 1)
        lay.addWidget(btns)

        for w in list(self.ed_company.values()) + list(self.ed_client.values()) + [self.ed_subject]:
            w.textChanged.connect(self._changed)
        self.ed_comments.textChanged.connect(self._changed)
        self.sp_validity.valueChanged.connect(self._changed)
        self.sp_deposit.valueChanged.connect(self._changed)

        self._refresh_table()
        self._update_totals()

    # -------- UI helpers --------
    def _collect_form(self) -> QuoteFormData:
        company = self._company.model_copy(update={k: w.text().strip() for k, w in self.ed_company.items()})
        client = self._client.model_copy(update={k: w.text().strip() for k, w in self.ed_client.items()})
        pct = float(self.sp_deposit.value())
        conditions = self._conditions.model_copy(update={
            "validity_days": int(self.sp_validity.value()),
            "deposit": Deposit(percentage=pct) if pct > 0 else None,
        })
        return QuoteFormData(
            company=company,
            client=client,
            line_items=[ln.model_copy(deep=True) for ln in self._lines],
            conditions=conditions,
            subject=self.ed_subject.text().strip() or None,
            comments=self.ed_comments.toPlainText().strip() or None,
        )

    def _changed(self, *_):
        self._update_totals()
        if self.autosaver:
            self.autosaver.touch(self._collect_form())

    def _refresh_table(self):
        self.tbl.setRowCount(0)
        for ln in self._lines:
            r = self.tbl.rowCount()
            self.tbl.insertRow(r)
            self.tbl.setItem(r, 0, QTableWidgetItem(ln.designation))
            self.tbl.setItem(r, 1, QTableWidgetItem(f"{ln.quantity:g}"))
            self.tbl.setItem(r, 2, QTableWidgetItem(UNIT_LABELS.get(ln.unit, ln.unit)))
            self.tbl.setItem(r, 3, QTableWidgetItem(format_currency(ln.unit_price_ht)))
            self.tbl.setItem(r, 4, QTableWidgetItem(format_percentage(ln.vat_rate)))
            self.tbl.setItem(r, 5, QTableWidgetItem(format_currency(ln.total_ht)))
        self.tbl.resizeRowsToContents()

    def _update_totals(self):
        pct = float(self.sp_deposit.value())
        t = compute_totals(self._lines, pct if pct > 0 else None)
        text = f"HT : {format_currency(t.total_ht)}  |  TVA : {format_currency(t.total_vat)}  |  TTC : {format_currency(t.total_ttc)}"
        if t.has_deposit:
            text += f"  |  Acompte : {format_currency(t.deposit_ttc)}  |  Reste : {format_currency(t.remaining_due)}"
        self.lab_total.setText(text)

    def _add_line(self):
        dlg = _AddLineDialog(self)
        if dlg.exec() == QDialog.Accepted:
            self._lines.append(dlg.get_line())
            self._refresh_table()
            self._changed()

    def _edit_line(self):
        row = self.tbl.currentRow()
        if row < 0: return
        dlg = _AddLineDialog(self, self._lines[row])
        if dlg.exec() == QDialog.Accepted:
            self._lines[row] = dlg.get_line()
            self._refresh_table()
            self._changed()

    def _del_line(self):
        row = self.tbl.currentRow()
        if row < 0: return
        del self._lines[row]
        self._refresh_table()
        self._changed()

    # -------- Result --------
    def _save(self):
        form = self._collect_form()
        try:
            if self._quote_orig:
                self.saved_quote = self.service.update_quote(self._quote_orig.id, form)
            else:
                self.saved_quote = self.service.create_quote(form, autosaver=self.autosaver)
        except QuoteValidationError as e:
            QMessageBox.warning(self, "Devis", "\n".join(i.message + f" ({i.field})" for i in e.issues))
            return
        except RuntimeError as e:
            QMessageBox.critical(self, "Devis", str(e))
            return
        self.accept()

    def reject(self):
        # le brouillon reste disponible pour la prochaine ouverture
        if self.autosaver:
            self.autosaver.flush()
        super().reject()
