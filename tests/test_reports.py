import io

import pytest
from openpyxl import load_workbook
from PyPDF2 import PdfReader
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from drscreen.exports import export_filename, logs_to_xlsx
from drscreen.pdf_form import format_value, render_screening_form, report_from_patient

REPORT = {
    "name": "Asha Rao",
    "registrationNo": "20240102-1234",
    "contactNo": "9999999999",
    "diabetesType": "Type 2",
    "insulin": True,
    "drr": "Mild NPDR",
}


def make_template(path):
    c = canvas.Canvas(str(path), pagesize=A4)
    c.drawString(55, 595, "Name:")
    c.showPage()
    c.save()
    return path


def test_format_value():
    assert format_value("insulin", "yes") == "Yes"
    assert format_value("insulin", "") == "No"
    assert format_value("insulin", False) == "No"
    assert format_value("diabetesType", "Type 1") == " - Type 1"
    assert format_value("drl", None) == "-"
    assert format_value("name", None) == ""


def test_standalone_form_without_template(tmp_path):
    data = render_screening_form(REPORT, tmp_path / "missing.pdf")
    assert data.startswith(b"%PDF")
    text = PdfReader(io.BytesIO(data)).pages[0].extract_text()
    assert "Asha Rao" in text
    assert "Mild NPDR" in text


def test_values_stamped_onto_template(tmp_path):
    template = make_template(tmp_path / "form.pdf")
    data = render_screening_form(REPORT, template)
    reader = PdfReader(io.BytesIO(data))
    assert len(reader.pages) == 1
    text = reader.pages[0].extract_text()
    assert "Name:" in text
    assert "Asha Rao" in text


def test_empty_template_rejected(tmp_path):
    empty = tmp_path / "form.pdf"
    empty.write_bytes(b"")
    with pytest.raises(ValueError):
        render_screening_form(REPORT, empty)


def test_report_from_patient_prefers_latest_visit():
    patient = {"name": "Asha Rao", "reg": "R1", "contact": "9999999999", "drr": "No DR", "treatment": []}
    visit = {"id": 9, "reg": "R1", "drr": "Mild NPDR", "treatment": ["Laser"], "advice": ["Review in 3 months"]}
    report = report_from_patient(patient, visit)
    assert report["registrationNo"] == "R1"
    assert report["contactNo"] == "9999999999"
    assert report["drr"] == "Mild NPDR"
    assert report["treatmentAdvice"] == "Laser\nReview in 3 months"


def test_logs_to_xlsx():
    rows = [
        {"reg": "R1", "drr": "Mild NPDR", "treatment": ["Laser", "Observation"]},
        {"reg": "R1", "drr": "No DR", "treatment": []},
    ]
    wb = load_workbook(io.BytesIO(logs_to_xlsx(rows)))
    ws = wb["Data"]
    values = list(ws.iter_rows(values_only=True))
    assert values[0] == ("reg", "drr", "treatment")
    assert values[1] == ("R1", "Mild NPDR", "Laser, Observation")
    assert ws["A1"].font.bold


def test_logs_to_xlsx_needs_rows():
    with pytest.raises(ValueError):
        logs_to_xlsx([])


def test_export_filename():
    assert export_filename("R1") == "Details of Patients R1.xlsx"
