import io
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from PyPDF2 import PdfReader, PdfWriter
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from .db import as_list

FONT = "Helvetica"
FONT_SIZE = 10
LINE_HEIGHT = 14
BLANK = "-"


@dataclass(frozen=True)
class FieldSlot:
    key: str
    label: str
    x: float
    y: float
    multiline: bool = False


# Positions of the blanks on the printed DM screening form (points, origin bottom-left)
FORM_SLOTS: List[FieldSlot] = [
    FieldSlot("name", "Name", 120, 595),
    FieldSlot("registrationNo", "Reg. No", 450, 595),
    FieldSlot("age", "Age", 145, 570),
    FieldSlot("sex", "Sex", 255, 570),
    FieldSlot("contactNo", "Contact", 400, 570),
    FieldSlot("diabetesType", "Diabetes type", 315, 545),
    FieldSlot("insulin", "Insulin", 190, 520),
    FieldSlot("noOfOHA", "No. of OHA", 410, 520),
    FieldSlot("hba1c", "HbA1c", 505, 520),
    FieldSlot("bcvar", "BCVA (R)", 385, 415),
    FieldSlot("bcval", "BCVA (L)", 285, 415),
    FieldSlot("iopr", "IOP (R)", 385, 385),
    FieldSlot("iopl", "IOP (L)", 285, 385),
    FieldSlot("drr", "ETDRS grade (R)", 250, 268),
    FieldSlot("drl", "ETDRS grade (L)", 250, 240),
    FieldSlot("mer", "Macular edema (R)", 385, 268),
    FieldSlot("mel", "Macular edema (L)", 385, 240),
    FieldSlot("octr", "OCT (R)", 495, 268),
    FieldSlot("octl", "OCT (L)", 495, 240),
    FieldSlot("treatmentAdvice", "Treatment / advice", 235, 180, multiline=True),
    FieldSlot("followUp", "Follow up", 55, 95, multiline=True),
]

_NO_VALUES = {"", "0", "no", "n", "false", "off", "none"}
# findings that print a placeholder rather than an empty blank
_FINDING_KEYS = {"bcvar", "bcval", "iopr", "iopl", "drr", "drl", "mer", "mel", "octr", "octl"}


def format_value(key: str, value: Any) -> str:
    if key == "insulin":
        if isinstance(value, bool):
            return "Yes" if value else "No"
        return "No" if value is None or str(value).strip().lower() in _NO_VALUES else "Yes"
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value if v not in (None, ""))
    text = "" if value is None else str(value).strip()
    if key == "diabetesType" and text:
        return f" - {text}"
    if not text and key in _FINDING_KEYS:
        return BLANK
    return text


def _draw(c: canvas.Canvas, x: float, y: float, text: str, multiline: bool):
    if not text:
        return
    if not multiline:
        c.drawString(x, y, text)
        return
    obj = c.beginText(x, y)
    obj.setFont(FONT, FONT_SIZE, leading=LINE_HEIGHT)
    for line in text.splitlines() or [text]:
        obj.textLine(line)
    c.drawText(obj)


def _overlay(report: Mapping[str, Any], pagesize: Tuple[float, float]) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=pagesize)
    c.setFont(FONT, FONT_SIZE)
    c.setFillColorRGB(0, 0, 0)
    for slot in FORM_SLOTS:
        _draw(c, slot.x, slot.y, format_value(slot.key, report.get(slot.key)), slot.multiline)
    c.showPage()
    c.save()
    return buf.getvalue()


def _standalone(report: Mapping[str, Any]) -> bytes:
    """Labelled single-page form for installs without the printed template."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4
    c.setFont("Helvetica-Bold", 14)
    c.drawString(55, height - 60, "DM Screening Form")
    c.setLineWidth(0.5)
    c.line(55, height - 68, width - 55, height - 68)
    y = height - 95
    for slot in FORM_SLOTS:
        value = format_value(slot.key, report.get(slot.key)).lstrip(" -") or BLANK
        c.setFont("Helvetica-Bold", FONT_SIZE)
        c.drawString(55, y, f"{slot.label}:")
        c.setFont(FONT, FONT_SIZE)
        lines = value.splitlines() or [value]
        for line in lines:
            c.drawString(190, y, line)
            y -= LINE_HEIGHT
        y -= 6
    c.showPage()
    c.save()
    return buf.getvalue()


def render_screening_form(report: Mapping[str, Any], template_path: Optional[Path] = None) -> bytes:
    """
    Fill the DM screening form. With a template PDF the values are stamped onto
    its first page at the printed blanks; otherwise a labelled page is produced.
    """
    if template_path is None or not Path(template_path).is_file():
        return _standalone(report)

    data = Path(template_path).read_bytes()
    if not data:
        raise ValueError("PDF template not found or is empty")
    reader = PdfReader(io.BytesIO(data))
    first = reader.pages[0]
    pagesize = (float(first.mediabox.width), float(first.mediabox.height))
    stamp = PdfReader(io.BytesIO(_overlay(report, pagesize))).pages[0]
    first.merge_page(stamp)

    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def report_from_patient(patient: Dict[str, Any], visit: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Map stored patient/visit columns onto the form's field names."""
    src = dict(patient)
    if visit:
        src.update({k: v for k, v in visit.items() if k not in ("id", "reg", "created_at")})
    advice = as_list(src.get("advice"))
    treatment = as_list(src.get("treatment"))
    return {
        "name": src.get("name"),
        "registrationNo": src.get("reg"),
        "age": src.get("age"),
        "sex": src.get("sex"),
        "contactNo": src.get("contact"),
        "diabetesType": src.get("dtype"),
        "insulin": src.get("insulin"),
        "noOfOHA": src.get("oha"),
        "hba1c": src.get("hba1c"),
        "bcvar": src.get("bcvar"),
        "bcval": src.get("bcval"),
        "iopr": src.get("iopr"),
        "iopl": src.get("iopl"),
        "drr": src.get("drr"),
        "drl": src.get("drl"),
        "mer": src.get("mer"),
        "mel": src.get("mel"),
        "octr": src.get("octr"),
        "octl": src.get("octl"),
        "treatmentAdvice": "\n".join(treatment + advice),
        "followUp": src.get("fllwp"),
    }
