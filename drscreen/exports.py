import io
from typing import Any, Dict, List

from openpyxl import Workbook
from openpyxl.styles import Font

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _cell(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return value


def logs_to_xlsx(rows: List[Dict[str, Any]], sheet_name: str = "Data") -> bytes:
    """One header row from the column names, then one row per visit."""
    if not rows:
        raise ValueError("no rows to export")
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name
    columns = list(rows[0].keys())
    ws.append(columns)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in rows:
        ws.append([_cell(row.get(col)) for col in columns])
    for idx, col in enumerate(columns, start=1):
        width = max(len(str(col)), *(len(str(_cell(r.get(col)) or "")) for r in rows))
        ws.column_dimensions[ws.cell(row=1, column=idx).column_letter].width = min(width + 2, 60)
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def export_filename(reg: str) -> str:
    return f"Details of Patients {reg}.xlsx"
