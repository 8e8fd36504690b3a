import sqlite3
from html import escape
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse, Response

from .auth import hash_password, login_required, login_user, logout_user, verify_password
from .db import CLINICAL_FIELDS, DEFAULT_NOTES, LIST_FIELDS, PATIENT_FIELDS, as_list
from .exports import XLSX_MEDIA_TYPE, export_filename, logs_to_xlsx
from .pdf_form import report_from_patient
from .utils import generate_reg_number, json_log

router = APIRouter()

FIELD_LABELS = {
    "name": "Name", "reg": "Reg. No", "age": "Age", "sex": "Sex", "contact": "Contact",
    "beneficiary": "Beneficiary", "dtype": "Diabetes type", "ddur": "Duration (yrs)",
    "insulin": "Insulin", "oha": "No. of OHA", "hba1c": "HbA1c", "treatment": "Treatment",
    "bcvar": "BCVA (R)", "bcval": "BCVA (L)", "iopr": "IOP (R)", "iopl": "IOP (L)",
    "drr": "ETDRS grade (R)", "drl": "ETDRS grade (L)", "mer": "Macular edema (R)",
    "mel": "Macular edema (L)", "octr": "OCT (R)", "octl": "OCT (L)", "advice": "Advice",
    "fllwp": "Follow up",
}
TREATMENT_OPTIONS = ["Observation", "Laser", "Anti-VEGF injection", "Vitrectomy", "Cataract surgery"]
ADVICE_OPTIONS = ["Control blood sugar", "Control blood pressure", "Review in 3 months",
                  "Review in 6 months", "Review in 1 year", "Refer to retina clinic"]


def _state(request: Request):
    return request.app.state.clinic


def _show(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value)
    return escape("" if value is None else str(value))


def html_page(body: str, user: Optional[Dict[str, Any]] = None, refresh: Optional[int] = None,
              status_code: int = 200) -> HTMLResponse:
    nav = (
        f'<a class="button" href="/home">Patients</a> '
        f'<a class="button" href="/patients/new">Add patient</a> '
        f'<a class="button" href="/ui">WhatsApp</a> '
        f'<a class="button danger" href="/logout">Logout ({escape(user["email"])})</a>'
        if user else '<a class="button" href="/login">Login</a> <a class="button" href="/register">Register</a>'
    )
    meta_refresh = f'<meta http-equiv="refresh" content="{refresh}"/>' if refresh else ""
    html = f"""
<!doctype html>
<html>
  <head>
    <meta charset="utf-8"/>
    <title>DR Screening Clinic</title>
    <meta name="viewport" content="width=device-width, initial-scale=1"/>
    {meta_refresh}
    <style>
      :root {{
        --bg: #f4f7fb;
        --card: #ffffff;
        --muted: #66708a;
        --text: #1d2333;
        --accent: #1f7a8c;
        --ok: #2e9d6a;
        --err: #d64545;
      }}
      * {{ box-sizing: border-box; }}
      body {{
        margin: 0;
        font-family: Inter, system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif;
        color: var(--text);
        background: var(--bg);
        min-height: 100vh;
      }}
      header {{
        padding: 18px 20px;
        display: flex;
        justify-content: space-between;
        align-items: center;
        border-bottom: 1px solid #dde3ee;
        background: #fff;
      }}
      .brand {{ font-weight: 700; font-size: 18px; color: var(--accent); }}
      .container {{ padding: 24px; max-width: 1200px; margin: 0 auto; }}
      .grid {{ display: grid; gap: 16px; grid-template-columns: repeat(auto-fit, minmax(300px, 1fr)); }}
      .card {{
        background: var(--card);
        border: 1px solid #dde3ee;
        border-radius: 12px;
        padding: 16px;
        margin-bottom: 16px;
      }}
      .card h3 {{ margin: 0 0 10px; font-size: 16px; }}
      .muted {{ color: var(--muted); }}
      .button {{
        display: inline-block; padding: 8px 12px; border-radius: 8px; cursor: pointer;
        border: 1px solid var(--accent); color: #fff; text-decoration: none; background: var(--accent);
      }}
      .button.danger {{ background: var(--err); border-color: var(--err); }}
      .badge {{ padding: 4px 8px; border-radius: 999px; font-size: 12px; border: 1px solid #c5cede; }}
      .ok {{ color: var(--ok); }}
      .err {{ color: var(--err); }}
      table {{ border-collapse: collapse; width: 100%; }}
      th, td {{ border-bottom: 1px solid #e6eaf2; padding: 8px; font-size: 14px; }}
      th {{ text-align: left; }}
      .row {{ margin-bottom: 10px; }}
      input[type="text"], input[type="email"], input[type="password"], select, textarea {{
        width: 100%; padding: 8px; border-radius: 8px; border: 1px solid #c5cede;
      }}
      form .actions {{ margin-top: 10px; display: flex; gap: 10px; }}
    </style>
  </head>
  <body>
    <header>
      <div class="brand">DR Screening Clinic</div>
      <div>{nav}</div>
    </header>
    <div class="container">
      {body}
    </div>
  </body>
</html>
"""
    return HTMLResponse(html, status_code=status_code)


def _flash(msg: Optional[str], error: Optional[str]) -> str:
    out = ""
    if msg:
        out += f'<div class="card ok">{escape(msg)}</div>'
    if error:
        out += f'<div class="card err">{escape(error)}</div>'
    return out


def _text_input(field: str, value: Any = "") -> str:
    return (
        f'<div class="row"><label for="{field}">{FIELD_LABELS[field]}</label>'
        f'<input type="text" id="{field}" name="{field}" value="{_show(value)}"/></div>'
    )


def _checkboxes(field: str, options: List[str], selected: List[str]) -> str:
    boxes = "".join(
        f'<label><input type="checkbox" name="{field}" value="{escape(o)}"{" checked" if o in selected else ""}/> {escape(o)}</label><br/>'
        for o in options
    )
    return f'<div class="row"><b>{FIELD_LABELS[field]}</b><br/>{boxes}</div>'


def _clinical_inputs(values: Dict[str, Any]) -> str:
    parts = []
    for field in CLINICAL_FIELDS:
        if field == "treatment":
            parts.append(_checkboxes(field, TREATMENT_OPTIONS, as_list(values.get(field))))
        elif field == "advice":
            parts.append(_checkboxes(field, ADVICE_OPTIONS, as_list(values.get(field))))
        else:
            parts.append(_text_input(field, values.get(field) or ""))
    return "".join(parts)


async def _read_findings(request: Request, fields: List[str]) -> Dict[str, Any]:
    form = await request.form()
    out: Dict[str, Any] = {}
    for field in fields:
        if field in LIST_FIELDS:
            out[field] = [v for v in form.getlist(field) if v]
        else:
            out[field] = (form.get(field) or "").strip()
    out["notes"] = (form.get("notes") or "").strip()
    return out


# --- auth pages ---

def _credentials_form(action: str, title: str, error: Optional[str]) -> str:
    return f"""
    {_flash(None, error)}
    <div class="card">
      <h3>{title}</h3>
      <form action="{action}" method="post">
        <div class="row"><label for="email">Email</label><input type="email" id="email" name="email"/></div>
        <div class="row"><label for="password">Password</label><input type="password" id="password" name="password"/></div>
        <div class="actions"><button class="button" type="submit">{title}</button></div>
      </form>
    </div>
    """


@router.get("/register")
def register_page(error: Optional[str] = Query(default=None)):
    return html_page(_credentials_form("/register", "Register", error))


@router.post("/register")
async def register(request: Request):
    form = await request.form()
    email = (form.get("email") or "").strip().lower()
    password = form.get("password") or ""
    if not email or not password:
        return RedirectResponse(url="/register?error=" + quote("Email and password are required"), status_code=303)
    st = _state(request)
    if st.db.get_user(email):
        return html_page(_credentials_form("/register", "Register", "exists"), status_code=409)
    user = st.db.create_user(email, hash_password(password, st.settings.salt_rounds))
    json_log("user_registered", email=email)
    login_user(request, user)
    return RedirectResponse(url="/home", status_code=303)


@router.get("/login")
def login_page(error: Optional[str] = Query(default=None)):
    return html_page(_credentials_form("/login", "Login", error))


@router.post("/login")
async def login(request: Request):
    form = await request.form()
    email = (form.get("email") or "").strip().lower()
    password = form.get("password") or ""
    user = _state(request).db.get_user(email) if email else None
    if not user or not verify_password(password, user.get("password")):
        json_log("login_failed", email=email)
        return RedirectResponse(url="/login?error=" + quote("Invalid email or password"), status_code=303)
    login_user(request, user)
    return RedirectResponse(url="/home", status_code=303)


@router.get("/logout")
def logout(request: Request):
    logout_user(request)
    return RedirectResponse(url="/login", status_code=303)


# --- patients ---

@router.get("/")
def index():
    return RedirectResponse(url="/home", status_code=303)


@router.get("/home")
def home(request: Request, q: Optional[str] = Query(default=None), msg: Optional[str] = Query(default=None),
         user=Depends(login_required)):
    patients = _state(request).db.list_patients(q)
    rows = "".join(
        f'<tr><td><a href="/patients/{quote(p["reg"])}">{_show(p["reg"])}</a></td><td>{_show(p["name"])}</td>'
        f'<td>{_show(p["age"])}</td><td>{_show(p["sex"])}</td><td>{_show(p["contact"])}</td>'
        f'<td>{_show(p["created_at"])}</td></tr>'
        for p in patients
    )
    body = f"""
    {_flash(msg, None)}
    <div class="card">
      <form action="/home" method="get" class="row">
        <input type="text" name="q" value="{_show(q or '')}" placeholder="Search by name, reg. no or contact"/>
      </form>
      <table>
        <tr><th>Reg. No</th><th>Name</th><th>Age</th><th>Sex</th><th>Contact</th><th>Registered</th></tr>
        {rows if rows else '<tr><td colspan="6" class="muted">No patients yet</td></tr>'}
      </table>
    </div>
    """
    return html_page(body, user)


@router.get("/patients/new")
def new_patient(error: Optional[str] = Query(default=None), user=Depends(login_required)):
    demographics = "".join(_text_input(f) for f in ("name", "age", "sex", "contact", "beneficiary"))
    body = f"""
    {_flash(None, error)}
    <div class="card">
      <h3>Add patient</h3>
      <form action="/patients" method="post">
        {_text_input("reg", generate_reg_number())}
        {demographics}
        {_clinical_inputs({})}
        <div class="row"><label for="notes">Notes</label><textarea id="notes" name="notes"></textarea></div>
        <div class="actions"><button class="button" type="submit">Save</button></div>
      </form>
    </div>
    """
    return html_page(body, user)


@router.post("/patients")
async def add_patient(request: Request, user=Depends(login_required)):
    det = await _read_findings(request, PATIENT_FIELDS)
    if not det.get("name"):
        return RedirectResponse(url="/patients/new?error=" + quote("Name is required"), status_code=303)
    det["reg"] = det.get("reg") or generate_reg_number()
    db = _state(request).db
    try:
        db.create_patient(det)
    except sqlite3.IntegrityError:
        json_log("patient_exists", reg=det["reg"])
        return RedirectResponse(url="/patients/new?error=" + quote(f"Registration {det['reg']} already exists"), status_code=303)
    db.create_log(det["reg"], det, det.get("notes") or DEFAULT_NOTES)
    json_log("patient_added", reg=det["reg"], by=user.get("email"))
    return RedirectResponse(url="/home", status_code=303)


def _patient_or_404(request: Request, reg: str) -> Dict[str, Any]:
    patient = _state(request).db.get_patient(reg)
    if not patient:
        raise HTTPException(404, "patient not found")
    return patient


@router.get("/patients/{reg}")
def patient_detail(request: Request, reg: str, msg: Optional[str] = Query(default=None),
                   error: Optional[str] = Query(default=None), user=Depends(login_required)):
    patient = _patient_or_404(request, reg)
    visits = _state(request).db.load_log(reg)
    latest = visits[0] if visits else patient
    info = "".join(
        f"<tr><th>{FIELD_LABELS[f]}</th><td>{_show(patient.get(f))}</td></tr>"
        for f in ("name", "reg", "age", "sex", "contact", "beneficiary")
    )
    cols = ["created_at"] + CLINICAL_FIELDS + ["notes"]
    head = "".join(f"<th>{FIELD_LABELS.get(c, c.replace('_', ' ').title())}</th>" for c in cols)
    log_rows = "".join("<tr>" + "".join(f"<td>{_show(v.get(c))}</td>" for c in cols) + "</tr>" for v in visits)
    base = f"/patients/{quote(reg)}"
    body = f"""
    {_flash(msg, error)}
    <div class="grid">
      <div class="card">
        <h3>{_show(patient.get("name"))}</h3>
        <table>{info}</table>
        <div class="actions" style="margin-top:10px">
          <a class="button" href="{base}/export.xlsx">Export visits</a>
          <form action="{base}/report" method="post" style="display:inline"><button class="button" type="submit">Send report on WhatsApp</button></form>
          <form action="{base}/delete" method="post" style="display:inline"><button class="button danger" type="submit">Delete</button></form>
        </div>
      </div>
      <div class="card">
        <h3>Record visit</h3>
        <form action="{base}/visits" method="post">
          {_clinical_inputs(latest)}
          <div class="row"><label for="notes">Notes</label><textarea id="notes" name="notes"></textarea></div>
          <div class="actions"><button class="button" type="submit">Save visit</button></div>
        </form>
      </div>
    </div>
    <div class="card" style="overflow-x:auto">
      <h3>Visit history</h3>
      <table><tr>{head}</tr>{log_rows}</table>
    </div>
    """
    return html_page(body, user)


@router.post("/patients/{reg}/visits")
async def add_visit(request: Request, reg: str, user=Depends(login_required)):
    _patient_or_404(request, reg)
    findings = await _read_findings(request, CLINICAL_FIELDS)
    _state(request).db.create_log(reg, findings, findings.get("notes") or DEFAULT_NOTES)
    json_log("visit_added", reg=reg, by=user.get("email"))
    return RedirectResponse(url=f"/patients/{quote(reg)}?msg=" + quote("Visit saved"), status_code=303)


@router.post("/patients/{reg}/delete")
def delete_patient(request: Request, reg: str, user=Depends(login_required)):
    deleted = _state(request).db.delete_patient(reg)
    json_log("patient_deleted", reg=reg, deleted=deleted, by=user.get("email"))
    return RedirectResponse(url="/home?msg=" + quote(f"Deleted {reg}" if deleted else f"{reg} not found"), status_code=303)


@router.get("/patients/{reg}/export.xlsx")
def export_visits(request: Request, reg: str, user=Depends(login_required)):
    _patient_or_404(request, reg)
    visits = _state(request).db.load_log(reg)
    if not visits:
        raise HTTPException(404, "no visits recorded")
    data = logs_to_xlsx(visits)
    return Response(
        content=data,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{export_filename(reg)}"'},
    )


@router.post("/patients/{reg}/report")
async def send_report(request: Request, reg: str, user=Depends(login_required)):
    from .main import send_error_status, send_screening_report  # local import

    patient = _patient_or_404(request, reg)
    visits = _state(request).db.load_log(reg)
    report = report_from_patient(patient, visits[0] if visits else None)
    base = f"/patients/{quote(reg)}"
    try:
        await send_screening_report(_state(request), report)
    except Exception as e:
        json_log("report_send_failed", reg=reg, error=str(e), status=send_error_status(e))
        return RedirectResponse(url=f"{base}?error=" + quote(f"Report not sent: {e}"), status_code=303)
    return RedirectResponse(url=f"{base}?msg=" + quote("Report sent via WhatsApp"), status_code=303)


# --- WhatsApp dashboard ---

@router.get("/ui")
def ui(request: Request, user=Depends(login_required)):
    st = _state(request)
    status = st.manager.get_status()
    state = st.manager.state.value
    qr = st.manager.qr.image
    if status["ready"]:
        session_html = "<span class='badge ok'>Connected</span>"
    elif qr:
        session_html = f'<p>Scan with WhatsApp on the clinic phone:</p><img alt="QR code" src="{escape(qr)}" width="264" height="264"/>'
    else:
        session_html = f"<span class='badge'>{escape(state)}</span> <span class='muted'>QR code not generated yet.</span>"

    pdf_files = sorted(st.storage.pdf_dir.glob("*.pdf"), key=lambda p: p.stat().st_mtime, reverse=True)[:20]
    pdf_list = "".join(
        f'<li><a href="/ui/file/pdf/{quote(p.name)}">{escape(p.name)}</a></li>' for p in pdf_files
    )
    body = f"""
    <div class="grid">
      <div class="card">
        <h3>WhatsApp session</h3>
        <div class="row">{session_html}</div>
        <div class="row muted">State: {escape(state)} | Retries: {status["retryCount"]}/{status["maxRetries"]}</div>
        <form action="/ui/initialize" method="post"><button class="button" type="submit">Reconnect</button></form>
      </div>
      <div class="card">
        <h3>Recent reports</h3>
        <ul>{pdf_list if pdf_list else '<span class="muted">No PDFs yet</span>'}</ul>
      </div>
    </div>
    """
    # keep polling until the session is up
    return html_page(body, user, refresh=None if status["ready"] else 5)


@router.post("/ui/initialize")
async def ui_initialize(request: Request, user=Depends(login_required)):
    await _state(request).manager.initialize()
    return RedirectResponse(url="/ui", status_code=303)


@router.get("/ui/file/pdf/{name}")
def get_pdf(request: Request, name: str, user=Depends(login_required)):
    pdf_dir = _state(request).storage.pdf_dir
    p = pdf_dir / name
    if p.parent != pdf_dir or not p.is_file():
        raise HTTPException(404)
    return FileResponse(str(p), media_type="application/pdf", filename=name)
