"""HTTP surface tests: the clinic pages plus the WhatsApp endpoints over a fake client."""
import asyncio
import io

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from drscreen.main import AppState, create_app
from drscreen.qr_broadcast import QrPayload

EMAIL = "doc@clinic.test"
PASSWORD = "s3cret-pass"


@pytest.fixture
def state(settings, storage, manager):
    return AppState(settings=settings, storage=storage, manager=manager)


@pytest.fixture
def anon(state):
    with TestClient(create_app(state, start_whatsapp=False)) as c:
        yield c


@pytest.fixture
def client(anon):
    resp = anon.post("/register", data={"email": EMAIL, "password": PASSWORD})
    assert resp.status_code == 200
    return anon


def test_requires_login(anon):
    assert anon.get("/whatsapp/status").status_code == 401
    assert anon.post("/whatsapp-message", json={"phoneNumber": "1", "message": "x"}).status_code == 401
    resp = anon.get("/home", follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"


def test_register_login_logout(anon):
    assert anon.post("/register", data={"email": EMAIL, "password": PASSWORD}).status_code == 200
    assert anon.post("/register", data={"email": EMAIL, "password": "other"}).status_code == 409
    anon.get("/logout")
    resp = anon.post("/login", data={"email": EMAIL, "password": "wrong"})
    assert "Invalid email or password" in resp.text
    assert anon.get("/whatsapp/status").status_code == 401
    resp = anon.post("/login", data={"email": EMAIL, "password": PASSWORD})
    assert resp.url.path == "/home"
    assert anon.get("/whatsapp/status").status_code == 200


def test_status_shape(client):
    assert client.get("/whatsapp/status").json() == {
        "ready": False,
        "retryCount": 0,
        "maxRetries": 5,
        "state": "uninitialized",
    }


def test_initialize_endpoint(client, factory):
    resp = client.post("/whatsapp/initialize")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert len(factory.instances) == 1
    client.post("/whatsapp/initialize")
    assert len(factory.instances) == 1


def test_settings_masks_secrets(client):
    body = client.get("/settings").json()
    assert body["secret_key"] == "(set)"
    assert body["smtp_password"] == ""
    assert body["max_retries"] == 5
    assert body["storage_dir"].endswith("storage")
    assert "test-secret" not in client.get("/settings").text


def test_settings_requires_login(anon):
    assert anon.get("/settings").status_code == 401


def test_shutdown_cancels_pending_whatsapp_start(state, factory):
    factory.gate = asyncio.Event()
    with TestClient(create_app(state)):
        assert state.init_task is not None
    assert state.init_task.done()
    assert all(c.stopped for c in factory.instances)
    assert state.manager.client is None
    assert state.exit_code == 0


def test_qr_code(client, manager):
    assert client.get("/get-qr-code").json() == {"success": False, "message": "QR code not generated yet."}
    manager.qr.publish(QrPayload(token="2@abc", image="data:image/png;base64,AAAA"))
    assert client.get("/get-qr-code").json() == {"success": True, "qrCodeUrl": "data:image/png;base64,AAAA"}
    assert "data:image/png;base64,AAAA" in client.get("/ui").text


def test_message_validation(client):
    resp = client.post("/whatsapp-message", json={"phoneNumber": "919999999999"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Phone number and message are required."}


def test_message_not_ready(client):
    resp = client.post("/whatsapp-message", json={"phoneNumber": "919999999999", "message": "hi"})
    assert resp.status_code == 503
    assert resp.json() == {"error": "WhatsApp client is not ready yet!"}


def test_message_sent(ready_manager, client, factory):
    resp = client.post("/whatsapp-message", json={"phoneNumber": "919999999999", "message": "hi"})
    assert resp.status_code == 200
    assert resp.json() == {"message": "Message sent successfully!"}
    assert factory.last.texts == [("919999999999@c.us", "hi")]


def test_generate_pdf_sends_report(ready_manager, client, factory, storage):
    resp = client.post("/generate-pdf", json={
        "name": "Asha Rao",
        "registrationNo": "20240102-1234",
        "contactNo": "9999999999",
        "insulin": "yes",
        "drr": "Mild NPDR",
    })
    assert resp.status_code == 200
    assert resp.text == "PDF generated and sent via WhatsApp"
    chat_id, attachment, caption = factory.last.media[0]
    assert chat_id == "919999999999@c.us"
    assert caption == "Asha Rao's DM Screening Report"
    assert attachment.mimetype == "application/pdf"
    assert attachment.filename.endswith("_20240102-1234_DM-Screening-Form.pdf")
    assert attachment.data.startswith(b"%PDF")
    assert (storage.pdf_dir / attachment.filename).exists()


def test_generate_pdf_not_ready(client):
    resp = client.post("/generate-pdf", json={"name": "Asha Rao", "contactNo": "9999999999"})
    assert resp.status_code == 503


def test_send_email_unconfigured(client):
    resp = client.post("/send-email", json={
        "recipient": "p@x.test",
        "subject": "Results",
        "templateData": {"name": "Asha", "message": {"greet": "Hello", "drr": "Mild NPDR"}},
    })
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "SMTP is not configured"}


def test_patient_lifecycle(client, state):
    resp = client.post("/patients", data={
        "name": "Asha Rao",
        "reg": "20240102-1234",
        "contact": "9999999999",
        "drr": "Mild NPDR",
        "treatment": ["Laser", "Observation"],
    })
    assert resp.status_code == 200
    assert "Asha Rao" in resp.text
    assert state.db.get_patient("20240102-1234")["treatment"] == ["Laser", "Observation"]

    resp = client.post("/patients", data={"name": "Dup", "reg": "20240102-1234"})
    assert "already exists" in resp.text

    resp = client.post("/patients/20240102-1234/visits", data={"drr": "Moderate NPDR", "notes": "worse"})
    assert "Visit saved" in resp.text
    assert [v["drr"] for v in state.db.load_log("20240102-1234")] == ["Moderate NPDR", "Mild NPDR"]

    resp = client.get("/patients/20240102-1234/export.xlsx")
    assert resp.status_code == 200
    assert "Details of Patients 20240102-1234.xlsx" in resp.headers["content-disposition"]
    ws = load_workbook(io.BytesIO(resp.content))["Data"]
    assert ws.max_row == 3

    assert "Asha Rao" in client.get("/home?q=asha").text
    client.post("/patients/20240102-1234/delete")
    assert state.db.get_patient("20240102-1234") is None
    assert client.get("/patients/20240102-1234").status_code == 404


def test_send_report_from_patient_page(ready_manager, client, factory):
    client.post("/patients", data={"name": "Asha Rao", "reg": "R-1", "contact": "9999999999"})
    resp = client.post("/patients/R-1/report")
    assert "Report sent via WhatsApp" in resp.text
    assert factory.last.media[0][0] == "919999999999@c.us"


def test_send_report_not_ready_shows_error(client):
    client.post("/patients", data={"name": "Asha Rao", "reg": "R-2", "contact": "9999999999"})
    resp = client.post("/patients/R-2/report")
    assert "Report not sent" in resp.text
