import sqlite3

import pytest

from drscreen.db import DEFAULT_NOTES, Database


@pytest.fixture
def db(tmp_path):
    d = Database(tmp_path / "clinic.db")
    d.init()
    return d


def patient(reg="20240102-1234", **extra):
    det = {"name": "Asha Rao", "reg": reg, "age": "54", "sex": "F", "contact": "9999999999",
           "dtype": "Type 2", "insulin": "No", "treatment": ["Laser"], "advice": ["Review in 6 months"]}
    det.update(extra)
    return det


def test_create_and_get_patient(db):
    db.create_patient(patient())
    got = db.get_patient("20240102-1234")
    assert got["name"] == "Asha Rao"
    assert got["treatment"] == ["Laser"]
    assert got["advice"] == ["Review in 6 months"]
    assert got["created_at"]


def test_duplicate_reg_rejected(db):
    db.create_patient(patient())
    with pytest.raises(sqlite3.IntegrityError):
        db.create_patient(patient(name="Someone Else"))


def test_search(db):
    db.create_patient(patient())
    db.create_patient(patient(reg="20240103-5555", name="Ravi Kumar", contact="8888888888"))
    assert [p["reg"] for p in db.list_patients("ravi")] == ["20240103-5555"]
    assert [p["reg"] for p in db.list_patients("9999")] == ["20240102-1234"]
    assert len(db.list_patients()) == 2


def test_visit_log_newest_first(db):
    db.create_patient(patient())
    db.create_log("20240102-1234", {"drr": "Mild NPDR"})
    db.create_log("20240102-1234", {"drr": "Moderate NPDR", "treatment": ["Anti-VEGF injection"]}, "worse")
    log = db.load_log("20240102-1234")
    assert [v["drr"] for v in log] == ["Moderate NPDR", "Mild NPDR"]
    assert log[0]["notes"] == "worse"
    assert log[1]["notes"] == DEFAULT_NOTES
    assert log[0]["treatment"] == ["Anti-VEGF injection"]
    assert log[1]["treatment"] == []


def test_delete_removes_visits(db):
    db.create_patient(patient())
    db.create_log("20240102-1234", {"drr": "No DR"})
    assert db.delete_patient("20240102-1234") is True
    assert db.get_patient("20240102-1234") is None
    assert db.load_log("20240102-1234") == []
    assert db.delete_patient("20240102-1234") is False


def test_users(db):
    user = db.create_user("doc@clinic.test", "hash")
    assert db.get_user("doc@clinic.test")["id"] == user["id"]
    assert db.get_user("nobody@clinic.test") is None
