from datetime import date

import pytest
from sqlalchemy import delete

import stores
from access import (
    Identity, NotFound, Conflict, ValidationError, StorageError,
    authorize_report, READ, VIEW, DELETE,
)
from app import create_app
from config import TestConfig
from models import db, AuditLog, Report, Vital, Share
from stores import UserStore, ReportStore, VitalsStore, ShareLedger
from utils import encrypt_bytes, decrypt_bytes, parse_date, parse_date_range, send_email


# ----------------------------------------------------------
# ✅ Flask app fixture for testing database and context
# ----------------------------------------------------------
@pytest.fixture
def test_app(tmp_path):
    """Creates a Flask app context backed by an in-memory database."""
    app = create_app(TestConfig, {"UPLOAD_FOLDER": str(tmp_path)})
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def alice(test_app):
    return Identity.of(UserStore(db.session).create("Alice", "alice@example.com", "secret1"))


@pytest.fixture
def bob(test_app):
    return Identity.of(UserStore(db.session).create("Bob", "bob@example.com", "secret1"))


def make_report(identity, report_date="2024-01-10", vitals=None, report_type="Blood Test"):
    return ReportStore(db.session).create(
        identity, stored_name="stored.bin", original_name="lab.pdf", file_type="application/pdf",
        file_size=10, report_type=report_type, report_date=report_date, vitals=vitals,
    )


# ==========================================================
# ✅ ENCRYPTION
# ==========================================================
def test_encrypt_decrypt_roundtrip(test_app):
    nonce_b64, ciphertext = encrypt_bytes(b"Confidential Data")
    assert ciphertext != b"Confidential Data"
    assert decrypt_bytes(nonce_b64, ciphertext) == b"Confidential Data"


def test_unique_ciphertexts(test_app):
    nonce1, cipher1 = encrypt_bytes(b"same message")
    nonce2, cipher2 = encrypt_bytes(b"same message")
    assert nonce1 != nonce2 and cipher1 != cipher2


def test_tampered_ciphertext_is_a_storage_error(test_app):
    nonce_b64, ciphertext = encrypt_bytes(b"lab results")
    with pytest.raises(StorageError):
        decrypt_bytes(nonce_b64, ciphertext[:-1] + bytes([ciphertext[-1] ^ 1]))


def test_missing_key_is_a_storage_error(test_app):
    test_app.config["ENCRYPTION_KEY_B64"] = None
    with pytest.raises(StorageError):
        encrypt_bytes(b"data")


# ==========================================================
# ✅ DATES, AUDIT, MAIL
# ==========================================================
def test_parse_date():
    assert parse_date("2024-01-05") == date(2024, 1, 5)
    with pytest.raises(ValidationError):
        parse_date("05/01/2024")
    assert parse_date_range("2024-01-01", None) is None
    assert parse_date_range("2024-01-01", "2024-01-31") == (date(2024, 1, 1), date(2024, 1, 31))


def test_audit_trail_follows_actions(test_app, alice):
    report = make_report(alice)
    ReportStore(db.session).delete(alice, report.id)
    actions = [row.action for row in AuditLog.query.filter_by(user_id=alice.id).order_by(AuditLog.id)]
    assert actions == ["register", "upload", "delete"]


def test_send_email_without_smtp(test_app):
    assert send_email("someone@example.com", "subject", "body") is False


# ==========================================================
# ✅ ACCESS GATE
# ==========================================================
def test_gate_owner_and_stranger(test_app, alice, bob):
    report = make_report(alice)
    assert authorize_report(db.session, alice, report.id, DELETE).id == report.id
    for operation in (READ, VIEW, DELETE):
        with pytest.raises(NotFound):
            authorize_report(db.session, bob, report.id, operation)
    with pytest.raises(NotFound):
        authorize_report(db.session, alice, 12345, READ)


def test_gate_recipient_can_only_view(test_app, alice, bob):
    report = make_report(alice)
    ShareLedger(db.session).share(alice, report.id, "BOB@example.com", "Bob")
    assert authorize_report(db.session, bob, report.id, VIEW).id == report.id
    with pytest.raises(NotFound):
        authorize_report(db.session, bob, report.id, READ)
    with pytest.raises(NotFound):
        authorize_report(db.session, bob, report.id, DELETE)


def test_gate_rejects_unknown_operation(test_app, alice):
    report = make_report(alice)
    with pytest.raises(ValueError):
        authorize_report(db.session, alice, report.id, "publish")


# ==========================================================
# ✅ STORES
# ==========================================================
def test_upload_is_atomic(test_app, alice, monkeypatch):
    def broken_audit(*args, **kwargs):
        raise RuntimeError("disk full")
    monkeypatch.setattr(stores, "audit", broken_audit)

    with pytest.raises(RuntimeError):
        make_report(alice, vitals=[{"type": "Heart Rate", "value": "72"}])
    assert Report.query.count() == 0
    assert Vital.query.count() == 0


def test_engine_cascades_report_delete(test_app, alice):
    report = make_report(alice, vitals=[{"type": "Heart Rate", "value": "72"}])
    ShareLedger(db.session).share(alice, report.id, "dr@clinic.org", "Dr")
    db.session.execute(delete(Report).where(Report.id == report.id))
    db.session.commit()
    assert Vital.query.count() == 0
    assert Share.query.count() == 0


def test_share_conflict_and_ownership(test_app, alice, bob):
    report = make_report(alice)
    ledger = ShareLedger(db.session)
    share = ledger.share(alice, report.id, "dr@clinic.org", "Dr")
    assert share.owner_id == alice.id
    assert share.access_role == "viewer"

    with pytest.raises(Conflict):
        ledger.share(alice, report.id, " Dr@Clinic.org ", "Dr again")
    with pytest.raises(NotFound):
        ledger.share(bob, report.id, "x@example.com", "X")
    with pytest.raises(NotFound):
        ledger.revoke(bob, share.id)

    ledger.revoke(alice, share.id)
    with pytest.raises(NotFound):
        ledger.revoke(alice, share.id)
    assert ledger.share(alice, report.id, "dr@clinic.org", "Dr").id


def test_received_matches_email_only(test_app, alice, bob):
    report = make_report(alice)
    ledger = ShareLedger(db.session)
    ledger.share(alice, report.id, "nobody@example.com", "Nobody")
    ledger.share(alice, report.id, "bob@example.com", "Bob")

    shares = ledger.list_received("nobody@example.com")
    assert [s["shared_with_email"] for s in shares] == ["nobody@example.com"]
    assert shares[0]["owner_name"] == "Alice"
    assert ledger.list_received("bob@example.com")[0]["shared_with_name"] == "Bob"
    assert ledger.list_received(alice.email) == []


def test_vitals_batch_skips_invalid_entries(test_app, alice):
    added = VitalsStore(db.session).add_batch(alice, [
        {"type": "Heart Rate", "value": "72", "unit": "bpm"},
        {"type": "Heart Rate", "value": "   "},
        {"value": "80"},
        "garbage",
        {"type": "Blood Sugar", "value": 0},
    ], recorded_date="2024-05-01")
    assert [(v.vital_type, v.vital_value) for v in added] == [("Heart Rate", "72"), ("Blood Sugar", "0")]


def test_summary_tie_prefers_latest_entry(test_app, alice):
    vitals = VitalsStore(db.session)
    vitals.add_batch(alice, [{"type": "Heart Rate", "value": "70"}], recorded_date="2024-05-01")
    vitals.add_batch(alice, [{"type": "Heart Rate", "value": "75"}], recorded_date="2024-05-01")
    vitals.add_batch(alice, [{"type": "Heart Rate", "value": "90"}], recorded_date="2024-04-01")
    summary = vitals.summary(alice)
    assert len(summary) == 1
    assert summary[0]["vital_value"] == "75"


def test_summary_is_per_user(test_app, alice, bob):
    vitals = VitalsStore(db.session)
    vitals.add_batch(alice, [{"type": "Heart Rate", "value": "70"}], recorded_date="2024-05-01")
    vitals.add_batch(bob, [{"type": "Heart Rate", "value": "99"}], recorded_date="2024-06-01")
    assert [s["vital_value"] for s in vitals.summary(alice)] == ["70"]


def test_trends_window_relative_to_today(test_app, alice):
    vitals = VitalsStore(db.session)
    vitals.add_batch(alice, [{"type": "Weight", "value": "70.5", "unit": "kg"}], recorded_date="2024-05-01")
    vitals.add_batch(alice, [{"type": "Weight", "value": "71", "unit": "kg"}], recorded_date="2024-06-20")

    trends = vitals.trends(alice, today=date(2024, 6, 25))
    assert trends == {"Weight": [{"date": "2024-06-20", "value": 71.0, "unit": "kg"}]}

    trends = vitals.trends(alice, today=date(2024, 5, 20))
    assert [point["value"] for point in trends["Weight"]] == [70.5, 71.0]


def test_list_reports_by_vital_type_is_distinct(test_app, alice):
    report = make_report(alice, vitals=[{"type": "Heart Rate", "value": "70"}, {"type": "Heart Rate", "value": "71"}])
    make_report(alice, report_type="ECG")
    listed = ReportStore(db.session).list(alice, vital_type="Heart Rate")
    assert [r.id for r in listed] == [report.id]
