from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine
from datetime import datetime
import sqlite3

db = SQLAlchemy()


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_connection, connection_record):
    """Let SQLite enforce ON DELETE CASCADE."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    password_hash = db.Column(db.String(300), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "email": self.email}


class Report(db.Model):
    __tablename__ = "reports"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = db.Column(db.String(300), nullable=False)         # file on disk, server generated
    original_name = db.Column(db.String(300), nullable=False)    # name the user uploaded
    report_type = db.Column(db.String(100), nullable=False)
    report_date = db.Column(db.Date, nullable=False)
    file_type = db.Column(db.String(100), nullable=False)
    file_size = db.Column(db.Integer, nullable=False)
    nonce_b64 = db.Column(db.String(100))   # encryption nonce
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    vitals = db.relationship("Vital", backref="report", lazy=True,
                             cascade="all, delete-orphan", passive_deletes=True)
    shares = db.relationship("Share", backref="report", lazy=True,
                             cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "filename": self.filename,
            "original_name": self.original_name,
            "report_type": self.report_type,
            "report_date": _iso(self.report_date),
            "file_type": self.file_type,
            "file_size": self.file_size,
            "created_at": _iso(self.created_at),
        }


class Vital(db.Model):
    __tablename__ = "vitals"
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    vital_type = db.Column(db.String(100), nullable=False)
    vital_value = db.Column(db.String(100), nullable=False)     # kept as text, parsed for charts
    unit = db.Column(db.String(50), default="")
    recorded_date = db.Column(db.Date, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "report_id": self.report_id,
            "user_id": self.user_id,
            "vital_type": self.vital_type,
            "vital_value": self.vital_value,
            "unit": self.unit,
            "recorded_date": _iso(self.recorded_date),
            "created_at": _iso(self.created_at),
        }


class Share(db.Model):
    __tablename__ = "access_shares"
    __table_args__ = (
        db.UniqueConstraint("report_id", "shared_with_email", name="uq_share_report_email"),
    )
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    shared_with_email = db.Column(db.String(200), nullable=False, index=True)
    shared_with_name = db.Column(db.String(200), nullable=False)
    access_role = db.Column(db.String(20), nullable=False, default="viewer")
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    owner = db.relationship("User", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "report_id": self.report_id,
            "owner_id": self.owner_id,
            "shared_with_email": self.shared_with_email,
            "shared_with_name": self.shared_with_name,
            "access_role": self.access_role,
            "created_at": _iso(self.created_at),
        }


class AuditLog(db.Model):
    __tablename__ = "audit_log"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer)
    action = db.Column(db.String(200))
    detail = db.Column(db.String(1000))
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
