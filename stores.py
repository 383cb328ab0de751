"""
Stores for users, reports, vitals and shares.

Each store is bound to the SQLAlchemy session it is given, so a request
(or a test) decides which session and therefore which transaction the
work happens in.  Public mutating methods commit through
:func:`transaction`; a failure at any step rolls the whole change back.
"""
import math
from contextlib import contextmanager
from datetime import timedelta

from loguru import logger
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash, check_password_hash

import access
from access import (
    Identity, ValidationError, AuthError, Conflict, normalize_email,
)
from models import User, Report, Vital, Share
from utils import audit, parse_date, remove_file, utc_today

MIN_PASSWORD_LENGTH = 6
ACCESS_ROLES = ("viewer", "editor")


@contextmanager
def transaction(session):
    """Commit on success, roll back on any error and re-raise it."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


# ==========================================================
# 👤 USERS
# ==========================================================
class UserStore:
    def __init__(self, session):
        self.session = session

    def get(self, user_id):
        return self.session.get(User, user_id)

    def by_email(self, email):
        return self.session.query(User).filter(User.email == normalize_email(email)).first()

    def create(self, name, email, password) -> User:
        name = str(name or "").strip()
        email = normalize_email(email)
        if not name or not email or not password or not isinstance(password, str):
            raise ValidationError("Name, email and password are required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if self.by_email(email):
            raise Conflict("Email already registered")

        user = User(name=name, email=email, password_hash=generate_password_hash(password))
        try:
            with transaction(self.session):
                self.session.add(user)
                self.session.flush()
                audit(user.id, "register", email)
        except IntegrityError:
            raise Conflict("Email already registered")
        logger.info("Registered user {}", user.id)
        return user

    def authenticate(self, email, password) -> User:
        user = self.by_email(email)
        if not user or not password or not check_password_hash(user.password_hash, password):
            raise AuthError("Invalid email or password")
        return user


# ==========================================================
# 📁 REPORTS
# ==========================================================
class ReportStore:
    def __init__(self, session):
        self.session = session

    def create(self, identity: Identity, stored_name, original_name, file_type, file_size,
               report_type, report_date, nonce_b64=None, vitals=None) -> Report:
        """Insert a report and the vitals that came with it in one transaction."""
        report_type = str(report_type or "").strip()
        if not report_type or not report_date:
            raise ValidationError("Report type and date are required")
        report_date = parse_date(report_date, "reportDate")

        report = Report(
            user_id=identity.id,
            filename=stored_name,
            original_name=original_name,
            report_type=report_type,
            report_date=report_date,
            file_type=file_type,
            file_size=file_size,
            nonce_b64=nonce_b64,
        )
        with transaction(self.session):
            self.session.add(report)
            self.session.flush()
            added = VitalsStore(self.session).add_entries(identity, report.id, report_date, vitals or [])
            audit(identity.id, "upload", f"Uploaded {original_name} as report {report.id}")
        logger.info("User {} uploaded report {} with {} vitals", identity.id, report.id, len(added))
        return report

    def list(self, identity: Identity, report_type=None, date_range=None, vital_type=None):
        query = self.session.query(Report).filter(Report.user_id == identity.id)
        if report_type:
            query = query.filter(Report.report_type == report_type)
        if date_range:
            query = query.filter(Report.report_date.between(*date_range))
        if vital_type:
            with_vital = select(Vital.report_id).where(
                Vital.user_id == identity.id, Vital.vital_type == vital_type
            )
            query = query.filter(Report.id.in_(with_vital))
        return query.order_by(Report.report_date.desc(), Report.created_at.desc(), Report.id.desc()).all()

    def get(self, identity: Identity, report_id):
        report = access.authorize_report(self.session, identity, report_id, access.READ)
        vitals = (
            self.session.query(Vital)
            .filter(Vital.report_id == report.id)
            .order_by(Vital.id)
            .all()
        )
        return report, vitals

    def for_download(self, identity: Identity, report_id) -> Report:
        report = access.authorize_report(self.session, identity, report_id, access.DOWNLOAD)
        audit(identity.id, "download", f"Downloaded report {report.id}")
        self.session.commit()
        return report

    def delete(self, identity: Identity, report_id):
        """Delete a report, its vitals and shares, then its file."""
        with transaction(self.session):
            report = access.authorize_report(self.session, identity, report_id, access.DELETE)
            stored_name = report.filename
            self.session.query(Vital).filter(Vital.report_id == report.id).delete(synchronize_session=False)
            self.session.query(Share).filter(Share.report_id == report.id).delete(synchronize_session=False)
            self.session.delete(report)
            audit(identity.id, "delete", f"Deleted report {report_id}")
        # only after the rows are gone
        remove_file(stored_name)
        logger.info("User {} deleted report {}", identity.id, report_id)


# ==========================================================
# 💓 VITALS
# ==========================================================
def _is_valid_entry(entry) -> bool:
    if not isinstance(entry, dict):
        return False
    if any(isinstance(entry.get(key), (dict, list)) for key in ("type", "value", "unit")):
        return False
    value = entry.get("value")
    return str(entry.get("type") or "").strip() != "" and value is not None and str(value).strip() != ""


def _as_number(value):
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class VitalsStore:
    def __init__(self, session):
        self.session = session

    def add_entries(self, identity: Identity, report_id, recorded_date, entries):
        """Stage one row per valid entry. Invalid entries are skipped, not rejected."""
        added = []
        for entry in entries:
            if not _is_valid_entry(entry):
                continue
            vital = Vital(
                report_id=report_id,
                user_id=identity.id,
                vital_type=str(entry["type"]).strip(),
                vital_value=str(entry["value"]).strip(),
                unit=str(entry.get("unit") or "").strip(),
                recorded_date=recorded_date,
            )
            self.session.add(vital)
            added.append(vital)
        return added

    def add_batch(self, identity: Identity, entries, report_id=None, recorded_date=None):
        if not entries or not isinstance(entries, list):
            raise ValidationError("Vitals data is required")
        recorded_date = parse_date(recorded_date, "recordedDate") if recorded_date else utc_today()

        with transaction(self.session):
            access.authorize_vital_link(self.session, identity, report_id)
            added = self.add_entries(identity, report_id, recorded_date, entries)
            audit(identity.id, "add_vitals", f"{len(added)} of {len(entries)} entries")
        logger.info("User {} added {} vitals ({} skipped)", identity.id, len(added), len(entries) - len(added))
        return added

    def history(self, identity: Identity, date_range=None, vital_type=None):
        query = self.session.query(Vital).filter(Vital.user_id == identity.id)
        if date_range:
            query = query.filter(Vital.recorded_date.between(*date_range))
        if vital_type:
            query = query.filter(Vital.vital_type == vital_type)
        return query.order_by(Vital.recorded_date.desc(), Vital.created_at.desc(), Vital.id.desc()).all()

    def trends(self, identity: Identity, vital_type=None, date_range=None, today=None, window_days=30):
        """Series per vital type, oldest first. Without a range, the last ``window_days`` days."""
        query = self.session.query(Vital).filter(Vital.user_id == identity.id)
        if vital_type:
            query = query.filter(Vital.vital_type == vital_type)
        if date_range:
            query = query.filter(Vital.recorded_date.between(*date_range))
        else:
            since = (today or utc_today()) - timedelta(days=window_days)
            query = query.filter(Vital.recorded_date >= since)

        grouped = {}
        for vital in query.order_by(Vital.recorded_date.asc(), Vital.created_at.asc(), Vital.id.asc()):
            grouped.setdefault(vital.vital_type, []).append({
                "date": vital.recorded_date.isoformat(),
                "value": _as_number(vital.vital_value),
                "unit": vital.unit,
            })
        return grouped

    def summary(self, identity: Identity):
        """Latest reading per vital type."""
        latest = (
            self.session.query(Vital.vital_type, func.max(Vital.recorded_date).label("latest"))
            .filter(Vital.user_id == identity.id)
            .group_by(Vital.vital_type)
            .subquery()
        )
        rows = (
            self.session.query(Vital)
            .join(latest, and_(Vital.vital_type == latest.c.vital_type, Vital.recorded_date == latest.c.latest))
            .filter(Vital.user_id == identity.id)
            .order_by(Vital.vital_type, Vital.created_at.desc(), Vital.id.desc())
            .all()
        )
        summary, seen = [], set()
        for vital in rows:
            if vital.vital_type in seen:
                continue
            seen.add(vital.vital_type)
            summary.append({
                "vital_type": vital.vital_type,
                "vital_value": vital.vital_value,
                "unit": vital.unit,
                "recorded_date": vital.recorded_date.isoformat(),
            })
        return summary


# ==========================================================
# 🤝 SHARES
# ==========================================================
class ShareLedger:
    def __init__(self, session):
        self.session = session

    def share(self, identity: Identity, report_id, email, name, role=None) -> Share:
        email = normalize_email(email)
        name = str(name or "").strip()
        role = role or "viewer"
        if not report_id or not email or not name:
            raise ValidationError("Report ID, email, and name are required")
        if role not in ACCESS_ROLES:
            raise ValidationError(f"accessRole must be one of: {', '.join(ACCESS_ROLES)}")
        try:
            report_id = int(report_id)
        except (TypeError, ValueError):
            raise ValidationError("reportId must be an integer")

        try:
            with transaction(self.session):
                report = access.authorize_report(self.session, identity, report_id, access.SHARE)
                existing = (
                    self.session.query(Share)
                    .filter(Share.report_id == report.id, Share.shared_with_email == email)
                    .first()
                )
                if existing:
                    raise Conflict("Report already shared with this user")
                share = Share(
                    report_id=report.id,
                    owner_id=identity.id,
                    shared_with_email=email,
                    shared_with_name=name,
                    access_role=role,
                )
                self.session.add(share)
                self.session.flush()
                audit(identity.id, "share", f"Report {report.id} shared with {email} as {role}")
        except IntegrityError:
            raise Conflict("Report already shared with this user")
        logger.info("User {} shared report {} ({})", identity.id, report_id, role)
        return share

    def list_sent(self, identity: Identity):
        rows = (
            self.session.query(Share, Report)
            .join(Report, Share.report_id == Report.id)
            .filter(Share.owner_id == identity.id)
            .order_by(Share.created_at.desc(), Share.id.desc())
            .all()
        )
        result = []
        for share, report in rows:
            item = share.to_dict()
            item.update(
                original_name=report.original_name,
                report_type=report.report_type,
                report_date=report.report_date.isoformat(),
            )
            result.append(item)
        return result

    def list_received(self, email):
        rows = (
            self.session.query(Share, Report, User)
            .join(Report, Share.report_id == Report.id)
            .join(User, Share.owner_id == User.id)
            .filter(Share.shared_with_email == normalize_email(email))
            .order_by(Share.created_at.desc(), Share.id.desc())
            .all()
        )
        result = []
        for share, report, owner in rows:
            item = share.to_dict()
            item.update(
                original_name=report.original_name,
                report_type=report.report_type,
                report_date=report.report_date.isoformat(),
                file_type=report.file_type,
                owner_name=owner.name,
                owner_email=owner.email,
            )
            result.append(item)
        return result

    def received(self, identity: Identity, share_id):
        """The recipient's view of one share: the share plus report metadata."""
        share = access.authorize_received_share(self.session, identity, share_id)
        report = access.authorize_report(self.session, identity, share.report_id, access.VIEW)
        return share, report

    def revoke(self, identity: Identity, share_id):
        with transaction(self.session):
            share = access.authorize_share_revocation(self.session, identity, share_id)
            self.session.delete(share)
            audit(identity.id, "revoke", f"Revoked share {share_id} on report {share.report_id}")
        logger.info("User {} revoked share {}", identity.id, share_id)
