import os
import uuid
import base64
import binascii
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from datetime import date, datetime, timezone

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import current_app
from loguru import logger

from access import StorageError, ValidationError
from models import db, AuditLog


# ==========================================================
# 🔐 ENCRYPTION / DECRYPTION
# ==========================================================
def _encryption_key() -> bytes:
    key_b64 = current_app.config.get("ENCRYPTION_KEY_B64")
    if not key_b64:
        raise StorageError("ENCRYPTION_KEY is not configured")
    try:
        key = base64.b64decode(key_b64)
    except (binascii.Error, ValueError):
        raise StorageError("ENCRYPTION_KEY is not valid base64")
    if len(key) != 32:
        raise StorageError("ENCRYPTION_KEY must decode to 32 bytes")
    return key


def encrypt_bytes(data: bytes):
    """Encrypt file bytes using AES-GCM (256-bit). Returns (nonce_b64, ciphertext)."""
    aesgcm = AESGCM(_encryption_key())
    nonce = os.urandom(12)  # 96-bit nonce
    return base64.b64encode(nonce).decode(), aesgcm.encrypt(nonce, data, None)


def decrypt_bytes(nonce_b64: str, ciphertext: bytes) -> bytes:
    """Decrypt file bytes using AES-GCM."""
    aesgcm = AESGCM(_encryption_key())
    try:
        return aesgcm.decrypt(base64.b64decode(nonce_b64), ciphertext, None)
    except InvalidTag:
        raise StorageError("Stored file failed integrity check")


# ==========================================================
# 💾 FILE OPERATIONS
# ==========================================================
def new_stored_name() -> str:
    return str(uuid.uuid4()) + ".bin"


def _stored_path(stored_name: str) -> str:
    return os.path.join(current_app.config["UPLOAD_FOLDER"], stored_name)


def save_file_bytes(stored_name: str, ciphertext: bytes):
    """Write encrypted bytes under the upload folder."""
    os.makedirs(current_app.config["UPLOAD_FOLDER"], exist_ok=True)
    with open(_stored_path(stored_name), "wb") as f:
        f.write(ciphertext)


def read_file_bytes(stored_name: str) -> bytes:
    with open(_stored_path(stored_name), "rb") as f:
        return f.read()


def file_exists(stored_name: str) -> bool:
    return os.path.exists(_stored_path(stored_name))


def remove_file(stored_name: str):
    """Unlink a stored file. A file that is already gone is fine."""
    try:
        os.remove(_stored_path(stored_name))
    except FileNotFoundError:
        logger.warning("Stored file {} was already missing", stored_name)


# ==========================================================
# 📅 DATES
# ==========================================================
def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_date(value, field="date") -> date:
    """Parse an ISO ``YYYY-MM-DD`` string into a date."""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format")


def parse_date_range(start, end):
    """Both ends or nothing: a half-open range from the query string is ignored."""
    if not start or not end:
        return None
    return parse_date(start, "startDate"), parse_date(end, "endDate")


# ==========================================================
# 🧾 AUDIT LOGGING
# ==========================================================
def audit(user_id: int, action: str, detail: str = ""):
    """Record a user action in the caller's open transaction."""
    entry = AuditLog(user_id=user_id, action=action, detail=detail, timestamp=datetime.utcnow())
    db.session.add(entry)
    return entry


# ==========================================================
# 📧 EMAIL SENDING (UTF-8 SAFE)
# ==========================================================
def send_email(to_email, subject, body):
    """
    Send a plain-text e-mail over SMTP with STARTTLS.
    Returns False instead of raising; mail is never required for a request to succeed.
    """
    cfg = current_app.config
    smtp_host = cfg.get("SMTP_HOST")
    if not smtp_host:
        logger.info("SMTP not configured, skipping e-mail to {}", to_email)
        return False

    smtp_user = cfg.get("SMTP_USER")
    from_email = cfg.get("FROM_EMAIL") or smtp_user

    try:
        msg = MIMEMultipart()
        msg["From"] = formataddr(("Health Wallet", from_email))
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))

        with smtplib.SMTP(smtp_host, cfg.get("SMTP_PORT", 587), timeout=20) as server:
            server.starttls()
            if smtp_user:
                server.login(smtp_user, cfg.get("SMTP_PASS"))
            server.send_message(msg)

        logger.info("E-mail sent to {}", to_email)
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.warning("E-mail to {} failed: {}", to_email, e)
        return False


def share_notification(owner_name, recipient_name, report):
    subject = f"{owner_name} shared a health report with you"
    body = (
        f"Hi {recipient_name},\n\n"
        f"{owner_name} has shared their {report.report_type} report "
        f"from {report.report_date.isoformat()} with you.\n"
        f"Sign in to Health Wallet with this e-mail address to view it.\n\n"
        f"Regards,\nHealth Wallet"
    )
    return subject, body
