import os
import tempfile
from datetime import timedelta
from dotenv import load_dotenv
load_dotenv()

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
UPLOAD_DIR = os.getenv("UPLOAD_FOLDER") or os.path.join(BASE_DIR, "uploads")


class Config:
    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev-secret")
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY") or SECRET_KEY
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=int(os.getenv("JWT_EXPIRES_HOURS") or 24))

    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL") or f"sqlite:///{os.path.join(BASE_DIR, 'database.db')}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    UPLOAD_FOLDER = UPLOAD_DIR
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_UPLOAD_BYTES") or 10 * 1024 * 1024)
    ALLOWED_MIME = {"application/pdf", "image/jpeg", "image/png", "image/jpg"}

    # AES-256-GCM key in base64 (decode before use)
    ENCRYPTION_KEY_B64 = os.getenv("ENCRYPTION_KEY")

    # default window for /vitals/trends when no range is given
    TRENDS_WINDOW_DAYS = 30

    # SMTP (optional)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT") or 587)
    SMTP_USER = os.getenv("SMTP_USER")
    SMTP_PASS = os.getenv("SMTP_PASS")
    FROM_EMAIL = os.getenv("FROM_EMAIL") or os.getenv("SMTP_USER")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    UPLOAD_FOLDER = os.path.join(tempfile.gettempdir(), "health-wallet-test-uploads")
    # 32 zero bytes, base64
    ENCRYPTION_KEY_B64 = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
    SMTP_HOST = None
    JWT_SECRET_KEY = "test-jwt-secret-key-that-is-long-enough"
