import os, io, json
from functools import wraps

from flask import Flask, Blueprint, request, jsonify, send_file, current_app
from flask_cors import CORS
from flask_jwt_extended import JWTManager, create_access_token, get_jwt_identity, jwt_required
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.utils import secure_filename

from config import Config
from models import db
from access import WalletError, ValidationError, AuthError, NotFound, Identity
from stores import UserStore, ReportStore, VitalsStore, ShareLedger
from utils import (
    encrypt_bytes, decrypt_bytes,
    new_stored_name, save_file_bytes, read_file_bytes, file_exists, remove_file,
    parse_date, parse_date_range, send_email, share_notification,
)

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")
reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")
vitals_bp = Blueprint("vitals", __name__, url_prefix="/api/vitals")
shares_bp = Blueprint("shares", __name__, url_prefix="/api/shares")


# ==========================================================
# 🔒 HELPER FUNCTIONS
# ==========================================================
def login_required(func):
    """Resolves the bearer token to an Identity and passes it as the first argument."""
    @wraps(func)
    @jwt_required()
    def wrapper(*args, **kwargs):
        try:
            user_id = int(get_jwt_identity())
        except (TypeError, ValueError):
            raise AuthError("Invalid token")
        user = UserStore(db.session).get(user_id)
        if not user:
            raise AuthError("User not found")
        return func(Identity.of(user), *args, **kwargs)
    return wrapper


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def optional_int(value, field):
    if value in (None, "", 0):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def parse_vitals_field(raw):
    """The upload form carries vitals as a JSON array string."""
    if not raw:
        return []
    try:
        vitals = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("vitals must be a JSON array")
    if not isinstance(vitals, list):
        raise ValidationError("vitals must be a JSON array")
    return vitals


def token_payload(user):
    return {"token": create_access_token(identity=str(user.id)), "user": user.to_dict()}


# ==========================================================
# 🚪 AUTHENTICATION ROUTES
# ==========================================================
@auth_bp.route("/register", methods=["POST"])
def register():
    data = json_body()
    user = UserStore(db.session).create(data.get("name"), data.get("email"), data.get("password"))
    return jsonify(token_payload(user)), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    data = json_body()
    user = UserStore(db.session).authenticate(data.get("email"), data.get("password"))
    return jsonify(token_payload(user))


@auth_bp.route("/me")
@login_required
def me(identity):
    return jsonify({"user": {"id": identity.id, "name": identity.name, "email": identity.email}})


# ==========================================================
# 📁 REPORT ROUTES
# ==========================================================
@reports_bp.route("/upload", methods=["POST"])
@login_required
def upload(identity):
    file = request.files.get("file")
    if file is None or not file.filename:
        raise ValidationError("No file uploaded")
    if file.mimetype not in current_app.config["ALLOWED_MIME"]:
        raise ValidationError("Invalid file type. Only PDF and images are allowed.")

    report_type = request.form.get("reportType")
    report_date = request.form.get("reportDate")
    if not report_type or not report_date:
        raise ValidationError("Report type and date are required")
    report_date = parse_date(report_date, "reportDate")
    vitals = parse_vitals_field(request.form.get("vitals"))

    raw = file.read()
    if not raw:
        raise ValidationError("Uploaded file is empty")
    nonce_b64, ciphertext = encrypt_bytes(raw)
    stored_name = new_stored_name()
    save_file_bytes(stored_name, ciphertext)

    try:
        report = ReportStore(db.session).create(
            identity,
            stored_name=stored_name,
            original_name=secure_filename(file.filename) or "report",
            file_type=file.mimetype,
            file_size=len(raw),
            report_type=report_type,
            report_date=report_date,
            nonce_b64=nonce_b64,
            vitals=vitals,
        )
    except Exception:
        remove_file(stored_name)
        raise

    return jsonify({
        "message": "Report uploaded successfully",
        "reportId": report.id,
        "filename": report.filename,
    }), 201


@reports_bp.route("", methods=["GET"])
@login_required
def list_reports(identity):
    args = request.args
    reports = ReportStore(db.session).list(
        identity,
        report_type=args.get("reportType"),
        date_range=parse_date_range(args.get("startDate"), args.get("endDate")),
        vital_type=args.get("vitalType"),
    )
    return jsonify({"reports": [r.to_dict() for r in reports]})


@reports_bp.route("/<int:report_id>", methods=["GET"])
@login_required
def get_report(identity, report_id):
    report, vitals = ReportStore(db.session).get(identity, report_id)
    return jsonify({"report": report.to_dict(), "vitals": [v.to_dict() for v in vitals]})


@reports_bp.route("/<int:report_id>/download", methods=["GET"])
@login_required
def download(identity, report_id):
    report = ReportStore(db.session).for_download(identity, report_id)
    if not file_exists(report.filename):
        raise NotFound("File not found")
    plaintext = decrypt_bytes(report.nonce_b64, read_file_bytes(report.filename))
    return send_file(
        io.BytesIO(plaintext),
        mimetype=report.file_type,
        as_attachment=True,
        download_name=report.original_name,
    )


@reports_bp.route("/<int:report_id>", methods=["DELETE"])
@login_required
def delete_report(identity, report_id):
    ReportStore(db.session).delete(identity, report_id)
    return jsonify({"message": "Report deleted successfully"})


# ==========================================================
# 💓 VITALS ROUTES
# ==========================================================
@vitals_bp.route("", methods=["POST"])
@login_required
def add_vitals(identity):
    data = json_body()
    added = VitalsStore(db.session).add_batch(
        identity,
        data.get("vitals"),
        report_id=optional_int(data.get("reportId"), "reportId"),
        recorded_date=data.get("recordedDate"),
    )
    return jsonify({"message": "Vitals added successfully", "count": len(added)}), 201


@vitals_bp.route("", methods=["GET"])
@login_required
def vitals_history(identity):
    args = request.args
    vitals = VitalsStore(db.session).history(
        identity,
        date_range=parse_date_range(args.get("startDate"), args.get("endDate")),
        vital_type=args.get("vitalType"),
    )
    return jsonify({"vitals": [v.to_dict() for v in vitals]})


@vitals_bp.route("/trends")
@login_required
def vitals_trends(identity):
    args = request.args
    trends = VitalsStore(db.session).trends(
        identity,
        vital_type=args.get("vitalType"),
        date_range=parse_date_range(args.get("startDate"), args.get("endDate")),
        window_days=current_app.config["TRENDS_WINDOW_DAYS"],
    )
    return jsonify({"trends": trends})


@vitals_bp.route("/summary")
@login_required
def vitals_summary(identity):
    return jsonify({"summary": VitalsStore(db.session).summary(identity)})


# ==========================================================
# 🤝 SHARE ROUTES
# ==========================================================
@shares_bp.route("", methods=["POST"])
@login_required
def create_share(identity):
    data = json_body()
    share = ShareLedger(db.session).share(
        identity,
        data.get("reportId"),
        data.get("sharedWithEmail"),
        data.get("sharedWithName"),
        data.get("accessRole"),
    )
    subject, body = share_notification(identity.name, share.shared_with_name, share.report)
    send_email(share.shared_with_email, subject, body)
    return jsonify({"message": "Report shared successfully", "share": share.to_dict()}), 201


@shares_bp.route("/received")
@login_required
def received_shares(identity):
    return jsonify({"shares": ShareLedger(db.session).list_received(identity.email)})


@shares_bp.route("/received/<int:share_id>")
@login_required
def received_share(identity, share_id):
    share, report = ShareLedger(db.session).received(identity, share_id)
    metadata = report.to_dict()
    # recipients never see where the file lives
    metadata.pop("filename", None)
    return jsonify({"share": share.to_dict(), "report": metadata})


@shares_bp.route("/sent")
@login_required
def sent_shares(identity):
    return jsonify({"shares": ShareLedger(db.session).list_sent(identity)})


@shares_bp.route("/<int:share_id>", methods=["DELETE"])
@login_required
def revoke_share(identity, share_id):
    ShareLedger(db.session).revoke(identity, share_id)
    return jsonify({"message": "Access revoked successfully"})


# ==========================================================
# ❗ ERROR HANDLERS
# ==========================================================
def register_error_handlers(app):
    @app.errorhandler(WalletError)
    def wallet_error(err):
        if err.status_code >= 500:
            logger.opt(exception=err).error("{}: {}", type(err).__name__, err.message)
            return jsonify({"error": "Internal server error"}), err.status_code
        if isinstance(err, NotFound):
            logger.warning("{} {}: {}", request.method, request.path, err.message)
        return jsonify({"error": err.message}), err.status_code

    @app.errorhandler(SQLAlchemyError)
    def database_error(err):
        db.session.rollback()
        logger.exception("Database error on {} {}", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(OSError)
    def disk_error(err):
        logger.exception("Storage error on {} {}", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(err):
        return jsonify({"error": "File too large"}), 400

    @app.errorhandler(HTTPException)
    def http_error(err):
        return jsonify({"error": err.description}), err.code


def register_jwt_handlers(jwt):
    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({"error": "Authentication required"}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({"error": "Invalid token"}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"error": "Token expired"}), 401


# ==========================================================
# ⚙️ APP SETUP
# ==========================================================
def create_app(config_object=Config, overrides=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    CORS(app)
    register_jwt_handlers(JWTManager(app))
    register_error_handlers(app)

    for bp in (auth_bp, reports_bp, vitals_bp, shares_bp):
        app.register_blueprint(bp)

    @app.route("/")
    def health():
        return "Digital Health Wallet API is Running"

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)
    with app.app_context():
        db.create_all()

    logger.info("Health wallet ready, uploads in {}", app.config["UPLOAD_FOLDER"])
    if not app.config.get("ENCRYPTION_KEY_B64"):
        logger.warning("ENCRYPTION_KEY not set: uploads and downloads will fail")
    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT") or 3000), debug=True)
