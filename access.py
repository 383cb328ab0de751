"""
Access control for reports, vitals and shares.

Every read or write goes through one of the helpers below before the
stores touch a row.  A report belongs to exactly one user; the only way
anybody else gets to see it is a row in ``access_shares`` whose
``shared_with_email`` equals the caller's e-mail, and even then only the
report metadata is visible.

Recipients are matched on the e-mail string alone.  That is only as
trustworthy as the e-mail the caller authenticated with: this project
does not verify that a user owns the address they registered.
"""
from dataclasses import dataclass

from models import Report, Share


# ==========================================================
# ❗ ERRORS
# ==========================================================
class WalletError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class ValidationError(WalletError):
    status_code = 400
    message = "Invalid request"


class AuthError(WalletError):
    status_code = 401
    message = "Authentication required"


class NotFound(WalletError):
    status_code = 404
    message = "Not found"


class Conflict(WalletError):
    # the REST contract reports duplicates as 400
    status_code = 400
    message = "Already exists"


class StorageError(WalletError):
    status_code = 500
    message = "Storage failure"


# ==========================================================
# 👤 ACTING IDENTITY
# ==========================================================
@dataclass(frozen=True)
class Identity:
    id: int
    email: str
    name: str = ""

    @classmethod
    def of(cls, user):
        return cls(id=user.id, email=normalize_email(user.email), name=user.name)


def normalize_email(email):
    return str(email or "").strip().lower()


# ==========================================================
# 🔒 GATE
# ==========================================================
READ = "read"           # full report with vitals
VIEW = "view"           # metadata only
DOWNLOAD = "download"
DELETE = "delete"
SHARE = "share"

OPERATIONS = {READ, VIEW, DOWNLOAD, DELETE, SHARE}
RECIPIENT_OPERATIONS = {VIEW}


def is_owner(identity: Identity, report: Report) -> bool:
    return report.user_id == identity.id


def is_recipient(session, identity: Identity, report: Report) -> bool:
    share = (
        session.query(Share.id)
        .filter(Share.report_id == report.id, Share.shared_with_email == identity.email)
        .first()
    )
    return share is not None


def authorize_report(session, identity: Identity, report_id, operation=READ) -> Report:
    """Return the report if ``identity`` may perform ``operation`` on it.

    Owners may do anything.  Recipients of a share may only ``VIEW``.
    Anything else, including a report that does not exist, is reported
    as ``NotFound`` so callers cannot probe for other users' ids.
    """
    if operation not in OPERATIONS:
        raise ValueError(f"unknown operation {operation!r}")
    report = session.get(Report, report_id)
    if report is None:
        raise NotFound("Report not found")
    if is_owner(identity, report):
        return report
    if operation in RECIPIENT_OPERATIONS and is_recipient(session, identity, report):
        return report
    raise NotFound("Report not found")


def authorize_vital_link(session, identity: Identity, report_id):
    """A vital may only point at a report owned by the same user."""
    if report_id is None:
        return None
    return authorize_report(session, identity, report_id, READ)


def authorize_share_revocation(session, identity: Identity, share_id) -> Share:
    share = session.get(Share, share_id)
    if share is None or share.owner_id != identity.id:
        raise NotFound("Share not found or access denied")
    return share


def authorize_received_share(session, identity: Identity, share_id) -> Share:
    share = session.get(Share, share_id)
    if share is None or share.shared_with_email != identity.email:
        raise NotFound("Share not found")
    return share
