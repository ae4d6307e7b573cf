"""
One-time codes and pending registrations.

Both live in MongoDB collections with a TTL index on ``expires_at`` so they
are shared between instances and cleaned up by the server. The TTL monitor
only runs about once a minute, so every read also checks the expiry itself.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple

import config
from database import utcnow
from email_service import send_email
from errors import InvalidArgument
from security import hash_password, verify_password

logger = logging.getLogger(__name__)

OTP_COLLECTION = "otp_code"
PENDING_COLLECTION = "pending_registration"


def generate_otp(length: Optional[int] = None) -> str:
    length = length or config.OTP_LENGTH
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def issue_otp(db, identifier: str, purpose: str = "verify") -> Tuple[str, datetime]:
    """Store a fresh hashed code for the identifier, replacing any previous one."""
    code = generate_otp()
    now = utcnow()
    expires_at = now + timedelta(minutes=config.OTP_EXPIRE_MINUTES)
    db[OTP_COLLECTION].update_one(
        {"identifier": identifier},
        {
            "$set": {
                "identifier": identifier,
                "otp_hash": hash_password(code),
                "purpose": purpose,
                "expires_at": expires_at,
                "created_at": now,
                "failed_attempts": 0,
            }
        },
        upsert=True,
    )
    return code, expires_at


def deliver_otp(identifier: str, code: str, purpose: str = "verify") -> None:
    subject = "Password Reset OTP" if purpose == "reset" else "Your Verification OTP"
    minutes = config.OTP_EXPIRE_MINUTES
    html = f"<p>Your OTP is <b>{code}</b>. It expires in {minutes} minutes.</p>"
    text = f"Your OTP is {code}. It expires in {minutes} minutes."
    if not send_email(identifier, subject, html, text):
        logger.error("OTP dispatch failed for %s", identifier)


def verify_otp(db, identifier: str, code: str) -> str:
    """Check and consume a code. Returns its purpose, raises InvalidArgument otherwise."""
    record = db[OTP_COLLECTION].find_one({"identifier": identifier})
    if not record:
        raise InvalidArgument("OTP failed: No OTP found")
    if record["expires_at"] <= utcnow():
        db[OTP_COLLECTION].delete_one({"_id": record["_id"]})
        raise InvalidArgument("OTP failed: OTP expired")
    if not verify_password(code, record.get("otp_hash")):
        attempts = record.get("failed_attempts", 0) + 1
        if attempts >= config.OTP_MAX_ATTEMPTS:
            db[OTP_COLLECTION].delete_one({"_id": record["_id"]})
            raise InvalidArgument("OTP failed: Too many failed attempts")
        db[OTP_COLLECTION].update_one({"_id": record["_id"]}, {"$inc": {"failed_attempts": 1}})
        raise InvalidArgument("OTP failed: Invalid OTP")
    db[OTP_COLLECTION].delete_one({"_id": record["_id"]})
    return record.get("purpose", "verify")


# ----------------------- Pending registrations -----------------------

def save_pending_registration(db, identifier: str, data: dict, expires_at: datetime) -> None:
    db[PENDING_COLLECTION].update_one(
        {"identifier": identifier},
        {"$set": {**data, "identifier": identifier, "expires_at": expires_at, "created_at": utcnow()}},
        upsert=True,
    )


def get_pending_registration(db, identifier: str) -> Optional[dict]:
    pending = db[PENDING_COLLECTION].find_one({"identifier": identifier})
    if not pending:
        return None
    if pending["expires_at"] <= utcnow():
        db[PENDING_COLLECTION].delete_one({"_id": pending["_id"]})
        return None
    return pending


def discard_pending_registration(db, identifier: str) -> None:
    db[PENDING_COLLECTION].delete_one({"identifier": identifier})
