import logging
from typing import Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, Response
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, serialize_doc, utcnow
from errors import Conflict, InvalidArgument, Unauthenticated
from otp_service import (
    deliver_otp,
    discard_pending_registration,
    get_pending_registration,
    issue_otp,
    save_pending_registration,
    verify_otp,
)
from schemas import Address, User
from security import clear_session, get_current_user, hash_password, issue_session, public_user, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class VerifyOtpBody(BaseModel):
    identifier: str = Field(..., min_length=1)
    otp: str = Field(..., min_length=1)


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateBody(BaseModel):
    full_name: Optional[str] = None
    shipping_address: Optional[Address] = None


# ----------------------- Identity -----------------------

def start_registration(db, full_name: str, email: str, password: str) -> str:
    """Park the registration until the emailed code comes back. Returns the code."""
    email = email.strip().lower()
    if db["user"].find_one({"email": email}, {"_id": 1}):
        raise Conflict("Email already registered")
    code, expires_at = issue_otp(db, email, "verify")
    save_pending_registration(
        db,
        email,
        {"full_name": full_name.strip(), "email": email, "password_hash": hash_password(password)},
        expires_at,
    )
    return code


def complete_registration(db, identifier: str, otp: str) -> dict:
    identifier = identifier.strip().lower()
    verify_otp(db, identifier, otp)
    pending = get_pending_registration(db, identifier)
    if not pending:
        raise InvalidArgument("No pending registration")

    user = User(
        full_name=pending["full_name"],
        email=pending["email"],
        password_hash=pending["password_hash"],
        role="user",
        is_email_verified=True,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        discard_pending_registration(db, identifier)
        raise Conflict("Email already registered")
    discard_pending_registration(db, identifier)
    logger.info("User %s registered", user_id)
    return serialize_doc(db["user"].find_one({"_id": ObjectId(user_id)}))


def authenticate(db, email: str, password: str) -> dict:
    user = db["user"].find_one({"email": email.strip().lower()})
    if not user or not verify_password(password, user.get("password_hash")):
        raise Unauthenticated("Invalid credentials")
    return serialize_doc(user)


# ----------------------- Routes -----------------------
@router.post("/register")
def register(body: RegisterBody, background_tasks: BackgroundTasks, db=Depends(get_db)):
    code = start_registration(db, body.full_name, body.email, body.password)
    background_tasks.add_task(deliver_otp, body.email.strip().lower(), code, "verify")
    return {"message": "OTP sent, complete verification to register"}


@router.post("/verify-otp")
def verify_otp_route(body: VerifyOtpBody, response: Response, db=Depends(get_db)):
    user = complete_registration(db, body.identifier, body.otp)
    token = issue_session(response, user)
    return {"message": "Registration complete", "token": token, "user": public_user(user)}


@router.post("/login")
def login(body: LoginBody, response: Response, db=Depends(get_db)):
    user = authenticate(db, body.email, body.password)
    token = issue_session(response, user)
    return {"message": "Login successful", "token": token, "user": public_user(user)}


@router.post("/logout")
def logout(response: Response):
    clear_session(response)
    return {"message": "Logged out"}


@router.get("/me")
def get_me(user=Depends(get_current_user)):
    return {"user": public_user(user)}


@router.patch("/me")
def update_me(body: ProfileUpdateBody, user=Depends(get_current_user), db=Depends(get_db)):
    update = {}
    if body.full_name is not None:
        if not body.full_name.strip():
            raise InvalidArgument("full_name cannot be empty")
        update["full_name"] = body.full_name.strip()
    if body.shipping_address is not None:
        update["shipping_address"] = body.shipping_address.model_dump()
    if not update:
        raise InvalidArgument("Nothing to update")
    update["updated_at"] = utcnow()
    updated = db["user"].find_one_and_update(
        {"_id": ObjectId(user["id"])},
        {"$set": update},
        projection={"password_hash": 0},
        return_document=ReturnDocument.AFTER,
    )
    return {"user": public_user(serialize_doc(updated))}
