import re
import secrets
from datetime import timedelta
from typing import Dict, Optional, Tuple

import bcrypt
from flask import render_template
from flask_jwt_extended import create_access_token, get_jwt_identity
from pymongo.errors import DuplicateKeyError

from primemart.config import utcnow
from primemart.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from primemart.orders import DEFAULT_COUNTRY, isoformat, normalize_address_payload, parse_object_id

ALLOWED_USER_ROLES = {"admin", "user"}
STAFF_ROLES = {"admin"}
OTP_CODE_LENGTH = 6

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else "user"


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class IdentityService:
    def __init__(self, db, mailer, logger, admin_email: str, otp_expiration_minutes: int = 5, clock=utcnow):
        self.users = db.users
        self.otps = db.otps
        self.mailer = mailer
        self.logger = logger
        self.admin_email = normalize_email(admin_email)
        self.otp_expiration_minutes = otp_expiration_minutes
        self.clock = clock
        try:
            self.users.create_index("email", unique=True)
            self.otps.create_index("email", unique=True)
            self.otps.create_index("expires_at", expireAfterSeconds=0)
        except Exception as exc:
            logger.warning("Unable to ensure identity indexes: %s", exc)

    # --- Roles ---

    def get_user_role(self, user_document) -> str:
        if not user_document:
            return "user"
        if self.admin_email and normalize_email(user_document.get("email")) == self.admin_email:
            return "admin"
        return normalize_role(user_document.get("role"))

    def is_staff(self, user_document) -> bool:
        return self.get_user_role(user_document) in STAFF_ROLES

    def current_user(self) -> Dict:
        current_email = normalize_email(get_jwt_identity())
        user = self.users.find_one({"email": current_email}) if current_email else None
        if not user:
            raise AuthenticationError("User session not found. Please log in again.")
        return user

    def require_staff(self) -> Dict:
        user = self.current_user()
        if not self.is_staff(user):
            raise AuthorizationError()
        return user

    # --- Registration OTP ---

    def request_registration_otp(self, email: str) -> Dict:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")
        if self.users.find_one({"email": email}):
            raise ConflictError("User already exists with this email")

        otp = generate_otp_code()
        now = self.clock()
        expires_at = now + timedelta(minutes=self.otp_expiration_minutes)
        self.otps.update_one(
            {"email": email},
            {
                "$set": {
                    "email": email,
                    "otp_hash": bcrypt.hashpw(otp.encode("utf-8"), bcrypt.gensalt()),
                    "expires_at": expires_at,
                    "created_at": now,
                }
            },
            upsert=True,
        )

        html_body = render_template(
            "emails/registration_otp.html",
            otp=otp,
            expiration_minutes=self.otp_expiration_minutes,
        )
        sent, error_details = self.mailer.send(email, "Your Registration OTP - PrimeMart", html_body)
        if not sent:
            self.otps.delete_one({"email": email})
            self.logger.error("OTP dispatch failed for %s: %s", email, error_details)
            raise DependencyError("Failed to send OTP")

        return {"email": email, "expires_at": expires_at, "otp_length": OTP_CODE_LENGTH}

    def check_registration_otp(self, email: str, otp: str) -> Dict:
        email = normalize_email(email)
        otp = str(otp or "").strip()
        if not email or not otp:
            raise ValidationError("Email and OTP are required")

        record = self.otps.find_one({"email": email})
        if not record:
            raise NotFoundError("OTP not found. Please request a new one.")

        expires_at = record.get("expires_at")
        if not expires_at or expires_at < self.clock():
            raise ValidationError("OTP has expired")

        stored_hash = record.get("otp_hash")
        if not stored_hash or not bcrypt.checkpw(otp.encode("utf-8"), stored_hash):
            raise ValidationError("Invalid OTP")

        return record

    # --- Accounts ---

    def register(self, payload: Dict) -> Tuple[Dict, str]:
        name = str(payload.get("name") or "").strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        otp = str(payload.get("otp") or "").strip()
        mobile = str(payload.get("mobile") or "").strip()

        if not name or not email or not password or not otp:
            raise ValidationError("Name, email, password and OTP are required")

        record = self.check_registration_otp(email, otp)

        if self.users.find_one({"email": email}):
            raise ConflictError("User already exists")

        address = normalize_address_payload(payload.get("shippingAddress") or payload.get("address"))
        address.setdefault("full_name", name)
        if mobile:
            address.setdefault("phone", mobile)
        address.setdefault("country", DEFAULT_COUNTRY)

        now = self.clock()
        user_document = {
            "name": name,
            "email": email,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
            "mobile": mobile,
            "role": "admin" if email == self.admin_email else "user",
            "shipping_address": address,
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = self.users.insert_one(user_document)
        except DuplicateKeyError:
            raise ConflictError("User already exists")
        user_document["_id"] = insert_result.inserted_id

        self.otps.delete_one({"_id": record["_id"]})
        token = create_access_token(identity=email)
        return user_document, token

    def login(self, email: str, password: str) -> Tuple[Dict, str]:
        email = normalize_email(email)
        password = str(password or "")
        if not email or not password:
            raise ValidationError("Email and password are required")

        user = self.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            raise AuthenticationError("Invalid credentials")

        updates: Dict[str, object] = {"last_login_at": self.clock()}
        if email == self.admin_email and user.get("role") != "admin":
            updates["role"] = "admin"
        self.users.update_one({"_id": user["_id"]}, {"$set": updates})
        user.update(updates)

        return user, create_access_token(identity=email)

    def update_profile(self, user: Dict, payload: Dict) -> Dict:
        updates: Dict[str, object] = {}
        name = str(payload.get("name") or "").strip()
        if name:
            updates["name"] = name
        if "mobile" in payload:
            updates["mobile"] = str(payload.get("mobile") or "").strip()
        address_payload = payload.get("shippingAddress")
        if isinstance(address_payload, dict):
            address = normalize_address_payload(address_payload)
            address.setdefault("country", DEFAULT_COUNTRY)
            updates["shipping_address"] = address
        if not updates:
            raise ValidationError("Nothing to update.")

        updates["updated_at"] = self.clock()
        self.users.update_one({"_id": user["_id"]}, {"$set": updates})
        return self.users.find_one({"_id": user["_id"]})

    def list_users(self):
        return [self.serialize_user(user) for user in self.users.find().sort("created_at", -1)]

    def get_user(self, user_id: str, actor: Dict) -> Dict:
        if not self.is_staff(actor):
            raise AuthorizationError()
        user = self.users.find_one({"_id": parse_object_id(user_id, "User")})
        if not user:
            raise NotFoundError("User not found")
        return user

    def delete_user(self, user_id: str, actor: Dict) -> Dict:
        """Remove a customer account. Orders placed by the user are kept."""
        user = self.get_user(user_id, actor)
        if self.admin_email and normalize_email(user.get("email")) == self.admin_email:
            raise ValidationError("The default administrator account cannot be deleted.")
        if user["_id"] == actor.get("_id"):
            raise ValidationError("You cannot delete your own account.")

        self.users.delete_one({"_id": user["_id"]})
        self.logger.info("Deleted user %s", user.get("email"))
        return user

    def update_role(self, user_id: str, role: str) -> Dict:
        role = str(role or "").strip().lower()
        if role not in ALLOWED_USER_ROLES:
            raise ValidationError("Valid role (admin/user) required")
        object_id = parse_object_id(user_id, "User")
        result = self.users.update_one(
            {"_id": object_id}, {"$set": {"role": role, "updated_at": self.clock()}}
        )
        if result.matched_count == 0:
            raise NotFoundError("User not found")
        return self.users.find_one({"_id": object_id})

    def serialize_user(self, user_document) -> Dict[str, object]:
        if not user_document:
            return {}
        address = user_document.get("shipping_address") or {}
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "mobile": user_document.get("mobile", "") or "",
            "role": self.get_user_role(user_document),
            "shippingAddress": {
                "fullName": address.get("full_name", ""),
                "phone": address.get("phone", ""),
                "street": address.get("street", ""),
                "city": address.get("city", ""),
                "state": address.get("state", ""),
                "pincode": address.get("pincode", ""),
                "country": address.get("country", ""),
            },
            "createdAt": isoformat(user_document.get("created_at")),
            "lastLoginAt": isoformat(user_document.get("last_login_at")),
        }
