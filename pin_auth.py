"""
Passwordless login with one-time PINs sent by email.

A PIN row is valid while it is unused and unexpired. Verification consumes it
with a conditional update, so a PIN logs in at most once. Only a hash of the
PIN is stored.
"""

import logging
import secrets
from datetime import timedelta
from typing import Callable, Iterable

from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, utcnow
from errors import InvalidOrExpiredPin
from mailer import MailDeliveryError
from schemas import PinVerification, User
from tokens import TokenIssuer

logger = logging.getLogger(__name__)

pin_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

PIN_EMAIL_SUBJECT = "Your access PIN"
PIN_EMAIL_HTML = """\
<h2>Access PIN</h2>
<p>Your access PIN is: <strong>{pin}</strong></p>
<p>This PIN expires in {minutes} minutes.</p>
<p>If you did not request it, you can ignore this email.</p>
"""


class PublicUser(BaseModel):
    id: str
    email: str
    name: str
    role: str = "user"


class PinRequestResult(BaseModel):
    success: bool
    message: str


class PinLoginResult(BaseModel):
    token: str
    user: PublicUser


def generate_pin() -> str:
    """Six digits, 100000-999999, each value equally likely."""
    return str(100000 + secrets.randbelow(900000))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def public_user(doc: dict) -> PublicUser:
    return PublicUser(
        id=str(doc["_id"]),
        email=doc["email"],
        name=doc.get("name", ""),
        role=doc.get("role", "user"),
    )


class PinAuthService:
    def __init__(
        self,
        database: Database,
        mailer,
        tokens: TokenIssuer,
        clock: Callable = utcnow,
        expires_minutes: int = 5,
        admin_emails: Iterable[str] = (),
    ):
        self.db = database
        self.mailer = mailer
        self.tokens = tokens
        self.clock = clock
        self.expires_minutes = expires_minutes
        self.admin_emails = frozenset(normalize_email(e) for e in admin_emails)

    def purge_expired(self) -> int:
        result = self.db["pinverification"].delete_many({"expires_at": {"$lt": self.clock()}})
        return result.deleted_count

    def request_pin(self, email: str) -> PinRequestResult:
        email = normalize_email(email)
        try:
            self.purge_expired()
            now = self.clock()
            pin = generate_pin()
            record = PinVerification(
                email=email,
                pin_hash=pin_context.hash(pin),
                expires_at=now + timedelta(minutes=self.expires_minutes),
            )
            create_document(self.db, "pinverification", record, now=now)
            self.mailer.send(
                email,
                PIN_EMAIL_SUBJECT,
                PIN_EMAIL_HTML.format(pin=pin, minutes=self.expires_minutes),
            )
        except (PyMongoError, MailDeliveryError, ValidationError):
            logger.exception("Could not issue a PIN for %s", email)
            return PinRequestResult(success=False, message="Could not send PIN")
        logger.info("PIN issued for %s", email)
        return PinRequestResult(success=True, message="PIN sent to your email")

    def verify_pin(self, email: str, pin: str) -> PinLoginResult:
        email = normalize_email(email)
        now = self.clock()
        candidates = self.db["pinverification"].find(
            {"email": email, "used": False, "expires_at": {"$gt": now}}
        ).sort("created_at", DESCENDING)
        match = next((c for c in candidates if pin_context.verify(pin, c["pin_hash"])), None)
        if match is None:
            raise InvalidOrExpiredPin()

        consumed = self.db["pinverification"].update_one(
            {"_id": match["_id"], "used": False},
            {"$set": {"used": True, "updated_at": now}},
        )
        if consumed.modified_count == 0:
            raise InvalidOrExpiredPin()

        user = self._find_or_create_user(email)
        token = self.tokens.issue(user["_id"])
        return PinLoginResult(token=token, user=public_user(user))

    def _find_or_create_user(self, email: str) -> dict:
        users = self.db["user"]
        user = users.find_one({"email": email})
        if user is not None:
            return user
        now = self.clock()
        role = "admin" if email in self.admin_emails else "user"
        fields = User(email=email, name=email.split("@")[0], role=role).model_dump(exclude={"email"})
        fields.update(created_at=now, updated_at=now)
        # unique email index: a concurrent first login lands on the same document
        user = users.find_one_and_update(
            {"email": email},
            {"$setOnInsert": fields},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Created user %s (%s)", user["_id"], email)
        return user
