"""
Accounts: registration, login gating, KYC and the admin approval lifecycle.

approval_status (pending/approved/rejected) gates login; verified is the
independent KYC axis. Passwords are stored as passlib bcrypt hashes only.
"""
import logging
import re
import secrets
from typing import Optional, Dict, Any

from passlib.context import CryptContext

from config import BCRYPT_ROUNDS
from database import DocumentStore
from errors import ValidationError, InvalidCredentials, AccountNotApproved
from repository import find_user, find_user_by_email, set_user_fields, update_user
from schemas import Hubdocument, User, Location, now_iso

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[\W_]).{10,}$")
WEAK_PASSWORD = (
    "Password Weak: Must be 10+ chars, include UPPERCASE, lowercase, "
    "number (0-9), and special character (@#$%^&*)."
)


def validate_password(password: str, confirm_password: Optional[str]) -> None:
    if not password or not confirm_password:
        raise ValidationError("Please enter and confirm your password.")
    if not PASSWORD_RE.match(password):
        raise ValidationError(WEAK_PASSWORD)
    if password != confirm_password:
        raise ValidationError("Passwords do not match.")


def _referral_code(name: str) -> str:
    prefix = re.sub(r"[^A-Z]", "", name.upper())[:3] or "DPW"
    return f"{prefix}{secrets.token_hex(3).upper()}"


# ------------------ Registration & login ------------------
def register(
    store: DocumentStore,
    name: str,
    email: str,
    phone: str,
    password: str,
    confirm_password: Optional[str],
    referred_by: Optional[str] = None,
) -> Dict[str, Any]:
    name = (name or "").strip()
    email = (email or "").strip().lower()
    phone = (phone or "").strip()
    if not name or not email or not phone:
        raise ValidationError("Name, email and phone are required.")
    validate_password(password, confirm_password)
    password_hash = pwd_context.hash(password)

    def apply(doc: Hubdocument) -> User:
        # Uniqueness is checked against the document loaded for this write.
        if find_user_by_email(doc, email):
            raise ValidationError("Email already exists.")
        if any(u.phone == phone for u in doc.users):
            raise ValidationError("Phone number already exists.")
        user = User(
            name=name,
            email=email,
            phone=phone,
            password_hash=password_hash,
            role="user",
            verified=False,
            approval_status="pending",
            referral_code=_referral_code(name),
            referred_by=referred_by,
        )
        doc.users.append(user)
        return user

    user = store.mutate(apply)
    logger.info("Registered user %s (pending approval)", user.id)
    return user.public()


def authenticate(doc: Hubdocument, email: str, password: str) -> User:
    user = find_user_by_email(doc, email)
    if not user or not user.password_hash or not password:
        raise InvalidCredentials()
    if not pwd_context.verify(password, user.password_hash):
        raise InvalidCredentials()
    if user.approval_status == "rejected":
        raise AccountNotApproved("Your account was not approved. Please contact support.")
    if user.approval_status != "approved":
        raise AccountNotApproved()
    return user


def login(store: DocumentStore, email: str, password: str) -> Dict[str, Any]:
    """Credential check first, approval gate second; rejects never look like bad passwords."""
    doc = store.load_document()
    return authenticate(doc, email, password).public()


def reset_password(store: DocumentStore, email: str, phone: str, new_password: str, confirm_password: Optional[str]) -> None:
    validate_password(new_password, confirm_password)
    password_hash = pwd_context.hash(new_password)

    def apply(doc: Hubdocument) -> None:
        user = find_user_by_email(doc, email)
        if not user or user.phone != (phone or "").strip():
            raise ValidationError("Identity verification failed. Email and phone do not match.")
        user.password_hash = password_hash

    store.mutate(apply)


# ------------------ Profile ------------------
def update_profile(store: DocumentStore, user: User) -> Dict[str, Any]:
    return update_user(store, user).public()


def update_own_profile(store: DocumentStore, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Self-service edit; role, approval and KYC fields are not editable this way."""
    allowed = {k: v for k, v in changes.items() if k in ("name", "phone") and v}
    return set_user_fields(store, user_id, **allowed).public()


def record_location(store: DocumentStore, user_id: str, lat: Optional[float], lng: Optional[float]) -> Dict[str, Any]:
    if lat is None or lng is None:
        raise ValidationError("Location unavailable. Please enable location services and try again.")

    def apply(doc: Hubdocument) -> User:
        user = find_user(doc, user_id)
        user.last_location = Location(lat=lat, lng=lng, timestamp=now_iso())
        return user

    return store.mutate(apply).public()


def submit_kyc(store: DocumentStore, user_id: str, front_url: str, back_url: str) -> Dict[str, Any]:
    """New ID documents always send the account back to review."""
    if not front_url or not back_url:
        raise ValidationError("Both Front and Back of ID are required.")

    def apply(doc: Hubdocument) -> User:
        user = find_user(doc, user_id)
        user.id_document_front = front_url
        user.id_document_back = back_url
        user.verified = False
        user.approval_status = "pending"
        return user

    user = store.mutate(apply)
    logger.info("User %s submitted KYC documents", user_id)
    return user.public()


# ------------------ Admin actions ------------------
def set_approval(store: DocumentStore, user_id: str, status: str) -> Dict[str, Any]:
    def apply(doc: Hubdocument) -> User:
        user = find_user(doc, user_id)
        user.approval_status = status
        return user

    user = store.mutate(apply)
    logger.info("User %s approval -> %s", user_id, status)
    return user.public()


def approve(store: DocumentStore, user_id: str) -> Dict[str, Any]:
    return set_approval(store, user_id, "approved")


def reject(store: DocumentStore, user_id: str) -> Dict[str, Any]:
    return set_approval(store, user_id, "rejected")


def set_role(store: DocumentStore, user_id: str, role: str) -> Dict[str, Any]:
    def apply(doc: Hubdocument) -> User:
        user = find_user(doc, user_id)
        user.role = role
        return user

    user = store.mutate(apply)
    logger.info("User %s role -> %s", user_id, role)
    return user.public()


def verify_user(store: DocumentStore, user_id: str, verified: bool) -> Dict[str, Any]:
    def apply(doc: Hubdocument) -> User:
        user = find_user(doc, user_id)
        user.verified = verified
        return user

    return store.mutate(apply).public()


def seed_initial_admin(store: DocumentStore, name: str, email: str, phone: str, password: str) -> Dict[str, Any]:
    """Deployment step: create the first admin, or promote and re-key an existing account."""
    email = (email or "").strip().lower()
    if not email or not password:
        raise ValidationError("Initial admin email and password are required.")
    password_hash = pwd_context.hash(password)

    def apply(doc: Hubdocument) -> User:
        user = find_user_by_email(doc, email)
        if user is None:
            user = User(name=name, email=email, phone=phone or None, referral_code=_referral_code(name))
            doc.users.append(user)
        user.password_hash = password_hash
        user.role = "admin"
        user.verified = True
        user.approval_status = "approved"
        return user

    user = store.mutate(apply)
    logger.info("Seeded admin account %s", user.id)
    return user.public()
