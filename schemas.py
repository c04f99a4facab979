"""
Dual Power Women Hub Schemas

The whole database is one JSON document (Hubdocument). Each Pydantic model
below maps to one of its collections. Stored keys are camelCase so that an
existing document reads and writes unchanged; Python code uses snake_case
attributes. Unknown keys are kept so a round trip never drops data.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Literal, Any, Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from config import ORG_NAME

logger = logging.getLogger(__name__)

Role = Literal["admin", "nurse", "user"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
AssetStatus = Literal["available", "rented", "sold", "maintenance"]
ModerationStatus = Literal["pending", "approved", "rejected"]
TransactionStatus = Literal["pending_approval", "in_transit", "active", "returned", "disputed"]

OPEN_TRANSACTION_STATUSES = ("pending_approval", "in_transit", "active")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    """Millisecond timestamp id with a short random suffix so two writes in the same ms never collide."""
    return f"{int(time.time() * 1000)}{uuid.uuid4().hex[:4]}"


class HubModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow", validate_assignment=True
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # A stored null on a field that has a default reads as that default.
        if isinstance(data, dict):
            fields = {}
            for name, field in cls.model_fields.items():
                if not field.is_required():
                    fields[name] = fields[field.alias or to_camel(name)] = field
            data = {
                k: fields[k].get_default(call_default_factory=True) if v is None and k in fields else v
                for k, v in data.items()
            }
        return data

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# Identities
class Location(HubModel):
    lat: float
    lng: float
    timestamp: Optional[str] = None
    accuracy: Optional[float] = None


class User(HubModel):
    id: str = Field(default_factory=new_id, description="Stable id assigned at registration")
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Login key, stored lowercased")
    phone: Optional[str] = Field(None, description="Phone number")
    password_hash: Optional[str] = Field(None, description="passlib hash; never returned by the API")
    role: Role = Field("user", description="User role")
    verified: bool = Field(False, description="KYC outcome")
    approval_status: ApprovalStatus = Field("pending", description="Admin approval gating login")
    id_document_front: Optional[str] = Field(None, description="URL of ID front image")
    id_document_back: Optional[str] = Field(None, description="URL of ID back image")
    last_location: Optional[Location] = Field(None, description="Last known geolocation")
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            # Plaintext passwords from older documents are discarded, never compared.
            data.pop("password", None)
            if data.get("role") == "administrator":
                data["role"] = "admin"
            for key in ("approvalStatus", "approval_status"):
                if key in data and not data[key]:
                    del data[key]
        return data

    def public(self) -> Dict[str, Any]:
        record = self.to_record()
        record.pop("passwordHash", None)
        return record


# Marketplace
class Asset(HubModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., description="Listing title")
    description: str = Field("", description="Listing description")
    special_details: Optional[str] = Field(None, description="Handling instructions")
    listing_type: Literal["rent", "sale"] = Field("rent", description="Rent or sell")
    daily_rate: float = Field(0, ge=0, description="Rental rate per day")
    sale_price: Optional[float] = Field(None, ge=0, description="Selling price")
    category: Optional[str] = None
    condition: Optional[str] = None
    images: List[str] = Field(default_factory=list, description="Image URLs, first is the cover")
    video_proof: str = Field("", description="Proof of ownership video URL")
    verified: bool = False
    owner_id: Optional[str] = Field(None, description="Reference to user")
    location: str = Field("", description="Town, estate or city")
    status: AssetStatus = Field("available")
    moderation_status: ModerationStatus = Field("pending")
    rejection_reason: Optional[str] = None


class Transaction(HubModel):
    id: str = Field(default_factory=new_id)
    asset_id: str
    asset_name: str
    renter_id: str
    renter_name: str
    start_date: str = Field(default_factory=now_iso)
    end_date: Optional[str] = None
    total_cost: float = Field(0, ge=0)
    status: TransactionStatus = "pending_approval"
    deposit_held: bool = False
    owner_id: Optional[str] = None
    transaction_type: Optional[Literal["rent", "sale", "shop"]] = None
    delivery_location: Optional[Location] = None
    delivery_notes: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy_status(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("status") in ("delivered", "sold"):
            data = dict(data)
            data["status"] = "active" if data["status"] == "delivered" else "returned"
        return data

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TRANSACTION_STATUSES


# Health
class Chatmessage(HubModel):
    id: str = Field(default_factory=new_id)
    role: Literal["user", "model", "nurse"]
    text: str
    timestamp: str = Field(default_factory=now_iso)
    is_escalated: Optional[bool] = None
    is_saved: Optional[bool] = None


# Shop & support
class Product(HubModel):
    id: str = Field(default_factory=new_id)
    name: str
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    image: str = ""
    category: str = "wellness"


class Supportticket(HubModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    user_name: str
    type: Literal["complaint", "help", "return"] = "help"
    subject: str
    message: str
    status: Literal["pending", "resolved"] = "pending"
    admin_reply: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)


class Appsettings(HubModel):
    org_name: str = ORG_NAME
    logo_url: Optional[str] = ""
    gemini_api_key: Optional[str] = None


COLLECTIONS = {
    "users": User,
    "assets": Asset,
    "transactions": Transaction,
    "nurse_messages": Chatmessage,
    "products": Product,
    "tickets": Supportticket,
}


class Hubdocument(HubModel):
    """
    The single shared document. Missing collections fall back to empty defaults.

    Records are validated one by one. A record that cannot be read is set
    aside in `unreadable` and written back untouched on the next save, so one
    bad entry never hides or destroys the rest of its collection.
    """
    users: List[User] = Field(default_factory=list)
    assets: List[Asset] = Field(default_factory=list)
    transactions: List[Transaction] = Field(default_factory=list)
    nurse_messages: List[Chatmessage] = Field(default_factory=list, alias="nurse_messages")
    products: List[Product] = Field(default_factory=list)
    tickets: List[Supportticket] = Field(default_factory=list)
    settings: Appsettings = Field(default_factory=Appsettings)
    revision: int = Field(0, ge=0, description="Incremented on every successful write")
    unreadable: Dict[str, List[Any]] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _validate_records(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        skipped: Dict[str, List[Any]] = {}
        for key, model in COLLECTIONS.items():
            items = data.get(key)
            if items is None:
                continue
            if not isinstance(items, list):
                logger.warning("Collection %s is not a list, reading it as empty", key)
                data[key] = []
                continue
            kept = []
            for item in items:
                if isinstance(item, model):
                    kept.append(item)
                    continue
                try:
                    kept.append(model.model_validate(item))
                except ValidationError as e:
                    record_id = item.get("id") if isinstance(item, dict) else None
                    logger.warning("Skipping unreadable %s record %s: %s", key, record_id, str(e)[:200])
                    skipped.setdefault(key, []).append(item)
            data[key] = kept

        settings = data.get("settings")
        if settings is not None and not isinstance(settings, Appsettings):
            try:
                data["settings"] = Appsettings.model_validate(settings)
            except ValidationError as e:
                logger.warning("Unreadable settings, using defaults: %s", str(e)[:200])
                data["settings"] = Appsettings()

        if skipped:
            data["unreadable"] = skipped
        return data

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        for key, items in self.unreadable.items():
            record[key] = record.get(key, []) + items
        return record
