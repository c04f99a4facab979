import base64
import binascii
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Literal, Dict, Any, Tuple

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, EmailStr
import jwt

import accounts
import rentals
import repository
from ai_services import GeminiClient, MANUAL_REVIEW, resolve_api_key, upload_media
from config import JWT_SECRET, JWT_EXPIRES_IN, LOG_LEVEL, ORG_NAME, PORT
from database import db, DocumentStore
from errors import DomainError, NotFound, PermissionDenied, StoreUnavailable, ValidationError
from schemas import Asset, Appsettings, Location, Product, Supportticket, Chatmessage
from triage import handle_chat_turn

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

security = HTTPBearer()

app = FastAPI(title="Dual Power Women Hub API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ------------------ Models (lightweight for request bodies) ------------------
class RegisterDTO(BaseModel):
    name: str
    email: EmailStr
    phone: str
    password: str
    confirm_password: str
    referred_by: Optional[str] = None

class LoginDTO(BaseModel):
    email: EmailStr
    password: str

class ResetPasswordDTO(BaseModel):
    email: EmailStr
    phone: str
    new_password: str
    confirm_password: str

class ProfileDTO(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None

class LocationDTO(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy: Optional[float] = None

class KycDTO(BaseModel):
    front_image: str
    back_image: str

class AssetCreateDTO(BaseModel):
    name: str
    description: str = ""
    special_details: Optional[str] = None
    listing_type: Literal["rent", "sale"] = "rent"
    daily_rate: float = Field(0, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    condition: Optional[str] = None
    location: str = ""
    images: List[str] = Field(default_factory=list, description="Data URLs or hosted URLs")
    video_proof: str

class AssetUpdateDTO(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    special_details: Optional[str] = None
    listing_type: Optional[Literal["rent", "sale"]] = None
    daily_rate: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    status: Optional[Literal["available", "rented", "sold", "maintenance"]] = None
    verified: Optional[bool] = None

class RentDTO(BaseModel):
    days: int = Field(..., ge=1)
    location: Optional[LocationDTO] = None

class PurchaseDTO(BaseModel):
    location: Optional[LocationDTO] = None

class ShopOrderDTO(BaseModel):
    delivery_date: Optional[str] = None
    location: Optional[LocationDTO] = None
    notes: Optional[str] = None

class TicketDTO(BaseModel):
    type: Literal["complaint", "help", "return"] = "help"
    subject: str
    message: str

class ChatTurnDTO(BaseModel):
    message: str
    history: List[Dict[str, str]] = Field(default_factory=list)
    active_tab: Literal["ai", "nurse", "shop"] = "ai"

class NurseMessageDTO(BaseModel):
    role: Literal["user", "model", "nurse"]
    text: str
    is_escalated: Optional[bool] = None

class ApprovalDTO(BaseModel):
    status: Literal["approved", "rejected"]

class RoleDTO(BaseModel):
    role: Literal["admin", "nurse", "user"]

class VerifyDTO(BaseModel):
    verified: bool

class ModerationDTO(BaseModel):
    status: Literal["approved", "rejected"]
    reason: Optional[str] = None

class TransactionStatusDTO(BaseModel):
    status: Literal["in_transit", "active", "returned", "disputed"]

class ProductDTO(BaseModel):
    id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    image: str = ""
    category: str = "wellness"

class ReplyDTO(BaseModel):
    reply: str

class SettingsDTO(BaseModel):
    org_name: str = ORG_NAME
    logo_url: Optional[str] = ""
    gemini_api_key: Optional[str] = None

class ImageEditDTO(BaseModel):
    image: str
    instruction: str

class SupplierQueryDTO(BaseModel):
    query: str
    lat: float
    lng: float

class VideoDTO(BaseModel):
    prompt: str
    image: Optional[str] = None

class AnalyzeDTO(BaseModel):
    image: str

# ------------------ Utility functions ------------------

def get_store() -> DocumentStore:
    if db is None:
        raise StoreUnavailable("Document store is not configured (DOCUMENT_STORE_URL)")
    return db


def get_ai(store: DocumentStore = Depends(get_store)) -> GeminiClient:
    return GeminiClient(api_key=resolve_api_key(store))


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user.get("id")),
        "role": user.get("role", "user"),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=JWT_EXPIRES_IN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(security),
    store: DocumentStore = Depends(get_store),
) -> dict:
    token = creds.credentials
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        user_id = payload.get("sub")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = repository.get_user(store, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.approval_status == "rejected":
        raise HTTPException(status_code=403, detail="Your account has been rejected. Please contact support.")
    return user.public()


def require_roles(*roles: str):
    def checker(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in roles:
            raise PermissionDenied(f"{' or '.join(r.title() for r in roles)} only")
        return user
    return checker


admin_only = require_roles("admin")
nurse_or_admin = require_roles("nurse", "admin")


def to_location(dto: Optional[LocationDTO]) -> Optional[Location]:
    if dto is None or dto.lat is None or dto.lng is None:
        return None
    return Location(lat=dto.lat, lng=dto.lng, accuracy=dto.accuracy)


def decode_image(value: str) -> Tuple[bytes, str]:
    """Accept a data URL or bare base64 and return (bytes, content type)."""
    content_type = "image/jpeg"
    data = value
    if value.startswith("data:"):
        header, _, data = value.partition(",")
        content_type = header[5:].split(";")[0] or content_type
    try:
        return base64.b64decode(data, validate=True), content_type
    except (binascii.Error, ValueError):
        raise ValidationError("Images must be base64 encoded.")


def is_hosted(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def store_media(value: str, filename: str) -> str:
    if is_hosted(value):
        return value
    data, content_type = decode_image(value)
    return upload_media(data, filename, content_type)


def records(items) -> List[Dict[str, Any]]:
    return [it.to_record() for it in items]

# ------------------ Basic routes ------------------
@app.get("/")
def root():
    return {"name": "Dual Power Women Hub API", "document_store": "configured" if db is not None else "not configured"}

@app.get("/schema")
def get_schema():
    from schemas import User, Asset, Transaction, Chatmessage, Product, Supportticket, Appsettings
    models = [User, Asset, Transaction, Chatmessage, Product, Supportticket, Appsettings]
    return {m.__name__: m.model_json_schema(by_alias=True) for m in models}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "document_store": "❌ Not Available",
        "revision": None,
        "collections": [],
    }
    if db is None:
        return response
    try:
        doc = db.load_document()
        response["document_store"] = "✅ Connected & Working"
        response["revision"] = doc.revision
        response["collections"] = ["users", "assets", "transactions", "nurse_messages", "products", "tickets", "settings"]
    except StoreUnavailable as e:
        response["document_store"] = f"❌ Error: {e.message[:60]}"
    return response

@app.get("/settings")
def read_settings(store: DocumentStore = Depends(get_store)):
    settings = repository.get_settings(store)
    return {"orgName": settings.org_name, "logoUrl": settings.logo_url}

# ------------------ Auth ------------------
@app.post("/auth/register")
def register(payload: RegisterDTO, store: DocumentStore = Depends(get_store)):
    user = accounts.register(
        store, payload.name, payload.email, payload.phone,
        payload.password, payload.confirm_password, payload.referred_by,
    )
    return {"user": user, "message": "Registration received. Your account is pending Admin approval."}

@app.post("/auth/login")
def login(payload: LoginDTO, store: DocumentStore = Depends(get_store)):
    user = accounts.login(store, payload.email, payload.password)
    return {"token": create_token(user), "user": user}

@app.post("/auth/reset-password")
def reset_password(payload: ResetPasswordDTO, store: DocumentStore = Depends(get_store)):
    accounts.reset_password(store, payload.email, payload.phone, payload.new_password, payload.confirm_password)
    return {"ok": True, "message": "Identity Verified. Your password has been successfully reset."}

# ------------------ Profile & KYC ------------------
@app.get("/me")
def me(user=Depends(get_current_user)):
    return user

@app.put("/me")
def update_me(payload: ProfileDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    return accounts.update_own_profile(store, user["id"], payload.model_dump(exclude_none=True))

@app.post("/me/location")
def update_location(payload: LocationDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    return accounts.record_location(store, user["id"], payload.lat, payload.lng)

@app.post("/me/kyc")
def upload_kyc(payload: KycDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store),
               ai: GeminiClient = Depends(get_ai)):
    verdict = ai.validate_id_document(payload.front_image, payload.back_image)
    if not verdict.valid:
        raise ValidationError(f"SECURITY ALERT: ID REJECTED. REASON: {verdict.reason}")
    front_url = store_media(payload.front_image, f"{user['id']}_id_front")
    back_url = store_media(payload.back_image, f"{user['id']}_id_back")
    updated = accounts.submit_kyc(store, user["id"], front_url, back_url)
    return {"user": updated, "message": "ID Submitted Successfully. Admin approval pending."}

@app.get("/me/stats")
def my_stats(user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    return rentals.dashboard_stats(store, user["id"])

# ------------------ Marketplace ------------------
@app.get("/assets")
def marketplace(sort: Literal["newest", "price-asc", "price-desc"] = "newest", store: DocumentStore = Depends(get_store)):
    return {"items": records(repository.list_marketplace_assets(store, sort))}

@app.get("/assets/mine")
def my_assets(user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    return {"items": records(repository.list_owner_assets(store, user["id"]))}

@app.post("/assets")
def create_asset(payload: AssetCreateDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store),
                 ai: GeminiClient = Depends(get_ai)):
    if not (user.get("idDocumentFront") and user.get("idDocumentBack")):
        raise PermissionDenied("Upload the front and back of your National ID before listing.")
    if len(payload.images) < 5:
        raise ValidationError("MISSING IMAGES: You must upload at least 5 images of the product.")
    if not payload.video_proof:
        raise ValidationError("MISSING PROOF: You must upload a proof of ownership video.")
    if payload.listing_type == "sale" and payload.sale_price is None:
        raise ValidationError("A sale listing needs a sale price.")

    inline = [img for img in payload.images if not is_hosted(img)]
    verdict = ai.validate_asset_images(inline, payload.name) if inline else MANUAL_REVIEW

    asset = Asset(
        **payload.model_dump(exclude={"images", "video_proof"}),
        images=[store_media(img, f"asset_{i}") for i, img in enumerate(payload.images)],
        video_proof=payload.video_proof,
        owner_id=user["id"],
        status="available",
        rejection_reason=None if verdict.valid else f"AI Rejection: {verdict.reason}",
    )
    saved = repository.add_asset(store, asset, None if verdict.valid else "rejected")
    message = "Listing Submitted! Pending Admin approval." if verdict.valid else "FLAGGED: Listing sent for Manual Review."
    return {"asset": saved.to_record(), "message": message}

@app.delete("/assets/{asset_id}")
def remove_asset(asset_id: str, user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    asset = repository.get_asset(store, asset_id)
    if asset and user.get("role") != "admin" and asset.owner_id != user["id"]:
        raise PermissionDenied("Not your listing")
    repository.delete_asset(store, asset_id)
    return {"ok": True}

@app.post("/assets/{asset_id}/rent")
def rent_asset(asset_id: str, payload: RentDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    tx = rentals.rent(store, asset_id, user, payload.days, to_location(payload.location))
    return tx.to_record()

@app.post("/assets/{asset_id}/purchase")
def purchase_asset(asset_id: str, payload: PurchaseDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    tx = rentals.purchase(store, asset_id, user, to_location(payload.location))
    return tx.to_record()

@app.get("/transactions/mine")
def my_transactions(user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    return {"items": records(repository.list_user_transactions(store, user["id"]))}

# ------------------ Shop & support ------------------
@app.get("/products")
def products(store: DocumentStore = Depends(get_store)):
    return {"items": records(repository.list_products(store))}

@app.post("/products/{product_id}/order")
def order_product(product_id: str, payload: ShopOrderDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    tx = rentals.create_shop_order(store, product_id, user, payload.delivery_date, to_location(payload.location), payload.notes)
    return tx.to_record()

@app.post("/tickets")
def open_ticket(payload: TicketDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    if not payload.subject.strip() or not payload.message.strip():
        raise ValidationError("Subject and message are required.")
    ticket = Supportticket(user_id=user["id"], user_name=user["name"], **payload.model_dump())
    return repository.add_ticket(store, ticket).to_record()

@app.get("/tickets/mine")
def my_tickets(user=Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    return {"items": records(t for t in repository.list_tickets(store) if t.user_id == user["id"])}

# ------------------ Health portal ------------------
@app.post("/health/chat")
def health_chat(payload: ChatTurnDTO, user=Depends(get_current_user), store: DocumentStore = Depends(get_store),
                ai: GeminiClient = Depends(get_ai)):
    if not payload.message.strip():
        raise ValidationError("Message is empty.")
    turn = handle_chat_turn(
        store, payload.history, payload.message,
        nurse_mode=payload.active_tab == "nurse",
        advisor=ai,
        active_tab=payload.active_tab,
    )
    return turn.model_dump(by_alias=True, exclude_none=True)

@app.get("/health/messages")
def nurse_log(user=Depends(nurse_or_admin), store: DocumentStore = Depends(get_store)):
    return {"items": records(repository.list_nurse_messages(store))}

@app.post("/health/messages")
def save_message(payload: NurseMessageDTO, user=Depends(nurse_or_admin), store: DocumentStore = Depends(get_store)):
    msg = repository.save_nurse_message(store, Chatmessage(**payload.model_dump()))
    return msg.to_record()

@app.delete("/health/messages/{msg_id}")
def delete_message(msg_id: str, user=Depends(nurse_or_admin), store: DocumentStore = Depends(get_store)):
    repository.delete_nurse_message(store, msg_id)
    return {"ok": True}

# ------------------ AI tools ------------------
@app.post("/ai/analyze-asset")
def analyze_asset(payload: AnalyzeDTO, user=Depends(get_current_user), ai: GeminiClient = Depends(get_ai)):
    return ai.analyze_asset(payload.image)

@app.post("/ai/edit-image")
def edit_image(payload: ImageEditDTO, user=Depends(get_current_user), ai: GeminiClient = Depends(get_ai)):
    return {"image": ai.edit_image(payload.image, payload.instruction)}

@app.post("/ai/suppliers")
def local_suppliers(payload: SupplierQueryDTO, user=Depends(get_current_user), ai: GeminiClient = Depends(get_ai)):
    return ai.find_local_suppliers(payload.query, payload.lat, payload.lng)

@app.post("/ai/video")
def marketing_video(payload: VideoDTO, user=Depends(get_current_user), ai: GeminiClient = Depends(get_ai)):
    return {"video_uri": ai.generate_video(payload.prompt, payload.image)}

# ------------------ Admin ------------------
@app.get("/admin/overview")
def admin_overview(user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    doc = store.fetch_document()
    return {
        "users": len(doc.users),
        "pending_users": len([u for u in doc.users if u.approval_status == "pending"]),
        "pending_assets": len([a for a in doc.assets if a.moderation_status == "pending"]),
        "open_transactions": len([t for t in doc.transactions if t.is_open]),
        "pending_tickets": len([t for t in doc.tickets if t.status == "pending"]),
        "revenue": sum(t.total_cost for t in doc.transactions if t.status not in ("disputed", "pending_approval")),
    }

@app.get("/admin/users")
def admin_users(user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return {"items": repository.list_users(store)}

@app.post("/admin/users/{user_id}/approval")
def admin_set_approval(user_id: str, payload: ApprovalDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return accounts.set_approval(store, user_id, payload.status)

@app.post("/admin/users/{user_id}/role")
def admin_set_role(user_id: str, payload: RoleDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return accounts.set_role(store, user_id, payload.role)

@app.post("/admin/users/{user_id}/verify")
def admin_verify(user_id: str, payload: VerifyDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return accounts.verify_user(store, user_id, payload.verified)

@app.get("/admin/assets")
def admin_assets(moderation: Optional[Literal["pending", "approved", "rejected"]] = None,
                 user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    items = repository.list_assets(store)
    if moderation:
        items = [a for a in items if a.moderation_status == moderation]
    return {"items": records(items)}

@app.put("/admin/assets/{asset_id}")
def admin_update_asset(asset_id: str, payload: AssetUpdateDTO, user=Depends(admin_only),
                       store: DocumentStore = Depends(get_store)):
    asset = repository.get_asset(store, asset_id)
    if asset is None:
        raise NotFound("Asset", asset_id)
    changes = payload.model_dump(exclude_none=True)
    return repository.update_asset(store, Asset.model_validate({**asset.model_dump(), **changes})).to_record()

@app.post("/admin/assets/{asset_id}/moderation")
def admin_moderate(asset_id: str, payload: ModerationDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return repository.set_asset_moderation(store, asset_id, payload.status, payload.reason).to_record()

@app.get("/admin/transactions")
def admin_transactions(status: Optional[str] = None, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    items = repository.list_transactions(store)
    if status:
        items = [t for t in items if t.status == status]
    return {"items": records(items)}

@app.post("/admin/transactions/{tx_id}/status")
def admin_transaction_status(tx_id: str, payload: TransactionStatusDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return rentals.update_transaction_status(store, tx_id, payload.status).to_record()

@app.put("/admin/products")
def admin_save_product(payload: ProductDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    product = Product(**payload.model_dump(exclude_none=True))
    return repository.save_product(store, product).to_record()

@app.delete("/admin/products/{product_id}")
def admin_delete_product(product_id: str, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    repository.delete_product(store, product_id)
    return {"ok": True}

@app.get("/admin/tickets")
def admin_tickets(user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return {"items": records(repository.list_tickets(store))}

@app.post("/admin/tickets/{ticket_id}/reply")
def admin_reply(ticket_id: str, payload: ReplyDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    return repository.reply_ticket(store, ticket_id, payload.reply).to_record()

@app.put("/admin/settings")
def admin_save_settings(payload: SettingsDTO, user=Depends(admin_only), store: DocumentStore = Depends(get_store)):
    settings = repository.save_settings(store, Appsettings(**payload.model_dump()))
    record = settings.to_record()
    record.pop("geminiApiKey", None)
    return record

# --------------- Run ---------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", PORT)))
