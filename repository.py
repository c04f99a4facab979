"""
Entity collection operations.

Reads fetch the whole document and project one collection. Writes run inside
DocumentStore.mutate: load, locate by id, change in memory, save. Any update,
status change or delete aimed at an id that is not stored raises NotFound.
"""
import logging
from typing import List, Optional, Dict, Any, TypeVar, Sequence

from database import DocumentStore
from errors import NotFound, InvalidTransition
from schemas import (
    Hubdocument, User, Asset, Transaction, Chatmessage, Product, Supportticket, Appsettings,
    parse_iso,
)

logger = logging.getLogger(__name__)

M = TypeVar("M")


def _index_of(items: Sequence[Any], item_id: str) -> int:
    for i, item in enumerate(items):
        if item.id == item_id:
            return i
    return -1


def _require(items: Sequence[M], item_id: str, kind: str) -> M:
    idx = _index_of(items, item_id)
    if idx < 0:
        raise NotFound(kind, item_id)
    return items[idx]


def find_asset(doc: Hubdocument, asset_id: str) -> Asset:
    return _require(doc.assets, asset_id, "Asset")


def find_user(doc: Hubdocument, user_id: str) -> User:
    return _require(doc.users, user_id, "User")


def find_transaction(doc: Hubdocument, tx_id: str) -> Transaction:
    return _require(doc.transactions, tx_id, "Transaction")


# ------------------ Users ------------------
def list_users(store: DocumentStore) -> List[Dict[str, Any]]:
    return [u.public() for u in store.fetch_document().users]


def get_user(store: DocumentStore, user_id: str) -> Optional[User]:
    for u in store.fetch_document().users:
        if u.id == user_id:
            return u
    return None


def find_user_by_email(doc: Hubdocument, email: str) -> Optional[User]:
    needle = (email or "").strip().lower()
    for u in doc.users:
        if u.email.lower() == needle:
            return u
    return None


def add_user(store: DocumentStore, user: User) -> User:
    def apply(doc: Hubdocument) -> User:
        doc.users.append(user)
        return user
    return store.mutate(apply)


def update_user(store: DocumentStore, user: User) -> User:
    """Replace the stored user; the stored credential always survives the replace."""
    def apply(doc: Hubdocument) -> User:
        idx = _index_of(doc.users, user.id)
        if idx < 0:
            raise NotFound("User", user.id)
        merged = user.model_copy(update={"password_hash": doc.users[idx].password_hash})
        doc.users[idx] = merged
        return merged
    return store.mutate(apply)


def set_user_fields(store: DocumentStore, user_id: str, **fields: Any) -> User:
    fields.pop("password_hash", None)

    def apply(doc: Hubdocument) -> User:
        user = find_user(doc, user_id)
        for key, value in fields.items():
            setattr(user, key, value)
        return user
    return store.mutate(apply)


# ------------------ Assets ------------------
def list_assets(store: DocumentStore) -> List[Asset]:
    return store.fetch_document().assets


def list_marketplace_assets(store: DocumentStore, sort: str = "newest") -> List[Asset]:
    """Only moderation-approved assets are visible to renters and buyers."""
    items = [a for a in store.fetch_document().assets if a.moderation_status == "approved"]
    if sort == "price-asc":
        items.sort(key=lambda a: a.daily_rate)
    elif sort == "price-desc":
        items.sort(key=lambda a: a.daily_rate, reverse=True)
    else:
        items.sort(key=lambda a: a.id, reverse=True)  # ids start with a timestamp
    return items


def list_owner_assets(store: DocumentStore, owner_id: str) -> List[Asset]:
    return [a for a in store.fetch_document().assets if a.owner_id == owner_id]


def get_asset(store: DocumentStore, asset_id: str) -> Optional[Asset]:
    for a in store.fetch_document().assets:
        if a.id == asset_id:
            return a
    return None


def add_asset(store: DocumentStore, asset: Asset, moderation_status: Optional[str] = None) -> Asset:
    """New listings always wait for review unless a status (e.g. an AI rejection) is given explicitly."""
    asset = asset.model_copy(update={"moderation_status": moderation_status or "pending"})

    def apply(doc: Hubdocument) -> Asset:
        doc.assets.append(asset)
        return asset
    return store.mutate(apply)


def update_asset(store: DocumentStore, asset: Asset) -> Asset:
    def apply(doc: Hubdocument) -> Asset:
        idx = _index_of(doc.assets, asset.id)
        if idx < 0:
            raise NotFound("Asset", asset.id)
        doc.assets[idx] = asset
        return asset
    return store.mutate(apply)


def set_asset_moderation(store: DocumentStore, asset_id: str, status: str, reason: Optional[str] = None) -> Asset:
    def apply(doc: Hubdocument) -> Asset:
        asset = find_asset(doc, asset_id)
        asset.moderation_status = status
        if status == "rejected":
            asset.rejection_reason = reason
        return asset
    asset = store.mutate(apply)
    logger.info("Asset %s moderation -> %s", asset_id, status)
    return asset


def delete_asset(store: DocumentStore, asset_id: str) -> None:
    def apply(doc: Hubdocument) -> None:
        find_asset(doc, asset_id)
        doc.assets = [a for a in doc.assets if a.id != asset_id]
    store.mutate(apply)


# ------------------ Transactions ------------------
def list_transactions(store: DocumentStore) -> List[Transaction]:
    return sorted(store.fetch_document().transactions, key=lambda t: parse_iso(t.start_date), reverse=True)


def list_user_transactions(store: DocumentStore, user_id: str) -> List[Transaction]:
    return [t for t in list_transactions(store) if user_id in (t.renter_id, t.owner_id)]


# ------------------ Nurse log ------------------
def list_nurse_messages(store: DocumentStore) -> List[Chatmessage]:
    return store.fetch_document().nurse_messages


def save_nurse_message(store: DocumentStore, msg: Chatmessage) -> Chatmessage:
    msg = msg.model_copy(update={"is_saved": True})

    def apply(doc: Hubdocument) -> Chatmessage:
        doc.nurse_messages.append(msg)
        return msg
    return store.mutate(apply)


def delete_nurse_message(store: DocumentStore, msg_id: str) -> None:
    def apply(doc: Hubdocument) -> None:
        _require(doc.nurse_messages, msg_id, "Message")
        doc.nurse_messages = [m for m in doc.nurse_messages if m.id != msg_id]
    store.mutate(apply)


# ------------------ Products ------------------
def list_products(store: DocumentStore) -> List[Product]:
    return store.fetch_document().products


def save_product(store: DocumentStore, product: Product) -> Product:
    def apply(doc: Hubdocument) -> Product:
        idx = _index_of(doc.products, product.id)
        if idx >= 0:
            doc.products[idx] = product
        else:
            doc.products.append(product)
        return product
    return store.mutate(apply)


def delete_product(store: DocumentStore, product_id: str) -> None:
    def apply(doc: Hubdocument) -> None:
        _require(doc.products, product_id, "Product")
        doc.products = [p for p in doc.products if p.id != product_id]
    store.mutate(apply)


# ------------------ Support tickets ------------------
def list_tickets(store: DocumentStore) -> List[Supportticket]:
    return sorted(store.fetch_document().tickets, key=lambda t: parse_iso(t.created_at), reverse=True)


def add_ticket(store: DocumentStore, ticket: Supportticket) -> Supportticket:
    def apply(doc: Hubdocument) -> Supportticket:
        doc.tickets.append(ticket)
        return ticket
    return store.mutate(apply)


def update_ticket(store: DocumentStore, ticket: Supportticket) -> Supportticket:
    def apply(doc: Hubdocument) -> Supportticket:
        idx = _index_of(doc.tickets, ticket.id)
        if idx < 0:
            raise NotFound("Ticket", ticket.id)
        doc.tickets[idx] = ticket
        return ticket
    return store.mutate(apply)


def reply_ticket(store: DocumentStore, ticket_id: str, reply: str) -> Supportticket:
    """pending -> resolved, once. There is no reopen path."""
    def apply(doc: Hubdocument) -> Supportticket:
        ticket = _require(doc.tickets, ticket_id, "Ticket")
        if ticket.status == "resolved":
            raise InvalidTransition("Ticket is already resolved")
        ticket.admin_reply = reply
        ticket.status = "resolved"
        return ticket
    return store.mutate(apply)


# ------------------ Settings ------------------
def get_settings(store: DocumentStore) -> Appsettings:
    return store.fetch_document().settings


def save_settings(store: DocumentStore, settings: Appsettings) -> Appsettings:
    def apply(doc: Hubdocument) -> Appsettings:
        doc.settings = settings
        return settings
    return store.mutate(apply)
