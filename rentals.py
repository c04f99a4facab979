"""
Rental and purchase lifecycle.

Asset:       available -> rented | sold, back to available when returned.
Transaction: pending_approval -> in_transit -> active -> returned,
             disputed from any open state, returned from any state but itself.

The availability check and the writes run inside one DocumentStore.mutate
cycle, so at most one open transaction exists per asset.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from database import DocumentStore
from errors import ValidationError, AssetUnavailable, InvalidTransition, NotFound
from repository import find_asset, find_transaction
from schemas import Hubdocument, Transaction, Location, now_iso

logger = logging.getLogger(__name__)

SHOP_OWNER_ID = "SYSTEM_SHOP"

# target status -> statuses it may be entered from
TRANSITIONS = {
    "in_transit": ("pending_approval",),
    "active": ("in_transit",),
    "disputed": ("pending_approval", "in_transit", "active"),
    "returned": ("pending_approval", "in_transit", "active", "disputed"),
}


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _ensure_available(doc: Hubdocument, asset_id: str):
    asset = find_asset(doc, asset_id)
    if asset.status != "available":
        raise AssetUnavailable(f"{asset.name} is not available ({asset.status}).")
    if any(t.asset_id == asset_id and t.is_open for t in doc.transactions):
        raise AssetUnavailable(f"{asset.name} already has an open transaction.")
    return asset


def rent(store: DocumentStore, asset_id: str, renter: Dict[str, Any], days: int, location: Optional[Location] = None) -> Transaction:
    if days is None or days < 1:
        raise ValidationError("Rental period must be at least 1 day.")

    def apply(doc: Hubdocument) -> Transaction:
        asset = _ensure_available(doc, asset_id)
        if asset.listing_type != "rent":
            raise ValidationError(f"{asset.name} is listed for sale, not rent.")
        start = datetime.now(timezone.utc)
        asset.status = "rented"
        tx = Transaction(
            asset_id=asset.id,
            asset_name=asset.name,
            renter_id=renter["id"],
            renter_name=renter["name"],
            start_date=_iso(start),
            end_date=_iso(start + timedelta(days=days)),
            total_cost=asset.daily_rate * days,
            status="pending_approval",
            deposit_held=True,
            owner_id=asset.owner_id,
            transaction_type="rent",
            delivery_location=location,
            delivery_notes="Asset Rental Delivery",
        )
        doc.transactions.append(tx)
        return tx

    tx = store.mutate(apply)
    logger.info("Asset %s rented by %s for %s days (tx %s)", asset_id, renter["id"], days, tx.id)
    return tx


def purchase(store: DocumentStore, asset_id: str, buyer: Dict[str, Any], location: Optional[Location] = None) -> Transaction:
    def apply(doc: Hubdocument) -> Transaction:
        asset = _ensure_available(doc, asset_id)
        if asset.listing_type != "sale" or asset.sale_price is None:
            raise ValidationError(f"{asset.name} is not for sale.")
        asset.status = "sold"
        tx = Transaction(
            asset_id=asset.id,
            asset_name=asset.name,
            renter_id=buyer["id"],
            renter_name=buyer["name"],
            total_cost=asset.sale_price,
            status="pending_approval",
            deposit_held=False,
            owner_id=asset.owner_id,
            transaction_type="sale",
            delivery_location=location,
            delivery_notes="Asset Sale Delivery",
        )
        doc.transactions.append(tx)
        return tx

    tx = store.mutate(apply)
    logger.info("Asset %s sold to %s (tx %s)", asset_id, buyer["id"], tx.id)
    return tx


def create_shop_order(
    store: DocumentStore,
    product_id: str,
    buyer: Dict[str, Any],
    delivery_date: Optional[str] = None,
    location: Optional[Location] = None,
    notes: Optional[str] = None,
) -> Transaction:
    def apply(doc: Hubdocument) -> Transaction:
        product = next((p for p in doc.products if p.id == product_id), None)
        if product is None:
            raise NotFound("Product", product_id)
        if product.stock < 1:
            raise ValidationError(f"{product.name} is out of stock.")
        product.stock -= 1
        tx = Transaction(
            asset_id=product.id,
            asset_name=product.name,
            renter_id=buyer["id"],
            renter_name=buyer["name"],
            start_date=delivery_date or now_iso(),
            total_cost=product.price,
            status="pending_approval",
            deposit_held=False,
            owner_id=SHOP_OWNER_ID,
            transaction_type="shop",
            delivery_location=location,
            delivery_notes=notes or "Standard Shop Delivery",
        )
        doc.transactions.append(tx)
        return tx

    return store.mutate(apply)


def update_transaction_status(store: DocumentStore, tx_id: str, status: str) -> Transaction:
    allowed_from = TRANSITIONS.get(status)
    if allowed_from is None:
        raise InvalidTransition(f"Cannot move a transaction to {status}.")

    def apply(doc: Hubdocument) -> Transaction:
        tx = find_transaction(doc, tx_id)
        if tx.status not in allowed_from:
            raise InvalidTransition(f"Cannot move a transaction from {tx.status} to {status}.")
        tx.status = status
        if status == "returned":
            tx.end_date = now_iso()
            tx.deposit_held = False
            # Shop orders reference a product id, which has no asset to free.
            for asset in doc.assets:
                if asset.id == tx.asset_id:
                    asset.status = "available"
        return tx

    tx = store.mutate(apply)
    logger.info("Transaction %s -> %s", tx_id, status)
    return tx


def dispatch(store: DocumentStore, tx_id: str) -> Transaction:
    return update_transaction_status(store, tx_id, "in_transit")


def confirm_delivery(store: DocumentStore, tx_id: str) -> Transaction:
    return update_transaction_status(store, tx_id, "active")


def process_return(store: DocumentStore, tx_id: str) -> Transaction:
    return update_transaction_status(store, tx_id, "returned")


def flag_dispute(store: DocumentStore, tx_id: str) -> Transaction:
    return update_transaction_status(store, tx_id, "disputed")


def dashboard_stats(store: DocumentStore, user_id: str) -> Dict[str, Any]:
    doc = store.fetch_document()
    txs = doc.transactions
    earnings = sum(
        t.total_cost for t in txs
        if t.owner_id == user_id and t.status not in ("disputed", "pending_approval")
    )
    spending = sum(t.total_cost for t in txs if t.renter_id == user_id)
    active = len([t for t in txs if t.renter_id == user_id and t.status in ("active", "in_transit")])
    return {
        "earnings": earnings,
        "spending": spending,
        "active_rentals": active,
        "nurse_logs": len(doc.nurse_messages),
    }
