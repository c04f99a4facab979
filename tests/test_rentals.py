"""
Rental, purchase and shop-order lifecycle.
"""
import pytest

import rentals
import repository
from errors import AssetUnavailable, InvalidTransition, NotFound, ValidationError
from schemas import Asset, Chatmessage, Product, Transaction, parse_iso

RENTER = {"id": "renter-1", "name": "Wanjiku"}
BUYER = {"id": "buyer-1", "name": "Achieng"}


@pytest.fixture
def bike(store):
    return repository.add_asset(
        store, Asset(id="bike-1", name="Bike", daily_rate=100, owner_id="owner-1"), "approved"
    )


@pytest.fixture
def sofa(store):
    return repository.add_asset(
        store, Asset(id="sofa-1", name="Sofa", listing_type="sale", sale_price=12000, owner_id="owner-1"), "approved"
    )


def asset_status(store, asset_id):
    return repository.get_asset(store, asset_id).status


class TestRent:
    @pytest.mark.parametrize("days", [1, 3, 14])
    def test_available_asset_creates_one_pending_transaction(self, store, bike, days):
        tx = rentals.rent(store, "bike-1", RENTER, days)

        assert tx.status == "pending_approval"
        assert tx.total_cost == 100 * days
        assert tx.deposit_held is True
        assert tx.owner_id == "owner-1"
        assert tx.asset_name == "Bike"
        assert tx.renter_name == "Wanjiku"
        assert (parse_iso(tx.end_date) - parse_iso(tx.start_date)).days == days
        assert asset_status(store, "bike-1") == "rented"
        assert len(repository.list_transactions(store)) == 1

    @pytest.mark.parametrize("status", ["rented", "sold", "maintenance"])
    def test_unavailable_asset_is_left_untouched(self, store, fake_bin, bike, status):
        repository.update_asset(store, bike.model_copy(update={"status": status}))
        writes = len(fake_bin.puts)

        with pytest.raises(AssetUnavailable):
            rentals.rent(store, "bike-1", RENTER, 2)

        assert repository.list_transactions(store) == []
        assert asset_status(store, "bike-1") == status
        assert len(fake_bin.puts) == writes

    def test_second_rental_is_refused(self, store, bike):
        rentals.rent(store, "bike-1", RENTER, 2)
        with pytest.raises(AssetUnavailable):
            rentals.rent(store, "bike-1", BUYER, 2)
        assert len(repository.list_transactions(store)) == 1

    def test_open_transaction_blocks_even_if_status_says_available(self, store, bike):
        """One open transaction per asset, whatever the asset status field claims"""
        store.mutate(lambda doc: doc.transactions.append(Transaction(
            asset_id="bike-1", asset_name="Bike", renter_id="x", renter_name="X", status="active")))

        with pytest.raises(AssetUnavailable):
            rentals.rent(store, "bike-1", RENTER, 1)

    @pytest.mark.parametrize("days", [0, -3])
    def test_days_must_be_positive(self, store, bike, days):
        with pytest.raises(ValidationError):
            rentals.rent(store, "bike-1", RENTER, days)

    def test_sale_listing_cannot_be_rented(self, store, sofa):
        with pytest.raises(ValidationError):
            rentals.rent(store, "sofa-1", RENTER, 1)
        assert asset_status(store, "sofa-1") == "available"

    def test_missing_asset(self, store):
        with pytest.raises(NotFound):
            rentals.rent(store, "ghost", RENTER, 1)


class TestPurchase:
    def test_purchase_marks_sold(self, store, sofa):
        tx = rentals.purchase(store, "sofa-1", BUYER)

        assert tx.total_cost == 12000
        assert tx.transaction_type == "sale"
        assert tx.deposit_held is False
        assert asset_status(store, "sofa-1") == "sold"

    def test_rent_listing_cannot_be_bought(self, store, bike):
        with pytest.raises(ValidationError):
            rentals.purchase(store, "bike-1", BUYER)


class TestTransitions:
    def test_happy_path(self, store, bike):
        tx = rentals.rent(store, "bike-1", RENTER, 3)

        assert rentals.dispatch(store, tx.id).status == "in_transit"
        assert rentals.confirm_delivery(store, tx.id).status == "active"
        returned = rentals.process_return(store, tx.id)

        assert returned.status == "returned"
        assert returned.deposit_held is False
        assert returned.end_date
        assert asset_status(store, "bike-1") == "available"

    @pytest.mark.parametrize("path", [
        [],
        ["in_transit"],
        ["in_transit", "active"],
        ["disputed"],
        ["in_transit", "active", "disputed"],
    ])
    def test_return_always_frees_the_asset(self, store, bike, path):
        """Return reverts availability from any prior status"""
        tx = rentals.rent(store, "bike-1", RENTER, 3)
        for status in path:
            rentals.update_transaction_status(store, tx.id, status)

        returned = rentals.process_return(store, tx.id)

        assert returned.deposit_held is False
        assert asset_status(store, "bike-1") == "available"

    @pytest.mark.parametrize("path,target", [
        ([], "active"),
        (["in_transit"], "in_transit"),
        (["in_transit", "active"], "in_transit"),
        (["disputed"], "disputed"),
        (["returned"], "returned"),
        (["returned"], "disputed"),
        (["returned"], "in_transit"),
        ([], "pending_approval"),
    ])
    def test_illegal_transitions(self, store, bike, path, target):
        tx = rentals.rent(store, "bike-1", RENTER, 3)
        for status in path:
            rentals.update_transaction_status(store, tx.id, status)

        with pytest.raises(InvalidTransition):
            rentals.update_transaction_status(store, tx.id, target)

    def test_returned_asset_can_be_rented_again(self, store, bike):
        tx = rentals.rent(store, "bike-1", RENTER, 1)
        rentals.process_return(store, tx.id)

        again = rentals.rent(store, "bike-1", BUYER, 2)
        assert again.total_cost == 200

    def test_missing_transaction(self, store):
        with pytest.raises(NotFound):
            rentals.dispatch(store, "missing")


class TestShopOrders:
    def test_order_decrements_stock(self, store):
        repository.save_product(store, Product(id="p1", name="Pads", price=150, stock=1))
        tx = rentals.create_shop_order(store, "p1", BUYER, "2025-06-01T09:00:00Z")

        assert tx.owner_id == rentals.SHOP_OWNER_ID
        assert tx.total_cost == 150
        assert tx.start_date == "2025-06-01T09:00:00Z"
        assert repository.list_products(store)[0].stock == 0

        with pytest.raises(ValidationError, match="out of stock"):
            rentals.create_shop_order(store, "p1", BUYER)

    def test_returning_a_shop_order(self, store):
        repository.save_product(store, Product(id="p1", name="Pads", price=150, stock=3))
        tx = rentals.create_shop_order(store, "p1", BUYER)

        assert rentals.process_return(store, tx.id).status == "returned"


class TestDashboardStats:
    def test_stats(self, store, bike, sofa):
        rental = rentals.rent(store, "bike-1", RENTER, 2)
        rentals.dispatch(store, rental.id)
        rentals.purchase(store, "sofa-1", RENTER)
        repository.save_nurse_message(store, Chatmessage(role="nurse", text="log"))

        owner = rentals.dashboard_stats(store, "owner-1")
        renter = rentals.dashboard_stats(store, "renter-1")

        assert owner["earnings"] == 200
        assert renter["spending"] == 12200
        assert renter["active_rentals"] == 1
        assert renter["nurse_logs"] == 1


class TestDisputes:
    def test_dispute_keeps_asset_out_of_circulation(self, store, bike):
        tx = rentals.rent(store, "bike-1", RENTER, 2)
        disputed = rentals.flag_dispute(store, tx.id)

        assert disputed.status == "disputed"
        assert disputed.deposit_held is True
        assert asset_status(store, "bike-1") == "rented"
