from decimal import Decimal

import pytest
from bson import ObjectId
from bson.decimal128 import Decimal128
from pydantic import ValidationError

import catalog
import config
from catalog import KeyedLocks
from errors import Forbidden, InsufficientStock, ProductNotFound, ServiceUnavailable, ValidationFailed
from schemas import MAX_UNITS, PLACEHOLDER_IMAGE, Category, ProductCreate, ProductUpdate


def _product_payload(**overrides):
    defaults = {
        "name": "Desk Lamp",
        "description": "Adjustable LED desk lamp",
        "price": "10.00",
        "category": "Home & Garden",
        "stock": 5,
    }
    defaults.update(overrides)
    return defaults


class TestProductPayload:
    def test_trims_and_defaults(self):
        product = ProductCreate(**_product_payload(name="  Desk Lamp  "))
        assert product.name == "Desk Lamp"
        assert product.category is Category.HOME_GARDEN
        assert product.is_active is True
        assert product.image_url is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"price": "-1"},
            {"price": "1.999"},
            {"stock": -1},
            {"stock": MAX_UNITS + 1},
            {"stock": 10**20},
            {"name": ""},
            {"name": "x" * 101},
            {"category": "Weapons"},
        ],
    )
    def test_rejects_bad_fields(self, overrides):
        with pytest.raises(ValidationError):
            ProductCreate(**_product_payload(**overrides))

    @pytest.mark.parametrize("stock", [-1, MAX_UNITS + 1, 10**20])
    def test_update_rejects_out_of_range_stock(self, stock):
        with pytest.raises(ValidationError):
            ProductUpdate(stock=stock)

    def test_accepts_largest_stock(self):
        assert ProductCreate(**_product_payload(stock=MAX_UNITS)).stock == MAX_UNITS


class TestProductManagement:
    def test_create(self, db, seller, make_product):
        product = make_product(seller)
        assert product.owner_id == seller.id
        assert product.price == Decimal("10.00")
        assert product.stock == 5
        assert product.image_url == PLACEHOLDER_IMAGE

        stored = db["product"].find_one({"_id": ObjectId(product.id)})
        assert isinstance(stored["price"], Decimal128)
        assert stored["category"] == "Home & Garden"

    def test_list_own_products_newest_first(self, db, seller, buyer, make_product):
        first = make_product(seller, name="First")
        second = make_product(seller, name="Second")
        make_product(buyer, name="Not mine")

        listed = catalog.list_own_products(db, seller)
        assert [p.id for p in listed] == [second.id, first.id]

    def test_non_owner_may_read(self, db, seller, buyer, make_product):
        product = make_product(seller)
        assert catalog.get_product(db, buyer, product.id).name == "Desk Lamp"

    @pytest.mark.parametrize("product_id", ["not-an-id", str(ObjectId())])
    def test_missing_product(self, db, buyer, product_id):
        with pytest.raises(ProductNotFound):
            catalog.get_product(db, buyer, product_id)

    def test_partial_update_by_owner(self, db, seller, make_product):
        product = make_product(seller)
        updated = catalog.update_product(db, seller, product.id, ProductUpdate(price="12.50", stock=0))
        assert updated.price == Decimal("12.50")
        assert updated.stock == 0
        assert updated.name == "Desk Lamp"

    def test_empty_update(self, db, seller, make_product):
        product = make_product(seller)
        assert catalog.update_product(db, seller, product.id, ProductUpdate()).price == Decimal("10.00")

    def test_non_owner_cannot_update(self, db, seller, buyer, make_product, stock_of):
        product = make_product(seller)
        with pytest.raises(Forbidden):
            catalog.update_product(db, buyer, product.id, ProductUpdate(stock=100))
        assert stock_of(product.id) == 5

    def test_delete_by_owner(self, db, seller, make_product):
        product = make_product(seller)
        catalog.delete_product(db, seller, product.id)
        with pytest.raises(ProductNotFound):
            catalog.get_product(db, seller, product.id)

    def test_non_owner_cannot_delete(self, db, seller, buyer, make_product):
        product = make_product(seller)
        with pytest.raises(Forbidden):
            catalog.delete_product(db, buyer, product.id)
        assert catalog.get_product(db, seller, product.id).id == product.id


class TestShopView:
    def test_lists_buyable_products_of_others(self, db, seller, buyer, make_product):
        listed = make_product(seller, name="Listed")
        make_product(seller, name="Sold out", stock=0)
        make_product(seller, name="Hidden", is_active=False)
        make_product(buyer, name="My own")

        shop = catalog.shop_view(db, buyer)
        assert [p.id for p in shop] == [listed.id]
        assert shop[0].seller.username == "seller"
        assert shop[0].seller.id == seller.id

    def test_owner_sees_other_listings_only(self, db, seller, buyer, make_product):
        make_product(seller)
        assert catalog.shop_view(db, seller) == []
        assert len(catalog.shop_view(db, buyer)) == 1


class TestStockPrimitives:
    def test_reserve_returns_post_decrement_document(self, db, seller, make_product, stock_of):
        product = make_product(seller)
        doc = catalog.reserve_stock(db, product.id, 3)
        assert doc["stock"] == 2
        assert stock_of(product.id) == 2

    def test_reserve_down_to_zero(self, db, seller, make_product, stock_of):
        product = make_product(seller)
        catalog.reserve_stock(db, product.id, 5)
        with pytest.raises(InsufficientStock) as exc:
            catalog.reserve_stock(db, product.id, 1)
        assert (exc.value.available, exc.value.requested) == (0, 1)
        assert stock_of(product.id) == 0

    def test_reserve_more_than_available(self, db, seller, make_product, stock_of):
        product = make_product(seller)
        with pytest.raises(InsufficientStock) as exc:
            catalog.reserve_stock(db, product.id, 6)
        assert exc.value.details == {"product_id": product.id, "available": 5, "requested": 6}
        assert stock_of(product.id) == 5

    def test_reserve_inactive(self, db, seller, make_product, stock_of):
        product = make_product(seller, is_active=False)
        with pytest.raises(ValidationFailed):
            catalog.reserve_stock(db, product.id, 1)
        assert stock_of(product.id) == 5

    @pytest.mark.parametrize("product_id", ["bogus", str(ObjectId())])
    def test_reserve_missing(self, db, product_id):
        with pytest.raises(ProductNotFound):
            catalog.reserve_stock(db, product_id, 1)

    def test_release(self, db, seller, make_product, stock_of):
        product = make_product(seller)
        catalog.reserve_stock(db, product.id, 4)
        assert catalog.release_stock(db, product.id, 4) is True
        assert stock_of(product.id) == 5

    def test_release_deleted_product(self, db, seller, make_product):
        product = make_product(seller)
        catalog.delete_product(db, seller, product.id)
        assert catalog.release_stock(db, product.id, 1) is False

    def test_locks_are_dropped_after_use(self, db, seller, make_product):
        product = make_product(seller)
        catalog.reserve_stock(db, product.id, 1)
        catalog.release_stock(db, product.id, 1)
        assert len(catalog.stock_locks) == 0


class TestKeyedLocks:
    def test_entry_removed_when_released(self):
        locks = KeyedLocks()
        with locks.hold("a", timeout=1):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_independent_keys(self):
        locks = KeyedLocks()
        with locks.hold("a", timeout=1):
            with locks.hold("b", timeout=1):
                assert len(locks) == 2

    def test_timeout(self):
        locks = KeyedLocks()
        with locks.hold("a", timeout=1):
            with pytest.raises(ServiceUnavailable):
                with locks.hold("a", timeout=0.01):
                    pass
            assert len(locks) == 1
        assert len(locks) == 0


class TestStockLockKeys:
    def test_id_casing_shares_one_lock(self, db, seller, make_product, stock_of, monkeypatch):
        product = make_product(seller)
        monkeypatch.setattr(config, "STOCK_LOCK_TIMEOUT", 0.01)
        with catalog.stock_locks.hold(product.id, timeout=1):
            with pytest.raises(ServiceUnavailable):
                catalog.reserve_stock(db, product.id.upper(), 1)
        assert stock_of(product.id) == 5

    def test_upper_case_id_reserves_and_releases(self, db, seller, make_product, stock_of):
        product = make_product(seller)
        catalog.reserve_stock(db, product.id.upper(), 2)
        catalog.release_stock(db, product.id.upper(), 1)
        assert stock_of(product.id) == 4
        assert len(catalog.stock_locks) == 0

    def test_release_malformed_id(self, db):
        assert catalog.release_stock(db, "bogus", 1) is False
