import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

from cart import CartService
from errors import EmptyCart, InsufficientStock, InvalidTransition, OrderNotFound
from orders import OrderService
from stock import StockLedger

ADDRESS = "42 Long Street, Springfield"


@pytest.fixture
def carts(db):
    return CartService(db)


@pytest.fixture
def orders(db, clock):
    return OrderService(db, clock=clock)


@pytest.fixture
def user_id():
    return ObjectId()


def checkout(orders, user_id):
    return orders.create_from_cart(user_id, ADDRESS, "pix")


def test_checkout_then_cancel_round_trip(orders, carts, make_product, stock_of, user_id):
    pid = make_product(price=12.5, stock=5)
    carts.add_item(user_id, pid, 3)

    order = checkout(orders, user_id)
    assert stock_of(pid) == 2
    assert order["status"] == "pending"
    assert order["items"][0]["unit_price"] == 12.5
    assert order["items"][0]["quantity"] == 3
    assert order["total_amount"] == 37.5

    cancelled = orders.cancel(order["id"])
    assert cancelled["status"] == "cancelled"
    assert stock_of(pid) == 5


def test_checkout_empties_cart_but_keeps_it(orders, carts, db, make_product, user_id):
    carts.add_item(user_id, make_product(), 1)
    cart_id = carts.get_or_create_cart(user_id)["id"]
    checkout(orders, user_id)
    after = carts.get_or_create_cart(user_id)
    assert after["id"] == cart_id
    assert after["items"] == []


def test_empty_cart(orders, carts, user_id):
    with pytest.raises(EmptyCart):
        checkout(orders, user_id)
    carts.get_or_create_cart(user_id)
    with pytest.raises(EmptyCart):
        checkout(orders, user_id)


def test_insufficient_stock_aborts_whole_checkout(orders, carts, db, make_product, stock_of, user_id):
    a = make_product(name="A", stock=1)
    b = make_product(name="B", stock=1)
    carts.add_item(user_id, a, 1)
    carts.add_item(user_id, b, 1)
    StockLedger(db).set_stock(b, 0)

    with pytest.raises(InsufficientStock) as exc:
        checkout(orders, user_id)
    assert exc.value.product_name == "B"
    assert stock_of(a) == 1
    assert stock_of(b) == 0
    assert db["order"].count_documents({}) == 0
    assert carts.summary(user_id)["item_count"] == 2


class LosingRaceLedger(StockLedger):
    """Loses the race for one product after the pre-check has passed."""

    def __init__(self, database, contested):
        super().__init__(database)
        self.contested = contested

    def reserve(self, product_id, quantity):
        if product_id == self.contested:
            raise InsufficientStock("contested")
        return super().reserve(product_id, quantity)


def test_failed_reservation_releases_earlier_lines(db, carts, clock, make_product, stock_of, user_id):
    a = make_product(name="A", stock=4)
    b = make_product(name="B", stock=4)
    carts.add_item(user_id, a, 2)
    carts.add_item(user_id, b, 2)
    orders = OrderService(db, LosingRaceLedger(db, b), clock=clock)

    with pytest.raises(InsufficientStock):
        checkout(orders, user_id)
    assert stock_of(a) == 4
    assert stock_of(b) == 4
    assert db["order"].count_documents({}) == 0


class CartGrowingLedger(StockLedger):
    """Adds another product to the shopper's cart while checkout is reserving."""

    def __init__(self, database, user_id, extra_product):
        super().__init__(database)
        self.carts = CartService(database)
        self.user_id = user_id
        self.extra_product = extra_product

    def reserve(self, product_id, quantity):
        if self.extra_product is not None:
            self.carts.add_item(self.user_id, self.extra_product, 1)
            self.extra_product = None
        return super().reserve(product_id, quantity)


def test_checkout_keeps_lines_added_meanwhile(db, carts, clock, make_product, stock_of, user_id):
    a = make_product(name="A", stock=5)
    b = make_product(name="B", stock=5)
    carts.add_item(user_id, a, 1)
    orders = OrderService(db, CartGrowingLedger(db, user_id, b), clock=clock)

    order = checkout(orders, user_id)
    assert [item["name"] for item in order["items"]] == ["A"]
    remaining = carts.summary(user_id)["items"]
    assert [line["product"]["name"] for line in remaining] == ["B"]
    assert stock_of(b) == 5


class FailingReleaseLedger(StockLedger):
    """The database drops out while stock for one product is being returned."""

    def __init__(self, database, failing):
        super().__init__(database)
        self.failing = failing

    def release(self, product_id, quantity):
        if product_id == self.failing:
            raise ServerSelectionTimeoutError("no servers available")
        return super().release(product_id, quantity)


def test_failed_release_leaves_order_cancellable(db, carts, clock, make_product, stock_of, user_id):
    a = make_product(name="A", stock=5)
    b = make_product(name="B", stock=5)
    carts.add_item(user_id, a, 2)
    carts.add_item(user_id, b, 2)
    order = checkout(OrderService(db, clock=clock), user_id)

    flaky = OrderService(db, FailingReleaseLedger(db, b), clock=clock)
    with pytest.raises(PyMongoError):
        flaky.cancel(order["id"])
    assert stock_of(a) == 3
    assert stock_of(b) == 3
    assert flaky.get(order["id"])["status"] == "pending"

    OrderService(db, clock=clock).cancel(order["id"])
    assert stock_of(a) == 5
    assert stock_of(b) == 5


def test_total_is_frozen_at_checkout(orders, carts, db, make_product, user_id):
    a = make_product(price=0.1, stock=10)
    b = make_product(price=0.2, stock=10)
    carts.add_item(user_id, a, 3)
    carts.add_item(user_id, b, 1)
    order = checkout(orders, user_id)

    expected = 0.0
    for item in order["items"]:
        expected += item["unit_price"] * item["quantity"]
    assert order["total_amount"] == expected

    db["product"].update_many({}, {"$set": {"price": 99.0}})
    reloaded = orders.get(order["id"])
    assert reloaded["total_amount"] == expected
    assert [i["unit_price"] for i in reloaded["items"]] == [0.1, 0.2]


@pytest.mark.parametrize("status", ["confirmed", "shipped"])
def test_cancel_after_pending_keeps_stock(orders, carts, make_product, stock_of, user_id, status):
    pid = make_product(stock=5)
    carts.add_item(user_id, pid, 2)
    order = checkout(orders, user_id)
    orders.update_status(order["id"], status)
    assert orders.cancel(order["id"])["status"] == "cancelled"
    assert stock_of(pid) == 3


def test_release_policy_is_configurable(db, carts, clock, make_product, stock_of, user_id):
    orders = OrderService(db, release_on_cancel={"pending", "confirmed"}, clock=clock)
    pid = make_product(stock=5)
    carts.add_item(user_id, pid, 2)
    order = checkout(orders, user_id)
    orders.update_status(order["id"], "confirmed")
    orders.cancel(order["id"])
    assert stock_of(pid) == 5


def test_cancel_delivered_fails(orders, carts, make_product, user_id):
    carts.add_item(user_id, make_product(), 1)
    order = checkout(orders, user_id)
    orders.update_status(order["id"], "delivered")
    with pytest.raises(InvalidTransition):
        orders.cancel(order["id"])
    assert orders.get(order["id"])["status"] == "delivered"


def test_cancel_twice_releases_once(orders, carts, make_product, stock_of, user_id):
    pid = make_product(stock=5)
    carts.add_item(user_id, pid, 2)
    order = checkout(orders, user_id)
    orders.cancel(order["id"])
    orders.cancel(order["id"])
    assert stock_of(pid) == 5


def test_missing_order(orders):
    with pytest.raises(OrderNotFound):
        orders.cancel(ObjectId())
    with pytest.raises(OrderNotFound):
        orders.update_status("nope", "shipped")
    with pytest.raises(OrderNotFound):
        orders.get(str(ObjectId()))


def test_update_status_accepts_any_known_status(orders, carts, make_product, user_id):
    carts.add_item(user_id, make_product(), 1)
    order = checkout(orders, user_id)
    assert orders.update_status(order["id"], "shipped")["status"] == "shipped"
    assert orders.update_status(order["id"], "pending")["status"] == "pending"
    with pytest.raises(InvalidTransition):
        orders.update_status(order["id"], "lost")


def test_queries_and_stats(orders, carts, clock, make_product, user_id):
    pid = make_product(stock=10)
    other = ObjectId()
    ids = []
    for buyer in (user_id, user_id, other):
        carts.add_item(buyer, pid, 1)
        ids.append(checkout(orders, buyer)["id"])
        clock.advance(seconds=1)
    orders.update_status(ids[0], "shipped")
    orders.cancel(ids[2])

    assert [o["id"] for o in orders.list_for_user(user_id)] == [ids[1], ids[0]]
    assert [o["id"] for o in orders.recent(2)] == [ids[2], ids[1]]
    assert [o["id"] for o in orders.list_all(status="shipped")] == [ids[0]]
    assert orders.count_for_user(other) == 1
    assert orders.stats() == {
        "pending": 1,
        "confirmed": 0,
        "shipped": 1,
        "delivered": 0,
        "cancelled": 1,
        "total": 3,
    }


def test_batch_update_status(orders, carts, make_product, user_id):
    pid = make_product(stock=10)
    ids = []
    for _ in range(2):
        carts.add_item(user_id, pid, 1)
        ids.append(checkout(orders, user_id)["id"])
    result = orders.batch_update_status(ids + ["junk"], "confirmed")
    assert result == {"matched": 2, "modified": 2}
    assert orders.stats()["confirmed"] == 2
