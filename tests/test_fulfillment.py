import pytest
from sqlalchemy import func, select

from galatix.checkout import create_checkout
from galatix.errors import AlreadyFulfilledError, ConflictError, NotFoundError
from galatix.fulfillment import (
    fulfill_order, raffle_entries_per_unit, seats_for,
)
from galatix.model.db import (
    Attendee, Counter, Donor, Order, Product, RaffleEntry, RAFFLE_COUNTER,
)
from galatix.orders import cancel_order
from galatix.schemas import CheckoutRequest


def cart(*items, email="buyer@example.org", **kw):
    return CheckoutRequest(
        items=[
            {"product_id": pid, "quantity": qty, **extra}
            for pid, qty, *rest in items
            for extra in (rest[0] if rest else {},)
        ],
        customer_email=email,
        **kw,
    )


@pytest.fixture
def checkout(sessions, mockpay):
    async def _checkout(req):
        async with sessions() as db:
            return await create_checkout(db, req, mockpay, "http://testserver")
    return _checkout


@pytest.fixture
def fulfill(sessions):
    async def _fulfill(order_id, **kw):
        async with sessions() as db:
            return await fulfill_order(db, order_id, **kw)
    return _fulfill


async def count(sessions, model, *where):
    async with sessions() as db:
        stmt = select(func.count()).select_from(model)
        if where:
            stmt = stmt.where(*where)
        return (await db.execute(stmt)).scalar_one()


async def fetch(sessions, model, key):
    async with sessions() as db:
        return await db.get(model, key)


def test_raffle_price_map():
    assert raffle_entries_per_unit(2500) == 1
    assert raffle_entries_per_unit(10000) == 5
    assert raffle_entries_per_unit(20000) == 12
    assert raffle_entries_per_unit(999) == 1


def test_seats_for():
    assert seats_for("ticket", 3, None) == 3
    assert seats_for("sponsorship", 2, 10) == 20
    assert seats_for("raffle", 4, 10) == 0
    assert seats_for("donation", 1, None) == 0


async def test_ticket_order_with_donation(sessions, add_product, checkout,
                                          fulfill):
    p1 = await add_product("ticket", 7500)
    res = await checkout(cart((p1, 2), donation_cents=1000))
    assert res.subtotal_cents == 15000
    assert res.total_cents == 16000
    assert res.status == "pending"

    out = await fulfill(res.order_id, payment_reference="pi_123")
    assert out.previous_status == "pending"
    assert out.attendees_created == 2
    assert out.raffle_entries_created == 0
    assert out.receipt.total_cents == 16000
    assert out.receipt.customer_email == "buyer@example.org"

    order = await fetch(sessions, Order, res.order_id)
    assert order.status == "paid"
    assert order.paid_at is not None
    assert order.payment_reference == "pi_123"

    product = await fetch(sessions, Product, p1)
    assert product.quantity_sold == 2

    async with sessions() as db:
        donor = (await db.execute(
            select(Donor).where(Donor.email == "buyer@example.org")
        )).scalar_one()
    assert donor.total_donated_cents == 16000
    assert donor.order_count == 1
    assert donor.first_order_at == donor.last_order_at


async def test_big_raffle_bundle_gets_twelve_consecutive_entries(
        sessions, add_product, checkout, fulfill):
    p2 = await add_product("raffle", 20000)
    res = await checkout(cart((p2, 1)))
    out = await fulfill(res.order_id)

    assert out.attendees_created == 0
    assert out.raffle_entries_created == 12
    assert out.raffle_entry_numbers == list(range(1, 13))
    assert out.receipt.raffle_entry_numbers == list(range(1, 13))


async def test_raffle_numbers_continue_across_orders(sessions, add_product,
                                                     checkout, fulfill):
    small = await add_product("raffle", 2500)
    medium = await add_product("raffle", 10000)
    odd = await add_product("raffle", 4000)

    first = await fulfill((await checkout(cart((small, 3)))).order_id)
    second = await fulfill((await checkout(
        cart((medium, 2), (odd, 1), email="other@example.org")
    )).order_id)

    assert first.raffle_entry_numbers == [1, 2, 3]
    # 2 * 5 + 1 * 1, contiguous after the first order
    assert second.raffle_entry_numbers == list(range(4, 15))

    async with sessions() as db:
        counter = await db.get(Counter, RAFFLE_COUNTER)
        assert counter.value == 14
        per_product = dict((await db.execute(
            select(RaffleEntry.product_id, func.count())
            .group_by(RaffleEntry.product_id)
        )).all())
    assert per_product == {small: 3, medium: 10, odd: 1}


async def test_raffle_counter_catches_up_with_existing_entries(
        sessions, add_product, checkout, fulfill):
    p = await add_product("raffle", 2500)
    done = await fulfill((await checkout(cart((p, 1)))).order_id)
    assert done.raffle_entry_numbers == [1]

    # counter lags behind the table, e.g. after restoring an old dump
    async with sessions() as db:
        async with db.begin():
            (await db.get(Counter, RAFFLE_COUNTER)).value = 0
    again = await fulfill((await checkout(cart((p, 2)))).order_id)
    assert again.raffle_entry_numbers == [2, 3]


async def test_sponsorship_seats_use_prefilled_names_per_line(
        sessions, add_product, checkout, fulfill):
    sponsor = await add_product("sponsorship", 250000, table_size=10)
    ticket = await add_product("ticket", 7500)
    res = await checkout(cart(
        (ticket, 2, {"attendees": [{"name": "Ann"}, {"name": "Bob"}]}),
        (sponsor, 1, {"attendees": [
            {"name": "Cy", "email": "CY@example.org",
             "dietary_restrictions": "vegan"},
        ]}),
    ))
    out = await fulfill(res.order_id)
    assert out.attendees_created == 12

    async with sessions() as db:
        rows = (await db.execute(
            select(Attendee).where(Attendee.order_id == res.order_id)
        )).scalars().all()
    by_line = {}
    for a in rows:
        by_line.setdefault(a.order_item_id, []).append(a)
    assert len(by_line) == 2

    names = sorted(a.name for a in rows if a.name)
    assert names == ["Ann", "Bob", "Cy"]
    cy = next(a for a in rows if a.name == "Cy")
    assert cy.dietary_restrictions == "vegan"
    sponsor_line = by_line[cy.order_item_id]
    assert len(sponsor_line) == 10
    assert sum(1 for a in sponsor_line if a.name is None) == 9
    assert all(not a.checked_in and a.table_id is None for a in rows)


async def test_second_fulfillment_changes_nothing(sessions, add_product,
                                                  checkout, fulfill):
    ticket = await add_product("ticket", 7500, quantity_available=10)
    raffle = await add_product("raffle", 10000)
    res = await checkout(cart((ticket, 2), (raffle, 1)))
    await fulfill(res.order_id)

    before = (
        await count(sessions, Attendee),
        await count(sessions, RaffleEntry),
        (await fetch(sessions, Product, ticket)).quantity_sold,
    )
    with pytest.raises(AlreadyFulfilledError):
        await fulfill(res.order_id)
    after = (
        await count(sessions, Attendee),
        await count(sessions, RaffleEntry),
        (await fetch(sessions, Product, ticket)).quantity_sold,
    )
    assert before == after == (2, 5, 2)

    async with sessions() as db:
        donor = (await db.execute(select(Donor))).scalar_one()
    assert donor.order_count == 1


async def test_donor_aggregates_across_orders(sessions, add_product,
                                              checkout, fulfill):
    p = await add_product("ticket", 5000)
    totals = []
    for i, name in enumerate((None, "Dana", "Someone Else")):
        res = await checkout(cart(
            (p, i + 1), email="  Dana@Example.org ",
            customer_name=name, donation_cents=100 * i,
        ))
        totals.append(res.total_cents)
        await fulfill(res.order_id)

    async with sessions() as db:
        donor = (await db.execute(select(Donor))).scalar_one()
    assert donor.email == "dana@example.org"
    assert donor.order_count == 3
    assert donor.total_donated_cents == sum(totals)
    # filled by the second order, never overwritten afterwards
    assert donor.name == "Dana"
    assert donor.last_order_at >= donor.first_order_at


async def test_oversold_product_still_fulfills(sessions, add_product,
                                               checkout, fulfill, caplog):
    p = await add_product("ticket", 7500, quantity_available=1)
    a = await checkout(cart((p, 1)))
    b = await checkout(cart((p, 1), email="late@example.org"))
    await fulfill(a.order_id)
    out = await fulfill(b.order_id)

    assert out.attendees_created == 1
    assert (await fetch(sessions, Product, p)).quantity_sold == 2
    assert "oversold" in caplog.text


async def test_check_order_and_required_status(sessions, add_product,
                                               checkout, fulfill):
    p = await add_product("ticket", 7500)
    card = await checkout(cart((p, 1)))
    check = await checkout(cart((p, 1), payment_method="check"))
    assert check.status == "pending_check"

    with pytest.raises(ConflictError):
        await fulfill(card.order_id, require_status="pending_check")
    assert (await fetch(sessions, Order, card.order_id)).status == "pending"

    out = await fulfill(check.order_id, require_status="pending_check")
    assert out.previous_status == "pending_check"


async def test_cancelled_and_unknown_orders(sessions, add_product, checkout,
                                            fulfill):
    p = await add_product("ticket", 7500)
    res = await checkout(cart((p, 1)))
    async with sessions() as db:
        await cancel_order(db, res.order_id)

    with pytest.raises(ConflictError) as exc:
        await fulfill(res.order_id)
    assert not isinstance(exc.value, AlreadyFulfilledError)
    assert await count(sessions, Attendee) == 0
    assert (await fetch(sessions, Product, p)).quantity_sold == 0

    with pytest.raises(NotFoundError):
        await fulfill("nope")
