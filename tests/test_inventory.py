from datetime import date

from camrent.models import Booking, BookingItem, BookingStatus, RoleEnum

ITEM_PAYLOAD = {
    "name": "Sony A7 III",
    "description": "Full frame mirrorless body",
    "category": "Cameras",
    "price_per_day": "2500.00",
    "total_quantity": 3,
    "available_quantity": 3,
}


def test_inventory_crud(inventory_client, make_user, headers_for):
    staff = make_user(roles=(RoleEnum.STAFF,))
    headers = headers_for(staff)

    created = inventory_client.post("/inventory", json=ITEM_PAYLOAD, headers=headers)
    assert created.status_code == 201
    item = created.json()
    assert item["price_per_day"] == 2500.0

    fetched = inventory_client.get(f"/inventory/{item['id']}")
    assert fetched.status_code == 200

    updated = inventory_client.put(f"/inventory/{item['id']}", json={"available_quantity": 2}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["available_quantity"] == 2

    too_many = inventory_client.put(f"/inventory/{item['id']}", json={"available_quantity": 4}, headers=headers)
    assert too_many.status_code == 400

    assert inventory_client.delete(f"/inventory/{item['id']}", headers=headers).status_code == 204
    assert inventory_client.get(f"/inventory/{item['id']}").status_code == 404


def test_customers_cannot_manage_inventory(inventory_client, make_user, headers_for):
    customer = make_user()
    resp = inventory_client.post("/inventory", json=ITEM_PAYLOAD, headers=headers_for(customer))
    assert resp.status_code == 403
    assert inventory_client.post("/inventory", json=ITEM_PAYLOAD).status_code == 401


def test_create_rejects_available_above_total(inventory_client, make_user, headers_for):
    staff = make_user(roles=(RoleEnum.STAFF,))
    payload = dict(ITEM_PAYLOAD, available_quantity=5)
    assert inventory_client.post("/inventory", json=payload, headers=headers_for(staff)).status_code == 422


def test_public_listing_filters(inventory_client, make_item):
    make_item(name="Canon EOS R5", category="Cameras")
    make_item(name="Godox SL60", category="Lighting", description="LED video light", available=0)
    make_item(name="Rode VideoMic", category="Audio")

    assert len(inventory_client.get("/inventory").json()) == 3
    assert [i["name"] for i in inventory_client.get("/inventory", params={"search": "video"}).json()] == [
        "Godox SL60",
        "Rode VideoMic",
    ]
    assert [i["name"] for i in inventory_client.get("/inventory", params={"category": "Audio"}).json()] == [
        "Rode VideoMic"
    ]
    available = inventory_client.get("/inventory", params={"available_only": True}).json()
    assert "Godox SL60" not in {i["name"] for i in available}
    assert inventory_client.get("/inventory/categories").json() == ["Audio", "Cameras", "Lighting"]


def test_delete_blocked_while_on_active_booking(inventory_client, make_user, make_item, headers_for, db_session):
    staff = make_user(roles=(RoleEnum.STAFF,))
    customer = make_user()
    item = make_item(available=1)
    booking = Booking(
        customer_id=customer.id,
        hire_start_date=date(2024, 1, 1),
        hire_end_date=date(2024, 1, 3),
        total_cost=3000,
        deposit_amount=1500,
        balance_amount=1500,
        status=BookingStatus.CONFIRMED,
    )
    booking.items.append(BookingItem(item_id=item.id, quantity=1, daily_rate=1000, total_amount=3000))
    db_session.add(booking)
    db_session.commit()

    resp = inventory_client.delete(f"/inventory/{item.id}", headers=headers_for(staff))
    assert resp.status_code == 409
