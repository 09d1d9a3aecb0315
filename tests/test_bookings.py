from camrent.models import Booking, BookingItem, InventoryItem, RoleEnum


def booking_payload(item_id: int, quantity: int = 1, **overrides) -> dict:
    payload = {
        "hire_start_date": "2024-01-01",
        "hire_end_date": "2024-01-03",
        "deposit_percentage": 50,
        "items": [{"item_id": item_id, "quantity": quantity}],
    }
    payload.update(overrides)
    return payload


def test_quote_does_not_write(bookings_client, make_user, make_item, headers_for, db_session):
    customer = make_user()
    item = make_item(price="1000.00", total=2)

    resp = bookings_client.post("/bookings/quote", json=booking_payload(item.id), headers=headers_for(customer))
    assert resp.status_code == 200
    body = resp.json()
    assert body["rental_days"] == 3
    assert body["total_cost"] == 3000.0
    assert body["deposit_amount"] == 1500.0
    assert body["balance_amount"] == 1500.0
    assert db_session.query(Booking).count() == 0


def test_create_booking_reserves_stock(bookings_client, make_user, make_item, headers_for, db_session):
    customer = make_user()
    item = make_item(price="1000.00", total=2)

    resp = bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers_for(customer))
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["status"] == "pending"
    assert body["payment_status"] == "unpaid"
    assert body["total_cost"] == 3000.0
    assert body["customer_name"] == "Test Person"
    assert body["items"][0]["item_name"] == "Canon EOS R5"
    assert body["items"][0]["total_amount"] == 3000.0

    db_session.expire_all()
    assert db_session.get(InventoryItem, item.id).available_quantity == 1


def test_create_booking_with_rental_days_and_allowance(bookings_client, make_user, make_item, headers_for):
    customer = make_user()
    item = make_item(price="800.00")
    payload = booking_payload(item.id, hire_end_date=None, rental_days=2, late_return_allowance_days=1, deposit_percentage=30)
    payload.pop("hire_end_date")

    resp = bookings_client.post("/bookings", json=payload, headers=headers_for(customer))
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["hire_end_date"] == "2024-01-03"
    assert body["total_cost"] == 1600.0
    assert body["deposit_amount"] == 480.0
    assert body["balance_amount"] == 1120.0


def test_stock_exceeded_writes_nothing(bookings_client, make_user, make_item, headers_for, db_session):
    customer = make_user()
    camera = make_item(name="Canon EOS R5", total=2)
    lens = make_item(name="RF 24-70mm", total=1)
    payload = booking_payload(camera.id)
    payload["items"].append({"item_id": lens.id, "quantity": 2})

    resp = bookings_client.post("/bookings", json=payload, headers=headers_for(customer))
    assert resp.status_code == 409
    assert "RF 24-70mm" in resp.json()["detail"]

    db_session.expire_all()
    assert db_session.query(Booking).count() == 0
    assert db_session.query(BookingItem).count() == 0
    assert db_session.get(InventoryItem, camera.id).available_quantity == 2


def test_unknown_item_is_404(bookings_client, make_user, headers_for):
    customer = make_user()
    resp = bookings_client.post("/bookings", json=booking_payload(999), headers=headers_for(customer))
    assert resp.status_code == 404


def test_period_and_deposit_validation(bookings_client, make_user, make_item, headers_for):
    customer = make_user()
    item = make_item()
    headers = headers_for(customer)

    backwards = booking_payload(item.id, hire_end_date="2023-12-31")
    assert bookings_client.post("/bookings", json=backwards, headers=headers).status_code == 422

    odd_deposit = booking_payload(item.id, deposit_percentage=40)
    assert bookings_client.post("/bookings", json=odd_deposit, headers=headers).status_code == 422

    no_items = booking_payload(item.id)
    no_items["items"] = []
    assert bookings_client.post("/bookings", json=no_items, headers=headers).status_code == 422


def test_second_booking_of_last_unit_conflicts(bookings_client, make_user, make_item, headers_for):
    first = make_user()
    second = make_user()
    item = make_item(total=1)

    assert bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers_for(first)).status_code == 201
    assert bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers_for(second)).status_code == 409


def test_staff_can_book_for_customer(bookings_client, make_user, make_item, headers_for):
    staff = make_user(roles=(RoleEnum.STAFF,))
    customer = make_user()
    other = make_user()
    item = make_item()

    resp = bookings_client.post(
        "/bookings", json=booking_payload(item.id, customer_id=customer.id), headers=headers_for(staff)
    )
    assert resp.status_code == 201
    assert resp.json()["customer_id"] == customer.id
    assert resp.json()["staff_id"] == staff.id

    forbidden = bookings_client.post(
        "/bookings", json=booking_payload(item.id, customer_id=customer.id), headers=headers_for(other)
    )
    assert forbidden.status_code == 403

    missing = bookings_client.post(
        "/bookings", json=booking_payload(item.id, customer_id=999), headers=headers_for(staff)
    )
    assert missing.status_code == 404


def test_my_bookings_summary(bookings_client, make_user, make_item, headers_for):
    customer = make_user()
    item = make_item(price="1000.00", total=5)
    headers = headers_for(customer)

    kept = bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers).json()
    cancelled = bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers).json()
    bookings_client.patch(f"/bookings/{cancelled['id']}/status", json={"status": "cancelled"}, headers=headers)

    resp = bookings_client.get("/bookings/me", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["bookings"]) == 2
    assert body["active_count"] == 1
    assert body["total_spent"] == 3000.0
    assert body["outstanding_balance"] == 1500.0
    assert {b["id"] for b in body["bookings"]} == {kept["id"], cancelled["id"]}


def test_booking_visibility(bookings_client, make_user, make_item, headers_for):
    owner = make_user()
    stranger = make_user()
    staff = make_user(roles=(RoleEnum.STAFF,))
    item = make_item()
    booking = bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers_for(owner)).json()

    assert bookings_client.get(f"/bookings/{booking['id']}", headers=headers_for(owner)).status_code == 200
    assert bookings_client.get(f"/bookings/{booking['id']}", headers=headers_for(stranger)).status_code == 403
    assert bookings_client.get(f"/bookings/{booking['id']}", headers=headers_for(staff)).status_code == 200
    assert bookings_client.get("/bookings", headers=headers_for(owner)).status_code == 403

    listing = bookings_client.get("/bookings", params={"status": "pending"}, headers=headers_for(staff))
    assert [b["id"] for b in listing.json()] == [booking["id"]]
    assert bookings_client.get("/bookings", params={"status": "completed"}, headers=headers_for(staff)).json() == []


def test_status_changes_release_stock(bookings_client, make_user, make_item, headers_for, db_session):
    customer = make_user()
    staff = make_user(roles=(RoleEnum.STAFF,))
    item = make_item(total=2)
    booking = bookings_client.post("/bookings", json=booking_payload(item.id, quantity=2), headers=headers_for(customer)).json()

    confirmed = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=headers_for(staff)
    )
    assert confirmed.status_code == 200
    db_session.expire_all()
    assert db_session.get(InventoryItem, item.id).available_quantity == 0

    completed = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "completed"}, headers=headers_for(staff)
    )
    assert completed.json()["status"] == "completed"
    db_session.expire_all()
    assert db_session.get(InventoryItem, item.id).available_quantity == 2

    reopen = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "pending"}, headers=headers_for(staff)
    )
    assert reopen.status_code == 400


def test_customer_can_only_cancel(bookings_client, make_user, make_item, headers_for):
    customer = make_user()
    item = make_item()
    booking = bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers_for(customer)).json()

    confirm = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=headers_for(customer)
    )
    assert confirm.status_code == 403
    cancel = bookings_client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "cancelled"}, headers=headers_for(customer)
    )
    assert cancel.status_code == 200


def test_payment_status_and_assignment(bookings_client, make_user, make_item, headers_for):
    customer = make_user()
    staff = make_user(roles=(RoleEnum.STAFF,))
    item = make_item()
    booking = bookings_client.post("/bookings", json=booking_payload(item.id), headers=headers_for(customer)).json()

    paid = bookings_client.patch(
        f"/bookings/{booking['id']}/payment-status", json={"payment_status": "paid"}, headers=headers_for(staff)
    )
    assert paid.json()["payment_status"] == "paid"
    assert bookings_client.patch(
        f"/bookings/{booking['id']}/payment-status", json={"payment_status": "paid"}, headers=headers_for(customer)
    ).status_code == 403

    assigned = bookings_client.patch(
        f"/bookings/{booking['id']}/assign", json={"staff_id": staff.id}, headers=headers_for(staff)
    )
    assert assigned.json()["staff_id"] == staff.id
    not_staff = bookings_client.patch(
        f"/bookings/{booking['id']}/assign", json={"staff_id": customer.id}, headers=headers_for(staff)
    )
    assert not_staff.status_code == 400
