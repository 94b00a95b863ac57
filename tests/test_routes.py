from conftest import CART, callback_payload

STK_PUSH = "/payments/mpesa/stk-push"
QUERY_STATUS = "/payments/mpesa/query-status"
CALLBACK = "/payments/mpesa/callback"


def initiate(client, **overrides):
    body = {"phoneNumber": "0712345678", "amount": 1500, "tableNumber": "5", "items": CART}
    body.update(overrides)
    return client.post(STK_PUSH, json=body)


def staff_headers(client, email="admin@bbqhouse.co.ke", password="s3cret-pass"):
    client.post("/auth/register", json={"email": email, "password": password})
    resp = client.post("/auth/login", json={"email": email, "password": password})
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def test_health(client):
    assert client.get("/").json() == {"status": "OK"}


def test_stk_push_success(client):
    resp = initiate(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["checkoutRequestId"] == "ws_1"
    assert body["merchantRequestId"] == "mr_1"


def test_stk_push_validation_error_skips_gateway(client, fake_daraja):
    resp = initiate(client, phoneNumber="123")
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation"
    assert fake_daraja.requests == []


def test_stk_push_amount_must_match_items(client, fake_daraja):
    resp = initiate(client, amount=1)
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation"
    assert fake_daraja.requests == []


def test_stk_push_auth_failure(client, fake_daraja):
    fake_daraja.token_response = (400, {"errorMessage": "Invalid Credentials"})
    resp = initiate(client)
    assert resp.status_code == 502
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "gateway_auth"
    assert "ck" not in body["message"]


def test_stk_push_timeout(client, fake_daraja, settings):
    client.app.state.daraja_client.timeout = 0.05
    fake_daraja.delay = 1
    resp = initiate(client)
    assert resp.status_code == 504
    assert resp.json()["code"] == "gateway_transport"


def test_query_status_requires_checkout_id(client, fake_daraja):
    resp = client.post(QUERY_STATUS, json={})
    assert resp.status_code == 400
    assert "checkoutRequestId" in resp.json()["message"]
    assert fake_daraja.requests == []


def test_query_status_pending_then_callback_completed(client):
    initiate(client)

    pending = client.post(QUERY_STATUS, json={"checkoutRequestId": "ws_1"}).json()
    assert pending["success"] is False
    assert pending["status"] == "PENDING"

    ack = client.post(CALLBACK, json=callback_payload())
    assert ack.status_code == 200
    assert ack.json() == {"ResultCode": 0, "ResultDesc": "Callback received successfully"}

    done = client.post(QUERY_STATUS, json={"checkoutRequestId": "ws_1"}).json()
    assert done == {
        "success": True,
        "message": "Payment was completed successfully",
        "status": "COMPLETED",
        "transactionId": "ABC123",
    }


def test_callback_always_acknowledged(client):
    resp = client.post(CALLBACK, content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.json()["ResultCode"] == 0

    resp = client.post(CALLBACK, json=callback_payload(checkout_request_id="ws_unknown"))
    assert resp.status_code == 200
    assert resp.json()["ResultCode"] == 0


def test_admin_requires_authentication(client):
    assert client.get("/admin/orders").status_code == 401
    assert client.get("/admin/transactions").status_code == 401


def test_first_staff_account_is_admin(client):
    headers = staff_headers(client)
    me = client.get("/users/me", headers=headers).json()
    assert me["role"] == "admin"

    client.post("/auth/register", json={"email": "cook@bbqhouse.co.ke", "password": "kitchen-pass"})
    token = client.post("/auth/login", json={"email": "cook@bbqhouse.co.ke", "password": "kitchen-pass"}).json()
    cook = {"Authorization": f"Bearer {token['access_token']}"}
    assert client.get("/users/me", headers=cook).json()["role"] == "staff"
    assert client.get("/admin/transactions", headers=cook).status_code == 403
    assert client.get("/admin/orders", headers=cook).status_code == 200


def test_admin_sees_transactions_and_manages_orders(client):
    initiate(client)
    client.post(CALLBACK, json=callback_payload())
    headers = staff_headers(client)

    transactions = client.get("/admin/transactions", headers=headers).json()
    assert [(t["checkout_request_id"], t["status"]) for t in transactions] == [("ws_1", "COMPLETED")]
    assert client.get("/admin/transactions/ws_1", headers=headers).json()["mpesa_receipt_number"] == "ABC123"
    assert client.get("/admin/transactions/nope", headers=headers).status_code == 404

    orders = client.get("/admin/orders", headers=headers).json()
    assert len(orders) == 1
    order = orders[0]
    assert order["tableNumber"] == "5"
    assert order["total"] == "1500.00"
    assert order["customer"]["phone"] == "254712345678"

    resp = client.patch(f"/admin/orders/{order['id']}/status", json={"status": "preparing"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "preparing"

    resp = client.patch(f"/admin/orders/{order['id']}/status", json={"status": "eaten"}, headers=headers)
    assert resp.status_code == 400
    assert client.patch("/admin/orders/999/status", json={"status": "ready"}, headers=headers).status_code == 404


def test_login_with_wrong_password(client):
    staff_headers(client)
    resp = client.post("/auth/login", json={"email": "admin@bbqhouse.co.ke", "password": "wrong-password"})
    assert resp.status_code == 401


def test_refresh_token_issues_new_access_token(client):
    client.post("/auth/register", json={"email": "admin@bbqhouse.co.ke", "password": "s3cret-pass"})
    login = client.post("/auth/login", json={"email": "admin@bbqhouse.co.ke", "password": "s3cret-pass"})
    refresh_cookie = login.cookies.get("refresh_token")
    assert refresh_cookie

    client.cookies.clear()
    assert client.post("/auth/refresh").status_code == 401
    client.cookies.set("refresh_token", refresh_cookie)
    resp = client.post("/auth/refresh")
    assert resp.status_code == 200
    assert resp.json()["token_type"] == "bearer"
