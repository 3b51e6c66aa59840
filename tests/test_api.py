"""HTTP layer: auth, permissions, error mapping and document flows."""

from erp_core.app.services.export_service import XLSX_MEDIA_TYPE

# Matches the hash the user fixtures are created with
TEST_PASSWORD = "testpass123"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestAuth:

    def test_json_login_returns_token(self, client, admin_user):
        response = client.post("/auth/login", json={"username": "admin", "password": TEST_PASSWORD})

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["access_token"]

    def test_form_login_returns_token(self, client, admin_user):
        response = client.post("/auth/login", data={"username": "admin", "password": TEST_PASSWORD})
        assert response.status_code == 200

    def test_wrong_password_is_rejected(self, client, admin_user):
        response = client.post("/auth/login", json={"username": "admin", "password": "wrong"})
        assert response.status_code == 400

    def test_missing_token_is_rejected(self, client):
        assert client.get("/api/items").status_code == 401

    def test_me(self, client, auth_headers):
        response = client.get("/users/me", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["username"] == "admin"

    def test_viewer_cannot_manage_users(self, client, viewer_headers):
        assert client.get("/users", headers=viewer_headers).status_code == 403

    def test_disabled_user_is_locked_out(self, client, auth_headers, viewer_user, viewer_headers):
        response = client.patch(
            f"/users/{viewer_user.id}/active", headers=auth_headers, json={"is_active": False}
        )

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.get("/api/items", headers=viewer_headers).status_code == 401


class TestItemsApi:

    def test_viewer_cannot_create(self, client, viewer_headers):
        response = client.post(
            "/api/items", headers=viewer_headers,
            json={"item_type": "raw_material", "name": "Oil"},
        )
        assert response.status_code == 403

    def test_viewer_can_list(self, client, viewer_headers):
        assert client.get("/api/items", headers=viewer_headers).status_code == 200

    def test_create_with_opening_stock(self, client, auth_headers):
        response = client.post(
            "/api/items", headers=auth_headers,
            json={"item_type": "raw_material", "name": "Oil", "quantity": 100, "unit_cost": 2},
        )

        assert response.status_code == 201
        item = response.json()
        assert item["code"] == "RM-0001"
        assert item["quantity"] == 100

        movements = client.get(f"/api/items/{item['id']}/movements", headers=auth_headers).json()
        assert movements[0]["reference_type"] == "opening_balance"

    def test_negative_quantity_fails_validation(self, client, auth_headers):
        response = client.post(
            "/api/items", headers=auth_headers,
            json={"item_type": "raw_material", "name": "Oil", "quantity": -1},
        )
        assert response.status_code == 422

    def test_missing_item_is_404(self, client, auth_headers):
        assert client.get("/api/items/999", headers=auth_headers).status_code == 404

    def test_adjust_reports_change(self, client, auth_headers, make_item):
        item = make_item("raw_material", "Oil", quantity=10, unit_cost=2)

        response = client.post(
            f"/api/items/{item.id}/adjust", headers=auth_headers,
            json={"new_quantity": 7, "reason": "Damaged drum"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["quantity_change"] == -3
        assert body["reference_number"] == "ADJ-0001"


class TestOrdersApi:

    def _create(self, client, headers, product_id, quantity):
        response = client.post(
            "/api/orders", headers=headers,
            json={"order_type": "packaging", "items": [{"item_id": product_id, "quantity": quantity}]},
        )
        assert response.status_code == 201
        return response.json()

    def test_complete_returns_movements(self, client, auth_headers, packaging_setup):
        _, _, product = packaging_setup
        order = self._create(client, auth_headers, product.id, 40)

        response = client.post(f"/api/orders/{order['id']}/complete", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["order"]["status"] == "completed"
        assert body["movements"] == 3

    def test_shortage_is_400_with_details(self, client, auth_headers, packaging_setup):
        base, box, product = packaging_setup
        order = self._create(client, auth_headers, product.id, 60)

        response = client.post(f"/api/orders/{order['id']}/complete", headers=auth_headers)

        assert response.status_code == 400
        shortages = response.json()["detail"]["shortages"]
        assert {s["code"] for s in shortages} == {base.code, box.code}

    def test_shortage_is_warning_when_negative_stock_allowed(
        self, client, auth_headers, settings, packaging_setup
    ):
        _, _, product = packaging_setup
        settings.allow_negative_stock = True
        order = self._create(client, auth_headers, product.id, 60)

        response = client.post(f"/api/orders/{order['id']}/complete", headers=auth_headers)

        assert response.status_code == 200
        assert len(response.json()["warnings"]) == 2

    def test_empty_order_fails_validation(self, client, auth_headers):
        response = client.post(
            "/api/orders", headers=auth_headers, json={"order_type": "packaging", "items": []}
        )
        assert response.status_code == 422


class TestInvoiceFlow:

    def test_post_then_void(self, client, auth_headers, make_item, customer, cashbox):
        product = make_item("finished_product", "Face Cream", quantity=20, unit_cost=30)

        created = client.post(
            "/api/invoices", headers=auth_headers,
            json={
                "invoice_type": "sales",
                "party_id": customer.id,
                "treasury_id": cashbox.id,
                "paid_amount": 300,
                "items": [{"item_id": product.id, "quantity": 5, "unit_price": 100}],
            },
        )
        assert created.status_code == 201
        invoice = created.json()
        assert invoice["status"] == "draft"
        assert invoice["total_amount"] == 500

        posted = client.post(f"/api/invoices/{invoice['id']}/post", headers=auth_headers)
        assert posted.status_code == 200
        assert posted.json()["invoice"]["status"] == "posted"

        party = client.get(f"/api/parties/{customer.id}", headers=auth_headers).json()
        assert party["balance"] == 200

        voided = client.post(f"/api/invoices/{invoice['id']}/void", headers=auth_headers)
        assert voided.status_code == 200
        assert voided.json()["invoice"]["status"] == "void"

        again = client.post(f"/api/invoices/{invoice['id']}/void", headers=auth_headers)
        assert again.status_code == 400

    def test_delete_posted_invoice_is_400(self, client, auth_headers, make_item, customer):
        product = make_item("finished_product", "Face Cream", quantity=20, unit_cost=30)
        invoice = client.post(
            "/api/invoices", headers=auth_headers,
            json={
                "invoice_type": "sales",
                "party_id": customer.id,
                "items": [{"item_id": product.id, "quantity": 1, "unit_price": 100}],
            },
        ).json()
        client.post(f"/api/invoices/{invoice['id']}/post", headers=auth_headers)

        response = client.delete(f"/api/invoices/{invoice['id']}", headers=auth_headers)
        assert response.status_code == 400


class TestExports:

    def test_inventory_export_is_xlsx(self, client, auth_headers, make_item):
        make_item("raw_material", "Oil", quantity=10, unit_cost=2)

        response = client.get("/api/reports/inventory/export", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith(XLSX_MEDIA_TYPE)
        # xlsx files are zip archives
        assert response.content[:2] == b"PK"

    def test_statement_export_needs_export_permission(self, client, viewer_headers, customer):
        response = client.get(f"/api/parties/{customer.id}/statement/export", headers=viewer_headers)
        assert response.status_code == 403
