"""
API route tests.

Verifies:
- Actor headers (401 without X-User-Id) and manager-only routes (403)
- Result-union errors come back as HTTP 200 with a __typename
- A full order flow through the HTTP API
- Blind counts hide the variance from cashiers only
"""


def _create_order(client, headers, channel, variant, quantity=1):
    response = client.post("/api/orders", json={"channelId": channel.id}, headers=headers)
    assert response.status_code == 201
    order_id = response.get_json()["id"]
    response = client.post(
        f"/api/orders/{order_id}/items",
        json={"productVariantId": variant.id, "quantity": quantity},
        headers=headers,
    )
    assert response.status_code == 200
    return order_id


class TestAccessControl:
    def test_actor_required(self, client, channel):
        response = client.post("/api/orders", json={"channelId": channel.id})

        assert response.status_code == 401

    def test_non_integer_actor(self, client, channel):
        response = client.post("/api/orders", json={"channelId": channel.id}, headers={"X-User-Id": "abc"})

        assert response.status_code == 401

    def test_unknown_role(self, client, channel):
        response = client.post(
            "/api/orders", json={"channelId": channel.id}, headers={"X-User-Id": "1", "X-User-Role": "owner"}
        )

        assert response.status_code == 400

    def test_cashier_cannot_reverse_orders(self, client, headers, placed_order_factory, tshirt):
        order = placed_order_factory([(tshirt, 1)])

        response = client.post(f"/api/orders/{order.id}/reverse", json={}, headers=headers)

        assert response.status_code == 403
        assert response.get_json()["required_roles"] == ["manager"]

    def test_cashier_cannot_close_periods(self, client, headers, channel):
        response = client.post(
            "/api/accounting/periods/close",
            json={"channelId": channel.id, "periodEndDate": "2026-01-31"},
            headers=headers,
        )

        assert response.status_code == 403

    def test_admin_passes_role_checks(self, client, placed_order_factory, tshirt):
        order = placed_order_factory([(tshirt, 1)])

        response = client.post(
            f"/api/orders/{order.id}/reverse",
            json={"reason": "test"},
            headers={"X-User-Id": "9", "X-User-Role": "admin"},
        )

        assert response.status_code == 200
        assert response.get_json()["__typename"] == "OrderReversalResult"


class TestOrderFlow:
    def test_checkout_through_api(self, client, headers, channel, tshirt):
        order_id = _create_order(client, headers, channel, tshirt, quantity=2)

        response = client.post(
            f"/api/orders/{order_id}/transition", json={"state": "ArrangingPayment"}, headers=headers
        )
        assert response.get_json()["state"] == "ArrangingPayment"

        response = client.post(f"/api/payments/orders/{order_id}", json={"method": "cash"}, headers=headers)
        assert response.status_code == 200
        body = response.get_json()
        assert body["state"] == "PaymentSettled"
        assert body["payments"][0]["state"] == "Settled"

        response = client.get(f"/api/orders/{order_id}", headers=headers)
        assert response.get_json()["outstanding"] == "0"

        response = client.get(f"/api/orders/{order_id}/journal", headers=headers)
        assert response.status_code == 200

    def test_transition_error_is_a_result(self, client, headers, channel, tshirt):
        response = client.post("/api/orders", json={"channelId": channel.id}, headers=headers)
        order_id = response.get_json()["id"]

        response = client.post(
            f"/api/orders/{order_id}/transition", json={"state": "ArrangingPayment"}, headers=headers
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["__typename"] == "OrderStateTransitionError"
        assert body["fromState"] == "AddingItems"

    def test_insufficient_stock_result(self, client, headers, channel, mug):
        response = client.post("/api/orders", json={"channelId": channel.id}, headers=headers)
        order_id = response.get_json()["id"]

        response = client.post(
            f"/api/orders/{order_id}/items", json={"productVariantId": mug.id, "quantity": 50}, headers=headers
        )

        assert response.status_code == 200
        assert response.get_json()["__typename"] == "InsufficientStockError"
        assert response.get_json()["quantityAvailable"] == 5

    def test_invalid_quantity(self, client, headers, channel, tshirt):
        response = client.post("/api/orders", json={"channelId": channel.id}, headers=headers)
        order_id = response.get_json()["id"]

        response = client.post(
            f"/api/orders/{order_id}/items", json={"productVariantId": tshirt.id, "quantity": 1.5}, headers=headers
        )

        assert response.status_code == 400

    def test_unknown_order(self, client, headers, channel):
        response = client.get("/api/orders/99999", headers=headers)

        assert response.status_code == 404

    def test_refund_through_api(self, client, headers, placed_order_factory, tshirt):
        order = placed_order_factory([(tshirt, 2)])

        response = client.post(
            "/api/payments/refunds",
            json={
                "paymentId": order.payments[0].id,
                "lines": [{"orderLineId": order.lines[0].id, "quantity": 1}],
                "reason": "damaged",
            },
            headers=headers,
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["__typename"] == "Refund"
        assert body["state"] == "Settled"


class TestCashierRoutes:
    def _open(self, client, headers, channel):
        response = client.post(
            "/api/cashier-sessions",
            json={
                "channelId": channel.id,
                "openingBalances": [{"accountCode": "CASH_ON_HAND", "amountCents": "5000"}],
            },
            headers=headers,
        )
        assert response.status_code == 201
        return response.get_json()["session"]["id"]

    def test_cashier_count_hides_variance(self, client, headers, channel):
        session_id = self._open(client, headers, channel)

        response = client.post(
            f"/api/cashier-sessions/{session_id}/counts",
            json={"countType": "interim", "declaredCash": "4000"},
            headers=headers,
        )

        assert response.status_code == 201
        body = response.get_json()
        assert body["hasVariance"] is True
        assert body["varianceHidden"] is True
        assert body["count"]["variance"] is None

    def test_manager_sees_variance(self, client, headers, manager_headers, channel):
        session_id = self._open(client, headers, channel)
        client.post(
            f"/api/cashier-sessions/{session_id}/counts",
            json={"countType": "interim", "declaredCash": "4000"},
            headers=headers,
        )

        response = client.get(f"/api/cashier-sessions/{session_id}/counts", headers=manager_headers)

        assert response.status_code == 200
        assert response.get_json()["counts"][0]["variance"] == "-1000"

    def test_duplicate_open_is_rejected(self, client, headers, channel):
        self._open(client, headers, channel)

        response = client.post("/api/cashier-sessions", json={"channelId": channel.id}, headers=headers)

        assert response.status_code == 400

    def test_current_session(self, client, headers, channel):
        response = client.get(f"/api/cashier-sessions/current?channelId={channel.id}", headers=headers)
        assert response.status_code == 404

        session_id = self._open(client, headers, channel)

        response = client.get(f"/api/cashier-sessions/current?channelId={channel.id}", headers=headers)
        assert response.get_json()["session"]["id"] == session_id


class TestSystemRoutes:
    def test_health(self, client, channel):
        response = client.get("/api/system/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["ledger"]["status"] == "healthy"

    def test_channels_list_settings(self, client, channel):
        response = client.get("/api/system/channels")

        assert response.status_code == 200
        channels = response.get_json()["channels"]
        assert channels[0]["code"] == "WEB"
        assert channels[0]["settings"]["order_item_limit"] == 999
