"""
Authorization tests.

Verifies:
- Unauthenticated requests return 401
- Tokens are re-validated against the stored user
- Parties only reach their own orders, invoices and returns (403)
"""

from datetime import timedelta

import pytest

from pharmaconnect.decorators import issue_token, verify_token

from conftest import auth_headers


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/orders/"),
            ("POST", "/api/orders/"),
            ("GET", "/api/orders/1"),
            ("GET", "/api/orders/1/timeline"),
            ("PUT", "/api/orders/1/status"),
            ("DELETE", "/api/orders/1"),
            ("POST", "/api/orders/1/returns"),
            ("GET", "/api/returns/"),
            ("PUT", "/api/returns/1/status"),
            ("GET", "/api/invoices/"),
            ("GET", "/api/invoices/stats"),
            ("POST", "/api/invoices/1/payments"),
            ("GET", "/api/invoices/reports/financial"),
            ("POST", "/api/ratings/"),
            ("GET", "/api/notifications/"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token(self, client, db_session):
        resp = client.get("/api/orders/", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401


# =============================================================================
# TOKEN RE-VALIDATION
# =============================================================================


class TestTokenValidation:

    def test_round_trip(self, pharmacy):
        actor = verify_token(issue_token(pharmacy))

        assert actor.user_id == pharmacy.id
        assert actor.role == "pharmacy"

    def test_expired_token(self, pharmacy):
        assert verify_token(issue_token(pharmacy, expires_delta=timedelta(seconds=-5))) is None

    def test_deactivated_user(self, db_session, pharmacy):
        token = issue_token(pharmacy)
        pharmacy.is_active = False
        db_session.commit()

        assert verify_token(token) is None

    def test_role_changed_since_issuance(self, db_session, pharmacy):
        token = issue_token(pharmacy)
        pharmacy.role = "warehouse"
        db_session.commit()

        assert verify_token(token) is None

    def test_foreign_signature(self, app, pharmacy):
        from jose import jwt

        forged = jwt.encode({"user_id": pharmacy.id, "role": "admin"}, "other-secret", algorithm="HS256")

        assert verify_token(forged) is None


# =============================================================================
# CROSS-PARTY ACCESS (403)
# =============================================================================


class TestCrossPartyAccess:

    def test_other_pharmacy_cannot_read_order(self, client, place_order, other_pharmacy, product):
        order = place_order(product)

        resp = client.get(f"/api/orders/{order.id}", headers=auth_headers(other_pharmacy))

        assert resp.status_code == 403
        assert resp.json["kind"] == "Forbidden"

    def test_other_warehouse_cannot_read_timeline(self, client, place_order, other_warehouse, product):
        order = place_order(product)

        resp = client.get(f"/api/orders/{order.id}/timeline", headers=auth_headers(other_warehouse))

        assert resp.status_code == 403

    def test_pharmacy_cannot_change_status(self, client, place_order, pharmacy, product):
        order = place_order(product)

        resp = client.put(
            f"/api/orders/{order.id}/status", json={"status": "processing"}, headers=auth_headers(pharmacy)
        )

        assert resp.status_code == 403

    def test_warehouse_cannot_see_admin_report(self, client, warehouse):
        resp = client.get("/api/invoices/reports/financial", headers=auth_headers(warehouse))

        assert resp.status_code == 403

    def test_pharmacy_cannot_record_payment(self, client, db_session, place_order, pharmacy, product):
        order = place_order(product)
        invoice_id = order.invoice.id

        resp = client.post(
            f"/api/invoices/{invoice_id}/payments", json={"amount": "1.00"}, headers=auth_headers(pharmacy)
        )

        assert resp.status_code == 403
