"""
Tests for the admin affiliate endpoints.

Test Coverage:
1. Access control: admin roles only
2. Create / read / update / delete with the response envelope
3. Full commission lifecycle over HTTP, including out-of-order requests
4. Collection routes declared before /{affiliate_id}
5. Bulk actions, tracking links and reconciliation
"""
import pytest

from app.models.db_models import UserRole


@pytest.fixture
def admin_headers(auth_headers, make_user):
    admin = make_user(role=UserRole.ADMIN, email="admin@example.com", name="Program Admin")
    return auth_headers(admin)


def _create(client, headers, **overrides):
    payload = {"name": "Jane Partner", "email": "jane@partners.example.com", "tier": "silver"}
    payload.update(overrides)
    response = client.post("/affiliates", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _convert(client, headers, affiliate_id, amount=100.0, **extra):
    referral = client.post(
        f"/affiliates/{affiliate_id}/referrals",
        json={"customer_email": "buyer@example.com"},
        headers=headers,
    ).json()["data"]
    response = client.post(
        f"/affiliates/{affiliate_id}/referrals/{referral['id']}/convert",
        json={"order_amount": amount, **extra},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return referral, response.json()["data"]


# =============================================================================
# TEST: ACCESS
# =============================================================================

class TestAccess:

    @pytest.mark.parametrize("role", [UserRole.CLIENT, UserRole.CUSTOMER, UserRole.SUPPORT])
    def test_non_admin_forbidden(self, client, auth_headers, make_user, role):
        user = make_user(role=role)
        assert client.get("/affiliates", headers=auth_headers(user)).status_code == 403

    def test_main_admin_allowed(self, client, auth_headers, main_admin):
        assert client.get("/affiliates", headers=auth_headers(main_admin)).status_code == 200


# =============================================================================
# TEST: CRUD
# =============================================================================

class TestCrud:

    def test_create(self, client, admin_headers):
        data = _create(client, admin_headers)

        assert data["tier"] == "silver"
        assert data["status"] == "active"
        assert data["commission_rate"] == pytest.approx(0.18)
        assert data["referral_code"].startswith("JANE")
        assert data["stats"]["total_referrals"] == 0

    def test_create_duplicate_email(self, client, admin_headers):
        _create(client, admin_headers)

        response = client.post(
            "/affiliates", json={"name": "Again", "email": "JANE@partners.example.com"}, headers=admin_headers,
        )

        assert response.status_code == 409
        assert "detail" in response.json()

    def test_create_rejects_bad_rate(self, client, admin_headers):
        response = client.post(
            "/affiliates", json={"name": "X", "email": "x@example.com", "commission_rate": 2}, headers=admin_headers,
        )
        assert response.status_code == 422

    def test_create_rejects_bad_plan_rate(self, client, admin_headers):
        response = client.post(
            "/affiliates",
            json={"name": "X", "email": "x@example.com", "custom_commission_rates": {"starter": 5.0}},
            headers=admin_headers,
        )

        assert response.status_code == 422
        assert client.get("/affiliates", headers=admin_headers).json()["data"]["pagination"]["total"] == 0

    def test_update_rejects_bad_plan_rate(self, client, admin_headers):
        created = _create(client, admin_headers)

        response = client.put(
            f"/affiliates/{created['id']}",
            json={"custom_commission_rates": {"starter": 5.0}},
            headers=admin_headers,
        )

        assert response.status_code == 422

    def test_detail_masks_bank_details(self, client, admin_headers):
        created = _create(client, admin_headers, bank_details={
            "bank_name": "First Bank", "account_number": "123456789", "routing_number": "021000021",
        })

        data = client.get(f"/affiliates/{created['id']}", headers=admin_headers).json()["data"]

        assert data["bank_details"]["account_number"] == "****6789"
        assert data["bank_details"]["routing_number"] == "****0021"
        assert data["bank_details"]["bank_name"] == "First Bank"

    def test_list_omits_bank_details(self, client, admin_headers):
        _create(client, admin_headers, bank_details={"account_number": "123456789"})

        body = client.get("/affiliates", headers=admin_headers).json()

        assert body["success"] is True
        listed = body["data"]["affiliates"][0]
        assert "bank_details" not in listed
        assert body["data"]["pagination"]["total"] == 1
        assert body["data"]["stats"]["total_affiliates"] == 1

    def test_update(self, client, admin_headers):
        created = _create(client, admin_headers)

        response = client.put(
            f"/affiliates/{created['id']}",
            json={"tier": "gold", "commission_rate": 0.22, "admin_notes": "Top partner"},
            headers=admin_headers,
        )

        data = response.json()["data"]
        assert data["tier"] == "gold"
        assert data["commission_rate"] == pytest.approx(0.22)
        assert data["admin_notes"] == "Top partner"

    def test_update_cannot_touch_stats(self, client, admin_headers):
        created = _create(client, admin_headers)

        client.put(f"/affiliates/{created['id']}", json={"total_commission_earned": 1000}, headers=admin_headers)

        data = client.get(f"/affiliates/{created['id']}", headers=admin_headers).json()["data"]
        assert data["stats"]["total_commission_earned"] == 0

    def test_not_found(self, client, admin_headers):
        assert client.get("/affiliates/missing", headers=admin_headers).status_code == 404
        assert client.delete("/affiliates/missing", headers=admin_headers).status_code == 404

    def test_delete(self, client, admin_headers):
        created = _create(client, admin_headers)

        assert client.delete(f"/affiliates/{created['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/affiliates/{created['id']}", headers=admin_headers).status_code == 404


# =============================================================================
# TEST: COMMISSION LIFECYCLE
# =============================================================================

class TestLifecycleApi:

    def test_full_lifecycle(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        base = f"/affiliates/{affiliate['id']}"
        _, commission = _convert(client, admin_headers, affiliate["id"], amount=200.0, order_id="ORD-1")

        assert commission["status"] == "pending"
        assert commission["commission_amount"] == pytest.approx(36.0)

        approved = client.post(f"{base}/commissions/{commission['id']}/approve", headers=admin_headers)
        assert approved.status_code == 200
        assert approved.json()["data"]["status"] == "approved"

        paid = client.post(
            f"{base}/commissions/{commission['id']}/pay",
            json={"payment_method": "paypal", "payment_reference": "PP-9"},
            headers=admin_headers,
        )
        assert paid.status_code == 200
        assert paid.json()["data"]["payment_reference"] == "PP-9"

        stats = client.get(base, headers=admin_headers).json()["data"]["stats"]
        assert stats["total_commission_earned"] == pytest.approx(36.0)
        assert stats["total_commission_paid"] == pytest.approx(36.0)
        assert stats["pending_commission"] == pytest.approx(0.0)
        assert stats["conversion_rate"] == pytest.approx(1.0)

    def test_pay_before_approval_conflicts(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        base = f"/affiliates/{affiliate['id']}"
        _, commission = _convert(client, admin_headers, affiliate["id"])

        response = client.post(f"{base}/commissions/{commission['id']}/pay", json={}, headers=admin_headers)

        assert response.status_code == 409
        stats = client.get(base, headers=admin_headers).json()["data"]["stats"]
        assert stats["total_commission_paid"] == 0
        assert stats["pending_commission"] == pytest.approx(18.0)

    def test_double_conversion_conflicts(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        referral, _ = _convert(client, admin_headers, affiliate["id"])

        response = client.post(
            f"/affiliates/{affiliate['id']}/referrals/{referral['id']}/convert",
            json={"order_amount": 50.0},
            headers=admin_headers,
        )

        assert response.status_code == 409

    def test_negative_amount_rejected(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        referral = client.post(
            f"/affiliates/{affiliate['id']}/referrals", json={}, headers=admin_headers,
        ).json()["data"]

        response = client.post(
            f"/affiliates/{affiliate['id']}/referrals/{referral['id']}/convert",
            json={"order_amount": -5},
            headers=admin_headers,
        )

        assert response.status_code == 422

    @pytest.mark.parametrize("raw_amount", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_amount_rejected(self, client, admin_headers, raw_amount):
        affiliate = _create(client, admin_headers)
        base = f"/affiliates/{affiliate['id']}"
        referral = client.post(f"{base}/referrals", json={}, headers=admin_headers).json()["data"]

        response = client.post(
            f"{base}/referrals/{referral['id']}/convert",
            content='{"order_amount": ' + raw_amount + "}",
            headers={**admin_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 422
        assert "SQL" not in response.text
        assert response.json()["detail"][0]["input"] in ("nan", "inf", "-inf")
        stats = client.get(base, headers=admin_headers).json()["data"]["stats"]
        assert stats["total_commission_earned"] == 0

    def test_unknown_commission_and_referral(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        base = f"/affiliates/{affiliate['id']}"

        assert client.post(f"{base}/commissions/missing/approve", headers=admin_headers).status_code == 404
        assert client.post(
            f"{base}/referrals/missing/convert", json={"order_amount": 10}, headers=admin_headers,
        ).status_code == 404

    def test_cancel(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        base = f"/affiliates/{affiliate['id']}"
        _, commission = _convert(client, admin_headers, affiliate["id"])

        response = client.post(
            f"{base}/commissions/{commission['id']}/cancel", json={"reason": "refund"}, headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["cancellation_reason"] == "refund"
        stats = client.get(base, headers=admin_headers).json()["data"]["stats"]
        assert stats["total_commission_earned"] == 0
        assert stats["pending_commission"] == 0

        again = client.post(f"{base}/commissions/{commission['id']}/approve", headers=admin_headers)
        assert again.status_code == 409

    def test_reconcile(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        _convert(client, admin_headers, affiliate["id"])

        body = client.post(f"/affiliates/{affiliate['id']}/reconcile", headers=admin_headers).json()

        assert body["data"]["corrected"] == {}
        assert body["message"] == "Stats already consistent"


# =============================================================================
# TEST: COLLECTION ROUTES
# =============================================================================

class TestCollectionRoutes:

    def test_performance_analytics_is_not_an_affiliate_id(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        _convert(client, admin_headers, affiliate["id"], amount=300.0)

        response = client.get("/affiliates/analytics/performance", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total_revenue"] == pytest.approx(300.0)
        assert data["top_performers"][0]["affiliate"] == "Jane Partner"

    def test_performance_analytics_accepts_comma_separated_ids(self, client, admin_headers):
        first = _create(client, admin_headers)
        second = _create(client, admin_headers, name="Second", email="second@example.com")
        _create(client, admin_headers, name="Third", email="third@example.com")
        _convert(client, admin_headers, first["id"], amount=100.0)
        _convert(client, admin_headers, second["id"], amount=50.0)

        ids = f"{first['id']},{second['id']}"
        data = client.get(
            f"/affiliates/analytics/performance?affiliate_ids={ids}", headers=admin_headers,
        ).json()["data"]

        assert data["total_revenue"] == pytest.approx(150.0)
        assert data["total_referrals"] == 2

    def test_top_performers_and_pending_payouts(self, client, admin_headers):
        affiliate = _create(client, admin_headers)
        _convert(client, admin_headers, affiliate["id"])

        top = client.get("/affiliates/top-performers?limit=5", headers=admin_headers).json()["data"]
        assert top[0]["id"] == affiliate["id"]

        payouts = client.get("/affiliates/pending-payouts", headers=admin_headers).json()["data"]
        assert payouts["total_pending"] == pytest.approx(18.0)

    def test_by_code(self, client, admin_headers):
        affiliate = _create(client, admin_headers)

        response = client.get(f"/affiliates/by-code/{affiliate['referral_code'].lower()}", headers=admin_headers)

        assert response.json()["data"]["id"] == affiliate["id"]
        assert client.get("/affiliates/by-code/NOPE", headers=admin_headers).status_code == 404

    def test_bulk_action(self, client, admin_headers):
        first = _create(client, admin_headers)
        second = _create(client, admin_headers, name="Second", email="second@example.com")

        response = client.post(
            "/affiliates/bulk-action",
            json={"action": "deactivate", "affiliate_ids": [first["id"], second["id"]]},
            headers=admin_headers,
        )

        assert response.json()["data"] == {"matched_count": 2, "modified_count": 2}
        listed = client.get("/affiliates?status=inactive", headers=admin_headers).json()
        assert listed["data"]["pagination"]["total"] == 2

    @pytest.mark.parametrize("data", [None, {}, {"commission_rate": None}, {"commission_rate": "high"}])
    def test_bulk_update_commission_without_rate(self, client, admin_headers, data):
        affiliate = _create(client, admin_headers)
        payload = {"action": "update_commission", "affiliate_ids": [affiliate["id"]]}
        if data is not None:
            payload["data"] = data

        response = client.post("/affiliates/bulk-action", json=payload, headers=admin_headers)

        assert response.status_code == 400
        assert "Commission rate" in response.json()["detail"]

    def test_bulk_action_invalid(self, client, admin_headers):
        affiliate = _create(client, admin_headers)

        response = client.post(
            "/affiliates/bulk-action",
            json={"action": "explode", "affiliate_ids": [affiliate["id"]]},
            headers=admin_headers,
        )

        assert response.status_code == 400

    def test_generate_link(self, client, admin_headers):
        affiliate = _create(client, admin_headers)

        response = client.post(
            f"/affiliates/{affiliate['id']}/generate-link",
            json={"name": "Blog", "target_url": "https://vbms.app/?utm=blog"},
            headers=admin_headers,
        )

        link = response.json()["data"]
        assert link["url"] == (
            f"https://vbms.app/?utm=blog&ref={affiliate['referral_code']}&track={link['tracking_id']}"
        )
        detail = client.get(f"/affiliates/{affiliate['id']}", headers=admin_headers).json()["data"]
        assert len(detail["links"]) == 1
