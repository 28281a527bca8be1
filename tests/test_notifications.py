"""
Tests for the notification service and API.

Test Coverage:
1. Visibility: direct, role-addressed, scheduled and expired notifications
2. Read state: mark_read stamps once, mark_all_read
3. Creation errors: missing or unknown recipients, empty bulk sends
4. Stats, admin analytics and expiry cleanup
5. API envelope, ownership and admin permission checks
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.models.db_models import (
    NotificationDB, NotificationPriority, NotificationStatus, UserRole,
)
from app.services.notifications import (
    NotificationService,
    NoRecipientsError,
    RecipientNotFoundError,
    to_client_format,
)


@pytest.fixture
def service(db_session):
    return NotificationService(db_session)


@pytest.fixture
def client_user(make_user):
    return make_user(role=UserRole.CLIENT, email="client@example.com", name="Client")


@pytest.fixture
def customer_user(make_user):
    return make_user(role=UserRole.CUSTOMER, email="customer@example.com", name="Customer")


# =============================================================================
# TEST: VISIBILITY
# =============================================================================

class TestVisibility:

    def test_direct_notification_only_visible_to_recipient(self, service, client_user, customer_user):
        service.create("Order", "New order", "order", recipient_user_id=client_user.id)

        assert service.find_for_user(client_user).total == 1
        assert service.find_for_user(customer_user).total == 0

    def test_role_notification_visible_to_role(self, service, make_user, client_user, customer_user):
        other_client = make_user(role=UserRole.CLIENT, email="client2@example.com")
        service.create("Maintenance", "Tonight", "system", recipient_role="client")

        assert service.unread_count(client_user) == 1
        assert service.unread_count(other_client) == 1
        assert service.unread_count(customer_user) == 0

    def test_role_notification_shares_one_status(self, service, make_user, client_user):
        other_client = make_user(role=UserRole.CLIENT, email="client2@example.com")
        notification = service.create("Maintenance", "Tonight", "system", recipient_role="client")

        service.mark_read(service.get_for_user(client_user, notification.id))

        assert service.unread_count(other_client) == 0

    def test_direct_recipient_role_is_recorded(self, service, client_user):
        notification = service.create("Hi", "Hello", "system", recipient_user_id=client_user.id)
        assert notification.recipient_role == "client"

    def test_expired_hidden_unless_requested(self, service, client_user):
        service.create(
            "Old promo", "Expired", "marketing", recipient_user_id=client_user.id,
            expires_at=datetime.utcnow() - timedelta(hours=1),
        )

        assert service.find_for_user(client_user).total == 0
        assert service.find_for_user(client_user, include_expired=True).total == 1
        assert service.unread_count(client_user) == 0

    def test_scheduled_hidden_until_due(self, service, client_user):
        service.create(
            "Later", "Not yet", "system", recipient_user_id=client_user.id,
            scheduled_for=datetime.now(timezone.utc) + timedelta(days=1),
        )
        assert service.find_for_user(client_user).total == 0

    def test_aware_timestamps_are_stored_as_naive_utc(self, service, client_user):
        expires = datetime(2030, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        notification = service.create(
            "Tz", "Offset", "system", recipient_user_id=client_user.id, expires_at=expires,
        )
        assert notification.expires_at == datetime(2030, 1, 1, 10, 0)

    def test_filters(self, service, client_user):
        service.create("A", "a", "order", recipient_user_id=client_user.id)
        service.create("B", "b", "payment", recipient_user_id=client_user.id,
                       priority=NotificationPriority.URGENT)

        assert service.find_for_user(client_user, type="payment").total == 1
        assert service.find_for_user(client_user, priority="urgent").total == 1
        assert service.find_for_user(client_user, status="read").total == 0


# =============================================================================
# TEST: READ STATE
# =============================================================================

class TestReadState:

    def test_mark_read_stamps_once(self, service, client_user):
        notification = service.create("Hi", "Hello", "system", recipient_user_id=client_user.id)

        service.mark_read(notification)
        first_read_at = notification.read_at
        service.mark_read(notification)

        assert notification.status == NotificationStatus.READ
        assert notification.read_at == first_read_at

    def test_mark_read_keeps_archived_status(self, service, client_user):
        notification = service.create("Hi", "Hello", "system", recipient_user_id=client_user.id)
        service.archive(notification)

        service.mark_read(notification)

        assert notification.status == NotificationStatus.ARCHIVED
        assert notification.read_at is not None

    def test_mark_all_read(self, service, client_user, customer_user):
        for i in range(3):
            service.create(f"N{i}", "msg", "order", recipient_user_id=client_user.id)
        service.create("Other", "msg", "order", recipient_user_id=customer_user.id)

        assert service.mark_all_read(client_user) == 3
        assert service.unread_count(client_user) == 0
        assert service.unread_count(customer_user) == 1
        assert service.mark_all_read(client_user) == 0


# =============================================================================
# TEST: CREATION
# =============================================================================

class TestCreation:

    def test_requires_a_recipient(self, service):
        with pytest.raises(ValueError):
            service.create("Hi", "Hello", "system")

    def test_unknown_recipient(self, service):
        with pytest.raises(RecipientNotFoundError):
            service.create("Hi", "Hello", "system", recipient_user_id="missing")

    def test_system_sender_by_default(self, service, client_user):
        notification = service.create("Hi", "Hello", "system", recipient_user_id=client_user.id)

        data = to_client_format(notification)

        assert data["sender"]["is_system"] is True
        assert data["sender"]["name"] == "System"
        assert data["is_read"] is False
        assert data["priority"] == "normal"

    def test_user_sender(self, service, client_user, customer_user):
        notification = service.create(
            "Hi", "Hello", "message", sender=customer_user, recipient_user_id=client_user.id,
            extra_metadata={"order_id": "o-1"},
        )

        data = to_client_format(notification)

        assert data["sender"] == {
            "user_id": customer_user.id, "name": "Customer", "role": "customer", "is_system": False,
        }
        assert data["metadata"] == {"order_id": "o-1"}

    def test_bulk_by_role(self, service, make_user, client_user):
        make_user(role=UserRole.CLIENT, email="client2@example.com")

        created = service.create_bulk("Promo", "Sale", "marketing", user_role="client")

        assert len(created) == 2
        assert all(n.recipient_user_id for n in created)

    def test_bulk_by_ids(self, service, client_user, customer_user):
        created = service.create_bulk(
            "Promo", "Sale", "marketing", user_ids=[client_user.id, customer_user.id, "missing"],
        )
        assert {n.recipient_user_id for n in created} == {client_user.id, customer_user.id}

    def test_bulk_with_no_matching_users(self, service, db_session):
        with pytest.raises(NoRecipientsError):
            service.create_bulk("Promo", "Sale", "marketing", user_role="support")
        assert db_session.query(NotificationDB).count() == 0

    def test_bulk_requires_a_target(self, service):
        with pytest.raises(ValueError):
            service.create_bulk("Promo", "Sale", "marketing")


# =============================================================================
# TEST: STATS / ADMIN
# =============================================================================

class TestStatsAndAdmin:

    def test_user_stats(self, service, client_user):
        service.create("A", "a", "order", recipient_user_id=client_user.id)
        read = service.create("B", "b", "order", recipient_user_id=client_user.id)
        service.create("C", "c", "payment", recipient_user_id=client_user.id)
        service.mark_read(read)

        stats = service.stats(client_user)

        assert stats["total"] == 3
        assert stats["unread"] == 2
        by_type = {item["type"]: item for item in stats["by_type"]}
        assert by_type["order"] == {"type": "order", "count": 2, "unread": 1}

    def test_analytics(self, service, client_user, customer_user):
        service.create("A", "a", "order", recipient_user_id=client_user.id,
                       priority=NotificationPriority.CRITICAL)
        read = service.create("B", "b", "order", recipient_user_id=customer_user.id)
        service.mark_read(read)

        data = service.analytics()

        assert data["analytics"] == {
            "total_notifications": 2,
            "unread_notifications": 1,
            "read_notifications": 1,
            "urgent_notifications": 1,
        }
        priorities = {item["priority"]: item["count"] for item in data["priority_breakdown"]}
        assert priorities == {"critical": 1, "normal": 1}

    def test_admin_list_filters_by_user(self, service, client_user, customer_user):
        service.create("A", "a", "order", recipient_user_id=client_user.id)
        service.create("B", "b", "order", recipient_user_id=customer_user.id)

        assert service.admin_list().total == 2
        assert service.admin_list(user_id=client_user.id).total == 1

    def test_cleanup_expired(self, service, client_user):
        service.create("Old", "x", "system", recipient_user_id=client_user.id,
                       expires_at=datetime.utcnow() - timedelta(minutes=5))
        service.create("Live", "x", "system", recipient_user_id=client_user.id,
                       expires_at=datetime.utcnow() + timedelta(days=5))
        service.create("Forever", "x", "system", recipient_user_id=client_user.id)

        assert service.cleanup_expired() == 1
        assert service.find_for_user(client_user, include_expired=True).total == 2


# =============================================================================
# TEST: API
# =============================================================================

class TestNotificationsApi:

    def test_list_envelope(self, client, auth_headers, service, client_user):
        service.create("Hi", "Hello", "system", recipient_user_id=client_user.id)

        response = client.get("/notifications", headers=auth_headers(client_user))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["unread_count"] == 1
        assert body["data"]["pagination"]["total"] == 1
        assert body["data"]["notifications"][0]["title"] == "Hi"

    def test_requires_authentication(self, client):
        response = client.get("/notifications")
        assert response.status_code in (401, 403)

    def test_create_to_role(self, client, auth_headers, client_user, customer_user):
        response = client.post(
            "/notifications",
            json={"title": "Hello", "message": "To all clients", "type": "system", "recipient_role": "client"},
            headers=auth_headers(customer_user),
        )

        assert response.status_code == 200
        assert response.json()["data"]["recipient"]["role"] == "client"
        count = client.get("/notifications/count", headers=auth_headers(client_user))
        assert count.json()["data"]["unread_count"] == 1

    def test_create_without_recipient(self, client, auth_headers, client_user):
        response = client.post(
            "/notifications",
            json={"title": "Hello", "message": "Nobody", "type": "system"},
            headers=auth_headers(client_user),
        )
        assert response.status_code == 400

    def test_create_for_unknown_user(self, client, auth_headers, client_user):
        response = client.post(
            "/notifications",
            json={"title": "Hello", "message": "x", "type": "system", "recipient_user_id": "missing"},
            headers=auth_headers(client_user),
        )
        assert response.status_code == 404

    def test_other_users_notification_is_not_found(self, client, auth_headers, service, client_user, customer_user):
        notification = service.create("Private", "x", "system", recipient_user_id=client_user.id)

        response = client.put(f"/notifications/{notification.id}/read", headers=auth_headers(customer_user))

        assert response.status_code == 404

    def test_mark_read_and_read_all(self, client, auth_headers, service, client_user):
        first = service.create("A", "a", "system", recipient_user_id=client_user.id)
        service.create("B", "b", "system", recipient_user_id=client_user.id)
        headers = auth_headers(client_user)

        response = client.put(f"/notifications/{first.id}/read", headers=headers)
        assert response.json()["data"]["is_read"] is True

        response = client.put("/notifications/read-all", headers=headers)
        assert response.json()["data"]["updated"] == 1

    def test_bulk_requires_permission(self, client, auth_headers, make_user, client_user):
        plain_admin = make_user(role=UserRole.ADMIN, email="admin@example.com")
        payload = {"title": "Promo", "message": "Sale", "type": "marketing", "user_role": "client"}

        assert client.post("/notifications/bulk", json=payload, headers=auth_headers(client_user)).status_code == 403
        assert client.post("/notifications/bulk", json=payload, headers=auth_headers(plain_admin)).status_code == 403

    def test_bulk_with_permission(self, client, auth_headers, make_user, client_user):
        admin = make_user(
            role=UserRole.ADMIN, email="admin@example.com",
            permissions={"can_manage_notifications": True},
        )

        response = client.post(
            "/notifications/bulk",
            json={"title": "Promo", "message": "Sale", "type": "marketing", "user_role": "client"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        assert response.json()["data"]["count"] == 1

    def test_bulk_with_no_recipients(self, client, auth_headers, main_admin):
        response = client.post(
            "/notifications/bulk",
            json={"title": "Promo", "message": "Sale", "type": "marketing", "user_role": "support"},
            headers=auth_headers(main_admin),
        )
        assert response.status_code == 400

    def test_admin_cleanup(self, client, auth_headers, service, main_admin, client_user):
        service.create("Old", "x", "system", recipient_user_id=client_user.id,
                       expires_at=datetime.utcnow() - timedelta(minutes=5))

        response = client.post("/notifications/admin/cleanup", headers=auth_headers(main_admin))

        assert response.status_code == 200
        assert response.json()["data"]["deleted_count"] == 1

    def test_admin_analytics(self, client, auth_headers, service, main_admin, client_user):
        service.create("A", "a", "order", recipient_user_id=client_user.id)

        response = client.get("/notifications/admin/analytics", headers=auth_headers(main_admin))

        assert response.status_code == 200
        assert response.json()["data"]["analytics"]["total_notifications"] == 1
