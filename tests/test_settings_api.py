"""
Tests for business settings and file uploads.

Test Coverage:
1. Settings rows are created lazily with defaults
2. Business profile, notification preference and integration updates
3. Logo upload: image check, replacement removes the previous file
4. General uploads: MIME categories, ownership on delete, listing
5. Storage statistics
"""
import pytest

from app.models.db_models import FileDB, SettingsDB


@pytest.fixture
def owner(make_user):
    return make_user(email="owner@shop.example.com", name="Shop Owner")


@pytest.fixture
def headers(auth_headers, owner):
    return auth_headers(owner)


def _upload(client, headers, name="notes.txt", body=b"hello", content_type="text/plain"):
    return client.post("/settings/upload-file", files={"file": (name, body, content_type)}, headers=headers)


def _upload_logo(client, headers, name="logo.png", body=b"\x89PNG fake", content_type="image/png"):
    return client.post("/settings/upload-logo", files={"logo": (name, body, content_type)}, headers=headers)


# =============================================================================
# TEST: PROFILE / PREFERENCES
# =============================================================================

class TestSettings:

    def test_defaults_created_on_first_read(self, client, headers, owner, db_session):
        assert db_session.query(SettingsDB).count() == 0

        profile = client.get("/settings/business-profile", headers=headers).json()

        assert profile["business_name"] == ""
        assert profile["logo_url"] == ""
        assert db_session.query(SettingsDB).filter(SettingsDB.user_id == owner.id).count() == 1

    def test_notification_defaults(self, client, headers):
        prefs = client.get("/settings/notifications", headers=headers).json()
        assert prefs == {
            "email_notifications": True,
            "sms_notifications": False,
            "order_notifications": True,
            "marketing_notifications": False,
        }

    def test_update_business_profile(self, client, headers):
        response = client.put(
            "/settings/business-profile",
            json={"business_name": "Corner Diner", "business_phone": "555-0100"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["business_name"] == "Corner Diner"
        assert client.get("/settings/business-profile", headers=headers).json()["business_phone"] == "555-0100"

    def test_partial_notification_update(self, client, headers):
        response = client.put("/settings/notifications", json={"sms_notifications": True}, headers=headers)

        prefs = response.json()
        assert prefs["sms_notifications"] is True
        assert prefs["email_notifications"] is True

    def test_integration_update(self, client, headers):
        response = client.put(
            "/settings/integrations",
            json={"platform": "UberEats", "connected": True, "store_id": "store-42"},
            headers=headers,
        )

        assert response.status_code == 200
        settings = response.json()["settings"]
        assert settings["uber_eats_connected"] is True
        assert settings["uber_eats_store_id"] == "store-42"

    def test_unknown_integration(self, client, headers):
        response = client.put(
            "/settings/integrations", json={"platform": "myspace", "connected": True}, headers=headers,
        )
        assert response.status_code == 400

    def test_settings_are_per_user(self, client, headers, make_user, auth_headers):
        other = make_user(email="other@example.com")
        client.put("/settings/business-profile", json={"business_name": "Mine"}, headers=headers)

        profile = client.get("/settings/business-profile", headers=auth_headers(other)).json()

        assert profile["business_name"] == ""


# =============================================================================
# TEST: LOGO
# =============================================================================

class TestLogo:

    def test_rejects_non_image(self, client, headers, db_session):
        response = _upload_logo(client, headers, name="logo.pdf", content_type="application/pdf")

        assert response.status_code == 400
        assert db_session.query(FileDB).count() == 0

    def test_upload_sets_logo(self, client, headers, upload_root):
        response = _upload_logo(client, headers)

        assert response.status_code == 200
        body = response.json()
        assert body["logo_url"].startswith("/uploads/logos/")
        assert body["file_name"] == "logo.png"
        assert len(list((upload_root / "logos").iterdir())) == 1
        assert client.get("/settings/business-profile", headers=headers).json()["logo_url"] == body["logo_url"]

    def test_replacement_removes_previous_logo(self, client, headers, upload_root, db_session):
        first = _upload_logo(client, headers).json()
        second = _upload_logo(client, headers, name="new.png").json()

        assert first["logo_url"] != second["logo_url"]
        assert len(list((upload_root / "logos").iterdir())) == 1
        assert db_session.query(FileDB).filter(FileDB.category == "logos").count() == 1

    def test_too_large(self, client, headers, upload_root):
        from app.main import app
        from app.routers.settings import get_storage
        from app.services.storage import LocalStorageService

        app.dependency_overrides[get_storage] = lambda: LocalStorageService(root=str(upload_root), max_bytes=4)

        response = _upload_logo(client, headers, body=b"0123456789")

        assert response.status_code == 413


# =============================================================================
# TEST: FILES
# =============================================================================

class TestFiles:

    @pytest.mark.parametrize("name,content_type,category", [
        ("photo.jpg", "image/jpeg", "images"),
        ("clip.mp4", "video/mp4", "videos"),
        ("menu.pdf", "application/pdf", "documents"),
        ("notes.txt", "text/plain", "general"),
    ])
    def test_upload_category(self, client, headers, name, content_type, category):
        response = _upload(client, headers, name=name, content_type=content_type)

        body = response.json()
        assert response.status_code == 200
        assert body["category"] == category
        assert body["file_key"].startswith(f"{category}/")
        assert body["file_size"] == 5

    def test_delete_own_file(self, client, headers, upload_root):
        key = _upload(client, headers).json()["file_key"]

        response = client.delete(f"/settings/delete-file/{key}", headers=headers)

        assert response.status_code == 200
        assert not (upload_root / key).exists()
        assert client.delete(f"/settings/delete-file/{key}", headers=headers).status_code == 404

    def test_cannot_delete_another_users_file(self, client, headers, make_user, auth_headers, upload_root):
        key = _upload(client, headers).json()["file_key"]
        intruder = make_user(email="intruder@example.com")

        response = client.delete(f"/settings/delete-file/{key}", headers=auth_headers(intruder))

        assert response.status_code == 404
        assert (upload_root / key).exists()

    def test_deleting_logo_clears_profile(self, client, headers, db_session):
        logo = _upload_logo(client, headers).json()
        record = db_session.query(FileDB).filter(FileDB.id == logo["file_id"]).one()

        client.delete(f"/settings/delete-file/{record.file_key}", headers=headers)

        assert client.get("/settings/business-profile", headers=headers).json()["logo_url"] == ""

    def test_list_files_by_category(self, client, headers):
        _upload(client, headers, name="a.jpg", content_type="image/jpeg")
        _upload(client, headers, name="b.jpg", content_type="image/jpeg")
        _upload(client, headers, name="c.pdf", content_type="application/pdf")

        everything = client.get("/settings/files", headers=headers).json()
        images = client.get("/settings/files/images", headers=headers).json()
        all_alias = client.get("/settings/files/all", headers=headers).json()

        assert everything["pagination"]["total"] == 3
        assert everything["category"] == "all"
        assert images["pagination"]["total"] == 2
        assert images["category"] == "images"
        assert all_alias["pagination"]["total"] == 3

    def test_storage_stats(self, client, headers):
        _upload(client, headers, name="a.jpg", content_type="image/jpeg")
        _upload(client, headers, name="c.pdf", content_type="application/pdf")

        stats = client.get("/settings/storage-stats", headers=headers).json()

        assert stats["storage_type"] == "local"
        assert stats["total_files"] == 2
        assert "root" not in stats
        assert stats["total_size"] == 10
        assert set(stats["folders"]) == {"images", "documents"}
