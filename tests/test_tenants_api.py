"""
בדיקות API ל-/api/tenants — רישום, עדכון וספריית קבצים
"""
import pytest

from app.db.models.tenant import BotModeName

OWNER = "33699999999@c.us"


class TestTenantCrud:
    @pytest.mark.unit
    async def test_create(self, test_client):
        response = await test_client.post("/api/tenants", json={
            "id": "shop1",
            "displayName": "Shop One",
            "botMode": "ecommerce",
            "ownerOutwardId": "+33 6 99 99 99 99",
            "bankReference": "IBAN FR76 123",
            "acceptCod": True,
            "completionApiKey": "sk-test",
        })

        assert response.status_code == 201
        body = response.json()
        assert body["id"] == "shop1"
        assert body["botMode"] == "ecommerce"
        assert body["ownerOutwardId"] == "33699999999"
        assert body["acceptCod"] is True
        assert body["hasCompletionKey"] is True
        assert "completionApiKey" not in body
        assert "sk-test" not in response.text

    @pytest.mark.unit
    async def test_defaults_to_conversational(self, test_client):
        response = await test_client.post("/api/tenants", json={"id": "cafe1", "displayName": "Cafe"})

        body = response.json()
        assert body["botMode"] == "conversational"
        assert body["isActive"] is True
        assert body["hasCompletionKey"] is False

    @pytest.mark.unit
    async def test_ecommerce_requires_owner(self, test_client):
        response = await test_client.post("/api/tenants", json={
            "id": "shop1", "displayName": "Shop", "botMode": "ecommerce",
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2005"

    @pytest.mark.unit
    async def test_invalid_owner_phone(self, test_client):
        response = await test_client.post("/api/tenants", json={
            "id": "shop1", "displayName": "Shop", "ownerOutwardId": "not-a-phone",
        })
        assert response.status_code == 422

    @pytest.mark.unit
    async def test_duplicate(self, test_client, tenant_factory):
        await tenant_factory("cafe1", "Cafe")

        response = await test_client.post("/api/tenants", json={"id": "cafe1", "displayName": "Again"})

        assert response.status_code == 409

    @pytest.mark.unit
    async def test_get_unknown(self, test_client):
        response = await test_client.get("/api/tenants/ghost")
        assert response.status_code == 404

    @pytest.mark.unit
    async def test_patch(self, test_client, tenant_factory):
        await tenant_factory("cafe1", "Cafe")

        response = await test_client.patch("/api/tenants/cafe1", json={
            "displayName": "Cafe Deluxe",
            "businessData": "Espresso 2.5 EUR",
        })

        body = response.json()
        assert body["displayName"] == "Cafe Deluxe"
        assert body["businessData"] == "Espresso 2.5 EUR"
        assert body["botMode"] == "conversational"

    @pytest.mark.unit
    async def test_patch_to_ecommerce_without_owner(self, test_client, tenant_factory):
        await tenant_factory("cafe1", "Cafe")

        response = await test_client.patch("/api/tenants/cafe1", json={"botMode": "ecommerce"})

        assert response.status_code == 400

    @pytest.mark.unit
    async def test_patch_does_not_touch_live_session(
        self, test_client, tenant_factory, session_manager
    ):
        """session פעיל ממשיך עם ההגדרות שאיתן נוצר"""
        await tenant_factory("cafe1", "Cafe")
        await test_client.post("/api/sessions", json={"tenantId": "cafe1"})

        await test_client.patch("/api/tenants/cafe1", json={
            "botMode": "ecommerce", "ownerOutwardId": OWNER,
        })

        record = session_manager.get_record("cafe1")
        assert record.config.bot_mode.name == BotModeName.CONVERSATIONAL


class TestLibraryFiles:
    @pytest.mark.unit
    async def test_upload_list_delete(self, test_client, tenant_factory, file_relay):
        await tenant_factory("cafe1", "Cafe")

        upload = await test_client.post(
            "/api/tenants/cafe1/files",
            data={"label": "menu"},
            files={"file": ("menu.pdf", b"%PDF-1.4 menu", "application/pdf")},
        )

        assert upload.status_code == 201
        created = upload.json()
        assert created["label"] == "menu"
        assert created["category"] == "document"
        assert created["size"] == len(b"%PDF-1.4 menu")
        stored = list((file_relay.base_dir / "library" / "cafe1").iterdir())
        assert len(stored) == 1

        listed = (await test_client.get("/api/tenants/cafe1/files")).json()
        assert [f["id"] for f in listed] == [created["id"]]

        deleted = await test_client.delete(f"/api/tenants/cafe1/files/{created['id']}")
        assert deleted.status_code == 204
        assert (await test_client.get("/api/tenants/cafe1/files")).json() == []
        assert list((file_relay.base_dir / "library" / "cafe1").iterdir()) == []

    @pytest.mark.unit
    async def test_upload_too_large(self, test_client, tenant_factory, file_relay):
        await tenant_factory("cafe1", "Cafe")

        response = await test_client.post(
            "/api/tenants/cafe1/files",
            data={"label": "catalog"},
            files={"file": ("big.pdf", b"x" * (file_relay.max_file_size + 1), "application/pdf")},
        )

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "ERR_6002"

    @pytest.mark.unit
    async def test_upload_unknown_tenant(self, test_client):
        response = await test_client.post(
            "/api/tenants/ghost/files",
            data={"label": "menu"},
            files={"file": ("menu.pdf", b"%PDF", "application/pdf")},
        )
        assert response.status_code == 404

    @pytest.mark.unit
    async def test_delete_other_tenants_file(self, test_client, tenant_factory):
        await tenant_factory("cafe1", "Cafe")
        await tenant_factory("cafe2", "Other Cafe")
        upload = await test_client.post(
            "/api/tenants/cafe1/files",
            data={"label": "menu"},
            files={"file": ("menu.pdf", b"%PDF", "application/pdf")},
        )

        response = await test_client.delete(f"/api/tenants/cafe2/files/{upload.json()['id']}")

        assert response.status_code == 404
