"""
Tests for login, the query endpoint, database reconnect and health.
"""

import json

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

import database
from auth.jwt import verify_token
from models.user import ActivityLog
from tests.conftest import seed_kitchen


async def database_down():
    return False


class TestLogin:
    @pytest.mark.asyncio
    async def test_cashier_key_login(self, client, db_session):
        await seed_kitchen(db_session)

        response = await client.post("/auth/login", json={"password": "1234"})

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["user"] == {"id": "1234", "name": "Chef Sam", "is_emergency": False}
        assert verify_token(data["access_token"])["name"] == "Chef Sam"

        result = await db_session.execute(select(ActivityLog).where(ActivityLog.action == "LOGIN"))
        assert result.scalar_one().user_id == "1234"

    @pytest.mark.asyncio
    async def test_unknown_key(self, client, db_session):
        await seed_kitchen(db_session)

        response = await client.post("/auth/login", json={"password": "0000"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_emergency_key_rejected_while_database_is_up(self, client, db_session):
        await seed_kitchen(db_session)

        response = await client.post("/auth/login", json={"password": "911"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_emergency_login_while_database_is_down(self, client, monkeypatch):
        monkeypatch.setattr("auth.routes.check_connection", database_down)

        response = await client.post("/auth/login", json={"password": "911"})

        assert response.status_code == 200
        assert response.json()["user"]["is_emergency"] is True

        me = await client.get(
            "/auth/me", headers={"Authorization": f"Bearer {response.json()['access_token']}"}
        )
        assert me.json() == {"id": "emergency", "name": "Emergency", "is_emergency": True}

    @pytest.mark.asyncio
    async def test_regular_key_while_database_is_down(self, client, monkeypatch):
        monkeypatch.setattr("auth.routes.check_connection", database_down)

        response = await client.post("/auth/login", json={"password": "1234"})

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_me(self, client, auth_headers):
        response = await client.get("/auth/me", headers=auth_headers)

        assert response.json() == {"id": "1001", "name": "Chef Sam", "is_emergency": False}

    @pytest.mark.asyncio
    async def test_me_with_bad_token(self, client):
        response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401


class TestQuery:
    @pytest.mark.asyncio
    async def test_select_with_params(self, client, db_session, auth_headers):
        await seed_kitchen(db_session)

        response = await client.post(
            "/api/query",
            json={"query": "SELECT CAT_NAME FROM DB_POS_CATEGORY WHERE CAT_CODE = ?", "params": [2]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == [{"CAT_NAME": "Pastry"}]

    @pytest.mark.asyncio
    async def test_update_reports_rows_affected(self, client, db_session, auth_headers):
        await seed_kitchen(db_session)

        response = await client.post(
            "/api/query",
            json={"query": "UPDATE DB_POS_CATEGORY SET CAT_NAME = ? WHERE KDS = ?", "params": ["Hot", 1]},
            headers=auth_headers,
        )

        assert response.json() == {"success": True, "rowsAffected": 2}

    @pytest.mark.asyncio
    async def test_database_error_detail(self, client, auth_headers):
        response = await client.post(
            "/api/query", json={"query": "SELECT * FROM NO_SUCH_TABLE"}, headers=auth_headers
        )

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert "no such table" in detail["message"]
        assert set(detail) == {"message", "state", "line_number", "procedure", "server"}

    @pytest.mark.asyncio
    async def test_empty_query(self, client, auth_headers):
        response = await client.post("/api/query", json={"query": "  "}, headers=auth_headers)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        response = await client.post("/api/query", json={"query": "SELECT 1"})
        assert response.status_code == 401


class TestReconnect:
    @pytest.mark.asyncio
    async def test_missing_fields(self, client, auth_headers):
        response = await client.post(
            "/api/system/reconnect", json={"server": "pos01"}, headers=auth_headers
        )

        assert response.status_code == 400
        assert "database" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_reconnect_saves_config_first(self, client, auth_headers, monkeypatch, db_session):
        connected = []

        async def fake_connect(config=None, url=None):
            connected.append(config)

        monkeypatch.setattr(database, "connect_database", fake_connect)
        payload = {"server": "pos01", "database": "POS", "user": "kds", "password": "secret"}

        response = await client.post("/api/system/reconnect", json=payload, headers=auth_headers)

        assert response.status_code == 200
        assert connected == [payload]
        with open(database.CONFIG_PATH, encoding="utf-8") as f:
            assert json.load(f) == payload

        result = await db_session.execute(select(ActivityLog).where(ActivityLog.action == "RECONNECT_DATABASE"))
        assert json.loads(result.scalar_one().details) == {"server": "pos01", "database": "POS"}

    @pytest.mark.asyncio
    async def test_reconnect_uses_saved_config(self, client, auth_headers, monkeypatch):
        connected = []

        async def fake_connect(config=None, url=None):
            connected.append(config)

        monkeypatch.setattr(database, "connect_database", fake_connect)
        saved = {"server": "pos02", "database": "POS", "user": "kds", "password": "secret"}
        database.save_connection_config(saved)

        response = await client.post("/api/system/reconnect", headers=auth_headers)

        assert response.status_code == 200
        assert connected == [saved]

    @pytest.mark.asyncio
    async def test_reconnect_overwrites_corrupt_config(self, client, auth_headers, monkeypatch):
        connected = []

        async def fake_connect(config=None, url=None):
            connected.append(config)

        monkeypatch.setattr(database, "connect_database", fake_connect)
        with open(database.CONFIG_PATH, "w", encoding="utf-8") as f:
            f.write("{not json")
        payload = {"server": "pos01", "database": "POS", "user": "kds", "password": "secret"}

        response = await client.post("/api/system/reconnect", json=payload, headers=auth_headers)

        assert response.status_code == 200
        assert connected == [payload]
        with open(database.CONFIG_PATH, encoding="utf-8") as f:
            assert json.load(f) == payload

    @pytest.mark.asyncio
    async def test_reconnect_failure_detail(self, client, auth_headers, monkeypatch):
        async def refuse(config=None, url=None):
            raise OperationalError("SELECT 1", {}, Exception("Login failed for user 'kds'."))

        monkeypatch.setattr(database, "connect_database", refuse)
        payload = {"server": "pos01", "database": "POS", "user": "kds", "password": "wrong"}

        response = await client.post("/api/system/reconnect", json=payload, headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["detail"]["message"] == "Login failed for user 'kds'."

    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        response = await client.post("/api/system/reconnect", json={"server": "pos01"})
        assert response.status_code == 401


class TestConnectionConfig:
    def test_missing_file(self, tmp_path):
        assert database.load_connection_config(str(tmp_path / "config.json")) == {}

    def test_malformed_json_is_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")

        assert database.load_connection_config(str(path)) == {}

    def test_non_object_is_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2]", encoding="utf-8")

        assert database.load_connection_config(str(path)) == {}

    def test_save_merges_into_existing(self, tmp_path):
        path = str(tmp_path / "config.json")
        database.save_connection_config({"server": "pos01", "port": 1433}, path)

        merged = database.save_connection_config({"server": "pos02"}, path)

        assert merged == {"server": "pos02", "port": 1433}
        assert database.load_connection_config(path) == merged


class TestHealth:
    @pytest.mark.asyncio
    async def test_database_connected(self, client):
        response = await client.get("/api/system/health")

        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"

    @pytest.mark.asyncio
    async def test_database_down(self, client, monkeypatch):
        monkeypatch.setattr(database, "check_connection", database_down)

        response = await client.get("/api/system/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["database"] == "disconnected"

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "healthy"}
