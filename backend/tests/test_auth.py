# tests/test_auth.py — Login, profile and organisation scope
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from auth import AuthService
from models import AuditLog
from tests.conftest import get_auth_headers, make_user


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, owner_user, org_tree):
        res = await client.post("/api/v1/auth/login", json={
            "email": "owner@acme.test",
            "password": "Owner123!",
        })
        assert res.status_code == 200
        data = res.json()
        assert data["token_type"] == "bearer"
        assert data["access_token"]
        assert data["user"]["role"] == "owner"
        assert data["user"]["organisation_name"] == "Acme"
        assert set(data["scope"]) == {o.id for o in org_tree.values()}

    async def test_login_is_case_insensitive_on_email(self, client: AsyncClient, viewer_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "  Viewer@ACME.test ",
            "password": "Viewer123!",
        })
        assert res.status_code == 200
        assert res.json()["scope"] == [viewer_user.organisation_id]

    async def test_wrong_password(self, client: AsyncClient, admin_user, db_session):
        res = await client.post("/api/v1/auth/login", json={
            "email": "admin@acme.test",
            "password": "nope",
        })
        assert res.status_code == 401
        rows = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "auth.login_failed")
        )).scalars().all()
        assert len(rows) == 1
        assert rows[0].entity_id == admin_user.id

    async def test_unknown_email(self, client: AsyncClient, org_tree):
        res = await client.post("/api/v1/auth/login", json={
            "email": "ghost@acme.test",
            "password": "whatever",
        })
        assert res.status_code == 401

    async def test_inactive_user(self, client: AsyncClient, db_session, root_org):
        await make_user(db_session, root_org, "viewer", "former@acme.test", "Former123!", is_active=False)
        res = await client.post("/api/v1/auth/login", json={
            "email": "former@acme.test",
            "password": "Former123!",
        })
        assert res.status_code == 403

    async def test_lockout_after_repeated_failures(self, client: AsyncClient, viewer_user):
        for _ in range(5):
            res = await client.post("/api/v1/auth/login", json={
                "email": "viewer@acme.test", "password": "wrong",
            })
            assert res.status_code == 401
        res = await client.post("/api/v1/auth/login", json={
            "email": "viewer@acme.test", "password": "Viewer123!",
        })
        assert res.status_code == 429

    async def test_successful_login_is_audited(self, client: AsyncClient, viewer_user, db_session):
        await client.post("/api/v1/auth/login", json={
            "email": "viewer@acme.test", "password": "Viewer123!",
        })
        rows = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "auth.login")
        )).scalars().all()
        assert [r.actor_id for r in rows] == [viewer_user.id]


@pytest.mark.asyncio
class TestCurrentUser:
    async def test_me(self, client: AsyncClient, admin_user, org_tree):
        res = await client.get("/api/v1/me", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        data = res.json()
        assert data["user"]["inherited_roles"] == ["admin", "viewer"]
        assert data["user"]["organisation_name"] == "Acme"
        assert set(data["scope"]) == {org_tree["root"].id, org_tree["north"].id, org_tree["south"].id}

    async def test_organisations_for_root_admin(self, client: AsyncClient, admin_user, org_tree):
        res = await client.get("/api/v1/organisations", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        names = sorted(o["name"] for o in res.json())
        assert names == ["Acme", "Acme North", "Acme South"]

    async def test_organisations_for_child_admin(self, client: AsyncClient, child_admin):
        res = await client.get("/api/v1/organisations", headers=get_auth_headers(child_admin))
        assert [o["name"] for o in res.json()] == ["Acme North"]

    async def test_custom_role_has_no_inherited_roles(self, client: AsyncClient, auditor_user):
        res = await client.get("/api/v1/me", headers=get_auth_headers(auditor_user))
        assert res.status_code == 200
        assert res.json()["user"]["inherited_roles"] == []

    async def test_missing_token(self, client: AsyncClient):
        res = await client.get("/api/v1/me")
        assert res.status_code in (401, 403)

    async def test_garbage_token(self, client: AsyncClient):
        res = await client.get("/api/v1/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    async def test_expired_token(self, client: AsyncClient, viewer_user):
        token = AuthService.create_access_token(viewer_user, expires_delta=timedelta(seconds=-5))
        res = await client.get("/api/v1/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    async def test_deactivated_user_token_rejected(self, client: AsyncClient, viewer_user, db_session):
        headers = get_auth_headers(viewer_user)
        viewer_user.is_active = False
        await db_session.commit()
        res = await client.get("/api/v1/me", headers=headers)
        assert res.status_code == 401

    async def test_role_change_applies_to_existing_token(self, client: AsyncClient, viewer_user, db_session, org_tree):
        headers = get_auth_headers(viewer_user)
        viewer_user.role = "owner"
        await db_session.commit()
        res = await client.get("/api/v1/me", headers=headers)
        assert res.json()["user"]["role"] == "owner"
        assert len(res.json()["scope"]) == len(org_tree)


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    res = await client.get("/health")
    assert res.status_code == 200
    assert "X-Request-ID" in res.headers
