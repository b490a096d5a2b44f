from datetime import timedelta

import pytest
from httpx import AsyncClient

from intranet.exceptions import Unauthenticated
from intranet.services.identity import TokenIdentityProvider
from intranet.utils.auth import create_access_token, decode_token

from conftest import auth_headers_for, make_identity


class TestJWTToken:
    """Tests for JWT token creation and validation."""

    def test_decode_valid_token(self):
        """Test that valid token carries the identity claims."""
        identity = make_identity("token-user", display_name="Token User")
        payload = decode_token(create_access_token(identity))
        assert payload.sub == "token-user"
        assert payload.name == "Token User"
        assert payload.email == identity.email

    def test_decode_expired_token(self):
        """Test that expired token raises error."""
        token = create_access_token(make_identity(), expires_delta=timedelta(hours=-1))

        with pytest.raises(Unauthenticated):
            decode_token(token)


class TestIdentityProvider:
    def test_sign_in_emits_identity(self):
        provider = TokenIdentityProvider()
        events = []
        provider.on_state_change(events.append)

        identity = provider.sign_in(create_access_token(make_identity("emitter")))

        assert identity.subject_id == "emitter"
        assert events == [identity]
        assert provider.resolved

    def test_invalid_token_does_not_emit(self):
        provider = TokenIdentityProvider()
        events = []
        provider.on_state_change(events.append)

        with pytest.raises(Unauthenticated):
            provider.sign_in("garbage")
        assert events == []
        assert not provider.resolved

    def test_sign_out_emits_none(self):
        provider = TokenIdentityProvider()
        events = []
        subscription = provider.on_state_change(events.append)
        provider.sign_in(create_access_token(make_identity()))
        provider.sign_out()
        subscription.unsubscribe()
        provider.sign_out()

        assert len(events) == 2
        assert events[-1] is None


class TestAuthStatus:
    @pytest.mark.asyncio
    async def test_dev_mode(self, client: AsyncClient):
        response = await client.get("/api/v1/auth/status")
        assert response.status_code == 200
        assert response.json() == {"configured": True, "mode": "dev", "error": None}


class TestAuthSync:
    """Tests for auth sync endpoint."""

    @pytest.mark.asyncio
    async def test_sync_new_user(self, client: AsyncClient):
        """Test syncing a new user bootstraps an entry with no roles."""
        response = await client.post(
            "/api/v1/auth/sync",
            json={
                "external_id": "new-user-123",
                "email": "newuser@municipio.example",
                "display_name": "New User",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["subject_id"] == "new-user-123"
        assert data["roles"] == []
        assert data["is_new_user"] is True
        assert decode_token(data["access_token"]).sub == "new-user-123"

    @pytest.mark.asyncio
    async def test_sync_existing_user_keeps_roles(self, client: AsyncClient, create_entry):
        """Test syncing an existing user refreshes the profile only."""
        identity = make_identity("existing-user")
        await create_entry(identity, roles=["data"])

        response = await client.post(
            "/api/v1/auth/sync",
            json={
                "external_id": "existing-user",
                "email": identity.email,
                "display_name": "Updated Name",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["is_new_user"] is False
        assert data["display_name"] == "Updated Name"
        assert data["roles"] == ["data"]

    @pytest.mark.asyncio
    async def test_sync_missing_required_fields(self, client: AsyncClient):
        """Test sync with missing required fields fails."""
        response = await client.post(
            "/api/v1/auth/sync",
            json={
                "external_id": "test-123",
                # Missing email and display_name
            },
        )
        assert response.status_code == 422


class TestSessionDecision:
    @pytest.mark.asyncio
    async def test_signed_out_home_shows_sign_in(self, client: AsyncClient):
        response = await client.get("/api/v1/auth/session", params={"path": "/"})
        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "sign_in"
        assert data["snapshot"]["identity"] is None

    @pytest.mark.asyncio
    async def test_signed_out_elsewhere_redirects_home(self, client: AsyncClient):
        response = await client.get("/api/v1/auth/session", params={"path": "/perfil/"})
        data = response.json()
        assert data["path"] == "/perfil"
        assert data["outcome"] == "loading"
        assert data["redirect_to"] == "/"

    @pytest.mark.asyncio
    async def test_new_user_gets_onboarding(self, client: AsyncClient, auth_headers):
        response = await client.get(
            "/api/v1/auth/session", params={"path": "/candidate"}, headers=auth_headers
        )
        data = response.json()
        assert data["outcome"] == "pass_through"
        assert data["snapshot"]["roles"] == []

    @pytest.mark.asyncio
    async def test_employee_home_is_central_dashboard(self, client: AsyncClient, create_entry):
        identity = make_identity("employee")
        await create_entry(identity, roles=["colaborador"])

        response = await client.get(
            "/api/v1/auth/session", headers=auth_headers_for(identity)
        )
        data = response.json()
        assert data["outcome"] == "central_dashboard"
        assert data["snapshot"]["roles"] == ["collaborator"]
        assert data["snapshot"]["primary_role"] == "collaborator"


class TestProtectedRoutes:
    """Tests for authentication requirement on protected routes."""

    @pytest.mark.asyncio
    async def test_unauthenticated_request_fails(self, client: AsyncClient):
        response = await client.get("/api/v1/users/me")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token_fails(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/users/me",
            headers={"Authorization": "Bearer invalid-token"},
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "unauthenticated"
