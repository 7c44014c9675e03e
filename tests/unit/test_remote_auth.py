"""Tests for the on-disk credential store and token refresh."""
import json
from datetime import datetime, timedelta

import httpx
import pytest

from vtrack.remote.auth import CREDENTIALS_FILE_NAME, CredentialProvider
from vtrack.sync.errors import AuthError, CredentialExpiredError, NetworkError, NoCredentialsError

NOW = datetime(2026, 5, 1, 12, 0, 0)
TOKEN_URL = "https://sync.example.org/oauth/token"


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def tmp_credentials_dir(tmp_path):
    return tmp_path / "credentials"


def make_provider(tmp_credentials_dir, handler=None):
    transport = httpx.MockTransport(handler) if handler else None
    return CredentialProvider(
        tmp_credentials_dir, TOKEN_URL, transport=transport, clock=lambda: NOW
    )


def stored(access="tok-1", refresh="ref-1", expires_in=3600):
    return {
        "access_token": access,
        "refresh_token": refresh,
        "expires_at": (NOW + timedelta(seconds=expires_in)).isoformat(),
    }


# ─── Tests: save / load ───────────────────────────────────────────────────────

class TestSaveLoad:
    def test_save_creates_owner_only_file(self, tmp_credentials_dir):
        creds = make_provider(tmp_credentials_dir)
        creds.save(stored())
        path = tmp_credentials_dir / CREDENTIALS_FILE_NAME
        assert path.exists()
        assert oct(path.stat().st_mode)[-3:] == "600"
        assert oct(tmp_credentials_dir.stat().st_mode)[-3:] == "700"

    def test_load_without_setup_raises(self, tmp_credentials_dir):
        with pytest.raises(NoCredentialsError):
            make_provider(tmp_credentials_dir).load()

    def test_clear(self, tmp_credentials_dir):
        creds = make_provider(tmp_credentials_dir)
        creds.save(stored())
        creds.clear()
        assert not creds.has_credentials()


# ─── Tests: tokens ────────────────────────────────────────────────────────────

class TestGetToken:
    def test_returns_valid_token(self, tmp_credentials_dir):
        creds = make_provider(tmp_credentials_dir)
        creds.save(stored())
        assert creds.get_token() == "tok-1"

    def test_expired_token_raises(self, tmp_credentials_dir):
        creds = make_provider(tmp_credentials_dir)
        creds.save(stored(expires_in=-10))
        with pytest.raises(CredentialExpiredError):
            creds.get_token()

    def test_token_inside_skew_window_counts_as_expired(self, tmp_credentials_dir):
        creds = make_provider(tmp_credentials_dir)
        creds.save(stored(expires_in=10))
        with pytest.raises(CredentialExpiredError):
            creds.get_token()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_stores_new_token(self, tmp_credentials_dir):
        seen = {}

        def handler(request):
            seen["form"] = request.content.decode()
            return httpx.Response(200, json={"access_token": "tok-2", "expires_in": 1800})

        creds = make_provider(tmp_credentials_dir, handler)
        creds.save(stored(expires_in=-10))

        assert await creds.refresh() == "tok-2"
        assert "grant_type=refresh_token" in seen["form"]
        saved = json.loads((tmp_credentials_dir / CREDENTIALS_FILE_NAME).read_text())
        assert saved["access_token"] == "tok-2"
        assert saved["refresh_token"] == "ref-1"  # kept when the server does not rotate it
        assert creds.get_token() == "tok-2"

    @pytest.mark.asyncio
    async def test_rejected_refresh_raises_auth_error(self, tmp_credentials_dir):
        creds = make_provider(tmp_credentials_dir, lambda request: httpx.Response(401))
        creds.save(stored())
        with pytest.raises(AuthError):
            await creds.refresh()

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_raises_network_error(self, tmp_credentials_dir, monkeypatch):
        def handler(request):
            raise httpx.ConnectError("no route", request=request)

        async def no_sleep(_):
            return None

        monkeypatch.setattr("vtrack.sync.backoff.asyncio.sleep", no_sleep)
        creds = make_provider(tmp_credentials_dir, handler)
        creds.save(stored())
        with pytest.raises(NetworkError):
            await creds.refresh()

    @pytest.mark.asyncio
    async def test_authenticate_and_save(self, tmp_credentials_dir):
        def handler(request):
            assert "grant_type=password" in request.content.decode()
            return httpx.Response(200, json={
                "access_token": "tok-new", "refresh_token": "ref-new", "expires_in": 3600,
            })

        creds = make_provider(tmp_credentials_dir, handler)
        assert await creds.authenticate_and_save("coordinator", "s3cret") == "tok-new"
        saved = creds.load()
        assert saved["refresh_token"] == "ref-new"
        assert "s3cret" not in json.dumps(saved)
