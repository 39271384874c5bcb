"""
Tests for bearer token caching and authentication.
"""

import base64

import pytest

from act_billing_sync.models import ConnectionStatus
from act_billing_sync.rate_limiter import TenantRateLimiter
from act_billing_sync.tokens import DATABASE_HEADER, TokenCache


@pytest.fixture
def make_tokens(store, http_client, settings, clock):
    def factory(cipher=None):
        limiter = TenantRateLimiter(min_interval_seconds=0, clock=clock.time, sleep=clock.sleep)
        return TokenCache(store, http_client, limiter, settings=settings, cipher=cipher, clock=clock.time)
    return factory


class ReversingCipher:
    def decrypt(self, secret: str) -> str:
        return secret[::-1]


class TestTokenCache:
    """Tests for TokenCache."""

    def test_authenticates_with_basic_credentials(self, make_tokens, connection, act_server, store):
        tokens = make_tokens()

        assert tokens.get(connection) == "token-1"

        request = act_server.requests[0]
        expected = base64.b64encode(b"api-user:s3cret").decode()
        assert request.url.path.endswith("/authorize")
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert request.headers[DATABASE_HEADER] == "ACME"

        saved = store.get_connection(connection.id)
        assert saved.cached_bearer_token == "token-1"
        assert saved.connection_status == ConnectionStatus.CONNECTED
        assert saved.total_api_calls == 1
        assert saved.token_expires_at is not None

    def test_reuses_token_within_refresh_threshold(self, make_tokens, connection, act_server, clock):
        tokens = make_tokens()
        tokens.get(connection)

        clock.advance(49 * 60)
        assert tokens.get(connection) == "token-1"
        assert act_server.auth_calls == 1

    def test_refreshes_after_threshold(self, make_tokens, connection, act_server, clock):
        """An in-memory token older than 50 minutes is not reused."""
        tokens = make_tokens()
        tokens.get(connection)

        clock.advance(51 * 60)
        assert tokens.get(connection) == "token-2"
        assert act_server.auth_calls == 2

    def test_promotes_persisted_token_in_new_process(self, make_tokens, connection, act_server, store):
        make_tokens().get(connection)

        reloaded = store.get_connection(connection.id)
        fresh = make_tokens()

        assert fresh.get(reloaded) == "token-1"
        assert act_server.auth_calls == 1
        assert fresh.get_stats()["promotions"] == 1

    def test_persisted_token_inside_buffer_is_not_promoted(
        self, make_tokens, connection, act_server, store, clock
    ):
        """A stored token expiring within 10 minutes triggers a fresh authorize."""
        make_tokens().get(connection)
        clock.advance(55 * 60)

        reloaded = store.get_connection(connection.id)
        assert make_tokens().get(reloaded) == "token-2"
        assert act_server.auth_calls == 2

    def test_invalidated_token_is_not_promoted_again(self, make_tokens, connection, act_server, store):
        tokens = make_tokens()
        tokens.get(connection)
        tokens.invalidate(connection.tenant_id)

        reloaded = store.get_connection(connection.id)
        assert tokens.get(reloaded) == "token-2"

    def test_auth_failure_marks_connection_failed(self, make_tokens, connection, act_server, store):
        act_server.auth_status = 401
        tokens = make_tokens()

        assert tokens.get(connection) is None

        saved = store.get_connection(connection.id)
        assert saved.connection_status == ConnectionStatus.FAILED
        assert saved.connection_error == "Auth failed: 401 Unauthorized"
        assert saved.cached_bearer_token is None

    def test_tenants_have_separate_tokens(self, make_tokens, connection, store, act_server):
        other = store.add_connection(
            "tenant-2",
            username="other",
            password_encrypted="pw",
            database_name="OTHER",
            api_base_url=connection.api_base_url,
        )
        tokens = make_tokens()

        assert tokens.get(connection) == "token-1"
        assert tokens.get(other) == "token-2"
        assert tokens.get(connection) == "token-1"

    def test_cipher_decrypts_password(self, make_tokens, connection, act_server):
        make_tokens(cipher=ReversingCipher()).get(connection)

        expected = base64.b64encode(b"api-user:terc3s").decode()
        assert act_server.requests[0].headers["Authorization"] == f"Basic {expected}"

    def test_forget_clears_revocation(self, make_tokens, connection, store, act_server):
        tokens = make_tokens()
        tokens.get(connection)
        tokens.invalidate(connection.tenant_id)
        tokens.forget(connection.tenant_id)

        reloaded = store.get_connection(connection.id)
        assert tokens.get(reloaded) == "token-1"
        assert act_server.auth_calls == 1
