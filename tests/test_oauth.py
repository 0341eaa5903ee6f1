"""Tests for the OAuth2 PKCE flow and token lifecycle."""

import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from conftest import NOW, make_response
from jira_viewer.exceptions import (
    ConfigurationError,
    CsrfMismatchError,
    DecodeError,
    InvalidCallbackError,
    MissingVerifierError,
    NoRefreshTokenError,
    RefreshFailedError,
    TokenExchangeError,
    TransportError,
)
from jira_viewer.config import OAuthConfig
from jira_viewer.models import TokenResponse
from jira_viewer.oauth import (
    FlowState,
    OAuthManager,
    decode_jwt_claims,
    parse_token_response,
)
from jira_viewer.pkce import generate_code_challenge
from jira_viewer.secret_store import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TOKEN_EXPIRATION,
    USER_EMAIL,
)


def _b64url(data: dict) -> str:
    raw = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    return raw.rstrip("=")


def _id_token(claims: dict) -> str:
    return f"{_b64url({'alg': 'RS256'})}.{_b64url(claims)}.signature"


def _token_body(access="access-1", refresh="refresh-1", expires_in=3600, id_token=None):
    body = {"access_token": access, "token_type": "Bearer", "expires_in": expires_in}
    if refresh:
        body["refresh_token"] = refresh
    if id_token:
        body["id_token"] = id_token
    return body


def _manager(oauth_config, secret_store, session, clock=lambda: NOW):
    return OAuthManager(oauth_config, secret_store, session=session, clock=clock)


def _state_from(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


def _store_tokens(store, access="stored-access", refresh="stored-refresh", expires_at=None):
    if access:
        store.save(ACCESS_TOKEN, access)
    if refresh:
        store.save(REFRESH_TOKEN, refresh)
    if expires_at is not None:
        store.save(TOKEN_EXPIRATION, str(expires_at.timestamp()))


class TestDecodeJwtClaims:
    """Tests for decode_jwt_claims."""

    def test_extracts_claims(self):
        assert decode_jwt_claims(_id_token({"email": "a@b.com"})) == {"email": "a@b.com"}

    def test_restores_padding(self):
        # 20 bytes of JSON, so one "=" was stripped from the segment
        claims = {"email": "a@b.com"}
        token = _id_token(claims)
        assert len(token.split(".")[1]) % 4 == 3
        assert decode_jwt_claims(token) == claims

    def test_maps_url_safe_alphabet(self):
        claims = {"a": "??????"}
        segment = _b64url(claims)
        assert "_" in segment
        assert decode_jwt_claims(f"h.{segment}.s") == claims

    @pytest.mark.parametrize("token", ["", "no-dots", "a.%%%.c", "a.bm90IGpzb24.c"])
    def test_returns_none_for_malformed_tokens(self, token):
        assert decode_jwt_claims(token) is None


class TestParseTokenResponse:
    """Tests for parse_token_response."""

    def test_parses_full_response(self):
        result = parse_token_response(_token_body(id_token="id"))
        assert result == TokenResponse(
            access_token="access-1",
            expires_in=3600,
            token_type="Bearer",
            refresh_token="refresh-1",
            id_token="id",
        )

    def test_missing_access_token(self):
        with pytest.raises(DecodeError):
            parse_token_response({"expires_in": 3600})

    def test_missing_expires_in(self):
        with pytest.raises(DecodeError):
            parse_token_response({"access_token": "a"})

    def test_rejects_non_object(self):
        with pytest.raises(DecodeError):
            parse_token_response(["access_token"])


class TestStartFlow:
    """Tests for OAuthManager.start_flow."""

    def test_builds_authorization_url(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)

        url = manager.start_flow()

        parts = urlsplit(url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == oauth_config.authorization_endpoint
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}
        assert params["client_id"] == "viewer-client"
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == "jiraviewer://oauth-callback"
        assert params["scope"] == "openid profile email offline_access"
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == generate_code_challenge(
            manager._flow.code_verifier
        )
        assert params["state"] == manager._flow.state
        assert manager.state is FlowState.AWAITING_CALLBACK

    def test_each_flow_gets_new_state(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        first = _state_from(manager.start_flow())
        second = _state_from(manager.start_flow())
        assert first != second

    def test_requires_client_settings(self, secret_store, session):
        manager = _manager(OAuthConfig(), secret_store, session)
        with pytest.raises(ConfigurationError) as exc_info:
            manager.start_flow()
        assert exc_info.value.reason == "oauth"

    def test_cancel_flow_clears_context(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()
        manager.cancel_flow()
        assert not manager.flow_in_progress
        assert manager.state is FlowState.IDLE


class TestHandleCallback:
    """Tests for OAuthManager.handle_callback."""

    def test_exchanges_code(self, oauth_config, secret_store, session):
        session.post.return_value = make_response(200, _token_body())
        manager = _manager(oauth_config, secret_store, session)
        state = _state_from(manager.start_flow())
        verifier = manager._flow.code_verifier

        tokens = manager.handle_callback(f"jiraviewer://oauth-callback?code=abc&state={state}")

        assert tokens.access_token == "access-1"
        assert manager.is_authenticated
        assert manager.state is FlowState.AUTHENTICATED
        assert not manager.flow_in_progress
        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args[0] == oauth_config.token_endpoint
        assert kwargs["data"] == {
            "grant_type": "authorization_code",
            "client_id": "viewer-client",
            "code": "abc",
            "redirect_uri": "jiraviewer://oauth-callback",
            "code_verifier": verifier,
        }

    def test_state_mismatch_is_rejected(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()

        with pytest.raises(CsrfMismatchError):
            manager.handle_callback("jiraviewer://oauth-callback?code=abc&state=forged")

        session.post.assert_not_called()
        assert not manager.is_authenticated
        assert not manager.flow_in_progress
        assert manager.state is FlowState.ERROR

    def test_state_from_previous_flow_is_rejected(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        old_state = _state_from(manager.start_flow())
        manager.start_flow()

        with pytest.raises(CsrfMismatchError):
            manager.handle_callback(f"jiraviewer://oauth-callback?code=abc&state={old_state}")
        session.post.assert_not_called()

    def test_missing_state_is_rejected(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()
        with pytest.raises(CsrfMismatchError):
            manager.handle_callback("jiraviewer://oauth-callback?code=abc")

    def test_callback_without_flow_is_rejected(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        with pytest.raises(CsrfMismatchError):
            manager.handle_callback("jiraviewer://oauth-callback?code=abc&state=anything")

    def test_callback_is_single_use(self, oauth_config, secret_store, session):
        session.post.return_value = make_response(200, _token_body())
        manager = _manager(oauth_config, secret_store, session)
        url = f"jiraviewer://oauth-callback?code=abc&state={_state_from(manager.start_flow())}"
        manager.handle_callback(url)

        with pytest.raises(CsrfMismatchError):
            manager.handle_callback(url)

    def test_missing_code(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        state = _state_from(manager.start_flow())
        with pytest.raises(InvalidCallbackError, match="Authorization code not found"):
            manager.handle_callback(f"jiraviewer://oauth-callback?state={state}")
        assert not manager.flow_in_progress

    def test_provider_error_is_reported(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()
        with pytest.raises(InvalidCallbackError, match="access_denied"):
            manager.handle_callback("jiraviewer://oauth-callback?error=access_denied")

    def test_unparseable_url(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()
        with pytest.raises(InvalidCallbackError):
            manager.handle_callback("http://[::1/callback?code=abc")


class TestExchangeCode:
    """Tests for OAuthManager.exchange_code."""

    def test_requires_verifier(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        with pytest.raises(MissingVerifierError):
            manager.exchange_code("abc")
        session.post.assert_not_called()

    def test_server_rejection(self, oauth_config, secret_store, session):
        session.post.return_value = make_response(
            400, {"error": "invalid_grant"}, text='{"error": "invalid_grant"}'
        )
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()

        with pytest.raises(TokenExchangeError) as exc_info:
            manager.exchange_code("abc")

        assert exc_info.value.server_body == '{"error": "invalid_grant"}'
        assert not manager.is_authenticated
        assert secret_store.retrieve(ACCESS_TOKEN) is None

    def test_transport_failure(self, oauth_config, secret_store, session):
        session.post.side_effect = requests.ConnectionError("no route to host")
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()
        with pytest.raises(TransportError):
            manager.exchange_code("abc")

    def test_malformed_body(self, oauth_config, secret_store, session):
        session.post.return_value = make_response(200, None, text="<html>")
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()
        with pytest.raises(DecodeError):
            manager.exchange_code("abc")


class TestPersistTokens:
    """Tests for OAuthManager.persist_tokens."""

    def test_writes_secret_store(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)

        manager.persist_tokens(parse_token_response(_token_body()))

        assert secret_store.retrieve(ACCESS_TOKEN) == "access-1"
        assert secret_store.retrieve(REFRESH_TOKEN) == "refresh-1"
        expected = (NOW + timedelta(seconds=3600)).timestamp()
        assert float(secret_store.retrieve(TOKEN_EXPIRATION)) == pytest.approx(expected)

    def test_extracts_email_from_id_token(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        token = _id_token({"sub": "123", "email": "a@b.com"})

        manager.persist_tokens(parse_token_response(_token_body(id_token=token)))

        assert manager.user_email == "a@b.com"
        assert secret_store.retrieve(USER_EMAIL) == "a@b.com"

    def test_malformed_id_token_does_not_abort_save(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)

        tokens = manager.persist_tokens(
            parse_token_response(_token_body(id_token="header.!!not-base64!!.sig"))
        )

        assert tokens.access_token == "access-1"
        assert manager.is_authenticated
        assert manager.user_email is None
        assert secret_store.retrieve(USER_EMAIL) is None

    def test_keeps_refresh_token_when_not_rotated(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(hours=1))
        manager = _manager(oauth_config, secret_store, session)

        manager.persist_tokens(parse_token_response(_token_body(refresh=None)))

        assert manager.tokens.refresh_token == "stored-refresh"
        assert secret_store.retrieve(REFRESH_TOKEN) == "stored-refresh"

    def test_round_trip_through_secret_store(self, oauth_config, secret_store, session):
        token = _id_token({"email": "a@b.com"})
        _manager(oauth_config, secret_store, session).persist_tokens(
            parse_token_response(_token_body(id_token=token))
        )

        reloaded = _manager(oauth_config, secret_store, session)

        tokens = reloaded.tokens
        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh-1"
        assert tokens.user_email == "a@b.com"
        expected = NOW + timedelta(seconds=3600)
        assert abs((tokens.expires_at - expected).total_seconds()) < 1
        assert reloaded.is_authenticated
        session.post.assert_not_called()


class TestRefreshAccessToken:
    """Tests for OAuthManager.refresh_access_token."""

    def test_without_refresh_token(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, refresh=None, expires_at=NOW + timedelta(hours=1))
        manager = _manager(oauth_config, secret_store, session)
        assert manager.is_authenticated

        with pytest.raises(NoRefreshTokenError):
            manager.refresh_access_token()

        assert not manager.is_authenticated
        assert manager.state is FlowState.UNAUTHENTICATED
        session.post.assert_not_called()

    def test_without_any_token(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        with pytest.raises(NoRefreshTokenError):
            manager.refresh_access_token()
        assert not manager.is_authenticated

    def test_rotates_tokens(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(hours=1))
        session.post.return_value = make_response(
            200, _token_body(access="access-2", refresh="refresh-2")
        )
        manager = _manager(oauth_config, secret_store, session)

        tokens = manager.refresh_access_token()

        assert tokens.access_token == "access-2"
        assert secret_store.retrieve(REFRESH_TOKEN) == "refresh-2"
        assert session.post.call_args.kwargs["data"] == {
            "grant_type": "refresh_token",
            "client_id": "viewer-client",
            "refresh_token": "stored-refresh",
        }
        assert manager.state is FlowState.AUTHENTICATED

    def test_http_failure(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(hours=1))
        session.post.return_value = make_response(400, {"error": "invalid_grant"})
        manager = _manager(oauth_config, secret_store, session)

        with pytest.raises(RefreshFailedError):
            manager.refresh_access_token()

        assert not manager.is_authenticated
        assert manager.state is FlowState.UNAUTHENTICATED
        assert session.post.call_count == 1

    def test_transport_failure(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(hours=1))
        session.post.side_effect = requests.Timeout("timed out")
        manager = _manager(oauth_config, secret_store, session)

        with pytest.raises(RefreshFailedError):
            manager.refresh_access_token()
        assert not manager.is_authenticated


class TestGetValidAccessToken:
    """Tests for OAuthManager.get_valid_access_token."""

    def test_exactly_five_minutes_does_not_refresh(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(minutes=5))
        manager = _manager(oauth_config, secret_store, session)

        assert manager.get_valid_access_token() == "stored-access"
        session.post.assert_not_called()

    def test_under_five_minutes_refreshes(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(minutes=4, seconds=59))
        session.post.return_value = make_response(200, _token_body(access="fresh"))
        manager = _manager(oauth_config, secret_store, session)

        assert manager.get_valid_access_token() == "fresh"
        session.post.assert_called_once()

    def test_fresh_token_is_returned(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(hours=1))
        manager = _manager(oauth_config, secret_store, session)
        assert manager.get_valid_access_token() == "stored-access"

    def test_failed_refresh_returns_none(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(minutes=1))
        session.post.return_value = make_response(401, {"error": "invalid_client"})
        manager = _manager(oauth_config, secret_store, session)

        assert manager.get_valid_access_token() is None
        assert not manager.is_authenticated

    def test_unauthenticated_returns_none(self, oauth_config, secret_store, session):
        manager = _manager(oauth_config, secret_store, session)
        assert manager.get_valid_access_token() is None


class TestLoadStoredTokens:
    """Tests for token loading at startup."""

    def test_expired_token_is_refreshed(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW - timedelta(minutes=1))
        session.post.return_value = make_response(200, _token_body(access="fresh"))

        manager = _manager(oauth_config, secret_store, session)

        assert manager.tokens.access_token == "fresh"
        session.post.assert_called_once()

    def test_failed_startup_refresh_is_not_raised(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW - timedelta(minutes=1))
        session.post.side_effect = requests.ConnectionError("offline")

        manager = _manager(oauth_config, secret_store, session)

        assert not manager.is_authenticated
        assert isinstance(manager.last_error, RefreshFailedError)

    def test_ignores_unreadable_expiration(self, oauth_config, secret_store, session):
        _store_tokens(secret_store)
        secret_store.save(TOKEN_EXPIRATION, "soon")

        manager = _manager(oauth_config, secret_store, session)

        assert manager.is_authenticated
        assert manager.tokens.expires_at is None


class TestLogout:
    """Tests for OAuthManager.logout."""

    def test_clears_everything(self, oauth_config, secret_store, session):
        _store_tokens(secret_store, expires_at=NOW + timedelta(hours=1))
        secret_store.save(USER_EMAIL, "a@b.com")
        manager = _manager(oauth_config, secret_store, session)
        manager.start_flow()

        manager.logout()

        assert not manager.is_authenticated
        assert manager.user_email is None
        assert not manager.flow_in_progress
        assert manager.state is FlowState.IDLE
        for key in (ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_EXPIRATION, USER_EMAIL):
            assert secret_store.retrieve(key) is None
