"""End-to-end HTTP tests for signup, OTP login, refresh and the logout family."""
from unittest.mock import patch

import pytest


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestSignup:
    def test_signup_creates_account(self, client, mail):
        """Signup returns 201 with the new user and sends a welcome mail."""
        response = client.post(
            "/api/v1/auth/signup", json={"name": "Alice", "email": "Alice@Example.com"}
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["email"] == "alice@example.com"
        assert data["name"] == "Alice"
        assert data["userId"]
        assert data["message"] == "User registered successfully"
        assert mail.welcomed == [("alice@example.com", "Alice")]

    def test_duplicate_signup_conflicts(self, client):
        """Registering an address twice is a 409."""
        body = {"name": "Alice", "email": "alice@example.com"}
        assert client.post("/api/v1/auth/signup", json=body).status_code == 201
        response = client.post("/api/v1/auth/signup", json=body)
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "User with this email already exists"

    def test_validation_errors_use_problem_body(self, client):
        """Invalid fields produce a 400 problem body keyed by field."""
        response = client.post("/api/v1/auth/signup", json={"name": "A", "email": "nope"})
        assert response.status_code == 400
        body = response.json()
        assert body["title"] == "Validation Failed"
        assert body["status"] == 400
        assert body["detail"] == "Your request parameters didn't validate correctly."
        assert "email" in body["errors"]
        assert body["errors"]["name"] == ["size must be between 2 and 50"]

    def test_missing_field_reports_not_null(self, client):
        response = client.post("/api/v1/auth/signup", json={"name": "Alice"})
        assert response.status_code == 400
        assert response.json()["errors"]["email"] == ["must not be null"]


class TestRequestOtp:
    def test_unknown_email_is_rejected(self, client, mail):
        """No code is issued for an address without an account."""
        response = client.post(
            "/api/v1/auth/request-otp", json={"email": "ghost@example.com"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "INVALID MAIL"
        assert mail.codes == {}

    def test_code_is_mailed_and_expiry_reported(self, client, mail):
        """The response masks the address and reports the code lifetime in seconds."""
        client.post("/api/v1/auth/signup", json={"name": "Alice", "email": "alice@example.com"})
        response = client.post(
            "/api/v1/auth/request-otp", json={"email": "alice@example.com"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == "al***@example.com"
        assert 295 <= data["expiresIn"] <= 300
        assert data["message"] == "OTP has been sent to your email"
        assert len(mail.codes["alice@example.com"]) == 6

    def test_rate_limit_headers_on_success(self, client):
        client.post("/api/v1/auth/signup", json={"name": "Alice", "email": "alice@example.com"})
        response = client.post(
            "/api/v1/auth/request-otp", json={"email": "alice@example.com"}
        )
        assert response.headers["X-RateLimit-Limit"] in ("5", "10")
        assert int(response.headers["X-RateLimit-Remaining"]) >= 0

    def test_email_bucket_exhaustion_returns_429(self, client):
        """The sixth request for one address within a minute is throttled."""
        client.post("/api/v1/auth/signup", json={"name": "Alice", "email": "alice@example.com"})
        for _ in range(5):
            response = client.post(
                "/api/v1/auth/request-otp", json={"email": "alice@example.com"}
            )
            assert response.status_code == 200
        response = client.post("/api/v1/auth/request-otp", json={"email": "alice@example.com"})

        assert response.status_code == 429
        body = response.json()
        assert body["title"] == "Too Many Requests"
        assert body["status"] == 429
        assert body["instance"] == "/api/v1/auth/request-otp"
        assert body["detail"].startswith("Email rate limit exceeded")
        assert int(response.headers["Retry-After"]) >= 1
        assert body["retryAfter"] == int(response.headers["Retry-After"])
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"


class TestVerifyOtp:
    def test_successful_login_returns_token_pair(self, login):
        data = login()
        assert data["accessToken"] and data["refreshToken"]
        assert data["tokenType"] == "Bearer"
        assert data["expiresIn"] == 900
        assert data["email"] == "alice@example.com"

    def test_wrong_code_is_401_and_audited(self, client, mail, store):
        """A wrong code is rejected and recorded as a failed attempt."""
        client.post("/api/v1/auth/signup", json={"name": "Alice", "email": "alice@example.com"})
        client.post("/api/v1/auth/request-otp", json={"email": "alice@example.com"})
        code = mail.codes["alice@example.com"]

        response = client.post(
            "/api/v1/auth/verify-otp",
            json={"email": "alice@example.com", "otp": _wrong_code(code)},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid OTP. Please try again."
        (attempt,) = store.login_attempts
        assert not attempt.successful
        assert attempt.failure_reason == "Invalid OTP"

    def test_code_is_dead_after_too_many_guesses(self, client, mail):
        """After the attempt cap is passed even the right code fails."""
        client.post("/api/v1/auth/signup", json={"name": "Alice", "email": "alice@example.com"})
        client.post("/api/v1/auth/request-otp", json={"email": "alice@example.com"})
        code = mail.codes["alice@example.com"]
        for _ in range(4):
            client.post(
                "/api/v1/auth/verify-otp",
                json={"email": "alice@example.com", "otp": _wrong_code(code)},
            )
        response = client.post(
            "/api/v1/auth/verify-otp", json={"email": "alice@example.com", "otp": code}
        )
        assert response.status_code == 401

    def test_account_locks_after_repeated_failures(self, client, mail):
        """Five failed verifications lock the account with a 429."""
        client.post("/api/v1/auth/signup", json={"name": "Alice", "email": "alice@example.com"})
        client.post("/api/v1/auth/request-otp", json={"email": "alice@example.com"})
        code = mail.codes["alice@example.com"]
        for _ in range(5):
            client.post(
                "/api/v1/auth/verify-otp",
                json={"email": "alice@example.com", "otp": _wrong_code(code)},
            )
        response = client.post(
            "/api/v1/auth/request-otp", json={"email": "alice@example.com"}
        )
        assert response.status_code == 429
        assert response.json()["detail"].startswith("Account temporarily locked")

    def test_unknown_email_gets_same_401(self, client):
        """Unknown addresses are indistinguishable from wrong codes."""
        response = client.post(
            "/api/v1/auth/verify-otp", json={"email": "ghost@example.com", "otp": "123456"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid OTP. Please try again."


class TestRefresh:
    def test_refresh_mints_access_token(self, client, login):
        tokens = login()
        response = client.post(
            "/api/v1/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["accessToken"]
        assert data["tokenType"] == "Bearer"
        profile = client.get("/api/v1/user/profile", headers=_bearer(data["accessToken"]))
        assert profile.status_code == 200

    def test_access_token_cannot_refresh(self, client, login):
        tokens = login()
        response = client.post(
            "/api/v1/auth/refresh-token", json={"refreshToken": tokens["accessToken"]}
        )
        assert response.status_code == 401

    def test_blank_refresh_token_is_400(self, client):
        response = client.post("/api/v1/auth/refresh-token", json={"refreshToken": "  "})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Refresh token is required"

    def test_garbage_refresh_token_is_401(self, client):
        response = client.post("/api/v1/auth/refresh-token", json={"refreshToken": "x.y.z"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired refresh token"


class TestLogout:
    def test_logout_revokes_access_and_refresh(self, client, login):
        """After logout neither the access nor the refresh token works."""
        tokens = login()
        response = client.post("/api/v1/auth/logout", headers=_bearer(tokens["accessToken"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Logged out successfully"
        assert data["timestamp"]

        assert client.get(
            "/api/v1/user/profile", headers=_bearer(tokens["accessToken"])
        ).status_code == 401
        assert client.post(
            "/api/v1/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}
        ).status_code == 401

    def test_logout_without_token_still_succeeds(self, client, store):
        """Anonymous logout gets the generic success and writes no audit row."""
        response = client.post("/api/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["data"]["sessionsTerminated"] == 0
        assert store.logout_audit == []

    def test_logout_is_audited(self, client, login, store):
        tokens = login()
        client.post("/api/v1/auth/logout", headers=_bearer(tokens["accessToken"]))
        (entry,) = store.logout_audit
        assert entry.user_email == "alice@example.com"
        assert entry.logout_type == "SINGLE"

    def test_login_after_logout_works(self, client, login):
        """A fresh login is not caught by the earlier refresh cutoff."""
        first = login()
        client.post("/api/v1/auth/logout", headers=_bearer(first["accessToken"]))
        second = login()
        response = client.post(
            "/api/v1/auth/refresh-token", json={"refreshToken": second["refreshToken"]}
        )
        assert response.status_code == 200

    def test_logout_all_kills_every_session(self, client, login):
        """Tokens from other devices stop working after logout-all."""
        phone = login()
        laptop = login()
        response = client.post(
            "/api/v1/auth/logout-all", headers=_bearer(laptop["accessToken"])
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out from all devices successfully"

        assert client.get(
            "/api/v1/user/profile", headers=_bearer(phone["accessToken"])
        ).status_code == 401
        assert client.post(
            "/api/v1/auth/refresh-token", json={"refreshToken": phone["refreshToken"]}
        ).status_code == 401

    def test_logout_counts_presented_token_once(self, client, login, store):
        tokens = login()
        response = client.post("/api/v1/auth/logout", headers=_bearer(tokens["accessToken"]))
        assert response.json()["data"]["sessionsTerminated"] == 1
        (entry,) = store.logout_audit
        assert entry.sessions_terminated == 1

    def test_logout_with_refresh_token_counts_once(self, client, login):
        """The refresh sweep does not count the presented refresh token a second time."""
        tokens = login()
        headers = _bearer(tokens["refreshToken"])
        first = client.post("/api/v1/auth/logout", headers=headers)
        assert first.json()["data"]["sessionsTerminated"] == 1
        again = client.post("/api/v1/auth/logout", headers=headers)
        assert again.json()["data"]["sessionsTerminated"] == 0

    def test_logout_all_counts_presented_token_once(self, client, login, store):
        tokens = login()
        response = client.post("/api/v1/auth/logout-all", headers=_bearer(tokens["accessToken"]))
        assert response.json()["data"]["sessionsTerminated"] == 1
        (entry,) = store.logout_audit
        assert (entry.logout_type, entry.sessions_terminated) == ("ALL_DEVICES", 1)

    def test_invalidate_refresh_keeps_access(self, client, login):
        """Invalidating refresh tokens leaves the current access token usable."""
        tokens = login()
        response = client.post(
            "/api/v1/auth/invalidate-refresh-tokens", headers=_bearer(tokens["accessToken"])
        )
        assert response.status_code == 200
        assert client.get(
            "/api/v1/user/profile", headers=_bearer(tokens["accessToken"])
        ).status_code == 200
        assert client.post(
            "/api/v1/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}
        ).status_code == 401


class TestForceLogout:
    def test_requires_authentication(self, client):
        response = client.post("/api/v1/auth/force-logout", json={"email": "a@example.com"})
        assert response.status_code == 401

    def test_non_admin_is_forbidden(self, client, login):
        tokens = login()
        response = client.post(
            "/api/v1/auth/force-logout",
            json={"email": "alice@example.com"},
            headers=_bearer(tokens["accessToken"]),
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Admin privileges required"

    def test_admin_terminates_target_sessions(self, client, login, store):
        victim = login("bob@example.com", "Bob")
        admin = login("alice@example.com", "Alice")
        admin_user = store.get_user_by_email("alice@example.com")
        store.update_user_role(admin_user.id, "admin")

        response = client.post(
            "/api/v1/auth/force-logout",
            json={"email": "bob@example.com", "ipAddress": "10.0.0.7"},
            headers=_bearer(admin["accessToken"]),
        )

        assert response.status_code == 200
        assert (
            response.json()["data"]["message"]
            == "User has been forcefully logged out from all devices"
        )
        assert client.get(
            "/api/v1/user/profile", headers=_bearer(victim["accessToken"])
        ).status_code == 401
        forced = [e for e in store.logout_audit if e.logout_type == "FORCED"]
        assert forced[0].user_email == "bob@example.com"
        assert forced[0].ip_address == "10.0.0.7"

    def test_missing_email_is_400(self, client, login, store):
        admin = login()
        store.update_user_role(store.get_user_by_email("alice@example.com").id, "admin")
        response = client.post(
            "/api/v1/auth/force-logout", json={}, headers=_bearer(admin["accessToken"])
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Email is required"

    def test_shares_logout_ip_bucket(self, client, login, store):
        """Force-logout draws from the same per-IP bucket as the other logout paths."""
        admin = login()
        store.update_user_role(store.get_user_by_email("alice@example.com").id, "admin")
        paths = [
            "/api/v1/auth/logout",
            "/api/v1/auth/logout-all",
            "/api/v1/auth/invalidate-refresh-tokens",
        ]
        for i in range(20):
            assert client.post(paths[i % 3]).status_code == 200

        response = client.post(
            "/api/v1/auth/force-logout",
            json={"email": "bob@example.com"},
            headers=_bearer(admin["accessToken"]),
        )

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in response.headers
        assert not [e for e in store.logout_audit if e.logout_type == "FORCED"]


class TestUserEndpoints:
    def test_profile_requires_bearer(self, client):
        response = client.get("/api/v1/user/profile")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"

    def test_profile_round_trip(self, client, login):
        tokens = login()
        headers = _bearer(tokens["accessToken"])
        profile = client.get("/api/v1/user/profile", headers=headers).json()["data"]
        assert profile["email"] == "alice@example.com"
        assert profile["isActive"] is True

        response = client.put("/api/v1/user/profile", json={"name": "Alicia"}, headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Alicia"
        assert data["message"] == "Profile updated successfully"

    def test_deactivate_locks_out_user(self, client, login):
        """A deactivated user loses API access and cannot request new codes."""
        tokens = login()
        headers = _bearer(tokens["accessToken"])
        response = client.post("/api/v1/user/deactivate", headers=headers)
        assert response.status_code == 200
        assert client.get("/api/v1/user/profile", headers=headers).status_code == 401
        response = client.post("/api/v1/auth/request-otp", json={"email": "alice@example.com"})
        assert response.status_code == 400

    def test_stats_count_failures(self, client, login, mail):
        tokens = login()
        client.post("/api/v1/auth/request-otp", json={"email": "alice@example.com"})
        code = mail.codes["alice@example.com"]
        client.post(
            "/api/v1/auth/verify-otp",
            json={"email": "alice@example.com", "otp": _wrong_code(code)},
        )
        response = client.get("/api/v1/user/stats", headers=_bearer(tokens["accessToken"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["accountStatus"] == "Active"
        assert data["failedAttemptsLast24Hours"] == 1
        assert data["failedAttemptsLastHour"] == 1
        assert data["memberSince"]


class TestHealthAndHeaders:
    def test_healthz_reports_components(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"] == "no-store"

    def test_unhandled_errors_become_500(self, client, login, runtime):
        """Unexpected exceptions map to the generic 500 envelope."""
        from fastapi.testclient import TestClient

        from otplogin.app import create_app

        tokens = login()
        quiet = TestClient(create_app(runtime), raise_server_exceptions=False)
        with patch.object(runtime.users, "stats", side_effect=KeyError("boom")):
            response = quiet.get("/api/v1/user/stats", headers=_bearer(tokens["accessToken"]))
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["message"] == "internal server error"

    @pytest.mark.parametrize(
        "path", ["/api/v1/auth/logout-all", "/api/v1/auth/invalidate-refresh-tokens"]
    )
    def test_bulk_logout_without_token_is_generic(self, client, path):
        response = client.post(path)
        assert response.status_code == 200
        assert response.json()["data"]["sessionsTerminated"] == 0
