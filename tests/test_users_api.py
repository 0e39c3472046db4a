"""
Medigate - Users and Admin API Tests

Registration and verification, login, refresh rotation, logout, password
change and reset, self-deactivation and admin session revocation.
"""

import pytest

from medigate.core.audit import AuditEventType, Severity

from conftest import PASSWORD, access_token, audit_events, bearer, login

USERS = "/api/v1/users"
NEW_PASSWORD = "Brand-New-Pass7"

JANE = {
    "firstName": "Jane",
    "lastName": "Roe",
    "email": "Jane@X.io",
    "password": "Sturdy-Pass42",
    "formElapsedMs": 5000,
}


def wrong(code: str) -> str:
    return f"{(int(code) + 1) % 10 ** 6:06d}"


def latest_code(services, template: str, recipient: str) -> str:
    message = services.notifier.latest(template, recipient)
    assert message is not None
    return message.payload["code"]


async def register(client, **overrides):
    return await client.post(f"{USERS}/register", json={**JANE, **overrides})


# =============================================================================
# Login and protected access
# =============================================================================

@pytest.mark.anyio
async def test_login_then_current(client, services):
    response = await login(client)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["accessToken"] and data["refreshToken"]
    assert data["tokenType"] == "Bearer"
    assert data["expiresIn"] == 900
    assert data["user"]["subjectId"] == "A"
    assert "passwordHash" not in data["user"]
    assert len(audit_events(services, AuditEventType.LOGIN_SUCCESS)) == 1

    cookies = response.headers.get_list("set-cookie")
    assert any(c.startswith("accessToken=") and "HttpOnly" in c and "Secure" in c for c in cookies)
    assert any(c.startswith("refreshToken=") and "samesite=strict" in c.lower() for c in cookies)

    current = await client.get(f"{USERS}/current", headers=bearer(data["accessToken"]))
    assert current.status_code == 200
    profile = current.json()["data"]
    assert profile["email"] == "a@x.io"
    assert profile["requestMetadata"]["subjectIdMasked"] == "***A"
    assert len(audit_events(services, AuditEventType.AUTHENTICATION_SUCCESS)) <= 1


@pytest.mark.anyio
async def test_login_by_phone(client):
    response = await client.post(
        f"{USERS}/login", json={"phoneNumber": "+1 (555) 010-0001", "password": PASSWORD}
    )
    assert response.status_code == 200
    assert response.json()["data"]["user"]["subjectId"] == "D"


@pytest.mark.anyio
async def test_unknown_account_looks_like_wrong_password(client, services):
    unknown = await login(client, email="nobody@x.io")
    wrong_password = await login(client, password="Wrong-Pass-1")

    assert unknown.status_code == wrong_password.status_code == 401
    assert unknown.json()["message"] == wrong_password.json()["message"] == "Invalid email/phone or password"
    assert len(audit_events(services, AuditEventType.LOGIN_FAILED)) == 2


@pytest.mark.anyio
async def test_login_rate_limit(client, services):
    for _ in range(5):
        response = await login(client, password="Wrong-Pass-1")
        assert response.status_code == 401
    assert len(audit_events(services, AuditEventType.LOGIN_FAILED)) == 5

    throttled = await login(client, password="Wrong-Pass-1")
    assert throttled.status_code == 429
    assert int(throttled.headers["Retry-After"]) > 0
    assert len(audit_events(services, AuditEventType.LOGIN_THROTTLED)) == 1
    assert len(audit_events(services, AuditEventType.LOGIN_FAILED)) == 5

    # The identifier is the key, not the password.
    assert (await login(client)).status_code == 429


# =============================================================================
# Refresh
# =============================================================================

@pytest.mark.anyio
async def test_refresh_replay_revokes_family(client, services):
    original = (await login(client)).json()["data"]["refreshToken"]

    first = await client.post(f"{USERS}/refresh-token", json={"refreshToken": original})
    assert first.status_code == 200
    rotated = first.json()["data"]["refreshToken"]
    assert rotated != original

    replay = await client.post(f"{USERS}/refresh-token", json={"refreshToken": original})
    assert replay.status_code == 401
    [event] = audit_events(services, AuditEventType.REFRESH_REPLAY)
    assert event.severity is Severity.HIGH

    after = await client.post(f"{USERS}/refresh-token", json={"refreshToken": rotated})
    assert after.status_code == 401


@pytest.mark.anyio
async def test_refresh_from_cookie(client):
    await login(client)
    response = await client.post(f"{USERS}/refresh-token")
    assert response.status_code == 200
    assert response.json()["data"]["user"]["subjectId"] == "A"


@pytest.mark.anyio
async def test_refresh_without_token(client, services):
    client.cookies.clear()
    response = await client.post(f"{USERS}/refresh-token", json={})
    assert response.status_code == 401
    assert audit_events(services, AuditEventType.UNAUTHENTICATED_ATTEMPT)


@pytest.mark.anyio
async def test_access_token_is_not_a_refresh_token(client, services):
    client.cookies.clear()
    response = await client.post(f"{USERS}/refresh-token", json={"refreshToken": access_token(services, "A")})
    assert response.status_code == 401
    [event] = audit_events(services, AuditEventType.INVALID_TOKEN)
    assert event.details["variant"] == "WrongVariant"


@pytest.mark.anyio
async def test_new_login_ends_previous_family(client):
    first = (await login(client)).json()["data"]["refreshToken"]
    await login(client)
    response = await client.post(f"{USERS}/refresh-token", json={"refreshToken": first})
    assert response.status_code == 401


# =============================================================================
# Logout
# =============================================================================

@pytest.mark.anyio
async def test_logout_is_idempotent(client, services):
    data = (await login(client)).json()["data"]
    headers = bearer(data["accessToken"])

    first = await client.post(f"{USERS}/logout", headers=headers)
    assert first.status_code == 204
    assert any(c.startswith("accessToken=") for c in first.headers.get_list("set-cookie"))
    assert (await client.post(f"{USERS}/logout", headers=headers)).status_code == 204

    assert (await client.get(f"{USERS}/current", headers=headers)).status_code == 401
    refresh = await client.post(f"{USERS}/refresh-token", json={"refreshToken": data["refreshToken"]})
    assert refresh.status_code == 401
    assert len(audit_events(services, AuditEventType.LOGOUT)) == 2


# =============================================================================
# Registration & verification
# =============================================================================

@pytest.mark.anyio
async def test_register_verify_then_login(client, services):
    response = await register(client)
    assert response.status_code == 201
    user = response.json()["data"]
    assert user["email"] == "jane@x.io"
    assert user["role"] == "patient"
    assert user["isActive"] is False
    assert user["isEmailVerified"] is False
    assert audit_events(services, AuditEventType.USER_REGISTERED)

    inactive = await login(client, email="jane@x.io", password=JANE["password"])
    assert inactive.status_code == 403

    code = latest_code(services, "verify-email", "jane@x.io")
    verified = await client.post(f"{USERS}/verify-email", json={"identifier": "jane@x.io", "code": code})
    assert verified.status_code == 200
    assert verified.json()["data"]["isActive"] is True
    assert verified.json()["data"]["isEmailVerified"] is True
    assert audit_events(services, AuditEventType.EMAIL_VERIFIED)

    assert (await login(client, email="jane@x.io", password=JANE["password"])).status_code == 200


@pytest.mark.anyio
async def test_register_with_phone_and_verify_it(client, services):
    response = await register(client, phoneNumber="+1 555 010 0099")
    assert response.status_code == 201
    assert response.json()["data"]["phone"] == "+15550100099"

    message = services.notifier.latest("verify-phone", "+15550100099")
    assert message.channel == "sms"
    verified = await client.post(
        f"{USERS}/verify-phone",
        json={"identifier": "+15550100099", "code": message.payload["code"]},
    )
    assert verified.status_code == 200
    assert verified.json()["data"]["isPhoneVerified"] is True
    assert verified.json()["data"]["isActive"] is False
    assert audit_events(services, AuditEventType.PHONE_VERIFIED)


@pytest.mark.anyio
async def test_admin_cannot_self_register(client):
    response = await register(client, role="admin")
    assert response.status_code == 422


@pytest.mark.anyio
async def test_duplicate_email_is_conflict(client):
    response = await register(client, email="A@x.io")
    assert response.status_code == 409


@pytest.mark.anyio
async def test_weak_password_reports_field_errors(client):
    response = await register(client, password="short1")
    assert response.status_code == 422
    fields = {error["field"] for error in response.json()["errors"]}
    assert fields == {"password"}


@pytest.mark.anyio
async def test_honeypot_registration_is_throttled(client, services):
    response = await register(client, honeypot="http://spam.example")
    assert response.status_code == 429
    assert audit_events(services, AuditEventType.RATE_LIMITED)
    assert services.notifier.latest("verify-email") is None


@pytest.mark.anyio
async def test_verification_attempts_are_throttled(client, services):
    await register(client)
    code = latest_code(services, "verify-email", "jane@x.io")
    url = f"{USERS}/verify-email"

    for expected in (400, 400, 429):
        response = await client.post(url, json={"identifier": "jane@x.io", "code": wrong(code)})
        assert response.status_code == expected
    assert audit_events(services, AuditEventType.VERIFICATION_THROTTLED)

    locked = await client.post(url, json={"identifier": "jane@x.io", "code": code})
    assert locked.status_code == 429


@pytest.mark.anyio
async def test_verification_code_is_single_use(client, services):
    await register(client)
    code = latest_code(services, "verify-email", "jane@x.io")
    url = f"{USERS}/verify-email"
    assert (await client.post(url, json={"identifier": "jane@x.io", "code": code})).status_code == 200
    assert (await client.post(url, json={"identifier": "jane@x.io", "code": code})).status_code == 409


@pytest.mark.anyio
async def test_verify_unknown_identifier(client):
    response = await client.post(f"{USERS}/verify-email", json={"identifier": "ghost@x.io", "code": "123456"})
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid or expired verification code"


@pytest.mark.anyio
async def test_resend_verification(client, services):
    await register(client)
    before = len(services.notifier.outbox)

    response = await client.post(f"{USERS}/resend-verification", json={"identifier": "jane@x.io"})
    assert response.status_code == 200
    assert len(services.notifier.outbox) == before + 1

    unknown = await client.post(f"{USERS}/resend-verification", json={"identifier": "ghost@x.io"})
    assert unknown.status_code == 200
    assert unknown.json()["message"] == response.json()["message"]
    assert len(services.notifier.outbox) == before + 1


@pytest.mark.anyio
async def test_resend_does_not_lift_verification_lock(client, services):
    await register(client)
    code = latest_code(services, "verify-email", "jane@x.io")
    url = f"{USERS}/verify-email"
    for expected in (400, 400, 429):
        response = await client.post(url, json={"identifier": "jane@x.io", "code": wrong(code)})
        assert response.status_code == expected

    resent = await client.post(f"{USERS}/resend-verification", json={"identifier": "jane@x.io"})
    assert resent.status_code == 200
    fresh = latest_code(services, "verify-email", "jane@x.io")

    response = await client.post(url, json={"identifier": "jane@x.io", "code": wrong(fresh)})
    assert response.status_code == 429
    response = await client.post(url, json={"identifier": "jane@x.io", "code": fresh})
    assert response.status_code == 429


@pytest.mark.anyio
async def test_wrong_attempts_add_up_across_resend(client, services):
    await register(client)
    code = latest_code(services, "verify-email", "jane@x.io")
    url = f"{USERS}/verify-email"
    for _ in range(2):
        response = await client.post(url, json={"identifier": "jane@x.io", "code": wrong(code)})
        assert response.status_code == 400

    await client.post(f"{USERS}/resend-verification", json={"identifier": "jane@x.io"})
    fresh = latest_code(services, "verify-email", "jane@x.io")

    response = await client.post(url, json={"identifier": "jane@x.io", "code": wrong(fresh)})
    assert response.status_code == 429
    assert len(audit_events(services, AuditEventType.VERIFICATION_THROTTLED)) == 1


# =============================================================================
# Passwords
# =============================================================================

@pytest.mark.anyio
async def test_change_password_requires_current_password(client, services):
    token = (await login(client)).json()["data"]["accessToken"]
    response = await client.post(
        f"{USERS}/change-password",
        headers=bearer(token),
        json={"oldPassword": "Wrong-Pass-1", "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD},
    )
    assert response.status_code == 403
    assert response.json()["message"] == "Current password is incorrect"
    assert audit_events(services, AuditEventType.REAUTHENTICATION_FAILED)


@pytest.mark.anyio
async def test_change_password_revokes_sessions(client, services):
    data = (await login(client)).json()["data"]
    response = await client.post(
        f"{USERS}/change-password",
        headers=bearer(data["accessToken"]),
        json={"oldPassword": PASSWORD, "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD},
    )
    assert response.status_code == 200
    assert audit_events(services, AuditEventType.PASSWORD_CHANGED)

    assert (await client.get(f"{USERS}/current", headers=bearer(data["accessToken"]))).status_code == 401
    refresh = await client.post(f"{USERS}/refresh-token", json={"refreshToken": data["refreshToken"]})
    assert refresh.status_code == 401

    assert (await login(client)).status_code == 401
    assert (await login(client, password=NEW_PASSWORD)).status_code == 200


@pytest.mark.anyio
async def test_change_password_confirmation_mismatch(client):
    token = (await login(client)).json()["data"]["accessToken"]
    response = await client.post(
        f"{USERS}/change-password",
        headers=bearer(token),
        json={"oldPassword": PASSWORD, "newPassword": NEW_PASSWORD, "confirmPassword": "Something-Else9"},
    )
    assert response.status_code == 422
    assert response.json()["errors"][0]["field"] == "confirmPassword"


@pytest.mark.anyio
async def test_forgot_and_reset_password(client, services):
    response = await client.post(f"{USERS}/forgot-password", json={"email": "a@x.io"})
    assert response.status_code == 200
    token = services.notifier.latest("password-reset", "a@x.io").payload["token"]

    body = {"token": token, "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD}
    assert (await client.post(f"{USERS}/reset-password", json=body)).status_code == 200
    assert audit_events(services, AuditEventType.PASSWORD_RESET_COMPLETED)

    reused = await client.post(f"{USERS}/reset-password", json=body)
    assert reused.status_code == 401
    [event] = audit_events(services, AuditEventType.INVALID_TOKEN)
    assert event.details["variant"] == "Consumed"

    assert (await login(client, password=NEW_PASSWORD)).status_code == 200


@pytest.mark.anyio
async def test_reset_rejected_password_keeps_token_usable(client, services):
    await client.post(f"{USERS}/forgot-password", json={"email": "a@x.io"})
    token = services.notifier.latest("password-reset", "a@x.io").payload["token"]

    weak = await client.post(
        f"{USERS}/reset-password", json={"token": token, "newPassword": "short1", "confirmPassword": "short1"}
    )
    assert weak.status_code == 422

    body = {"token": token, "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD}
    assert (await client.post(f"{USERS}/reset-password", json=body)).status_code == 200


@pytest.mark.anyio
async def test_forgot_password_for_unknown_account(client, services):
    known = await client.post(f"{USERS}/forgot-password", json={"email": "a@x.io"})
    unknown = await client.post(f"{USERS}/forgot-password", json={"email": "ghost@x.io"})

    assert unknown.status_code == 200
    assert unknown.json()["message"] == known.json()["message"]
    assert services.notifier.latest("password-reset", "ghost@x.io") is None
    events = audit_events(services, AuditEventType.PASSWORD_RESET_REQUESTED)
    assert [event.details["accountFound"] for event in events] == [True, False]


@pytest.mark.anyio
async def test_reset_with_garbage_token(client, services):
    response = await client.post(
        f"{USERS}/reset-password",
        json={"token": "not-a-token", "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD},
    )
    assert response.status_code == 401
    assert audit_events(services, AuditEventType.INVALID_TOKEN)


# =============================================================================
# Account
# =============================================================================

@pytest.mark.anyio
async def test_deactivate_account(client, services):
    token = (await login(client)).json()["data"]["accessToken"]
    url = f"{USERS}/account"

    denied = await client.request("DELETE", url, headers=bearer(token), json={"password": "Wrong-Pass-1"})
    assert denied.status_code == 403

    response = await client.request(
        "DELETE", url, headers=bearer(token), json={"password": PASSWORD, "reason": "moving away"}
    )
    assert response.status_code == 200
    [event] = audit_events(services, AuditEventType.ACCOUNT_DEACTIVATED)
    assert event.details["reason"] == "moving away"

    assert (await client.get(f"{USERS}/current", headers=bearer(token))).status_code == 401
    assert (await login(client)).status_code == 403


@pytest.mark.anyio
async def test_admin_revokes_sessions(client, services, clock):
    data = (await login(client)).json()["data"]
    clock.advance(1)

    admin = bearer(access_token(services, "ADM1", role="admin"))
    response = await client.post("/api/v1/admin/users/A/revoke-sessions", headers=admin)
    assert response.status_code == 200
    assert response.json()["data"] == {"sessionsRevoked": 1}
    [event] = audit_events(services, AuditEventType.SESSIONS_REVOKED)
    assert event.subject_id_masked == "***ADM1"
    assert event.target_id_masked == "***A"

    assert (await client.get(f"{USERS}/current", headers=bearer(data["accessToken"]))).status_code == 401
    refresh = await client.post(f"{USERS}/refresh-token", json={"refreshToken": data["refreshToken"]})
    assert refresh.status_code == 401


@pytest.mark.anyio
async def test_revoke_sessions_requires_admin(client, services):
    patient = bearer(access_token(services, "P1"))
    assert (await client.post("/api/v1/admin/users/A/revoke-sessions", headers=patient)).status_code == 403

    admin = bearer(access_token(services, "ADM1", role="admin"))
    missing = await client.post("/api/v1/admin/users/ghost/revoke-sessions", headers=admin)
    assert missing.status_code == 404
