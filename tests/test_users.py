from unittest.mock import patch

from fastapi import status

from chirp.models.user import User
from conftest import TEST_PASSWORD, login


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_me_returns_profile(client, auth_headers, test_user):
    response = client.get("/api/v1/users/me", headers=auth_headers)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["id"] == test_user.id
    assert data["username"] == "testuser"
    assert data["displayName"] == "Test User"
    assert "hashedPassword" not in data
    assert "hashed_password" not in data


def test_list_sessions_across_devices(client, test_user):
    desktop = login(client, "test@example.com", user_agent="Mozilla/5.0 (X11; Linux x86_64)").json()
    phone = login(client, "test@example.com", user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)").json()

    response = client.get("/api/v1/users/sessions", headers=_bearer(phone["accessToken"]))
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["totalSessions"] == 2
    by_id = {session["id"]: session for session in data["sessions"]}
    assert by_id[desktop["sessionId"]]["device"] == "Desktop Computer"
    assert by_id[phone["sessionId"]]["device"] == "Mobile Device"
    assert desktop["refreshToken"] not in response.text
    assert phone["refreshToken"] not in response.text


def test_remove_session(client, test_user):
    first = login(client, "test@example.com").json()
    second = login(client, "test@example.com").json()

    response = client.delete(
        f"/api/v1/users/sessions/{second['sessionId']}",
        headers=_bearer(first["accessToken"]),
    )
    assert response.status_code == status.HTTP_200_OK

    sessions = client.get("/api/v1/users/sessions", headers=_bearer(first["accessToken"])).json()
    assert [session["id"] for session in sessions["sessions"]] == [first["sessionId"]]


def test_remove_session_of_another_user_is_not_found(client, test_user, test_user2):
    mine = login(client, "test@example.com").json()
    theirs = login(client, "other@example.com").json()

    response = client.delete(
        f"/api/v1/users/sessions/{theirs['sessionId']}",
        headers=_bearer(mine["accessToken"]),
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["message"] == "Session not found"

    client.cookies.clear()
    still_valid = client.post("/api/v1/auth/refresh", json={"refreshToken": theirs["refreshToken"]})
    assert still_valid.status_code == status.HTTP_200_OK


def test_logout_with_body_token(client, auth_tokens, auth_headers):
    client.cookies.clear()
    response = client.post(
        "/api/v1/users/logout",
        json={"refreshToken": auth_tokens["refreshToken"]},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_200_OK

    again = client.post(
        "/api/v1/users/logout",
        json={"refreshToken": auth_tokens["refreshToken"]},
        headers=auth_headers,
    )
    assert again.status_code == status.HTTP_400_BAD_REQUEST
    assert again.json()["message"] == "Invalid or already revoked refresh token"


def test_logout_with_cookie(client, auth_tokens, auth_headers):
    response = client.post("/api/v1/users/logout", headers=auth_headers)
    assert response.status_code == status.HTTP_200_OK

    refresh = client.post("/api/v1/auth/refresh", json={"refreshToken": auth_tokens["refreshToken"]})
    assert refresh.status_code == status.HTTP_401_UNAUTHORIZED


def test_logout_requires_refresh_token(client, auth_headers):
    client.cookies.clear()
    response = client.post("/api/v1/users/logout", headers=auth_headers)
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["message"] == "Refresh token is required for logout"


def test_logout_all(client, test_user):
    first = login(client, "test@example.com").json()
    login(client, "test@example.com")

    response = client.post("/api/v1/users/logout-all", headers=_bearer(first["accessToken"]))
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["revokedSessions"] == 2

    sessions = client.get("/api/v1/users/sessions", headers=_bearer(first["accessToken"])).json()
    assert sessions["totalSessions"] == 0


def test_change_password(client, test_user, auth_tokens, auth_headers):
    response = client.post(
        "/api/v1/users/change-password",
        json={"currentPassword": TEST_PASSWORD, "newPassword": "another-pass-1", "confirmPassword": "another-pass-1"},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_200_OK

    client.cookies.clear()
    refresh = client.post("/api/v1/auth/refresh", json={"refreshToken": auth_tokens["refreshToken"]})
    assert refresh.status_code == status.HTTP_401_UNAUTHORIZED

    fresh = login(client, "test@example.com", "another-pass-1")
    assert fresh.status_code == status.HTTP_200_OK
    me = client.get("/api/v1/users/me", headers=_bearer(fresh.json()["accessToken"]))
    assert me.status_code == status.HTTP_200_OK


def test_change_password_wrong_current(client, auth_headers):
    response = client.post(
        "/api/v1/users/change-password",
        json={"currentPassword": "wrong-pass", "newPassword": "another-pass-1", "confirmPassword": "another-pass-1"},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["message"] == "Invalid current password"


def test_change_password_to_same_password(client, auth_headers):
    response = client.post(
        "/api/v1/users/change-password",
        json={"currentPassword": TEST_PASSWORD, "newPassword": TEST_PASSWORD, "confirmPassword": TEST_PASSWORD},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_delete_account(client, db, test_user, auth_tokens, auth_headers):
    user_id = test_user.id
    response = client.request(
        "DELETE",
        "/api/v1/users/me",
        json={"password": TEST_PASSWORD, "confirmDelete": "DELETE"},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_200_OK

    user = db.query(User).filter(User.id == user_id).one()
    assert user.is_active is False
    assert user.username == f"deleted-{user_id}"
    assert user.email == f"deleted-{user_id}@deleted.invalid"
    assert user.deleted_at is not None

    me = client.get("/api/v1/users/me", headers=auth_headers)
    assert me.status_code == status.HTTP_401_UNAUTHORIZED

    client.cookies.clear()
    refresh = client.post("/api/v1/auth/refresh", json={"refreshToken": auth_tokens["refreshToken"]})
    assert refresh.status_code == status.HTTP_401_UNAUTHORIZED


def test_delete_account_wrong_password(client, auth_headers):
    response = client.request(
        "DELETE",
        "/api/v1/users/me",
        json={"password": "wrong-pass", "confirmDelete": "DELETE"},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["message"] == "Password is incorrect"


def test_delete_account_requires_confirmation(client, auth_headers):
    response = client.request(
        "DELETE",
        "/api/v1/users/me",
        json={"password": TEST_PASSWORD, "confirmDelete": "yes"},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_delete_account_when_legacy_placeholder_name_is_registered(client, db, test_user, auth_headers):
    user_id = test_user.id
    with patch("chirp.api.auth.send_verification_email"):
        squatter = client.post(
            "/api/v1/auth/register",
            json={
                "username": f"deleted_{user_id}",
                "email": "squatter@example.com",
                "password": "password123",
                "displayName": "Squatter",
            },
        )
    assert squatter.status_code == status.HTTP_201_CREATED

    response = client.request(
        "DELETE",
        "/api/v1/users/me",
        json={"password": TEST_PASSWORD, "confirmDelete": "DELETE"},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_200_OK

    assert db.query(User).filter(User.id == user_id).one().username == f"deleted-{user_id}"
    assert db.query(User).filter(User.username == f"deleted_{user_id}").one().is_active is True


def test_update_profile(client, auth_headers):
    response = client.put(
        "/api/v1/users/me",
        json={"displayName": "  Renamed User ", "bio": "Writing tests."},
        headers=auth_headers,
    )

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["displayName"] == "Renamed User"
    assert data["bio"] == "Writing tests."
    assert client.get("/api/v1/users/me", headers=auth_headers).json()["bio"] == "Writing tests."


def test_update_profile_keeps_omitted_and_blank_fields(client, auth_headers):
    client.put("/api/v1/users/me", json={"bio": "First bio"}, headers=auth_headers)

    response = client.put("/api/v1/users/me", json={"displayName": "Only Name", "bio": "   "}, headers=auth_headers)

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["displayName"] == "Only Name"
    assert response.json()["bio"] == "First bio"


def test_update_profile_rejects_long_display_name(client, auth_headers):
    response = client.put("/api/v1/users/me", json={"displayName": "x" * 51}, headers=auth_headers)
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_update_profile_requires_authentication(client):
    response = client.put("/api/v1/users/me", json={"bio": "anonymous"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_change_username(client, auth_headers):
    response = client.put(
        "/api/v1/users/me/username",
        json={"username": "Fresh_Name", "currentPassword": TEST_PASSWORD},
        headers=auth_headers,
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["username"] == "fresh_name"
    assert login(client, "fresh_name").status_code == status.HTTP_200_OK
    assert login(client, "testuser").status_code == status.HTTP_401_UNAUTHORIZED


def test_change_username_wrong_password(client, auth_headers):
    response = client.put(
        "/api/v1/users/me/username",
        json={"username": "fresh_name", "currentPassword": "wrong-pass"},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["message"] == "Current password is incorrect"


def test_change_username_taken(client, auth_headers, test_user2):
    response = client.put(
        "/api/v1/users/me/username",
        json={"username": "otheruser", "currentPassword": TEST_PASSWORD},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["message"] == "Username is already taken"


def test_change_username_to_own_name(client, auth_headers):
    response = client.put(
        "/api/v1/users/me/username",
        json={"username": "testuser", "currentPassword": TEST_PASSWORD},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["username"] == "testuser"


def test_change_username_rejects_invalid_name(client, auth_headers):
    for username in ("has space", "deleted-1", "ab"):
        response = client.put(
            "/api/v1/users/me/username",
            json={"username": username, "currentPassword": TEST_PASSWORD},
            headers=auth_headers,
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_get_user_public_profile(client, auth_headers, test_user2):
    response = client.get(f"/api/v1/users/{test_user2.id}", headers=auth_headers)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["id"] == test_user2.id
    assert data["username"] == "otheruser"
    assert data["displayName"] == "Other User"
    assert data["isVerified"] is True
    assert "email" not in data
    assert "role" not in data


def test_get_user_hides_deactivated_and_unknown(client, db, auth_headers, test_user2):
    test_user2.is_active = False
    db.commit()

    deactivated = client.get(f"/api/v1/users/{test_user2.id}", headers=auth_headers)
    assert deactivated.status_code == status.HTTP_404_NOT_FOUND
    assert deactivated.json()["message"] == "User not found"

    assert client.get("/api/v1/users/999999", headers=auth_headers).status_code == status.HTTP_404_NOT_FOUND


def test_get_user_requires_authentication(client, test_user2):
    response = client.get(f"/api/v1/users/{test_user2.id}")
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
