from datetime import timedelta

import pytest
from sqlmodel import Session, select

from models import EmailVerification, MfaChallenge, PasswordResetToken, User, utcnow
from otp import hash_token
from routers.auth import create_session_token, verify_password, verify_session_token

SIGNUP = {
    "email": "New.Person@Example.com",
    "full_name": "New Person",
    "password": "long-enough-pw",
    "region": "south",
}


def find_user(engine, email):
    with Session(engine) as s:
        return s.exec(select(User).where(User.email == email)).first()


def expire(engine, model, **where):
    with Session(engine) as s:
        query = select(model)
        for name, value in where.items():
            query = query.where(getattr(model, name) == value)
        row = s.exec(query).one()
        row.expires_at = utcnow() - timedelta(minutes=1)
        s.add(row)
        s.commit()


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def olive(make_user):
    return make_user(email="olive@example.com", full_name="Olive", role="admin")


def start_login(client, email="olive@example.com", password="correct-horse"):
    resp = client.post("/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.json()
    return resp.json()["mfaToken"]


class TestSignup:
    def test_register_mails_a_code_and_creates_no_user(self, client, notifier, engine):
        resp = client.post("/register", json=SIGNUP)

        assert resp.status_code == 201
        assert resp.json()["ok"] is True
        assert resp.json()["verifyToken"]
        assert "session" not in resp.cookies
        to_email, code = notifier.codes[-1]
        assert to_email == "new.person@example.com"
        assert len(code) == 6 and code.isdigit()
        assert find_user(engine, "new.person@example.com") is None

    def test_verify_creates_user_and_logs_in(self, client, notifier, engine):
        token = client.post("/register", json=SIGNUP).json()["verifyToken"]

        resp = client.post("/email/verify", json={"verifyToken": token, "code": notifier.last_code})

        assert resp.status_code == 200
        assert "session" in resp.cookies
        me = client.get("/me").json()
        assert me["email"] == "new.person@example.com"
        assert me["region"] == "south"
        assert me["role"] == "user"
        user = find_user(engine, "new.person@example.com")
        assert user.email_verified_at is not None
        assert verify_password("long-enough-pw", user.password_hash)

    def test_code_works_only_once(self, client, notifier):
        token = client.post("/register", json=SIGNUP).json()["verifyToken"]
        body = {"verifyToken": token, "code": notifier.last_code}
        client.post("/email/verify", json=body)

        again = client.post("/email/verify", json=body)

        assert again.status_code == 400
        assert again.json() == {"ok": False, "message": "Invalid code."}

    def test_wrong_code(self, client, notifier, engine):
        token = client.post("/register", json=SIGNUP).json()["verifyToken"]

        resp = client.post(
            "/email/verify", json={"verifyToken": token, "code": wrong_code(notifier.last_code)}
        )

        assert resp.status_code == 400
        assert find_user(engine, "new.person@example.com") is None

    @pytest.mark.parametrize("code", ["12345", "abcdef", "", "1234567"])
    def test_malformed_code_is_invalid_input(self, client, code):
        token = client.post("/register", json=SIGNUP).json()["verifyToken"]

        resp = client.post("/email/verify", json={"verifyToken": token, "code": code})

        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid input."

    def test_expired_code(self, client, notifier, engine):
        token = client.post("/register", json=SIGNUP).json()["verifyToken"]
        expire(engine, EmailVerification, verify_token=token)

        resp = client.post("/email/verify", json={"verifyToken": token, "code": notifier.last_code})

        assert resp.status_code == 400
        assert resp.json()["message"] == "Code expired."

    def test_guessing_is_capped(self, client, notifier):
        token = client.post("/register", json=SIGNUP).json()["verifyToken"]
        good = notifier.last_code
        for _ in range(5):
            client.post("/email/verify", json={"verifyToken": token, "code": wrong_code(good)})

        resp = client.post("/email/verify", json={"verifyToken": token, "code": good})

        assert resp.status_code == 429
        assert resp.json()["message"] == "Too many attempts."

    def test_resend_replaces_the_code(self, client, notifier):
        token = client.post("/register", json=SIGNUP).json()["verifyToken"]
        first = notifier.last_code

        resp = client.post("/email/resend", json={"verifyToken": token})

        assert resp.json() == {"ok": True}
        assert len(notifier.codes) == 2
        second = notifier.last_code
        if first != second:
            stale = client.post("/email/verify", json={"verifyToken": token, "code": first})
            assert stale.status_code == 400
        assert client.post("/email/verify", json={"verifyToken": token, "code": second}).status_code == 200

    def test_resend_unknown_token(self, client):
        resp = client.post("/email/resend", json={"verifyToken": "nope"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Cannot resend."

    def test_repeated_signup_keeps_token(self, client, notifier):
        first = client.post("/register", json=SIGNUP).json()["verifyToken"]

        resp = client.post("/register", json=SIGNUP)

        assert resp.status_code == 200
        assert resp.json()["verifyToken"] == first
        assert len(notifier.codes) == 2

    def test_duplicate_email(self, client, make_user):
        make_user(email="new.person@example.com")

        resp = client.post("/register", json=SIGNUP)

        assert resp.status_code == 400
        assert resp.json() == {"ok": False, "message": "Signup failed."}

    def test_mail_failure_drops_pending_signup(self, client, notifier, engine):
        notifier.fail = True

        resp = client.post("/register", json=SIGNUP)

        assert resp.status_code == 500
        assert resp.json()["message"] == "Could not send verification code. Please try again."
        with Session(engine) as s:
            assert s.exec(select(EmailVerification)).all() == []

    def test_short_password(self, client):
        resp = client.post("/register", json={**SIGNUP, "password": "short"})

        assert resp.status_code == 422
        assert resp.json() == {"ok": False, "message": "Invalid password."}


class TestLogin:
    def test_password_then_code(self, client, olive, notifier):
        resp = client.post("/login", json={"email": "OLIVE@example.com", "password": "correct-horse"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["mfaRequired"] is True
        assert body["channels"] == ["email"]
        assert body["maskedEmail"] == "ol***@example.com"
        assert "session" not in resp.cookies
        assert client.get("/me").status_code == 401

        done = client.post("/mfa/verify", json={"mfaToken": body["mfaToken"], "code": notifier.last_code})

        assert done.status_code == 200
        assert done.json()["role"] == "admin"
        assert client.get("/me").json()["email"] == "olive@example.com"

    def test_logout(self, client, olive, notifier):
        token = start_login(client)
        client.post("/mfa/verify", json={"mfaToken": token, "code": notifier.last_code})

        client.post("/logout")
        client.cookies.clear()

        assert client.get("/me").status_code == 401

    def test_wrong_password(self, client, olive, notifier):
        resp = client.post("/login", json={"email": "olive@example.com", "password": "nope"})

        assert resp.status_code == 401
        assert resp.json() == {"ok": False, "message": "Invalid email or password."}
        assert notifier.codes == []

    def test_unknown_email(self, client):
        resp = client.post("/login", json={"email": "ghost@example.com", "password": "whatever1"})
        assert resp.status_code == 401

    def test_unverified_account(self, client, make_user, engine):
        user = make_user(email="late@example.com")
        with Session(engine) as s:
            row = s.get(User, user.id)
            row.email_verified_at = None
            s.add(row)
            s.commit()

        resp = client.post("/login", json={"email": "late@example.com", "password": "correct-horse"})

        assert resp.status_code == 403
        assert resp.json()["code"] == "EMAIL_NOT_VERIFIED"

    def test_mail_failure_discards_challenge(self, client, olive, notifier, engine):
        notifier.fail = True

        resp = client.post("/login", json={"email": "olive@example.com", "password": "correct-horse"})

        assert resp.status_code == 500
        with Session(engine) as s:
            assert s.exec(select(MfaChallenge)).all() == []

    def test_wrong_mfa_code(self, client, olive, notifier):
        token = start_login(client)

        resp = client.post("/mfa/verify", json={"mfaToken": token, "code": wrong_code(notifier.last_code)})

        assert resp.status_code == 400
        assert "session" not in resp.cookies

    def test_expired_mfa_code(self, client, olive, notifier, engine):
        token = start_login(client)
        expire(engine, MfaChallenge, mfa_token=token)

        resp = client.post("/mfa/verify", json={"mfaToken": token, "code": notifier.last_code})

        assert resp.json()["message"] == "Code expired."

    def test_mfa_guessing_is_capped(self, client, olive, notifier):
        token = start_login(client)
        good = notifier.last_code
        for _ in range(5):
            client.post("/mfa/verify", json={"mfaToken": token, "code": wrong_code(good)})

        resp = client.post("/mfa/verify", json={"mfaToken": token, "code": good})

        assert resp.status_code == 429

    def test_mfa_resend(self, client, olive, notifier):
        token = start_login(client)

        assert client.post("/mfa/resend", json={"mfaToken": token}).json() == {"ok": True}
        assert notifier.codes[-1][0] == "olive@example.com"
        done = client.post("/mfa/verify", json={"mfaToken": token, "code": notifier.last_code})
        assert done.status_code == 200

        used = client.post("/mfa/resend", json={"mfaToken": token})
        assert used.json()["message"] == "Already verified."


class TestPasswordReset:
    def request_link(self, client, notifier, email="olive@example.com") -> str:
        assert client.post("/password/forgot", json={"email": email}).json() == {"ok": True}
        return notifier.reset_links[-1][1].split("token=", 1)[1]

    def test_reset_flow(self, client, olive, notifier, engine):
        token = self.request_link(client, notifier)

        resp = client.post("/password/reset", json={"token": token, "newPassword": "brand-new-pw"})

        assert resp.json() == {"ok": True}
        user = find_user(engine, "olive@example.com")
        assert verify_password("brand-new-pw", user.password_hash)
        assert client.post("/login", json={"email": "olive@example.com", "password": "brand-new-pw"}).status_code == 200
        assert client.post("/login", json={"email": "olive@example.com", "password": "correct-horse"}).status_code == 401

    def test_only_the_token_hash_is_stored(self, client, olive, notifier, engine):
        token = self.request_link(client, notifier)

        with Session(engine) as s:
            row = s.exec(select(PasswordResetToken)).one()
        assert row.token_hash == hash_token(token)
        assert row.token_hash != token

    def test_link_works_once(self, client, olive, notifier):
        token = self.request_link(client, notifier)
        client.post("/password/reset", json={"token": token, "newPassword": "brand-new-pw"})

        again = client.post("/password/reset", json={"token": token, "newPassword": "another-pw-1"})

        assert again.status_code == 400
        assert again.json()["message"] == "Invalid or expired link."

    def test_new_link_replaces_old(self, client, olive, notifier):
        old = self.request_link(client, notifier)
        new = self.request_link(client, notifier)

        assert client.post("/password/reset", json={"token": old, "newPassword": "brand-new-pw"}).status_code == 400
        assert client.post("/password/reset", json={"token": new, "newPassword": "brand-new-pw"}).status_code == 200

    def test_expired_link(self, client, olive, notifier, engine):
        token = self.request_link(client, notifier)
        expire(engine, PasswordResetToken, token_hash=hash_token(token))

        resp = client.post("/password/reset", json={"token": token, "newPassword": "brand-new-pw"})

        assert resp.status_code == 400

    def test_short_new_password(self, client, olive, notifier):
        token = self.request_link(client, notifier)

        resp = client.post("/password/reset", json={"token": token, "newPassword": "short"})

        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid input."

    @pytest.mark.parametrize("email", ["ghost@example.com", "", "not-an-email"])
    def test_unknown_address_gets_the_same_answer(self, client, notifier, email):
        resp = client.post("/password/forgot", json={"email": email})

        assert resp.json() == {"ok": True}
        assert notifier.reset_links == []

    def test_mail_failure_is_not_revealed(self, client, olive, notifier, engine):
        notifier.fail = True

        resp = client.post("/password/forgot", json={"email": "olive@example.com"})

        assert resp.json() == {"ok": True}
        with Session(engine) as s:
            assert s.exec(select(PasswordResetToken)).all() == []


class TestRateLimits:
    def test_auth_endpoints_share_a_window(self, client, olive):
        statuses = [
            client.post("/login", json={"email": "olive@example.com", "password": "nope"}).status_code
            for _ in range(20)
        ]
        assert set(statuses) == {401}

        resp = client.post("/register", json=SIGNUP)

        assert resp.status_code == 429
        assert resp.json() == {"ok": False, "message": "Too many requests. Try again later."}

    def test_password_reset_has_a_tighter_window(self, client):
        for _ in range(8):
            assert client.post("/password/forgot", json={"email": "a@example.com"}).status_code == 200

        assert client.post("/password/forgot", json={"email": "a@example.com"}).status_code == 429
        assert client.post("/password/reset", json={"token": "x", "newPassword": "brand-new-pw"}).status_code == 429


def test_me_with_tampered_cookie(client):
    client.cookies.set("session", "not-a-real-token")
    assert client.get("/me").status_code == 401


def test_session_token_for_deleted_user(client):
    client.cookies.set("session", create_session_token(4242))
    assert client.get("/me").status_code == 401


def test_session_token_round_trip():
    assert verify_session_token(create_session_token(7)) == {"user_id": 7}
    assert verify_session_token("garbage") is None
