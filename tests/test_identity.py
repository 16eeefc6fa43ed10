"""Tests for identity — users, sessions, capability gates, owner provisioning."""

import os

import pytest

os.environ.setdefault("MIASTOALERT_ENV", "test")
os.environ.setdefault("MIASTOALERT_DB_BACKEND", "sqlite")

import db as db_mod
import identity
from errors import Forbidden, NotFound, Unauthorized, ValidationError
from identity import CITY_UNSET, SESSION_TTL_SEC, Caller, Role, UserStore

T0 = 1_700_000_000.0


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    db_file = str(tmp_path / "test_miastoalert.db")
    monkeypatch.setenv("MIASTOALERT_DB_PATH", db_file)
    monkeypatch.setattr(db_mod, "DEFAULT_DB_FILE", db_file)
    yield db_file


# ── Caller ────────────────────────────────────────────────────────────


class TestCaller:
    def test_staff_roles(self):
        assert Caller("a", "owner", "Warszawa").is_staff
        assert Caller("b", "moderator", "Warszawa").is_staff
        assert not Caller("c", "user", "Warszawa").is_staff

    def test_unset_city(self):
        assert not Caller("a", "user", CITY_UNSET).has_city
        assert not Caller("a", "user", "").has_city
        assert Caller("a", "user", "Gdańsk").has_city


class TestNormalizeCity:
    def test_strips(self):
        assert identity.normalize_city("  Kraków ") == "Kraków"

    @pytest.mark.parametrize("bad", [None, "", "   ", 42, CITY_UNSET, "x" * 101])
    def test_rejects(self, bad):
        with pytest.raises(ValidationError):
            identity.normalize_city(bad)


# ── Passwords ─────────────────────────────────────────────────────────


class TestPasswords:
    def test_hash_and_verify(self):
        h = identity.hash_password("s3cret!")
        assert h != "s3cret!"
        assert identity.verify_password("s3cret!", h)
        assert not identity.verify_password("wrong", h)

    def test_missing_hash(self):
        assert not identity.verify_password("anything", None)

    def test_malformed_hash(self):
        assert not identity.verify_password("anything", "not-a-bcrypt-hash")


# ── UserStore ─────────────────────────────────────────────────────────


class TestUserStore:
    def test_create_and_get(self):
        user = UserStore.create_user("user", "Warszawa", now=T0)
        loaded = UserStore.get_user(user["id"])
        assert loaded["role"] == "user"
        assert loaded["city"] == "Warszawa"
        assert loaded["rating"] == 0
        assert loaded["banned"] is False
        assert "password_hash" not in loaded

    def test_get_missing(self):
        assert UserStore.get_user("user_missing") is None

    def test_update_fields(self):
        user = UserStore.create_user("user", "Warszawa")
        assert UserStore.update_user(user["id"], banned=True, city="Łódź")
        loaded = UserStore.get_user(user["id"])
        assert loaded["banned"] is True
        assert loaded["city"] == "Łódź"

    def test_update_ignores_unknown_fields(self):
        user = UserStore.create_user("user", "Warszawa")
        assert UserStore.update_user(user["id"], rating=100) is False
        assert UserStore.get_user(user["id"])["rating"] == 0

    def test_update_missing_user(self):
        assert UserStore.update_user("user_missing", banned=True) is False

    def test_list_users_newest_first(self):
        a = UserStore.create_user("user", "Warszawa", now=T0)
        b = UserStore.create_user("user", "Warszawa", now=T0 + 10)
        ids = [u["id"] for u in UserStore.list_users()]
        assert ids == [b["id"], a["id"]]

    def test_delete_user(self):
        user = UserStore.create_user("user", "Warszawa")
        assert UserStore.delete_user(user["id"])
        assert UserStore.get_user(user["id"]) is None
        assert UserStore.delete_user(user["id"]) is False


class TestSessions:
    def test_session_resolves_live_user(self):
        user = UserStore.create_user("user", "Warszawa", now=T0)
        token = UserStore.create_session(user["id"], now=T0)
        assert UserStore.get_session_user(token, now=T0 + 1)["id"] == user["id"]

    def test_session_expires(self):
        user = UserStore.create_user("user", "Warszawa", now=T0)
        token = UserStore.create_session(user["id"], now=T0)
        assert UserStore.get_session_user(token, now=T0 + SESSION_TTL_SEC + 1) is None

    def test_unknown_token(self):
        assert UserStore.get_session_user("nope") is None

    def test_delete_session(self):
        user = UserStore.create_user("user", "Warszawa")
        token = UserStore.create_session(user["id"])
        UserStore.delete_session(token)
        assert UserStore.get_session_user(token) is None

    def test_cleanup_expired(self):
        user = UserStore.create_user("user", "Warszawa", now=T0)
        UserStore.create_session(user["id"], now=T0)
        live = UserStore.create_session(user["id"], now=T0 + SESSION_TTL_SEC)
        removed = UserStore.cleanup_expired_sessions(now=T0 + SESSION_TTL_SEC + 1)
        assert removed == 1
        assert UserStore.get_session_user(live, now=T0 + SESSION_TTL_SEC + 1) is not None

    def test_user_delete_drops_sessions(self):
        user = UserStore.create_user("user", "Warszawa")
        token = UserStore.create_session(user["id"])
        UserStore.delete_user(user["id"])
        assert UserStore.get_session_user(token) is None


# ── Capability checks ─────────────────────────────────────────────────


class TestRequireCaller:
    def test_no_token(self):
        with pytest.raises(Unauthorized):
            identity.require_caller(None)

    def test_bad_token(self):
        with pytest.raises(Unauthorized):
            identity.require_caller("garbage")

    def test_valid(self):
        token, user = identity.register_anonymous("Poznań")
        caller = identity.require_caller(token)
        assert caller.id == user["id"]
        assert caller.city == "Poznań"
        assert caller.role == "user"

    def test_ban_applies_to_existing_token(self):
        token, user = identity.register_anonymous("Poznań")
        UserStore.update_user(user["id"], banned=True)
        with pytest.raises(Forbidden):
            identity.require_caller(token)
        # Resolution alone does not apply the ban gate
        assert identity.resolve_caller(token).banned is True

    def test_role_change_applies_to_existing_token(self):
        token, user = identity.register_anonymous("Poznań")
        UserStore.update_user(user["id"], role="moderator")
        assert identity.require_caller(token).role == "moderator"


class TestRequireRole:
    def test_allowed(self):
        identity.require_role(Caller("m", "moderator", "Warszawa"), identity.STAFF_ROLES)

    def test_denied(self):
        with pytest.raises(Forbidden):
            identity.require_role(Caller("u", "user", "Warszawa"), identity.STAFF_ROLES)

    def test_banned_staff_denied(self):
        with pytest.raises(Forbidden):
            identity.require_role(
                Caller("m", "moderator", "Warszawa", banned=True), identity.STAFF_ROLES
            )

    def test_missing_caller(self):
        with pytest.raises(Unauthorized):
            identity.require_role(None, identity.STAFF_ROLES)


# ── Flows ─────────────────────────────────────────────────────────────


class TestRegisterAnonymous:
    def test_creates_user_and_token(self):
        token, user = identity.register_anonymous(" Wrocław ")
        assert token
        assert user["city"] == "Wrocław"
        assert user["role"] == Role.USER.value
        assert user["email"] is None

    def test_rejects_sentinel_city(self):
        with pytest.raises(ValidationError):
            identity.register_anonymous(CITY_UNSET)


class TestBootstrapOwner:
    def test_provisions_once(self):
        owner = identity.bootstrap_owner(email="boss@miasto.pl", password="hunter22", city="Warszawa")
        assert owner["role"] == "owner"
        again = identity.bootstrap_owner(email="other@miasto.pl", password="x", city="Kraków")
        assert again["id"] == owner["id"]
        assert len(UserStore.list_owners()) == 1

    def test_without_credentials(self):
        assert identity.bootstrap_owner(email="", password="") is None
        assert UserStore.list_owners() == []

    def test_refuses_multiple_owners(self):
        UserStore.create_user("owner", "Warszawa", email="a@miasto.pl")
        UserStore.create_user("owner", "Warszawa", email="b@miasto.pl")
        with pytest.raises(RuntimeError, match="exactly one"):
            identity.bootstrap_owner(email="c@miasto.pl", password="pw")


class TestLogin:
    def test_owner_login(self):
        owner = identity.bootstrap_owner(email="boss@miasto.pl", password="hunter22", city="Warszawa")
        token, user = identity.login("boss@miasto.pl", "hunter22")
        assert user["id"] == owner["id"]
        assert "password_hash" not in user
        assert identity.require_caller(token).role == "owner"

    def test_wrong_password(self):
        identity.bootstrap_owner(email="boss@miasto.pl", password="hunter22", city="Warszawa")
        with pytest.raises(Unauthorized):
            identity.login("boss@miasto.pl", "nope")

    def test_unknown_email(self):
        with pytest.raises(Unauthorized):
            identity.login("ghost@miasto.pl", "pw")

    def test_missing_fields(self):
        with pytest.raises(ValidationError):
            identity.login("", "")


class TestSelectCity:
    def test_after_reset(self):
        token, user = identity.register_anonymous("Warszawa")
        UserStore.update_user(user["id"], city=CITY_UNSET)
        caller = identity.require_caller(token)
        updated = identity.select_city(caller, "Lublin")
        assert updated["city"] == "Lublin"
        assert identity.require_caller(token).city == "Lublin"

    def test_city_already_set(self):
        token, _ = identity.register_anonymous("Warszawa")
        with pytest.raises(Forbidden):
            identity.select_city(identity.require_caller(token), "Lublin")

    def test_user_removed_meanwhile(self):
        with pytest.raises(NotFound):
            identity.select_city(Caller("user_gone", "user", CITY_UNSET), "Lublin")
