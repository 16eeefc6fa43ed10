"""Tests for moderation — role gates, bans, role changes, city resets, overview."""

import os

import pytest

os.environ.setdefault("MIASTOALERT_ENV", "test")
os.environ.setdefault("MIASTOALERT_DB_BACKEND", "sqlite")

import db as db_mod
import identity
import lifecycle
import moderation
import reputation
from errors import Forbidden, NotFound, ValidationError
from identity import CITY_UNSET, UserStore

T0 = 1_700_000_000.0


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    db_file = str(tmp_path / "test_miastoalert.db")
    monkeypatch.setenv("MIASTOALERT_DB_PATH", db_file)
    monkeypatch.setattr(db_mod, "DEFAULT_DB_FILE", db_file)
    monkeypatch.setattr(lifecycle, "SERIALIZE_DUPLICATES", False)
    yield db_file


def _caller(role="user", city="Warszawa"):
    return identity.caller_from_user(UserStore.create_user(role, city, now=T0))


@pytest.fixture
def owner():
    return _caller("owner")


@pytest.fixture
def moderator():
    return _caller("moderator")


@pytest.fixture
def user():
    return _caller("user")


def _report(author):
    return lifecycle.create_report(
        author, {"type": "policja", "location": "Aleje Jerozolimskie", "lat": 52.22, "lng": 21.0}, now=T0,
    )


# ── Delete ────────────────────────────────────────────────────────────


class TestDeleteReport:
    def test_moderator_deletes(self, moderator, user):
        report = _report(user)
        result = moderation.delete_report(moderator, report.id)
        assert result["author_penalized"] is True
        assert reputation.get_rating(user.id) == -1

    def test_owner_deletes(self, owner, user):
        report = _report(user)
        moderation.delete_report(owner, report.id)
        assert lifecycle.get_report(report.id) is None

    def test_user_forbidden(self, user):
        report = _report(user)
        with pytest.raises(Forbidden):
            moderation.delete_report(user, report.id)
        assert lifecycle.get_report(report.id) is not None

    def test_banned_moderator_forbidden(self, user):
        banned_mod = identity.Caller("m", "moderator", "Warszawa", banned=True)
        report = _report(user)
        with pytest.raises(Forbidden):
            moderation.delete_report(banned_mod, report.id)


# ── Ban ───────────────────────────────────────────────────────────────


class TestSetBanned:
    def test_moderator_bans_user(self, moderator, user):
        updated = moderation.set_banned(moderator, user.id, True)
        assert updated["banned"] is True

    def test_unban(self, moderator, user):
        moderation.set_banned(moderator, user.id, True)
        assert moderation.set_banned(moderator, user.id, False)["banned"] is False

    def test_ban_keeps_reports_listed(self, moderator, user):
        report = _report(user)
        moderation.set_banned(moderator, user.id, True)
        listed = lifecycle.list_reports("Warszawa", 30, now=T0 + 60)
        assert [r.id for r in listed] == [report.id]

    def test_owner_cannot_be_banned(self, moderator, owner):
        with pytest.raises(Forbidden):
            moderation.set_banned(moderator, owner.id, True)

    def test_user_forbidden(self, user):
        other = _caller()
        with pytest.raises(Forbidden):
            moderation.set_banned(user, other.id, True)

    def test_missing_target(self, moderator):
        with pytest.raises(NotFound):
            moderation.set_banned(moderator, "user_missing", True)


# ── Roles ─────────────────────────────────────────────────────────────


class TestSetRole:
    def test_owner_promotes(self, owner, user):
        assert moderation.set_role(owner, user.id, "moderator")["role"] == "moderator"

    def test_owner_demotes(self, owner, moderator):
        assert moderation.set_role(owner, moderator.id, "user")["role"] == "user"

    def test_moderator_forbidden(self, moderator, user):
        with pytest.raises(Forbidden):
            moderation.set_role(moderator, user.id, "moderator")

    def test_cannot_grant_owner(self, owner, user):
        with pytest.raises(ValidationError):
            moderation.set_role(owner, user.id, "owner")

    def test_cannot_change_owner(self, owner):
        with pytest.raises(Forbidden):
            moderation.set_role(owner, owner.id, "user")

    def test_missing_target(self, owner):
        with pytest.raises(NotFound):
            moderation.set_role(owner, "user_missing", "moderator")


# ── City reset ────────────────────────────────────────────────────────


class TestResetCity:
    def test_sets_sentinel(self, owner, user):
        assert moderation.reset_city(owner, user.id)["city"] == CITY_UNSET

    def test_existing_reports_keep_city(self, owner, user):
        report = _report(user)
        moderation.reset_city(owner, user.id)
        assert lifecycle.get_report(report.id).city == "Warszawa"

    def test_reset_user_cannot_report(self, owner, user):
        moderation.reset_city(owner, user.id)
        caller = identity.caller_from_user(UserStore.get_user(user.id))
        with pytest.raises(ValidationError):
            _report(caller)

    def test_moderator_forbidden(self, moderator, user):
        with pytest.raises(Forbidden):
            moderation.reset_city(moderator, user.id)


# ── Overview ──────────────────────────────────────────────────────────


class TestOverview:
    def test_lists_users_and_reports(self, moderator, user):
        report = _report(user)
        data = moderation.overview(moderator)
        user_ids = {u["id"] for u in data["users"]}
        assert {moderator.id, user.id} <= user_ids
        assert [r["id"] for r in data["reports"]] == [report.id]
        assert all("password_hash" not in u for u in data["users"])

    def test_user_forbidden(self, user):
        with pytest.raises(Forbidden):
            moderation.overview(user)
