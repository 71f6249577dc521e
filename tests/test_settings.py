"""Tests for the voting settings provider."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from derbyvote.broadcast import VOTING_STATUS
from derbyvote.errors import NotFoundError, ValidationError
from derbyvote.settings import VOTING_CLOSE_TIME, VOTING_OPEN, SettingsProvider
from derbyvote.store.memory import MemoryStore

START = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def timed(store, broadcaster, clock):
    return SettingsProvider(store, broadcaster, clock=clock)


class TestVotingOpen:
    def test_open_by_default(self, settings):
        assert settings.is_voting_open()

    def test_missing_flag_counts_as_open(self):
        store = MagicMock()
        store.get_setting.side_effect = NotFoundError("missing")
        assert SettingsProvider(store).is_voting_open()

    def test_flag_not_true_counts_as_closed(self, store, settings):
        store.set_setting(VOTING_OPEN, "no")
        assert not settings.is_voting_open()

    def test_close_and_open(self, settings):
        settings.close_voting()
        assert not settings.is_voting_open()
        settings.open_voting()
        assert settings.is_voting_open()

    def test_broadcasts_status(self, settings, broadcaster):
        settings.close_voting()
        settings.open_voting()
        assert [(m.type, m.payload) for m in broadcaster.history] == [
            (VOTING_STATUS, {"open": False, "close_time": ""}),
            (VOTING_STATUS, {"open": True, "close_time": ""}),
        ]

    def test_independent_providers(self):
        first = SettingsProvider(MemoryStore())
        second = SettingsProvider(MemoryStore())
        first.close_voting()
        assert not first.is_voting_open()
        assert second.is_voting_open()


class TestVotingTimer:
    def test_timer_sets_close_time(self, timed, store, broadcaster):
        close_time = timed.start_voting_timer(15)

        assert close_time == "2026-03-01T18:15:00+00:00"
        assert store.get_setting(VOTING_CLOSE_TIME) == close_time
        assert timed.get_close_time() == START + timedelta(minutes=15)
        assert broadcaster.history[-1].payload == {"open": True, "close_time": close_time}

    def test_timer_opens_voting(self, timed):
        timed.close_voting()
        timed.start_voting_timer(5)
        assert timed.is_voting_open()

    def test_closes_when_countdown_ends(self, timed, clock):
        timed.start_voting_timer(10)
        clock.now = START + timedelta(minutes=9, seconds=59)
        assert timed.is_voting_open()
        clock.now = START + timedelta(minutes=10)
        assert not timed.is_voting_open()

    def test_open_voting_clears_countdown(self, timed, clock):
        timed.start_voting_timer(1)
        timed.open_voting()
        clock.now = START + timedelta(hours=1)
        assert timed.is_voting_open()
        assert timed.get_close_time() is None

    @pytest.mark.parametrize("minutes", [0, -5, 61])
    def test_out_of_range(self, timed, minutes):
        with pytest.raises(ValidationError):
            timed.start_voting_timer(minutes)

    @pytest.mark.parametrize("minutes", [1, 60])
    def test_bounds(self, timed, minutes):
        timed.start_voting_timer(minutes)
        assert timed.get_close_time() == START + timedelta(minutes=minutes)

    def test_naive_close_time_is_utc(self, timed, store):
        store.set_setting(VOTING_CLOSE_TIME, "2026-03-01T18:30:00")
        assert timed.get_close_time() == datetime(2026, 3, 1, 18, 30, tzinfo=timezone.utc)

    def test_malformed_close_time_ignored(self, timed, store):
        store.set_setting(VOTING_CLOSE_TIME, "half past six")
        assert timed.get_close_time() is None
        assert timed.is_voting_open()


class TestOtherSettings:
    def test_require_registered_qr(self, settings):
        assert settings.require_registered_qr() is False
        settings.set_require_registered_qr(True)
        assert settings.require_registered_qr() is True

    def test_voter_types_default(self, settings):
        assert settings.get_voter_types() == ["general"]

    def test_voter_types(self, settings):
        settings.set_voter_types(["general", " judge ", ""])
        assert settings.get_voter_types() == ["general", "judge"]

    def test_voter_types_required(self, settings):
        with pytest.raises(ValidationError):
            settings.set_voter_types(["  "])

    def test_derbynet_credentials(self, settings):
        assert settings.get_derbynet_credentials() is None
        settings.set("derbynet_role", "RaceCoordinator")
        assert settings.get_derbynet_credentials() is None
        settings.set("derbynet_password", "doyourbest")
        assert settings.get_derbynet_credentials() == ("RaceCoordinator", "doyourbest")

    def test_get_default(self, settings):
        assert settings.get("no_such_key", "fallback") == "fallback"

    def test_all_settings(self, timed):
        timed.start_voting_timer(30)
        timed.set("derbynet_url", "http://derbynet.local/derbynet")
        data = timed.all_settings()
        assert data["voting_open"] is True
        assert data["voting_close_time"] == "2026-03-01T18:30:00+00:00"
        assert data["require_registered_qr"] is False
        assert data["derbynet_url"] == "http://derbynet.local/derbynet"
