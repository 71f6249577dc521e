"""Voting settings stored in the entity store's key/value table."""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from derbyvote.broadcast import Broadcaster, NullBroadcaster
from derbyvote.errors import NotFoundError, ValidationError
from derbyvote.models import DEFAULT_VOTER_TYPE
from derbyvote.store.base import EntityStore

log = logging.getLogger(__name__)

VOTING_OPEN = "voting_open"
VOTING_CLOSE_TIME = "voting_close_time"
REQUIRE_REGISTERED_QR = "require_registered_qr"
VOTER_TYPES = "voter_types"
VOTING_INSTRUCTIONS = "voting_instructions"
DERBYNET_URL = "derbynet_url"
DERBYNET_ROLE = "derbynet_role"
DERBYNET_PASSWORD = "derbynet_password"

MAX_TIMER_MINUTES = 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettingsProvider:
    """Reads and changes the process-wide voting settings.

    Every service that needs the voting-open flag gets a provider passed in,
    so tests can give each scenario its own store and broadcaster.

    Args:
        store: Where the settings live
        broadcaster: Told about every open/close change
        clock: Returns the current time (timezone-aware)
    """

    def __init__(
        self,
        store: EntityStore,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.broadcaster = broadcaster or NullBroadcaster()
        self.clock = clock

    def get(self, key: str, default: str = "") -> str:
        """Read a setting, falling back to ``default`` when it was never set."""
        try:
            return self.store.get_setting(key)
        except NotFoundError:
            return default

    def set(self, key: str, value: str) -> None:
        self.store.set_setting(key, value)

    def is_voting_open(self) -> bool:
        """Voting is open unless switched off or the countdown has run out.

        A missing setting counts as open.
        """
        if self.get(VOTING_OPEN, "true") != "true":
            return False
        close_time = self.get_close_time()
        return close_time is None or self.clock() < close_time

    def get_close_time(self) -> datetime | None:
        raw = self.get(VOTING_CLOSE_TIME)
        if not raw:
            return None
        try:
            close_time = datetime.fromisoformat(raw)
        except ValueError:
            log.warning("Ignoring malformed %s setting: %r", VOTING_CLOSE_TIME, raw)
            return None
        if close_time.tzinfo is None:
            close_time = close_time.replace(tzinfo=timezone.utc)
        return close_time

    def open_voting(self) -> None:
        self.set(VOTING_OPEN, "true")
        self.set(VOTING_CLOSE_TIME, "")
        log.info("Voting opened")
        self.broadcaster.broadcast_voting_status(True, "")

    def close_voting(self) -> None:
        self.set(VOTING_OPEN, "false")
        self.set(VOTING_CLOSE_TIME, "")
        log.info("Voting closed")
        self.broadcaster.broadcast_voting_status(False, "")

    def start_voting_timer(self, minutes: int) -> str:
        """Open voting with a countdown.

        Args:
            minutes: Countdown length, 1 to 60

        Returns:
            The close time as an ISO-8601 string

        Raises:
            ValidationError: If minutes is out of range
        """
        if not 1 <= minutes <= MAX_TIMER_MINUTES:
            raise ValidationError(f"minutes must be between 1 and {MAX_TIMER_MINUTES}")
        close_time = (self.clock() + timedelta(minutes=minutes)).isoformat(timespec="seconds")
        self.set(VOTING_CLOSE_TIME, close_time)
        self.set(VOTING_OPEN, "true")
        log.info("Voting timer started, closes at %s", close_time)
        self.broadcaster.broadcast_voting_status(True, close_time)
        return close_time

    def require_registered_qr(self) -> bool:
        return self.get(REQUIRE_REGISTERED_QR, "false") == "true"

    def set_require_registered_qr(self, require: bool) -> None:
        self.set(REQUIRE_REGISTERED_QR, "true" if require else "false")

    def get_voter_types(self) -> list[str]:
        raw = self.get(VOTER_TYPES)
        if not raw:
            return [DEFAULT_VOTER_TYPE]
        try:
            types = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Ignoring malformed %s setting: %r", VOTER_TYPES, raw)
            return [DEFAULT_VOTER_TYPE]
        return [str(t) for t in types] or [DEFAULT_VOTER_TYPE]

    def set_voter_types(self, types: list[str]) -> None:
        cleaned = [t.strip() for t in types if t.strip()]
        if not cleaned:
            raise ValidationError("at least one voter type is required")
        self.set(VOTER_TYPES, json.dumps(cleaned))

    def get_derbynet_credentials(self) -> tuple[str, str] | None:
        """Return (role, password) when both are configured."""
        role = self.get(DERBYNET_ROLE)
        password = self.get(DERBYNET_PASSWORD)
        if role and password:
            return role, password
        return None

    def all_settings(self) -> dict[str, Any]:
        close_time = self.get_close_time()
        return {
            "voting_open": self.is_voting_open(),
            "voting_close_time": close_time.isoformat() if close_time else "",
            "require_registered_qr": self.require_registered_qr(),
            "voter_types": self.get_voter_types(),
            "voting_instructions": self.get(VOTING_INSTRUCTIONS),
            "derbynet_url": self.get(DERBYNET_URL),
        }
