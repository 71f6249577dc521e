"""HTTP client for the DerbyNet race management server."""

import logging
from dataclasses import dataclass
from typing import Any, Self

import httpx

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class DerbyNetError(Exception):
    """DerbyNet rejected a request or returned something unusable."""
    pass


class DerbyNetConnectionError(DerbyNetError):
    """DerbyNet could not be reached at all."""
    pass


def flex_str(value: Any) -> str:
    """DerbyNet sends some text fields as numbers; normalise them to str."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def flex_int(value: Any, default: int = 0) -> int:
    """DerbyNet sends some numeric fields as strings; normalise them to int."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


@dataclass
class Racer:
    racer_id: int
    first_name: str
    last_name: str
    car_number: str
    car_name: str
    car_photo: str
    rank: str

    @property
    def racer_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            racer_id=flex_int(data.get("racerid")),
            first_name=flex_str(data.get("firstname")),
            last_name=flex_str(data.get("lastname")),
            car_number=flex_str(data.get("carnumber")),
            car_name=flex_str(data.get("carname")),
            car_photo=flex_str(data.get("car_photo")),
            rank=flex_str(data.get("rank")),
        )


@dataclass
class Award:
    award_id: int
    award_name: str
    award_type: str = ""
    sort: int = 0

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            award_id=flex_int(data.get("awardid")),
            award_name=flex_str(data.get("awardname")),
            award_type=flex_str(data.get("awardtype")),
            sort=flex_int(data.get("sort")),
        )


@dataclass
class AwardType:
    award_type_id: int
    award_type: str

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            award_type_id=flex_int(data.get("awardtypeid")),
            award_type=flex_str(data.get("awardtype")),
        )


class DerbyNetClient:
    """Talks to DerbyNet's ``action.php`` endpoint.

    Every call is its own bounded request (``timeout`` seconds), so one slow
    call cannot hold up the next. Session cookies from ``login`` are kept on
    the underlying httpx client. When credentials are configured, requests
    log in first and retry once if DerbyNet answers ``notauthorized``.

    Args:
        base_url: DerbyNet root, e.g. ``http://derbynet.local/derbynet``
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests pass an httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._http = httpx.Client(
            follow_redirects=True, timeout=timeout, transport=transport
        )
        self._role = ""
        self._password = ""
        self._authenticated = False

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def base_url(self) -> str:
        return self._base_url

    @base_url.setter
    def base_url(self, url: str) -> None:
        self._base_url = (url or "").rstrip("/")

    @property
    def action_url(self) -> str:
        if not self.base_url:
            raise DerbyNetError("DerbyNet URL is not configured")
        return f"{self.base_url}/action.php"

    def set_credentials(self, role: str, password: str) -> None:
        self._role = role
        self._password = password
        self._authenticated = False

    @property
    def has_credentials(self) -> bool:
        return bool(self._role and self._password)

    def _send(self, method: str, **kwargs) -> dict[str, Any]:
        """Send one request and decode the JSON body."""
        url = self.action_url
        log.debug("DerbyNet request %s %s %s", method, url, kwargs)
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise DerbyNetError(f"DerbyNet request timed out: {e}") from e
        except httpx.RequestError as e:
            raise DerbyNetConnectionError(f"failed to connect to DerbyNet: {e}") from e

        log.debug("DerbyNet response %s %s", response.status_code, response.text)
        if response.status_code != httpx.codes.OK:
            raise DerbyNetError(
                f"DerbyNet returned status {response.status_code}: {response.text}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise DerbyNetError(f"failed to parse DerbyNet response: {e}") from e
        if not isinstance(data, dict):
            raise DerbyNetError("unexpected DerbyNet response")
        return data

    def login(self, role: str, password: str) -> None:
        data = self._send(
            "POST", data={"action": "role.login", "name": role, "password": password}
        )
        outcome = data.get("outcome") or {}
        if outcome.get("summary") == "failure":
            raise DerbyNetError(
                f"DerbyNet login failed: {outcome.get('description')} ({outcome.get('code')})"
            )
        self._role = role
        self._password = password
        self._authenticated = True
        log.info("DerbyNet login successful as %s", role)

    def _action(self, action: str, params: dict[str, str], retry: bool = True) -> dict[str, Any]:
        """POST an action, logging in first when credentials are configured."""
        if not self._authenticated and self.has_credentials:
            log.debug("Not authenticated, logging in before %s", action)
            self.login(self._role, self._password)

        data = self._send("POST", data={"action": action, **params})
        outcome = data.get("outcome") or {}
        if outcome.get("code") == "notauthorized" and self.has_credentials and retry:
            log.debug("DerbyNet session expired, re-authenticating")
            self._authenticated = False
            return self._action(action, params, retry=False)
        if outcome.get("summary") == "failure":
            raise DerbyNetError(
                f"DerbyNet error: {outcome.get('description')} ({outcome.get('code')})"
            )
        return data

    def _query(self, query: str, **params: str) -> dict[str, Any]:
        return self._send("GET", params={"query": query, **params})

    def fetch_racers(self) -> list[Racer]:
        data = self._query("racer.list", render="200x200")
        return [Racer.from_json(r) for r in data.get("racers") or []]

    def fetch_awards(self) -> list[Award]:
        data = self._query("award.list")
        return [Award.from_json(a) for a in data.get("awards") or []]

    def fetch_award_types(self) -> list[AwardType]:
        data = self._query("award.list")
        return [AwardType.from_json(t) for t in data.get("award-types") or []]

    def create_award(self, name: str, award_type_id: int) -> int:
        """Create an award and return its DerbyNet id."""
        data = self._action(
            "award.edit",
            {"awardid": "new", "name": name, "awardtypeid": str(award_type_id)},
        )
        for award in data.get("awards") or []:
            parsed = Award.from_json(award)
            if parsed.award_name == name:
                return parsed.award_id
        raise DerbyNetError(f"award {name!r} created but its id was not returned")

    def set_award_winner(self, award_id: int, racer_id: int) -> None:
        self._action("award.winner", {"awardid": str(award_id), "racerid": str(racer_id)})
