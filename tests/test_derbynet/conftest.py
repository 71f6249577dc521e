"""A fake DerbyNet server behind httpx.MockTransport."""

from urllib.parse import parse_qsl

import httpx
import pytest

from derbyvote.derbynet import DerbyNetClient, DerbyNetSync

BASE_URL = "http://derbynet.test/derbynet"
ROLE = "RaceCoordinator"
PASSWORD = "doyourbest"


def outcome(summary="success", code="success", description=""):
    return {"outcome": {"summary": summary, "code": code, "description": description}}


class FakeDerbyNet:
    """Just enough of DerbyNet's action.php to exercise the client.

    Actions other than login require a session unless ``open_access`` is set.
    Set ``expire_next`` to answer the next action with ``notauthorized``, and
    add award ids to ``failing_awards`` to reject winners for them.
    """

    def __init__(self):
        self.racers: list[dict] = []
        self.awards: list[dict] = []
        self.award_types = [
            {"awardtypeid": 2, "awardtype": "Design"},
            {"awardtypeid": 3, "awardtype": "Other"},
        ]
        self.winners: dict[str, str] = {}
        self.failing_awards: set[str] = set()
        self.open_access = False
        self.expire_next = False
        self.logged_in = False
        self.logins = 0
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.url.path == "/derbynet/action.php"

        if request.method == "GET":
            query = request.url.params.get("query")
            if query == "racer.list":
                return httpx.Response(200, json={**outcome(), "racers": self.racers})
            if query == "award.list":
                return httpx.Response(200, json={
                    **outcome(), "awards": self.awards, "award-types": self.award_types,
                })
            return httpx.Response(404, text="unknown query")

        form = dict(parse_qsl(request.content.decode()))
        action = form["action"]
        if action == "role.login":
            self.logins += 1
            if form.get("name") != ROLE or form.get("password") != PASSWORD:
                return httpx.Response(200, json=outcome("failure", "badpassword", "Incorrect password"))
            self.logged_in = True
            return httpx.Response(200, json=outcome())

        if self.expire_next:
            self.expire_next = False
            self.logged_in = False
            return httpx.Response(200, json=outcome("failure", "notauthorized", "Not authorized"))
        if not (self.logged_in or self.open_access):
            return httpx.Response(200, json=outcome("failure", "notauthorized", "Not authorized"))

        if action == "award.winner":
            if form["awardid"] in self.failing_awards:
                return httpx.Response(200, json=outcome("failure", "sql", "Award is locked"))
            self.winners[form["awardid"]] = form["racerid"]
            return httpx.Response(200, json=outcome())
        if action == "award.edit":
            award_id = max([int(a["awardid"]) for a in self.awards], default=0) + 1
            self.awards.append({
                "awardid": award_id,
                "awardname": form["name"],
                "awardtypeid": form["awardtypeid"],
                "sort": award_id,
            })
            return httpx.Response(200, json={**outcome(), "awards": self.awards})
        return httpx.Response(200, json=outcome("failure", "notunderstood", "Unknown action"))


@pytest.fixture
def derbynet():
    return FakeDerbyNet()


@pytest.fixture
def client(derbynet):
    with DerbyNetClient(BASE_URL + "/", transport=httpx.MockTransport(derbynet.handler)) as c:
        yield c


@pytest.fixture
def sync(store, settings, client):
    settings.set("derbynet_url", BASE_URL)
    settings.set("derbynet_role", ROLE)
    settings.set("derbynet_password", PASSWORD)
    return DerbyNetSync(store, settings, client)
