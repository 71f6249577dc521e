"""Tests for pushing winners to and pulling entities from DerbyNet."""

import threading

import httpx

from tests.conftest import cast_votes
from tests.test_derbynet.conftest import BASE_URL, ROLE, FakeDerbyNet

from derbyvote.derbynet import DerbyNetClient, DerbyNetSync
from derbyvote.derbynet.sync import ERROR, PARTIAL, SKIPPED, SUCCESS, racer_voter_code


def link(store, derby):
    """Link every derby car and category to DerbyNet ids (racer 10+n, award 20+n)."""
    for n, key in enumerate("ABCD", 1):
        car = store.get_car(derby.car(key))
        car.derbynet_racer_id = 10 + n
        store.update_car(car)
    for n, category in enumerate(store.list_categories(), 1):
        category.derbynet_award_id = 20 + n
        store.update_category(category)


class TestRacerVoterCode:
    def test_stable(self):
        assert racer_voter_code(7) == racer_voter_code(7)
        assert racer_voter_code(7) != racer_voter_code(8)

    def test_format(self):
        code = racer_voter_code(42)
        assert code.startswith("R42-")
        assert len(code) == len("R42-") + 6
        assert code == code.upper()


class TestPushWinners:
    def test_nothing_to_push(self, sync, derbynet, derby):
        result = sync.push_winners()
        assert result.status == SUCCESS
        assert result.message == "No winners to push (no votes recorded)"
        assert derbynet.requests == []

    def test_pushes_winners(self, store, sync, voting, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("B"), 2, "f")
        cast_votes(voting, derby.cat("Funniest"), derby.car("D"), 1, "u")

        result = sync.push_winners()

        assert result.status == SUCCESS
        assert result.pushed == 2
        assert result.message == "2 winners pushed, 0 skipped, 0 errors"
        fastest = store.get_category(derby.cat("Fastest")).derbynet_award_id
        funniest = store.get_category(derby.cat("Funniest")).derbynet_award_id
        assert derbynet.winners == {str(fastest): "12", str(funniest): "14"}
        assert derbynet.logins == 1

    def test_pushes_override(self, store, sync, voting, overrides, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 3, "f")
        overrides.set_override(derby.cat("Fastest"), derby.car("C"), "lane fault")

        sync.push_winners()

        award = store.get_category(derby.cat("Fastest")).derbynet_award_id
        assert derbynet.winners == {str(award): "13"}

    def test_unresolved_tie_skipped(self, store, sync, voting, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 1, "a")
        cast_votes(voting, derby.cat("Fastest"), derby.car("B"), 1, "b")

        result = sync.push_winners()

        assert result.status == PARTIAL
        assert result.skipped == 1
        assert result.details[0].status == SKIPPED
        assert "Tie" in result.details[0].message
        assert derbynet.winners == {}

    def test_multi_win_blocks_push(self, store, sync, voting, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 2, "f")
        cast_votes(voting, derby.cat("Most Aero"), derby.car("A"), 1, "m")
        cast_votes(voting, derby.cat("Funniest"), derby.car("B"), 1, "u")

        result = sync.push_winners()

        assert result.status == ERROR
        assert result.pushed == 0
        assert result.message == "Cannot push results: resolve multiple wins first"
        assert result.errors == ["car 101 wins 2 categories in Speed (max 1): Fastest, Most Aero"]
        assert derbynet.winners == {}
        assert derbynet.requests == []

    def test_override_clears_multi_win(self, store, sync, voting, overrides, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 2, "f")
        cast_votes(voting, derby.cat("Most Aero"), derby.car("A"), 1, "m")
        overrides.set_override(derby.cat("Most Aero"), derby.car("B"), "one award per car")

        result = sync.push_winners()

        assert result.status == SUCCESS
        assert result.pushed == 2
        fastest = store.get_category(derby.cat("Fastest")).derbynet_award_id
        aero = store.get_category(derby.cat("Most Aero")).derbynet_award_id
        assert derbynet.winners == {str(fastest): "11", str(aero): "12"}

    def test_unlinked_category_skipped(self, store, sync, voting, derbynet, derby):
        link(store, derby)
        extra = store.create_category("Most Colorful", 9)
        cast_votes(voting, extra.id, derby.car("A"), 1, "c")
        cast_votes(voting, derby.cat("Funniest"), derby.car("A"), 1, "u")

        result = sync.push_winners()

        assert result.status == PARTIAL
        assert result.pushed == 1
        assert result.skipped == 1
        assert result.message == "1 winners pushed, 1 skipped, 0 errors"

    def test_unlinked_car_skipped(self, store, sync, voting, derbynet, derby):
        link(store, derby)
        car = store.create_car("105", "New Kid")
        cast_votes(voting, derby.cat("Funniest"), car.id, 1, "u")

        result = sync.push_winners()

        assert result.skipped == 1
        assert "not linked" in result.details[0].message

    def test_item_failure_does_not_stop_batch(self, store, sync, voting, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 1, "f")
        cast_votes(voting, derby.cat("Funniest"), derby.car("B"), 1, "u")
        derbynet.failing_awards.add(str(store.get_category(derby.cat("Fastest")).derbynet_award_id))

        result = sync.push_winners()

        assert result.status == PARTIAL
        assert result.pushed == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Fastest:")
        assert [d.status for d in result.details] == [ERROR, SUCCESS]

    def test_login_failure(self, store, settings, sync, voting, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 1, "f")
        settings.set("derbynet_password", "wrong")

        result = sync.push_winners()

        assert result.status == ERROR
        assert result.pushed == 0
        assert derbynet.winners == {}

    def test_unreachable(self, store, settings, voting, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 1, "f")

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with DerbyNetClient(transport=httpx.MockTransport(handler)) as client:
            result = DerbyNetSync(store, settings, client).push_winners(BASE_URL)

        assert result.status == ERROR
        assert result.pushed == 0
        assert len(result.errors) == 1

    def test_cancelled(self, store, sync, voting, derbynet, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 1, "f")
        cancel = threading.Event()
        cancel.set()

        result = sync.push_winners(cancel=cancel)

        assert result.pushed == 0
        assert result.skipped == 1
        assert result.details[0].message == "Cancelled before push"
        assert derbynet.winners == {}

    def test_url_remembered(self, store, settings, voting, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 1, "f")
        fake = FakeDerbyNet()
        fake.open_access = True

        with DerbyNetClient(transport=httpx.MockTransport(fake.handler)) as client:
            sync = DerbyNetSync(store, settings, client)
            assert sync.push_winners(BASE_URL + "/").status == SUCCESS
            assert settings.get("derbynet_url") == BASE_URL + "/"
            assert sync.push_winners().status == SUCCESS

    def test_missing_url(self, store, settings, voting, derby):
        link(store, derby)
        cast_votes(voting, derby.cat("Fastest"), derby.car("A"), 1, "f")
        with DerbyNetClient() as client:
            result = DerbyNetSync(store, settings, client).push_winners()
        assert result.status == ERROR
        assert result.message == "DerbyNet URL is not configured"
        assert result.pushed == 0
        assert result.details == []


class TestSyncCars:
    RACERS = [
        {"racerid": 1, "firstname": "Alex", "lastname": "Johnson", "carnumber": 101,
         "carname": "Lightning Bolt", "car_photo": "/photo.php/car/1", "rank": "Tiger"},
        {"racerid": "2", "firstname": "Sarah", "lastname": "Williams", "carnumber": "102",
         "carname": "", "car_photo": "", "rank": "Bear"},
    ]

    def test_creates_cars_and_voters(self, store, sync, derbynet):
        derbynet.racers = self.RACERS

        result = sync.sync_cars(BASE_URL)

        assert result.status == SUCCESS
        assert (result.total_racers, result.cars_created, result.voters_created) == (2, 2, 2)
        car = store.get_car_by_derbynet_id(1)
        assert car.car_number == "101"
        assert car.racer_name == "Alex Johnson"
        assert car.photo_url == BASE_URL + "/photo.php/car/1"
        assert store.get_car_by_derbynet_id(2).photo_url == ""
        voter = store.get_voter_by_qr(racer_voter_code(1))
        assert voter.car_id == car.id
        assert voter.name == "Alex Johnson"

    def test_resync_updates(self, store, sync, derbynet):
        derbynet.racers = self.RACERS
        sync.sync_cars(BASE_URL)
        derbynet.racers = [dict(self.RACERS[0], carname="Thunder Bolt")]

        result = sync.sync_cars(BASE_URL)

        assert (result.cars_created, result.cars_updated) == (0, 1)
        assert (result.voters_created, result.voters_updated) == (0, 1)
        assert store.get_car_by_derbynet_id(1).car_name == "Thunder Bolt"
        assert len(store.list_voters()) == 2

    def test_fetch_failure(self, store, settings):
        with DerbyNetClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
            result = DerbyNetSync(store, settings, client).sync_cars(BASE_URL)
        assert result.status == ERROR
        assert store.list_cars() == []


class TestSyncCategories:
    def test_links_creates_and_publishes(self, store, sync, derbynet):
        store.create_category("Best Design", 1)
        funniest = store.create_category("Funniest", 2)
        derbynet.awards = [
            {"awardid": 5, "awardname": "Best Design", "sort": 1},
            {"awardid": 6, "awardname": "Best in Show", "sort": 0},
        ]

        result = sync.sync_categories(BASE_URL)

        assert result.status == SUCCESS
        assert result.total_awards == 2
        assert (result.categories_created, result.categories_updated) == (1, 1)
        assert result.awards_created == 1
        by_name = {c.name: c for c in store.list_categories()}
        assert by_name["Best Design"].derbynet_award_id == 5
        assert by_name["Best in Show"].display_order == 6
        assert store.get_category(funniest.id).derbynet_award_id == 7
        assert derbynet.awards[-1]["awardname"] == "Funniest"
        assert derbynet.awards[-1]["awardtypeid"] == "2"

    def test_second_sync_is_quiet(self, store, sync, derbynet):
        store.create_category("Funniest", 1)
        sync.sync_categories(BASE_URL)
        result = sync.sync_categories(BASE_URL)
        assert result.awards_created == 0
        assert result.categories_updated == 1
        assert len(derbynet.awards) == 1

    def test_award_creation_failure(self, store, settings, derbynet):
        store.create_category("Funniest", 1)
        settings.set("derbynet_role", ROLE)
        settings.set("derbynet_password", "wrong")
        with DerbyNetClient(transport=httpx.MockTransport(derbynet.handler)) as client:
            result = DerbyNetSync(store, settings, client).sync_categories(BASE_URL)
        assert result.status == PARTIAL
        assert result.awards_created == 0
        assert result.errors[0].startswith("category 'Funniest'")
