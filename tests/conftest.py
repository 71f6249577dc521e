"""Shared fixtures and helpers."""

from types import SimpleNamespace

import pytest

from derbyvote.broadcast import MemoryBroadcaster
from derbyvote.overrides import OverrideManager
from derbyvote.results import ResultsService
from derbyvote.settings import SettingsProvider
from derbyvote.store.memory import MemoryStore
from derbyvote.store.sqlite import SQLiteStore
from derbyvote.voting import VotingService


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every store-backed test runs against both backends."""
    if request.param == "memory":
        s = MemoryStore()
    else:
        s = SQLiteStore(tmp_path / "derbyvote.db")
    yield s
    s.close()


@pytest.fixture
def broadcaster():
    return MemoryBroadcaster()


@pytest.fixture
def settings(store, broadcaster):
    return SettingsProvider(store, broadcaster)


@pytest.fixture
def voting(store, settings):
    return VotingService(store, settings)


@pytest.fixture
def results(store, settings):
    return ResultsService(store, settings)


@pytest.fixture
def overrides(store, broadcaster):
    return OverrideManager(store, broadcaster)


@pytest.fixture
def derby(store):
    """A small event.

    Groups:
        Design  pool 1, max 1 win per car: Best Design, Most Creative
        Speed   no pool, max 1 win per car: Fastest, Most Aero
        Cubs    pool 1, no cap:             Cub Favorite (Tiger/Wolf voters only)
    Group-less: Funniest

    Cars 101-104, all eligible.
    """
    design = store.create_group("Design", exclusivity_pool_id=1, max_wins_per_car=1, display_order=1)
    speed = store.create_group("Speed", max_wins_per_car=1, display_order=2)
    cubs = store.create_group("Cubs", exclusivity_pool_id=1, display_order=3)

    categories = {
        "Best Design": store.create_category("Best Design", 1, design.id),
        "Most Creative": store.create_category("Most Creative", 2, design.id),
        "Fastest": store.create_category("Fastest", 3, speed.id),
        "Most Aero": store.create_category("Most Aero", 4, speed.id),
        "Cub Favorite": store.create_category("Cub Favorite", 5, cubs.id, allowed_ranks=["Tiger", "Wolf"]),
        "Funniest": store.create_category("Funniest", 6),
    }
    cars = {
        "A": store.create_car("101", "Alex Johnson", "Lightning Bolt", rank="Tiger"),
        "B": store.create_car("102", "Sarah Williams", "Red Rocket", rank="Bear"),
        "C": store.create_car("103", "Mike Chen", "Blue Thunder", rank="Wolf"),
        "D": store.create_car("104", "Emma Davis", "Pink Panther", rank="Lion"),
    }
    return SimpleNamespace(
        groups={"Design": design, "Speed": speed, "Cubs": cubs},
        categories=categories,
        cars=cars,
        cat=lambda name: categories[name].id,
        car=lambda name: cars[name].id,
    )


def cast_votes(voting: VotingService, category_id: int, car_id: int, count: int, prefix: str) -> None:
    """Have ``count`` fresh voters (QR codes ``{prefix}-0``...) vote for one car."""
    for i in range(count):
        voting.submit_vote(f"{prefix}-{i}", category_id, car_id)
