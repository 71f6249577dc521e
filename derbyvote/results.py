"""Tallies, effective winners, and tie / multi-win conflict detection."""

import logging
from typing import Any

from derbyvote.errors import NotFoundError
from derbyvote.models import (
    Car,
    CarResult,
    CategoryResult,
    CategoryWinner,
    FullResults,
    MultiWinConflict,
    TieConflict,
)
from derbyvote.settings import SettingsProvider
from derbyvote.store.base import EntityStore

log = logging.getLogger(__name__)


def rank_car_results(results: list[CarResult]) -> list[CarResult]:
    """Sort by vote count (highest first) and assign 1-indexed ranks.

    Cars with equal counts share a rank and the next rank skips accordingly,
    e.g. 5, 3, 3, 1 votes rank as 1, 2, 2, 4.
    """
    ordered = sorted(results, key=lambda r: (-r.vote_count, r.car_id))
    rank = 0
    previous = None
    for position, result in enumerate(ordered, start=1):
        if result.vote_count != previous:
            rank = position
            previous = result.vote_count
        result.rank = rank
    return ordered


class ResultsService:
    """Read-only views over the vote table.

    Nothing is cached: every call reads the store afresh, so results, winners
    and conflicts always reflect the latest votes and overrides. All methods
    are free of side effects and may be called as often as a page refreshes.
    """

    def __init__(self, store: EntityStore, settings: SettingsProvider | None = None):
        self.store = store
        self.settings = settings

    def get_results(self) -> FullResults:
        """Vote counts for every active category, with voting statistics."""
        categories = self.store.list_categories()
        cars: dict[int, Car | None] = {}
        by_category: dict[int, list[CarResult]] = {}

        for row in self.store.get_vote_results():
            car = self._lookup_car(cars, row.car_id)
            if car is None:
                log.warning("Votes reference missing car %s", row.car_id)
                continue
            by_category.setdefault(row.category_id, []).append(
                CarResult.from_car(car, row.vote_count)
            )

        category_results = []
        for cat in categories:
            votes = rank_car_results(by_category.get(cat.id, []))
            category_results.append(CategoryResult(
                category_id=cat.id,
                category_name=cat.name,
                group_id=cat.group_id,
                group_name=cat.group_name,
                total_votes=sum(v.vote_count for v in votes),
                votes=votes,
                override_car_id=cat.override_car_id,
                override_reason=cat.override_reason,
                overridden_at=cat.overridden_at,
            ))

        return FullResults(categories=category_results, stats=self.get_stats())

    def get_category_results(self, category_id: int) -> CategoryResult:
        for result in self.get_results().categories:
            if result.category_id == category_id:
                return result
        raise NotFoundError(f"category {category_id} not found")

    def get_stats(self) -> dict[str, Any]:
        stats = self.store.get_voting_stats()
        if self.settings is not None:
            stats["voting_open"] = self.settings.is_voting_open()
        return stats

    def get_winners(self) -> list[CategoryWinner]:
        """Effective winner of each category.

        A manual override always wins, even for a car with no votes or one
        that has since been deleted. Otherwise every car tied for the most
        votes is listed. Categories with neither votes nor an override are
        left out.
        """
        winners = []
        cars: dict[int, Car | None] = {}
        for result in self.get_results().categories:
            if result.has_override:
                car = self._lookup_car(cars, result.override_car_id)
                if car is None:
                    log.warning(
                        "Override in category %s points at missing car %s",
                        result.category_id, result.override_car_id,
                    )
                    continue
                counts = {v.car_id: v.vote_count for v in result.votes}
                leaders = [CarResult.from_car(car, counts.get(car.id, 0), rank=1)]
            else:
                leaders = result.leaders
                if not leaders:
                    continue

            winners.append(CategoryWinner(
                category_id=result.category_id,
                category_name=result.category_name,
                group_id=result.group_id,
                group_name=result.group_name,
                winners=leaders,
                is_override=result.has_override,
                override_reason=result.override_reason,
            ))
        return winners

    def detect_ties(self) -> list[TieConflict]:
        """Categories where two or more cars share the highest vote count.

        Works on raw tallies only: a category keeps being reported after an
        override has settled it, with ``has_override`` set.
        """
        ties = []
        for result in self.get_results().categories:
            leaders = result.leaders
            if len(leaders) > 1:
                ties.append(TieConflict(
                    category_id=result.category_id,
                    category_name=result.category_name,
                    vote_count=leaders[0].vote_count,
                    tied_cars=leaders,
                    has_override=result.has_override,
                ))
        return ties

    def detect_multi_wins(self) -> list[MultiWinConflict]:
        """Cars winning more categories within one group than its cap allows.

        Only effective winners count (overrides applied). In an unresolved
        tie each tied car is counted as winning. Group-less categories and
        groups without a positive cap are never flagged.
        """
        groups = {g.id: g for g in self.store.list_groups()}
        wins: dict[tuple[int, int], list[tuple[CategoryWinner, CarResult]]] = {}

        for winner in self.get_winners():
            group = groups.get(winner.group_id) if winner.group_id is not None else None
            if group is None or not group.max_wins_per_car or group.max_wins_per_car <= 0:
                continue
            for car in winner.winners:
                wins.setdefault((car.car_id, group.id), []).append((winner, car))

        conflicts = []
        for (car_id, group_id), won in wins.items():
            group = groups[group_id]
            if len(won) <= group.max_wins_per_car:
                continue
            car = won[0][1]
            conflicts.append(MultiWinConflict(
                car_id=car_id,
                car_number=car.car_number,
                racer_name=car.racer_name,
                group_id=group_id,
                group_name=group.name,
                categories_won=[w.category_name for w, _ in won],
                category_ids=[w.category_id for w, _ in won],
                max_wins_per_car=group.max_wins_per_car,
            ))

        conflicts.sort(key=lambda c: (groups[c.group_id].display_order, c.group_id, c.car_id))
        return conflicts

    def _lookup_car(self, cache: dict[int, Car | None], car_id: int) -> Car | None:
        if car_id not in cache:
            cache[car_id] = self.store.get_car(car_id)
        return cache[car_id]
