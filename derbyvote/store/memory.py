"""In-process entity store backed by plain dictionaries."""

import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Any

from derbyvote.errors import ConflictError, NotFoundError
from derbyvote.models import (
    DEFAULT_VOTER_TYPE,
    Car,
    Category,
    CategoryGroup,
    DerbyNetWinner,
    Voter,
    VoteTally,
)
from derbyvote.store import register_store
from derbyvote.store.base import EntityStore


@register_store
class MemoryStore(EntityStore):
    """Dictionary-backed store, mainly for tests and demos.

    A single lock makes every public method atomic, which matches the
    per-statement atomicity of the SQLite backend. Objects are copied on the
    way in and out so callers never share state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._voters: dict[int, Voter] = {}
        self._cars: dict[int, Car] = {}
        self._categories: dict[int, Category] = {}
        self._groups: dict[int, CategoryGroup] = {}
        self._votes: dict[tuple[int, int], int] = {}  # (voter_id, category_id) -> car_id
        self._by_car: dict[tuple[int, int], set[int]] = {}  # (voter_id, car_id) -> category ids
        self._settings: dict[str, str] = {"voting_open": "true"}
        self._next_ids: Counter[str] = Counter()

    @classmethod
    def can_open(cls, url: str) -> bool:
        return url == "memory://" or url == ":memory:"

    @classmethod
    def from_url(cls, url: str) -> "MemoryStore":
        return cls()

    def _next_id(self, table: str) -> int:
        self._next_ids[table] += 1
        return self._next_ids[table]

    def _with_group(self, category: Category) -> Category:
        group = self._groups.get(category.group_id) if category.group_id else None
        return replace(
            category,
            allowed_voter_types=list(category.allowed_voter_types),
            allowed_ranks=list(category.allowed_ranks),
            group_name=group.name if group else "",
            exclusivity_pool_id=group.exclusivity_pool_id if group else None,
        )

    # --- voters ---

    def get_voter_by_qr(self, qr_code: str) -> Voter | None:
        with self._lock:
            for voter in self._voters.values():
                if voter.qr_code == qr_code:
                    return replace(voter)
            return None

    def get_voter(self, voter_id: int) -> Voter | None:
        with self._lock:
            voter = self._voters.get(voter_id)
            return replace(voter) if voter else None

    def create_voter(
        self,
        qr_code: str,
        *,
        car_id: int | None = None,
        name: str = "",
        voter_type: str = DEFAULT_VOTER_TYPE,
        rank: str = "",
    ) -> Voter:
        with self._lock:
            if any(v.qr_code == qr_code for v in self._voters.values()):
                raise ConflictError(f"QR code {qr_code!r} already exists")
            voter = Voter(
                id=self._next_id("voters"),
                qr_code=qr_code,
                car_id=car_id,
                name=name,
                voter_type=voter_type or DEFAULT_VOTER_TYPE,
                rank=rank,
            )
            self._voters[voter.id] = voter
            return replace(voter)

    def update_voter(self, voter: Voter) -> None:
        with self._lock:
            if voter.id not in self._voters:
                raise NotFoundError(f"voter {voter.id} not found")
            self._voters[voter.id] = replace(voter)

    def delete_voter(self, voter_id: int) -> None:
        with self._lock:
            self._voters.pop(voter_id, None)
            for key in [k for k in self._votes if k[0] == voter_id]:
                self._drop_vote(*key)

    def list_voters(self) -> list[Voter]:
        with self._lock:
            return [replace(v) for v in sorted(self._voters.values(), key=lambda v: v.id)]

    # --- cars ---

    def get_car(self, car_id: int) -> Car | None:
        with self._lock:
            car = self._cars.get(car_id)
            return replace(car) if car else None

    def get_car_by_derbynet_id(self, racer_id: int) -> Car | None:
        with self._lock:
            for car in self._cars.values():
                if car.derbynet_racer_id == racer_id:
                    return replace(car)
            return None

    def list_cars(self) -> list[Car]:
        with self._lock:
            return [replace(c) for c in self._sorted_cars() if c.active]

    def list_eligible_cars(self) -> list[Car]:
        with self._lock:
            return [replace(c) for c in self._sorted_cars() if c.active and c.eligible]

    def _sorted_cars(self) -> list[Car]:
        def key(car: Car):
            number = car.car_number
            return (0, int(number), "") if number.isdigit() else (1, 0, number)
        return sorted(self._cars.values(), key=key)

    def create_car(
        self,
        car_number: str,
        racer_name: str = "",
        car_name: str = "",
        photo_url: str = "",
        rank: str = "",
    ) -> Car:
        with self._lock:
            car = Car(
                id=self._next_id("cars"),
                car_number=car_number,
                racer_name=racer_name,
                car_name=car_name,
                photo_url=photo_url,
                rank=rank,
            )
            self._cars[car.id] = car
            return replace(car)

    def update_car(self, car: Car) -> None:
        with self._lock:
            if car.id not in self._cars:
                raise NotFoundError(f"car {car.id} not found")
            self._cars[car.id] = replace(car)

    def set_car_eligibility(self, car_id: int, eligible: bool) -> None:
        with self._lock:
            car = self._cars.get(car_id)
            if car is None:
                raise NotFoundError(f"car {car_id} not found")
            car.eligible = eligible

    def delete_car(self, car_id: int) -> None:
        with self._lock:
            car = self._cars.get(car_id)
            if car is not None:
                car.active = False

    def upsert_car_from_derbynet(
        self,
        racer_id: int,
        car_number: str,
        racer_name: str,
        car_name: str,
        photo_url: str,
        rank: str,
    ) -> bool:
        with self._lock:
            for car in self._cars.values():
                if car.derbynet_racer_id == racer_id:
                    car.car_number = car_number
                    car.racer_name = racer_name
                    car.car_name = car_name
                    car.photo_url = photo_url
                    car.rank = rank
                    car.active = True
                    return False
            car = Car(
                id=self._next_id("cars"),
                car_number=car_number,
                racer_name=racer_name,
                car_name=car_name,
                photo_url=photo_url,
                rank=rank,
                derbynet_racer_id=racer_id,
            )
            self._cars[car.id] = car
            return True

    def count_votes_for_car(self, car_id: int) -> int:
        with self._lock:
            return sum(1 for c in self._votes.values() if c == car_id)

    # --- categories and groups ---

    def get_category(self, category_id: int) -> Category | None:
        with self._lock:
            category = self._categories.get(category_id)
            return self._with_group(category) if category else None

    def list_categories(self) -> list[Category]:
        with self._lock:
            active = [c for c in self._categories.values() if c.active]
            active.sort(key=lambda c: (c.display_order, c.id))
            return [self._with_group(c) for c in active]

    def create_category(
        self,
        name: str,
        display_order: int = 0,
        group_id: int | None = None,
        allowed_voter_types: list[str] | None = None,
        allowed_ranks: list[str] | None = None,
    ) -> Category:
        with self._lock:
            category = Category(
                id=self._next_id("categories"),
                name=name,
                display_order=display_order,
                group_id=group_id,
                allowed_voter_types=list(allowed_voter_types or []),
                allowed_ranks=list(allowed_ranks or []),
            )
            self._categories[category.id] = category
            return self._with_group(category)

    def update_category(self, category: Category) -> None:
        with self._lock:
            current = self._categories.get(category.id)
            if current is None:
                raise NotFoundError(f"category {category.id} not found")
            current.name = category.name
            current.display_order = category.display_order
            current.group_id = category.group_id
            current.derbynet_award_id = category.derbynet_award_id
            current.allowed_voter_types = list(category.allowed_voter_types)
            current.allowed_ranks = list(category.allowed_ranks)
            current.active = category.active

    def delete_category(self, category_id: int) -> None:
        with self._lock:
            category = self._categories.get(category_id)
            if category is not None:
                category.active = False

    def upsert_category_from_derbynet(
        self, name: str, display_order: int, award_id: int
    ) -> bool:
        with self._lock:
            for category in self._categories.values():
                if category.derbynet_award_id == award_id:
                    category.name = name
                    category.active = True
                    return False
            for category in self._categories.values():
                if category.name == name:
                    category.derbynet_award_id = award_id
                    category.active = True
                    return False
            category = Category(
                id=self._next_id("categories"),
                name=name,
                display_order=display_order,
                derbynet_award_id=award_id,
            )
            self._categories[category.id] = category
            return True

    def set_override(
        self, category_id: int, car_id: int, reason: str, when: datetime
    ) -> None:
        with self._lock:
            category = self._categories.get(category_id)
            if category is None:
                raise NotFoundError(f"category {category_id} not found")
            category.override_car_id = car_id
            category.override_reason = reason
            category.overridden_at = when

    def clear_override(self, category_id: int) -> None:
        with self._lock:
            category = self._categories.get(category_id)
            if category is None:
                raise NotFoundError(f"category {category_id} not found")
            category.override_car_id = None
            category.override_reason = ""
            category.overridden_at = None

    def get_group(self, group_id: int) -> CategoryGroup | None:
        with self._lock:
            group = self._groups.get(group_id)
            return replace(group) if group else None

    def list_groups(self) -> list[CategoryGroup]:
        with self._lock:
            groups = [g for g in self._groups.values() if g.active]
            groups.sort(key=lambda g: (g.display_order, g.id))
            return [replace(g) for g in groups]

    def create_group(
        self,
        name: str,
        description: str = "",
        exclusivity_pool_id: int | None = None,
        max_wins_per_car: int | None = None,
        display_order: int = 0,
    ) -> CategoryGroup:
        with self._lock:
            group = CategoryGroup(
                id=self._next_id("category_groups"),
                name=name,
                description=description,
                exclusivity_pool_id=exclusivity_pool_id,
                max_wins_per_car=max_wins_per_car,
                display_order=display_order,
            )
            self._groups[group.id] = group
            return replace(group)

    def update_group(self, group: CategoryGroup) -> None:
        with self._lock:
            if group.id not in self._groups:
                raise NotFoundError(f"group {group.id} not found")
            self._groups[group.id] = replace(group)

    def delete_group(self, group_id: int) -> None:
        with self._lock:
            for category in self._categories.values():
                if category.group_id == group_id:
                    category.group_id = None
            self._groups.pop(group_id, None)

    # --- votes ---

    def get_voter_votes(self, voter_id: int) -> dict[int, int]:
        with self._lock:
            return {
                category_id: car_id
                for (v_id, category_id), car_id in self._votes.items()
                if v_id == voter_id
            }

    def save_vote(
        self, voter_id: int, category_id: int, car_id: int, when: datetime
    ) -> None:
        with self._lock:
            self._drop_vote(voter_id, category_id)
            self._votes[(voter_id, category_id)] = car_id
            self._by_car.setdefault((voter_id, car_id), set()).add(category_id)
            voter = self._voters.get(voter_id)
            if voter is not None:
                voter.last_voted_at = when

    def delete_vote(self, voter_id: int, category_id: int) -> None:
        with self._lock:
            self._drop_vote(voter_id, category_id)

    def _drop_vote(self, voter_id: int, category_id: int) -> None:
        car_id = self._votes.pop((voter_id, category_id), None)
        if car_id is None:
            return
        categories = self._by_car[(voter_id, car_id)]
        categories.discard(category_id)
        if not categories:
            del self._by_car[(voter_id, car_id)]

    def get_exclusivity_pool_id(self, category_id: int) -> int | None:
        with self._lock:
            category = self._categories.get(category_id)
            if category is None or category.group_id is None:
                return None
            group = self._groups.get(category.group_id)
            return group.exclusivity_pool_id if group else None

    def find_conflicting_vote(
        self, voter_id: int, car_id: int, category_id: int, pool_id: int
    ) -> tuple[int, str] | None:
        with self._lock:
            for other_id in sorted(self._by_car.get((voter_id, car_id), ())):
                if other_id == category_id:
                    continue
                if self.get_exclusivity_pool_id(other_id) == pool_id:
                    return other_id, self._categories[other_id].name
            return None

    def clear_conflicting_vote(
        self, voter_id: int, category_id: int, car_id: int
    ) -> None:
        with self._lock:
            if self._votes.get((voter_id, category_id)) == car_id:
                self._drop_vote(voter_id, category_id)

    def get_vote_results(self) -> list[VoteTally]:
        with self._lock:
            counts = Counter(
                (category_id, car_id)
                for (_, category_id), car_id in self._votes.items()
            )
        rows = [VoteTally(cat, car, n) for (cat, car), n in counts.items()]
        rows.sort(key=lambda r: (r.category_id, -r.vote_count, r.car_id))
        return rows

    def get_winners_for_derbynet(self) -> list[DerbyNetWinner]:
        with self._lock:
            tallies: dict[int, list[VoteTally]] = {}
            for row in self.get_vote_results():
                tallies.setdefault(row.category_id, []).append(row)

            winners = []
            for category in self.list_categories():
                rows = tallies.get(category.id, [])
                counts = {r.car_id: r.vote_count for r in rows}
                if category.has_override:
                    car_id = category.override_car_id
                    tied = False
                elif rows:
                    car_id = rows[0].car_id
                    tied = len(rows) > 1 and rows[1].vote_count == rows[0].vote_count
                else:
                    continue
                car = self.get_car(car_id)
                winners.append(DerbyNetWinner(
                    category_id=category.id,
                    category_name=category.name,
                    derbynet_award_id=category.derbynet_award_id,
                    car_id=car_id,
                    derbynet_racer_id=car.derbynet_racer_id if car else None,
                    vote_count=counts.get(car_id, 0),
                    is_override=category.has_override,
                    tied=tied,
                ))
            return winners

    def count_votes_for_category(self, category_id: int) -> int:
        with self._lock:
            return sum(1 for (_, c) in self._votes if c == category_id)

    # --- settings ---

    def get_setting(self, key: str) -> str:
        with self._lock:
            try:
                return self._settings[key]
            except KeyError:
                raise NotFoundError(f"setting {key!r} not found") from None

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self._settings[key] = value

    def get_voting_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_voters": len(self._voters),
                "voters_who_voted": len({v for v, _ in self._votes}),
                "total_votes": len(self._votes),
                "total_categories": sum(1 for c in self._categories.values() if c.active),
                "total_cars": sum(1 for c in self._cars.values() if c.active),
            }
