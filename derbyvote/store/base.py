"""Abstract base class for entity stores."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from derbyvote.models import (
    DEFAULT_VOTER_TYPE,
    Car,
    Category,
    CategoryGroup,
    DerbyNetWinner,
    Voter,
    VoteTally,
)


class EntityStore(ABC):
    """Persistence contract consumed by the voting engine.

    Each method is atomic on its own; callers must not assume that two calls
    run in one transaction. Backends are registered via the @register_store
    decorator in derbyvote/store/__init__.py.

    Lookups by id (``get_car``, ``get_category``) return rows regardless of
    their active flag, so overrides pointing at soft-deleted cars still
    resolve. The ``list_*`` methods return active rows only.
    """

    @classmethod
    @abstractmethod
    def can_open(cls, url: str) -> bool:
        """Check if this backend handles the given store URL."""
        pass

    @classmethod
    @abstractmethod
    def from_url(cls, url: str) -> "EntityStore":
        """Open a store for the given URL."""
        pass

    def close(self) -> None:
        """Release any resources held by the store."""

    # --- voters ---

    @abstractmethod
    def get_voter_by_qr(self, qr_code: str) -> Voter | None:
        pass

    @abstractmethod
    def get_voter(self, voter_id: int) -> Voter | None:
        pass

    @abstractmethod
    def create_voter(
        self,
        qr_code: str,
        *,
        car_id: int | None = None,
        name: str = "",
        voter_type: str = DEFAULT_VOTER_TYPE,
        rank: str = "",
    ) -> Voter:
        """Create a voter.

        Raises:
            ConflictError: If the QR code is already taken
        """
        pass

    @abstractmethod
    def update_voter(self, voter: Voter) -> None:
        pass

    @abstractmethod
    def delete_voter(self, voter_id: int) -> None:
        """Delete a voter together with all of their votes."""
        pass

    @abstractmethod
    def list_voters(self) -> list[Voter]:
        pass

    # --- cars ---

    @abstractmethod
    def get_car(self, car_id: int) -> Car | None:
        pass

    @abstractmethod
    def get_car_by_derbynet_id(self, racer_id: int) -> Car | None:
        pass

    @abstractmethod
    def list_cars(self) -> list[Car]:
        pass

    @abstractmethod
    def list_eligible_cars(self) -> list[Car]:
        pass

    @abstractmethod
    def create_car(
        self,
        car_number: str,
        racer_name: str = "",
        car_name: str = "",
        photo_url: str = "",
        rank: str = "",
    ) -> Car:
        pass

    @abstractmethod
    def update_car(self, car: Car) -> None:
        pass

    @abstractmethod
    def set_car_eligibility(self, car_id: int, eligible: bool) -> None:
        pass

    @abstractmethod
    def delete_car(self, car_id: int) -> None:
        """Soft-delete a car (mark it inactive)."""
        pass

    @abstractmethod
    def upsert_car_from_derbynet(
        self,
        racer_id: int,
        car_number: str,
        racer_name: str,
        car_name: str,
        photo_url: str,
        rank: str,
    ) -> bool:
        """Create or refresh the car linked to a DerbyNet racer.

        Returns:
            True if a new car was created, False if an existing one was updated
        """
        pass

    @abstractmethod
    def count_votes_for_car(self, car_id: int) -> int:
        pass

    # --- categories and groups ---

    @abstractmethod
    def get_category(self, category_id: int) -> Category | None:
        pass

    @abstractmethod
    def list_categories(self) -> list[Category]:
        """Return active categories in display order."""
        pass

    @abstractmethod
    def create_category(
        self,
        name: str,
        display_order: int = 0,
        group_id: int | None = None,
        allowed_voter_types: list[str] | None = None,
        allowed_ranks: list[str] | None = None,
    ) -> Category:
        pass

    @abstractmethod
    def update_category(self, category: Category) -> None:
        """Persist the editable fields of a category.

        Override fields are left alone; use set_override/clear_override.
        """
        pass

    @abstractmethod
    def delete_category(self, category_id: int) -> None:
        """Soft-delete a category."""
        pass

    @abstractmethod
    def upsert_category_from_derbynet(
        self, name: str, display_order: int, award_id: int
    ) -> bool:
        """Create or link the category for a DerbyNet award, matched by award id then name.

        Returns:
            True if a new category was created
        """
        pass

    @abstractmethod
    def set_override(
        self, category_id: int, car_id: int, reason: str, when: datetime
    ) -> None:
        pass

    @abstractmethod
    def clear_override(self, category_id: int) -> None:
        pass

    @abstractmethod
    def get_group(self, group_id: int) -> CategoryGroup | None:
        pass

    @abstractmethod
    def list_groups(self) -> list[CategoryGroup]:
        pass

    @abstractmethod
    def create_group(
        self,
        name: str,
        description: str = "",
        exclusivity_pool_id: int | None = None,
        max_wins_per_car: int | None = None,
        display_order: int = 0,
    ) -> CategoryGroup:
        pass

    @abstractmethod
    def update_group(self, group: CategoryGroup) -> None:
        pass

    @abstractmethod
    def delete_group(self, group_id: int) -> None:
        """Delete a group; its categories become group-less."""
        pass

    # --- votes ---

    @abstractmethod
    def get_voter_votes(self, voter_id: int) -> dict[int, int]:
        """Return the voter's current votes as {category_id: car_id}."""
        pass

    @abstractmethod
    def save_vote(
        self, voter_id: int, category_id: int, car_id: int, when: datetime
    ) -> None:
        """Insert or replace the (voter, category) vote and stamp the voter."""
        pass

    @abstractmethod
    def delete_vote(self, voter_id: int, category_id: int) -> None:
        pass

    @abstractmethod
    def get_exclusivity_pool_id(self, category_id: int) -> int | None:
        """Return the pool id of the category's group, or None."""
        pass

    @abstractmethod
    def find_conflicting_vote(
        self, voter_id: int, car_id: int, category_id: int, pool_id: int
    ) -> tuple[int, str] | None:
        """Find the voter's vote for this car in another category of the pool.

        Returns:
            (category_id, category_name) of the conflicting vote, or None
        """
        pass

    @abstractmethod
    def clear_conflicting_vote(
        self, voter_id: int, category_id: int, car_id: int
    ) -> None:
        """Delete the vote only if it still points at ``car_id``."""
        pass

    @abstractmethod
    def get_vote_results(self) -> list[VoteTally]:
        """Return vote counts per (category, car).

        Rows are ordered by category id, then vote count descending, then
        car id.
        """
        pass

    @abstractmethod
    def get_winners_for_derbynet(self) -> list[DerbyNetWinner]:
        """Effective winner of every active category that has one.

        An override wins outright, even with no votes. Otherwise the car with
        the most votes wins; when several share the top count the row is
        marked ``tied``. Categories without votes or an override are left
        out. Rows are in display order.
        """
        pass

    @abstractmethod
    def count_votes_for_category(self, category_id: int) -> int:
        pass

    # --- settings ---

    @abstractmethod
    def get_setting(self, key: str) -> str:
        """Read a setting.

        Raises:
            NotFoundError: If the key has never been set
        """
        pass

    @abstractmethod
    def set_setting(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def get_voting_stats(self) -> dict[str, Any]:
        """Return counters: total_voters, voters_who_voted, total_votes,
        total_categories and total_cars."""
        pass
