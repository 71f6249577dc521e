"""Vote submission with exclusivity-pool conflict handling."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from derbyvote.errors import (
    InvalidInputError,
    NotFoundError,
    ValidationError,
    VotingClosedError,
)
from derbyvote.models import Category, Voter, VoteData, VoteResult
from derbyvote.settings import VOTING_INSTRUCTIONS, SettingsProvider
from derbyvote.store.base import EntityStore

log = logging.getLogger(__name__)

# Sentinel car id meaning "remove my vote in this category"
NO_CAR = "none"


def parse_id(value: int | float | str, what: str) -> int:
    """Coerce a client-supplied id to an int.

    Raises:
        InvalidInputError: If the value is not a positive integer
    """
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidInputError(f"invalid {what} id: {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"invalid {what} id: {value!r}") from None
    if parsed <= 0:
        raise InvalidInputError(f"invalid {what} id: {value!r}")
    return parsed


def is_deselect(car_id: int | str | None) -> bool:
    if isinstance(car_id, bool):
        return False
    if car_id is None or car_id == 0:
        return True
    return isinstance(car_id, str) and car_id.strip().lower() in ("", NO_CAR, "0")


@dataclass
class ExclusivityConflict:
    """An older vote that blocks the new one: same voter, same car, same pool."""
    category_id: int
    category_name: str


class ExclusivityResolver:
    """Keeps a voter from backing the same car twice within one exclusivity pool.

    The lookup is a single point read scoped to (voter, car, pool) that
    excludes the target category, so its cost does not grow with the number
    of votes.

    The check and the delete are separate store calls. Two concurrent
    submissions by the same voter can both see "no conflict" and both
    write; the (voter, category) unique key still holds, and the stale
    pairing is cleared by the voter's next submission. This is a best-effort
    guarantee, not a transactional one.
    """

    def __init__(self, store: EntityStore):
        self.store = store

    def find_conflict(
        self, voter_id: int, car_id: int, category_id: int
    ) -> ExclusivityConflict | None:
        pool_id = self.store.get_exclusivity_pool_id(category_id)
        if pool_id is None:
            return None
        found = self.store.find_conflicting_vote(voter_id, car_id, category_id, pool_id)
        if found is None:
            return None
        return ExclusivityConflict(category_id=found[0], category_name=found[1])

    def resolve(
        self, voter_id: int, car_id: int, category_id: int
    ) -> ExclusivityConflict | None:
        """Find and retract the conflicting vote, if any.

        Returns:
            The conflict that was cleared, or None
        """
        conflict = self.find_conflict(voter_id, car_id, category_id)
        if conflict is not None:
            self.store.clear_conflicting_vote(voter_id, conflict.category_id, car_id)
            log.info(
                "Cleared conflicting vote voter_id=%s category=%s car=%s",
                voter_id, conflict.category_id, car_id,
            )
        return conflict


class VotingService:
    """Validates and records votes.

    Broadcasting the changed totals is left to the caller.
    """

    def __init__(
        self,
        store: EntityStore,
        settings: SettingsProvider,
        resolver: ExclusivityResolver | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings
        self.resolver = resolver or ExclusivityResolver(store)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def get_or_create_voter(self, qr_code: str) -> Voter:
        """Look up a voter by token, creating one on first use.

        Raises:
            InvalidInputError: If the token is blank
            NotFoundError: If the token is unknown and only pre-registered
                codes may vote
        """
        qr_code = (qr_code or "").strip()
        if not qr_code:
            raise InvalidInputError("voter QR code is required")
        voter = self.store.get_voter_by_qr(qr_code)
        if voter is not None:
            return voter
        if self.settings.require_registered_qr():
            raise NotFoundError("QR code is not registered")
        log.info("Creating voter for new QR code %s", qr_code)
        return self.store.create_voter(qr_code)

    def voter_rank(self, voter: Voter) -> str:
        """The voter's own rank, else the rank of the car they race."""
        if voter.rank:
            return voter.rank
        if voter.car_id is not None:
            car = self.store.get_car(voter.car_id)
            if car is not None:
                return car.rank
        return ""

    def get_vote_data(self, qr_code: str) -> VoteData:
        """Collect the ballot for a voter: visible categories, cars and current votes."""
        voter = self.get_or_create_voter(qr_code)
        rank = self.voter_rank(voter)
        categories = [
            c for c in self.store.list_categories() if c.allows(voter.voter_type, rank)
        ]
        return VoteData(
            categories=categories,
            cars=self.store.list_eligible_cars(),
            votes=self.store.get_voter_votes(voter.id),
            instructions=self.settings.get(VOTING_INSTRUCTIONS),
        )

    def submit_vote(
        self,
        qr_code: str,
        category_id: int | str,
        car_id: int | str | None,
        *,
        admin: bool = False,
    ) -> VoteResult:
        """Record a vote, replacing the voter's earlier pick in the category.

        Args:
            qr_code: Voter token; unknown tokens create a voter
            category_id: Category being voted in
            car_id: Chosen car, or None / "none" to withdraw the vote
            admin: Bypass the voting-closed check

        Returns:
            VoteResult, with the cleared category when an older vote for the
            same car in the same exclusivity pool was retracted

        Raises:
            VotingClosedError: Voting is closed and ``admin`` is False
            InvalidInputError: Malformed ids or token, or an ineligible car
            NotFoundError: Unknown or inactive category or car
            ValidationError: Voter not allowed in the category
        """
        if not admin and not self.settings.is_voting_open():
            raise VotingClosedError()

        category_id = parse_id(category_id, "category")
        deselect = is_deselect(car_id)
        if not deselect:
            car_id = parse_id(car_id, "car")

        voter = self.get_or_create_voter(qr_code)
        category = self._get_active_category(category_id)
        self._check_allowed(voter, category)

        if deselect:
            self.store.delete_vote(voter.id, category_id)
            log.info("Vote removed qr=%s voter_id=%s category=%s", voter.qr_code, voter.id, category_id)
            return VoteResult(accepted=True, message="Vote removed")

        car = self.store.get_car(car_id)
        if car is None or not car.active:
            raise NotFoundError("car not found")
        if not car.eligible:
            raise InvalidInputError("car is not eligible for voting")

        conflict = self.resolver.resolve(voter.id, car_id, category_id)
        self.store.save_vote(voter.id, category_id, car_id, self.clock())
        log.info(
            "Vote recorded qr=%s voter_id=%s category=%s car=%s",
            voter.qr_code, voter.id, category_id, car_id,
        )

        result = VoteResult(accepted=True)
        if conflict is not None:
            result.conflict_cleared = True
            result.conflict_category_id = conflict.category_id
            result.conflict_category_name = conflict.category_name
        return result

    def _get_active_category(self, category_id: int) -> Category:
        category = self.store.get_category(category_id)
        if category is None or not category.active:
            raise NotFoundError("category not found")
        return category

    def _check_allowed(self, voter: Voter, category: Category) -> None:
        rank = self.voter_rank(voter)
        if not category.allows(voter.voter_type, rank):
            raise ValidationError(
                f"voters of type {voter.voter_type!r}"
                + (f" and rank {rank!r}" if rank else "")
                + f" cannot vote in {category.name!r}"
            )
