"""Core data models for voters, cars, categories, votes and results."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

DEFAULT_VOTER_TYPE = "general"


@dataclass
class Voter:
    """A person holding a voting token.

    Attributes:
        id: Store identifier
        qr_code: Opaque, unique voting token (printed as a QR code)
        car_id: Car this voter races, if any
        name: Optional display name
        voter_type: Classification used by category allow-lists
        rank: Classification rank; when empty the linked car's rank applies
        last_voted_at: Time of the most recent accepted vote
    """
    id: int
    qr_code: str
    car_id: int | None = None
    name: str = ""
    voter_type: str = DEFAULT_VOTER_TYPE
    rank: str = ""
    last_voted_at: datetime | None = None


@dataclass
class Car:
    """A pinewood derby car, the thing voters pick in each category.

    Cars are soft-deleted: ``active`` goes False but the row stays so that
    overrides and old votes keep resolving.
    """
    id: int
    car_number: str
    racer_name: str = ""
    car_name: str = ""
    photo_url: str = ""
    rank: str = ""
    eligible: bool = True
    active: bool = True
    derbynet_racer_id: int | None = None


@dataclass
class CategoryGroup:
    """A named cluster of categories.

    Attributes:
        exclusivity_pool_id: Groups sharing the same pool id forbid a voter
            from picking the same car in two of their categories
        max_wins_per_car: How many categories of this group one car may win;
            None means unconstrained
    """
    id: int
    name: str
    description: str = ""
    exclusivity_pool_id: int | None = None
    max_wins_per_car: int | None = None
    display_order: int = 0
    active: bool = True


@dataclass
class Category:
    """A single award being voted on.

    ``group_name`` and ``exclusivity_pool_id`` are read-only values copied from
    the owning group when the store loads the category.
    """
    id: int
    name: str
    display_order: int = 0
    group_id: int | None = None
    derbynet_award_id: int | None = None
    allowed_voter_types: list[str] = field(default_factory=list)
    allowed_ranks: list[str] = field(default_factory=list)
    override_car_id: int | None = None
    override_reason: str = ""
    overridden_at: datetime | None = None
    active: bool = True
    group_name: str = ""
    exclusivity_pool_id: int | None = None

    @property
    def has_override(self) -> bool:
        return self.override_car_id is not None

    def allows(self, voter_type: str, rank: str) -> bool:
        """Check the allow-lists; an empty list admits everyone."""
        if self.allowed_voter_types and voter_type not in self.allowed_voter_types:
            return False
        if self.allowed_ranks and rank not in self.allowed_ranks:
            return False
        return True


@dataclass
class Vote:
    voter_id: int
    category_id: int
    car_id: int


@dataclass
class VoteTally:
    """One row of the raw tally: votes for a car in a category."""
    category_id: int
    car_id: int
    vote_count: int


@dataclass
class VoteResult:
    """Outcome of a vote submission."""
    accepted: bool
    message: str = "Vote recorded"
    conflict_cleared: bool = False
    conflict_category_id: int | None = None
    conflict_category_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class VoteData:
    """Everything a voter's ballot page needs."""
    categories: list[Category]
    cars: list[Car]
    votes: dict[int, int]  # category_id -> car_id
    instructions: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CarResult:
    """A car's standing within one category."""
    car_id: int
    car_number: str
    car_name: str
    racer_name: str
    vote_count: int
    rank: int = 0
    active: bool = True

    @classmethod
    def from_car(cls, car: Car, vote_count: int, rank: int = 0) -> "CarResult":
        return cls(
            car_id=car.id,
            car_number=car.car_number,
            car_name=car.car_name,
            racer_name=car.racer_name,
            vote_count=vote_count,
            rank=rank,
            active=car.active,
        )


@dataclass
class CategoryResult:
    """Tally for one category, cars sorted by vote count (highest first)."""
    category_id: int
    category_name: str
    group_id: int | None
    group_name: str
    total_votes: int
    votes: list[CarResult]
    override_car_id: int | None = None
    override_reason: str = ""
    overridden_at: datetime | None = None

    @property
    def has_override(self) -> bool:
        return self.override_car_id is not None

    @property
    def leaders(self) -> list[CarResult]:
        """All cars sharing the maximum vote count (empty with no votes)."""
        if not self.votes or self.votes[0].vote_count == 0:
            return []
        top = self.votes[0].vote_count
        return [v for v in self.votes if v.vote_count == top]


@dataclass
class FullResults:
    categories: list[CategoryResult]
    stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for cat, result in zip(data["categories"], self.categories):
            cat["has_override"] = result.has_override
        return data


@dataclass
class CategoryWinner:
    """Effective winner of a category.

    ``winners`` holds the override car alone when one is set, otherwise every
    tally leader. More than one entry means an unresolved tie.
    """
    category_id: int
    category_name: str
    group_id: int | None
    group_name: str
    winners: list[CarResult]
    is_override: bool = False
    override_reason: str = ""

    @property
    def tied(self) -> bool:
        return len(self.winners) > 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tied"] = self.tied
        return data


@dataclass
class TieConflict:
    """A category where two or more cars share the top vote count."""
    category_id: int
    category_name: str
    vote_count: int
    tied_cars: list[CarResult]
    has_override: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MultiWinConflict:
    """A car winning more categories in one group than the group allows."""
    car_id: int
    car_number: str
    racer_name: str
    group_id: int
    group_name: str
    categories_won: list[str]
    category_ids: list[int]
    max_wins_per_car: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DerbyNetWinner:
    """Effective winner of a category with the ids DerbyNet knows them by.

    ``car_id`` is the override car when one is set, otherwise the tally
    leader (lowest car id among tied leaders, with ``tied`` set).
    """
    category_id: int
    category_name: str
    derbynet_award_id: int | None
    car_id: int
    derbynet_racer_id: int | None
    vote_count: int
    is_override: bool = False
    tied: bool = False
