"""Mock data for demos and rehearsals.

Names come from faker with a fixed seed, so every run produces the same field
of cars.
"""

import logging
import secrets
from dataclasses import dataclass

from faker import Faker

from derbyvote.errors import ConflictError, ValidationError
from derbyvote.store.base import EntityStore

log = logging.getLogger(__name__)

SEED = 20260301
MAX_VOTER_CODES = 200

RANKS = ["Lion", "Tiger", "Wolf", "Bear", "Webelos", "Arrow of Light"]
CAR_ADJECTIVES = ["Lightning", "Red", "Blue", "Golden", "Silver", "Midnight", "Turbo", "Cosmic"]
CAR_NOUNS = ["Bolt", "Rocket", "Thunder", "Arrow", "Bullet", "Hawk", "Comet", "Flash"]

# (group name, exclusivity pool, max wins per car, [categories])
DEFAULT_GROUPS = [
    ("Design", 1, 1, ["Best Design", "Most Creative", "Best Paint Job"]),
    ("Fun", None, None, ["Funniest Car", "Most Colorful"]),
]


@dataclass
class SeedResult:
    cars_created: int = 0
    groups_created: int = 0
    categories_created: int = 0


def seed_mock_data(store: EntityStore, car_count: int = 12) -> SeedResult:
    """Create mock cars, groups and categories, skipping ones that already exist."""
    fake = Faker()
    fake.seed_instance(SEED)
    result = SeedResult()

    existing_numbers = {c.car_number for c in store.list_cars()}
    for i in range(car_count):
        car_number = str(101 + i)
        racer_name = fake.name()
        car_name = f"{fake.random_element(CAR_ADJECTIVES)} {fake.random_element(CAR_NOUNS)}"
        rank = fake.random_element(RANKS)
        if car_number in existing_numbers:
            continue
        store.create_car(
            car_number,
            racer_name=racer_name,
            car_name=car_name,
            photo_url=f"https://placehold.co/300x300?text={car_number}",
            rank=rank,
        )
        result.cars_created += 1

    groups = {g.name: g for g in store.list_groups()}
    category_names = {c.name for c in store.list_categories()}
    order = len(category_names)
    for group_order, (name, pool_id, max_wins, categories) in enumerate(DEFAULT_GROUPS, 1):
        group = groups.get(name)
        if group is None:
            group = store.create_group(
                name,
                exclusivity_pool_id=pool_id,
                max_wins_per_car=max_wins,
                display_order=group_order,
            )
            result.groups_created += 1
        for category_name in categories:
            if category_name in category_names:
                continue
            order += 1
            store.create_category(category_name, display_order=order, group_id=group.id)
            result.categories_created += 1

    log.info(
        "Seeded %d cars, %d groups, %d categories",
        result.cars_created, result.groups_created, result.categories_created,
    )
    return result


def generate_voter_codes(store: EntityStore, count: int) -> list[str]:
    """Pre-register ``count`` voters with fresh random codes.

    Raises:
        ValidationError: If count is not between 1 and 200
    """
    if not 1 <= count <= MAX_VOTER_CODES:
        raise ValidationError(f"count must be between 1 and {MAX_VOTER_CODES}")
    codes = []
    while len(codes) < count:
        code = secrets.token_hex(4).upper()
        try:
            store.create_voter(code)
        except ConflictError:
            continue
        codes.append(code)
    return codes
