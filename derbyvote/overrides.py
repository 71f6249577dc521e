"""Manual winner overrides set by an administrator."""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from derbyvote.broadcast import RESULTS_UPDATED, Broadcaster, NullBroadcaster
from derbyvote.errors import NotFoundError, ValidationError
from derbyvote.settings import SettingsProvider
from derbyvote.store.base import EntityStore

log = logging.getLogger(__name__)


class OverrideManager:
    """Forces or clears the winner of a category.

    An override replaces any earlier one and does not look at votes, so an
    administrator can settle a tie or name a winner in a category nobody
    voted in. Later soft-deleting the car leaves the override in place.

    Given a ``settings`` provider, overrides are refused while voting is
    open.
    """

    def __init__(
        self,
        store: EntityStore,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime] | None = None,
        settings: SettingsProvider | None = None,
    ):
        self.store = store
        self.settings = settings
        self.broadcaster = broadcaster or NullBroadcaster()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def set_override(self, category_id: int, car_id: int, reason: str) -> None:
        """Make ``car_id`` the winner of ``category_id``.

        Raises:
            ValidationError: If the reason is blank, or voting is open
            NotFoundError: If the category or car does not exist or is inactive
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason cannot be empty")
        self._check_voting_closed()

        category = self.store.get_category(category_id)
        if category is None or not category.active:
            raise NotFoundError(f"category {category_id} not found")
        car = self.store.get_car(car_id)
        if car is None or not car.active:
            raise NotFoundError(f"car {car_id} not found")

        self.store.set_override(category_id, car_id, reason, self.clock())
        log.info(
            "Override set category=%s car=%s reason=%r", category_id, car_id, reason
        )
        self.broadcaster.broadcast_message(RESULTS_UPDATED, {
            "category_id": category_id,
            "override_car_id": car_id,
            "override_reason": reason,
        })

    def clear_override(self, category_id: int) -> None:
        """Remove the override; clearing an unset override is a no-op.

        Raises:
            ValidationError: If voting is open
            NotFoundError: If the category does not exist
        """
        self._check_voting_closed()
        category = self.store.get_category(category_id)
        if category is None:
            raise NotFoundError(f"category {category_id} not found")
        if not category.has_override:
            return

        self.store.clear_override(category_id)
        log.info("Override cleared category=%s", category_id)
        self.broadcaster.broadcast_message(RESULTS_UPDATED, {
            "category_id": category_id,
            "override_car_id": None,
        })

    def _check_voting_closed(self) -> None:
        if self.settings is not None and self.settings.is_voting_open():
            raise ValidationError("cannot resolve conflicts while voting is still open")
