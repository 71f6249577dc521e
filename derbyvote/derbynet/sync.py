"""Synchronisation between the local store and DerbyNet.

Pushing winners is a batch of independent remote calls. A failing item is
recorded in the result and the batch carries on; items already pushed stay
pushed.
"""

import hashlib
import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any

from derbyvote.derbynet.client import (
    DerbyNetClient,
    DerbyNetConnectionError,
    DerbyNetError,
)
from derbyvote.errors import DerbyVoteError
from derbyvote.results import ResultsService
from derbyvote.settings import DERBYNET_URL, SettingsProvider
from derbyvote.store.base import EntityStore

log = logging.getLogger(__name__)

SUCCESS = "success"
PARTIAL = "partial"
ERROR = "error"
SKIPPED = "skipped"


@dataclass
class PushDetail:
    category_name: str
    status: str
    message: str = ""


@dataclass
class PushResult:
    """Outcome of pushing winners.

    ``status`` is ``success`` when every winner was pushed, ``partial`` when
    some were skipped or failed, and ``error`` when DerbyNet could not be
    reached (or the winners could not be read) so nothing was pushed.
    """
    status: str
    message: str = ""
    pushed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[PushDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CarSyncResult:
    status: str
    message: str = ""
    total_racers: int = 0
    cars_created: int = 0
    cars_updated: int = 0
    voters_created: int = 0
    voters_updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CategorySyncResult:
    status: str
    message: str = ""
    total_awards: int = 0
    categories_created: int = 0
    categories_updated: int = 0
    awards_created: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def racer_voter_code(racer_id: int) -> str:
    """Stable voting token for the racer who owns a synced car."""
    digest = hashlib.sha256(f"derbynet-racer-{racer_id}".encode()).hexdigest()
    return f"R{racer_id}-{digest[:6].upper()}"


def _status(errors: list[str], skipped: int = 0) -> str:
    return PARTIAL if errors or skipped else SUCCESS


class DerbyNetSync:
    """Moves cars and categories in from DerbyNet and winners out to it.

    Args:
        store: Local entity store
        settings: Supplies the DerbyNet URL and credentials
        client: DerbyNet client; its base URL is set on every call
        results: Conflict checks run before pushing; built from ``store``
            and ``settings`` when omitted
    """

    def __init__(
        self,
        store: EntityStore,
        settings: SettingsProvider,
        client: DerbyNetClient,
        results: ResultsService | None = None,
    ):
        self.store = store
        self.settings = settings
        self.client = client
        self.results = results or ResultsService(store, settings)

    def _prepare(self, url: str | None) -> None:
        """Point the client at ``url`` (remembered in settings) and load credentials."""
        if url:
            self.settings.set(DERBYNET_URL, url)
        else:
            url = self.settings.get(DERBYNET_URL)
        self.client.base_url = url
        credentials = self.settings.get_derbynet_credentials()
        if credentials:
            self.client.set_credentials(*credentials)

    def push_winners(
        self, url: str | None = None, cancel: threading.Event | None = None
    ) -> PushResult:
        """Push every category's effective winner to its DerbyNet award.

        Categories without a DerbyNet award id, winners without a DerbyNet
        racer id, and unresolved ties are counted as skipped. Remote failures
        are recorded per category and never abort the batch. When ``cancel``
        is set the remaining categories are skipped; pushes already made are
        kept.

        Nothing is pushed while a car wins more categories in a group than
        the group allows; the result is ``error`` listing the conflicts.
        """
        try:
            self._prepare(url)
        except DerbyVoteError as e:
            return PushResult(status=ERROR, message=f"Failed to read settings: {e}")
        if not self.client.base_url:
            return PushResult(status=ERROR, message="DerbyNet URL is not configured")

        try:
            winners = self.store.get_winners_for_derbynet()
            conflicts = self.results.detect_multi_wins() if winners else []
        except DerbyVoteError as e:
            log.error("Failed to read winners: %s", e)
            return PushResult(status=ERROR, message=f"Failed to get winners: {e}")

        if not winners:
            return PushResult(status=SUCCESS, message="No winners to push (no votes recorded)")

        if conflicts:
            errors = [
                f"car {c.car_number} wins {len(c.categories_won)} categories in "
                f"{c.group_name} (max {c.max_wins_per_car}): {', '.join(c.categories_won)}"
                for c in conflicts
            ]
            log.warning("Push refused, %d multi-win conflicts", len(conflicts))
            return PushResult(
                status=ERROR,
                message="Cannot push results: resolve multiple wins first",
                errors=errors,
            )

        if self.client.has_credentials:
            try:
                self.client.login(*self.settings.get_derbynet_credentials())
            except DerbyNetError as e:
                log.error("DerbyNet login failed: %s", e)
                return PushResult(status=ERROR, message=str(e), errors=[str(e)])

        log.info("Pushing %d winners to DerbyNet", len(winners))
        result = PushResult(status=SUCCESS)
        attempted = 0
        unreachable = 0

        for winner in winners:
            detail = PushDetail(category_name=winner.category_name, status=SKIPPED)
            result.details.append(detail)

            if cancel is not None and cancel.is_set():
                detail.message = "Cancelled before push"
                result.skipped += 1
                continue

            award_id, racer_id = winner.derbynet_award_id, winner.derbynet_racer_id
            if award_id is None:
                detail.message = "Category not linked to DerbyNet (sync categories first)"
                result.skipped += 1
                continue
            if winner.tied:
                detail.message = "Tie not resolved (set an override first)"
                result.skipped += 1
                continue
            if racer_id is None:
                detail.message = "Winning car not linked to DerbyNet (sync cars first)"
                result.skipped += 1
                continue

            attempted += 1
            try:
                self.client.set_award_winner(award_id, racer_id)
            except DerbyNetError as e:
                log.error(
                    "Error pushing winner category=%s award_id=%s racer_id=%s: %s",
                    winner.category_name, award_id, racer_id, e,
                )
                if isinstance(e, DerbyNetConnectionError):
                    unreachable += 1
                detail.status = ERROR
                detail.message = str(e)
                result.errors.append(f"{winner.category_name}: {e}")
                continue

            log.info(
                "Pushed winner category=%s award_id=%s racer_id=%s",
                winner.category_name, award_id, racer_id,
            )
            detail.status = SUCCESS
            result.pushed += 1

        if attempted and unreachable == attempted:
            result.status = ERROR
            result.message = "DerbyNet is unreachable; no winners were pushed"
        else:
            result.status = _status(result.errors, result.skipped)
            result.message = (
                f"{result.pushed} winners pushed, {result.skipped} skipped, "
                f"{len(result.errors)} errors"
            )
        return result

    def sync_cars(self, url: str | None = None) -> CarSyncResult:
        """Pull racers from DerbyNet into cars, creating a voter for each racer."""
        self._prepare(url)
        try:
            racers = self.client.fetch_racers()
        except DerbyNetError as e:
            log.error("Failed to fetch racers from DerbyNet: %s", e)
            return CarSyncResult(status=ERROR, message=f"Failed to fetch from DerbyNet: {e}")

        log.info("Fetched %d racers from DerbyNet", len(racers))
        result = CarSyncResult(status=SUCCESS, total_racers=len(racers))
        base_url = self.client.base_url

        for racer in racers:
            photo_url = ""
            if racer.car_photo:
                photo_url = f"{base_url}/{racer.car_photo.lstrip('/')}"
            try:
                created = self.store.upsert_car_from_derbynet(
                    racer.racer_id, racer.car_number, racer.racer_name,
                    racer.car_name, photo_url, racer.rank,
                )
                if created:
                    result.cars_created += 1
                else:
                    result.cars_updated += 1

                car = self.store.get_car_by_derbynet_id(racer.racer_id)
                code = racer_voter_code(racer.racer_id)
                voter = self.store.get_voter_by_qr(code)
                if voter is None:
                    self.store.create_voter(code, car_id=car.id, name=racer.racer_name)
                    result.voters_created += 1
                else:
                    voter.car_id = car.id
                    voter.name = racer.racer_name
                    self.store.update_voter(voter)
                    result.voters_updated += 1
            except DerbyVoteError as e:
                log.error("Error syncing racer %s: %s", racer.racer_id, e)
                result.errors.append(f"racer {racer.racer_id}: {e}")

        result.status = _status(result.errors)
        log.info(
            "Car sync complete cars_created=%d cars_updated=%d voters_created=%d voters_updated=%d",
            result.cars_created, result.cars_updated, result.voters_created, result.voters_updated,
        )
        return result

    def sync_categories(self, url: str | None = None) -> CategorySyncResult:
        """Pull DerbyNet awards into categories, then create awards for unlinked categories."""
        self._prepare(url)
        try:
            awards = self.client.fetch_awards()
        except DerbyNetError as e:
            log.error("Failed to fetch awards from DerbyNet: %s", e)
            return CategorySyncResult(
                status=ERROR, message=f"Failed to fetch awards from DerbyNet: {e}"
            )

        log.info("Fetched %d awards from DerbyNet", len(awards))
        result = CategorySyncResult(status=SUCCESS, total_awards=len(awards))

        for award in awards:
            try:
                created = self.store.upsert_category_from_derbynet(
                    award.award_name, award.sort or award.award_id, award.award_id
                )
            except DerbyVoteError as e:
                log.error("Error syncing award %s: %s", award.award_id, e)
                result.errors.append(f"award {award.award_name!r}: {e}")
                continue
            if created:
                result.categories_created += 1
            else:
                result.categories_updated += 1

        unlinked = [c for c in self.store.list_categories() if c.derbynet_award_id is None]
        if unlinked:
            try:
                award_types = self.client.fetch_award_types()
            except DerbyNetError as e:
                log.warning("Failed to fetch award types, using default: %s", e)
                award_types = []
            award_type_id = award_types[0].award_type_id if award_types else 1

            for category in unlinked:
                try:
                    category.derbynet_award_id = self.client.create_award(
                        category.name, award_type_id
                    )
                    self.store.update_category(category)
                except (DerbyNetError, DerbyVoteError) as e:
                    log.error("Failed to create award for %s: %s", category.name, e)
                    result.errors.append(f"category {category.name!r}: {e}")
                    continue
                result.awards_created += 1
                log.info(
                    "Created award in DerbyNet category=%s award_id=%s",
                    category.name, category.derbynet_award_id,
                )

        result.status = _status(result.errors)
        return result
