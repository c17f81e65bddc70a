"""Order/booking lifecycle state machine.

The engine is pure: it never touches the store or the override ledger.
Time-based transitions are computed from ``(entity, now)`` so that a
stale cached view still displays the correct status, and are committed
into stored data only when the merge pipeline calls :meth:`commit`.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from restosync.exceptions import InvalidTransition
from restosync.models.entity import Entity, EntityKind, EntityStatus

if TYPE_CHECKING:
    from restosync.config import SyncConfig

S = EntityStatus

_ORDER_EDGES: dict[EntityStatus, frozenset[EntityStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED}),
    S.CONFIRMED: frozenset({S.PREPARING}),
    S.PREPARING: frozenset({S.READY_FOR_SERVICE}),
    S.READY_FOR_SERVICE: frozenset({S.SERVED}),
    # Closing edge out of SERVED; SERVED is otherwise terminal.
    S.SERVED: frozenset({S.COMPLETED}),
}

_BOOKING_EDGES: dict[EntityStatus, frozenset[EntityStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED}),
    S.BOOKED: frozenset({S.CONFIRMED}),
    S.CONFIRMED: frozenset({S.RESERVED, S.OCCUPIED, S.COMPLETED}),
    S.RESERVED: frozenset({S.OCCUPIED, S.COMPLETED}),
    S.OCCUPIED: frozenset({S.COMPLETED}),
}

_TERMINAL: dict[EntityKind, frozenset[EntityStatus]] = {
    EntityKind.ORDER: frozenset({S.SERVED, S.COMPLETED, S.CANCELLED}),
    EntityKind.BOOKING: frozenset({S.COMPLETED, S.CANCELLED}),
}

_AWAITING_ARRIVAL: frozenset[EntityStatus] = frozenset({S.BOOKED, S.CONFIRMED})
_ARRIVED_ELIGIBLE: frozenset[EntityStatus] = frozenset({S.BOOKED, S.CONFIRMED, S.RESERVED})


def is_terminal(kind: EntityKind, status: EntityStatus) -> bool:
    return status in _TERMINAL[kind]


def _edges(kind: EntityKind) -> dict[EntityStatus, frozenset[EntityStatus]]:
    return _ORDER_EDGES if kind == EntityKind.ORDER else _BOOKING_EDGES


class TransitionEngine:
    """Evaluate effective statuses and validate explicit transitions.

    Parameters
    ----------
    default_duration
        Occupancy duration for bookings without a ``duration_hint``.
    reservation_lead
        Window before a booking slot in which it displays ``RESERVED``.
    derive_arrival_states
        Whether ``RESERVED``/``OCCUPIED`` are derived from elapsed time.
        Completion after the deadline is always derived.
    """

    def __init__(
        self,
        *,
        default_duration: timedelta = timedelta(hours=2),
        reservation_lead: timedelta = timedelta(hours=2),
        derive_arrival_states: bool = True,
    ) -> None:
        self._default_duration = default_duration
        self._reservation_lead = reservation_lead
        self._derive_arrival_states = derive_arrival_states

    @classmethod
    def from_config(cls, config: SyncConfig) -> TransitionEngine:
        return cls(
            default_duration=timedelta(seconds=config.default_duration_seconds),
            reservation_lead=timedelta(seconds=config.reservation_lead_seconds),
            derive_arrival_states=config.derive_arrival_states,
        )

    def allowed_targets(self, entity: Entity) -> frozenset[EntityStatus]:
        """Statuses reachable from the entity's persisted status by an explicit request."""
        targets = _edges(entity.kind).get(entity.status, frozenset())
        if not is_terminal(entity.kind, entity.status):
            targets = targets | {S.CANCELLED}
        return targets

    def deadline(self, entity: Entity) -> datetime | None:
        anchor = entity.anchor_time
        if anchor is None:
            return None
        try:
            return anchor + (entity.duration_hint or self._default_duration)
        except OverflowError:
            # Anchor too close to datetime.max; the booking never closes.
            return None

    def effective_status(self, entity: Entity, now: datetime) -> EntityStatus:
        """Status to display at *now*, applying elapsed-time transitions.

        Only bookings move on their own. Terminal states never change.
        """
        status = entity.status
        if entity.kind != EntityKind.BOOKING or is_terminal(entity.kind, status):
            return status

        anchor = entity.anchor_time
        deadline = self.deadline(entity)
        if anchor is None or deadline is None:
            return status
        if now > deadline:
            return S.COMPLETED
        if not self._derive_arrival_states:
            return status
        if now >= anchor and status in _ARRIVED_ELIGIBLE:
            return S.OCCUPIED
        if now >= anchor - self._reservation_lead and status in _AWAITING_ARRIVAL:
            return S.RESERVED
        return status

    def commit(self, entity: Entity, now: datetime) -> Entity:
        """Write the effective status into the entity (used at merge time)."""
        effective = self.effective_status(entity, now)
        if effective == entity.status:
            return entity
        return entity.model_copy(update={"status": effective})

    def request_transition(self, entity: Entity, target: EntityStatus | str, now: datetime) -> Entity:
        """Validate an explicit transition and return the updated entity.

        Validation uses the persisted status, so an explicit cancellation
        wins over a completion derived from elapsed time. Other requests
        are refused once elapsed time has already closed the entity.

        Raises
        ------
        InvalidTransition
            When *target* is unknown or not reachable.
        """
        try:
            requested = S(str(target).strip().upper())
        except ValueError:
            raise InvalidTransition(
                f"Unknown status {target!r} for {entity.kind.lower()} {entity.id}",
                entity_id=entity.id,
                current=entity.status,
                requested=str(target),
            ) from None

        if requested not in self.allowed_targets(entity):
            raise InvalidTransition(
                f"Cannot move {entity.kind.lower()} {entity.id} from {entity.status} to {requested}",
                entity_id=entity.id,
                current=entity.status,
                requested=requested,
            )

        if requested not in (S.CANCELLED, S.COMPLETED):
            effective = self.effective_status(entity, now)
            if is_terminal(entity.kind, effective):
                raise InvalidTransition(
                    f"{entity.kind.capitalize()} {entity.id} is already {effective}",
                    entity_id=entity.id,
                    current=effective,
                    requested=requested,
                )

        return entity.model_copy(update={"status": requested})
