import logging

from errors import InvalidStateTransition, NotFoundError
from locks import FifoLock, KeyedLocks
from models import EmergencyStatus, TimelineEvent, coerce_enum
from scheduler import SystemClock


logger = logging.getLogger(__name__)

STATUS_SEQUENCE = (
    EmergencyStatus.SUBMITTED,
    EmergencyStatus.PROCESSING,
    EmergencyStatus.AMBULANCE_DISPATCHED,
    EmergencyStatus.EN_ROUTE,
    EmergencyStatus.ARRIVED_AT_SCENE,
    EmergencyStatus.TRANSPORTED,
    EmergencyStatus.ARRIVED_AT_HOSPITAL,
    EmergencyStatus.COMPLETED,
)

NEXT_STATUS = dict(zip(STATUS_SEQUENCE, STATUS_SEQUENCE[1:]))

MILESTONE_FIELDS = {
    EmergencyStatus.AMBULANCE_DISPATCHED: "dispatch_time",
    EmergencyStatus.ARRIVED_AT_SCENE: "arrival_time",
    EmergencyStatus.TRANSPORTED: "transport_time",
    EmergencyStatus.ARRIVED_AT_HOSPITAL: "hospital_arrival_time",
    EmergencyStatus.COMPLETED: "completion_time",
}


def next_status(status):
    return NEXT_STATUS.get(EmergencyStatus(status))


def check_transition(current, target):
    if current in (EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED):
        raise InvalidStateTransition(
            f"Emergency is already {current.value}",
            current=current,
            target=target,
        )
    if target == EmergencyStatus.CANCELLED:
        return
    if NEXT_STATUS.get(current) != target:
        raise InvalidStateTransition(
            f"Cannot move from {current.value} to {target.value}",
            current=current,
            target=target,
        )


def apply_transition(emergency, target, actor, details, now):
    """Validate and apply one status change in place. Leaves the emergency untouched on failure."""
    target = coerce_enum(EmergencyStatus, target, "status")
    check_transition(emergency.status, target)

    emergency.status = target
    emergency.timeline.append(
        TimelineEvent(
            timestamp=now,
            event=f"status changed to {target.value}",
            actor=actor,
            details=details or "",
        )
    )
    milestone = MILESTONE_FIELDS.get(target)
    if milestone:
        setattr(emergency, milestone, now)
    emergency.updated_at = now
    return emergency


class EmergencyStateMachine:
    """
    Single writer of record for an emergency's status and timeline.

    Every mutation for one emergency id runs under a FIFO lock, so
    concurrent calls are applied one at a time in arrival order and the
    timeline stays a causal log.
    """

    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or SystemClock()
        self._locks = KeyedLocks(factory=FifoLock)

    def _mutate(self, emergency_id, change):
        with self._locks.hold(emergency_id):
            emergency = self.store.load_emergency(emergency_id)
            if emergency is None:
                raise NotFoundError(f"Emergency {emergency_id} not found")
            now = self.clock.now()
            change(emergency, now)
            emergency.updated_at = now
            self.store.save_emergency(emergency)
            return emergency

    def create(self, emergency, actor="patient"):
        now = self.clock.now()
        emergency.status = EmergencyStatus.SUBMITTED
        emergency.created_at = emergency.created_at or now
        emergency.updated_at = now
        emergency.timeline.append(TimelineEvent(now, "Emergency submitted", actor, emergency.description))
        with self._locks.hold(emergency.id):
            self.store.save_emergency(emergency)
        logger.info("Emergency submitted: %s for %s", emergency.id, emergency.patient.name)
        return emergency

    def get(self, emergency_id):
        emergency = self.store.load_emergency(emergency_id)
        if emergency is None:
            raise NotFoundError(f"Emergency {emergency_id} not found")
        return emergency

    def transition(self, emergency_id, target, actor="system", details=""):
        target = coerce_enum(EmergencyStatus, target, "status")

        def change(emergency, now):
            apply_transition(emergency, target, actor, details, now)

        emergency = self._mutate(emergency_id, change)
        logger.info("Emergency %s status changed to %s by %s", emergency_id, target.value, actor)
        return emergency

    def record_event(self, emergency_id, event, actor="system", details=""):
        def change(emergency, now):
            emergency.timeline.append(TimelineEvent(now, event, actor, details))

        return self._mutate(emergency_id, change)

    def assign_hospital(self, emergency_id, assignment, reservation):
        """Record the hospital and the bed reservation backing it; once per episode."""

        def change(emergency, now):
            if emergency.is_terminal:
                raise InvalidStateTransition(
                    f"Emergency is already {emergency.status.value}",
                    current=emergency.status,
                )
            if emergency.assigned_hospital is not None:
                raise InvalidStateTransition(f"Emergency {emergency_id} already has a hospital assigned")
            emergency.assigned_hospital = assignment
            emergency.reservation = reservation
            emergency.timeline.append(
                TimelineEvent(
                    now,
                    "Hospital assigned",
                    "system",
                    f"Assigned to {assignment.name} - Distance: {assignment.distance / 1000:.1f}km, "
                    f"ETA: {assignment.eta} minutes",
                )
            )

        return self._mutate(emergency_id, change)

    def assign_ambulance(self, emergency_id, assignment):
        def change(emergency, now):
            if emergency.is_terminal:
                raise InvalidStateTransition(
                    f"Emergency is already {emergency.status.value}",
                    current=emergency.status,
                )
            emergency.ambulance = assignment
            emergency.timeline.append(
                TimelineEvent(
                    now,
                    "Ambulance assigned",
                    "dispatch_system",
                    f"{assignment.unit} - ETA: {assignment.eta_minutes} minutes",
                )
            )

        return self._mutate(emergency_id, change)

    def update_ambulance_location(self, emergency_id, latitude, longitude, unit_status):
        def change(emergency, now):
            if emergency.ambulance is None:
                return
            emergency.ambulance.latitude = latitude
            emergency.ambulance.longitude = longitude
            emergency.ambulance.status = unit_status
            emergency.ambulance.last_update = now

        return self._mutate(emergency_id, change)
