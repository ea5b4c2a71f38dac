import logging
import uuid

from errors import NoAvailableResourceError, NotFoundError, ValidationError
from locks import KeyedLocks
from models import Capacity, EmergencyType, ReservationToken
from scheduler import SystemClock
from scoring_engine import ICU_EMERGENCY_TYPES


logger = logging.getLogger(__name__)


class CapacityRegistry:
    """
    Single writer of hospital capacity counters.

    reserve() is a check-and-decrement under a per-hospital lock, so two
    concurrent reservations can never both take the last bed. Reservations
    against different hospitals never wait on each other.
    """

    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or SystemClock()
        self._locks = KeyedLocks()

    def _load(self, hospital_id):
        hospital = self.store.load_hospital(hospital_id)
        if hospital is None:
            raise NotFoundError(f"Hospital {hospital_id} not found")
        return hospital

    def available(self, hospital_id):
        return self._load(hospital_id).capacity

    def reserve(self, hospital_id, emergency_type, emergency_id=None):
        emergency_type = EmergencyType(emergency_type)
        with self._locks.hold(hospital_id):
            hospital = self._load(hospital_id)
            if hospital.capacity.available_beds <= 0:
                raise NoAvailableResourceError(f"No available beds at {hospital.name}", resource="bed")

            # ICU is best-effort: a full ICU never fails the reservation.
            icu_beds = 0
            if emergency_type in ICU_EMERGENCY_TYPES and hospital.capacity.available_icu_beds > 0:
                icu_beds = 1

            token = ReservationToken(
                token_id=uuid.uuid4().hex,
                hospital_id=hospital_id,
                emergency_id=emergency_id,
                beds=1,
                icu_beds=icu_beds,
                created_at=self.clock.now(),
            )
            self.store.apply_reservation(token)

        logger.info(
            "Reserved bed%s at %s for emergency %s",
            " + ICU" if icu_beds else "",
            hospital.name,
            emergency_id,
        )
        return token

    def release(self, token):
        """Return what the token took. Safe to call more than once."""
        if token is None:
            return False
        with self._locks.hold(token.hospital_id):
            released = self.store.release_reservation(token.token_id, self.clock.now())
        if released:
            logger.info("Released reservation %s at %s", token.token_id, token.hospital_id)
        else:
            logger.debug("Reservation %s already released", token.token_id)
        return released

    def update_capacity(self, hospital_id, **counts):
        """Administrative capacity update; available counts are clamped to their totals."""
        unknown = set(counts) - set(Capacity.__dataclass_fields__)
        if unknown:
            raise ValidationError(
                f"Unknown capacity fields: {', '.join(sorted(unknown))}",
                errors=[{"field": name, "message": "unknown capacity field"} for name in sorted(unknown)],
            )

        with self._locks.hold(hospital_id):
            current = self._load(hospital_id).capacity
            merged = {name: getattr(current, name) for name in Capacity.__dataclass_fields__}
            merged.update(counts)
            for total_field, available_field in Capacity._PAIRS:
                if isinstance(merged[available_field], int) and isinstance(merged[total_field], int):
                    merged[available_field] = min(merged[available_field], merged[total_field])
            capacity = Capacity(**merged)
            self.store.set_capacity(hospital_id, merged, self.clock.now())

        logger.info("Updated capacity for %s: %s", hospital_id, counts)
        return capacity
