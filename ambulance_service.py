import copy
import logging
from dataclasses import dataclass
from math import ceil

from errors import NoAvailableResourceError, NotFoundError
from geolocation_service import haversine_distance_m, validate_coordinates
from locks import KeyedLocks
from models import AmbulanceAssignment, EmergencyType, Severity, UnitAssignment, UnitStatus, coerce_enum
from scheduler import SystemClock


logger = logging.getLogger(__name__)

AVERAGE_SPEED_KMH = {
    Severity.CRITICAL: 80,
    Severity.URGENT: 70,
    Severity.MODERATE: 60,
}
PREPARATION_BUFFER_MINUTES = 2
MINIMUM_ETA_MINUTES = 5


@dataclass
class DispatchCenter:
    id: str
    name: str
    phone: str
    latitude: float = 0.0
    longitude: float = 0.0
    coverage_radius: float = 50000


@dataclass
class Dispatch:
    emergency_id: str
    unit: object
    eta_minutes: int
    distance: float
    dispatch_phone: str
    dispatch_time: object

    def to_assignment(self):
        return AmbulanceAssignment(
            unit_id=self.unit.id,
            unit=self.unit.unit,
            eta_minutes=self.eta_minutes,
            distance=round(self.distance, 1),
            dispatch_phone=self.dispatch_phone,
            dispatch_time=self.dispatch_time,
            crew=list(self.unit.crew),
            equipment=list(self.unit.equipment),
            status=self.unit.status.value,
            latitude=self.unit.latitude,
            longitude=self.unit.longitude,
            last_update=self.dispatch_time,
        )


def calculate_eta(distance, severity):
    """
    Minutes until the unit reaches the scene:
    ceil(distance_km / speed_kmh * 60) + 2, never less than 5.
    Speed is 80 km/h for critical, 70 for urgent, 60 otherwise.
    """
    average_speed = AVERAGE_SPEED_KMH.get(coerce_enum(Severity, severity, "severity"), 60)
    distance_km = distance / 1000
    minutes = int(ceil(distance_km / average_speed * 60))
    return max(minutes + PREPARATION_BUFFER_MINUTES, MINIMUM_ETA_MINUTES)


class AmbulanceDispatcher:
    """
    Registry of ambulance units keyed by id.

    Each unit has its own lock; a unit is claimed only while holding it and
    only if it is still available, so two dispatch requests never share a
    unit.
    """

    def __init__(self, units, dispatch_centers, clock=None, scheduler=None, en_route_delay=None):
        if not dispatch_centers:
            raise ValueError("At least one dispatch center is required")
        self._units = {unit.id: unit for unit in units}
        self.dispatch_centers = list(dispatch_centers)
        self.clock = clock or SystemClock()
        self.scheduler = scheduler
        self.en_route_delay = en_route_delay
        self._locks = KeyedLocks()

    @property
    def dispatch_phone(self):
        return self.dispatch_centers[0].phone

    def _get(self, unit_id):
        unit = self._units.get(unit_id)
        if unit is None:
            raise NotFoundError(f"Ambulance {unit_id} not found")
        return unit

    @staticmethod
    def _serves(unit, emergency_id):
        if unit.reserved_for == emergency_id:
            return True
        return unit.current_emergency is not None and unit.current_emergency.emergency_id == emergency_id

    def _candidates(self, latitude, longitude, emergency_id=None):
        candidates = []
        for unit in list(self._units.values()):
            usable = unit.status == UnitStatus.AVAILABLE or (
                unit.status == UnitStatus.RESERVED and emergency_id is not None and unit.reserved_for == emergency_id
            )
            if usable:
                distance = haversine_distance_m(latitude, longitude, unit.latitude, unit.longitude)
                candidates.append((distance, unit.id))
        candidates.sort()
        return candidates

    def find_nearest_available(self, latitude, longitude):
        candidates = self._candidates(latitude, longitude)
        if not candidates:
            return None
        distance, unit_id = candidates[0]
        return self.unit_status(unit_id), distance

    def request_dispatch(self, emergency_id, latitude, longitude, severity, emergency_type):
        validate_coordinates(latitude, longitude)
        severity = coerce_enum(Severity, severity, "severity")
        emergency_type = coerce_enum(EmergencyType, emergency_type, "emergency_type")
        logger.info(
            "Dispatch request for emergency %s (%s, %s)",
            emergency_id,
            severity.value,
            emergency_type.value,
        )

        claimed = None
        for distance, unit_id in self._candidates(latitude, longitude, emergency_id):
            with self._locks.hold(unit_id):
                unit = self._units[unit_id]
                still_free = unit.status == UnitStatus.AVAILABLE or (
                    unit.status == UnitStatus.RESERVED and unit.reserved_for == emergency_id
                )
                if not still_free:
                    continue
                now = self.clock.now()
                unit.status = UnitStatus.DISPATCHED
                unit.reserved_for = None
                unit.current_emergency = UnitAssignment(
                    emergency_id=emergency_id,
                    latitude=latitude,
                    longitude=longitude,
                    severity=severity,
                    emergency_type=emergency_type,
                    dispatch_time=now,
                )
                unit.last_update = now
                claimed = (copy.deepcopy(unit), distance, now)
            break

        if claimed is None:
            logger.warning("No available ambulances for emergency %s", emergency_id)
            raise NoAvailableResourceError(
                "No ambulances currently available",
                resource="ambulance",
                dispatch_phone=self.dispatch_phone,
            )

        unit, distance, dispatch_time = claimed
        eta = calculate_eta(distance, severity)
        logger.info(
            "Dispatched %s to emergency %s: %.0fm away, ETA %d minutes",
            unit.id,
            emergency_id,
            distance,
            eta,
        )

        if self.scheduler is not None and self.en_route_delay is not None:
            self.scheduler.schedule(self.en_route_delay, self._mark_en_route, unit.id, emergency_id)

        return Dispatch(
            emergency_id=emergency_id,
            unit=unit,
            eta_minutes=eta,
            distance=distance,
            dispatch_phone=self.dispatch_phone,
            dispatch_time=dispatch_time,
        )

    def _mark_en_route(self, unit_id, emergency_id):
        with self._locks.hold(unit_id):
            unit = self._get(unit_id)
            assignment = unit.current_emergency
            if unit.status != UnitStatus.DISPATCHED or assignment is None or assignment.emergency_id != emergency_id:
                return
            unit.status = UnitStatus.EN_ROUTE
            unit.last_update = self.clock.now()
        logger.info("Ambulance %s en route to emergency %s", unit_id, emergency_id)

    def reserve_unit(self, unit_id, emergency_id):
        with self._locks.hold(unit_id):
            unit = self._get(unit_id)
            if unit.status != UnitStatus.AVAILABLE:
                raise NoAvailableResourceError(
                    f"Ambulance {unit_id} not available",
                    resource="ambulance",
                    dispatch_phone=self.dispatch_phone,
                )
            unit.status = UnitStatus.RESERVED
            unit.reserved_for = emergency_id
            unit.last_update = self.clock.now()
            reservation_time = unit.last_update
        logger.info("Ambulance %s reserved for emergency %s", unit_id, emergency_id)
        return {"success": True, "ambulanceId": unit_id, "reservationTime": reservation_time.isoformat()}

    def update_unit_status(self, unit_id, status, latitude=None, longitude=None):
        status = coerce_enum(UnitStatus, status, "status")
        if status == UnitStatus.AVAILABLE:
            return self.release_unit(unit_id)
        if latitude is not None and longitude is not None:
            validate_coordinates(latitude, longitude)
        with self._locks.hold(unit_id):
            unit = self._get(unit_id)
            unit.status = status
            if latitude is not None and longitude is not None:
                unit.latitude = latitude
                unit.longitude = longitude
            unit.last_update = self.clock.now()
        logger.info("Ambulance %s status updated to %s", unit_id, status.value)
        return True

    def release_unit(self, unit_id, emergency_id=None):
        """
        Return a unit to service. Returns False if it was already available,
        or if emergency_id is given and the unit now serves someone else.
        """
        with self._locks.hold(unit_id):
            unit = self._get(unit_id)
            if emergency_id is not None and not self._serves(unit, emergency_id):
                logger.info("Ambulance %s no longer serves emergency %s, not releasing", unit_id, emergency_id)
                return False
            was_busy = unit.status != UnitStatus.AVAILABLE
            unit.status = UnitStatus.AVAILABLE
            unit.current_emergency = None
            unit.reserved_for = None
            unit.last_update = self.clock.now()
        if was_busy:
            logger.info("Ambulance %s released and available for dispatch", unit_id)
        return was_busy

    def unit_status(self, unit_id):
        with self._locks.hold(unit_id):
            return copy.deepcopy(self._get(unit_id))

    def all_unit_statuses(self):
        return [self.unit_status(unit_id).to_dict() for unit_id in sorted(self._units)]
