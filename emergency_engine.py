import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import List, Optional

import config
from ambulance_service import AmbulanceDispatcher, DispatchCenter
from capacity_registry import CapacityRegistry
from database import default_ambulance_units, seed_hospitals
from errors import InvalidStateTransition, NoAvailableResourceError, NotFoundError, ReservationConflict
from explanation_engine import generate_degraded_guidance, generate_selection_reason
from geolocation_service import validate_coordinates
from hospital_service import HospitalMatcher, estimate_travel_minutes, format_candidate
from models import (
    BackupHospital,
    Emergency,
    EmergencyStatus,
    HospitalAssignment,
    PatientContact,
    UnitStatus,
    coerce_enum,
    new_emergency_id,
)
from notification_service import (
    CANCELLATION,
    EMERGENCY_SUBMITTED,
    STATUS_UPDATE,
    LoggingNotificationGateway,
    NotificationDispatcher,
)
from scheduler import SystemClock, ThreadingScheduler
from state_machine import EmergencyStateMachine
from store import SqliteStore


logger = logging.getLogger(__name__)

UNIT_STATUS_FOR = {
    EmergencyStatus.EN_ROUTE: UnitStatus.EN_ROUTE,
    EmergencyStatus.ARRIVED_AT_SCENE: UnitStatus.AT_SCENE,
    EmergencyStatus.TRANSPORTED: UnitStatus.AT_SCENE,
    EmergencyStatus.ARRIVED_AT_HOSPITAL: UnitStatus.RETURNING,
}

BACKUP_HOSPITAL_COUNT = 2


@dataclass
class SubmissionResult:
    emergency_id: str
    status: EmergencyStatus
    session_id: Optional[str] = None
    hospitals: List[dict] = field(default_factory=list)
    assigned_hospital: Optional[dict] = None
    ambulance: Optional[dict] = None
    messages: List[str] = field(default_factory=list)

    @property
    def hospital_found(self):
        return self.assigned_hospital is not None

    def to_dict(self):
        return {
            "success": True,
            "emergencyId": self.emergency_id,
            "sessionId": self.session_id,
            "status": self.status.value,
            "message": " ".join(self.messages) or "Emergency submitted successfully",
            "hospitals": self.hospitals,
            "assignedHospital": self.assigned_hospital,
            "ambulance": self.ambulance,
        }


class EmergencyCoordinator:
    """
    Runs an emergency through match -> reserve -> dispatch -> transition.

    Resource shortages are degraded outcomes recorded in the result, never
    failures of the submission. Every bed or unit taken here is either
    recorded on the emergency or handed back.
    """

    def __init__(
        self,
        store,
        matcher,
        registry,
        dispatcher,
        state_machine,
        notifier=None,
        scheduler=None,
        max_distance=config.MAX_SEARCH_DISTANCE_M,
        presented_candidates=config.PRESENTED_CANDIDATES,
        dispatch_confirm_delay=config.DISPATCH_CONFIRM_DELAY,
    ):
        self.store = store
        self.matcher = matcher
        self.registry = registry
        self.dispatcher = dispatcher
        self.state_machine = state_machine
        self.notifier = notifier
        self.scheduler = scheduler
        self.max_distance = max_distance
        self.presented_candidates = presented_candidates
        self.dispatch_confirm_delay = dispatch_confirm_delay
        self._scheduled = {}
        self._scheduled_lock = threading.Lock()

    # Submission

    def submit_emergency(self, request):
        emergency = Emergency(
            id=new_emergency_id(),
            patient=PatientContact(request.patient_name, request.phone_number),
            latitude=request.latitude,
            longitude=request.longitude,
            address=request.address,
            emergency_type=request.emergency_type,
            severity=request.severity,
            description=request.description,
            session_id=request.session_id or str(uuid.uuid4()),
        )
        self.state_machine.create(emergency)

        candidates = self.matcher.find_candidates(
            emergency.latitude,
            emergency.longitude,
            emergency.emergency_type,
            emergency.severity,
            self.max_distance,
        )
        result = SubmissionResult(
            emergency_id=emergency.id,
            status=emergency.status,
            session_id=emergency.session_id,
            hospitals=[format_candidate(c, emergency.emergency_type) for c in candidates[: self.presented_candidates]],
        )

        try:
            assignment = self._reserve_hospital(emergency, candidates)
            if assignment is None:
                result.messages.append(generate_degraded_guidance(self.dispatcher.dispatch_phone, "bed"))
            else:
                result.assigned_hospital = assignment.to_dict()

            result.ambulance, dispatch = self._request_ambulance(emergency)

            details = "Finding nearest equipped hospital and dispatching ambulance"
            if not candidates:
                details = "No hospital with available beds within search radius"
            emergency = self.state_machine.transition(emergency.id, EmergencyStatus.PROCESSING, "system", details)
        except InvalidStateTransition:
            logger.warning("Emergency %s was closed while it was being processed", emergency.id)
            result.status = self.state_machine.get(emergency.id).status
            return result

        result.status = emergency.status
        if dispatch is not None:
            self._schedule(emergency.id, self.dispatch_confirm_delay, self._confirm_dispatch, emergency.id)

        self._notify(emergency, EMERGENCY_SUBMITTED, {"dispatchPhone": self.dispatcher.dispatch_phone})
        return result

    def _reserve_hospital(self, emergency, candidates):
        # Bounded walk: at most one attempt per ranked candidate.
        for rank, candidate in enumerate(candidates, start=1):
            hospital = candidate.hospital
            try:
                token = self.registry.reserve(hospital.id, emergency.emergency_type, emergency.id)
            except (NoAvailableResourceError, ReservationConflict, NotFoundError) as exc:
                logger.info("Could not reserve at %s (%s), trying next candidate", hospital.name, exc)
                continue

            assignment = HospitalAssignment(
                hospital_id=hospital.id,
                name=hospital.name,
                address=hospital.full_address,
                phone=hospital.emergency_phone or hospital.phone,
                distance=round(candidate.distance),
                eta=estimate_travel_minutes(candidate.distance),
                confirmed_at=self.state_machine.clock.now(),
                reason=generate_selection_reason(candidate, emergency.emergency_type, rank),
                backup_hospitals=[
                    BackupHospital(
                        hospital_id=backup.hospital.id,
                        name=backup.hospital.name,
                        distance=round(backup.distance),
                        reason=f"Ranked #{rank + offset} (score {backup.score})",
                    )
                    for offset, backup in enumerate(candidates[rank : rank + BACKUP_HOSPITAL_COUNT], start=1)
                ],
            )
            try:
                self.state_machine.assign_hospital(emergency.id, assignment, token)
            except InvalidStateTransition:
                self.registry.release(token)
                raise
            return assignment

        if candidates:
            logger.warning("All %d candidate hospitals were full for %s", len(candidates), emergency.id)
        return None

    def _request_ambulance(self, emergency):
        try:
            dispatch = self.dispatcher.request_dispatch(
                emergency.id,
                emergency.latitude,
                emergency.longitude,
                emergency.severity,
                emergency.emergency_type,
            )
        except NoAvailableResourceError as exc:
            return (
                {
                    "success": False,
                    "message": generate_degraded_guidance(exc.dispatch_phone, "ambulance"),
                    "dispatchPhone": exc.dispatch_phone,
                    "estimatedArrival": "Pending dispatch confirmation",
                },
                None,
            )

        try:
            self.state_machine.assign_ambulance(emergency.id, dispatch.to_assignment())
        except InvalidStateTransition:
            self.dispatcher.release_unit(dispatch.unit.id, emergency.id)
            raise

        return (
            {
                "success": True,
                "ambulanceId": dispatch.unit.id,
                "unit": dispatch.unit.unit,
                "estimatedArrival": f"{dispatch.eta_minutes} minutes",
                "etaMinutes": dispatch.eta_minutes,
                "dispatchPhone": dispatch.dispatch_phone,
                "crew": [asdict(member) for member in dispatch.unit.crew],
                "equipment": list(dispatch.unit.equipment),
                "dispatchTime": dispatch.dispatch_time.isoformat(),
            },
            dispatch,
        )

    def _confirm_dispatch(self, emergency_id):
        self._forget_scheduled(emergency_id)
        try:
            emergency = self.state_machine.transition(
                emergency_id,
                EmergencyStatus.AMBULANCE_DISPATCHED,
                "dispatch_system",
                "Ambulance unit dispatched to location",
            )
        except InvalidStateTransition as exc:
            logger.info("Skipping dispatch confirmation for %s: %s", emergency_id, exc)
            return
        self._notify(emergency, STATUS_UPDATE)

    # Lifecycle

    def get_status(self, emergency_id):
        return self.state_machine.get(emergency_id).to_dict()

    def update_status(self, emergency_id, status, actor="system", details="", latitude=None, longitude=None):
        status = coerce_enum(EmergencyStatus, status, "status")
        if latitude is not None and longitude is not None:
            validate_coordinates(latitude, longitude)
        if status == EmergencyStatus.CANCELLED:
            self.cancel_emergency(emergency_id, details or "Cancelled by emergency services", actor)
            return self.state_machine.get(emergency_id)

        emergency = self.state_machine.transition(emergency_id, status, actor, details)

        if emergency.ambulance is not None:
            unit_id = emergency.ambulance.unit_id
            unit_status = UNIT_STATUS_FOR.get(status)
            try:
                if status == EmergencyStatus.COMPLETED:
                    self.dispatcher.release_unit(unit_id, emergency_id)
                elif unit_status is not None:
                    self.dispatcher.update_unit_status(unit_id, unit_status, latitude, longitude)
            except NotFoundError:
                logger.warning("Ambulance %s for %s is no longer registered", unit_id, emergency_id)
            if latitude is not None and longitude is not None:
                reported = unit_status.value if unit_status else emergency.ambulance.status
                emergency = self.state_machine.update_ambulance_location(emergency_id, latitude, longitude, reported)

        if emergency.is_terminal:
            self._cancel_scheduled(emergency_id)
        self._notify(emergency, STATUS_UPDATE)
        return emergency

    def cancel_emergency(self, emergency_id, reason="User cancelled", actor="patient"):
        emergency = self.state_machine.transition(emergency_id, EmergencyStatus.CANCELLED, actor, reason)
        self._cancel_scheduled(emergency_id)
        released_bed, released_ambulance = self._release_resources(emergency)
        self._notify(emergency, CANCELLATION, {"reason": reason})
        return {
            "emergencyId": emergency.id,
            "status": emergency.status.value,
            "releasedBed": released_bed,
            "releasedAmbulance": released_ambulance,
        }

    def _release_resources(self, emergency):
        released_bed = False
        released_ambulance = False
        if emergency.reservation is not None:
            released_bed = self.registry.release(emergency.reservation)
        if emergency.ambulance is not None:
            try:
                released_ambulance = self.dispatcher.release_unit(emergency.ambulance.unit_id, emergency.id)
            except NotFoundError:
                logger.warning("Ambulance %s for %s is no longer registered", emergency.ambulance.unit_id, emergency.id)
        return released_bed, released_ambulance

    def emergency_statistics(self, start=None, end=None):
        end = end or self.state_machine.clock.now()
        start = start or end - timedelta(days=30)
        return {
            "statistics": self.store.emergency_statistics(start, end),
            "period": {"start": start.isoformat(), "end": end.isoformat()},
        }

    # Collaborators

    def _notify(self, emergency, event_kind, payload=None):
        if self.notifier is None:
            return
        self.notifier.dispatch(emergency, event_kind, payload)

    def _schedule(self, emergency_id, delay, func, *args):
        if self.scheduler is None:
            func(*args)
            return
        task = self.scheduler.schedule(delay, func, *args)
        with self._scheduled_lock:
            self._scheduled.setdefault(emergency_id, []).append(task)

    def _forget_scheduled(self, emergency_id):
        with self._scheduled_lock:
            self._scheduled.pop(emergency_id, None)

    def _cancel_scheduled(self, emergency_id):
        with self._scheduled_lock:
            tasks = self._scheduled.pop(emergency_id, [])
        for task in tasks:
            task.cancel()


def build_coordinator(
    db_path=None,
    clock=None,
    scheduler=None,
    gateway=None,
    units=None,
    dispatch_centers=None,
    seed=True,
):
    clock = clock or (scheduler.clock if scheduler is not None else SystemClock())
    scheduler = scheduler or ThreadingScheduler(clock)

    store = SqliteStore(db_path)
    if seed:
        seeded = seed_hospitals(store)
        if seeded:
            logger.info("Seeded %d hospitals", seeded)

    dispatch_centers = dispatch_centers or [
        DispatchCenter(config.DISPATCH_CENTER_ID, config.DISPATCH_CENTER_NAME, config.DISPATCH_CENTER_PHONE)
    ]
    dispatcher = AmbulanceDispatcher(
        units if units is not None else default_ambulance_units(),
        dispatch_centers,
        clock=clock,
        scheduler=scheduler,
        en_route_delay=config.EN_ROUTE_DELAY,
    )
    notifier = NotificationDispatcher(gateway or LoggingNotificationGateway(), max_workers=config.NOTIFICATION_WORKERS)

    return EmergencyCoordinator(
        store=store,
        matcher=HospitalMatcher(store, config.MAX_CANDIDATES, config.URGENT_ICU_WEIGHT),
        registry=CapacityRegistry(store, clock),
        dispatcher=dispatcher,
        state_machine=EmergencyStateMachine(store, clock),
        notifier=notifier,
        scheduler=scheduler,
    )
