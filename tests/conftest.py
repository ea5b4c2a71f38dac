import pytest

import config
from ambulance_service import AmbulanceDispatcher, DispatchCenter
from capacity_registry import CapacityRegistry
from database import default_ambulance_units
from emergency_engine import EmergencyCoordinator
from hospital_service import HospitalMatcher
from models import (
    Address,
    Capacity,
    EmergencyRequest,
    EmergencyServices,
    EmergencyType,
    Equipment,
    Hospital,
    Rating,
    Severity,
)
from notification_service import LoggingNotificationGateway, NotificationDispatcher
from scheduler import ManualClock, ManualScheduler
from state_machine import EmergencyStateMachine
from store import SqliteStore

# Times Square
PATIENT_LATITUDE = 40.7589
PATIENT_LONGITUDE = -73.9851
DISPATCH_PHONE = "+1-555-0100"


@pytest.fixture(autouse=True)
def fixed_base_url(monkeypatch):
    monkeypatch.setattr(config, "_base_url", "http://carematch.test")


@pytest.fixture
def store(tmp_path):
    return SqliteStore(str(tmp_path / "carematch.db"))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def make_hospital():
    def _make(
        hospital_id="HSP-T1",
        name="Test Hospital",
        latitude=PATIENT_LATITUDE + 0.01,
        longitude=PATIENT_LONGITUDE,
        total_beds=100,
        available_beds=10,
        icu_beds=10,
        available_icu_beds=2,
        emergency_rooms=5,
        available_emergency_rooms=1,
        services=None,
        equipment=None,
        specialties=("Emergency Medicine",),
        rating=None,
        status="Active",
    ):
        return Hospital(
            id=hospital_id,
            name=name,
            latitude=latitude,
            longitude=longitude,
            capacity=Capacity(
                total_beds,
                available_beds,
                icu_beds,
                available_icu_beds,
                emergency_rooms,
                available_emergency_rooms,
            ),
            services=services or EmergencyServices(heart_attack_center=True),
            equipment=equipment or Equipment(),
            specialties=specialties,
            status=status,
            rating=rating or Rating(4.0, 4.0, 100),
            address=Address("1 Test Street", "New York", "NY", "10001"),
            phone="+1-212-555-0000",
            emergency_phone="+1-212-555-0911",
        )

    return _make


@pytest.fixture
def make_request():
    def _make(**overrides):
        values = {
            "patient_name": "Jane Doe",
            "phone_number": "+1-212-555-0199",
            "latitude": PATIENT_LATITUDE,
            "longitude": PATIENT_LONGITUDE,
            "emergency_type": EmergencyType.CARDIAC,
            "severity": Severity.CRITICAL,
            "description": "Severe chest pain radiating to the left arm",
            "address": "Times Square, New York, NY",
        }
        values.update(overrides)
        return EmergencyRequest(**values)

    return _make


@pytest.fixture
def build_coordinator(store, scheduler):
    notifiers = []

    def _build(hospitals=(), units=None, gateway=None):
        for hospital in hospitals:
            store.save_hospital(hospital)
        dispatcher = AmbulanceDispatcher(
            default_ambulance_units() if units is None else units,
            [DispatchCenter("DC-T", "Test Dispatch", DISPATCH_PHONE)],
            clock=scheduler.clock,
            scheduler=scheduler,
            en_route_delay=2,
        )
        notifier = NotificationDispatcher(gateway or LoggingNotificationGateway(), max_workers=2)
        notifiers.append(notifier)
        return EmergencyCoordinator(
            store=store,
            matcher=HospitalMatcher(store),
            registry=CapacityRegistry(store, scheduler.clock),
            dispatcher=dispatcher,
            state_machine=EmergencyStateMachine(store, scheduler.clock),
            notifier=notifier,
            scheduler=scheduler,
            dispatch_confirm_delay=3,
        )

    yield _build

    for notifier in notifiers:
        notifier.shutdown()
