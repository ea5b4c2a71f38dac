import pytest

from models import (
    AmbulanceAssignment,
    Emergency,
    EmergencyStatus,
    HospitalAssignment,
    PatientContact,
)
from notification_service import (
    CANCELLATION,
    EMERGENCY_SUBMITTED,
    STATUS_UPDATE,
    LoggingNotificationGateway,
    NotificationDispatcher,
    NotificationGateway,
    build_status_message,
    build_submission_message,
)

from conftest import PATIENT_LATITUDE, PATIENT_LONGITUDE


class ExplodingGateway(NotificationGateway):
    def notify(self, emergency, event_kind, payload):
        raise RuntimeError("SMS provider down")


@pytest.fixture
def emergency(clock):
    return Emergency(
        id="EMG-NOTIFY01",
        patient=PatientContact("Jane Doe", "+1-212-555-0199"),
        latitude=PATIENT_LATITUDE,
        longitude=PATIENT_LONGITUDE,
        emergency_type="cardiac",
        severity="critical",
        address="Times Square",
        assigned_hospital=HospitalAssignment(
            hospital_id="HSP-T1",
            name="Test Hospital",
            address="1 Test Street",
            phone="+1-212-555-0911",
            distance=1200,
            eta=3,
            confirmed_at=clock.now(),
            reason="Best match",
        ),
        ambulance=AmbulanceAssignment(
            unit_id="AMB001",
            unit="Unit Alpha-1",
            eta_minutes=5,
            distance=100,
            dispatch_phone="+1-555-0100",
            dispatch_time=clock.now(),
        ),
    )


def test_submission_message_mentions_unit_and_hospital(emergency):
    message = build_submission_message(emergency)
    assert "Unit Alpha-1" in message
    assert "ETA 5 min" in message
    assert "Test Hospital" in message


def test_status_message_per_status(emergency):
    emergency.status = EmergencyStatus.EN_ROUTE
    assert "on the way" in build_status_message(emergency)


def test_submission_notifies_patient_hospital_and_dispatch(emergency):
    gateway = LoggingNotificationGateway()
    gateway.notify(emergency, EMERGENCY_SUBMITTED, {"dispatchPhone": "+1-555-0100"})

    assert [entry["to"] for entry in gateway.sent] == ["+1-212-555-0199", "+1-212-555-0911", "+1-555-0100"]


def test_cancellation_notifies_patient_and_hospital(emergency):
    gateway = LoggingNotificationGateway()
    gateway.notify(emergency, CANCELLATION, {"reason": "Feeling better"})

    assert len(gateway.sent) == 2
    assert "Feeling better" in gateway.sent[0]["message"]


def test_gateway_keeps_only_recent_history(emergency):
    gateway = LoggingNotificationGateway(history_size=3)
    for _ in range(5):
        gateway.notify(emergency, STATUS_UPDATE, None)

    assert len(gateway.sent) == 3


def test_dispatcher_delivers_in_background(emergency):
    gateway = LoggingNotificationGateway()
    notifier = NotificationDispatcher(gateway, max_workers=1)
    try:
        notifier.dispatch(emergency, STATUS_UPDATE)
        notifier.flush(timeout=5)
    finally:
        notifier.shutdown()

    assert len(gateway.sent) == 1


def test_gateway_failure_is_logged_not_raised(emergency, caplog):
    notifier = NotificationDispatcher(ExplodingGateway(), max_workers=1)
    try:
        future = notifier.dispatch(emergency, STATUS_UPDATE)
        future.result(timeout=5)
    finally:
        notifier.shutdown()

    assert "Failed to send status_update notification for EMG-NOTIFY01" in caplog.text


def test_dispatch_after_shutdown_is_dropped(emergency):
    notifier = NotificationDispatcher(LoggingNotificationGateway(), max_workers=1)
    notifier.shutdown()
    assert notifier.dispatch(emergency, STATUS_UPDATE) is None
