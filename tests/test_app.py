import pytest

import qr_generator
from app import create_app
from errors import ExternalServiceError
from geolocation_service import GeocodingProvider
from models import EmergencyType, Severity

from conftest import DISPATCH_PHONE, PATIENT_LATITUDE, PATIENT_LONGITUDE


class FakeGeocoder(GeocodingProvider):
    def __init__(self, fail=False):
        self.fail = fail

    def reverse_geocode(self, latitude, longitude):
        if self.fail:
            raise ExternalServiceError("Nominatim unavailable", service="nominatim")
        return {"address": "Times Square, New York", "components": {}, "confidence": "medium"}

    def forward_geocode(self, address):
        return {"latitude": PATIENT_LATITUDE, "longitude": PATIENT_LONGITUDE, "address": address}

    def find_nearby(self, latitude, longitude, place_type="hospital", radius=5000):
        return [{"id": 1, "name": "Nearby Hospital", "distance": 120}]


@pytest.fixture
def coordinator(build_coordinator, make_hospital):
    return build_coordinator([make_hospital(available_beds=10)])


@pytest.fixture
def client(coordinator):
    app = create_app(coordinator=coordinator, geocoder=FakeGeocoder())
    app.testing = True
    return app.test_client()


def _payload(**overrides):
    payload = {
        "patientName": "Jane Doe",
        "phoneNumber": "+1-212-555-0199",
        "location": {"latitude": PATIENT_LATITUDE, "longitude": PATIENT_LONGITUDE},
        "emergencyType": "cardiac",
        "severity": "critical",
        "description": "Severe chest pain radiating to the left arm",
    }
    payload.update(overrides)
    return payload


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "OK"


def test_submit_emergency(client):
    response = client.post("/api/emergency/submit", json=_payload())

    assert response.status_code == 201
    body = response.get_json()
    assert body["success"] is True
    assert body["status"] == "processing"
    assert body["assignedHospital"]["hospital_id"] == "HSP-T1"
    assert body["ambulance"]["ambulanceId"] == "AMB001"
    assert body["trackingUrl"] == f"http://carematch.test/api/emergency/status/{body['emergencyId']}"

    status = client.get(f"/api/emergency/status/{body['emergencyId']}").get_json()
    assert status["emergency"]["location"]["address"] == "Times Square, New York"


def test_submit_validation_errors(client):
    response = client.post(
        "/api/emergency/submit",
        json=_payload(patientName="J", location={"latitude": 95, "longitude": 0}, severity="mild"),
    )

    assert response.status_code == 400
    body = response.get_json()
    assert body["success"] is False
    fields = {error["field"] for error in body["errors"]}
    assert fields == {"patientName", "location.latitude", "severity"}


def test_submit_rejects_non_object_body(client):
    response = client.post("/api/emergency/submit", json=["not", "an", "object"])
    assert response.status_code == 400


def test_submit_infers_missing_type(client, monkeypatch):
    monkeypatch.setattr("app.infer_emergency_type", lambda description: EmergencyType.STROKE)
    monkeypatch.setattr("app.infer_severity", lambda description: Severity.URGENT)
    payload = _payload()
    del payload["emergencyType"]
    del payload["severity"]

    body = client.post("/api/emergency/submit", json=payload).get_json()

    status = client.get(f"/api/emergency/status/{body['emergencyId']}").get_json()["emergency"]
    assert status["emergencyType"] == "stroke"
    assert status["severity"] == "urgent"


def test_submit_with_geocoder_down_uses_coordinates(coordinator):
    client = create_app(coordinator=coordinator, geocoder=FakeGeocoder(fail=True)).test_client()

    body = client.post("/api/emergency/submit", json=_payload()).get_json()

    status = client.get(f"/api/emergency/status/{body['emergencyId']}").get_json()["emergency"]
    assert status["location"]["address"] == f"{PATIENT_LATITUDE:.5f}, {PATIENT_LONGITUDE:.5f}"


def test_status_unknown_emergency(client):
    response = client.get("/api/emergency/status/EMG-MISSING")
    assert response.status_code == 404
    assert response.get_json()["error"] == "NotFoundError"


def test_update_status_and_invalid_transition(client, scheduler):
    emergency_id = client.post("/api/emergency/submit", json=_payload()).get_json()["emergencyId"]
    scheduler.advance(3)

    ok = client.patch(f"/api/emergency/status/{emergency_id}", json={"status": "en_route"})
    assert ok.status_code == 200
    assert ok.get_json()["emergency"]["status"] == "en_route"

    skipped = client.patch(f"/api/emergency/status/{emergency_id}", json={"status": "completed"})
    assert skipped.status_code == 409

    missing = client.patch(f"/api/emergency/status/{emergency_id}", json={})
    assert missing.status_code == 400


def test_cancel(client, coordinator):
    emergency_id = client.post("/api/emergency/submit", json=_payload()).get_json()["emergencyId"]

    response = client.patch(f"/api/emergency/cancel/{emergency_id}", json={"reason": "Feeling better"})

    assert response.status_code == 200
    assert response.get_json()["releasedBed"] is True
    assert coordinator.registry.available("HSP-T1").available_beds == 10

    again = client.patch(f"/api/emergency/cancel/{emergency_id}", json={})
    assert again.status_code == 409


def test_emergency_statistics(client):
    client.post("/api/emergency/submit", json=_payload())

    body = client.get("/api/emergency/statistics?startDate=2023-12-01&endDate=2024-02-01").get_json()

    assert body["statistics"]["total_emergencies"] == 1
    bad = client.get("/api/emergency/statistics?startDate=yesterday")
    assert bad.status_code == 400


def test_tracking_qr(client, tmp_path, monkeypatch):
    monkeypatch.setattr(qr_generator, "QR_OUTPUT_DIR", str(tmp_path / "qrcodes"))
    emergency_id = client.post("/api/emergency/submit", json=_payload()).get_json()["emergencyId"]

    response = client.get(f"/api/emergency/qr/{emergency_id}")

    assert response.status_code == 200
    assert response.mimetype == "image/png"
    assert (tmp_path / "qrcodes" / f"emergency_{emergency_id}.png").exists()


def test_nearby_hospitals(client):
    response = client.get(
        f"/api/hospitals/nearby?latitude={PATIENT_LATITUDE}&longitude={PATIENT_LONGITUDE}"
        "&emergencyType=cardiac&severity=critical"
    )

    body = response.get_json()
    assert body["count"] == 1
    assert body["hospitals"][0]["hospitalId"] == "HSP-T1"

    assert client.get("/api/hospitals/nearby?latitude=abc&longitude=1").status_code == 400
    assert client.get("/api/hospitals/nearby?latitude=1&longitude=1&emergencyType=flu").status_code == 400


def test_hospital_routes(client):
    assert client.get("/api/hospitals/HSP-T1").get_json()["hospital"]["name"] == "Test Hospital"
    assert client.get("/api/hospitals/HSP-MISSING").status_code == 404
    assert client.get("/api/hospitals/HSP-T1/availability?emergencyType=cardiac").get_json()["available"] is True
    assert client.get("/api/hospitals/statistics").get_json()["statistics"]["total_hospitals"] == 1
    assert client.get("/api/hospitals/search?q=test").get_json()["count"] == 1
    assert client.get("/api/hospitals/search?q=t").status_code == 400


def test_update_capacity(client):
    response = client.patch("/api/hospitals/HSP-T1/capacity", json={"availableBeds": 4})
    assert response.get_json()["capacity"]["availableBeds"] == 4

    bad = client.patch("/api/hospitals/HSP-T1/capacity", json={"availableBeds": -2})
    assert bad.status_code == 400


def test_ambulance_routes(client):
    units = client.get("/api/ambulances").get_json()["units"]
    assert [unit["id"] for unit in units] == ["AMB001", "AMB002", "AMB003"]
    assert client.get("/api/ambulances/AMB002").get_json()["unit"]["status"] == "available"
    assert client.get("/api/ambulances/AMB999").status_code == 404


def test_geocode_routes(client):
    reverse = client.get(f"/api/geocode/reverse?latitude={PATIENT_LATITUDE}&longitude={PATIENT_LONGITUDE}")
    assert reverse.get_json()["address"] == "Times Square, New York"
    forward = client.get("/api/geocode/forward?address=Times+Square")
    assert forward.get_json()["latitude"] == PATIENT_LATITUDE
    nearby = client.get(f"/api/geocode/nearby?latitude={PATIENT_LATITUDE}&longitude={PATIENT_LONGITUDE}")
    assert nearby.get_json()["count"] == 1


def test_degraded_submission_reports_dispatch_phone(build_coordinator):
    client = create_app(coordinator=build_coordinator([], units=[]), geocoder=FakeGeocoder()).test_client()

    body = client.post("/api/emergency/submit", json=_payload()).get_json()

    assert body["assignedHospital"] is None
    assert body["ambulance"]["success"] is False
    assert body["ambulance"]["dispatchPhone"] == DISPATCH_PHONE
    assert DISPATCH_PHONE in body["message"]


def test_unknown_route_is_json(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.get_json()["success"] is False


def test_update_ambulance_status(client):
    response = client.patch(
        "/api/ambulances/AMB002/status",
        json={"status": "returning", "location": {"latitude": 40.75, "longitude": -73.99}},
    )

    assert response.status_code == 200
    unit = response.get_json()["unit"]
    assert unit["status"] == "returning"
    assert unit["location"] == {"latitude": 40.75, "longitude": -73.99}

    bad = client.patch(
        "/api/ambulances/AMB003/status",
        json={"status": "at_scene", "location": {"latitude": 91, "longitude": 0}},
    )
    assert bad.status_code == 400
    assert client.get("/api/ambulances/AMB003").get_json()["unit"]["status"] == "available"

    assert client.patch("/api/ambulances/AMB003/status", json={}).status_code == 400
    assert client.patch("/api/ambulances/AMB003/status", json={"status": "parked"}).status_code == 400


def test_reserve_ambulance(client):
    emergency_id = client.post("/api/emergency/submit", json=_payload()).get_json()["emergencyId"]

    reserved = client.post("/api/ambulances/AMB002/reserve", json={"emergencyId": emergency_id}).get_json()
    assert reserved["success"] is True
    assert client.get("/api/ambulances/AMB002").get_json()["unit"]["reserved_for"] == emergency_id

    taken = client.post("/api/ambulances/AMB002/reserve", json={"emergencyId": emergency_id}).get_json()
    assert taken["success"] is False
    assert taken["dispatchPhone"] == DISPATCH_PHONE

    assert client.post("/api/ambulances/AMB003/reserve", json={"emergencyId": "EMG-MISSING"}).status_code == 404
