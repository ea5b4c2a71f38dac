import logging
import os
from datetime import timezone

from flask import Flask, jsonify, request, send_file
from flask_cors import CORS

import config
from emergency_engine import build_coordinator
from errors import CareMatchError, NotFoundError, ValidationError
from geolocation_service import NominatimGeocodingProvider, resolve_address
from hospital_service import format_candidate
from models import EmergencyRequest, EmergencyType, Severity, coerce_enum, parse_datetime
from qr_generator import generate_tracking_qr, tracking_url
from triage_inference import infer_emergency_type, infer_severity


logger = logging.getLogger(__name__)


def _to_float_or_none(value):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _required_float(args, name):
    value = _to_float_or_none(args.get(name))
    if value is None:
        raise ValidationError(f"{name} is required", errors=[{"field": name, "message": "must be a number"}])
    return value


def _parse_date_arg(value, field_name):
    if not value:
        return None
    try:
        parsed = parse_datetime(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}",
            errors=[{"field": field_name, "message": "must be an ISO 8601 date"}],
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json_body():
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def create_app(coordinator=None, geocoder=None):
    app = Flask(__name__)
    CORS(app)

    coordinator = coordinator or build_coordinator()
    if geocoder is None:
        geocoder = NominatimGeocodingProvider(timeout=config.GEOCODER_TIMEOUT)
    app.extensions["carematch"] = coordinator

    @app.errorhandler(CareMatchError)
    def handle_carematch_error(error):
        if error.status_code >= 500:
            logger.error("%s: %s", type(error).__name__, error.message)
        return jsonify(error.to_dict()), error.status_code

    # Emergencies

    @app.route("/api/emergency/submit", methods=["POST"])
    def submit_emergency():
        payload = dict(_json_body())
        description = payload.get("description")
        if description and not payload.get("emergencyType"):
            payload["emergencyType"] = infer_emergency_type(description).value
        if description and not payload.get("severity"):
            payload["severity"] = infer_severity(description).value

        emergency_request = EmergencyRequest.from_payload(payload)
        emergency_request.address = resolve_address(
            geocoder,
            emergency_request.latitude,
            emergency_request.longitude,
            emergency_request.address,
        )

        result = coordinator.submit_emergency(emergency_request)
        body = result.to_dict()
        body["trackingUrl"] = tracking_url(result.emergency_id)
        return jsonify(body), 201

    @app.route("/api/emergency/status/<emergency_id>", methods=["GET"])
    def emergency_status(emergency_id):
        return jsonify({"success": True, "emergency": coordinator.get_status(emergency_id)})

    @app.route("/api/emergency/status/<emergency_id>", methods=["PATCH"])
    def update_emergency_status(emergency_id):
        payload = _json_body()
        if not payload.get("status"):
            raise ValidationError("status is required", errors=[{"field": "status", "message": "required"}])

        location = payload.get("location") or {}
        emergency = coordinator.update_status(
            emergency_id,
            payload["status"],
            actor=payload.get("actor") or "emergency_services",
            details=payload.get("details") or "",
            latitude=_to_float_or_none(location.get("latitude")),
            longitude=_to_float_or_none(location.get("longitude")),
        )
        return jsonify(
            {
                "success": True,
                "message": "Emergency status updated successfully",
                "emergency": {
                    "emergencyId": emergency.id,
                    "status": emergency.status.value,
                    "updatedAt": emergency.updated_at.isoformat(),
                },
            }
        )

    @app.route("/api/emergency/cancel/<emergency_id>", methods=["PATCH"])
    def cancel_emergency(emergency_id):
        payload = _json_body()
        result = coordinator.cancel_emergency(
            emergency_id,
            reason=payload.get("reason") or "User cancelled",
            actor=payload.get("actor") or "patient",
        )
        result["success"] = True
        result["message"] = "Emergency cancelled successfully"
        return jsonify(result)

    @app.route("/api/emergency/statistics", methods=["GET"])
    def emergency_statistics():
        stats = coordinator.emergency_statistics(
            _parse_date_arg(request.args.get("startDate"), "startDate"),
            _parse_date_arg(request.args.get("endDate"), "endDate"),
        )
        stats["success"] = True
        return jsonify(stats)

    @app.route("/api/emergency/qr/<emergency_id>", methods=["GET"])
    def emergency_qr(emergency_id):
        coordinator.get_status(emergency_id)
        file_path = generate_tracking_qr(emergency_id)
        return send_file(os.path.abspath(file_path), mimetype="image/png")

    # Hospitals

    @app.route("/api/hospitals/nearby", methods=["GET"])
    def nearby_hospitals():
        latitude = _required_float(request.args, "latitude")
        longitude = _required_float(request.args, "longitude")
        emergency_type = coerce_enum(EmergencyType, request.args.get("emergencyType", "other"), "emergencyType")
        severity = coerce_enum(Severity, request.args.get("severity", "urgent"), "severity")
        max_distance = _to_float_or_none(request.args.get("maxDistance")) or coordinator.max_distance

        candidates = coordinator.matcher.find_candidates(latitude, longitude, emergency_type, severity, max_distance)
        hospitals = [format_candidate(candidate, emergency_type) for candidate in candidates]
        return jsonify({"success": True, "count": len(hospitals), "hospitals": hospitals})

    @app.route("/api/hospitals/statistics", methods=["GET"])
    def hospital_statistics():
        return jsonify({"success": True, "statistics": coordinator.matcher.hospital_statistics()})

    @app.route("/api/hospitals/search", methods=["GET"])
    def search_hospitals():
        term = (request.args.get("q") or "").strip()
        if len(term) < 2:
            raise ValidationError(
                "Search term must be at least 2 characters",
                errors=[{"field": "q", "message": "too short"}],
            )
        hospitals = coordinator.matcher.search_hospitals(
            term,
            _to_float_or_none(request.args.get("latitude")),
            _to_float_or_none(request.args.get("longitude")),
        )
        return jsonify({"success": True, "count": len(hospitals), "hospitals": [h.to_dict() for h in hospitals]})

    @app.route("/api/hospitals/specialty/<specialty>", methods=["GET"])
    def hospitals_by_specialty(specialty):
        hospitals = coordinator.matcher.hospitals_by_specialty(
            specialty,
            _to_float_or_none(request.args.get("latitude")),
            _to_float_or_none(request.args.get("longitude")),
        )
        return jsonify({"success": True, "count": len(hospitals), "hospitals": [h.to_dict() for h in hospitals]})

    @app.route("/api/hospitals/<hospital_id>", methods=["GET"])
    def hospital_detail(hospital_id):
        hospital = coordinator.matcher.get_hospital(hospital_id)
        return jsonify({"success": True, "hospital": hospital.to_dict()})

    @app.route("/api/hospitals/<hospital_id>/availability", methods=["GET"])
    def hospital_availability(hospital_id):
        emergency_type = coerce_enum(EmergencyType, request.args.get("emergencyType", "other"), "emergencyType")
        availability = coordinator.matcher.check_availability(hospital_id, emergency_type)
        availability["success"] = True
        return jsonify(availability)

    @app.route("/api/hospitals/<hospital_id>/capacity", methods=["PATCH"])
    def update_hospital_capacity(hospital_id):
        payload = _json_body()
        field_names = {
            "totalBeds": "total_beds",
            "availableBeds": "available_beds",
            "icuBeds": "icu_beds",
            "availableIcuBeds": "available_icu_beds",
            "emergencyRooms": "emergency_rooms",
            "availableEmergencyRooms": "available_emergency_rooms",
        }
        counts = {field_names.get(key, key): value for key, value in payload.items()}
        if not counts:
            raise ValidationError("No capacity fields given")
        capacity = coordinator.registry.update_capacity(hospital_id, **counts)
        return jsonify(
            {
                "success": True,
                "message": "Hospital capacity updated successfully",
                "capacity": {
                    "totalBeds": capacity.total_beds,
                    "availableBeds": capacity.available_beds,
                    "icuBeds": capacity.icu_beds,
                    "availableIcuBeds": capacity.available_icu_beds,
                    "emergencyRooms": capacity.emergency_rooms,
                    "availableEmergencyRooms": capacity.available_emergency_rooms,
                },
            }
        )

    # Ambulances

    @app.route("/api/ambulances", methods=["GET"])
    def ambulance_units():
        return jsonify({"success": True, "units": coordinator.dispatcher.all_unit_statuses()})

    @app.route("/api/ambulances/<unit_id>", methods=["GET"])
    def ambulance_unit(unit_id):
        return jsonify({"success": True, "unit": coordinator.dispatcher.unit_status(unit_id).to_dict()})

    @app.route("/api/ambulances/<unit_id>/status", methods=["PATCH"])
    def update_ambulance_status(unit_id):
        payload = _json_body()
        if not payload.get("status"):
            raise ValidationError("status is required", errors=[{"field": "status", "message": "required"}])
        location = payload.get("location") or {}
        coordinator.dispatcher.update_unit_status(
            unit_id,
            payload["status"],
            _to_float_or_none(location.get("latitude")),
            _to_float_or_none(location.get("longitude")),
        )
        return jsonify(
            {
                "success": True,
                "message": "Ambulance status updated successfully",
                "unit": coordinator.dispatcher.unit_status(unit_id).to_dict(),
            }
        )

    @app.route("/api/ambulances/<unit_id>/reserve", methods=["POST"])
    def reserve_ambulance(unit_id):
        payload = _json_body()
        emergency_id = payload.get("emergencyId")
        if not emergency_id:
            raise ValidationError("emergencyId is required", errors=[{"field": "emergencyId", "message": "required"}])
        coordinator.get_status(emergency_id)
        return jsonify(coordinator.dispatcher.reserve_unit(unit_id, emergency_id))

    # Geocoding

    @app.route("/api/geocode/reverse", methods=["GET"])
    def reverse_geocode():
        latitude = _required_float(request.args, "latitude")
        longitude = _required_float(request.args, "longitude")
        result = geocoder.reverse_geocode(latitude, longitude)
        return jsonify({"success": True, **result})

    @app.route("/api/geocode/forward", methods=["GET"])
    def forward_geocode():
        result = geocoder.forward_geocode(request.args.get("address", ""))
        return jsonify({"success": True, **result})

    @app.route("/api/geocode/nearby", methods=["GET"])
    def nearby_places():
        latitude = _required_float(request.args, "latitude")
        longitude = _required_float(request.args, "longitude")
        radius = _to_float_or_none(request.args.get("radius")) or 5000
        places = geocoder.find_nearby(latitude, longitude, request.args.get("type", "hospital"), radius)
        return jsonify({"success": True, "count": len(places), "places": places})

    @app.route("/api/health", methods=["GET"])
    def health():
        return jsonify({"status": "OK", "service": "carematch-emergency"})

    @app.errorhandler(404)
    def handle_not_found(_error):
        return jsonify(NotFoundError("Route not found").to_dict()), 404

    return app


if __name__ == "__main__":
    config.configure_logging()
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
