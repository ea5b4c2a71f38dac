import logging
from dataclasses import dataclass, field
from math import ceil
from typing import Dict

from errors import NotFoundError
from geolocation_service import haversine_distance_m
from models import EmergencyType, Hospital, HospitalStatus, Severity
from scoring_engine import can_handle_emergency, capability_score, score_hospital


logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE_M = 50000
DEFAULT_MAX_CANDIDATES = 20
MINUTES_PER_KM = 2

RELATED_SPECIALTIES = {
    EmergencyType.CARDIAC: frozenset({"Cardiology"}),
    EmergencyType.STROKE: frozenset({"Stroke Center", "Neurology"}),
    EmergencyType.TRAUMA: frozenset({"Trauma Center", "Surgery"}),
    EmergencyType.BURNS: frozenset({"Burn Unit"}),
    EmergencyType.NEUROLOGICAL: frozenset({"Neurology"}),
    EmergencyType.CHILDBIRTH: frozenset({"Maternity"}),
    EmergencyType.RESPIRATORY: frozenset({"Intensive Care"}),
}


@dataclass
class Candidate:
    hospital: Hospital
    distance: float
    score: int
    components: Dict[str, float] = field(default_factory=dict)
    emergency_match: bool = False


def estimate_travel_minutes(distance):
    """Rough transport time to a hospital: 2 minutes per km, rounded up."""
    return int(ceil(distance / 1000 * MINUTES_PER_KM))


def rank_candidates(candidates):
    """
    Order by score (desc), then distance (asc), then overall rating (desc).
    Hospital id settles anything left so the order never depends on input order.
    """
    return sorted(
        candidates,
        key=lambda c: (-c.score, c.distance, -c.hospital.rating.overall, c.hospital.id),
    )


def format_candidate(candidate, emergency_type):
    hospital = candidate.hospital
    emergency_type = EmergencyType(emergency_type)
    relevant = {"Emergency Medicine"}
    if candidate.emergency_match:
        relevant |= RELATED_SPECIALTIES.get(emergency_type, frozenset())
    return {
        "hospitalId": hospital.id,
        "name": hospital.name,
        "address": hospital.full_address,
        "phone": hospital.emergency_phone or hospital.phone,
        "distance": f"{candidate.distance / 1000:.1f} km",
        "distanceMeters": round(candidate.distance),
        "eta": f"{estimate_travel_minutes(candidate.distance)} min",
        "availableBeds": hospital.capacity.available_beds,
        "specialties": [s for s in hospital.specialties if s in relevant],
        "emergencyMatch": candidate.emergency_match,
        "score": candidate.score,
    }


class HospitalMatcher:
    def __init__(self, store, max_candidates=DEFAULT_MAX_CANDIDATES, urgent_icu_weight=0.0):
        self.store = store
        self.max_candidates = max_candidates
        self.urgent_icu_weight = urgent_icu_weight

    def find_candidates(self, latitude, longitude, emergency_type, severity, max_distance=DEFAULT_MAX_DISTANCE_M):
        emergency_type = EmergencyType(emergency_type)
        severity = Severity(severity)
        logger.info(
            "Finding hospitals near %s, %s for %s emergency",
            latitude,
            longitude,
            emergency_type.value,
        )

        hospitals = self.store.find_hospitals_near(
            latitude,
            longitude,
            max_distance,
            status=HospitalStatus.ACTIVE,
            min_available_beds=1,
        )
        if not hospitals:
            logger.warning("No hospitals found within %sm of %s, %s", max_distance, latitude, longitude)
            return []

        candidates = []
        for hospital in hospitals:
            distance = haversine_distance_m(latitude, longitude, hospital.latitude, hospital.longitude)
            scored = score_hospital(
                hospital,
                distance,
                emergency_type,
                severity,
                max_distance,
                urgent_icu_weight=self.urgent_icu_weight,
            )
            candidates.append(
                Candidate(
                    hospital=hospital,
                    distance=distance,
                    score=scored["score"],
                    components=scored["components"],
                    emergency_match=scored["emergency_match"],
                )
            )

        ranked = rank_candidates(candidates)[: self.max_candidates]
        logger.info(
            "Found %d hospitals, best match: %s (score: %d)",
            len(ranked),
            ranked[0].hospital.name,
            ranked[0].score,
        )
        return ranked

    def get_hospital(self, hospital_id):
        hospital = self.store.load_hospital(hospital_id)
        if hospital is None:
            raise NotFoundError(f"Hospital {hospital_id} not found")
        return hospital

    def check_availability(self, hospital_id, emergency_type):
        hospital = self.store.load_hospital(hospital_id)
        if hospital is None:
            return {"available": False, "reason": "Hospital not found"}
        if hospital.status != HospitalStatus.ACTIVE:
            return {"available": False, "reason": "Hospital not active"}
        if hospital.capacity.available_beds == 0:
            return {"available": False, "reason": "No available beds"}
        if not can_handle_emergency(hospital, emergency_type):
            return {
                "available": False,
                "reason": f"Hospital not equipped for {EmergencyType(emergency_type).value} emergencies",
            }
        return {
            "available": True,
            "capacity": {
                "availableBeds": hospital.capacity.available_beds,
                "availableIcuBeds": hospital.capacity.available_icu_beds,
                "availableEmergencyRooms": hospital.capacity.available_emergency_rooms,
            },
            "estimatedWaitTime": hospital.average_wait_time,
            "emergencyScore": capability_score(hospital, emergency_type, Severity.URGENT, self.urgent_icu_weight),
        }

    def hospitals_by_specialty(self, specialty, latitude=None, longitude=None, max_distance=DEFAULT_MAX_DISTANCE_M):
        if latitude is not None and longitude is not None:
            hospitals = self.store.find_hospitals_near(latitude, longitude, max_distance, min_available_beds=0)
        else:
            hospitals = self.store.list_hospitals(status=HospitalStatus.ACTIVE)
        return [hospital for hospital in hospitals if hospital.has_specialty(specialty)]

    def search_hospitals(self, term, latitude=None, longitude=None):
        hospitals = self.store.search_hospitals(term)
        if latitude is None or longitude is None:
            return hospitals
        return [
            hospital
            for hospital in hospitals
            if haversine_distance_m(latitude, longitude, hospital.latitude, hospital.longitude) <= 100000
        ]

    def hospital_statistics(self):
        return self.store.hospital_statistics()
