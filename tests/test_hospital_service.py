import random

import pytest

from errors import NotFoundError
from hospital_service import (
    Candidate,
    HospitalMatcher,
    estimate_travel_minutes,
    format_candidate,
    rank_candidates,
)
from models import EmergencyServices, EmergencyType, Rating, Severity

from conftest import PATIENT_LATITUDE, PATIENT_LONGITUDE


@pytest.fixture
def matcher(store):
    return HospitalMatcher(store)


def test_best_equipped_hospital_ranks_first(store, matcher, make_hospital):
    store.save_hospital(make_hospital("HSP-A", "Cardiac Center", services=EmergencyServices(heart_attack_center=True)))
    store.save_hospital(make_hospital("HSP-B", "General Clinic", services=EmergencyServices()))

    candidates = matcher.find_candidates(PATIENT_LATITUDE, PATIENT_LONGITUDE, EmergencyType.CARDIAC, Severity.CRITICAL)

    assert [c.hospital.id for c in candidates] == ["HSP-A", "HSP-B"]
    assert candidates[0].emergency_match is True
    assert candidates[1].emergency_match is False


def test_full_inactive_and_distant_hospitals_excluded(store, matcher, make_hospital):
    store.save_hospital(make_hospital("HSP-OK"))
    store.save_hospital(make_hospital("HSP-FULL", available_beds=0))
    store.save_hospital(make_hospital("HSP-CLOSED", status="Maintenance"))
    store.save_hospital(make_hospital("HSP-FAR", latitude=PATIENT_LATITUDE + 1.0))

    candidates = matcher.find_candidates(PATIENT_LATITUDE, PATIENT_LONGITUDE, EmergencyType.OTHER, Severity.URGENT)

    assert [c.hospital.id for c in candidates] == ["HSP-OK"]


def test_no_hospitals_returns_empty(matcher):
    assert matcher.find_candidates(PATIENT_LATITUDE, PATIENT_LONGITUDE, EmergencyType.CARDIAC, Severity.CRITICAL) == []


def test_candidates_truncated_after_ranking(store, make_hospital):
    for index in range(6):
        store.save_hospital(make_hospital(f"HSP-{index}", latitude=PATIENT_LATITUDE + 0.001 * (index + 1)))
    matcher = HospitalMatcher(store, max_candidates=3)

    candidates = matcher.find_candidates(PATIENT_LATITUDE, PATIENT_LONGITUDE, EmergencyType.OTHER, Severity.URGENT)

    assert len(candidates) == 3
    assert [c.hospital.id for c in candidates] == ["HSP-0", "HSP-1", "HSP-2"]


def test_rank_ties_broken_by_distance_rating_then_id(make_hospital):
    candidates = [
        Candidate(make_hospital("HSP-D", rating=Rating(4.0)), 1000, 70),
        Candidate(make_hospital("HSP-C", rating=Rating(4.5)), 1000, 70),
        Candidate(make_hospital("HSP-B", rating=Rating(4.5)), 1000, 70),
        Candidate(make_hospital("HSP-A"), 500, 70),
        Candidate(make_hospital("HSP-E"), 5000, 80),
    ]
    expected = ["HSP-E", "HSP-A", "HSP-B", "HSP-C", "HSP-D"]

    assert [c.hospital.id for c in rank_candidates(candidates)] == expected
    assert [c.hospital.id for c in rank_candidates(list(reversed(candidates)))] == expected
    shuffled = list(candidates)
    random.Random(7).shuffle(shuffled)
    assert [c.hospital.id for c in rank_candidates(shuffled)] == expected


def test_estimate_travel_minutes():
    assert estimate_travel_minutes(0) == 0
    assert estimate_travel_minutes(1000) == 2
    assert estimate_travel_minutes(2300) == 5


def test_format_candidate(make_hospital):
    candidate = Candidate(make_hospital(), 2345.6, 77, {}, True)

    formatted = format_candidate(candidate, EmergencyType.CARDIAC)

    assert formatted["hospitalId"] == "HSP-T1"
    assert formatted["distance"] == "2.3 km"
    assert formatted["eta"] == "5 min"
    assert formatted["availableBeds"] == 10
    assert formatted["score"] == 77
    assert formatted["emergencyMatch"] is True


def test_check_availability(store, matcher, make_hospital):
    store.save_hospital(make_hospital("HSP-A", services=EmergencyServices(heart_attack_center=True)))
    store.save_hospital(make_hospital("HSP-FULL", available_beds=0))

    assert matcher.check_availability("HSP-A", EmergencyType.CARDIAC)["available"] is True
    assert matcher.check_availability("HSP-A", EmergencyType.BURNS)["available"] is False
    assert matcher.check_availability("HSP-FULL", EmergencyType.OTHER)["reason"] == "No available beds"
    assert matcher.check_availability("HSP-MISSING", EmergencyType.OTHER)["reason"] == "Hospital not found"


def test_get_hospital_missing(matcher):
    with pytest.raises(NotFoundError):
        matcher.get_hospital("HSP-MISSING")


def test_search_and_specialty(store, matcher, make_hospital):
    store.save_hospital(make_hospital("HSP-A", "Riverside Heart Institute", specialties=("Cardiology",)))
    store.save_hospital(make_hospital("HSP-B", "Lakeside Children's", specialties=("Pediatrics",)))

    assert [h.id for h in matcher.search_hospitals("heart")] == ["HSP-A"]
    assert [h.id for h in matcher.hospitals_by_specialty("Pediatrics")] == ["HSP-B"]


def test_hospital_statistics(store, matcher, make_hospital):
    store.save_hospital(make_hospital("HSP-A", available_beds=10))
    store.save_hospital(make_hospital("HSP-B", available_beds=5, status="Inactive"))

    stats = matcher.hospital_statistics()

    assert stats["total_hospitals"] == 2
    assert stats["active_hospitals"] == 1
    assert stats["available_beds"] == 15
