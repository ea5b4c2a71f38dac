from math import floor

from models import EmergencyType, Severity, TraumaLevel


ICU_EMERGENCY_TYPES = frozenset({EmergencyType.CARDIAC, EmergencyType.STROKE, EmergencyType.TRAUMA})


def can_handle_emergency(hospital, emergency_type):
    services = hospital.services
    mapping = {
        EmergencyType.CARDIAC: services.heart_attack_center,
        EmergencyType.STROKE: services.stroke_center,
        EmergencyType.TRAUMA: services.trauma_level != TraumaLevel.NONE,
        EmergencyType.BURNS: services.burn_center,
        EmergencyType.POISONING: services.poison_control,
        EmergencyType.NEUROLOGICAL: hospital.has_specialty("Neurology"),
        EmergencyType.RESPIRATORY: hospital.equipment.ventilators > 0,
        EmergencyType.CHILDBIRTH: hospital.has_specialty("Maternity"),
        EmergencyType.OTHER: True,
    }
    return bool(mapping.get(EmergencyType(emergency_type), False))


def _severity_bonus(hospital):
    bonus = 0
    if hospital.services.trauma_level == TraumaLevel.LEVEL_I:
        bonus += 15
    elif hospital.services.trauma_level == TraumaLevel.LEVEL_II:
        bonus += 10
    if hospital.capacity.available_icu_beds > 0:
        bonus += 10
    return bonus


def capability_score(hospital, emergency_type, severity, urgent_icu_weight=0.0):
    """
    Emergency capability score (0-100):
    30 available beds +
    20 available emergency room +
    25 equipped for the emergency type +
    critical only: 15 trauma Level I / 10 Level II, 10 available ICU +
    5 each for CT, MRI, ventilators

    urgent_icu_weight scales the critical-only bonuses for urgent requests
    (0.0 keeps them critical-only).
    """
    severity = Severity(severity)
    capacity = hospital.capacity
    equipment = hospital.equipment

    score = 0
    if capacity.available_beds > 0:
        score += 30
    if capacity.available_emergency_rooms > 0:
        score += 20
    if can_handle_emergency(hospital, emergency_type):
        score += 25

    if severity == Severity.CRITICAL:
        score += _severity_bonus(hospital)
    elif severity == Severity.URGENT and urgent_icu_weight > 0:
        score += _severity_bonus(hospital) * min(1.0, float(urgent_icu_weight))

    equipment_points = 0
    if equipment.ct_scan:
        equipment_points += 5
    if equipment.mri_machine:
        equipment_points += 5
    if equipment.ventilators > 0:
        equipment_points += 5
    score += min(equipment_points, 15)

    return min(score, 100)


def capacity_score(hospital):
    """
    Capacity score (0-100):
    30 x available/total beds +
    25 available emergency room +
    20 available ICU +
    5 each for CT, MRI, ventilators, defibrillators, blood bank (max 20)
    """
    capacity = hospital.capacity
    equipment = hospital.equipment

    score = 0.0
    if capacity.total_beds > 0:
        score += capacity.available_beds / capacity.total_beds * 30
    if capacity.available_emergency_rooms > 0:
        score += 25
    if capacity.available_icu_beds > 0:
        score += 20

    equipment_points = 0
    for present in (
        equipment.ct_scan,
        equipment.mri_machine,
        equipment.ventilators > 0,
        equipment.defibrillators > 0,
        equipment.blood_bank,
    ):
        if present:
            equipment_points += 5
    score += min(equipment_points, 20)

    return min(score, 100)


def distance_score(distance, max_distance):
    if max_distance <= 0 or distance >= max_distance:
        return 0.0
    return max(0.0, 100 - distance / max_distance * 100)


def round_half_up(value):
    return int(floor(value + 0.5))


def rank_score(emergency_score, dist_score, cap_score):
    """
    score =
    0.40 capability +
    0.30 distance +
    0.30 capacity
    rounded to the nearest integer
    """
    return round_half_up(0.4 * emergency_score + 0.3 * dist_score + 0.3 * cap_score)


def score_hospital(hospital, distance, emergency_type, severity, max_distance, urgent_icu_weight=0.0):
    emergency_component = capability_score(hospital, emergency_type, severity, urgent_icu_weight)
    distance_component = distance_score(distance, max_distance)
    capacity_component = capacity_score(hospital)

    return {
        "score": rank_score(emergency_component, distance_component, capacity_component),
        "components": {
            "emergency": round(emergency_component, 4),
            "distance": round(distance_component, 4),
            "capacity": round(capacity_component, 4),
        },
        "emergency_match": can_handle_emergency(hospital, emergency_type),
    }
