def generate_selection_reason(candidate, emergency_type, rank=1):
    """Short human-readable reason recorded with a hospital assignment."""
    components = candidate.components or {}
    hospital = candidate.hospital
    reasons = []

    if candidate.emergency_match:
        reasons.append(f"Equipped for {emergency_type.value} emergencies")
    if hospital.capacity.available_icu_beds > 0:
        reasons.append("ICU bed available")
    if hospital.capacity.available_emergency_rooms > 0:
        reasons.append("Emergency room available")
    if components.get("distance", 0.0) >= 90:
        reasons.append("Very close to patient")
    if hospital.rating.emergency >= 4.5:
        reasons.append("Highly rated emergency care")

    if not reasons:
        reasons.append("Best available option with free beds")

    prefix = "Best match" if rank == 1 else f"Ranked #{rank} (higher-ranked hospitals were full)"
    return f"{prefix}: {', '.join(reasons)}"


def generate_degraded_guidance(dispatch_phone, resource):
    if resource == "ambulance":
        return (
            "No ambulances are currently available. "
            f"Call the emergency dispatch center at {dispatch_phone} immediately."
        )
    return (
        "No hospital with available beds was found nearby. "
        f"Contact emergency services directly at {dispatch_phone}."
    )
