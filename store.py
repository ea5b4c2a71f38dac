import json
import logging
from math import asin, cos, degrees, radians, sin

from database import get_connection, init_db
from errors import ReservationConflict
from geolocation_service import EARTH_RADIUS_M, haversine_distance_m
from models import (
    Address,
    AmbulanceAssignment,
    Capacity,
    Emergency,
    EmergencyServices,
    EmergencyStatus,
    Equipment,
    Hospital,
    HospitalAssignment,
    HospitalStatus,
    PatientContact,
    Rating,
    ReservationToken,
    TimelineEvent,
    iso_or_none,
    parse_datetime,
)


logger = logging.getLogger(__name__)

# Keeps float rounding at the edge of the box from dropping a hospital.
BOX_PADDING = 1.0001

_CAPACITY_COLUMNS = (
    "total_beds",
    "available_beds",
    "icu_beds",
    "available_icu_beds",
    "emergency_rooms",
    "available_emergency_rooms",
)


def _hospital_from_row(row):
    if row is None:
        return None
    row = dict(row)
    return Hospital(
        id=row["id"],
        name=row["name"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        address=Address(
            street=row["street"] or "",
            city=row["city"] or "",
            state=row["state"] or "",
            zip_code=row["zip_code"] or "",
            country=row["country"] or "USA",
        ),
        phone=row["phone"] or "",
        emergency_phone=row["emergency_phone"] or "",
        capacity=Capacity(**{column: row[column] for column in _CAPACITY_COLUMNS}),
        services=EmergencyServices(
            trauma_level=row["trauma_level"],
            stroke_center=bool(row["stroke_center"]),
            heart_attack_center=bool(row["heart_attack_center"]),
            burn_center=bool(row["burn_center"]),
            poison_control=bool(row["poison_control"]),
            psychiatric=bool(row["psychiatric"]),
            pediatric_emergency=bool(row["pediatric_emergency"]),
        ),
        equipment=Equipment(
            ct_scan=bool(row["ct_scan"]),
            mri_machine=bool(row["mri_machine"]),
            ventilators=row["ventilators"],
            defibrillators=row["defibrillators"],
            blood_bank=bool(row["blood_bank"]),
            helipad=bool(row["helipad"]),
        ),
        specialties=tuple(json.loads(row["specialties"] or "[]")),
        status=row["status"],
        rating=Rating(row["rating_overall"], row["rating_emergency"], row["review_count"]),
        average_wait_time=row["average_wait_time"],
    )


def _hospital_to_row(hospital):
    row = {
        "id": hospital.id,
        "name": hospital.name,
        "street": hospital.address.street,
        "city": hospital.address.city,
        "state": hospital.address.state,
        "zip_code": hospital.address.zip_code,
        "country": hospital.address.country,
        "latitude": hospital.latitude,
        "longitude": hospital.longitude,
        "phone": hospital.phone,
        "emergency_phone": hospital.emergency_phone,
        "trauma_level": hospital.services.trauma_level.value,
        "stroke_center": int(hospital.services.stroke_center),
        "heart_attack_center": int(hospital.services.heart_attack_center),
        "burn_center": int(hospital.services.burn_center),
        "poison_control": int(hospital.services.poison_control),
        "psychiatric": int(hospital.services.psychiatric),
        "pediatric_emergency": int(hospital.services.pediatric_emergency),
        "ct_scan": int(hospital.equipment.ct_scan),
        "mri_machine": int(hospital.equipment.mri_machine),
        "ventilators": hospital.equipment.ventilators,
        "defibrillators": hospital.equipment.defibrillators,
        "blood_bank": int(hospital.equipment.blood_bank),
        "helipad": int(hospital.equipment.helipad),
        "specialties": json.dumps(list(hospital.specialties)),
        "status": hospital.status.value,
        "rating_overall": hospital.rating.overall,
        "rating_emergency": hospital.rating.emergency,
        "review_count": hospital.rating.reviews,
        "average_wait_time": hospital.average_wait_time,
    }
    for column in _CAPACITY_COLUMNS:
        row[column] = getattr(hospital.capacity, column)
    return row


def _emergency_from_rows(row, timeline_rows):
    if row is None:
        return None
    row = dict(row)
    assigned_hospital = json.loads(row["assigned_hospital"]) if row["assigned_hospital"] else None
    ambulance = json.loads(row["ambulance"]) if row["ambulance"] else None
    reservation = json.loads(row["reservation"]) if row["reservation"] else None
    return Emergency(
        id=row["id"],
        patient=PatientContact(row["patient_name"], row["phone_number"]),
        latitude=row["latitude"],
        longitude=row["longitude"],
        address=row["address"] or "",
        session_id=row["session_id"],
        emergency_type=row["emergency_type"],
        description=row["description"] or "",
        severity=row["severity"],
        status=row["status"],
        assigned_hospital=HospitalAssignment.from_dict(assigned_hospital) if assigned_hospital else None,
        ambulance=AmbulanceAssignment.from_dict(ambulance) if ambulance else None,
        reservation=ReservationToken.from_dict(reservation) if reservation else None,
        dispatch_time=parse_datetime(row["dispatch_time"]),
        arrival_time=parse_datetime(row["arrival_time"]),
        transport_time=parse_datetime(row["transport_time"]),
        hospital_arrival_time=parse_datetime(row["hospital_arrival_time"]),
        completion_time=parse_datetime(row["completion_time"]),
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
        timeline=[
            TimelineEvent(
                timestamp=parse_datetime(event["timestamp"]),
                event=event["event"],
                actor=event["actor"],
                details=event["details"] or "",
            )
            for event in timeline_rows
        ],
    )


def _dumps_or_none(value):
    return json.dumps(value.to_dict()) if value is not None else None


class SqliteStore:
    """
    sqlite3-backed persistence for hospitals, emergencies and reservations.

    Every call opens its own connection so the store can be shared between
    worker threads.
    """

    def __init__(self, db_path=None):
        self.db_path = db_path
        init_db(db_path)

    def _connect(self):
        return get_connection(self.db_path)

    # Hospitals

    def save_hospital(self, hospital):
        row = _hospital_to_row(hospital)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        conn = self._connect()
        with conn:
            conn.execute(
                f"INSERT OR REPLACE INTO Hospital ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
        conn.close()
        return hospital

    def load_hospital(self, hospital_id):
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM Hospital WHERE id = ?", (hospital_id,))
        hospital = _hospital_from_row(cursor.fetchone())
        conn.close()
        return hospital

    def list_hospitals(self, status=None):
        conn = self._connect()
        cursor = conn.cursor()
        if status is None:
            cursor.execute("SELECT * FROM Hospital ORDER BY id")
        else:
            cursor.execute("SELECT * FROM Hospital WHERE status = ? ORDER BY id", (HospitalStatus(status).value,))
        hospitals = [_hospital_from_row(row) for row in cursor.fetchall()]
        conn.close()
        return hospitals

    def find_hospitals_near(self, latitude, longitude, radius_m, status=HospitalStatus.ACTIVE, min_available_beds=1):
        """Hospitals within radius_m of the point, nearest first."""
        angular_radius = radius_m / EARTH_RADIUS_M * BOX_PADDING
        lat_delta = degrees(angular_radius)
        clauses = ["latitude BETWEEN ? AND ?", "available_beds >= ?"]
        params = [latitude - lat_delta, latitude + lat_delta, min_available_beds]

        cos_lat = cos(radians(latitude))
        if angular_radius < radians(90) and sin(angular_radius) < cos_lat:
            lon_delta = degrees(asin(sin(angular_radius) / cos_lat))
            # Skip the longitude prefilter when the box wraps the antimeridian.
            if lon_delta < 180 and -180 <= longitude - lon_delta and longitude + lon_delta <= 180:
                clauses.append("longitude BETWEEN ? AND ?")
                params.extend([longitude - lon_delta, longitude + lon_delta])

        if status is not None:
            clauses.append("status = ?")
            params.append(HospitalStatus(status).value)

        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(f"SELECT * FROM Hospital WHERE {' AND '.join(clauses)}", params)
        rows = cursor.fetchall()
        conn.close()

        nearby = []
        for row in rows:
            hospital = _hospital_from_row(row)
            distance = haversine_distance_m(latitude, longitude, hospital.latitude, hospital.longitude)
            if distance <= radius_m:
                nearby.append((distance, hospital.id, hospital))
        nearby.sort(key=lambda item: (item[0], item[1]))
        return [hospital for _, _, hospital in nearby]

    def search_hospitals(self, term, limit=50):
        pattern = f"%{term.strip().lower()}%"
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT *
            FROM Hospital
            WHERE status = ?
              AND (
                LOWER(name) LIKE ?
                OR LOWER(city) LIKE ?
                OR LOWER(state) LIKE ?
                OR LOWER(specialties) LIKE ?
              )
            ORDER BY rating_overall DESC, id
            LIMIT ?
            """,
            (HospitalStatus.ACTIVE.value, pattern, pattern, pattern, pattern, int(limit)),
        )
        hospitals = [_hospital_from_row(row) for row in cursor.fetchall()]
        conn.close()
        return hospitals

    def hospital_statistics(self):
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT
                COUNT(*) AS total_hospitals,
                COALESCE(SUM(CASE WHEN status = 'Active' THEN 1 ELSE 0 END), 0) AS active_hospitals,
                COALESCE(SUM(total_beds), 0) AS total_beds,
                COALESCE(SUM(available_beds), 0) AS available_beds,
                COALESCE(SUM(icu_beds), 0) AS total_icu_beds,
                COALESCE(SUM(available_icu_beds), 0) AS available_icu_beds,
                COALESCE(SUM(CASE WHEN trauma_level != 'None' THEN 1 ELSE 0 END), 0) AS trauma_centers,
                COALESCE(SUM(stroke_center), 0) AS stroke_centers,
                COALESCE(SUM(heart_attack_center), 0) AS heart_attack_centers
            FROM Hospital
            """
        )
        stats = dict(cursor.fetchone())
        conn.close()
        return stats

    # Capacity counters

    def apply_reservation(self, token):
        """Decrement counters and record the reservation in one transaction."""
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    """
                    UPDATE Hospital
                    SET available_beds = available_beds - ?,
                        available_icu_beds = available_icu_beds - ?,
                        capacity_updated_at = ?
                    WHERE id = ?
                      AND available_beds >= ?
                      AND available_icu_beds >= ?
                    """,
                    (
                        token.beds,
                        token.icu_beds,
                        iso_or_none(token.created_at),
                        token.hospital_id,
                        token.beds,
                        token.icu_beds,
                    ),
                )
                if cursor.rowcount != 1:
                    raise ReservationConflict(f"Capacity changed while reserving at {token.hospital_id}")
                conn.execute(
                    """
                    INSERT INTO Reservation (token_id, hospital_id, emergency_id, beds, icu_beds, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        token.token_id,
                        token.hospital_id,
                        token.emergency_id,
                        token.beds,
                        token.icu_beds,
                        iso_or_none(token.created_at),
                    ),
                )
        finally:
            conn.close()
        return token

    def release_reservation(self, token_id, released_at):
        """Restore the counters of an unreleased reservation. Returns False if already released."""
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    "UPDATE Reservation SET released_at = ? WHERE token_id = ? AND released_at IS NULL",
                    (iso_or_none(released_at), token_id),
                )
                if cursor.rowcount != 1:
                    return False
                reservation = conn.execute(
                    "SELECT hospital_id, beds, icu_beds FROM Reservation WHERE token_id = ?",
                    (token_id,),
                ).fetchone()
                conn.execute(
                    """
                    UPDATE Hospital
                    SET available_beds = MIN(total_beds, available_beds + ?),
                        available_icu_beds = MIN(icu_beds, available_icu_beds + ?),
                        capacity_updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        reservation["beds"],
                        reservation["icu_beds"],
                        iso_or_none(released_at),
                        reservation["hospital_id"],
                    ),
                )
        finally:
            conn.close()
        return True

    def load_reservation(self, token_id):
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM Reservation WHERE token_id = ?", (token_id,))
        row = cursor.fetchone()
        conn.close()
        return dict(row) if row else None

    def set_capacity(self, hospital_id, counts, updated_at):
        assignments = ", ".join(f"{column} = ?" for column in counts)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"UPDATE Hospital SET {assignments}, capacity_updated_at = ? WHERE id = ?",
                    (*counts.values(), iso_or_none(updated_at), hospital_id),
                )
        finally:
            conn.close()

    # Emergencies

    def save_emergency(self, emergency):
        """Upsert the emergency and append timeline events not yet stored, atomically."""
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO Emergency (
                        id, session_id, patient_name, phone_number, latitude, longitude, address,
                        emergency_type, description, severity, status, priority,
                        assigned_hospital, ambulance, reservation,
                        dispatch_time, arrival_time, transport_time, hospital_arrival_time, completion_time,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        emergency.id,
                        emergency.session_id,
                        emergency.patient.name,
                        emergency.patient.phone_number,
                        emergency.latitude,
                        emergency.longitude,
                        emergency.address,
                        emergency.emergency_type.value,
                        emergency.description,
                        emergency.severity.value,
                        emergency.status.value,
                        emergency.priority,
                        _dumps_or_none(emergency.assigned_hospital),
                        _dumps_or_none(emergency.ambulance),
                        _dumps_or_none(emergency.reservation),
                        iso_or_none(emergency.dispatch_time),
                        iso_or_none(emergency.arrival_time),
                        iso_or_none(emergency.transport_time),
                        iso_or_none(emergency.hospital_arrival_time),
                        iso_or_none(emergency.completion_time),
                        iso_or_none(emergency.created_at),
                        iso_or_none(emergency.updated_at),
                    ),
                )
                stored = conn.execute(
                    "SELECT COUNT(*) AS count FROM TimelineEvent WHERE emergency_id = ?",
                    (emergency.id,),
                ).fetchone()["count"]
                conn.executemany(
                    """
                    INSERT INTO TimelineEvent (emergency_id, seq, timestamp, event, actor, details)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (emergency.id, seq, iso_or_none(event.timestamp), event.event, event.actor, event.details)
                        for seq, event in enumerate(emergency.timeline)
                        if seq >= stored
                    ],
                )
        finally:
            conn.close()
        return emergency

    def load_emergency(self, emergency_id):
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM Emergency WHERE id = ?", (emergency_id,))
        row = cursor.fetchone()
        timeline_rows = []
        if row is not None:
            cursor.execute(
                "SELECT * FROM TimelineEvent WHERE emergency_id = ? ORDER BY seq",
                (emergency_id,),
            )
            timeline_rows = [dict(event) for event in cursor.fetchall()]
        conn.close()
        return _emergency_from_rows(row, timeline_rows)

    def list_emergency_ids(self, status=None):
        conn = self._connect()
        cursor = conn.cursor()
        if status is None:
            cursor.execute("SELECT id FROM Emergency ORDER BY created_at DESC")
        else:
            cursor.execute(
                "SELECT id FROM Emergency WHERE status = ? ORDER BY created_at DESC",
                (EmergencyStatus(status).value,),
            )
        ids = [row["id"] for row in cursor.fetchall()]
        conn.close()
        return ids

    def emergency_statistics(self, start, end):
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT
                COUNT(*) AS total_emergencies,
                COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed_emergencies,
                COALESCE(SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END), 0) AS cancelled_emergencies,
                COALESCE(SUM(CASE WHEN severity = 'critical' THEN 1 ELSE 0 END), 0) AS critical_emergencies
            FROM Emergency
            WHERE created_at BETWEEN ? AND ?
            """,
            (iso_or_none(start), iso_or_none(end)),
        )
        stats = dict(cursor.fetchone())
        cursor.execute(
            """
            SELECT emergency_type, COUNT(*) AS count
            FROM Emergency
            WHERE created_at BETWEEN ? AND ?
            GROUP BY emergency_type
            ORDER BY emergency_type
            """,
            (iso_or_none(start), iso_or_none(end)),
        )
        stats["emergency_types"] = {row["emergency_type"]: row["count"] for row in cursor.fetchall()}
        conn.close()
        return stats
