import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from errors import ValidationError
from geolocation_service import validate_coordinates


class EmergencyType(str, Enum):
    CARDIAC = "cardiac"
    TRAUMA = "trauma"
    STROKE = "stroke"
    RESPIRATORY = "respiratory"
    NEUROLOGICAL = "neurological"
    POISONING = "poisoning"
    BURNS = "burns"
    CHILDBIRTH = "childbirth"
    OTHER = "other"


class Severity(str, Enum):
    CRITICAL = "critical"
    URGENT = "urgent"
    MODERATE = "moderate"


class EmergencyStatus(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    AMBULANCE_DISPATCHED = "ambulance_dispatched"
    EN_ROUTE = "en_route"
    ARRIVED_AT_SCENE = "arrived_at_scene"
    TRANSPORTED = "transported"
    ARRIVED_AT_HOSPITAL = "arrived_at_hospital"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED})


class HospitalStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    MAINTENANCE = "Maintenance"
    EMERGENCY_ONLY = "Emergency Only"


class TraumaLevel(str, Enum):
    LEVEL_I = "Level I"
    LEVEL_II = "Level II"
    LEVEL_III = "Level III"
    LEVEL_IV = "Level IV"
    NONE = "None"


class UnitStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    AT_SCENE = "at_scene"
    RETURNING = "returning"


SPECIALTIES = frozenset(
    {
        "Cardiology",
        "Neurology",
        "Orthopedics",
        "Pediatrics",
        "Trauma Center",
        "Burn Unit",
        "Stroke Center",
        "Cancer Center",
        "Maternity",
        "Mental Health",
        "Emergency Medicine",
        "Surgery",
        "Intensive Care",
        "Dialysis",
        "Radiology",
        "Laboratory",
        "Pharmacy",
        "Physical Therapy",
        "Rehabilitation",
        "Other",
    }
)

PRIORITY_BY_SEVERITY = {
    Severity.CRITICAL: "Critical",
    Severity.URGENT: "High",
    Severity.MODERATE: "Medium",
}

_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9\-\s().]{6,19}$")


def coerce_enum(enum_cls, value, field_name):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            errors=[{"field": field_name, "message": f"must be one of: {allowed}"}],
        ) from None


def _require_text(value, field_name):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", errors=[{"field": field_name, "message": "required"}])
    return value.strip()


def _require_count(value, field_name):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"{field_name} must be a non-negative integer",
            errors=[{"field": field_name, "message": "must be a non-negative integer"}],
        )
    return value


def iso_or_none(value):
    return value.isoformat() if value is not None else None


def parse_datetime(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def new_emergency_id():
    return f"EMG-{uuid.uuid4().hex[:8].upper()}"


# Hospital

@dataclass
class Address:
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "USA"

    @property
    def full(self):
        locality = " ".join(part for part in [self.state, self.zip_code] if part)
        return ", ".join(part for part in [self.street, self.city, locality] if part)


@dataclass
class Capacity:
    total_beds: int
    available_beds: int
    icu_beds: int = 0
    available_icu_beds: int = 0
    emergency_rooms: int = 0
    available_emergency_rooms: int = 0

    _PAIRS = (
        ("total_beds", "available_beds"),
        ("icu_beds", "available_icu_beds"),
        ("emergency_rooms", "available_emergency_rooms"),
    )

    def __post_init__(self):
        for total_field, available_field in self._PAIRS:
            total = _require_count(getattr(self, total_field), total_field)
            available = _require_count(getattr(self, available_field), available_field)
            if available > total:
                raise ValidationError(
                    f"{available_field} ({available}) exceeds {total_field} ({total})",
                    errors=[{"field": available_field, "message": f"must not exceed {total_field}"}],
                )


@dataclass
class EmergencyServices:
    trauma_level: TraumaLevel = TraumaLevel.NONE
    stroke_center: bool = False
    heart_attack_center: bool = False
    burn_center: bool = False
    poison_control: bool = False
    psychiatric: bool = False
    pediatric_emergency: bool = False

    def __post_init__(self):
        self.trauma_level = coerce_enum(TraumaLevel, self.trauma_level, "trauma_level")


@dataclass
class Equipment:
    ct_scan: bool = False
    mri_machine: bool = False
    ventilators: int = 0
    defibrillators: int = 0
    blood_bank: bool = False
    helipad: bool = False

    def __post_init__(self):
        _require_count(self.ventilators, "ventilators")
        _require_count(self.defibrillators, "defibrillators")


@dataclass
class Rating:
    overall: float = 3.0
    emergency: float = 3.0
    reviews: int = 0

    def __post_init__(self):
        for name in ("overall", "emergency"):
            value = getattr(self, name)
            if not 1 <= float(value) <= 5:
                raise ValidationError(
                    f"rating.{name} must be between 1 and 5",
                    errors=[{"field": f"rating.{name}", "message": "must be between 1 and 5"}],
                )
        _require_count(self.reviews, "rating.reviews")


@dataclass
class Hospital:
    id: str
    name: str
    latitude: float
    longitude: float
    capacity: Capacity
    services: EmergencyServices = field(default_factory=EmergencyServices)
    equipment: Equipment = field(default_factory=Equipment)
    specialties: Tuple[str, ...] = ()
    status: HospitalStatus = HospitalStatus.ACTIVE
    rating: Rating = field(default_factory=Rating)
    address: Address = field(default_factory=Address)
    phone: str = ""
    emergency_phone: str = ""
    average_wait_time: int = 30

    def __post_init__(self):
        self.id = _require_text(self.id, "id")
        self.name = _require_text(self.name, "name")
        validate_coordinates(self.latitude, self.longitude)
        self.status = coerce_enum(HospitalStatus, self.status, "status")
        unknown = [s for s in self.specialties if s not in SPECIALTIES]
        if unknown:
            raise ValidationError(
                f"Unknown specialties: {', '.join(unknown)}",
                errors=[{"field": "specialties", "message": f"unknown: {', '.join(unknown)}"}],
            )
        self.specialties = tuple(self.specialties)

    def has_specialty(self, specialty):
        return specialty in self.specialties

    @property
    def full_address(self):
        return self.address.full

    def to_dict(self):
        data = asdict(self)
        data["services"]["trauma_level"] = self.services.trauma_level.value
        data["status"] = self.status.value
        data["specialties"] = list(self.specialties)
        data["full_address"] = self.full_address
        return data


# Ambulance

@dataclass
class CrewMember:
    name: str
    role: str
    certification: str = ""


@dataclass
class UnitAssignment:
    emergency_id: str
    latitude: float
    longitude: float
    severity: Severity
    emergency_type: EmergencyType
    dispatch_time: datetime

    def to_dict(self):
        return {
            "emergency_id": self.emergency_id,
            "location": {"latitude": self.latitude, "longitude": self.longitude},
            "severity": self.severity.value,
            "emergency_type": self.emergency_type.value,
            "dispatch_time": iso_or_none(self.dispatch_time),
        }


@dataclass
class AmbulanceUnit:
    id: str
    unit: str
    latitude: float
    longitude: float
    status: UnitStatus = UnitStatus.AVAILABLE
    crew: List[CrewMember] = field(default_factory=list)
    equipment: List[str] = field(default_factory=list)
    current_emergency: Optional[UnitAssignment] = None
    reserved_for: Optional[str] = None
    last_update: Optional[datetime] = None

    def __post_init__(self):
        self.id = _require_text(self.id, "id")
        validate_coordinates(self.latitude, self.longitude)
        self.status = coerce_enum(UnitStatus, self.status, "status")

    def to_dict(self):
        return {
            "id": self.id,
            "unit": self.unit,
            "status": self.status.value,
            "location": {"latitude": self.latitude, "longitude": self.longitude},
            "crew": [asdict(member) for member in self.crew],
            "equipment": list(self.equipment),
            "current_emergency": self.current_emergency.to_dict() if self.current_emergency else None,
            "reserved_for": self.reserved_for,
            "last_update": iso_or_none(self.last_update),
        }


# Emergency

@dataclass
class PatientContact:
    name: str
    phone_number: str


@dataclass
class TimelineEvent:
    timestamp: datetime
    event: str
    actor: str
    details: str = ""

    def to_dict(self):
        return {
            "timestamp": iso_or_none(self.timestamp),
            "event": self.event,
            "actor": self.actor,
            "details": self.details,
        }


@dataclass
class BackupHospital:
    hospital_id: str
    name: str
    distance: float
    reason: str = ""


@dataclass
class HospitalAssignment:
    hospital_id: str
    name: str
    address: str
    phone: str
    distance: float
    eta: int
    confirmed_at: datetime
    reason: str
    backup_hospitals: List[BackupHospital] = field(default_factory=list)

    def to_dict(self):
        data = asdict(self)
        data["confirmed_at"] = iso_or_none(self.confirmed_at)
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["confirmed_at"] = parse_datetime(data.get("confirmed_at"))
        data["backup_hospitals"] = [BackupHospital(**b) for b in data.get("backup_hospitals", [])]
        return cls(**data)


@dataclass
class AmbulanceAssignment:
    unit_id: str
    unit: str
    eta_minutes: int
    distance: float
    dispatch_phone: str
    dispatch_time: datetime
    crew: List[CrewMember] = field(default_factory=list)
    equipment: List[str] = field(default_factory=list)
    status: str = UnitStatus.DISPATCHED.value
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_update: Optional[datetime] = None

    def to_dict(self):
        data = asdict(self)
        data["dispatch_time"] = iso_or_none(self.dispatch_time)
        data["last_update"] = iso_or_none(self.last_update)
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["dispatch_time"] = parse_datetime(data.get("dispatch_time"))
        data["last_update"] = parse_datetime(data.get("last_update"))
        data["crew"] = [CrewMember(**member) for member in data.get("crew", [])]
        return cls(**data)


@dataclass(frozen=True)
class ReservationToken:
    token_id: str
    hospital_id: str
    emergency_id: Optional[str] = None
    beds: int = 1
    icu_beds: int = 0
    created_at: Optional[datetime] = None

    def to_dict(self):
        data = asdict(self)
        data["created_at"] = iso_or_none(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["created_at"] = parse_datetime(data.get("created_at"))
        return cls(**data)


@dataclass
class Emergency:
    id: str
    patient: PatientContact
    latitude: float
    longitude: float
    emergency_type: EmergencyType
    severity: Severity
    description: str = ""
    address: str = ""
    session_id: Optional[str] = None
    status: EmergencyStatus = EmergencyStatus.SUBMITTED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assigned_hospital: Optional[HospitalAssignment] = None
    ambulance: Optional[AmbulanceAssignment] = None
    reservation: Optional[ReservationToken] = None
    dispatch_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    transport_time: Optional[datetime] = None
    hospital_arrival_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    timeline: List[TimelineEvent] = field(default_factory=list)

    def __post_init__(self):
        self.id = _require_text(self.id, "id")
        validate_coordinates(self.latitude, self.longitude)
        self.emergency_type = coerce_enum(EmergencyType, self.emergency_type, "emergency_type")
        self.severity = coerce_enum(Severity, self.severity, "severity")
        self.status = coerce_enum(EmergencyStatus, self.status, "status")

    @property
    def priority(self):
        return PRIORITY_BY_SEVERITY[self.severity]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def response_time_minutes(self):
        if self.arrival_time and self.created_at:
            return round((self.arrival_time - self.created_at).total_seconds() / 60)
        return None

    def to_dict(self):
        return {
            "emergencyId": self.id,
            "status": self.status.value,
            "priority": self.priority,
            "sessionId": self.session_id,
            "patient": self.patient.name,
            "location": {
                "latitude": self.latitude,
                "longitude": self.longitude,
                "address": self.address,
            },
            "emergencyType": self.emergency_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "assignedHospital": self.assigned_hospital.to_dict() if self.assigned_hospital else None,
            "ambulance": self.ambulance.to_dict() if self.ambulance else None,
            "milestones": {
                "dispatchTime": iso_or_none(self.dispatch_time),
                "arrivalTime": iso_or_none(self.arrival_time),
                "transportTime": iso_or_none(self.transport_time),
                "hospitalArrivalTime": iso_or_none(self.hospital_arrival_time),
                "completionTime": iso_or_none(self.completion_time),
            },
            "responseTimeMinutes": self.response_time_minutes(),
            "timeline": [event.to_dict() for event in self.timeline],
            "createdAt": iso_or_none(self.created_at),
            "updatedAt": iso_or_none(self.updated_at),
        }


# Submission payload

@dataclass
class EmergencyRequest:
    patient_name: str
    phone_number: str
    latitude: float
    longitude: float
    emergency_type: EmergencyType
    severity: Severity
    description: str
    address: str = ""
    session_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload):
        """
        Validate a submission body shaped like the web form:
        {patientName, phoneNumber, location: {latitude, longitude, address},
        emergencyType, severity, description}.
        """
        payload = payload or {}
        errors = []

        patient_name = str(payload.get("patientName") or "").strip()
        if not 2 <= len(patient_name) <= 100:
            errors.append({"field": "patientName", "message": "Patient name must be 2-100 characters"})

        phone_number = str(payload.get("phoneNumber") or "").strip()
        if not _PHONE_PATTERN.match(phone_number):
            errors.append({"field": "phoneNumber", "message": "Invalid phone number"})

        location = payload.get("location") or {}
        latitude = _to_float_or_none(location.get("latitude"))
        longitude = _to_float_or_none(location.get("longitude"))
        if latitude is None or not -90 <= latitude <= 90:
            errors.append({"field": "location.latitude", "message": "Invalid latitude"})
        if longitude is None or not -180 <= longitude <= 180:
            errors.append({"field": "location.longitude", "message": "Invalid longitude"})

        raw_type = payload.get("emergencyType")
        if raw_type not in {member.value for member in EmergencyType}:
            errors.append({"field": "emergencyType", "message": "Invalid emergency type"})

        raw_severity = payload.get("severity")
        if raw_severity not in {member.value for member in Severity}:
            errors.append({"field": "severity", "message": "Invalid severity level"})

        description = str(payload.get("description") or "").strip()
        if not 10 <= len(description) <= 1000:
            errors.append({"field": "description", "message": "Description must be 10-1000 characters"})

        if errors:
            raise ValidationError("Validation failed", errors=errors)

        return cls(
            patient_name=patient_name,
            phone_number=phone_number,
            latitude=latitude,
            longitude=longitude,
            emergency_type=EmergencyType(raw_type),
            severity=Severity(raw_severity),
            description=description,
            address=str(location.get("address") or "").strip(),
            session_id=payload.get("sessionId"),
        )


def _to_float_or_none(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
