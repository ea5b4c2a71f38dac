import os
import sqlite3
from pathlib import Path

from models import Address, AmbulanceUnit, Capacity, CrewMember, EmergencyServices, Equipment, Hospital, Rating


DEFAULT_DB_PATH = "carematch_emergency.db" if os.name == "nt" else "/tmp/carematch_emergency.db"
DB_PATH = os.environ.get("DB_PATH", DEFAULT_DB_PATH)


def get_connection(db_path=None):
    db_file = Path(db_path or DB_PATH)
    db_file.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_file), timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def create_tables(conn):
    cursor = conn.cursor()

    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS Hospital (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            street TEXT,
            city TEXT,
            state TEXT,
            zip_code TEXT,
            country TEXT,
            latitude REAL NOT NULL,
            longitude REAL NOT NULL,
            phone TEXT,
            emergency_phone TEXT,
            total_beds INTEGER NOT NULL,
            available_beds INTEGER NOT NULL,
            icu_beds INTEGER NOT NULL DEFAULT 0,
            available_icu_beds INTEGER NOT NULL DEFAULT 0,
            emergency_rooms INTEGER NOT NULL DEFAULT 0,
            available_emergency_rooms INTEGER NOT NULL DEFAULT 0,
            trauma_level TEXT NOT NULL DEFAULT 'None',
            stroke_center INTEGER NOT NULL DEFAULT 0,
            heart_attack_center INTEGER NOT NULL DEFAULT 0,
            burn_center INTEGER NOT NULL DEFAULT 0,
            poison_control INTEGER NOT NULL DEFAULT 0,
            psychiatric INTEGER NOT NULL DEFAULT 0,
            pediatric_emergency INTEGER NOT NULL DEFAULT 0,
            ct_scan INTEGER NOT NULL DEFAULT 0,
            mri_machine INTEGER NOT NULL DEFAULT 0,
            ventilators INTEGER NOT NULL DEFAULT 0,
            defibrillators INTEGER NOT NULL DEFAULT 0,
            blood_bank INTEGER NOT NULL DEFAULT 0,
            helipad INTEGER NOT NULL DEFAULT 0,
            specialties TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'Active',
            rating_overall REAL NOT NULL DEFAULT 3,
            rating_emergency REAL NOT NULL DEFAULT 3,
            review_count INTEGER NOT NULL DEFAULT 0,
            average_wait_time INTEGER NOT NULL DEFAULT 30,
            capacity_updated_at TEXT,
            CHECK (available_beds BETWEEN 0 AND total_beds),
            CHECK (available_icu_beds BETWEEN 0 AND icu_beds),
            CHECK (available_emergency_rooms BETWEEN 0 AND emergency_rooms)
        )
        """
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_hospital_location ON Hospital (latitude, longitude)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_hospital_status ON Hospital (status)")

    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS Emergency (
            id TEXT PRIMARY KEY,
            session_id TEXT,
            patient_name TEXT NOT NULL,
            phone_number TEXT NOT NULL,
            latitude REAL NOT NULL,
            longitude REAL NOT NULL,
            address TEXT,
            emergency_type TEXT NOT NULL,
            description TEXT,
            severity TEXT NOT NULL,
            status TEXT NOT NULL,
            priority TEXT NOT NULL,
            assigned_hospital TEXT,
            ambulance TEXT,
            reservation TEXT,
            dispatch_time TEXT,
            arrival_time TEXT,
            transport_time TEXT,
            hospital_arrival_time TEXT,
            completion_time TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_emergency_status ON Emergency (status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_emergency_created ON Emergency (created_at)")

    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS TimelineEvent (
            emergency_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            timestamp TEXT NOT NULL,
            event TEXT NOT NULL,
            actor TEXT NOT NULL,
            details TEXT,
            PRIMARY KEY (emergency_id, seq),
            FOREIGN KEY (emergency_id) REFERENCES Emergency (id)
        )
        """
    )

    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS Reservation (
            token_id TEXT PRIMARY KEY,
            hospital_id TEXT NOT NULL,
            emergency_id TEXT,
            beds INTEGER NOT NULL,
            icu_beds INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            released_at TEXT,
            FOREIGN KEY (hospital_id) REFERENCES Hospital (id)
        )
        """
    )

    conn.commit()


def default_hospitals():
    """Sample hospitals around midtown Manhattan used to seed an empty database."""
    return [
        Hospital(
            id="HSP-001",
            name="Manhattan General Hospital",
            latitude=40.7614,
            longitude=-73.9776,
            address=Address("550 1st Avenue", "New York", "NY", "10016"),
            phone="+1-212-555-0100",
            emergency_phone="+1-212-555-0911",
            capacity=Capacity(500, 45, 50, 8, 20, 6),
            services=EmergencyServices("Level I", stroke_center=True, heart_attack_center=True, burn_center=True),
            equipment=Equipment(ct_scan=True, mri_machine=True, ventilators=25, defibrillators=40, blood_bank=True, helipad=True),
            specialties=("Cardiology", "Neurology", "Trauma Center", "Emergency Medicine", "Surgery", "Intensive Care"),
            rating=Rating(4.5, 4.7, 1250),
            average_wait_time=25,
        ),
        Hospital(
            id="HSP-002",
            name="Brooklyn Medical Center",
            latitude=40.6892,
            longitude=-73.9442,
            address=Address("121 DeKalb Avenue", "Brooklyn", "NY", "11201"),
            phone="+1-718-555-0200",
            emergency_phone="+1-718-555-0911",
            capacity=Capacity(300, 28, 30, 4, 12, 3),
            services=EmergencyServices("Level II", heart_attack_center=True, poison_control=True, pediatric_emergency=True),
            equipment=Equipment(ct_scan=True, ventilators=15, defibrillators=25, blood_bank=True),
            specialties=("Cardiology", "Pediatrics", "Maternity", "Emergency Medicine"),
            rating=Rating(4.2, 4.3, 890),
            average_wait_time=35,
        ),
        Hospital(
            id="HSP-003",
            name="Queens Stroke & Neuro Institute",
            latitude=40.7282,
            longitude=-73.7949,
            address=Address("82-68 164th Street", "Queens", "NY", "11432"),
            phone="+1-718-555-0300",
            emergency_phone="+1-718-555-0912",
            capacity=Capacity(200, 15, 20, 2, 8, 2),
            services=EmergencyServices("None", stroke_center=True, psychiatric=True),
            equipment=Equipment(ct_scan=True, mri_machine=True, ventilators=8, defibrillators=12),
            specialties=("Neurology", "Stroke Center", "Mental Health", "Radiology"),
            rating=Rating(4.0, 4.1, 430),
            average_wait_time=30,
        ),
        Hospital(
            id="HSP-004",
            name="Bronx Community Hospital",
            latitude=40.8448,
            longitude=-73.8648,
            address=Address("1400 Pelham Parkway", "Bronx", "NY", "10461"),
            phone="+1-718-555-0400",
            emergency_phone="+1-718-555-0913",
            capacity=Capacity(150, 10, 10, 0, 6, 1),
            services=EmergencyServices("Level III", burn_center=True),
            equipment=Equipment(defibrillators=8, ventilators=4),
            specialties=("Burn Unit", "Emergency Medicine", "Surgery"),
            rating=Rating(3.6, 3.8, 210),
            average_wait_time=45,
        ),
    ]


def default_ambulance_units():
    return [
        AmbulanceUnit(
            id="AMB001",
            unit="Unit Alpha-1",
            latitude=40.7580,
            longitude=-73.9855,
            equipment=["AED", "Oxygen", "Stretcher", "IV Kit"],
            crew=[
                CrewMember("John Smith", "Paramedic", "EMT-P"),
                CrewMember("Sarah Johnson", "EMT", "EMT-B"),
            ],
        ),
        AmbulanceUnit(
            id="AMB002",
            unit="Unit Beta-2",
            latitude=40.7505,
            longitude=-73.9934,
            equipment=["AED", "Oxygen", "Stretcher", "IV Kit", "Cardiac Monitor"],
            crew=[
                CrewMember("Mike Wilson", "Paramedic", "EMT-P"),
                CrewMember("Lisa Brown", "Paramedic", "EMT-P"),
            ],
        ),
        AmbulanceUnit(
            id="AMB003",
            unit="Unit Gamma-3",
            latitude=40.6930,
            longitude=-73.9500,
            equipment=["AED", "Oxygen", "Stretcher", "Neonatal Kit"],
            crew=[
                CrewMember("Ana Lopez", "Paramedic", "EMT-P"),
                CrewMember("Tom Reed", "EMT", "EMT-B"),
            ],
        ),
    ]


def seed_hospitals(store):
    conn = get_connection(store.db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT COUNT(*) AS count FROM Hospital")
    hospital_count = cursor.fetchone()["count"]
    conn.close()

    if hospital_count > 0:
        return 0

    hospitals = default_hospitals()
    for hospital in hospitals:
        store.save_hospital(hospital)
    return len(hospitals)


def init_db(db_path=None):
    conn = get_connection(db_path)
    create_tables(conn)
    conn.close()
