from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from tripledger.config import Settings
from tripledger.database import build_session_factory
from tripledger.importer import TripImporter
from tripledger.partitions import load_reference_data


REFERENCE_DATA = {
    "opcos": [
        {"code": "SAHRAWI", "name": "Sahrawi Transport"},
        {"code": "METRIX", "name": "Metrix Mobility"},
        {"code": "CLOSED", "name": "Closed Branch", "is_active": False},
    ],
    "brokers": [
        {"code": "MODIVCARE", "name": "ModivCare"},
        {"code": "MTM", "name": "Medical Transportation Management"},
        {"code": "A2C", "name": "Access2Care"},
        {"code": "MEDIROUTE", "name": "MediRoute"},
    ],
    "broker_accounts": [
        {"code": "MODIVCARE_SAHRAWI", "broker": "MODIVCARE", "opco": "SAHRAWI"},
        {"code": "MODIVCARE_METRIX", "broker": "MODIVCARE", "opco": "METRIX"},
        {"code": "MTM_MAIN", "broker": "MTM"},
        {"code": "A2C_MAIN", "broker": "A2C"},
        {"code": "MEDIROUTE_MAIN", "broker": "MEDIROUTE"},
        {"code": "MTM_LEGACY", "broker": "MTM", "is_active": False},
    ],
}

MEDIROUTE_HEADER = (
    "Trip ID,Date,Driver,Vehicle,Space,Req Pickup,Pickup Arrive,Dropoff Arrive,"
    "Routed Distance,Status,Pickup Lat,Pickup Lon,Passenger Name,Phone"
)


def mediroute_rows() -> list[str]:
    rows = []
    for index in range(1, 11):
        trip_id = f"MR-{1000 + index}"
        driver = f"Driver {index}"
        if index == 4:
            driver = ""
        if index == 7:
            # Same trip reported twice in one export.
            trip_id = "MR-1003"
        rows.append(
            f"{trip_id},03/02/2026,{driver},VAN-{index:02d},{'WC' if index % 3 == 0 else 'AMB'},"
            f"08:{index:02d},08:{index + 10:02d},09:{index:02d},{index + 0.5},Completed,"
            f"32.22,-110.97,Patient Number {index},520-555-01{index:02d}"
        )
    return rows


@pytest.fixture()
def mediroute_file() -> bytes:
    return ("\n".join([MEDIROUTE_HEADER, *mediroute_rows()]) + "\n").encode("utf-8")


@pytest.fixture()
def mtm_file() -> bytes:
    lines = [
        "Confirmation Number,DOS,LOS,Appt Time,Scheduled Pickup,Plan,Pickup City,Dropoff City,"
        "Estimated Miles,Trip Status,Member Name,Member DOB,Pickup Address",
        "C-5001,03/03/2026,Ambulatory,9:30 AM,8:45 AM,AZ Medicaid,Tucson,Tucson,4.2,Scheduled,"
        "Jane Roe,01/02/1950,12 Elm St",
        "C-5002,03/03/2026,Wheelchair,10:00 AM,9:10 AM,AZ Medicaid,Tucson,Marana,11.8,Scheduled,"
        "John Roe,05/06/1948,99 Oak Ave",
        "C-5003,03/03/2026,Stretcher,1:15 PM,12:20 PM,Mercy Care,Oro Valley,Tucson,9.0,Cancelled,"
        "Ann Poe,07/08/1961,4 Pine Rd",
        ",,,,,,,,,,,,",
        "C-5004,03/04/2026,WC,2:00 PM,1:05 PM,Mercy Care,Tucson,Tucson,3.1,Scheduled,"
        "Sam Doe,09/10/1939,77 Cedar Ct",
    ]
    return ("\r\n".join(lines) + "\r\n").encode("utf-8")


@pytest.fixture()
def modivcare_text() -> str:
    return "\n".join(
        [
            "ModivCare Transportation Manifest",
            "Provider: Sahrawi Transport",
            "Page 1 of 2",
            "Trip ID | Date | LOS | Appt Time | Pickup Time | Pickup City | Dropoff City | Est Miles | Member Name | Status",
            "MC-1 | 2026-03-02 | WC | 09:30 | 08:45 AM | Tucson | Tucson | 4.2 | JANE DOE | Scheduled",
            "MC-2 | 2026-03-02 | AMB | 10:15 | 09:30 AM | Marana | Tucson | 12.0 | JOHN DOE | Scheduled",
            "Page 2 of 2",
            "Trip ID | Date | LOS | Appt Time | Pickup Time | Pickup City | Dropoff City | Est Miles | Member Name | Status",
            "MC-3 | 2026-03-02 | STR | 13:00 | 12:10 PM | Tucson | Oro Valley | 8.5 | ANN POE | Cancelled",
            "",
        ]
    )


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="tripledger",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        log_level="INFO",
        report_dir=str(tmp_path / "outputs" / "reports"),
        allowlist_version="2026.3",
        preview_sample_size=3,
        max_write_retries=1,
        retry_backoff_seconds=0,
        audit_hour_utc=3,
        audit_minute_utc=0,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    factory = build_session_factory(test_settings.database_url)
    with factory() as db:
        load_reference_data(db, REFERENCE_DATA)
    return factory


@pytest.fixture()
def importer(test_settings: Settings, session_factory: sessionmaker[Session]) -> Generator[TripImporter, None, None]:
    yield TripImporter(test_settings, session_factory)
