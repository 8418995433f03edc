from datetime import datetime

from conduz.models.driver import Driver
from conduz.models.earning_record import Platform, RecordKind
from conduz.services.identity_resolver import IdentityLookup
from conduz.services.platform_normalizer import RawRecord, normalize_batch

WEEK = "2024-W05"


def _lookup():
    return IdentityLookup.build([
        Driver(full_name="Ana", uber_driver_id="uber-ana", myprio_card="700100",
               viaverde_tag="vv-ana", vehicle_plate="AA-00-BB"),
        Driver(full_name="Bruno", bolt_email="bruno@example.com"),
    ])


def _rows(platform, *rows):
    return [RawRecord(platform=platform, fields=row) for row in rows]


def test_uber_row_produces_trip_revenue_and_tip():
    result = normalize_batch(Platform.UBER, WEEK, _rows(
        Platform.UBER,
        {"driver_uuid": "uber-ana", "trip_revenue": "950,00", "tips": "50", "trips": "40"},
    ), _lookup())

    kinds = {record.kind: record for record in result.records}
    assert kinds[RecordKind.TRIP_REVENUE].amount == 95000
    assert kinds[RecordKind.TRIP_REVENUE].trip_count == 40
    assert kinds[RecordKind.TIP].amount == 5000
    assert result.skipped_count == 0
    assert result.unmapped_count == 0


def test_european_amount_formats():
    result = normalize_batch(Platform.BOLT, WEEK, _rows(
        Platform.BOLT,
        {"driver_email": "Bruno@Example.com", "earnings": "1.234,56 €"},
        {"driver_email": "bruno@example.com", "earnings": "1,234.56"},
    ), _lookup())

    assert [record.amount for record in result.records] == [123456, 123456]


def test_unmapped_fuel_card_is_reported():
    result = normalize_batch(Platform.MYPRIO, WEEK, _rows(
        Platform.MYPRIO,
        {"card": "999999", "card_description": ".", "total": "45,30"},
        {"card": "700100", "total": "20"},
    ), _lookup())

    assert result.unmapped_count == 1
    assert result.unmapped[0].reference_key == "999999"
    assert result.unmapped[0].reference_label is None
    unmapped = [r for r in result.records if r.driver_id is None]
    assert len(unmapped) == 1
    assert unmapped[0].amount == 4530
    assert unmapped[0].kind == RecordKind.FUEL_CHARGE


def test_toll_plate_fallback():
    result = normalize_batch(Platform.VIAVERDE, WEEK, _rows(
        Platform.VIAVERDE,
        {"tag_id": "unknown-tag", "plate": "aa 00 bb", "value": "3,15"},
    ), _lookup())

    assert result.unmapped_count == 0
    assert result.records[0].driver_id is not None
    assert result.records[0].kind == RecordKind.TOLL
    assert result.records[0].amount == 315


def test_bad_rows_are_skipped_never_zeroed():
    result = normalize_batch(Platform.MYPRIO, WEEK, _rows(
        Platform.MYPRIO,
        {"card": "700100", "total": "abc"},
        {"card": "700100"},
        {"total": "10"},
        {"unparseable": True, "raw": "garbage"},
        {"card": "700100", "total": "10", "timestamp": datetime(2024, 2, 5, 8, 0)},
    ), _lookup())

    assert result.records == []
    assert [row.reason for row in result.skipped] == [
        "invalid_amount", "missing_amount", "missing_reference", "unparseable", "outside_week",
    ]
    assert result.row_count == 5


def test_row_from_another_platform_is_skipped():
    result = normalize_batch(Platform.UBER, WEEK, _rows(
        Platform.BOLT, {"driver_email": "bruno@example.com", "earnings": "10"},
    ), _lookup())

    assert result.records == []
    assert result.skipped[0].reason == "platform_mismatch"


def test_explicit_kind_rows():
    result = normalize_batch(Platform.UBER, WEEK, _rows(
        Platform.UBER,
        {"driver_uuid": "uber-ana", "kind": "tip", "amount": "2,50", "trips": "3"},
        {"driver_uuid": "uber-ana", "kind": "bonus", "amount": "5"},
    ), _lookup())

    assert len(result.records) == 1
    assert result.records[0].kind == RecordKind.TIP
    assert result.records[0].trip_count == 0
    assert result.skipped[0].reason == "invalid_kind"
