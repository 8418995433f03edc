import pytest

from conduz.models.driver import Driver, DriverStatus
from conduz.models.earning_record import Platform
from conduz.services.identity_resolver import (
    IdentityLookup, normalize_card_key, normalize_email, normalize_plate
)
from conduz.utils.errors import UnmappedReferenceError


def _driver(**keys):
    return Driver(full_name="Teste", **keys)


def test_normalizers():
    assert normalize_card_key("  ABC123 ") == "abc123"
    assert normalize_plate("aa-00 bb") == "AA00BB"
    assert normalize_email(" Ana@Example.COM ") == "ana@example.com"


def test_resolves_each_platform_key():
    ana = _driver(uber_driver_id="u-1", bolt_email="ana@example.com",
                  myprio_card="700100", viaverde_tag="VV-1", vehicle_plate="AA-00-BB")
    lookup = IdentityLookup.build([ana])

    assert lookup.resolve(Platform.UBER, "u-1") == ana.id
    assert lookup.resolve(Platform.BOLT, "ANA@example.com ") == ana.id
    assert lookup.resolve(Platform.MYPRIO, " 700100") == ana.id
    assert lookup.resolve(Platform.VIAVERDE, "vv-1") == ana.id


def test_api_id_is_verbatim():
    lookup = IdentityLookup.build([_driver(uber_driver_id="U-1")])
    assert lookup.resolve(Platform.UBER, "u-1") is None


def test_plate_fallback_for_fuel_and_tolls():
    ana = _driver(vehicle_plate="AA-00-BB")
    lookup = IdentityLookup.build([ana])

    assert lookup.resolve(Platform.MYPRIO, "999999", "aa00bb") == ana.id
    assert lookup.resolve(Platform.VIAVERDE, "unknown", "AA 00 BB") == ana.id
    # uber y bolt no tienen respaldo por matrícula
    assert lookup.resolve(Platform.UBER, "unknown", "AA-00-BB") is None


def test_unknown_card_is_unmapped_not_defaulted():
    lookup = IdentityLookup.build([_driver(myprio_card="700100")])

    assert lookup.resolve(Platform.MYPRIO, "999999") is None
    with pytest.raises(UnmappedReferenceError) as exc:
        lookup.require(Platform.MYPRIO, "999999", week_id="2024-W05")
    assert exc.value.reference_key == "999999"
    assert exc.value.to_dict()["platform"] == "myprio"


def test_duplicate_key_resolves_to_nobody():
    first = _driver(myprio_card="700100")
    second = _driver(myprio_card="700100 ")
    lookup = IdentityLookup.build([first, second])

    assert lookup.resolve(Platform.MYPRIO, "700100") is None
    assert ("card", "700100") in lookup.ambiguous


def test_inactive_drivers_are_ignored():
    inactive = _driver(uber_driver_id="u-9", status=DriverStatus.INACTIVE)
    lookup = IdentityLookup.build([inactive])
    assert lookup.resolve(Platform.UBER, "u-9") is None
    assert len(lookup) == 0
