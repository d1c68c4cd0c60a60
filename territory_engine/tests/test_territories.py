"""Territory registry, static table, ZIP/address normalisation."""

import json

import pytest

from territory_engine.errors import InvalidAddress, InvalidZipFormat
from territory_engine.models import ServiceType
from territory_engine.normalize import normalize_address, validate_address, validate_zip
from territory_engine.static_table import StaticMappingTable


class TestTerritoryRegistry:
    def test_loaded(self, territories):
        assert "ONCOR" in territories
        assert territories.get("DEEP_EAST_TEXAS_ECC").service_type == ServiceType.COOPERATIVE
        assert territories.get("AUSTIN_ENERGY").service_type == ServiceType.MUNICIPAL

    @pytest.mark.parametrize("duns,expected", [
        ("1039940674000", "ONCOR"),
        ("957877905", "CENTERPOINT"),
        ("007929441", "TNMP"),
        ("7929441", "TNMP"),
        ("007-923-311", "AEP_NORTH"),
    ])
    def test_by_duns(self, territories, duns, expected):
        assert territories.by_duns(duns).territory_id == expected

    def test_by_meter_id_prefix(self, territories):
        assert territories.by_meter_id("10443720001234567").territory_id == "ONCOR"
        assert territories.by_meter_id("1008901000123456").territory_id == "CENTERPOINT"
        assert territories.by_meter_id("99999999") is None

    @pytest.mark.parametrize("name,expected", [
        ("ONCOR ELECTRIC DELIVERY COMPANY LLC", "ONCOR"),
        ("TEXAS-NEW MEXICO POWER COMPANY", "TNMP"),
        ("CenterPoint Energy Houston Electric, LLC", "CENTERPOINT"),
        ("AEP Texas Central", "AEP_CENTRAL"),
    ])
    def test_by_name(self, territories, name, expected):
        assert territories.by_name(name).territory_id == expected

    def test_unknown_name(self, territories):
        assert territories.by_name("Entergy Arkansas") is None

    def test_identify_prefers_explicit_id(self, territories):
        t = territories.identify(territory_id="TNMP", duns="1039940674000")
        assert t.territory_id == "TNMP"
        t = territories.identify(territory_id="NOPE", duns="1039940674000")
        assert t.territory_id == "ONCOR"


class TestStaticTable:
    def test_lookup(self, config, territories):
        table = StaticMappingTable(config.static_file, territories)
        m = table.lookup("75701")
        assert m.territory_id == "ONCOR"
        assert m.confidence == 100
        assert m.city_display_name == "Tyler, TX"
        assert m.tier == "static"
        assert table.lookup("76543") is None

    def test_unknown_territories_skipped(self, tmp_path, territories):
        path = tmp_path / "static.json"
        path.write_text(json.dumps({"mappings": {
            "75201": {"territory_id": "ONCOR"},
            "75202": {"territory_id": "NOT_A_UTILITY"},
        }}))
        table = StaticMappingTable(path, territories)
        assert "75201" in table
        assert "75202" not in table
        assert len(table) == 1

    def test_missing_file(self, tmp_path, territories):
        assert len(StaticMappingTable(tmp_path / "nope.json", territories)) == 0


class TestValidation:
    @pytest.mark.parametrize("bad", ["7520", "752011", "abcde", "", None, "75 01", "10001", "99501"])
    def test_invalid_zip(self, config, bad):
        with pytest.raises(InvalidZipFormat):
            validate_zip(bad, config.valid_zip_ranges)

    def test_valid_zip_trimmed(self, config):
        assert validate_zip(" 75701 ", config.valid_zip_ranges) == "75701"
        assert validate_zip("73301", config.valid_zip_ranges) == "73301"

    def test_no_ranges_means_any_five_digits(self):
        assert validate_zip("10001", []) == "10001"

    def test_address(self):
        assert validate_address("  1234 Main St ") == "1234 Main St"
        assert validate_address("   ") is None
        assert validate_address(None) is None
        with pytest.raises(InvalidAddress):
            validate_address("12345")
        with pytest.raises(InvalidAddress):
            validate_address("1 " + "a" * 300)

    @pytest.mark.parametrize("raw,expected", [
        ("1234 Main Street", "1234 main st"),
        ("  1234   MAIN   ST.  ", "1234 main st"),
        ("500 North Central Expressway, Suite 100", "500 n central expressway ste 100"),
        ("12 Oak Avenue #4", "12 oak ave 4"),
    ])
    def test_normalize_address(self, raw, expected):
        assert normalize_address(raw) == expected
