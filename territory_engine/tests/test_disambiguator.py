"""Address-level disambiguation against canned ESIID premises."""

import time

import pytest

from territory_engine.boundary import BoundaryZipRegistry
from territory_engine.disambiguator import AddressDisambiguator
from territory_engine.errors import AddressLookupUnavailable, SourceQueryError
from territory_engine.health import DataSourceHealth
from territory_engine.models import CircuitState, MeterMatch, ServiceType, ZipTerritoryMapping

from .fakes import FakeEsiidClient


@pytest.fixture
def boundary(config, territories):
    return BoundaryZipRegistry(config.boundary_file, territories)


@pytest.fixture
def build(config, territories, boundary):
    def _build(client, health=None):
        return AddressDisambiguator(client, territories, boundary, config, health=health,
                                    sleep=lambda s: None)
    return _build


def _oncor(meter_id="10443720001111111", address="1236 MAIN ST", zip_code="75001", **kw):
    return MeterMatch(meter_id, address, zip_code, tdsp_name="ONCOR ELECTRIC DELIVERY COMPANY", **kw)


class TestPremiseMatch:
    def test_exact_premise(self, build, tnmp_premise):
        res = build(FakeEsiidClient([tnmp_premise])).disambiguate("1234 Main St", "75001")
        assert res.territory_id == "TNMP"
        assert res.meter_id == "10400511234567001"
        assert res.confidence == 95
        assert res.source_id == "esiid_lookup"
        assert not res.unconfirmed

    def test_best_address_wins(self, build, tnmp_premise):
        far = _oncor(address="9800 ELM RIDGE DR")
        res = build(FakeEsiidClient([far, tnmp_premise])).disambiguate("1234 Main Street", "75001")
        assert res.territory_id == "TNMP"
        assert res.confidence == 95
        assert res.alternatives[0]["territory_id"] == "ONCOR"

    def test_near_tie_across_territories_lowers_confidence(self, build, tnmp_premise):
        neighbour = _oncor(address="1234 MAIN ST")
        res = build(FakeEsiidClient([tnmp_premise, neighbour])).disambiguate("1234 Main St", "75001")
        assert res.confidence == 70

    def test_reported_match_confidence_caps(self, build):
        premise = _oncor(address="1234 MAIN ST", match_confidence=85)
        res = build(FakeEsiidClient([premise])).disambiguate("1234 Main St", "75001")
        assert res.territory_id == "ONCOR"
        assert res.confidence == 85

    def test_premises_outside_zip_ignored(self, build):
        other = _oncor(address="1234 MAIN ST", zip_code="75019")
        res = build(FakeEsiidClient([other])).disambiguate("1234 Main St", "75001")
        assert res.unconfirmed

    def test_unknown_tdsp_ignored(self, build):
        premise = MeterMatch("99999999999", "1234 MAIN ST", "75001", tdsp_name="Entergy Arkansas")
        res = build(FakeEsiidClient([premise])).disambiguate("1234 Main St", "75001")
        assert res.unconfirmed


class TestFallback:
    def test_zip_level_answer_capped(self, build):
        zip_level = ZipTerritoryMapping("75001", "ONCOR", "Oncor", ServiceType.DEREGULATED,
                                        95, "ercot_mis", time.time())
        res = build(FakeEsiidClient()).disambiguate("1 Nowhere Rd", "75001",
                                                   zip_fallback=lambda: zip_level)
        assert res.territory_id == "ONCOR"
        assert res.confidence == 50
        assert res.unconfirmed
        assert res.meter_id is None

    def test_boundary_primary_when_nothing_else(self, build):
        res = build(FakeEsiidClient()).disambiguate("1 Nowhere Rd", "76020", zip_fallback=lambda: None)
        assert res.territory_id == "ONCOR"
        assert res.confidence == 50
        assert res.source_id == "boundary_seed"
        assert [a["territory_id"] for a in res.alternatives] == ["AEP_NORTH", "TNMP"]

    def test_no_answer_at_all(self, build):
        res = build(FakeEsiidClient()).disambiguate("1 Nowhere Rd", "76543")
        assert res.territory_id is None
        assert res.confidence == 0

    def test_fallback_only_called_without_premise(self, build, tnmp_premise):
        calls = []
        build(FakeEsiidClient([tnmp_premise])).disambiguate(
            "1234 Main St", "75001", zip_fallback=lambda: calls.append(1))
        assert calls == []


class TestLookupFailure:
    def test_one_retry_then_unavailable(self, build):
        client = FakeEsiidClient(error=SourceQueryError("esiid_lookup", "HTTP 502"))
        with pytest.raises(AddressLookupUnavailable):
            build(client).disambiguate("1234 Main St", "75001")
        assert len(client.calls) == 2

    def test_failures_reach_health_record(self, build):
        client = FakeEsiidClient(error=SourceQueryError("esiid_lookup", "HTTP 502"))
        health = DataSourceHealth(client.definition)
        d = build(client, health=health)
        for _ in range(10):
            with pytest.raises(AddressLookupUnavailable):
                d.disambiguate("1234 Main St", "75001")
        assert health.circuit_state == CircuitState.OPEN

        calls = len(client.calls)
        with pytest.raises(AddressLookupUnavailable, match="circuit open"):
            d.disambiguate("1234 Main St", "75001")
        assert len(client.calls) == calls

    def test_success_recorded(self, build, tnmp_premise):
        client = FakeEsiidClient([tnmp_premise])
        health = DataSourceHealth(client.definition)
        build(client, health=health).disambiguate("1234 Main St", "75001")
        assert health.last_success is not None
        assert health.consecutive_failures == 0

    def test_unexpected_client_error_is_unavailable(self, build):
        client = FakeEsiidClient(error=ValueError("invalid literal for int(): 'high'"))
        health = DataSourceHealth(client.definition)
        with pytest.raises(AddressLookupUnavailable):
            build(client, health=health).disambiguate("1234 Main St", "75001")
        assert len(client.calls) == 1
        assert health.consecutive_failures == 1

    def test_half_open_trial_released_on_unexpected_error(self, build):
        now = [1000.0]
        client = FakeEsiidClient(error=ValueError("boom"))
        health = DataSourceHealth(client.definition, clock=lambda: now[0])
        for _ in range(10):
            health.record_failure("HTTP 502")
        assert health.circuit_state == CircuitState.OPEN

        now[0] += 301
        with pytest.raises(AddressLookupUnavailable):
            build(client, health=health).disambiguate("1234 Main St", "75001")
        assert len(client.calls) == 1
        assert health.circuit_state == CircuitState.OPEN

        now[0] += 301
        assert health.allow_request()
        assert health.circuit_state == CircuitState.HALF_OPEN
