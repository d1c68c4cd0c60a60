"""HTTP surface: status codes and bodies for each resolution outcome."""

import pytest
from fastapi.testclient import TestClient

import api

from .fakes import FakeEsiidClient, FakeSource


@pytest.fixture
def client(make_engine, tnmp_premise):
    api.engine = make_engine(
        [FakeSource("ercot_mis", answer="ONCOR", priority=95)],
        esiid_client=FakeEsiidClient([tnmp_premise]),
    )
    with TestClient(api.app) as c:
        yield c
    api.engine = None


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["engine_loaded"] is True

    def test_sources_health(self, client):
        resp = client.get("/sources/health")
        assert resp.status_code == 200
        ids = {s["id"] for s in resp.json()}
        assert {"ercot_mis", "esiid_lookup", "static_table"} <= ids


class TestResolve:
    def test_static(self, client):
        resp = client.get("/resolve", params={"zip": "75201"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["territory_id"] == "ONCOR"
        assert body["confidence"] == 100
        assert body["outcome"] == "territory_match"
        assert body["city_display_name"] == "Dallas, TX"

    def test_live(self, client):
        resp = client.get("/resolve", params={"zip": "76543"})
        assert resp.status_code == 200
        assert resp.json()["tier"] == "live"

    def test_boundary_requires_address(self, client):
        resp = client.get("/resolve", params={"zip": "75001"})
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "AddressRequired"
        assert body["candidates"] == ["ONCOR", "TNMP"]

    def test_boundary_with_address(self, client):
        resp = client.get("/resolve", params={"zip": "75001", "address": "1234 Main St"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["territory_id"] == "TNMP"
        assert body["tier"] == "address"
        assert body["meter_id"] == "10400511234567001"

    def test_precise_needs_address(self, client):
        resp = client.get("/resolve", params={"zip": "76543", "precise": "true"})
        assert resp.status_code == 409
        assert resp.json()["candidates"] == []

    @pytest.mark.parametrize("zip_code", ["7520", "abcde", "10001"])
    def test_invalid_zip(self, client, zip_code):
        resp = client.get("/resolve", params={"zip": zip_code})
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidZipFormat"

    def test_missing_zip(self, client):
        assert client.get("/resolve").status_code == 422
