"""Shared fixtures: config on a temp store, registries, engine factory."""

import pytest

from territory_engine.config import Config
from territory_engine.engine import TerritoryEngine
from territory_engine.models import MeterMatch, SourceType
from territory_engine.registry import DataSourceRegistry, load_definitions
from territory_engine.store import PersistentMappingStore
from territory_engine.territories import TerritoryRegistry

from .fakes import FakeEsiidClient


@pytest.fixture
def config(tmp_path):
    return Config(
        store_db=tmp_path / "store.db",
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        esiid_api_url="http://esiid.test",
    )


@pytest.fixture
def territories(config):
    return TerritoryRegistry(config.territories_file)


@pytest.fixture
def store(config):
    s = PersistentMappingStore(config.store_db)
    yield s
    s.close()


@pytest.fixture
def make_engine(config, territories):
    """Factory: make_engine(sources=[...], esiid_client=None, store=None, **config_overrides)."""
    engines = []

    def _make(sources=(), esiid_client=None, store=None, **overrides):
        for key, value in overrides.items():
            setattr(config, key, value)
        defs = [d for d in load_definitions(config.sources_file)
                if d.type != SourceType.EXTERNAL_API]
        registry = DataSourceRegistry(config, territories, definitions=defs, build_connectors=False)
        for s in sources:
            registry.register(s)
        engine = TerritoryEngine(
            config,
            registry=registry,
            store=store,
            esiid_client=esiid_client or FakeEsiidClient(),
        )
        engines.append(engine)
        return engine

    yield _make
    for e in engines:
        e.close()


@pytest.fixture
def tnmp_premise():
    return MeterMatch(
        meter_id="10400511234567001",
        address="1234 MAIN ST",
        zip_code="75001",
        tdsp_duns="007929441",
        tdsp_name="TEXAS-NEW MEXICO POWER COMPANY",
    )
