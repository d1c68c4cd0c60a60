"""In-memory stand-ins for live sources and the ESIID client."""

import threading
import time

from territory_engine import esiid
from territory_engine.errors import SourceQueryError
from territory_engine.models import SourceDefinition, SourceResult, SourceType
from territory_engine.sources import Source


class FakeSource(Source):
    """In-memory live source.

    answer: territory id to return, None for "no data", or an Exception
    instance to raise on every call.
    """

    def __init__(self, source_id, answer="ONCOR", priority=80, reliability=90, delay=0.0,
                 city_slug="", city_display_name=""):
        super().__init__(SourceDefinition(
            id=source_id, name=source_id, type=SourceType.EXTERNAL_API,
            priority=priority, reliability=reliability,
        ))
        self.answer = answer
        self.delay = delay
        self.city_slug = city_slug
        self.city_display_name = city_display_name
        self.calls = 0
        self._lock = threading.Lock()

    def query(self, zip_code, address=None):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.answer, Exception):
            raise self.answer
        if self.answer is None:
            return None
        return SourceResult(
            source_id=self.source_id,
            territory_id=self.answer,
            territory_name=self.answer.title(),
            city_slug=self.city_slug,
            city_display_name=self.city_display_name,
        )


class FakeEsiidClient:
    """Stands in for EsiidClient; returns canned premises."""

    def __init__(self, matches=None, error=None):
        self.definition = esiid.default_definition("http://esiid.test")
        self.matches = matches or []
        self.error = error
        self.calls = []

    @property
    def source_id(self):
        return self.definition.id

    def search(self, address, zip_code):
        self.calls.append((address, zip_code))
        if self.error:
            raise self.error
        return list(self.matches)

    def close(self):
        pass


def failing(source_id="flaky"):
    return SourceQueryError(source_id, "HTTP 503")
