"""TerritoryEngine: multi-tier ZIP -> utility territory resolution."""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from . import esiid, store as store_mod
from .boundary import BoundaryZipRegistry
from .config import Config
from .disambiguator import AddressDisambiguator
from .errors import (
    AddressLookupUnavailable,
    AddressRequired,
    AmbiguousResult,
    PersistenceError,
    ResolutionTimeout,
    SourceQueryError,
    SourceUnavailable,
    TerritoryError,
    TerritoryNotFound,
)
from .esiid import EsiidClient
from .health import DataSourceHealth
from .models import LogOutcome, SourceResult, ValidationLogEntry, ZipTerritoryMapping
from .normalize import validate_address, validate_zip
from .registry import DataSourceRegistry
from .retry import call_with_retry
from .scorer import ConflictScorer
from .sources import Source
from .static_table import StaticMappingTable
from .store import PersistentMappingStore
from .territories import TerritoryRegistry

logger = logging.getLogger(__name__)


class _Attempt:
    """Outcome of querying one live source (retries included)."""

    __slots__ = ("source_id", "result", "error", "elapsed_ms")

    def __init__(self, source_id: str, result: Optional[SourceResult] = None,
                 error: str = "", elapsed_ms: int = 0):
        self.source_id = source_id
        self.result = result
        self.error = error
        self.elapsed_ms = elapsed_ms

    @property
    def failed(self) -> bool:
        return bool(self.error)


class TerritoryEngine:
    """
    ZIP / address to utility territory resolver.

    Tier order for a ZIP:
        1. Boundary check: multi-territory ZIPs need an address
        2. Static mapping table (confidence 100, no I/O)
        3. Persistent store, if the active row is fresh
        4. Live sources ranked by priority * health, queried in concurrent
           waves until the conflict scorer reaches min_confidence
    Live winners are written back to the store and every source outcome is
    appended to the validation log.
    """

    def __init__(self, config: Optional[Config] = None,
                 registry: Optional[DataSourceRegistry] = None,
                 store: Optional[PersistentMappingStore] = None,
                 esiid_client: Optional[EsiidClient] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or Config()
        self._clock = clock
        self._sleep = sleep

        logger.info("Initializing TerritoryEngine...")
        t0 = time.time()

        self.territories = TerritoryRegistry(self.config.territories_file)
        self.static = StaticMappingTable(self.config.static_file, self.territories)
        self.registry = registry or DataSourceRegistry(self.config, self.territories)

        # The store is a cache: without it resolution still works, results are just not durable
        if store is not None:
            self.store = store
        else:
            try:
                self.store = PersistentMappingStore(self.config.store_db)
            except PersistenceError as e:
                logger.warning(f"Persistent store unavailable, running without it: {e}")
                self.store = None

        self.boundary = BoundaryZipRegistry(
            self.config.boundary_file, self.territories, self.config.promotion,
            store=self.store, clock=clock,
        )
        self.scorer = ConflictScorer(self.registry)

        self.esiid = esiid_client or EsiidClient(
            self._esiid_definition(), cache_ttl=self.config.address_cache_ttl
        )
        self.disambiguator = AddressDisambiguator(
            self.esiid, self.territories, self.boundary, self.config,
            health=self.registry.track(self.esiid.definition), sleep=sleep,
        )

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="territory-source"
        )

        elapsed = time.time() - t0
        logger.info(
            f"TerritoryEngine ready in {elapsed:.2f}s: territories={len(self.territories)}, "
            f"static={len(self.static)}, boundary={len(self.boundary)}, "
            f"store={'on' if self.store else 'off'}"
        )

    def _esiid_definition(self):
        definition = self.registry.definition(esiid.SOURCE_ID)
        if definition is None:
            return esiid.default_definition(self.config.esiid_api_url, self.config.esiid_api_key)
        definition = replace(definition, base_url=self.config.esiid_api_url or definition.base_url)
        if self.config.esiid_api_key:
            definition = replace(definition, auth={
                "type": "api_key", "header": "X-API-Key", "value": self.config.esiid_api_key,
            })
        return definition

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve(self, zip_code: str, address: Optional[str] = None,
                timeout: Optional[float] = None,
                address_precision: bool = False) -> ZipTerritoryMapping:
        """
        Resolve a ZIP (and optionally a street address) to a territory.

        Raises a TerritoryError subclass; `err.mapping` holds the best-effort
        answer whenever one exists.
        """
        t0 = self._clock()
        deadline = t0 + (timeout if timeout is not None else self.config.total_timeout)

        zip_code = validate_zip(zip_code, self.config.valid_zip_ranges)
        address = validate_address(address, zip_code)

        if self.boundary.is_boundary(zip_code):
            if not address:
                candidates = self.boundary.candidates(zip_code)
                logger.info(f"Resolve {zip_code}: boundary ZIP, address required ({candidates})")
                raise AddressRequired(zip_code, candidates)
            return self._resolve_address(zip_code, address, deadline)

        if address_precision:
            if not address:
                raise AddressRequired(zip_code, [])
            return self._resolve_address(zip_code, address, deadline)

        mapping = self.static.lookup(zip_code)
        if mapping:
            logger.debug(f"Resolve {zip_code}: static -> {mapping.territory_id}")
            return mapping

        cached = self._read_store(zip_code)
        if cached and not self._is_stale(cached):
            cached.tier = "persistent"
            logger.debug(f"Resolve {zip_code}: store hit -> {cached.territory_id} ({cached.confidence})")
            return cached

        mapping = self._resolve_live(zip_code, cached, deadline)
        logger.info(
            f"Resolve {zip_code}: {mapping.territory_id} ({mapping.outcome}) "
            f"confidence={mapping.confidence} via {mapping.source_id} "
            f"in {int((self._clock() - t0) * 1000)}ms"
        )
        return mapping

    def resolve_many(self, zip_codes: Iterable[str], timeout: Optional[float] = None,
                     max_workers: int = 4) -> Dict[str, Union[ZipTerritoryMapping, TerritoryError]]:
        """Resolve several ZIPs concurrently. Each value is a mapping or the error raised."""
        zips = list(dict.fromkeys(zip_codes))
        results: Dict[str, Union[ZipTerritoryMapping, TerritoryError]] = {}

        def _one(z):
            try:
                return self.resolve(z, timeout=timeout)
            except TerritoryError as e:
                return e

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="territory-batch") as pool:
            for z, outcome in zip(zips, pool.map(_one, zips)):
                results[z] = outcome
        return results

    def source_health(self) -> List[dict]:
        """Read-only snapshot of every source's health record."""
        return self.registry.health_snapshot()

    def register_source(self, source: Source):
        self.registry.register(source)

    def stats(self) -> dict:
        out = {
            "territories": len(self.territories),
            "static_zips": len(self.static),
            "boundary_zips": len(self.boundary),
            "promoted_boundary_zips": self.boundary.promoted(),
        }
        if self.store is not None:
            try:
                out["store"] = self.store.stats()
            except PersistenceError as e:
                out["store"] = {"error": str(e)}
        return out

    def close(self):
        self._executor.shutdown(wait=False)
        self.registry.close()
        self.esiid.close()
        if self.store is not None:
            self.store.close()

    # ------------------------------------------------------------------
    # Persistent tier
    # ------------------------------------------------------------------
    def _store_health(self) -> Optional[DataSourceHealth]:
        return self.registry.health(store_mod.SOURCE_ID)

    def _read_store(self, zip_code: str) -> Optional[ZipTerritoryMapping]:
        if self.store is None:
            return None
        health = self._store_health()
        t0 = time.time()
        try:
            cached = self.store.get_active(zip_code)
        except PersistenceError as e:
            logger.warning(f"Store read failed for {zip_code}: {e}")
            if health:
                health.record_failure(str(e))
            return None
        if health:
            health.record_success((time.time() - t0) * 1000)
        return cached

    def _is_stale(self, mapping: ZipTerritoryMapping) -> bool:
        return self._clock() - mapping.last_validated > self.config.staleness_seconds

    def _persist(self, mapping: ZipTerritoryMapping) -> bool:
        if self.store is None:
            return False
        health = self._store_health()
        try:
            self.store.upsert(mapping)
        except PersistenceError as e:
            logger.warning(f"Store write failed for {mapping.zip_code}, result not durably cached: {e}")
            if health:
                health.record_failure(str(e))
            return False
        if health:
            health.record_success(0)
        return True

    def _append_logs(self, entries: List[ValidationLogEntry]):
        if self.store is None or not entries:
            return
        try:
            self.store.append_logs(entries)
        except PersistenceError as e:
            logger.warning(f"Validation log write failed: {e}")

    # ------------------------------------------------------------------
    # Live tier
    # ------------------------------------------------------------------
    def _query_source(self, source: Source, health: DataSourceHealth, zip_code: str,
                      deadline: float) -> _Attempt:
        """Query one source with its retry; only the final outcome reaches the health record."""
        c = self.config
        retries = source.definition.max_retries
        t0 = time.time()
        try:
            result = call_with_retry(
                lambda: source.query(zip_code, None),
                max_retries=c.max_retries if retries is None else retries,
                base=c.retry_base_delay,
                multiplier=c.retry_multiplier,
                cap=c.retry_max_delay,
                deadline=deadline,
                sleep=self._sleep,
                clock=self._clock,
            )
        except SourceQueryError as e:
            health.record_failure(str(e))
            return _Attempt(source.source_id, error=str(e),
                            elapsed_ms=int((time.time() - t0) * 1000))
        except Exception as e:
            logger.exception(f"{source.source_id}: connector error for {zip_code}")
            health.record_failure(repr(e))
            return _Attempt(source.source_id, error=repr(e),
                            elapsed_ms=int((time.time() - t0) * 1000))
        elapsed_ms = int((time.time() - t0) * 1000)
        health.record_success(elapsed_ms)
        if result is not None and not result.query_time_ms:
            result.query_time_ms = elapsed_ms
        return _Attempt(source.source_id, result=result, elapsed_ms=elapsed_ms)

    def _query_wave(self, zip_code: str, wave: List[Tuple[Source, DataSourceHealth]],
                    deadline: float) -> Tuple[List[_Attempt], bool]:
        """Fan a wave out concurrently and fan in before the deadline.

        Returns the completed attempts and whether the deadline cut the wave short.
        """
        futures = {}
        for source, health in wave:
            if not self.registry.acquire(source.source_id):
                continue
            fut = self._executor.submit(self._query_source, source, health, zip_code, deadline)
            futures[fut] = (source, health)

        attempts = []
        pending = set(futures)
        while pending:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
            for fut in done:
                attempts.append(fut.result())

        for fut in pending:
            source, health = futures[fut]
            if fut.cancel():
                health.release_trial()
            logger.warning(f"Resolve {zip_code}: deadline reached before {source.source_id} answered")
        return attempts, bool(pending)

    def _resolve_live(self, zip_code: str, stale: Optional[ZipTerritoryMapping],
                      deadline: float, persist: bool = True) -> ZipTerritoryMapping:
        ranked = self.registry.ranked_live_sources()
        fanout = max(1, self.config.max_fanout)

        attempts: List[_Attempt] = []
        candidates: List[SourceResult] = []
        scored = None
        timed_out = False
        for i in range(0, len(ranked), fanout):
            if self._clock() >= deadline:
                timed_out = True
                break
            wave_attempts, wave_timed_out = self._query_wave(zip_code, ranked[i:i + fanout], deadline)
            attempts.extend(wave_attempts)
            candidates.extend(a.result for a in wave_attempts if a.result is not None)
            if wave_timed_out:
                timed_out = True
                break
            if candidates:
                scored = self.scorer.score(candidates)
                if scored.confidence >= self.config.min_confidence:
                    break

        now = self._clock()
        if timed_out:
            # Partial result: every completed live answer, plus the cached row if any
            if stale is not None:
                candidates = candidates + [self._stale_candidate(stale)]
            scored = self.scorer.score(candidates) if candidates else None

        if scored is None:
            self._append_logs(self._log_entries(zip_code, attempts, None, now))
            return self._no_live_answer(zip_code, stale, attempts, timed_out)

        winner = scored.winner
        mapping = ZipTerritoryMapping(
            zip_code=zip_code,
            territory_id=winner.territory_id,
            territory_name=winner.territory_name,
            service_type=winner.service_type,
            confidence=scored.confidence,
            source_id=winner.source_id,
            last_validated=now,
            city_slug=winner.city_slug or (stale.city_slug if stale else ""),
            city_display_name=winner.city_display_name or (stale.city_display_name if stale else ""),
            tier="live",
            alternatives=[
                {"territory_id": tid, "sources": ids}
                for tid, ids in scored.groups.items() if tid != winner.territory_id
            ],
        )

        self._append_logs(self._log_entries(zip_code, attempts, winner.territory_id, now))
        if scored.conflict:
            live_ids = [c.source_id for c in candidates if c.source_id != store_mod.SOURCE_ID]
            if len(live_ids) >= 2:
                self.boundary.record_conflict(
                    zip_code, live_ids, list(scored.groups.keys()), winner.territory_id
                )

        if timed_out and stale is None:
            mapping.durably_cached = False
            raise ResolutionTimeout(
                f"ZIP {zip_code}: deadline expired after {len(candidates)} of {len(ranked)} "
                f"sources answered; partial answer {mapping.territory_id} ({mapping.confidence})",
                zip_code=zip_code, mapping=mapping,
            )

        if mapping.confidence < self.config.min_confidence:
            mapping.durably_cached = False
            raise AmbiguousResult(
                f"ZIP {zip_code}: best answer {mapping.territory_id} has confidence "
                f"{mapping.confidence} < {self.config.min_confidence}",
                zip_code=zip_code, mapping=mapping,
            )

        mapping.durably_cached = self._persist(mapping) if persist else False
        return mapping

    def _stale_candidate(self, stale: ZipTerritoryMapping) -> SourceResult:
        return SourceResult(
            source_id=store_mod.SOURCE_ID,
            territory_id=stale.territory_id,
            territory_name=stale.territory_name,
            service_type=stale.service_type,
            city_slug=stale.city_slug,
            city_display_name=stale.city_display_name,
            reported_confidence=stale.confidence,
        )

    def _no_live_answer(self, zip_code: str, stale: Optional[ZipTerritoryMapping],
                        attempts: List[_Attempt], timed_out: bool) -> ZipTerritoryMapping:
        if stale is not None:
            logger.warning(f"Resolve {zip_code}: no live answer, serving stale mapping {stale.territory_id}")
            stale.tier = "persistent"
            return stale
        if timed_out:
            raise ResolutionTimeout(f"ZIP {zip_code}: deadline expired with no answer", zip_code=zip_code)
        if attempts and not any(a.failed for a in attempts):
            raise TerritoryNotFound(f"ZIP {zip_code}: no source knows this ZIP", zip_code=zip_code)
        failed = [a.source_id for a in attempts if a.failed]
        raise SourceUnavailable(
            f"ZIP {zip_code}: no data source available (failed: {failed or 'none eligible'})",
            zip_code=zip_code,
        )

    def _log_entries(self, zip_code: str, attempts: List[_Attempt], winner: Optional[str],
                     now: float) -> List[ValidationLogEntry]:
        entries = []
        for a in attempts:
            if a.failed:
                outcome, territory, detail = LogOutcome.FAILURE, None, a.error
            elif a.result is None:
                outcome, territory, detail = LogOutcome.SUCCESS, None, "no data"
            elif winner and a.result.territory_id != winner:
                outcome, territory, detail = LogOutcome.CONFLICT, a.result.territory_id, f"winner {winner}"
            else:
                outcome, territory, detail = LogOutcome.SUCCESS, a.result.territory_id, ""
            entries.append(ValidationLogEntry(
                zip_code=zip_code, source_id=a.source_id, outcome=outcome,
                resolved_territory_id=territory, timestamp=now,
                detail=f"{detail} ({a.elapsed_ms}ms)".strip(),
            ))
        return entries

    # ------------------------------------------------------------------
    # Address tier
    # ------------------------------------------------------------------
    def _zip_level(self, zip_code: str, deadline: float) -> Optional[ZipTerritoryMapping]:
        """ZIP-only answer used when an address matches no premise. Never raises."""
        mapping = self.static.lookup(zip_code)
        if mapping:
            return mapping
        cached = self._read_store(zip_code)
        if cached and not self._is_stale(cached):
            return cached
        if not self.registry.has_live_sources():
            return cached
        try:
            return self._resolve_live(zip_code, cached, deadline, persist=False)
        except TerritoryError as e:
            return e.mapping

    def _resolve_address(self, zip_code: str, address: str, deadline: float) -> ZipTerritoryMapping:
        now = self._clock()
        try:
            res = self.disambiguator.disambiguate(
                address, zip_code,
                zip_fallback=lambda: self._zip_level(zip_code, deadline),
                deadline=deadline,
            )
        except AddressLookupUnavailable:
            self._append_logs([ValidationLogEntry(
                zip_code=zip_code, source_id=self.esiid.source_id, outcome=LogOutcome.FAILURE,
                resolved_territory_id=None, timestamp=now, detail="address lookup unavailable",
            )])
            raise

        self._append_logs([ValidationLogEntry(
            zip_code=zip_code, source_id=res.source_id or self.esiid.source_id,
            outcome=LogOutcome.SUCCESS, resolved_territory_id=res.territory_id, timestamp=now,
            detail=f"address={res.meter_id or 'unconfirmed'}",
        )])

        if res.territory_id is None:
            raise AmbiguousResult(
                f"ZIP {zip_code}: address matched no premise and no ZIP-level answer exists",
                zip_code=zip_code,
            )

        slug, display = self._city_for(zip_code)
        mapping = ZipTerritoryMapping(
            zip_code=zip_code,
            territory_id=res.territory_id,
            territory_name=res.territory_name,
            service_type=res.service_type,
            confidence=res.confidence,
            source_id=res.source_id,
            last_validated=now,
            city_slug=slug,
            city_display_name=display,
            tier="address",
            # Per-address answers are not written to the ZIP table
            durably_cached=False,
            unconfirmed=res.unconfirmed,
            meter_id=res.meter_id,
            alternatives=res.alternatives,
        )
        logger.info(
            f"Resolve {zip_code} + address: {mapping.territory_id} confidence={mapping.confidence}"
            f"{' (unconfirmed, ZIP-level only)' if mapping.unconfirmed else ''}"
        )
        if mapping.confidence < self.config.min_confidence:
            raise AmbiguousResult(
                f"ZIP {zip_code}: address resolution confidence {mapping.confidence} "
                f"< {self.config.min_confidence}",
                zip_code=zip_code, mapping=mapping,
            )
        return mapping

    def _city_for(self, zip_code: str) -> Tuple[str, str]:
        entry = self.boundary.entry(zip_code)
        if entry and entry.get("city_slug"):
            return entry["city_slug"], entry.get("city_display_name", "")
        city = self.static.city_for(zip_code)
        if city:
            return city
        if self.store is not None:
            try:
                cached = self.store.get_active(zip_code)
            except PersistenceError:
                cached = None
            if cached:
                return cached.city_slug, cached.city_display_name
        return "", ""
