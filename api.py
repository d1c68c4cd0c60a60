"""
FastAPI server for the utility territory engine.

Loads seed data and opens the mapping store on startup, then serves
ZIP / address resolutions and the source health dashboard.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from territory_engine.config import Config
from territory_engine.engine import TerritoryEngine
from territory_engine.errors import (
    AddressLookupUnavailable,
    AddressRequired,
    AmbiguousResult,
    InvalidInput,
    ResolutionTimeout,
    SourceUnavailable,
    TerritoryError,
    TerritoryNotFound,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("api")

# ---------------------------------------------------------------------------
# Global engine (loaded once at startup)
# ---------------------------------------------------------------------------
engine: Optional[TerritoryEngine] = None


def _load_dotenv():
    env_path = Path(__file__).parent / ".env"
    if env_path.exists():
        for line in env_path.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, val = line.split("=", 1)
                os.environ.setdefault(key.strip(), val.strip())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the engine on startup, close connections on shutdown."""
    global engine
    t0 = time.time()
    if engine is None:
        _load_dotenv()
        engine = TerritoryEngine(Config.from_env())
    logger.info(f"Engine ready in {time.time() - t0:.1f}s")

    yield

    if engine:
        engine.close()
        engine = None
    logger.info("Shutdown complete.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Utility Territory API",
    description="Resolve Texas ZIP codes and street addresses to the serving utility territory.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------
class MappingResponse(BaseModel):
    zip: str
    city_slug: str = ""
    city_display_name: str = ""
    territory_id: str
    territory_name: str
    service_type: str
    outcome: str
    confidence: int
    source_id: str
    last_validated: Optional[str] = None
    is_active: bool = True
    tier: str
    durably_cached: bool = True
    unconfirmed: bool = False
    meter_id: Optional[str] = None
    alternatives: list = Field(default_factory=list)


class SourceHealthResponse(BaseModel):
    id: str
    type: str
    priority: int
    reliability: int
    health_score: int
    circuit_state: str
    consecutive_failures: int
    average_response_time_ms: Optional[int] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    last_failure_reason: str = ""


class HealthResponse(BaseModel):
    status: str
    engine_loaded: bool
    uptime_seconds: float


_start_time = time.time()

# Error kind -> HTTP status
_STATUS = [
    (InvalidInput, 400),
    (AddressRequired, 409),
    (AmbiguousResult, 422),
    (TerritoryNotFound, 404),
    (ResolutionTimeout, 504),
    (SourceUnavailable, 503),
    (AddressLookupUnavailable, 503),
]


def _error_response(err: TerritoryError) -> JSONResponse:
    status = next((code for kind, code in _STATUS if isinstance(err, kind)), 500)
    body = {
        "error": type(err).__name__,
        "detail": str(err),
        "zip": err.zip_code,
        "mapping": err.mapping.to_dict() if err.mapping else None,
    }
    if isinstance(err, AddressRequired):
        body["candidates"] = err.candidates
    return JSONResponse(status_code=status, content=body)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get("/health", response_model=HealthResponse)
async def health():
    """Liveness check."""
    return HealthResponse(
        status="ok" if engine else "loading",
        engine_loaded=engine is not None,
        uptime_seconds=round(time.time() - _start_time, 1),
    )


@app.get("/resolve", response_model=MappingResponse)
def resolve(
    zip: str = Query(..., description="5-digit ZIP code"),
    address: Optional[str] = Query(None, description="Street address, required for boundary ZIPs"),
    precise: bool = Query(False, description="Resolve at address level even for single-territory ZIPs"),
):
    """Resolve a ZIP (and optional street address) to its utility territory."""
    if not engine:
        raise HTTPException(status_code=503, detail="Engine is still loading.")
    try:
        mapping = engine.resolve(zip, address=address, address_precision=precise)
    except TerritoryError as e:
        logger.info(f"Resolve {zip}: {type(e).__name__}: {e}")
        return _error_response(e)
    return JSONResponse(content=mapping.to_dict())


@app.get("/sources/health", response_model=List[SourceHealthResponse])
async def sources_health():
    """Current health of every data source. Read-only."""
    if not engine:
        raise HTTPException(status_code=503, detail="Engine is still loading.")
    return engine.source_health()
