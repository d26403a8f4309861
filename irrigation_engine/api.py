"""FastAPI service: flow-meter webhook, zone control, water balance, recommendations."""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import API, VigorBandConfig
from .engine import IrrigationEngine, engine_from_env
from .errors import ClimateDataUnavailable, NotFound, PersistenceFailure, ValidationError

logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)

app = FastAPI(
    title="Irrigation Engine API",
    description="Flow-meter session detection, vineyard water balance and irrigation recommendations",
    version="1.0.0"
)

_engine: Optional[IrrigationEngine] = None


def get_engine() -> IrrigationEngine:
    """Process-wide engine, built from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = engine_from_env()
    return _engine


# ─────────────────────────────────────────────────────────────────────────────
# ERROR MAPPING
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(ValidationError)
async def validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"error": "validation", "field": exc.field,
                                                  "detail": exc.message})


@app.exception_handler(NotFound)
async def not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"error": "not_found", "kind": exc.kind,
                                                  "detail": str(exc)})


@app.exception_handler(PersistenceFailure)
async def persistence_failure(request: Request, exc: PersistenceFailure):
    return JSONResponse(status_code=503, content={"error": "persistence", "detail": str(exc),
                                                  "pending_writes": len(exc.pending)})


@app.exception_handler(ClimateDataUnavailable)
async def climate_unavailable(request: Request, exc: ClimateDataUnavailable):
    return JSONResponse(status_code=503, content={"error": "climate_data", "detail": str(exc)})


# ─────────────────────────────────────────────────────────────────────────────
# MODELS
# ─────────────────────────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str


class WaterBalanceRequest(BaseModel):
    day: date
    reference_et_mm: Optional[float] = Field(None, ge=0, description="Override the climate feed")
    rainfall_mm: Optional[float] = Field(None, ge=0, description="Override the climate feed")


class VRIRequest(BaseModel):
    ndvi: List[Any] = Field(..., description="NDVI raster, 1-D or 2-D, null for masked cells")
    edges: Optional[List[float]] = None
    levels: Optional[List[str]] = None
    multipliers_pct: Optional[Dict[str, float]] = None
    min_zone_cells: int = Field(1, ge=1)
    cell_area_acres: Optional[float] = Field(None, gt=0)


class MultiplierUpdate(BaseModel):
    irrigation_multiplier_pct: float = Field(..., ge=0)


# ─────────────────────────────────────────────────────────────────────────────
# ENDPOINTS
# ─────────────────────────────────────────────────────────────────────────────

@app.get("/", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


@app.post("/api/v1/flow-meter/webhook")
def flow_meter_webhook(
    token: str = Query(..., description="Device webhook token"),
    payload: Dict[str, Any] = Body(...),
    engine: IrrigationEngine = Depends(get_engine),
):
    """Receive one flow reading from a meter."""
    return engine.ingest_reading(token, payload).to_dict()


@app.get("/api/v1/zones/{zone_id}")
def zone_status(zone_id: str, engine: IrrigationEngine = Depends(get_engine)):
    return engine.zone_status(zone_id)


@app.post("/api/v1/zones/{zone_id}/stop")
def stop_zone(zone_id: str, engine: IrrigationEngine = Depends(get_engine)):
    """Manual stop. Stopping an idle zone is a no-op."""
    event = engine.stop_session(zone_id)
    return {"zone_id": zone_id, "event": event.to_dict() if event else None}


@app.get("/api/v1/devices/{device_id}/latest")
def latest_reading(device_id: str, engine: IrrigationEngine = Depends(get_engine)):
    reading = engine.latest_reading(device_id)
    if reading is None:
        raise HTTPException(404, f"No readings from device '{device_id}'")
    return reading.to_dict()


@app.get("/api/v1/alerts")
def open_alerts(engine: IrrigationEngine = Depends(get_engine)):
    return {"alerts": [a.to_dict() for a in engine.alerts.open_alerts()]}


@app.get("/api/v1/fields/{field_id}/water-balance")
def get_water_balance(field_id: str, engine: IrrigationEngine = Depends(get_engine)):
    return engine.water_balance(field_id).to_dict()


@app.post("/api/v1/fields/{field_id}/water-balance")
def update_water_balance(field_id: str, request: WaterBalanceRequest,
                         engine: IrrigationEngine = Depends(get_engine)):
    """Apply one day to the field's balance."""
    balance = engine.update_water_balance(
        field_id, request.day,
        reference_et_mm=request.reference_et_mm,
        rainfall_mm=request.rainfall_mm,
    )
    return balance.to_dict()


@app.get("/api/v1/fields/{field_id}/recommendation")
def get_recommendation(
    field_id: str,
    forecast_et_mm: Optional[float] = Query(None, ge=0),
    engine: IrrigationEngine = Depends(get_engine),
):
    """Irrigation amount, urgency and run time for a field."""
    return engine.get_recommendation(field_id, forecast_et_mm).to_dict()


@app.post("/api/v1/fields/{field_id}/vri-zones")
def build_vri_zones(field_id: str, request: VRIRequest,
                    engine: IrrigationEngine = Depends(get_engine)):
    defaults = VigorBandConfig()
    try:
        bands = VigorBandConfig(
            edges=tuple(request.edges) if request.edges else defaults.edges,
            levels=tuple(request.levels) if request.levels else defaults.levels,
            multipliers_pct={**defaults.multipliers_pct, **(request.multipliers_pct or {})},
            min_zone_cells=request.min_zone_cells,
        )
    except ValueError as e:
        raise HTTPException(422, str(e))
    ndvi = [[float("nan") if v is None else v for v in row] if isinstance(row, list)
            else (float("nan") if row is None else row) for row in request.ndvi]
    zones = engine.build_vri_zones(field_id, ndvi, bands, request.cell_area_acres)
    return {"field_id": field_id, "zones": [z.to_dict() for z in zones]}


@app.get("/api/v1/fields/{field_id}/vri-zones")
def list_vri_zones(field_id: str, engine: IrrigationEngine = Depends(get_engine)):
    return {"field_id": field_id, "zones": [z.to_dict() for z in engine.vri_zones(field_id)]}


@app.patch("/api/v1/fields/{field_id}/vri-zones/{zone_name}")
def update_vri_zone(field_id: str, zone_name: str, update: MultiplierUpdate,
                    engine: IrrigationEngine = Depends(get_engine)):
    """Operator edit of a zone's irrigation multiplier."""
    return engine.set_vri_multiplier(field_id, zone_name, update.irrigation_multiplier_pct).to_dict()


# ─────────────────────────────────────────────────────────────────────────────
# RUN SERVER
# ─────────────────────────────────────────────────────────────────────────────

def run_server():
    """Run the API server."""
    import uvicorn
    uvicorn.run(
        "irrigation_engine.api:app",
        host=API.host,
        port=API.port,
        workers=API.workers,
    )


if __name__ == "__main__":
    run_server()
