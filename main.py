"""
Deribit Risk Dashboard - FastAPI Application
Run with: uvicorn main:app --reload --host 0.0.0.0 --port 8000
"""

import logging
from typing import Dict, List

from fastapi import FastAPI, HTTPException

from deribit_risk import (
    DeribitClient, KpiPayload, RefreshOrchestrator, Settings, build_default_services,
)

settings = Settings.from_env()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Deribit Risk Dashboard",
    description="Options risk KPIs computed from Deribit public market data",
    version="1.0.0"
)

# Global state
deribit = DeribitClient(testnet=settings.testnet, requests_per_second=settings.requests_per_second)
orchestrator = RefreshOrchestrator(build_default_services(deribit, settings),
                                   delay_ms=settings.refresh_delay_ms)


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/api/health")
async def health():
    """Health check"""
    return {"status": "ok", "currency": settings.currency, "testnet": settings.testnet}


@app.get("/api/kpis", response_model=Dict[str, KpiPayload], response_model_by_alias=True)
async def get_kpis():
    """Refresh every KPI in sequence and return all payloads"""
    return await orchestrator.refresh_all()


@app.get("/api/kpis/ids", response_model=List[str])
async def get_kpi_ids():
    """List the KPI ids served by this instance"""
    return orchestrator.kpi_ids


@app.get("/api/kpis/{kpi_id}", response_model=KpiPayload, response_model_by_alias=True)
async def get_kpi(kpi_id: str):
    """Refresh one KPI"""
    if kpi_id not in orchestrator.services:
        raise HTTPException(status_code=404, detail=f"Unknown KPI: {kpi_id}")
    return await orchestrator.refresh_one(kpi_id)


@app.on_event("shutdown")
async def shutdown():
    orchestrator.cancel_all()
    await deribit.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
