from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from typing import Optional

from talentml.services.metrics_collector import MetricsCollector, get_metrics_collector

router = APIRouter()


@router.get("/export")
async def export_metrics(
    format: str = Query("json", pattern="^(json|csv)$"),
    collector: MetricsCollector = Depends(get_metrics_collector),
):
    media_type = "application/json" if format == "json" else "text/csv"
    return PlainTextResponse(collector.export_data(format), media_type=media_type)


@router.get("/alerts")
async def list_alerts(
    severity: Optional[str] = Query(None),
    collector: MetricsCollector = Depends(get_metrics_collector),
):
    alerts = collector.get_alerts(severity)
    return {"alerts": [a.to_dict() for a in alerts], "total": len(alerts)}


@router.get("/{entity_id}")
async def entity_metrics(entity_id: str, collector: MetricsCollector = Depends(get_metrics_collector)):
    metrics = collector.get_metrics(entity_id)
    if not metrics:
        raise HTTPException(status_code=404, detail="No metrics recorded for entity")
    return metrics.to_dict()
