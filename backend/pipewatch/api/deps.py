"""
API Dependencies: resolve the running MonitoringSystem and its components.

The system is attached to ``app.state.system`` by the application lifespan
(or directly by tests).
"""

from fastapi import Depends, HTTPException, Request

from pipewatch.services.alert_manager import AlertManager
from pipewatch.services.engine import PipelineEngine
from pipewatch.services.performance_analyzer import PerformanceAnalyzer
from pipewatch.services.store import Store
from pipewatch.services.webhook_pipeline import WebhookPipeline
from pipewatch.startup import MonitoringSystem


def get_system(request: Request) -> MonitoringSystem:
    system = getattr(request.app.state, "system", None)
    if system is None:
        raise HTTPException(status_code=503, detail="Monitoring system not started")
    return system


def get_engine(system: MonitoringSystem = Depends(get_system)) -> PipelineEngine:
    return system.engine


def get_store(system: MonitoringSystem = Depends(get_system)) -> Store:
    return system.store


def get_webhook_pipeline(system: MonitoringSystem = Depends(get_system)) -> WebhookPipeline:
    return system.pipeline


def get_alert_manager(system: MonitoringSystem = Depends(get_system)) -> AlertManager:
    return system.alerts


def get_analyzer(system: MonitoringSystem = Depends(get_system)) -> PerformanceAnalyzer:
    return system.analyzer
