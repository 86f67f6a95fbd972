"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from engine_orchestrator.api.batches import router as batches_router
from engine_orchestrator.api.engines import router as engines_router
from engine_orchestrator.api.health import router as health_router
from engine_orchestrator.api.jobs import router as jobs_router
from engine_orchestrator.api.prompts import router as prompts_router
from engine_orchestrator.api.sla import router as sla_router
from engine_orchestrator.api.work_items import router as work_items_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(batches_router)
api_router.include_router(work_items_router)
api_router.include_router(engines_router)
api_router.include_router(prompts_router)
api_router.include_router(sla_router)
api_router.include_router(jobs_router)
