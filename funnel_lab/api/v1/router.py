from fastapi import APIRouter

from funnel_lab.api.v1 import calculator, experiments, health, tracking

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(experiments.router, prefix="/experiments", tags=["experiments"])
api_router.include_router(tracking.router, prefix="/tracking", tags=["tracking"])
api_router.include_router(calculator.router, prefix="/calculator", tags=["calculator"])
