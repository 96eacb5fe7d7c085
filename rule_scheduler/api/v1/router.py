# rule_scheduler/api/v1/router.py
from fastapi import APIRouter
from rule_scheduler.api.v1.endpoints import scheduling

api_router = APIRouter()

api_router.include_router(
    scheduling.router,
    prefix="/scheduling",
    tags=["Predictive Scheduling"]
)
