"""Top-level API router."""

from fastapi import APIRouter

from reporting_engine.api.routes.health import router as health_router
from reporting_engine.api.routes.invoices import router as invoices_router
from reporting_engine.api.routes.me import router as me_router
from reporting_engine.api.routes.payroll import router as payroll_router
from reporting_engine.api.routes.reports import router as reports_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(me_router)
api_router.include_router(reports_router)
api_router.include_router(payroll_router)
api_router.include_router(invoices_router)
