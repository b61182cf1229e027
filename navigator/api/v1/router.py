from fastapi import APIRouter

from navigator.api.v1.auth import router as auth_router
from navigator.api.v1.efile import router as efile_router
from navigator.api.v1.households import router as households_router
from navigator.api.v1.maryland_efile import router as maryland_efile_router
from navigator.api.v1.notifications import router as notifications_router
from navigator.api.v1.sms import router as sms_router
from navigator.api.v1.tax_returns import router as tax_returns_router
from navigator.api.v1.users import router as users_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(auth_router)
api_v1_router.include_router(users_router)
api_v1_router.include_router(households_router)
api_v1_router.include_router(tax_returns_router)
api_v1_router.include_router(efile_router)
api_v1_router.include_router(maryland_efile_router)
api_v1_router.include_router(sms_router)
api_v1_router.include_router(notifications_router)
