from fastapi import APIRouter

from intranet.api.auth import router as auth_router
from intranet.api.health import router as health_router
from intranet.api.invitations import router as invitations_router
from intranet.api.session import router as session_router
from intranet.api.users import router as users_router

api_router = APIRouter()

# Include sub-routers
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router)
api_router.include_router(session_router)
api_router.include_router(users_router)
api_router.include_router(invitations_router)
