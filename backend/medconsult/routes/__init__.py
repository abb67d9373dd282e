from medconsult.routes.text_sessions import router as text_sessions_router
from medconsult.routes.calls import router as calls_router
from medconsult.routes.sessions import router as sessions_router
from medconsult.routes.payments import router as payments_router
from medconsult.routes.admin import router as admin_router

__all__ = ["text_sessions_router", "calls_router", "sessions_router", "payments_router", "admin_router"]
