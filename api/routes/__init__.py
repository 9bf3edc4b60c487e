"""
Identity API Routes Package.

Use this module to import routers for registration with the FastAPI app.

Example:
    from api.routes import identity_router

    app.include_router(identity_router)
"""

from api.routes.identity import router as identity_router


__all__ = [
    "identity_router",
]
