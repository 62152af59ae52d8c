"""
Contact Dedup API Routes Package.

This package contains the FastAPI route handlers.
Use this module to import routers for registration with the FastAPI app.

Example:
    from api.routes import people_router

    app.include_router(people_router)
"""

from api.routes.people import router as people_router

__all__ = ["people_router"]
