"""
Routes package for the Provider Acceptance Verification API.
"""

from acceptance_api.routes.admin import router as admin_router
from acceptance_api.routes.verify import router as verify_router

__all__ = ["admin_router", "verify_router"]
