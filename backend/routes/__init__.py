"""
Compliance Case Hub - Routes Package

API routers for the approval workflows.
"""

from .auth import router as auth_router, set_db as set_auth_db
from .approvals import router as approvals_router, set_dependencies as set_approvals_deps
from .notifications import router as notifications_router, set_dependencies as set_notifications_deps

__all__ = [
    'auth_router', 'set_auth_db',
    'approvals_router', 'set_approvals_deps',
    'notifications_router', 'set_notifications_deps',
]
