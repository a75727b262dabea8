"""
Distribution Hub - Routes Package

Modular API routers for the Distribution Hub.
"""

from .auth import router as auth_router
from .distributions import router as distributions_router, set_service as set_distribution_service

__all__ = [
    'auth_router',
    'distributions_router', 'set_distribution_service',
]
