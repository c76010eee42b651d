"""
API Routers
Separate router modules for each domain.
"""

from app.routers import contracts

__all__ = ["contracts"]
