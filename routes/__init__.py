"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.order_import import router as order_import_router
