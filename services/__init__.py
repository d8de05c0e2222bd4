"""
Business logic services.

Each service handles one domain area.
"""

from services.catalog_store import CatalogStore, get_catalog_store
from services.order_import_service import OrderImportService, get_order_import_service
from services.import_session_service import ImportSession
