# routers/__init__.py
from .scans import router as scans_router
from .receipts import router as receipts_router
from .admin import router as admin_router
from .webhooks import router as webhooks_router

__all__ = [
     "scans_router",
     "receipts_router",
     "admin_router",
     "webhooks_router",
]
