"""API routes package.

- webhooks: Razorpay webhook delivery and health

All routers are registered in main.py.
"""

from payhook.api.routes.webhooks import router as webhooks_router

__all__ = ["webhooks_router"]
