"""FastAPI application receiving Razorpay webhooks.

Deployed behind API Gateway through the Mangum Lambda adapter; run_server()
starts a local uvicorn server for development.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from mangum import Mangum

from payhook.api.exceptions import register_exception_handlers
from payhook.api.middleware.correlation import CorrelationIdMiddleware
from payhook.api.routes.webhooks import router as webhooks_router
from payhook.utils.logging import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Razorpay Webhook API",
    description="Signed webhook ingestion with idempotent event processing",
    version="0.1.0",
)

app.add_middleware(CorrelationIdMiddleware)

# Register exception handlers for consistent error responses
register_exception_handlers(app)

app.include_router(webhooks_router)


@app.get("/api/ping")
async def ping() -> dict[str, Any]:
    """Root health check endpoint at /api/ping."""
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "payhook-api",
    }


# Lambda handler - Mangum wraps FastAPI for AWS Lambda + API Gateway
handler = Mangum(app, lifespan="off")


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = False) -> None:
    """Run the FastAPI server.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to listen on (default: 8080)
        reload: Enable hot reload for development (default: False)
    """
    import uvicorn

    if reload:
        # Use string reference for reload mode (uvicorn requirement)
        uvicorn.run("payhook.api.main:app", host=host, port=port, reload=True)
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
