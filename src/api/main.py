"""
FastAPI application entry point.

HTTP surface of the job queue:
- Shopify webhook ingestion (HMAC-authenticated)
- Queue statistics, health and operational control (optional API key)

Worker pools are not started here; run them with `python -m src.queueing`.
"""

import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI

from src import __version__
from src.infra.logging_config import setup_logging
from .routers import queues, webhooks
from ._queue_state import init_queue_state, shutdown_queue_state
from .dependencies.auth import verify_api_key, API_AUTH_ENABLED


load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup builds the queue service (enqueue and statistics only) and the
    webhook ingestion service; shutdown releases the backend connection.
    """
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    init_queue_state()

    yield

    shutdown_queue_state()


# Tag metadata for Swagger UI
tags_metadata = [
    {
        "name": "webhooks",
        "description": "Shopify webhook ingestion - verified, recorded and queued for processing",
    },
    {
        "name": "queues",
        "description": "Job queue operations - statistics, health, enqueue, pause/resume and cleanup",
    },
]

app = FastAPI(
    title="Shopify Job Queue API",
    lifespan=lifespan,
    description="""
## Shopify Job Queue API

Webhook ingestion and operational control for the background job queue.

### Authentication
When `API_AUTH_ENABLED=true`, `/queues` endpoints require an `X-API-Key`
header matching the `API_KEY` environment variable. `/webhooks/shopify` is
authenticated by the `X-Shopify-Hmac-Sha256` signature. `/health` is open.

### Usage
```bash
# Start API server
uvicorn src.api.main:app --host 127.0.0.1 --port 8000

# Start workers
python -m src.queueing

# Queue statistics
curl http://localhost:8000/queues/stats -H "X-API-Key: your-api-key"
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


# Queue operations WITH authentication dependency (when enabled)
auth_dependency = [Depends(verify_api_key)] if API_AUTH_ENABLED else []

app.include_router(
    webhooks.router, prefix="/webhooks", tags=["webhooks"]
)
app.include_router(
    queues.router, prefix="/queues", tags=["queues"], dependencies=auth_dependency
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
