import asyncio

from fastapi import FastAPI
from config import settings
from routers import numbers, billing
from services.database import get_engine
from utils.logger import log_info

app = FastAPI(title="Line Service")

# Register Routers
app.include_router(numbers.router)
app.include_router(billing.router)

@app.on_event("startup")
async def startup_event():
    log_info("Starting Line Service")
    get_engine()

    # Start scheduled reconciliation (no-op unless SWEEP_INTERVAL_SECONDS is set)
    from services.sync_worker import start_sync_worker
    start_sync_worker()

@app.get("/")
async def root():
    return {"message": "Line Service is running"}

@app.get("/health")
async def health():
    from services.resource_store import count_available
    available = await asyncio.to_thread(count_available)
    return {"status": "ok", "available_numbers": available, "stripe_api_version": settings.STRIPE_API_VERSION}

if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
