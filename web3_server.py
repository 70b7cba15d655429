"""
FastAPI server for the W3bStore ledger core
Wires the database, ledger client and Web3 service, and runs the payment
confirmation monitor on an APScheduler AsyncIOScheduler.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from config import Config
from database import build_async_engine, build_session_factory, create_tables
from jobs.payment_confirmation_monitor import schedule_payment_confirmation_monitor
from routes.web3_routes import router as web3_router
from services.ledger_client import JsonRpcLedgerClient
from services.web3_service import Web3Service, create_web3_service

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: build engine, ledger client, service and scheduler
    Shutdown: stop the scheduler, close the ledger client and dispose the engine
    """
    if getattr(app.state, "web3_service", None) is not None:
        # Service injected by the caller; it owns the resources
        yield
        return

    logger.info(f"🔧 Web3 server worker {os.getpid()} starting...")
    Config.log_environment_config()

    engine = build_async_engine()
    await create_tables(engine)
    session_factory = build_session_factory(engine)
    ledger_client = JsonRpcLedgerClient()

    app.state.web3_service = create_web3_service(session_factory, ledger_client)

    scheduler = AsyncIOScheduler(
        job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 120},
        timezone='UTC',
    )
    schedule_payment_confirmation_monitor(scheduler, app.state.web3_service)
    scheduler.start()
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    try:
        yield
    finally:
        logger.info(f"🔄 Web3 server worker {os.getpid()} shutting down...")
        scheduler.shutdown(wait=False)
        await ledger_client.close()
        await engine.dispose()
        app.state.web3_service = None


def create_app(web3_service: Optional[Web3Service] = None) -> FastAPI:
    """Build the application; pass a service to skip resource wiring (tests)"""
    app = FastAPI(
        title="W3bStore Ledger Core",
        description="Wallet binding, crypto payments, NFT receipts and loyalty tokens",
        lifespan=lifespan,
    )
    app.state.web3_service = web3_service
    app.include_router(web3_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("web3_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
