"""
Lease Plane API
===============

Main entry point for the lease plane service.

Endpoints:
- GET /api/health - Health check
- GET /api/accounts/{account_id}/balance - Balances and recent ledger entries
- GET /api/accounts/{account_id}/instances - Non-deleted instances
- POST /api/instances/purchase - Buy an instance on a plan
- POST /api/instances/{instance_id}/renew - Extend an instance
- GET /api/hosts/available - Hosts with room for a given size
- POST /api/admin/instances/{instance_id}/suspend - Suspend now (grace applies)
- DELETE /api/admin/instances/{instance_id} - Force delete
- GET /api/admin/instances/expiring - Instances expiring soon
- GET /api/admin/instances/suspended - Suspended instances
- POST /api/admin/sweep - Run one sweeper tick now

Authentication is handled upstream; callers pass the account id.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from dotenv import load_dotenv

# Load .env file if present (dev mode)
load_dotenv()

from lease_plane.config import LeasePlaneConfig
from lease_plane.errors import ErrorKind, LeaseError
from lease_plane.ledger import Ledger
from lease_plane.logging_config import configure_logging
from lease_plane.models import Currency
from lease_plane.node_selector import NodeSelector
from lease_plane.orchestrator import ProvisioningOrchestrator
from lease_plane.panel import PanelInterface, PterodactylPanel
from lease_plane.store import InMemoryStore, PostgresStore, RecordStore
from lease_plane.sweeper import LifecycleSweeper

logger = logging.getLogger(__name__)

# Load centralized config from environment
config = LeasePlaneConfig.from_env()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Initialize FastAPI
app = FastAPI(
    title="Lease Plane",
    description="Node selection and provisioning lifecycle for leased game servers",
    version="1.0.0",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS from config
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.OUT_OF_STOCK: 409,
    ErrorKind.GRACE_EXPIRED: 409,
    ErrorKind.UPSTREAM_FAILURE: 502,
    ErrorKind.UPSTREAM_UNAVAILABLE: 502,
    ErrorKind.NO_CAPACITY: 503,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.INCONSISTENCY: 500,
}

# Global state
store: Optional[RecordStore] = None
panel: Optional[PanelInterface] = None
ledger: Optional[Ledger] = None
selector: Optional[NodeSelector] = None
orchestrator: Optional[ProvisioningOrchestrator] = None
sweeper: Optional[LifecycleSweeper] = None


@app.exception_handler(LeaseError)
async def lease_error_handler(request: Request, exc: LeaseError):
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 500),
        content=exc.to_dict(),
    )


async def init_store() -> RecordStore:
    """Connect to PostgreSQL, or fall back to the in-memory store."""
    if not config.database.is_configured:
        logger.warning("DATABASE_URL not set, using in-memory store (state is lost on restart)")
        return InMemoryStore()

    try:
        from lease_plane.database import open_pool
        pool = await open_pool(
            config.database.url,
            min_size=config.database.min_pool_size,
            max_size=config.database.max_pool_size,
        )
        logger.info("Database pool initialized")
        return PostgresStore(pool)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        logger.warning("Running without database, using in-memory store")
        return InMemoryStore()


def init_panel() -> Optional[PanelInterface]:
    """Initialize the Pterodactyl adapter from config."""
    if not config.panel.is_configured:
        logger.warning("Pterodactyl not configured, purchase/renew/sweeper disabled")
        return None

    try:
        adapter = PterodactylPanel(
            base_url=config.panel.url,
            api_key=config.panel.api_key,
            timeout=config.panel.timeout,
            docker_image=config.panel.docker_image,
            startup=config.panel.startup,
            default_egg=config.panel.default_egg,
            default_environment=config.panel.default_environment(),
        )
        logger.info("Pterodactyl panel initialized")
        return adapter
    except Exception as e:
        logger.error(f"Failed to initialize Pterodactyl panel: {e}")
        return None


def build_services(record_store: RecordStore, panel_adapter: Optional[PanelInterface]):
    """Wire the core components around a store and (optional) panel."""
    global store, panel, ledger, selector, orchestrator, sweeper
    store = record_store
    panel = panel_adapter
    ledger = Ledger(store)
    selector = None
    orchestrator = None
    sweeper = None

    if panel is not None:
        selector = NodeSelector(panel)
        orchestrator = ProvisioningOrchestrator(
            store=store,
            ledger=ledger,
            selector=selector,
            panel=panel,
            grace_period_hours=config.sweeper.grace_period_hours,
        )
        sweeper = LifecycleSweeper(
            store=store,
            ledger=ledger,
            panel=panel,
            interval_seconds=config.sweeper.interval_seconds,
            grace_period_hours=config.sweeper.grace_period_hours,
        )


@app.on_event("startup")
async def startup_event():
    """Initialize all services on startup."""
    configure_logging(config.log_level, config.log_format)

    build_services(await init_store(), init_panel())

    if sweeper and config.sweeper.enabled:
        sweeper.start()

    logger.info("Lease Plane API started")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    if sweeper:
        await sweeper.stop()
    if panel:
        await panel.close()
    if isinstance(store, PostgresStore):
        await store.pool.close()


def get_ledger() -> Ledger:
    if ledger is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return ledger


def get_orchestrator() -> ProvisioningOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Panel not configured")
    return orchestrator


def get_selector() -> NodeSelector:
    if selector is None:
        raise HTTPException(status_code=503, detail="Panel not configured")
    return selector


def get_sweeper() -> LifecycleSweeper:
    if sweeper is None:
        raise HTTPException(status_code=503, detail="Panel not configured")
    return sweeper


class PurchaseRequest(BaseModel):
    account_id: str
    plan_id: int
    plan_type: str  # "coin" or "real"
    name: str
    preferred_host_id: Optional[int] = None

    @field_validator("plan_type")
    @classmethod
    def validate_plan_type(cls, v):
        if v not in ("coin", "real"):
            raise ValueError("plan_type must be 'coin' or 'real'")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if not 1 <= len(v) <= 64:
            raise ValueError("Name must be 1-64 characters")
        return v


class RenewRequest(BaseModel):
    account_id: str


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(store).__name__ if store else None,
        "panel_configured": panel is not None,
        "sweeper_running": bool(sweeper and sweeper.running),
    }


# =============================================================================
# Accounts
# =============================================================================

@app.get("/api/accounts/{account_id}/balance")
async def get_balance(account_id: str):
    """Current balances plus the most recent ledger entries."""
    ledger_service = get_ledger()
    balance = await ledger_service.balance(account_id)
    balance["history"] = await ledger_service.history(account_id, limit=20)
    return balance


@app.get("/api/accounts/{account_id}/instances")
async def get_account_instances(account_id: str):
    return {"instances": await get_orchestrator().list_account_instances(account_id)}


# =============================================================================
# Instances
# =============================================================================

@app.post("/api/instances/purchase")
@limiter.limit(config.rate_limit)
async def purchase_instance(request: Request, body: PurchaseRequest):
    """Buy an instance; funds are refunded if provisioning fails."""
    result = await get_orchestrator().purchase(
        account_id=body.account_id,
        plan_id=body.plan_id,
        currency=Currency(body.plan_type),
        name=body.name,
        preferred_host_id=body.preferred_host_id,
    )
    return result


@app.post("/api/instances/{instance_id}/renew")
@limiter.limit(config.rate_limit)
async def renew_instance(request: Request, instance_id: str, body: RenewRequest):
    return await get_orchestrator().renew(body.account_id, instance_id)


@app.get("/api/hosts/available")
async def list_available_hosts(memory_mb: int = 0, disk_mb: int = 0):
    """Hosts that can currently take an instance of this size, best first."""
    hosts = await get_selector().available_hosts(memory_mb, disk_mb)
    return {"hosts": hosts}


# =============================================================================
# Administration
# =============================================================================

@app.post("/api/admin/instances/{instance_id}/suspend")
async def admin_suspend_instance(instance_id: str):
    return await get_orchestrator().admin_suspend(instance_id)


@app.delete("/api/admin/instances/{instance_id}")
async def admin_delete_instance(instance_id: str):
    return await get_orchestrator().force_delete(instance_id)


@app.get("/api/admin/instances/expiring")
async def admin_expiring_instances(hours: int = 24):
    instances = await get_orchestrator().list_expiring(timedelta(hours=hours))
    return {"instances": instances}


@app.get("/api/admin/instances/suspended")
async def admin_suspended_instances():
    return {"instances": await get_orchestrator().list_suspended()}


@app.post("/api/admin/sweep")
async def admin_run_sweep():
    """Run one sweeper tick immediately."""
    report = await get_sweeper().tick()
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
