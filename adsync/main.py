"""
Amazon Ads Sync Engine - FastAPI Backend
Mirrors the advertising account into PostgreSQL and applies every change
through one safety-checked, audited mutation path.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from adsync.config import get_settings
from adsync.database import init_db, check_db_connection
from adsync.auth import AgentAPIError, require_auth
from adsync.routers import agent, audit, credentials, cron, rules, settings as settings_router, sync

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()

AGENT_PREFIX = "/api/agent"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Amazon Ads Sync Engine...")
    try:
        await init_db()
        logger.info("Database initialized - all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Amazon Ads Sync Engine",
    description="Campaign sync and safe mutations for Amazon Ads",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Agent envelope errors ────────────────────────────────────────────

@app.exception_handler(AgentAPIError)
async def agent_error_handler(request: Request, exc: AgentAPIError):
    return JSONResponse(status_code=exc.status_code, content=agent.api_error_body(exc.code, exc.message))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if request.url.path.startswith(AGENT_PREFIX):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request body"
        return JSONResponse(status_code=400, content=agent.api_error_body("INVALID_INPUT", message))
    return await request_validation_exception_handler(request, exc)


# ── Register Routers ─────────────────────────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"], dependencies=_auth)
app.include_router(rules.router, prefix="/api/rules", tags=["Automation Rules"], dependencies=_auth)
app.include_router(audit.router, prefix="/api/audit", tags=["Audit Log"], dependencies=_auth)
app.include_router(settings_router.router, prefix="/api/settings", tags=["Settings"], dependencies=_auth)
app.include_router(credentials.router, prefix="/api/credentials", tags=["Credentials"], dependencies=_auth)
app.include_router(agent.router, prefix=AGENT_PREFIX, tags=["Agent API"])  # X-Agent-Key
app.include_router(cron.router, prefix="/api")  # No auth - uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Amazon Ads Sync Engine",
        "database": "connected" if db_ok else "disconnected",
    }
