"""
ResQ - Emergency Incident Reporting and Dispatch

Run:
    uvicorn resq.main:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from resq import __version__
from resq.config import CORS_ORIGINS, LOG_LEVEL
from resq.database import engine, Base, session_scope
from resq.errors import ServiceError
from resq.incident_helpers import INCIDENT_SEQUENCE, ensure_sequence
from resq.routers import incidents, units, dispatch, auth, location, websocket

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("ResQ starting up...")
    Base.metadata.create_all(bind=engine)
    with session_scope() as db:
        ensure_sequence(db, INCIDENT_SEQUENCE)
    websocket.launch_listen_subscriber()
    yield
    # Shutdown
    await websocket.stop_listen_subscriber()
    logger.info("ResQ shutting down...")


app = FastAPI(
    title="ResQ API",
    description="Emergency incident reporting, de-duplication and unit dispatch",
    version=__version__,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # input/ctx may hold NaN or exception objects, neither is valid JSON
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning(f"Rejected {request.method} {request.url.path}: {len(errors)} validation error(s)")
    return JSONResponse(status_code=422, content={"detail": errors})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# Routers
app.include_router(incidents.router, prefix="/api/incidents", tags=["Incidents"])
app.include_router(units.router, prefix="/api/units", tags=["Units"])
app.include_router(dispatch.router, prefix="/api/dispatch", tags=["Dispatch"])
app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
app.include_router(location.router, prefix="/api/location", tags=["Location"])
app.include_router(websocket.router, tags=["WebSocket"])


@app.get("/")
async def root():
    return {"status": "ok", "service": "ResQ API", "version": __version__}


@app.get("/health")
async def health():
    return {"status": "healthy"}
