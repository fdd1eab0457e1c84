# dineflow/main.py
"""
DineFlow - Motor de Facturación de Suscripciones
Main Application Entry Point
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dineflow.api.v1.api import api_router
from dineflow.core.config import settings
from dineflow.core.database import init_db
from dineflow.core.exceptions import BillingError
from dineflow.core.logging_config import setup_logging

from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)


# ========================================
# LIFESPAN EVENT
# ========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup y shutdown events"""

    # ===== STARTUP =====
    setup_logging()
    init_db()
    logger.info("=" * 60)
    logger.info(f"🚀 {settings.PROJECT_NAME} iniciado ({settings.ENVIRONMENT})")
    logger.info(f"💳 Pasarela: {settings.PAYMENT_GATEWAY}")
    logger.info("=" * 60)

    yield

    # ===== SHUTDOWN =====
    logger.info("👋 Servidor detenido")


# ========================================
# CREAR APP
# ========================================
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)


# ========================================
# MIDDLEWARE - CORS
# ========================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ========================================
# ERRORES DE DOMINIO
# ========================================
@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=int(exc.status_code), content=exc.to_dict())


# ========================================
# ROUTERS API (prefix /api/v1)
# ========================================
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health():
    return {"status": "ok", "version": settings.VERSION}
