"""
=============================================================================
CARDWAR ZK - Punto de Entrada Principal (FastAPI)
=============================================================================
Servidor del subsistema de pruebas de equidad del juego de cartas.

Integra:
- FastAPI para la API REST de tracking
- Lifespan que arranca y detiene el Reconciler
- Middleware de seguridad y CORS
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import TrackingConfig
from .pipeline import ZKPipeline
from .prover import Prover
from .routes import router as zk_router

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    config: Optional[TrackingConfig] = None,
    prover: Optional[Prover] = None,
    pipeline: Optional[ZKPipeline] = None,
) -> FastAPI:
    """Crea la app. Sin pipeline explícito se construye desde el entorno."""

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Gestiona el ciclo de vida de la aplicación."""
        zk = pipeline or ZKPipeline.build(config or TrackingConfig.from_env(), prover=prover)
        app.state.zk = zk
        logger.info("[CARDWAR] Iniciando servidor...")
        await zk.start()
        yield
        logger.info("[CARDWAR] Cerrando servidor...")
        await zk.stop()

    app = FastAPI(
        title="CardWar ZK API",
        description="""
        ## Tracking de pruebas de equidad (Noir / UltraHonk)

        ### Ciclo de vida de una prueba:
        1. Generación y verificación local
        2. Envío al relayer → job
        3. Queued → Submitted → Valid → AggregationPending → Aggregated | Failed
        4. Atestación opcional en el contrato registry
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    # =========================================================================
    # ENDPOINTS - HEALTH
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Endpoint de health check para Docker y load balancers."""
        return {
            "status": "healthy",
            "service": "cardwar-zk",
            "version": VERSION,
            "timestamp": time.time(),
        }

    @app.get("/")
    async def root():
        return {
            "message": "CardWar ZK API",
            "docs": "/docs",
            "health": "/health",
            "version": VERSION,
        }

    app.include_router(zk_router, prefix="/api/v1")
    return app
