"""
=============================================================================
CARDWAR ZK - Endpoints de Tracking
=============================================================================
API REST de solo lectura sobre el pipeline de pruebas, más un disparo
manual del Reconciler.
=============================================================================
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from .pipeline import ZKPipeline
from .schemas import (
    GameSessionResponse,
    ReconcileResponse,
    VerificationJobResponse,
    ZKStatusResponse,
)

router = APIRouter(prefix="/zk", tags=["ZK"])


def get_pipeline(request: Request) -> ZKPipeline:
    """El pipeline vive en app.state, creado por el lifespan."""
    pipeline = getattr(request.app.state, "zk", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="ZK pipeline not ready")
    return pipeline


# =============================================================================
# ENDPOINT: ESTADO
# =============================================================================

@router.get("/status", response_model=ZKStatusResponse)
async def zk_status(pipeline: ZKPipeline = Depends(get_pipeline)):
    reconciler = pipeline.reconciler
    return ZKStatusResponse(
        tracking_enabled=pipeline.store.enabled,
        relayer_enabled=pipeline.relayer is not None,
        onchain_enabled=pipeline.attestor is not None and pipeline.attestor.configured,
        prover_enabled=pipeline.submitter is not None,
        reconciler_started=reconciler is not None and reconciler.started,
        reconcile_in_progress=reconciler is not None and reconciler.running,
        pending_proof_tasks=pipeline.pending_tasks,
    )


# =============================================================================
# ENDPOINTS: CONSULTAS
# =============================================================================

@router.get("/sessions/{session_uuid}", response_model=GameSessionResponse)
async def get_session(session_uuid: str, pipeline: ZKPipeline = Depends(get_pipeline)):
    """Sesión con sus pruebas, jobs y atestaciones."""
    session = await pipeline.store.get_session(session_uuid)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("/jobs/{job_id}", response_model=VerificationJobResponse)
async def get_job(job_id: str, pipeline: ZKPipeline = Depends(get_pipeline)):
    job = await pipeline.store.get_verification_job_row(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# =============================================================================
# ENDPOINT: RECONCILIACIÓN MANUAL
# =============================================================================

@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(pipeline: ZKPipeline = Depends(get_pipeline)):
    """
    Ejecuta una pasada del Reconciler ahora. Si ya hay una en curso la
    respuesta llega con skipped=true.
    """
    if pipeline.reconciler is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Reconciler disabled")
    report = await pipeline.reconciler.reconcile_once()
    return ReconcileResponse(**asdict(report))
