"""
=============================================================================
CARDWAR ZK - Schemas de la API
=============================================================================
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import JobStatus


class VerificationJobResponse(BaseModel):
    """Último estado conocido de un job del relayer."""
    job_id: str
    status: JobStatus
    aggregation_id: Optional[int] = None
    leaf: Optional[str] = None
    leaf_index: Optional[int] = None
    number_of_leaves: Optional[int] = None
    merkle_proof: Optional[List[str]] = None
    statement: Optional[str] = None
    tx_hash: Optional[str] = None
    poll_failures: int = 0
    next_poll_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AggregationVerificationResponse(BaseModel):
    contract_address: str
    domain_id: int
    aggregation_id: int
    leaf: str
    leaf_count: int
    leaf_index: int
    verified: Optional[bool] = None
    tx_hash: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ProofResponse(BaseModel):
    """Prueba de una sesión con su job y atestación."""
    proof_uuid: UUID
    circuit_uuid: Optional[UUID] = None
    player_address: Optional[str] = None
    proof_hex_hash: str
    public_inputs: List[str]
    public_inputs_hash: str
    bb_verification_status: Optional[bool] = None
    job_id: Optional[str] = None
    onchain_verification_status: Optional[bool] = None
    created_at: datetime
    verification_job: Optional[VerificationJobResponse] = None
    aggregation_verification: Optional[AggregationVerificationResponse] = None

    class Config:
        from_attributes = True


class GameSessionResponse(BaseModel):
    session_uuid: str
    circuit_uuids: List[str] = Field(default_factory=list)
    proof_uuids: List[str] = Field(default_factory=list)
    job_ids: List[str] = Field(default_factory=list)
    players: List[str] = Field(default_factory=list)
    score: List[str] = Field(default_factory=list)
    winner: List[str] = Field(default_factory=list)
    created_at: datetime
    ended_at: Optional[datetime] = None
    proofs: List[ProofResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ZKStatusResponse(BaseModel):
    """Estado del subsistema de pruebas."""
    tracking_enabled: bool
    relayer_enabled: bool
    onchain_enabled: bool
    prover_enabled: bool
    reconciler_started: bool
    reconcile_in_progress: bool
    pending_proof_tasks: int


class ReconcileResponse(BaseModel):
    skipped: bool
    polled: int
    failed: int
    aggregated_jobs: List[str]
    sessions: List[str]
    attestation_attempts: int
