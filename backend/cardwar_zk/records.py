"""
=============================================================================
CARDWAR ZK - Estructuras de Datos
=============================================================================
Snapshots inmutables que cruzan las fronteras entre componentes. Nunca se
pasan objetos ORM fuera del TrackingStore.
=============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from .errors import RelayerResponseError
from .models import CircuitKind, JobStatus
from .utils import to_int_or_none


# =============================================================================
# CIRCUITOS
# =============================================================================

@dataclass(frozen=True)
class CircuitSetupPayload:
    """Datos para registrar un circuito."""
    kind: CircuitKind
    compiled_circuit: Dict[str, Any]
    verification_key_hex: str
    vk_hash: str
    artifact_sha256: str


@dataclass(frozen=True)
class CircuitSnapshot:
    """Fila persistida de circuits."""
    circuit_uuid: UUID
    kind: CircuitKind
    verification_key_hex: str
    vk_hash: Optional[str]
    artifact_sha256: str
    is_active: bool = True


@dataclass(frozen=True)
class ResolvedCircuit:
    """Resultado de CircuitRegistrar.ensure_circuit()."""
    kind: CircuitKind
    circuit_uuid: Optional[UUID]
    vk_hash: str
    verification_key_hex: str
    artifact_sha256: str


# =============================================================================
# PRUEBAS
# =============================================================================

@dataclass(frozen=True)
class ProofRecordPayload:
    session_uuid: str
    circuit_uuid: Optional[UUID]
    proof_hex: str
    public_inputs: List[str]
    bb_verification_status: bool
    player_address: Optional[str] = None


@dataclass(frozen=True)
class ProofLink:
    """Prueba vinculada a un job, con la sesión a la que pertenece."""
    proof_uuid: UUID
    session_uuid: Optional[str]
    job_id: Optional[str] = None


# =============================================================================
# TRABAJOS DEL RELAYER
# =============================================================================

@dataclass(frozen=True)
class AggregationProof:
    """Datos completos para verificar una hoja dentro de una agregación."""
    aggregation_id: int
    leaf: str
    merkle_path: List[str]
    leaf_count: int
    leaf_index: int


@dataclass(frozen=True)
class JobSnapshot:
    """Estado observado de un trabajo en el relayer."""
    job_id: str
    status: JobStatus
    aggregation_id: Optional[int] = None
    aggregation_response: Optional[Dict[str, Any]] = None
    leaf: Optional[str] = None
    leaf_index: Optional[int] = None
    number_of_leaves: Optional[int] = None
    merkle_proof: Optional[List[str]] = None
    statement: Optional[str] = None
    tx_hash: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_relayer(cls, job_id: str, data: Dict[str, Any]) -> "JobSnapshot":
        """
        Construye el snapshot desde GET /job-status.
        Un status ausente o desconocido es una respuesta inválida.
        """
        if not isinstance(data, dict):
            raise RelayerResponseError(f"Job status for {job_id} is not an object", body=data)
        try:
            status = JobStatus(data.get("status"))
        except ValueError:
            raise RelayerResponseError(
                f"Unknown job status for {job_id}: {data.get('status')!r}", body=data
            )

        details = data.get("aggregationDetails") or {}
        merkle_proof = details.get("merkleProof")
        return cls(
            job_id=job_id,
            status=status,
            aggregation_id=to_int_or_none(data.get("aggregationId")),
            aggregation_response=data,
            leaf=details.get("leaf"),
            leaf_index=to_int_or_none(details.get("leafIndex")),
            number_of_leaves=to_int_or_none(details.get("numberOfLeaves")),
            merkle_proof=list(merkle_proof) if isinstance(merkle_proof, list) else None,
            statement=data.get("statement"),
            tx_hash=data.get("txHash"),
        )

    def aggregation_proof(self) -> Optional[AggregationProof]:
        """
        Devuelve los datos de atestación solo si están completos:
        aggregation_id, leaf no vacío, path no vacío, leaf_count y leaf_index.
        """
        if (
            self.aggregation_id is None
            or not self.leaf
            or not self.merkle_proof
            or self.number_of_leaves is None
            or self.leaf_index is None
        ):
            return None
        return AggregationProof(
            aggregation_id=self.aggregation_id,
            leaf=self.leaf,
            merkle_path=list(self.merkle_proof),
            leaf_count=self.number_of_leaves,
            leaf_index=self.leaf_index,
        )


@dataclass(frozen=True)
class StaleJob:
    """Job no terminal elegible para reconciliación."""
    job_id: str
    status: JobStatus
    session_uuids: List[str] = field(default_factory=list)


# =============================================================================
# ATESTACIONES
# =============================================================================

@dataclass(frozen=True)
class AttestationCandidate:
    """Prueba de una sesión con job agregado y sin atestación registrada."""
    link: ProofLink
    snapshot: JobSnapshot


@dataclass(frozen=True)
class AggregationVerificationPayload:
    proof_uuid: UUID
    contract_address: str
    domain_id: int
    aggregation_id: int
    leaf: str
    merkle_path: List[str]
    leaf_count: int
    leaf_index: int
    verified: bool
    tx_hash: Optional[str] = None
