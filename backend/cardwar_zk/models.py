"""
=============================================================================
CARDWAR ZK - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Bitácora persistente del ciclo de vida de las pruebas de equidad:
circuitos registrados, pruebas generadas, trabajos del relayer,
verificaciones de agregación on-chain y sesiones de juego.

Principios de Diseño:
- Verdad Externa: verification_jobs es un log del último estado observado
  en el relayer, no un diff contra el estado previo
- Idempotencia: toda escritura repetible se hace con upsert por clave natural
- Solo Crecimiento: las columnas arreglo de game_sessions nunca pierden valores
=============================================================================
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional, List
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .utils import normalize_public_inputs


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class CircuitKind(str, PyEnum):
    """Circuitos Noir usados por el juego."""
    SHUFFLE = "shuffle"  # Barajado del mazo
    DEAL = "deal"        # Reparto de cartas


class JobStatus(str, PyEnum):
    """
    Estados de un trabajo de verificación en el relayer.
    Queued -> Submitted -> Valid -> AggregationPending ->
    (AggregationPublished -> IncludedInBlock ->)? Aggregated | Failed
    """
    QUEUED = "Queued"
    SUBMITTED = "Submitted"
    VALID = "Valid"
    AGGREGATION_PENDING = "AggregationPending"
    AGGREGATION_PUBLISHED = "AggregationPublished"
    INCLUDED_IN_BLOCK = "IncludedInBlock"
    AGGREGATED = "Aggregated"
    FINALIZED = "Finalized"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


# Solo estos dos estados detienen el polling
TERMINAL_JOB_STATUSES = frozenset({JobStatus.AGGREGATED, JobStatus.FAILED})


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB en PostgreSQL, JSON genérico en el resto (SQLite en pruebas)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
TextArray = JSON().with_variant(ARRAY(Text), "postgresql")


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: GAME_SESSIONS (Índice por Partida)
# =============================================================================

class GameSession(Base):
    """
    Índice de todo lo generado durante una partida.

    Las columnas arreglo solo crecen y no repiten valores; el TrackingStore
    es el único que las modifica.
    """
    __tablename__ = "game_sessions"

    session_uuid: Mapped[str] = mapped_column(String(64), primary_key=True)

    circuit_uuids: Mapped[List[str]] = mapped_column(TextArray, default=list, nullable=False)
    proof_uuids: Mapped[List[str]] = mapped_column(TextArray, default=list, nullable=False)
    job_ids: Mapped[List[str]] = mapped_column(TextArray, default=list, nullable=False)

    # Direcciones de wallet en minúsculas
    players: Mapped[List[str]] = mapped_column(TextArray, default=list, nullable=False)
    score: Mapped[List[str]] = mapped_column(TextArray, default=list, nullable=False)
    winner: Mapped[List[str]] = mapped_column(TextArray, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    proofs: Mapped[List["ProofRecord"]] = relationship(back_populates="session")


# =============================================================================
# TABLA: CIRCUITS (Configuración de Circuitos)
# =============================================================================

class CircuitSetup(Base):
    """
    Circuito compilado y su llave de verificación registrada en el relayer.

    UNICIDAD: (kind, artifact_sha256). Es el único punto de arbitraje cuando
    varios procesos registran el mismo circuito a la vez.
    """
    __tablename__ = "circuits"

    circuit_uuid: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4
    )

    kind: Mapped[CircuitKind] = mapped_column(
        Enum(CircuitKind, name="circuit_kind", values_callable=_enum_values),
        nullable=False
    )

    compiled_circuit: Mapped[dict] = mapped_column(JSONDocument, nullable=False)
    vkey_hex: Mapped[str] = mapped_column(Text, nullable=False)

    # Nulo solo hasta que se complete un registro que perdió la carrera
    vk_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # SHA-256 del artefacto compilado en disco
    artifact_sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint("kind", "artifact_sha256", name="uq_circuits_kind_artifact"),
        Index("idx_circuits_kind_active", "kind", "is_active"),
    )


# =============================================================================
# TABLA: VERIFICATION_JOBS (Log del Relayer)
# =============================================================================

class VerificationJob(Base):
    """
    Último estado conocido de un trabajo del relayer.

    Cada poll exitoso sobrescribe la fila completa (upsert por job_id).
    next_poll_at hace que el loop vivo y el Reconciler compartan el mismo
    camino: ambos solo avanzan trabajos elegibles.
    """
    __tablename__ = "verification_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", values_callable=_enum_values),
        nullable=False
    )

    # ==========================================================================
    # DATOS DE AGREGACIÓN
    # ==========================================================================
    aggregation_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    aggregation_response: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)
    leaf: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    leaf_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    number_of_leaves: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    merkle_proof: Mapped[Optional[List[str]]] = mapped_column(TextArray, nullable=True)
    statement: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ==========================================================================
    # ESTADO DEL POLLING
    # ==========================================================================
    poll_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_poll_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )

    proofs: Mapped[List["ProofRecord"]] = relationship(back_populates="verification_job")

    __table_args__ = (
        Index("idx_verification_jobs_status", "status"),
        Index("idx_verification_jobs_aggregation_id", "aggregation_id"),
        Index("idx_verification_jobs_updated_at", "updated_at"),
    )


# =============================================================================
# TABLA: PROOFS (Pruebas Generadas)
# =============================================================================

class ProofRecord(Base):
    """
    Prueba UltraHonk generada durante una partida.

    Se crea al generar, se completa al enviar (job_id, payloads) y al
    resolver la atestación (onchain_verification_status):
    - None: desconocido
    - True: verificada on-chain
    - False: rechazo definitivo (job Failed, optimistic o verify negativo)
    """
    __tablename__ = "proofs"

    proof_uuid: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4
    )

    session_uuid: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("game_sessions.session_uuid", ondelete="SET NULL"),
        nullable=True
    )
    circuit_uuid: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("circuits.circuit_uuid"),
        nullable=True
    )
    player_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    # ==========================================================================
    # DATOS DE LA PRUEBA
    # ==========================================================================
    proof_hex: Mapped[str] = mapped_column(Text, nullable=False)
    proof_hex_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    public_inputs: Mapped[List[str]] = mapped_column(TextArray, nullable=False)
    public_inputs_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    bb_verification_status: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # ==========================================================================
    # ENVÍO Y ATESTACIÓN
    # ==========================================================================
    job_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("verification_jobs.job_id"),
        nullable=True
    )
    onchain_verification_status: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    proof_payload_json: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)
    submit_response_json: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )

    session: Mapped[Optional["GameSession"]] = relationship(back_populates="proofs")
    verification_job: Mapped[Optional["VerificationJob"]] = relationship(back_populates="proofs")
    aggregation_verification: Mapped[Optional["AggregationVerification"]] = relationship(
        back_populates="proof",
        uselist=False
    )

    __table_args__ = (
        Index("idx_proofs_session_uuid", "session_uuid"),
        Index("idx_proofs_job_id", "job_id"),
        Index("idx_proofs_hash", "proof_hex_hash"),
    )

    @staticmethod
    def sha256_hex(value: str) -> str:
        return hashlib.sha256(value.encode()).hexdigest()

    def compute_hashes(self) -> None:
        """
        Normaliza los public inputs a 0x-hex y recalcula ambos hashes.
        El hash de inputs se calcula sobre el JSON compacto de la lista.
        """
        self.public_inputs = normalize_public_inputs(self.public_inputs or [])
        self.proof_hex_hash = self.sha256_hex(self.proof_hex)
        self.public_inputs_hash = self.sha256_hex(
            json.dumps(self.public_inputs, separators=(",", ":"))
        )


# =============================================================================
# TABLA: AGGREGATION_VERIFICATIONS (Atestaciones On-Chain)
# =============================================================================

class AggregationVerification(Base):
    """
    Resultado del primer intento completo de atestación de una prueba.
    Una sola fila por prueba (proof_uuid único).
    """
    __tablename__ = "aggregation_verifications"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4
    )

    proof_uuid: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("proofs.proof_uuid", ondelete="CASCADE"),
        nullable=False
    )

    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    domain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    aggregation_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    leaf: Mapped[str] = mapped_column(Text, nullable=False)
    merkle_path: Mapped[List[str]] = mapped_column(TextArray, nullable=False)
    leaf_count: Mapped[int] = mapped_column(BigInteger, nullable=False)
    leaf_index: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verified: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )

    proof: Mapped["ProofRecord"] = relationship(back_populates="aggregation_verification")

    __table_args__ = (
        UniqueConstraint("proof_uuid", name="uq_aggregation_verifications_proof"),
        Index("idx_aggregation_verifications_domain_agg", "domain_id", "aggregation_id"),
    )


# =============================================================================
# EVENT LISTENERS PARA INTEGRIDAD AUTOMÁTICA
# =============================================================================

@event.listens_for(ProofRecord, "before_insert")
def proof_before_insert(mapper, connection, target: ProofRecord):
    """Normaliza inputs y calcula los hashes antes de insertar."""
    target.compute_hashes()
