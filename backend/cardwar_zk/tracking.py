"""
=============================================================================
CARDWAR ZK - TrackingStore (Persistencia del Pipeline de Pruebas)
=============================================================================
Única puerta de acceso a las tablas de tracking. Todas las escrituras
repetibles son upserts idempotentes:
- circuits: por (kind, artifact_sha256), solo rellena vk_hash faltante
- verification_jobs: por job_id, un estado terminal nunca se reemplaza
- aggregation_verifications: una fila por prueba
- game_sessions: arreglos que solo crecen, sin duplicados

Los métodos lanzan excepciones de SQLAlchemy ante fallos; los llamadores
las encapsulan con never_break_gameplay().
=============================================================================
"""

import functools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import selectinload

from .database import create_session_factory
from .models import (
    AggregationVerification,
    CircuitKind,
    CircuitSetup,
    GameSession,
    JobStatus,
    ProofRecord,
    TERMINAL_JOB_STATUSES,
    VerificationJob,
)
from .records import (
    AggregationVerificationPayload,
    AttestationCandidate,
    CircuitSetupPayload,
    CircuitSnapshot,
    JobSnapshot,
    ProofLink,
    ProofRecordPayload,
    StaleJob,
)
from .utils import sha256_hex

logger = logging.getLogger(__name__)

SESSION_ARRAY_COLUMNS = frozenset({"circuit_uuids", "proof_uuids", "job_ids"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _append_unique(existing: Optional[Iterable[str]], values: Iterable[str]) -> List[str]:
    merged = list(existing or [])
    for value in values:
        if value not in merged:
            merged.append(value)
    return merged


def _when_enabled(default_factory: Callable[[], Any] = lambda: None):
    """Con TRACKING_ENABLED=false el método no toca la base de datos."""
    def decorator(method):
        @functools.wraps(method)
        async def wrapper(self, *args, **kwargs):
            if not self.enabled:
                return default_factory()
            return await method(self, *args, **kwargs)
        return wrapper
    return decorator


def _circuit_snapshot(row: CircuitSetup) -> CircuitSnapshot:
    return CircuitSnapshot(
        circuit_uuid=row.circuit_uuid,
        kind=CircuitKind(row.kind),
        verification_key_hex=row.vkey_hex,
        vk_hash=row.vk_hash,
        artifact_sha256=row.artifact_sha256,
        is_active=row.is_active,
    )


def _job_snapshot(row: VerificationJob) -> JobSnapshot:
    return JobSnapshot(
        job_id=row.job_id,
        status=JobStatus(row.status),
        aggregation_id=row.aggregation_id,
        aggregation_response=row.aggregation_response,
        leaf=row.leaf,
        leaf_index=row.leaf_index,
        number_of_leaves=row.number_of_leaves,
        merkle_proof=list(row.merkle_proof) if row.merkle_proof else None,
        statement=row.statement,
        tx_hash=row.tx_hash,
    )


class TrackingStore:
    """Persistencia de circuitos, pruebas, trabajos, atestaciones y sesiones."""

    def __init__(self, engine: AsyncEngine, enabled: bool = True):
        self._engine = engine
        self._sessions = create_session_factory(engine)
        self._dialect = engine.dialect.name
        self.enabled = enabled

    def _insert(self, model):
        """INSERT con soporte ON CONFLICT del dialecto activo."""
        if self._dialect == "postgresql":
            return pg_insert(model)
        if self._dialect == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"Upserts are not supported on dialect {self._dialect}")

    # =========================================================================
    # GAME SESSIONS
    # =========================================================================

    async def _ensure_session_row(self, db: AsyncSession, session_uuid: str) -> None:
        await db.execute(
            self._insert(GameSession)
            .values(session_uuid=session_uuid)
            .on_conflict_do_nothing(index_elements=["session_uuid"])
        )

    async def _append(self, db: AsyncSession, session_uuid: str, column: str, values: Sequence[str]) -> None:
        row = await db.get(GameSession, session_uuid, with_for_update=True, populate_existing=True)
        if row is None:
            return
        current = list(getattr(row, column) or [])
        merged = _append_unique(current, values)
        if merged != current:
            setattr(row, column, merged)

    @_when_enabled()
    async def ensure_game_session(self, session_uuid: str, players: Iterable[str] = ()) -> None:
        """Crea la sesión si no existe y agrega jugadores nuevos (en minúsculas)."""
        if not session_uuid:
            return
        normalized = [player.lower() for player in players if player]
        async with self._sessions.begin() as db:
            await self._ensure_session_row(db, session_uuid)
            if normalized:
                await self._append(db, session_uuid, "players", normalized)

    @_when_enabled()
    async def append_session_value(self, session_uuid: str, column: str, value: Any) -> None:
        if column not in SESSION_ARRAY_COLUMNS:
            raise ValueError(f"Invalid session array column: {column}")
        async with self._sessions.begin() as db:
            await self._ensure_session_row(db, session_uuid)
            await self._append(db, session_uuid, column, [str(value)])

    @_when_enabled()
    async def record_session_result(
        self,
        session_uuid: str,
        score: Iterable[Any] = (),
        winner: Iterable[str] = (),
        ended_at: Optional[datetime] = None,
    ) -> None:
        """Registra marcador y ganador al cerrar la partida. ended_at se fija una vez."""
        async with self._sessions.begin() as db:
            await self._ensure_session_row(db, session_uuid)
            await self._append(db, session_uuid, "score", [str(value) for value in score])
            await self._append(db, session_uuid, "winner", [address.lower() for address in winner])
            row = await db.get(GameSession, session_uuid)
            if row is not None and row.ended_at is None:
                row.ended_at = ended_at or _utcnow()

    @_when_enabled()
    async def get_session(self, session_uuid: str) -> Optional[GameSession]:
        """Sesión con sus pruebas, jobs y atestaciones cargados (para la API)."""
        stmt = (
            select(GameSession)
            .where(GameSession.session_uuid == session_uuid)
            .options(
                selectinload(GameSession.proofs).selectinload(ProofRecord.verification_job),
                selectinload(GameSession.proofs).selectinload(ProofRecord.aggregation_verification),
            )
        )
        async with self._sessions() as db:
            return (await db.execute(stmt)).scalar_one_or_none()

    # =========================================================================
    # CIRCUITS
    # =========================================================================

    @_when_enabled()
    async def get_active_circuit(
        self,
        kind: CircuitKind,
        artifact_sha256: Optional[str] = None,
    ) -> Optional[CircuitSnapshot]:
        """
        Circuito activo para `kind`. Con varias filas activas gana la más
        reciente; con artifact_sha256 se exige el mismo artefacto.
        """
        stmt = select(CircuitSetup).where(
            CircuitSetup.kind == CircuitKind(kind),
            CircuitSetup.is_active.is_(True),
        )
        if artifact_sha256:
            stmt = stmt.where(CircuitSetup.artifact_sha256 == artifact_sha256)
        stmt = stmt.order_by(CircuitSetup.created_at.desc()).limit(1)

        async with self._sessions() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _circuit_snapshot(row) if row is not None else None

    @_when_enabled()
    async def upsert_circuit_setup(
        self,
        payload: CircuitSetupPayload,
        session_uuid: Optional[str] = None,
    ) -> Optional[CircuitSnapshot]:
        """
        Upsert por (kind, artifact_sha256). Una fila existente solo se
        actualiza si aún no tiene vk_hash; en cualquier otro caso se devuelve
        la fila del ganador tal cual.
        """
        stmt = self._insert(CircuitSetup).values(
            circuit_uuid=uuid4(),
            kind=CircuitKind(payload.kind),
            compiled_circuit=payload.compiled_circuit,
            vkey_hex=payload.verification_key_hex,
            vk_hash=payload.vk_hash,
            artifact_sha256=payload.artifact_sha256,
            is_active=True,
            created_at=_utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["kind", "artifact_sha256"],
            set_={
                "vkey_hex": stmt.excluded.vkey_hex,
                "vk_hash": stmt.excluded.vk_hash,
            },
            where=CircuitSetup.vk_hash.is_(None),
        )

        async with self._sessions.begin() as db:
            await db.execute(stmt)
            row = (
                await db.execute(
                    select(CircuitSetup).where(
                        CircuitSetup.kind == CircuitKind(payload.kind),
                        CircuitSetup.artifact_sha256 == payload.artifact_sha256,
                    )
                )
            ).scalar_one()
            snapshot = _circuit_snapshot(row)
            if session_uuid:
                await self._ensure_session_row(db, session_uuid)
                await self._append(db, session_uuid, "circuit_uuids", [str(snapshot.circuit_uuid)])
        return snapshot

    @_when_enabled(list)
    async def list_circuits(self, kind: CircuitKind) -> List[CircuitSnapshot]:
        stmt = (
            select(CircuitSetup)
            .where(CircuitSetup.kind == CircuitKind(kind))
            .order_by(CircuitSetup.created_at.asc())
        )
        async with self._sessions() as db:
            return [_circuit_snapshot(row) for row in (await db.execute(stmt)).scalars()]

    # =========================================================================
    # PROOFS
    # =========================================================================

    @_when_enabled()
    async def create_proof_record(self, payload: ProofRecordPayload) -> Optional[UUID]:
        """Inserta la prueba (hashes vía before_insert) y la agrega a la sesión."""
        async with self._sessions.begin() as db:
            await self._ensure_session_row(db, payload.session_uuid)
            record = ProofRecord(
                session_uuid=payload.session_uuid,
                circuit_uuid=payload.circuit_uuid,
                player_address=payload.player_address.lower() if payload.player_address else None,
                proof_hex=payload.proof_hex,
                public_inputs=list(payload.public_inputs),
                bb_verification_status=payload.bb_verification_status,
            )
            db.add(record)
            await db.flush()
            await self._append(db, payload.session_uuid, "proof_uuids", [str(record.proof_uuid)])
            return record.proof_uuid

    @_when_enabled()
    async def find_proof_uuid(self, session_uuid: str, proof_hex: str) -> Optional[UUID]:
        """Prueba más reciente de la sesión con el mismo proof_hex."""
        stmt = (
            select(ProofRecord.proof_uuid)
            .where(
                ProofRecord.session_uuid == session_uuid,
                ProofRecord.proof_hex_hash == sha256_hex(proof_hex),
            )
            .order_by(ProofRecord.created_at.desc())
            .limit(1)
        )
        async with self._sessions() as db:
            return (await db.execute(stmt)).scalar_one_or_none()

    @_when_enabled()
    async def attach_proof_submission(
        self,
        session_uuid: Optional[str],
        proof_uuid: UUID,
        job_id: str,
        proof_payload: Dict[str, Any],
        submit_response: Dict[str, Any],
    ) -> None:
        """Vincula la prueba con su job. El job ya debe existir."""
        async with self._sessions.begin() as db:
            await db.execute(
                update(ProofRecord)
                .where(ProofRecord.proof_uuid == proof_uuid)
                .values(
                    job_id=job_id,
                    proof_payload_json=proof_payload,
                    submit_response_json=submit_response,
                    updated_at=_utcnow(),
                )
            )
            if session_uuid:
                await self._ensure_session_row(db, session_uuid)
                await self._append(db, session_uuid, "job_ids", [job_id])

    @_when_enabled()
    async def set_proof_onchain_verification_status(self, proof_uuid: UUID, verified: Optional[bool]) -> None:
        if not proof_uuid:
            return
        async with self._sessions.begin() as db:
            await db.execute(
                update(ProofRecord)
                .where(ProofRecord.proof_uuid == proof_uuid)
                .values(onchain_verification_status=verified, updated_at=_utcnow())
            )

    @_when_enabled(list)
    async def get_proofs_for_job(self, job_id: str) -> List[ProofLink]:
        stmt = (
            select(ProofRecord.proof_uuid, ProofRecord.session_uuid)
            .where(ProofRecord.job_id == job_id)
            .order_by(ProofRecord.created_at.asc())
        )
        async with self._sessions() as db:
            return [
                ProofLink(proof_uuid=proof_uuid, session_uuid=session_uuid, job_id=job_id)
                for proof_uuid, session_uuid in (await db.execute(stmt)).all()
            ]

    # =========================================================================
    # VERIFICATION JOBS
    # =========================================================================

    @_when_enabled()
    async def upsert_verification_job(
        self,
        snapshot: JobSnapshot,
        next_poll_at: Optional[datetime] = None,
    ) -> Optional[JobStatus]:
        """
        Persiste el snapshot completo observado. Si la fila ya está en un
        estado terminal distinto, se conserva. Devuelve el estado persistido.
        """
        now = _utcnow()
        values = {
            "status": snapshot.status,
            "aggregation_id": snapshot.aggregation_id,
            "aggregation_response": snapshot.aggregation_response,
            "leaf": snapshot.leaf,
            "leaf_index": snapshot.leaf_index,
            "number_of_leaves": snapshot.number_of_leaves,
            "merkle_proof": snapshot.merkle_proof,
            "statement": snapshot.statement,
            "tx_hash": snapshot.tx_hash,
            "poll_failures": 0,
            "next_poll_at": next_poll_at,
            "updated_at": now,
        }
        stmt = self._insert(VerificationJob).values(job_id=snapshot.job_id, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["job_id"],
            set_={key: getattr(stmt.excluded, key) for key in values},
            where=or_(
                VerificationJob.status.not_in(list(TERMINAL_JOB_STATUSES)),
                VerificationJob.status == stmt.excluded.status,
            ),
        )

        async with self._sessions.begin() as db:
            await db.execute(stmt)
            persisted = (
                await db.execute(
                    select(VerificationJob.status).where(VerificationJob.job_id == snapshot.job_id)
                )
            ).scalar_one()

        persisted = JobStatus(persisted)
        if persisted != snapshot.status:
            logger.warning(
                "[ZK: JOB] job %s already terminal as %s, ignoring observed %s",
                snapshot.job_id, persisted.value, snapshot.status.value,
            )
        return persisted

    @_when_enabled()
    async def record_poll_failure(self, job_id: str, failures: int, next_poll_at: Optional[datetime] = None) -> None:
        """Registra fallos de transporte consecutivos; no cuenta como observación."""
        async with self._sessions.begin() as db:
            await db.execute(
                update(VerificationJob)
                .where(
                    VerificationJob.job_id == job_id,
                    VerificationJob.status.not_in(list(TERMINAL_JOB_STATUSES)),
                )
                .values(poll_failures=failures, next_poll_at=next_poll_at)
            )

    @_when_enabled()
    async def increment_poll_failures(self, job_id: str) -> None:
        """Suma un fallo de transporte visto fuera del loop vivo (p. ej. el Reconciler)."""
        async with self._sessions.begin() as db:
            await db.execute(
                update(VerificationJob)
                .where(
                    VerificationJob.job_id == job_id,
                    VerificationJob.status.not_in(list(TERMINAL_JOB_STATUSES)),
                )
                .values(poll_failures=VerificationJob.poll_failures + 1)
            )

    @_when_enabled()
    async def get_verification_job(self, job_id: str) -> Optional[JobSnapshot]:
        async with self._sessions() as db:
            row = await db.get(VerificationJob, job_id)
            return _job_snapshot(row) if row is not None else None

    @_when_enabled()
    async def get_verification_job_row(self, job_id: str) -> Optional[VerificationJob]:
        async with self._sessions() as db:
            return await db.get(VerificationJob, job_id)

    @_when_enabled(list)
    async def get_stale_jobs_for_reconciliation(
        self,
        batch_size: int,
        stale_seconds: float,
        now: Optional[datetime] = None,
    ) -> List[StaleJob]:
        """
        Jobs no terminales sin actualización desde hace `stale_seconds` y cuyo
        next_poll_at ya pasó, los más antiguos primero.
        """
        now = now or _utcnow()
        cutoff = now - timedelta(seconds=stale_seconds)
        stmt = (
            select(VerificationJob.job_id, VerificationJob.status)
            .where(
                VerificationJob.status.not_in(list(TERMINAL_JOB_STATUSES)),
                VerificationJob.updated_at < cutoff,
                or_(
                    VerificationJob.next_poll_at.is_(None),
                    VerificationJob.next_poll_at <= now,
                ),
            )
            .order_by(VerificationJob.updated_at.asc())
            .limit(max(int(batch_size), 0))
        )

        async with self._sessions() as db:
            jobs = (await db.execute(stmt)).all()
            if not jobs:
                return []
            job_ids = [job_id for job_id, _ in jobs]
            links = (
                await db.execute(
                    select(ProofRecord.job_id, ProofRecord.session_uuid)
                    .where(ProofRecord.job_id.in_(job_ids))
                )
            ).all()

        sessions: Dict[str, List[str]] = {}
        for job_id, session_uuid in links:
            if session_uuid:
                sessions[job_id] = _append_unique(sessions.get(job_id), [session_uuid])
        return [
            StaleJob(job_id=job_id, status=JobStatus(status), session_uuids=sessions.get(job_id, []))
            for job_id, status in jobs
        ]

    # =========================================================================
    # AGGREGATION VERIFICATIONS
    # =========================================================================

    @_when_enabled(lambda: False)
    async def has_aggregation_verification(self, proof_uuid: UUID) -> bool:
        stmt = select(AggregationVerification.id).where(AggregationVerification.proof_uuid == proof_uuid)
        async with self._sessions() as db:
            return (await db.execute(stmt)).first() is not None

    @_when_enabled(list)
    async def get_attestation_candidates(self, session_uuid: str) -> List[AttestationCandidate]:
        """Pruebas de la sesión con job Aggregated y sin atestación registrada."""
        stmt = (
            select(ProofRecord.proof_uuid, ProofRecord.session_uuid, VerificationJob)
            .join(VerificationJob, ProofRecord.job_id == VerificationJob.job_id)
            .outerjoin(AggregationVerification, AggregationVerification.proof_uuid == ProofRecord.proof_uuid)
            .where(
                ProofRecord.session_uuid == session_uuid,
                VerificationJob.status == JobStatus.AGGREGATED,
                AggregationVerification.id.is_(None),
            )
            .order_by(ProofRecord.created_at.asc())
        )
        async with self._sessions() as db:
            return [
                AttestationCandidate(
                    link=ProofLink(proof_uuid=proof_uuid, session_uuid=session, job_id=job.job_id),
                    snapshot=_job_snapshot(job),
                )
                for proof_uuid, session, job in (await db.execute(stmt)).all()
            ]

    @_when_enabled(list)
    async def get_sessions_pending_attestation(self, limit: int) -> List[str]:
        """
        Sesiones con pruebas cuyo job está Aggregated con datos completos,
        sin fila de atestación y con estado on-chain aún desconocido. Es
        el camino de reintento de atestaciones que fallaron por error.
        """
        stmt = (
            select(ProofRecord.session_uuid)
            .join(VerificationJob, ProofRecord.job_id == VerificationJob.job_id)
            .outerjoin(AggregationVerification, AggregationVerification.proof_uuid == ProofRecord.proof_uuid)
            .where(
                ProofRecord.session_uuid.is_not(None),
                ProofRecord.onchain_verification_status.is_(None),
                VerificationJob.status == JobStatus.AGGREGATED,
                VerificationJob.aggregation_id.is_not(None),
                VerificationJob.leaf.is_not(None),
                VerificationJob.leaf_index.is_not(None),
                VerificationJob.number_of_leaves.is_not(None),
                AggregationVerification.id.is_(None),
            )
            .group_by(ProofRecord.session_uuid)
            .order_by(func.min(VerificationJob.updated_at).asc())
            .limit(max(int(limit), 0))
        )
        async with self._sessions() as db:
            return list((await db.execute(stmt)).scalars())

    @_when_enabled(lambda: False)
    async def record_attestation(self, payload: AggregationVerificationPayload) -> bool:
        """
        Escribe la atestación de una prueba y su estado on-chain en una sola
        transacción. Devuelve False si la prueba ya tenía atestación.
        """
        now = _utcnow()
        stmt = (
            self._insert(AggregationVerification)
            .values(
                id=uuid4(),
                proof_uuid=payload.proof_uuid,
                contract_address=payload.contract_address,
                domain_id=payload.domain_id,
                aggregation_id=payload.aggregation_id,
                leaf=payload.leaf,
                merkle_path=list(payload.merkle_path),
                leaf_count=payload.leaf_count,
                leaf_index=payload.leaf_index,
                verified=payload.verified,
                tx_hash=payload.tx_hash,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["proof_uuid"])
        )
        async with self._sessions.begin() as db:
            result = await db.execute(stmt)
            inserted = result.rowcount == 1
            if inserted:
                await db.execute(
                    update(ProofRecord)
                    .where(ProofRecord.proof_uuid == payload.proof_uuid)
                    .values(onchain_verification_status=payload.verified, updated_at=now)
                )
        return inserted
