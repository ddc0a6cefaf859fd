"""
=============================================================================
CARDWAR ZK - JobTracker (Máquina de Estados de Trabajos)
=============================================================================
Queued -> Submitted -> Valid -> AggregationPending ->
(AggregationPublished -> IncludedInBlock ->)? Aggregated | Failed

advance() es el único paso reanudable: consulta el relayer, persiste el
snapshot completo junto con el próximo poll elegible y procesa el estado
terminal. El loop en vivo, la recuperación tras reinicio y el Reconciler
usan el mismo camino.
=============================================================================
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Set
from uuid import UUID

from .errors import RelayerError
from .models import JobStatus
from .onchain import AttestationResult, OnchainAttestor
from .records import AggregationProof, AggregationVerificationPayload, JobSnapshot, ProofLink
from .relayer import RelayerClient
from .results import never_break_gameplay
from .tracking import TrackingStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobTracker:
    """Sigue trabajos del relayer hasta un estado terminal."""

    def __init__(
        self,
        store: TrackingStore,
        relayer: RelayerClient,
        attestor: Optional[OnchainAttestor] = None,
        poll_interval: float = 20.0,
        transient_retry_delay: float = 10.0,
        max_transient_failures: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.relayer = relayer
        self.attestor = attestor
        self.poll_interval = poll_interval
        self.transient_retry_delay = transient_retry_delay
        self.max_transient_failures = max_transient_failures
        self._sleep = sleep
        self._clock = clock
        self._attesting: Set[UUID] = set()

    # =========================================================================
    # PASO REANUDABLE
    # =========================================================================

    async def advance(self, job_id: str, attest: bool = True) -> JobSnapshot:
        """
        Un poll: GET al relayer, upsert incondicional del snapshot y manejo
        del estado terminal. Con attest=False no se intenta la atestación
        (el Reconciler la hace por sesión).

        Raises:
            RelayerError: fallo de transporte o respuesta inválida
        """
        snapshot = await self.relayer.get_job_status(job_id)
        next_poll_at = None if snapshot.is_terminal else self._clock() + timedelta(seconds=self.poll_interval)

        persisted = await never_break_gameplay(
            f"persist job {job_id}",
            self.store.upsert_verification_job(snapshot, next_poll_at=next_poll_at),
        )
        if persisted.ok and persisted.value is not None and persisted.value != snapshot.status:
            # Ya era terminal con otro estado: ese manejo ya ocurrió
            return replace(snapshot, status=persisted.value)

        logger.info("[ZK: JOB] job %s status %s", job_id, snapshot.status.value)

        if snapshot.status == JobStatus.AGGREGATED:
            await self._on_aggregated(snapshot, attest)
        elif snapshot.status == JobStatus.FAILED:
            await self._on_failed(job_id)
        return snapshot

    async def poll_until_terminal(self, job_id: str) -> Optional[JobSnapshot]:
        """
        Loop vivo. Devuelve el snapshot terminal, o None si el job se
        abandonó por exceso de fallos transitorios.
        """
        failures = 0
        while True:
            try:
                snapshot = await self.advance(job_id)
            except RelayerError as exc:
                failures += 1
                if failures > self.max_transient_failures:
                    logger.error(
                        "[ZK: JOB] abandoning job %s after %d consecutive polling failures: %s",
                        job_id, failures, exc,
                    )
                    await never_break_gameplay(
                        f"record poll failure for {job_id}",
                        self.store.record_poll_failure(job_id, failures),
                    )
                    return None
                logger.warning(
                    "[ZK: JOB] poll %s failed (%d/%d): %s",
                    job_id, failures, self.max_transient_failures, exc,
                )
                await self._sleep(self.transient_retry_delay)
                continue

            failures = 0
            if snapshot.is_terminal:
                return snapshot
            await self._sleep(self.poll_interval)

    # =========================================================================
    # ESTADOS TERMINALES
    # =========================================================================

    async def _linked_proofs(self, job_id: str):
        links = await never_break_gameplay(f"load proofs for {job_id}", self.store.get_proofs_for_job(job_id))
        if not links.ok:
            return []
        return links.value or []

    async def _on_failed(self, job_id: str) -> None:
        # Rechazo definitivo, distinto de "desconocido"
        for link in await self._linked_proofs(job_id):
            await never_break_gameplay(
                f"mark proof {link.proof_uuid} rejected",
                self.store.set_proof_onchain_verification_status(link.proof_uuid, False),
            )
        logger.warning("[ZK: JOB] job %s failed at relayer", job_id)

    async def _on_aggregated(self, snapshot: JobSnapshot, attest: bool) -> None:
        if not attest:
            return
        proof = snapshot.aggregation_proof()
        if proof is None:
            logger.warning(
                "[ZK: JOB] job %s aggregated without complete aggregation data, skipping attestation",
                snapshot.job_id,
            )
            return

        for link in await self._linked_proofs(snapshot.job_id):
            await self.attest(link, proof)

    async def attest_session(self, session_uuid: str) -> int:
        """Atesta las pruebas agregadas de la sesión que aún no tienen fila. Devuelve los intentos."""
        candidates = await never_break_gameplay(
            f"load attestation candidates for {session_uuid}",
            self.store.get_attestation_candidates(session_uuid),
        )
        if not candidates.ok:
            return 0

        attempts = 0
        for candidate in candidates.value or []:
            proof = candidate.snapshot.aggregation_proof()
            if proof is None:
                logger.warning(
                    "[ZK: JOB] job %s has incomplete aggregation data, skipping attestation",
                    candidate.snapshot.job_id,
                )
                continue
            result = await self.attest(candidate.link, proof)
            if result is not None and result.attempted:
                attempts += 1
        return attempts

    async def attest(self, link: ProofLink, proof: AggregationProof) -> Optional[AttestationResult]:
        """
        Un intento de atestación. Solo un intento completo (sin error) deja
        fila en aggregation_verifications; un error deja la prueba en
        "desconocido" para que el Reconciler reintente.

        Devuelve None sin llamar al contrato si otra corrutina ya está
        atestando la prueba o si ya tiene fila.
        """
        if self.attestor is None:
            return None
        if link.proof_uuid in self._attesting:
            logger.debug("[ZK: JOB] proof %s attestation already in flight", link.proof_uuid)
            return None

        self._attesting.add(link.proof_uuid)
        try:
            exists = await never_break_gameplay(
                f"check attestation for {link.proof_uuid}",
                self.store.has_aggregation_verification(link.proof_uuid),
            )
            if exists.ok and exists.value:
                return None
            return await self._attest_once(link, proof)
        finally:
            self._attesting.discard(link.proof_uuid)

    async def _attest_once(self, link: ProofLink, proof: AggregationProof) -> AttestationResult:
        result = await self.attestor.verify_and_attest(
            game_id=link.session_uuid or str(link.proof_uuid),
            aggregation_id=proof.aggregation_id,
            leaf=proof.leaf,
            merkle_path=proof.merkle_path,
            leaf_count=proof.leaf_count,
            leaf_index=proof.leaf_index,
        )
        if not result.attempted:
            return result
        if result.error:
            logger.warning("[ZK: JOB] attestation of proof %s errored: %s", link.proof_uuid, result.error)
            return result

        await never_break_gameplay(
            f"record attestation for {link.proof_uuid}",
            self.store.record_attestation(
                AggregationVerificationPayload(
                    proof_uuid=link.proof_uuid,
                    contract_address=result.contract_address,
                    domain_id=result.domain_id,
                    aggregation_id=proof.aggregation_id,
                    leaf=proof.leaf,
                    merkle_path=proof.merkle_path,
                    leaf_count=proof.leaf_count,
                    leaf_index=proof.leaf_index,
                    verified=result.verified,
                    tx_hash=result.tx_hash,
                )
            ),
        )
        return result
