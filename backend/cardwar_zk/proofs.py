"""
=============================================================================
CARDWAR ZK - ProofSubmitter (Generación y Envío de Pruebas)
=============================================================================
generate_proof: artefacto -> validación ABI -> witness -> prueba ->
                verificación local -> ProofRecord (best effort)
submit_proof:   VK registrada -> POST al relayer -> job "Submitted" ->
                vínculo prueba/job -> poll hasta estado terminal

Fallos de relayer, RPC o store nunca salen de estas llamadas; solo los
errores de integración (artefacto, parámetros, credenciales) abortan.
=============================================================================
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union
from uuid import UUID

from .circuits import CircuitRegistrar
from .errors import CircuitRegistrationError, LocalVerificationError, RelayerConfigurationError
from .jobs import JobTracker
from .models import CircuitKind, JobStatus
from .prover import CompiledCircuit, Prover, extract_circuit_parameters, load_compiled_circuit
from .records import JobSnapshot, ProofRecordPayload
from .relayer import RelayerClient
from .results import never_break_gameplay
from .tracking import TrackingStore
from .utils import bytes_to_hex, normalize_public_inputs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProofContext:
    """Contexto que aporta el motor de juego."""
    session_id: Optional[str] = None
    player_address: Optional[str] = None


@dataclass(frozen=True)
class GeneratedProof:
    kind: CircuitKind
    proof_hex: str
    public_inputs: List[str] = field(default_factory=list)
    proof_uuid: Optional[UUID] = None


@dataclass(frozen=True)
class SubmissionOutcome:
    """
    Resultado de submit_proof().
    - rejected: rechazo de negocio (optimistic verify negativo)
    - error: motivo cuando no se llegó a un estado terminal
    """
    kind: CircuitKind
    job_id: Optional[str] = None
    status: Optional[JobStatus] = None
    proof_uuid: Optional[UUID] = None
    rejected: bool = False
    error: Optional[str] = None

    @property
    def aggregated(self) -> bool:
        return self.status == JobStatus.AGGREGATED


class ProofSubmitter:
    """Orquesta generación, persistencia y envío de pruebas."""

    def __init__(
        self,
        store: TrackingStore,
        prover: Prover,
        circuits_dir: Union[str, Path],
        registrar: Optional[CircuitRegistrar] = None,
        relayer: Optional[RelayerClient] = None,
        tracker: Optional[JobTracker] = None,
    ):
        self.store = store
        self.prover = prover
        self.circuits_dir = Path(circuits_dir)
        self.registrar = registrar
        self.relayer = relayer
        self.tracker = tracker

    # =========================================================================
    # GENERACIÓN
    # =========================================================================

    async def generate_proof(
        self,
        kind: CircuitKind,
        witness_inputs: Mapping[str, Any],
        context: Optional[ProofContext] = None,
    ) -> GeneratedProof:
        """
        Genera y verifica localmente una prueba.

        Raises:
            CircuitArtifactError: no existe el circuito compilado
            MissingWitnessParameterError: faltan entradas del ABI
            LocalVerificationError: la prueba no pasó la verificación local
        """
        kind = CircuitKind(kind)
        context = context or ProofContext()

        circuit = load_compiled_circuit(self.circuits_dir, kind)
        params = extract_circuit_parameters(circuit, witness_inputs)

        logger.info("[ZK: PROOF] creating witness for %s", kind.value)
        witness = await self.prover.execute_witness(circuit, params)

        logger.info("[ZK: PROOF] generating proof for %s", kind.value)
        proof = await self.prover.generate_proof(circuit, witness)

        if not await self.prover.verify_proof_locally(circuit, proof):
            raise LocalVerificationError(f"[ERR: Proof] Proof verification failed for {kind.value}")

        proof_hex = bytes_to_hex(proof.proof)
        public_inputs = normalize_public_inputs(proof.public_inputs)

        proof_uuid = None
        if context.session_id:
            tracked = await never_break_gameplay(
                f"track {kind.value} proof",
                self._track_generated(circuit, proof_hex, public_inputs, context),
            )
            proof_uuid = tracked.value if tracked.ok else None

        return GeneratedProof(kind=kind, proof_hex=proof_hex, public_inputs=public_inputs, proof_uuid=proof_uuid)

    async def _track_generated(
        self,
        circuit: CompiledCircuit,
        proof_hex: str,
        public_inputs: List[str],
        context: ProofContext,
    ) -> Optional[UUID]:
        circuit_uuid = None
        if self.registrar is not None:
            resolved = await never_break_gameplay(
                f"resolve circuit {circuit.kind.value}",
                self.registrar.ensure_circuit(circuit.kind, context.session_id),
            )
            if resolved.ok:
                circuit_uuid = resolved.value.circuit_uuid

        players = [context.player_address] if context.player_address else []
        await self.store.ensure_game_session(context.session_id, players)
        return await self.store.create_proof_record(
            ProofRecordPayload(
                session_uuid=context.session_id,
                circuit_uuid=circuit_uuid,
                proof_hex=proof_hex,
                public_inputs=public_inputs,
                bb_verification_status=True,
                player_address=context.player_address,
            )
        )

    # =========================================================================
    # ENVÍO
    # =========================================================================

    async def submit_proof(
        self,
        kind: CircuitKind,
        proof_hex: str,
        public_inputs: Sequence[Any],
        context: Optional[ProofContext] = None,
        proof_uuid: Optional[UUID] = None,
    ) -> SubmissionOutcome:
        """
        Envía la prueba y sigue su job hasta un estado terminal.

        Raises:
            RelayerConfigurationError: faltan KURIER_URL / KURIER_API
            CircuitArtifactError: no existe el circuito compilado
        """
        if self.relayer is None or self.registrar is None or self.tracker is None:
            raise RelayerConfigurationError("[ERR: Env] Missing KURIER_URL or KURIER_API")

        kind = CircuitKind(kind)
        context = context or ProofContext()
        session_id = context.session_id

        try:
            circuit = await self.registrar.ensure_circuit(kind, session_id)
        except CircuitRegistrationError as exc:
            logger.error("[ZK: PROOF] aborting %s submission: %s", kind.value, exc)
            return SubmissionOutcome(kind=kind, proof_uuid=proof_uuid, error=str(exc))

        proof_hex = bytes_to_hex(proof_hex)
        public_inputs = normalize_public_inputs(public_inputs)
        payload = self.relayer.build_submission(proof_hex, public_inputs, circuit.vk_hash)

        logger.info("[ZK: PROOF] submitting %s proof to relayer", kind.value)
        submitted = await never_break_gameplay(f"submit {kind.value} proof", self.relayer.submit_proof(payload))
        if not submitted.ok:
            return SubmissionOutcome(kind=kind, proof_uuid=proof_uuid, error=submitted.reason)
        response = submitted.value

        if proof_uuid is None and session_id:
            found = await never_break_gameplay(
                f"find {kind.value} proof record",
                self.store.find_proof_uuid(session_id, proof_hex),
            )
            proof_uuid = found.value if found.ok else None

        job_id = response.get("jobId")
        if response.get("optimisticVerify") != "success":
            logger.error(
                "[ZK: PROOF] optimistic verification failed for %s: %s",
                kind.value, response.get("optimisticVerify"),
            )
            if proof_uuid is not None:
                await never_break_gameplay(
                    f"mark proof {proof_uuid} rejected",
                    self.store.set_proof_onchain_verification_status(proof_uuid, False),
                )
            return SubmissionOutcome(
                kind=kind,
                job_id=str(job_id) if job_id else None,
                proof_uuid=proof_uuid,
                rejected=True,
                error="Optimistic verification failed",
            )

        if not job_id:
            logger.error("[ZK: PROOF] relayer accepted %s proof without a jobId", kind.value)
            return SubmissionOutcome(kind=kind, proof_uuid=proof_uuid, error="Relayer response has no jobId")
        job_id = str(job_id)
        logger.info("[ZK: PROOF] %s proof submitted, job %s", kind.value, job_id)

        # El job debe existir antes de vincularlo a la prueba
        persisted = await never_break_gameplay(
            f"persist job {job_id}",
            self.store.upsert_verification_job(JobSnapshot(job_id=job_id, status=JobStatus.SUBMITTED)),
        )
        if not persisted.ok:
            logger.warning("[ZK: PROOF] job %s not persisted, skipping proof linkage", job_id)
        elif proof_uuid is not None:
            await never_break_gameplay(
                f"link proof {proof_uuid} to job {job_id}",
                self.store.attach_proof_submission(session_id, proof_uuid, job_id, payload, response),
            )
        elif session_id:
            await never_break_gameplay(
                f"link job {job_id} to session {session_id}",
                self.store.append_session_value(session_id, "job_ids", job_id),
            )

        polled = await never_break_gameplay(f"poll job {job_id}", self.tracker.poll_until_terminal(job_id))
        final = polled.value if polled.ok else None
        if final is None:
            return SubmissionOutcome(
                kind=kind,
                job_id=job_id,
                proof_uuid=proof_uuid,
                error=polled.reason or "Polling abandoned",
            )
        return SubmissionOutcome(kind=kind, job_id=job_id, status=final.status, proof_uuid=proof_uuid)

    async def prove_and_submit(
        self,
        kind: CircuitKind,
        witness_inputs: Mapping[str, Any],
        context: Optional[ProofContext] = None,
    ) -> Optional[SubmissionOutcome]:
        """Flujo completo. Sin relayer configurado solo se genera la prueba."""
        proof = await self.generate_proof(kind, witness_inputs, context)
        if self.relayer is None:
            return None
        return await self.submit_proof(kind, proof.proof_hex, proof.public_inputs, context, proof.proof_uuid)
