"""
=============================================================================
CARDWAR ZK - CircuitRegistrar (Registro Idempotente de VKs)
=============================================================================
Resuelve la llave de verificación de cada circuito exactamente una vez por
artefacto distinto.

Caché de dos niveles, propiedad de la instancia:
- _resolved: resultado definitivo por kind (vive lo que vive el proceso)
- _in_flight: tarea de resolución en curso por kind (una sola por proceso)

Entre procesos no hay lock distribuido: la restricción única
(kind, artifact_sha256) arbitra la carrera y el perdedor converge
releyendo la fila del ganador.
=============================================================================
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

from .errors import CircuitRegistrationError, IntegrationError, VerificationKeyConflict
from .models import CircuitKind
from .prover import CompiledCircuit, Prover, load_compiled_circuit
from .records import CircuitSetupPayload, CircuitSnapshot, ResolvedCircuit
from .relayer import RelayerClient
from .results import never_break_gameplay
from .tracking import TrackingStore
from .utils import bytes_to_hex

logger = logging.getLogger(__name__)


def _from_snapshot(snapshot: CircuitSnapshot) -> ResolvedCircuit:
    return ResolvedCircuit(
        kind=snapshot.kind,
        circuit_uuid=snapshot.circuit_uuid,
        vk_hash=snapshot.vk_hash,
        verification_key_hex=snapshot.verification_key_hex,
        artifact_sha256=snapshot.artifact_sha256,
    )


class CircuitRegistrar:
    """Resuelve y registra VKs por tipo de circuito."""

    def __init__(
        self,
        store: TrackingStore,
        relayer: RelayerClient,
        prover: Prover,
        circuits_dir: Union[str, Path],
        conflict_retries: int = 5,
        conflict_backoff: float = 0.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.relayer = relayer
        self.prover = prover
        self.circuits_dir = Path(circuits_dir)
        self.conflict_retries = conflict_retries
        self.conflict_backoff = conflict_backoff
        self._sleep = sleep

        self._resolved: Dict[CircuitKind, ResolvedCircuit] = {}
        self._in_flight: Dict[CircuitKind, asyncio.Task] = {}

    def cached(self, kind: CircuitKind) -> Optional[ResolvedCircuit]:
        return self._resolved.get(CircuitKind(kind))

    def clear(self) -> None:
        """Olvida el memo (las tareas en curso siguen su camino)."""
        self._resolved.clear()

    async def ensure_circuit(self, kind: CircuitKind, session_uuid: Optional[str] = None) -> ResolvedCircuit:
        """
        Devuelve {circuit_uuid, vk_hash, verification_key_hex} del circuito.

        Raises:
            CircuitArtifactError: no existe el artefacto compilado
            CircuitRegistrationError: no se pudo resolver tras todos los fallbacks
        """
        kind = CircuitKind(kind)

        resolved = self._resolved.get(kind)
        if resolved is None:
            task = self._in_flight.get(kind)
            if task is None:
                task = asyncio.ensure_future(self._resolve(kind))
                self._in_flight[kind] = task
                task.add_done_callback(lambda done, k=kind: self._forget_in_flight(k, done))
            # shield: cancelar a un llamador no cancela la resolución compartida
            resolved = await asyncio.shield(task)

        if session_uuid and resolved.circuit_uuid is not None:
            await never_break_gameplay(
                f"link circuit {kind.value} to session {session_uuid}",
                self.store.append_session_value(session_uuid, "circuit_uuids", resolved.circuit_uuid),
            )
        return resolved

    def _forget_in_flight(self, kind: CircuitKind, task: asyncio.Task) -> None:
        if self._in_flight.get(kind) is task:
            del self._in_flight[kind]

    # =========================================================================
    # RESOLUCIÓN
    # =========================================================================

    async def _resolve(self, kind: CircuitKind) -> ResolvedCircuit:
        circuit = load_compiled_circuit(self.circuits_dir, kind)

        existing = await never_break_gameplay(
            f"load active circuit {kind.value}",
            self.store.get_active_circuit(kind, circuit.artifact_sha256),
        )
        if existing.ok and existing.value is not None and existing.value.vk_hash:
            logger.info("[ZK: CIRCUIT] reusing registered vk for %s: %s", kind.value, existing.value.vk_hash)
            resolved = _from_snapshot(existing.value)
            self._resolved[kind] = resolved
            return resolved

        try:
            vk_hex = bytes_to_hex(await self.prover.get_verification_key(circuit))
            vk_hash, winner = await self._register(circuit, vk_hex)
        except (IntegrationError, CircuitRegistrationError):
            raise
        except Exception as exc:
            raise CircuitRegistrationError(
                f"Could not register verification key for {kind.value}: {exc}"
            ) from exc

        if winner is not None:
            resolved = _from_snapshot(winner)
            self._resolved[kind] = resolved
            return resolved

        persisted = await never_break_gameplay(
            f"persist circuit {kind.value}",
            self.store.upsert_circuit_setup(
                CircuitSetupPayload(
                    kind=kind,
                    compiled_circuit=circuit.data,
                    verification_key_hex=vk_hex,
                    vk_hash=vk_hash,
                    artifact_sha256=circuit.artifact_sha256,
                )
            ),
        )
        if not persisted.ok:
            # Sin fila persistida no se memoriza: el próximo llamador reintenta
            return ResolvedCircuit(
                kind=kind,
                circuit_uuid=None,
                vk_hash=vk_hash,
                verification_key_hex=vk_hex,
                artifact_sha256=circuit.artifact_sha256,
            )

        snapshot = persisted.value
        if snapshot is not None and snapshot.vk_hash:
            resolved = _from_snapshot(snapshot)
        else:
            resolved = ResolvedCircuit(
                kind=kind,
                circuit_uuid=snapshot.circuit_uuid if snapshot is not None else None,
                vk_hash=vk_hash,
                verification_key_hex=vk_hex,
                artifact_sha256=circuit.artifact_sha256,
            )
        logger.info("[ZK: CIRCUIT] registered vk for %s: %s", kind.value, resolved.vk_hash)
        self._resolved[kind] = resolved
        return resolved

    async def _register(self, circuit: CompiledCircuit, vk_hex: str) -> Tuple[str, Optional[CircuitSnapshot]]:
        """
        Registra la VK. Ante un conflicto (otro proceso ganó) relee el store
        con backoff lineal hasta encontrar la fila del ganador.
        """
        kind = circuit.kind
        try:
            return await self.relayer.register_vk(vk_hex), None
        except VerificationKeyConflict as conflict:
            logger.warning("[ZK: CIRCUIT] vk for %s already registered, waiting for winner row", kind.value)
            for attempt in range(1, self.conflict_retries + 1):
                await self._sleep(self.conflict_backoff * attempt)
                found = await never_break_gameplay(
                    f"reload circuit {kind.value}",
                    self.store.get_active_circuit(kind, circuit.artifact_sha256),
                )
                if found.ok and found.value is not None and found.value.vk_hash:
                    return found.value.vk_hash, found.value

            if conflict.vk_hash:
                # El relayer informó el hash: se rellena la fila (kind, artifact)
                return conflict.vk_hash, None

            logger.error(
                "[ZK: CIRCUIT] vk for %s conflicted and no winner appeared after %d retries",
                kind.value, self.conflict_retries,
            )
            raise CircuitRegistrationError(
                f"Verification key for {kind.value} already registered but vkHash could not be resolved"
            ) from conflict
