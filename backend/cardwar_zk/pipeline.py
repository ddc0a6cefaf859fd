"""
=============================================================================
CARDWAR ZK - ZKPipeline (Raíz de Composición)
=============================================================================
Construye una sola vez todos los componentes y los cablea entre sí. El
motor de juego solo ve launch_proof() y record_game_result(): ninguno de
los dos bloquea ni lanza excepciones hacia el juego.
=============================================================================
"""

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Set

from sqlalchemy.ext.asyncio import AsyncEngine

from .circuits import CircuitRegistrar
from .config import TrackingConfig
from .database import create_engine, init_models
from .jobs import JobTracker
from .models import CircuitKind
from .onchain import OnchainAttestor
from .proofs import ProofContext, ProofSubmitter
from .prover import Prover
from .reconciler import JobReconciler
from .relayer import RelayerClient
from .results import TrackResult, never_break_gameplay
from .tracking import TrackingStore

logger = logging.getLogger(__name__)


class ZKPipeline:
    """Dueño de los componentes ZK y de las tareas en background."""

    def __init__(
        self,
        config: TrackingConfig,
        engine: AsyncEngine,
        store: TrackingStore,
        prover: Optional[Prover] = None,
        relayer: Optional[RelayerClient] = None,
        attestor: Optional[OnchainAttestor] = None,
        registrar: Optional[CircuitRegistrar] = None,
        tracker: Optional[JobTracker] = None,
        submitter: Optional[ProofSubmitter] = None,
        reconciler: Optional[JobReconciler] = None,
    ):
        self.config = config
        self.engine = engine
        self.store = store
        self.prover = prover
        self.relayer = relayer
        self.attestor = attestor
        self.registrar = registrar
        self.tracker = tracker
        self.submitter = submitter
        self.reconciler = reconciler
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def build(
        cls,
        config: TrackingConfig,
        prover: Optional[Prover] = None,
        engine: Optional[AsyncEngine] = None,
        relayer: Optional[RelayerClient] = None,
        attestor: Optional[OnchainAttestor] = None,
    ) -> "ZKPipeline":
        engine = engine or create_engine(config.database_url)
        store = TrackingStore(engine, enabled=config.tracking_enabled)

        if relayer is None and config.relayer_enabled:
            relayer = RelayerClient.from_config(config)
        if relayer is None:
            logger.warning("[ZK: PIPELINE] KURIER_URL/KURIER_API not set, proof submission disabled")

        attestor = attestor or OnchainAttestor.from_config(config)
        if not attestor.configured:
            logger.info("[ZK: PIPELINE] on-chain attestation not configured")

        tracker = registrar = reconciler = None
        if relayer is not None:
            tracker = JobTracker(
                store,
                relayer,
                attestor,
                poll_interval=config.poll_interval,
                transient_retry_delay=config.transient_retry_delay,
                max_transient_failures=config.max_transient_failures,
            )
            if config.reconcile_enabled:
                reconciler = JobReconciler(
                    store,
                    tracker,
                    interval=config.reconcile_interval,
                    batch_size=config.reconcile_batch_size,
                    stale_seconds=config.reconcile_stale_seconds,
                )
            if prover is not None:
                registrar = CircuitRegistrar(
                    store,
                    relayer,
                    prover,
                    config.circuits_dir,
                    conflict_retries=config.vk_conflict_retries,
                    conflict_backoff=config.vk_conflict_backoff,
                )

        submitter = None
        if prover is not None:
            submitter = ProofSubmitter(
                store,
                prover,
                config.circuits_dir,
                registrar=registrar,
                relayer=relayer,
                tracker=tracker,
            )

        return cls(
            config,
            engine,
            store,
            prover=prover,
            relayer=relayer,
            attestor=attestor,
            registrar=registrar,
            tracker=tracker,
            submitter=submitter,
            reconciler=reconciler,
        )

    # =========================================================================
    # CICLO DE VIDA
    # =========================================================================

    async def start(self) -> None:
        if self.config.create_schema:
            await init_models(self.engine)
            logger.info("[ZK: PIPELINE] schema ensured")
        if self.reconciler is not None:
            self.reconciler.start()

    async def stop(self) -> None:
        # Los poll loops en curso se abandonan; el Reconciler los retoma
        if self.reconciler is not None:
            await self.reconciler.stop()
        if self.relayer is not None:
            self.relayer.close()
        await self.engine.dispose()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # =========================================================================
    # ENTRADAS DEL MOTOR DE JUEGO
    # =========================================================================

    def launch_proof(
        self,
        kind: CircuitKind,
        witness_inputs: Mapping[str, Any],
        context: Optional[ProofContext] = None,
    ) -> Optional[asyncio.Task]:
        """Lanza generación + envío en background. El juego nunca lo espera."""
        if self.submitter is None:
            logger.debug("[ZK: PIPELINE] no prover configured, skipping %s proof", kind)
            return None

        task = asyncio.create_task(self.submitter.prove_and_submit(kind, witness_inputs, context))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[ZK: PIPELINE] proof task failed: %s", exc, exc_info=exc)

    async def start_session(self, session_uuid: str, players: Iterable[str] = ()) -> TrackResult:
        return await never_break_gameplay(
            f"start session {session_uuid}",
            self.store.ensure_game_session(session_uuid, players),
        )

    async def record_game_result(
        self,
        session_uuid: str,
        players: Iterable[str] = (),
        score: Iterable[Any] = (),
        winner: Iterable[str] = (),
    ) -> TrackResult:
        """Cierra la sesión con marcador y ganador."""
        started = await self.start_session(session_uuid, players)
        if not started.ok:
            return started
        return await never_break_gameplay(
            f"record result for {session_uuid}",
            self.store.record_session_result(session_uuid, score=score, winner=winner),
        )
