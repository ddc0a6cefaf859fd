"""
=============================================================================
CARDWAR ZK - Reconciler (Recuperación de Trabajos Huérfanos)
=============================================================================
Loop en background: una pasada al arrancar y luego cada `interval`.

Cada pasada:
1. Jobs no terminales sin actualizar hace más de `stale_seconds`
2. advance() de cada uno, sin reenviar y sin atestar en línea
3. Para cada sesión tocada por un job recién Aggregated, atestar sus
   pruebas que aún no tengan fila
4. Reintentar sesiones con pruebas Aggregated cuya atestación falló por
   error (sin fila y con estado on-chain desconocido)

Un fallo del relayer al re-pollear suma en poll_failures.

Un guard booleano evita pasadas solapadas: un tick solapado se salta.
=============================================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import RelayerError
from .jobs import JobTracker
from .models import JobStatus
from .results import never_break_gameplay
from .tracking import TrackingStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Resumen de una pasada de reconciliación."""
    skipped: bool = False
    polled: int = 0
    failed: int = 0
    aggregated_jobs: List[str] = field(default_factory=list)
    sessions: List[str] = field(default_factory=list)
    attestation_attempts: int = 0


class JobReconciler:
    """Re-poll periódico de jobs estancados."""

    def __init__(
        self,
        store: TrackingStore,
        tracker: JobTracker,
        interval: float = 30.0,
        batch_size: int = 25,
        stale_seconds: float = 60.0,
    ):
        self.store = store
        self.tracker = tracker
        self.interval = interval
        self.batch_size = batch_size
        self.stale_seconds = stale_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    async def reconcile_once(self) -> ReconcileReport:
        if self._running:
            logger.debug("[ZK: RECONCILE] pass already in progress, skipping tick")
            return ReconcileReport(skipped=True)

        self._running = True
        try:
            return await self._reconcile()
        finally:
            self._running = False

    async def _reconcile(self) -> ReconcileReport:
        report = ReconcileReport()

        stale = await never_break_gameplay(
            "load stale jobs",
            self.store.get_stale_jobs_for_reconciliation(self.batch_size, self.stale_seconds),
        )
        jobs = stale.value if stale.ok and stale.value else []
        if jobs:
            logger.info("[ZK: RECONCILE] re-polling %d stale jobs", len(jobs))

        for job in jobs:
            try:
                snapshot = await self.tracker.advance(job.job_id, attest=False)
            except RelayerError as exc:
                report.failed += 1
                logger.warning("[ZK: RECONCILE] job %s re-poll failed: %s", job.job_id, exc)
                await never_break_gameplay(
                    f"record poll failure for {job.job_id}",
                    self.store.increment_poll_failures(job.job_id),
                )
                continue
            except Exception as exc:
                # Un job roto no detiene el lote
                report.failed += 1
                logger.warning("[ZK: RECONCILE] job %s re-poll failed: %s", job.job_id, exc)
                continue

            report.polled += 1
            if snapshot.status == JobStatus.AGGREGATED:
                report.aggregated_jobs.append(job.job_id)
                self._add_sessions(report, job.session_uuids)

        if self._can_attest():
            # Atestaciones que fallaron con error en pasadas o polls anteriores
            pending = await never_break_gameplay(
                "load sessions pending attestation",
                self.store.get_sessions_pending_attestation(self.batch_size),
            )
            if pending.ok:
                self._add_sessions(report, pending.value or [])

        for session_uuid in report.sessions:
            try:
                report.attestation_attempts += await self.tracker.attest_session(session_uuid)
            except Exception as exc:
                logger.warning("[ZK: RECONCILE] attestation for session %s failed: %s", session_uuid, exc)

        if jobs or report.sessions:
            logger.info(
                "[ZK: RECONCILE] pass done: polled=%d failed=%d aggregated=%d attestations=%d",
                report.polled, report.failed, len(report.aggregated_jobs), report.attestation_attempts,
            )
        return report

    def _can_attest(self) -> bool:
        attestor = self.tracker.attestor
        return attestor is not None and attestor.configured

    @staticmethod
    def _add_sessions(report: ReconcileReport, session_uuids) -> None:
        for session_uuid in session_uuids:
            if session_uuid not in report.sessions:
                report.sessions.append(session_uuid)

    # =========================================================================
    # CICLO DE VIDA
    # =========================================================================

    def start(self) -> None:
        if self.started:
            return
        logger.info("[ZK: RECONCILE] starting (interval=%ss, batch=%d)", self.interval, self.batch_size)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            try:
                await self.reconcile_once()
            except Exception:
                logger.exception("[ZK: RECONCILE] pass crashed")
            await asyncio.sleep(self.interval)
