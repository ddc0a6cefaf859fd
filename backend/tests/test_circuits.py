import asyncio

import pytest

from cardwar_zk.circuits import CircuitRegistrar
from cardwar_zk.errors import CircuitArtifactError, CircuitRegistrationError
from cardwar_zk.models import CircuitKind, CircuitSetup, GameSession
from cardwar_zk.prover import load_compiled_circuit
from cardwar_zk.records import CircuitSetupPayload
from cardwar_zk.tracking import TrackingStore

from conftest import FakeProver, FakeRelayer, SleepRecorder


def make_registrar(store, relayer, prover, circuits_dir, sleep=None):
    return CircuitRegistrar(store, relayer, prover, circuits_dir, sleep=sleep or SleepRecorder())


class FlakyCircuitStore(TrackingStore):
    """Store que no puede persistir circuitos."""

    async def upsert_circuit_setup(self, payload, session_uuid=None):
        raise RuntimeError("connection reset")


async def test_concurrent_ensure_circuit_registers_once(store, relayer, prover, circuits_dir, fetch_all):
    registrar = make_registrar(store, relayer, prover, circuits_dir)

    results = await asyncio.gather(*[registrar.ensure_circuit(CircuitKind.SHUFFLE) for _ in range(10)])

    assert len(relayer.registered) == 1
    assert prover.vk_calls == 1
    assert len({result.vk_hash for result in results}) == 1
    rows = await fetch_all(CircuitSetup)
    assert len(rows) == 1
    assert rows[0].vk_hash == results[0].vk_hash
    assert rows[0].circuit_uuid == results[0].circuit_uuid


async def test_resolved_circuit_is_memoized(store, relayer, prover, circuits_dir):
    registrar = make_registrar(store, relayer, prover, circuits_dir)

    first = await registrar.ensure_circuit("deal")
    second = await registrar.ensure_circuit(CircuitKind.DEAL, session_uuid="game-1")

    assert first == second
    assert len(relayer.registered) == 1
    assert registrar.cached(CircuitKind.DEAL) == first


async def test_existing_row_is_reused_and_linked(store, relayer, prover, circuits_dir, fetch_all):
    circuit = load_compiled_circuit(circuits_dir, CircuitKind.SHUFFLE)
    row = await store.upsert_circuit_setup(
        CircuitSetupPayload(
            kind=CircuitKind.SHUFFLE,
            compiled_circuit=circuit.data,
            verification_key_hex="0x01",
            vk_hash="0xexisting",
            artifact_sha256=circuit.artifact_sha256,
        )
    )
    registrar = make_registrar(store, relayer, prover, circuits_dir)

    resolved = await registrar.ensure_circuit(CircuitKind.SHUFFLE, session_uuid="game-7")

    assert resolved.vk_hash == "0xexisting"
    assert resolved.circuit_uuid == row.circuit_uuid
    assert relayer.registered == []
    [session] = await fetch_all(GameSession)
    assert session.circuit_uuids == [str(row.circuit_uuid)]


async def test_losing_process_converges_on_winner_row(store, prover, circuits_dir, fetch_all):
    winner = make_registrar(store, FakeRelayer(), FakeProver(), circuits_dir)
    losing_relayer = FakeRelayer()
    losing_relayer.conflict = True

    class WinnerPersistsDuringBackoff(SleepRecorder):
        async def __call__(self, seconds):
            await super().__call__(seconds)
            if len(self.calls) == 2:
                await winner.ensure_circuit(CircuitKind.SHUFFLE)

    backoff = WinnerPersistsDuringBackoff()
    loser = make_registrar(store, losing_relayer, prover, circuits_dir, sleep=backoff)

    resolved = await loser.ensure_circuit(CircuitKind.SHUFFLE)

    expected = winner.cached(CircuitKind.SHUFFLE)
    assert resolved.vk_hash == expected.vk_hash
    assert resolved.circuit_uuid == expected.circuit_uuid
    assert backoff.calls == pytest.approx([0.2, 0.4])
    assert len(await fetch_all(CircuitSetup)) == 1


async def test_conflict_without_winner_fails_after_retries(store, prover, circuits_dir, fetch_all):
    relayer = FakeRelayer()
    relayer.conflict = True
    backoff = SleepRecorder()
    registrar = make_registrar(store, relayer, prover, circuits_dir, sleep=backoff)

    with pytest.raises(CircuitRegistrationError):
        await registrar.ensure_circuit(CircuitKind.DEAL)

    assert backoff.calls == pytest.approx([0.2, 0.4, 0.6, 0.8, 1.0])
    assert await fetch_all(CircuitSetup) == []
    assert registrar.cached(CircuitKind.DEAL) is None


async def test_conflict_with_reported_vk_hash_is_backfilled(store, prover, circuits_dir, fetch_all):
    relayer = FakeRelayer()
    relayer.conflict = True
    relayer.conflict_vk_hash = "0xfromrelayer"
    registrar = make_registrar(store, relayer, prover, circuits_dir)

    resolved = await registrar.ensure_circuit(CircuitKind.DEAL)

    assert resolved.vk_hash == "0xfromrelayer"
    [row] = await fetch_all(CircuitSetup)
    assert row.vk_hash == "0xfromrelayer"


async def test_unpersisted_result_is_not_memoized(engine, relayer, prover, circuits_dir):
    registrar = make_registrar(FlakyCircuitStore(engine), relayer, prover, circuits_dir)

    first = await registrar.ensure_circuit(CircuitKind.SHUFFLE)
    await registrar.ensure_circuit(CircuitKind.SHUFFLE)

    assert first.circuit_uuid is None
    assert first.vk_hash
    assert len(relayer.registered) == 2
    assert registrar.cached(CircuitKind.SHUFFLE) is None


async def test_missing_artifact_is_an_integration_error(store, relayer, prover, tmp_path):
    registrar = make_registrar(store, relayer, prover, tmp_path)

    with pytest.raises(CircuitArtifactError):
        await registrar.ensure_circuit(CircuitKind.SHUFFLE)
