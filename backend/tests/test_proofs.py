import pytest

from cardwar_zk.circuits import CircuitRegistrar
from cardwar_zk.errors import (
    LocalVerificationError,
    MissingWitnessParameterError,
    RelayerConfigurationError,
    RelayerError,
)
from cardwar_zk.jobs import JobTracker
from cardwar_zk.models import (
    AggregationVerification,
    CircuitKind,
    CircuitSetup,
    GameSession,
    JobStatus,
    ProofRecord,
)
from cardwar_zk.proofs import ProofContext, ProofSubmitter

from conftest import FakeAttestor, FakeProver, FakeRelayer, unreachable_relayer_error

SHUFFLE_INPUTS = {"seed": 42, "deck": list(range(52))}
DEAL_INPUTS = {"deck": list(range(52)), "player_index": 1}
CONTEXT = ProofContext(session_id="game-42", player_address="0xPlayerOne")


def make_submitter(store, circuits_dir, sleep, relayer=None, prover=None, attestor=None):
    prover = prover or FakeProver()
    if relayer is None:
        return ProofSubmitter(store, prover, circuits_dir)
    registrar = CircuitRegistrar(store, relayer, prover, circuits_dir, sleep=sleep)
    tracker = JobTracker(store, relayer, attestor or FakeAttestor(), sleep=sleep)
    return ProofSubmitter(store, prover, circuits_dir, registrar=registrar, relayer=relayer, tracker=tracker)


async def test_game_42_shuffle_and_deal_are_attested(store, circuits_dir, sleep, relayer, attestor, fetch_all):
    submitter = make_submitter(store, circuits_dir, sleep, relayer=relayer, attestor=attestor)

    outcomes = []
    for kind, inputs in ((CircuitKind.SHUFFLE, SHUFFLE_INPUTS), (CircuitKind.DEAL, DEAL_INPUTS)):
        proof = await submitter.generate_proof(kind, inputs, CONTEXT)
        outcomes.append(
            await submitter.submit_proof(kind, proof.proof_hex, proof.public_inputs, CONTEXT, proof.proof_uuid)
        )

    assert [outcome.status for outcome in outcomes] == [JobStatus.AGGREGATED, JobStatus.AGGREGATED]
    assert all(outcome.aggregated for outcome in outcomes)

    rows = await fetch_all(AggregationVerification)
    assert len(rows) == 2
    assert {row.proof_uuid for row in rows} == {outcome.proof_uuid for outcome in outcomes}
    assert all(row.aggregation_id == 7 and row.verified is True for row in rows)
    assert all(row.leaf_count == 2 and row.leaf_index == 0 for row in rows)
    assert len(attestor.calls) == 2
    assert {call["game_id"] for call in attestor.calls} == {"game-42"}

    [session] = await fetch_all(GameSession)
    assert session.players == ["0xplayerone"]
    assert len(session.proof_uuids) == 2
    assert session.job_ids == ["job-1", "job-2"]
    assert len(session.circuit_uuids) == 2
    assert len(await fetch_all(CircuitSetup)) == 2
    proofs = await fetch_all(ProofRecord)
    assert {proof.onchain_verification_status for proof in proofs} == {True}
    assert relayer.submissions[0]["proofData"]["publicSignals"] == ["0x" + "00" * 31 + "01", "0x02"]


async def test_submit_finds_proof_record_without_explicit_uuid(store, circuits_dir, sleep, relayer, fetch_all):
    submitter = make_submitter(store, circuits_dir, sleep, relayer=relayer)
    proof = await submitter.generate_proof(CircuitKind.SHUFFLE, SHUFFLE_INPUTS, CONTEXT)

    outcome = await submitter.submit_proof(CircuitKind.SHUFFLE, proof.proof_hex, proof.public_inputs, CONTEXT)

    assert outcome.proof_uuid == proof.proof_uuid
    [record] = await fetch_all(ProofRecord)
    assert record.job_id == outcome.job_id


async def test_optimistic_rejection_is_terminal(store, circuits_dir, sleep, relayer, fetch_all):
    relayer.optimistic = "failed"
    submitter = make_submitter(store, circuits_dir, sleep, relayer=relayer)
    proof = await submitter.generate_proof(CircuitKind.DEAL, DEAL_INPUTS, CONTEXT)

    outcome = await submitter.submit_proof(CircuitKind.DEAL, proof.proof_hex, proof.public_inputs, CONTEXT, proof.proof_uuid)

    assert outcome.rejected is True
    assert outcome.status is None
    assert relayer.status_calls == {}
    [record] = await fetch_all(ProofRecord)
    assert record.onchain_verification_status is False


async def test_generate_proof_without_session_is_not_tracked(store, circuits_dir, sleep, fetch_all):
    submitter = make_submitter(store, circuits_dir, sleep)

    proof = await submitter.generate_proof(CircuitKind.SHUFFLE, SHUFFLE_INPUTS)

    assert proof.proof_uuid is None
    assert proof.proof_hex == "0xdeadbeef" + b"shuffle".hex()
    assert await fetch_all(ProofRecord) == []


async def test_missing_witness_parameter_is_fatal(store, circuits_dir, sleep):
    submitter = make_submitter(store, circuits_dir, sleep)

    with pytest.raises(MissingWitnessParameterError):
        await submitter.generate_proof(CircuitKind.DEAL, {"deck": []}, CONTEXT)


async def test_local_verification_failure(store, circuits_dir, sleep):
    submitter = make_submitter(store, circuits_dir, sleep, prover=FakeProver(valid=False))

    with pytest.raises(LocalVerificationError):
        await submitter.generate_proof(CircuitKind.DEAL, DEAL_INPUTS, CONTEXT)


async def test_submit_without_relayer_credentials_is_fatal(store, circuits_dir, sleep):
    submitter = make_submitter(store, circuits_dir, sleep)

    with pytest.raises(RelayerConfigurationError):
        await submitter.submit_proof(CircuitKind.DEAL, "0x01", ["0x02"], CONTEXT)


# =============================================================================
# AISLAMIENTO DE FALLOS
# =============================================================================

async def test_relayer_outage_never_raises(store, circuits_dir, sleep, relayer):
    submitter = make_submitter(store, circuits_dir, sleep, relayer=relayer)
    proof = await submitter.generate_proof(CircuitKind.SHUFFLE, SHUFFLE_INPUTS, CONTEXT)
    relayer.submit_error = RelayerError("Relayer POST submit-proof failed: timeout")

    outcome = await submitter.submit_proof(CircuitKind.SHUFFLE, proof.proof_hex, proof.public_inputs, CONTEXT)

    assert outcome.job_id is None
    assert outcome.error


async def test_registration_failure_aborts_submission(store, circuits_dir, sleep):
    relayer = FakeRelayer()
    relayer.conflict = True
    submitter = make_submitter(store, circuits_dir, sleep, relayer=relayer)

    outcome = await submitter.submit_proof(CircuitKind.SHUFFLE, "0x01", ["0x02"], CONTEXT)

    assert outcome.error
    assert relayer.submissions == []


async def test_job_polling_outage_never_raises(store, circuits_dir, sleep):
    relayer = FakeRelayer([unreachable_relayer_error()])
    submitter = make_submitter(store, circuits_dir, sleep, relayer=relayer)

    outcome = await submitter.submit_proof(CircuitKind.SHUFFLE, "0x01", ["0x02"], CONTEXT)

    assert outcome.job_id == "job-1"
    assert outcome.status is None
    assert outcome.error
    assert (await store.get_verification_job("job-1")).status is JobStatus.SUBMITTED


async def test_rpc_outage_never_raises(store, circuits_dir, sleep, relayer, fetch_all):
    attestor = FakeAttestor(error="connection refused")
    submitter = make_submitter(store, circuits_dir, sleep, relayer=relayer, attestor=attestor)
    proof = await submitter.generate_proof(CircuitKind.DEAL, DEAL_INPUTS, CONTEXT)

    outcome = await submitter.submit_proof(CircuitKind.DEAL, proof.proof_hex, proof.public_inputs, CONTEXT, proof.proof_uuid)

    assert outcome.status is JobStatus.AGGREGATED
    assert await fetch_all(AggregationVerification) == []
    [record] = await fetch_all(ProofRecord)
    assert record.onchain_verification_status is None


async def test_store_outage_never_raises(broken_store, circuits_dir, sleep, relayer):
    submitter = make_submitter(broken_store, circuits_dir, sleep, relayer=relayer)

    proof = await submitter.generate_proof(CircuitKind.SHUFFLE, SHUFFLE_INPUTS, CONTEXT)
    outcome = await submitter.submit_proof(CircuitKind.SHUFFLE, proof.proof_hex, proof.public_inputs, CONTEXT)

    assert proof.proof_uuid is None
    assert outcome.status is JobStatus.AGGREGATED
    assert outcome.proof_uuid is None
