import asyncio

from cardwar_zk.jobs import JobTracker
from cardwar_zk.models import AggregationVerification, JobStatus, ProofRecord, VerificationJob
from cardwar_zk.records import AggregationProof, JobSnapshot, ProofLink

from conftest import (
    FakeAttestor,
    FakeRelayer,
    aggregated_status,
    status,
    submitted_proof,
    unreachable_relayer_error,
)


def make_tracker(store, relayer, attestor, sleep):
    return JobTracker(store, relayer, attestor, sleep=sleep)


async def test_poll_until_aggregated_attests_linked_proof(store, sleep, fetch_all):
    proof_uuid = await submitted_proof(store)
    relayer = FakeRelayer([status("Queued"), status("Valid"), aggregated_status()])
    attestor = FakeAttestor()

    final = await make_tracker(store, relayer, attestor, sleep).poll_until_terminal("job-1")

    assert final.status is JobStatus.AGGREGATED
    assert sleep.calls == [20.0, 20.0]
    [job] = await fetch_all(VerificationJob)
    assert job.status is JobStatus.AGGREGATED
    assert job.merkle_proof == ["0xdef"]
    assert job.next_poll_at is None
    assert len(attestor.calls) == 1
    assert attestor.calls[0]["game_id"] == "game-1"
    assert attestor.calls[0]["aggregation_id"] == 7
    [row] = await fetch_all(AggregationVerification)
    assert row.proof_uuid == proof_uuid
    assert row.verified is True
    [proof] = await fetch_all(ProofRecord)
    assert proof.onchain_verification_status is True


async def test_failed_job_marks_linked_proof_rejected(store, sleep, fetch_all):
    await submitted_proof(store)
    attestor = FakeAttestor()

    final = await make_tracker(store, FakeRelayer([status("Failed")]), attestor, sleep).poll_until_terminal("job-1")

    assert final.status is JobStatus.FAILED
    assert attestor.calls == []
    [proof] = await fetch_all(ProofRecord)
    assert proof.onchain_verification_status is False


async def test_missing_leaf_index_yields_no_attestation(store, sleep, fetch_all):
    await submitted_proof(store)
    attestor = FakeAttestor()
    relayer = FakeRelayer([aggregated_status(leaf_index=None)])

    final = await make_tracker(store, relayer, attestor, sleep).poll_until_terminal("job-1")

    assert final.status is JobStatus.AGGREGATED
    assert attestor.calls == []
    assert await fetch_all(AggregationVerification) == []
    [proof] = await fetch_all(ProofRecord)
    assert proof.onchain_verification_status is None


async def test_empty_merkle_proof_yields_no_attestation(store, sleep):
    await submitted_proof(store)
    attestor = FakeAttestor()
    relayer = FakeRelayer([aggregated_status(merkle_proof=[])])

    await make_tracker(store, relayer, attestor, sleep).poll_until_terminal("job-1")

    assert attestor.calls == []


async def test_transient_failures_retry_with_fixed_backoff(store, sleep):
    await submitted_proof(store)
    relayer = FakeRelayer([
        unreachable_relayer_error(),
        unreachable_relayer_error(),
        status("Queued"),
        aggregated_status(),
    ])

    final = await make_tracker(store, relayer, FakeAttestor(), sleep).poll_until_terminal("job-1")

    assert final.status is JobStatus.AGGREGATED
    assert sleep.calls == [10.0, 10.0, 20.0]


async def test_polling_is_abandoned_after_failure_cap(store, sleep):
    await submitted_proof(store)
    relayer = FakeRelayer([unreachable_relayer_error()])

    final = await make_tracker(store, relayer, FakeAttestor(), sleep).poll_until_terminal("job-1")

    assert final is None
    assert relayer.status_calls["job-1"] == 11
    assert sleep.calls == [10.0] * 10
    row = await store.get_verification_job_row("job-1")
    assert row.status is JobStatus.SUBMITTED
    assert row.poll_failures == 11


async def test_errored_attestation_records_nothing(store, sleep, fetch_all):
    await submitted_proof(store)
    attestor = FakeAttestor(error="execution reverted")

    await make_tracker(store, FakeRelayer([aggregated_status()]), attestor, sleep).poll_until_terminal("job-1")

    assert len(attestor.calls) == 1
    assert await fetch_all(AggregationVerification) == []
    [proof] = await fetch_all(ProofRecord)
    assert proof.onchain_verification_status is None


async def test_negative_onchain_verification_is_recorded(store, sleep, fetch_all):
    await submitted_proof(store)

    await make_tracker(store, FakeRelayer([aggregated_status()]), FakeAttestor(verified=False), sleep).poll_until_terminal("job-1")

    [row] = await fetch_all(AggregationVerification)
    assert row.verified is False
    [proof] = await fetch_all(ProofRecord)
    assert proof.onchain_verification_status is False


async def test_advance_keeps_terminal_status(store, sleep, fetch_all):
    await submitted_proof(store)
    await store.upsert_verification_job(
        JobSnapshot(job_id="job-1", status=JobStatus.AGGREGATED, aggregation_id=7)
    )
    tracker = make_tracker(store, FakeRelayer([status("Failed")]), FakeAttestor(), sleep)

    snapshot = await tracker.advance("job-1")

    assert snapshot.status is JobStatus.AGGREGATED
    [proof] = await fetch_all(ProofRecord)
    assert proof.onchain_verification_status is None


async def test_advance_schedules_next_poll(store, sleep):
    await submitted_proof(store)
    tracker = make_tracker(store, FakeRelayer([status("AggregationPending")]), FakeAttestor(), sleep)

    snapshot = await tracker.advance("job-1")

    row = await store.get_verification_job_row("job-1")
    assert snapshot.status is JobStatus.AGGREGATION_PENDING
    assert row.status is JobStatus.AGGREGATION_PENDING
    assert row.next_poll_at is not None
    assert sleep.calls == []


async def test_store_outage_does_not_stop_polling(broken_store, sleep):
    relayer = FakeRelayer([status("Queued"), aggregated_status()])
    attestor = FakeAttestor()

    final = await make_tracker(broken_store, relayer, attestor, sleep).poll_until_terminal("job-1")

    assert final.status is JobStatus.AGGREGATED
    assert attestor.calls == []


async def test_concurrent_attestation_of_one_proof_calls_contract_once(store, sleep, fetch_all):
    proof_uuid = await submitted_proof(store)
    attestor = FakeAttestor()
    tracker = make_tracker(store, FakeRelayer(), attestor, sleep)
    link = ProofLink(proof_uuid=proof_uuid, session_uuid="game-1", job_id="job-1")
    proof = AggregationProof(aggregation_id=7, leaf="0xabc", merkle_path=["0xdef"], leaf_count=2, leaf_index=0)

    first, second = await asyncio.gather(tracker.attest(link, proof), tracker.attest(link, proof))

    assert len(attestor.calls) == 1
    assert [result is None for result in (first, second)].count(True) == 1
    assert len(await fetch_all(AggregationVerification)) == 1

    assert await tracker.attest(link, proof) is None
    assert len(attestor.calls) == 1
