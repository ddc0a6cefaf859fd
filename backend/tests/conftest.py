"""
Configuración de pytest para las pruebas del subsistema ZK.

Cada prueba usa su propia base SQLite en tmp_path y dobles en memoria del
relayer, el prover y el attestor.
"""

import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import select

from cardwar_zk.database import create_engine, create_session_factory, init_models
from cardwar_zk.errors import RelayerError, VerificationKeyConflict
from cardwar_zk.models import JobStatus
from cardwar_zk.onchain import AttestationResult
from cardwar_zk.prover import ProofData
from cardwar_zk.records import JobSnapshot, ProofRecordPayload
from cardwar_zk.relayer import RelayerClient
from cardwar_zk.tracking import TrackingStore
from cardwar_zk.utils import sha256_hex

REGISTRY_ADDRESS = "0x" + "ab" * 20

CIRCUIT_PARAMETERS = {
    "shuffle": ["seed", "deck"],
    "deal": ["deck", "player_index"],
}


def aggregated_status(
    aggregation_id: Optional[int] = 7,
    leaf: Optional[str] = "0xabc",
    merkle_proof=("0xdef",),
    number_of_leaves: Optional[int] = 2,
    leaf_index: Optional[int] = 0,
) -> Dict[str, Any]:
    """Respuesta de job-status en estado Aggregated. None omite el campo."""
    details = {
        "leaf": leaf,
        "merkleProof": list(merkle_proof) if merkle_proof is not None else None,
        "numberOfLeaves": number_of_leaves,
        "leafIndex": leaf_index,
    }
    body = {
        "status": "Aggregated",
        "aggregationId": aggregation_id,
        "aggregationDetails": {key: value for key, value in details.items() if value is not None},
        "statement": "0x" + "01" * 32,
        "txHash": "0x" + "02" * 32,
    }
    if aggregation_id is None:
        del body["aggregationId"]
    return body


def status(name: str) -> Dict[str, Any]:
    return {"status": name}


class SleepRecorder:
    """Reemplazo de asyncio.sleep que registra las esperas sin dormir."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class FakeProver:
    def __init__(self, valid: bool = True):
        self.valid = valid
        self.vk_calls = 0

    async def execute_witness(self, circuit, inputs):
        return {"circuit": circuit.kind.value, "inputs": dict(inputs)}

    async def generate_proof(self, circuit, witness):
        proof = bytes.fromhex("deadbeef") + circuit.kind.value.encode()
        return ProofData(proof=proof, public_inputs=[1, "0x02"])

    async def verify_proof_locally(self, circuit, proof):
        return self.valid

    async def get_verification_key(self, circuit):
        self.vk_calls += 1
        await asyncio.sleep(0)
        return b"vk-" + circuit.kind.value.encode()


class FakeRelayer:
    """
    Relayer en memoria. `scripts[job_id]` (o `default_script`) es la lista
    de respuestas de job-status; el último elemento se repite. Un elemento
    Exception se lanza en lugar de responder.
    """

    def __init__(self, default_script=None):
        self.chain_id = 84532
        self.registered: List[str] = []
        self.submissions: List[Dict[str, Any]] = []
        self.scripts: Dict[str, List[Any]] = {}
        self.default_script = default_script or [status("Queued"), aggregated_status()]
        self.status_calls: Dict[str, int] = defaultdict(int)
        self.conflict = False
        self.conflict_vk_hash: Optional[str] = None
        self.optimistic = "success"
        self.submit_error: Optional[Exception] = None
        self._jobs = 0

    async def register_vk(self, verification_key_hex: str) -> str:
        self.registered.append(verification_key_hex)
        await asyncio.sleep(0)
        if self.conflict:
            raise VerificationKeyConflict(
                "Verification key already registered",
                vk_hash=self.conflict_vk_hash,
                status_code=400,
            )
        return "0x" + sha256_hex(verification_key_hex)

    def build_submission(self, proof_hex, public_inputs, vk_hash):
        return RelayerClient.build_submission(self, proof_hex, public_inputs, vk_hash)

    async def submit_proof(self, payload):
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append(payload)
        self._jobs += 1
        return {"optimisticVerify": self.optimistic, "jobId": f"job-{self._jobs}"}

    async def get_job_status(self, job_id: str) -> JobSnapshot:
        self.status_calls[job_id] += 1
        script = self.scripts.get(job_id, self.default_script)
        item = script[min(self.status_calls[job_id], len(script)) - 1]
        if isinstance(item, Exception):
            raise item
        return JobSnapshot.from_relayer(job_id, item)

    def close(self) -> None:
        pass


class FakeAttestor:
    configured = True

    def __init__(self, verified: bool = True, error: Optional[str] = None):
        self.verified = verified
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def verify_and_attest(self, **kwargs) -> AttestationResult:
        self.calls.append(kwargs)
        await asyncio.sleep(0)
        if self.error:
            return AttestationResult(
                attempted=True, verified=False, contract_address=REGISTRY_ADDRESS, error=self.error
            )
        return AttestationResult(
            attempted=True,
            verified=self.verified,
            domain_id=1,
            tx_hash="0x" + "cd" * 32 if self.verified else None,
            contract_address=REGISTRY_ADDRESS,
        )


def unreachable_relayer_error() -> RelayerError:
    return RelayerError("Relayer GET job-status failed: connection refused")


async def submitted_proof(store, job_id="job-1", session_uuid="game-1"):
    """Prueba persistida y vinculada a un job en estado Submitted."""
    proof_uuid = await store.create_proof_record(
        ProofRecordPayload(
            session_uuid=session_uuid,
            circuit_uuid=None,
            proof_hex=f"0x{job_id.encode().hex()}",
            public_inputs=["0x01"],
            bb_verification_status=True,
        )
    )
    await store.upsert_verification_job(JobSnapshot(job_id=job_id, status=JobStatus.SUBMITTED))
    await store.attach_proof_submission(session_uuid, proof_uuid, job_id, {}, {"jobId": job_id})
    return proof_uuid


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def circuits_dir(tmp_path):
    target = tmp_path / "circuits" / "target"
    target.mkdir(parents=True)
    for kind, params in CIRCUIT_PARAMETERS.items():
        circuit = {
            "noir_version": "1.0.0-beta.3",
            "hash": kind,
            "bytecode": f"H4sIAAAA{kind}",
            "abi": {
                "parameters": [
                    {"name": name, "type": {"kind": "field"}, "visibility": "private"}
                    for name in params
                ],
                "return_type": None,
                "error_types": {},
            },
        }
        (target / f"{kind}.json").write_text(json.dumps(circuit))
    return target


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracking.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return TrackingStore(engine)


@pytest.fixture
def broken_store(tmp_path):
    """Store cuya base no se puede abrir: toda operación falla."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'tracking.db'}")
    return TrackingStore(engine)


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def relayer():
    return FakeRelayer()


@pytest.fixture
def prover():
    return FakeProver()


@pytest.fixture
def attestor():
    return FakeAttestor()


@pytest.fixture
def fetch_all(engine):
    factory = create_session_factory(engine)

    async def _fetch(model, *criteria):
        async with factory() as db:
            return list((await db.execute(select(model).where(*criteria))).scalars())

    return _fetch
