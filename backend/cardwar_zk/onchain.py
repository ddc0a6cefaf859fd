"""
=============================================================================
CARDWAR ZK - OnchainAttestor (Verificación en el Registry)
=============================================================================
1. domainId() del contrato (o ZKVERIFY_DOMAIN_ID)
2. verifyProofAggregation(...) como view, sin gas
3. Solo si es true: recordProofAggregationVerification(keccak(gameId), ...)
   firmado localmente, esperando el recibo

Nunca lanza: cualquier error de RPC o revert vuelve como
AttestationResult(error=...). La atestación es opcional; sin configuración
el resultado es attempted=False.

Un solo signer: lectura de nonce, firma y envío van serializados, y un
nonce rechazado se reintenta con uno fresco.
=============================================================================
"""

import asyncio
import functools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from eth_account import Account
from web3 import HTTPProvider, Web3

from .config import TrackingConfig
from .utils import left_pad_32

logger = logging.getLogger(__name__)


def _fn(name: str, inputs: List[tuple], outputs: List[str], mutability: str) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": arg, "type": kind} for arg, kind in inputs],
        "outputs": [{"name": "", "type": kind} for kind in outputs],
    }


REGISTRY_ABI = [
    _fn("domainId", [], ["uint256"], "view"),
    _fn(
        "verifyProofAggregation",
        [
            ("aggregationId", "uint256"),
            ("leaf", "bytes32"),
            ("merklePath", "bytes32[]"),
            ("leafCount", "uint256"),
            ("leafIndex", "uint256"),
        ],
        ["bool"],
        "view",
    ),
    _fn(
        "recordProofAggregationVerification",
        [
            ("gameKey", "bytes32"),
            ("aggregationId", "uint256"),
            ("leaf", "bytes32"),
            ("merklePath", "bytes32[]"),
            ("leafCount", "uint256"),
            ("leafIndex", "uint256"),
        ],
        ["bool"],
        "nonpayable",
    ),
]

MIN_GAS = 220_000
RECEIPT_TIMEOUT = 120
MAX_SEND_ATTEMPTS = 24
NONCE_RETRY_DELAY = 0.08

NONCE_ERRORS = (
    "nonce too low",
    "nonce too high",
    "already known",
    "known transaction",
    "replacement",
    "underpriced",
)


@dataclass(frozen=True)
class AttestationResult:
    attempted: bool
    verified: bool
    domain_id: Optional[int] = None
    tx_hash: Optional[str] = None
    contract_address: Optional[str] = None
    error: Optional[str] = None


def explain_web3_error(exc: Exception) -> str:
    """Mensaje legible para errores JSON-RPC ({'message': ...}) y reverts."""
    if isinstance(exc, ValueError) and exc.args and isinstance(exc.args[0], dict):
        return exc.args[0].get("message", "") or str(exc)
    return str(exc) or exc.__class__.__name__


def _is_nonce_error(message: str) -> bool:
    return any(marker in message for marker in NONCE_ERRORS)


def _default_web3_factory(rpc_url: str) -> Web3:
    return Web3(HTTPProvider(rpc_url))


class OnchainAttestor:
    """Cliente del contrato registry para atestar agregaciones."""

    def __init__(
        self,
        rpc_url: Optional[str],
        private_key: Optional[str],
        registry_address: Optional[str],
        domain_id_override: Optional[int] = None,
        web3_factory: Callable[[str], Any] = _default_web3_factory,
    ):
        self.rpc_url = rpc_url
        self.private_key = private_key
        self.registry_address = registry_address
        self.domain_id_override = domain_id_override
        self._web3_factory = web3_factory
        self._connection = None
        self._tx_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: TrackingConfig, **kwargs) -> "OnchainAttestor":
        return cls(
            config.rpc_url,
            config.operator_private_key,
            config.registry_address,
            domain_id_override=config.domain_id_override,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.rpc_url and self.private_key and self.registry_address)

    def _connect(self):
        with self._tx_lock:
            if self._connection is None:
                w3 = self._web3_factory(self.rpc_url)
                contract = w3.eth.contract(
                    address=Web3.to_checksum_address(self.registry_address),
                    abi=REGISTRY_ABI,
                )
                account = Account.from_key(self.private_key)
                self._connection = (w3, contract, account)
            return self._connection

    async def verify_and_attest(
        self,
        game_id: str,
        aggregation_id: int,
        leaf: str,
        merkle_path: List[str],
        leaf_count: int,
        leaf_index: int,
    ) -> AttestationResult:
        if not self.configured:
            logger.debug("[ZK: ONCHAIN] RPC_URL, OPERATOR_PRIVATE_KEY or CARDWAR_REGISTRY_ADDRESS not set")
            return AttestationResult(attempted=False, verified=False, contract_address=self.registry_address)

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                functools.partial(
                    self._verify_and_attest_sync,
                    game_id, aggregation_id, leaf, list(merkle_path), leaf_count, leaf_index,
                ),
            )
        except Exception as exc:
            message = explain_web3_error(exc)
            logger.warning("[ZK: ONCHAIN] aggregation %s attestation failed: %s", aggregation_id, message)
            return AttestationResult(
                attempted=True,
                verified=False,
                contract_address=self.registry_address,
                error=message or "On-chain aggregation verification failed",
            )

    def _verify_and_attest_sync(self, game_id, aggregation_id, leaf, merkle_path, leaf_count, leaf_index) -> AttestationResult:
        w3, contract, account = self._connect()

        if self.domain_id_override is not None:
            domain_id = int(self.domain_id_override)
        else:
            domain_id = int(contract.functions.domainId().call())

        leaf_word = left_pad_32(leaf)
        path_words = [left_pad_32(node) for node in merkle_path]
        args = (int(aggregation_id), leaf_word, path_words, int(leaf_count), int(leaf_index))

        verified = bool(contract.functions.verifyProofAggregation(*args).call())
        if not verified:
            logger.info("[ZK: ONCHAIN] aggregation %s leaf %s not verified by registry", aggregation_id, leaf)
            return AttestationResult(
                attempted=True,
                verified=False,
                domain_id=domain_id,
                contract_address=self.registry_address,
            )

        game_key = Web3.keccak(text=game_id)
        receipt = self._send_tx(w3, account, contract.functions.recordProofAggregationVerification(game_key, *args))
        tx_hash = Web3.to_hex(receipt["transactionHash"])

        if receipt.get("status", 1) == 0:
            return AttestationResult(
                attempted=True,
                verified=False,
                domain_id=domain_id,
                tx_hash=tx_hash,
                contract_address=self.registry_address,
                error="recordProofAggregationVerification reverted",
            )

        logger.info("[ZK: ONCHAIN] aggregation %s recorded for game %s in tx %s", aggregation_id, game_id, tx_hash)
        return AttestationResult(
            attempted=True,
            verified=True,
            domain_id=domain_id,
            tx_hash=tx_hash,
            contract_address=self.registry_address,
        )

    def _send_tx(self, w3, account, fn_call, headroom_num: int = 15, headroom_den: int = 10):
        try:
            estimate = int(fn_call.estimate_gas({"from": account.address}))
            gas_limit = max(MIN_GAS, estimate * headroom_num // headroom_den)
        except Exception as exc:
            logger.warning("[ZK: ONCHAIN] gas estimation failed, defaulting: %s", explain_web3_error(exc))
            gas_limit = 3_000_000

        attempts = 0
        while True:
            attempts += 1
            try:
                # nonce, firma y envío bajo el lock
                with self._tx_lock:
                    tx = fn_call.build_transaction({
                        "from": account.address,
                        "gas": gas_limit,
                        "nonce": w3.eth.get_transaction_count(account.address, "pending"),
                        "chainId": w3.eth.chain_id,
                    })
                    signed = account.sign_transaction(tx)
                    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
                break
            except Exception as exc:
                message = explain_web3_error(exc).lower()
                if _is_nonce_error(message) and attempts < MAX_SEND_ATTEMPTS:
                    logger.debug("[ZK: ONCHAIN] nonce rejected (%s), retrying with fresh nonce", message)
                    time.sleep(NONCE_RETRY_DELAY)
                    continue
                raise

        return w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
