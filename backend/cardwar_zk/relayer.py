"""
=============================================================================
CARDWAR ZK - Cliente del Relayer (Kurier)
=============================================================================
POST /register-vk/{api}           {proofType, proofOptions, vk} -> {vkHash}
POST /submit-proof/{api}          {..., proofData, submissionMode} -> {optimisticVerify, jobId}
GET  /job-status/{api}/{jobId}    -> {status, aggregationId, aggregationDetails, ...}

requests es bloqueante: cada llamada corre en el executor por defecto del
loop para no frenar el juego.
=============================================================================
"""

import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional

import requests

from .config import TrackingConfig
from .errors import (
    RelayerConfigurationError,
    RelayerError,
    RelayerResponseError,
    VerificationKeyConflict,
)
from .records import JobSnapshot

logger = logging.getLogger(__name__)

PROOF_TYPE = "ultrahonk"
PROOF_OPTIONS = {"variant": "Plain"}
SUBMISSION_MODE = "attestation"

_CONFLICT_MARKERS = ("already", "duplicate", "exists")


def _extract_vk_hash(body: Any) -> Optional[str]:
    """vkHash en la raíz o dentro de meta, según la versión del relayer."""
    if not isinstance(body, dict):
        return None
    meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
    return body.get("vkHash") or meta.get("vkHash")


def _is_vk_conflict(status_code: int, body: Any, text: str) -> bool:
    if status_code not in (400, 409):
        return False
    haystack = text.lower()
    if isinstance(body, dict):
        haystack += " " + " ".join(
            str(body.get(key, "")) for key in ("code", "message", "error")
        ).lower()
    return any(marker in haystack for marker in _CONFLICT_MARKERS)


class RelayerClient:
    """Cliente HTTP del relayer. Los errores de transporte son RelayerError."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        chain_id: int = 84532,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        if not base_url or not api_key:
            raise RelayerConfigurationError("[ERR: Env] Missing KURIER_URL or KURIER_API")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.chain_id = chain_id
        self.timeout = timeout
        self._http = session or requests.Session()

    @classmethod
    def from_config(cls, config: TrackingConfig) -> "RelayerClient":
        return cls(
            config.relayer_url,
            config.relayer_api_key,
            chain_id=config.chain_id,
            timeout=config.relayer_timeout,
        )

    def close(self) -> None:
        self._http.close()

    # =========================================================================
    # TRANSPORTE
    # =========================================================================

    def _request_sync(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = f"{self.base_url}/{path}"
        try:
            return self._http.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RelayerError(f"Relayer {method} {path.split('/')[0]} failed: {exc}") from exc

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._request_sync, method, path, payload)
        )

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _raise_for_status(self, response: requests.Response, operation: str) -> Any:
        body = self._json(response)
        if response.status_code >= 400:
            raise RelayerError(
                f"Relayer {operation} returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=body if body is not None else response.text,
            )
        if not isinstance(body, dict):
            raise RelayerResponseError(
                f"Relayer {operation} returned a non-object body",
                status_code=response.status_code,
                body=response.text,
            )
        return body

    # =========================================================================
    # OPERACIONES
    # =========================================================================

    async def register_vk(self, verification_key_hex: str) -> str:
        """
        Registra la VK y devuelve su vkHash.

        Raises:
            VerificationKeyConflict: la VK ya estaba registrada
            RelayerError: fallo de transporte o HTTP
        """
        payload = {
            "proofType": PROOF_TYPE,
            "proofOptions": dict(PROOF_OPTIONS),
            "vk": verification_key_hex,
        }
        response = await self._request("POST", f"register-vk/{self.api_key}", payload)
        body = self._json(response)

        if _is_vk_conflict(response.status_code, body, response.text or ""):
            raise VerificationKeyConflict(
                "Verification key already registered",
                vk_hash=_extract_vk_hash(body),
                status_code=response.status_code,
                body=body,
            )

        body = self._raise_for_status(response, "register-vk")
        vk_hash = _extract_vk_hash(body)
        if not vk_hash:
            raise RelayerResponseError("Relayer register-vk response has no vkHash", body=body)
        return vk_hash

    def build_submission(self, proof_hex: str, public_inputs: List[str], vk_hash: str) -> Dict[str, Any]:
        return {
            "proofType": PROOF_TYPE,
            "vkRegistered": True,
            "chainId": self.chain_id,
            "proofOptions": dict(PROOF_OPTIONS),
            "proofData": {
                "proof": proof_hex,
                "publicSignals": list(public_inputs),
                "vk": vk_hash,
            },
            "submissionMode": SUBMISSION_MODE,
        }

    async def submit_proof(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Envía la prueba. Devuelve el cuerpo crudo {optimisticVerify, jobId, ...}."""
        response = await self._request("POST", f"submit-proof/{self.api_key}", payload)
        return self._raise_for_status(response, "submit-proof")

    async def get_job_status(self, job_id: str) -> JobSnapshot:
        response = await self._request("GET", f"job-status/{self.api_key}/{job_id}")
        body = self._raise_for_status(response, "job-status")
        return JobSnapshot.from_relayer(job_id, body)
