"""
=============================================================================
CARDWAR ZK - Artefactos de Circuitos y Contrato del Prover
=============================================================================
Carga de los circuitos Noir compilados (<dir>/<kind>.json), validación de
entradas contra el ABI del circuito y el protocolo que debe cumplir el
backend criptográfico (witness, prueba, verificación local, VK).

El backend de pruebas en sí es un colaborador externo: este módulo solo
define su forma.
=============================================================================
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Protocol, Union

from .errors import CircuitArtifactError, MissingWitnessParameterError
from .models import CircuitKind
from .utils import sha256_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledCircuit:
    """Circuito compilado tal como está en disco."""
    kind: CircuitKind
    path: Path
    data: Dict[str, Any] = field(repr=False)
    artifact_sha256: str

    @property
    def bytecode(self) -> str:
        return self.data["bytecode"]

    @property
    def parameters(self) -> List[Dict[str, Any]]:
        return list(self.data.get("abi", {}).get("parameters", []))

    @property
    def parameter_names(self) -> List[str]:
        return [param["name"] for param in self.parameters]


@dataclass(frozen=True)
class ProofData:
    """Salida del backend: bytes de la prueba y public inputs."""
    proof: Union[bytes, str]
    public_inputs: List[Any]


class Prover(Protocol):
    """Operaciones opacas del backend UltraHonk."""

    async def execute_witness(self, circuit: CompiledCircuit, inputs: Dict[str, Any]) -> Any:
        ...

    async def generate_proof(self, circuit: CompiledCircuit, witness: Any) -> ProofData:
        ...

    async def verify_proof_locally(self, circuit: CompiledCircuit, proof: ProofData) -> bool:
        ...

    async def get_verification_key(self, circuit: CompiledCircuit) -> Union[bytes, str]:
        ...


def load_compiled_circuit(circuits_dir: Union[str, Path], kind: CircuitKind) -> CompiledCircuit:
    """
    Lee <circuits_dir>/<kind>.json y calcula el SHA-256 de los bytes en disco.

    Raises:
        CircuitArtifactError: archivo ausente, JSON inválido o sin bytecode/ABI
    """
    kind = CircuitKind(kind)
    path = Path(circuits_dir) / f"{kind.value}.json"
    if not path.is_file():
        raise CircuitArtifactError(f"[ERR: Circuits] Circuit file not found: {path}")

    raw = path.read_bytes()
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise CircuitArtifactError(f"[ERR: Circuits] Invalid circuit JSON {path}: {exc}") from exc

    if not isinstance(data, dict) or not data.get("bytecode"):
        raise CircuitArtifactError(f"[ERR: Circuits] Circuit bytecode not found in {path}")
    if not isinstance(data.get("abi"), dict):
        raise CircuitArtifactError(f"[ERR: Circuit] Circuit ABI not found in {path}")

    return CompiledCircuit(kind=kind, path=path, data=data, artifact_sha256=sha256_hex(raw))


def extract_circuit_parameters(circuit: CompiledCircuit, inputs: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Devuelve solo los parámetros que declara el ABI, en su orden.
    Entradas extra se ignoran; las faltantes son un error de integración.
    """
    if not isinstance(inputs, Mapping):
        raise MissingWitnessParameterError(circuit.kind.value, circuit.parameter_names)

    missing = [name for name in circuit.parameter_names if name not in inputs]
    if missing:
        raise MissingWitnessParameterError(circuit.kind.value, missing)

    return {name: inputs[name] for name in circuit.parameter_names}
