"""
=============================================================================
CARDWAR ZK - Utilidades de Codificación
=============================================================================
Conversión entre bytes, hex canónico 0x y palabras de 32 bytes.
=============================================================================
"""

import hashlib
import math
from typing import Any, Iterable, List, Optional, Union


def ensure_hex_prefix(value: str) -> str:
    """Agrega el prefijo 0x si falta."""
    value = str(value)
    return value if value.startswith("0x") else f"0x{value}"


def bytes_to_hex(value: Union[bytes, bytearray, str]) -> str:
    """Convierte bytes a hex con prefijo 0x. Un str se asume ya en hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return ensure_hex_prefix(value)


def normalize_public_inputs(inputs: Iterable[Any]) -> List[str]:
    """
    Forma canónica de los public inputs: strings 0x-hex.
    Los enteros se codifican como palabras de 32 bytes.
    """
    normalized = []
    for item in inputs:
        if isinstance(item, int):
            normalized.append("0x" + item.to_bytes(32, "big").hex())
        elif isinstance(item, (bytes, bytearray)):
            normalized.append(bytes_to_hex(item))
        else:
            normalized.append(ensure_hex_prefix(item))
    return normalized


def left_pad_32(value: str) -> bytes:
    """Rellena un valor hex a la izquierda hasta una palabra de 32 bytes."""
    digits = ensure_hex_prefix(value)[2:]
    if len(digits) % 2:
        digits = "0" + digits
    raw = bytes.fromhex(digits)
    if len(raw) > 32:
        raise ValueError(f"Value exceeds 32 bytes: {value}")
    return raw.rjust(32, b"\x00")


def sha256_hex(value: Union[str, bytes]) -> str:
    if isinstance(value, str):
        value = value.encode()
    return hashlib.sha256(value).hexdigest()


def to_int_or_none(value: Any) -> Optional[int]:
    """
    Entero o None. Acepta strings decimales o hex ("0x1a") sin perder
    precisión; "7.0" pasa por float. Rechaza valores no finitos.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return int(text, 0)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            return None
        return int(parsed) if math.isfinite(parsed) else None
    return None
