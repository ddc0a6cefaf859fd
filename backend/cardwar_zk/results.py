"""
=============================================================================
CARDWAR ZK - Política "Nunca Romper el Juego"
=============================================================================
Todas las llamadas de tracking pasan por never_break_gameplay(), que
convierte fallos transitorios en un TrackResult explícito en lugar de
try/except dispersos. Los errores de integración siempre se propagan.
=============================================================================
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

from .errors import IntegrationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TrackResult(Generic[T]):
    """Resultado de una operación de tracking: ok + valor, o fallo + motivo."""
    ok: bool
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "TrackResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> "TrackResult[T]":
        return cls(ok=False, reason=reason)


async def never_break_gameplay(operation: str, awaitable: Awaitable[T]) -> TrackResult[T]:
    """
    Espera `awaitable` y encapsula cualquier fallo transitorio.

    - IntegrationError: se propaga (configuración rota, no es transitorio)
    - Cualquier otra Exception: se registra y se devuelve como fallo
    """
    try:
        value: Any = await awaitable
    except IntegrationError:
        raise
    except Exception as exc:
        logger.warning("[ZK: TRACKING] %s failed: %s", operation, exc)
        return TrackResult.failure(f"{operation}: {exc}")
    return TrackResult.success(value)
