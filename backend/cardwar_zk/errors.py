"""
=============================================================================
CARDWAR ZK - Jerarquía de Errores
=============================================================================
Tres clases estrictamente separadas:
- Integración (fatal): configuración incorrecta, nunca se reintenta
- Transitoria externa: relayer/RPC/store caídos, se degrada a resultado nulo
- Negocio terminal: job Failed, optimistic negativo, verify on-chain falso
Ninguna clase se disfraza de otra.
=============================================================================
"""

from typing import Optional


class ZKTrackingError(Exception):
    """Base de todos los errores del subsistema de pruebas."""


# =============================================================================
# INTEGRACIÓN (FATAL)
# =============================================================================

class IntegrationError(ZKTrackingError):
    """Error de configuración o integración. Aborta la llamada en curso."""


class CircuitArtifactError(IntegrationError):
    """Artefacto compilado del circuito ausente o inválido."""


class MissingWitnessParameterError(IntegrationError):
    """Faltan parámetros declarados por el ABI del circuito."""

    def __init__(self, kind: str, missing):
        self.kind = kind
        self.missing = list(missing)
        super().__init__(
            f"[ERR: Circuit] Missing required circuit input parameters for {kind}: "
            f"{', '.join(self.missing)}"
        )


class RelayerConfigurationError(IntegrationError):
    """Faltan URL o API key del relayer."""


# =============================================================================
# TRANSITORIOS
# =============================================================================

class RelayerError(ZKTrackingError):
    """Fallo de transporte o respuesta HTTP de error del relayer."""

    def __init__(self, message: str, status_code: Optional[int] = None, body=None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class RelayerResponseError(RelayerError):
    """Respuesta del relayer con forma inesperada."""


class VerificationKeyConflict(RelayerError):
    """
    El relayer ya tiene registrada esta VK: otro proceso ganó la carrera.
    vk_hash viene poblado cuando el relayer lo incluye en la respuesta.
    """

    def __init__(self, message: str, vk_hash: Optional[str] = None, status_code=None, body=None):
        self.vk_hash = vk_hash
        super().__init__(message, status_code=status_code, body=body)


# =============================================================================
# NEGOCIO
# =============================================================================

class CircuitRegistrationError(ZKTrackingError):
    """No se pudo resolver la VK de un circuito tras todos los fallbacks."""


class LocalVerificationError(ZKTrackingError):
    """La prueba generada no pasó la verificación local del backend."""
