"""
CardWar ZK - seguimiento de pruebas de equidad: relayer, jobs, atestación
on-chain y reconciliación.
"""

from .config import TrackingConfig
from .models import CircuitKind, JobStatus
from .pipeline import ZKPipeline
from .proofs import ProofContext

__all__ = ["TrackingConfig", "CircuitKind", "JobStatus", "ZKPipeline", "ProofContext"]
