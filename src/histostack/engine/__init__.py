"""Registration engine contract and the greedy command-line binding."""

from histostack.engine.base import (
    Dof,
    InitMode,
    EngineParams,
    ImagePair,
    AffineProblem,
    DeformableProblem,
    ResliceProblem,
    MetricReport,
    AffineResult,
    DeformableResult,
    RegistrationEngine,
)
from histostack.engine.greedy import GreedyEngine, parse_greedy_metric

__all__ = [
    "Dof",
    "InitMode",
    "EngineParams",
    "ImagePair",
    "AffineProblem",
    "DeformableProblem",
    "ResliceProblem",
    "MetricReport",
    "AffineResult",
    "DeformableResult",
    "RegistrationEngine",
    "GreedyEngine",
    "parse_greedy_metric",
]
