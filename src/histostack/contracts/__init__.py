"""Pipeline contracts and error taxonomy.

This package enforces semantic guarantees between pipeline stages.
Contracts fail immediately and loudly when stages don't produce their
promised invariants.

Key principle:
- Pydantic validates config correctness
- Contracts validate pipeline correctness
- The registration engine handles image mathematics
"""

from histostack.contracts.failure import (
    ContractViolation,
    ConfigurationError,
    CacheTypeMismatch,
    GraphConnectivityError,
    RegistrationEngineFailure,
)
from histostack.contracts.base import require
from histostack.contracts.graph import assert_neighbor_graph, assert_weights_resolved
from histostack.contracts.transforms import assert_affine_matrix
from histostack.contracts.iteration import assert_iteration_range

__all__ = [
    "ContractViolation",
    "ConfigurationError",
    "CacheTypeMismatch",
    "GraphConnectivityError",
    "RegistrationEngineFailure",
    "require",
    "assert_neighbor_graph",
    "assert_weights_resolved",
    "assert_affine_matrix",
    "assert_iteration_range",
]
