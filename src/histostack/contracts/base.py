"""Base contract enforcement utilities.

The require() function is the single enforcement mechanism for all contracts.
"""

from histostack.contracts.failure import ContractViolation


def require(condition: bool, message: str, error: type = ContractViolation) -> None:
    """Enforce a pipeline contract.

    Called at stage boundaries to verify the preceding stage produced the
    guaranteed invariants. It is fail-fast: no recovery, no fallback.

    Parameters
    ----------
    condition : bool
        The invariant that must be true.
    message : str
        Error message explaining the violation, naming the slice, iteration
        or file involved.
    error : type, optional
        Exception class to raise. Defaults to ContractViolation; stage
        code passes ConfigurationError or GraphConnectivityError where the
        failure belongs to that category.

    Raises
    ------
    ContractViolation
        If condition is False (or the requested subclass / error type).

    Examples
    --------
    >>> require(matrix.shape == (3, 3), "Transform contract: expected 3x3")
    """
    if not condition:
        raise error(message)
