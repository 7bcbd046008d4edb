"""Iteration schedule contract."""

from histostack.contracts.base import require
from histostack.contracts.failure import ConfigurationError


def assert_iteration_range(i_first: int, i_last: int, n_affine: int, n_deform: int) -> None:
    """Validate ``1 <= i_first <= i_last <= n_affine + n_deform``.

    Runs before any work starts.

    Raises
    ------
    ConfigurationError
        If the range falls outside the schedule.
    """
    n_total = n_affine + n_deform
    require(
        1 <= i_first <= i_last <= n_total,
        f"Iteration range ({i_first}, {i_last}) is out of range [1, {n_total}]",
        error=ConfigurationError,
    )
