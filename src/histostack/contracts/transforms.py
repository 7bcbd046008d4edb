"""Transform contracts."""

import numpy as np
from histostack.contracts.base import require


def assert_affine_matrix(matrix: np.ndarray, context: str) -> None:
    """Enforce that ``matrix`` is a finite 3x3 homogeneous 2-D transform.

    Parameters
    ----------
    matrix : np.ndarray
        Candidate transform.
    context : str
        What the matrix is (e.g. a file name), used in the error message.
    """
    require(
        matrix.shape == (3, 3),
        f"Transform contract violated: {context} has shape {matrix.shape}, expected (3, 3)"
    )
    require(
        bool(np.all(np.isfinite(matrix))),
        f"Transform contract violated: {context} has non-finite entries"
    )
    require(
        np.allclose(matrix[2], [0.0, 0.0, 1.0]),
        f"Transform contract violated: {context} last row is {matrix[2].tolist()}"
    )
