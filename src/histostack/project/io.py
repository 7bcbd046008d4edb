"""Image and transform I/O.

Images are carried through the pipeline as ``xarray.DataArray`` objects
with spatial dims ``("y", "x")`` or ``("z", "y", "x")``, an optional
trailing ``"component"`` dim, and physical coordinates
``origin + index * spacing``. SimpleITK handles the on-disk encoding.

Affine transforms are 3x3 homogeneous matrices in plain text, one row
per line, the format the greedy tool reads and writes.
"""

import io
import logging
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import xarray as xr
import SimpleITK as sitk

from histostack.contracts import ConfigurationError, assert_affine_matrix

__all__ = [
    'make_image', 'image_from_sitk', 'image_to_sitk', 'read_image', 'write_image',
    'image_spacing', 'format_affine_matrix', 'parse_affine_matrix',
    'read_affine_matrix', 'write_affine_matrix',
]

logger = logging.getLogger(__name__)

_SPATIAL_DIMS = {2: ("y", "x"), 3: ("z", "y", "x")}


def make_image(
    array: np.ndarray,
    spacing: Optional[Sequence[float]] = None,
    origin: Optional[Sequence[float]] = None,
    components: bool = False,
    direction: Optional[Sequence[float]] = None,
) -> xr.DataArray:
    """Wrap a numpy array as an image DataArray.

    Parameters
    ----------
    array : np.ndarray
        Pixel data in ``(z,) y, x[, component]`` order.
    spacing, origin : sequence of float, optional
        Per-axis spacing and origin in ITK order ``(x, y[, z])``.
        Default to unit spacing and zero origin.
    components : bool, optional
        True when the last axis holds vector components.
    direction : sequence of float, optional
        Flattened direction cosines in ITK order. Defaults to identity.
    """
    n_spatial = array.ndim - 1 if components else array.ndim
    if n_spatial not in _SPATIAL_DIMS:
        raise ValueError(f"Expected 2-D or 3-D image, got {n_spatial} spatial dims")
    spatial = _SPATIAL_DIMS[n_spatial]
    spacing = tuple(float(s) for s in (spacing or (1.0,) * n_spatial))
    origin = tuple(float(o) for o in (origin or (0.0,) * n_spatial))
    if direction is None:
        direction = tuple(np.eye(n_spatial).ravel())

    # ITK axis order is reversed relative to the array axis order
    coords = {}
    for axis, dim in enumerate(spatial):
        itk_axis = n_spatial - 1 - axis
        n = array.shape[axis]
        coords[dim] = origin[itk_axis] + np.arange(n) * spacing[itk_axis]

    dims = spatial + (("component",) if components else ())
    return xr.DataArray(
        array,
        dims=dims,
        coords=coords,
        attrs={"spacing": spacing, "direction": tuple(float(d) for d in direction)},
    )


def image_spacing(image: xr.DataArray) -> tuple:
    """Spacing in ITK order ``(x, y[, z])``."""
    spatial = [d for d in image.dims if d != "component"]
    fallback = image.attrs.get("spacing", (1.0,) * len(spatial))
    spacing = []
    for axis, dim in enumerate(reversed(spatial)):
        values = image[dim].values
        if values.size > 1:
            spacing.append(float(values[1] - values[0]))
        else:
            spacing.append(float(fallback[axis]))
    return tuple(spacing)


def image_from_sitk(img: sitk.Image) -> xr.DataArray:
    array = sitk.GetArrayFromImage(img)
    return make_image(
        array,
        spacing=img.GetSpacing(),
        origin=img.GetOrigin(),
        components=img.GetNumberOfComponentsPerPixel() > 1,
        direction=img.GetDirection(),
    )


def image_to_sitk(image: xr.DataArray) -> sitk.Image:
    is_vector = "component" in image.dims
    spatial = [d for d in image.dims if d != "component"]
    img = sitk.GetImageFromArray(np.ascontiguousarray(image.values), isVector=is_vector)
    img.SetSpacing(image_spacing(image))
    img.SetOrigin(tuple(float(image[d].values[0]) for d in reversed(spatial)))
    direction = image.attrs.get("direction")
    if direction is not None and len(direction) == len(spatial) ** 2:
        img.SetDirection(tuple(direction))
    return img


def read_image(path: Union[str, Path]) -> xr.DataArray:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Image not found: {path}")
    image = image_from_sitk(sitk.ReadImage(str(path)))
    logger.debug("Read image %s shape=%s dtype=%s", path, image.shape, image.dtype)
    return image


def write_image(image: xr.DataArray, path: Union[str, Path]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    sitk.WriteImage(image_to_sitk(image), str(path))


def format_affine_matrix(matrix: np.ndarray) -> str:
    buf = io.StringIO()
    np.savetxt(buf, np.asarray(matrix, dtype=float), fmt="%.17g")
    return buf.getvalue()


def parse_affine_matrix(text: str, source: str = "<matrix>") -> np.ndarray:
    """Parse a 3x3 matrix from text.

    Raises
    ------
    ContractViolation
        If the text does not hold a finite homogeneous 3x3 matrix.
    """
    matrix = np.loadtxt(io.StringIO(text), dtype=float, ndmin=2)
    assert_affine_matrix(matrix, source)
    return matrix


def read_affine_matrix(path: Union[str, Path]) -> np.ndarray:
    path = Path(path)
    return parse_affine_matrix(path.read_text(), str(path))


def write_affine_matrix(path: Union[str, Path], matrix: np.ndarray) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_affine_matrix(matrix))
