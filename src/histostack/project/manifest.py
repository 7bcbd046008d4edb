"""Slice manifest parsing and the slice stack views.

A manifest is a text file with one slice per line::

    <unique_id> <z_position> <source_path>

Blank lines and lines starting with ``#`` are ignored. Source paths are
resolved to absolute paths at read time and must exist.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from histostack.contracts import ConfigurationError

__all__ = ['Slice', 'SliceStack', 'parse_manifest', 'format_manifest',
           'read_manifest', 'write_manifest']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slice:
    """One 2-D histology image and its declared z-position."""
    slice_id: str
    raw_path: Path
    z_position: float

    @property
    def sort_key(self) -> Tuple[float, str]:
        return (self.z_position, self.slice_id)


class SliceStack:
    """Ordered slices with a z-sorted view.

    Indices always refer to manifest (insertion) order. The sorted view
    orders by ``(z_position, slice_id)`` so ties are broken deterministically.

    Parameters
    ----------
    slices : sequence of Slice
        Slices in manifest order.

    Raises
    ------
    ConfigurationError
        If two slices share an id.
    """

    def __init__(self, slices: Sequence[Slice]):
        self._slices = list(slices)
        self._index = {}
        for i, s in enumerate(self._slices):
            if s.slice_id in self._index:
                raise ConfigurationError(f"Duplicate slice id '{s.slice_id}' in manifest")
            self._index[s.slice_id] = i
        self._sorted = sorted(range(len(self._slices)), key=lambda i: self._slices[i].sort_key)
        self._rank = {idx: rank for rank, idx in enumerate(self._sorted)}

    def __len__(self) -> int:
        return len(self._slices)

    def __iter__(self) -> Iterator[Slice]:
        return iter(self._slices)

    def __getitem__(self, index: int) -> Slice:
        return self._slices[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, SliceStack):
            return NotImplemented
        return self._slices == other._slices

    @property
    def slices(self) -> List[Slice]:
        return list(self._slices)

    @property
    def sorted_indices(self) -> List[int]:
        """Manifest indices in ascending ``(z, id)`` order."""
        return list(self._sorted)

    def index_of(self, slice_id: str) -> int:
        try:
            return self._index[slice_id]
        except KeyError:
            raise ConfigurationError(f"Unknown slice id '{slice_id}'") from None

    def z_neighbors(self, index: int) -> List[int]:
        """Indices of the slices immediately before and after ``index`` in z order."""
        rank = self._rank[index]
        result = []
        if rank > 0:
            result.append(self._sorted[rank - 1])
        if rank + 1 < len(self._sorted):
            result.append(self._sorted[rank + 1])
        return result


def _parse_line(line: str, line_no: int, source: str, base_dir: Path) -> Optional[Slice]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None

    parts = stripped.split(maxsplit=2)
    if len(parts) != 3:
        raise ConfigurationError(
            f"{source}:{line_no}: expected '<id> <z> <path>', got '{stripped}'"
        )
    slice_id, z_text, path_text = parts
    try:
        z_position = float(z_text)
    except ValueError:
        raise ConfigurationError(
            f"{source}:{line_no}: z position '{z_text}' for slice '{slice_id}' is not a number"
        ) from None

    raw_path = Path(path_text).expanduser()
    if not raw_path.is_absolute():
        raw_path = base_dir / raw_path
    raw_path = raw_path.resolve()
    if not raw_path.exists():
        raise ConfigurationError(
            f"{source}:{line_no}: source file for slice '{slice_id}' not found: {raw_path}"
        )
    return Slice(slice_id, raw_path, z_position)


def parse_manifest(lines: Iterable[str], source: str = "<manifest>",
                   base_dir: Optional[Union[str, Path]] = None) -> SliceStack:
    """Parse manifest lines into a SliceStack.

    Parameters
    ----------
    lines : iterable of str
        Manifest content, one slice per line.
    source : str, optional
        Name used in error messages.
    base_dir : str or Path, optional
        Directory that relative source paths are resolved against.
        Defaults to the current working directory.

    Returns
    -------
    SliceStack

    Raises
    ------
    ConfigurationError
        On a malformed line, a non-numeric z, a missing source file or a
        duplicate id.
    """
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    slices = []
    for line_no, line in enumerate(lines, start=1):
        parsed = _parse_line(line, line_no, source, base)
        if parsed is not None:
            slices.append(parsed)
    return SliceStack(slices)


def format_manifest(stack: Iterable[Slice]) -> str:
    """Render slices in manifest format (lossless for z positions)."""
    return "".join(f"{s.slice_id} {s.z_position!r} {s.raw_path}\n" for s in stack)


def read_manifest(path: Union[str, Path]) -> SliceStack:
    """Read a manifest file; relative paths resolve against its directory."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Manifest not found: {path}")
    with open(path) as f:
        stack = parse_manifest(f, source=str(path), base_dir=path.resolve().parent)
    logger.info("Read %d slices from %s", len(stack), path)
    return stack


def write_manifest(path: Union[str, Path], stack: Iterable[Slice]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_manifest(stack))
