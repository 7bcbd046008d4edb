"""Checkpoint store: the persisted state shared between pipeline stages.

Every stage communicates with later stages (and with its own resumed
runs) only through the store. A file's existence means the unit that
produced it is complete; :meth:`CheckpointStore.can_skip` turns that into
a skip decision when reuse is enabled.

Two implementations:

- :class:`FileSystemStore` keeps artifacts under a project directory.
- :class:`MemoryStore` keeps them in dictionaries, for tests.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import xarray as xr

from histostack.contracts import ConfigurationError
from histostack.project import io as image_io
from histostack.project.layout import FileRole, ProjectLayout, SettingFile

__all__ = ['CheckpointStore', 'FileSystemStore', 'MemoryStore']

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """Role-addressed persistent state.

    Parameters
    ----------
    layout : ProjectLayout
        Maps file roles to relative paths.
    reuse : bool, optional
        When True, existing artifacts may be trusted instead of recomputed.
    """

    def __init__(self, layout: ProjectLayout, reuse: bool = False):
        self.layout = layout
        self.reuse = reuse

    def key(self, role: FileRole) -> str:
        return self.layout.relative_path(role).as_posix()

    @abstractmethod
    def location(self, role: FileRole) -> str:
        """Human-readable location of ``role``, used in log and error messages."""

    @abstractmethod
    def exists(self, role: FileRole) -> bool:
        pass

    @abstractmethod
    def read_text(self, role: FileRole) -> str:
        pass

    @abstractmethod
    def write_text(self, role: FileRole, text: str) -> None:
        pass

    @abstractmethod
    def read_image(self, role: FileRole) -> xr.DataArray:
        pass

    @abstractmethod
    def write_image(self, role: FileRole, image: xr.DataArray) -> None:
        pass

    @abstractmethod
    def load_source(self, path: Union[str, Path]) -> xr.DataArray:
        """Load a raw slice image referenced by the manifest."""

    def can_skip(self, role: FileRole) -> bool:
        """True when reuse is enabled and ``role`` already exists."""
        return self.reuse and self.exists(role)

    def read_matrix(self, role: FileRole) -> np.ndarray:
        return image_io.parse_affine_matrix(self.read_text(role), self.location(role))

    def write_matrix(self, role: FileRole, matrix: np.ndarray) -> None:
        self.write_text(role, image_io.format_affine_matrix(matrix))

    def read_metric(self, role: FileRole) -> float:
        text = self.read_text(role).split()
        if not text:
            raise ConfigurationError(f"Empty metric file: {self.location(role)}")
        return float(text[0])

    def write_metric(self, role: FileRole, value: float) -> None:
        self.write_text(role, f"{value!r}\n")

    def read_setting(self, key: str) -> Optional[str]:
        """Value from the project key/value store, or None if unset."""
        role = SettingFile(key)
        if not self.exists(role):
            return None
        return self.read_text(role).strip()

    def write_setting(self, key: str, value) -> None:
        self.write_text(SettingFile(key), f"{value}\n")


class FileSystemStore(CheckpointStore):
    """Checkpoint store rooted at a project directory.

    Writes go to a hidden sibling file first and are renamed into place,
    so an interrupted write never leaves a file that looks complete.
    """

    def __init__(self, root: Union[str, Path], layout: ProjectLayout, reuse: bool = False):
        super().__init__(layout, reuse)
        self.root = Path(root).expanduser().resolve()

    def path(self, role: FileRole) -> Path:
        return self.root / self.layout.relative_path(role)

    def location(self, role: FileRole) -> str:
        return str(self.path(role))

    def exists(self, role: FileRole) -> bool:
        return self.path(role).is_file()

    def _partial(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.with_name(f".partial_{path.name}")

    def read_text(self, role: FileRole) -> str:
        path = self.path(role)
        if not path.is_file():
            raise ConfigurationError(f"Required file not found: {path}")
        return path.read_text()

    def write_text(self, role: FileRole, text: str) -> None:
        path = self.path(role)
        tmp = self._partial(path)
        tmp.write_text(text)
        os.replace(tmp, path)

    def read_image(self, role: FileRole) -> xr.DataArray:
        return image_io.read_image(self.path(role))

    def write_image(self, role: FileRole, image: xr.DataArray) -> None:
        path = self.path(role)
        tmp = self._partial(path)
        image_io.write_image(image, tmp)
        os.replace(tmp, path)
        logger.debug("Wrote %s", path)

    def load_source(self, path: Union[str, Path]) -> xr.DataArray:
        return image_io.read_image(path)


class MemoryStore(CheckpointStore):
    """In-memory checkpoint store.

    Parameters
    ----------
    layout : ProjectLayout, optional
    reuse : bool, optional
    sources : dict, optional
        Raw slice images keyed by source path string.
    """

    def __init__(self, layout: Optional[ProjectLayout] = None, reuse: bool = False,
                 sources: Optional[Dict[str, xr.DataArray]] = None):
        super().__init__(layout or ProjectLayout(), reuse)
        self.texts: Dict[str, str] = {}
        self.images: Dict[str, xr.DataArray] = {}
        self.sources: Dict[str, xr.DataArray] = dict(sources or {})
        self.writes: Dict[str, int] = {}

    def location(self, role: FileRole) -> str:
        return f"memory://{self.key(role)}"

    def exists(self, role: FileRole) -> bool:
        key = self.key(role)
        return key in self.texts or key in self.images

    def _record_write(self, key: str) -> None:
        self.writes[key] = self.writes.get(key, 0) + 1

    def read_text(self, role: FileRole) -> str:
        key = self.key(role)
        if key not in self.texts:
            raise ConfigurationError(f"Required file not found: {self.location(role)}")
        return self.texts[key]

    def write_text(self, role: FileRole, text: str) -> None:
        key = self.key(role)
        self.texts[key] = text
        self._record_write(key)

    def read_image(self, role: FileRole) -> xr.DataArray:
        key = self.key(role)
        if key not in self.images:
            raise ConfigurationError(f"Required file not found: {self.location(role)}")
        return self.images[key].copy()

    def write_image(self, role: FileRole, image: xr.DataArray) -> None:
        key = self.key(role)
        self.images[key] = image.copy()
        self._record_write(key)

    def load_source(self, path: Union[str, Path]) -> xr.DataArray:
        key = str(path)
        if key not in self.sources:
            raise ConfigurationError(f"Image not found: {key}")
        return self.sources[key].copy()
