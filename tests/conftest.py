"""Root-level pytest fixtures for the histostack test suite.

Provides shared configuration fixtures following Pydantic-based architecture,
plus small slice stacks backed by an in-memory checkpoint store and a
deterministic fake registration engine.
"""

import pytest
from pathlib import Path
import tempfile
import shutil

import numpy as np

from histostack.core.image_cache import ImageCache
from histostack.engine.base import EngineParams
from histostack.project.io import make_image
from histostack.project.manifest import Slice, SliceStack
from histostack.project.store import MemoryStore
from histostack.schemas import ParamConfig, UserConfig, resolve_config

from tests.helpers.fake_engine import FakeRegistrationEngine, constant_slide


# =============================================================================
# Configuration Fixtures (Pydantic-based)
# =============================================================================

@pytest.fixture
def param_config():
    """Expert configuration with all defaults."""
    return ParamConfig()


@pytest.fixture
def internal_config(param_config):
    """Fully validated runtime configuration (no overrides)."""
    return resolve_config(param_config, None, None)


@pytest.fixture
def make_config(param_config):
    """Factory fixture for creating custom test configs.

    Returns a callable that accepts UserConfig-compatible kwargs.

    Examples
    --------
    >>> def test_custom_range(make_config):
    ...     config = make_config(z_range=2.0)
    ...     assert config.recon.z_range == 2.0
    """
    def _make(**user_overrides):
        """Create InternalConfig with user overrides."""
        if user_overrides:
            user = UserConfig(**user_overrides)
            return resolve_config(param_config, user, None)
        else:
            return resolve_config(param_config, None, None)

    return _make


# =============================================================================
# Directory Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Temporary directory that is cleaned up after test."""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


# =============================================================================
# Stack Fixtures
# =============================================================================

@pytest.fixture
def make_stack(temp_dir):
    """Factory for a stack of constant slides.

    Each slide's pixel value is its z position plus one. Empty source files
    are created on disk so manifests referencing them parse; the pixel data
    lives in the returned ``sources`` dict for a MemoryStore.
    """
    def _make(z_positions, ids=None):
        ids = ids or [f"s{i:02d}" for i in range(len(z_positions))]
        slices = []
        sources = {}
        for slice_id, z in zip(ids, z_positions):
            path = (temp_dir / f"{slice_id}.nii.gz").resolve()
            path.touch()
            slices.append(Slice(slice_id, path, float(z)))
            sources[str(path)] = constant_slide(float(z) + 1.0)
        return SliceStack(slices), sources

    return _make


@pytest.fixture
def stack_and_sources(make_stack):
    """Four slices at z = 0, 1, 2, 3."""
    return make_stack([0.0, 1.0, 2.0, 3.0])


@pytest.fixture
def memory_store(stack_and_sources):
    _, sources = stack_and_sources
    return MemoryStore(sources=sources)


@pytest.fixture
def fake_engine():
    return FakeRegistrationEngine()


@pytest.fixture
def engine_params():
    return EngineParams()


@pytest.fixture
def make_cache():
    def _make(store, **limits):
        return ImageCache(store.load_source, **limits)
    return _make


@pytest.fixture
def reference_volume():
    """Volume of 6 planes at z = 0..5 whose plane values equal z + 1."""
    data = np.stack([np.full((8, 10), z + 1.0, dtype=np.float32) for z in range(6)])
    return make_image(data)
