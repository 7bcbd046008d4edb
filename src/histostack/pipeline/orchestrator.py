"""Stage orchestration.

Runs one pipeline stage per call against a project: ``init`` (create the
project from a manifest), ``recon`` (neighbor graph, pairwise edges,
shortest paths, transform chains), ``volmatch`` (initial alignment to the
reference volume) and ``voliter`` (iterative refinement). Stages talk to
each other only through the checkpoint store.
"""

import time
import logging
from pathlib import Path
from typing import Optional, Union

import xarray as xr

from histostack.contracts import ConfigurationError, require
from histostack.core.image_cache import ImageCache
from histostack.engine.base import EngineParams, InitMode, RegistrationEngine
from histostack.engine.greedy import GreedyEngine
from histostack.pipeline.ledger import RegistrationLedger
from histostack.project.io import read_image
from histostack.project.layout import GlobalFile, GlobalRole, ProjectLayout, RuntimeConfigFile, SliceFile, SliceRole
from histostack.project.manifest import SliceStack, format_manifest, parse_manifest, read_manifest
from histostack.project.store import CheckpointStore, FileSystemStore
from histostack.reconstruction.chain import ChainComposer
from histostack.reconstruction.graph import (
    build_neighbor_graph,
    root_distance_totals,
    select_root,
    shortest_path_tree,
)
from histostack.reconstruction.pairwise import PairwiseResolver
from histostack.schemas.internal import InternalConfig
from histostack.visualization.plotter import StackPlotter
from histostack.volume.iterate import IterativeRefiner
from histostack.volume.match import VolumeMatcher

__all__ = ['StackOrchestrator', 'SETTING_IMAGE_EXT', 'SETTING_Z_RANGE', 'SETTING_Z_EPSILON']

logger = logging.getLogger(__name__)

SETTING_IMAGE_EXT = "DefaultImageExt"
SETTING_Z_RANGE = "Z_Range"
SETTING_Z_EPSILON = "Z_Epsilon"


class StackOrchestrator:
    """Runs histostack pipeline stages against one project.

    This is the main entry point for running ``histostack`` from Python.
    Each stage method is a blocking call that configures logging, opens
    the registration ledger, persists the resolved configuration and runs
    the stage. Failures are recorded in the ledger and re-raised.

    **Stages:**

    1. :meth:`init_project`: copy the manifest into the project and record
       the image extension.
    2. :meth:`reconstruct`: build the neighbor graph, resolve pairwise
       edges, choose the root, compose and reslice transform chains.
    3. :meth:`match_to_volume`: register each reconstructed slice to its
       volume cross-section and write iteration-0 transforms.
    4. :meth:`iterate`: run the affine-then-deformable refinement.

    **Logging:**

    Output goes to the console and, for filesystem projects, to
    ``<project>/logs/histostack_<stage>.log``.

    Example usage::

        from histostack.schemas import ParamConfig, resolve_config
        from histostack.pipeline import StackOrchestrator

        config = resolve_config(ParamConfig(project_dir="/data/brain01"))
        orch = StackOrchestrator(config)
        orch.init_project("slices.txt")
        orch.reconstruct()
        orch.match_to_volume("mri.nii.gz")
        orch.iterate()
    """

    def __init__(self, config: InternalConfig, engine: Optional[RegistrationEngine] = None,
                 store: Optional[CheckpointStore] = None, configure_logging: bool = True):
        """Initialize orchestrator.

        Parameters
        ----------
        config : InternalConfig
            Resolved runtime configuration.
        engine : RegistrationEngine, optional
            Defaults to a :class:`GreedyEngine` built from ``config.engine``.
        store : CheckpointStore, optional
            Defaults to a :class:`FileSystemStore` rooted at
            ``config.project_dir``.
        configure_logging : bool, optional
            Install root log handlers at the start of each stage.
        """
        if store is None:
            require(config.project_dir is not None,
                    "A project directory is required", error=ConfigurationError)

        self.config = config
        self.engine = engine
        self.configure_logging = configure_logging
        self._store = store
        self.params = EngineParams.from_config(config.engine)

        self.ledger = None
        self.cache = None

        # Lifecycle state
        self._stop_event = True
        self._start_time = None
        self._stage = None

    @property
    def project_dir(self) -> Optional[Path]:
        if self.config.project_dir is None:
            return None
        return Path(self.config.project_dir).expanduser().resolve()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup_logging(self, stage: str):
        """Configure root logger with console and (project) file handlers."""
        log_level = getattr(logging, self.config.logging.level.upper(), logging.INFO)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Clear existing handlers and add new ones
        root = logging.getLogger()
        root.setLevel(log_level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()

        log_path = None
        if self.project_dir is not None:
            log_dir = self.project_dir / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / f"histostack_{stage}.log"
            fh = logging.FileHandler(log_path)
            fh.setLevel(log_level)
            fh.setFormatter(formatter)
            root.addHandler(fh)

        ch = logging.StreamHandler()
        ch.setLevel(log_level)
        ch.setFormatter(formatter)
        root.addHandler(ch)

        logger.info("Logging: level=%s, file=%s", logging.getLevelName(log_level), log_path)

    def _open_store(self, image_ext: Optional[str] = None) -> CheckpointStore:
        if self._store is not None:
            return self._store
        reuse = self.config.project.reuse
        if image_ext is None:
            bootstrap = FileSystemStore(self.project_dir, ProjectLayout(), reuse)
            image_ext = bootstrap.read_setting(SETTING_IMAGE_EXT) or self.config.project.image_ext
        return FileSystemStore(self.project_dir, ProjectLayout(image_ext), reuse)

    def _open_ledger(self) -> Optional[RegistrationLedger]:
        if self.project_dir is None:
            return None
        return RegistrationLedger(self.project_dir / "config" / self.config.ledger.db_filename)

    def _engine(self, store: CheckpointStore) -> RegistrationEngine:
        if self.engine is None:
            self.engine = GreedyEngine.from_config(self.config.engine, image_ext=store.layout.image_ext)
            if not self.engine.is_available():
                logger.warning("Registration engine '%s' not found on PATH", self.config.engine.executable)
        return self.engine

    def _plotter(self) -> Optional[StackPlotter]:
        if not self.config.visualization.enabled or self.project_dir is None:
            return None
        return StackPlotter.from_config(self.project_dir / "qc", self.config.visualization)

    def load_stack(self, store: CheckpointStore) -> SliceStack:
        """Reload the project manifest (source files must still exist)."""
        role = GlobalFile(GlobalRole.MANIFEST)
        stack = parse_manifest(store.read_text(role).splitlines(), source=store.location(role))
        logger.info("Project holds %d slices", len(stack))
        return stack

    # ------------------------------------------------------------------
    # Stage lifecycle
    # ------------------------------------------------------------------

    def _begin(self, stage: str, store: CheckpointStore) -> int:
        if self.configure_logging:
            self._setup_logging(stage)

        logger.info("=" * 60)
        logger.info("Starting histostack stage: %s", stage)
        logger.info("=" * 60)

        self._stop_event = False
        self._start_time = time.time()
        self._stage = stage
        self.cache = ImageCache(store.load_source, max_bytes=self.config.cache.max_bytes,
                                max_items=self.config.cache.max_items)
        store.write_text(RuntimeConfigFile(stage), self.config.model_dump_json(indent=2) + "\n")

        self.ledger = self._open_ledger()
        return self.ledger.start_stage(stage) if self.ledger else 0

    def _run_stage(self, stage: str, store: CheckpointStore, body):
        run_id = self._begin(stage, store)
        try:
            result = body()
        except Exception as err:
            logger.error("Stage %s failed: %s", stage, err)
            if self.ledger:
                self.ledger.finish_stage(run_id, error=str(err))
            raise
        else:
            if self.ledger:
                self.ledger.finish_stage(run_id)
            return result
        finally:
            self.stop()

    def stop(self):
        """Finish the current stage: log a summary and close the ledger.

        Called automatically at the end of every stage. Safe to call
        multiple times.
        """
        if self._stop_event:
            return
        self._stop_event = True

        elapsed = time.time() - self._start_time if self._start_time else 0
        logger.info("=" * 60)
        logger.info("Stage %s stopped. Runtime: %.1f seconds", self._stage, elapsed)

        if self.cache is not None:
            logger.info("Image cache: %d hits, %d misses, %d resident",
                        self.cache.hits, self.cache.misses, len(self.cache))
            self.cache.purge()

        if self.ledger:
            stats = self.ledger.get_statistics()
            logger.info("Statistics: registrations=%d, pairwise=%d, volmatch=%d, voliter=%d",
                        stats.get('total', 0), stats['pairwise'], stats['volmatch'], stats['voliter'])
            self.ledger.close()
            self.ledger = None

        logger.info("=" * 60)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def init_project(self, manifest: Union[str, Path, SliceStack],
                     image_ext: Optional[str] = None) -> SliceStack:
        """Create the project from a manifest file (or an in-memory stack).

        The manifest is rewritten with absolute source paths.
        """
        image_ext = (image_ext or self.config.project.image_ext).lstrip(".")
        store = self._open_store(image_ext)

        def body():
            stack = manifest if isinstance(manifest, SliceStack) else read_manifest(manifest)
            store.write_text(GlobalFile(GlobalRole.MANIFEST), format_manifest(stack))
            store.write_setting(SETTING_IMAGE_EXT, image_ext)
            logger.info("Project initialized: %d slices, image extension '%s'", len(stack), image_ext)
            return stack

        return self._run_stage("init", store, body)

    def reconstruct(self):
        """Run the reconstruction stage.

        Returns
        -------
        tuple
            ``(root_index, ShortestPathTree, accumulated matrices by slice id)``
        """
        store = self._open_store()
        recon = self.config.recon

        def body():
            stack = self.load_stack(store)
            store.write_setting(SETTING_Z_RANGE, repr(recon.z_range))
            store.write_setting(SETTING_Z_EPSILON, repr(recon.z_epsilon))
            engine = self._engine(store)

            graph = build_neighbor_graph(stack, recon.z_range)
            PairwiseResolver(
                stack, store, engine, self.cache, self.params, recon.z_epsilon,
                init=InitMode(recon.pairwise_init), ledger=self.ledger,
            ).resolve(graph)

            root = select_root(graph)
            logger.info("Root slice: %s (index %d)", stack[root].slice_id, root)
            tree = shortest_path_tree(graph, root)
            accumulated = ChainComposer(stack, store, engine, self.cache,
                                        reslice=recon.reslice).compose_all(tree)

            plotter = self._plotter()
            if plotter is not None:
                plotter.plot_root_distances([s.slice_id for s in stack],
                                            root_distance_totals(graph), root)
                if recon.reslice:
                    plotter.plot_stack_montage({
                        stack[i].slice_id: store.read_image(
                            SliceFile(SliceRole.ACCUM_RESLICE, stack[i].slice_id))
                        for i in stack.sorted_indices
                    })
            return root, tree, accumulated

        return self._run_stage("recon", store, body)

    def match_to_volume(self, volume: Union[str, Path, xr.DataArray]):
        """Run the volume-match stage. Returns the median matrix."""
        store = self._open_store()
        vm = self.config.volmatch

        def body():
            stack = self.load_stack(store)
            vol = volume if isinstance(volume, xr.DataArray) else read_image(volume)
            require(vol.ndim >= 3 and "z" in vol.dims,
                    f"Reference volume must be 3-D, got dims {vol.dims}", error=ConfigurationError)
            return VolumeMatcher(
                stack, store, self._engine(store), self.params,
                sampling=vm.sampling, init=InitMode(vm.init), ledger=self.ledger,
            ).match(vol)

        return self._run_stage("volmatch", store, body)

    def iterate(self, i_first: Optional[int] = None, i_last: Optional[int] = None):
        """Run the refinement stage. Returns the per-slice summary DataFrame."""
        store = self._open_store()
        vi = self.config.voliter
        i_first = vi.i_first if i_first is None else i_first
        i_last = vi.i_last if i_last is None else i_last

        def body():
            stack = self.load_stack(store)
            refiner = IterativeRefiner(
                stack, store, self._engine(store), self.cache, self.params,
                n_affine=vi.n_affine, n_deform=vi.n_deform, w_volume=vi.w_volume,
                seed=vi.seed, ledger=self.ledger,
            )
            summary = refiner.run(i_first, i_last)

            plotter = self._plotter()
            if plotter is not None and self.ledger is not None:
                plotter.plot_iteration_metrics(self.ledger.iteration_metrics())
            return summary

        return self._run_stage("voliter", store, body)
