"""Tests for pairwise edge resolution and transform-chain composition."""

import numpy as np
import pytest

from histostack.contracts import RegistrationEngineFailure
from histostack.engine.base import Dof, InitMode
from histostack.pipeline.ledger import RegistrationLedger
from histostack.project.io import image_to_sitk, make_image
from histostack.project.layout import PairFile, PairRole, SliceFile, SliceRole
from histostack.project.store import MemoryStore
from histostack.reconstruction.chain import ChainComposer, compose_chain, pad_root_image
from histostack.reconstruction.graph import (
    ShortestPathTree,
    build_neighbor_graph,
    select_root,
    shortest_path_tree,
)
from histostack.reconstruction.pairwise import PairwiseResolver, edge_weight, normalize_metric

from tests.helpers.fake_engine import FakeRegistrationEngine

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]


def make_resolver(stack, store, engine, make_cache, engine_params, **kwargs):
    return PairwiseResolver(stack, store, engine, make_cache(store), engine_params,
                            z_epsilon=0.1, **kwargs)


class TestMetricMath:

    def test_normalize_metric(self):
        assert normalize_metric(-10000.0, 1) == 1.0
        assert normalize_metric(-15000.0, 3) == 0.5

    def test_edge_weight(self):
        assert edge_weight(1.0, 3.0, 0.1) == 0.0
        assert edge_weight(0.5, -2.0, 0.1) == pytest.approx(0.5 * 1.21)
        assert edge_weight(0.5, 0.0, 0.1) == 0.5


class TestPairwiseResolver:

    def test_resolves_every_edge(self, make_stack, make_cache, engine_params):
        stack, sources = make_stack([0.0, 1.0, 5.0])
        store = MemoryStore(sources=sources)
        engine = FakeRegistrationEngine()
        graph = build_neighbor_graph(stack, 2.0)

        make_resolver(stack, store, engine, make_cache, engine_params).resolve(graph)

        # slide values are z + 1: pairs (0,1) differ by 1, (1,2) by 4
        expected = {(0, 1): 0.5 * 1.1, (1, 0): 0.5 * 1.1,
                    (1, 2): 0.8 * 1.1 ** 4, (2, 1): 0.8 * 1.1 ** 4}
        for pos, ref, mov in graph.edges():
            assert graph.weights[pos] == pytest.approx(expected[(ref, mov)])
            ids = (stack[ref].slice_id, stack[mov].slice_id)
            assert store.exists(PairFile(PairRole.MATRIX, *ids))
            assert store.read_metric(PairFile(PairRole.METRIC, *ids)) == pytest.approx(
                1.0 / (1.0 + abs(stack[ref].z_position - stack[mov].z_position)))

        assert select_root(graph) == 1

    def test_rigid_with_moments_init(self, make_stack, make_cache, engine_params):
        stack, sources = make_stack([0.0, 1.0])
        engine = FakeRegistrationEngine()
        make_resolver(stack, MemoryStore(sources=sources), engine, make_cache,
                      engine_params).resolve(build_neighbor_graph(stack, 0.0))

        assert len(engine.affine_problems) == 2
        for problem in engine.affine_problems:
            assert problem.dof == Dof.RIGID
            assert problem.init == InitMode.MOMENTS
            assert len(problem.pairs) == 1

    def test_visits_references_in_z_order(self, make_stack, make_cache, engine_params):
        stack, sources = make_stack([2.0, 0.0, 1.0], ids=["c", "a", "b"])
        engine = FakeRegistrationEngine()
        make_resolver(stack, MemoryStore(sources=sources), engine, make_cache,
                      engine_params).resolve(build_neighbor_graph(stack, 0.0))

        refs = [label.split()[1] for label in engine.labels]
        assert refs == ["ref=a", "ref=b", "ref=b", "ref=c"]

    def test_reuse_skips_engine(self, make_stack, make_cache, engine_params):
        stack, sources = make_stack([0.0, 1.0, 2.0])
        store = MemoryStore(sources=sources, reuse=True)
        graph = build_neighbor_graph(stack, 0.0)
        make_resolver(stack, store, FakeRegistrationEngine(), make_cache, engine_params).resolve(graph)
        first = graph.weights.copy()

        engine = FakeRegistrationEngine()
        again = build_neighbor_graph(stack, 0.0)
        resolver = make_resolver(stack, store, engine, make_cache, engine_params)
        resolver.resolve(again)

        assert engine.affine_problems == []
        assert resolver.n_reused == 4
        np.testing.assert_array_equal(again.weights, first)

    def test_without_reuse_recomputes(self, make_stack, make_cache, engine_params):
        stack, sources = make_stack([0.0, 1.0])
        store = MemoryStore(sources=sources)
        for _ in range(2):
            make_resolver(stack, store, FakeRegistrationEngine(), make_cache,
                          engine_params).resolve(build_neighbor_graph(stack, 0.0))
        key = store.key(PairFile(PairRole.MATRIX, "s00", "s01"))
        assert store.writes[key] == 2

    def test_engine_failure_propagates(self, make_stack, make_cache, engine_params):
        stack, sources = make_stack([0.0, 1.0, 2.0])
        engine = FakeRegistrationEngine(fail_on="mov=s02")
        with pytest.raises(RegistrationEngineFailure, match="s02"):
            make_resolver(stack, MemoryStore(sources=sources), engine, make_cache,
                          engine_params).resolve(build_neighbor_graph(stack, 0.0))

    def test_multi_component_normalization(self, make_stack, make_cache, engine_params):
        stack, _ = make_stack([0.0, 1.0])
        sources = {
            str(s.raw_path): make_image(np.full((4, 4, 3), 1.0, dtype=np.float32), components=True)
            for s in stack
        }
        store = MemoryStore(sources=sources)
        engine = FakeRegistrationEngine(score=lambda f, m: -30000.0)
        make_resolver(stack, store, engine, make_cache, engine_params).resolve(
            build_neighbor_graph(stack, 0.0))

        assert store.read_metric(PairFile(PairRole.METRIC, "s00", "s01")) == 1.0

    def test_records_ledger_rows(self, make_stack, make_cache, engine_params, temp_dir):
        stack, sources = make_stack([0.0, 1.0])
        with RegistrationLedger(temp_dir / "ledger.db") as ledger:
            make_resolver(stack, MemoryStore(sources=sources), FakeRegistrationEngine(),
                          make_cache, engine_params, ledger=ledger).resolve(
                build_neighbor_graph(stack, 0.0))
            rows = ledger.registrations("pairwise")

        assert {(r["partner_id"], r["slice_id"]) for r in rows} == {("s00", "s01"), ("s01", "s00")}


def rotation(theta, tx=0.0, ty=0.0):
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[c, -s, tx], [s, c, ty], [0.0, 0.0, 1.0]])


class TestComposeChain:

    def test_root_is_identity(self):
        tree = ShortestPathTree(0, np.array([-9999, 0]), np.array([0.0, 1.0]))
        np.testing.assert_array_equal(compose_chain(tree, 0, lambda r, m: rotation(1.0)), np.eye(3))

    def test_order_of_composition(self):
        # root 0 <- 1 <- 2
        edges = {(0, 1): rotation(0.3, 1.0, 0.0), (1, 2): rotation(-0.7, 0.0, 2.0)}
        tree = ShortestPathTree(0, np.array([-9999, 0, 1]), np.array([0.0, 1.0, 2.0]))

        result = compose_chain(tree, 2, lambda r, m: edges[(r, m)])

        np.testing.assert_allclose(result, edges[(1, 2)] @ edges[(0, 1)])

    def test_single_edge(self):
        m = rotation(0.2, 3.0, 4.0)
        tree = ShortestPathTree(1, np.array([1, -9999]), np.array([1.0, 0.0]))
        np.testing.assert_allclose(compose_chain(tree, 0, lambda r, mov: m), m)


class TestPadRootImage:

    def test_pads_quarter_of_largest_side(self):
        image = make_image(np.arange(80, dtype=np.float32).reshape(8, 10),
                           spacing=(0.5, 2.0), origin=(10.0, 20.0))
        padded = pad_root_image(image)

        assert padded.shape == (12, 14)
        np.testing.assert_allclose(padded.x.values[:3], [9.0, 9.5, 10.0])
        np.testing.assert_allclose(padded.y.values[:3], [16.0, 18.0, 20.0])
        # original pixels keep their physical position
        assert float(padded.sel(x=10.0, y=20.0)) == float(image.sel(x=10.0, y=20.0))
        # edge replication
        assert float(padded[0, 0]) == float(image[0, 0])
        assert float(padded[-1, -1]) == float(image[-1, -1])

    @pytest.mark.parametrize("direction", [(-1.0, 0.0, 0.0, 1.0), (0.0, -1.0, 1.0, 0.0)])
    def test_original_pixels_keep_position_with_direction(self, direction):
        image = make_image(np.arange(16, dtype=np.float32).reshape(4, 4),
                           spacing=(0.5, 2.0), origin=(3.0, 2.0), direction=direction)
        padded = pad_root_image(image)
        assert padded.shape == (6, 6)
        assert padded.attrs["direction"] == direction

        before, after = image_to_sitk(image), image_to_sitk(padded)
        for index in [(0, 0), (3, 2), (1, 3)]:
            point = before.TransformIndexToPhysicalPoint(index)
            moved = after.TransformPhysicalPointToIndex(point)
            assert moved == (index[0] + 1, index[1] + 1)
            assert after.GetPixel(moved) == before.GetPixel(index)

    def test_tiny_image_unchanged(self):
        image = make_image(np.ones((2, 3), dtype=np.float32))
        assert pad_root_image(image).shape == (2, 3)


class TestChainComposer:

    def run_recon(self, stack, store, engine, make_cache, engine_params, reslice=True):
        cache = make_cache(store)
        graph = build_neighbor_graph(stack, 0.0)
        PairwiseResolver(stack, store, engine, cache, engine_params, 0.1).resolve(graph)
        tree = shortest_path_tree(graph, select_root(graph))
        accumulated = ChainComposer(stack, store, engine, cache, reslice=reslice).compose_all(tree)
        return tree, accumulated

    def test_writes_matrices_and_reslices(self, stack_and_sources, make_cache, engine_params):
        stack, sources = stack_and_sources
        store = MemoryStore(sources=sources)
        engine = FakeRegistrationEngine()
        tree, accumulated = self.run_recon(stack, store, engine, make_cache, engine_params)

        root_id = stack[tree.root].slice_id
        np.testing.assert_array_equal(accumulated[root_id], np.eye(3))
        for s in stack:
            np.testing.assert_array_equal(
                store.read_matrix(SliceFile(SliceRole.ACCUM_MATRIX, s.slice_id)), accumulated[s.slice_id])
            reslice = store.read_image(SliceFile(SliceRole.ACCUM_RESLICE, s.slice_id))
            assert reslice.shape == (12, 14)

        assert len(engine.reslice_problems) == len(stack)

    def test_single_slice_stack(self, make_stack, make_cache, engine_params):
        stack, sources = make_stack([3.0])
        store = MemoryStore(sources=sources)
        engine = FakeRegistrationEngine()
        tree, accumulated = self.run_recon(stack, store, engine, make_cache, engine_params)

        assert tree.root == 0
        assert engine.affine_problems == []
        np.testing.assert_array_equal(accumulated["s00"], np.eye(3))
        assert store.exists(SliceFile(SliceRole.ACCUM_RESLICE, "s00"))

    def test_accumulated_translation_matches_path(self, stack_and_sources, make_cache, engine_params):
        """Fake pair matrices translate by the value difference, so chains add up."""
        stack, sources = stack_and_sources
        _, accumulated = self.run_recon(stack, MemoryStore(sources=sources),
                                        FakeRegistrationEngine(), make_cache, engine_params)
        root_z = [s.z_position for s in stack if np.allclose(accumulated[s.slice_id], np.eye(3))][0]
        for s in stack:
            assert accumulated[s.slice_id][0, 2] == pytest.approx(s.z_position - root_z)

    def test_reuse_skips_existing_reslices(self, stack_and_sources, make_cache, engine_params):
        stack, sources = stack_and_sources
        store = MemoryStore(sources=sources, reuse=True)
        self.run_recon(stack, store, FakeRegistrationEngine(), make_cache, engine_params)

        engine = FakeRegistrationEngine()
        self.run_recon(stack, store, engine, make_cache, engine_params)
        assert engine.reslice_problems == []
        assert engine.affine_problems == []

    def test_reslice_disabled(self, stack_and_sources, make_cache, engine_params):
        stack, sources = stack_and_sources
        store = MemoryStore(sources=sources)
        engine = FakeRegistrationEngine()
        self.run_recon(stack, store, engine, make_cache, engine_params, reslice=False)

        assert engine.reslice_problems == []
        assert not store.exists(SliceFile(SliceRole.ACCUM_RESLICE, stack[0].slice_id))
