"""Tests for the iterative slice-to-volume refinement schedule."""

import io

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from histostack.contracts import ConfigurationError, RegistrationEngineFailure
from histostack.engine.base import Dof, InitMode, MetricReport
from histostack.pipeline.ledger import RegistrationLedger
from histostack.project.layout import (
    IterationFile,
    IterationRole,
    IterationSummaryFile,
    SliceFile,
    SliceRole,
)
from histostack.project.store import MemoryStore
from histostack.volume.iterate import SUMMARY_COLUMNS, IterativeRefiner, split_report

from tests.helpers.fake_engine import FakeRegistrationEngine, constant_slide

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]

SEED = 7


@pytest.fixture
def matched(make_stack):
    """Factory: four slices at z = 0..3 with volume slides and iteration-0 matrices."""
    def _make(reuse=False):
        stack, sources = make_stack([0.0, 1.0, 2.0, 3.0])
        store = MemoryStore(sources=sources, reuse=reuse)
        for s in stack:
            store.write_image(SliceFile(SliceRole.VOL_SLIDE, s.slice_id), constant_slide(s.z_position + 1.0))
            store.write_matrix(IterationFile(IterationRole.MATRIX, s.slice_id, 0), np.eye(3))
        return stack, store
    return _make


@pytest.fixture
def make_refiner(make_cache, engine_params):
    def _make(stack, store, engine, **kwargs):
        kwargs.setdefault("n_affine", 2)
        kwargs.setdefault("n_deform", 2)
        kwargs.setdefault("seed", SEED)
        return IterativeRefiner(stack, store, engine, make_cache(store), engine_params, **kwargs)
    return _make


def iteration_labels(engine, iteration):
    prefix = f"iteration {iteration} of "
    return [label for label in engine.labels if label.startswith(prefix)]


class TestSplitReport:

    def test_first_component_is_volume(self):
        assert split_report(MetricReport(-6.0, (-4.0, -1.5, -0.5))) == (-4.0, -2.0)

    def test_no_components_counts_as_volume(self):
        assert split_report(MetricReport(-3.0)) == (-3.0, 0.0)


class TestIterationRange:

    @pytest.mark.parametrize("i_first,i_last", [(0, 2), (3, 2), (1, 5), (5, 5)])
    def test_out_of_range_rejected_before_any_work(self, matched, make_refiner, i_first, i_last):
        stack, store = matched()
        engine = FakeRegistrationEngine()
        with pytest.raises(ConfigurationError, match="out of range"):
            make_refiner(stack, store, engine).run(i_first, i_last)
        assert engine.affine_problems == []
        assert engine.reslice_problems == []

    def test_defaults_to_whole_schedule(self, matched, make_refiner):
        stack, store = matched()
        summary = make_refiner(stack, store, FakeRegistrationEngine()).run()
        assert sorted(summary['iteration'].unique()) == [1, 2, 3, 4]


class TestSchedule:

    def test_full_run_outputs(self, matched, make_refiner):
        stack, store = matched()
        engine = FakeRegistrationEngine()
        summary = make_refiner(stack, store, engine).run()

        assert list(summary.columns) == SUMMARY_COLUMNS
        assert len(summary) == 16
        for s in stack:
            for it in (1, 2):
                assert store.exists(IterationFile(IterationRole.MATRIX, s.slice_id, it))
                assert not store.exists(IterationFile(IterationRole.WARP, s.slice_id, it))
            for it in (3, 4):
                assert store.exists(IterationFile(IterationRole.WARP, s.slice_id, it))
            for it in range(1, 5):
                assert store.exists(IterationFile(IterationRole.METRIC, s.slice_id, it))
        for it in range(1, 5):
            assert store.exists(IterationSummaryFile(it))
        assert len(engine.affine_problems) == 8
        assert len(engine.deformable_problems) == 8

    def test_phases(self, matched, make_refiner):
        stack, store = matched()
        summary = make_refiner(stack, store, FakeRegistrationEngine()).run()
        phases = summary.groupby('iteration')['phase'].unique()
        assert [list(p) for p in phases] == [['affine'], ['affine'], ['deformable'], ['deformable']]

    def test_affine_only_schedule(self, matched, make_refiner):
        stack, store = matched()
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine, n_affine=3, n_deform=0).run()
        assert len(engine.affine_problems) == 12
        assert engine.deformable_problems == []

    def test_visit_order_follows_seed(self, matched, make_refiner):
        stack, store = matched()
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine).run(1, 2)

        rng = np.random.default_rng(SEED)
        for it in (1, 2):
            expected = [f"iteration {it} of {stack[int(k)].slice_id}" for k in rng.permutation(4)]
            assert iteration_labels(engine, it) == expected

    def test_seed_drawn_when_missing(self, matched, make_refiner):
        stack, store = matched()
        refiner = make_refiner(stack, store, FakeRegistrationEngine(), seed=None)
        assert isinstance(refiner.seed, int)
        assert 0 <= refiner.seed < 2 ** 63

    def test_engine_failure_propagates(self, matched, make_refiner):
        stack, store = matched()
        engine = FakeRegistrationEngine(fail_on="iteration 2 of s01")
        with pytest.raises(RegistrationEngineFailure):
            make_refiner(stack, store, engine).run()
        assert store.exists(IterationSummaryFile(1))
        assert not store.exists(IterationSummaryFile(2))


class TestProblems:

    def affine_problem(self, engine, label):
        return next(p for p in engine.affine_problems if p.label == label)

    def test_volume_and_neighbor_pairs(self, matched, make_refiner):
        stack, store = matched()
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine, w_volume=4.0).run(1, 1)

        middle = self.affine_problem(engine, "iteration 1 of s01")
        assert [p.weight for p in middle.pairs] == [4.0, 1.0, 1.0]
        # volume slide of s01 holds 2.0, neighbor reslices hold their slide means
        assert [float(p.fixed.mean()) for p in middle.pairs] == [2.0, 1.0, 3.0]

        end = self.affine_problem(engine, "iteration 1 of s00")
        assert len(end.pairs) == 2

    def test_affine_starts_from_previous_matrix(self, matched, make_refiner):
        stack, store = matched()
        start = np.array([[1.0, 0.0, 2.5], [0.0, 1.0, -1.0], [0.0, 0.0, 1.0]])
        store.write_matrix(IterationFile(IterationRole.MATRIX, "s02", 0), start)
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine).run(1, 1)

        problem = self.affine_problem(engine, "iteration 1 of s02")
        assert problem.dof == Dof.AFFINE
        assert problem.init == InitMode.MATRIX
        np.testing.assert_array_equal(problem.init_matrix, start)
        np.testing.assert_array_equal(
            store.read_matrix(IterationFile(IterationRole.MATRIX, "s02", 1)), start)

    def test_deformable_pre_transform_and_seed(self, matched, make_refiner):
        stack, store = matched()
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine).run()

        by_label = {p.label: p for p in engine.deformable_problems}
        first = by_label["iteration 3 of s01"]
        second = by_label["iteration 4 of s01"]

        assert len(first.pre_transforms) == 1
        np.testing.assert_array_equal(first.pre_transforms[0], np.eye(3))
        assert first.initial_warp is None
        assert isinstance(second.initial_warp, xr.DataArray)
        assert second.initial_warp.sizes["component"] == 2

    def test_previous_transforms(self, matched, make_refiner):
        stack, store = matched()
        refiner = make_refiner(stack, store, FakeRegistrationEngine())
        refiner.run(1, 3)

        after_affine = refiner.previous_transforms("s01", 3)
        assert len(after_affine) == 1
        assert isinstance(after_affine[0], np.ndarray)

        after_warp = refiner.previous_transforms("s01", 4)
        assert isinstance(after_warp[0], xr.DataArray)
        np.testing.assert_array_equal(after_warp[1], np.eye(3))

    def test_metric_file_and_summary_row(self, matched, make_refiner):
        stack, store = matched()
        summary = make_refiner(stack, store, FakeRegistrationEngine(), w_volume=4.0).run(1, 1)

        report = MetricReport.parse(store.read_text(IterationFile(IterationRole.METRIC, "s01", 1)))
        # identical volume term scores -10000 per unit weight, neighbors differ by 1
        assert report.components == (-40000.0, -5000.0, -5000.0)

        row = summary.set_index('slice_id').loc['s01']
        assert row['volume_metric'] == -40000.0
        assert row['neighbor_metric'] == -10000.0
        assert row['n_neighbors'] == 2

        csv = pd.read_csv(io.StringIO(store.read_text(IterationSummaryFile(1))))
        assert list(csv.columns) == SUMMARY_COLUMNS
        assert sorted(csv['slice_id']) == ['s00', 's01', 's02', 's03']


class TestResume:

    def test_resumed_run_matches_uninterrupted(self, matched, make_refiner):
        full_stack, full_store = matched(reuse=True)
        full_engine = FakeRegistrationEngine()
        make_refiner(full_stack, full_store, full_engine).run(1, 4)

        stack, store = matched(reuse=True)
        make_refiner(stack, store, FakeRegistrationEngine()).run(1, 2)
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine).run(1, 4)

        assert engine.affine_problems == []
        for it in (3, 4):
            assert iteration_labels(engine, it) == iteration_labels(full_engine, it)
        assert set(store.texts) == set(full_store.texts)
        assert set(store.images) == set(full_store.images)
        for key, text in full_store.texts.items():
            assert store.texts[key] == text

    def test_starting_mid_schedule_keeps_order(self, matched, make_refiner):
        full_stack, full_store = matched()
        full_engine = FakeRegistrationEngine()
        make_refiner(full_stack, full_store, full_engine).run(1, 4)

        stack, store = matched()
        make_refiner(stack, store, FakeRegistrationEngine()).run(1, 2)
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine).run(3, 4)

        for it in (3, 4):
            assert iteration_labels(engine, it) == iteration_labels(full_engine, it)

    def test_complete_iterations_skipped_with_reuse(self, matched, make_refiner):
        stack, store = matched(reuse=True)
        make_refiner(stack, store, FakeRegistrationEngine()).run(1, 2)
        key = store.key(IterationSummaryFile(1))
        assert store.writes[key] == 1

        engine = FakeRegistrationEngine()
        summary = make_refiner(stack, store, engine).run(1, 2)

        assert summary.empty
        assert engine.affine_problems == []
        assert store.writes[key] == 1

    def test_without_reuse_everything_reruns(self, matched, make_refiner):
        stack, store = matched()
        make_refiner(stack, store, FakeRegistrationEngine()).run(1, 1)
        engine = FakeRegistrationEngine()
        make_refiner(stack, store, engine).run(1, 1)
        assert len(engine.affine_problems) == 4


class TestLedger:

    def test_iteration_records(self, matched, make_refiner, temp_dir):
        stack, store = matched()
        with RegistrationLedger(temp_dir / "ledger.db") as ledger:
            make_refiner(stack, store, FakeRegistrationEngine(), ledger=ledger).run(1, 3)
            metrics = ledger.iteration_metrics()
            stats = ledger.get_statistics()

        assert list(metrics['iteration']) == [1, 2, 3]
        assert list(metrics['n_slices']) == [4, 4, 4]
        assert stats['voliter'] == 12
        assert stats['iterations'] == 3
