"""Tests for the adaptive permutation test."""

import pytest
import numpy as np

from bulkgsea.data import GeneSet, RankedList
from bulkgsea.exceptions import (
    EmptyIntersectionError,
    InvalidInputError,
    InvalidScheduleError,
)
from bulkgsea.permutation import (
    PermutationEngine,
    PermutationRun,
    PermutationState,
    StageRecord,
    TrialSchedule,
    seed_sequence,
)
from bulkgsea.scoring import EnrichmentScorer


@pytest.fixture
def small_list():
    return RankedList.from_mapping(
        {'A': 5, 'B': 4, 'C': 3, 'D': 2, 'E': 1, 'F': -1, 'G': -2, 'H': -3}
    )


@pytest.fixture
def large_list():
    """1000 genes with evenly spaced scores."""
    genes = [f"gene{i}" for i in range(1000)]
    return RankedList(genes, np.linspace(10.0, -10.0, 1000))


@pytest.fixture
def top_set(large_list):
    return GeneSet('top20', large_list.genes[:20])


def _observed(ranked_list, gene_set):
    return EnrichmentScorer().score(ranked_list, gene_set).enrichment_score


@pytest.mark.parametrize("stages", [
    [],
    [0],
    [-5, 10],
    [100, 100],
    [100, 50],
    [10.5],
    [True, 10],
    None,
])
def test_invalid_schedules(stages):
    """Test that malformed schedules are rejected."""
    with pytest.raises(InvalidScheduleError):
        TrialSchedule(stages)


def test_schedule_errors_are_value_errors():
    with pytest.raises(ValueError):
        TrialSchedule([10, 5])


def test_schedule_coerce():
    """Test building schedules from integers and sequences."""
    assert TrialSchedule.coerce(500).stages == (500,)
    assert TrialSchedule.coerce((10, 100)) == TrialSchedule([10, 100])

    schedule = TrialSchedule([10, 100, 1000])
    assert TrialSchedule.coerce(schedule) is schedule
    assert schedule.max_trials == 1000
    assert len(schedule) == 3
    assert list(schedule) == [10, 100, 1000]


def test_run_escalates_then_exhausts():
    """Test the transitions of a set that never reaches enough exceedances."""
    run = PermutationRun(TrialSchedule([10, 100]), min_exceedances=5)
    assert run.state is PermutationState.NOT_STARTED

    assert run.start_stage() == 10
    assert run.state is PermutationState.STAGE_RUNNING
    assert run.finish_stage(10, 2) is PermutationState.ESCALATED
    assert not run.done

    assert run.start_stage() == 90
    assert run.finish_stage(90, 1) is PermutationState.EXHAUSTED
    assert run.done
    assert run.p_value == pytest.approx(0.03)
    assert run.history == [
        StageRecord(stage=0, n_trials=10, exceedances=2, p_value=0.2),
        StageRecord(stage=1, n_trials=100, exceedances=3, p_value=0.03),
    ]

    with pytest.raises(RuntimeError):
        run.start_stage()


def test_run_converges_early():
    """Test that enough exceedances stop the run after the first stage."""
    run = PermutationRun(TrialSchedule([10, 100, 1000]), min_exceedances=5)
    run.start_stage()

    assert run.finish_stage(10, 5) is PermutationState.CONVERGED
    assert run.done
    assert run.n_trials == 10
    assert run.p_value == pytest.approx(0.5)


def test_run_rejects_finish_without_start():
    run = PermutationRun(TrialSchedule([10]))
    with pytest.raises(RuntimeError):
        run.finish_stage(10, 0)


def test_engine_is_deterministic(small_list):
    """Test that a fixed seed reproduces the outcome."""
    engine = PermutationEngine()
    gene_set = GeneSet('abc', ['A', 'B', 'C'])
    observed = _observed(small_list, gene_set)

    first = engine.run(small_list, gene_set, observed, [100, 1000], random_seed=42)
    second = engine.run(small_list, gene_set, observed, [100, 1000], random_seed=42)

    assert first == second


def test_engine_independent_of_batch_size(small_list):
    """Test that splitting trials into batches does not change the draws."""
    gene_set = GeneSet('abc', ['A', 'B', 'C'])
    observed = _observed(small_list, gene_set)

    small_batches = PermutationEngine(batch_size=7).run(
        small_list, gene_set, observed, [100, 1000], random_seed=3
    )
    one_batch = PermutationEngine(batch_size=1000).run(
        small_list, gene_set, observed, [100, 1000], random_seed=3
    )

    assert small_batches == one_batch


def test_longer_schedule_keeps_earlier_stages(small_list):
    """Test that a longer schedule repeats the stages of a shorter one."""
    engine = PermutationEngine()
    gene_set = GeneSet('abc', ['A', 'B', 'C'])
    observed = _observed(small_list, gene_set)

    short = engine.run(small_list, gene_set, observed, [20], random_seed=9)
    long = engine.run(small_list, gene_set, observed, [20, 2000], random_seed=9)

    assert short.stages[0] == long.stages[0]


def test_extreme_set_escalates_to_last_stage(large_list, top_set):
    """Test that a set no null sample reaches runs every stage."""
    engine = PermutationEngine()
    observed = _observed(large_list, top_set)

    one_stage = engine.run(large_list, top_set, observed, [100], random_seed=1)
    assert one_stage.p_value == pytest.approx(0.01)
    assert one_stage.state is PermutationState.EXHAUSTED

    staged = engine.run(large_list, top_set, observed, [100, 1000, 10000], random_seed=1)
    assert staged.p_value == pytest.approx(1e-4)
    assert staged.n_trials == 10000
    assert staged.state is PermutationState.EXHAUSTED
    assert [s.n_trials for s in staged.stages] == [100, 1000, 10000]
    assert staged.normalized_score > 1.0


def test_p_value_bounded_by_schedule(small_list):
    """Test that the p-value can never fall below one over the trial count."""
    gene_set = GeneSet('abc', ['A', 'B', 'C'])
    observed = _observed(small_list, gene_set)

    p_value = PermutationEngine().estimate_significance(
        small_list, gene_set, observed, [10], random_seed=5
    )
    assert 0.1 <= p_value <= 1.0


def test_full_coverage_set_is_not_significant(small_list):
    """Test that a set covering the whole list gets p-value 1."""
    gene_set = GeneSet('all', small_list.genes)
    observed = _observed(small_list, gene_set)

    outcome = PermutationEngine().run(small_list, gene_set, observed, [50], random_seed=0)

    assert outcome.p_value == 1.0
    assert outcome.state is PermutationState.CONVERGED


def test_top_set_more_significant_than_scattered_set(small_list):
    """Test that a set concentrated at the top beats a scattered one."""
    engine = PermutationEngine()
    top = GeneSet('top', ['A', 'B', 'C'])
    scattered = GeneSet('scattered', ['A', 'E', 'H'])

    top_p = engine.estimate_significance(
        small_list, top, _observed(small_list, top), [1000], random_seed=1
    )
    scattered_p = engine.estimate_significance(
        small_list, scattered, _observed(small_list, scattered), [1000], random_seed=1
    )

    assert top_p < 0.1
    assert top_p < scattered_p


def test_engine_validation(small_list):
    """Test error handling for invalid engine inputs."""
    with pytest.raises(InvalidInputError):
        PermutationEngine(min_exceedances=0)
    with pytest.raises(InvalidInputError):
        PermutationEngine(batch_size=0)

    engine = PermutationEngine()
    with pytest.raises(InvalidInputError):
        engine.run(small_list, GeneSet('p', ['A']), 1.0, [10], random_seed=-1)
    with pytest.raises(InvalidScheduleError):
        engine.run(small_list, GeneSet('p', ['A']), 1.0, [10, 10], random_seed=1)
    with pytest.raises(EmptyIntersectionError):
        engine.run(small_list, GeneSet('p', ['X']), 1.0, [10], random_seed=1)


def test_seed_sequence_depends_on_pathway():
    """Test that each pathway gets its own random stream."""
    a = np.random.default_rng(seed_sequence(7, 'pathway_a')).random(5)
    a_again = np.random.default_rng(seed_sequence(7, 'pathway_a')).random(5)
    b = np.random.default_rng(seed_sequence(7, 'pathway_b')).random(5)

    np.testing.assert_array_equal(a, a_again)
    assert not np.array_equal(a, b)
