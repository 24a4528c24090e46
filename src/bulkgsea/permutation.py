"""
Adaptive permutation test for running-sum enrichment scores.

Significance is estimated in stages. Each stage tops the null sample up to
the next entry of the trial schedule; the draws of earlier stages are kept,
so a longer schedule only refines the estimate of a shorter one. A gene set
stops as soon as enough null scores reach its observed score.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union
import logging
import zlib

import numpy as np

from bulkgsea.data import RankedList
from bulkgsea.exceptions import InvalidInputError, InvalidScheduleError
from bulkgsea.scoring import EnrichmentScorer, GeneSetLike, _as_gene_set
from bulkgsea.stats import (
    _count_exceedances,
    _null_enrichment_scores,
    _same_sign_magnitude,
    empirical_p_value,
)

logger = logging.getLogger(__name__)


class TrialSchedule:
    """Strictly increasing cumulative permutation counts, one per stage."""

    def __init__(self, stages: Iterable[int]):
        try:
            stages = list(stages)
        except TypeError:
            raise InvalidScheduleError(f"Trial schedule must be a sequence of integers, got {stages!r}")

        if not stages:
            raise InvalidScheduleError("Trial schedule cannot be empty")

        for value in stages:
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise InvalidScheduleError(f"Trial schedule values must be integers, got {value!r}")
            if value <= 0:
                raise InvalidScheduleError(f"Trial schedule values must be positive, got {value}")

        for previous, current in zip(stages, stages[1:]):
            if current <= previous:
                raise InvalidScheduleError(
                    f"Trial schedule must be strictly increasing, got {previous} then {current}"
                )

        self.stages: Tuple[int, ...] = tuple(int(v) for v in stages)

    @classmethod
    def coerce(cls, value: Union["TrialSchedule", Iterable[int], int]) -> "TrialSchedule":
        if isinstance(value, TrialSchedule):
            return value
        if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
            return cls([value])
        return cls(value)

    @property
    def max_trials(self) -> int:
        return self.stages[-1]

    def __len__(self) -> int:
        return len(self.stages)

    def __iter__(self) -> Iterator[int]:
        return iter(self.stages)

    def __getitem__(self, index: int) -> int:
        return self.stages[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TrialSchedule):
            return self.stages == other.stages
        return NotImplemented

    def __repr__(self) -> str:
        return f"TrialSchedule({list(self.stages)})"


class PermutationState(Enum):
    NOT_STARTED = 'not_started'
    STAGE_RUNNING = 'stage_running'
    CONVERGED = 'converged'
    ESCALATED = 'escalated'
    EXHAUSTED = 'exhausted'


@dataclass(frozen=True)
class StageRecord:
    stage: int
    n_trials: int
    exceedances: int
    p_value: float


class PermutationRun:
    """State machine tracking the permutation stages of one gene set.

    NOT_STARTED -> STAGE_RUNNING(0) -> CONVERGED
                                    -> ESCALATED -> STAGE_RUNNING(1) -> ...
                                    -> EXHAUSTED (last stage, too few exceedances)
    """

    def __init__(self, schedule: TrialSchedule, min_exceedances: int = 10):
        self.schedule = schedule
        self.min_exceedances = min_exceedances
        self.state = PermutationState.NOT_STARTED
        self.stage_index = -1
        self.n_trials = 0
        self.exceedances = 0
        self.history: List[StageRecord] = []

    @property
    def done(self) -> bool:
        return self.state in (PermutationState.CONVERGED, PermutationState.EXHAUSTED)

    def start_stage(self) -> int:
        """Enter the next stage and return how many trials it must add."""
        if self.state not in (PermutationState.NOT_STARTED, PermutationState.ESCALATED):
            raise RuntimeError(f"Cannot start a stage from state {self.state.name}")
        self.stage_index += 1
        self.state = PermutationState.STAGE_RUNNING
        return self.schedule[self.stage_index] - self.n_trials

    def finish_stage(self, n_trials: int, exceedances: int) -> PermutationState:
        """Record the trials of the running stage and decide what comes next."""
        if self.state is not PermutationState.STAGE_RUNNING:
            raise RuntimeError(f"Cannot finish a stage from state {self.state.name}")
        self.n_trials += n_trials
        self.exceedances += exceedances
        self.history.append(StageRecord(
            stage=self.stage_index,
            n_trials=self.n_trials,
            exceedances=self.exceedances,
            p_value=self.p_value
        ))

        if self.exceedances >= self.min_exceedances:
            self.state = PermutationState.CONVERGED
        elif self.stage_index + 1 < len(self.schedule):
            self.state = PermutationState.ESCALATED
        else:
            self.state = PermutationState.EXHAUSTED
        return self.state

    @property
    def p_value(self) -> float:
        if self.n_trials == 0:
            return 1.0
        return empirical_p_value(self.exceedances, self.n_trials)


@dataclass(frozen=True)
class PermutationOutcome:
    """Aggregate of the null sample of one gene set."""

    p_value: float
    n_trials: int
    exceedances: int
    state: PermutationState
    normalized_score: float
    stages: Tuple[StageRecord, ...] = field(default_factory=tuple)


def seed_sequence(random_seed: Optional[int], name: str = '') -> np.random.SeedSequence:
    """
    Seed sequence for one gene set.

    The pathway name is mixed into the seed so that every gene set gets its
    own stream, independent of processing order and worker assignment.
    """
    if random_seed is None:
        return np.random.SeedSequence()
    if isinstance(random_seed, bool) or not isinstance(random_seed, (int, np.integer)) or random_seed < 0:
        raise InvalidInputError(f"Random seed must be a non-negative integer, got {random_seed!r}")
    return np.random.SeedSequence([int(random_seed), zlib.crc32(name.encode('utf-8'))])


class PermutationEngine:
    """Estimate enrichment significance with an adaptive permutation test.

    Args:
        scorer: Scorer supplying the hit weighting policy
        min_exceedances: Exceedances after which a stage is considered stable
        batch_size: Maximum number of trials scored per kernel call
    """

    def __init__(
        self,
        scorer: Optional[EnrichmentScorer] = None,
        min_exceedances: int = 10,
        batch_size: int = 1000
    ):
        if min_exceedances < 1:
            raise InvalidInputError("min_exceedances must be at least 1")
        if batch_size < 1:
            raise InvalidInputError("batch_size must be at least 1")
        self.scorer = scorer or EnrichmentScorer()
        self.min_exceedances = int(min_exceedances)
        self.batch_size = int(batch_size)

    def run(
        self,
        ranked_list: RankedList,
        gene_set: GeneSetLike,
        observed_score: float,
        trial_schedule: Union[TrialSchedule, Sequence[int]],
        random_seed: Optional[int] = None,
        gene_weights: Optional[np.ndarray] = None
    ) -> PermutationOutcome:
        """
        Run the staged permutation test for one gene set.

        Args:
            ranked_list: Genes ordered by score
            gene_set: GeneSet or iterable of members
            observed_score: Enrichment score of the real gene set
            trial_schedule: Cumulative trial counts per stage
            random_seed: Seed for reproducible draws
            gene_weights: Precomputed hit weights for this ranked list

        Returns:
            PermutationOutcome

        Raises:
            InvalidScheduleError: If the schedule is malformed
            EmptyIntersectionError: If no member of the set is in the list
        """
        schedule = TrialSchedule.coerce(trial_schedule)
        gene_set = _as_gene_set(gene_set)
        n_hits = len(gene_set.overlap(ranked_list))
        if gene_weights is None:
            gene_weights = self.scorer.gene_weights(ranked_list)

        rng = np.random.default_rng(seed_sequence(random_seed, gene_set.name))
        observed_score = float(observed_score)
        magnitude_sum = 0.0
        magnitude_count = 0

        run = PermutationRun(schedule, self.min_exceedances)
        while not run.done:
            to_draw = run.start_stage()
            stage_exceedances = 0
            drawn = 0
            while drawn < to_draw:
                batch = min(self.batch_size, to_draw - drawn)
                uniforms = rng.random((batch, n_hits))
                null_scores = _null_enrichment_scores(gene_weights, n_hits, uniforms)
                stage_exceedances += int(_count_exceedances(observed_score, null_scores))
                batch_sum, batch_count = _same_sign_magnitude(observed_score, null_scores)
                magnitude_sum += float(batch_sum)
                magnitude_count += int(batch_count)
                drawn += batch

            state = run.finish_stage(drawn, stage_exceedances)
            logger.debug(
                f"Gene set '{gene_set.name}' stage {run.stage_index}: "
                f"{run.exceedances}/{run.n_trials} exceedances -> {state.name}"
            )

        if magnitude_count > 0 and magnitude_sum > 0:
            normalized_score = observed_score / (magnitude_sum / magnitude_count)
        else:
            normalized_score = 0.0

        return PermutationOutcome(
            p_value=run.p_value,
            n_trials=run.n_trials,
            exceedances=run.exceedances,
            state=run.state,
            normalized_score=float(normalized_score),
            stages=tuple(run.history)
        )

    def estimate_significance(
        self,
        ranked_list: RankedList,
        gene_set: GeneSetLike,
        observed_score: float,
        trial_schedule: Union[TrialSchedule, Sequence[int]],
        random_seed: Optional[int] = None
    ) -> float:
        """Permutation p-value of an observed enrichment score."""
        return self.run(
            ranked_list, gene_set, observed_score, trial_schedule, random_seed=random_seed
        ).p_value
