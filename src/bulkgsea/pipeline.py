"""Main pipeline implementation for gene set enrichment analysis."""

import json
import logging
import multiprocessing
import platform
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, replace
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import numba as nb
import numpy as np
import polars as pl
from tqdm.auto import tqdm

from bulkgsea.config import PipelineConfig
from bulkgsea.data import (
    GeneSet,
    GeneSetCollection,
    RankedList,
    SizeBounds,
    load_gene_sets,
    load_ranked_list,
)
from bulkgsea.exceptions import EmptyIntersectionError, InvalidInputError, RunAbortedError
from bulkgsea.permutation import PermutationEngine, TrialSchedule
from bulkgsea.scoring import EnrichmentScorer
from bulkgsea.stats import perform_fdr_analysis
from bulkgsea.utils import ensure_dir

# Configure tqdm to work properly on macOS
is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': True,
    'ncols': 100,
    'dynamic_ncols': True,
    'ascii': is_mac,
}


@dataclass(frozen=True)
class EnrichmentResult:
    """Enrichment statistics of one gene set."""

    pathway: str
    enrichment_score: float
    normalized_score: float
    edge: float
    p_value: float
    adjusted_p_value: float
    set_size: int
    overlap_size: int
    n_trials: int
    status: str
    leading_edge: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        row = asdict(self)
        row['leading_edge'] = list(self.leading_edge)
        return row


class ResultTable:
    """Ordered enrichment results, one row per tested gene set.

    Gene sets that were skipped because they share no gene with the ranked
    list are listed in ``skipped`` with the reason.
    """

    COLUMNS = [
        'pathway', 'enrichment_score', 'normalized_score', 'edge', 'p_value',
        'adjusted_p_value', 'set_size', 'overlap_size', 'n_trials', 'status',
        'leading_edge'
    ]

    SCHEMA = {
        'pathway': pl.Utf8,
        'enrichment_score': pl.Float64,
        'normalized_score': pl.Float64,
        'edge': pl.Float64,
        'p_value': pl.Float64,
        'adjusted_p_value': pl.Float64,
        'set_size': pl.Int64,
        'overlap_size': pl.Int64,
        'n_trials': pl.Int64,
        'status': pl.Utf8,
        'leading_edge': pl.List(pl.Utf8),
    }

    def __init__(self, results: Iterable[EnrichmentResult] = (), skipped: Optional[Mapping[str, str]] = None):
        self._rows: Dict[str, EnrichmentResult] = {}
        for result in results:
            if result.pathway in self._rows:
                raise InvalidInputError(f"Duplicate pathway in result table: {result.pathway}")
            self._rows[result.pathway] = result
        self.skipped: Dict[str, str] = dict(skipped or {})

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[EnrichmentResult]:
        return iter(self._rows.values())

    def __contains__(self, pathway: object) -> bool:
        return pathway in self._rows

    def __getitem__(self, pathway: str) -> EnrichmentResult:
        return self._rows[pathway]

    def get(self, pathway: str) -> Optional[EnrichmentResult]:
        return self._rows.get(pathway)

    @property
    def pathways(self) -> List[str]:
        return list(self._rows)

    def significant(self, alpha: float = 0.05) -> List[EnrichmentResult]:
        """Rows whose adjusted p-value is at most alpha."""
        return [r for r in self._rows.values() if r.adjusted_p_value <= alpha]

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._rows.values()]

    def to_frame(self) -> pl.DataFrame:
        """Results as a polars DataFrame, in row order."""
        if not self._rows:
            return pl.DataFrame(schema=self.SCHEMA)
        return pl.DataFrame(self.to_dicts(), schema=self.SCHEMA)

    def write_csv(self, file_path: Union[str, Path]) -> None:
        """Write the table to CSV, leading edge genes joined by commas."""
        self.to_frame().with_columns(
            pl.col('leading_edge').list.join(',')
        ).write_csv(file_path)

    def write_json(self, file_path: Union[str, Path]) -> None:
        with open(file_path, 'w') as f:
            json.dump({'results': self.to_dicts(), 'skipped': self.skipped}, f, indent=2)


def _process_gene_set(
    gene_set: GeneSet,
    ranked_list: RankedList,
    scorer: EnrichmentScorer,
    engine: PermutationEngine,
    trial_schedule: TrialSchedule,
    random_seed: Optional[int],
    gene_weights: np.ndarray
) -> EnrichmentResult:
    """
    Score one gene set and run its permutation test.

    Defined at module level so it can be sent to worker processes. The
    adjusted p-value is left as NaN until the whole batch is collected.
    """
    observed = scorer.score(ranked_list, gene_set, gene_weights=gene_weights)
    outcome = engine.run(
        ranked_list,
        gene_set,
        observed.enrichment_score,
        trial_schedule,
        random_seed=random_seed,
        gene_weights=gene_weights
    )
    return EnrichmentResult(
        pathway=gene_set.name,
        enrichment_score=observed.enrichment_score,
        normalized_score=outcome.normalized_score,
        edge=observed.edge,
        p_value=outcome.p_value,
        adjusted_p_value=float('nan'),
        set_size=observed.set_size,
        overlap_size=observed.overlap_size,
        n_trials=outcome.n_trials,
        status=outcome.state.value,
        leading_edge=observed.leading_edge
    )


def _init_worker() -> None:
    """Limit a pool worker to one numba thread."""
    nb.set_num_threads(1)


def _coerce_size_bounds(size_bounds: Union[SizeBounds, Mapping, Tuple[int, int]]) -> SizeBounds:
    if isinstance(size_bounds, SizeBounds):
        return size_bounds
    if isinstance(size_bounds, Mapping):
        bounds = {}
        for key in ('min', 'max'):
            value = size_bounds.get(key, size_bounds.get(f"{key}_size"))
            if value is None:
                raise InvalidInputError(f"Size bounds are missing '{key}' (or '{key}_size')")
            bounds[key] = int(value)
        return SizeBounds(min_size=bounds['min'], max_size=bounds['max'])
    min_size, max_size = size_bounds
    return SizeBounds(int(min_size), int(max_size))


class BulkRunner:
    """Score and test every gene set of a collection against one ranked list.

    Args:
        scorer: Enrichment statistic and weighting policy
        engine: Permutation engine; built from ``scorer`` if not given
        num_workers: Worker processes; 1 runs everything in this process
        random_seed: Seed shared by all gene sets
        fdr_alpha: Significance level passed to the FDR adjustment
        skip_empty: Record gene sets without overlap as skipped instead of
            raising EmptyIntersectionError
        show_progress: Display a progress bar
    """

    def __init__(
        self,
        scorer: Optional[EnrichmentScorer] = None,
        engine: Optional[PermutationEngine] = None,
        num_workers: int = 1,
        random_seed: Optional[int] = None,
        fdr_alpha: float = 0.05,
        skip_empty: bool = True,
        show_progress: bool = True
    ):
        self.scorer = scorer or (engine.scorer if engine is not None else EnrichmentScorer())
        self.engine = engine or PermutationEngine(scorer=self.scorer)
        self.num_workers = max(1, int(num_workers))
        self.random_seed = random_seed
        self.fdr_alpha = fdr_alpha
        self.skip_empty = skip_empty
        self.show_progress = show_progress
        self.logger = logging.getLogger(__name__)

    def run(
        self,
        ranked_list: Union[RankedList, Mapping[str, float]],
        gene_set_collection: Union[GeneSetCollection, Mapping[str, Iterable[str]]],
        size_bounds: Union[SizeBounds, Mapping, Tuple[int, int]] = SizeBounds(),
        trial_schedule: Union[TrialSchedule, Iterable[int]] = (100, 1000, 10000),
        should_abort: Optional[Callable[[], bool]] = None
    ) -> ResultTable:
        """
        Run the enrichment analysis over a gene set collection.

        Args:
            ranked_list: RankedList or gene -> score mapping
            gene_set_collection: GeneSetCollection or pathway -> genes mapping
            size_bounds: Strict size filter applied before scoring
            trial_schedule: Cumulative permutation counts per stage
            should_abort: Polled between gene sets; returning True aborts the run

        Returns:
            ResultTable in the input order of the gene sets

        Raises:
            InvalidScheduleError: If the schedule is malformed, before any work
            EmptyIntersectionError: If a set has no overlap and skip_empty is False
            RunAbortedError: If should_abort returned True
        """
        schedule = TrialSchedule.coerce(trial_schedule)
        bounds = _coerce_size_bounds(size_bounds)
        if not isinstance(ranked_list, RankedList):
            ranked_list = RankedList.from_mapping(ranked_list)
        collection = GeneSetCollection.from_mapping(gene_set_collection)

        start_time = time.time()
        filtered = collection.filter_by_size(bounds)
        self.logger.info(
            f"Testing {len(filtered)} of {len(collection)} gene sets "
            f"(size filter {bounds.min_size} < n < {bounds.max_size}) against {len(ranked_list)} genes"
        )

        tasks: List[GeneSet] = []
        skipped: Dict[str, str] = {}
        for gene_set in filtered.values():
            try:
                gene_set.overlap(ranked_list)
            except EmptyIntersectionError as e:
                if not self.skip_empty:
                    raise
                self.logger.warning(str(e))
                skipped[gene_set.name] = 'no overlap with ranked list'
                continue
            tasks.append(gene_set)

        gene_weights = self.scorer.gene_weights(ranked_list)
        process_func = partial(
            _process_gene_set,
            ranked_list=ranked_list,
            scorer=self.scorer,
            engine=self.engine,
            trial_schedule=schedule,
            random_seed=self.random_seed,
            gene_weights=gene_weights
        )

        num_workers = max(1, min(len(tasks), self.num_workers))
        if num_workers > 1:
            results = self._run_parallel(process_func, tasks, num_workers, should_abort)
        else:
            results = self._run_sequential(process_func, tasks, should_abort)

        ordered = [results[gene_set.name] for gene_set in tasks]
        table = ResultTable(self._adjust(ordered), skipped=skipped)

        elapsed_time = time.time() - start_time
        self.logger.info(
            f"Tested {len(table)} gene sets in {elapsed_time:.2f} seconds "
            f"({len(skipped)} skipped, {len(table.significant(self.fdr_alpha))} with q <= {self.fdr_alpha})"
        )
        return table

    def _adjust(self, results: List[EnrichmentResult]) -> List[EnrichmentResult]:
        """Benjamini-Hochberg adjustment over the whole batch."""
        if not results:
            return []
        fdr = perform_fdr_analysis([r.p_value for r in results], alpha=self.fdr_alpha)
        return [
            replace(r, adjusted_p_value=float(q))
            for r, q in zip(results, fdr['pvals_corrected'])
        ]

    def _check_abort(self, should_abort: Optional[Callable[[], bool]]) -> None:
        if should_abort is not None and should_abort():
            self.logger.warning("Run aborted by caller")
            raise RunAbortedError("Enrichment run aborted between gene sets")

    def _run_sequential(
        self,
        process_func: Callable[[GeneSet], EnrichmentResult],
        tasks: List[GeneSet],
        should_abort: Optional[Callable[[], bool]] = None
    ) -> Dict[str, EnrichmentResult]:
        """Process gene sets one after the other in this process."""
        results: Dict[str, EnrichmentResult] = {}
        with tqdm(total=len(tasks), desc="Gene sets", unit="set",
                  disable=not self.show_progress, **tqdm_kwargs) as pbar:
            for gene_set in tasks:
                self._check_abort(should_abort)
                try:
                    result = process_func(gene_set)
                except Exception as e:
                    self.logger.error(f"Error processing gene set {gene_set.name}: {str(e)}")
                    raise
                results[gene_set.name] = result
                self.logger.debug(
                    f"  {gene_set.name}: es={result.enrichment_score:.4f}, edge={result.edge:.3f}, "
                    f"p={result.p_value:.4e}, trials={result.n_trials}, status={result.status}"
                )
                pbar.update(1)
        return results

    def _run_parallel(
        self,
        process_func: Callable[[GeneSet], EnrichmentResult],
        tasks: List[GeneSet],
        num_workers: int,
        should_abort: Optional[Callable[[], bool]] = None
    ) -> Dict[str, EnrichmentResult]:
        """Process gene sets on a pool of worker processes.

        Gene sets whose worker failed are retried sequentially once the pool
        is done.
        """
        self.logger.info(f"Processing {len(tasks)} gene sets using {num_workers} parallel workers")
        results: Dict[str, EnrichmentResult] = {}
        failed: List[GeneSet] = []

        with ProcessPoolExecutor(max_workers=num_workers,
                                 mp_context=multiprocessing.get_context('spawn'),
                                 initializer=_init_worker) as executor:
            futures = {executor.submit(process_func, gene_set): gene_set for gene_set in tasks}
            with tqdm(total=len(futures), desc="Gene sets", unit="set",
                      disable=not self.show_progress, **tqdm_kwargs) as pbar:
                for future in as_completed(futures):
                    gene_set = futures[future]
                    try:
                        results[gene_set.name] = future.result()
                    except Exception as e:
                        self.logger.error(f"Error processing gene set {gene_set.name}: {str(e)}")
                        failed.append(gene_set)
                    finally:
                        pbar.update(1)

                    try:
                        self._check_abort(should_abort)
                    except RunAbortedError:
                        for pending in futures:
                            pending.cancel()
                        raise

        if failed:
            if len(failed) == len(tasks):
                raise RuntimeError("All gene sets failed to process. Check the logs for details.")
            self.logger.info(f"Attempting to process {len(failed)} failed gene sets sequentially")
            results.update(self._run_sequential(process_func, failed, should_abort))

        return results


class GeneSetEnrichmentPipeline:
    """Config-driven enrichment run: load inputs, test gene sets, save results."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.results: Optional[ResultTable] = None
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key in ('ranked_list_file', 'gene_sets_file'):
            file_path = self.config.input_files[file_key]
            if not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        self.ranked_list = load_ranked_list(
            self.config.input_files['ranked_list_file'],
            gene_col=self.config.gene_column,
            score_col=self.config.score_column
        )
        self.gene_sets = load_gene_sets(self.config.input_files['gene_sets_file'])

        self.logger.info(f"Loaded {len(self.ranked_list)} genes with scores")
        self.logger.info(f"Loaded {len(self.gene_sets)} gene sets")
        self.logger.debug("Finished loading input data files")

    def build_runner(self) -> BulkRunner:
        scorer = EnrichmentScorer(power=self.config.power, use_ranks=self.config.use_ranks)
        return BulkRunner(
            scorer=scorer,
            engine=PermutationEngine(scorer=scorer, min_exceedances=self.config.min_exceedances),
            num_workers=self.config.num_threads,
            random_seed=self.config.random_seed,
            fdr_alpha=self.config.fdr_alpha
        )

    def run(self, save: bool = True) -> ResultTable:
        """Run the gene set enrichment analysis pipeline."""
        self.logger.info("Starting gene set enrichment analysis pipeline")
        start_time = time.time()

        trial_schedule = self.config.get_trial_schedule()
        size_bounds = self.config.get_size_bounds()
        self.logger.info(f"Permutation schedule: {', '.join(map(str, trial_schedule))} trials")

        self.results = self.build_runner().run(
            self.ranked_list,
            self.gene_sets,
            size_bounds=size_bounds,
            trial_schedule=trial_schedule
        )

        if save:
            self.logger.info("Saving results")
            self.save_results()

        elapsed_time = time.time() - start_time
        self.logger.info(f"Pipeline completed in {elapsed_time:.2f} seconds")
        return self.results

    def save_results(self, output_dir: Optional[Union[str, Path]] = None):
        """Save analysis results.

        Args:
            output_dir: Optional output directory path. If not provided,
                        uses the directory from the configuration.
        """
        if self.results is None:
            self.logger.warning("No results to save. Run the pipeline first.")
            return

        output_path = Path(output_dir) if output_dir is not None else self.config.get_output_path()
        data_path = ensure_dir(output_path / 'data')

        csv_file = data_path / 'enrichment_results.csv'
        self.results.write_csv(csv_file)
        self.logger.info(f"Saved results to {csv_file}")

        json_file = data_path / 'enrichment_results.json'
        self.results.write_json(json_file)
        self.logger.info(f"Saved results to {json_file}")

        skipped_file = data_path / 'skipped_gene_sets.txt'
        with open(skipped_file, 'w') as f:
            for pathway, reason in self.results.skipped.items():
                f.write(f"{pathway}\t{reason}\n")

        config_file = data_path / 'pipeline_config.json'
        with open(config_file, 'w') as f:
            json.dump(self.config.to_dict(), f, indent=2)
        self.logger.info(f"Saved configuration to {config_file}")

        readme_file = output_path / 'README.md'
        with open(readme_file, 'w') as f:
            f.write("# Gene Set Enrichment Analysis Results\n\n")
            f.write(f"Analysis completed on {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            f.write(f"Tested {len(self.results)} gene sets, skipped {len(self.results.skipped)}.\n\n")
            f.write("## Files\n\n")
            f.write("- `data/enrichment_results.csv`: One row per tested gene set\n")
            f.write("- `data/enrichment_results.json`: Same results with the skipped gene sets\n")
            f.write("- `data/skipped_gene_sets.txt`: Gene sets without overlap with the ranked list\n")
            f.write("- `data/pipeline_config.json`: Configuration used for this analysis\n\n")
            f.write("## Columns\n\n")
            f.write("- `enrichment_score`: signed running-sum extremum\n")
            f.write("- `normalized_score`: enrichment score over the mean same-signed null score\n")
            f.write("- `edge`: position of the extremum, 1 at the top of the list, -1 at the bottom\n")
            f.write("- `p_value`, `adjusted_p_value`: permutation p-value and Benjamini-Hochberg q-value\n")
            f.write("- `status`: `converged` or `exhausted` permutation schedule\n")
        self.logger.info(f"Saved README to {readme_file}")
