"""
Bulk Gene Set Enrichment
========================

Permutation-based gene set enrichment analysis with a weighted running-sum
statistic and an adaptive, multi-stage permutation test.
"""

from .pipeline import (
    BulkRunner as BulkRunner,
    EnrichmentResult as EnrichmentResult,
    GeneSetEnrichmentPipeline as GeneSetEnrichmentPipeline,
    ResultTable as ResultTable,
)
from .config import PipelineConfig as PipelineConfig
from .data import (
    GeneSet as GeneSet,
    GeneSetCollection as GeneSetCollection,
    RankedList as RankedList,
    SizeBounds as SizeBounds,
    load_gene_sets as load_gene_sets,
    load_gmt as load_gmt,
    load_ranked_list as load_ranked_list,
)
from .exceptions import (
    BulkGseaError as BulkGseaError,
    EmptyIntersectionError as EmptyIntersectionError,
    InvalidInputError as InvalidInputError,
    InvalidScheduleError as InvalidScheduleError,
    RunAbortedError as RunAbortedError,
)
from .permutation import (
    PermutationEngine as PermutationEngine,
    PermutationState as PermutationState,
    TrialSchedule as TrialSchedule,
)
from .scoring import (
    EnrichmentScore as EnrichmentScore,
    EnrichmentScorer as EnrichmentScorer,
    compute_enrichment_score as compute_enrichment_score,
)
from .stats import (
    perform_fdr_analysis as perform_fdr_analysis,
)
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "BulkRunner",
    "EnrichmentResult",
    "GeneSetEnrichmentPipeline",
    "ResultTable",
    "PipelineConfig",
    "GeneSet",
    "GeneSetCollection",
    "RankedList",
    "SizeBounds",
    "load_gene_sets",
    "load_gmt",
    "load_ranked_list",
    "BulkGseaError",
    "EmptyIntersectionError",
    "InvalidInputError",
    "InvalidScheduleError",
    "RunAbortedError",
    "PermutationEngine",
    "PermutationState",
    "TrialSchedule",
    "EnrichmentScore",
    "EnrichmentScorer",
    "compute_enrichment_score",
    "perform_fdr_analysis",
    "setup_logging",
    "ensure_dir",
]
