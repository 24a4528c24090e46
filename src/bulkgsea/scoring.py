"""
Weighted running-sum enrichment statistic.

Walking the ranked list from the highest score down, every member of the
gene set raises the running sum by its share of the total member weight
and every other gene lowers it by ``1 / (N - k)``. The enrichment score is
the extremum of largest magnitude, and the edge tells where along the list
that extremum sits: ``+1`` at the top, ``-1`` at the bottom.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple, Union
import logging

import numpy as np
from scipy.stats import rankdata

from bulkgsea.data import GeneSet, RankedList
from bulkgsea.exceptions import EmptyIntersectionError, InvalidInputError
from bulkgsea.stats import _enrichment_extrema, _running_sum_curve

logger = logging.getLogger(__name__)

GeneSetLike = Union[GeneSet, Iterable[str]]


@dataclass(frozen=True)
class EnrichmentScore:
    """Observed enrichment of one gene set against one ranked list."""

    enrichment_score: float
    edge: float
    extremum_rank: int
    set_size: int
    overlap_size: int
    leading_edge: Tuple[str, ...] = ()


def edge_from_rank(rank: int, n_genes: int) -> float:
    """
    Signed position of a rank relative to the centre of the list.

    Args:
        rank: 0-based rank
        n_genes: Length of the ranked list

    Returns:
        Value in [-1, 1]; 1 for the first rank, -1 for the last
    """
    if n_genes <= 1 or rank < 0:
        return 0.0
    return 1.0 - 2.0 * rank / (n_genes - 1)


def _as_gene_set(gene_set: GeneSetLike) -> GeneSet:
    if isinstance(gene_set, GeneSet):
        return gene_set
    return GeneSet('', gene_set)


class EnrichmentScorer:
    """Compute the running-sum enrichment score of gene sets.

    Args:
        power: Exponent applied to absolute scores to weight the hits.
            1 weights hits by score, 0 gives the unweighted statistic.
        use_ranks: Weight hits by rank (highest score gets rank N) instead
            of by the raw score.
    """

    def __init__(self, power: float = 1.0, use_ranks: bool = False):
        if not np.isfinite(power) or power < 0:
            raise InvalidInputError(f"Weighting power must be a non-negative number, got {power}")
        self.power = float(power)
        self.use_ranks = bool(use_ranks)

    def __repr__(self) -> str:
        return f"EnrichmentScorer(power={self.power}, use_ranks={self.use_ranks})"

    def gene_weights(self, ranked_list: RankedList) -> np.ndarray:
        """Unnormalised hit weight of every gene in the ranked list."""
        values = ranked_list.scores
        if self.use_ranks:
            values = rankdata(values)
        return np.abs(np.asarray(values, dtype=np.float64)) ** self.power

    def score(
        self,
        ranked_list: RankedList,
        gene_set: GeneSetLike,
        gene_weights: Optional[np.ndarray] = None
    ) -> EnrichmentScore:
        """
        Score a gene set against a ranked list.

        Args:
            ranked_list: Genes ordered by score
            gene_set: GeneSet or iterable of gene identifiers; members missing
                from the ranked list are ignored
            gene_weights: Precomputed output of ``gene_weights`` for this list

        Returns:
            EnrichmentScore

        Raises:
            EmptyIntersectionError: If no member of the set is in the list
        """
        gene_set = _as_gene_set(gene_set)
        positions = gene_set.overlap(ranked_list)
        if gene_weights is None:
            gene_weights = self.gene_weights(ranked_list)
        return self.score_positions(ranked_list, positions, gene_weights, set_size=len(gene_set))

    def score_positions(
        self,
        ranked_list: RankedList,
        positions: np.ndarray,
        gene_weights: np.ndarray,
        set_size: Optional[int] = None
    ) -> EnrichmentScore:
        """Score the members found at the given sorted ranks."""
        n_genes = len(ranked_list)
        if len(positions) == 0:
            raise EmptyIntersectionError()

        score, rank = _enrichment_extrema(positions, gene_weights[positions], n_genes)
        score = float(score)
        rank = int(rank)

        if score >= 0:
            leading = positions[positions <= rank]
        else:
            leading = positions[positions > rank]

        return EnrichmentScore(
            enrichment_score=score,
            edge=edge_from_rank(rank, n_genes),
            extremum_rank=rank,
            set_size=len(positions) if set_size is None else set_size,
            overlap_size=len(positions),
            leading_edge=tuple(ranked_list.genes[i] for i in leading)
        )

    def running_sum(self, ranked_list: RankedList, gene_set: GeneSetLike) -> np.ndarray:
        """
        Running-sum curve of a gene set, one value per rank.

        Raises:
            EmptyIntersectionError: If no member of the set is in the list
        """
        gene_set = _as_gene_set(gene_set)
        positions = gene_set.overlap(ranked_list)
        hit_mask = np.zeros(len(ranked_list), dtype=np.bool_)
        hit_mask[positions] = True
        return _running_sum_curve(hit_mask, self.gene_weights(ranked_list))


def compute_enrichment_score(
    values: Mapping,
    genes: Iterable[str],
    power: float = 1.0
) -> Tuple[float, float]:
    """
    Compute enrichment score and edge for a gene -> score mapping.

    Args:
        values: Mapping of gene identifier to ranking metric
        genes: Gene set members
        power: Hit weighting exponent

    Returns:
        Tuple of (enrichment_score, edge)
    """
    result = EnrichmentScorer(power=power).score(RankedList.from_mapping(values), genes)
    return result.enrichment_score, result.edge
