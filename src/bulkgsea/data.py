"""
Data structures and loaders for the gene set enrichment pipeline.
"""

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union
import logging

import numpy as np
import polars as pl

from bulkgsea.exceptions import EmptyIntersectionError, InvalidInputError

logger = logging.getLogger(__name__)


class RankedList:
    """Genes ordered by score, highest first.

    Ties keep the order in which the genes were supplied. Genes with a
    missing identifier, or a missing or non-finite score, are dropped.
    """

    def __init__(self, genes: Iterable[str], scores: Iterable[float]):
        genes = list(genes)
        scores = np.asarray(list(scores), dtype=np.float64)

        if len(genes) != len(scores):
            raise InvalidInputError(
                f"Got {len(genes)} gene identifiers but {len(scores)} scores"
            )

        named = np.array([g is not None for g in genes], dtype=np.bool_)
        if not named.all():
            logger.warning(f"Dropping {int((~named).sum())} genes with missing identifiers")
            genes = [g for g, keep in zip(genes, named) if keep]
            scores = scores[named]
        genes = [str(g) for g in genes]

        finite = np.isfinite(scores)
        if not finite.all():
            logger.warning(f"Dropping {int((~finite).sum())} genes with non-finite scores")
            genes = [g for g, keep in zip(genes, finite) if keep]
            scores = scores[finite]

        if len(genes) == 0:
            raise InvalidInputError("Ranked list cannot be empty")

        if len(set(genes)) != len(genes):
            counts = Counter(genes)
            duplicates = sorted(g for g, n in counts.items() if n > 1)
            raise InvalidInputError(
                f"Ranked list contains duplicate gene identifiers: {', '.join(duplicates[:10])}"
            )

        order = np.argsort(-scores, kind='stable')
        self.genes: Tuple[str, ...] = tuple(genes[i] for i in order)
        self.scores: np.ndarray = scores[order]
        self.scores.flags.writeable = False
        self._rank = {gene: i for i, gene in enumerate(self.genes)}

    @classmethod
    def from_mapping(cls, values: Mapping) -> "RankedList":
        """Build a ranked list from a gene -> score mapping."""
        return cls(list(values.keys()), [float(v) for v in values.values()])

    @classmethod
    def from_frame(
        cls,
        df: pl.DataFrame,
        gene_col: str = 'gene_id',
        score_col: str = 'score'
    ) -> "RankedList":
        """Build a ranked list from a DataFrame with gene and score columns."""
        missing = [col for col in (gene_col, score_col) if col not in df.columns]
        if missing:
            raise InvalidInputError(f"Missing columns in ranked list: {', '.join(missing)}")

        missing_ids = df[gene_col].null_count()
        if missing_ids:
            logger.warning(f"Dropping {missing_ids} rows without a {gene_col} value")
            df = df.drop_nulls(gene_col)

        scores = df[score_col].cast(pl.Float64, strict=False).fill_null(float('nan'))
        return cls(df[gene_col].cast(pl.Utf8).to_list(), scores.to_numpy())

    def __len__(self) -> int:
        return len(self.genes)

    def __contains__(self, gene: object) -> bool:
        return gene in self._rank

    def __iter__(self) -> Iterator[Tuple[str, float]]:
        return iter(zip(self.genes, self.scores.tolist()))

    def rank_of(self, gene: str) -> int:
        """0-based rank of a gene, raising KeyError if absent."""
        return self._rank[gene]

    def positions_of(self, genes: Iterable[str]) -> np.ndarray:
        """Sorted ranks of the given genes that are present in the list."""
        ranks = {self._rank[g] for g in genes if g in self._rank}
        return np.array(sorted(ranks), dtype=np.int64)

    def to_frame(self) -> pl.DataFrame:
        """Return the ranked list as a DataFrame with gene_id, score and rank."""
        return pl.DataFrame({
            'gene_id': list(self.genes),
            'score': self.scores,
            'rank': np.arange(1, len(self.genes) + 1, dtype=np.int64)
        })


@dataclass(frozen=True)
class GeneSet:
    """A named set of gene identifiers."""

    name: str
    genes: frozenset

    def __post_init__(self):
        if isinstance(self.genes, (str, bytes)):
            raise InvalidInputError(
                f"Members of gene set '{self.name}' must be a collection of gene identifiers, "
                f"got the single string {self.genes!r}"
            )
        if not isinstance(self.genes, frozenset):
            object.__setattr__(self, 'genes', frozenset(str(g) for g in self.genes))

    def __len__(self) -> int:
        return len(self.genes)

    def __iter__(self) -> Iterator[str]:
        return iter(self.genes)

    def overlap(self, ranked_list: RankedList) -> np.ndarray:
        """Sorted ranks of the members found in the ranked list.

        Raises:
            EmptyIntersectionError: If no member is in the ranked list
        """
        positions = ranked_list.positions_of(self.genes)
        if len(positions) == 0:
            raise EmptyIntersectionError(self.name)
        return positions


@dataclass(frozen=True)
class SizeBounds:
    """Gene set size filter; a set passes when min_size < size < max_size."""

    min_size: int = 15
    max_size: int = 500

    def __post_init__(self):
        if self.min_size < 0 or self.max_size < 0:
            raise InvalidInputError("Gene set size bounds must be non-negative")
        if self.min_size >= self.max_size:
            raise InvalidInputError(
                f"Minimum gene set size ({self.min_size}) must be smaller than "
                f"the maximum ({self.max_size})"
            )

    def contains(self, size: int) -> bool:
        return self.min_size < size < self.max_size


class GeneSetCollection(Mapping):
    """Mapping from pathway name to GeneSet, in insertion order."""

    def __init__(self, gene_sets: Iterable[GeneSet] = ()):
        self._sets: Dict[str, GeneSet] = {}
        for gene_set in gene_sets:
            if gene_set.name in self._sets:
                raise InvalidInputError(f"Duplicate pathway name: {gene_set.name}")
            self._sets[gene_set.name] = gene_set

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, Iterable[str]]]) -> "GeneSetCollection":
        """Build a collection from (pathway name, genes) pairs."""
        return cls(GeneSet(str(name), genes) for name, genes in pairs)

    @classmethod
    def from_mapping(cls, gene_sets: Mapping) -> "GeneSetCollection":
        """Build a collection from a pathway name -> genes mapping."""
        if isinstance(gene_sets, GeneSetCollection):
            return gene_sets
        return cls.from_pairs(gene_sets.items())

    def __getitem__(self, name: str) -> GeneSet:
        return self._sets[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._sets)

    def __len__(self) -> int:
        return len(self._sets)

    def sizes(self) -> Dict[str, int]:
        return {name: len(gene_set) for name, gene_set in self._sets.items()}

    def filter_by_size(self, bounds: SizeBounds) -> "GeneSetCollection":
        """Return a new collection with only the sets passing the size filter."""
        return GeneSetCollection(s for s in self._sets.values() if bounds.contains(len(s)))


def load_ranked_list(
    file_path: Union[str, Path],
    gene_col: str = 'gene_id',
    score_col: str = 'score'
) -> RankedList:
    """
    Load a ranked list from a tab-delimited file.

    Args:
        file_path: Path to the ranked list file
        gene_col: Column holding gene identifiers
        score_col: Column holding the ranking metric

    Returns:
        RankedList sorted by score, highest first
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        schema_overrides={gene_col: pl.Utf8}
    )
    ranked_list = RankedList.from_frame(df, gene_col=gene_col, score_col=score_col)
    logger.info(f"Loaded {len(ranked_list)} ranked genes from {file_path}")
    return ranked_list


def load_gmt(file_path: Union[str, Path]) -> GeneSetCollection:
    """
    Load gene sets from a GMT file.

    Each line holds a pathway name, a description and the member genes,
    separated by tabs. Lines with fewer than three fields are skipped.

    Args:
        file_path: Path to the GMT file

    Returns:
        GeneSetCollection in file order
    """
    pairs: List[Tuple[str, List[str]]] = []
    with open(file_path, 'r') as f:
        for line_number, line in enumerate(f, start=1):
            parts = line.rstrip('\r\n').split('\t')
            if len(parts) < 3:
                if line.strip():
                    logger.debug(f"Skipping malformed GMT line {line_number} in {file_path}")
                continue
            pairs.append((parts[0], [gene for gene in parts[2:] if gene]))

    collection = GeneSetCollection.from_pairs(pairs)
    logger.info(f"Loaded {len(collection)} gene sets from {file_path}")
    return collection


def load_gene_set_table(
    file_path: Union[str, Path],
    set_col: str = 'gene_set_name',
    gene_col: str = 'gene_id'
) -> GeneSetCollection:
    """
    Load gene sets from a long-format tab-delimited file.

    Args:
        file_path: Path to a file with one (gene set, gene) pair per row
        set_col: Column holding the pathway name
        gene_col: Column holding the gene identifier

    Returns:
        GeneSetCollection ordered by first appearance of each pathway
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        schema_overrides={set_col: pl.Utf8, gene_col: pl.Utf8}
    )
    missing = [col for col in (set_col, gene_col) if col not in df.columns]
    if missing:
        raise InvalidInputError(f"Missing columns in gene set file: {', '.join(missing)}")

    grouped = (
        df.drop_nulls([set_col, gene_col])
        .group_by(set_col, maintain_order=True)
        .agg(pl.col(gene_col))
    )
    collection = GeneSetCollection.from_pairs(
        zip(grouped[set_col].to_list(), grouped[gene_col].to_list())
    )
    logger.info(f"Loaded {len(collection)} gene sets from {file_path}")
    return collection


def load_gene_sets(file_path: Union[str, Path]) -> GeneSetCollection:
    """Load gene sets from a GMT file or a long-format TSV, by file suffix."""
    if Path(file_path).suffix.lower() == '.gmt':
        return load_gmt(file_path)
    return load_gene_set_table(file_path)


def write_gmt(collection: GeneSetCollection, file_path: Union[str, Path],
              description: Optional[str] = None) -> None:
    """Write a collection to a GMT file, genes sorted within each set."""
    with open(file_path, 'w') as f:
        for name, gene_set in collection.items():
            fields = [name, description or name] + sorted(gene_set.genes)
            f.write('\t'.join(fields) + '\n')
