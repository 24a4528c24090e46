"""
Statistical kernels for the gene set enrichment pipeline.
"""

from typing import Dict

import numba as nb
import numpy as np
from statsmodels.stats.multitest import multipletests


#  Core numba-optimised functions for the running-sum statistic

@nb.njit
def _enrichment_extrema(positions, raw_weights, n_genes: int):
    """
    Walk the running sum over the hit positions only.

    Between two hits the running sum only decreases, so the maximum is
    reached right after a hit and the minimum right before one. The value
    at any rank is ``hits_so_far - misses_so_far * miss_step``, the same
    expression used by ``_running_sum_curve``.

    Args:
        positions: Sorted 0-based ranks of the gene set members
        raw_weights: Unnormalised weight of each member, aligned with positions
        n_genes: Length of the ranked list

    Returns:
        Tuple of (enrichment score, rank index of the defining extremum)
    """
    n_hits = len(positions)
    total = 0.0
    for j in range(n_hits):
        total += raw_weights[j]

    n_misses = n_genes - n_hits
    miss_step = 1.0 / n_misses if n_misses > 0 else 0.0

    cum = 0.0
    max_val = 0.0
    max_idx = -1
    min_val = 0.0
    min_idx = -1
    for j in range(n_hits):
        misses = positions[j] - j
        before = cum - misses * miss_step
        if before < min_val:
            min_val = before
            min_idx = positions[j] - 1
        if total > 0.0:
            cum += raw_weights[j] / total
        else:
            cum += 1.0 / n_hits
        after = cum - misses * miss_step
        if after > max_val:
            max_val = after
            max_idx = positions[j]

    if max_val >= -min_val:
        return max_val, max_idx
    return min_val, min_idx


@nb.njit
def _running_sum_curve(hit_mask, gene_weights):
    """
    Full running-sum curve over the ranked list.

    Args:
        hit_mask: Boolean array, True where the gene belongs to the set
        gene_weights: Unnormalised weight of every gene in the list

    Returns:
        Array with the running-sum value after each rank
    """
    n_genes = len(hit_mask)
    n_hits = 0
    total = 0.0
    for i in range(n_genes):
        if hit_mask[i]:
            n_hits += 1
            total += gene_weights[i]

    curve = np.zeros(n_genes)
    if n_hits == 0:
        return curve

    n_misses = n_genes - n_hits
    miss_step = 1.0 / n_misses if n_misses > 0 else 0.0

    cum = 0.0
    misses = 0
    for i in range(n_genes):
        if hit_mask[i]:
            if total > 0.0:
                cum += gene_weights[i] / total
            else:
                cum += 1.0 / n_hits
        else:
            misses += 1
        curve[i] = cum - misses * miss_step
    return curve


@nb.njit(parallel=True)
def _null_enrichment_scores(gene_weights, n_hits: int, uniforms):
    """
    Score random gene sets of a fixed size against the ranked list.

    Each trial picks ``n_hits`` distinct ranks with Floyd's algorithm,
    driven by one row of pre-drawn uniforms so that the result does not
    depend on how trials are spread across threads.

    Args:
        gene_weights: Unnormalised weight of every gene in the list
        n_hits: Number of ranks to draw per trial
        uniforms: Array of shape (n_trials, n_hits) with values in [0, 1)

    Returns:
        Array of null enrichment scores, one per trial
    """
    n_genes = len(gene_weights)
    n_trials = uniforms.shape[0]
    scores = np.zeros(n_trials)

    for t in nb.prange(n_trials):
        taken = np.zeros(n_genes, dtype=np.bool_)
        positions = np.empty(n_hits, dtype=np.int64)
        for j in range(n_hits):
            upper = n_genes - n_hits + j
            r = int(uniforms[t, j] * (upper + 1))
            if r > upper:
                r = upper
            if taken[r]:
                r = upper
            taken[r] = True
            positions[j] = r
        positions.sort()
        raw = gene_weights[positions]
        score, _ = _enrichment_extrema(positions, raw, n_genes)
        scores[t] = score

    return scores


@nb.njit
def _count_exceedances(observed_score: float, null_scores) -> int:
    """
    Count null scores at least as extreme as the observed one, same sign.

    Args:
        observed_score: Observed enrichment score
        null_scores: Array of null enrichment scores

    Returns:
        Number of exceedances
    """
    count = 0
    if observed_score >= 0:
        for i in range(len(null_scores)):
            if null_scores[i] >= observed_score:
                count += 1
    else:
        for i in range(len(null_scores)):
            if null_scores[i] <= observed_score:
                count += 1
    return count


@nb.njit
def _same_sign_magnitude(observed_score: float, null_scores):
    """Sum and count of null score magnitudes sharing the observed sign."""
    total = 0.0
    count = 0
    for i in range(len(null_scores)):
        if observed_score >= 0:
            if null_scores[i] >= 0:
                total += null_scores[i]
                count += 1
        else:
            if null_scores[i] < 0:
                total -= null_scores[i]
                count += 1
    return total, count


def empirical_p_value(exceedances: int, n_trials: int) -> float:
    """
    Empirical p-value with a floor of one exceedance.

    Args:
        exceedances: Number of null scores as extreme as the observed one
        n_trials: Number of permutation trials run

    Returns:
        p-value in [1 / n_trials, 1]
    """
    if n_trials <= 0:
        raise ValueError("Number of trials must be positive")
    return min(1.0, max(exceedances, 1) / n_trials)


def perform_fdr_analysis(p_values, alpha: float = 0.05) -> Dict[str, list]:
    """
    Perform Benjamini-Hochberg FDR analysis on p-values.

    Args:
        p_values: Array of p-values
        alpha: Significance level

    Returns:
        Dictionary with FDR results
    """
    if len(p_values) == 0:
        raise ValueError("Input p-values array cannot be empty")

    reject, pvals_corrected, _, _ = multipletests(
        p_values,
        alpha=alpha,
        method='fdr_bh'
    )

    return {
        'reject': reject.astype(bool).tolist(),
        'pvals_corrected': pvals_corrected.tolist()
    }
