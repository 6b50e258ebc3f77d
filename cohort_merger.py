"""Merging of the pre- and post-transplant cohorts into one count matrix and sample table."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List
import logging
import pandas as pd

from data_loader import Cohort, SchemaMismatchError

logger = logging.getLogger(__name__)

CONDITION_LEVELS = ["Immediate", "Delayed", "No_Rejection", "Rejection"]
TREATMENT_LEVELS = ["Pre_transplant", "Post_transplant"]

COHORT_TREATMENT = {
    "Pre": "Pre_transplant",
    "Post": "Post_transplant",
}


@dataclass
class MergedDataset:
    """Combined genes × samples counts and per-sample metadata."""

    counts: pd.DataFrame  # genes × (pre + post) samples
    metadata: pd.DataFrame  # index = prefixed sample id; geo_accession, condition, treatment
    warnings: List[str] = field(default_factory=list)

    @property
    def sample_conditions(self) -> Dict[str, str]:
        return self.metadata["condition"].astype(str).to_dict()

    @property
    def sample_treatments(self) -> Dict[str, str]:
        return self.metadata["treatment"].astype(str).to_dict()


def prefix_sample_ids(sample_ids: Iterable[str], label: str) -> List[str]:
    """Prefix sample ids with '<label>_' exactly once (idempotent)."""
    prefix = f"{label}_"
    return [s if str(s).startswith(prefix) else f"{prefix}{s}" for s in map(str, sample_ids)]


def recode_conditions(values: pd.Series, recode_map: Dict[str, str]) -> pd.Series:
    """
    Map free-text condition values onto the unified condition levels.

    Lookup is case-insensitive on the stripped value; values already equal to
    a level pass through unchanged.

    Raises:
        SchemaMismatchError: If any value has no mapping
    """
    lookup = {str(k).strip().lower(): v for k, v in recode_map.items()}
    lookup.update({level.lower(): level for level in CONDITION_LEVELS})

    recoded = values.astype(str).str.strip().str.lower().map(lookup)
    unknown = sorted(values[recoded.isna()].astype(str).unique())
    if unknown:
        raise SchemaMismatchError(
            f"Unrecognised condition values: {unknown}. "
            f"Add them to condition_recode (levels: {', '.join(CONDITION_LEVELS)}).",
            details={"unknown_conditions": unknown},
        )
    bad_levels = sorted(set(recoded) - set(CONDITION_LEVELS))
    if bad_levels:
        raise SchemaMismatchError(
            f"condition_recode maps onto unknown levels {bad_levels}",
            details={"unknown_levels": bad_levels},
        )
    return recoded


def validate_merge_compatibility(pre: Cohort, post: Cohort) -> Dict:
    """Validate that two cohorts can be merged.

    Returns dict with keys: compatible (bool), issues (list), report (dict with stats).
    """
    pre_genes = set(pre.counts.index)
    post_genes = set(post.counts.index)
    all_genes = pre_genes | post_genes
    shared = pre_genes & post_genes

    report = {
        "samples_per_cohort": {pre.label: pre.counts.shape[1], post.label: post.counts.shape[1]},
        "genes_per_cohort": {pre.label: len(pre_genes), post.label: len(post_genes)},
        "shared_genes": len(shared),
        "total_genes": len(all_genes),
        "gene_overlap_pct": round(len(shared) / len(all_genes) * 100, 1) if all_genes else 0.0,
        "same_gene_order": list(pre.counts.index) == list(post.counts.index),
    }
    issues = []

    if pre_genes != post_genes:
        issues.append(
            f"Gene sets differ: {len(pre_genes - post_genes)} genes only in {pre.label}, "
            f"{len(post_genes - pre_genes)} only in {post.label}."
        )

    overlap = set(prefix_sample_ids(pre.counts.columns, pre.label)) & set(
        prefix_sample_ids(post.counts.columns, post.label)
    )
    if overlap:
        issues.append(f"Sample ids collide after prefixing: {sorted(overlap)[:3]}")

    return {"compatible": len(issues) == 0, "issues": issues, "report": report}


def _prepare_metadata(cohort: Cohort, recode_map: Dict[str, str]) -> pd.DataFrame:
    meta = cohort.metadata.copy()
    meta.index = prefix_sample_ids(meta.index, cohort.label)
    meta.index.name = "sample_id"
    meta["condition"] = recode_conditions(meta["condition"], recode_map).values
    meta["treatment"] = COHORT_TREATMENT.get(cohort.label, f"{cohort.label}_transplant")
    return meta[["geo_accession", "condition", "treatment"]]


def merge_cohorts(pre: Cohort, post: Cohort, recode_map: Dict[str, str]) -> MergedDataset:
    """
    Column-bind the two count matrices and row-bind their sample tables.

    Args:
        pre: Pre-transplant cohort (symbol-indexed counts)
        post: Post-transplant cohort (symbol-indexed counts)
        recode_map: Free-text condition -> unified condition level

    Returns:
        MergedDataset with pre samples first, then post samples

    Raises:
        SchemaMismatchError: If gene sets differ or sample ids collide
    """
    validation = validate_merge_compatibility(pre, post)
    if not validation["compatible"]:
        raise SchemaMismatchError(
            "Cannot merge cohorts: " + " ".join(validation["issues"]),
            details=validation["report"],
        )

    warnings = []
    post_counts = post.counts
    if not validation["report"]["same_gene_order"]:
        post_counts = post_counts.reindex(pre.counts.index)
        warnings.append(f"Reordered {post.label} genes to match {pre.label} gene order.")

    pre_counts = pre.counts.copy()
    pre_counts.columns = prefix_sample_ids(pre_counts.columns, pre.label)
    post_counts = post_counts.copy()
    post_counts.columns = prefix_sample_ids(post_counts.columns, post.label)

    merged_counts = pd.concat([pre_counts, post_counts], axis=1)
    merged_counts.index.name = "gene"

    merged_meta = pd.concat(
        [_prepare_metadata(pre, recode_map), _prepare_metadata(post, recode_map)], axis=0
    )
    merged_meta["condition"] = pd.Categorical(merged_meta["condition"], categories=CONDITION_LEVELS)
    merged_meta["treatment"] = pd.Categorical(merged_meta["treatment"], categories=TREATMENT_LEVELS)

    logger.info(
        f"Merged count matrix: {merged_counts.shape[0]} genes × {merged_counts.shape[1]} samples "
        f"({pre_counts.shape[1]} {pre.label}, {post_counts.shape[1]} {post.label})"
    )
    return MergedDataset(counts=merged_counts, metadata=merged_meta, warnings=warnings)
