"""Four-way labelling of genes from their fold change and adjusted p-value."""

from enum import Enum
import numpy as np
import pandas as pd

# Fitted fold changes of an exact doubling land within ~1e-7 of 1.0
LFC_TOLERANCE = 1e-6


class GeneClass(Enum):
    """Differential expression category of one gene."""

    NOT_SIGNIFICANT = "not_significant"
    SMALL_FOLD_CHANGE = "small_fold_change"
    DOWNREGULATED = "downregulated"
    UPREGULATED = "upregulated"


def _is_missing(value) -> bool:
    return value is None or bool(pd.isna(value))


def _reaches(value: float, threshold: float) -> bool:
    return value >= threshold or bool(np.isclose(value, threshold, rtol=0.0, atol=LFC_TOLERANCE))


def classify_gene(
    log2_fold_change: float,
    padj: float,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
) -> GeneClass:
    """
    Classify one gene.

    - padj undefined or >= padj_threshold: NOT_SIGNIFICANT
    - significant, |log2FC| < lfc_threshold: SMALL_FOLD_CHANGE
    - significant, log2FC <= -lfc_threshold: DOWNREGULATED
    - significant, log2FC >= lfc_threshold: UPREGULATED

    Fold changes within LFC_TOLERANCE of the threshold count as reaching it.
    """
    if _is_missing(padj) or padj >= padj_threshold:
        return GeneClass.NOT_SIGNIFICANT
    if _is_missing(log2_fold_change):
        return GeneClass.NOT_SIGNIFICANT
    if _reaches(log2_fold_change, lfc_threshold):
        return GeneClass.UPREGULATED
    if _reaches(-log2_fold_change, lfc_threshold):
        return GeneClass.DOWNREGULATED
    return GeneClass.SMALL_FOLD_CHANGE


def classify_results(
    results_df: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
) -> pd.DataFrame:
    """
    Return a copy of DE results with a "classification" column added.

    Args:
        results_df: DataFrame with log2FoldChange and padj columns
        padj_threshold: Adjusted p-value cut-off (default: 0.05)
        lfc_threshold: Absolute log2 fold change cut-off (default: 1.0)
    """
    missing = [c for c in ("log2FoldChange", "padj") if c not in results_df.columns]
    if missing:
        raise ValueError(f"Cannot classify genes: missing columns {missing}")

    df = results_df.copy()
    df["classification"] = [
        classify_gene(lfc, padj, padj_threshold, lfc_threshold).value
        for lfc, padj in zip(df["log2FoldChange"], df["padj"])
    ]
    return df


def count_classes(results_df: pd.DataFrame) -> dict:
    """Number of genes per class, every class present (zero if absent)."""
    counts = results_df["classification"].value_counts()
    return {cls.value: int(counts.get(cls.value, 0)) for cls in GeneClass}
