"""
Input loading for the transplant RNA-seq report.

Reads the two inputs each GEO cohort ships with:
- a gzip-compressed CSV count matrix (gene id in the first column, one column per sample)
- a tab-separated sample table whose characteristic columns hold "key: value" free text

Canonical count shape here is genes × samples (gene ids as index, sample ids as
columns). The DE engine transposes to samples × genes right before fitting.
"""

from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging
import re
import pandas as pd
import numpy as np

logger = logging.getLogger(__name__)


# GEO series tables carry sample characteristics either as raw
# "characteristics_ch1[.N]" columns ("graft function: immediate") or as
# pre-split "<key>:ch1" columns (GEOquery pData style).
CHARACTERISTICS_COLUMN_PATTERN = r"^characteristics(_ch\d+)?(\.\d+)?$"
SPLIT_CHARACTERISTIC_PATTERN = r"^(.+):ch\d+$"
KEY_VALUE_PATTERN = r"^\s*([^:]+?)\s*:\s*(.*?)\s*$"

KNOWN_ACCESSION_HEADERS = ["geo_accession", "GEO_accession", "accession", "gsm"]


class MissingFileError(FileNotFoundError):
    """Raised when an input file path does not resolve."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message: str = message
        self.details: dict[str, Any] = details or {}
        super().__init__(self.message)


class SchemaMismatchError(ValueError):
    """Raised when counts and metadata disagree, or a table drifts from its expected schema."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message: str = message
        self.details: dict[str, Any] = details or {}
        super().__init__(self.message)


@dataclass
class Cohort:
    """One loaded cohort: genes × samples counts plus aligned sample metadata."""

    counts: pd.DataFrame  # genes × samples, integer counts
    metadata: pd.DataFrame  # index = sample id, same order as counts.columns
    label: str  # "Pre" or "Post"
    warnings: List[str] = field(default_factory=list)


def _require_file(path: Union[str, PathLike]) -> Path:
    resolved = Path(path)
    if not resolved.is_file():
        raise MissingFileError(
            f"Input file not found: {path}",
            details={"path": str(path)},
        )
    return resolved


def normalize_field_name(name: str) -> str:
    """'Graft Function' -> 'graft_function'."""
    return re.sub(r"[^a-z0-9]+", "_", str(name).strip().lower()).strip("_")


def load_count_matrix(path: Union[str, PathLike]) -> pd.DataFrame:
    """
    Load a raw count matrix from a (gzip-compressed) CSV file.

    Args:
        path: CSV path; compression is inferred from the extension

    Returns:
        genes × samples DataFrame of int64 counts

    Raises:
        MissingFileError: If the file does not exist
        SchemaMismatchError: On duplicate keys, negative or non-integer counts
    """
    resolved = _require_file(path)
    df = pd.read_csv(resolved, index_col=0, compression="infer")
    df.index = df.index.astype(str)
    df.columns = [str(c) for c in df.columns]
    df.index.name = "gene_id"

    # Keep only numeric sample columns (drop Description, Length, etc.)
    numeric_cols = list(df.select_dtypes(include=[np.number]).columns)
    dropped = [c for c in df.columns if c not in numeric_cols]
    if dropped:
        logger.warning(f"{resolved.name}: dropped non-numeric columns {dropped}")
    df = df.loc[:, numeric_cols]

    if df.index.duplicated().any():
        dupes = df.index[df.index.duplicated()].unique().tolist()
        raise SchemaMismatchError(
            f"{resolved.name}: duplicate gene ids ({len(dupes)}), e.g. {dupes[:3]}",
            details={"duplicate_genes": dupes},
        )
    if pd.Index(df.columns).duplicated().any():
        raise SchemaMismatchError(f"{resolved.name}: duplicate sample columns")

    n_missing = int(df.isna().sum().sum())
    if n_missing > 0:
        logger.warning(f"{resolved.name}: {n_missing} missing counts set to 0")
        df = df.fillna(0)

    values = df.to_numpy(dtype=float)
    if (values < 0).any():
        raise SchemaMismatchError(f"{resolved.name}: negative counts found")
    if not np.allclose(values, np.round(values), atol=0.001):
        raise SchemaMismatchError(
            f"{resolved.name}: counts are not integer-like. "
            "Raw read counts are required for differential expression."
        )

    return df.round().astype(np.int64)


def extract_characteristics(df: pd.DataFrame) -> pd.DataFrame:
    """
    Split GEO characteristic columns into one named column per key.

    "characteristics_ch1" values like "graft function: Immediate" become a
    "graft_function" column holding "Immediate". Pre-split "<key>:ch1"
    columns are renamed to the normalized key.
    """
    extracted: Dict[str, pd.Series] = {}

    for col in df.columns:
        col_str = str(col)
        split_match = re.match(SPLIT_CHARACTERISTIC_PATTERN, col_str)
        if split_match:
            extracted[normalize_field_name(split_match.group(1))] = df[col].astype(str).str.strip()
            continue

        if not re.match(CHARACTERISTICS_COLUMN_PATTERN, col_str):
            continue

        for row_label, raw in df[col].items():
            if pd.isna(raw):
                continue
            match = re.match(KEY_VALUE_PATTERN, str(raw))
            if not match:
                continue
            key = normalize_field_name(match.group(1))
            extracted.setdefault(key, pd.Series(index=df.index, dtype=object))
            extracted[key].loc[row_label] = match.group(2)

    return pd.DataFrame(extracted, index=df.index)


def load_sample_metadata(
    path: Union[str, PathLike],
    required_fields: List[str],
    sample_id_column: str = "title",
) -> pd.DataFrame:
    """
    Load a GEO sample table and extract named characteristic fields.

    Args:
        path: Tab-separated file, one row per sample
        required_fields: Characteristic keys that must be present (normalized names)
        sample_id_column: Column whose values match the count matrix headers

    Returns:
        DataFrame indexed by sample id with "geo_accession" plus one column per
        extracted characteristic

    Raises:
        MissingFileError: If the file does not exist
        SchemaMismatchError: If the sample id column or a required field is missing
    """
    resolved = _require_file(path)
    raw = pd.read_csv(resolved, sep="\t", dtype=str)

    if sample_id_column not in raw.columns:
        raise SchemaMismatchError(
            f"{resolved.name}: sample id column '{sample_id_column}' not found. "
            f"Available columns: {', '.join(raw.columns[:8])}",
            details={"columns": list(raw.columns)},
        )

    accession_col = next((c for c in KNOWN_ACCESSION_HEADERS if c in raw.columns), None)

    characteristics = extract_characteristics(raw)
    missing = [f for f in required_fields if normalize_field_name(f) not in characteristics.columns]
    if missing:
        raise SchemaMismatchError(
            f"{resolved.name}: required characteristic fields missing: {missing}. "
            f"Found: {list(characteristics.columns)}",
            details={"missing_fields": missing, "found_fields": list(characteristics.columns)},
        )

    metadata = characteristics.copy()
    metadata.insert(
        0,
        "geo_accession",
        raw[accession_col].values if accession_col else raw[sample_id_column].values,
    )
    metadata.index = raw[sample_id_column].astype(str).str.strip()
    metadata.index.name = "sample_id"

    if metadata.index.duplicated().any():
        raise SchemaMismatchError(f"{resolved.name}: duplicate sample ids in '{sample_id_column}'")

    return metadata


def align_metadata(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Reorder metadata rows to follow the count matrix columns.

    Raises:
        SchemaMismatchError: If sample counts differ or the id sets are not identical
    """
    count_samples = [str(c) for c in counts.columns]
    meta_samples = [str(s) for s in metadata.index]

    if len(count_samples) != len(meta_samples):
        raise SchemaMismatchError(
            f"Metadata has {len(meta_samples)} samples but the count matrix has "
            f"{len(count_samples)} columns.",
            details={"n_metadata": len(meta_samples), "n_counts": len(count_samples)},
        )

    only_counts = sorted(set(count_samples) - set(meta_samples))
    only_meta = sorted(set(meta_samples) - set(count_samples))
    if only_counts or only_meta:
        raise SchemaMismatchError(
            f"Sample ids differ between counts and metadata. "
            f"Only in counts: {only_counts[:3]}; only in metadata: {only_meta[:3]}",
            details={"only_in_counts": only_counts, "only_in_metadata": only_meta},
        )

    return metadata.loc[count_samples]


def load_cohort(
    counts_path: Union[str, PathLike],
    metadata_path: Union[str, PathLike],
    label: str,
    condition_field: str = "condition",
    sample_id_column: str = "title",
) -> Cohort:
    """Load and cross-validate one cohort; any schema problem is fatal."""
    counts = load_count_matrix(counts_path)
    metadata = load_sample_metadata(
        metadata_path, required_fields=[condition_field], sample_id_column=sample_id_column
    )
    metadata = align_metadata(counts, metadata)

    field_name = normalize_field_name(condition_field)
    if field_name != "condition":
        metadata = metadata.drop(columns=["condition"], errors="ignore")
        metadata = metadata.rename(columns={field_name: "condition"})

    logger.info(
        f"Loaded {label} cohort: {counts.shape[0]} genes × {counts.shape[1]} samples"
    )
    return Cohort(counts=counts, metadata=metadata, label=label)
