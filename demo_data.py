"""
Demo dataset generator for the transplant RNA-seq report.

Generates a synthetic pre-transplant and post-transplant cohort in the same
shape the GEO series ship in (Ensembl-indexed count matrix plus a sample table
with "key: value" characteristic columns), an offline symbol lookup for the
identifier mapper and a small hallmark-style gene-set library.
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging
import pandas as pd
import numpy as np
import yaml

logger = logging.getLogger(__name__)

# Kidney allograft biology: interferon-driven inflammation up after
# transplantation, tubular transport and oxidative metabolism down.
UPREGULATED_GENES = [
    "CXCL9", "CXCL10", "CXCL11", "GBP1", "GBP5", "IDO1", "STAT1", "IRF1",
    "GZMB", "GZMA", "PRF1", "CD8A", "HLA-DRA", "HLA-DRB1", "LCN2", "HAVCR1",
]
DOWNREGULATED_GENES = [
    "UMOD", "SLC34A1", "SLC12A1", "SLC22A8", "KCNJ1", "CUBN", "LRP2", "NPHS2",
    "ATP5F1A", "NDUFA4", "COX7A1", "SDHB",
]
STABLE_GENES = [
    "GAPDH", "ACTB", "B2M", "PPIA", "RPLP0", "HPRT1", "TBP", "YWHAZ",
    "VEGFA", "HIF1A", "PGK1", "LDHA", "ENO1", "ALDOA", "SLC2A1", "PFKP",
    "TGFB1", "COL1A1", "FN1", "SPARC",
]
N_BACKGROUND_GENES = 150

DEMO_GENE_SETS = {
    "HALLMARK_INTERFERON_GAMMA_RESPONSE": [
        "CXCL9", "CXCL10", "CXCL11", "GBP1", "GBP5", "IDO1", "STAT1", "IRF1",
        "HLA-DRA", "B2M", "GENE_001", "GENE_002", "GENE_003",
    ],
    "HALLMARK_ALLOGRAFT_REJECTION": [
        "GZMB", "GZMA", "PRF1", "CD8A", "HLA-DRA", "HLA-DRB1", "CXCL9", "STAT1",
        "GENE_004", "GENE_005", "GENE_006",
    ],
    "HALLMARK_OXIDATIVE_PHOSPHORYLATION": [
        "ATP5F1A", "NDUFA4", "COX7A1", "SDHB", "LDHA", "GENE_010", "GENE_011",
        "GENE_012", "GENE_013",
    ],
    "HALLMARK_HYPOXIA": [
        "VEGFA", "HIF1A", "PGK1", "LDHA", "ENO1", "ALDOA", "SLC2A1", "PFKP",
        "GENE_020", "GENE_021",
    ],
    "HALLMARK_EPITHELIAL_MESENCHYMAL_TRANSITION": [
        "TGFB1", "COL1A1", "FN1", "SPARC", "GENE_030", "GENE_031", "GENE_032",
    ],
    "HALLMARK_TOO_SMALL": ["CXCL9", "GZMB"],
}

PRE_CONDITIONS = ["immediate graft function"] * 3 + ["delayed graft function"] * 3
POST_CONDITIONS = ["no rejection"] * 3 + ["rejection"] * 3

# Identifier quirks exercised by the mapper: one id the lookup does not
# know, one id returning two symbols, one id sharing its symbol with another.
UNMAPPED_ID = "ENSG00000999901"
MULTI_SYMBOL_ID = "ENSG00000999902"
DUPLICATE_SYMBOL_ID = "ENSG00000999903"


def demo_gene_symbols() -> List[str]:
    """All symbols carried by the demo count matrix, in table order."""
    background = [f"GENE_{i:03d}" for i in range(1, N_BACKGROUND_GENES + 1)]
    return UPREGULATED_GENES + DOWNREGULATED_GENES + STABLE_GENES + background


def demo_symbol_table() -> Dict[str, List[str]]:
    """
    Ensembl id (versionless) → symbols, as an annotation service would return.

    Includes the unmapped, multi-symbol and duplicate-symbol identifiers.
    """
    table = {
        f"ENSG{i:011d}": [symbol] for i, symbol in enumerate(demo_gene_symbols(), start=1)
    }
    table[UNMAPPED_ID] = []
    table[MULTI_SYMBOL_ID] = ["MT-DEMO1", "MT-DEMO1B"]
    table[DUPLICATE_SYMBOL_ID] = ["GAPDH"]
    return table


class DemoLookup:
    """Offline stand-in for MyGeneLookup that serves demo_symbol_table()."""

    def __init__(self, table: Optional[Dict[str, List[str]]] = None):
        self.table = table if table is not None else demo_symbol_table()
        self.queried: List[str] = []

    def query_batches(self, identifiers: List[str]):
        self.queried.extend(identifiers)
        yield {i: list(self.table.get(i, [])) for i in identifiers}


def _simulate_counts(
    rng: np.random.RandomState,
    gene_ids: List[str],
    symbols: List[str],
    samples: List[str],
    fold_changes: Dict[str, float],
    base_means: np.ndarray,
    dispersion: float = 0.1,
) -> pd.DataFrame:
    """Negative-binomial counts, genes × samples, with per-sample depth variation."""
    depth = rng.uniform(0.7, 1.3, size=len(samples))
    counts = np.zeros((len(gene_ids), len(samples)), dtype=np.int64)
    size = 1.0 / dispersion
    for g, symbol in enumerate(symbols):
        mu = base_means[g] * fold_changes.get(symbol, 1.0) * depth
        counts[g] = rng.negative_binomial(size, size / (size + mu))
    return pd.DataFrame(counts, index=gene_ids, columns=samples)


def _sample_table(
    samples: List[str], conditions: List[str], field: str, first_gsm: int
) -> pd.DataFrame:
    """GEO series-matrix style sample table with characteristics_ch1 columns."""
    return pd.DataFrame({
        "title": samples,
        "geo_accession": [f"GSM{first_gsm + i}" for i in range(len(samples))],
        "source_name_ch1": ["kidney allograft biopsy"] * len(samples),
        "characteristics_ch1": ["tissue: kidney"] * len(samples),
        "characteristics_ch1.1": [f"{field}: {c}" for c in conditions],
    })


def load_demo_cohorts(
    seed: int = 42,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Generate the two demo cohorts.

    Returns:
        Tuple of (pre_counts, pre_samples, post_counts, post_samples):
        - *_counts: genes × samples, index = versioned Ensembl ids, integer counts
        - *_samples: GEO-style sample tables (title, geo_accession, characteristics_ch1[.1])

    Dataset characteristics:
    - 6 pre samples (3 immediate, 3 delayed graft function)
    - 6 post samples (3 no rejection, 3 rejection)
    - ~200 genes plus three identifier-mapping edge cases
    - Interferon/cytotoxic genes 4x up and tubular/OXPHOS genes 4x down post-transplant
    """
    rng = np.random.RandomState(seed)

    symbols = demo_gene_symbols()
    gene_ids = [f"ENSG{i:011d}.{1 + i % 7}" for i in range(1, len(symbols) + 1)]
    gene_ids += [f"{UNMAPPED_ID}.1", f"{MULTI_SYMBOL_ID}.2", f"{DUPLICATE_SYMBOL_ID}.1"]
    symbols = symbols + ["<unmapped>", "MT-DEMO1", "GAPDH"]

    base_means = rng.lognormal(mean=5, sigma=1.2, size=len(symbols))
    post_changes = {g: 4.0 for g in UPREGULATED_GENES}
    post_changes.update({g: 0.25 for g in DOWNREGULATED_GENES})

    pre_samples = [f"PRE_{i:02d}" for i in range(1, 7)]
    post_samples = [f"POST_{i:02d}" for i in range(1, 7)]

    pre_counts = _simulate_counts(rng, gene_ids, symbols, pre_samples, {}, base_means)
    post_counts = _simulate_counts(rng, gene_ids, symbols, post_samples, post_changes, base_means)

    pre_table = _sample_table(pre_samples, PRE_CONDITIONS, "graft function", 4000001)
    post_table = _sample_table(post_samples, POST_CONDITIONS, "rejection status", 5000001)
    return pre_counts, pre_table, post_counts, post_table


def write_gmt(gene_sets: Dict[str, List[str]], path: Path) -> Path:
    with open(path, "w") as f:
        for name, genes in gene_sets.items():
            f.write("\t".join([name, "demo"] + list(genes)) + "\n")
    return path


def write_demo_dataset(output_dir: str, seed: int = 42) -> Dict[str, Path]:
    """
    Write the demo cohorts and a ready-to-run config to output_dir.

    Files: pre_counts.csv.gz, pre_samples.tsv, post_counts.csv.gz,
    post_samples.tsv, demo_gene_sets.gmt, analysis.yaml

    Returns:
        Dict mapping file role → path
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    pre_counts, pre_table, post_counts, post_table = load_demo_cohorts(seed)

    paths = {
        "pre_counts": out / "pre_counts.csv.gz",
        "pre_samples": out / "pre_samples.tsv",
        "post_counts": out / "post_counts.csv.gz",
        "post_samples": out / "post_samples.tsv",
        "gene_sets": out / "demo_gene_sets.gmt",
        "config": out / "analysis.yaml",
    }
    pre_counts.to_csv(paths["pre_counts"], compression="gzip")
    post_counts.to_csv(paths["post_counts"], compression="gzip")
    pre_table.to_csv(paths["pre_samples"], sep="\t", index=False)
    post_table.to_csv(paths["post_samples"], sep="\t", index=False)
    write_gmt(DEMO_GENE_SETS, paths["gene_sets"])

    config = {
        "cohorts": {
            "pre": {
                "counts_path": paths["pre_counts"].name,
                "metadata_path": paths["pre_samples"].name,
                "label": "Pre",
                "condition_field": "graft function",
            },
            "post": {
                "counts_path": paths["post_counts"].name,
                "metadata_path": paths["post_samples"].name,
                "label": "Post",
                "condition_field": "rejection status",
            },
        },
        "enrichment": {"gmt_path": str(paths["gene_sets"]), "permutations": 100},
        "cache_dir": str(out / ".cache"),
        "output_dir": str(out / "output"),
    }
    with open(paths["config"], "w") as f:
        yaml.safe_dump(config, f, sort_keys=False)

    logger.info(f"Wrote demo dataset to {out}")
    return paths


def get_demo_description() -> str:
    """
    Get markdown description of the demo dataset.

    Returns:
        Markdown string describing dataset characteristics, design, and DE patterns
    """
    description = f"""# Kidney Transplant Demo Dataset

## Experimental Design
- **Pre-transplant cohort**: 6 biopsies (3 immediate, 3 delayed graft function)
- **Post-transplant cohort**: 6 biopsies (3 no rejection, 3 rejection)
- **Genes**: {len(demo_gene_symbols())} symbols plus 3 identifier-mapping edge cases
- **Contrast**: Post_transplant vs Pre_transplant

## Differential Expression Patterns
- **Upregulated (4x)**: {", ".join(UPREGULATED_GENES)}
- **Downregulated (0.25x)**: {", ".join(DOWNREGULATED_GENES)}
- **Stable**: housekeeping, hypoxia and matrix genes plus background genes

## Identifier Mapping Edge Cases
- `{UNMAPPED_ID}`: no symbol, dropped and reported
- `{MULTI_SYMBOL_ID}`: two symbols, the first returned one is kept
- `{DUPLICATE_SYMBOL_ID}`: shares GAPDH with another id, resolved by the duplicate policy

## Usage
```python
from demo_data import write_demo_dataset, DemoLookup
from analysis_config import load_config
from gene_mapper import GeneMapper
from transplant_pipeline import run_pipeline

paths = write_demo_dataset("demo")
config = load_config(paths["config"])
result = run_pipeline(config, gene_mapper=GeneMapper(lookup=DemoLookup(), cache_dir=None))
```

## Notes
- Negative-binomial counts (dispersion 0.1) with per-sample depth variation
- Reproducible for a fixed seed
- Synthetic data for demonstration and testing only
"""
    return description
