"""
Differential expression result tables.

A result table is a DataFrame indexed by gene id carrying the Wald-test
columns of pydeseq2. Helpers here never modify their input. They return
new frames.
"""

from pathlib import Path
from typing import Union

import numpy as np
import pandas as pd

from bulkde.core import ValidationError
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]
INDEX_LABEL = "gene_id"

DEFAULT_PADJ_THRESHOLD = 0.1
DEFAULT_LFC_THRESHOLD = 1.0


def _require_columns(results: pd.DataFrame, columns) -> None:
    missing = [c for c in columns if c not in results.columns]
    if missing:
        raise ValidationError(
            f"Result table is missing columns: {missing}",
            {"available": list(results.columns)},
        )


def significance_mask(
    results: pd.DataFrame,
    padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
    lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
) -> pd.Series:
    """Boolean mask of ``padj < padj_threshold`` and ``|log2FoldChange| > lfc_threshold``. NaN never passes."""
    _require_columns(results, ["padj", "log2FoldChange"])
    padj = results["padj"]
    lfc = results["log2FoldChange"]
    return (padj < padj_threshold) & (lfc.abs() > lfc_threshold) & padj.notna()


def filter_significant(
    results: pd.DataFrame,
    padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
    lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
) -> pd.DataFrame:
    """
    Select significant genes, sorted by adjusted p-value.

    Applying the filter to its own output returns the same rows.
    """
    mask = significance_mask(results, padj_threshold, lfc_threshold)
    significant = results.loc[mask].copy()
    significant = significant.sort_values("padj", kind="mergesort")
    significant.attrs = dict(results.attrs)
    return significant


def label_regulation(
    results: pd.DataFrame,
    padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
    lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
) -> pd.DataFrame:
    """Return a copy with ``significant`` and ``regulation`` (up/down/unchanged) columns."""
    labelled = results.copy()
    mask = significance_mask(results, padj_threshold, lfc_threshold)

    labelled["significant"] = mask
    labelled["regulation"] = np.where(
        mask & (results["log2FoldChange"] > 0),
        "up",
        np.where(mask & (results["log2FoldChange"] < 0), "down", "unchanged"),
    )
    return labelled


def check_padj_consistency(results: pd.DataFrame, tolerance: float = 1e-12) -> None:
    """
    Verify ``padj >= pvalue`` wherever both are defined.

    Raises:
        ValidationError: If any row violates the bound
    """
    _require_columns(results, ["pvalue", "padj"])
    both = results[["pvalue", "padj"]].dropna()
    violations = both.index[both["padj"] + tolerance < both["pvalue"]]
    if len(violations) > 0:
        raise ValidationError(
            f"{len(violations)} genes have padj < pvalue",
            {"genes": list(violations[:10])},
        )


def summarize(results: pd.DataFrame) -> dict:
    """Counts used in run statistics and the report."""
    summary = {
        "n_genes_tested": int(results["pvalue"].notna().sum()),
        "n_genes_total": int(len(results)),
    }
    if "regulation" in results.columns:
        summary["n_significant"] = int(results["significant"].sum())
        summary["n_upregulated"] = int((results["regulation"] == "up").sum())
        summary["n_downregulated"] = int((results["regulation"] == "down").sum())
    return summary


def write_deg_table(results: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Write a result table as comma-separated text with full float precision."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    results.to_csv(path, index_label=INDEX_LABEL, float_format="%.17g")
    logger.info(f"Wrote {len(results)} rows to {path}")
    return path


def read_deg_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a table written by ``write_deg_table``. Gene ids stay strings."""
    table = pd.read_csv(
        path, index_col=INDEX_LABEL, dtype={INDEX_LABEL: str}, float_precision="round_trip"
    )
    table.index = table.index.astype(str)
    return table
