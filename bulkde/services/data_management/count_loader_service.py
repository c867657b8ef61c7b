"""
Count matrix and sample metadata loading.

Reads a genes x samples count matrix and a sample metadata table from
disk, validates the counts, aligns metadata rows to count columns and
builds the samples x genes AnnData container used downstream.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd

from bulkde.core import DataLoadError, SampleAlignmentError, UnsupportedFormatError
from bulkde.core.analysis_ir import AnalysisStep, create_count_loading_ir
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_SUFFIXES = {
    ".csv": "csv",
    ".tsv": "tsv",
    ".txt": "tsv",
    ".pkl": "pickle",
    ".pickle": "pickle",
    ".parquet": "parquet",
    ".h5ad": "h5ad",
}


class CountLoaderService:
    """
    Stateless loader for count matrices and sample metadata.

    All methods return new objects and never modify their inputs.
    """

    def detect_format(self, path: Union[str, Path]) -> str:
        """
        Map a file suffix to a reader name.

        Raises:
            UnsupportedFormatError: If the suffix is not supported
        """
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix == ".gz":
            suffix = Path(path.stem).suffix.lower()

        if suffix not in SUPPORTED_SUFFIXES:
            raise UnsupportedFormatError(
                f"Unsupported file format '{suffix}' for {path}",
                {
                    "path": str(path),
                    "suffix": suffix,
                    "suggestions": sorted(SUPPORTED_SUFFIXES),
                },
            )
        return SUPPORTED_SUFFIXES[suffix]

    def read_table(
        self, path: Union[str, Path], index_col: Optional[Union[int, str]] = 0
    ) -> pd.DataFrame:
        """Read a serialized table, choosing the reader from the file suffix."""
        path = Path(path)
        if not path.exists():
            raise DataLoadError(f"File not found: {path}", {"path": str(path)})

        format_type = self.detect_format(path)

        try:
            if format_type == "pickle":
                table = pd.read_pickle(path)
            elif format_type == "parquet":
                table = pd.read_parquet(path)
            elif format_type == "h5ad":
                adata = anndata.read_h5ad(path)
                table = adata.to_df().T
            else:
                sep = "\t" if format_type == "tsv" else ","
                table = pd.read_csv(path, sep=sep, index_col=index_col)
        except (OSError, ValueError) as e:
            raise DataLoadError(
                f"Failed to read {format_type} file {path}: {e}", {"path": str(path)}
            ) from e

        if not isinstance(table, pd.DataFrame):
            raise DataLoadError(
                f"{path} does not contain a table (got {type(table).__name__})",
                {"path": str(path)},
            )

        logger.info(f"Loaded {format_type} table from {path}: shape {table.shape}")
        return table

    def load_counts(self, path: Union[str, Path]) -> pd.DataFrame:
        """Load and validate a genes x samples count matrix."""
        counts = self.read_table(path)
        counts.index = counts.index.astype(str)
        counts.columns = counts.columns.astype(str)
        return self.validate_counts(counts)

    def load_metadata(
        self, path: Union[str, Path], sample_column: Optional[str] = None
    ) -> pd.DataFrame:
        """
        Load a sample metadata table indexed by sample id.

        Args:
            path: Metadata file
            sample_column: Column holding sample ids (default: first column / index)
        """
        if sample_column is None:
            metadata = self.read_table(path)
        else:
            metadata = self.read_table(path, index_col=None)
            if sample_column not in metadata.columns:
                raise DataLoadError(
                    f"Sample column '{sample_column}' not found in metadata",
                    {"available_columns": list(metadata.columns)},
                )
            metadata = metadata.set_index(sample_column)

        metadata.index = metadata.index.astype(str)
        if metadata.index.duplicated().any():
            duplicated = metadata.index[metadata.index.duplicated()].unique().tolist()
            raise DataLoadError(
                f"Duplicated sample ids in metadata: {duplicated[:5]}",
                {"duplicated": duplicated},
            )
        return metadata

    def validate_counts(self, counts: pd.DataFrame) -> pd.DataFrame:
        """
        Check that a count matrix holds non-negative integers with unique gene ids.

        Float columns carrying whole numbers are cast to int64.

        Raises:
            DataLoadError: For empty, non-numeric, negative or fractional counts
        """
        if counts is None or counts.empty:
            raise DataLoadError("Count matrix is empty")

        non_numeric = [
            col for col in counts.columns if not pd.api.types.is_numeric_dtype(counts[col])
        ]
        if non_numeric:
            raise DataLoadError(
                f"Count matrix contains non-numeric columns: {non_numeric[:5]}",
                {"columns": non_numeric},
            )

        values = counts.to_numpy(dtype=float)
        if np.isnan(values).any():
            raise DataLoadError("Count matrix contains missing values")
        if (values < 0).any():
            raise DataLoadError("Count matrix contains negative values")
        if not np.all(np.equal(np.mod(values, 1), 0)):
            raise DataLoadError(
                "Count matrix contains non-integer values; raw counts are required"
            )

        if counts.index.duplicated().any():
            duplicated = counts.index[counts.index.duplicated()].unique().tolist()
            raise DataLoadError(
                f"Duplicated gene ids in count matrix: {duplicated[:5]}",
                {"duplicated": duplicated},
            )

        return counts.astype("int64")

    def align_metadata(
        self, counts: pd.DataFrame, metadata: pd.DataFrame
    ) -> pd.DataFrame:
        """
        Reorder metadata rows to match the count-matrix columns.

        Raises:
            SampleAlignmentError: If any count-matrix sample is missing from metadata
        """
        samples = counts.columns.astype(str)
        metadata = metadata.copy()
        metadata.index = metadata.index.astype(str)

        missing = [s for s in samples if s not in metadata.index]
        if missing:
            raise SampleAlignmentError(
                f"Samples in count matrix missing from metadata: {missing}",
                {"missing_in_metadata": missing},
            )

        extra = [s for s in metadata.index if s not in set(samples)]
        if extra:
            logger.warning(
                f"Dropping {len(extra)} metadata rows without counts: {extra[:5]}"
            )

        return metadata.loc[samples]

    @staticmethod
    def resolve_min_samples(
        min_samples: Optional[int],
        metadata: Optional[pd.DataFrame] = None,
        group_column: Optional[str] = None,
    ) -> int:
        if min_samples is not None:
            return int(min_samples)
        if metadata is not None and group_column is not None and group_column in metadata.columns:
            return int(metadata[group_column].value_counts().min())
        return 1

    def filter_low_counts(
        self,
        counts: pd.DataFrame,
        min_count: int = 10,
        min_samples: Optional[int] = None,
        metadata: Optional[pd.DataFrame] = None,
        group_column: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Keep genes with at least ``min_count`` reads in ``min_samples`` samples.

        When ``min_samples`` is None it defaults to the smallest group size of
        ``group_column`` (or 1 without a group column).
        """
        min_samples = self.resolve_min_samples(min_samples, metadata, group_column)

        keep = (counts >= min_count).sum(axis=1) >= min_samples
        filtered = counts.loc[keep]
        logger.info(
            f"Low-count filter (>= {min_count} reads in >= {min_samples} samples): "
            f"kept {int(keep.sum())}/{len(counts)} genes"
        )

        if filtered.empty:
            raise DataLoadError(
                "No genes pass the low-count filter",
                {"min_count": min_count, "min_samples": min_samples},
            )
        return filtered

    def to_anndata(self, counts: pd.DataFrame, metadata: pd.DataFrame) -> anndata.AnnData:
        """Build a samples x genes AnnData with raw counts in X and layers['counts']."""
        metadata = self.align_metadata(counts, metadata)
        adata = anndata.AnnData(
            X=counts.T.to_numpy(dtype=np.float64),
            obs=metadata.copy(),
            var=pd.DataFrame(index=counts.index.astype(str)),
        )
        adata.layers["counts"] = adata.X.copy()
        return adata

    def load_dataset(
        self,
        counts_path: Union[str, Path],
        metadata_path: Union[str, Path],
        sample_column: Optional[str] = None,
        min_count: int = 10,
        min_samples: Optional[int] = None,
        group_column: Optional[str] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Load, validate, align and pre-filter a dataset.

        Args:
            counts_path: Genes x samples count matrix
            metadata_path: Sample metadata table
            sample_column: Metadata column holding sample ids
            min_count: Low-count filter threshold
            min_samples: Samples required to pass min_count
            group_column: Covariate whose smallest group defines min_samples

        Returns:
            Tuple of (AnnData samples x genes, load statistics, IR)
        """
        counts = self.load_counts(counts_path)
        metadata = self.load_metadata(metadata_path, sample_column=sample_column)
        metadata = self.align_metadata(counts, metadata)

        n_genes_raw = counts.shape[0]
        all_zero = int((counts.sum(axis=1) == 0).sum())
        min_samples = self.resolve_min_samples(min_samples, metadata, group_column)
        counts = self.filter_low_counts(
            counts, min_count=min_count, min_samples=min_samples
        )

        adata = self.to_anndata(counts, metadata)

        stats = {
            "n_samples": adata.n_obs,
            "n_genes_raw": n_genes_raw,
            "n_genes_all_zero": all_zero,
            "n_genes_filtered": adata.n_vars,
            "library_sizes": {
                sample: int(total)
                for sample, total in counts.sum(axis=0).items()
            },
        }

        stats["min_count"] = min_count
        stats["min_samples"] = min_samples

        ir = create_count_loading_ir(
            str(counts_path), str(metadata_path), min_count, min_samples
        )
        return adata, stats, ir
