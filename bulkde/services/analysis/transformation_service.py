"""
Count transformations for visualization and clustering.

Variance-stabilized values and batch-corrected values produced here feed
plots only. Hypothesis tests always run on raw counts.
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from bulkde.core.analysis_ir import AnalysisStep, ParameterSpec
from bulkde.services.analysis.bulk_rnaseq_service import FittedModel
from bulkde.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)


class TransformationError(Exception):
    """Base exception for count transformations."""

    pass


class TransformationService:
    """Variance stabilization, batch removal, PCA and sample distances."""

    def __init__(self):
        self.formula_service = DifferentialFormulaService()

    def variance_stabilize(
        self, model: FittedModel, blind: bool = True
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Variance stabilizing transformation of the fitted counts.

        Args:
            model: Output of ``BulkRNASeqService.fit_model``
            blind: Ignore the design when fitting the dispersion trend

        Returns:
            Tuple of (genes x samples VST values, statistics, IR)
        """
        try:
            model.dds.vst(use_design=not blind)
            values = pd.DataFrame(
                np.asarray(model.dds.layers["vst_counts"]),
                index=model.dds.obs_names.astype(str),
                columns=model.dds.var_names.astype(str),
            ).T
        except Exception as e:
            logger.exception(f"Error in variance stabilizing transformation: {e}")
            raise TransformationError(f"Variance stabilization failed: {e}") from e

        stats = {
            "blind": blind,
            "n_genes": int(values.shape[0]),
            "n_samples": int(values.shape[1]),
            "value_range": [float(np.nanmin(values.values)), float(np.nanmax(values.values))],
        }
        return values, stats, self._create_vst_ir(blind)

    def normalized_counts(self, model: FittedModel) -> pd.DataFrame:
        """Size-factor normalized counts, genes x samples."""
        return model.normalized_counts()

    def remove_batch_effect(
        self,
        values: pd.DataFrame,
        metadata: pd.DataFrame,
        batch: str,
        design: Optional[str] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Subtract a batch effect from log-scale values (limma removeBatchEffect).

        A linear model of sum-to-zero coded batch plus the preserved design is
        fitted to every gene by least squares, and only the batch component is
        removed. Genes keep their overall mean.

        Args:
            values: Genes x samples log-scale values (e.g. VST)
            metadata: Sample metadata indexed like ``values.columns``
            batch: Batch column in metadata
            design: Formula of effects to preserve (e.g. "~condition")

        Returns:
            Tuple of (corrected values, statistics, IR)
        """
        if batch not in metadata.columns:
            raise TransformationError(
                f"Batch column '{batch}' not found in metadata. "
                f"Available columns: {list(metadata.columns)}"
            )

        metadata = metadata.loc[values.columns]
        batch_matrix = self._sum_to_zero_coding(metadata[batch].astype(str))
        if batch_matrix.shape[1] == 0:
            logger.warning(f"Batch column '{batch}' has a single level; nothing to remove")
            return values.copy(), {"n_batches": 1}, self._create_batch_ir(batch, design)

        if design:
            components = self.formula_service.parse_formula(design, metadata)
            if batch in components["variable_info"]:
                raise TransformationError(
                    f"Batch column '{batch}' must not be part of the preserved design"
                )
            preserved = self.formula_service.construct_design_matrix(components, metadata)[
                "design_matrix"
            ]
        else:
            preserved = np.ones((len(metadata), 1))

        full = np.hstack([preserved, batch_matrix])
        if np.linalg.matrix_rank(full) < full.shape[1]:
            raise TransformationError(
                f"Batch '{batch}' is confounded with the preserved design; "
                "batch effect cannot be separated"
            )

        y = values.to_numpy(dtype=float).T
        coefficients, *_ = np.linalg.lstsq(full, y, rcond=None)
        batch_coefficients = coefficients[preserved.shape[1]:, :]
        corrected = y - batch_matrix @ batch_coefficients

        result = pd.DataFrame(corrected.T, index=values.index, columns=values.columns)
        stats = {
            "batch": batch,
            "n_batches": int(batch_matrix.shape[1] + 1),
            "preserved_design": design,
        }
        logger.info(
            f"Removed batch effect of '{batch}' ({stats['n_batches']} batches) "
            f"preserving {design or 'the intercept'}"
        )
        return result, stats, self._create_batch_ir(batch, design)

    def compute_pca(
        self,
        values: pd.DataFrame,
        metadata: pd.DataFrame,
        n_top: int = 500,
        n_components: int = 2,
    ) -> Tuple[Dict[str, Any], Dict[str, Any], AnalysisStep]:
        """
        PCA of samples on the most variable genes.

        Returns:
            Tuple of (result dict with ``coordinates`` DataFrame joined with
            metadata and ``variance_explained`` percentages, statistics, IR)
        """
        n_samples = values.shape[1]
        n_components = min(n_components, n_samples, values.shape[0])
        if n_components < 1:
            raise TransformationError("PCA needs at least one gene and one sample")

        top_genes = self.top_variable_genes(values, n_top)
        data = values.loc[top_genes].T.to_numpy(dtype=float)

        pca = PCA(n_components=n_components)
        coords = pca.fit_transform(data)

        pc_names = [f"PC{i + 1}" for i in range(n_components)]
        coordinates = pd.DataFrame(coords, index=values.columns, columns=pc_names)
        coordinates = coordinates.join(metadata.loc[values.columns])
        variance_explained = [float(v * 100) for v in pca.explained_variance_ratio_]

        result = {
            "coordinates": coordinates,
            "variance_explained": variance_explained,
            "genes_used": list(top_genes),
        }
        stats = {
            "n_top": int(len(top_genes)),
            "n_components": n_components,
            "variance_explained": dict(zip(pc_names, variance_explained)),
        }
        return result, stats, self._create_pca_ir(n_top, n_components)

    def sample_distances(self, values: pd.DataFrame) -> pd.DataFrame:
        """Euclidean distances between samples (columns)."""
        distances = squareform(pdist(values.T.to_numpy(dtype=float), metric="euclidean"))
        return pd.DataFrame(distances, index=values.columns, columns=values.columns)

    def top_variable_genes(self, values: pd.DataFrame, n: int) -> List[str]:
        """Genes with the largest variance across samples; ties keep input order."""
        variances = values.var(axis=1)
        return list(variances.sort_values(ascending=False, kind="mergesort").index[:n])

    @staticmethod
    def _sum_to_zero_coding(levels: pd.Series) -> np.ndarray:
        """Sum-to-zero contrasts: k-1 columns, last level coded -1 throughout."""
        categories = sorted(levels.unique())
        n = len(categories)
        matrix = np.zeros((len(levels), max(n - 1, 0)))
        for i, value in enumerate(levels):
            j = categories.index(value)
            if j < n - 1:
                matrix[i, j] = 1.0
            else:
                matrix[i, :] = -1.0
        return matrix

    def _create_vst_ir(self, blind: bool) -> AnalysisStep:
        code_template = """dds.vst(use_design={{ not blind }})
vst = pd.DataFrame(dds.layers["vst_counts"], index=dds.obs_names, columns=dds.var_names).T
normalized = pd.DataFrame(dds.layers["normed_counts"], index=dds.obs_names, columns=dds.var_names).T
"""
        return AnalysisStep(
            operation="pydeseq2.dds.DeseqDataSet.vst",
            tool_name="variance_stabilize",
            description="Variance stabilizing transformation for visualization",
            library="pydeseq2",
            code_template=code_template,
            imports=["import pandas as pd"],
            parameters={"blind": blind},
            parameter_schema={},
            input_entities=["dds"],
            output_entities=["vst", "normalized"],
        )

    def _create_batch_ir(self, batch: str, design: Optional[str]) -> AnalysisStep:
        code_template = """# removeBatchEffect: fit batch (sum-to-zero) + preserved design, subtract batch part
batch_levels = sorted(metadata[{{ batch | tojson }}].astype(str).unique())
batch_codes = metadata[{{ batch | tojson }}].astype(str).map(batch_levels.index).to_numpy()
batch_matrix = np.zeros((len(batch_codes), len(batch_levels) - 1))
for i, code in enumerate(batch_codes):
    if code < len(batch_levels) - 1:
        batch_matrix[i, code] = 1.0
    else:
        batch_matrix[i, :] = -1.0
{% if design %}
import formulaic
preserved = formulaic.model_matrix({{ design | tojson }}, metadata).to_numpy(dtype=float)
{% else %}
preserved = np.ones((len(batch_codes), 1))
{% endif %}
full = np.hstack([preserved, batch_matrix])
coef, *_ = np.linalg.lstsq(full, vst.T.to_numpy(), rcond=None)
vst_corrected = vst - (batch_matrix @ coef[preserved.shape[1]:, :]).T
"""
        return AnalysisStep(
            operation="numpy.linalg.lstsq",
            tool_name="remove_batch_effect",
            description=f"Remove the '{batch}' effect from VST values (plots only)",
            library="numpy",
            code_template=code_template,
            imports=["import numpy as np"],
            parameters={"batch": batch, "design": design},
            parameter_schema={},
            input_entities=["vst", "metadata"],
            output_entities=["vst_corrected"],
        )

    def _create_pca_ir(self, n_top: int, n_components: int) -> AnalysisStep:
        code_template = """top_genes = vst.var(axis=1).sort_values(ascending=False).index[:{{ n_top }}]
pca = PCA(n_components={{ n_components }})
coords = pca.fit_transform(vst.loc[top_genes].T)
pca_df = pd.DataFrame(coords, index=vst.columns, columns=[f"PC{i + 1}" for i in range(coords.shape[1])]).join(metadata)
print("Percent variance:", (pca.explained_variance_ratio_ * 100).round(1))
"""
        return AnalysisStep(
            operation="sklearn.decomposition.PCA",
            tool_name="compute_pca",
            description=f"PCA on the {n_top} most variable genes",
            library="scikit-learn",
            code_template=code_template,
            imports=["from sklearn.decomposition import PCA", "import pandas as pd"],
            parameters={"n_top": n_top, "n_components": n_components},
            parameter_schema={
                "n_top": ParameterSpec(
                    param_type="int",
                    papermill_injectable=False,
                    default_value=500,
                    required=False,
                    description="Number of top-variance genes",
                )
            },
            input_entities=["vst", "metadata"],
            output_entities=["pca_df"],
        )
