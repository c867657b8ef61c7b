"""
Design formula handling for differential expression.

Parses R-style design formulas (``~batch + condition``), checks them against
the sample metadata and builds treatment-coded design matrices. The fitted
model itself is delegated to pydeseq2. This service guarantees that the
formula it receives is valid and that categorical covariates carry the
intended reference level.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from bulkde.core import DesignMatrixError, FormulaError
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

_VARIABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


class DifferentialFormulaService:
    """
    Service for formula-based differential expression design.

    Supports main effects and two-way interactions written as ``a:b`` or
    ``a*b`` (the latter expands to ``a + b + a:b``).
    """

    def parse_formula(
        self,
        formula: str,
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Parse an R-style formula and validate it against metadata.

        Args:
            formula: Formula string (e.g., "~batch + condition")
            metadata: Sample metadata DataFrame
            reference_levels: Reference level per categorical variable

        Returns:
            Dict[str, Any]: formula_string, predictor_terms, variable_info,
            reference_levels, n_samples and design_rank

        Raises:
            FormulaError: If the formula is malformed or names unknown columns
        """
        logger.info(f"Parsing formula: {formula}")
        reference_levels = dict(reference_levels or {})

        formula = self._clean_formula(formula)
        response_var, predictors = self._split_formula(formula)
        terms = self._parse_terms(predictors)
        self._validate_variables(terms, metadata)
        variable_info = self._analyze_variables(terms, metadata, reference_levels)

        components = {
            "formula_string": formula,
            "response_variable": response_var,
            "predictor_terms": terms,
            "variable_info": variable_info,
            "reference_levels": reference_levels,
            "n_samples": len(metadata),
            "design_rank": self._estimate_design_rank(terms, variable_info),
        }

        if components["design_rank"] >= len(metadata):
            raise FormulaError(
                f"Design '{formula}' needs {components['design_rank']} coefficients "
                f"but only {len(metadata)} samples are available; "
                "no residual degrees of freedom remain"
            )

        logger.info(
            f"Formula parsed: {len(terms)} terms, rank {components['design_rank']}"
        )
        return components

    def construct_design_matrix(
        self,
        formula_components: Dict[str, Any],
        metadata: pd.DataFrame,
        contrast: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Build a treatment-coded design matrix.

        Args:
            formula_components: Output of ``parse_formula``
            metadata: Sample metadata DataFrame
            contrast: Optional [factor, test_level, reference_level]

        Returns:
            Dict[str, Any]: design_matrix, design_df, coefficient_names, rank,
            contrast_vector and contrast_name

        Raises:
            DesignMatrixError: If the matrix has missing values or is rank deficient
        """
        design_df = pd.DataFrame(index=metadata.index)
        design_df["(Intercept)"] = 1.0

        for term in formula_components["predictor_terms"]:
            if term["type"] == "main_effect":
                self._add_main_effect(design_df, term, metadata, formula_components)
            else:
                self._add_interaction(design_df, term, metadata, formula_components)

        design_matrix = design_df.to_numpy(dtype=np.float64)
        self._validate_design_matrix(design_matrix, list(design_df.columns))
        coef_names = list(design_df.columns)

        contrast_vector, contrast_name = None, None
        if contrast:
            contrast_vector, contrast_name = self._construct_contrast(
                contrast, coef_names, formula_components
            )

        rank = int(np.linalg.matrix_rank(design_matrix))
        logger.info(
            f"Design matrix: {design_matrix.shape[0]} samples x "
            f"{design_matrix.shape[1]} coefficients (rank {rank})"
        )

        return {
            "design_matrix": design_matrix,
            "design_df": design_df,
            "coefficient_names": coef_names,
            "n_coefficients": design_matrix.shape[1],
            "rank": rank,
            "contrast_vector": contrast_vector,
            "contrast_name": contrast_name,
            "formula_components": formula_components,
        }

    def prepare_metadata(
        self, metadata: pd.DataFrame, formula_components: Dict[str, Any]
    ) -> pd.DataFrame:
        """
        Return a copy of metadata with formula covariates typed for model fitting.

        Categorical variables become ``pandas.Categorical`` whose first
        category is the reference level, so that the fitted coefficients are
        named ``var[T.level]`` relative to it.
        """
        prepared = metadata.copy()
        for var, info in formula_components["variable_info"].items():
            if info["type"] == "categorical":
                prepared[var] = pd.Categorical(
                    prepared[var].astype(str), categories=info["levels"]
                )
            else:
                prepared[var] = pd.to_numeric(prepared[var])
        return prepared

    def _clean_formula(self, formula: str) -> str:
        if not isinstance(formula, str):
            raise FormulaError(f"Formula must be a string, got {type(formula).__name__}")

        formula = re.sub(r"\s+", " ", formula.strip())
        if not formula.startswith("~") and "~" not in formula:
            formula = "~" + formula
        if formula.replace("~", "").strip() == "":
            raise FormulaError("Empty formula")
        return formula

    def _split_formula(self, formula: str) -> Tuple[Optional[str], str]:
        parts = formula.split("~")
        if len(parts) != 2:
            raise FormulaError(f"Invalid formula format: {formula}")

        response = parts[0].strip() or None
        predictors = parts[1].strip()
        if not predictors:
            raise FormulaError("No predictor variables specified")
        return response, predictors

    def _parse_terms(self, predictor_string: str) -> List[Dict[str, Any]]:
        """Split the right-hand side into main effects and interactions."""
        terms: List[Dict[str, Any]] = []
        seen = set()

        def add(term_type: str, variables: List[str]):
            key = tuple(variables)
            if key in seen:
                return
            seen.add(key)
            terms.append(
                {
                    "term": ":".join(variables),
                    "type": term_type,
                    "variables": variables,
                    "order": len(variables),
                }
            )

        for term_str in (t.strip() for t in predictor_string.split("+")):
            if not term_str:
                raise FormulaError(f"Empty term in formula: '{predictor_string}'")
            if term_str in ("1", "0", "-1"):
                continue

            if "*" in term_str:
                variables = [v.strip() for v in term_str.split("*")]
                for var in variables:
                    add("main_effect", [var])
                add("interaction", variables)
            elif ":" in term_str:
                add("interaction", [v.strip() for v in term_str.split(":")])
            else:
                add("main_effect", [term_str])

        for term in terms:
            for var in term["variables"]:
                if not _VARIABLE_PATTERN.match(var):
                    raise FormulaError(f"Invalid variable name in formula: '{var}'")
            if term["order"] > 2:
                raise FormulaError(
                    f"Interactions of order {term['order']} are not supported: {term['term']}"
                )

        if not terms:
            raise FormulaError("No predictor variables specified")
        return terms

    def _validate_variables(
        self, terms: List[Dict[str, Any]], metadata: pd.DataFrame
    ) -> None:
        variables = {var for term in terms for var in term["variables"]}
        missing_vars = sorted(v for v in variables if v not in metadata.columns)
        if missing_vars:
            raise FormulaError(
                f"Variables not found in metadata: {missing_vars}. "
                f"Available variables: {list(metadata.columns)}"
            )

        with_missing = sorted(v for v in variables if metadata[v].isna().any())
        if with_missing:
            raise FormulaError(f"Missing values in design variables: {with_missing}")

    def _analyze_variables(
        self,
        terms: List[Dict[str, Any]],
        metadata: pd.DataFrame,
        reference_levels: Dict[str, str],
    ) -> Dict[str, Dict[str, Any]]:
        variable_info = {}
        variables = {var for term in terms for var in term["variables"]}

        for var in sorted(variables):
            series = metadata[var]

            if pd.api.types.is_numeric_dtype(series) and not isinstance(
                series.dtype, pd.CategoricalDtype
            ):
                variable_info[var] = {
                    "type": "continuous",
                    "levels": None,
                    "n_levels": None,
                    "reference_level": None,
                }
                continue

            levels = sorted(series.astype(str).unique())
            if len(levels) < 2:
                raise FormulaError(
                    f"Variable '{var}' has a single level ({levels[0]}); it cannot be modelled"
                )

            ref_level = reference_levels.get(var)
            if ref_level is not None:
                ref_level = str(ref_level)
                if ref_level not in levels:
                    raise FormulaError(
                        f"Reference level '{ref_level}' not found in variable '{var}'. "
                        f"Available levels: {levels}"
                    )
                levels = [ref_level] + [lvl for lvl in levels if lvl != ref_level]

            variable_info[var] = {
                "type": "categorical",
                "levels": levels,
                "n_levels": len(levels),
                "reference_level": levels[0],
            }

        return variable_info

    def _estimate_design_rank(
        self, terms: List[Dict[str, Any]], variable_info: Dict[str, Dict[str, Any]]
    ) -> int:
        def n_columns(var: str) -> int:
            info = variable_info[var]
            return 1 if info["type"] == "continuous" else info["n_levels"] - 1

        rank = 1
        for term in terms:
            product = 1
            for var in term["variables"]:
                product *= n_columns(var)
            rank += product
        return rank

    def _variable_columns(
        self, var: str, info: Dict[str, Any], metadata: pd.DataFrame
    ) -> Dict[str, np.ndarray]:
        """Treatment-coded columns of one variable, reference level dropped."""
        if info["type"] == "continuous":
            return {var: metadata[var].to_numpy(dtype=float)}

        values = metadata[var].astype(str)
        return {
            f"{var}[T.{level}]": (values == level).to_numpy(dtype=float)
            for level in info["levels"][1:]
        }

    def _add_main_effect(self, design_df, term, metadata, formula_components) -> None:
        var = term["variables"][0]
        info = formula_components["variable_info"][var]
        for name, values in self._variable_columns(var, info, metadata).items():
            design_df[name] = values

    def _add_interaction(self, design_df, term, metadata, formula_components) -> None:
        var1, var2 = term["variables"]
        cols1 = self._variable_columns(
            var1, formula_components["variable_info"][var1], metadata
        )
        cols2 = self._variable_columns(
            var2, formula_components["variable_info"][var2], metadata
        )
        for name1, values1 in cols1.items():
            for name2, values2 in cols2.items():
                design_df[f"{name1}:{name2}"] = values1 * values2

    def _validate_design_matrix(
        self, design_matrix: np.ndarray, column_names: List[str]
    ) -> None:
        if np.any(~np.isfinite(design_matrix)):
            raise DesignMatrixError("Design matrix contains NaN or infinite values")

        for i, col_name in enumerate(column_names):
            if col_name != "(Intercept)" and np.all(
                design_matrix[:, i] == design_matrix[0, i]
            ):
                raise DesignMatrixError(
                    f"Design column '{col_name}' is constant across samples",
                    {"column": col_name},
                )

        rank = np.linalg.matrix_rank(design_matrix)
        if rank < design_matrix.shape[1]:
            raise DesignMatrixError(
                f"Design matrix is rank deficient: rank {rank} < "
                f"{design_matrix.shape[1]} columns. Covariates are confounded.",
                {"columns": column_names, "rank": int(rank)},
            )

    def _construct_contrast(
        self,
        contrast: List[str],
        coef_names: List[str],
        formula_components: Dict[str, Any],
    ) -> Tuple[np.ndarray, str]:
        """
        Contrast vector for ``test_level - reference_level`` of one factor.

        Raises:
            FormulaError: For malformed contrasts or unknown levels
        """
        if len(contrast) != 3:
            raise FormulaError("Contrast must be [factor, test_level, reference_level]")

        factor, level1, level2 = (str(c) for c in contrast)
        if factor not in formula_components["variable_info"]:
            raise FormulaError(f"Factor '{factor}' not found in formula")

        info = formula_components["variable_info"][factor]
        if info["type"] != "categorical":
            raise FormulaError(f"Factor '{factor}' must be categorical for contrasts")

        for level in (level1, level2):
            if level not in info["levels"]:
                raise FormulaError(
                    f"Level '{level}' not found in factor '{factor}'. "
                    f"Available levels: {info['levels']}"
                )

        vector = np.zeros(len(coef_names))
        for level, sign in ((level1, 1.0), (level2, -1.0)):
            if level != info["reference_level"]:
                vector[coef_names.index(f"{factor}[T.{level}]")] += sign

        return vector, f"{factor}_{level1}_vs_{level2}"

    def validate_experimental_design(
        self, metadata: pd.DataFrame, formula: str, min_replicates: int = 2
    ) -> Dict[str, Any]:
        """
        Report replicate counts and warnings for a design.

        Returns a dict with ``valid``, ``warnings``, ``errors`` and
        ``design_summary`` instead of raising.
        """
        result = {"valid": True, "warnings": [], "errors": [], "design_summary": {}}

        try:
            components = self.parse_formula(formula, metadata)
        except FormulaError as e:
            result["valid"] = False
            result["errors"].append(str(e))
            return result

        if len(metadata) < 6:
            result["warnings"].append(f"Small sample size: {len(metadata)} samples")

        for var, info in components["variable_info"].items():
            if info["type"] != "categorical":
                continue
            counts = metadata[var].astype(str).value_counts()
            result["design_summary"][var] = {k: int(v) for k, v in counts.items()}
            if counts.min() < min_replicates:
                result["warnings"].append(
                    f"Variable '{var}' has levels with <{min_replicates} replicates: "
                    f"{result['design_summary'][var]}"
                )

        return result
