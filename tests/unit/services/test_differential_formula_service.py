"""
Unit tests for DifferentialFormulaService.
"""

import numpy as np
import pandas as pd
import pytest

from bulkde.core import DesignMatrixError, FormulaError
from bulkde.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)


@pytest.fixture
def service():
    return DifferentialFormulaService()


@pytest.fixture
def metadata():
    return pd.DataFrame(
        {
            "condition": ["control"] * 3 + ["treated"] * 3,
            "batch": ["b1", "b2", "b1", "b2", "b1", "b2"],
            "age": [30.0, 41.0, 35.0, 52.0, 28.0, 47.0],
        },
        index=[f"S{i}" for i in range(1, 7)],
    )


@pytest.mark.unit
class TestParseFormula:
    """Formula parsing and validation against metadata."""

    def test_main_effects(self, service, metadata):
        components = service.parse_formula("~batch + condition", metadata)

        assert [t["term"] for t in components["predictor_terms"]] == ["batch", "condition"]
        assert components["variable_info"]["condition"]["reference_level"] == "control"
        assert components["design_rank"] == 3

    def test_missing_tilde_is_added(self, service, metadata):
        assert service.parse_formula("condition", metadata)["formula_string"] == "~condition"

    def test_star_expands_to_interaction(self, service, metadata):
        components = service.parse_formula("~batch*condition", metadata)

        terms = [(t["term"], t["type"]) for t in components["predictor_terms"]]
        assert terms == [
            ("batch", "main_effect"),
            ("condition", "main_effect"),
            ("batch:condition", "interaction"),
        ]

    def test_continuous_covariate(self, service, metadata):
        info = service.parse_formula("~age + condition", metadata)["variable_info"]

        assert info["age"]["type"] == "continuous"
        assert info["condition"]["type"] == "categorical"

    def test_reference_level_override(self, service, metadata):
        components = service.parse_formula(
            "~condition", metadata, reference_levels={"condition": "treated"}
        )

        assert components["variable_info"]["condition"]["levels"] == ["treated", "control"]

    @pytest.mark.parametrize(
        "formula,message",
        [
            ("~", "Empty formula"),
            ("   ", "Empty formula"),
            ("y ~ a ~ b", "Invalid formula format"),
            ("~condition + ", "Empty term"),
            ("~genotype", "not found in metadata"),
            ("~cond-ition", "Invalid variable name"),
        ],
    )
    def test_malformed_formulas(self, service, metadata, formula, message):
        with pytest.raises(FormulaError, match=message):
            service.parse_formula(formula, metadata)

    def test_non_string(self, service, metadata):
        with pytest.raises(FormulaError, match="must be a string"):
            service.parse_formula(None, metadata)

    def test_single_level(self, service, metadata):
        metadata["condition"] = "control"

        with pytest.raises(FormulaError, match="single level"):
            service.parse_formula("~condition", metadata)

    def test_missing_values(self, service, metadata):
        metadata.loc["S1", "batch"] = None

        with pytest.raises(FormulaError, match="Missing values"):
            service.parse_formula("~batch + condition", metadata)

    def test_unknown_reference_level(self, service, metadata):
        with pytest.raises(FormulaError, match="Reference level"):
            service.parse_formula("~condition", metadata, {"condition": "mock"})

    def test_no_residual_degrees_of_freedom(self, service, metadata):
        with pytest.raises(FormulaError, match="degrees of freedom"):
            service.parse_formula("~age*condition + batch*condition", metadata)


@pytest.mark.unit
class TestDesignMatrix:
    def test_treatment_coding(self, service, metadata):
        components = service.parse_formula("~batch + condition", metadata)

        design = service.construct_design_matrix(
            components, metadata, contrast=["condition", "treated", "control"]
        )

        assert design["coefficient_names"] == [
            "(Intercept)",
            "batch[T.b2]",
            "condition[T.treated]",
        ]
        assert design["rank"] == 3
        np.testing.assert_array_equal(design["contrast_vector"], [0.0, 0.0, 1.0])
        assert design["contrast_name"] == "condition_treated_vs_control"

    def test_reversed_contrast(self, service, metadata):
        components = service.parse_formula("~condition", metadata)

        design = service.construct_design_matrix(
            components, metadata, contrast=["condition", "control", "treated"]
        )

        np.testing.assert_array_equal(design["contrast_vector"], [0.0, -1.0])

    def test_confounded_covariates(self, service, metadata):
        metadata["batch"] = metadata["condition"].map({"control": "b1", "treated": "b2"})
        components = service.parse_formula("~batch + condition", metadata)

        with pytest.raises(DesignMatrixError, match="rank deficient"):
            service.construct_design_matrix(components, metadata)

    def test_unknown_contrast_level(self, service, metadata):
        components = service.parse_formula("~condition", metadata)

        with pytest.raises(FormulaError, match="Level 'mock'"):
            service.construct_design_matrix(
                components, metadata, contrast=["condition", "mock", "control"]
            )

    def test_prepare_metadata_orders_categories(self, service, metadata):
        components = service.parse_formula(
            "~condition", metadata, reference_levels={"condition": "treated"}
        )

        prepared = service.prepare_metadata(metadata, components)

        assert list(prepared["condition"].cat.categories) == ["treated", "control"]
        assert not isinstance(metadata["condition"].dtype, pd.CategoricalDtype)


@pytest.mark.unit
class TestExperimentalDesignReport:
    def test_small_design_warns(self, service, metadata):
        report = service.validate_experimental_design(metadata, "~condition", min_replicates=4)

        assert report["valid"]
        assert report["design_summary"]["condition"] == {"control": 3, "treated": 3}
        assert any("replicates" in w for w in report["warnings"])

    def test_invalid_formula_is_reported(self, service, metadata):
        report = service.validate_experimental_design(metadata, "~genotype")

        assert not report["valid"]
        assert report["errors"]
