"""
Unit tests for the AnalysisStep intermediate representation.
"""

import pytest

from bulkde.core.analysis_ir import (
    AnalysisStep,
    ParameterSpec,
    create_count_loading_ir,
    create_results_saving_ir,
    extract_unique_imports,
    validate_ir_list,
)


def _step(**overrides) -> AnalysisStep:
    kwargs = dict(
        operation="pydeseq2.ds.DeseqStats.summary",
        tool_name="test_contrast",
        description="Wald test",
        library="pydeseq2",
        code_template="ds = DeseqStats(dds, contrast={{ contrast | tojson }}, alpha={{ alpha }})",
        imports=["from pydeseq2.ds import DeseqStats"],
        parameters={"contrast": ["condition", "treated", "control"], "alpha": 0.1},
        parameter_schema={
            "alpha": ParameterSpec(
                param_type="float",
                papermill_injectable=True,
                default_value=0.1,
                required=False,
            )
        },
    )
    kwargs.update(overrides)
    return AnalysisStep(**kwargs)


@pytest.mark.unit
class TestAnalysisStepRendering:
    """Template rendering and validation."""

    def test_render_uses_recorded_parameters(self):
        code = _step().render()

        assert 'contrast=["condition", "treated", "control"]' in code
        assert "alpha=0.1" in code

    def test_render_with_override(self):
        assert "alpha=0.05" in _step().render(alpha=0.05)

    def test_rendered_code_is_valid_python(self):
        assert _step().validate_rendered_code() is True

    def test_invalid_template_raises(self):
        with pytest.raises(ValueError, match="Invalid Jinja2 template"):
            _step(code_template="x = {{ alpha ").validate_template()

    def test_syntax_error_in_rendered_code(self):
        with pytest.raises(SyntaxError):
            _step(code_template="x = (").validate_rendered_code()

    def test_papermill_parameters_only_injectable(self):
        assert _step().get_papermill_parameters() == {"alpha": 0.1}


@pytest.mark.unit
class TestAnalysisStepSerialization:
    """Round trips through plain dictionaries."""

    def test_to_dict_from_dict_round_trip(self):
        step = _step(execution_context={"seed": 42})
        restored = AnalysisStep.from_dict(step.to_dict())

        assert restored.operation == step.operation
        assert restored.parameters == step.parameters
        assert restored.execution_context == {"seed": 42}
        assert isinstance(restored.parameter_schema["alpha"], ParameterSpec)

    def test_validate_ir_list_reports_problems(self):
        good = _step().to_dict()
        bad = _step(imports=[], code_template="").to_dict()

        errors = validate_ir_list([good, bad])

        assert any("No imports" in e for e in errors)
        assert any("Empty code_template" in e for e in errors)
        assert not any(e.startswith("IR 0") for e in errors)

    def test_extract_unique_imports_orders_stdlib_first(self):
        steps = [
            _step(imports=["import pandas as pd", "from pathlib import Path"]),
            _step(imports=["import pandas as pd", "from bulkde.core import ValidationError"]),
        ]
        imports = extract_unique_imports(steps)

        assert imports[0] == "from pathlib import Path"
        assert imports[-1] == "from bulkde.core import ValidationError"
        assert imports.count("import pandas as pd") == 1


@pytest.mark.unit
class TestIOSteps:
    """Loading and saving steps used at both ends of the notebook."""

    def test_count_loading_step_is_injectable(self):
        step = create_count_loading_ir("data/counts.csv", "data/meta.csv", 5, 2)
        params = step.get_papermill_parameters()

        assert params == {
            "counts_path": "data/counts.csv",
            "metadata_path": "data/meta.csv",
            "min_count": 5,
            "min_samples": 2,
        }
        assert step.tool_name == "load_dataset"
        assert "counts_path" in step.render()

    def test_results_saving_step(self):
        step = create_results_saving_ir("out")

        assert step.tool_name == "save_results"
        assert step.get_papermill_parameters() == {"output_dir": "out"}
        assert step.validate_rendered_code()
