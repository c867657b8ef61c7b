"""
Intermediate Representation (IR) for reproducible analysis steps.

Every service returns an ``AnalysisStep`` next to its result. The step holds
a Jinja2 code template plus the parameter values used, so that the
notebook exporter can replay a run as plain pydeseq2 / gseapy / plotly code
without a separate mapping registry.
"""

import ast
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from jinja2 import Template, TemplateSyntaxError

logger = logging.getLogger(__name__)


@dataclass
class ParameterSpec:
    """
    Type and behavior specification for one step parameter.

    Attributes:
        param_type: Python type as string (e.g., "float", "List[str]")
        papermill_injectable: Whether Papermill may override the value
        default_value: Default value if not specified
        required: Whether this parameter must be provided
        validation_rule: Optional validation expression (e.g., "0 < alpha <= 1")
        description: Human-readable parameter description

    Example:
        >>> spec = ParameterSpec(
        ...     param_type="float",
        ...     papermill_injectable=True,
        ...     default_value=0.1,
        ...     required=False,
        ...     validation_rule="0 < alpha <= 1",
        ...     description="Adjusted p-value cutoff"
        ... )
    """

    param_type: str
    papermill_injectable: bool
    default_value: Any
    required: bool
    validation_rule: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to a JSON-compatible dictionary.

        Raises:
            TypeError: If default_value is not JSON-serializable
        """
        try:
            json.dumps({"value": self.default_value})
        except TypeError as e:
            raise TypeError(
                f"ParameterSpec default_value is not JSON-serializable: "
                f"{type(self.default_value).__name__} = {self.default_value!r}. "
                f"Parameter: '{self.description or self.param_type}'. "
                f"Error: {e}"
            ) from e

        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterSpec":
        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"ParameterSpec(type={self.param_type}, "
            f"injectable={self.papermill_injectable}, "
            f"default={self.default_value})"
        )


@dataclass
class AnalysisStep:
    """
    Replayable description of one service operation.

    Attributes:
        operation: Fully-qualified operation name (e.g., "pydeseq2.dds.DeseqDataSet.deseq2")
        tool_name: Service method that produced the step
        description: Human-readable description (becomes notebook markdown)
        library: Main library used (e.g., "pydeseq2", "gseapy")
        code_template: Jinja2 template with {{ variable }} placeholders
        imports: Import statements the rendered code needs
        parameters: Actual parameter values used in this execution
        parameter_schema: ParameterSpec per parameter
        input_entities: Names of notebook variables consumed
        output_entities: Names of notebook variables produced
        execution_context: Seeds, versions and other run context
        validates_on_export: Whether to run AST syntax validation on export
        requires_validation: Whether full execution validation is recommended
        exportable: Whether to include in notebook export

    Example:
        >>> ir = AnalysisStep(
        ...     operation="pydeseq2.ds.DeseqStats.summary",
        ...     tool_name="test_contrast",
        ...     description="Wald test for condition B vs A",
        ...     library="pydeseq2",
        ...     code_template="ds = DeseqStats(dds, contrast={{ contrast | tojson }}, alpha={{ alpha }})",
        ...     imports=["from pydeseq2.ds import DeseqStats"],
        ...     parameters={"contrast": ["condition", "B", "A"], "alpha": 0.1},
        ...     parameter_schema={},
        ... )
    """

    # Identity
    operation: str
    tool_name: str
    description: str

    # Code generation
    library: str
    code_template: str
    imports: List[str]

    # Parameters
    parameters: Dict[str, Any]
    parameter_schema: Dict[str, ParameterSpec]

    # Data flow
    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)

    execution_context: Dict[str, Any] = field(default_factory=dict)

    validates_on_export: bool = True
    requires_validation: bool = False
    exportable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary, flattening ParameterSpec values."""
        data = asdict(self)
        data["parameter_schema"] = {
            k: v.to_dict() if isinstance(v, ParameterSpec) else v
            for k, v in self.parameter_schema.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        """
        Deserialize from a dictionary produced by ``to_dict``.

        Raises:
            ValueError: If required fields are missing
        """
        required_fields = [
            "operation",
            "tool_name",
            "description",
            "library",
            "code_template",
            "imports",
            "parameters",
            "parameter_schema",
        ]

        missing_fields = [name for name in required_fields if name not in data]
        if missing_fields:
            raise ValueError(f"Missing required fields: {missing_fields}")

        data = dict(data)
        data["parameter_schema"] = {
            k: ParameterSpec.from_dict(v) if isinstance(v, dict) else v
            for k, v in data["parameter_schema"].items()
        }

        return cls(**data)

    def validate_template(self) -> bool:
        """
        Check that the code template is valid Jinja2.

        Raises:
            ValueError: If the template has invalid syntax
        """
        try:
            Template(self.code_template)
            return True
        except TemplateSyntaxError as e:
            raise ValueError(f"Invalid Jinja2 template: {e}") from e

    def render(self, **override_params) -> str:
        """
        Render the code template with the recorded parameters.

        Args:
            **override_params: Optional parameter overrides

        Raises:
            ValueError: If template rendering fails
        """
        params = {**self.parameters, **override_params}
        try:
            return Template(self.code_template).render(**params)
        except Exception as e:
            logger.error(f"Failed to render template for {self.operation}: {e}")
            raise ValueError(f"Template rendering failed: {e}") from e

    def validate_rendered_code(self, **override_params) -> bool:
        """
        Render and parse the generated code.

        Raises:
            SyntaxError: If the generated code is not valid Python
        """
        code = self.render(**override_params)

        try:
            ast.parse(code)
            return True
        except SyntaxError as e:
            logger.error(f"Invalid generated code for {self.operation}: {e}")
            raise

    def get_papermill_parameters(self) -> Dict[str, Any]:
        """Return the injectable parameters with their current values."""
        return {
            param_name: self.parameters.get(param_name, spec.default_value)
            for param_name, spec in self.parameter_schema.items()
            if spec.papermill_injectable
        }

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation}, "
            f"tool={self.tool_name}, "
            f"params={len(self.parameters)})"
        )


def validate_ir_list(irs: List[Dict[str, Any]]) -> List[str]:
    """
    Validate a list of serialized steps.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    for idx, ir_dict in enumerate(irs):
        try:
            ir = AnalysisStep.from_dict(ir_dict)
        except (TypeError, ValueError) as e:
            errors.append(f"IR {idx}: Deserialization failed - {e}")
            continue

        try:
            ir.validate_template()
        except ValueError as e:
            errors.append(f"IR {idx} ({ir.operation}): Invalid template - {e}")

        if not ir.operation:
            errors.append(f"IR {idx}: Empty operation field")
        if not ir.code_template:
            errors.append(f"IR {idx}: Empty code_template field")
        if not ir.imports:
            errors.append(f"IR {idx}: No imports specified")

    return errors


STDLIB_MODULES = {
    "os",
    "sys",
    "pathlib",
    "datetime",
    "json",
    "re",
    "math",
    "time",
    "typing",
    "urllib",
}


def _import_sort_key(import_str: str) -> tuple:
    """Sort key: stdlib (0), third-party (1), local (2)."""
    parts = import_str.split()
    module = parts[1].split(".")[0] if len(parts) > 1 else ""

    if module in STDLIB_MODULES:
        return (0, import_str)
    if module.startswith("bulkde"):
        return (2, import_str)
    return (1, import_str)


def extract_unique_imports(irs: List[AnalysisStep]) -> List[str]:
    """Deduplicate imports across steps and sort them stdlib first, local last."""
    imports = set()
    for ir in irs:
        imports.update(ir.imports)

    return sorted(imports, key=_import_sort_key)


def create_count_loading_ir(
    counts_path: str = "counts.csv",
    metadata_path: str = "metadata.csv",
    min_count: int = 10,
    min_samples: int = 1,
) -> AnalysisStep:
    """
    Create the step that loads a count matrix and sample metadata.

    The rendered code reproduces the loader's alignment of metadata rows to
    count-matrix columns and its low-count filter.
    """
    parameter_schema = {
        "counts_path": ParameterSpec(
            param_type="str",
            papermill_injectable=True,
            default_value="counts.csv",
            required=True,
            description="Path to the genes x samples count matrix",
        ),
        "metadata_path": ParameterSpec(
            param_type="str",
            papermill_injectable=True,
            default_value="metadata.csv",
            required=True,
            description="Path to the sample metadata table",
        ),
        "min_count": ParameterSpec(
            param_type="int",
            papermill_injectable=True,
            default_value=10,
            required=False,
            validation_rule="min_count >= 0",
            description="Minimum reads for the low-count filter",
        ),
        "min_samples": ParameterSpec(
            param_type="int",
            papermill_injectable=True,
            default_value=1,
            required=False,
            validation_rule="min_samples >= 1",
            description="Samples that must reach min_count",
        ),
    }

    code_template = """# Load count matrix (genes x samples) and sample metadata
def _read_table(path):
    if path.endswith((".pkl", ".pickle")):
        return pd.read_pickle(path)
    if path.endswith(".parquet"):
        return pd.read_parquet(path)
    sep = "\\t" if path.endswith((".tsv", ".txt")) else ","
    return pd.read_csv(path, sep=sep, index_col=0)

counts = _read_table(counts_path).astype("int64")
metadata = _read_table(metadata_path)
metadata.index = metadata.index.astype(str)
metadata = metadata.loc[counts.columns.astype(str)]
counts = counts.loc[(counts >= min_count).sum(axis=1) >= min_samples]
print(f"Loaded {counts.shape[0]} genes x {counts.shape[1]} samples")
"""

    return AnalysisStep(
        operation="pandas.read_table",
        tool_name="load_dataset",
        description="Load the count matrix and sample metadata",
        library="pandas",
        code_template=code_template,
        imports=["import pandas as pd"],
        parameters={
            "counts_path": counts_path,
            "metadata_path": metadata_path,
            "min_count": min_count,
            "min_samples": min_samples,
        },
        parameter_schema=parameter_schema,
        input_entities=["file"],
        output_entities=["counts", "metadata"],
        execution_context={"operation_type": "data_io", "io_direction": "input"},
        validates_on_export=False,
    )


def create_results_saving_ir(output_dir: str = "results") -> AnalysisStep:
    """Create the step that writes the result tables at the end of a replay."""
    parameter_schema = {
        "output_dir": ParameterSpec(
            param_type="str",
            papermill_injectable=True,
            default_value="results",
            required=True,
            validation_rule="len(output_dir) > 0",
            description="Directory for result tables",
        ),
    }

    code_template = """# Save result tables
out = Path(output_dir)
out.mkdir(parents=True, exist_ok=True)
results.to_csv(out / "all_results.csv", index_label="gene_id")
significant.to_csv(out / "significant_genes.csv", index_label="gene_id")
print(f"Saved results to: {out}")
"""

    return AnalysisStep(
        operation="pandas.DataFrame.to_csv",
        tool_name="save_results",
        description="Save the differential expression tables",
        library="pandas",
        code_template=code_template,
        imports=["from pathlib import Path"],
        parameters={"output_dir": output_dir},
        parameter_schema=parameter_schema,
        input_entities=["results", "significant"],
        output_entities=["file"],
        execution_context={"operation_type": "data_io", "io_direction": "output"},
        validates_on_export=False,
    )
