"""
Jupyter notebook exporter for pipeline replay.

Converts a run's provenance record into an executable notebook. Each
recorded activity carries the ``AnalysisStep`` its service emitted, so the
notebook is assembled by rendering those templates in order. The first
code cell after the imports is tagged ``parameters`` for Papermill.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import nbformat
from nbformat import NotebookNode
from nbformat.v4 import new_code_cell, new_markdown_cell, new_notebook

from bulkde.core.analysis_ir import AnalysisStep, extract_unique_imports
from bulkde.core.provenance import ProvenanceTracker

logger = logging.getLogger(__name__)

IO_STEPS = {"load_dataset", "save_results"}


class NotebookExporter:
    """
    Convert bulkde provenance to an executable Jupyter notebook.

    Attributes:
        provenance: ProvenanceTracker with the run history
        output_dir: Directory the notebook is written to
    """

    def __init__(
        self, provenance: ProvenanceTracker, output_dir: Union[str, Path]
    ) -> None:
        self.provenance = provenance
        self.output_dir = Path(output_dir)

    def export(
        self,
        name: str,
        description: str = "",
        filter_strategy: str = "successful",
        validate_syntax: bool = True,
    ) -> Path:
        """
        Generate a notebook from the recorded activities.

        Args:
            name: Notebook filename (without extension)
            description: Human-readable description for the header
            filter_strategy: Activity filter ("successful" | "all")
            validate_syntax: Whether to parse generated code before writing

        Returns:
            Path to the generated .ipynb file

        Raises:
            ValueError: If the name is empty or nothing was recorded
        """
        if not name or not name.strip():
            raise ValueError("Notebook name cannot be empty")

        if not self.provenance.activities:
            raise ValueError("No activities recorded - nothing to export")

        logger.info(f"Exporting notebook: {name}")

        activities = self._filter_activities(filter_strategy)
        irs = self._extract_irs(activities)
        logger.info(f"Extracted {len(irs)} steps from {len(activities)} activities")

        notebook = new_notebook()
        notebook.cells.append(self._create_header_cell(name, description, len(irs)))
        notebook.cells.append(self._create_imports_cell(irs))
        notebook.cells.append(self._create_parameters_cell(irs))

        loading_cell = self._create_io_cell(activities, "load_dataset")
        if loading_cell is not None:
            notebook.cells.append(loading_cell)

        step_number = 1
        for activity in activities:
            if activity.get("type") in IO_STEPS:
                continue
            notebook.cells.append(self._create_doc_cell(activity, step_number))
            code_cell = self._activity_to_code(activity, validate=validate_syntax)
            if code_cell is not None:
                notebook.cells.append(code_cell)
            step_number += 1

        saving_cell = self._create_io_cell(activities, "save_results")
        if saving_cell is not None:
            notebook.cells.append(saving_cell)

        notebook.cells.append(self._create_footer_cell())
        notebook.metadata["bulkde"] = self._create_metadata(len(irs), len(activities))

        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_dir / f"{name}.ipynb"
        with open(output_path, "w") as f:
            nbformat.write(notebook, f)

        logger.info(f"Notebook exported: {output_path}")
        return output_path

    def _filter_activities(self, strategy: str) -> List[Dict[str, Any]]:
        if strategy == "all":
            return list(self.provenance.activities)
        if strategy != "successful":
            logger.warning(
                f"Unknown filter strategy '{strategy}', using 'successful'"
            )
        return [
            a
            for a in self.provenance.activities
            if not a.get("error") and a.get("type") != "failed_operation"
        ]

    def _extract_irs(self, activities: List[Dict[str, Any]]) -> List[AnalysisStep]:
        """Deserialize the exportable steps embedded in activities."""
        irs = []

        for activity in activities:
            ir_dict = activity.get("ir")
            if not isinstance(ir_dict, dict):
                continue
            try:
                ir = AnalysisStep.from_dict(ir_dict)
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Failed to deserialize IR for activity {activity.get('type')}: {e}"
                )
                continue
            if ir.exportable:
                irs.append(ir)

        return irs

    def _create_header_cell(
        self, name: str, description: str, n_irs: int
    ) -> NotebookNode:
        n_activities = len(self.provenance.activities)

        header_content = f"""# {name}

{description if description else "Bulk RNA-Seq differential expression and enrichment analysis"}

**Created:** {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}
**bulkde version:** {self.provenance.software_versions.get("bulkde", "unknown")}
**Replayable steps:** {n_irs}/{n_activities} activities

---
"""
        return new_markdown_cell(header_content)

    def _create_imports_cell(self, irs: List[AnalysisStep]) -> NotebookNode:
        imports = extract_unique_imports(irs) or [
            "import numpy as np",
            "import pandas as pd",
        ]
        return new_code_cell("# Required imports\n" + "\n".join(imports))

    def _create_parameters_cell(self, irs: List[AnalysisStep]) -> NotebookNode:
        """Build the Papermill parameters cell from the injectable step parameters."""
        injectable_params: Dict[str, Any] = {}
        for ir in irs:
            injectable_params.update(ir.get_papermill_parameters())

        code = (
            "# Parameters (tagged for Papermill parameter injection)\n"
            "# Override with: papermill notebook.ipynb output.ipynb -p name value\n"
        )
        for param_name, param_value in sorted(injectable_params.items()):
            code += f"{param_name} = {param_value!r}\n"

        cell = new_code_cell(code)
        cell.metadata["tags"] = ["parameters"]
        return cell

    def _create_io_cell(
        self, activities: List[Dict[str, Any]], activity_type: str
    ) -> Optional[NotebookNode]:
        """Render the loading or saving step if the run recorded one."""
        for activity in activities:
            if activity.get("type") == activity_type and activity.get("ir"):
                return self._activity_to_code(activity, validate=False)
        return None

    def _create_doc_cell(
        self, activity: Dict[str, Any], step_number: int
    ) -> NotebookNode:
        params = activity.get("parameters", {})

        doc_content = f"""## Step {step_number}: {activity.get("type", "unknown")}

**Timestamp:** {activity.get("timestamp", "unknown")}
**Agent:** {activity.get("agent", "unknown")}

"""
        if activity.get("description"):
            doc_content += f"{activity['description']}\n\n"

        if params:
            doc_content += "**Parameters:**\n"
            for key, value in params.items():
                if isinstance(value, (list, tuple)) and len(value) > 5:
                    value_str = (
                        f"[{', '.join(str(x) for x in value[:3])}...] "
                        f"(length: {len(value)})"
                    )
                else:
                    value_str = str(value)
                doc_content += f"- `{key}`: {value_str}\n"

        return new_markdown_cell(doc_content)

    def _activity_to_code(
        self, activity: Dict[str, Any], validate: bool = True
    ) -> Optional[NotebookNode]:
        """Render an activity's step into a code cell."""
        ir_dict = activity.get("ir")
        if ir_dict is None:
            logger.warning(f"No IR for activity: {activity.get('type')}")
            return None

        ir = AnalysisStep.from_dict(ir_dict)
        if not ir.exportable:
            return None

        code = ir.render()
        if validate and ir.validates_on_export:
            try:
                ir.validate_rendered_code()
            except SyntaxError as e:
                code = f"# SYNTAX ERROR in generated code: {e}\n{code}"

        return new_code_cell(code)

    def _create_footer_cell(self) -> NotebookNode:
        footer_content = """---

## Re-running

```bash
papermill analysis.ipynb rerun.ipynb \\
    -p counts_path "new_counts.csv" \\
    -p metadata_path "new_metadata.csv"
```
"""
        return new_markdown_cell(footer_content)

    def _create_metadata(self, n_irs: int, n_activities: int) -> Dict[str, Any]:
        return {
            "source_namespace": self.provenance.namespace,
            "created_by": os.getenv("USER", "unknown"),
            "created_at": datetime.now().isoformat(),
            "dependencies": self.provenance.software_versions,
            "ir_statistics": {
                "n_irs_extracted": n_irs,
                "n_activities": n_activities,
            },
        }
