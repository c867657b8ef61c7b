"""
Unit tests for notebook export of a run's provenance.
"""

import nbformat
import pytest

from bulkde.core.analysis_ir import (
    AnalysisStep,
    ParameterSpec,
    create_count_loading_ir,
    create_results_saving_ir,
)
from bulkde.core.notebook_exporter import NotebookExporter
from bulkde.core.provenance import ProvenanceTracker


def _select_step() -> AnalysisStep:
    return AnalysisStep(
        operation="pandas.DataFrame.loc",
        tool_name="select_significant",
        description="Filter significant genes",
        library="pandas",
        code_template=(
            "significant = results[(results['padj'] < padj_threshold) "
            "& (results['log2FoldChange'].abs() > {{ lfc_threshold }})]"
        ),
        imports=["import pandas as pd"],
        parameters={"padj_threshold": 0.05, "lfc_threshold": 1.0},
        parameter_schema={
            "padj_threshold": ParameterSpec(
                param_type="float",
                papermill_injectable=True,
                default_value=0.1,
                required=False,
            )
        },
    )


@pytest.fixture
def tracker():
    tracker = ProvenanceTracker(namespace="nb")
    tracker.log_step("select_significant", "BulkRNASeqService", ir=_select_step())
    tracker.log_step("save_results", "results_table", ir=create_results_saving_ir("out"))
    tracker.log_data_loading(["counts.csv"], "CountLoaderService", ir=create_count_loading_ir())
    return tracker


@pytest.mark.unit
class TestNotebookExport:
    """Structure of the exported notebook."""

    def test_export_writes_valid_notebook(self, tracker, temp_workspace):
        path = NotebookExporter(tracker, temp_workspace).export("analysis", "test run")

        assert path == temp_workspace / "analysis.ipynb"
        notebook = nbformat.read(str(path), as_version=4)
        nbformat.validate(notebook)

    def test_parameters_cell_is_tagged(self, tracker, temp_workspace):
        path = NotebookExporter(tracker, temp_workspace).export("analysis")
        notebook = nbformat.read(str(path), as_version=4)

        tagged = [c for c in notebook.cells if "parameters" in c.metadata.get("tags", [])]
        assert len(tagged) == 1
        assert "padj_threshold = 0.05" in tagged[0].source
        assert "counts_path = 'counts.csv'" in tagged[0].source
        assert "output_dir = 'out'" in tagged[0].source

    def test_io_steps_open_and_close_the_notebook(self, tracker, temp_workspace):
        path = NotebookExporter(tracker, temp_workspace).export("analysis")
        code = [c.source for c in nbformat.read(str(path), as_version=4).cells if c.cell_type == "code"]

        load_index = next(i for i, s in enumerate(code) if "_read_table(counts_path)" in s)
        select_index = next(i for i, s in enumerate(code) if "significant = results" in s)
        save_index = next(i for i, s in enumerate(code) if "all_results.csv" in s)
        assert load_index < select_index < save_index

    def test_failed_activities_are_skipped(self, tracker, temp_workspace):
        tracker.log_failure("fit_model", "BulkRNASeqService", RuntimeError("no"))
        path = NotebookExporter(tracker, temp_workspace).export("analysis")
        text = path.read_text()

        assert "failed_operation" not in text

    def test_empty_provenance_raises(self, temp_workspace):
        with pytest.raises(ValueError, match="No activities"):
            NotebookExporter(ProvenanceTracker(), temp_workspace).export("empty")

    def test_empty_name_raises(self, tracker, temp_workspace):
        with pytest.raises(ValueError, match="cannot be empty"):
            NotebookExporter(tracker, temp_workspace).export("  ")

    def test_metadata_records_dependencies(self, tracker, temp_workspace):
        path = NotebookExporter(tracker, temp_workspace).export("analysis")
        notebook = nbformat.read(str(path), as_version=4)

        meta = notebook.metadata["bulkde"]
        assert meta["source_namespace"] == "nb"
        assert meta["ir_statistics"]["n_activities"] == 3
        assert "python" in meta["dependencies"]
