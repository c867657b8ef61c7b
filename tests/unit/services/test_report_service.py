"""
Unit tests for the HTML report.
"""

import plotly.graph_objects as go
import pytest

from bulkde.services.reporting.report_service import (
    ReportError,
    ReportSection,
    ReportService,
)


@pytest.mark.unit
class TestReportService:
    """Rendering sections, tables and run parameters."""

    def test_render(self, result_table, temp_workspace):
        sections = [
            ReportSection(
                "Quality control",
                "Samples cluster by <condition>.",
                figures=[("PCA", go.Figure(go.Scatter(x=[1, 2], y=[2, 1])))],
            ),
            ReportSection("Results", tables=[("Significant genes", result_table)]),
        ]

        path, stats = ReportService(max_table_rows=10).render_html(
            sections,
            temp_workspace / "report" / "report.html",
            title="Treated vs control",
            parameters={"thresholds": {"padj": 0.05, "lfc": 1.0}, "design": "~condition"},
            versions={"pydeseq2": "0.5.0"},
        )

        html = path.read_text()
        assert stats["n_sections"] == 2
        assert stats["n_figures"] == 1
        assert stats["n_tables"] == 1
        assert "<title>Treated vs control</title>" in html
        assert "thresholds.padj" in html
        assert "Showing 10 of 200 rows" in html
        assert "&lt;condition&gt;" in html
        assert "plotly" in html

    def test_empty_report(self, temp_workspace):
        path, stats = ReportService().render_html([], temp_workspace / "empty.html")

        assert path.exists()
        assert stats["n_figures"] == 0

    def test_unserializable_figure(self, temp_workspace):
        section = ReportSection("Broken", figures=[("bad", object())])

        with pytest.raises(ReportError, match="Failed to render report"):
            ReportService().render_html([section], temp_workspace / "report.html")
