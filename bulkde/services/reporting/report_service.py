"""
Single-file HTML report of an analysis run.

Sections hold free text, plotly figures and tables. Figures are embedded
with ``Figure.to_html(full_html=False, include_plotlyjs="cdn")``; the
report also lists the run parameters and the software versions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd
from jinja2 import Environment, select_autoescape

from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

REPORT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
<style>
  body { font-family: -apple-system, "Segoe UI", Helvetica, Arial, sans-serif; margin: 2em auto; max-width: 1100px; color: #222; }
  h1 { border-bottom: 2px solid #444; padding-bottom: .3em; }
  h2 { margin-top: 2em; border-bottom: 1px solid #ccc; }
  table { border-collapse: collapse; font-size: 0.85em; margin: 1em 0; }
  th, td { border: 1px solid #ddd; padding: 4px 8px; text-align: right; }
  th { background: #f3f3f3; }
  .meta td { text-align: left; }
  .figure { margin: 1.5em 0; }
  nav a { margin-right: 1em; }
</style>
</head>
<body>
<h1>{{ title }}</h1>
<p>Generated {{ generated }}</p>
<nav>
{% for section in sections %}<a href="#section-{{ loop.index }}">{{ section.title }}</a>{% endfor %}
</nav>
{% for section in sections %}
<h2 id="section-{{ loop.index }}">{{ section.title }}</h2>
{% if section.text %}<p>{{ section.text }}</p>{% endif %}
{% for name, html in section.figure_html %}
<div class="figure"><h3>{{ name }}</h3>{{ html | safe }}</div>
{% endfor %}
{% for name, html in section.table_html %}
<h3>{{ name }}</h3>
{{ html | safe }}
{% endfor %}
{% endfor %}
{% if parameters %}
<h2 id="parameters">Run parameters</h2>
<table class="meta">
{% for key, value in parameters.items() %}<tr><th>{{ key }}</th><td>{{ value }}</td></tr>
{% endfor %}
</table>
{% endif %}
{% if versions %}
<h2 id="versions">Software versions</h2>
<table class="meta">
{% for key, value in versions.items() %}<tr><th>{{ key }}</th><td>{{ value }}</td></tr>
{% endfor %}
</table>
{% endif %}
</body>
</html>
"""


class ReportError(Exception):
    """Base exception for report rendering."""

    pass


@dataclass
class ReportSection:
    """
    One report section.

    Attributes:
        title: Section heading
        text: Paragraph shown under the heading
        figures: (caption, plotly Figure) pairs
        tables: (caption, DataFrame) pairs
    """

    title: str
    text: str = ""
    figures: List[Tuple[str, Any]] = field(default_factory=list)
    tables: List[Tuple[str, pd.DataFrame]] = field(default_factory=list)


def _flatten(parameters: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat = {}
    for key, value in parameters.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


class ReportService:
    """Renders ``ReportSection`` lists to a standalone HTML file with Jinja2."""

    def __init__(self, max_table_rows: int = 50):
        self.max_table_rows = max_table_rows
        self.env = Environment(autoescape=select_autoescape(default_for_string=True))
        self.template = self.env.from_string(REPORT_TEMPLATE)

    def _table_html(self, table: pd.DataFrame) -> str:
        shown = table.head(self.max_table_rows)
        html = shown.to_html(
            classes="dataframe", float_format=lambda v: f"{v:.4g}", na_rep="NA", border=0
        )
        if len(table) > len(shown):
            html += f"<p><em>Showing {len(shown)} of {len(table)} rows.</em></p>"
        return html

    def render_html(
        self,
        sections: List[ReportSection],
        path: Union[str, Path],
        title: str = "Differential expression report",
        parameters: Optional[Dict[str, Any]] = None,
        versions: Optional[Dict[str, str]] = None,
    ) -> Tuple[Path, Dict[str, Any]]:
        """
        Write the report.

        Args:
            sections: Report sections in display order
            path: Output HTML path
            title: Report title
            parameters: Run parameters (nested dicts are flattened)
            versions: Package -> version

        Returns:
            Tuple of (written path, stats)

        Raises:
            ReportError: If a figure cannot be serialized or the file cannot be written
        """
        path = Path(path)
        try:
            rendered_sections = []
            n_figures = n_tables = 0
            for section in sections:
                figure_html = [
                    (name, fig.to_html(full_html=False, include_plotlyjs="cdn"))
                    for name, fig in section.figures
                ]
                table_html = [(name, self._table_html(df)) for name, df in section.tables]
                n_figures += len(figure_html)
                n_tables += len(table_html)
                rendered_sections.append(
                    {
                        "title": section.title,
                        "text": section.text,
                        "figure_html": figure_html,
                        "table_html": table_html,
                    }
                )

            html = self.template.render(
                title=title,
                generated=datetime.now().strftime("%Y-%m-%d %H:%M"),
                sections=rendered_sections,
                parameters=_flatten(parameters or {}),
                versions=versions or {},
            )
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(html, encoding="utf-8")
        except Exception as e:
            logger.exception(f"Error rendering report: {e}")
            raise ReportError(f"Failed to render report {path}: {e}") from e

        stats = {
            "path": str(path),
            "n_sections": len(sections),
            "n_figures": n_figures,
            "n_tables": n_tables,
            "size_kb": round(path.stat().st_size / 1024, 1),
        }
        logger.info(f"Report written to {path} ({n_figures} figures, {n_tables} tables)")
        return path, stats
