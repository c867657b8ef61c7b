"""
PlotManager: figure storage and export for one analysis run.

Figures are kept in insertion order under a unique name so the report can
embed them, and are written to ``<output_dir>/plots`` as standalone HTML
(plus PNG through kaleido when enabled).
"""

import logging
from collections import OrderedDict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import plotly.io as pio

if TYPE_CHECKING:
    from plotly.graph_objects import Figure

logger = logging.getLogger(__name__)


class SuppressKaleidoLogging:
    """Context manager to suppress Kaleido's verbose logging during PNG export."""

    def __init__(self):
        self.original_level = logging.WARNING

    def __enter__(self):
        logging.getLogger("kaleido").setLevel(logging.ERROR)
        logging.getLogger("plotly").setLevel(logging.ERROR)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.getLogger("kaleido").setLevel(self.original_level)
        logging.getLogger("plotly").setLevel(self.original_level)
        return False


def safe_filename(title: str, max_length: int = 80) -> str:
    """Filesystem-safe version of a plot title."""
    if len(title) > max_length:
        available = max_length - 3
        title = f"{title[:(available + 1) // 2]}...{title[-(available // 2):]}"
    cleaned = "".join(c for c in title if c.isalnum() or c in [" ", "_", "-"]).strip()
    return cleaned.replace(" ", "_") or "plot"


class PlotManager:
    """
    Ordered collection of named figures with HTML/PNG export.

    Args:
        output_dir: Run output directory; figures go to ``output_dir/plots``
        save_png: Also write static PNGs (failures only log a warning)
    """

    def __init__(self, output_dir: Path, save_png: bool = False):
        self.plots_dir = Path(output_dir) / "plots"
        self.save_png = save_png
        self.figures: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def add_plot(
        self, name: str, figure: "Figure", title: Optional[str] = None, section: str = "Results"
    ) -> str:
        """Register a figure; a repeated name gets a numeric suffix."""
        key = safe_filename(name)
        if key in self.figures:
            suffix = 2
            while f"{key}_{suffix}" in self.figures:
                suffix += 1
            key = f"{key}_{suffix}"

        self.figures[key] = {
            "figure": figure,
            "title": title or name,
            "section": section,
            "file_path": None,
        }
        logger.debug(f"Registered plot '{key}'")
        return key

    def get_plot(self, name: str) -> Optional["Figure"]:
        entry = self.figures.get(name)
        return entry["figure"] if entry else None

    def by_section(self) -> Dict[str, List[Tuple[str, "Figure"]]]:
        """Figures grouped by report section, in insertion order."""
        grouped: Dict[str, List[Tuple[str, "Figure"]]] = OrderedDict()
        for entry in self.figures.values():
            grouped.setdefault(entry["section"], []).append((entry["title"], entry["figure"]))
        return grouped

    def save_figure(self, name: str) -> List[str]:
        """Write one registered figure; returns the written paths."""
        entry = self.figures[name]
        self.plots_dir.mkdir(parents=True, exist_ok=True)

        html_path = self.plots_dir / f"{name}.html"
        pio.write_html(entry["figure"], html_path)
        entry["file_path"] = str(html_path)
        written = [str(html_path)]

        if self.save_png:
            png_path = self.plots_dir / f"{name}.png"
            try:
                with SuppressKaleidoLogging():
                    pio.write_image(entry["figure"], png_path)
                written.append(str(png_path))
            except Exception as e:
                logger.warning(f"Could not save PNG for {name}: {e}")
        return written

    def save_all(self) -> Tuple[List[str], Dict[str, Any]]:
        """Write every registered figure to the plots directory."""
        saved: List[str] = []
        for name in self.figures:
            saved.extend(self.save_figure(name))
            logger.info(f"Saved plot {name}")

        stats = {
            "saved_count": len(saved),
            "total_plots": len(self.figures),
            "plots_dir": str(self.plots_dir),
        }
        return saved, stats
