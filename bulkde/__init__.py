"""
bulkde: reproducible bulk RNA-Seq differential expression and gene-set enrichment.

The package runs a linear analysis (load counts, fit a negative-binomial GLM,
test a contrast, transform and visualize, enrich, report) and records every
step as provenance that can be replayed as a Jupyter notebook.
"""

from bulkde.version import __version__

__all__ = ["__version__"]
