"""Configuration: environment settings and per-run analysis config."""

from bulkde.config.analysis_config import AnalysisConfig
from bulkde.config.settings import get_settings

__all__ = ["AnalysisConfig", "get_settings"]
