"""
Application settings.

Environment-level configuration (log level, workspace, remote service
endpoints). Values are read from the process environment after loading an
optional ``.env`` file. Per-analysis parameters live in
``bulkde.config.analysis_config``.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

DEFAULT_BIOMART_HOST = "www.ensembl.org"
DEFAULT_KEGG_REST_URL = "https://rest.kegg.jp"


class Settings:
    """
    Application settings with environment variable support.

    Every value can be overridden through a ``BULKDE_*`` environment variable
    or an entry in a ``.env`` file in the working directory.
    """

    def __init__(self):
        load_dotenv()

        self.BASE_DIR = Path(__file__).resolve().parent.parent

        # Logging
        self.LOG_LEVEL = os.environ.get("BULKDE_LOG_LEVEL", "INFO").upper()

        # Default output location for runs without an explicit output_dir
        self.WORKSPACE = Path(
            os.environ.get("BULKDE_WORKSPACE", Path.cwd() / "bulkde_results")
        )

        # Remote services
        self.BIOMART_HOST = os.environ.get("BULKDE_BIOMART_HOST", DEFAULT_BIOMART_HOST)
        self.KEGG_REST_URL = os.environ.get(
            "BULKDE_KEGG_REST_URL", DEFAULT_KEGG_REST_URL
        ).rstrip("/")
        self.HTTP_TIMEOUT = float(os.environ.get("BULKDE_HTTP_TIMEOUT", "60"))

        # Static PNG export of figures through kaleido
        self.SAVE_PNG = os.environ.get("BULKDE_SAVE_PNG", "false").lower() == "true"

        self._config_error = self.validate_configuration()

    @property
    def log_level(self) -> int:
        """Numeric logging level, WARNING if the configured name is unknown."""
        level = logging.getLevelName(self.LOG_LEVEL)
        return level if isinstance(level, int) else logging.WARNING

    def validate_configuration(self) -> Optional[str]:
        """Return an error message for invalid values, or None."""
        if self.LOG_LEVEL not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return f"Invalid BULKDE_LOG_LEVEL: {self.LOG_LEVEL}"
        if self.HTTP_TIMEOUT <= 0:
            return f"BULKDE_HTTP_TIMEOUT must be positive, got {self.HTTP_TIMEOUT}"
        return None

    @property
    def config_error(self) -> Optional[str]:
        return self._config_error

    def get_all_settings(self) -> Dict[str, Any]:
        """Public (upper-case) settings as a dictionary."""
        return {
            key: str(value) if isinstance(value, Path) else value
            for key, value in vars(self).items()
            if key.isupper()
        }


settings = Settings()


def get_settings() -> Settings:
    """Get the shared settings instance."""
    return settings
