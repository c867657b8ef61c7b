"""Allow ``python -m bulkde``."""

from bulkde.cli import app

if __name__ == "__main__":
    app()
