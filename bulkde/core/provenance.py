"""
Provenance tracking for analysis runs.

Records W3C-PROV-like activities, entities and agents for every pipeline
step. Activities may embed the step's serialized ``AnalysisStep`` so that
the run can be exported as a notebook afterwards.
"""

import datetime
import hashlib
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from bulkde.core import ProvenanceError
from bulkde.core.analysis_ir import AnalysisStep

logger = logging.getLogger(__name__)

TRACKED_PACKAGES = [
    "pydeseq2",
    "gseapy",
    "anndata",
    "pandas",
    "numpy",
    "scipy",
    "sklearn",
    "statsmodels",
    "plotly",
]


def snapshot_versions() -> Dict[str, str]:
    """Versions of the analysis stack, plus Python and bulkde itself."""
    versions = {}

    for package in TRACKED_PACKAGES:
        try:
            module = __import__(package)
        except ImportError:
            continue
        versions[package] = getattr(module, "__version__", "unknown")

    from bulkde.version import __version__

    versions["bulkde"] = __version__
    versions["python"] = (
        f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    )
    return versions


def _json_default(value: Any):
    """Fallback encoder for numpy scalars, paths and other stray objects."""
    if hasattr(value, "item"):
        return value.item()
    if hasattr(value, "tolist"):
        return value.tolist()
    return str(value)


class ProvenanceTracker:
    """
    W3C-PROV-like provenance tracking system.

    One tracker lives for the duration of a pipeline run.
    """

    def __init__(self, namespace: str = "bulkde"):
        self.namespace = namespace
        self.activities: List[Dict[str, Any]] = []
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.agents: Dict[str, Dict[str, Any]] = {}
        self._versions: Optional[Dict[str, str]] = None

    @property
    def software_versions(self) -> Dict[str, str]:
        if self._versions is None:
            self._versions = snapshot_versions()
        return self._versions

    def create_activity(
        self,
        activity_type: str,
        agent: str,
        inputs: Optional[List[Dict[str, Any]]] = None,
        outputs: Optional[List[Dict[str, Any]]] = None,
        parameters: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        ir: Optional[AnalysisStep] = None,
        error: Optional[str] = None,
    ) -> str:
        """
        Create a new provenance activity record.

        Args:
            activity_type: Type of activity (e.g., 'fit_model', 'run_enrichment')
            agent: Agent id performing the activity
            inputs: List of input entity references
            outputs: List of output entity references
            parameters: Parameters used in the activity
            description: Human-readable description
            ir: Replayable step emitted by the service
            error: Error message when the activity failed

        Returns:
            str: Unique activity ID
        """
        activity_id = f"{self.namespace}:activity:{uuid.uuid4()}"

        activity = {
            "id": activity_id,
            "type": activity_type,
            "agent": agent,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "inputs": inputs or [],
            "outputs": outputs or [],
            "parameters": parameters or {},
            "description": description,
            "ir": ir.to_dict() if ir is not None else None,
            "error": error,
        }

        self.activities.append(activity)
        logger.debug(f"Created activity: {activity_id} ({activity_type})")

        return activity_id

    def create_entity(
        self,
        entity_type: str,
        uri: Union[str, Path, None] = None,
        checksum: Optional[str] = None,
        format: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a new provenance entity record.

        A SHA256 checksum is computed when ``uri`` points at an existing file.
        """
        entity_id = f"{self.namespace}:entity:{uuid.uuid4()}"

        if checksum is None and uri is not None:
            checksum = self._calculate_checksum(uri)

        self.entities[entity_id] = {
            "id": entity_id,
            "type": entity_type,
            "uri": str(uri) if uri else None,
            "checksum": checksum,
            "format": format or (self._detect_format(uri) if uri else None),
            "metadata": metadata or {},
            "created": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        logger.debug(f"Created entity: {entity_id} ({entity_type})")

        return entity_id

    def create_agent(
        self,
        name: str,
        agent_type: str = "software",
        version: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """Register an agent once and return its id."""
        agent_id = f"{self.namespace}:agent:{name.replace(' ', '_').lower()}"

        if agent_id not in self.agents:
            self.agents[agent_id] = {
                "id": agent_id,
                "name": name,
                "type": agent_type,
                "version": version,
                "description": description,
            }
            logger.debug(f"Created agent: {agent_id}")

        return agent_id

    def log_step(
        self,
        tool_name: str,
        service_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        ir: Optional[AnalysisStep] = None,
        output_paths: Optional[List[Union[str, Path]]] = None,
    ) -> str:
        """
        Log a successful pipeline step.

        Args:
            tool_name: Service method that ran (becomes the activity type)
            service_name: Service class name (becomes the agent)
            parameters: Parameters used
            description: Human-readable description
            ir: Replayable step emitted by the service
            output_paths: Files written by the step

        Returns:
            str: Activity ID
        """
        agent_id = self.create_agent(service_name, description="bulkde service")
        outputs = [
            {"entity": self.create_entity("output_file", uri=path), "role": "output"}
            for path in (output_paths or [])
        ]

        return self.create_activity(
            activity_type=tool_name,
            agent=agent_id,
            outputs=outputs,
            parameters=parameters,
            description=description,
            ir=ir,
        )

    def log_data_loading(
        self,
        source_paths: List[Union[str, Path]],
        loader_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        ir: Optional[AnalysisStep] = None,
    ) -> str:
        """Log loading of input files, fingerprinting each source."""
        inputs = [
            {
                "entity": self.create_entity("source_file", uri=path),
                "role": "source",
            }
            for path in source_paths
        ]
        agent_id = self.create_agent(
            loader_name, description="Loader for count matrices and metadata"
        )

        return self.create_activity(
            activity_type="load_dataset",
            agent=agent_id,
            inputs=inputs,
            parameters=parameters,
            description=f"Loaded {', '.join(str(p) for p in source_paths)}",
            ir=ir,
        )

    def log_failure(self, tool_name: str, service_name: str, error: Exception) -> str:
        """Record a failed step. Failed activities are excluded from notebook export."""
        agent_id = self.create_agent(service_name)
        return self.create_activity(
            activity_type="failed_operation",
            agent=agent_id,
            parameters={"tool_name": tool_name},
            description=f"{tool_name} failed",
            error=str(error),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "activities": self.activities,
            "entities": self.entities,
            "agents": self.agents,
            "software_versions": self.software_versions,
            "export_timestamp": datetime.datetime.now(
                datetime.timezone.utc
            ).isoformat(),
        }

    def save(self, path: Union[str, Path]) -> Path:
        """Write the provenance record as JSON."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(self.to_dict(), f, indent=2, default=_json_default)
        except OSError as e:
            raise ProvenanceError(
                f"Failed to write provenance to {path}: {e}", {"path": str(path)}
            ) from e
        return path

    def _calculate_checksum(self, path: Union[str, Path]) -> Optional[str]:
        """Calculate SHA256 checksum of a file."""
        path = Path(path)
        if not path.is_file():
            return None

        sha256_hash = hashlib.sha256()
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(4096), b""):
                    sha256_hash.update(chunk)
        except OSError as e:
            logger.warning(f"Failed to calculate checksum for {path}: {e}")
            return None

        return sha256_hash.hexdigest()

    def _detect_format(self, path: Union[str, Path]) -> str:
        extension = Path(path).suffix.lower()

        format_mapping = {
            ".csv": "csv",
            ".tsv": "tsv",
            ".txt": "txt",
            ".pkl": "pickle",
            ".pickle": "pickle",
            ".parquet": "parquet",
            ".h5ad": "h5ad",
            ".json": "json",
            ".html": "html",
            ".png": "png",
            ".ipynb": "ipynb",
        }

        return format_mapping.get(extension, "unknown")
