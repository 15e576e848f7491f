"""Load and validate dataset definitions from YAML files."""

import os
import logging
from pathlib import Path
from typing import Dict, List, Optional
import yaml
from pydantic import ValidationError

from .errors import DatasetDefinitionError
from .models import DatasetSpec


logger = logging.getLogger(__name__)


class DatasetLoader:
    """Load dataset definitions from YAML files."""

    def __init__(self, datasets_dir: Optional[str] = None):
        """
        Initialize dataset loader.

        Args:
            datasets_dir: Directory containing dataset YAML files.
                          If None, uses DATATABLE_DEFINITIONS_PATH env var.
                          Raises ValueError if neither is provided.
        """
        if datasets_dir is None:
            datasets_dir = os.getenv("DATATABLE_DEFINITIONS_PATH")

        if datasets_dir is None:
            raise ValueError(
                "datasets_dir must be provided or DATATABLE_DEFINITIONS_PATH env var must be set"
            )

        self.datasets_dir = Path(datasets_dir)
        self.datasets: Dict[str, DatasetSpec] = {}

        if not self.datasets_dir.exists():
            logger.warning(f"Datasets directory not found: {self.datasets_dir}")
            return

        self._load_all_datasets()

    def _load_all_datasets(self):
        """Load all YAML files and validate with Pydantic."""
        if not self.datasets_dir.is_dir():
            logger.error(f"Datasets path is not a directory: {self.datasets_dir}")
            return

        yaml_files = sorted(
            list(self.datasets_dir.glob("*.yaml")) + list(self.datasets_dir.glob("*.yml"))
        )

        if not yaml_files:
            logger.warning(f"No YAML files found in {self.datasets_dir}")
            return

        logger.info(f"Loading datasets from {self.datasets_dir}")

        for yaml_file in yaml_files:
            try:
                with open(yaml_file, 'r') as f:
                    raw_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                logger.error(f"Failed to parse {yaml_file}: {e}")
                raise DatasetDefinitionError(f"{yaml_file.name}: {e}") from e

            if not raw_data:
                logger.warning(f"Empty YAML file: {yaml_file}")
                continue

            try:
                spec = DatasetSpec(**raw_data)
            except ValidationError as e:
                logger.error(f"Validation failed for {yaml_file}: {e}")
                raise DatasetDefinitionError(f"{yaml_file.name}: {e}") from e

            if spec.name is None:
                spec = spec.model_copy(update={"name": yaml_file.stem})

            if spec.enabled:
                self.datasets[spec.name] = spec
                logger.info(f"Loaded dataset: {spec.name} (table: {spec.table})")
            else:
                logger.info(f"Skipped disabled dataset: {spec.name}")

        logger.info(f"Loaded {len(self.datasets)} enabled datasets")

    def add(self, dataset_id: str, spec: DatasetSpec):
        """Register a dataset defined in code."""
        if spec.name is None:
            spec = spec.model_copy(update={"name": dataset_id})
        self.datasets[dataset_id] = spec

    def get_dataset(self, dataset_id: str) -> Optional[DatasetSpec]:
        """Get dataset by id (its name, or the file name without .yaml)."""
        return self.datasets.get(dataset_id)

    def get_all_datasets(self) -> List[DatasetSpec]:
        """Get all enabled datasets."""
        return list(self.datasets.values())

    def reload(self):
        """Hot-reload dataset definitions."""
        self.datasets.clear()
        self._load_all_datasets()
