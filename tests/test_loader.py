"""Tests for gridquery.datatable.loader."""

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from gridquery.datatable import DatasetDefinitionError, DatasetLoader


SAMPLE_DATASET_YAML = """
table: "wp_app_platform_staff s"
description: "Platform staff listing"
columns:
  - s.id
  - s.employee_id
  - s.full_name
  - s.department
searchable_columns:
  - s.employee_id
  - s.full_name
primary_key: s.id
conditions:
  - "s.deleted_at IS NULL"
  - sql: "s.department <> ?"
    params: ["archive"]
joins:
  - "LEFT JOIN wp_users u ON u.ID = s.user_id"
status_column: s.status
status_default: aktif
"""

SAMPLE_MINIMAL_YAML = """
table: customers
columns: [id, name]
"""

DISABLED_DATASET_YAML = """
table: legacy
columns: [id]
enabled: false
"""

INVALID_DATASET_YAML = """
table: customers
columns: []
"""


@pytest.fixture
def temp_datasets_dir():
    """Create a temporary directory with test dataset YAML files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        (Path(tmpdir) / "staff.yaml").write_text(SAMPLE_DATASET_YAML)
        (Path(tmpdir) / "customers.yml").write_text(SAMPLE_MINIMAL_YAML)
        (Path(tmpdir) / "legacy.yaml").write_text(DISABLED_DATASET_YAML)
        yield tmpdir


class TestDatasetLoader:
    """Tests for DatasetLoader."""

    def test_load_datasets_from_directory(self, temp_datasets_dir):
        """Test loading datasets from directory."""
        loader = DatasetLoader(datasets_dir=temp_datasets_dir)
        # Disabled one is skipped
        assert len(loader.datasets) == 2
        assert "staff" in loader.datasets
        assert "customers" in loader.datasets
        assert "legacy" not in loader.datasets

    def test_get_dataset(self, temp_datasets_dir):
        """Test getting a dataset by id."""
        loader = DatasetLoader(datasets_dir=temp_datasets_dir)
        spec = loader.get_dataset("staff")
        assert spec is not None
        assert spec.table == "wp_app_platform_staff s"
        assert spec.conditions[1].params == ("archive",)
        assert spec.status_default == "aktif"

    def test_get_dataset_not_found(self, temp_datasets_dir):
        """Test getting non-existent dataset returns None."""
        loader = DatasetLoader(datasets_dir=temp_datasets_dir)
        assert loader.get_dataset("nonexistent") is None

    def test_get_all_datasets(self, temp_datasets_dir):
        """Test getting all datasets."""
        loader = DatasetLoader(datasets_dir=temp_datasets_dir)
        assert len(loader.get_all_datasets()) == 2

    def test_reload(self, temp_datasets_dir):
        """Test hot-reload picks up new files."""
        loader = DatasetLoader(datasets_dir=temp_datasets_dir)
        (Path(temp_datasets_dir) / "orders.yaml").write_text("table: orders\ncolumns: [id]\n")
        loader.reload()
        assert "orders" in loader.datasets
        assert len(loader.datasets) == 3

    def test_invalid_definition_raises(self, temp_datasets_dir):
        """Test validation failures stop loading."""
        (Path(temp_datasets_dir) / "broken.yaml").write_text(INVALID_DATASET_YAML)
        with pytest.raises(DatasetDefinitionError, match="broken.yaml"):
            DatasetLoader(datasets_dir=temp_datasets_dir)

    def test_unparseable_yaml_raises(self, temp_datasets_dir):
        """Test YAML syntax errors are reported."""
        (Path(temp_datasets_dir) / "bad.yaml").write_text("table: [unclosed\n")
        with pytest.raises(DatasetDefinitionError):
            DatasetLoader(datasets_dir=temp_datasets_dir)

    def test_missing_directory(self, tmp_path):
        """Test a missing directory yields no datasets."""
        loader = DatasetLoader(datasets_dir=str(tmp_path / "missing"))
        assert loader.datasets == {}

    def test_add_in_code(self, tmp_path):
        """Test datasets can be registered from code."""
        from gridquery.datatable import DatasetSpec

        loader = DatasetLoader(datasets_dir=str(tmp_path))
        loader.add("inline", DatasetSpec(table="t", columns=["id"]))
        assert loader.get_dataset("inline").table == "t"

    def test_requires_datasets_dir(self):
        """Test that datasets_dir is required."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError, match="datasets_dir must be provided"):
                DatasetLoader()

    def test_uses_env_var(self, temp_datasets_dir):
        """Test that DATATABLE_DEFINITIONS_PATH env var is used."""
        with patch.dict(os.environ, {"DATATABLE_DEFINITIONS_PATH": temp_datasets_dir}):
            loader = DatasetLoader()
            assert len(loader.datasets) == 2
