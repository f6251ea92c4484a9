"""
Unit tests for core.yaml module.

Tests:
- load_yaml() mappings, empty files, missing files
- Invalid YAML and non-mapping documents raise ConfigurationError
- safe_load refuses Python object tags
"""

import pytest

from nostrsync.core.exceptions import ConfigurationError
from nostrsync.core.yaml import load_yaml


class TestLoadYaml:
    """load_yaml()."""

    def test_mapping(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("interval: 30\nrelays:\n  outbox_size: 8\n")
        assert load_yaml(path) == {"interval": 30, "relays": {"outbox_size": 8}}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(str(path)) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("key: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_yaml(path)

    def test_top_level_list(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_yaml(path)

    def test_python_tags_rejected(self, tmp_path):
        path = tmp_path / "evil.yaml"
        path.write_text("x: !!python/object/apply:os.system ['true']\n")
        with pytest.raises(ConfigurationError):
            load_yaml(path)
