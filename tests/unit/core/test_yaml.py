"""
Unit tests for core.yaml module.

Tests:
- Loading valid YAML mappings
- Empty files
- Missing files, syntax errors and non-mapping documents
"""

from pathlib import Path

import pytest

from relaypool.core.exceptions import ConfigurationError
from relaypool.core.yaml import load_yaml


class TestLoadYaml:
    def test_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "pool.yaml"
        path.write_text("name: main\nrelays:\n  - wss://relay.example.com\n")
        assert load_yaml(path) == {"name": "main", "relays": ["wss://relay.example.com"]}

    def test_accepts_str_path(self, tmp_path: Path) -> None:
        path = tmp_path / "pool.yaml"
        path.write_text("a: 1\n")
        assert load_yaml(str(path)) == {"a": 1}

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "nope.yaml")

    def test_invalid_syntax(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("key: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_yaml(path)

    def test_top_level_list_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_yaml(path)

    def test_python_tags_not_executed(self, tmp_path: Path) -> None:
        path = tmp_path / "unsafe.yaml"
        path.write_text("x: !!python/object/apply:os.system ['true']\n")
        with pytest.raises(ConfigurationError):
            load_yaml(path)
