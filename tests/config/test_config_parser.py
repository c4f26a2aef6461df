"""Tests for declaration parsing and validation."""

from pathlib import Path

import pytest
import yaml

from converge.config.parser import Config, ConfigValidationError


def write_declaration(tmp_path, data):
    path = tmp_path / "converge.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestConfigLoad:
    """Test loading declaration files."""

    def test_load_valid_declaration(self, tmp_path):
        path = write_declaration(tmp_path, {
            "project": {"name": "demo"},
            "settings": {"max_workers": 4, "providers": {"AWS__*": "cloudcontrol"}},
            "resources": [
                {"type": "network", "name": "main", "attributes": {"cidr_block": "10.0.0.0/16"}},
                {"type": "subnet", "name": "a", "attributes": {"network_id": "${network.main.id}"}},
            ],
        })

        config = Config(path).load()

        assert config.project.name == "demo"
        assert config.settings.max_workers == 4
        assert [r.id for r in config.resources] == ["network.main", "subnet.a"]
        assert config.get_resource("subnet.a").attributes["network_id"] == "${network.main.id}"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config(str(tmp_path / "nope.yaml")).load()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "converge.yaml"
        path.write_text("project: [unclosed")

        with pytest.raises(ConfigValidationError, match="Failed to parse YAML"):
            Config(str(path)).load()

    def test_default_paths(self, make_config):
        config = make_config([])

        assert config.get_state_path() == Path(".converge/state/test.json")
        assert config.get_local_store_path() == Path(".converge/local/test.json")

    def test_settings_override_paths(self, make_config):
        config = make_config([], state_path="s.json", local_store="l.json")

        assert config.get_state_path() == Path("s.json")
        assert config.get_local_store_path() == Path("l.json")


class TestConfigValidation:
    """Test schema errors are collected and located."""

    def test_missing_project(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            Config.from_dict({"resources": []})

        assert exc_info.value.errors[0]["loc"] == ["project"]

    def test_errors_are_located(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            Config.from_dict({
                "project": {"name": "Bad Name"},
                "resources": [{"type": "queue"}],
            })

        locations = [tuple(e["loc"]) for e in exc_info.value.errors]
        assert ("project", "name") in locations
        assert ("resources", 0, "name") in locations
        assert "resources -> 0 -> name" in str(exc_info.value)

    def test_duplicate_resource_ids(self, make_config):
        with pytest.raises(ConfigValidationError, match="Duplicate resource identifier: queue.a"):
            make_config([{"type": "queue", "name": "a"}, {"type": "queue", "name": "a"}])

    def test_lifecycle_must_name_declared_attributes(self, make_config):
        with pytest.raises(ConfigValidationError, match="immutable"):
            make_config([{
                "type": "queue", "name": "a",
                "attributes": {"size": 1},
                "lifecycle": {"immutable": ["fifo"]},
            }])

    def test_id_attribute_is_reserved(self, make_config):
        with pytest.raises(ConfigValidationError, match="reserved"):
            make_config([{"type": "queue", "name": "a", "attributes": {"id": "x"}}])

    def test_depends_on_format(self, make_config):
        with pytest.raises(ConfigValidationError, match="depends_on"):
            make_config([{"type": "queue", "name": "a", "depends_on": ["queue"]}])

    def test_invalid_identifier(self, make_config):
        with pytest.raises(ConfigValidationError):
            make_config([{"type": "queue", "name": "has.dot"}])

    def test_resources_must_be_a_list(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            Config.from_dict({"project": {"name": "demo"}, "resources": {"queue": {}}})

        assert exc_info.value.errors[0]["msg"] == "Resources must be a list"

    def test_to_dict(self, make_config):
        config = make_config([{"type": "queue", "name": "a"}])

        data = config.to_dict()

        assert data["project"]["name"] == "test"
        assert data["resources"][0]["lifecycle"]["create_before_destroy"] is False
