import json
from pathlib import Path

import pytest

from eksops.config import Settings, load_settings, read_tf_defaults
from eksops.errors import ConfigError

VARIABLES_TF = '''
variable "name_of_s3_bucket" {
  description = "Name of the bucket holding Terraform state"
  type        = string
  default     = "mundos-e-tf-state"
}

variable "dynamo_db_table_name" {
  type    = string
  default = "mundos-e-tf-locks"
}

variable "instance_type" {
  type = string
}
'''


class TestDefaults:
    def test_defaults(self, tmp_path):
        settings = load_settings(overrides={"project_root": tmp_path}, environ={})

        assert settings.cluster_name == "eks-mundos-e"
        assert settings.region == "us-east-1"
        assert settings.node_count == 3
        assert settings.storage_class == "ebs-sc"
        assert settings.fallback_storage_class == "gp2"
        assert settings.project_root == tmp_path

    def test_ssh_key_paths(self, tmp_path):
        settings = Settings(ssh_dir=str(tmp_path), ssh_key_name="pin")

        assert settings.ssh_private_key == tmp_path / "pin"
        assert settings.ssh_public_key == tmp_path / "pin.pub"


class TestLayering:
    def test_file_then_env_then_overrides(self, tmp_path):
        (tmp_path / "eksops.json").write_text(json.dumps({
            "cluster_name": "from-file",
            "node_count": 5,
            "region": "eu-west-1",
        }))
        environ = {"EKSOPS_NODE_COUNT": "7", "EKSOPS_PROJECT_ROOT": str(tmp_path)}

        settings = load_settings(overrides={"region": "us-west-2", "profile": None}, environ=environ)

        assert settings.cluster_name == "from-file"
        assert settings.node_count == 7
        assert settings.region == "us-west-2"
        assert settings.profile is None

    def test_env_values_are_coerced(self, tmp_path):
        environ = {"EKSOPS_POLL_INTERVAL": "2.5", "EKSOPS_PROJECT_ROOT": str(tmp_path)}

        settings = load_settings(environ=environ)

        assert settings.poll_interval == 2.5
        assert isinstance(settings.project_root, Path)

    def test_explicit_config_path(self, tmp_path):
        path = tmp_path / "custom.json"
        path.write_text(json.dumps({"grafana_namespace": "observability"}))

        settings = load_settings(config_path=path, overrides={"project_root": tmp_path}, environ={})

        assert settings.grafana_namespace == "observability"


class TestErrors:
    def test_unknown_key(self, tmp_path):
        (tmp_path / "eksops.json").write_text(json.dumps({"clustername": "typo"}))

        with pytest.raises(ConfigError, match="unknown settings clustername"):
            load_settings(overrides={"project_root": tmp_path}, environ={})

    def test_missing_explicit_config(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(config_path=tmp_path / "nope.json", environ={})

    def test_invalid_json(self, tmp_path):
        (tmp_path / "eksops.json").write_text("{")

        with pytest.raises(ConfigError):
            load_settings(overrides={"project_root": tmp_path}, environ={})

    def test_invalid_number(self, tmp_path):
        with pytest.raises(ConfigError, match="node_count"):
            load_settings(overrides={"project_root": tmp_path}, environ={"EKSOPS_NODE_COUNT": "three"})


class TestBackendNames:
    def test_read_from_variables_tf(self, tmp_path):
        backend = tmp_path / "00_terraform_backend"
        backend.mkdir()
        (backend / "variables.tf").write_text(VARIABLES_TF)

        settings = Settings(project_root=tmp_path)

        assert settings.backend_names() == ("mundos-e-tf-state", "mundos-e-tf-locks")

    def test_explicit_names_win(self, tmp_path):
        settings = Settings(project_root=tmp_path, state_bucket="b", lock_table="t")

        assert settings.backend_names() == ("b", "t")

    def test_variables_without_default_are_ignored(self, tmp_path):
        path = tmp_path / "variables.tf"
        path.write_text(VARIABLES_TF)

        assert "instance_type" not in read_tf_defaults(path)
        assert read_tf_defaults(tmp_path / "missing.tf") == {}
