"""Tests for configuration loading and request validation.

Covers:
  - YAML and environment loading
  - Password resolution from env vars
  - Required volume group
  - MigrationRequest immutability and field checks
  - VM ID parsing and the request validator
"""

import pytest
import yaml
from pydantic import ValidationError

from esxi2pve.tests.fakes import FakeExecutor


# ═══════════════════════════════════════════════════════════════════
#  AppConfig
# ═══════════════════════════════════════════════════════════════════

class TestAppConfig:
    def test_from_yaml(self, tmp_path, monkeypatch):
        from esxi2pve.config import AppConfig
        monkeypatch.setenv("ESXI_PASSWORD", "from-env")
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "esxi": {"host": "esxi01.lab", "datastore": "ssd01"},
            "proxmox": {"volume_group": "pve", "bridge": "vmbr1"},
            "conversion": {"work_dir": str(tmp_path), "disk_format": "qcow2", "parallel_conversions": 2},
            "migration": {"existing_artifact": "reuse"},
        }))

        config = AppConfig.from_yaml(path)
        assert config.esxi.secret() == "from-env"
        assert config.esxi.datastore == "ssd01"
        assert config.proxmox.bridge == "vmbr1"
        assert not config.proxmox.is_remote
        assert config.conversion.disk_format == "qcow2"
        assert config.migration.existing_artifact == "reuse"
        assert config.migration.strict_firmware is True

    def test_from_env(self, monkeypatch):
        from esxi2pve.config import AppConfig
        monkeypatch.setenv("ESXI_HOST", "10.0.0.5")
        monkeypatch.setenv("ESXI_PASSWORD", "pw")
        monkeypatch.setenv("PVE_VOLUME_GROUP", "data")
        monkeypatch.delenv("PVE_HOST", raising=False)

        config = AppConfig.from_env_and_args(conversion={"parallel_conversions": 4, "disk_format": None})
        assert config.esxi.host == "10.0.0.5"
        assert config.proxmox.volume_group == "data"
        assert config.conversion.parallel_conversions == 4
        assert config.conversion.disk_format == "raw"

    def test_missing_password(self, monkeypatch):
        from esxi2pve.config import ESXiConfig
        monkeypatch.delenv("ESXI_PASSWORD", raising=False)
        with pytest.raises(ValidationError, match="password"):
            ESXiConfig(host="esxi01")

    def test_volume_group_required(self):
        from esxi2pve.config import ProxmoxConfig
        with pytest.raises(ValidationError):
            ProxmoxConfig()
        with pytest.raises(ValidationError):
            ProxmoxConfig(volume_group="")

    def test_remote_proxmox_needs_password(self, monkeypatch):
        from esxi2pve.config import ProxmoxConfig
        monkeypatch.delenv("PVE_PASSWORD", raising=False)
        with pytest.raises(ValidationError):
            ProxmoxConfig(host="pve01", volume_group="pve")
        monkeypatch.setenv("PVE_PASSWORD", "pw")
        assert ProxmoxConfig(host="pve01", volume_group="pve").is_remote

    def test_parallelism_bounds(self):
        from esxi2pve.config import ConversionConfig
        with pytest.raises(ValidationError):
            ConversionConfig(parallel_conversions=0)
        with pytest.raises(ValidationError):
            ConversionConfig(parallel_conversions=9)


# ═══════════════════════════════════════════════════════════════════
#  MigrationRequest
# ═══════════════════════════════════════════════════════════════════

class TestMigrationRequest:
    def test_frozen(self, app_config):
        request = app_config.request_for("web01", 150)
        with pytest.raises(ValidationError):
            request.vmid = 151

    def test_local_has_no_destination(self, app_config):
        assert app_config.request_for("web01", 150).destination is None

    def test_vlan_range(self, app_config):
        with pytest.raises(ValidationError):
            app_config.request_for("web01", 150, vlan_tag=0)
        with pytest.raises(ValidationError):
            app_config.request_for("web01", 150, vlan_tag=4095)

    def test_name_with_slash(self, app_config):
        with pytest.raises(ValidationError):
            app_config.request_for("../etc", 150)


# ═══════════════════════════════════════════════════════════════════
#  VM ID parsing / RequestValidator
# ═══════════════════════════════════════════════════════════════════

class TestParseVmid:
    @pytest.mark.parametrize("value, expected", [(100, 100), ("150", 150), (" 4242 ", 4242)])
    def test_valid(self, value, expected):
        from esxi2pve.pipeline.validator import parse_vmid
        assert parse_vmid(value) == expected

    @pytest.mark.parametrize("value", [99, 0, "99", "abc", "", "1e3", "-150", "150.0", True, None])
    def test_invalid(self, value):
        from esxi2pve.errors import InvalidIdentifier
        from esxi2pve.pipeline.validator import parse_vmid
        with pytest.raises(InvalidIdentifier):
            parse_vmid(value)


class TestRequestValidator:
    def test_all_pass(self, app_config):
        from esxi2pve.pipeline.validator import RequestValidator
        from esxi2pve.proxmox.qm import ProxmoxHost
        report = RequestValidator().validate(app_config.request_for("web01", 150), ProxmoxHost(FakeExecutor()))
        assert report.passed
        assert [c.name for c in report.checks] == ["Required inputs", "VM ID", "VM ID free"]

    def test_bad_id_skips_lookup(self, app_config):
        from esxi2pve.errors import InvalidIdentifier
        from esxi2pve.pipeline.validator import RequestValidator
        from esxi2pve.proxmox.qm import ProxmoxHost
        ex = FakeExecutor()
        report = RequestValidator().validate(app_config.request_for("web01", 50), ProxmoxHost(ex))
        assert not report.passed
        assert ex.calls == []
        with pytest.raises(InvalidIdentifier):
            report.raise_for_failures()

    def test_conflict(self, app_config):
        from esxi2pve.errors import IdentifierConflict
        from esxi2pve.pipeline.validator import RequestValidator
        from esxi2pve.proxmox.qm import ProxmoxHost
        report = RequestValidator().validate(
            app_config.request_for("web01", 150), ProxmoxHost(FakeExecutor(existing_vmids={150})),
        )
        with pytest.raises(IdentifierConflict, match="150"):
            report.raise_for_failures()
