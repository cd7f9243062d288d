"""Tests for the click command-line interface."""

import pytest
import yaml
from click.testing import CliRunner

from esxi2pve.tests.fakes import FakeExecutor, ovf_descriptor
from esxi2pve.utils.subprocess import CommandResult


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "esxi2pve.yaml"
    path.write_text(yaml.safe_dump({
        "esxi": {"host": "esxi.local", "password": "s3cret"},
        "proxmox": {"volume_group": "pve"},
        "conversion": {"work_dir": str(tmp_path / "work")},
    }))
    return path


class TestDetectFirmware:
    def test_uefi(self, tmp_path):
        from esxi2pve.cli import main
        path = tmp_path / "db01.ovf"
        path.write_text(ovf_descriptor("db01", "efi"))
        result = CliRunner().invoke(main, ["detect-firmware", str(path)])
        assert result.exit_code == 0
        assert "UEFI" in result.output

    def test_vmx_bios(self, tmp_path):
        from esxi2pve.cli import main
        path = tmp_path / "web01.vmx"
        path.write_text('guestOS = "ubuntu-64"\n')
        result = CliRunner().invoke(main, ["detect-firmware", str(path)])
        assert result.exit_code == 0
        assert "BIOS" in result.output


class TestPreflight:
    def test_missing_tool_fails(self, monkeypatch):
        from esxi2pve.cli import main
        from esxi2pve.pipeline import validator
        monkeypatch.setattr(
            validator, "verify_required_tools",
            lambda include_destination: {"ovftool": False, "qemu-img": True, "virt-customize": True},
        )
        result = CliRunner().invoke(main, ["preflight", "--remote-destination"])
        assert result.exit_code == 1
        assert "Missing: ovftool" in result.output

    def test_all_present(self, monkeypatch):
        from esxi2pve.cli import main
        from esxi2pve.pipeline import validator
        monkeypatch.setattr(validator, "verify_required_tools", lambda include_destination: {"qm": True})
        assert CliRunner().invoke(main, ["preflight"]).exit_code == 0


@pytest.fixture
def tools_present(monkeypatch):
    from esxi2pve.pipeline import validator
    monkeypatch.setattr(validator, "verify_required_tools", lambda include_destination: {"ovftool": True})


class TestMigrate:
    ARGS = ["--vm", "web01", "--vmid", "150", "--vlan", "80", "--storage", "pool-a"]

    def test_missing_tools_abort(self, config_file, monkeypatch):
        from esxi2pve.cli import main
        from esxi2pve.pipeline import validator
        from esxi2pve.pipeline.migration import MigrationPipeline

        def must_not_run(self, request):
            raise AssertionError("pipeline ran without its tools")

        monkeypatch.setattr(validator, "verify_required_tools", lambda include_destination: {"ovftool": False})
        monkeypatch.setattr(MigrationPipeline, "run", must_not_run)
        result = CliRunner().invoke(main, ["migrate", "--config", str(config_file), *self.ARGS])
        assert result.exit_code == 1
        assert "ovftool" in result.output

    def test_dry_run(self, config_file):
        from esxi2pve.cli import main
        result = CliRunner().invoke(main, ["migrate", "--config", str(config_file), *self.ARGS, "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "DRY RUN" in result.output

    def test_invalid_vlan(self, config_file):
        from esxi2pve.cli import main
        args = ["migrate", "--config", str(config_file), "--vm", "web01", "--vmid", "150",
                "--vlan", "5000", "--storage", "pool-a"]
        result = CliRunner().invoke(main, args)
        assert result.exit_code == 1
        assert "Invalid request" in result.output

    def test_failure_after_create_hints_cleanup(self, config_file, monkeypatch, tools_present):
        from esxi2pve.cli import main
        from esxi2pve.errors import DiskImportFailed
        from esxi2pve.pipeline.migration import MigrationPipeline, MigrationResult

        def failed_run(self, request):
            error = DiskImportFailed("Import of disk 0 failed", index=0, vmid=request.vmid, stage="attach_disks")
            return MigrationResult(
                success=False, migration_id="abcd1234", vm_name=request.vm_name, vmid=request.vmid,
                failed_stage="attach_disks", error=error,
            )

        monkeypatch.setattr(MigrationPipeline, "run", failed_run)
        result = CliRunner().invoke(main, ["migrate", "--config", str(config_file), *self.ARGS])
        assert result.exit_code == 1
        assert "attach_disks" in result.output
        assert "qm destroy 150" in result.output

    def test_existing_option_sets_policy(self, config_file, monkeypatch, tools_present):
        from esxi2pve.cli import main
        from esxi2pve.pipeline.migration import MigrationPipeline, MigrationResult
        seen = {}

        def ok_run(self, request):
            seen["policy"] = self.config.migration.existing_artifact
            return MigrationResult(success=True, migration_id="abcd1234", vm_name=request.vm_name,
                                   vmid=request.vmid, volumes=["pool-a:vm-150-disk-0"])

        monkeypatch.setattr(MigrationPipeline, "run", ok_run)
        result = CliRunner().invoke(
            main, ["migrate", "--config", str(config_file), *self.ARGS, "--existing", "reuse"],
        )
        assert result.exit_code == 0, result.output
        assert seen["policy"] == "reuse"
        assert "Migration complete" in result.output

    def test_prompts_for_missing_values(self, config_file, monkeypatch, tools_present):
        from esxi2pve.cli import main
        from esxi2pve.pipeline.migration import MigrationPipeline, MigrationResult
        seen = {}

        def ok_run(self, request):
            seen["request"] = request
            return MigrationResult(success=True, migration_id="abcd1234", vm_name=request.vm_name,
                                   vmid=request.vmid)

        monkeypatch.setattr(MigrationPipeline, "run", ok_run)
        monkeypatch.setattr("esxi2pve.cli._suggest_vmid", lambda config: 120)
        result = CliRunner().invoke(
            main, ["migrate", "--config", str(config_file)], input="web01\n90\n\nlocal-zfs\n",
        )
        assert result.exit_code == 0, result.output
        request = seen["request"]
        assert (request.vm_name, request.vlan_tag, request.vmid, request.storage) == ("web01", 90, 120, "local-zfs")

    @pytest.mark.parametrize("error_name, hinted", [
        ("GuestAgentEnableFailed", True),
        ("VMCreateFailed", False),
        ("ExtractionFailed", False),
    ])
    def test_cleanup_hint_follows_error_type(self, config_file, monkeypatch, tools_present, error_name, hinted):
        from esxi2pve import errors
        from esxi2pve.cli import main
        from esxi2pve.pipeline.migration import MigrationPipeline, MigrationResult

        def failed_run(self, request):
            cls = getattr(errors, error_name)
            if issubclass(cls, errors.ProvisionError):
                error = cls("qm failed", vmid=request.vmid, stage="create_vm")
            else:
                error = cls("tar failed", stage="extract")
            return MigrationResult(
                success=False, migration_id="abcd1234", vm_name=request.vm_name, vmid=request.vmid,
                failed_stage=error.stage, error=error,
            )

        monkeypatch.setattr(MigrationPipeline, "run", failed_run)
        result = CliRunner().invoke(main, ["migrate", "--config", str(config_file), *self.ARGS])
        assert result.exit_code == 1
        assert ("qm destroy 150" in result.output) is hinted


class TestNextId:
    def test_unparseable_listing_fails(self, config_file, monkeypatch):
        from esxi2pve.cli import main
        from esxi2pve.gateway import ExternalToolGateway
        ex = FakeExecutor(responses={("pvesh",): CommandResult(0, "not json")})
        monkeypatch.setattr(ExternalToolGateway, "for_request",
                            classmethod(lambda cls, config, request: cls(ex)))
        result = CliRunner().invoke(main, ["next-id", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Cannot parse pvesh output" in result.output

    def test_prints_next_id(self, config_file, monkeypatch):
        from esxi2pve.cli import main
        from esxi2pve.gateway import ExternalToolGateway
        ex = FakeExecutor(responses={("pvesh",): CommandResult(0, '[{"vmid": 150}]')})
        monkeypatch.setattr(ExternalToolGateway, "for_request",
                            classmethod(lambda cls, config, request: cls(ex)))
        result = CliRunner().invoke(main, ["next-id", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "151"
