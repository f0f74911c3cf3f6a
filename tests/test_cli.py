"""Tests for CLI argument parsing and command wiring."""

import pytest
import typer
from typer.testing import CliRunner

from picoboot_loader import cli
from picoboot_loader.core.results import OperationResult
from picoboot_loader.core.safety import WritePermissionError, require_write_permission

runner = CliRunner()


class TestParseAddress:
    """CLI wrappers convert ValueError to typer.BadParameter."""

    def test_hex_and_decimal(self):
        assert cli.parse_address("0x10000000") == 0x10000000
        assert cli.parse_address("4096") == 4096

    def test_invalid_raises_bad_parameter(self):
        with pytest.raises(typer.BadParameter):
            cli.parse_address("nope")

    def test_empty_raises_bad_parameter(self):
        with pytest.raises(typer.BadParameter):
            cli.parse_address("")

    def test_size_suffix(self):
        assert cli.parse_size("64k") == 65536

    def test_invalid_size(self):
        with pytest.raises(typer.BadParameter):
            cli.parse_size("lots")


class TestLoadCommand:

    def test_load_passes_options_through(self, monkeypatch, tmp_path):
        calls = {}

        def _flash(image_path, ctx, **kwargs):
            calls["image"] = image_path
            calls["ctx"] = ctx
            calls.update(kwargs)
            kwargs["progress_cb"](1.0)
            return OperationResult.success("flash_uf2", device="RP2 Boot")

        monkeypatch.setattr(cli, "core_flash_uf2", _flash)
        image = tmp_path / "fw.uf2"
        image.write_bytes(b"")

        result = runner.invoke(cli.app, [
            "load", str(image), "--write", "--confirm", "FLASH",
            "--no-reboot", "--delay", "250", "--strict",
        ])

        assert result.exit_code == 0, result.output
        assert calls["image"] == str(image)
        assert calls["ctx"].write_enabled
        assert calls["ctx"].confirmation_token == "FLASH"
        assert calls["reboot"] is False
        assert calls["reboot_delay_ms"] == 250
        assert calls["strict"] is True
        assert calls["touch_port"] is None

    def test_load_without_write_is_denied(self, monkeypatch, tmp_path):
        def _flash(image_path, ctx, **kwargs):
            require_write_permission(ctx)

        monkeypatch.setattr(cli, "core_flash_uf2", _flash)
        image = tmp_path / "fw.uf2"
        image.write_bytes(b"")

        result = runner.invoke(cli.app, ["load", str(image)])
        assert result.exit_code == 1
        assert "--write" in result.output

    def test_zero_delay_rejected(self, tmp_path):
        image = tmp_path / "fw.uf2"
        image.write_bytes(b"")
        result = runner.invoke(cli.app, ["load", str(image), "--delay", "0"])
        assert result.exit_code != 0

    def test_failure_exits_non_zero(self, monkeypatch, tmp_path):
        monkeypatch.setattr(
            cli, "core_flash_uf2",
            lambda *a, **k: OperationResult.failure("flash_uf2", "No BOOTSEL device found"),
        )
        image = tmp_path / "fw.uf2"
        image.write_bytes(b"")
        result = runner.invoke(cli.app, ["load", str(image), "--write", "--confirm", "FLASH"])
        assert result.exit_code == 1
        assert "No BOOTSEL device found" in result.output


class TestOtherCommands:

    def test_erase_parses_address_and_size(self, monkeypatch):
        calls = []

        def _erase(address, size, ctx):
            calls.append((address, size, ctx.dry_run))
            return OperationResult.success("erase_region")

        monkeypatch.setattr(cli, "core_erase_region", _erase)
        result = runner.invoke(cli.app, ["erase", "0x10000000", "8k", "--dry-run"])
        assert result.exit_code == 0, result.output
        assert calls == [(0x10000000, 8192, True)]

    def test_erase_permission_denied(self, monkeypatch):
        def _erase(address, size, ctx):
            raise WritePermissionError("Confirmation token mismatch. Expected 'FLASH'.")

        monkeypatch.setattr(cli, "core_erase_region", _erase)
        result = runner.invoke(cli.app, ["erase", "0x10000000", "4k", "--write", "--confirm", "no"])
        assert result.exit_code == 1

    def test_reboot_forwards_delay(self, monkeypatch):
        seen = []

        def _reboot(delay_ms):
            seen.append(delay_ms)
            return OperationResult.success("reboot_device")

        monkeypatch.setattr(cli, "core_reboot_device", _reboot)
        result = runner.invoke(cli.app, ["reboot", "--delay", "100"])
        assert result.exit_code == 0
        assert seen == [100]

    def test_info_json(self, monkeypatch):
        monkeypatch.setattr(
            cli, "core_device_info",
            lambda: OperationResult.success("device_info", device="RP2350 Boot"),
        )
        result = runner.invoke(cli.app, ["info", "--json"])
        assert result.exit_code == 0
        assert '"device": "RP2350 Boot"' in result.output

    def test_touch_error(self, monkeypatch):
        from picoboot_loader.protocol import BootselTouchError

        def _touch(port):
            raise BootselTouchError(f"Cannot open port {port}")

        monkeypatch.setattr(cli, "enter_bootsel", _touch)
        result = runner.invoke(cli.app, ["touch", "/dev/ttyACM0"])
        assert result.exit_code == 1
        assert "Cannot open port" in result.output

    def test_devices_lists_families(self, monkeypatch):
        monkeypatch.setattr(cli, "find_devices", lambda filters: [])
        monkeypatch.setattr(cli, "list_pico_ports", lambda: [])
        result = runner.invoke(cli.app, ["devices"])
        assert result.exit_code == 0
        assert "No device in BOOTSEL mode found" in result.output
        assert "Known Families" in result.output
