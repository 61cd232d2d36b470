"""Tests for the command-line entry point."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from rpi_sd_provisioner import main as cli
from rpi_sd_provisioner.domain import Architecture, BootReport, Flavor, ImageVariant
from rpi_sd_provisioner.exceptions import (
    EXIT_BOOT_TIMEOUT,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    BootTimeoutError,
    NoDeviceError,
)
from rpi_sd_provisioner.pipeline import ProvisionOutcome
from rpi_sd_provisioner.services.catalog import PINNED_CATALOG


@pytest.fixture
def provisioner(mocker):
    mocker.patch.object(cli, "setup_logging")
    instance = MagicMock()
    instance.device_write_started = False
    mocker.patch.object(cli, "Provisioner", return_value=instance)
    return instance


class TestParser:
    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert args.flavor == "lite"
        assert args.arch == "64"
        assert args.wait is None
        assert args.image is None
        assert not args.list_images

    def test_options(self):
        args = cli.build_parser().parse_args(
            ["--flavor", "full", "--arch", "32", "--no-wait", "--image", "/tmp/a.img"]
        )
        assert args.flavor == "full"
        assert args.arch == "32"
        assert args.wait is False
        assert args.image == Path("/tmp/a.img")

    def test_rejects_unknown_arch(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--arch", "16"])


class TestMain:
    def test_success(self, provisioner, sd_card, record, tmp_path):
        provisioner.run.return_value = ProvisionOutcome(
            image_path=tmp_path / "a.img",
            device=sd_card,
            record=record,
            write_result=MagicMock(),
            config_result=MagicMock(),
            boot_report=BootReport("pi-test.local", "192.168.1.42", 30.0, 7),
        )

        assert cli.main(["--arch", "32", "--wait"]) == EXIT_OK

        provisioner.run.assert_called_once_with(
            ImageVariant(Flavor.LITE, Architecture.ARMHF), image_path=None, wait_for_boot=True
        )

    def test_provision_error_exits_one(self, provisioner):
        provisioner.run.side_effect = NoDeviceError()
        assert cli.main([]) == EXIT_FAILURE

    def test_boot_timeout_exits_three(self, provisioner):
        provisioner.run.side_effect = BootTimeoutError("pi-test.local", 1200)
        assert cli.main([]) == EXIT_BOOT_TIMEOUT

    def test_interrupt_exits_130(self, provisioner, capsys):
        provisioner.run.side_effect = KeyboardInterrupt
        provisioner.device_write_started = True

        assert cli.main([]) == EXIT_INTERRUPTED
        assert "undefined" in capsys.readouterr().out

    def test_list_images(self, provisioner):
        provisioner.list_images.return_value = dict(PINNED_CATALOG)

        assert cli.main(["--list-images"]) == EXIT_OK

        provisioner.run.assert_not_called()

    def test_cli_overrides_reach_config(self, provisioner, tmp_path):
        provisioner.run.side_effect = NoDeviceError()

        cli.main(["--cache-dir", str(tmp_path), "--poll-timeout", "90"])

        config = cli.Provisioner.call_args[0][0]
        assert config.cache_dir == tmp_path
        assert config.poll_timeout_seconds == 90.0
