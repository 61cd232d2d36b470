"""Tests for services/prompts.py - operator questions and secret hashing."""

import io
import json
from unittest.mock import patch

import pytest
from rich.console import Console

from rpi_sd_provisioner.config import settings
from rpi_sd_provisioner.exceptions import ProvisionError
from rpi_sd_provisioner.services import prompts

PSK = "f42c6fc52df0ebef9ebb4b90b38a5f902e83fe1b135a70e23aed762e9710a12e"


@pytest.fixture
def operator():
    return prompts.OperatorPrompts(Console(file=io.StringIO(), width=120))


class TestWpaPsk:
    def test_matches_wpa_passphrase(self):
        assert prompts.wpa_psk("IEEE", "password") == PSK

    @pytest.mark.parametrize("passphrase", ["short", "x" * 64])
    def test_length_limits(self, passphrase):
        with pytest.raises(ValueError):
            prompts.wpa_psk("home", passphrase)


class TestHashPassword:
    def test_passes_password_on_stdin(self):
        with patch.object(
            prompts, "run_checked_command", return_value="$6$salt$digest\n"
        ) as mock_run:
            assert prompts.hash_password("secret") == "$6$salt$digest"
        mock_run.assert_called_once_with(
            ["openssl", "passwd", "-6", "-stdin"], input_text="secret\n"
        )

    def test_openssl_failure(self):
        with patch.object(
            prompts, "run_checked_command", side_effect=RuntimeError("Command failed")
        ):
            with pytest.raises(ProvisionError) as excinfo:
                prompts.hash_password("secret")
        assert "openssl" in excinfo.value.hint

    def test_unexpected_output(self):
        with patch.object(prompts, "run_checked_command", return_value="garbage\n"):
            with pytest.raises(ProvisionError):
                prompts.hash_password("secret")


class TestValidation:
    @pytest.mark.parametrize("hostname", ["pi-test", "raspberrypi", "a", "node42"])
    def test_valid_hostnames(self, hostname):
        assert prompts.is_valid_hostname(hostname)

    @pytest.mark.parametrize("hostname", ["", "-pi", "pi-", "pi_test", "pi.local", "x" * 64])
    def test_invalid_hostnames(self, hostname):
        assert not prompts.is_valid_hostname(hostname)

    @pytest.mark.parametrize("username", ["pi", "admin_1", "_svc"])
    def test_valid_usernames(self, username):
        assert prompts.is_valid_username(username)

    @pytest.mark.parametrize("username", ["", "Pi", "1pi", "root user"])
    def test_invalid_usernames(self, username):
        assert not prompts.is_valid_username(username)


class TestCollectRecord:
    def test_collects_hashed_record(self, operator, config, mocker):
        mocker.patch.object(
            prompts.Prompt,
            "ask",
            side_effect=["pi-test", "pi", "secret", "secret", "IEEE", "password"],
        )
        hash_password = mocker.patch.object(
            prompts, "hash_password", return_value="$6$salt$digest"
        )

        record = operator.collect_record(config)

        hash_password.assert_called_once_with("secret")
        assert record.hostname == "pi-test"
        assert record.username == "pi"
        assert record.password_hash == "$6$salt$digest"
        assert record.wifi_ssid == "IEEE"
        assert record.wifi_psk_hash == PSK
        assert record.locale.wlan_country == config.wlan_country

    def test_answers_become_next_defaults(self, operator, config, mocker):
        mocker.patch.object(
            prompts.Prompt,
            "ask",
            side_effect=["garden-pi", "admin", "secret", "secret", "IEEE", "password"],
        )
        mocker.patch.object(prompts, "hash_password", return_value="$6$salt$digest")

        operator.collect_record(config)

        next_config = settings.build_config()
        assert next_config.default_hostname == "garden-pi"
        assert next_config.default_username == "admin"
        assert next_config.default_ssid == "IEEE"
        saved = json.loads(settings.SETTINGS_PATH.read_text(encoding="utf-8"))
        assert not {"secret", "password"} & set(saved.values())

    def test_reasks_until_valid(self, operator, config, mocker):
        ask = mocker.patch.object(
            prompts.Prompt,
            "ask",
            side_effect=[
                "bad host!",
                "pi-test",
                "pi",
                "one",
                "two",
                "secret",
                "secret",
                "home",
                "short",
                "long enough",
            ],
        )
        mocker.patch.object(prompts, "hash_password", return_value="$6$salt$digest")

        record = operator.collect_record(config)

        assert ask.call_count == 10
        assert record.hostname == "pi-test"
        assert record.wifi_psk_hash == prompts.wpa_psk("home", "long enough")

    def test_secrets_not_in_repr(self, operator, config, mocker):
        mocker.patch.object(
            prompts.Prompt,
            "ask",
            side_effect=["pi-test", "pi", "secret", "secret", "home", "password"],
        )
        mocker.patch.object(prompts, "hash_password", return_value="$6$salt$digest")

        record = operator.collect_record(config)

        assert "digest" not in repr(record)
        assert record.wifi_psk_hash not in repr(record)


class TestConfirmations:
    def test_ask_returns_raw_answer(self, operator, mocker):
        mocker.patch.object(prompts.Prompt, "ask", return_value=" yes ")
        assert operator.ask("Write to /dev/sdb?") == " yes "

    def test_ask_wait_for_boot(self, operator, mocker):
        mocker.patch.object(prompts.Confirm, "ask", return_value=False)
        assert operator.ask_wait_for_boot() is False
