from __future__ import annotations

from pathlib import Path

import pytest

from civitai_downloader import cli
from civitai_downloader.exceptions import ConfigurationError
from civitai_downloader.services.runtime_config import FlagConfig


def _parse(*argv: str):
    return cli.build_parser().parse_args(list(argv))


class TestParser:
    def test_global_options_accepted_after_subcommand(self) -> None:
        args = _parse("download", "-u", "alice", "--config", "custom.toml", "--api-delay", "50", "--log-api")

        assert args.config == Path("custom.toml")
        assert args.api_delay == 50
        assert args.log_api is True

    def test_global_options_before_subcommand_are_kept(self) -> None:
        args = _parse("--save-path", "/data", "--api-timeout", "15", "images", "-u", "bob", "--nsfw=true")

        assert args.save_path == "/data"
        assert args.api_timeout == 15
        assert args.nsfw is True

    def test_images_nsfw_false_and_unset(self) -> None:
        assert _parse("images", "-u", "bob", "--nsfw=false").nsfw is False
        assert _parse("images", "-u", "bob").nsfw is None

    def test_invalid_nsfw_value_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _parse("images", "-u", "bob", "--nsfw=maybe")

    def test_download_defaults(self) -> None:
        args = _parse("download", "-u", "alice")

        assert args.concurrency == 4
        assert args.model_info is False
        assert args.yes is False
        assert args.base_models == []


class TestFlagConversion:
    def test_unsupplied_flags_are_none(self) -> None:
        assert cli.flags_from_args(_parse("download", "-u", "alice")) == FlagConfig()

    def test_legacy_sentinels_mean_unset(self) -> None:
        args = _parse("download", "-u", "alice", "--api-delay", "-1", "--api-timeout", "-1", "--save-path", "")

        assert cli.flags_from_args(args) == FlagConfig()

    def test_supplied_flags_are_carried(self) -> None:
        args = _parse("--log-api", "--save-path", "/data", "download", "-u", "a", "--api-delay", "0", "--api-timeout", "9")

        assert cli.flags_from_args(args) == FlagConfig(
            save_path="/data", log_api_requests=True, api_delay_ms=0, api_client_timeout_sec=9
        )


class TestMain:
    def test_configuration_resolved_before_handler(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "config.toml"
        config_file.write_text("apidelayms = 500\n", encoding="utf-8")
        seen = {}

        def fake_download(context, args) -> int:
            seen["config"] = context.config
            seen["args"] = args
            return 0

        monkeypatch.setattr(cli, "run_download", fake_download)

        code = cli.main(
            ["download", "-u", "alice,bob", "--base-models", "SDXL 1.0,Pony", "--config", str(config_file)]
        )

        assert code == 0
        assert seen["config"].api_delay_ms == 500
        assert seen["config"].config_file == config_file
        assert seen["args"].username == ["alice", "bob"]
        assert seen["args"].base_models == ["SDXL 1.0", "Pony"]

    def test_flag_overrides_file_end_to_end(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "config.toml"
        config_file.write_text("apidelayms = 500\n", encoding="utf-8")
        seen = {}

        def fake_images(context, args) -> int:
            seen["delay"] = context.config.api_delay_ms
            return 0

        monkeypatch.setattr(cli, "run_images", fake_images)

        cli.main(["images", "-u", "alice", "--config", str(config_file), "--api-delay", "50"])

        assert seen["delay"] == 50

    def test_no_subcommand_prints_help(self, capsys) -> None:
        assert cli.main([]) == cli.SUCCESS
        assert "usage" in capsys.readouterr().out

    def test_missing_save_path_is_reported(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            cli.main(["download", "-u", "alice", "--config", str(tmp_path / "absent.toml")])


class TestErrorBoundary:
    def _run(self, monkeypatch: pytest.MonkeyPatch, exc: BaseException) -> int:
        def boom() -> int:
            raise exc

        monkeypatch.setattr(cli, "main", boom)
        with pytest.raises(SystemExit) as exc_info:
            cli.cli()
        return exc_info.value.code

    def test_known_error_exits_one(self, monkeypatch: pytest.MonkeyPatch) -> None:
        assert self._run(monkeypatch, ConfigurationError("no home", hint="use --config")) == cli.GENERAL_ERROR

    def test_keyboard_interrupt_exits_130(self, monkeypatch: pytest.MonkeyPatch) -> None:
        assert self._run(monkeypatch, KeyboardInterrupt()) == cli.KEYBOARD_INTERRUPT

    def test_unexpected_error_exits_two(self, monkeypatch: pytest.MonkeyPatch) -> None:
        assert self._run(monkeypatch, RuntimeError("bug")) == cli.UNEXPECTED_ERROR

    def test_success_exit_code(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(cli, "main", lambda: 0)
        with pytest.raises(SystemExit) as exc_info:
            cli.cli()
        assert exc_info.value.code == 0
