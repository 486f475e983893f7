import pytest

from roundz_interview.main import build_parser


def test_cli_env_defaults_are_used(monkeypatch):
    # The runner's defaults are wired to environment variables so a deployment
    # can configure it without flags.
    monkeypatch.setenv("ROUNDZ_CANDIDATE_NAME", "Ada")
    monkeypatch.setenv("ROUNDZ_INTERVIEW_ID", "int-42")
    monkeypatch.setenv("STT_MODE", "streaming")
    monkeypatch.setenv("SETTLE_DELAY_MS", "250")
    monkeypatch.setenv("ROUNDZ_ARTIFACTS_DIR", "/tmp/roundz")

    args = build_parser().parse_args([])
    assert args.candidate_name == "Ada"
    assert args.interview_id == "int-42"
    assert args.stt_mode == "streaming"
    assert args.settle_delay_ms == 250
    assert args.artifacts_dir == "/tmp/roundz"
    assert args.no_greeting is False


def test_cli_flags_override_environment(monkeypatch):
    monkeypatch.setenv("STT_MODE", "streaming")

    args = build_parser().parse_args(["--stt-mode", "local", "--no-greeting", "--settle-delay-ms", "0"])
    assert args.stt_mode == "local"
    assert args.no_greeting is True
    assert args.settle_delay_ms == 0


def test_cli_rejects_unknown_stt_mode():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--stt-mode", "browser"])
