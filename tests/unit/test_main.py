import pytest

from intake.main import _default_port, parse_args, run


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "bad-role", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Supported roles" in captured.err


@pytest.mark.unit
def test_cli_dry_run_succeeds_for_valid_role() -> None:
    exit_code = run(["--role", "worker-csv", "--dry-run-startup"])
    assert exit_code == 0


@pytest.mark.unit
def test_default_ports_split_api_and_workers() -> None:
    assert _default_port("api") == 8000
    assert _default_port("worker-submissions") == 8100


@pytest.mark.unit
def test_parse_args_reads_port_override() -> None:
    args = parse_args(["--role", "api", "--port", "9000"])
    assert args.port == 9000
    assert args.reload is False


@pytest.mark.unit
def test_kick_rejects_unknown_tube(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "api", "--kick", "nope"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "Unknown tube 'nope'" in captured.err
    assert "csv_jobs_json" in captured.err


@pytest.mark.unit
def test_operator_commands_print_json_report(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)

    assert run(["--role", "api", "--kick", "csv_jobs", "--kick-bound", "5"]) == 0
    assert '"kicked": 0' in capsys.readouterr().out

    assert run(["--role", "worker-csv", "--stats"]) == 0
    out = capsys.readouterr().out
    assert '"submissions"' in out
    assert '"tube": "form_submissions"' in out
    assert '"tube": "csv_jobs_json"' in out


@pytest.mark.unit
def test_stats_and_kick_are_mutually_exclusive() -> None:
    with pytest.raises(SystemExit):
        parse_args(["--role", "api", "--stats", "--kick", "csv_jobs"])
