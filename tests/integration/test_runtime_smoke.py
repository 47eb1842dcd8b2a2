import subprocess
import sys

import pytest

from intake.roles import SUPPORTED_ROLES


@pytest.mark.integration
@pytest.mark.parametrize("role", SUPPORTED_ROLES)
def test_role_starts_via_dry_run(role: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "intake.main", "--role", role, "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0, proc.stderr


@pytest.mark.integration
def test_unknown_role_exits_with_usage_error() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "intake.main", "--role", "worker-unknown", "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 2
    assert "Try one of: api, worker-submissions, worker-csv, worker-mirror" in proc.stderr
