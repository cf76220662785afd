import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "covcache", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "covcache" in cp.stdout.lower()
