"""Integration tests running the deployed controller against real processes.

The "server" is a shell wrapper around a small python worker that binds an
ephemeral port and prints the listening line, which mirrors how the real
server's launcher script behaves.
"""

import json
import os
import shutil
import subprocess
import sys
import time
from pathlib import Path

import pytest

from boxlink import controller as controller_module

pytestmark = pytest.mark.skipif(
    not Path("/proc/net/tcp").exists(), reason="needs linux /proc"
)

WORKER = """
import socket
import sys
import time

sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
sock.bind(("127.0.0.1", 0))
sock.listen()
print(f"Extension host agent listening on {sock.getsockname()[1]}", flush=True)
while True:
    time.sleep(1)
"""


@pytest.fixture
def script(tmp_path):
    """Controller deployed into a session directory, with a fake server installed."""
    install_dir = tmp_path / "install"
    (install_dir / "bin").mkdir(parents=True)
    worker = install_dir / "worker.py"
    worker.write_text(WORKER)
    server = install_dir / "bin" / "codium-server"
    # `exit $?` keeps sh from exec-ing the worker, so there is a real wrapper
    server.write_text(f'#!/bin/sh\n"{sys.executable}" "{worker}" "$@"\nexit $?\n')
    server.chmod(0o755)

    session_dir = tmp_path / "run" / "vscodium-reh-linux-x64-1.99.32704-test"
    session_dir.mkdir(parents=True)
    path = session_dir / "controller-0.4.0.py"
    shutil.copy(controller_module.__file__, path)
    path.with_suffix(".json").write_text(
        json.dumps({"install_dir": str(install_dir), "application_name": "codium-server"})
    )

    yield path

    # never leave servers behind
    run(path, "stop")


def run(script: Path, *args: str) -> str:
    result = subprocess.run(
        [sys.executable, str(script), *args],
        stdin=subprocess.DEVNULL,
        capture_output=True,
        timeout=120,
    )
    return result.stdout.decode().strip()


def read_pid(script: Path, name: str) -> int:
    return int((script.parent / name).read_text())


def wait_until_dead(pid: int, timeout: float = 10.0) -> bool:
    processes = controller_module.ProcessTable()
    deadline = time.time() + timeout
    while time.time() < deadline:
        if not processes.is_alive(pid):
            return True
        time.sleep(0.05)
    return False


class TestControllerLifecycle:
    """Test the full start, connect, disconnect cycle."""

    def test_start_connect_disconnect(self, script):
        port = run(script, "synchronized-start", "100")
        assert port.isdigit()

        pid1 = read_pid(script, "pid1")
        pid2 = read_pid(script, "pid2")
        assert pid1 != pid2
        processes = controller_module.ProcessTable()
        assert processes.owns_listening_port(pid2, int(port))

        assert run(script, "synchronized-connect") == port
        assert (script.parent / "count").read_text() == "2\n"

        assert run(script, "synchronized-disconnect", "0") == "DISCONNECTED"
        assert run(script, "synchronized-disconnect", "0") == "STOPPED"

        assert wait_until_dead(pid2)
        assert wait_until_dead(pid1)
        for name in ("port", "count", "pid1", "pid2"):
            assert not (script.parent / name).exists()
        assert (script.parent / "lock").exists()

    def test_killed_worker_is_cleaned_up_on_connect(self, script):
        port = run(script, "synchronized-start", "100")
        assert port.isdigit()
        pid2 = read_pid(script, "pid2")

        os.kill(pid2, 9)
        assert wait_until_dead(pid2)

        assert run(script, "synchronized-connect") == "NOT RUNNING"
        assert not (script.parent / "port").exists()

    def test_status_shows_log(self, script):
        port = run(script, "synchronized-start", "100")

        report = run(script, "status")

        assert "server is running" in report
        assert f"Extension host agent listening on {port}" in report


class TestConcurrentStart:
    """Concurrent callers must share one server."""

    def test_concurrent_synchronized_start(self, script):
        processes = [
            subprocess.Popen(
                [sys.executable, str(script), "synchronized-start", "100"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
            for _ in range(2)
        ]
        ports = [proc.communicate(timeout=120)[0].decode().strip() for proc in processes]

        assert ports[0].isdigit()
        assert ports[0] == ports[1]
        assert (script.parent / "count").read_text() == "2\n"
        log = (script.parent / "log").read_text()
        assert log.count("Extension host agent listening on") == 1
