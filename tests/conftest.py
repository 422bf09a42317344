"""Pytest configuration and fixtures."""

import io
import itertools
import os
import subprocess
import threading

import pytest

from relay.stream import (
    DeliveryServer,
    FFmpegRunner,
    ProcessSupervisor,
    ReadinessDetector,
    SessionController,
    StreamConfig,
    WorkspaceManager,
)


class FakeProcess:
    """Stand-in for subprocess.Popen that never spawns anything."""

    _pids = itertools.count(4000)

    def __init__(self, command, returncode=None, stderr_lines=None, wait_timeouts=0):
        self.args = command
        self.pid = next(self._pids)
        self.returncode = returncode
        self.stderr = io.BytesIO(b"".join(line + b"\n" for line in stderr_lines)) if stderr_lines else None
        self.terminate_calls = 0
        self.kill_calls = 0
        self._wait_timeouts = wait_timeouts

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminate_calls += 1
        if self._wait_timeouts == 0:
            self.returncode = -15

    def kill(self):
        self.kill_calls += 1
        self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None and self._wait_timeouts > 0:
            self._wait_timeouts -= 1
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode


class FakePopen:
    """Records every spawned FakeProcess and optionally simulates ffmpeg output."""

    def __init__(self, write_output=True, missing=(), returncode=None, stderr_lines=None):
        self.write_output = write_output
        self.missing = set(missing)
        self.returncode = returncode
        self.stderr_lines = stderr_lines
        self.processes = []
        self.calls = []
        self.lock = threading.Lock()

    def __call__(self, command, **kwargs):
        with self.lock:
            self.calls.append((command, kwargs))
            if command[0] in self.missing:
                raise FileNotFoundError(2, "No such file or directory", command[0])
            process = FakeProcess(command, returncode=self.returncode, stderr_lines=self.stderr_lines)
            self.processes.append(process)

        if self.write_output:
            manifest = command[-1]
            pattern = command[command.index("-hls_segment_filename") + 1]
            with open(manifest, "w") as f:
                f.write("#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXTINF:4.0,\nsegment000.ts\n")
            with open(pattern % 0, "wb") as f:
                f.write(b"\x47" * 188)
        return process

    def alive(self):
        return [p for p in self.processes if p.returncode is None]


EPHEMERAL_PORT = 49152


class FakeServer:
    """Minimal stand-in for werkzeug's server returned by make_server."""

    def __init__(self, host, port, app, threaded=True):
        self.host = host
        self.port = port
        # port 0 means the OS picks one
        self.server_address = (host, port or EPHEMERAL_PORT)
        self.app = app
        self._stopped = threading.Event()

    def serve_forever(self):
        self._stopped.wait()

    def shutdown(self):
        self._stopped.set()

    def server_close(self):
        pass


class ServerFactory:
    def __init__(self):
        self.servers = []
        self.lock = threading.Lock()

    def __call__(self, host, port, app, threaded=True):
        server = FakeServer(host, port, app, threaded=threaded)
        with self.lock:
            self.servers.append(server)
        return server


@pytest.fixture
def stream_config(tmp_path):
    return StreamConfig(
        work_dir=str(tmp_path / "hls"),
        port=0,
        ffmpeg_path="/opt/relay/bin/ffmpeg",
        ready_max_attempts=5,
        ready_interval=0.01,
        listener_delay=0,
        stop_settle_delay=0,
        terminate_timeout=0.1,
        kill_orphans=False,
    )


@pytest.fixture
def workspace(stream_config):
    manager = WorkspaceManager(stream_config)
    os.makedirs(manager.path, exist_ok=True)
    return manager


@pytest.fixture
def fake_popen():
    return FakePopen()


@pytest.fixture
def server_factory():
    return ServerFactory()


@pytest.fixture
def make_controller(stream_config, server_factory):
    """Build a SessionController wired to fakes, no real ffmpeg or sockets."""
    controllers = []

    def factory(popen=None, config=None, sleep=None):
        config = config or stream_config
        popen = popen or FakePopen()
        workspace = WorkspaceManager(config)
        runner = FFmpegRunner(config, popen=popen, which=lambda name: "/usr/bin/ffmpeg")
        supervisor = ProcessSupervisor(config, workspace, runner, sleep=lambda s: None, process_iter=lambda attrs: [])
        delivery = DeliveryServer(config, server_factory=server_factory)
        controller = SessionController(
            config,
            workspace=workspace,
            supervisor=supervisor,
            delivery=delivery,
            detector=ReadinessDetector(),
            sleep=sleep or (lambda seconds: None),
        )
        controllers.append(controller)
        return controller

    yield factory

    for controller in controllers:
        controller.delivery.shutdown()
