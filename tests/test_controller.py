"""Tests for the single-session controller."""

import threading

import pytest

from relay.stream import (
    InvalidSourceError,
    SessionPhase,
    SourceUnreachableError,
    TranscoderNotFoundError,
)

from conftest import EPHEMERAL_PORT, FakePopen

SOURCE = "http://provider.example/live/channel1.ts"


class TestStartSession:

    def test_returns_loopback_playback_url(self, make_controller, stream_config):
        controller = make_controller()

        url = controller.start_session(SOURCE)

        assert stream_config.port == 0
        assert url == f"http://127.0.0.1:{EPHEMERAL_PORT}/hls/stream.m3u8"
        assert controller.session.phase == SessionPhase.READY
        assert controller.session.playback_url == url

    def test_strips_whitespace_from_source(self, make_controller):
        popen = FakePopen()
        controller = make_controller(popen)

        controller.start_session(f"  {SOURCE}\n")

        command = popen.calls[0][0]
        assert command[command.index("-i") + 1] == SOURCE

    @pytest.mark.parametrize("source", ["", "   ", None])
    def test_blank_source_is_rejected(self, make_controller, source):
        popen = FakePopen()
        controller = make_controller(popen)

        with pytest.raises(InvalidSourceError):
            controller.start_session(source)

        assert popen.calls == []

    def test_delivery_server_bound_once(self, make_controller, server_factory):
        controller = make_controller()

        controller.start_session(SOURCE)
        controller.start_session(SOURCE)
        controller.stop_session()
        controller.start_session(SOURCE)

        assert len(server_factory.servers) == 1
        assert controller.delivery.is_started

    def test_listener_delay_only_after_first_bind(self, make_controller, stream_config):
        stream_config.listener_delay = 0.3
        sleeps = []
        controller = make_controller(sleep=sleeps.append)

        controller.start_session(SOURCE)
        controller.start_session(SOURCE)

        assert sleeps == [0.3]

    def test_readiness_timeout_still_returns_url(self, make_controller):
        popen = FakePopen(write_output=False)
        controller = make_controller(popen)

        url = controller.start_session(SOURCE)

        assert url.endswith("/hls/stream.m3u8")
        assert controller.session.phase == SessionPhase.STARTING
        assert len(popen.alive()) == 1

    def test_early_exit_reports_unreachable_source(self, make_controller):
        popen = FakePopen(
            write_output=False,
            returncode=1,
            stderr_lines=[b"[http @ 0x1] Connection to tcp://provider.example:80 failed: Connection refused"],
        )
        controller = make_controller(popen)

        with pytest.raises(SourceUnreachableError) as excinfo:
            controller.start_session(SOURCE)

        assert "Connection refused" in excinfo.value.detail
        assert excinfo.value.status_code == 502
        assert controller.session.phase == SessionPhase.FAILED

    def test_missing_transcoder(self, make_controller):
        popen = FakePopen(missing={"/opt/relay/bin/ffmpeg", "/usr/bin/ffmpeg"})
        controller = make_controller(popen)

        with pytest.raises(TranscoderNotFoundError):
            controller.start_session(SOURCE)

        assert controller.session.phase == SessionPhase.FAILED
        assert controller.workspace.list_files() == []


class TestSessionReplacement:

    def test_at_most_one_process_across_sequences(self, make_controller):
        popen = FakePopen()
        controller = make_controller(popen)

        for action in ("start", "start", "stop", "start", "stop", "stop", "start"):
            if action == "start":
                controller.start_session(SOURCE)
            else:
                controller.stop_session()
            assert len(popen.alive()) <= 1

        assert len(popen.alive()) == 1
        assert len(popen.processes) == 4

    def test_concurrent_starts_leave_one_process(self, make_controller):
        popen = FakePopen()
        controller = make_controller(popen)
        barrier = threading.Barrier(6)
        errors = []

        def worker(index):
            barrier.wait()
            try:
                controller.start_session(f"{SOURCE}?n={index}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(popen.processes) == 6
        assert len(popen.alive()) == 1

    def test_stop_leaves_workspace_empty(self, make_controller):
        controller = make_controller()
        controller.start_session(SOURCE)
        assert controller.workspace.list_files()

        removed = controller.stop_session()

        assert removed >= 2
        assert controller.workspace.list_files() == []
        assert controller.session.phase == SessionPhase.IDLE

    def test_stop_without_session_is_safe(self, make_controller):
        controller = make_controller()
        assert controller.stop_session() == 0
        assert controller.session is None

    def test_restart_does_not_reuse_stale_segments(self, make_controller):
        popen = FakePopen()
        controller = make_controller(popen)
        controller.start_session(SOURCE)
        controller.stop_session()

        popen.write_output = False
        controller.start_session("http://provider.example/live/channel2.ts")

        assert controller.workspace.list_files() == []
        assert controller.session.phase == SessionPhase.STARTING

    def test_replacing_session_purges_previous_output(self, make_controller):
        popen = FakePopen()
        controller = make_controller(popen)
        controller.start_session(SOURCE)

        popen.write_output = False
        controller.start_session("http://provider.example/live/channel2.ts")

        assert popen.processes[0].terminate_calls == 1
        assert controller.workspace.list_files() == []


class TestStatus:

    def test_idle_status(self, make_controller):
        status = make_controller().status()

        assert status["phase"] == "idle"
        assert status["running"] is False
        assert status["files"] == []

    def test_ready_status(self, make_controller):
        controller = make_controller()
        controller.start_session("http://user:pw@provider.example/live.ts")

        status = controller.status()

        assert status["phase"] == "ready"
        assert status["running"] is True
        assert status["delivery_started"] is True
        assert "stream.m3u8" in status["files"]

    def test_shutdown_stops_everything(self, make_controller, server_factory):
        popen = FakePopen()
        controller = make_controller(popen)
        controller.start_session(SOURCE)

        controller.shutdown()

        assert popen.alive() == []
        assert not controller.delivery.is_serving
