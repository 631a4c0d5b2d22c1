from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock
import threading

import pytest
from kubernetes.client import ApiException

from k8s_artifact_gatherer.channel import (
    ChannelSession,
    ExecChannel,
    ExecChannelError,
    ExecStreamError,
    build_tar_command,
)
from k8s_artifact_gatherer.extract import extract_tar_stream

STDOUT = 1
STDERR = 2


def _session(response, *, cancel_event: threading.Event | None = None) -> ChannelSession:
    session = ChannelSession(
        pod_name="check-pod",
        container_name="test-output-gather",
        mount_path="/test-output",
        response=response,
        frame_timeout_seconds=0,
        cancel_event=cancel_event,
    )
    session.start()
    return session


def test_exec_channel_open_requests_tar_of_mount_path_with_separate_stderr(
    monkeypatch: pytest.MonkeyPatch,
    exec_response,
) -> None:
    response = exec_response([(STDOUT, b"archive-bytes")])
    stream_mock = Mock(return_value=response)
    monkeypatch.setattr("k8s_artifact_gatherer.channel.stream", stream_mock)
    core_api = Mock()

    channel = ExecChannel(core_api=core_api, namespace="scorecard", frame_timeout_seconds=0)
    with channel.open(pod_name="check-pod", container_name="gather", mount_path="/test-output") as session:
        assert session.stdout.read() == b"archive-bytes"
        session.wait()

    stream_mock.assert_called_once_with(
        core_api.connect_get_namespaced_pod_exec,
        "check-pod",
        "scorecard",
        container="gather",
        command=["tar", "cf", "-", "/test-output"],
        stderr=True,
        stdin=False,
        stdout=True,
        tty=False,
        _preload_content=False,
        binary=True,
    )
    assert response.closed


def test_exec_channel_open_with_handshake_rejection_raises_channel_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "k8s_artifact_gatherer.channel.stream",
        Mock(side_effect=ApiException(status=403, reason="Forbidden")),
    )
    channel = ExecChannel(core_api=Mock(), namespace="scorecard")

    with pytest.raises(ExecChannelError, match="API status 403 \\(Forbidden\\)"):
        channel.open(pod_name="check-pod", container_name="gather", mount_path="/test-output")


def test_exec_channel_open_with_transport_failure_raises_channel_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "k8s_artifact_gatherer.channel.stream",
        Mock(side_effect=ConnectionRefusedError("connection refused")),
    )
    channel = ExecChannel(core_api=Mock(), namespace="scorecard")

    with pytest.raises(ExecChannelError, match="connection refused"):
        channel.open(pod_name="check-pod", container_name="gather", mount_path="/test-output")


def test_channel_session_with_stderr_frames_keeps_them_out_of_stdout(exec_response) -> None:
    response = exec_response(
        [
            (STDOUT, b"part-1|"),
            (STDERR, b"tar: removing leading '/' from member names\n"),
            (STDOUT, "part-2"),
        ]
    )

    with _session(response) as session:
        payload = session.stdout.read()
        session.wait()

    assert payload == b"part-1|part-2"
    assert session.stderr_text == "tar: removing leading '/' from member names"
    assert session.bytes_streamed == len(payload)


def test_channel_session_with_nonzero_exit_raises_stream_error_with_stderr(exec_response, exec_exit_status) -> None:
    response = exec_response(
        [(STDERR, b"tar: /test-output: No such file or directory\n")],
        status=exec_exit_status(2),
    )

    with _session(response) as session:
        assert session.stdout.read() == b""
        with pytest.raises(ExecStreamError, match="exited with code 2") as excinfo:
            session.wait()

    assert "No such file or directory" in excinfo.value.stderr
    assert "remote stderr" in str(excinfo.value)


def test_channel_session_with_transport_drop_closes_stdout_and_records_error(exec_response) -> None:
    response = exec_response(
        [(STDOUT, b"partial"), (STDOUT, b"never-delivered")],
        fail_after=1,
    )

    with _session(response) as session:
        assert session.stdout.read() == b"partial"
        with pytest.raises(ExecStreamError, match="connection reset by peer"):
            session.wait()

    assert isinstance(session.error, ConnectionResetError)
    assert response.closed


def test_channel_session_with_cancel_event_stops_producer(exec_response) -> None:
    cancel_event = threading.Event()
    cancel_event.set()
    response = exec_response([(STDOUT, b"data")])

    with _session(response, cancel_event=cancel_event) as session:
        assert session.stdout.read() == b""
        with pytest.raises(ExecStreamError, match="cancelled"):
            session.wait()


def test_channel_session_with_tar_payload_feeds_extractor(tmp_path: Path, exec_response, build_tar) -> None:
    archive = build_tar([("test-output", "dir"), ("test-output/report.xml", "file", "<testsuite/>")])
    chunks = [(STDOUT, archive[offset:offset + 4096]) for offset in range(0, len(archive), 4096)]

    with _session(exec_response(chunks)) as session:
        extract_tar_stream(session.stdout, tmp_path, "test-output")
        session.wait()

    assert (tmp_path / "report.xml").read_text() == "<testsuite/>"


def test_build_tar_command_with_mount_path_serializes_to_stdout() -> None:
    assert build_tar_command("/test-output") == ["tar", "cf", "-", "/test-output"]


def test_channel_session_with_success_status_waits_cleanly(exec_response) -> None:
    with _session(exec_response([(STDOUT, b"ok")])) as session:
        session.stdout.read()
        session.wait()

    assert session.error is None
