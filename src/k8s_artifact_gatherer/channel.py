from __future__ import annotations

from typing import Any, BinaryIO
import os
import threading

import yaml
from kubernetes import client
from kubernetes.client import ApiException
from kubernetes.stream import stream
from kubernetes.stream.ws_client import ERROR_CHANNEL

from .k8s import error_message, format_api_exception_message
from .logging_config import get_logger

DEFAULT_FRAME_TIMEOUT_SECONDS = 1
DEFAULT_PRODUCER_JOIN_SECONDS = 30.0

logger = get_logger(__name__)


class ExecChannelError(RuntimeError):
    """Raised when the exec session cannot be established."""


class ExecStreamError(RuntimeError):
    """Raised when the exec producer failed after the stream was handed out."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


def build_tar_command(mount_path: str) -> list[str]:
    return ["tar", "cf", "-", mount_path]


class ChannelSession:
    """One exec session streaming a tar archive of `mount_path` out of a container.

    The producer thread writes stdout frames into an OS pipe; `stdout` is the read end.
    The write end is closed exactly once when the remote command finishes, fails, or the
    session is cancelled, so readers always observe end-of-stream. The first producer
    failure is kept in a single error slot and raised from `wait()`.
    """

    def __init__(
        self,
        *,
        pod_name: str,
        container_name: str,
        mount_path: str,
        response: Any,
        frame_timeout_seconds: float = DEFAULT_FRAME_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.pod_name = pod_name
        self.container_name = container_name
        self.mount_path = mount_path
        self._response = response
        self._frame_timeout_seconds = frame_timeout_seconds
        self._cancel_event = cancel_event
        self._stop = threading.Event()
        self._stderr = bytearray()
        self._error: BaseException | None = None
        self._bytes_streamed = 0

        read_fd, write_fd = os.pipe()
        self.stdout: BinaryIO = os.fdopen(read_fd, "rb")
        self._writer: BinaryIO = os.fdopen(write_fd, "wb")
        self._thread = threading.Thread(
            target=self._pump,
            name=f"exec-stream-{pod_name}-{container_name}",
            daemon=True,
        )

    @property
    def stderr_text(self) -> str:
        return self._stderr.decode("utf-8", errors="replace").strip()

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def bytes_streamed(self) -> int:
        return self._bytes_streamed

    def start(self) -> None:
        self._thread.start()

    def wait(self, timeout: float | None = DEFAULT_PRODUCER_JOIN_SECONDS) -> None:
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise ExecStreamError(
                f"exec stream from {self._describe_target()} did not finish within {timeout}s",
                stderr=self.stderr_text,
            )
        if self._error is None:
            return

        message = f"exec stream from {self._describe_target()} failed: {error_message(self._error)}"
        stderr = self.stderr_text
        if stderr:
            message = f"{message}; remote stderr: {stderr}"
        raise ExecStreamError(message, stderr=stderr) from self._error

    def close(self) -> None:
        self._stop.set()
        self.stdout.close()
        self._thread.join(DEFAULT_PRODUCER_JOIN_SECONDS)

    def __enter__(self) -> ChannelSession:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def _pump(self) -> None:
        try:
            while self._response.is_open():
                if self._stop.is_set() or (self._cancel_event is not None and self._cancel_event.is_set()):
                    raise ExecStreamError("exec stream cancelled before the remote command finished")
                self._response.update(timeout=self._frame_timeout_seconds)
                self._drain()
            self._drain()
            self._check_exit_status()
        except Exception as error:  # pylint: disable=broad-except
            self._record_error(error)
        finally:
            self._close_writer()
            self._response.close()
            logger.debug(
                "Exec stream from %s closed after %d bytes",
                self._describe_target(),
                self._bytes_streamed,
            )

    def _drain(self) -> None:
        if self._response.peek_stdout():
            chunk = _as_bytes(self._response.read_stdout())
            if chunk:
                self._writer.write(chunk)
                self._writer.flush()
                self._bytes_streamed += len(chunk)
        if self._response.peek_stderr():
            self._stderr.extend(_as_bytes(self._response.read_stderr()))

    def _check_exit_status(self) -> None:
        raw_status = self._response.read_channel(ERROR_CHANNEL)
        if not raw_status:
            return
        status = yaml.safe_load(_as_bytes(raw_status).decode("utf-8", errors="replace"))
        if not isinstance(status, dict) or status.get("status") == "Success":
            return
        exit_code = _exit_code(status)
        reason = status.get("message") or "remote command failed"
        if exit_code is not None:
            raise ExecStreamError(f"remote command exited with code {exit_code}: {reason}")
        raise ExecStreamError(reason)

    def _record_error(self, error: BaseException) -> None:
        if self._error is None:
            self._error = error
            logger.error("Exec stream from %s failed: %s", self._describe_target(), error_message(error))

    def _close_writer(self) -> None:
        try:
            self._writer.close()
        except OSError as error:
            self._record_error(error)

    def _describe_target(self) -> str:
        return f"{self.pod_name}/{self.container_name}:{self.mount_path}"


class ExecChannel:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        namespace: str,
        frame_timeout_seconds: float = DEFAULT_FRAME_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.frame_timeout_seconds = frame_timeout_seconds

    def open(
        self,
        *,
        pod_name: str,
        container_name: str,
        mount_path: str,
        cancel_event: threading.Event | None = None,
    ) -> ChannelSession:
        try:
            response = stream(
                self.core_api.connect_get_namespaced_pod_exec,
                pod_name,
                self.namespace,
                container=container_name,
                command=build_tar_command(mount_path),
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
                binary=True,
            )
        except ApiException as error:
            raise ExecChannelError(
                format_api_exception_message(
                    operation=f"open exec stream to '{self.namespace}/{pod_name}' container '{container_name}'",
                    hint="Verify RBAC allows create on pods/exec and the container is running.",
                    error=error,
                )
            ) from error
        except Exception as error:  # pylint: disable=broad-except
            raise ExecChannelError(
                f"unable to open exec stream to '{self.namespace}/{pod_name}' container '{container_name}': "
                f"{error_message(error)}"
            ) from error

        session = ChannelSession(
            pod_name=pod_name,
            container_name=container_name,
            mount_path=mount_path,
            response=response,
            frame_timeout_seconds=self.frame_timeout_seconds,
            cancel_event=cancel_event,
        )
        session.start()
        logger.info("Opened exec stream for %s in %s/%s", mount_path, self.namespace, pod_name)
        return session


def _as_bytes(data: str | bytes | None) -> bytes:
    if not data:
        return b""
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _exit_code(status: dict[str, Any]) -> int | None:
    details = status.get("details") or {}
    for cause in details.get("causes") or []:
        if cause.get("reason") == "ExitCode":
            try:
                return int(cause.get("message"))
            except (TypeError, ValueError):
                return None
    return None
