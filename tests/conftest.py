from __future__ import annotations

from io import BytesIO
from typing import Callable
import tarfile

import pytest

STDOUT = 1
STDERR = 2
STATUS = 3

SUCCESS_STATUS = b'{"metadata":{},"status":"Success"}'


def exit_status(code: int) -> bytes:
    return (
        '{"metadata":{},"status":"Failure","message":"command terminated with non-zero exit code",'
        '"reason":"NonZeroExitCode","details":{"causes":[{"reason":"ExitCode","message":"%d"}]}}' % code
    ).encode()


class FakeExecResponse:
    """Scripted stand-in for the websocket client returned by `stream(..., _preload_content=False)`."""

    def __init__(
        self,
        frames: list[tuple[int, bytes | str]],
        *,
        status: bytes | None = SUCCESS_STATUS,
        fail_after: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self._frames = list(frames)
        self._channels: dict[int, bytes | str] = {}
        self._open = True
        self._status = status
        self._fail_after = fail_after
        self._error = error or ConnectionResetError("connection reset by peer")
        self.updates = 0
        self.closed = False

    def is_open(self) -> bool:
        return self._open

    def update(self, timeout: float = 0) -> None:
        if not self._open:
            return
        if self._fail_after is not None and self.updates >= self._fail_after:
            raise self._error
        self.updates += 1
        if self._frames:
            channel, data = self._frames.pop(0)
            self._channels[channel] = self._channels.get(channel, type(data)()) + data
            return
        if self._status is not None:
            self._channels[STATUS] = self._status
        self._open = False

    def peek_stdout(self, timeout: float = 0) -> bytes | str:
        return self._channels.get(STDOUT, b"")

    def peek_stderr(self, timeout: float = 0) -> bytes | str:
        return self._channels.get(STDERR, b"")

    def read_stdout(self, timeout: float | None = None) -> bytes | str:
        return self._channels.pop(STDOUT, b"")

    def read_stderr(self, timeout: float | None = None) -> bytes | str:
        return self._channels.pop(STDERR, b"")

    def read_channel(self, channel: int, timeout: float = 0) -> bytes | str:
        return self._channels.pop(channel, b"")

    def close(self) -> None:
        self.closed = True
        self._open = False


def _build_tar(entries: list[tuple]) -> bytes:
    """Build an uncompressed archive from (name, kind, payload[, mode]) tuples.

    kind is one of "dir", "file", "symlink", "hardlink", "fifo"; payload is the file body or link target.
    """
    buffer = BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for entry in entries:
            name, kind = entry[0], entry[1]
            payload = entry[2] if len(entry) > 2 else None
            mode = entry[3] if len(entry) > 3 else None
            info = tarfile.TarInfo(name=name)
            info.mtime = 1_700_000_000
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = mode or 0o755
                archive.addfile(info)
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = payload
                info.mode = mode or 0o777
                archive.addfile(info)
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = payload
                info.mode = mode or 0o644
                archive.addfile(info)
            elif kind == "fifo":
                info.type = tarfile.FIFOTYPE
                info.mode = mode or 0o644
                archive.addfile(info)
            else:
                data = payload.encode() if isinstance(payload, str) else payload
                info.size = len(data)
                info.mode = mode or 0o644
                archive.addfile(info, BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def build_tar() -> Callable[[list[tuple]], bytes]:
    return _build_tar


@pytest.fixture
def exec_response() -> type[FakeExecResponse]:
    return FakeExecResponse


@pytest.fixture
def exec_exit_status() -> Callable[[int], bytes]:
    return exit_status
