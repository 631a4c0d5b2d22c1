from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable
import threading

from kubernetes import client

from .channel import ExecChannel
from .config import AppConfig, ensure_directories
from .extract import ArchiveExtractionError, extract_tar_stream, storage_prefix
from .k8s import error_message
from .logging_config import get_logger
from .models import RetrievalResult, RetrievalTarget
from .readiness import DEFAULT_POLL_INTERVAL_SECONDS, wait_for_pod_running

DEFAULT_POD_READY_TIMEOUT_SECONDS = 120

logger = get_logger(__name__)


def compose_destination_path(base_dir: Path | str, suite_name: str, test_name: str) -> Path:
    destination = Path(base_dir)
    if suite_name:
        destination = destination / suite_name
    return destination / test_name


class ArtifactRetriever:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        output_dir: Path,
        pod_ready_timeout_seconds: float = DEFAULT_POD_READY_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.core_api = core_api
        self.output_dir = output_dir
        self.pod_ready_timeout_seconds = pod_ready_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.cancel_event = cancel_event

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        core_api: client.CoreV1Api,
        cancel_event: threading.Event | None = None,
    ) -> ArtifactRetriever:
        ensure_directories(config)
        return cls(
            core_api=core_api,
            output_dir=config.output_dir,
            pod_ready_timeout_seconds=config.pod_ready_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            cancel_event=cancel_event,
        )

    def retrieve(self, target: RetrievalTarget, *, suite_name: str, test_name: str) -> Path:
        wait_for_pod_running(
            self.core_api,
            namespace=target.namespace,
            pod_name=target.pod_name,
            timeout_seconds=self.pod_ready_timeout_seconds,
            interval_seconds=self.poll_interval_seconds,
            cancel_event=self.cancel_event,
        )

        channel = ExecChannel(core_api=self.core_api, namespace=target.namespace)
        session = channel.open(
            pod_name=target.pod_name,
            container_name=target.container_name,
            mount_path=target.mount_path,
            cancel_event=self.cancel_event,
        )
        destination = compose_destination_path(self.output_dir, suite_name, test_name)
        logger.info("Retrieving %s from %s/%s into %s", target.mount_path, target.namespace, target.pod_name, destination)

        with session:
            try:
                extract_tar_stream(
                    session.stdout,
                    destination,
                    storage_prefix(target.mount_path),
                    cancel_event=self.cancel_event,
                )
            except ArchiveExtractionError as error:
                producer_error = session.error
                session.close()
                error.diagnostics = _session_diagnostics(session.stderr_text, producer_error)
                raise
            session.wait()

        return destination

    def retrieve_many(
        self,
        target: RetrievalTarget,
        tests: Iterable[tuple[str, str]],
    ) -> list[RetrievalResult]:
        results: list[RetrievalResult] = []
        for suite_name, test_name in tests:
            results.append(self._retrieve_one(target, suite_name=suite_name, test_name=test_name))
        return results

    def _retrieve_one(self, target: RetrievalTarget, *, suite_name: str, test_name: str) -> RetrievalResult:
        started_at = _utc_now_iso()
        status = "failed"
        destination: str | None = None
        message = ""
        try:
            destination = str(self.retrieve(target, suite_name=suite_name, test_name=test_name))
            status = "success"
        except ArchiveExtractionError as error:
            message = f"extract stage failed: {error_message(error)}"
            if error.diagnostics:
                message = f"{message}; {error.diagnostics}"
        except Exception as error:  # pylint: disable=broad-except
            message = error_message(error)

        if message:
            logger.warning("Retrieval for %s failed: %s", "/".join(filter(None, (suite_name, test_name))), message)
        return RetrievalResult(
            suite_name=suite_name,
            test_name=test_name,
            status=status,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            destination=destination,
            message=message,
        )


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _session_diagnostics(stderr_text: str, producer_error: BaseException | None) -> str:
    parts = []
    if stderr_text:
        parts.append(f"remote stderr: {stderr_text}")
    if producer_error is not None:
        parts.append(f"stream error: {error_message(producer_error)}")
    return "; ".join(parts)
