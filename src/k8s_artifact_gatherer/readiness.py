from __future__ import annotations

import threading
import time
from typing import Callable

from kubernetes import client

from .logging_config import get_logger

POD_PHASE_RUNNING = "Running"
TERMINAL_POD_PHASES = frozenset({"Failed", "Succeeded"})
DEFAULT_POLL_INTERVAL_SECONDS = 1.0

logger = get_logger(__name__)


class PodReadinessTimeout(TimeoutError):
    """Raised when the pod does not reach Running before the deadline."""


class PollCancelled(RuntimeError):
    """Raised when the caller cancels a wait before the condition is met."""


class PodTerminatedError(RuntimeError):
    """Raised when the pod reached a phase from which it can never run."""


def poll_until(
    check: Callable[[], bool],
    *,
    timeout_seconds: float,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    cancel_event: threading.Event | None = None,
) -> int:
    """Call `check` immediately and then every `interval_seconds` until it returns True.

    Errors raised by `check` propagate without retry. Returns the number of checks made.
    """
    deadline = time.monotonic() + timeout_seconds
    polls = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelled(f"wait cancelled after {polls} checks")
        polls += 1
        if check():
            return polls

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PodReadinessTimeout(f"condition not met within {timeout_seconds}s ({polls} checks)")

        pause = min(interval_seconds, remaining)
        if cancel_event is not None:
            if cancel_event.wait(pause):
                raise PollCancelled(f"wait cancelled after {polls} checks")
        else:
            time.sleep(pause)


def wait_for_pod_running(
    core_api: client.CoreV1Api,
    *,
    namespace: str,
    pod_name: str,
    timeout_seconds: float,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    cancel_event: threading.Event | None = None,
) -> None:
    last_phase = "Unknown"
    last_hint: str | None = None

    def _pod_is_running() -> bool:
        nonlocal last_phase, last_hint
        pod = core_api.read_namespaced_pod(name=pod_name, namespace=namespace)
        phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
        last_phase = phase
        pending_hint = _extract_pending_hint(pod)
        if pending_hint:
            last_hint = pending_hint
        if phase in TERMINAL_POD_PHASES:
            raise PodTerminatedError(f"pod {namespace}/{pod_name} entered terminal phase {phase}")
        return phase == POD_PHASE_RUNNING

    try:
        polls = poll_until(
            _pod_is_running,
            timeout_seconds=timeout_seconds,
            interval_seconds=interval_seconds,
            cancel_event=cancel_event,
        )
    except PodReadinessTimeout as error:
        detail = f"last observed phase={last_phase}"
        if last_hint:
            detail = f"{detail}; {last_hint}"
        raise PodReadinessTimeout(f"pod {namespace}/{pod_name} did not become Running in time ({detail})") from error

    logger.info("Pod %s/%s is Running after %d checks", namespace, pod_name, polls)


def _extract_pending_hint(pod: object) -> str | None:
    pod_status = getattr(pod, "status", None)
    if pod_status is None:
        return None

    conditions = getattr(pod_status, "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == "PodScheduled" and getattr(condition, "status", None) == "False":
            reason = getattr(condition, "reason", None) or "Unschedulable"
            message = (getattr(condition, "message", None) or "").strip()
            return f"pod unschedulable ({reason}: {message})" if message else f"pod unschedulable ({reason})"

    for container_status in getattr(pod_status, "container_statuses", None) or []:
        state = getattr(container_status, "state", None)
        waiting_state = getattr(state, "waiting", None) if state is not None else None
        if waiting_state is None:
            continue
        reason = getattr(waiting_state, "reason", None) or "ContainerWaiting"
        return f"container {getattr(container_status, 'name', '?')} waiting ({reason})"

    return None
