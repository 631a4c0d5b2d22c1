from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class VolumeRequest:
    name: str
    run_id: str
    size: str
    access_mode: str
    storage_class: str | None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalTarget:
    namespace: str
    pod_name: str
    container_name: str
    mount_path: str


@dataclass(frozen=True)
class RetrievalResult:
    suite_name: str
    test_name: str
    status: str
    started_at: str
    finished_at: str
    destination: str | None = None
    message: str = ""
