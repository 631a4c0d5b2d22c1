from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
import os

from kubernetes.utils import parse_quantity

STORAGE_PROVISION_LABEL = "storage"
STORAGE_SIZE_LABEL = "storage-size"
STORAGE_ACCESSMODE_LABEL = "storage-accessmode"
STORAGE_MOUNT_LABEL = "storage-mount"
STORAGE_CLASS_LABEL = "storage-class"

STORAGE_SIZE_DEFAULT = "1Gi"
STORAGE_DEFAULT_MOUNT = "/test-output"
ACCESS_MODE_READ_WRITE_ONCE = "ReadWriteOnce"
ACCESS_MODE_READ_ONLY_MANY = "ReadOnlyMany"
ACCESS_MODE_READ_WRITE_MANY = "ReadWriteMany"
STORAGE_DEFAULT_ACCESSMODE = ACCESS_MODE_READ_WRITE_ONCE
VALID_ACCESS_MODES = (
    ACCESS_MODE_READ_ONLY_MANY,
    ACCESS_MODE_READ_WRITE_MANY,
    ACCESS_MODE_READ_WRITE_ONCE,
)


class StorageConfigurationError(ValueError):
    """Raised when storage options cannot be turned into a valid claim request."""


@dataclass(frozen=True)
class StorageOptions:
    enabled: bool = False
    size: str = STORAGE_SIZE_DEFAULT
    access_mode: str = STORAGE_DEFAULT_ACCESSMODE
    mount_path: str = STORAGE_DEFAULT_MOUNT
    storage_class: str | None = None

    @classmethod
    def from_labels(cls, labels: Mapping[str, str] | None) -> StorageOptions:
        labels = labels or {}
        mount_path = (labels.get(STORAGE_MOUNT_LABEL) or "").strip() or STORAGE_DEFAULT_MOUNT
        storage_class = (labels.get(STORAGE_CLASS_LABEL) or "").strip() or None
        return cls(
            enabled=STORAGE_PROVISION_LABEL in labels,
            size=validate_storage_size(labels.get(STORAGE_SIZE_LABEL)),
            access_mode=validate_access_mode(labels.get(STORAGE_ACCESSMODE_LABEL)),
            mount_path=mount_path,
            storage_class=storage_class,
        )


def validate_access_mode(value: str | None) -> str:
    if not value:
        return STORAGE_DEFAULT_ACCESSMODE
    if value not in VALID_ACCESS_MODES:
        raise StorageConfigurationError(
            f"invalid storage accessmode '{value}', valid values are: {', '.join(VALID_ACCESS_MODES)}"
        )
    return value


def validate_storage_size(value: str | None) -> str:
    size = (value or "").strip() or STORAGE_SIZE_DEFAULT
    try:
        quantity = parse_quantity(size)
    except ValueError as error:
        raise StorageConfigurationError(f"invalid storage size '{size}': {error}") from error
    if quantity <= 0:
        raise StorageConfigurationError(f"invalid storage size '{size}': quantity must be positive")
    return size


@dataclass(frozen=True)
class AppConfig:
    output_dir: Path = Path(os.getenv("KAG_OUTPUT_DIR", "./test-output"))
    namespace: str = os.getenv("KAG_NAMESPACE", "default")
    gather_image: str = os.getenv("KAG_GATHER_IMAGE", "busybox:1.36")
    pod_ready_timeout_seconds: int = int(os.getenv("KAG_POD_READY_TIMEOUT_SECONDS", "120"))
    poll_interval_seconds: float = float(os.getenv("KAG_POLL_INTERVAL_SECONDS", "1"))


def ensure_directories(config: AppConfig) -> None:
    config.output_dir.mkdir(parents=True, exist_ok=True)
