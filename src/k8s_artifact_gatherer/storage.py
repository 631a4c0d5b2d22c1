from __future__ import annotations

import re
import secrets

from kubernetes import client
from kubernetes.client import ApiException

from .config import StorageOptions, validate_access_mode, validate_storage_size
from .k8s import error_message, find_default_storage_class_name, format_api_exception_message
from .logging_config import get_logger
from .models import VolumeRequest

RUN_LABEL = "testrun"
PVC_NAME_PREFIX = "test-output-pvc"
STORAGE_VOLUME_NAME = "test-output"
GATHER_CONTAINER_NAME = "test-output-gather"

logger = get_logger(__name__)


class StorageProvisioningError(RuntimeError):
    """Raised when the control plane rejects a claim create or delete."""


class StorageProvisioner:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        storage_api: client.StorageV1Api,
        namespace: str,
    ) -> None:
        self.core_api = core_api
        self.storage_api = storage_api
        self.namespace = namespace

    def provision(self, run_id: str, options: StorageOptions) -> str:
        request = self.build_volume_request(run_id, options)
        body = build_pvc_definition(request, namespace=self.namespace)
        try:
            self.core_api.create_namespaced_persistent_volume_claim(namespace=self.namespace, body=body)
        except ApiException as error:
            raise StorageProvisioningError(
                format_api_exception_message(
                    operation=f"create PVC '{self.namespace}/{request.name}'",
                    hint="Verify RBAC allows create on persistentvolumeclaims and the storage class exists.",
                    error=error,
                )
            ) from error

        logger.info(
            "Created PVC %s/%s (size=%s, accessMode=%s, storageClass=%s)",
            self.namespace,
            request.name,
            request.size,
            request.access_mode,
            request.storage_class or "<cluster default>",
        )
        return request.name

    def build_volume_request(self, run_id: str, options: StorageOptions) -> VolumeRequest:
        # Options may be built directly rather than through from_labels, so validate again.
        size = validate_storage_size(options.size)
        access_mode = validate_access_mode(options.access_mode)
        return VolumeRequest(
            name=generate_pvc_name(),
            run_id=run_id,
            size=size,
            access_mode=access_mode,
            storage_class=self.resolve_storage_class(options.storage_class),
            labels=run_labels(run_id),
        )

    def resolve_storage_class(self, explicit: str | None) -> str | None:
        if explicit:
            return explicit
        try:
            return find_default_storage_class_name(self.storage_api)
        except ApiException as error:
            raise StorageProvisioningError(
                format_api_exception_message(
                    operation="list storage classes",
                    hint="Verify RBAC allows list on storageclasses or set an explicit storage class.",
                    error=error,
                )
            ) from error

    def deprovision_all(self, run_id: str) -> None:
        selector = run_selector(run_id)
        try:
            self.core_api.delete_collection_namespaced_persistent_volume_claim(
                namespace=self.namespace,
                label_selector=selector,
            )
        except ApiException as error:
            if error.status == 404:
                logger.debug("No PVCs left to delete for selector %s", selector)
                return
            raise StorageProvisioningError(
                format_api_exception_message(
                    operation=f"delete PVCs (label selector '{selector}')",
                    hint="Review permissions to delete persistentvolumeclaims in the namespace.",
                    error=error,
                )
            ) from error
        logger.info("Deleted PVCs in %s matching %s", self.namespace, selector)

    def cleanup_storage(self, run_id: str) -> str | None:
        try:
            self.deprovision_all(run_id)
            return None
        except Exception as error:  # pylint: disable=broad-except
            message = f"cleanup stage failed: {error_message(error)}"
            logger.warning(message)
            return message


def build_pvc_definition(request: VolumeRequest, *, namespace: str) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=request.name,
            namespace=namespace,
            labels=dict(request.labels),
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=[request.access_mode],
            resources=client.V1VolumeResourceRequirements(requests={"storage": request.size}),
            storage_class_name=request.storage_class,
        ),
    )


def attach_storage_volume(pod: client.V1Pod, *, pvc_name: str, mount_path: str) -> None:
    pod.spec.volumes = list(pod.spec.volumes or [])
    pod.spec.volumes.append(
        client.V1Volume(
            name=STORAGE_VOLUME_NAME,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                claim_name=pvc_name,
                read_only=False,
            ),
        )
    )
    workload = pod.spec.containers[0]
    workload.volume_mounts = list(workload.volume_mounts or [])
    workload.volume_mounts.append(
        client.V1VolumeMount(name=STORAGE_VOLUME_NAME, mount_path=mount_path, read_only=False)
    )


def build_gather_sidecar(*, mount_path: str, image: str) -> client.V1Container:
    return client.V1Container(
        name=GATHER_CONTAINER_NAME,
        image=image,
        image_pull_policy="IfNotPresent",
        command=["sh", "-c", "sleep 3600"],
        volume_mounts=[
            client.V1VolumeMount(name=STORAGE_VOLUME_NAME, mount_path=mount_path, read_only=True)
        ],
    )


def run_labels(run_id: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/name": "k8s-artifact-gatherer",
        "app.kubernetes.io/component": "test-output",
        RUN_LABEL: _sanitize_label_value(run_id),
    }


def run_selector(run_id: str) -> str:
    return f"{RUN_LABEL}={_sanitize_label_value(run_id)}"


def generate_pvc_name() -> str:
    return f"{PVC_NAME_PREFIX}-{secrets.token_hex(3)}"


def _sanitize_label_value(value: str, max_length: int = 63) -> str:
    normalized = re.sub(r"[^A-Za-z0-9._-]", "-", value.strip())
    if len(normalized) > max_length:
        normalized = normalized[:max_length]
    normalized = normalized.strip("-._")
    if not normalized:
        raise StorageProvisioningError(f"run identifier '{value}' cannot be used as a label value")
    return normalized
