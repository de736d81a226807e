from __future__ import annotations

import functools
import logging

from kubernetes import client, config
from kubernetes.client import CoordinationV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from kubewatch.src.watcher import ListFunction

LOGGER = logging.getLogger(__name__)

# Core ("v1" group) resources by plural, mapped to the client's snake_case kind
# and whether the resource lives in a namespace.
CORE_RESOURCES: dict[str, tuple[str, bool]] = {
    "configmaps": ("config_map", True),
    "endpoints": ("endpoints", True),
    "events": ("event", True),
    "persistentvolumeclaims": ("persistent_volume_claim", True),
    "pods": ("pod", True),
    "secrets": ("secret", True),
    "serviceaccounts": ("service_account", True),
    "services": ("service", True),
    "namespaces": ("namespace", False),
    "nodes": ("node", False),
    "persistentvolumes": ("persistent_volume", False),
}


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi, CoordinationV1Api]:
    """Return CoreV1, CustomObjects and CoordinationV1 clients for the active configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi(), client.CoordinationV1Api()


def parse_resource(resource: str) -> tuple[str, str, str]:
    """Split a resource reference into ``(group, version, plural)``.

    ``"configmaps"`` names a core resource (group ``""``, version ``v1``);
    ``"example.com/v1/widgets"`` names a custom resource.
    """
    parts = [part.strip() for part in resource.strip().split("/")]
    if len(parts) == 1 and parts[0]:
        return "", "v1", parts[0].lower()
    if len(parts) == 3 and all(parts):
        group, version, plural = parts
        return group, version, plural.lower()
    raise ValueError(
        f"resource must be a core plural or group/version/plural, got: {resource!r}"
    )


def build_list_function(
    resource: str,
    namespaced: bool,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
) -> ListFunction:
    """Resolve *resource* to a list function usable by :class:`~kubewatch.src.watcher.Watcher`.

    Namespaced functions expect a ``namespace`` keyword argument, which the
    watcher passes from its scope.  Cluster-scoped core resources always use
    their cluster-wide list function.
    """
    group, version, plural = parse_resource(resource)

    if not group:
        try:
            kind, core_namespaced = CORE_RESOURCES[plural]
        except KeyError:
            raise ValueError(f"unsupported core resource: {plural!r}") from None
        if not core_namespaced:
            return getattr(core_api, f"list_{kind}")
        if namespaced:
            return getattr(core_api, f"list_namespaced_{kind}")
        return getattr(core_api, f"list_{kind}_for_all_namespaces")

    if namespaced:
        return functools.partial(
            custom_api.list_namespaced_custom_object,
            group=group,
            version=version,
            plural=plural,
        )
    return functools.partial(
        custom_api.list_cluster_custom_object,
        group=group,
        version=version,
        plural=plural,
    )


def is_cluster_scoped(resource: str) -> bool:
    """Return True for core resources that never live in a namespace."""
    group, _, plural = parse_resource(resource)
    if group:
        return False
    return not CORE_RESOURCES.get(plural, ("", True))[1]
