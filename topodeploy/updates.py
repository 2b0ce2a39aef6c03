"""In-place adjustments of loaded manifests before they are rendered."""

from __future__ import annotations

from typing import Any, Mapping, Optional

METRICS_PORT = 2112
RTE_CONFIG_MOUNT_NAME = "rte-config-volume"
RTE_CONFIG_MAP_NAME = "rte-config"

CONTAINER_NAME_RTE = "resource-topology-exporter"
CONTAINER_NAME_NFD_TOPOLOGY_UPDATER = "nfd-topology-updater"
CONTAINER_NAME_NFD_MASTER = "nfd-master"

PULL_IF_NOT_PRESENT = "IfNotPresent"
PULL_ALWAYS = "Always"

Obj = dict[str, Any]


def pull_policy(pull_if_not_present: bool) -> str:
    """Return the image pull policy matching the flag."""
    return PULL_IF_NOT_PRESENT if pull_if_not_present else PULL_ALWAYS


def _metadata(obj: Obj) -> Obj:
    return obj.setdefault("metadata", {})


def _pod_spec(obj: Obj) -> Obj:
    return obj.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})


def _containers(obj: Obj) -> list[Obj]:
    return _pod_spec(obj).get("containers") or []


def _named_containers(obj: Obj, name: str):
    return (c for c in _containers(obj) if c.get("name") == name)


def _apply_node_selector(obj: Obj, node_selector: Optional[Mapping[str, Any]]) -> None:
    if node_selector is None:
        return
    labels = node_selector.get("matchLabels")
    pod_spec = _pod_spec(obj)
    if labels is None:
        pod_spec.pop("nodeSelector", None)
    else:
        pod_spec["nodeSelector"] = dict(labels)


def _update_subjects(binding: Obj, service_account: str, namespace: str) -> None:
    for subject in binding.get("subjects") or []:
        if service_account:
            subject["name"] = service_account
        subject["namespace"] = namespace


def update_role_binding(rb: Obj, service_account: str, namespace: str) -> None:
    """Point every subject of the role binding at the service account and namespace."""
    _update_subjects(rb, service_account, namespace)


def update_cluster_role_binding(crb: Obj, service_account: str, namespace: str) -> None:
    """Point every subject of the cluster role binding at the service account and namespace."""
    _update_subjects(crb, service_account, namespace)


def _update_first_container(dp: Obj, pull_if_not_present: bool, image: str) -> None:
    container = _containers(dp)[0]
    container["image"] = image
    container["imagePullPolicy"] = pull_policy(pull_if_not_present)


def update_scheduler_plugin_scheduler_deployment(
    dp: Obj, pull_if_not_present: bool, image: str
) -> None:
    """Set image and pull policy of the scheduler deployment's first container."""
    _update_first_container(dp, pull_if_not_present, image)


def update_scheduler_plugin_controller_deployment(
    dp: Obj, pull_if_not_present: bool, image: str
) -> None:
    """Set image and pull policy of the controller deployment's first container."""
    _update_first_container(dp, pull_if_not_present, image)


def update_resource_topology_exporter_container_config(
    pod_spec: Obj, container: Obj, config_map_name: str
) -> None:
    """Mount the optional exporter config map into the container."""
    container.setdefault("volumeMounts", []).append(
        {"name": RTE_CONFIG_MOUNT_NAME, "mountPath": "/etc/resource-topology-exporter/"}
    )
    pod_spec.setdefault("volumes", []).append(
        {
            "name": RTE_CONFIG_MOUNT_NAME,
            "configMap": {"name": config_map_name, "optional": True},
        }
    )


def update_resource_topology_exporter_daemonset(
    ds: Obj,
    config_map_name: str,
    pull_if_not_present: bool,
    node_selector: Optional[Mapping[str, Any]],
) -> None:
    """Adjust the exporter daemonset: pull policy, config map, node selector, metrics port."""
    pod_spec = _pod_spec(ds)
    for container in _named_containers(ds, CONTAINER_NAME_RTE):
        container["imagePullPolicy"] = pull_policy(pull_if_not_present)
        if config_map_name:
            update_resource_topology_exporter_container_config(
                pod_spec, container, config_map_name
            )
    _apply_node_selector(ds, node_selector)
    update_metrics_port(ds, METRICS_PORT)


def update_nfd_topology_updater_daemonset(
    ds: Obj,
    pull_if_not_present: bool,
    node_selector: Optional[Mapping[str, Any]],
    image: str,
) -> None:
    """Set image and pull policy of the topology updater container, and the node selector."""
    for container in _named_containers(ds, CONTAINER_NAME_NFD_TOPOLOGY_UPDATER):
        container["imagePullPolicy"] = pull_policy(pull_if_not_present)
        container["image"] = image
    _apply_node_selector(ds, node_selector)


def update_nfd_master_deployment(dp: Obj, pull_if_not_present: bool, image: str) -> None:
    """Set image and pull policy of the NFD master container."""
    for container in _named_containers(dp, CONTAINER_NAME_NFD_MASTER):
        container["imagePullPolicy"] = pull_policy(pull_if_not_present)
        container["image"] = image


def update_machine_config(
    mc: Obj, name: str, mcp_selector: Optional[Mapping[str, Any]]
) -> None:
    """Rename the machine config and label it for the selected machine config pool."""
    if name:
        _metadata(mc)["name"] = f"51-{name}"
    if mcp_selector is not None:
        labels = mcp_selector.get("matchLabels")
        if labels is None:
            _metadata(mc).pop("labels", None)
        else:
            _metadata(mc)["labels"] = dict(labels)


def update_security_context_constraint(scc: Obj, sa: Obj) -> None:
    """Grant the service account the constraint, once."""
    meta = sa.get("metadata") or {}
    user = f"system:serviceaccount:{meta.get('namespace', '')}:{meta.get('name', '')}"
    users = scc.setdefault("users", [])
    if user not in users:
        users.append(user)


def update_metrics_port(ds: Obj, port: int) -> None:
    """Expose the metrics port on the first container and set METRICS_PORT to it."""
    container = _containers(ds)[0]
    for env in container.get("env") or []:
        if env.get("name") == "METRICS_PORT":
            env["value"] = str(port)
    container["ports"] = [{"name": "metrics-port", "containerPort": port}]