"""Manifests of the resource topology exporter component."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from topodeploy.manifests import (
    COMPONENT_RESOURCE_TOPOLOGY_EXPORTER,
    ManifestError,
    ManifestLoader,
    Platform,
    RTEAssets,
)
from topodeploy.updates import (
    RTE_CONFIG_MAP_NAME,
    update_cluster_role_binding,
    update_machine_config,
    update_resource_topology_exporter_daemonset,
    update_role_binding,
    update_security_context_constraint,
)

CONFIG_DATA_FIELD = "config.yaml"

Obj = dict[str, Any]


def _meta(obj: Obj) -> Obj:
    return obj.setdefault("metadata", {})


def _name(obj: Obj) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def _namespace(obj: Obj) -> str:
    return (obj.get("metadata") or {}).get("namespace", "")


@dataclass
class RenderOptions:
    """Options that tailor the exporter's manifests."""

    pull_if_not_present: bool = False
    node_selector: Optional[Mapping[str, Any]] = None
    machine_config_pool_selector: Optional[Mapping[str, Any]] = None
    config_data: str = ""
    namespace: str = ""
    name: str = ""


@dataclass
class Manifests:
    """The objects that make up the exporter component."""

    service_account: Optional[Obj] = None
    role: Optional[Obj] = None
    role_binding: Optional[Obj] = None
    cluster_role: Optional[Obj] = None
    cluster_role_binding: Optional[Obj] = None
    config_map: Optional[Obj] = None
    daemonset: Optional[Obj] = None
    machine_config: Optional[Obj] = None
    security_context_constraint: Optional[Obj] = None
    plat: Platform = Platform.KUBERNETES

    def clone(self) -> "Manifests":
        """Return a deep copy; OpenShift-only objects are kept only for OpenShift."""
        ret = Manifests(
            service_account=copy.deepcopy(self.service_account),
            role=copy.deepcopy(self.role),
            role_binding=copy.deepcopy(self.role_binding),
            cluster_role=copy.deepcopy(self.cluster_role),
            cluster_role_binding=copy.deepcopy(self.cluster_role_binding),
            config_map=copy.deepcopy(self.config_map),
            daemonset=copy.deepcopy(self.daemonset),
            plat=self.plat,
        )
        if self.plat == Platform.OPENSHIFT:
            ret.machine_config = copy.deepcopy(self.machine_config)
            ret.security_context_constraint = copy.deepcopy(self.security_context_constraint)
        return ret

    def render(self, options: RenderOptions) -> "Manifests":
        """Return a copy adjusted by ``options``; these manifests stay untouched."""
        ret = self.clone()
        sa_name = _name(self.service_account)

        if ret.plat == Platform.KUBERNETES and options.namespace:
            _meta(ret.service_account)["namespace"] = options.namespace

        if options.name:
            for obj in (
                ret.role_binding,
                ret.service_account,
                ret.role,
                ret.daemonset,
                ret.cluster_role,
                ret.cluster_role_binding,
            ):
                _meta(obj)["name"] = options.name

        update_role_binding(ret.role_binding, sa_name, _namespace(ret.service_account))
        update_cluster_role_binding(
            ret.cluster_role_binding, sa_name, _namespace(self.service_account)
        )

        pod_spec = (
            ret.daemonset.setdefault("spec", {})
            .setdefault("template", {})
            .setdefault("spec", {})
        )
        pod_spec["serviceAccountName"] = sa_name

        if options.config_data:
            ret.config_map = create_config_map(
                _namespace(ret.daemonset), RTE_CONFIG_MAP_NAME, options.config_data
            )
        config_map_name = _name(ret.config_map) if ret.config_map is not None else ""
        update_resource_topology_exporter_daemonset(
            ret.daemonset, config_map_name, options.pull_if_not_present, options.node_selector
        )

        if self.plat == Platform.OPENSHIFT:
            update_machine_config(
                ret.machine_config, options.name, options.machine_config_pool_selector
            )
            update_security_context_constraint(
                ret.security_context_constraint, ret.service_account
            )
        return ret

    def to_objects(self) -> list[Optional[Obj]]:
        """Return the objects in the order they are applied."""
        objs = [
            obj
            for obj in (self.config_map, self.machine_config, self.security_context_constraint)
            if obj is not None
        ]
        objs.extend(
            [
                self.role,
                self.role_binding,
                self.cluster_role,
                self.cluster_role_binding,
                self.daemonset,
                self.service_account,
            ]
        )
        return objs


def create_config_map(namespace: str, name: str, config_data: str) -> Obj:
    """Build the ConfigMap that carries the exporter's configuration."""
    return {
        "kind": "ConfigMap",
        "apiVersion": "v1",
        "metadata": {"name": name, "namespace": namespace},
        "data": {CONFIG_DATA_FIELD: config_data},
    }


def get_manifests(
    loader: ManifestLoader,
    plat: Platform,
    namespace: str = "",
    image: str = "",
    assets: Optional[RTEAssets] = None,
) -> Manifests:
    """Load the exporter's manifests for ``plat``; OpenShift also needs ``assets``."""
    component = COMPONENT_RESOURCE_TOPOLOGY_EXPORTER
    mf = Manifests(plat=plat)
    if plat == Platform.OPENSHIFT:
        if assets is None:
            raise ManifestError("host assets are required for the OpenShift platform")
        mf.machine_config = loader.machine_config(component, assets)
        mf.security_context_constraint = loader.security_context_constraint(component)

    mf.service_account = loader.service_account(component, "", namespace)
    mf.role = loader.role(component, "", namespace)
    mf.role_binding = loader.role_binding(component, "", namespace)
    mf.cluster_role = loader.cluster_role(component, "")
    mf.cluster_role_binding = loader.cluster_role_binding(component, "")
    mf.daemonset = loader.daemonset(component, "", plat, namespace, image)
    return mf