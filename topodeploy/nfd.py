"""Manifests of the node feature discovery component."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from topodeploy.manifests import (
    COMPONENT_NODE_FEATURE_DISCOVERY,
    SUB_COMPONENT_NODE_FEATURE_DISCOVERY_MASTER,
    SUB_COMPONENT_NODE_FEATURE_DISCOVERY_TOPOLOGY_UPDATER,
    ManifestLoader,
    Platform,
)
from topodeploy.updates import (
    update_cluster_role_binding,
    update_nfd_master_deployment,
    update_nfd_topology_updater_daemonset,
)

Obj = dict[str, Any]


def _meta(obj: Obj) -> Obj:
    return obj.setdefault("metadata", {})


def _name(obj: Optional[Obj]) -> str:
    if obj is None:
        return ""
    return (obj.get("metadata") or {}).get("name", "")


def _pod_spec(obj: Obj) -> Obj:
    return obj.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})


@dataclass
class RenderOptions:
    """Options that tailor the node feature discovery manifests."""

    pull_if_not_present: bool = False
    # daemonset option
    node_selector: Optional[Mapping[str, Any]] = None
    # deployment option
    replicas: int = 0
    # general options
    namespace: str = ""
    image: str = ""


@dataclass
class Manifests:
    """The objects that make up the node feature discovery component."""

    namespace: Optional[Obj] = None
    # master objects
    sa_master: Optional[Obj] = None
    cr_master: Optional[Obj] = None
    crb_master: Optional[Obj] = None
    dp_master: Optional[Obj] = None
    sv_master: Optional[Obj] = None
    # topology-updater objects
    sa_topology_updater: Optional[Obj] = None
    cr_topology_updater: Optional[Obj] = None
    crb_topology_updater: Optional[Obj] = None
    ds_topology_updater: Optional[Obj] = None
    plat: Platform = Platform.KUBERNETES

    def clone(self) -> "Manifests":
        """Return a deep copy of these manifests."""
        return Manifests(
            namespace=copy.deepcopy(self.namespace),
            sa_master=copy.deepcopy(self.sa_master),
            cr_master=copy.deepcopy(self.cr_master),
            crb_master=copy.deepcopy(self.crb_master),
            dp_master=copy.deepcopy(self.dp_master),
            sv_master=copy.deepcopy(self.sv_master),
            sa_topology_updater=copy.deepcopy(self.sa_topology_updater),
            cr_topology_updater=copy.deepcopy(self.cr_topology_updater),
            crb_topology_updater=copy.deepcopy(self.crb_topology_updater),
            ds_topology_updater=copy.deepcopy(self.ds_topology_updater),
            plat=self.plat,
        )

    def render(self, options: RenderOptions) -> "Manifests":
        """Return a copy adjusted by ``options``; these manifests stay untouched."""
        ret = self.clone()

        replicas = options.replicas if options.replicas > 0 else 1
        ret.dp_master.setdefault("spec", {})["replicas"] = replicas

        if options.namespace:
            _meta(ret.namespace)["name"] = options.namespace
        namespace = _name(ret.namespace)

        master_sa = _name(self.sa_master)
        updater_sa = _name(self.sa_topology_updater)
        update_cluster_role_binding(ret.crb_master, master_sa, namespace)
        update_cluster_role_binding(ret.crb_topology_updater, updater_sa, namespace)

        _pod_spec(ret.dp_master)["serviceAccountName"] = master_sa
        _pod_spec(ret.ds_topology_updater)["serviceAccountName"] = updater_sa

        update_nfd_master_deployment(ret.dp_master, options.pull_if_not_present, options.image)
        update_nfd_topology_updater_daemonset(
            ret.ds_topology_updater,
            options.pull_if_not_present,
            options.node_selector,
            options.image,
        )
        return ret

    def to_objects(self) -> list[Optional[Obj]]:
        """Return the objects in the order they are applied."""
        return [
            self.namespace,
            self.cr_master,
            self.crb_master,
            self.sa_master,
            self.dp_master,
            self.sv_master,
            self.sa_topology_updater,
            self.cr_topology_updater,
            self.crb_topology_updater,
            self.ds_topology_updater,
        ]


def get_manifests(loader: ManifestLoader, plat: Platform, namespace: str = "") -> Manifests:
    """Load the node feature discovery manifests for ``plat``."""
    component = COMPONENT_NODE_FEATURE_DISCOVERY
    master = SUB_COMPONENT_NODE_FEATURE_DISCOVERY_MASTER
    updater = SUB_COMPONENT_NODE_FEATURE_DISCOVERY_TOPOLOGY_UPDATER

    mf = Manifests(plat=plat)
    mf.namespace = loader.namespace(component)
    mf.sa_master = loader.service_account(component, master, namespace)
    mf.cr_master = loader.cluster_role(component, master)
    mf.crb_master = loader.cluster_role_binding(component, master)
    mf.dp_master = loader.deployment(component, master, namespace)
    mf.sa_topology_updater = loader.service_account(component, updater, namespace)
    mf.cr_topology_updater = loader.cluster_role(component, updater)
    mf.crb_topology_updater = loader.cluster_role_binding(component, updater)
    mf.ds_topology_updater = loader.daemonset(component, updater, plat, namespace, "")
    mf.sv_master = loader.service(component, master, namespace)
    return mf