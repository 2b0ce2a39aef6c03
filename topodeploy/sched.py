"""Manifests of the topology-aware scheduler plugin component."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Optional

from topodeploy.manifests import (
    COMPONENT_SCHEDULER_PLUGIN,
    SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER,
    SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER,
    ManifestLoader,
    Platform,
)
from topodeploy.tlog import LogAdapter
from topodeploy.updates import (
    update_cluster_role_binding,
    update_role_binding,
    update_scheduler_plugin_controller_deployment,
    update_scheduler_plugin_scheduler_deployment,
)

NAMESPACE_OPENSHIFT = "openshift-topology-aware-scheduler"

Obj = dict[str, Any]


def _meta(obj: Obj) -> Obj:
    return obj.setdefault("metadata", {})


def _name(obj: Optional[Obj]) -> str:
    if obj is None:
        return ""
    return (obj.get("metadata") or {}).get("name", "")


@dataclass
class RenderOptions:
    """Options that tailor the scheduler plugin manifests."""

    replicas: int = 0
    pull_if_not_present: bool = False
    scheduler_image: str = ""
    controller_image: str = ""


@dataclass
class Manifests:
    """The objects that make up the scheduler plugin component."""

    # common
    crd: Optional[Obj] = None
    namespace: Optional[Obj] = None
    # controller
    sa_controller: Optional[Obj] = None
    cr_controller: Optional[Obj] = None
    crb_controller: Optional[Obj] = None
    rb_controller: Optional[Obj] = None
    dp_controller: Optional[Obj] = None
    # scheduler proper
    sa_scheduler: Optional[Obj] = None
    cr_scheduler: Optional[Obj] = None
    crb_scheduler: Optional[Obj] = None
    rb_scheduler: Optional[Obj] = None
    dp_scheduler: Optional[Obj] = None
    config_map: Optional[Obj] = None
    plat: Platform = Platform.KUBERNETES

    def clone(self) -> "Manifests":
        """Return a deep copy of these manifests."""
        return Manifests(
            crd=copy.deepcopy(self.crd),
            namespace=copy.deepcopy(self.namespace),
            sa_controller=copy.deepcopy(self.sa_controller),
            cr_controller=copy.deepcopy(self.cr_controller),
            crb_controller=copy.deepcopy(self.crb_controller),
            rb_controller=copy.deepcopy(self.rb_controller),
            dp_controller=copy.deepcopy(self.dp_controller),
            sa_scheduler=copy.deepcopy(self.sa_scheduler),
            cr_scheduler=copy.deepcopy(self.cr_scheduler),
            crb_scheduler=copy.deepcopy(self.crb_scheduler),
            rb_scheduler=copy.deepcopy(self.rb_scheduler),
            dp_scheduler=copy.deepcopy(self.dp_scheduler),
            config_map=copy.deepcopy(self.config_map),
            plat=self.plat,
        )

    def render(
        self, logger: Optional[LogAdapter], options: RenderOptions
    ) -> "Manifests":
        """Return a copy adjusted by ``options``; these manifests stay untouched."""
        ret = self.clone()
        replicas = options.replicas if options.replicas > 0 else 1
        ret.dp_scheduler.setdefault("spec", {})["replicas"] = replicas
        ret.dp_controller.setdefault("spec", {})["replicas"] = replicas

        update_scheduler_plugin_scheduler_deployment(
            ret.dp_scheduler, options.pull_if_not_present, options.scheduler_image
        )
        update_scheduler_plugin_controller_deployment(
            ret.dp_controller, options.pull_if_not_present, options.controller_image
        )
        if self.plat == Platform.OPENSHIFT:
            _meta(ret.namespace)["name"] = NAMESPACE_OPENSHIFT
        namespace = _name(ret.namespace)

        _meta(ret.sa_controller)["namespace"] = namespace
        update_cluster_role_binding(ret.crb_controller, _name(ret.sa_controller), namespace)
        update_role_binding(ret.rb_controller, _name(ret.sa_controller), namespace)
        _meta(ret.dp_controller)["namespace"] = namespace

        _meta(ret.sa_scheduler)["namespace"] = namespace
        update_cluster_role_binding(ret.crb_scheduler, _name(ret.sa_scheduler), namespace)
        update_role_binding(ret.rb_scheduler, _name(ret.sa_scheduler), namespace)
        _meta(ret.dp_scheduler)["namespace"] = namespace
        _meta(ret.config_map)["namespace"] = namespace

        if logger is not None:
            logger.debugf("rendered scheduler plugin manifests in namespace %s", namespace)
        return ret

    def to_objects(self) -> list[Optional[Obj]]:
        """Return the objects in the order they are applied."""
        return [
            self.crd,
            self.namespace,
            self.sa_scheduler,
            self.cr_scheduler,
            self.crb_scheduler,
            self.config_map,
            self.rb_scheduler,
            self.dp_scheduler,
            self.sa_controller,
            self.cr_controller,
            self.crb_controller,
            self.dp_controller,
            self.rb_controller,
        ]


def get_manifests(loader: ManifestLoader, plat: Platform, namespace: str = "") -> Manifests:
    """Load the scheduler plugin manifests for ``plat``."""
    component = COMPONENT_SCHEDULER_PLUGIN
    scheduler = SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER
    controller = SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER

    mf = Manifests(plat=plat)
    mf.crd = loader.scheduler_crd()
    mf.namespace = loader.namespace(component)
    mf.config_map = loader.config_map(component, "")

    mf.sa_scheduler = loader.service_account(component, scheduler, namespace)
    mf.cr_scheduler = loader.cluster_role(component, scheduler)
    mf.crb_scheduler = loader.cluster_role_binding(component, scheduler)
    mf.rb_scheduler = loader.role_binding(component, scheduler, namespace)
    mf.dp_scheduler = loader.deployment(component, scheduler, "")

    mf.sa_controller = loader.service_account(component, controller, namespace)
    mf.cr_controller = loader.cluster_role(component, controller)
    mf.crb_controller = loader.cluster_role_binding(component, controller)
    mf.rb_controller = loader.role_binding(component, controller, namespace)
    mf.dp_controller = loader.deployment(component, controller, "")
    return mf