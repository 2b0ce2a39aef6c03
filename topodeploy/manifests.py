"""Loading of the deployer's bundled manifests and their platform-specific adjustments."""

from __future__ import annotations

import base64
import enum
import io
import json
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from topodeploy.codec import deserialize_object, serialize_object

COMPONENT_API = "api"
COMPONENT_SCHEDULER_PLUGIN = "sched"
COMPONENT_RESOURCE_TOPOLOGY_EXPORTER = "rte"
COMPONENT_NODE_FEATURE_DISCOVERY = "nfd"

SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER = "scheduler"
SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER = "controller"
SUB_COMPONENT_NODE_FEATURE_DISCOVERY_MASTER = "master"
SUB_COMPONENT_NODE_FEATURE_DISCOVERY_TOPOLOGY_UPDATER = "topologyupdater"

DEFAULT_IGNITION_VERSION = "3.2.0"
DEFAULT_IGNITION_CONTENT_SOURCE = "data:text/plain;charset=utf-8;base64"
DEFAULT_OCI_HOOKS_DIR = "/etc/containers/oci/hooks.d"
DEFAULT_SCRIPTS_DIR = "/usr/local/bin"
SELINUX_RTE_POLICY_DST = "/etc/selinux/rte.cil"
SELINUX_RTE_CONTEXT_TYPE = "rte.process"
SELINUX_RTE_CONTEXT_LEVEL = "s0"
TEMPLATE_SELINUX_POLICY_DST = "selinuxPolicyDst"
TEMPLATE_NOTIFIER_BINARY_DST = "notifierScriptPath"
TEMPLATE_NOTIFIER_FILE_PATH = "notifierFilePath"

CONTAINER_NAME_RTE = "resource-topology-exporter"
RTE_NOTIFIER_VOLUME_NAME = "host-run-rte"
RTE_SYS_VOLUME_NAME = "host-sys"
RTE_PODRESOURCES_SOCKET_VOLUME_NAME = "host-podresources-socket"
RTE_KUBELET_DIR_VOLUME_NAME = "host-var-lib-kubelet"
RTE_NOTIFIER_FILE_NAME = "notify"
HOST_NOTIFIER_DIR = "/run/rte"

KUBE_SCHEDULER_CONFIG_API_VERSION = "kubescheduler.config.k8s.io/v1beta2"
KUBE_SCHEDULER_CONFIG_KIND = "KubeSchedulerConfiguration"

Obj = dict[str, Any]
_Content = Union[bytes, str]


class Platform(enum.Enum):
    """Cluster flavour the manifests are rendered for."""

    KUBERNETES = "Kubernetes"
    OPENSHIFT = "OpenShift"


class ManifestError(Exception):
    """Raised when a manifest cannot be found, parsed or is of the wrong kind."""


@dataclass(frozen=True)
class RTEAssets:
    """Host-side files that the exporter's machine config installs."""

    selinux_policy: bytes
    hook_config_rte_notifier: bytes
    notifier_script: bytes
    selinux_install_systemd_service_template: bytes


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _as_bytes(content: _Content) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else bytes(content)


def validate_component(component: str) -> None:
    """Raise ManifestError unless ``component`` is a known component."""
    if component in (
        COMPONENT_API,
        COMPONENT_RESOURCE_TOPOLOGY_EXPORTER,
        COMPONENT_NODE_FEATURE_DISCOVERY,
        COMPONENT_SCHEDULER_PLUGIN,
    ):
        return
    raise ManifestError(f"unknown component: {_quote(component)}")


def validate_sub_component(component: str, sub_component: str) -> None:
    """Raise ManifestError unless ``sub_component`` is empty or belongs to ``component``."""
    if not sub_component:
        return
    if component == COMPONENT_SCHEDULER_PLUGIN and sub_component in (
        SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER,
        SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER,
    ):
        return
    if component == COMPONENT_NODE_FEATURE_DISCOVERY and sub_component in (
        SUB_COMPONENT_NODE_FEATURE_DISCOVERY_TOPOLOGY_UPDATER,
        SUB_COMPONENT_NODE_FEATURE_DISCOVERY_MASTER,
    ):
        return
    raise ManifestError(
        f"unknown subComponent {_quote(sub_component)} for component: {_quote(component)}"
    )


def _require_rte(component: str) -> None:
    if component != COMPONENT_RESOURCE_TOPOLOGY_EXPORTER:
        raise ManifestError(
            f"component {_quote(component)} is not an "
            f"{_quote(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER)} component"
        )


_ACTION_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_FIELD_RE = re.compile(r"\.([A-Za-z_][A-Za-z0-9_]*)")
_NO_VALUE = "<no value>"


def render_template(content: _Content, args: Mapping[str, str]) -> str:
    """Expand ``{{.key}}`` actions in ``content`` with values from ``args``.

    Trim markers (``{{- `` and `` -}}``) and comments are honoured; missing keys
    expand to ``<no value>``. Any other action raises ManifestError.
    """
    text = content.decode("utf-8") if isinstance(content, bytes) else content
    pieces: list[str] = []
    pos = 0
    trim_next = False
    for match in _ACTION_RE.finditer(text):
        chunk = text[pos : match.start()]
        if trim_next:
            chunk = chunk.lstrip()
        action = match.group(1)
        if action[:1] == "-" and action[1:2].isspace():
            chunk = chunk.rstrip()
            action = action[2:]
        trim_next = action[-1:] == "-" and action[-2:-1].isspace()
        if trim_next:
            action = action[:-2]
        if "{{" in chunk:
            raise ManifestError("template: unexpected nested action")
        pieces.append(chunk)
        pos = match.end()

        action = action.strip()
        if action.startswith("/*") and action.endswith("*/"):
            continue
        field_match = _FIELD_RE.fullmatch(action)
        if field_match is None:
            raise ManifestError(f"template: unsupported action {{{{{action}}}}}")
        pieces.append(str(args.get(field_match.group(1), _NO_VALUE)))

    tail = text[pos:]
    if trim_next:
        tail = tail.lstrip()
    if "{{" in tail:
        raise ManifestError("template: unclosed action")
    pieces.append(tail)
    return "".join(pieces)


def _ignition_file(content: bytes, mode: int, destination: str) -> Obj:
    encoded = base64.b64encode(content).decode("ascii")
    return {
        "path": destination,
        "contents": {"source": f"{DEFAULT_IGNITION_CONTENT_SOURCE},{encoded}"},
        "mode": mode,
    }


_JSON_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _compact_json(value: Any) -> bytes:
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    for char, escape in _JSON_HTML_ESCAPES.items():
        text = text.replace(char, escape)
    return text.encode("utf-8")


def ignition_config(assets: RTEAssets) -> bytes:
    """Build the ignition config that installs the exporter's host-side assets, as JSON."""
    notifier_script_path = posixpath.join(DEFAULT_SCRIPTS_DIR, "rte-notifier.sh")
    hook_config = render_template(
        _as_bytes(assets.hook_config_rte_notifier),
        {
            TEMPLATE_NOTIFIER_BINARY_DST: notifier_script_path,
            TEMPLATE_NOTIFIER_FILE_PATH: posixpath.join(HOST_NOTIFIER_DIR, RTE_NOTIFIER_FILE_NAME),
        },
    )
    files = [
        _ignition_file(_as_bytes(assets.selinux_policy), 0o644, SELINUX_RTE_POLICY_DST),
        _ignition_file(
            hook_config.encode("utf-8"),
            0o644,
            posixpath.join(DEFAULT_OCI_HOOKS_DIR, "rte-notifier.json"),
        ),
        _ignition_file(_as_bytes(assets.notifier_script), 0o755, notifier_script_path),
    ]
    service = render_template(
        _as_bytes(assets.selinux_install_systemd_service_template),
        {TEMPLATE_SELINUX_POLICY_DST: SELINUX_RTE_POLICY_DST},
    )
    config = {
        "ignition": {"version": DEFAULT_IGNITION_VERSION},
        "storage": {"files": files},
        "systemd": {
            "units": [
                {
                    "contents": service,
                    "enabled": True,
                    "name": "rte-selinux-policy-install.service",
                }
            ]
        },
    }
    return _compact_json(config)


def kube_scheduler_configuration_from_data(data: _Content) -> Obj:
    """Parse a scheduler configuration; raise ManifestError if it is anything else."""
    try:
        obj = deserialize_object(data)
    except ValueError as err:
        raise ManifestError(str(err)) from err
    if (
        obj.get("kind") != KUBE_SCHEDULER_CONFIG_KIND
        or obj.get("apiVersion") != KUBE_SCHEDULER_CONFIG_API_VERSION
    ):
        raise ManifestError(
            f"unexpected type, got {obj.get('kind')} {obj.get('apiVersion')}"
        )
    return obj


def kube_scheduler_configuration_to_data(sc: Obj) -> bytes:
    """Serialize a scheduler configuration to YAML bytes."""
    buffer = io.StringIO()
    serialize_object(sc, buffer)
    return buffer.getvalue().encode("utf-8")


def _set_namespace(obj: Obj, namespace: str) -> None:
    if namespace:
        obj.setdefault("metadata", {})["namespace"] = namespace


def _host_path_volume(name: str, path: str, path_type: str) -> Obj:
    return {"name": name, "hostPath": {"path": path, "type": path_type}}


class ManifestLoader:
    """Loads component manifests from a directory laid out as ``<component>/[<sub>/]<file>.yaml``."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def _load(self, kind: str, *parts: str) -> Obj:
        path = self.root.joinpath(*(part for part in parts if part))
        try:
            data = path.read_bytes()
        except OSError as err:
            raise ManifestError(f"cannot read {path}: {err}") from err
        try:
            obj = deserialize_object(data)
        except ValueError as err:
            raise ManifestError(f"cannot decode {path}: {err}") from err
        if obj.get("kind") != kind:
            raise ManifestError(f"unexpected type, got {obj.get('kind')}")
        return obj

    def _load_component(
        self, kind: str, component: str, sub_component: str, filename: str
    ) -> Obj:
        validate_component(component)
        validate_sub_component(component, sub_component)
        return self._load(kind, component, sub_component, filename)

    def namespace(self, component: str) -> Obj:
        """Return the component's Namespace."""
        validate_component(component)
        return self._load("Namespace", component, "namespace.yaml")

    def service_account(self, component: str, sub_component: str, namespace: str) -> Obj:
        """Return the ServiceAccount, moved to ``namespace`` when one is given."""
        sa = self._load_component("ServiceAccount", component, sub_component, "serviceaccount.yaml")
        _set_namespace(sa, namespace)
        return sa

    def role(self, component: str, sub_component: str, namespace: str) -> Obj:
        """Return the Role, moved to ``namespace`` when one is given."""
        role = self._load_component("Role", component, sub_component, "role.yaml")
        _set_namespace(role, namespace)
        return role

    def role_binding(self, component: str, sub_component: str, namespace: str) -> Obj:
        """Return the RoleBinding, moved to ``namespace`` when one is given."""
        rb = self._load_component("RoleBinding", component, sub_component, "rolebinding.yaml")
        _set_namespace(rb, namespace)
        return rb

    def cluster_role(self, component: str, sub_component: str) -> Obj:
        """Return the ClusterRole."""
        return self._load_component("ClusterRole", component, sub_component, "clusterrole.yaml")

    def cluster_role_binding(self, component: str, sub_component: str) -> Obj:
        """Return the ClusterRoleBinding."""
        return self._load_component(
            "ClusterRoleBinding", component, sub_component, "clusterrolebinding.yaml"
        )

    def api_crd(self) -> Obj:
        """Return the NodeResourceTopology CustomResourceDefinition."""
        return self._load("CustomResourceDefinition", COMPONENT_API, "crd.yaml")

    def scheduler_crd(self) -> Obj:
        """Return the scheduler plugin's PodGroup CustomResourceDefinition."""
        return self._load("CustomResourceDefinition", COMPONENT_SCHEDULER_PLUGIN, "podgroup.crd.yaml")

    def config_map(self, component: str, sub_component: str) -> Obj:
        """Return the component's ConfigMap."""
        return self._load_component("ConfigMap", component, sub_component, "configmap.yaml")

    def deployment(self, component: str, sub_component: str, namespace: str) -> Obj:
        """Return the Deployment, moved to ``namespace`` when one is given."""
        dp = self._load_component("Deployment", component, sub_component, "deployment.yaml")
        _set_namespace(dp, namespace)
        return dp

    def daemonset(
        self,
        component: str,
        sub_component: str,
        plat: Platform,
        namespace: str,
        image: str,
    ) -> Obj:
        """Return the DaemonSet; the exporter's gets its volumes, mounts and arguments for ``plat``."""
        ds = self._load_component("DaemonSet", component, sub_component, "daemonset.yaml")

        if component == COMPONENT_RESOURCE_TOPOLOGY_EXPORTER:
            _configure_rte_daemonset(ds, plat, image)

        metadata = ds.setdefault("metadata", {})
        if namespace:
            metadata["namespace"] = namespace
        else:
            metadata.pop("namespace", None)
        return ds

    def machine_config(self, component: str, assets: RTEAssets) -> Obj:
        """Return the exporter's MachineConfig carrying the ignition config for ``assets``."""
        _require_rte(component)
        mc = self._load("MachineConfig", component, "machineconfig.yaml")
        mc.setdefault("spec", {})["config"] = json.loads(ignition_config(assets))
        return mc

    def security_context_constraint(self, component: str) -> Obj:
        """Return the exporter's SecurityContextConstraints with its SELinux context set."""
        _require_rte(component)
        scc = self._load("SecurityContextConstraints", component, "securitycontextconstraint.yaml")
        scc["seLinuxContext"] = {
            "type": "MustRunAs",
            "seLinuxOptions": {
                "type": SELINUX_RTE_CONTEXT_TYPE,
                "level": SELINUX_RTE_CONTEXT_LEVEL,
            },
        }
        return scc

    def service(self, component: str, sub_component: str, namespace: str) -> Obj:
        """Return the Service, moved to ``namespace`` when one is given."""
        sv = self._load_component("Service", component, sub_component, "service.yaml")
        _set_namespace(sv, namespace)
        return sv


def _configure_rte_daemonset(ds: Obj, plat: Platform, image: str) -> None:
    pod_spec = ds.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})
    volumes = [
        # CPU, PCI devices and memory information
        _host_path_volume(RTE_SYS_VOLUME_NAME, "/sys", "Directory"),
        _host_path_volume(
            RTE_PODRESOURCES_SOCKET_VOLUME_NAME,
            "/var/lib/kubelet/pod-resources/kubelet.sock",
            "Socket",
        ),
        _host_path_volume(RTE_NOTIFIER_VOLUME_NAME, HOST_NOTIFIER_DIR, "DirectoryOrCreate"),
    ]

    pod_resources_socket = posixpath.join("/", RTE_PODRESOURCES_SOCKET_VOLUME_NAME, "kubelet.sock")
    host_sys_dir = posixpath.join("/", RTE_SYS_VOLUME_NAME)
    mounts = [
        {"name": RTE_SYS_VOLUME_NAME, "readOnly": True, "mountPath": host_sys_dir},
        {"name": RTE_PODRESOURCES_SOCKET_VOLUME_NAME, "mountPath": pod_resources_socket},
        {
            "name": RTE_NOTIFIER_VOLUME_NAME,
            "mountPath": posixpath.join("/", RTE_NOTIFIER_VOLUME_NAME),
        },
    ]
    if plat == Platform.KUBERNETES:
        volumes.append(
            _host_path_volume(RTE_KUBELET_DIR_VOLUME_NAME, "/var/lib/kubelet", "Directory")
        )
        mounts.append(
            {
                "name": RTE_KUBELET_DIR_VOLUME_NAME,
                "readOnly": True,
                "mountPath": posixpath.join("/", RTE_KUBELET_DIR_VOLUME_NAME),
            }
        )
    pod_spec["volumes"] = volumes

    for container in pod_spec.get("containers") or []:
        if container.get("name") != CONTAINER_NAME_RTE:
            continue
        container["image"] = image
        container["command"] = ["/bin/resource-topology-exporter"]
        args = [
            "--sleep-interval=10s",
            f"--sysfs={host_sys_dir}",
            f"--podresources-socket=unix://{pod_resources_socket}",
            f"--notify-file=/{RTE_NOTIFIER_VOLUME_NAME}/{RTE_NOTIFIER_FILE_NAME}",
        ]
        if plat == Platform.OPENSHIFT:
            args.append("--topology-manager-policy=single-numa-node")
            # needed to watch the kubelet state dirs and open the podresources socket R/W
            security_context = container.get("securityContext")
            if security_context is None:
                security_context = container["securityContext"] = {}
            security_context["seLinuxOptions"] = {
                "type": SELINUX_RTE_CONTEXT_TYPE,
                "level": SELINUX_RTE_CONTEXT_LEVEL,
            }
        if plat == Platform.KUBERNETES:
            args.append(f"--kubelet-config-file=/{RTE_KUBELET_DIR_VOLUME_NAME}/config.yaml")
            args.append(f"--kubelet-state-dir=/{RTE_KUBELET_DIR_VOLUME_NAME}")
        container["args"] = args
        container["volumeMounts"] = [dict(mount) for mount in mounts]


__all__ = [
    "ManifestError",
    "ManifestLoader",
    "Platform",
    "RTEAssets",
    "ignition_config",
    "kube_scheduler_configuration_from_data",
    "kube_scheduler_configuration_to_data",
    "render_template",
    "validate_component",
    "validate_sub_component",
]