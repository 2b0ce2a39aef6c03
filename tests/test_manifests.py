import base64
import json

import pytest
import yaml

from topodeploy.manifests import (
    COMPONENT_API,
    COMPONENT_NODE_FEATURE_DISCOVERY,
    COMPONENT_RESOURCE_TOPOLOGY_EXPORTER,
    COMPONENT_SCHEDULER_PLUGIN,
    RTE_KUBELET_DIR_VOLUME_NAME,
    RTE_NOTIFIER_FILE_NAME,
    RTE_NOTIFIER_VOLUME_NAME,
    RTE_PODRESOURCES_SOCKET_VOLUME_NAME,
    RTE_SYS_VOLUME_NAME,
    SUB_COMPONENT_NODE_FEATURE_DISCOVERY_MASTER,
    SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER,
    SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER,
    ManifestError,
    ManifestLoader,
    Platform,
    RTEAssets,
    ignition_config,
    kube_scheduler_configuration_from_data,
    kube_scheduler_configuration_to_data,
    render_template,
    validate_component,
    validate_sub_component,
)


def _meta(name, namespace=None):
    meta = {"name": name}
    if namespace:
        meta["namespace"] = namespace
    return meta


def _write(root, relpath, obj):
    path = root / relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(obj))


def _binding(kind, name, namespace=None):
    obj = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": kind,
        "metadata": _meta(name, namespace),
        "subjects": [{"kind": "ServiceAccount", "name": name, "namespace": "default"}],
        "roleRef": {"kind": "ClusterRole", "name": name},
    }
    return obj


def _deployment(name, container):
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _meta(name, "default"),
        "spec": {"template": {"spec": {"containers": [{"name": container, "image": "x"}]}}},
    }


@pytest.fixture
def loader(tmp_path):
    crd = {"apiVersion": "apiextensions.k8s.io/v1", "kind": "CustomResourceDefinition"}
    _write(tmp_path, "api/crd.yaml", {**crd, "metadata": _meta("noderesourcetopologies")})
    _write(tmp_path, "sched/podgroup.crd.yaml", {**crd, "metadata": _meta("podgroups")})
    _write(
        tmp_path,
        "sched/namespace.yaml",
        {"apiVersion": "v1", "kind": "Namespace", "metadata": _meta("tas-scheduler")},
    )
    _write(
        tmp_path,
        "sched/configmap.yaml",
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": _meta("scheduler-config")},
    )
    for sub in ("scheduler", "controller"):
        _write(
            tmp_path,
            f"sched/{sub}/serviceaccount.yaml",
            {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": _meta(sub, "default")},
        )
        _write(
            tmp_path,
            f"sched/{sub}/clusterrole.yaml",
            {"apiVersion": "rbac.authorization.k8s.io/v1", "kind": "ClusterRole", "metadata": _meta(sub)},
        )
        _write(tmp_path, f"sched/{sub}/clusterrolebinding.yaml", _binding("ClusterRoleBinding", sub))
        _write(tmp_path, f"sched/{sub}/rolebinding.yaml", _binding("RoleBinding", sub, "default"))
        _write(tmp_path, f"sched/{sub}/deployment.yaml", _deployment(sub, sub))

    _write(
        tmp_path,
        "rte/namespace.yaml",
        {"apiVersion": "v1", "kind": "Namespace", "metadata": _meta("tas-rte")},
    )
    _write(
        tmp_path,
        "rte/serviceaccount.yaml",
        {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": _meta("rte", "default")},
    )
    _write(
        tmp_path,
        "rte/role.yaml",
        {"apiVersion": "rbac.authorization.k8s.io/v1", "kind": "Role", "metadata": _meta("rte", "default")},
    )
    _write(tmp_path, "rte/rolebinding.yaml", _binding("RoleBinding", "rte", "default"))
    _write(
        tmp_path,
        "rte/clusterrole.yaml",
        {"apiVersion": "rbac.authorization.k8s.io/v1", "kind": "ClusterRole", "metadata": _meta("rte")},
    )
    _write(tmp_path, "rte/clusterrolebinding.yaml", _binding("ClusterRoleBinding", "rte"))
    _write(
        tmp_path,
        "rte/daemonset.yaml",
        {
            "apiVersion": "apps/v1",
            "kind": "DaemonSet",
            "metadata": _meta("resource-topology-exporter", "default"),
            "spec": {
                "template": {
                    "spec": {
                        "containers": [
                            {"name": "resource-topology-exporter", "image": "old"},
                        ]
                    }
                }
            },
        },
    )
    _write(
        tmp_path,
        "rte/machineconfig.yaml",
        {
            "apiVersion": "machineconfiguration.openshift.io/v1",
            "kind": "MachineConfig",
            "metadata": _meta("51-rte"),
            "spec": {},
        },
    )
    _write(
        tmp_path,
        "rte/securitycontextconstraint.yaml",
        {
            "apiVersion": "security.openshift.io/v1",
            "kind": "SecurityContextConstraints",
            "metadata": _meta("resource-topology-exporter"),
            "users": [],
        },
    )
    _write(
        tmp_path,
        "nfd/master/service.yaml",
        {"apiVersion": "v1", "kind": "Service", "metadata": _meta("nfd-master", "node-feature-discovery")},
    )
    return ManifestLoader(tmp_path)


@pytest.fixture
def assets():
    return RTEAssets(
        selinux_policy=b"(type rte)\n",
        hook_config_rte_notifier=(
            b'{"hook": {"path": "{{.notifierScriptPath}}", "args": ["{{ .notifierFilePath }}"]}}'
        ),
        notifier_script=b"#!/bin/bash\ntouch $1\n",
        selinux_install_systemd_service_template=b"ExecStart=/usr/sbin/semodule -i {{.selinuxPolicyDst}}\n",
    )


@pytest.mark.parametrize(
    "component, ok",
    [
        ("unknown-wrong", False),
        (COMPONENT_API, False),
        (COMPONENT_SCHEDULER_PLUGIN, True),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, True),
    ],
)
def test_namespace(loader, component, ok):
    if ok:
        assert loader.namespace(component)["kind"] == "Namespace"
    else:
        with pytest.raises(ManifestError):
            loader.namespace(component)


@pytest.mark.parametrize(
    "component, sub, ok",
    [
        ("unknown-wrong", "", False),
        (COMPONENT_API, "", False),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER, True),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER, True),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", True),
    ],
)
def test_service_account(loader, component, sub, ok):
    if ok:
        assert loader.service_account(component, sub, "")["kind"] == "ServiceAccount"
    else:
        with pytest.raises(ManifestError):
            loader.service_account(component, sub, "")


def test_service_account_namespace_override(loader):
    sa = loader.service_account(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", "custom")
    assert sa["metadata"]["namespace"] == "custom"
    kept = loader.service_account(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", "")
    assert kept["metadata"]["namespace"] == "default"


@pytest.mark.parametrize(
    "component, sub, ok",
    [
        ("unknown-wrong", "", False),
        (COMPONENT_API, "", False),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER, False),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER, False),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", True),
    ],
)
def test_role(loader, component, sub, ok):
    if ok:
        assert loader.role(component, sub, "")["kind"] == "Role"
    else:
        with pytest.raises(ManifestError):
            loader.role(component, sub, "")


@pytest.mark.parametrize(
    "component, sub, ok",
    [
        ("unknown-wrong", "", False),
        (COMPONENT_API, "", False),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER, True),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER, True),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", True),
    ],
)
def test_role_binding(loader, component, sub, ok):
    if ok:
        assert loader.role_binding(component, sub, "")["kind"] == "RoleBinding"
    else:
        with pytest.raises(ManifestError):
            loader.role_binding(component, sub, "")


@pytest.mark.parametrize(
    "component, sub, ok",
    [
        ("unknown-wrong", "", False),
        (COMPONENT_API, "", False),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER, True),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER, True),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", True),
    ],
)
def test_cluster_role_and_binding(loader, component, sub, ok):
    if ok:
        assert loader.cluster_role(component, sub)["kind"] == "ClusterRole"
        assert loader.cluster_role_binding(component, sub)["kind"] == "ClusterRoleBinding"
    else:
        with pytest.raises(ManifestError):
            loader.cluster_role(component, sub)
        with pytest.raises(ManifestError):
            loader.cluster_role_binding(component, sub)


def test_crds(loader):
    assert loader.api_crd()["metadata"]["name"] == "noderesourcetopologies"
    assert loader.scheduler_crd()["metadata"]["name"] == "podgroups"


@pytest.mark.parametrize(
    "component, ok",
    [
        ("unknown-wrong", False),
        (COMPONENT_API, False),
        (COMPONENT_SCHEDULER_PLUGIN, True),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, False),
    ],
)
def test_config_map(loader, component, ok):
    if ok:
        assert loader.config_map(component, "")["kind"] == "ConfigMap"
    else:
        with pytest.raises(ManifestError):
            loader.config_map(component, "")


@pytest.mark.parametrize(
    "component, sub, ok",
    [
        ("unknown-wrong", "", False),
        (COMPONENT_API, "", False),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_SCHEDULER, True),
        (COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER, True),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", False),
    ],
)
def test_deployment(loader, component, sub, ok):
    if ok:
        assert loader.deployment(component, sub, "")["kind"] == "Deployment"
    else:
        with pytest.raises(ManifestError):
            loader.deployment(component, sub, "")


@pytest.mark.parametrize(
    "component, ok",
    [
        ("unknown-wrong", False),
        (COMPONENT_API, False),
        (COMPONENT_SCHEDULER_PLUGIN, False),
        (COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, True),
    ],
)
def test_get_daemonset(loader, component, ok):
    if ok:
        ds = loader.daemonset(component, "", Platform.KUBERNETES, "", "img")
        assert ds["kind"] == "DaemonSet"
    else:
        with pytest.raises(ManifestError):
            loader.daemonset(component, "", Platform.KUBERNETES, "", "img")


_SOCKET = f"/{RTE_PODRESOURCES_SOCKET_VOLUME_NAME}/kubelet.sock"
_SYS = f"/{RTE_SYS_VOLUME_NAME}"


@pytest.mark.parametrize(
    "plat, expected_args, expected_volumes, expected_mounts",
    [
        (
            Platform.OPENSHIFT,
            [
                f"--sysfs={_SYS}",
                f"--podresources-socket=unix://{_SOCKET}",
                f"--notify-file=/{RTE_NOTIFIER_VOLUME_NAME}/{RTE_NOTIFIER_FILE_NAME}",
                "--topology-manager-policy=single-numa-node",
            ],
            {
                RTE_SYS_VOLUME_NAME: "/sys",
                RTE_PODRESOURCES_SOCKET_VOLUME_NAME: "/var/lib/kubelet/pod-resources/kubelet.sock",
                RTE_NOTIFIER_VOLUME_NAME: "/run/rte",
            },
            {
                RTE_SYS_VOLUME_NAME: _SYS,
                RTE_PODRESOURCES_SOCKET_VOLUME_NAME: _SOCKET,
                RTE_NOTIFIER_VOLUME_NAME: f"/{RTE_NOTIFIER_VOLUME_NAME}",
            },
        ),
        (
            Platform.KUBERNETES,
            [
                f"--sysfs={_SYS}",
                f"--podresources-socket=unix://{_SOCKET}",
                f"--kubelet-config-file=/{RTE_KUBELET_DIR_VOLUME_NAME}/config.yaml",
                f"--kubelet-state-dir=/{RTE_KUBELET_DIR_VOLUME_NAME}",
                f"--notify-file=/{RTE_NOTIFIER_VOLUME_NAME}/{RTE_NOTIFIER_FILE_NAME}",
            ],
            {
                RTE_SYS_VOLUME_NAME: "/sys",
                RTE_PODRESOURCES_SOCKET_VOLUME_NAME: "/var/lib/kubelet/pod-resources/kubelet.sock",
                RTE_KUBELET_DIR_VOLUME_NAME: "/var/lib/kubelet",
                RTE_NOTIFIER_VOLUME_NAME: "/run/rte",
            },
            {
                RTE_SYS_VOLUME_NAME: _SYS,
                RTE_PODRESOURCES_SOCKET_VOLUME_NAME: _SOCKET,
                RTE_KUBELET_DIR_VOLUME_NAME: f"/{RTE_KUBELET_DIR_VOLUME_NAME}",
                RTE_NOTIFIER_VOLUME_NAME: f"/{RTE_NOTIFIER_VOLUME_NAME}",
            },
        ),
    ],
)
def test_rte_daemonset(loader, plat, expected_args, expected_volumes, expected_mounts):
    ds = loader.daemonset(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", plat, "test", "rte:latest")
    pod_spec = ds["spec"]["template"]["spec"]

    volumes = {v["name"]: v["hostPath"]["path"] for v in pod_spec["volumes"]}
    assert len(pod_spec["volumes"]) == len(expected_volumes)
    assert volumes == expected_volumes

    container = pod_spec["containers"][0]
    mounts = {m["name"]: m["mountPath"] for m in container["volumeMounts"]}
    assert len(container["volumeMounts"]) == len(expected_volumes)
    assert mounts == expected_mounts

    command = " ".join(container["args"])
    for arg in expected_args:
        assert arg in command
    assert container["image"] == "rte:latest"
    assert container["command"] == ["/bin/resource-topology-exporter"]
    assert ds["metadata"]["namespace"] == "test"


def test_rte_daemonset_openshift_selinux(loader):
    ds = loader.daemonset(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", Platform.OPENSHIFT, "", "img")
    container = ds["spec"]["template"]["spec"]["containers"][0]
    assert container["securityContext"]["seLinuxOptions"] == {"type": "rte.process", "level": "s0"}
    assert "namespace" not in ds["metadata"]


def test_machine_config(loader, assets):
    mc = loader.machine_config(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, assets)
    config = mc["spec"]["config"]
    assert len(config["storage"]["files"]) == 3
    assert len(config["systemd"]["units"]) == 1
    assert config["ignition"]["version"] == "3.2.0"


def test_machine_config_rejects_other_component(loader, assets):
    with pytest.raises(ManifestError):
        loader.machine_config(COMPONENT_SCHEDULER_PLUGIN, assets)


def _decode_source(source):
    prefix = "data:text/plain;charset=utf-8;base64,"
    assert source.startswith(prefix)
    return base64.b64decode(source[len(prefix):])


def test_ignition_config_contents(assets):
    config = json.loads(ignition_config(assets))
    files = config["storage"]["files"]
    assert [f["path"] for f in files] == [
        "/etc/selinux/rte.cil",
        "/etc/containers/oci/hooks.d/rte-notifier.json",
        "/usr/local/bin/rte-notifier.sh",
    ]
    assert [f["mode"] for f in files] == [0o644, 0o644, 0o755]
    assert _decode_source(files[0]["contents"]["source"]) == b"(type rte)\n"
    hook = json.loads(_decode_source(files[1]["contents"]["source"]))
    assert hook == {"hook": {"path": "/usr/local/bin/rte-notifier.sh", "args": ["/run/rte/notify"]}}
    unit = config["systemd"]["units"][0]
    assert unit["name"] == "rte-selinux-policy-install.service"
    assert unit["enabled"] is True
    assert unit["contents"] == "ExecStart=/usr/sbin/semodule -i /etc/selinux/rte.cil\n"


def test_ignition_config_escapes_html_characters():
    assets = RTEAssets(
        selinux_policy=b"",
        hook_config_rte_notifier=b"",
        notifier_script=b"",
        selinux_install_systemd_service_template=b"a && b > c",
    )
    raw = ignition_config(assets)
    assert b"&" not in raw and b">" not in raw
    assert json.loads(raw)["systemd"]["units"][0]["contents"] == "a && b > c"


def test_security_context_constraint(loader):
    scc = loader.security_context_constraint(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER)
    assert scc["seLinuxContext"] == {
        "type": "MustRunAs",
        "seLinuxOptions": {"type": "rte.process", "level": "s0"},
    }
    with pytest.raises(ManifestError):
        loader.security_context_constraint(COMPONENT_API)


def test_service(loader):
    sv = loader.service(COMPONENT_NODE_FEATURE_DISCOVERY, SUB_COMPONENT_NODE_FEATURE_DISCOVERY_MASTER, "ns1")
    assert sv["kind"] == "Service"
    assert sv["metadata"]["namespace"] == "ns1"


def test_wrong_kind_is_rejected(tmp_path):
    _write(
        tmp_path,
        "rte/serviceaccount.yaml",
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": _meta("oops")},
    )
    with pytest.raises(ManifestError, match="unexpected type"):
        ManifestLoader(tmp_path).service_account(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "", "")


def test_validate_component():
    validate_component(COMPONENT_API)
    with pytest.raises(ManifestError, match='unknown component: "bogus"'):
        validate_component("bogus")


def test_validate_sub_component():
    validate_sub_component(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "")
    validate_sub_component(COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_SCHEDULER_PLUGIN_CONTROLLER)
    with pytest.raises(ManifestError):
        validate_sub_component(COMPONENT_RESOURCE_TOPOLOGY_EXPORTER, "master")
    with pytest.raises(ManifestError):
        validate_sub_component(COMPONENT_SCHEDULER_PLUGIN, SUB_COMPONENT_NODE_FEATURE_DISCOVERY_MASTER)


def test_render_template():
    assert render_template("x={{.a}} y={{ .b }}", {"a": "1", "b": "2"}) == "x=1 y=2"
    assert render_template(b"v={{.missing}}", {}) == "v=<no value>"
    assert render_template("a  {{- .k -}}  b", {"k": "K"}) == "aKb"
    assert render_template("a{{/* note */}}b", {}) == "ab"


def test_render_template_errors():
    with pytest.raises(ManifestError):
        render_template("oops {{.a", {"a": "1"})
    with pytest.raises(ManifestError):
        render_template("{{if .a}}x{{end}}", {"a": "1"})


_SCHED_CONFIG = """
apiVersion: kubescheduler.config.k8s.io/v1beta2
kind: KubeSchedulerConfiguration
leaderElection:
  leaderElect: false
profiles:
- schedulerName: topo-aware-scheduler
"""


def test_kube_scheduler_configuration_round_trip():
    sc = kube_scheduler_configuration_from_data(_SCHED_CONFIG.encode())
    assert sc["profiles"][0]["schedulerName"] == "topo-aware-scheduler"
    data = kube_scheduler_configuration_to_data(sc)
    assert kube_scheduler_configuration_from_data(data) == sc


def test_kube_scheduler_configuration_wrong_kind():
    with pytest.raises(ManifestError):
        kube_scheduler_configuration_from_data("apiVersion: v1\nkind: ConfigMap\n")
    with pytest.raises(ManifestError):
        kube_scheduler_configuration_from_data("just text")