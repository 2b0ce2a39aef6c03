# topodeploy

Render and validate the manifests needed to run topology-aware scheduling
on Kubernetes and OpenShift clusters. Objects are plain Python dicts in the
usual Kubernetes shape (`apiVersion`, `kind`, `metadata`, `spec`, ...).

- `topodeploy.api` – the NodeResourceTopology custom resource definition.
- `topodeploy.rte` – the resource-topology-exporter daemon set with its
  service account, roles, bindings, optional config map and, on OpenShift,
  its machine config and security context constraints.
- `topodeploy.nfd` – the node-feature-discovery master deployment and
  service, and the topology updater daemon set, with their RBAC.
- `topodeploy.sched` – the topology-aware scheduler plugin and its
  controller, with CRD, namespace, config map and RBAC.
- `topodeploy.manifests` – `ManifestLoader`, which reads the YAML files,
  plus the ignition config builder and scheduler configuration helpers.
- `topodeploy.updates` – the in-place adjustments that rendering applies.
- `topodeploy.codec` – YAML serialization of objects.
- `topodeploy.validator` – checks of cluster version and kubelet settings.
- `topodeploy.tlog` – a small printf-style logging adapter.

## Installation

```
pip install topodeploy
```

To run the test suite:

```
pip install "topodeploy[test]"
pytest
```

## Loading manifests

`ManifestLoader(root)` reads YAML files from a directory laid out as
`<component>/[<sub-component>/]<file>.yaml`. Components are `api`, `rte`,
`nfd` and `sched`; sub-components are `scheduler` and `controller` for
`sched`, and `master` and `topologyupdater` for `nfd`. The files it looks
for are `namespace.yaml`, `serviceaccount.yaml`, `role.yaml`,
`rolebinding.yaml`, `clusterrole.yaml`, `clusterrolebinding.yaml`,
`configmap.yaml`, `deployment.yaml`, `daemonset.yaml`, `service.yaml`,
`rte/machineconfig.yaml`, `rte/securitycontextconstraint.yaml`,
`api/crd.yaml` and `sched/podgroup.crd.yaml`.

Each loaded document must have the expected `kind`. An unknown component or
sub-component, a missing or unreadable file, or an object of the wrong kind
raises `ManifestError`.

`ManifestLoader.daemonset(...)` gives the `rte` daemon set its host-path
volumes, volume mounts, image, command and arguments for the chosen
`Platform` (`Platform.KUBERNETES` or `Platform.OPENSHIFT`); on Kubernetes it
also mounts the kubelet directory, on OpenShift it sets the SELinux options
and the single-numa-node topology manager policy argument.

## Rendering

Each component module has `get_manifests(...)`, a `Manifests` dataclass with
`clone()`, `render(...)` and `to_objects()`, and (except `api`) a
`RenderOptions` dataclass. `render` never modifies the manifests it is
called on: it works on a `clone()` and returns the result.

```python
from topodeploy import rte
from topodeploy.codec import serialize_object
from topodeploy.manifests import ManifestLoader, Platform

loader = ManifestLoader("path/to/yaml")
mf = rte.get_manifests(
    loader,
    Platform.KUBERNETES,
    "tas-system",
    "quay.io/example/resource-topology-exporter:latest",
    None,
)
rendered = mf.render(rte.RenderOptions(namespace="tas-system", pull_if_not_present=True))

with open("rte.yaml", "w") as out:
    for obj in rendered.to_objects():
        out.write("---\n")
        serialize_object(obj, out)
```

For OpenShift, `rte.get_manifests` needs an `RTEAssets` holding the SELinux
policy, the OCI hook config template, the notifier script and the systemd
unit template; it raises `ManifestError` without them. The machine config
then carries the ignition config built by `manifests.ignition_config`.

Image names are passed in by the caller: `rte.get_manifests(..., image, ...)`,
`nfd.RenderOptions(image=...)` and
`sched.RenderOptions(scheduler_image=..., controller_image=...)`.
`sched.Manifests.render(logger, options)` takes an optional `LogAdapter`
for a debug message.

`serialize_object` writes an object as YAML, leaving out `status` and the
`creationTimestamp` fields; `deserialize_object` parses a YAML or JSON
document and raises `ValueError` if it is not a mapping with `kind` and
`apiVersion`.

## Validating a cluster

```python
import logging

from topodeploy.tlog import LogAdapter
from topodeploy.validator import (
    KubeletConfiguration,
    Validator,
    VersionInfo,
    validate_cluster_version,
)

for issue in validate_cluster_version("v1.20.4"):
    print(issue)

logger = logging.getLogger("validate")
vd = Validator(LogAdapter(logger, logger))
vd.validate_cluster_version(VersionInfo(git_version="v1.23.1"))
vd.validate_cluster_config({"worker-0": KubeletConfiguration(cpu_manager_policy="static")})
for issue in vd.results():
    print(issue)
```

The minimum cluster version is 1.21. Each `ValidationResult` names the node,
area, component and setting that differ from what topology-aware scheduling
needs, with the expected and detected values. The kubelet checks cover the
`KubeletPodResourcesGetAllocatable` feature gate (only for nodes older than
1.23 or of unknown version), the static CPU manager policy and a reconcile
period between 1s and 10s, reserved CPUs and memory, the `Static` memory
manager policy and the `single-numa-node` topology manager policy.

## What this package does not do

- It does not talk to a cluster: it does not create, update or delete
  objects, wait for pods or daemon sets, query the server version, or fetch
  kubelet configurations. The caller supplies `VersionInfo` and
  `KubeletConfiguration` values and applies the rendered objects.
- It ships no manifest YAML files, no host assets and no default image
  names; these are given by the caller.
- It has no command-line tool.