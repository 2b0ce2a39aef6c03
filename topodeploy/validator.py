"""Validation of cluster version and kubelet configuration for topology-aware scheduling."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

from topodeploy.tlog import LogAdapter, new_null_log_adapter

AREA_CLUSTER = "cluster"
AREA_KUBELET = "kubelet"

EXPECTED_MIN_KUBE_VERSION = "1.21"
COMPONENT_API_VERSION = "API Version"

COMPONENT_CONFIGURATION = "configuration"
COMPONENT_FEATURE_GATES = "feature gates"
COMPONENT_CPU_MANAGER = "CPU manager"
COMPONENT_MEMORY_MANAGER = "memory manager"
COMPONENT_TOPOLOGY_MANAGER = "topology manager"

# recommended values
CPU_MANAGER_RECONCILE_PERIOD_MIN = timedelta(seconds=1)
CPU_MANAGER_RECONCILE_PERIOD_MAX = timedelta(seconds=10)

EXPECTED_POD_RESOURCES_FEATURE_GATE = "KubeletPodResourcesGetAllocatable"
EXPECTED_CPU_MANAGER_POLICY = "static"
EXPECTED_MEMORY_MANAGER_POLICY = "Static"
EXPECTED_TOPOLOGY_MANAGER_POLICY = "single-numa-node"

_KUBE_MIN_VERSION_GET_ALLOCATABLE = "1.23"


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


@dataclass
class ValidationResult:
    """One detected deviation from the expected configuration."""

    node: str = ""
    area: str = ""
    component: str = ""
    setting: str = ""
    expected: str = ""
    detected: str = ""

    def __str__(self) -> str:
        if self.area == AREA_CLUSTER:
            return (
                f"Incorrect configuration of cluster: component {_quote(self.component)} "
                f"setting {_quote(self.setting)}: expected {_quote(self.expected)} "
                f"detected {_quote(self.detected)}"
            )
        return (
            f"Incorrect configuration of node {_quote(self.node)} area {_quote(self.area)} "
            f"component {_quote(self.component)} setting {_quote(self.setting)}: "
            f"expected {_quote(self.expected)} detected {_quote(self.detected)}"
        )


@dataclass
class VersionInfo:
    """Version information reported by a cluster or node."""

    major: str = ""
    minor: str = ""
    git_version: str = ""


@dataclass
class KubeletConfiguration:
    """The subset of kubelet configuration relevant to validation."""

    feature_gates: Optional[dict[str, bool]] = None
    cpu_manager_policy: str = ""
    cpu_manager_reconcile_period: timedelta = timedelta(0)
    reserved_system_cpus: str = ""
    memory_manager_policy: str = ""
    reserved_memory: list = field(default_factory=list)
    topology_manager_policy: str = ""


_VERSION_RE = re.compile(
    r"^v?(?P<segments>\d+(?:\.\d+)*)"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+(?P<meta>[0-9A-Za-z.-]+))?$"
)


@dataclass(frozen=True)
class _Version:
    segments: tuple[int, ...]
    prerelease: tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> "_Version":
        match = _VERSION_RE.match(text.strip())
        if match is None:
            raise ValueError(f"malformed version: {text}")
        segments = tuple(int(part) for part in match.group("segments").split("."))
        pre = match.group("pre")
        return cls(segments, tuple(pre.split(".")) if pre else ())

    def compare(self, other: "_Version") -> int:
        width = max(len(self.segments), len(other.segments))
        mine = self.segments + (0,) * (width - len(self.segments))
        theirs = other.segments + (0,) * (width - len(other.segments))
        if mine != theirs:
            return -1 if mine < theirs else 1
        if self.prerelease == other.prerelease:
            return 0
        if not self.prerelease:
            return 1
        if not other.prerelease:
            return -1
        for left, right in zip(self.prerelease, other.prerelease):
            result = _compare_identifier(left, right)
            if result:
                return result
        return (len(self.prerelease) > len(other.prerelease)) - (
            len(self.prerelease) < len(other.prerelease)
        )


def _compare_identifier(left: str, right: str) -> int:
    if left.isdigit() and right.isdigit():
        a, b = int(left), int(right)
    elif left.isdigit():
        return -1
    elif right.isdigit():
        return 1
    else:
        a, b = left, right
    return (a > b) - (a < b)


def is_api_version_at_least(server: str, refver: str) -> bool:
    """Tell whether ``server`` is at least ``refver``; raise ValueError if either is malformed."""
    ref = _Version.parse(refver)
    ser = _Version.parse(server)
    return ser.compare(ref) >= 0


def _format_fraction(value: int, scale: int) -> str:
    whole, frac = divmod(value, scale)
    if frac == 0:
        return str(whole)
    digits = len(str(scale)) - 1
    return f"{whole}.{str(frac).zfill(digits).rstrip('0')}"


def _format_duration(duration: timedelta) -> str:
    nanos = ((duration.days * 86400 + duration.seconds) * 1_000_000 + duration.microseconds) * 1000
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)
    if nanos < 1_000_000_000:
        if nanos < 1_000:
            return f"{sign}{nanos}ns"
        if nanos < 1_000_000:
            return f"{sign}{_format_fraction(nanos, 1_000)}µs"
        return f"{sign}{_format_fraction(nanos, 1_000_000)}ms"
    hours, rem = divmod(nanos, 3600 * 1_000_000_000)
    minutes, rem = divmod(rem, 60 * 1_000_000_000)
    out = sign
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    return out + _format_fraction(rem, 1_000_000_000) + "s"


def validate_cluster_version(cluster_version: str) -> list[ValidationResult]:
    """Check the cluster version against the minimum supported one."""
    try:
        ok = is_api_version_at_least(cluster_version, EXPECTED_MIN_KUBE_VERSION)
    except ValueError as err:
        return [
            ValidationResult(
                area=AREA_CLUSTER,
                component=COMPONENT_API_VERSION,
                expected="valid version",
                detected=str(err),
            )
        ]
    if not ok:
        return [
            ValidationResult(
                area=AREA_CLUSTER,
                component=COMPONENT_API_VERSION,
                expected=EXPECTED_MIN_KUBE_VERSION,
                detected=cluster_version,
            )
        ]
    return []


def _need_check_feature_gates(node_version: Optional[VersionInfo]) -> bool:
    if node_version is None or not node_version.git_version:
        # unknown version: take no risk
        return True
    try:
        ok = is_api_version_at_least(node_version.git_version, _KUBE_MIN_VERSION_GET_ALLOCATABLE)
    except ValueError:
        ok = False
    return not ok


def validate_cluster_node_kubelet_config(
    node_name: str,
    node_version: Optional[VersionInfo],
    kubelet_conf: Optional[KubeletConfiguration],
) -> list[ValidationResult]:
    """Check one node's kubelet configuration and return every issue found."""
    if kubelet_conf is None:
        return [
            ValidationResult(
                node=node_name,
                area=AREA_KUBELET,
                component=COMPONENT_CONFIGURATION,
                expected="any value",
                detected="no configuration",
            )
        ]

    def issue(component: str, setting: str, expected: str, detected: str) -> ValidationResult:
        return ValidationResult(
            node=node_name,
            area=AREA_KUBELET,
            component=component,
            setting=setting,
            expected=expected,
            detected=detected,
        )

    results: list[ValidationResult] = []

    if _need_check_feature_gates(node_version):
        if kubelet_conf.feature_gates is None:
            results.append(issue(COMPONENT_FEATURE_GATES, "", "present", "missing data"))
        elif not kubelet_conf.feature_gates.get(EXPECTED_POD_RESOURCES_FEATURE_GATE, False):
            results.append(
                issue(
                    COMPONENT_FEATURE_GATES,
                    EXPECTED_POD_RESOURCES_FEATURE_GATE,
                    "enabled",
                    "disabled",
                )
            )

    if kubelet_conf.cpu_manager_policy != EXPECTED_CPU_MANAGER_POLICY:
        results.append(
            issue(
                COMPONENT_CPU_MANAGER,
                "policy",
                EXPECTED_CPU_MANAGER_POLICY,
                kubelet_conf.cpu_manager_policy,
            )
        )

    period = kubelet_conf.cpu_manager_reconcile_period
    if not CPU_MANAGER_RECONCILE_PERIOD_MIN <= period <= CPU_MANAGER_RECONCILE_PERIOD_MAX:
        results.append(
            issue(
                COMPONENT_CPU_MANAGER,
                "reconcile period",
                f"in range [{_format_duration(CPU_MANAGER_RECONCILE_PERIOD_MIN)}, "
                f"{_format_duration(CPU_MANAGER_RECONCILE_PERIOD_MAX)}]",
                _format_duration(period),
            )
        )

    if not kubelet_conf.reserved_system_cpus:
        results.append(
            issue(COMPONENT_CONFIGURATION, "CPU", "reserved some CPU cores", "no reserved CPU cores")
        )

    if kubelet_conf.memory_manager_policy != EXPECTED_MEMORY_MANAGER_POLICY:
        results.append(
            issue(
                COMPONENT_MEMORY_MANAGER,
                "policy",
                EXPECTED_MEMORY_MANAGER_POLICY,
                kubelet_conf.memory_manager_policy,
            )
        )

    if not kubelet_conf.reserved_memory:
        results.append(
            issue(
                COMPONENT_CONFIGURATION,
                "memory",
                "reserved memory blocks",
                "no reserved memory blocks",
            )
        )

    if kubelet_conf.topology_manager_policy != EXPECTED_TOPOLOGY_MANAGER_POLICY:
        results.append(
            issue(
                COMPONENT_TOPOLOGY_MANAGER,
                "policy",
                EXPECTED_TOPOLOGY_MANAGER_POLICY,
                kubelet_conf.topology_manager_policy,
            )
        )
    return results


class Validator:
    """Accumulates validation results for a cluster and its nodes."""

    def __init__(self, log: Optional[LogAdapter] = None) -> None:
        self.log = log if log is not None else new_null_log_adapter()
        self._results: list[ValidationResult] = []
        self._server_version: Optional[VersionInfo] = None

    def results(self) -> list[ValidationResult]:
        """Return every result collected so far."""
        return list(self._results)

    def validate_cluster_version(self, server_version: VersionInfo) -> list[ValidationResult]:
        """Validate the reported server version and remember it for node checks."""
        self._server_version = server_version
        results = validate_cluster_version(server_version.git_version)
        self._results.extend(results)
        return results

    def validate_cluster_config(
        self, kubelet_configs: Mapping[str, Optional[KubeletConfiguration]]
    ) -> list[ValidationResult]:
        """Validate the kubelet configuration of every node, keyed by node name."""
        results: list[ValidationResult] = []
        if not kubelet_configs:
            results.append(
                ValidationResult(area=AREA_CLUSTER, expected="worker nodes", detected="none")
            )
        else:
            for node_name, kubelet_conf in kubelet_configs.items():
                results.extend(
                    self.validate_node_kubelet_config(
                        node_name, self._server_version, kubelet_conf
                    )
                )
        self._results.extend(results)
        return results

    def validate_node_kubelet_config(
        self,
        node_name: str,
        node_version: Optional[VersionInfo],
        kubelet_conf: Optional[KubeletConfiguration],
    ) -> list[ValidationResult]:
        """Validate one node and log a one-line summary."""
        results = validate_cluster_node_kubelet_config(node_name, node_version, kubelet_conf)
        summary = f"{len(results)} issues found" if results else "OK"
        self.log.printf("validated node %s: %s", _quote(node_name), summary)
        return results