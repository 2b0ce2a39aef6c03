"""Manifests of the NodeResourceTopology API component."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Optional

from topodeploy.manifests import ManifestLoader, Platform

Obj = dict[str, Any]


@dataclass
class Manifests:
    """The objects that make up the API component."""

    crd: Optional[Obj] = None
    plat: Platform = Platform.KUBERNETES

    def clone(self) -> "Manifests":
        """Return a deep copy of these manifests."""
        return Manifests(crd=copy.deepcopy(self.crd), plat=self.plat)

    def render(self) -> "Manifests":
        """Return a rendered copy; the API component needs no adjustments."""
        return self.clone()

    def to_objects(self) -> list[Optional[Obj]]:
        """Return the objects in the order they are applied."""
        return [self.crd]


def get_manifests(loader: ManifestLoader, plat: Platform) -> Manifests:
    """Load the API component's manifests for ``plat``."""
    return Manifests(crd=loader.api_crd(), plat=plat)