"""Load, render and validate manifests for topology-aware scheduling components."""

__version__ = "0.1.0"