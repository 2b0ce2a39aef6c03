[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "topodeploy"
version = "0.1.0"
description = "Render and validate manifests for topology-aware scheduling components on Kubernetes and OpenShift"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["kubernetes", "openshift", "numa", "topology", "scheduler", "manifests", "kubelet"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["topodeploy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
