[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lvmcsi"
version = "0.1.0"
description = "CSI controller and node services for LVM logical volumes, with reconcilers for volume, node and claim lifecycles"
requires-python = ">=3.10"
dependencies = []
keywords = ["csi", "lvm", "storage", "logical-volume", "kubernetes", "provisioning"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lvmcsi"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
