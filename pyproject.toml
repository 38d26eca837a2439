[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gpunode"
version = "0.16.0"
description = "Node-side tooling for sharing GPUs in a cluster: config switching by node label, MPS control daemons, shm mounting and driver-root helpers"
requires-python = ">=3.10"
keywords = ["gpu", "kubernetes", "mps", "cuda", "node-label", "cluster"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "requests",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
gpunode-config-manager = "gpunode.config_manager:main"
gpunode-mount-shm = "gpunode.shm:main"

[tool.hatch.build.targets.wheel]
packages = ["gpunode"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
