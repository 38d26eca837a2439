"""Node-side tooling for sharing GPUs in a cluster: label-driven config switching, MPS daemons, shm mounting and driver-root helpers."""

__version__ = "0.16.0"