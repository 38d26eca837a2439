# gpunode

Tools that run on a GPU node in a cluster:

- **Config switching by node label.** A long-running process watches one label on its node through the Kubernetes API. When the label changes, it points a destination configuration path at the matching file in a directory of available configurations, using a symlink. It can then send a signal to the process that reads that file.
- **MPS control daemons.** Start and stop the MPS control daemon for one shared resource. The daemon's per-device pinned-memory limit and its active thread percentage come from the number of replicas. The daemon's log is followed with `tail -f`.
- **Shared-memory mount.** Set up the tmpfs that the MPS daemon needs. Its size is half of the node's total memory.
- **Helpers.**
  - CUDA result codes and their names.
  - Resolving libraries under a driver root.
  - The MPS directory layout.
  - Replica limits by compute capability.

## Installation

```
pip install .
```

To also install what the test suite needs:

```
pip install .[test]
```

## Commands

### `gpunode-config-manager`

This command watches the node label and updates the configuration symlink whenever the label changes. With `--oneshot` it applies the first value it sees and then exits.

If the label names a configuration that does not exist in `--config-file-srcdir`, the command stops with an error.

If the label is empty, the command picks a configuration in this order:

1. `--default-config`, if it is set.
2. Otherwise, the fallback strategies, tried in the order given by `--fallback-strategies`. The option can be repeated or given as a comma-separated list.
   - `named` picks the configuration called `default`.
   - `single` picks the only configuration, if there is exactly one.
   - `empty` links the destination to `/dev/null`.

If none of these produces a configuration, the command stops with an error.

If the destination already resolves to the chosen file, nothing is changed. After a change, and unless `--send-signal=false` is given, the command sends `--signal` (SIGHUP by default) to the first process whose command is `--process-to-signal` (default `nvidia-device-plugin`).

`--node-name`, `--node-label`, `--config-file-srcdir` and `--config-file-dst` must not be empty.

Every option except `--fallback-strategies` can also be set through an environment variable:

| Option | Environment variable |
| --- | --- |
| `--oneshot` | `ONESHOT` |
| `--kubeconfig` | `KUBECONFIG` |
| `--node-name` | `NODE_NAME` |
| `--node-label` | `NODE_LABEL` |
| `--config-file-srcdir` | `CONFIG_FILE_SRCDIR` |
| `--config-file-dst` | `CONFIG_FILE_DST` |
| `--default-config` | `DEFAULT_CONFIG` |
| `--send-signal` | `SEND_SIGNAL` |
| `--signal` | `SIGNAL` |
| `--process-to-signal` | `PROCESS_TO_SIGNAL` |

The fallback strategies are read from `FALLBACK_STRATEGIES`, a comma-separated list, but only when the option is not given at all.

Without `--kubeconfig`, the command uses the in-cluster service account.

```
gpunode-config-manager --node-name my-node \
    --config-file-srcdir /available-configs \
    --config-file-dst /config/config.yaml \
    --fallback-strategies named,single
```

### `gpunode-mount-shm`

This command first unmounts and removes anything already at the mount point. It then mounts a fresh tmpfs there, by default at `/mps/shm`.

- The mount options are `rw,nosuid,nodev,noexec,relatime`.
- The size is half of `MemTotal` from `/proc/meminfo`. If that cannot be read, the size is `65536k`.

The command needs enough privilege to mount filesystems.

```
gpunode-mount-shm
gpunode-mount-shm --shm-dir /some/other/dir
```

## Library use

```python
from gpunode.cuda import Result, error_string, check, CudaError
from gpunode.mps.root import MpsRoot
from gpunode.mps.device import MpsDevice

error_string(Result.ERROR_NO_DEVICE)      # "CUDA_ERROR_NO_DEVICE"
error_string(12345)                       # "Unknown return value: 12345"
check(Result.SUCCESS)                     # returns None; other codes raise CudaError

root = MpsRoot("/mps")
root.pipe_dir("nvidia.com/gpu")           # "/mps/nvidia.com/gpu/pipe"
root.log_dir("nvidia.com/gpu")            # "/mps/nvidia.com/gpu/log"

MpsDevice(compute_capability="7.0", replicas=16).max_clients()  # 16
MpsDevice(compute_capability="9.0", replicas=49).assert_replicas()  # raises InvalidDeviceError
```

### Modules

- **`gpunode.cuda`**
  - The `Result` and `DeviceAttribute` enums.
  - `error_string`.
  - `check`, which raises `CudaError`.
  - `decode_c_string`, for NUL-terminated buffers.
- **`gpunode.driver_root.DriverRoot`**
  - Resolves a library such as `libnvidia-ml.so.1` to its real path under a driver installation root. It searches the usual lib directories and falls back to the bare name.
  - Tells whether the root holds its own `dev` directory.
- **`gpunode.mps.device`**
  - `MpsDevice` checks the replica count against the MPS client limit: 48 clients from compute capability 7.5 on, 16 before that.
  - `canonical_version` and `compare_versions` handle semantic versions.
- **`gpunode.mps.daemon.Daemon`**
  - Manages the MPS control daemon for one resource. It runs `nvidia-cuda-mps-control` and sets the compute mode with `nvidia-smi`.
  - You supply an object with `resource()` and `devices()` methods. Each device must have `index`, `total_memory` and `uuid`.
- **`gpunode.mps.tailer.Tailer`** runs `tail -n +1 -f` on a file. It can be used as a context manager.
- **`gpunode.config_manager`**
  - `SyncableConfig`, a value whose readers wait for the next write.
  - `NodeLabelWatcher`.
  - `select_config_name`, `update_symlink` and `update_config`, the steps behind the command.

## What this package does not do

The package has:

- no device plugin server that advertises GPUs to the kubelet;
- no GPU discovery or node labelling;
- no generation of container device specifications;
- no bindings that load the CUDA or NVML libraries.

`gpunode.cuda` holds only result codes and helpers around them. The MPS daemon class expects the caller to provide the list of devices for a resource.