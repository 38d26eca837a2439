"""Keep a device plugin configuration in sync with a Kubernetes node label.

The node label names one of the configuration files in a source directory.
Whenever the label changes, the destination path is re-pointed (as a
symlink) at the selected file and the consuming process is signalled.
"""

from __future__ import annotations

import argparse
import base64
import enum
import json
import logging
import os
import signal as signals
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import requests
import yaml

log = logging.getLogger(__name__)

RESOURCE_NODES = "nodes"

DEFAULT_ONESHOT = False
DEFAULT_SEND_SIGNAL = True
DEFAULT_SIGNAL = int(signals.SIGHUP)
DEFAULT_PROCESS_TO_SIGNAL = "nvidia-device-plugin"
DEFAULT_CONFIG_LABEL = "nvidia.com/device-plugin.config"

NAMED_CONFIG_FALLBACK = "default"

_SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
_WATCH_TIMEOUT_SECONDS = 300
_RETRY_DELAY_SECONDS = 5.0


class ConfigManagerError(Exception):
    """Raised when the configuration cannot be selected or applied."""


class FallbackStrategy(str, enum.Enum):
    """Ways of choosing a config when neither a label nor a default is set."""

    NAMED = "named"
    SINGLE = "single"
    EMPTY = "empty"


@dataclass
class Flags:
    """Settings of the config manager as given on the command line."""

    node_name: str = ""
    node_label: str = DEFAULT_CONFIG_LABEL
    config_file_srcdir: str = ""
    config_file_dst: str = ""
    default_config: str = ""
    fallback_strategies: list[str] = field(default_factory=list)
    oneshot: bool = DEFAULT_ONESHOT
    kubeconfig: str = ""
    send_signal: bool = DEFAULT_SEND_SIGNAL
    signal: int = DEFAULT_SIGNAL
    process_to_signal: str = DEFAULT_PROCESS_TO_SIGNAL

    def validate(self) -> None:
        """Raise ConfigManagerError if a required setting is empty."""
        required = (
            ("node-name", self.node_name),
            ("node-label", self.node_label),
            ("config-file-srcdir", self.config_file_srcdir),
            ("config-file-dst", self.config_file_dst),
        )
        for name, value in required:
            if value == "":
                raise ConfigManagerError(f"invalid <{name}>: must not be empty string")


class SyncableConfig:
    """A value whose readers block until the next write.

    A call to get() returns at once if the value changed since the last
    read; otherwise it waits for the next set(). Writes do not queue.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._current = ""
        self._last_read = ""

    def set(self, value: str) -> None:
        """Store a value and wake every waiting reader."""
        with self._cond:
            self._current = value
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> str:
        """Return the value, waiting for a set() if nothing new was written."""
        with self._cond:
            if self._last_read == self._current:
                if not self._cond.wait(timeout):
                    raise TimeoutError("no configuration change within timeout")
            self._last_read = self._current
            return self._last_read


def _node_labels(node: Mapping[str, Any]) -> dict[str, str]:
    return dict((node.get("metadata") or {}).get("labels") or {})


class _KubeClient:
    """Just enough of the Kubernetes API to list and watch nodes."""

    def __init__(self, server: str, session: requests.Session) -> None:
        self.server = server.rstrip("/")
        self.session = session

    @classmethod
    def from_kubeconfig(cls, path: str = "") -> "_KubeClient":
        if path:
            return cls._from_file(path)
        return cls._in_cluster()

    @classmethod
    def _in_cluster(cls) -> "_KubeClient":
        host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "")
        if not host or not port:
            raise ConfigManagerError(
                "unable to load in-cluster configuration, KUBERNETES_SERVICE_HOST "
                "and KUBERNETES_SERVICE_PORT must be defined"
            )
        if ":" in host:
            host = f"[{host}]"
        session = requests.Session()
        try:
            bearer = Path(_SERVICE_ACCOUNT_DIR, "token").read_text().strip()
        except OSError as err:
            raise ConfigManagerError(f"error reading service account token: {err}") from err
        session.headers["Authorization"] = f"Bearer {bearer}"
        ca_file = Path(_SERVICE_ACCOUNT_DIR, "ca.crt")
        if ca_file.exists():
            session.verify = str(ca_file)
        return cls(f"https://{host}:{port}", session)

    @classmethod
    def _from_file(cls, path: str) -> "_KubeClient":
        try:
            with open(path, encoding="utf-8") as handle:
                doc = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as err:
            raise ConfigManagerError(f"error loading kubeconfig '{path}': {err}") from err

        def by_name(section: str, key: str) -> dict[str, dict]:
            return {
                entry.get("name"): entry.get(key) or {}
                for entry in doc.get(section) or []
            }

        contexts = by_name("contexts", "context")
        clusters = by_name("clusters", "cluster")
        users = by_name("users", "user")
        context = contexts.get(doc.get("current-context"))
        if context is None:
            raise ConfigManagerError(f"kubeconfig '{path}' has no usable current context")
        cluster = clusters.get(context.get("cluster"))
        if not cluster or not cluster.get("server"):
            raise ConfigManagerError(f"kubeconfig '{path}' has no server for the current context")
        user = users.get(context.get("user"), {})
        base = os.path.dirname(os.path.abspath(path))

        session = requests.Session()
        if cluster.get("insecure-skip-tls-verify"):
            session.verify = False
        else:
            ca = _file_or_data(base, cluster, "certificate-authority")
            if ca:
                session.verify = ca

        bearer = user.get("token")
        if not bearer and user.get("tokenFile"):
            bearer = Path(base, user["tokenFile"]).read_text().strip()
        if bearer:
            session.headers["Authorization"] = f"Bearer {bearer}"

        cert = _file_or_data(base, user, "client-certificate")
        key = _file_or_data(base, user, "client-key")
        if cert and key:
            session.cert = (cert, key)
        return cls(cluster["server"], session)

    def list_nodes(self, field_selector: str) -> dict:
        response = self.session.get(
            f"{self.server}/api/v1/{RESOURCE_NODES}",
            params={"fieldSelector": field_selector},
            timeout=30,
        )
        response.raise_for_status()
        return response.json()

    def watch_nodes(self, field_selector: str, resource_version: str) -> requests.Response:
        response = self.session.get(
            f"{self.server}/api/v1/{RESOURCE_NODES}",
            params={
                "fieldSelector": field_selector,
                "watch": "true",
                "resourceVersion": resource_version,
                "timeoutSeconds": str(_WATCH_TIMEOUT_SECONDS),
            },
            stream=True,
            timeout=(30, None),
        )
        response.raise_for_status()
        return response


def _file_or_data(base: str, section: Mapping[str, Any], name: str) -> str | None:
    data = section.get(f"{name}-data")
    if data:
        with tempfile.NamedTemporaryFile(delete=False, suffix=".pem") as handle:
            handle.write(base64.b64decode(data))
            return handle.name
    path = section.get(name)
    if path:
        return os.path.join(base, path)
    return None


class NodeLabelWatcher:
    """Watch one node and publish changes of its config label."""

    def __init__(self, config: SyncableConfig, flags: Flags, client: Any = None) -> None:
        self.config = config
        self.flags = flags
        self.client = client
        self._stopped = threading.Event()
        self._response: Any = None
        self._known: dict[str, str] | None = None

    def handle_event(
        self,
        event_type: str,
        labels: Mapping[str, str] | None,
        old_labels: Mapping[str, str] | None = None,
    ) -> None:
        """Apply an ADDED, MODIFIED or DELETED node event to the config."""
        key = self.flags.node_label
        new_label = (labels or {}).get(key, "")
        if event_type == "ADDED":
            self.config.set(new_label)
        elif event_type == "MODIFIED":
            if (old_labels or {}).get(key, "") != new_label:
                self.config.set(new_label)
        elif event_type == "DELETED":
            if new_label != "":
                self.config.set("")
        else:
            raise ValueError(f"unknown event type: {event_type}")

    def _observe(self, labels: dict[str, str]) -> None:
        if self._known is None:
            self.handle_event("ADDED", labels)
        else:
            self.handle_event("MODIFIED", labels, self._known)
        self._known = labels

    def _forget(self) -> None:
        if self._known is not None:
            self.handle_event("DELETED", self._known)
            self._known = None

    @property
    def _selector(self) -> str:
        return f"metadata.name={self.flags.node_name}"

    def _list(self) -> str:
        node_list = self.client.list_nodes(self._selector)
        items = node_list.get("items") or []
        if items:
            self._observe(_node_labels(items[0]))
        else:
            self._forget()
        return str((node_list.get("metadata") or {}).get("resourceVersion", ""))

    def _watch(self, resource_version: str) -> str | None:
        """Follow one watch stream; return the version to resume from, or None to relist."""
        response = self.client.watch_nodes(self._selector, resource_version)
        self._response = response
        try:
            for line in response.iter_lines():
                if self._stopped.is_set():
                    return None
                if not line:
                    continue
                event = json.loads(line)
                event_type = event.get("type")
                node = event.get("object") or {}
                if event_type == "ERROR":
                    return None
                resource_version = str(
                    (node.get("metadata") or {}).get("resourceVersion", resource_version)
                )
                if event_type in ("ADDED", "MODIFIED"):
                    self._observe(_node_labels(node))
                elif event_type == "DELETED":
                    self._known = _node_labels(node)
                    self._forget()
        finally:
            self._response = None
            response.close()
        return resource_version

    def run(self) -> None:
        """List and watch the node until stop() is called."""
        if self.client is None:
            self.client = _KubeClient.from_kubeconfig(self.flags.kubeconfig)
        while not self._stopped.is_set():
            try:
                version: str | None = self._list()
                while version is not None and not self._stopped.is_set():
                    version = self._watch(version)
            except (requests.RequestException, ValueError, OSError) as err:
                if self._stopped.is_set():
                    break
                log.warning("Watching node %s failed: %s", self.flags.node_name, err)
                self._stopped.wait(_RETRY_DELAY_SECONDS)

    def stop(self) -> None:
        """Ask run() to return, closing any open watch stream."""
        self._stopped.set()
        response = self._response
        if response is not None:
            response.close()


def config_file_names(srcdir: str) -> set[str]:
    """Names of the regular config files in srcdir.

    Directories and the '..'-prefixed entries of mounted ConfigMaps are left out.
    """
    try:
        with os.scandir(srcdir) as entries:
            return {
                entry.name
                for entry in entries
                if not entry.is_dir(follow_symlinks=False) and not entry.name.startswith("..")
            }
    except OSError as err:
        raise ConfigManagerError(f"error reading directory: {err}") from err


def file_exists(path: str) -> bool:
    """Whether path exists and is not a directory."""
    try:
        return not os.path.isdir(path) if os.stat(path) else False
    except FileNotFoundError:
        return False


def select_config_name(config: str, flags: Flags) -> str:
    """Choose the config file to use, applying the default and fallbacks."""
    try:
        files = config_file_names(flags.config_file_srcdir)
    except ConfigManagerError as err:
        raise ConfigManagerError(f"error getting list of configuration files: {err}") from err

    if not files:
        raise ConfigManagerError("no configuration files available")

    if config != "":
        if config not in files:
            raise ConfigManagerError(f"specified config {config} does not exist")
        return config

    if flags.default_config != "":
        log.info("No value set. Selecting default name: %s", flags.default_config)
        if flags.default_config not in files:
            raise ConfigManagerError(f"specified config {flags.default_config} does not exist")
        return flags.default_config

    log.info(
        "No value set and no default set. Attempting fallback strategies: %s",
        flags.fallback_strategies,
    )
    for fallback in flags.fallback_strategies:
        try:
            strategy = FallbackStrategy(fallback)
        except ValueError:
            raise ConfigManagerError(f"unknown fallback strategy: {fallback}") from None
        if strategy is FallbackStrategy.NAMED:
            log.info("Attempting to find config named: %s", NAMED_CONFIG_FALLBACK)
            if NAMED_CONFIG_FALLBACK in files:
                return NAMED_CONFIG_FALLBACK
            log.info("No configuration named '%s' was found", NAMED_CONFIG_FALLBACK)
        elif strategy is FallbackStrategy.SINGLE:
            log.info("Attempting to see if only a single config is available...")
            if len(files) == 1:
                return next(iter(files))
            log.info("More than one configuration was found: %s", sorted(files))
        else:
            log.info("Falling back to an empty configuration")
            return ""

    raise ConfigManagerError(
        "no config was set, no default was provided, and all fallbacks failed"
    )


def update_symlink(config: str, flags: Flags) -> bool:
    """Point the destination at the chosen config; return False if it already did."""
    src = os.path.join(flags.config_file_srcdir, config) if config else "/dev/null"
    dst = flags.config_file_dst

    try:
        exists = file_exists(dst)
    except OSError as err:
        raise ConfigManagerError(f"error checking if file '{dst}' exists: {err}") from err

    if exists:
        try:
            src_real = os.path.realpath(src, strict=True)
        except OSError as err:
            raise ConfigManagerError(f"error evaluating realpath of '{src}': {err}") from err
        try:
            dst_real = os.path.realpath(dst, strict=True)
        except OSError as err:
            raise ConfigManagerError(f"error evaluating realpath of '{dst}': {err}") from err
        if src_real == dst_real:
            return False
        try:
            os.remove(dst)
        except OSError as err:
            raise ConfigManagerError(f"error removing existing config: {err}") from err

    try:
        os.symlink(src, dst)
    except OSError as err:
        raise ConfigManagerError(f"error creating symlink: {err}") from err
    return True


def find_pid_to_signal(process_name: str, proc_root: str = "/proc") -> int:
    """Return the lowest pid whose command starts with process_name."""
    try:
        entries = os.listdir(proc_root)
    except OSError as err:
        raise ConfigManagerError(f"error getting list of all procs: {err}") from err

    for pid in sorted(int(entry) for entry in entries if entry.isdigit()):
        try:
            raw = Path(proc_root, str(pid), "cmdline").read_bytes()
        except FileNotFoundError:
            continue  # the process exited while scanning
        except OSError as err:
            raise ConfigManagerError(f"error getting cmdline: {err}") from err
        args = raw.rstrip(b"\x00").split(b"\x00") if raw.rstrip(b"\x00") else []
        if args and os.fsdecode(args[0]) == process_name:
            return pid
    raise ConfigManagerError("no process found")


def signal_process(flags: Flags) -> None:
    """Send the configured signal to the configured process."""
    try:
        pid = find_pid_to_signal(flags.process_to_signal)
    except ConfigManagerError as err:
        raise ConfigManagerError(f"error finding pid: {err}") from err
    try:
        os.kill(pid, flags.signal)
    except OSError as err:
        raise ConfigManagerError(f"error sending signal: {err}") from err


def update_config(config: str, flags: Flags) -> bool:
    """Select and apply a config; return whether anything changed."""
    config = select_config_name(config, flags)
    if config == "":
        log.info("Updating to empty config")
    else:
        log.info("Updating to config: %s", config)

    if not update_symlink(config, flags):
        log.info("Already configured. Skipping update...")
        return False

    if config == "":
        log.info("Successfully updated to empty config")
    else:
        log.info("Successfully updated to config: %s", config)

    if flags.send_signal:
        log.info("Sending signal '%s' to '%s'", flags.signal, flags.process_to_signal)
        signal_process(flags)
        log.info("Successfully sent signal")
    return True


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: {value!r}")


def _build_parser() -> argparse.ArgumentParser:
    env = os.environ.get
    parser = argparse.ArgumentParser(prog="config-manager")
    parser.add_argument(
        "--oneshot", type=_parse_bool, nargs="?", const=True,
        default=env("ONESHOT", str(DEFAULT_ONESHOT).lower()),
        help="check and update the config only once and then exit",
    )
    parser.add_argument("--kubeconfig", default=env("KUBECONFIG", ""),
                        help="absolute path to the kubeconfig file")
    parser.add_argument("--node-name", default=env("NODE_NAME", ""),
                        help="the name of the node to watch for label changes on")
    parser.add_argument("--node-label", default=env("NODE_LABEL", DEFAULT_CONFIG_LABEL),
                        help="the name of the node label to use for selecting a config")
    parser.add_argument("--config-file-srcdir", default=env("CONFIG_FILE_SRCDIR", ""),
                        help="the path to the directory containing available device configuration files")
    parser.add_argument("--config-file-dst", default=env("CONFIG_FILE_DST", ""),
                        help="the path to destination device configuration file")
    parser.add_argument("--default-config", default=env("DEFAULT_CONFIG", ""),
                        help="the default config to use if no label is set")
    parser.add_argument("--fallback-strategies", action="append", default=None,
                        help="ordered list of fallback strategies to use to set a default config when none is provided")
    parser.add_argument(
        "--send-signal", type=_parse_bool, nargs="?", const=True,
        default=env("SEND_SIGNAL", str(DEFAULT_SEND_SIGNAL).lower()),
        help="send a signal to <process-to-signal> once a config change is made",
    )
    parser.add_argument("--signal", type=int, default=env("SIGNAL", str(DEFAULT_SIGNAL)),
                        help="the signal to sent to <process-to-signal> if <send-signal> is set")
    parser.add_argument("--process-to-signal", default=env("PROCESS_TO_SIGNAL", DEFAULT_PROCESS_TO_SIGNAL),
                        help="the name of the process to signal if <send-signal> is set")
    return parser


def _split_list(values: Iterable[str]) -> list[str]:
    return [part for value in values for part in value.split(",") if part]


def _run(flags: Flags) -> None:
    client = _KubeClient.from_kubeconfig(flags.kubeconfig)
    config = SyncableConfig()
    watcher = NodeLabelWatcher(config, flags, client)
    thread = threading.Thread(target=watcher.run, name="node-label-watcher", daemon=True)
    thread.start()
    try:
        while True:
            log.info("Waiting for change to '%s' label", flags.node_label)
            value = config.get()
            log.info("Label change detected: %s=%s", flags.node_label, value)
            update_config(value, flags)
            if flags.oneshot:
                return
    finally:
        watcher.stop()


def main(argv: list[str] | None = None) -> int:
    """Run the config manager; return the process exit status."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = _build_parser().parse_args(argv)
    strategies = (
        _split_list(args.fallback_strategies)
        if args.fallback_strategies
        else _split_list([os.environ.get("FALLBACK_STRATEGIES", "")])
    )
    flags = Flags(
        node_name=args.node_name,
        node_label=args.node_label,
        config_file_srcdir=args.config_file_srcdir,
        config_file_dst=args.config_file_dst,
        default_config=args.default_config,
        fallback_strategies=strategies,
        oneshot=args.oneshot,
        kubeconfig=args.kubeconfig,
        send_signal=args.send_signal,
        signal=args.signal,
        process_to_signal=args.process_to_signal,
    )
    try:
        flags.validate()
        _run(flags)
    except ConfigManagerError as err:
        log.error("%s", err)
        return 1
    return 0