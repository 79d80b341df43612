"""Starting and supervising SIP003-style transport plugins."""

from __future__ import annotations

import enum
import os
import shutil
import subprocess
from typing import List, Mapping, MutableMapping, Optional, Union

PLUGIN_EXIT_ERROR = -2
PLUGIN_EXIT_NORMAL = -1
PLUGIN_RUNNING = 0

OBFSPROXY_OPTS_MAX = 4096
_TEMPDIR = "" if os.name == "nt" else "/tmp/"
_STOP_TIMEOUT = 5.0

PortLike = Union[str, int]


class PluginMode(enum.Enum):
    """Which side of the tunnel the plugin runs on."""

    CLIENT = 0
    SERVER = 1


class PluginProcess:
    """A running plugin process."""

    def __init__(self, process: subprocess.Popen) -> None:
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_finished(self) -> bool:
        """True once the plugin process has exited."""
        return self.process.poll() is not None

    def stop(self) -> None:
        """Terminate the plugin and reap it."""
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=_STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()

    def __enter__(self) -> "PluginProcess":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()


def _is_obfsproxy(plugin: str) -> bool:
    return plugin.startswith("obfsproxy")


def _search_path_env(base_env: Optional[Mapping[str, str]] = None) -> dict:
    """Copy the environment, putting the current directory at the front of PATH."""
    env = dict(os.environ if base_env is None else base_env)
    current_path = env.get("PATH")
    if current_path is not None:
        env["PATH"] = os.getcwd() + os.pathsep + current_path
    return env


def build_plugin_env(
    plugin_opts: Optional[str],
    remote_host: str,
    remote_port: PortLike,
    local_host: str,
    local_port: PortLike,
    base_env: Optional[Mapping[str, str]] = None,
) -> dict:
    """Return the environment for a plugin following the SS plugin protocol.

    ``base_env`` is copied, never modified; it defaults to the current
    process environment.
    """
    env: MutableMapping[str, str] = dict(os.environ if base_env is None else base_env)
    env["SS_REMOTE_HOST"] = str(remote_host)
    env["SS_REMOTE_PORT"] = str(remote_port)
    env["SS_LOCAL_HOST"] = str(local_host)
    env["SS_LOCAL_PORT"] = str(local_port)
    if plugin_opts is not None:
        env["SS_PLUGIN_OPTIONS"] = plugin_opts
    return dict(env)


def _obfsproxy_command(
    plugin: str,
    plugin_opts: Optional[str],
    remote_host: str,
    remote_port: str,
    local_host: str,
    local_port: str,
    mode: PluginMode,
) -> List[str]:
    args = [
        plugin,
        "--data-dir",
        f"{_TEMPDIR}{plugin}_{remote_host}:{remote_port}_{local_host}:{local_port}",
    ]
    if plugin_opts is not None:
        args.extend(tok for tok in plugin_opts[:OBFSPROXY_OPTS_MAX].split(" ") if tok)
    remote = f"{remote_host}:{remote_port}"
    local = f"{local_host}:{local_port}"
    if mode is PluginMode.CLIENT:
        args += ["--dest", remote, "client", local]
    else:
        args += ["--dest", local, "server", remote]
    return args


def build_plugin_command(
    plugin: str,
    plugin_opts: Optional[str],
    remote_host: str,
    remote_port: PortLike,
    local_host: str,
    local_port: PortLike,
    mode: PluginMode = PluginMode.CLIENT,
    fast_open: bool = False,
) -> List[str]:
    """Return the argument vector used to start ``plugin``.

    obfsproxy is run in standalone mode with the endpoints assembled into its
    arguments; every other plugin gets only its name and, if asked for,
    ``--fast-open``.
    """
    if _is_obfsproxy(plugin):
        return _obfsproxy_command(
            plugin, plugin_opts, str(remote_host), str(remote_port),
            str(local_host), str(local_port), mode,
        )
    args = [plugin]
    if fast_open:
        args.append("--fast-open")
    return args


def start_plugin(
    plugin: Optional[str],
    plugin_opts: Optional[str],
    remote_host: str,
    remote_port: PortLike,
    local_host: str,
    local_port: PortLike,
    mode: PluginMode = PluginMode.CLIENT,
    fast_open: bool = False,
) -> Optional[PluginProcess]:
    """Start the plugin and return its process.

    Returns None when ``plugin`` is empty. Raises ValueError when it is None
    and OSError when the process cannot be started.
    """
    if plugin is None:
        raise ValueError("no plugin given")
    if not plugin:
        return None

    env = _search_path_env()
    if not _is_obfsproxy(plugin):
        env = build_plugin_env(plugin_opts, remote_host, remote_port,
                               local_host, local_port, env)
    args = build_plugin_command(plugin, plugin_opts, remote_host, remote_port,
                                local_host, local_port, mode, fast_open)
    executable = shutil.which(plugin, path=env.get("PATH")) or plugin
    process = subprocess.Popen(args, executable=executable, env=env,
                               stdin=subprocess.DEVNULL)
    return PluginProcess(process)


def get_local_port() -> int:
    """Ask the system for a free TCP port; 0 when none could be found."""
    import socket

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("", 0))
            return sock.getsockname()[1]
    except OSError:
        return 0