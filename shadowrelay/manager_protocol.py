"""Wire format of the manager control channel and per-server configuration."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

log = logging.getLogger(__name__)

BUF_SIZE = 65535
MAX_PORT_LEN = 7
MAX_PASSWORD_LEN = 127
DEFAULT_EXECUTABLE = "ss-server"

Payload = Union[bytes, bytearray, str]


class Mode(enum.IntEnum):
    """Which transports a server relays."""

    TCP_ONLY = 0
    TCP_AND_UDP = 1
    UDP_ONLY = 3


@dataclass
class ServerSpec:
    """One managed server as described by an ``add`` or ``remove`` request.

    ``fast_open`` and ``no_delay`` are None when the request did not set them,
    in which case the manager-wide setting applies.
    """

    port: str = ""
    password: str = ""
    fast_open: Optional[bool] = None
    no_delay: Optional[bool] = None
    mode: Optional[str] = None
    method: Optional[str] = None
    plugin: Optional[str] = None
    plugin_opts: Optional[str] = None
    traffic: int = 0


@dataclass
class ManagerConfig:
    """Settings shared by every server the manager starts."""

    manager_address: Optional[str] = None
    executable: str = DEFAULT_EXECUTABLE
    hosts: List[str] = field(default_factory=list)
    fast_open: bool = False
    no_delay: bool = False
    reuse_port: bool = False
    verbose: bool = False
    mode: Mode = Mode.TCP_ONLY
    password: Optional[str] = None
    key: Optional[str] = None
    timeout: Optional[str] = None
    method: Optional[str] = None
    iface: Optional[str] = None
    acl: Optional[str] = None
    user: Optional[str] = None
    plugin: Optional[str] = None
    plugin_opts: Optional[str] = None
    nameservers: Optional[str] = None
    mtu: int = 0
    ipv6first: bool = False
    workdir: Optional[str] = None
    nofile: int = 0


class _JsonObject(list):
    """Key/value pairs of a JSON object, in document order."""


def _text(data: Payload) -> str:
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8", "replace")
    return data.split("\0", 1)[0]


def _atoi(value: Optional[str]) -> int:
    if not value:
        return 0
    text = value.lstrip()
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    digits = ""
    for ch in text:
        if not ch.isdigit():
            break
        digits += ch
    return sign * int(digits) if digits else 0


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def get_action(data: Payload) -> Optional[str]:
    """Return the leading command word (up to whitespace or ':'), or None."""
    text = _text(data).lstrip()
    if not text:
        return None
    end = 0
    while end < len(text) and not text[end].isspace() and text[end] != ":":
        end += 1
    return text[:end]


def get_data(data: Payload) -> Optional[str]:
    """Return the JSON part of a request, starting at the first '{', or None."""
    text = _text(data)
    pos = text.find("{")
    if pos < 0:
        return None
    return text[pos:]


def _load(data: Payload):
    text = get_data(data)
    if text is None:
        raise ValueError("no data found")
    try:
        return json.loads(text, object_pairs_hook=_JsonObject)
    except json.JSONDecodeError as exc:
        raise ValueError(str(exc)) from exc


def parse_server(data: Payload) -> ServerSpec:
    """Parse the JSON body of an ``add``/``remove`` request.

    Values of the wrong type are ignored; an unknown key stops parsing and
    keeps what was read before it. Raises ValueError when there is no JSON
    body or it cannot be parsed.
    """
    obj = _load(data)
    spec = ServerSpec()
    if not isinstance(obj, _JsonObject):
        return spec
    for name, value in obj:
        if name == "server_port":
            if isinstance(value, str):
                spec.port = value[:MAX_PORT_LEN]
            elif _is_int(value):
                spec.port = str(value)[:MAX_PORT_LEN]
        elif name == "password":
            if isinstance(value, str):
                spec.password = value[:MAX_PASSWORD_LEN]
        elif name in ("fast_open", "no_delay"):
            if isinstance(value, bool):
                setattr(spec, name, value)
        elif name in ("method", "plugin", "plugin_opts", "mode"):
            if isinstance(value, str):
                setattr(spec, name, value)
        else:
            log.error("invalid data: %s", get_data(data))
            break
    return spec


def parse_traffic(data: Payload) -> Tuple[str, int]:
    """Parse a ``stat`` report into (port, traffic).

    The last integer-valued entry wins. Raises ValueError when the body is
    missing, malformed, or holds no integer entry.
    """
    obj = _load(data)
    result: Optional[Tuple[str, int]] = None
    if isinstance(obj, _JsonObject):
        for name, value in obj:
            if _is_int(value):
                result = (name[:MAX_PORT_LEN], value)
    if result is None:
        raise ValueError("no traffic entry found")
    return result


def render_config(config: ManagerConfig, server: ServerSpec) -> str:
    """Return the JSON configuration file written for ``server``."""
    parts = [
        "{\n",
        f'"server_port":{_atoi(server.port)},\n',
        f'"password":"{server.password}"',
    ]
    method = server.method if server.method is not None else config.method
    if method is not None:
        parts.append(f',\n"method":"{method}"')
    if server.fast_open is not None:
        parts.append(f',\n"fast_open": {json.dumps(server.fast_open)}')
    elif config.fast_open:
        parts.append(',\n"fast_open": true')
    if server.no_delay is not None:
        parts.append(f',\n"no_delay": {json.dumps(server.no_delay)}')
    elif config.no_delay:
        parts.append(',\n"no_delay": true')
    if server.mode is not None:
        parts.append(f',\n"mode":"{server.mode}"')
    if server.plugin is not None:
        parts.append(f',\n"plugin":"{server.plugin}"')
    if server.plugin_opts is not None:
        parts.append(f',\n"plugin_opts":"{server.plugin_opts}"')
    parts.append("\n}\n")
    return "".join(parts)


def config_path(working_dir: str, server: ServerSpec) -> str:
    """Path of the configuration file for ``server``."""
    return f"{working_dir}/.shadowsocks_{server.port}.conf"


def pid_path(working_dir: str, port: str) -> str:
    """Path of the pid file for the server on ``port``."""
    return f"{working_dir}/.shadowsocks_{port}.pid"


def build_command_line(config: ManagerConfig, server: ServerSpec, working_dir: str) -> List[str]:
    """Return the argument vector that starts ``server``."""
    port = _atoi(server.port)
    args = [
        config.executable,
        "--manager-address", str(config.manager_address),
        "-f", f"{working_dir}/.shadowsocks_{port}.pid",
        "-c", f"{working_dir}/.shadowsocks_{port}.conf",
    ]
    if config.acl is not None:
        args += ["--acl", config.acl]
    if config.timeout is not None:
        args += ["-t", str(config.timeout)]
    if config.nofile:
        args += ["-n", str(config.nofile)]
    if config.user is not None:
        args += ["-a", config.user]
    if config.verbose:
        args.append("-v")
    if server.mode is None and config.mode == Mode.UDP_ONLY:
        args.append("-U")
    if server.mode is None and config.mode == Mode.TCP_AND_UDP:
        args.append("-u")
    if server.fast_open is None and config.fast_open:
        args.append("--fast-open")
    if server.no_delay is None and config.no_delay:
        args.append("--no-delay")
    if config.ipv6first:
        args.append("-6")
    if config.mtu:
        args += ["--mtu", str(config.mtu)]
    if server.plugin is None and config.plugin:
        args += ["--plugin", config.plugin]
    if server.plugin_opts is None and config.plugin_opts:
        args += ["--plugin-opts", config.plugin_opts]
    if config.nameservers:
        args += ["-d", config.nameservers]
    if config.workdir:
        args += ["-D", config.workdir]
    for host in config.hosts:
        args += ["-s", host]
    return args


def format_list(servers: Iterable[ServerSpec], default_method: Optional[str]) -> List[str]:
    """Render the reply to ``list`` as one or more datagram payloads.

    Long listings are split across datagrams; joined together they form a
    single JSON array.
    """
    chunks: List[str] = []
    buf = "["
    for server in servers:
        method = server.method if server.method is not None else (default_method or "")
        entry_len = len(server.port) + len(server.password) + len(method)
        if len(buf) > BUF_SIZE - entry_len - 50:
            chunks.append(buf)
            buf = ""
        buf += (
            f'\n\t{{"server_port":"{server.port}",'
            f'"password":"{server.password}","method":"{method}"}},'
        )
    buf = buf[: max(len(buf) - 1, 1)] + "\n]"
    chunks.append(buf)
    return chunks


def format_stat(servers: Iterable[ServerSpec]) -> List[str]:
    """Render the reply to ``ping`` as one or more ``stat: {...}`` payloads."""
    prefix = "stat: {"
    limit = BUF_SIZE // 2
    chunks: List[str] = []
    buf = prefix
    for server in servers:
        if len(buf) > limit:
            chunks.append(buf[:-1] + "}")
            buf = prefix
        buf += f'"{server.port}":{server.traffic},'
    if len(buf) > len(prefix):
        buf = buf[:-1] + "}"
    else:
        buf += "}"
    chunks.append(buf)
    return chunks