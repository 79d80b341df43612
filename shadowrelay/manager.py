"""Multi-user server manager: starts, stops and tracks per-port server processes."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import socket
import subprocess
import sys
from typing import Dict, List, Optional, Sequence, Tuple

from .manager_protocol import (
    BUF_SIZE,
    MAX_PASSWORD_LEN,
    MAX_PORT_LEN,
    ManagerConfig,
    Mode,
    Payload,
    ServerSpec,
    build_command_line,
    config_path,
    format_list,
    format_stat,
    get_action,
    get_data,
    parse_server,
    parse_traffic,
    pid_path,
    render_config,
)

log = logging.getLogger(__name__)

MAX_REMOTE_NUM = 10
DEFAULT_MANAGER_ADDRESS = "127.0.0.1:8839"
DEFAULT_METHOD = "table"
DEFAULT_TIMEOUT = "60"

_MODE_NAMES = {
    "tcp_only": Mode.TCP_ONLY,
    "tcp_and_udp": Mode.TCP_AND_UDP,
    "udp_only": Mode.UDP_ONLY,
}
_PID_RE = re.compile(r"\s*([+-]?\d+)")


class _Fatal(Exception):
    """A startup error that ends the program."""


def _read_pid(path: str) -> Optional[int]:
    """Read the leading process id from ``path``; None if the file is unreadable."""
    try:
        with open(path, encoding="utf-8", errors="replace") as handle:
            text = handle.read()
    except OSError:
        return None
    match = _PID_RE.match(text)
    return int(match.group(1)) if match else None


def _terminate(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as exc:
        log.debug("kill %d: %s", pid, exc)


def _bound_socket(host: Optional[str], port: str, socktype: int) -> socket.socket:
    """Bind a socket of ``socktype`` to the first usable address for host/port."""
    proto = socket.IPPROTO_TCP if socktype == socket.SOCK_STREAM else socket.IPPROTO_UDP
    try:
        infos = socket.getaddrinfo(
            host, port, socket.AF_UNSPEC, socktype, proto,
            socket.AI_PASSIVE | socket.AI_ADDRCONFIG,
        )
    except (socket.gaierror, UnicodeError) as exc:
        raise OSError(f"getaddrinfo: {exc}") from exc

    if host is None:
        # A wildcard IPv6 socket covers IPv4 as well, so prefer it.
        start = next(
            (pos for pos, info in enumerate(infos) if info[0] == socket.AF_INET6), 0
        )
        infos = infos[start:]

    for family, stype, sproto, _, sockaddr in infos:
        try:
            sock = socket.socket(family, stype, sproto)
        except OSError:
            continue
        try:
            if family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1 if host else 0)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            return sock
        except OSError as exc:
            log.error("bind: %s", exc)
            sock.close()
    raise OSError("cannot bind")


def _can_bind(host: Optional[str], port: str, socktype: int) -> bool:
    try:
        sock = _bound_socket(host, port, socktype)
    except OSError as exc:
        log.error("could not bind %s:%s: %s", host, port, exc)
        return False
    sock.close()
    return True


class Manager:
    """Keeps the table of managed servers and answers control requests."""

    def __init__(self, config: ManagerConfig, working_dir: str) -> None:
        self.config = config
        self.working_dir = working_dir
        self.servers: Dict[str, ServerSpec] = {}

    # Control requests

    def handle(self, data: Payload) -> List[bytes]:
        """Process one control datagram and return the replies to send back."""
        if len(data) > BUF_SIZE // 2:
            log.error("too large request: %d", len(data))
            return []
        action = get_action(data)
        if action is None:
            return []
        handler = {
            "add": self._handle_add,
            "list": self._handle_list,
            "remove": self._handle_remove,
            "stat": self._handle_stat,
            "ping": self._handle_ping,
        }.get(action)
        if handler is None:
            return []
        return handler(data)

    def _handle_add(self, data: Payload) -> List[bytes]:
        try:
            server = parse_server(data)
        except ValueError as exc:
            log.error("invalid command: %s", exc)
            return [b"err"]
        if not server.port or not server.password:
            log.error("invalid command: %s", get_data(data))
            return [b"err"]
        self.remove_server(server.port)
        if self.add_server(server):
            return [b"ok"]
        return [b"port is not available"]

    def _handle_list(self, data: Payload) -> List[bytes]:
        return [chunk.encode() for chunk in format_list(self.servers.values(), self.config.method)]

    def _handle_remove(self, data: Payload) -> List[bytes]:
        try:
            server = parse_server(data)
        except ValueError as exc:
            log.error("invalid command: %s", exc)
            return [b"err"]
        if not server.port:
            log.error("invalid command: %s", get_data(data))
            return [b"err"]
        self.remove_server(server.port)
        return [b"ok"]

    def _handle_stat(self, data: Payload) -> List[bytes]:
        try:
            port, traffic = parse_traffic(data)
        except ValueError as exc:
            log.error("invalid command: %s", exc)
            return []
        self.update_stat(port, traffic)
        return []

    def _handle_ping(self, data: Payload) -> List[bytes]:
        return [chunk.encode() for chunk in format_stat(self.servers.values())]

    # Server table

    def add_server(self, server: ServerSpec) -> bool:
        """Check the port, record the server and start its process."""
        if not self.check_port(server):
            log.error("port is not available, please check.")
            return False
        self.servers[server.port] = server
        self._write_config(server)
        args = build_command_line(self.config, server, self.working_dir)
        if self.config.verbose:
            log.info("cmd: %s", " ".join(args))
        try:
            subprocess.run(args, stdin=subprocess.DEVNULL, check=False)
        except OSError as exc:
            log.error("add_server: %s", exc)
            return False
        return True

    def _write_config(self, server: ServerSpec) -> None:
        try:
            with open(config_path(self.working_dir, server), "w", encoding="utf-8") as handle:
                handle.write(render_config(self.config, server))
        except OSError as exc:
            if self.config.verbose:
                log.error("unable to open config file: %s", exc)

    def remove_server(self, port: str) -> Optional[ServerSpec]:
        """Forget the server on ``port`` and signal its process to stop."""
        removed = self.servers.pop(port, None)
        self._stop(port)
        return removed

    def _stop(self, port: str) -> bool:
        pid = _read_pid(pid_path(self.working_dir, port))
        if pid is None:
            if self.config.verbose:
                log.error("unable to open pid file")
            return False
        _terminate(pid)
        return True

    def update_stat(self, port: str, traffic: int) -> bool:
        """Record the traffic reported for ``port``; False if it is not managed."""
        if self.config.verbose:
            log.info("update traffic %d for port %s", traffic, port)
        server = self.servers.get(port)
        if server is None:
            return False
        server.traffic = traffic
        return True

    def check_port(self, server: ServerSpec) -> bool:
        """True when the server's port can be bound on every configured host."""
        mode = self.config.mode
        primary = socket.SOCK_DGRAM if mode == Mode.UDP_ONLY else socket.SOCK_STREAM
        for host in self.config.hosts:
            log.info("try to bind interface: %s, port: %s", host, server.port)
            if not _can_bind(host, server.port, primary):
                return False
            if mode == Mode.TCP_AND_UDP and not _can_bind(host, server.port, socket.SOCK_DGRAM):
                return False
        return True

    def kill_stale(self) -> List[str]:
        """Stop processes left behind by earlier runs and delete their pid files.

        Returns the names of the pid files handled. Raises OSError when the
        working directory cannot be read.
        """
        with os.scandir(self.working_dir) as entries:
            names = sorted(entry.name for entry in entries if entry.name.endswith("pid"))
        killed = []
        for name in names:
            path = os.path.join(self.working_dir, name)
            if not os.path.isfile(path):
                continue
            pid = _read_pid(path)
            if pid is not None:
                _terminate(pid)
            try:
                os.remove(path)
            except OSError as exc:
                log.error("remove %s: %s", path, exc)
            if self.config.verbose:
                log.info("kill %s", name)
            killed.append(name)
        return killed

    def stop_all(self) -> None:
        """Signal every managed server to stop."""
        for port in list(self.servers):
            self._stop(port)


def create_server_socket(host: Optional[str], port: str) -> socket.socket:
    """Return a UDP socket bound to host/port for the control channel."""
    return _bound_socket(host, str(port), socket.SOCK_DGRAM)


def _home_dir() -> str:
    try:
        import pwd

        return pwd.getpwuid(os.getuid()).pw_dir
    except (ImportError, KeyError, AttributeError):
        return os.path.expanduser("~")


def resolve_working_dir(workdir: Optional[str] = None) -> str:
    """Return the directory holding pid and config files."""
    if workdir:
        return workdir
    home = _home_dir()
    if not home or "nologin" in home or "nonexistent" in home:
        home = "/tmp"
    return f"{home}/.shadowsocks"


def parse_manager_address(address: str) -> Tuple[Optional[str], Optional[str]]:
    """Split ``host:port`` (or ``[v6]:port``); port is None for a socket path."""
    if address.startswith("["):
        end = address.find("]")
        if end != -1:
            host = address[1:end]
            rest = address[end + 1:]
            if rest.startswith(":") and len(rest) > 1:
                return host, rest[1:]
            return host, None
    if address.count(":") == 1:
        host, port = address.split(":")
        return host, port or None
    return address, None


def _run_as(user: str) -> bool:
    try:
        import pwd
    except ImportError:
        return False
    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        if not user.isdigit():
            return False
        try:
            entry = pwd.getpwuid(int(user))
        except KeyError:
            return False
    if os.getuid() == entry.pw_uid:
        return True
    try:
        os.initgroups(entry.pw_name, entry.pw_gid)
        os.setgid(entry.pw_gid)
        os.setuid(entry.pw_uid)
    except OSError as exc:
        log.error("run_as: %s", exc)
        return False
    return True


def _load_conf(path: str) -> dict:
    try:
        with open(path, encoding="utf-8") as handle:
            conf = json.load(handle)
    except (OSError, ValueError) as exc:
        raise _Fatal(f"invalid config file: {exc}") from exc
    if not isinstance(conf, dict):
        raise _Fatal("invalid config file")
    return conf


def _conf_hosts(conf: dict) -> List[str]:
    value = conf.get("server")
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value][:MAX_REMOTE_NUM]
    return []


def _conf_str(conf: dict, key: str) -> Optional[str]:
    value = conf.get(key)
    return None if value is None else str(value)


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="ss-manager", add_help=False,
                     description="Manage a set of per-port servers.")
    parser.add_argument("-s", dest="server", action="append", help="host name or IP to bind")
    parser.add_argument("-k", "--password", dest="password", help="default password")
    parser.add_argument("-m", dest="method", help="encryption method")
    parser.add_argument("-t", dest="timeout", help="socket timeout in seconds")
    parser.add_argument("-c", dest="conf", help="path to the config file")
    parser.add_argument("-f", dest="pid_file", help="pid file")
    parser.add_argument("-i", dest="iface", help="network interface")
    parser.add_argument("-d", dest="nameservers", help="name servers")
    parser.add_argument("-a", dest="user", help="run as this user")
    parser.add_argument("-n", dest="nofile", type=int, default=0, help="max open files")
    parser.add_argument("-D", "--workdir", dest="workdir", help="working directory")
    parser.add_argument("-l", dest="local_port", help=argparse.SUPPRESS)
    parser.add_argument("-u", dest="mode", action="store_const", const=Mode.TCP_AND_UDP,
                        default=Mode.TCP_ONLY, help="relay TCP and UDP")
    parser.add_argument("-U", dest="mode", action="store_const", const=Mode.UDP_ONLY,
                        help="relay UDP only")
    parser.add_argument("-6", dest="ipv6first", action="store_true", help="prefer IPv6")
    parser.add_argument("-v", dest="verbose", action="store_true", help="verbose mode")
    parser.add_argument("-A", dest="one_time_auth", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("-h", "--help", dest="help", action="store_true", help="show this help")
    parser.add_argument("--fast-open", action="store_true", help="enable TCP fast open")
    parser.add_argument("--no-delay", action="store_true", help="enable TCP_NODELAY")
    parser.add_argument("--reuse-port", action="store_true", help="enable SO_REUSEPORT")
    parser.add_argument("--acl", help="path to the ACL file")
    parser.add_argument("--manager-address", help="UDP address or UNIX socket path")
    parser.add_argument("--executable", default=None, help="server executable")
    parser.add_argument("--mtu", type=int, default=0, help="MTU of the network interface")
    parser.add_argument("--plugin", help="plugin name")
    parser.add_argument("--plugin-opts", help="plugin options")
    return parser


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def _open_control_socket(address: str) -> socket.socket:
    host, port = parse_manager_address(address)
    if host is None or port is None:
        if not hasattr(socket, "AF_UNIX"):
            raise _Fatal("socket")
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        try:
            os.remove(address)
        except FileNotFoundError:
            pass
        except OSError as exc:
            sock.close()
            raise _Fatal(f"bind: {exc}") from exc
        try:
            sock.bind(address)
        except OSError as exc:
            sock.close()
            raise _Fatal(f"bind: {exc}") from exc
        return sock
    try:
        return create_server_socket(host or None, port)
    except OSError as exc:
        raise _Fatal(f"socket: {exc}") from exc


def _serve(manager: Manager, sock: socket.socket) -> None:
    with sock:
        try:
            while True:
                try:
                    data, client = sock.recvfrom(BUF_SIZE)
                except OSError as exc:
                    log.error("manager_recvfrom: %s", exc)
                    continue
                for reply in manager.handle(data):
                    try:
                        sock.sendto(reply, client)
                    except OSError as exc:
                        log.error("sendto: %s", exc)
        except KeyboardInterrupt:
            pass


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the manager until interrupted."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.help:
        parser.print_help()
        return 0
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s: %(message)s")
    try:
        return _run(args)
    except _Fatal as exc:
        log.critical("%s", exc)
        return 1


def _run(args: argparse.Namespace) -> int:
    if args.one_time_auth:
        raise _Fatal("One time auth has been deprecated. Try AEAD ciphers instead.")

    conf = _load_conf(args.conf) if args.conf else {}
    hosts = list(args.server or [])[:MAX_REMOTE_NUM] or _conf_hosts(conf)
    if not hosts:
        hosts = ["0.0.0.0"]

    mode = args.mode
    if mode == Mode.TCP_ONLY:
        mode = _MODE_NAMES.get(str(conf.get("mode", "")), Mode.TCP_ONLY)

    config = ManagerConfig(
        manager_address=args.manager_address or DEFAULT_MANAGER_ADDRESS,
        executable=args.executable or ManagerConfig.executable,
        hosts=hosts,
        fast_open=args.fast_open or bool(conf.get("fast_open")),
        no_delay=args.no_delay or bool(conf.get("no_delay")),
        reuse_port=args.reuse_port or bool(conf.get("reuse_port")),
        verbose=args.verbose,
        mode=mode,
        password=args.password or _conf_str(conf, "password"),
        timeout=args.timeout or _conf_str(conf, "timeout") or DEFAULT_TIMEOUT,
        method=args.method or _conf_str(conf, "method") or DEFAULT_METHOD,
        iface=args.iface,
        acl=args.acl or _conf_str(conf, "acl"),
        user=args.user or _conf_str(conf, "user"),
        plugin=args.plugin or _conf_str(conf, "plugin"),
        plugin_opts=args.plugin_opts or _conf_str(conf, "plugin_opts"),
        nameservers=args.nameservers or _conf_str(conf, "nameserver"),
        mtu=args.mtu or int(conf.get("mtu") or 0),
        ipv6first=args.ipv6first or bool(conf.get("ipv6_first")),
        workdir=args.workdir or _conf_str(conf, "workdir"),
        nofile=args.nofile or int(conf.get("nofile") or 0),
    )

    if args.pid_file:
        try:
            with open(args.pid_file, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()}\n")
        except OSError as exc:
            raise _Fatal(f"unable to write pid file: {exc}") from exc

    if args.manager_address is None:
        log.info("using the default manager address: %s", config.manager_address)
    if config.fast_open:
        log.info("using tcp fast open")
    if config.no_delay:
        log.info("using tcp no-delay")

    if hasattr(signal, "SIGPIPE"):
        signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, _raise_interrupt)

    if config.user is not None and not _run_as(config.user):
        raise _Fatal("failed to switch user")
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        log.info("running from root user")

    working_dir = resolve_working_dir(config.workdir)
    log.info("working directory points to %s", working_dir)
    try:
        os.mkdir(working_dir, 0o775)
    except FileExistsError:
        pass
    except OSError as exc:
        raise _Fatal(f"unable to create working directory: {exc}") from exc

    manager = Manager(config, working_dir)
    try:
        manager.kill_stale()
    except OSError as exc:
        raise _Fatal("Couldn't open the directory") from exc

    port_password = conf.get("port_password")
    if isinstance(port_password, dict):
        for port, secret in port_password.items():
            manager.add_server(ServerSpec(port=str(port)[:MAX_PORT_LEN],
                                          password=str(secret)[:MAX_PASSWORD_LEN]))

    sock = _open_control_socket(config.manager_address)
    _serve(manager, sock)

    if config.verbose:
        log.info("closed gracefully")
    manager.stop_all()
    return 0


if __name__ == "__main__":
    sys.exit(main())