# shadowrelay

Pieces of an encrypted SOCKS relay service, plus a manager daemon that
starts and stops one relay server process per port on request.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## What this package does not do

It contains no relay server, no SOCKS5 client and no ciphers. The manager
daemon starts an external server executable (`ss-server` unless
`--executable` names another) and only tracks it through the
configuration and pid files in its working directory.

## The manager daemon

```
shadowrelay-manager --manager-address 127.0.0.1:8839 -s 0.0.0.0 -m aes-256-gcm
```

The manager listens on a UDP address (`host:port` or `[v6]:port`,
`127.0.0.1:8839` by default) or, when the address has no port, on a Unix
datagram socket at that path. It runs in the foreground until it gets
SIGINT or SIGTERM, then sends SIGTERM to every server it manages.

For every port it is asked to serve it first checks that the port can be
bound on each `-s` host (TCP, UDP or both, following `-u`/`-U`), writes
`.shadowsocks_<port>.conf` into its working directory and runs the server
executable with `--manager-address`, `-f .shadowsocks_<port>.pid` and
`-c .shadowsocks_<port>.conf`, plus the manager-wide options (`--acl`,
`-t`, `-n`, `-a`, `-v`, `-u`/`-U`, `--fast-open`, `--no-delay`, `-6`,
`--mtu`, `--plugin`, `--plugin-opts`, `-d`, `-D`, `-s`). It waits for that
command to return, so the executable is expected to put itself in the
background. A server is stopped by sending SIGTERM to the process id in
its pid file.

The working directory is `--workdir` (`-D`) if given, otherwise
`.shadowsocks` under the user's home directory, or under `/tmp` when the
home directory is unset or a `nologin`/`nonexistent` placeholder. At start
the manager sends SIGTERM to the processes named in any file there whose
name ends in `pid`, and deletes those files.

`-c` reads a JSON configuration file; it fills in options not given on the
command line (`server`, `password`, `method`, `timeout`, `user`,
`fast_open`, `no_delay`, `reuse_port`, `nameserver`, `mode`, `mtu`,
`plugin`, `plugin_opts`, `ipv6_first`, `workdir`, `acl`, `nofile`), and
every entry of its `port_password` object is started as a server. The
default method is `table` and the default timeout `60`. `-f` writes the
manager's own process id to a file.

Requests are single datagrams of the form `action: {json}`:

| Request | Reply |
| --- | --- |
| `add: {"server_port": 8001, "password": "password"}` | `ok`, `port is not available`, or `err` |
| `remove: {"server_port": 8001}` | `ok` or `err` |
| `list` | a JSON array of ports, passwords and methods |
| `ping` | `stat: {"8001": 1024, ...}` with traffic per port |
| `stat: {"8001": 1024}` | none; records traffic for a port |

`add` also accepts `method`, `fast_open`, `no_delay`, `mode`, `plugin`
and `plugin_opts`. Requests longer than 32767 bytes are ignored. Long
`list` and `ping` replies are split across several datagrams.

From Python the same logic is available without sockets:

```python
from shadowrelay.manager import Manager, resolve_working_dir
from shadowrelay.manager_protocol import ManagerConfig

manager = Manager(ManagerConfig(), resolve_working_dir(None))
replies = manager.handle(b"list")   # list of bytes payloads
```

`Manager` also has `add_server`, `remove_server`, `update_stat`,
`check_port`, `kill_stale` and `stop_all`. `create_server_socket` and
`parse_manager_address` in the same module open and parse the control
address.

`shadowrelay.manager_protocol` holds the pure parts: `get_action`,
`get_data`, `parse_server`, `parse_traffic`, `render_config`,
`build_command_line`, `format_list` and `format_stat`, working on
`ServerSpec` and `ManagerConfig` values and the `Mode` enum. Malformed
request bodies raise `ValueError`.

## Address helpers

`shadowrelay.netutils` resolves hosts into `SockAddr` values with an
optional IPv6 preference (`resolve_sockaddr`), builds outbound bind
addresses from IP literals (`parse_local_addr`), orders addresses with
`sockaddr_cmp` and `sockaddr_cmp_addr`, checks host names with
`validate_hostname`, tells whether every server resolves to IPv6
(`is_ipv6only`), reports native address sizes (`get_sockaddr_len`) and
turns on `SO_REUSEPORT` (`set_reuseport`). Failures raise `AddressError`.

## Replay filter

`shadowrelay.ppbloom.BloomFilter` is a plain Bloom filter supporting
`add` and `in`. `PingPongBloom` keeps two of them, each sized for half of
`entries`, and clears and switches to the other one when the active one
fills, so it remembers roughly the last `entries` items it was given:

```python
from shadowrelay.ppbloom import PingPongBloom

seen = PingPongBloom(1_000_000, 1e-15)
nonce = b"\x00" * 12
if not seen.check(nonce):
    seen.add(nonce)
```

## Plugins

`shadowrelay.plugin.start_plugin` runs a transport plugin as a child
process, with the current directory put at the front of `PATH`. The
remote and local endpoints are passed through `SS_REMOTE_HOST`,
`SS_REMOTE_PORT`, `SS_LOCAL_HOST`, `SS_LOCAL_PORT` and
`SS_PLUGIN_OPTIONS` (`build_plugin_env`), and `--fast-open` is added when
asked for; a plugin whose name starts with `obfsproxy` gets a standalone
command line instead (`build_plugin_command`). An empty plugin name
starts nothing and returns None; None raises `ValueError`. The result is a
`PluginProcess` with `stop()` and `is_finished()`, usable as a context
manager. `get_local_port()` finds a free local TCP port for the plugin to
use, or returns 0.