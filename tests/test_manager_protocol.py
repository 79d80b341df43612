import json

import pytest

from shadowrelay.manager_protocol import (
    ManagerConfig,
    Mode,
    ServerSpec,
    build_command_line,
    format_list,
    format_stat,
    get_action,
    get_data,
    parse_server,
    parse_traffic,
    render_config,
)

PASSWORD = "password"


def _spec(port="8388", **kwargs):
    return ServerSpec(port=port, password=PASSWORD, **kwargs)


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"add: {}", "add"),
        (b"   ping", "ping"),
        ("list", "list"),
        (b"remove:{}", "remove"),
        (b"stat\t{}", "stat"),
    ],
)
def test_get_action(data, expected):
    assert get_action(data) == expected


@pytest.mark.parametrize("data", [b"", b"   \n\t", b"\0\0"])
def test_get_action_empty(data):
    assert get_action(data) is None


def test_get_data_from_brace():
    assert get_data(b'add: {"server_port":8388}') == '{"server_port":8388}'


def test_get_data_stops_at_nul():
    assert get_data(b'stat: {"a":1}\0\0garbage') == '{"a":1}'


def test_get_data_missing():
    assert get_data(b"ping") is None


def test_parse_server_full():
    spec = parse_server(
        b'add: {"server_port":8388,"password":"password","method":"aes-256-gcm",'
        b'"fast_open":true,"no_delay":false,"mode":"tcp_and_udp",'
        b'"plugin":"obfs","plugin_opts":"obfs=http"}'
    )
    assert spec == ServerSpec(
        port="8388", password=PASSWORD, fast_open=True, no_delay=False,
        mode="tcp_and_udp", method="aes-256-gcm", plugin="obfs",
        plugin_opts="obfs=http",
    )


def test_parse_server_string_port_truncated():
    spec = parse_server(b'add: {"server_port":"123456789"}')
    assert spec.port == "1234567"


def test_parse_server_ignores_wrong_types():
    spec = parse_server(b'add: {"server_port":true,"password":5,"fast_open":"yes"}')
    assert spec.port == ""
    assert spec.password == ""
    assert spec.fast_open is None


def test_parse_server_unknown_key_stops_parsing():
    spec = parse_server(b'add: {"server_port":8388,"bogus":1,"password":"password"}')
    assert spec.port == "8388"
    assert spec.password == ""


def test_parse_server_no_data():
    with pytest.raises(ValueError):
        parse_server(b"add")


def test_parse_server_bad_json():
    with pytest.raises(ValueError):
        parse_server(b"add: {server_port:}")


def test_parse_traffic():
    assert parse_traffic(b'stat: {"8388":1024}') == ("8388", 1024)


def test_parse_traffic_last_integer_wins():
    assert parse_traffic(b'stat: {"1":10,"x":"s","2":20}') == ("2", 20)


def test_parse_traffic_without_integer():
    with pytest.raises(ValueError):
        parse_traffic(b'stat: {"8388":"lots"}')


def test_render_config_minimal():
    text = render_config(ManagerConfig(), _spec())
    assert text == '{\n"server_port":8388,\n"password":"password"\n}\n'


def test_render_config_inherits_manager_settings():
    config = ManagerConfig(method="chacha20-ietf-poly1305", fast_open=True, no_delay=True)
    data = json.loads(render_config(config, _spec()))
    assert data == {
        "server_port": 8388,
        "password": PASSWORD,
        "method": "chacha20-ietf-poly1305",
        "fast_open": True,
        "no_delay": True,
    }


def test_render_config_server_overrides():
    config = ManagerConfig(method="chacha20-ietf-poly1305", fast_open=True)
    spec = _spec(method="aes-128-gcm", fast_open=False, mode="udp_only",
                 plugin="obfs", plugin_opts="obfs=tls")
    data = json.loads(render_config(config, spec))
    assert data["method"] == "aes-128-gcm"
    assert data["fast_open"] is False
    assert data["mode"] == "udp_only"
    assert data["plugin"] == "obfs"
    assert data["plugin_opts"] == "obfs=tls"
    assert "no_delay" not in data


def test_render_config_round_trips_through_parse_server():
    spec = _spec(method="aes-256-gcm", fast_open=True, no_delay=False)
    text = render_config(ManagerConfig(), spec)
    parsed = parse_server(text.encode())
    assert parsed.password == spec.password
    assert parsed.method == spec.method
    assert parsed.fast_open is True
    assert parsed.no_delay is False
    assert parsed.port == spec.port


def test_build_command_line_base():
    config = ManagerConfig(manager_address="127.0.0.1:8839")
    args = build_command_line(config, _spec(), "/work")
    assert args == [
        "ss-server",
        "--manager-address", "127.0.0.1:8839",
        "-f", "/work/.shadowsocks_8388.pid",
        "-c", "/work/.shadowsocks_8388.conf",
    ]


def test_build_command_line_options():
    config = ManagerConfig(
        manager_address="/tmp/manager.sock", executable="server-bin",
        acl="rules.acl", timeout="60", nofile=4096, user="nobody",
        verbose=True, mode=Mode.TCP_AND_UDP, fast_open=True, no_delay=True,
        ipv6first=True, mtu=1400, plugin="obfs", plugin_opts="obfs=http",
        nameservers="8.8.8.8", workdir="/var/lib/relay", hosts=["0.0.0.0", "::"],
    )
    args = build_command_line(config, _spec(), "/work")
    assert args[0] == "server-bin"
    tail = args[7:]
    assert tail == [
        "--acl", "rules.acl", "-t", "60", "-n", "4096", "-a", "nobody", "-v",
        "-u", "--fast-open", "--no-delay", "-6", "--mtu", "1400",
        "--plugin", "obfs", "--plugin-opts", "obfs=http", "-d", "8.8.8.8",
        "-D", "/var/lib/relay", "-s", "0.0.0.0", "-s", "::",
    ]


def test_build_command_line_server_settings_suppress_manager_flags():
    config = ManagerConfig(manager_address="m", mode=Mode.UDP_ONLY, fast_open=True,
                           no_delay=True, plugin="obfs", plugin_opts="o")
    spec = _spec(mode="tcp_only", fast_open=False, no_delay=False,
                 plugin="other", plugin_opts="p")
    args = build_command_line(config, spec, "/w")
    for flag in ("-U", "-u", "--fast-open", "--no-delay", "--plugin", "--plugin-opts"):
        assert flag not in args


def test_build_command_line_udp_only():
    args = build_command_line(ManagerConfig(manager_address="m", mode=Mode.UDP_ONLY), _spec(), "/w")
    assert "-U" in args
    assert "-u" not in args


def test_format_list_empty():
    assert format_list([], "aes-256-gcm") == ["[\n]"]


def test_format_list_entries():
    chunks = format_list([_spec(), _spec("8389", method="aes-128-gcm")], "chacha20")
    assert len(chunks) == 1
    assert json.loads(chunks[0]) == [
        {"server_port": "8388", "password": PASSWORD, "method": "chacha20"},
        {"server_port": "8389", "password": PASSWORD, "method": "aes-128-gcm"},
    ]


def test_format_list_splits_long_listings():
    servers = [_spec(str(10000 + i)) for i in range(2000)]
    chunks = format_list(servers, "chacha20")
    assert len(chunks) > 1
    assert all(len(c) <= 65535 for c in chunks)
    data = json.loads("".join(chunks))
    assert [d["server_port"] for d in data] == [s.port for s in servers]


def test_format_stat_empty():
    assert format_stat([]) == ["stat: {}"]


def test_format_stat_entries():
    chunks = format_stat([_spec(traffic=100), _spec("8389", traffic=0)])
    assert len(chunks) == 1
    assert chunks[0].startswith("stat: ")
    assert json.loads(chunks[0][len("stat: "):]) == {"8388": 100, "8389": 0}


def test_format_stat_splits_into_valid_chunks():
    servers = [_spec(str(10000 + i), traffic=i) for i in range(5000)]
    chunks = format_stat(servers)
    assert len(chunks) > 1
    merged = {}
    for chunk in chunks:
        assert chunk.startswith("stat: ")
        merged.update(json.loads(chunk[len("stat: "):]))
    assert merged == {s.port: s.traffic for s in servers}