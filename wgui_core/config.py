import json
import os
from pathlib import Path

DEFAULTS = {
    "data_dir": "/var/lib/wireguard-ui",
    "listen_address": "0.0.0.0:8080",
    "auth_user_header": "X-Forwarded-User",
    "log_level": "info",
    "nat": True,
    "nat_device": "eth0",
    "server_ip": "172.31.255.1/24",
    "max_clients_per_user": 0,
    "wg_device_name": "wg0",
    "wg_endpoint": "127.0.0.1:51820",
    "wg_allowed_ips": ["0.0.0.0/0"],
    "wg_dns": "",
    "wg_keepalive": 0,
    "wg_server_mtu": 1420,
    "wg_peer_mtu": 1420,
    "fail_fast": True,
}

OPTIONS_PATH = "/data/options.json"
CONFIG_FILE_NAME = "config.json"

MIN_MTU = 1280
MAX_MTU = 1500
DEFAULT_CLIENT_NAME = "Unnamed Client"
ANONYMOUS_USER = "anonymous"

CMD_TIMEOUT = 15

_ENV_KEYS = {
    "DATA_DIR": "data_dir",
    "LISTEN_ADDRESS": "listen_address",
    "AUTH_USER_HEADER": "auth_user_header",
    "LOG_LEVEL": "log_level",
    "WG_NAT": "nat",
    "WG_NAT_DEVICE": "nat_device",
    "WG_SERVER_IP": "server_ip",
    "MAX_CLIENTS_PER_USER": "max_clients_per_user",
    "WG_DEVICE_NAME": "wg_device_name",
    "WG_ENDPOINT": "wg_endpoint",
    "WG_ALLOWED_IPS": "wg_allowed_ips",
    "WG_DNS": "wg_dns",
    "WG_KEEPALIVE": "wg_keepalive",
    "WG_SERVER_MTU": "wg_server_mtu",
    "WG_PEER_MTU": "wg_peer_mtu",
    "FAIL_FAST": "fail_fast",
}

_TRUE = ("1", "true", "yes", "on")


def _coerce(key, raw):
    default = DEFAULTS[key]
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUE
    if isinstance(default, int):
        return int(raw or 0)
    if isinstance(default, list):
        if isinstance(raw, str):
            return [part.strip() for part in raw.split(",") if part.strip()]
        return list(raw)
    return str(raw)


def load_options(path=None, environ=None):
    """Build the startup option set: defaults, then the options file, then env."""
    environ = os.environ if environ is None else environ
    options = dict(DEFAULTS)
    p = Path(path or environ.get("OPTIONS_PATH", OPTIONS_PATH))
    if p.exists():
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
        for key, value in data.items():
            if key in DEFAULTS:
                options[key] = _coerce(key, value)
    for env_key, key in _ENV_KEYS.items():
        if env_key in environ:
            options[key] = _coerce(key, environ[env_key])
    return options


def config_path(options):
    return Path(options["data_dir"]) / CONFIG_FILE_NAME
