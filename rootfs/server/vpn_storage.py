import json
import logging
import os
from datetime import datetime
from pathlib import Path

from vpn_config import (
    ClientConfig,
    Endpoint,
    Key,
    LinkConfig,
    ServerConfig,
    StorageError,
    UserConfig,
    VpnError,
    parse_ip,
    parse_network,
    parse_networks,
)

_log = logging.getLogger("wgui.storage")


def _ts(value):
    return value.isoformat() if value else None


def _parse_ts(value):
    return datetime.fromisoformat(value) if value else None


def client_to_dict(c):
    return {
        "ip": str(c.ip) if c.ip is not None else None,
        "allowed_ips": [str(n) for n in c.allowed_ips] if c.allowed_ips is not None else None,
        "public_key": c.public_key.hex(),
        "preshared_key": c.preshared_key.hex(),
        "private_key": c.private_key,
        "name": c.name,
        "notes": c.notes,
        "mtu": c.mtu,
        "dns": str(c.dns) if c.dns is not None else None,
        "keepalive": c.keepalive,
        "created": _ts(c.created),
        "modified": _ts(c.modified),
    }


def client_from_dict(d):
    return ClientConfig(
        ip=parse_ip(d.get("ip")),
        allowed_ips=parse_networks(d.get("allowed_ips")),
        public_key=Key.from_hex(d["public_key"]),
        preshared_key=Key.from_hex(d["preshared_key"]) if d.get("preshared_key") else Key(),
        private_key=d.get("private_key") or "",
        name=d.get("name", ""),
        notes=d.get("notes", ""),
        mtu=int(d.get("mtu") or 0),
        dns=parse_ip(d.get("dns")),
        keepalive=int(d.get("keepalive") or 0),
        created=_parse_ts(d.get("created")),
        modified=_parse_ts(d.get("modified")),
    )


def snapshot_to_dict(config):
    link = config.link or LinkConfig()
    return {
        "private_key": config.private_key.hex(),
        "endpoint": {
            "host": config.endpoint.host,
            "port": config.endpoint.port,
            "zone": config.endpoint.zone,
        },
        "allowed_ips": [str(n) for n in config.allowed_ips],
        "link": {
            "name": link.name,
            "ip": str(link.ip) if link.ip is not None else None,
            "network": str(link.network) if link.network is not None else None,
            "mtu": link.mtu,
            "nat_link": link.nat_link,
        },
        "max_clients_per_user": config.max_clients_per_user,
        "default_peer_mtu": config.default_peer_mtu,
        "users": {
            user_id: {key.hex(): client_to_dict(c) for key, c in roster.items()}
            for user_id, roster in config.users.items()
        },
    }


def snapshot_from_dict(data):
    ep = data.get("endpoint") or {}
    ld = data.get("link") or {}
    users = {}
    for user_id, clients in (data.get("users") or {}).items():
        roster = UserConfig()
        for key_hex, cd in clients.items():
            client = client_from_dict(cd)
            roster[Key.from_hex(key_hex)] = client
        users[user_id] = roster
    return ServerConfig(
        private_key=Key.from_hex(data["private_key"]) if data.get("private_key") else Key(),
        endpoint=Endpoint(
            host=ep.get("host", ""),
            port=int(ep.get("port") or 0),
            zone=ep.get("zone", ""),
        ),
        allowed_ips=parse_networks(data.get("allowed_ips") or []),
        link=LinkConfig(
            name=ld.get("name", ""),
            ip=parse_ip(ld.get("ip")),
            network=parse_network(ld["network"]) if ld.get("network") else None,
            mtu=int(ld.get("mtu") or 0),
            nat_link=ld.get("nat_link", ""),
        ),
        max_clients_per_user=int(data.get("max_clients_per_user") or 0),
        default_peer_mtu=int(data.get("default_peer_mtu") or 0),
        users=users,
    )


class ConfigStore:
    """JSON snapshot of the whole ServerConfig, written atomically."""

    def __init__(self, path):
        self.path = Path(path)

    def _ensure_dir(self):
        d = self.path.parent
        if d.exists() and not d.is_dir():
            raise StorageError(f"path {d} is not a directory")
        d.mkdir(parents=True, exist_ok=True, mode=0o700)

    def load(self):
        if not self.path.exists():
            _log.info("no snapshot at %s", self.path)
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            config = snapshot_from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, VpnError) as e:
            raise StorageError(f"cannot load server configuration from {self.path}: {e}") from e
        _log.info("loaded snapshot %s (%d users)", self.path, len(config.users))
        return config

    def persist(self, config):
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self._ensure_dir()
            tmp.write_text(json.dumps(snapshot_to_dict(config), indent=2), encoding="utf-8")
            tmp.chmod(0o600)
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise StorageError(f"cannot persist server configuration to {self.path}: {e}") from e
        _log.debug("persisted snapshot %s", self.path)


def load_server_config(store, startup, generate_key):
    """Snapshot (or a fresh config) with startup options merged on top.

    Rosters always come from the snapshot; ``startup`` only overrides the
    scalar and link fields it sets.
    """
    config = store.load()
    if config is None:
        config = ServerConfig(
            private_key=generate_key(),
            endpoint=Endpoint(),
            allowed_ips=list(startup.allowed_ips),
            link=LinkConfig(),
            users={},
        )
    elif not config.allowed_ips:
        config.allowed_ips = list(startup.allowed_ips)
    config.merge_with(startup)
    return config
