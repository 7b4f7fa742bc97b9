import abc
import logging
import subprocess
from dataclasses import dataclass, field

from wgui_core.config import CMD_TIMEOUT
from vpn_config import DeviceError, Key, parse_network

_log = logging.getLogger("wgui.device")

ADD = "add"
UPDATE = "update"
REMOVE = "remove"

_NFT_TABLE = "wgui_nat"


@dataclass
class PeerConfig:
    public_key: Key
    allowed_ips: list = field(default_factory=list)
    preshared_key: Key = None


@dataclass
class PeerEntry:
    action: str
    peer: PeerConfig


class Device(abc.ABC):
    """Network device the gateway programs its peers into."""

    @abc.abstractmethod
    def ensure_link(self, name):
        ...

    @abc.abstractmethod
    def set_address(self, ip, network):
        ...

    @abc.abstractmethod
    def set_mtu(self, mtu):
        ...

    @abc.abstractmethod
    def set_up(self):
        ...

    @abc.abstractmethod
    def configure_nat(self, nat_link):
        ...

    @abc.abstractmethod
    def current_peers(self):
        ...

    @abc.abstractmethod
    def apply_peer_diff(self, private_key, listen_port, entries):
        ...

    def enable_ip_forward(self):
        pass

    @abc.abstractmethod
    def generate_private_key(self):
        ...

    @abc.abstractmethod
    def public_key(self, private_key):
        ...


def _run(cmd, input=None, check=True):
    try:
        r = subprocess.run(
            cmd, input=input, capture_output=True, text=True,
            timeout=CMD_TIMEOUT, check=check,
        )
        return r.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise DeviceError(f"Command failed: {' '.join(cmd)}: {(e.stderr or '').strip() or e}")
    except subprocess.TimeoutExpired:
        raise DeviceError(f"Command timed out: {' '.join(cmd)}")
    except FileNotFoundError:
        raise DeviceError(f"Command not found: {cmd[0]}")


class WgDevice(Device):
    """Kernel WireGuard link driven through ip(8), wg(8) and nft(8)."""

    def __init__(self, name):
        self.name = name

    def _exists(self):
        try:
            _run(["ip", "link", "show", self.name])
            return True
        except DeviceError:
            return False

    def ensure_link(self, name):
        self.name = name
        if self._exists():
            _log.info("WireGuard interface %s already exists, reusing", name)
            return
        _log.debug("adding wireguard device %s", name)
        _run(["ip", "link", "add", "dev", name, "type", "wireguard"])

    def set_address(self, ip, network):
        cidr = f"{ip}/{network.prefixlen}"
        current = _run(["ip", "-o", "address", "show", "dev", self.name], check=False)
        if f" {cidr} " in f" {current} ":
            _log.info("interface %s already has address %s", self.name, cidr)
            return
        _run(["ip", "address", "add", "dev", self.name, cidr])

    def set_mtu(self, mtu):
        _log.debug("setting link MTU %s", mtu)
        _run(["ip", "link", "set", "dev", self.name, "mtu", str(mtu)])

    def set_up(self):
        _run(["ip", "link", "set", "up", "dev", self.name])

    def configure_nat(self, nat_link):
        _log.info("setting up masquerade on %s", nat_link)
        _run(["nft", "delete", "table", "ip", _NFT_TABLE], check=False)
        script = "\n".join([
            f"table ip {_NFT_TABLE} {{",
            "  chain prerouting { type nat hook prerouting priority filter; }",
            "  chain postrouting {",
            "    type nat hook postrouting priority srcnat;",
            f'    oifname "{nat_link}" masquerade',
            "  }",
            "}",
        ])
        _run(["nft", "-f", "-"], input=script + "\n")

    def enable_ip_forward(self, path="/proc/sys/net/ipv4/ip_forward"):
        try:
            with open(path) as f:
                enabled = f.read().strip() == "1"
            if not enabled:
                _log.info("enabling net.ipv4.ip_forward")
                with open(path, "w") as f:
                    f.write("1\n")
        except OSError as e:
            raise DeviceError(f"cannot enable ip forwarding: {e}")

    def current_peers(self):
        out = _run(["wg", "show", self.name, "dump"])
        return parse_dump(out)

    def apply_peer_diff(self, private_key, listen_port, entries):
        _run(
            ["wg", "set", self.name, "listen-port", str(listen_port),
             "private-key", "/dev/stdin"],
            input=private_key.base64() + "\n",
        )
        removed = [e.peer.public_key for e in entries if e.action == REMOVE]
        if removed:
            cmd = ["wg", "set", self.name]
            for key in removed:
                cmd += ["peer", key.base64(), "remove"]
            _run(cmd)
        for e in entries:
            if e.action == REMOVE:
                continue
            p = e.peer
            allowed = ",".join(str(n) for n in p.allowed_ips)
            cmd = ["wg", "set", self.name, "peer", p.public_key.base64(),
                   "allowed-ips", allowed]
            if p.preshared_key is not None and not p.preshared_key.is_zero():
                _run(cmd + ["preshared-key", "/dev/stdin"], input=p.preshared_key.base64() + "\n")
            else:
                _run(cmd + ["preshared-key", "/dev/null"])

    def generate_private_key(self):
        return Key.from_base64(_run(["wg", "genkey"]))

    def public_key(self, private_key):
        return Key.from_base64(_run(["wg", "pubkey"], input=private_key.base64() + "\n"))


def parse_dump(out):
    """Peers from `wg show <if> dump`; the first line describes the interface."""
    peers = []
    for line in out.splitlines()[1:]:
        parts = line.split("\t")
        if len(parts) < 8:
            continue
        psk = None if parts[1] == "(none)" else Key.from_base64(parts[1])
        allowed = []
        if parts[3] and parts[3] != "(none)":
            allowed = [parse_network(a) for a in parts[3].split(",")]
        peers.append(PeerConfig(
            public_key=Key.from_base64(parts[0]),
            allowed_ips=allowed,
            preshared_key=psk,
        ))
    return peers
