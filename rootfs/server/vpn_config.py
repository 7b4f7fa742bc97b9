import base64
import binascii
import ipaddress
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from wgui_core.config import DEFAULT_CLIENT_NAME, MAX_MTU, MIN_MTU

_log = logging.getLogger("wgui.vpn")

KEY_LEN = 32


class VpnError(Exception):
    pass


class ValidationError(VpnError):
    pass


class InvalidMTUError(ValidationError):
    def __init__(self, mtu=None):
        super().__init__(f"validation error: MTU must be between {MIN_MTU} and {MAX_MTU} (got {mtu})")


class InvalidPublicKeyError(ValidationError):
    def __init__(self, detail="invalid public key"):
        super().__init__(f"validation error: {detail}")


class InvalidIPError(ValidationError):
    def __init__(self, detail="invalid IP"):
        super().__init__(f"validation error: {detail}")


class InvalidKeepaliveError(ValidationError):
    def __init__(self, keepalive=None):
        super().__init__(f"validation error: invalid keepalive {keepalive}")


class DuplicateClientError(ValidationError):
    pass


class ClientNotFoundError(VpnError):
    def __init__(self, msg="client not found"):
        super().__init__(msg)


class TooManyClientsError(VpnError):
    pass


class RangeExhaustedError(VpnError):
    def __init__(self, msg="IP range exhausted"):
        super().__init__(msg)


class StorageError(VpnError):
    pass


class DeviceError(VpnError, RuntimeError):
    pass


@dataclass(frozen=True)
class Key:
    """32 byte WireGuard key. The all-zero key stands for "no key"."""

    raw: bytes = bytes(KEY_LEN)

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != KEY_LEN:
            raise InvalidPublicKeyError(f"key must be {KEY_LEN} bytes")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_hex(cls, text):
        try:
            return cls(bytes.fromhex(text.strip()))
        except (ValueError, AttributeError):
            raise InvalidPublicKeyError(f"invalid hex key {text!r}")

    @classmethod
    def from_base64(cls, text):
        try:
            return cls(base64.b64decode(text.strip(), validate=True))
        except (binascii.Error, ValueError, AttributeError):
            raise InvalidPublicKeyError(f"invalid base64 key {text!r}")

    def hex(self):
        return self.raw.hex()

    def base64(self):
        return base64.b64encode(self.raw).decode()

    def is_zero(self):
        return self.raw == bytes(KEY_LEN)

    def __str__(self):
        return self.hex()

    def __repr__(self):
        return f"Key({self.hex()[:8]}…)"


ZERO_KEY = Key()


def validate_mtu(mtu):
    if not isinstance(mtu, int) or mtu < MIN_MTU or mtu > MAX_MTU:
        raise InvalidMTUError(mtu)
    return mtu


def parse_ip(value):
    if value is None or value == "":
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    try:
        return ipaddress.ip_address(str(value).strip())
    except ValueError:
        raise InvalidIPError(f"invalid IP {value!r}")


def parse_network(value):
    if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return value
    try:
        return ipaddress.ip_network(str(value).strip(), strict=False)
    except ValueError:
        raise InvalidIPError(f"invalid CIDR {value!r}")


def parse_networks(values):
    if values is None:
        return None
    return [parse_network(v) for v in values]


def host_network(ip):
    return ipaddress.ip_network(f"{ip}/{ip.max_prefixlen}")


def _now():
    return datetime.now(timezone.utc)


@dataclass
class ClientConfig:
    ip: object = None
    allowed_ips: list = None
    public_key: Key = ZERO_KEY
    preshared_key: Key = ZERO_KEY
    private_key: str = ""
    name: str = ""
    notes: str = ""
    mtu: int = 0
    dns: object = None
    keepalive: int = 0
    created: datetime = None
    modified: datetime = None

    def validate(self):
        validate_mtu(self.mtu)
        if self.public_key is None or self.public_key.is_zero():
            raise InvalidPublicKeyError()
        if self.ip is None or self.ip.is_unspecified:
            raise InvalidIPError()
        if self.keepalive < 0:
            raise InvalidKeepaliveError(self.keepalive)

    def update(self, allowed_ips, preshared_key, name, notes, mtu, dns, keepalive):
        candidate = replace(
            self,
            allowed_ips=allowed_ips,
            preshared_key=preshared_key or ZERO_KEY,
            name=name,
            notes=notes,
            mtu=mtu,
            dns=dns,
            keepalive=keepalive,
            modified=_now(),
        )
        candidate.validate()
        self.__dict__.update(candidate.__dict__)

    def merge_with(self, other):
        if other.ip is not None:
            self.ip = other.ip
        if other.allowed_ips is not None:
            self.allowed_ips = other.allowed_ips
        if other.public_key is not None and not other.public_key.is_zero():
            self.public_key = other.public_key
        if other.preshared_key is not None and not other.preshared_key.is_zero():
            self.preshared_key = other.preshared_key
        if other.private_key:
            self.private_key = other.private_key
        if other.name:
            self.name = other.name
        if other.notes:
            self.notes = other.notes
        if other.mtu:
            self.mtu = other.mtu
        if other.created is not None:
            self.created = other.created
        if other.modified is not None:
            self.modified = other.modified
        if other.dns is not None:
            self.dns = other.dns
        if other.keepalive:
            self.keepalive = other.keepalive


class UserConfig(dict):
    """Clients of one user, keyed by public key."""

    def get_client(self, key):
        try:
            return self[key]
        except KeyError:
            raise ClientNotFoundError()

    def add(self, client):
        self[client.public_key] = client

    def remove(self, key):
        if key not in self:
            raise ClientNotFoundError()
        del self[key]

    def count(self):
        return len(self)

    def list_clients(self):
        return list(self.values())

    def merge_with(self, other):
        for key, client in other.items():
            if key not in self:
                self[key] = client
            else:
                self[key].merge_with(client)


@dataclass
class LinkConfig:
    name: str = ""
    ip: object = None
    network: object = None
    mtu: int = 0
    nat_link: str = ""

    def merge_with(self, other):
        if other.name:
            self.name = other.name
        if other.mtu:
            self.mtu = other.mtu
        if other.nat_link:
            self.nat_link = other.nat_link
        if other.ip is not None:
            self.ip = other.ip
        if other.network is not None:
            self.network = other.network


@dataclass
class Endpoint:
    host: str = ""
    port: int = 0
    zone: str = ""

    def __str__(self):
        host = self.host
        if self.zone:
            host = f"{host}%{self.zone}"
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{self.port}"

    @classmethod
    def parse(cls, text):
        raw = (text or "").strip()
        if not raw:
            return cls()
        if raw.startswith("["):
            end = raw.find("]")
            host, rest = raw[1:end], raw[end + 1:]
            port = rest[1:] if rest.startswith(":") else ""
        elif raw.count(":") == 1:
            host, port = raw.rsplit(":", 1)
        else:
            host, port = raw, ""
        zone = ""
        if "%" in host:
            host, zone = host.split("%", 1)
        try:
            port_num = int(port) if port else 0
        except ValueError:
            raise InvalidIPError(f"invalid endpoint {text!r}")
        return cls(host=host, port=port_num, zone=zone)

    def merge_with(self, other):
        if other.host and not _is_unspecified(other.host):
            self.host = other.host
        if other.port:
            self.port = other.port
        if other.zone:
            self.zone = other.zone


def _is_unspecified(host):
    try:
        return ipaddress.ip_address(host).is_unspecified
    except ValueError:
        return False


@dataclass
class ServerConfig:
    private_key: Key = ZERO_KEY
    endpoint: Endpoint = field(default_factory=Endpoint)
    allowed_ips: list = field(default_factory=list)
    link: LinkConfig = None
    max_clients_per_user: int = 0
    default_peer_mtu: int = 0
    users: dict = field(default_factory=dict)

    def _user(self, user_id):
        if user_id not in self.users:
            self.users[user_id] = UserConfig()
        return self.users[user_id]

    def _roster(self, user_id):
        return self.users.get(user_id) or UserConfig()

    def get_client(self, user_id, key):
        return self._roster(user_id).get_client(key)

    def find_client(self, key):
        for user_id, roster in self.users.items():
            if key in roster:
                return user_id, roster[key]
        return None, None

    def add_client(self, user_id, allowed_ips, public_key, preshared_key, name,
                   mtu, dns, keepalive, private_key=""):
        if self.max_clients_per_user > 0 and self.count_clients(user_id) >= self.max_clients_per_user:
            _log.error("user %r has too many configs (%d)", user_id, self.max_clients_per_user)
            raise TooManyClientsError(
                f"user {user_id!r} already has {self.max_clients_per_user} clients")
        if public_key is None or public_key.is_zero():
            raise InvalidPublicKeyError()
        owner, _ = self.find_client(public_key)
        if owner is not None:
            raise DuplicateClientError(f"validation error: public key {public_key} already registered")
        if not name:
            _log.debug("no client name, using default %r", DEFAULT_CLIENT_NAME)
            name = DEFAULT_CLIENT_NAME
        ip = self.allocate_ip()
        try:
            validate_mtu(mtu)
        except InvalidMTUError:
            mtu = self.default_peer_mtu
        now = _now()
        client = ClientConfig(
            ip=ip,
            allowed_ips=list(allowed_ips or []),
            public_key=public_key,
            preshared_key=preshared_key or ZERO_KEY,
            private_key=private_key or "",
            name=name,
            mtu=mtu,
            dns=dns,
            keepalive=keepalive,
            created=now,
            modified=now,
        )
        client.validate()
        self._user(user_id).add(client)
        return client

    def edit_client(self, user_id, key, allowed_ips, preshared_key, name, notes,
                    mtu, dns, keepalive):
        client = self.get_client(user_id, key)
        try:
            validate_mtu(mtu)
        except InvalidMTUError:
            mtu = self.default_peer_mtu
        client.update(list(allowed_ips or []), preshared_key, name, notes, mtu, dns, keepalive)
        return client

    def remove_client(self, user_id, key):
        self._roster(user_id).remove(key)

    def count_clients(self, user_id):
        return self._roster(user_id).count()

    def list_clients(self, user_id):
        return self._roster(user_id).list_clients()

    def list_all_clients(self):
        return [c for roster in self.users.values() for c in roster.values()]

    def allocate_ip(self):
        net = self.link.network
        allocated = {self.link.ip}
        for client in self.list_all_clients():
            allocated.add(client.ip)
        ip = net.network_address
        while True:
            ip = _next_ip(ip)
            if ip not in net or ip == net.network_address:
                break
            if ip not in allocated:
                _log.debug("allocated %s", ip)
                return ip
        raise RangeExhaustedError()

    def merge_with(self, other):
        if other.private_key is not None and not other.private_key.is_zero():
            self.private_key = other.private_key
        if other.link is not None:
            if self.link is None:
                self.link = LinkConfig()
            self.link.merge_with(other.link)
        self.endpoint.merge_with(other.endpoint)
        if other.max_clients_per_user:
            self.max_clients_per_user = other.max_clients_per_user
        if other.default_peer_mtu:
            self.default_peer_mtu = other.default_peer_mtu


def _next_ip(ip):
    b = bytearray(ip.packed)
    for i in range(len(b) - 1, -1, -1):
        b[i] = (b[i] + 1) & 0xFF
        if b[i]:
            break
    return ipaddress.ip_address(bytes(b))


def new_server_config(private_key, endpoint, allowed_ips, max_clients_per_user,
                      default_peer_mtu, link):
    return ServerConfig(
        private_key=private_key,
        endpoint=endpoint,
        allowed_ips=list(allowed_ips),
        link=replace(link),
        max_clients_per_user=max_clients_per_user,
        default_peer_mtu=default_peer_mtu,
        users={},
    )


def config_from_options(options, private_key=ZERO_KEY):
    """ServerConfig carrying only the scalar/link fields set by startup options."""
    cidr = ipaddress.ip_interface(options["server_ip"])
    link = LinkConfig(
        name=options["wg_device_name"],
        ip=cidr.ip,
        network=cidr.network,
        mtu=int(options["wg_server_mtu"]),
        nat_link=options["nat_device"] if options.get("nat") else "",
    )
    return new_server_config(
        private_key,
        Endpoint.parse(options["wg_endpoint"]),
        parse_networks(options["wg_allowed_ips"]),
        int(options["max_clients_per_user"]),
        int(options["wg_peer_mtu"]),
        link,
    )
