import copy
import logging
import os
import threading
from contextlib import contextmanager

from vpn_config import DeviceError, StorageError, host_network
from wg_device import ADD, REMOVE, UPDATE, PeerConfig, PeerEntry

_log = logging.getLogger("wgui.vpn")


class RWLock:
    """Shared/exclusive lock; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def desired_peers(config):
    peers = []
    for client in config.list_all_clients():
        allowed = [host_network(client.ip)] + list(client.allowed_ips or [])
        peers.append(PeerConfig(
            public_key=client.public_key,
            allowed_ips=allowed,
            preshared_key=client.preshared_key,
        ))
    return peers


def diff_peers(current, desired):
    """Entries that turn the ``current`` peer set into ``desired``, keyed by public key."""
    wanted = {p.public_key: p for p in desired}
    entries = []
    matched = set()
    for peer in current:
        target = wanted.get(peer.public_key)
        if target is not None:
            matched.add(peer.public_key)
            entries.append(PeerEntry(UPDATE, target))
        else:
            entries.append(PeerEntry(REMOVE, PeerConfig(public_key=peer.public_key)))
    for peer in desired:
        if peer.public_key not in matched:
            entries.append(PeerEntry(ADD, peer))
    return entries


def _abort(exc):
    _log.critical("reconfiguration failed, exiting: %s", exc)
    logging.shutdown()
    os._exit(1)


class VpnServer:
    """Owns the ServerConfig; every mutation is persisted and pushed to the device."""

    def __init__(self, config, store, device, fail_fast=True, on_fatal=None):
        self.config = config
        self.store = store
        self.device = device
        self.fail_fast = fail_fast
        self._on_fatal = on_fatal or _abort
        self._lock = RWLock()
        self._public_key = None

    def start(self):
        link = self.config.link
        self.device.enable_ip_forward()
        self.device.ensure_link(link.name)
        self.device.set_address(link.ip, link.network)
        self.device.set_mtu(link.mtu)
        self.device.set_up()
        if link.nat_link:
            self.device.configure_nat(link.nat_link)
        with self._lock.write():
            self._configure_device()
        _log.info("interface %s up at %s/%s", link.name, link.ip, link.network.prefixlen)

    def _configure_device(self):
        link = self.config.link
        _log.debug("reconfiguring wireguard interface %s", link.name)
        current = self.device.current_peers()
        entries = diff_peers(current, desired_peers(self.config))
        self.device.apply_peer_diff(self.config.private_key, self.config.endpoint.port, entries)
        _log.info(
            "peers reconciled: %d add, %d update, %d remove",
            sum(1 for e in entries if e.action == ADD),
            sum(1 for e in entries if e.action == UPDATE),
            sum(1 for e in entries if e.action == REMOVE),
        )

    def _reconfigure(self, backup):
        try:
            self.store.persist(self.config)
            self._configure_device()
        except (StorageError, DeviceError) as e:
            if self.fail_fast:
                self._on_fatal(e)
                raise
            _log.error("reconfiguration failed, rolling back: %s", e)
            self.config.users = backup
            try:
                self.store.persist(self.config)
            except StorageError as restore_err:
                _log.error("cannot restore previous snapshot: %s", restore_err)
            try:
                self._configure_device()
            except DeviceError as resync_err:
                _log.error("cannot resync device after rollback: %s", resync_err)
            raise

    # reads

    def list_clients(self, user):
        with self._lock.read():
            return self.config.list_clients(user)

    def get_client(self, user, key):
        with self._lock.read():
            return self.config.get_client(user, key)

    @property
    def public_key(self):
        if self._public_key is None:
            self._public_key = self.device.public_key(self.config.private_key)
        return self._public_key

    def server_info(self):
        with self._lock.read():
            return {
                "endpoint": str(self.config.endpoint),
                "allowed_ips": list(self.config.allowed_ips),
                "public_key": self.public_key,
            }

    # mutations

    def create_client(self, user, allowed_ips, public_key, preshared_key, name,
                      mtu, dns, keepalive, private_key=""):
        with self._lock.write():
            _log.debug("create client user=%s key=%s", user, public_key)
            backup = copy.deepcopy(self.config.users)
            client = self.config.add_client(
                user, allowed_ips, public_key, preshared_key, name, mtu, dns,
                keepalive, private_key=private_key,
            )
            self._reconfigure(backup)
            return client

    def edit_client(self, user, public_key, allowed_ips, preshared_key, name, notes,
                    mtu, dns, keepalive):
        with self._lock.write():
            _log.debug("edit client user=%s key=%s", user, public_key)
            backup = copy.deepcopy(self.config.users)
            client = self.config.edit_client(
                user, public_key, allowed_ips, preshared_key, name, notes, mtu, dns, keepalive,
            )
            self._reconfigure(backup)
            return client

    def delete_client(self, user, public_key):
        with self._lock.write():
            backup = copy.deepcopy(self.config.users)
            self.config.remove_client(user, public_key)
            self._reconfigure(backup)
            _log.debug("deleted client user=%s key=%s", user, public_key)
