import logging
import re
import sys
from datetime import datetime, timezone

from flask import Flask, jsonify, request

from wgui_core.config import ANONYMOUS_USER, config_path, load_options
from vpn_config import (
    ClientNotFoundError,
    DeviceError,
    Key,
    RangeExhaustedError,
    StorageError,
    TooManyClientsError,
    ValidationError,
    VpnError,
    ZERO_KEY,
    config_from_options,
    parse_ip,
    parse_networks,
)
from vpn_manager import VpnServer
from vpn_storage import ConfigStore, load_server_config
from wg_device import WgDevice

_log = logging.getLogger("wgui.gateway")

_KEY_HEX_RE = re.compile(r'^[0-9a-fA-F]{64}$')

_STATUS = [
    (ClientNotFoundError, 404),
    (ValidationError, 400),
    (TooManyClientsError, 409),
    (RangeExhaustedError, 409),
    (StorageError, 500),
    (DeviceError, 500),
]


def _error_code(exc):
    for cls, code in _STATUS:
        if isinstance(exc, cls):
            return code
    return 500


def _client_json(c, server):
    data = {
        "ip": str(c.ip),
        "publicKey": c.public_key.hex(),
        "privateKey": c.private_key,
        "name": c.name,
        "notes": c.notes,
        "dns": str(c.dns) if c.dns is not None else None,
        "mtu": c.mtu,
        "allowedIPs": [str(n) for n in c.allowed_ips or []],
        "keepalive": c.keepalive,
        "created": c.created.isoformat() if c.created else None,
        "updated": c.modified.isoformat() if c.modified else None,
        "server": {
            "endpoint": server["endpoint"],
            "allowedIPs": [str(n) for n in server["allowed_ips"]],
            "publicKey": server["public_key"].hex(),
        },
    }
    if not c.preshared_key.is_zero():
        data["psk"] = c.preshared_key.hex()
    return data


def _parse_payload(data, defaults):
    """Client fields from a create/edit body. Raises ValidationError."""
    if not isinstance(data, dict) or not isinstance(data.get("publicKey"), str):
        raise ValidationError("invalid public key")
    psk = ZERO_KEY
    if isinstance(data.get("psk"), str) and data["psk"]:
        psk = Key.from_hex(data["psk"])
    allowed = data.get("allowedIps")
    if allowed is not None and (
            not isinstance(allowed, list) or not all(isinstance(a, str) for a in allowed)):
        raise ValidationError("allowedIps must be an array of CIDR strings")
    mtu = data.get("mtu")
    keepalive = data.get("keepalive", defaults["keepalive"])
    try:
        keepalive = int(keepalive or 0)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid keepalive {keepalive!r}")
    return {
        "public_key": Key.from_hex(data["publicKey"]),
        "preshared_key": psk,
        "private_key": data.get("privateKey") or "",
        "name": str(data.get("name") or ""),
        "notes": str(data.get("notes") or ""),
        "mtu": int(mtu) if isinstance(mtu, (int, float)) else 0,
        "allowed_ips": parse_networks(allowed) or [],
        "dns": parse_ip(data.get("dns") or defaults["dns"]),
        "keepalive": keepalive,
    }


def create_app(server, options):
    app = Flask(__name__)
    user_header = options["auth_user_header"]
    defaults = {
        "dns": options.get("wg_dns") or None,
        "keepalive": int(options.get("wg_keepalive") or 0),
    }

    def _current_user():
        user = request.headers.get(user_header, "")
        if not user:
            _log.debug("unauthenticated request")
            return ANONYMOUS_USER
        if user_header == "X-Goog-Authenticated-User-Email":
            user = user[len("accounts.google.com:"):] if user.startswith("accounts.google.com:") else user
        return user

    def _authorized(user):
        current = _current_user()
        if current != user:
            _log.warning("unauthorized access user=%s path=%s", current, request.path)
            return False
        return True

    @app.errorhandler(VpnError)
    def _vpn_error(e):
        code = _error_code(e)
        if code >= 500:
            _log.error("%s", e)
        return jsonify(ok=False, error=str(e)), code

    @app.route("/api/health")
    def health():
        return jsonify(status="ok", ts=datetime.now(timezone.utc).isoformat())

    @app.route("/api/v1/whoami")
    def whoami():
        return jsonify(user=_current_user())

    @app.route("/api/v1/users/<user>/clients", methods=["GET"])
    def clients_list(user):
        if not _authorized(user):
            return jsonify(ok=False, error="Unauthorized"), 401
        info = server.server_info()
        return jsonify([_client_json(c, info) for c in server.list_clients(user)])

    @app.route("/api/v1/users/<user>/clients", methods=["POST"])
    def clients_create(user):
        if not _authorized(user):
            return jsonify(ok=False, error="Unauthorized"), 401
        p = _parse_payload(request.get_json(silent=True), defaults)
        client = server.create_client(
            user, p["allowed_ips"], p["public_key"], p["preshared_key"], p["name"],
            p["mtu"], p["dns"], p["keepalive"], private_key=p["private_key"],
        )
        return jsonify(_client_json(client, server.server_info())), 201

    @app.route("/api/v1/users/<user>/clients/<key>", methods=["GET"])
    def clients_get(user, key):
        if not _authorized(user):
            return jsonify(ok=False, error="Unauthorized"), 401
        if not _KEY_HEX_RE.match(key):
            return jsonify(ok=False, error="Client not found"), 404
        client = server.get_client(user, Key.from_hex(key))
        return jsonify(_client_json(client, server.server_info()))

    @app.route("/api/v1/users/<user>/clients/<key>", methods=["PUT"])
    def clients_edit(user, key):
        if not _authorized(user):
            return jsonify(ok=False, error="Unauthorized"), 401
        if not _KEY_HEX_RE.match(key):
            return jsonify(ok=False, error="Client not found"), 404
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            data.setdefault("publicKey", key)
        p = _parse_payload(data, defaults)
        if p["public_key"] != Key.from_hex(key):
            return jsonify(ok=False, error="public key does not match path"), 400
        client = server.edit_client(
            user, p["public_key"], p["allowed_ips"], p["preshared_key"], p["name"],
            p["notes"], p["mtu"], p["dns"], p["keepalive"],
        )
        return jsonify(_client_json(client, server.server_info()))

    @app.route("/api/v1/users/<user>/clients/<key>", methods=["DELETE"])
    def clients_delete(user, key):
        if not _authorized(user):
            return jsonify(ok=False, error="Unauthorized"), 401
        if not _KEY_HEX_RE.match(key):
            return jsonify(ok=False, error="Client not found"), 404
        server.delete_client(user, Key.from_hex(key))
        return jsonify(ok=True)

    return app


def build_server(options, device=None, store=None):
    device = device or WgDevice(options["wg_device_name"])
    store = store or ConfigStore(config_path(options))
    startup = config_from_options(options)
    config = load_server_config(store, startup, device.generate_private_key)
    return VpnServer(config, store, device, fail_fast=options["fail_fast"])


def _split_listen(addr):
    host, _, port = addr.rpartition(":")
    return host or "0.0.0.0", int(port)


def main():
    options = load_options()
    logging.basicConfig(
        level=options["log_level"].upper(), format="%(name)s: %(message)s", force=True,
    )
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    try:
        server = build_server(options)
        server.start()
    except VpnError as e:
        _log.error("failed to start vpn server: %s", e)
        sys.exit(1)
    host, port = _split_listen(options["listen_address"])
    _log.info("starting server on %s:%d", host, port)
    create_app(server, options).run(host=host, port=port, threaded=True)


if __name__ == "__main__":
    main()
