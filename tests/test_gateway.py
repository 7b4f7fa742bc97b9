import tempfile

from fakes import FakeDevice, MemoryStore, key, make_config

from gateway import _split_listen, build_server, create_app
from vpn_manager import VpnServer
from vpn_storage import ConfigStore
from wgui_core.config import DEFAULTS

ALICE = {"X-Forwarded-User": "alice"}


def _options(**overrides):
    options = dict(DEFAULTS)
    options.update(overrides)
    return options


def _client(config=None, **overrides):
    server = VpnServer(config or make_config(), MemoryStore(), FakeDevice())
    app = create_app(server, _options(**overrides))
    app.config["TESTING"] = True
    return app.test_client(), server


def _create(client, n, user="alice", **body):
    body.setdefault("publicKey", key(n).hex())
    return client.post(f"/api/v1/users/{user}/clients", json=body,
                       headers={"X-Forwarded-User": user})


def test_health():
    c, _ = _client()
    resp = c.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


def test_whoami_anonymous():
    c, _ = _client()
    assert c.get("/api/v1/whoami").get_json() == {"user": "anonymous"}


def test_whoami_header():
    c, _ = _client()
    assert c.get("/api/v1/whoami", headers=ALICE).get_json() == {"user": "alice"}


def test_whoami_google_header_prefix():
    c, _ = _client(auth_user_header="X-Goog-Authenticated-User-Email")
    resp = c.get("/api/v1/whoami",
                 headers={"X-Goog-Authenticated-User-Email": "accounts.google.com:bob@example.com"})
    assert resp.get_json() == {"user": "bob@example.com"}


def test_create_client():
    c, server = _client()
    resp = _create(c, 1, name="phone", allowedIps=["192.168.0.0/24"], psk=key(9).hex())
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["ip"] == "10.8.0.2"
    assert data["publicKey"] == key(1).hex()
    assert data["name"] == "phone"
    assert data["allowedIPs"] == ["192.168.0.0/24"]
    assert data["psk"] == key(9).hex()
    assert data["server"]["endpoint"] == "203.0.113.7:51820"
    assert data["server"]["publicKey"] == server.public_key.hex()
    assert set(server.device.peers) == {key(1)}


def test_create_defaults():
    c, _ = _client(wg_dns="9.9.9.9", wg_keepalive=25)
    data = _create(c, 1).get_json()
    assert data["name"] == "Unnamed Client"
    assert data["mtu"] == 1420
    assert data["dns"] == "9.9.9.9"
    assert data["keepalive"] == 25
    assert "psk" not in data


def test_list_and_get():
    c, _ = _client()
    _create(c, 1)
    _create(c, 2)
    _create(c, 3, user="bob")
    listed = c.get("/api/v1/users/alice/clients", headers=ALICE).get_json()
    assert sorted(d["publicKey"] for d in listed) == sorted([key(1).hex(), key(2).hex()])
    resp = c.get(f"/api/v1/users/alice/clients/{key(2).hex()}", headers=ALICE)
    assert resp.status_code == 200
    assert resp.get_json()["ip"] == "10.8.0.3"


def test_list_empty_user():
    c, server = _client()
    assert c.get("/api/v1/users/alice/clients", headers=ALICE).get_json() == []
    assert "alice" not in server.config.users


def test_edit_client():
    c, server = _client()
    _create(c, 1, name="old")
    resp = c.put(f"/api/v1/users/alice/clients/{key(1).hex()}", headers=ALICE,
                 json={"name": "new", "notes": "work", "allowedIps": ["10.20.0.0/16"], "mtu": 1380})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["name"] == "new"
    assert data["notes"] == "work"
    assert data["mtu"] == 1380
    assert data["ip"] == "10.8.0.2"
    assert [str(n) for n in server.device.peers[key(1)].allowed_ips] == ["10.8.0.2/32", "10.20.0.0/16"]


def test_edit_key_mismatch():
    c, _ = _client()
    _create(c, 1)
    resp = c.put(f"/api/v1/users/alice/clients/{key(1).hex()}", headers=ALICE,
                 json={"publicKey": key(2).hex()})
    assert resp.status_code == 400


def test_delete_client():
    c, server = _client()
    _create(c, 1)
    resp = c.delete(f"/api/v1/users/alice/clients/{key(1).hex()}", headers=ALICE)
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True}
    assert server.device.peers == {}
    resp = c.delete(f"/api/v1/users/alice/clients/{key(1).hex()}", headers=ALICE)
    assert resp.status_code == 404


def test_other_user_is_unauthorized():
    c, _ = _client()
    _create(c, 1)
    assert c.get("/api/v1/users/alice/clients", headers={"X-Forwarded-User": "mallory"}).status_code == 401
    assert c.get("/api/v1/users/alice/clients").status_code == 401
    resp = c.delete(f"/api/v1/users/alice/clients/{key(1).hex()}", headers={"X-Forwarded-User": "mallory"})
    assert resp.status_code == 401


def test_unknown_client_404():
    c, _ = _client()
    assert c.get(f"/api/v1/users/alice/clients/{key(5).hex()}", headers=ALICE).status_code == 404
    assert c.get("/api/v1/users/alice/clients/not-a-key", headers=ALICE).status_code == 404


def test_bad_payloads_400():
    c, _ = _client()
    assert _create(c, 1, publicKey="zz").status_code == 400
    assert _create(c, 1, publicKey="00" * 32).status_code == 400
    assert _create(c, 1, allowedIps="10.0.0.0/8").status_code == 400
    assert _create(c, 1, allowedIps=["nope"]).status_code == 400
    assert _create(c, 1, keepalive=-1).status_code == 400
    resp = c.post("/api/v1/users/alice/clients", data="junk", headers=ALICE)
    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False


def test_duplicate_key_400():
    c, _ = _client()
    assert _create(c, 1).status_code == 201
    assert _create(c, 1, user="bob").status_code == 400


def test_limit_409():
    c, _ = _client(config=make_config(max_clients=1))
    assert _create(c, 1).status_code == 201
    resp = _create(c, 2)
    assert resp.status_code == 409
    assert resp.get_json()["ok"] is False


def test_exhausted_409():
    c, _ = _client(config=make_config(network="10.8.0.0/30"))
    assert _create(c, 1).status_code == 201
    assert _create(c, 2).status_code == 201
    assert _create(c, 3).status_code == 409


def test_build_server_fresh_data_dir():
    with tempfile.TemporaryDirectory() as tmp:
        options = _options(data_dir=tmp, server_ip="10.50.0.1/24", wg_endpoint="vpn.example.com:51900")
        store = ConfigStore(f"{tmp}/config.json")
        server = build_server(options, device=FakeDevice(), store=store)
        assert server.config.private_key == key(0xAA)
        assert str(server.config.link.network) == "10.50.0.0/24"
        assert str(server.config.endpoint) == "vpn.example.com:51900"
        assert server.fail_fast is True


def test_split_listen():
    assert _split_listen("0.0.0.0:8080") == ("0.0.0.0", 8080)
    assert _split_listen(":9000") == ("0.0.0.0", 9000)
