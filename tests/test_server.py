import pytest
import yaml
from fastapi.testclient import TestClient

from mihomo_merge.merger import DEFAULT_SELECTOR_NAME
from mihomo_merge.server import app, get_session
from mihomo_merge.storage import HOME_ENV

SUB = "proxies:\n  - {name: B, type: ss, server: b.example, port: 8388, cipher: aes-256-gcm, password: x}\n"


class FakeResponse:
    status_code = 200
    ok = True
    headers = {'ETag': '"v1"'}

    def __init__(self, body):
        self.content = body


class FakeSession:
    def __init__(self, body):
        self.body = body

    def get(self, url, headers=None, timeout=None):
        return FakeResponse(self.body)


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv(HOME_ENV, str(tmp_path / 'home'))
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sub_file(tmp_path):
    path = tmp_path / 'sub.yaml'
    path.write_text(SUB, encoding='utf-8')
    return path


def add_local(client, path, name='local'):
    resp = client.post("/api/subscriptions", json={"name": name, "path": str(path)})
    assert resp.status_code == 200
    return resp.json()["subscription"]["id"]


def test_subscription_crud(client, sub_file):
    assert client.get("/api/subscriptions").json() == {"subscriptions": []}
    sub_id = add_local(client, sub_file)

    subs = client.get("/api/subscriptions").json()["subscriptions"]
    assert [s["id"] for s in subs] == [sub_id]
    assert subs[0]["enabled"] is True

    assert client.put(f"/api/subscriptions/{sub_id}/toggle").json()["enabled"] is False
    assert client.put(f"/api/subscriptions/{sub_id}/toggle").json()["enabled"] is True

    assert client.delete(f"/api/subscriptions/{sub_id}").status_code == 200
    assert client.get("/api/subscriptions").json() == {"subscriptions": []}
    assert client.delete(f"/api/subscriptions/{sub_id}").status_code == 404


def test_add_subscription_validation(client, sub_file):
    assert client.post("/api/subscriptions", json={"name": "x"}).status_code == 400
    assert client.post(
        "/api/subscriptions", json={"name": "x", "url": "https://a.example", "path": "b.yaml"}
    ).status_code == 400
    add_local(client, sub_file)
    assert client.post("/api/subscriptions", json={"name": "again", "path": str(sub_file)}).status_code == 400


def test_toggle_unknown(client):
    assert client.put("/api/subscriptions/nope/toggle").status_code == 404


def test_refresh_remote(client):
    app.dependency_overrides[get_session] = lambda: FakeSession(SUB.encode())
    resp = client.post("/api/subscriptions", json={"name": "remote", "url": "https://sub.example/x"})
    sub_id = resp.json()["subscription"]["id"]

    resp = client.post(f"/api/subscriptions/{sub_id}/refresh")
    assert resp.status_code == 200
    body = resp.json()
    assert body["node_count"] == 1
    assert body["subscription"]["etag"] == '"v1"'


def test_refresh_failure(client, tmp_path):
    sub_id = add_local(client, tmp_path / 'missing.yaml')
    resp = client.post(f"/api/subscriptions/{sub_id}/refresh")
    assert resp.status_code == 400
    assert "Failed to refresh" in resp.json()["detail"]


def test_template(client):
    content = client.get("/api/template").json()["content"]
    assert DEFAULT_SELECTOR_NAME in content

    assert client.put("/api/template", json={"content": "- nope\n"}).status_code == 400
    assert client.put("/api/template", json={"content": "updated: 2024-02-30\n"}).status_code == 400
    assert client.put("/api/template", json={"content": "mode: direct\n"}).status_code == 200
    assert client.get("/api/template").json()["content"] == "mode: direct\n"


def test_base_config(client):
    assert client.get("/api/base-config").json() == {"content": ""}
    assert client.put("/api/base-config", json={"content": "port: [\n"}).status_code == 400

    assert client.put("/api/base-config", json={"content": "mode: global\n"}).json()["removed"] is False
    assert client.get("/api/base-config").json()["content"] == "mode: global\n"

    assert client.put("/api/base-config", json={"content": "  \n"}).json()["removed"] is True
    assert client.get("/api/base-config").json() == {"content": ""}


def test_custom_rules(client):
    resp = client.post("/api/custom-rules", json={"domain": "corp.example", "via": "direct"})
    assert resp.json()["added"] is True
    assert client.post("/api/custom-rules", json={"domain": "corp.example", "via": "DIRECT"}).json()["added"] is False
    assert client.post("/api/custom-rules", json={"domain": " ", "via": "Proxy"}).status_code == 400

    assert client.get("/api/custom-rules").json()["lines"] == ["DOMAIN-SUFFIX,corp.example,DIRECT"]

    resp = client.request("DELETE", "/api/custom-rules", json={"domain": "corp.example"})
    assert resp.json()["removed"] == 1
    assert client.get("/api/custom-rules").json()["rules"] == []


def test_generate_and_serve(client, sub_file, tmp_path):
    assert client.get("/sub").status_code == 404
    assert client.get("/api/names").status_code == 404

    add_local(client, sub_file)
    add_local(client, tmp_path / 'missing.yaml', name='broken')
    client.post("/api/custom-rules", json={"domain": "corp.example", "via": "direct"})

    resp = client.post("/api/generate", json={"dev_rules": True})
    assert resp.status_code == 200
    body = resp.json()
    assert body["proxies"] == 1
    assert len(body["loaded"]) == 1
    assert len(body["skipped"]) == 1

    resp = client.get("/sub")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/yaml")
    doc = yaml.safe_load(resp.text)
    assert doc["rules"][0] == "DOMAIN-SUFFIX,corp.example,DIRECT"
    assert doc["rules"][1] == "DOMAIN-SUFFIX,github.com,Proxy"

    names = client.get("/api/names").json()
    assert names["proxies"] == ["B"]
    assert DEFAULT_SELECTOR_NAME in names["proxy_groups"]


def test_generate_with_base_config(client, sub_file):
    add_local(client, sub_file)
    client.put("/api/base-config", json={"content": "proxy-groups:\n  - {name: Only, type: select}\n"})
    assert client.post("/api/generate", json={"dev_rules": False}).status_code == 200
    doc = yaml.safe_load(client.get("/sub").text)
    assert doc["proxy-groups"] == [{"name": "Only", "type": "select", "proxies": ["B"]}]


def test_generate_without_body(client):
    resp = client.post("/api/generate")
    assert resp.status_code == 200
    assert resp.json()["proxies"] == 0


def test_generate_broken_template(client, tmp_path):
    client.get("/api/template")
    (tmp_path / 'home' / 'templates' / 'default.yaml').write_text("- broken\n", encoding='utf-8')
    resp = client.post("/api/generate", json={})
    assert resp.status_code == 400
    assert "failed to load template" in resp.json()["detail"]
