import base64
import io
import json

from PIL import Image

from qrvault.config import AUDIT_LOG_PATH
from qrvault.qr import RenderOptions, render_qr

from .conftest import bearer, update_user


def create(client, headers, **fields):
    body = {"type": "text", "title": "Note", "content": "hello"}
    body.update(fields)
    resp = client.post("/api/qrcodes", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_create_normalises_content_and_renders_image(client, alice):
    qr = create(client, alice, type="url", title="  Docs  ", content="example.com/docs", tags=["work", " "])
    assert qr["content"] == "https://example.com/docs"
    assert qr["title"] == "Docs"
    assert qr["tags"] == ["work"]
    assert qr["category"] == "general"
    assert qr["qrCodeUrl"].startswith("data:image/png;base64,")
    assert qr["metadata"]["scanCount"] == 0

    me = client.get("/api/auth/me", headers=alice).json()["data"]
    assert me["qrCodesCreated"] == 1


def test_create_keeps_supplied_image(client, alice):
    qr = create(client, alice, qr_code_url="https://cdn.example.com/qr.png")
    assert qr["qrCodeUrl"] == "https://cdn.example.com/qr.png"


def test_create_validation(client, alice):
    resp = client.post("/api/qrcodes", json={"type": "vcard", "title": "x", "content": "x"}, headers=alice)
    assert resp.status_code == 422

    resp = client.post("/api/qrcodes", json={"type": "text", "title": "   ", "content": "x"}, headers=alice)
    assert resp.status_code == 422

    resp = client.post("/api/qrcodes", json={"type": "url", "title": "Bad", "content": "ftp://x.org"}, headers=alice)
    assert resp.status_code == 400
    assert resp.json()["message"] == "URL must use http or https"

    resp = client.post(
        "/api/qrcodes",
        json={"type": "wifi", "title": "Home", "content": "WIFI:S:Home;T:WPA;P:short;;"},
        headers=alice,
    )
    assert resp.status_code == 400


def test_requires_authentication(client):
    assert client.get("/api/qrcodes").status_code == 401
    assert client.post("/api/qrcodes", json={"type": "text", "title": "x", "content": "x"}).status_code == 401


def test_list_filters_and_pagination(client, alice):
    create(client, alice, title="First note", content="alpha")
    create(client, alice, type="url", title="Site", content="https://example.com")
    create(client, alice, title="Second", content="contains ALPHA too", is_favorite=True)

    resp = client.get("/api/qrcodes", headers=alice).json()
    assert [q["title"] for q in resp["data"]] == ["Second", "Site", "First note"]
    assert resp["pagination"] == {"current": 1, "pages": 1, "total": 3}

    resp = client.get("/api/qrcodes?search=alpha", headers=alice).json()
    assert {q["title"] for q in resp["data"]} == {"First note", "Second"}

    resp = client.get("/api/qrcodes?type=url", headers=alice).json()
    assert [q["title"] for q in resp["data"]] == ["Site"]

    resp = client.get("/api/qrcodes?favorite=true", headers=alice).json()
    assert [q["title"] for q in resp["data"]] == ["Second"]

    resp = client.get("/api/qrcodes?page=2&limit=2", headers=alice).json()
    assert [q["title"] for q in resp["data"]] == ["First note"]
    assert resp["pagination"] == {"current": 2, "pages": 2, "total": 3}


def test_records_are_owner_scoped(client, alice, register):
    qr = create(client, alice)
    bob = bearer(register(email="bob@example.com", name="Bob")["tokens"])

    assert client.get(f"/api/qrcodes/{qr['id']}", headers=bob).status_code == 404
    assert client.delete(f"/api/qrcodes/{qr['id']}", headers=bob).status_code == 404
    assert client.get("/api/qrcodes", headers=bob).json()["pagination"]["total"] == 0
    assert client.get(f"/api/qrcodes/{qr['id']}", headers=alice).status_code == 200


def test_update(client, alice):
    qr = create(client, alice, type="url", content="https://example.com")
    resp = client.put(
        f"/api/qrcodes/{qr['id']}",
        json={"title": "Renamed", "content": "example.org", "tags": ["a", "b"], "category": "links"},
        headers=alice,
    )
    assert resp.status_code == 200
    updated = resp.json()["data"]
    assert updated["title"] == "Renamed"
    assert updated["content"] == "https://example.org"
    assert updated["qrCodeUrl"] != qr["qrCodeUrl"]
    assert updated["tags"] == ["a", "b"]
    assert updated["category"] == "links"

    resp = client.put(f"/api/qrcodes/{qr['id']}", json={"content": "not a url"}, headers=alice)
    assert resp.status_code == 400
    assert client.put("/api/qrcodes/9999", json={"title": "x"}, headers=alice).status_code == 404


def test_toggle_favorite(client, alice):
    qr = create(client, alice)
    resp = client.patch(f"/api/qrcodes/{qr['id']}/favorite", headers=alice).json()
    assert resp["data"]["isFavorite"] is True
    assert resp["message"] == "QR code added to favorites"

    resp = client.patch(f"/api/qrcodes/{qr['id']}/favorite", headers=alice).json()
    assert resp["data"]["isFavorite"] is False
    assert resp["message"] == "QR code removed from favorites"


def test_delete_and_delete_all(client, alice):
    first = create(client, alice)
    create(client, alice)
    create(client, alice)

    resp = client.delete(f"/api/qrcodes/{first['id']}", headers=alice)
    assert resp.status_code == 200
    assert client.get(f"/api/qrcodes/{first['id']}", headers=alice).status_code == 404

    resp = client.delete("/api/qrcodes", headers=alice)
    assert resp.json()["message"] == "2 QR codes deleted successfully"
    assert client.get("/api/qrcodes", headers=alice).json()["pagination"]["total"] == 0


def test_quota_counts_created_codes(client, alice):
    update_user("alice@example.com", max_qr_codes=2)
    first = create(client, alice)
    create(client, alice)

    resp = client.post("/api/qrcodes", json={"type": "text", "title": "x", "content": "x"}, headers=alice)
    assert resp.status_code == 403
    assert resp.json()["code"] == "QR_LIMIT_REACHED"

    # Deleting does not hand the slot back
    client.delete(f"/api/qrcodes/{first['id']}", headers=alice)
    resp = client.post("/api/qrcodes", json={"type": "text", "title": "x", "content": "x"}, headers=alice)
    assert resp.status_code == 403


def test_stats_overview(client, alice):
    create(client, alice)
    create(client, alice, type="url", content="https://example.com", is_favorite=True)
    create(client, alice, type="url", content="https://example.org")

    stats = client.get("/api/qrcodes/stats/overview", headers=alice).json()["data"]
    assert stats["total"] == 3
    assert stats["favorites"] == 1
    assert stats["byType"]["url"] == 2
    assert stats["byType"]["text"] == 1
    assert stats["byType"]["wifi"] == 0


def test_record_scan(client, alice):
    qr = create(client, alice)
    resp = client.post(f"/api/qrcodes/{qr['id']}/scans", json={"device_info": "Pixel 8"}, headers=alice)
    assert resp.json()["data"]["metadata"]["deviceInfo"] == "Pixel 8"
    resp = client.post(f"/api/qrcodes/{qr['id']}/scans", headers={**alice, "User-Agent": "curl/8"})
    meta = resp.json()["data"]["metadata"]
    assert meta["scanCount"] == 2
    assert meta["lastScanned"] is not None
    assert meta["deviceInfo"] == "curl/8"

    stats = client.get("/api/qrcodes/stats/overview", headers=alice).json()["data"]
    assert stats["totalScans"] == 2


def test_image_download(client, alice):
    qr = create(client, alice)
    resp = client.get(f"/api/qrcodes/{qr['id']}/image?size=200", headers=alice)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert Image.open(io.BytesIO(resp.content)).size == (200, 200)

    resp = client.get(f"/api/qrcodes/{qr['id']}/image?format=svg", headers=alice)
    assert resp.headers["content-type"].startswith("image/svg+xml")
    assert b"<svg" in resp.content

    assert client.get(f"/api/qrcodes/{qr['id']}/image?format=gif", headers=alice).status_code == 400
    assert client.get(f"/api/qrcodes/{qr['id']}/image?size=5", headers=alice).status_code == 400


def test_share_link(client, alice):
    qr = create(client, alice, title="Shared")
    resp = client.post(f"/api/qrcodes/{qr['id']}/share", headers=alice)
    assert resp.status_code == 200
    url = resp.json()["data"]["url"]

    shared = client.get(url)
    assert shared.status_code == 200
    assert shared.json()["data"]["title"] == "Shared"
    assert "userId" not in shared.json()["data"]

    assert client.get(url + "x").status_code == 404

    client.delete(f"/api/qrcodes/{qr['id']}", headers=alice)
    assert client.get(url).status_code == 404


def test_generate_anonymous_and_with_preferences(client, alice):
    resp = client.post("/api/qrcodes/generate", json={"type": "phone", "content": "+1 555 123 4567"})
    assert resp.status_code == 200
    assert resp.json()["data"]["content"] == "tel:+15551234567"

    client.put("/api/auth/profile", json={"preferences": {"defaultQRSize": 150}}, headers=alice)
    resp = client.post("/api/qrcodes/generate", json={"content": "hello", "options": None}, headers=alice)
    uri = resp.json()["data"]["qr_code_url"]
    png = base64.b64decode(uri.split(",", 1)[1])
    assert Image.open(io.BytesIO(png)).size == (150, 150)

    resp = client.post("/api/qrcodes/generate", json={"content": "hello", "options": {"size": 5}})
    assert resp.status_code == 422


def test_wifi_generator(client):
    resp = client.post("/api/qrcodes/wifi", json={"ssid": "Home;Net", "password": "password1"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["content"] == "WIFI:T:WPA;S:Home\\;Net;P:password1;H:false;;"
    assert data["qr_code_url"].startswith("data:image/png;base64,")

    resp = client.post("/api/qrcodes/wifi", json={"ssid": "Home", "password": "short"})
    assert resp.status_code == 400


def _upload(client, data, headers=None, **form):
    return client.post(
        "/api/qrcodes/scan",
        files={"file": ("code.png", data, "image/png")},
        data=form,
        headers=headers,
    )


def test_scan_upload(client):
    png = render_qr("https://example.com/scan", RenderOptions(size=400, margin=4))
    resp = _upload(client, png)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["content"] == "https://example.com/scan"
    assert data["type"] == "url"
    assert data["qrCode"] is None


def test_scan_and_save(client, alice):
    png = render_qr("WIFI:T:WPA;S:Cafe;P:password1;H:false;;", RenderOptions(size=400, margin=4))
    resp = _upload(client, png, headers=alice, save="true", title="Cafe wifi")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["wifi"]["ssid"] == "Cafe"
    saved = data["qrCode"]
    assert saved["title"] == "Cafe wifi"
    assert saved["isScanned"] is True
    assert saved["scannedFrom"] == "image"
    assert saved["type"] == "wifi"

    assert _upload(client, png, save="true").status_code == 401


def test_scan_rejects_bad_images(client):
    resp = _upload(client, b"not an image")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Failed to load image"

    buffer = io.BytesIO()
    Image.new("RGB", (200, 200), "white").save(buffer, format="PNG")
    resp = _upload(client, buffer.getvalue())
    assert resp.status_code == 400
    assert resp.json()["message"] == "No QR code found in image"


def test_audit_trail_omits_content(client, alice):
    qr = create(client, alice, content="secret-payload")
    text = AUDIT_LOG_PATH.read_text()
    entries = [json.loads(line) for line in text.splitlines()]
    created = [e for e in entries if e["action"] == "qr_created"][-1]
    assert created["user"] == "alice@example.com"
    assert created["details"] == {"id": qr["id"], "type": "text"}
    assert "secret-payload" not in text


def test_search_matches_wildcards_literally(client, alice):
    create(client, alice, title="100% juice")
    create(client, alice, title="1000 things")
    create(client, alice, title="snake_case")
    create(client, alice, title="snakeXcase")

    resp = client.get("/api/qrcodes", params={"search": "100%"}, headers=alice).json()
    assert [q["title"] for q in resp["data"]] == ["100% juice"]

    resp = client.get("/api/qrcodes", params={"search": "snake_"}, headers=alice).json()
    assert [q["title"] for q in resp["data"]] == ["snake_case"]


def test_generate_content_over_capacity(client, alice):
    # Within the byte limit but too dense for the default error correction level
    resp = client.post("/api/qrcodes/generate", json={"content": "x" * 2500})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Content is too long for a QR code at error correction level M"

    resp = client.post(
        "/api/qrcodes/generate",
        json={"content": "x" * 2500, "options": {"error_correction": "L"}},
    )
    assert resp.status_code == 200

    resp = client.post("/api/qrcodes", json={"type": "text", "title": "Long", "content": "x" * 2500}, headers=alice)
    assert resp.status_code == 400


def test_generate_rejects_invalid_token(client):
    resp = client.post("/api/qrcodes/generate", json={"content": "hello"}, headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "INVALID_TOKEN"

    assert client.post("/api/qrcodes/generate", json={"content": "hello"}).status_code == 200
