import io
import zipfile

import pytest


@pytest.fixture
def server(auth_client):
    resp = auth_client.post("/api/servers", json={"name": "survival"})
    assert resp.status_code == 200
    return "survival"


def api(name, suffix=""):
    return f"/api/servers/{name}{suffix}"


# -- Instances -----------------------------------------------------------------

def test_create_list_delete(auth_client, server):
    listed = auth_client.get("/api/servers").json()
    assert [s["name"] for s in listed] == ["survival"]
    assert listed[0]["last_modified"]

    assert auth_client.delete(api(server)).status_code == 200
    assert auth_client.get("/api/servers").json() == []


def test_create_conflict_and_invalid(auth_client, server):
    resp = auth_client.post("/api/servers", json={"name": "survival"})
    assert resp.status_code == 409
    assert "already exists" in resp.json()["error"]

    assert auth_client.post("/api/servers", json={"name": "../x"}).status_code == 400
    assert auth_client.post("/api/servers", json={}).status_code == 400


def test_delete_unknown_is_404(auth_client):
    assert auth_client.delete(api("ghost")).status_code == 404


def test_delete_running_server_is_refused(auth_client, server):
    auth_client.post(api(server, "/start"))
    resp = auth_client.delete(api(server))
    assert resp.status_code == 409
    assert auth_client.get("/api/servers").json()[0]["name"] == server


# -- Files ---------------------------------------------------------------------

def test_list_files(auth_client, server):
    body = auth_client.get(api(server, "/files")).json()
    assert body["path"] == ""
    names = {f["name"]: f["kind"] for f in body["files"]}
    assert names["plugins"] == "directory"
    assert names["server.properties"] == "file"


def test_list_files_of_unknown_server(auth_client):
    resp = auth_client.get(api("ghost", "/files"))
    assert resp.status_code == 404
    assert resp.json() == {"error": "Server not found"}


def test_traversal_is_400(auth_client, server):
    resp = auth_client.get(api(server, "/files"), params={"path": "../../"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid path"}
    resp = auth_client.get(api(server, "/files/passwd"), params={"path": "../../../etc"})
    assert resp.status_code == 400


def test_write_read_delete_file(auth_client, server):
    url = api(server, "/files/motd.txt")
    assert auth_client.post(url, params={"path": "plugins"},
                            json={"content": "hello"}).status_code == 200
    assert auth_client.get(url, params={"path": "plugins"}).json() == {"content": "hello"}
    assert auth_client.delete(url, params={"path": "plugins"}).status_code == 200
    assert auth_client.get(url, params={"path": "plugins"}).status_code == 404


def test_read_directory_is_400(auth_client, server):
    assert auth_client.get(api(server, "/files/plugins")).status_code == 400


def test_make_directory(auth_client, server):
    resp = auth_client.post(api(server, "/directories"),
                            json={"name": "Essentials", "path": "plugins"})
    assert resp.status_code == 200
    names = [f["name"] for f in
             auth_client.get(api(server, "/files"), params={"path": "plugins"}).json()["files"]]
    assert names == ["Essentials"]

    bad = auth_client.post(api(server, "/directories"), json={"name": "../up", "path": ""})
    assert bad.status_code == 400


def test_upload_and_download(auth_client, server):
    resp = auth_client.post(
        api(server, "/upload"),
        files=[("file", ("a.jar", b"aaa")), ("file", ("b.jar", b"bbb"))],
        data={"path": "plugins"},
    )
    assert resp.status_code == 200
    assert resp.json()["count"] == 2

    dl = auth_client.get(api(server, "/download/a.jar"), params={"path": "plugins"})
    assert dl.status_code == 200
    assert dl.content == b"aaa"
    assert "a.jar" in dl.headers["content-disposition"]


def test_upload_without_files_is_400(auth_client, server):
    resp = auth_client.post(api(server, "/upload"), data={"path": ""})
    assert resp.status_code == 400


def test_download_directory_is_404(auth_client, server):
    assert auth_client.get(api(server, "/download/plugins")).status_code == 404


def test_extract(auth_client, server):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("Essentials/config.yml", "x: 1\n")
    auth_client.post(api(server, "/upload"), files=[("file", ("pack.zip", buf.getvalue()))],
                     data={"path": ""})

    resp = auth_client.post(api(server, "/extract/pack.zip"),
                            json={"path": "", "targetPath": "plugins"})
    assert resp.status_code == 200
    assert resp.json()["count"] == 1
    content = auth_client.get(api(server, "/files/config.yml"),
                              params={"path": "plugins/Essentials"}).json()["content"]
    assert content == "x: 1\n"

    assert auth_client.post(api(server, "/extract/server.properties"),
                            json={"path": ""}).status_code == 400


def test_copy_move_rename(auth_client, server):
    body = {"filename": "server.properties", "currentPath": "", "destinationPath": "world"}
    assert auth_client.post(api(server, "/copy"), json=body).status_code == 200
    assert auth_client.post(api(server, "/copy"), json=body).status_code == 409

    body = {"filename": "bukkit.yml", "currentPath": "", "destinationPath": "plugins"}
    assert auth_client.post(api(server, "/move"), json=body).status_code == 200

    resp = auth_client.post(api(server, "/rename"), json={
        "oldName": "bukkit.yml", "newName": "bukkit.yml.bak", "currentPath": "plugins",
    })
    assert resp.status_code == 200
    names = [f["name"] for f in
             auth_client.get(api(server, "/files"), params={"path": "plugins"}).json()["files"]]
    assert names == ["bukkit.yml.bak"]


def test_move_multiple(auth_client, server):
    resp = auth_client.post(api(server, "/move-multiple"), json={
        "filenames": ["config.yml", "missing.txt"],
        "currentPath": "",
        "destinationPath": "world",
    })
    assert resp.status_code == 200
    statuses = {r["filename"]: r["status"] for r in resp.json()["results"]}
    assert statuses == {"config.yml": "success", "missing.txt": "error"}


# -- Archives ------------------------------------------------------------------

def test_backup(auth_client, server, project_dir):
    resp = auth_client.post(api(server, "/backup"))
    assert resp.status_code == 200
    assert (project_dir / "backups" / resp.json()["filename"]).is_file()


def test_download_zip_removes_temp_file(auth_client, server):
    resp = auth_client.get(api(server, "/download-zip"))
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(resp.content)) as zf:
        assert "server.properties" in zf.namelist()


# -- Process control -----------------------------------------------------------

def test_lifecycle(auth_client, server, fake_backend):
    assert auth_client.get(api(server, "/status")).json()["status"] == "stopped"

    assert auth_client.post(api(server, "/start")).json()["message"] == "Server started successfully"
    again = auth_client.post(api(server, "/start")).json()
    assert again["message"] == "Server is already running"

    status = auth_client.get(api(server, "/status")).json()
    assert status["running"] is True
    assert status["uptime"] >= 0

    assert auth_client.post(api(server, "/restart")).status_code == 200
    assert auth_client.post(api(server, "/stop")).status_code == 200
    assert fake_backend.calls.count(("start", server)) == 1


def test_stop_never_started_is_500(auth_client, server):
    resp = auth_client.post(api(server, "/stop"))
    assert resp.status_code == 500
    assert "not found" in resp.json()["error"]


def test_console_and_command(auth_client, server, fake_backend):
    assert auth_client.get(api(server, "/console")).json() == {"logs": []}

    resp = auth_client.post(api(server, "/command"), json={"command": "list"})
    assert resp.status_code == 404

    auth_client.post(api(server, "/start"))
    assert auth_client.post(api(server, "/command"), json={"command": " "}).status_code == 400
    assert auth_client.post(api(server, "/command"), json={"command": "list"}).status_code == 200
    assert fake_backend.sent == [(server, "list")]


def test_console_line_limit_is_validated(auth_client, server):
    assert auth_client.get(api(server, "/console"), params={"lines": 0}).status_code == 400
