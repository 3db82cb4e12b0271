import json

from fastapi.testclient import TestClient
from relnorm.main import app

client = TestClient(app)


def _tables(data):
    return {t["name"]: t for t in data["tables"]}


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}

def test_normalize_default_plan(billboard_csv):
    files = {"file": ("billboard.csv", billboard_csv, "text/csv")}
    r = client.post("/normalize", files=files)
    assert r.status_code == 200

    data = r.json()
    tables = _tables(data)
    assert set(tables) == {"songs", "ranks"}

    songs = tables["songs"]
    assert songs["primary_key"] == ["id"]
    assert songs["columns"] == ["id", "artist", "track", "time", "date.entered", "year"]
    assert songs["rows"] == 4
    assert songs["records"][0] == {
        "id": 1,
        "artist": "2 Pac",
        "track": "Baby Dont Cry",
        "time": "4:22",
        "date.entered": "2000-02-26",
        "year": 2000,
    }

    ranks = tables["ranks"]
    assert ranks["primary_key"] == ["id", "week"]
    assert ranks["columns"] == ["id", "week", "rank"]
    # 4 songs x 3 weeks, one missing cell
    assert ranks["rows"] == 11

    summary = data["report"]["summary"]
    assert summary["missing_dropped"] == 1
    assert summary["entities"] == 4
    assert summary["observations"] == 11
    assert [s["stage"] for s in data["report"]["stages"]] == ["UNF", "1NF", "1NF", "1NF", "2NF", "3NF", "4NF"]

def test_normalize_latin1_upload():
    # Include a Latin-1 character to force non-ASCII handling
    raw = "artist,track,wk1\nBeyoncé,Halo,5\nAaliyah,Try Again,1\n".encode("latin-1")
    plan = {"index_columns": ["artist", "track"], "dependencies": []}

    files = {"file": ("chart.csv", raw, "text/csv")}
    r = client.post("/normalize", files=files, data={"plan": json.dumps(plan)})
    assert r.status_code == 200

    songs = _tables(r.json())["songs"]
    assert songs["records"][0]["artist"] == "Beyoncé"

def test_rejects_non_csv(billboard_csv):
    files = {"file": ("billboard.txt", billboard_csv, "text/plain")}
    r = client.post("/normalize", files=files)
    assert r.status_code == 422

def test_rejects_missing_columns():
    raw = b"artist,track,wk1\nA,T,5\n"
    files = {"file": ("chart.csv", raw, "text/csv")}
    r = client.post("/normalize", files=files)
    assert r.status_code == 422
    assert "year" in r.json()["detail"]

def test_rejects_invalid_plan(billboard_csv):
    files = {"file": ("billboard.csv", billboard_csv, "text/csv")}
    r = client.post("/normalize", files=files, data={"plan": '{"natural_key": ["label"]}'})
    assert r.status_code == 422
    assert r.json()["detail"].startswith("Invalid plan")

def test_rejects_broken_dependency():
    # same song, different labels in different weeks
    raw = b"artist,track,label,wk1,wk2\nA,T,X,5,\nA,T,Y,,3\n"
    plan = {
        "index_columns": ["artist", "track", "label"],
        "dependencies": [{"stage": "2NF", "determinant": ["id"], "dependents": ["label"]}],
    }
    files = {"file": ("chart.csv", raw, "text/csv")}
    r = client.post("/normalize", files=files, data={"plan": json.dumps(plan)})
    assert r.status_code == 422
    assert "does not determine" in r.json()["detail"]

def test_rejects_unparseable_pattern(billboard_csv):
    files = {"file": ("billboard.csv", billboard_csv, "text/csv")}
    r = client.post("/normalize", files=files, data={"plan": '{"value_column_pattern": "wk["}'})
    assert r.status_code == 422
    assert r.json()["detail"].startswith("Invalid plan")

def test_rejects_index_column_named_like_key():
    raw = b"id,artist,track,wk1\n7,A,T,5\n"
    plan = {"index_columns": ["id", "artist", "track"], "dependencies": []}
    files = {"file": ("chart.csv", raw, "text/csv")}
    r = client.post("/normalize", files=files, data={"plan": json.dumps(plan)})
    assert r.status_code == 422
    assert r.json()["detail"].startswith("Invalid plan")

def test_rejects_undeclared_column_named_like_key():
    raw = b"id,artist,track,wk1\n7,A,T,5\n"
    plan = {"index_columns": ["artist", "track"], "dependencies": []}
    files = {"file": ("chart.csv", raw, "text/csv")}
    r = client.post("/normalize", files=files, data={"plan": json.dumps(plan)})
    assert r.status_code == 422
    assert "id" in r.json()["detail"]

def test_keeps_full_float_precision():
    raw = b"artist,track,wk1\nA,T,0.123456789012345\n"
    plan = {"index_columns": ["artist", "track"], "dependencies": []}
    files = {"file": ("chart.csv", raw, "text/csv")}
    r = client.post("/normalize", files=files, data={"plan": json.dumps(plan)})
    assert r.status_code == 200

    ranks = _tables(r.json())["ranks"]
    assert ranks["records"] == [{"id": 1, "week": 1, "rank": 0.123456789012345}]
