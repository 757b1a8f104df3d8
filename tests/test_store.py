"""Test the in-memory document store, prompt cache, parsing helpers and uploads."""

import base64

import pytest

from storylab.cache import PromptCache
from storylab.errors import ParseError, ValidationError
from storylab.parsing import extract_json, parse_or_fallback
from storylab.store import InMemoryDocumentStore
from storylab.uploads import LocalBlobUploader, decode_data_url, read_local_media


def test_set_get_returns_copies():
    db = InMemoryDocumentStore()
    ref = db.collection("projects").doc("p1")
    ref.set({"name": "x", "tags": ["a"]})
    doc = ref.get()
    doc["tags"].append("b")
    assert ref.get() == {"name": "x", "tags": ["a"]}
    assert ref.exists
    assert db.collection("projects").doc("p2").get() is None


def test_set_merge_is_deep():
    db = InMemoryDocumentStore()
    ref = db.collection("projects").doc("p1")
    ref.set({"a": {"x": 1, "y": 2}, "b": 1})
    ref.set({"a": {"y": 3}}, merge=True)
    assert ref.get() == {"a": {"x": 1, "y": 3}, "b": 1}


def test_update_dotted_keys():
    db = InMemoryDocumentStore()
    ref = db.collection("prompt_templates").doc("t1")
    ref.set({"prompts": {"text": {"userPromptTemplate": "x"}}})
    ref.update({"prompts.text.modelConfig": {"adaptorId": "a", "modelId": "m"}, "isActive": False})
    assert ref.get() == {
        "prompts": {"text": {"userPromptTemplate": "x", "modelConfig": {"adaptorId": "a", "modelId": "m"}}},
        "isActive": False,
    }


def test_update_missing_document():
    db = InMemoryDocumentStore()
    with pytest.raises(KeyError):
        db.collection("projects").doc("nope").update({"a": 1})


def test_stream_where_and_delete():
    db = InMemoryDocumentStore()
    col = db.collection("recipes")
    col.doc("r1").set({"stageType": "s1"})
    col.doc("r2").set({"stageType": "s2"})
    assert sorted(doc_id for doc_id, _ in col.stream()) == ["r1", "r2"]
    assert [doc_id for doc_id, _ in col.where("stageType", "s2")] == ["r2"]
    col.doc("r1").delete()
    assert [doc_id for doc_id, _ in col.stream()] == ["r2"]


def test_subcollections_are_separate():
    db = InMemoryDocumentStore()
    db.collection("prompt_templates").doc("t1").set({"id": "t1"})
    db.collection("prompt_templates/t1/versions").doc("t1_v1").set({"version": 1})
    assert [i for i, _ in db.collection("prompt_templates").stream()] == ["t1"]
    assert db.collection("/prompt_templates/t1/versions/").doc("t1_v1").get() == {"version": 1}


def test_prompt_cache():
    cache = PromptCache()
    assert cache.get("k") is None
    cache.set("k", {"v": 1})
    assert "k" in cache
    assert cache.get("k") == {"v": 1}
    assert (cache.hits, cache.misses) == (1, 1)
    cache.delete("k")
    assert len(cache) == 0
    cache.set("a", 1)
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


# -- parsing ----------------------------------------------------------------


def test_extract_json_direct_and_fenced():
    assert extract_json('[{"a": 1}]', expect="array") == [{"a": 1}]
    assert extract_json('Here:\n```json\n{"a": 1}\n```\nDone', expect="object") == {"a": 1}
    assert extract_json('prefix [1, 2] suffix', expect="array") == [1, 2]


def test_extract_json_shape_mismatch():
    with pytest.raises(ParseError):
        extract_json('{"a": 1}', expect="array")


def test_extract_json_empty():
    with pytest.raises(ParseError):
        extract_json("   ")


def test_parse_or_fallback_copies_fallback():
    fallback = {"screenplay": {"second1": "x"}}
    data, used = parse_or_fallback("not json", fallback, expect="object")
    assert used is True
    assert data == fallback
    data["screenplay"]["second1"] = "changed"
    assert fallback["screenplay"]["second1"] == "x"

    data, used = parse_or_fallback('{"ok": true}', fallback, expect="object")
    assert (data, used) == ({"ok": True}, False)


# -- uploads ----------------------------------------------------------------


def test_decode_data_url():
    payload = base64.b64encode(b"png-bytes").decode()
    data, content_type = decode_data_url(f"data:image/png;base64,{payload}")
    assert data == b"png-bytes"
    assert content_type == "image/png"


def test_local_uploader_writes_file(tmp_path):
    uploader = LocalBlobUploader(tmp_path, "/media")
    payload = base64.b64encode(b"png-bytes").decode()
    url = uploader.ensure_public_url(f"data:image/png;base64,{payload}", "proj1/themes")
    assert url.startswith("/media/proj1/themes/")
    assert (tmp_path / url[len("/media/"):]).read_bytes() == b"png-bytes"
    assert uploader.ensure_public_url("https://cdn.test/a.png", "x") == "https://cdn.test/a.png"


def test_local_uploader_rejects_escape(tmp_path):
    uploader = LocalBlobUploader(tmp_path / "media", "/media")
    with pytest.raises(ValidationError):
        uploader.upload(b"x", "image/png", "../outside")


def test_local_uploader_rejects_sibling_with_shared_prefix(tmp_path):
    uploader = LocalBlobUploader(tmp_path / "media", "/media")
    with pytest.raises(ValidationError):
        uploader.upload(b"x", "image/png", "../media2")
    assert not (tmp_path / "media2").exists()


def test_read_local_media(tmp_path):
    uploader = LocalBlobUploader(tmp_path / "media", "/media")
    url = uploader.upload(b"png-bytes", "image/png", "proj1/images", "hero.png")
    assert read_local_media(url, tmp_path / "media", "/media") == (b"png-bytes", "image/png")
    assert read_local_media("https://cdn.test/a.png", tmp_path / "media", "/media") is None

    with pytest.raises(ValidationError):
        read_local_media("/media/../secret.png", tmp_path / "media", "/media")
    with pytest.raises(ValidationError):
        read_local_media("/media/proj1/images/missing.png", tmp_path / "media", "/media")
