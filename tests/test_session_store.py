"""Tests for the legacy chat and notebook session stores."""

import json

import pytest

from snapthink.errors import InvalidArgument, NotFound
from snapthink.session_store import ChatSessionStore, NameManifest, NotebookStore
from snapthink.types import DocumentSummary, Message, Source


def _messages():
    return [
        Message(role="user", content="What is in the report?", id="m1",
                timestamp="2024-03-01T10:00:00.000Z"),
        Message(role="assistant", content="<think>hmm</think>A summary.", id="m2",
                timestamp="2024-03-01T10:00:05.000Z",
                sources=[Source(text="chunk", index=0, file_name="report.pdf")]),
    ]


class TestNameManifest:

    def test_set_get_remove(self, tmp_path):
        manifest = NameManifest(tmp_path / "names.json")
        assert manifest.get("chat-1") is None
        manifest.set("chat-1", "Groceries")
        assert manifest.get("chat-1") == "Groceries"
        manifest.remove("chat-1")
        manifest.remove("chat-1")
        assert manifest.load() == {}

    def test_corrupted_manifest_is_empty(self, tmp_path):
        path = tmp_path / "names.json"
        path.write_text("[1, 2")
        assert NameManifest(path).load() == {}


class TestChatSessionStore:

    def test_create_layout(self, chat_store):
        chat = chat_store.create()
        assert chat.id.startswith("chat-")
        data = json.loads((chat_store.session_dir(chat.id) / "chat.json").read_text())
        assert data == {"messages": [], "docs": []}

    def test_save_load_round_trip(self, chat_store):
        chat = chat_store.create()
        chat_store.save_messages(chat.id, _messages())
        loaded = chat_store.load(chat.id)
        assert [m.to_dict() for m in loaded.messages] == [m.to_dict() for m in _messages()]
        assert loaded.messages[1].sources[0].file_name == "report.pdf"

    def test_unknown_fields_preserved(self, chat_store):
        chat = chat_store.create()
        path = chat_store.session_dir(chat.id) / "chat.json"
        path.write_text(json.dumps({
            "messages": [{"role": "user", "content": "hi", "liked": True}],
            "docs": [],
            "pinned": True,
        }))
        record = chat_store.load(chat.id)
        chat_store.save_messages(chat.id, record.messages + [Message(role="assistant", content="hey")])
        data = json.loads(path.read_text())
        assert data["pinned"] is True
        assert data["messages"][0]["liked"] is True
        assert len(data["messages"]) == 2

    def test_missing_chat_loads_empty(self, chat_store):
        record = chat_store.load("chat-1-nothere")
        assert record.messages == []
        assert record.docs == []

    def test_corrupted_chat_loads_empty(self, chat_store):
        chat = chat_store.create()
        (chat_store.session_dir(chat.id) / "chat.json").write_text("{oops")
        assert chat_store.load(chat.id).messages == []

    def test_bare_message_array(self, chat_store):
        chat = chat_store.create()
        (chat_store.session_dir(chat.id) / "chat.json").write_text(
            json.dumps([{"role": "user", "content": "old format"}]))
        assert [m.content for m in chat_store.load(chat.id).messages] == ["old format"]

    def test_malformed_messages_skipped(self, chat_store):
        chat = chat_store.create()
        (chat_store.session_dir(chat.id) / "chat.json").write_text(json.dumps({
            "messages": [{"role": "user", "content": "ok"}, {"content": "no role"},
                         {"role": "robot", "content": "bad role"}],
        }))
        assert [m.content for m in chat_store.load(chat.id).messages] == ["ok"]

    def test_non_dict_sources_skipped(self, chat_store):
        chat = chat_store.create()
        (chat_store.session_dir(chat.id) / "chat.json").write_text(json.dumps({
            "messages": [
                {"role": "assistant", "content": "answer",
                 "sources": ["snippet", {"text": "real", "index": 1, "fileName": "a.txt"}]},
                {"role": "user", "content": "next", "sources": [None, 3]},
            ],
        }))
        messages = chat_store.load(chat.id).messages
        assert [m.content for m in messages] == ["answer", "next"]
        assert [s.text for s in messages[0].sources] == ["real"]
        assert messages[1].sources == []

    def test_update_docs_keeps_messages(self, chat_store):
        chat = chat_store.create()
        chat_store.save_messages(chat.id, _messages())
        chat_store.update_docs(chat.id, [DocumentSummary(id="d1", name="a.txt", ext="txt")])
        record = chat_store.load(chat.id)
        assert len(record.messages) == 2
        assert record.docs[0].name == "a.txt"

    def test_delete_idempotent(self, chat_store):
        chat = chat_store.create("Named")
        chat_store.delete(chat.id)
        chat_store.delete(chat.id)
        assert chat.id not in chat_store.list_ids()
        assert chat_store.manifest.get(chat.id) is None
        assert not chat_store.exists(chat.id)

    def test_list_excludes_deleted(self, chat_store):
        keep = chat_store.create()
        gone = chat_store.create()
        chat_store.delete(gone.id)
        assert [s.id for s in chat_store.list()] == [keep.id]

    def test_display_names(self, chat_store):
        named = chat_store.create("Trip planning")
        unnamed = chat_store.create()
        assert chat_store.display_name(named.id) == "Trip planning"
        assert chat_store.display_name(unnamed.id) == "New Chat"

    def test_rename(self, chat_store):
        chat = chat_store.create()
        assert chat_store.rename(chat.id, "  Renamed ") is True
        assert chat_store.summary(chat.id).title == "Renamed"
        assert chat_store.rename("chat-1-missing", "x") is False
        with pytest.raises(InvalidArgument):
            chat_store.rename(chat.id, "   ")

    def test_summary_counts(self, chat_store):
        chat = chat_store.create()
        chat_store.save_messages(chat.id, _messages())
        summary = chat_store.summary(chat.id)
        assert summary.kind == "chat"
        assert summary.message_count == 2
        assert summary.created_at == "2024-03-01T10:00:00.000Z"
        assert summary.updated_at.endswith("Z")

    @pytest.mark.parametrize("bad_id", ["../etc", "a/b", "", ".hidden", ".."])
    def test_rejects_unsafe_ids(self, chat_store, bad_id):
        with pytest.raises(InvalidArgument):
            chat_store.session_dir(bad_id)

    def test_default_manifest_location(self, tmp_path):
        store = ChatSessionStore(tmp_path / "chats")
        assert store.manifest.path == tmp_path / "chat-names.json"


class TestNotebookStore:

    def test_create_layout(self, notebook_store):
        nb = notebook_store.create("Research", tags=["work"], model="llama3:8b")
        root = notebook_store.session_dir(nb.id)
        assert nb.id.startswith("notebook-")
        for bucket in ("docs", "images", "videos", "outputs"):
            assert (root / bucket).is_dir()
        meta = json.loads((root / "notebook.json").read_text())
        assert meta["title"] == "Research"
        assert meta["tags"] == ["work"]
        assert meta["model"] == "llama3:8b"
        assert meta["plugins"] == {"enabled": [], "settings": {}}
        assert json.loads((root / "messages.json").read_text()) == {"messages": []}

    def test_blank_title_defaults(self, notebook_store):
        assert notebook_store.create("  ").meta.title == "Untitled Notebook"

    def test_save_messages_updates_meta(self, notebook_store):
        nb = notebook_store.create("N")
        before = notebook_store.load_meta(nb.id).updated_at
        notebook_store.save_messages(nb.id, _messages())
        meta = notebook_store.load_meta(nb.id)
        assert meta.stats.total_messages == 2
        assert meta.updated_at >= before

    def test_load_recomputes_stats(self, notebook_store):
        nb = notebook_store.create("N")
        notebook_store.save_messages(nb.id, _messages())
        path = notebook_store.session_dir(nb.id) / "notebook.json"
        data = json.loads(path.read_text())
        data["stats"] = {"totalMessages": 99, "totalFiles": 12}
        path.write_text(json.dumps(data))

        record = notebook_store.load(nb.id)
        assert record.meta.stats.total_messages == 2
        assert record.meta.stats.total_files == 0

    @pytest.mark.parametrize("stats", [
        {"totalMessages": None, "totalFiles": "lots", "lastActive": 3},
        "broken",
        [1, 2],
    ])
    def test_wrongly_typed_stats_load(self, notebook_store, stats):
        nb = notebook_store.create("Stats")
        notebook_store.save_messages(nb.id, _messages())
        path = notebook_store.session_dir(nb.id) / "notebook.json"
        data = json.loads(path.read_text())
        data["stats"] = stats
        path.write_text(json.dumps(data))

        assert notebook_store.load_meta(nb.id).stats.total_files == 0
        record = notebook_store.load(nb.id)
        assert record.meta.title == "Stats"
        assert record.meta.stats.total_messages == 2

    def test_malformed_meta_loads_default(self, notebook_store):
        nb = notebook_store.create("Tagged")
        path = notebook_store.session_dir(nb.id) / "notebook.json"
        path.write_text(json.dumps({"title": "Tagged", "tags": 5}))
        assert notebook_store.load_meta(nb.id) is None
        record = notebook_store.load(nb.id)
        assert record.meta.id == nb.id
        assert record.meta.title == "Untitled Notebook"

    def test_save_messages_missing_notebook(self, notebook_store):
        with pytest.raises(NotFound):
            notebook_store.save_messages("notebook-1-missing", _messages())
        assert not notebook_store.session_dir("notebook-1-missing").exists()

    def test_unknown_meta_fields_preserved(self, notebook_store):
        nb = notebook_store.create("N")
        path = notebook_store.session_dir(nb.id) / "notebook.json"
        data = json.loads(path.read_text())
        data["color"] = "teal"
        path.write_text(json.dumps(data))
        notebook_store.save_messages(nb.id, _messages())
        assert json.loads(path.read_text())["color"] == "teal"

    def test_update_merges_and_keeps_id(self, notebook_store):
        nb = notebook_store.create("N")
        meta = notebook_store.update(nb.id, {"title": "New", "id": "other", "tags": ["x"]})
        assert meta.id == nb.id
        assert meta.title == "New"
        assert notebook_store.load_meta(nb.id).tags == ["x"]

    def test_update_missing(self, notebook_store):
        assert notebook_store.update("notebook-1-missing", {"title": "x"}) is None

    def test_rename(self, notebook_store):
        nb = notebook_store.create("N")
        assert notebook_store.rename(nb.id, "Better") is True
        assert notebook_store.summary(nb.id).title == "Better"
        with pytest.raises(InvalidArgument):
            notebook_store.rename(nb.id, "")

    def test_delete_idempotent(self, notebook_store):
        nb = notebook_store.create("N")
        notebook_store.delete(nb.id)
        notebook_store.delete(nb.id)
        assert notebook_store.list() == []
        assert notebook_store.load_meta(nb.id) is None

    def test_list_newest_first(self, notebook_store):
        first = notebook_store.create("First")
        second = notebook_store.create("Second")
        notebook_store.update(first.id, {})
        assert [s.id for s in notebook_store.list()][0] == first.id
        assert {s.id for s in notebook_store.list()} == {first.id, second.id}

    def test_unknown_bucket(self, notebook_store):
        nb = notebook_store.create("N")
        with pytest.raises(InvalidArgument):
            notebook_store.bucket_dir(nb.id, "secrets")


class TestNotebookFiles:

    def test_add_media_image(self, notebook_store):
        nb = notebook_store.create("N")
        media = notebook_store.add_media(nb.id, "photo.png", b"\x89PNG")
        assert media.file_type == "image"
        assert media.file_name == "photo.png"
        assert notebook_store.media_path(nb.id, "photo.png", "image").read_bytes() == b"\x89PNG"
        entry = notebook_store.load(nb.id).files["images"][0]
        assert entry.metadata["originalName"] == "photo.png"
        assert entry.metadata["fileType"] == "image"

    def test_add_media_video_by_mime(self, notebook_store):
        nb = notebook_store.create("N")
        media = notebook_store.add_media(nb.id, "clip", b"data", mime="video/mp4")
        assert media.file_type == "video"
        assert [f.name for f in notebook_store.load(nb.id).files["videos"]] == ["clip"]

    def test_add_media_rejects_other_types(self, notebook_store):
        nb = notebook_store.create("N")
        with pytest.raises(InvalidArgument, match="Please upload images or videos"):
            notebook_store.add_media(nb.id, "notes.txt", b"text")

    def test_add_media_size_limit(self, tmp_path):
        store = NotebookStore(tmp_path / "nb", max_media_bytes=1024 * 1024)
        nb = store.create("N")
        with pytest.raises(InvalidArgument, match="Maximum size is 1MB"):
            store.add_media(nb.id, "big.png", b"x" * (1024 * 1024 + 1))

    def test_add_media_missing_notebook(self, notebook_store):
        with pytest.raises(NotFound):
            notebook_store.add_media("notebook-1-missing", "a.png", b"x")

    def test_colliding_names(self, notebook_store):
        nb = notebook_store.create("N")
        first = notebook_store.add_media(nb.id, "a.png", b"1")
        second = notebook_store.add_media(nb.id, "a.png", b"2")
        assert first.file_name == "a.png"
        assert second.file_name != "a.png"
        assert second.file_name.startswith("a-") and second.file_name.endswith(".png")
        assert len(notebook_store.load(nb.id).files["images"]) == 2

    def test_path_components_stripped(self, notebook_store):
        nb = notebook_store.create("N")
        stored = notebook_store.add_file(nb.id, "outputs", "../../escape.txt", b"x")
        assert stored == "escape.txt"
        assert (notebook_store.bucket_dir(nb.id, "outputs") / "escape.txt").exists()

    def test_remove_file(self, notebook_store):
        nb = notebook_store.create("N")
        notebook_store.add_media(nb.id, "a.png", b"1")
        assert notebook_store.remove_file(nb.id, "images", "a.png") is True
        assert notebook_store.remove_file(nb.id, "images", "a.png") is False
        assert list(notebook_store.bucket_dir(nb.id, "images").iterdir()) == []
