"""Tests for the document pipeline in both session layouts."""

import json

import pytest

from snapthink.document_store import ChatDocumentStore, NotebookDocumentStore
from snapthink.errors import InvalidArgument, ModelUnavailable, NotFound
from snapthink.providers.embeddings import EmbeddingClient
from snapthink.types import Message

from conftest import FailingEmbeddingProvider, fake_inventory


FIVE_CHUNKS = " ".join(f"word{i}" for i in range(10))  # window 2, overlap 0 -> 5 chunks


@pytest.fixture
def chat_docs(chat_store, embedder):
    return ChatDocumentStore(chat_store, embedder, window_size=2, overlap=0)


@pytest.fixture
def notebook_docs(notebook_store, embedder):
    return NotebookDocumentStore(notebook_store, embedder, window_size=2, overlap=0)


class TestChatDocumentStore:

    def test_add_writes_legacy_layout(self, chat_store, chat_docs):
        chat = chat_store.create()
        doc = chat_docs.add_document(chat.id, "notes.txt", b"raw bytes", FIVE_CHUNKS)

        folder = chat_store.session_dir(chat.id) / "docs" / doc.id
        assert (folder / "file.txt").read_bytes() == b"raw bytes"
        assert json.loads((folder / "chunks.json").read_text()) == doc.chunks
        records = json.loads((folder / "embeddings.json").read_text())
        assert [r["chunk"] for r in records] == doc.chunks
        assert [r["embedding"] for r in records] == doc.embeddings

        manifest = json.loads((chat_store.session_dir(chat.id) / "docsMetadata.json").read_text())
        assert manifest[0]["id"] == doc.id
        assert manifest[0]["name"] == "notes.txt"
        assert manifest[0]["ext"] == "txt"

        # chat.json's docs list follows the manifest
        record = chat_store.load(chat.id)
        assert [d.id for d in record.docs] == [doc.id]

    def test_document_fields(self, chat_store, chat_docs):
        chat = chat_store.create()
        doc = chat_docs.add_document(chat.id, "notes.md", b"12345", FIVE_CHUNKS)
        assert doc.size == 5
        assert doc.ext == "md"
        assert doc.uploaded_at.endswith("Z")
        assert len(doc.chunks) == len(doc.embeddings) == 5
        assert doc.is_embedded

    def test_load_round_trip(self, chat_store, chat_docs):
        chat = chat_store.create()
        doc = chat_docs.add_document(chat.id, "notes.txt", b"x", FIVE_CHUNKS)
        loaded = chat_docs.load_document(chat.id, doc.id)
        assert loaded.chunks == doc.chunks
        assert loaded.embeddings == doc.embeddings
        assert loaded.name == "notes.txt"

    def test_failed_chunk_dropped_from_both_arrays(self, chat_store):
        provider = FailingEmbeddingProvider(fail_on={2})
        client = EmbeddingClient(provider, check_model=False)
        docs = ChatDocumentStore(chat_store, client, window_size=2, overlap=0)
        chat = chat_store.create()

        doc = docs.add_document(chat.id, "notes.txt", b"x", FIVE_CHUNKS)
        assert len(doc.chunks) == len(doc.embeddings) == 4
        assert "word4 word5" not in doc.chunks

        loaded = docs.load_document(chat.id, doc.id)
        assert len(loaded.chunks) == len(loaded.embeddings) == 4

    def test_model_checked_before_writing(self, chat_store, mock_embedding_provider):
        client = EmbeddingClient(mock_embedding_provider, download="never", inventory=fake_inventory())
        docs = ChatDocumentStore(chat_store, client)
        chat = chat_store.create()
        with pytest.raises(ModelUnavailable):
            docs.add_document(chat.id, "notes.txt", b"x", "some text")
        assert not (chat_store.session_dir(chat.id) / "docs").exists()
        assert docs.list_documents(chat.id) == []

    def test_no_embedder(self, chat_store):
        docs = ChatDocumentStore(chat_store)
        chat = chat_store.create()
        with pytest.raises(ModelUnavailable):
            docs.add_document(chat.id, "notes.txt", b"x", "text")

    def test_missing_session(self, chat_docs):
        with pytest.raises(NotFound):
            chat_docs.add_document("chat-1-missing", "notes.txt", b"x", "text")

    def test_bad_chunking_rejected(self, chat_store, embedder):
        docs = ChatDocumentStore(chat_store, embedder, window_size=3, overlap=3)
        chat = chat_store.create()
        with pytest.raises(InvalidArgument):
            docs.add_document(chat.id, "notes.txt", b"x", "text")

    def test_corrupted_artifacts_read_as_no_data(self, chat_store, chat_docs):
        chat = chat_store.create()
        doc = chat_docs.add_document(chat.id, "notes.txt", b"x", FIVE_CHUNKS)
        folder = chat_store.session_dir(chat.id) / "docs" / doc.id
        (folder / "embeddings.json").write_text("{not json")
        assert chat_docs.load_document(chat.id, doc.id) is None
        assert chat_docs.load_corpus(chat.id) == []

    def test_non_numeric_vectors_read_as_no_data(self, chat_store, chat_docs):
        chat = chat_store.create()
        bad = chat_docs.add_document(chat.id, "bad.txt", b"x", FIVE_CHUNKS)
        good = chat_docs.add_document(chat.id, "good.txt", b"y", FIVE_CHUNKS)
        folder = chat_store.session_dir(chat.id) / "docs" / bad.id
        (folder / "embeddings.json").write_text(json.dumps([{"chunk": "a", "embedding": ["x"]}]))
        assert chat_docs.load_document(chat.id, bad.id) is None
        assert [d.id for d in chat_docs.load_corpus(chat.id)] == [good.id]

    def test_missing_artifacts_read_as_no_data(self, chat_store, chat_docs):
        chat = chat_store.create()
        doc = chat_docs.add_document(chat.id, "notes.txt", b"x", FIVE_CHUNKS)
        (chat_store.session_dir(chat.id) / "docs" / doc.id / "chunks.json").unlink()
        assert chat_docs.load_document(chat.id, doc.id) is None

    def test_unknown_document(self, chat_store, chat_docs):
        chat = chat_store.create()
        assert chat_docs.load_document(chat.id, "no-such-doc") is None

    def test_reads_bare_vector_embeddings(self, chat_store, chat_docs):
        chat = chat_store.create()
        folder = chat_store.session_dir(chat.id) / "docs" / "d1"
        folder.mkdir(parents=True)
        (folder / "file.txt").write_text("hello")
        (folder / "chunks.json").write_text(json.dumps(["a", "b"]))
        (folder / "embeddings.json").write_text(json.dumps([[1.0, 0.0], [0.0, 1.0]]))
        (chat_store.session_dir(chat.id) / "docsMetadata.json").write_text(
            json.dumps([{"id": "d1", "name": "hello.txt", "ext": "txt"}]))

        doc = chat_docs.load_document(chat.id, "d1")
        assert doc.chunks == ["a", "b"]
        assert doc.embeddings == [[1.0, 0.0], [0.0, 1.0]]

    def test_remove_is_idempotent(self, chat_store, chat_docs):
        chat = chat_store.create()
        doc = chat_docs.add_document(chat.id, "notes.txt", b"x", FIVE_CHUNKS)
        assert chat_docs.remove_document(chat.id, doc.id) is True
        assert chat_docs.remove_document(chat.id, doc.id) is False
        assert chat_docs.list_documents(chat.id) == []
        assert chat_store.load(chat.id).docs == []
        assert not (chat_store.session_dir(chat.id) / "docs" / doc.id).exists()

    def test_rejects_path_like_doc_ids(self, chat_store, chat_docs):
        chat = chat_store.create()
        with pytest.raises(InvalidArgument):
            chat_docs.load_document(chat.id, "../other")

    def test_messages_survive_document_updates(self, chat_store, chat_docs):
        chat = chat_store.create()
        chat_store.save_messages(chat.id, [Message(role="user", content="hi")])
        chat_docs.add_document(chat.id, "notes.txt", b"x", FIVE_CHUNKS)
        assert [m.content for m in chat_store.load(chat.id).messages] == ["hi"]


class TestNotebookDocumentStore:

    def test_add_writes_file_and_sidecar(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        doc = notebook_docs.add_document(nb.id, "paper.pdf", b"%PDF-1.4", FIVE_CHUNKS)

        docs_dir = notebook_store.bucket_dir(nb.id, "docs")
        assert (docs_dir / "paper.pdf").read_bytes() == b"%PDF-1.4"
        sidecar = json.loads((docs_dir / "paper.pdf.meta.json").read_text())
        assert sidecar["id"] == doc.id
        assert sidecar["fileName"] == "paper.pdf"
        assert sidecar["chunks"] == doc.chunks
        assert len(sidecar["embeddings"]) == 5

    def test_updates_notebook_metadata(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        notebook_docs.add_document(nb.id, "paper.txt", b"x", FIVE_CHUNKS)
        meta = notebook_store.load_meta(nb.id)
        assert "document-rag" in meta.plugins["enabled"]
        assert meta.stats.total_files == 1

    def test_colliding_names_disambiguated(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        first = notebook_docs.add_document(nb.id, "paper.txt", b"one", FIVE_CHUNKS)
        second = notebook_docs.add_document(nb.id, "paper.txt", b"two", FIVE_CHUNKS)
        assert first.id != second.id
        paths = {notebook_docs.document_path(nb.id, d.id).read_bytes() for d in (first, second)}
        assert paths == {b"one", b"two"}
        assert len(notebook_docs.list_documents(nb.id)) == 2

    def test_load_and_corpus(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        doc = notebook_docs.add_document(nb.id, "a.txt", b"x", FIVE_CHUNKS)
        assert notebook_docs.load_document(nb.id, doc.id).chunks == doc.chunks
        assert [d.id for d in notebook_docs.load_corpus(nb.id)] == [doc.id]

    def test_corrupted_sidecar_ignored(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        doc = notebook_docs.add_document(nb.id, "a.txt", b"x", FIVE_CHUNKS)
        (notebook_store.bucket_dir(nb.id, "docs") / "a.txt.meta.json").write_text("garbage")
        assert notebook_docs.load_document(nb.id, doc.id) is None
        assert notebook_docs.list_documents(nb.id) == []

    def test_non_numeric_sidecar_vectors_read_as_no_data(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        doc = notebook_docs.add_document(nb.id, "a.txt", b"x", FIVE_CHUNKS)
        sidecar = notebook_store.bucket_dir(nb.id, "docs") / "a.txt.meta.json"
        data = json.loads(sidecar.read_text())
        data["embeddings"] = [["x", "y"]] * len(data["chunks"])
        sidecar.write_text(json.dumps(data))
        assert notebook_docs.load_document(nb.id, doc.id) is None
        assert notebook_docs.load_corpus(nb.id) == []

    def test_remove(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        doc = notebook_docs.add_document(nb.id, "a.txt", b"x", FIVE_CHUNKS)
        assert notebook_docs.remove_document(nb.id, doc.id) is True
        assert notebook_docs.remove_document(nb.id, doc.id) is False
        docs_dir = notebook_store.bucket_dir(nb.id, "docs")
        assert list(docs_dir.iterdir()) == []
        assert "document-rag" not in notebook_store.load_meta(nb.id).plugins["enabled"]

    def test_sidecars_hidden_from_file_listing(self, notebook_store, notebook_docs):
        nb = notebook_store.create("Docs")
        notebook_docs.add_document(nb.id, "a.txt", b"x", FIVE_CHUNKS)
        files = notebook_store.load(nb.id).files["docs"]
        assert [f.name for f in files] == ["a.txt"]
        entry = files[0].to_dict()
        assert "embeddings" not in entry
        assert entry["type"] == "docs"
