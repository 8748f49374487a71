"""Tests for the snapthink command line."""

import json
from functools import partial
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from snapthink.api import Workspace
from snapthink.cli import _format_sources, app
from snapthink.types import Source

from conftest import KeywordEmbeddingProvider, MockCompletionProvider, fake_inventory


runner = CliRunner()


@pytest.fixture
def store(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def cli(store):
    """Invoke the CLI against a temporary store."""
    def invoke(*args):
        return runner.invoke(app, ["--store", str(store), *args])
    return invoke


@pytest.fixture
def model_ready():
    """Route the CLI's Workspace through keyword embeddings and a canned model."""
    factory = partial(
        Workspace,
        embedding_provider=KeywordEmbeddingProvider(),
        completion_provider=MockCompletionProvider(),
        inventory=fake_inventory("nomic-embed-text:latest"),
    )
    with patch("snapthink.cli.Workspace", factory):
        yield


def _new_notebook(cli, title="Notes"):
    result = cli("new", "--title", title)
    assert result.exit_code == 0, result.output
    return result.stdout.strip()


class TestSessionCommands:

    def test_new_and_list(self, cli):
        nb_id = _new_notebook(cli, "Reading list")
        assert nb_id.startswith("notebook-")
        result = cli("list")
        assert result.exit_code == 0
        assert nb_id in result.stdout
        assert "Reading list" in result.stdout

    def test_list_json(self, cli):
        nb_id = _new_notebook(cli)
        result = cli("--json", "list")
        [entry] = json.loads(result.stdout)
        assert entry["id"] == nb_id
        assert entry["kind"] == "notebook"

    def test_empty_list(self, cli):
        result = cli("list")
        assert result.exit_code == 0
        assert "No sessions." in result.stdout

    def test_new_chat(self, cli):
        result = cli("--json", "new", "--chat", "--title", "Scratch")
        data = json.loads(result.stdout)
        assert data["kind"] == "chat"
        assert data["title"] == "Scratch"

    def test_new_with_tags(self, cli):
        result = cli("--json", "new", "-t", "Tagged", "--tag", "a", "--tag", "b")
        nb_id = json.loads(result.stdout)["id"]
        shown = json.loads(cli("--json", "show", nb_id).stdout)
        assert shown["tags"] == ["a", "b"]

    def test_show_rename_delete(self, cli):
        nb_id = _new_notebook(cli)
        assert cli("rename", nb_id, "Better name").exit_code == 0
        shown = cli("show", nb_id)
        assert shown.stdout.startswith("Better name")

        assert cli("delete", nb_id).exit_code == 0
        missing = cli("show", nb_id)
        assert missing.exit_code == 1
        assert "Session not found" in missing.output

    def test_invalid_session_id(self, cli):
        result = cli("show", "../etc")
        assert result.exit_code == 1
        assert "Invalid session id" in result.output


class TestDocumentCommands:

    def test_add_search_ask(self, cli, model_ready, tmp_path):
        nb_id = _new_notebook(cli)
        doc = tmp_path / "fruit.txt"
        doc.write_text("apple banana cherry durian " * 5)

        added = cli("--json", "add-doc", nb_id, str(doc))
        assert added.exit_code == 0, added.output
        doc_id = json.loads(added.stdout)["id"]

        listed = cli("docs", nb_id)
        assert doc_id in listed.stdout

        found = cli("--json", "search", nb_id, "banana", "-k", "1")
        [hit] = json.loads(found.stdout)
        assert hit["fileName"] == "fruit.txt"

        answered = cli("ask", nb_id, "Which fruit?")
        assert answered.exit_code == 0
        assert answered.stdout.startswith("The answer is 42.")
        assert "fruit.txt" in answered.stdout

        removed = cli("--json", "remove-doc", nb_id, doc_id)
        assert json.loads(removed.stdout) == {"removed": True}

    def test_missing_model_without_yes(self, cli, tmp_path):
        factory = partial(Workspace, embedding_provider=KeywordEmbeddingProvider(),
                          inventory=fake_inventory())
        nb_id = _new_notebook(cli)
        doc = tmp_path / "a.txt"
        doc.write_text("hello")
        with patch("snapthink.cli.Workspace", factory):
            result = cli("add-doc", nb_id, str(doc))
        assert result.exit_code == 1
        assert "--yes" in result.output
        assert "declined" in result.output

    def test_add_media(self, cli, tmp_path):
        nb_id = _new_notebook(cli)
        photo = tmp_path / "cat.gif"
        photo.write_bytes(b"GIF89a")
        result = cli("add-media", nb_id, str(photo))
        assert result.exit_code == 0
        assert result.stdout.strip() == "[IMAGE] cat.gif"

    def test_unsupported_media(self, cli, tmp_path):
        nb_id = _new_notebook(cli)
        path = tmp_path / "a.txt"
        path.write_text("x")
        result = cli("add-media", nb_id, str(path))
        assert result.exit_code == 1
        assert "Please upload images or videos" in result.output


class TestMigrationCommands:

    def test_migrate(self, cli, store, make_legacy_chat):
        make_legacy_chat(store / "chats", "chat-1-abc", [{"role": "user", "content": "Legacy question"}])
        result = cli("--json", "migrate")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["migrated"] == 1
        assert data["notebooks"][0]["title"] == "Legacy question"

        again = json.loads(cli("--json", "migrate").stdout)
        assert again["migrated"] == 0
        assert again["skipped"] == ["chat-1-abc"]

    def test_export_import(self, cli, tmp_path):
        nb_id = _new_notebook(cli, "Portable")
        exported = cli("export", nb_id, str(tmp_path))
        assert exported.exit_code == 0
        archive = exported.stdout.strip()
        assert archive.endswith(".snap")

        imported = cli("--json", "import", archive)
        data = json.loads(imported.stdout)
        assert data["id"] != nb_id
        assert data["title"] == "Portable"
        assert data["missingDocuments"] == []


class TestFormatting:

    def test_format_sources(self):
        text = _format_sources([
            Source(text="bees   dance\nat noon", index=2, file_name="bees.pdf", score=0.91234),
            Source(text="w " * 150, index=0, file_name="long.txt"),
        ])
        lines = text.splitlines()
        assert lines[0] == "[1] bees.pdf #3 (0.912)"
        assert lines[1] == "    bees dance at noon"
        assert lines[2] == "[2] long.txt #1"
        assert lines[3].endswith("...")
        assert len(lines[3]) == 4 + 200
