"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from convostack.cli import cli
from convostack.database import Database
from convostack.models import CollectionKind

OWNER = "tester"


@pytest.fixture
def invoke(tmp_path, monkeypatch):
    monkeypatch.delenv("CONVOSTACK_CONFIG", raising=False)
    monkeypatch.delenv("CONVOSTACK_DATABASE_PATH", raising=False)
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()

    def run(*args, kind="bookmarks"):
        return runner.invoke(cli, ["--db-path", db_path, "--owner", OWNER, "--kind", kind, *args])

    run.db_path = db_path
    return run


def stored_items(invoke, kind=CollectionKind.BOOKMARKS):
    return Database(invoke.db_path).list_items(kind, OWNER)


def test_init(invoke):
    result = invoke("init")
    assert result.exit_code == 0
    assert "Initialized database" in result.output


def test_mkdir_and_folders(invoke):
    assert invoke("mkdir", "Work").exit_code == 0
    assert invoke("mkdir", "Work/Notes").exit_code == 0

    result = invoke("folders")
    assert result.exit_code == 0
    assert "Work" in result.output
    assert "Notes" in result.output


def test_mkdir_missing_parent(invoke):
    result = invoke("mkdir", "Nope/Child")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_empty_tree(invoke):
    result = invoke("folders")
    assert result.exit_code == 0
    assert "No folders found" in result.output


def test_folder_search(invoke):
    invoke("mkdir", "Personal")
    invoke("mkdir", "Personal/Recipes")
    invoke("mkdir", "Work")

    result = invoke("folders", "--search", "reci")
    assert "Personal" in result.output
    assert "Recipes" in result.output
    assert "Work" not in result.output


def test_move_into_own_subfolder_fails(invoke):
    invoke("mkdir", "A")
    invoke("mkdir", "A/B")

    result = invoke("move", "A", "--to", "A/B")
    assert result.exit_code == 1
    assert "own subfolder" in result.output

    ok = invoke("move", "A/B")
    assert ok.exit_code == 0
    assert "Moved folder: B" in ok.output


def test_rename(invoke):
    invoke("mkdir", "Old")
    result = invoke("rename", "Old", "New")
    assert result.exit_code == 0
    assert "Renamed folder to: New" in result.output


def test_add_list_edit_delete(invoke):
    invoke("mkdir", "Reading")
    result = invoke("add", "Docs", "https://docs.example.com", "--folder", "Reading", "--label", "ref")
    assert result.exit_code == 0
    assert "Created: Docs" in result.output

    listed = invoke("list", "--label", "ref")
    assert listed.exit_code == 0
    assert "Docs" in listed.output

    item_id = stored_items(invoke)[0].id
    edited = invoke("edit", item_id, "--title", "Manual")
    assert edited.exit_code == 0
    assert "Updated: Manual" in edited.output

    deleted = invoke("delete", item_id, "--yes")
    assert deleted.exit_code == 0
    assert stored_items(invoke) == []


def test_list_empty(invoke):
    result = invoke("list")
    assert result.exit_code == 0
    assert "Nothing found" in result.output


def test_add_requires_folder(invoke):
    result = invoke("add", "Orphan", "https://x", "--folder", "Missing")
    assert result.exit_code == 1
    assert stored_items(invoke) == []


def test_rmdir_removes_contents(invoke):
    invoke("mkdir", "Tmp")
    invoke("add", "Scratch", "https://scratch", "--folder", "Tmp")

    result = invoke("rmdir", "Tmp", "--yes")
    assert result.exit_code == 0
    assert stored_items(invoke) == []
    assert "No folders found" in invoke("folders").output


def test_free_tier_folder_limit(invoke):
    for n in range(5):
        assert invoke("mkdir", f"F{n}").exit_code == 0

    result = invoke("mkdir", "F5")
    assert result.exit_code == 1
    assert "Upgrade to Premium" in result.output

    # prompts are unlimited
    for n in range(6):
        assert invoke("mkdir", f"P{n}", kind="prompts").exit_code == 0


def test_edit_unknown_item(invoke):
    result = invoke("edit", "missing", "--title", "X")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_use_prints_content_and_counts(invoke):
    invoke("mkdir", "Writing", kind="prompts")
    invoke("add", "Summarize", "Summarize the text below", "--folder", "Writing", kind="prompts")
    item_id = stored_items(invoke, CollectionKind.PROMPTS)[0].id

    invoke("use", item_id, kind="prompts")
    result = invoke("use", item_id, kind="prompts")

    assert result.exit_code == 0
    assert "Summarize the text below" in result.output
    assert "used 2x" in result.output
    assert stored_items(invoke, CollectionKind.PROMPTS)[0].usage == 2


def test_stats(invoke):
    invoke("mkdir", "Chats")
    invoke("add", "One", "https://1", "--folder", "Chats", "--platform", "chatgpt", "--label", "work")
    invoke("add", "Two", "https://2", "--folder", "Chats", "--platform", "chatgpt")
    invoke("add", "Three", "https://3", "--folder", "Chats")

    result = invoke("stats")

    assert result.exit_code == 0
    assert "3 total, 3 in the last 7 days" in result.output
    assert "chatgpt" in result.output
    assert "unknown" in result.output
    assert "work" in result.output
