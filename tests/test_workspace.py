"""Tests for atelier/workspace.py -- containment, restriction, file operations."""

import os
from pathlib import Path

import pytest

from atelier.errors import AccessDeniedError
from atelier.workspace import Workspace


@pytest.fixture
def root(workspace) -> Path:
    return workspace.root


# ---------------------------------------------------------------------------
# Path checks
# ---------------------------------------------------------------------------


class TestIsSafe:
    def test_root_and_children_are_safe(self, workspace):
        assert workspace.is_safe(".")
        assert workspace.is_safe("")
        assert workspace.is_safe("src/app.py")
        assert workspace.is_safe("src/../README.md")

    def test_parent_traversal_rejected(self, workspace):
        assert not workspace.is_safe("../outside.txt")
        assert not workspace.is_safe("src/../../outside.txt")

    def test_absolute_path_outside_rejected(self, workspace):
        assert not workspace.is_safe("/etc/passwd")

    def test_sibling_with_common_prefix_rejected(self, workspace, root):
        sibling = f"../{root.name}-other/file.txt"
        assert not workspace.is_safe(sibling)

    def test_null_byte_rejected(self, workspace):
        assert not workspace.is_safe("bad\x00name")

    def test_symlink_escaping_root_rejected(self, workspace, root, tmp_path):
        outside = tmp_path / "secret"
        outside.mkdir()
        (outside / "key.txt").write_text("k")
        os.symlink(outside, root / "link")
        assert not workspace.is_safe("link/key.txt")


class TestIsRestricted:
    def test_top_level_restricted(self, workspace):
        assert workspace.is_restricted(".git/config")
        assert workspace.is_restricted("node_modules")
        assert workspace.is_restricted(".env")

    def test_restricted_at_any_depth(self, workspace):
        assert workspace.is_restricted("packages/web/node_modules/react/index.js")
        assert workspace.is_restricted("sub/.git/HEAD")
        assert workspace.is_restricted("config/.env")

    def test_similar_names_not_restricted(self, workspace):
        assert not workspace.is_restricted(".envrc")
        assert not workspace.is_restricted("my.git/file")
        assert not workspace.is_restricted("src/node_modules_backup.txt")

    def test_symlink_into_restricted_is_restricted(self, workspace, root):
        (root / ".git").mkdir()
        os.symlink(root / ".git", root / "gitdir")
        assert workspace.is_restricted("gitdir/config")


class TestResolve:
    def test_outside_message(self, workspace):
        with pytest.raises(AccessDeniedError) as exc:
            workspace.resolve("../x", "read")
        assert exc.value.message == "Access denied: path outside workspace"
        assert exc.value.kind == "access_denied"

    def test_restricted_message_names_action(self, workspace):
        with pytest.raises(AccessDeniedError) as exc:
            workspace.resolve(".git/config", "write to")
        assert exc.value.message == "Access denied: cannot write to restricted folders"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_write_creates_parents_then_read(self, workspace, root):
        created = await workspace.write("a/b/c.txt", "hello")
        assert created is True
        assert (root / "a" / "b" / "c.txt").read_text() == "hello"
        assert await workspace.read("a/b/c.txt") == "hello"

    @pytest.mark.asyncio
    async def test_overwrite_reports_modified(self, workspace):
        await workspace.write("f.txt", "one")
        created = await workspace.write("f.txt", "two")
        assert created is False
        assert await workspace.read("f.txt") == "two"

    @pytest.mark.asyncio
    async def test_write_outside_denied_without_mutation(self, workspace, root):
        with pytest.raises(AccessDeniedError):
            await workspace.write("../outside.txt", "x")
        assert not (root.parent / "outside.txt").exists()

    @pytest.mark.asyncio
    async def test_read_missing_raises_oserror(self, workspace):
        with pytest.raises(FileNotFoundError):
            await workspace.read("missing.txt")

    @pytest.mark.asyncio
    async def test_notify_created_then_modified(self, workspace, watcher, make_client):
        client = make_client()
        watcher.add_client(client)

        await workspace.write("src/new.py", "x = 1", notify=True)
        await workspace.write("src/new.py", "x = 2", notify=True)

        assert client.sent == [
            {"type": "file_created", "path": "src/new.py", "content": "x = 1"},
            {"type": "file_modified", "path": "src/new.py", "content": "x = 2"},
        ]

    @pytest.mark.asyncio
    async def test_no_notify_by_default(self, workspace, watcher, make_client):
        client = make_client()
        watcher.add_client(client)
        await workspace.write("quiet.txt", "x")
        assert client.sent == []


class TestList:
    @pytest.mark.asyncio
    async def test_list_sorted_and_typed(self, workspace, root):
        (root / "b.txt").write_text("12345")
        (root / "a_dir").mkdir()
        files = await workspace.list(".")
        assert [f["name"] for f in files] == ["a_dir", "b.txt"]
        assert files[0]["type"] == "directory"
        assert files[1] == {"name": "b.txt", "type": "file", "size": 5}

    @pytest.mark.asyncio
    async def test_list_hides_restricted_entries(self, workspace, root):
        (root / ".git").mkdir()
        (root / "node_modules").mkdir()
        (root / "src").mkdir()
        files = await workspace.list(".")
        assert [f["name"] for f in files] == ["src"]

    @pytest.mark.asyncio
    async def test_list_restricted_denied(self, workspace, root):
        (root / "node_modules").mkdir()
        with pytest.raises(AccessDeniedError, match="cannot list"):
            await workspace.list("node_modules")


class TestSearch:
    @pytest.mark.asyncio
    async def test_case_insensitive_with_line_numbers(self, workspace, root):
        (root / "src").mkdir()
        (root / "src" / "app.py").write_text("import os\n    def Main():\n        pass\n")
        results = await workspace.search("main")
        assert results == [{"file": "src/app.py", "line": 2, "content": "def Main():"}]

    @pytest.mark.asyncio
    async def test_skips_restricted_and_binary(self, workspace, root):
        (root / "node_modules").mkdir()
        (root / "node_modules" / "lib.js").write_text("needle")
        (root / "blob.bin").write_bytes(b"\xff\xfe needle \x00\x80")
        (root / "ok.txt").write_text("needle here")
        results = await workspace.search("needle")
        assert [r["file"] for r in results] == ["ok.txt"]

    @pytest.mark.asyncio
    async def test_limit_caps_results(self, workspace, root):
        (root / "many.txt").write_text("\n".join(["hit"] * 80))
        results = await workspace.search("hit")
        assert len(results) == 50

    @pytest.mark.asyncio
    async def test_search_scoped_to_path(self, workspace, root):
        (root / "a").mkdir()
        (root / "b").mkdir()
        (root / "a" / "x.txt").write_text("token")
        (root / "b" / "y.txt").write_text("token")
        results = await workspace.search("token", "b")
        assert [r["file"] for r in results] == ["b/y.txt"]

    @pytest.mark.asyncio
    async def test_search_single_file(self, workspace, root):
        (root / "notes").mkdir()
        (root / "notes" / "todo.md").write_text("first\nthe needle\n")
        (root / "notes" / "other.md").write_text("needle too")
        results = await workspace.search("needle", "notes/todo.md")
        assert results == [{"file": "notes/todo.md", "line": 2, "content": "the needle"}]


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_file_and_notify(self, workspace, watcher, root, make_client):
        (root / "gone.txt").write_text("bye")
        client = make_client()
        watcher.add_client(client)

        await workspace.delete("gone.txt", notify=True)

        assert not (root / "gone.txt").exists()
        assert client.sent == [{"type": "file_deleted", "path": "gone.txt"}]

    @pytest.mark.asyncio
    async def test_delete_directory_recursive(self, workspace, root):
        (root / "d" / "e").mkdir(parents=True)
        (root / "d" / "e" / "f.txt").write_text("x")
        await workspace.delete("d")
        assert not (root / "d").exists()

    @pytest.mark.asyncio
    async def test_delete_root_denied(self, workspace):
        with pytest.raises(AccessDeniedError, match="workspace root"):
            await workspace.delete(".")

    @pytest.mark.asyncio
    async def test_delete_restricted_denied(self, workspace, root):
        (root / ".git").mkdir()
        with pytest.raises(AccessDeniedError, match="cannot delete restricted"):
            await workspace.delete(".git")
        assert (root / ".git").exists()

    def test_root_is_realpath(self, tmp_path):
        real = tmp_path / "real"
        real.mkdir()
        os.symlink(real, tmp_path / "alias")
        ws = Workspace(tmp_path / "alias")
        assert ws.root == Path(os.path.realpath(real))
