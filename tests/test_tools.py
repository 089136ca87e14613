"""Tests for the tool registry: validation, confinement, confirmation and each tool."""

import json
import sys
import threading
from unittest.mock import patch

import pytest
from pydantic import BaseModel

from quill.cancel import CancellationToken
from quill.errors import PolicyViolation, TurnCancelled
from quill.gate import ConfirmationGate
from quill.tools import Confirmation, Tool, ToolCall, ToolRegistry, safe_resolve


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Answers:
    """Confirmation handler that replays canned answers and records requests."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.requests = []

    def __call__(self, pending):
        self.requests.append(pending)
        pending.resolve(self.answers.pop(0) if self.answers else True)


def _registry(root, *answers):
    handler = _Answers(*answers)
    return ToolRegistry(root, ConfirmationGate(handler, interactive=True)), handler


def _call(registry, name, /, token=None, **args):
    return registry.execute(ToolCall("call_1", name, json.dumps(args)), token)


# =========================================================================
# Registry
# =========================================================================


class TestRegistry:
    def test_builtin_names(self, tmp_path):
        reg, _ = _registry(tmp_path)
        assert reg.names() == [
            "read", "glob", "grep", "edit", "write", "bash", "webSearch", "webFetch"
        ]

    def test_schemas_are_openai_functions(self, tmp_path):
        reg, _ = _registry(tmp_path)
        schemas = {s["function"]["name"]: s for s in reg.schemas()}
        grep = schemas["grep"]["function"]["parameters"]
        assert schemas["grep"]["type"] == "function"
        assert "fileGlob" in grep["properties"]
        assert set(grep["required"]) == {"pattern", "fileGlob"}
        assert "title" not in grep

    def test_unknown_tool(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "delete_everything")
        assert not out.ok
        assert "Unknown tool" in out.error

    def test_bad_json(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = reg.execute(ToolCall("c", "read", "{not json"))
        assert "not valid JSON" in out.error

    def test_missing_field(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read")
        assert "Invalid arguments for read" in out.error
        assert "path" in out.error

    def test_extra_field_rejected(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path="a.txt", bogus=1)
        assert "bogus" in out.error

    def test_error_outcome_model_content(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path="missing.txt")
        assert json.loads(out.model_content()) == {"error": "File not found: missing.txt"}

    def test_unexpected_exception_becomes_error(self, tmp_path):
        reg, _ = _registry(tmp_path)
        with patch("quill.tools._is_binary", side_effect=RuntimeError("boom")):
            (tmp_path / "a.txt").write_text("x")
            out = _call(reg, "read", path="a.txt")
        assert out.error == "RuntimeError: boom"


class _TouchInput(BaseModel):
    name: str


class TestRegisteredTools:
    def _touch_tool(self, root, ran, describe=None):
        def execute(params, token):
            ran.append(params.name)
            (root / params.name).write_text("")
            return {"touched": params.name}

        return Tool("touch", "Create an empty file.", _TouchInput, True, execute, describe)

    def test_confirming_tool_denied_does_not_run(self, tmp_path):
        reg, handler = _registry(tmp_path, False)
        ran = []
        reg.register(self._touch_tool(tmp_path, ran))
        out = _call(reg, "touch", name="f.txt")
        assert len(handler.requests) == 1
        assert handler.requests[0].tool_name == "touch"
        assert handler.requests[0].description == "Run touch"
        assert ran == []
        assert not (tmp_path / "f.txt").exists()
        assert "User denied touch" in out.error

    def test_confirming_tool_approved_runs(self, tmp_path):
        reg, handler = _registry(tmp_path, True)
        ran = []
        reg.register(self._touch_tool(tmp_path, ran))
        out = _call(reg, "touch", name="f.txt")
        assert out.data == {"touched": "f.txt"}
        assert ran == ["f.txt"]
        assert len(handler.requests) == 1

    def test_describe_hook_supplies_prompt(self, tmp_path):
        reg, handler = _registry(tmp_path, True)
        describe = lambda params: Confirmation(f"Touch {params.name}", {"added": [], "removed": []})
        reg.register(self._touch_tool(tmp_path, [], describe))
        _call(reg, "touch", name="f.txt")
        assert handler.requests[0].description == "Touch f.txt"
        assert handler.requests[0].diff == {"added": [], "removed": []}

    def test_describe_failure_skips_gate_and_body(self, tmp_path):
        reg, handler = _registry(tmp_path, True)
        ran = []

        def describe(params):
            raise PolicyViolation(f"{params.name} is off limits")

        reg.register(self._touch_tool(tmp_path, ran, describe))
        out = _call(reg, "touch", name="f.txt")
        assert out.error == "f.txt is off limits"
        assert handler.requests == []
        assert ran == []

    def test_non_confirming_tool_never_asks(self, tmp_path):
        reg, handler = _registry(tmp_path)
        reg.register(Tool("echo", "Echo.", _TouchInput, False, lambda p, t: p.name))
        assert _call(reg, "echo", name="hi").data == "hi"
        assert handler.requests == []


class TestSafeResolve:
    def test_inside(self, tmp_path):
        assert safe_resolve("a/b.txt", tmp_path) == (tmp_path / "a" / "b.txt").resolve()

    def test_parent_escape(self, tmp_path):
        with pytest.raises(PolicyViolation, match="outside the working directory"):
            safe_resolve("../x", tmp_path)

    def test_absolute_outside(self, tmp_path):
        with pytest.raises(PolicyViolation):
            safe_resolve("/etc/passwd", tmp_path)

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks")
    def test_symlink_escape(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        root = tmp_path / "root"
        root.mkdir()
        (root / "link").symlink_to(outside)
        with pytest.raises(PolicyViolation):
            safe_resolve("link/file.txt", root)


# =========================================================================
# read / glob / grep
# =========================================================================


class TestRead:
    def test_whole_file(self, tmp_path):
        (tmp_path / "a.txt").write_text("one\ntwo\nthree")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path="a.txt")
        assert out.data == {"content": "one\ntwo\nthree", "lineCount": 3}

    def test_offset_limit(self, tmp_path):
        (tmp_path / "a.txt").write_text("\n".join(f"l{i}" for i in range(1, 11)))
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path="a.txt", offset=3, limit=2)
        assert out.data["content"] == "l3\nl4"
        assert out.data["lineCount"] == 10

    def test_large_file_warning(self, tmp_path):
        (tmp_path / "big.txt").write_text("x\n" * 600)
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path="big.txt")
        assert "Large file" in out.data["warning"]

    def test_offset_must_be_positive(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path="a.txt", offset=0)
        assert "offset" in out.error

    def test_binary_rejected(self, tmp_path):
        (tmp_path / "b.bin").write_bytes(b"abc\x00def")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path="b.bin")
        assert "binary" in out.error

    def test_dotenv_denied(self, tmp_path):
        (tmp_path / ".env.local").write_text("SECRET=1")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path=".env.local")
        assert "Access denied" in out.error

    def test_ssh_dir_denied(self, tmp_path):
        ssh = tmp_path / ".ssh"
        ssh.mkdir()
        (ssh / "id_rsa").write_text("key")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "read", path=".ssh/id_rsa")
        assert "Access denied" in out.error

    def test_read_outside_root_allowed(self, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        (other / "notes.txt").write_text("hi")
        root = tmp_path / "root"
        root.mkdir()
        reg, _ = _registry(root)
        out = _call(reg, "read", path=str(other / "notes.txt"))
        assert out.data["content"] == "hi"

    def test_no_confirmation(self, tmp_path):
        (tmp_path / "a.txt").write_text("x")
        reg, handler = _registry(tmp_path)
        _call(reg, "read", path="a.txt")
        assert handler.requests == []


class TestGlob:
    def test_recursive_sorted(self, tmp_path):
        (tmp_path / "src" / "pkg").mkdir(parents=True)
        (tmp_path / "src" / "b.py").write_text("")
        (tmp_path / "src" / "pkg" / "a.py").write_text("")
        (tmp_path / "README.md").write_text("")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "glob", pattern="**/*.py")
        assert out.data["files"] == ["src/b.py", "src/pkg/a.py"]
        assert out.data["count"] == 2
        assert out.data["truncated"] is False

    def test_hidden_skipped(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "config.py").write_text("")
        (tmp_path / ".hidden.py").write_text("")
        (tmp_path / "shown.py").write_text("")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "glob", pattern="**/*.py")
        assert out.data["files"] == ["shown.py"]

    def test_truncated(self, tmp_path):
        for i in range(205):
            (tmp_path / f"f{i:03}.txt").write_text("")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "glob", pattern="*.txt")
        assert len(out.data["files"]) == 200
        assert out.data["count"] == 205
        assert out.data["truncated"] is True

    def test_dotdot_pattern_rejected(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "glob", pattern="../*")
        assert "'..'" in out.error

    def test_path_outside_root(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "glob", pattern="*", path="..")
        assert "outside the working directory" in out.error


class TestGrep:
    def test_matches(self, tmp_path):
        (tmp_path / "a.py").write_text("import os\nx = 1\nimport sys\n")
        (tmp_path / "b.txt").write_text("import nothing\n")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "grep", pattern=r"^import", fileGlob="*.py")
        assert out.data["matches"] == [
            {"file": "a.py", "line": 1, "content": "import os"},
            {"file": "a.py", "line": 3, "content": "import sys"},
        ]
        assert out.data["count"] == 2

    def test_invalid_regex(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "grep", pattern="(", fileGlob="*")
        assert "Invalid regex" in out.error

    def test_file_glob_required(self, tmp_path):
        reg, _ = _registry(tmp_path)
        out = _call(reg, "grep", pattern="x")
        assert "fileGlob" in out.error

    def test_skips_binary(self, tmp_path):
        (tmp_path / "a.bin").write_bytes(b"needle\x00")
        (tmp_path / "a.txt").write_text("needle")
        reg, _ = _registry(tmp_path)
        out = _call(reg, "grep", pattern="needle", fileGlob="*")
        assert [m["file"] for m in out.data["matches"]] == ["a.txt"]


# =========================================================================
# edit / write
# =========================================================================


class TestEditTool:
    def test_approved(self, tmp_path):
        f = tmp_path / "a.py"
        f.write_text("x = 1\n")
        reg, handler = _registry(tmp_path, True)
        out = _call(reg, "edit", path="a.py", old_string="x = 1", new_string="x = 2")
        assert out.ok
        assert f.read_text() == "x = 2\n"
        assert "Edited a.py" in out.data["message"]
        req = handler.requests[0]
        assert req.tool_name == "edit"
        assert req.diff == {"removed": ["x = 1"], "added": ["x = 2"]}

    def test_denied_leaves_file(self, tmp_path):
        f = tmp_path / "a.py"
        f.write_text("x = 1\n")
        reg, _ = _registry(tmp_path, False)
        out = _call(reg, "edit", path="a.py", old_string="x = 1", new_string="x = 2")
        assert "User denied edit" in out.error
        assert f.read_text() == "x = 1\n"

    def test_ambiguous_never_asks(self, tmp_path):
        (tmp_path / "a.py").write_text("a\na\n")
        reg, handler = _registry(tmp_path)
        out = _call(reg, "edit", path="a.py", old_string="a", new_string="b")
        assert "matches 2 locations" in out.error
        assert handler.requests == []

    def test_outside_root_never_asks(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        (tmp_path / "x.txt").write_text("a")
        reg, handler = _registry(root)
        out = _call(reg, "edit", path="../x.txt", old_string="a", new_string="b")
        assert "outside the working directory" in out.error
        assert handler.requests == []


class TestWriteTool:
    def test_create(self, tmp_path):
        reg, handler = _registry(tmp_path, True)
        out = _call(reg, "write", path="new/file.txt", content="a\nb")
        assert out.data == {"message": "Wrote new/file.txt", "linesAdded": 2, "linesRemoved": 0}
        assert (tmp_path / "new" / "file.txt").read_text() == "a\nb"
        assert handler.requests[0].description == "Create new/file.txt (2 lines)"

    def test_overwrite_description(self, tmp_path):
        (tmp_path / "f.txt").write_text("a\nb")
        reg, handler = _registry(tmp_path, True)
        _call(reg, "write", path="f.txt", content="a\nc")
        assert handler.requests[0].description == "Overwrite f.txt (+1 / -1 lines)"

    def test_denied(self, tmp_path):
        reg, _ = _registry(tmp_path, False)
        out = _call(reg, "write", path="f.txt", content="x")
        assert not out.ok
        assert not (tmp_path / "f.txt").exists()

    def test_cancel_during_confirmation(self, tmp_path):
        token = CancellationToken()
        gate = ConfirmationGate(lambda p: threading.Timer(0.05, token.cancel).start(), interactive=True)
        reg = ToolRegistry(tmp_path, gate)
        with pytest.raises(TurnCancelled):
            _call(reg, "write", token=token, path="f.txt", content="x")
        assert not (tmp_path / "f.txt").exists()


# =========================================================================
# bash
# =========================================================================


@pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")
class TestBashTool:
    def test_runs_after_approval(self, tmp_path):
        reg, handler = _registry(tmp_path, True)
        out = _call(reg, "bash", command="echo hi")
        assert out.data == {"stdout": "hi\n", "stderr": "", "exitCode": 0}
        assert handler.requests[0].description == "echo hi"

    def test_denied_not_run(self, tmp_path):
        reg, _ = _registry(tmp_path, False)
        out = _call(reg, "bash", command=f"touch {tmp_path / 'ran'}")
        assert "User denied bash" in out.error
        assert not (tmp_path / "ran").exists()

    def test_blocked_never_asks(self, tmp_path):
        reg, handler = _registry(tmp_path)
        out = _call(reg, "bash", command="rm -rf /")
        assert "blocked by security policy" in out.error
        assert handler.requests == []

    def test_model_output_truncated_display_full(self, tmp_path):
        reg, _ = _registry(tmp_path, True)
        out = _call(reg, "bash", command="seq 1 300")
        assert "lines truncated" in out.data["stdout"]
        assert "lines truncated" not in out.display
        assert out.display.splitlines()[-1] == "300"

    def test_nonzero_exit_is_result(self, tmp_path):
        reg, _ = _registry(tmp_path, True)
        out = _call(reg, "bash", command="exit 4")
        assert out.ok
        assert out.data["exitCode"] == 4


# =========================================================================
# web tools
# =========================================================================


class TestWebTools:
    def test_search_delegates(self, tmp_path):
        reg, _ = _registry(tmp_path)
        fake = {"query": "q", "results": []}
        with patch("quill.fetch.search_web", return_value=fake) as m:
            out = _call(reg, "webSearch", token=CancellationToken(), query="q", limit=3)
        m.assert_called_once_with("q", 3)
        assert out.data == fake

    def test_fetch_failure_is_tool_error(self, tmp_path):
        from quill.errors import ToolFailure

        reg, _ = _registry(tmp_path)
        with patch("quill.fetch.fetch_page", side_effect=ToolFailure("HTTP 404")):
            out = _call(reg, "webFetch", url="https://example.com/missing")
        assert out.error == "HTTP 404"
