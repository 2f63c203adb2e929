import os
import stat

import pytest

from flowkernel.errors import SecurityBlockedError, ValidationError
from flowkernel.security.file import (
    FileSecurityConfig,
    check_config_permissions,
    determine_permissions,
    is_sensitive_name,
)
from flowkernel.tools.file import FileTool, truncation_metadata


@pytest.fixture
def ten_lines(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("".join(f"line {i}\n" for i in range(1, 11)))
    return path


# =============================================================================
# Reads
# =============================================================================


async def test_line_window_with_offset_and_max_lines(ten_lines):
    tool = FileTool()
    result = await tool.execute(
        {"operation": "read", "path": str(ten_lines), "offset": 3, "max_lines": 4}
    )

    assert result["success"] is True
    assert result["content"] == "line 4\nline 5\nline 6\nline 7"
    assert result["metadata"] == {
        "truncated": True,
        "lines_shown": 4,
        "total_lines": 10,
        "start_line": 3,
        "end_line": 6,
        "more_content": True,
    }


async def test_window_reaching_end_is_not_truncated(ten_lines):
    result = await FileTool().execute(
        {"operation": "read", "path": str(ten_lines), "offset": 8, "max_lines": 5}
    )
    assert result["content"] == "line 9\nline 10"
    assert result["metadata"]["truncated"] is False
    assert result["metadata"]["more_content"] is False
    assert result["metadata"]["end_line"] == 9


async def test_offset_past_end_returns_empty_window(ten_lines):
    result = await FileTool().execute({"operation": "read", "path": str(ten_lines), "offset": 50})
    assert result["success"] is True
    assert result["content"] == ""
    assert result["metadata"]["lines_shown"] == 0
    assert "end_line" not in result["metadata"]


async def test_empty_file_window(tmp_path):
    path = tmp_path / "empty.txt"
    path.write_text("")
    result = await FileTool().execute(
        {"operation": "read", "path": str(path), "offset": 0, "max_lines": 10}
    )
    assert result["success"] is True
    assert result["content"] == ""
    assert result["metadata"]["lines_shown"] == 0
    assert result["metadata"]["total_lines"] == 0
    assert result["metadata"]["truncated"] is False


async def test_crlf_line_endings_are_stripped(tmp_path):
    path = tmp_path / "dos.txt"
    path.write_bytes(b"one\r\ntwo\r\nthree\r\n")
    result = await FileTool().execute({"operation": "read", "path": str(path), "max_lines": 2})
    assert result["content"] == "one\ntwo"


async def test_unlimited_read_returns_raw_content(ten_lines):
    result = await FileTool().execute({"operation": "read", "path": str(ten_lines)})
    assert result == {"success": True, "content": ten_lines.read_text()}


async def test_unlimited_read_enforces_size_limit(tmp_path):
    path = tmp_path / "big.txt"
    path.write_text("x" * 200)
    tool = FileTool(FileSecurityConfig(max_file_size=100))
    result = await tool.execute({"operation": "read", "path": str(path)})
    assert result["success"] is False
    assert "file too large" in result["error"]


async def test_missing_file_is_a_failure_map(tmp_path):
    result = await FileTool().execute({"operation": "read", "path": str(tmp_path / "absent.txt")})
    assert result["success"] is False
    assert "failed to read file" in result["error"]


@pytest.mark.parametrize(
    "inputs",
    [
        {"operation": "delete", "path": "/tmp/x"},
        {"operation": "read", "path": ""},
        {"operation": "read", "path": "/tmp/x", "offset": -1},
        {"operation": "read", "path": "/tmp/x", "max_lines": True},
        {"operation": "write", "path": "/tmp/x", "content": 12},
    ],
)
async def test_invalid_inputs_raise(inputs):
    with pytest.raises(ValidationError):
        await FileTool().execute(inputs)


# =============================================================================
# Writes
# =============================================================================


async def test_write_then_read_round_trip(tmp_path):
    path = tmp_path / "nested" / "out.txt"
    content = "héllo\nwörld\n"
    tool = FileTool()

    written = await tool.execute({"operation": "write", "path": str(path), "content": content})
    read = await tool.execute({"operation": "read", "path": str(path)})

    assert written["success"] is True
    assert written["bytes_written"] == len(content.encode("utf-8"))
    assert read["content"] == content
    assert path.read_bytes() == content.encode("utf-8")


async def test_write_uses_restrictive_modes(tmp_path):
    tool = FileTool()
    plain = tmp_path / "report.txt"
    secret = tmp_path / "api_key.txt"
    await tool.execute({"operation": "write", "path": str(plain), "content": "a"})
    await tool.execute({"operation": "write", "path": str(secret), "content": "b"})

    assert stat.S_IMODE(os.stat(plain).st_mode) == 0o640
    assert stat.S_IMODE(os.stat(secret).st_mode) == 0o600
    assert not [name for name in os.listdir(tmp_path) if name.startswith(".flowkernel-tmp-")]


async def test_write_over_size_limit_leaves_no_file(tmp_path):
    path = tmp_path / "out.txt"
    tool = FileTool(FileSecurityConfig(max_file_size=4))
    result = await tool.execute({"operation": "write", "path": str(path), "content": "too long"})
    assert result["success"] is False
    assert "content too large" in result["error"]
    assert not path.exists()


async def test_non_atomic_write(tmp_path):
    path = tmp_path / "plain.txt"
    tool = FileTool(FileSecurityConfig(atomic_writes=False))
    result = await tool.execute({"operation": "write", "path": str(path), "content": "data"})
    assert result["success"] is True
    assert path.read_text() == "data"


# =============================================================================
# Policy
# =============================================================================


async def test_denied_read_never_opens_file(tmp_path, monkeypatch):
    secret_dir = tmp_path / "secret"
    secret_dir.mkdir()
    target = secret_dir / "data.txt"
    target.write_text("classified")
    opened = []
    real_open = open

    def tracking_open(path, *args, **kwargs):
        opened.append(str(path))
        return real_open(path, *args, **kwargs)

    monkeypatch.setattr("builtins.open", tracking_open)
    tool = FileTool(FileSecurityConfig(denied_paths=[str(secret_dir)]))
    result = await tool.execute({"operation": "read", "path": str(target), "max_lines": 1})

    assert result == {"success": False, "error": "file access denied"}
    assert str(target) not in opened


async def test_write_outside_allowlist_is_a_failure_map(tmp_path):
    allowed = tmp_path / "allowed"
    allowed.mkdir()
    tool = FileTool(FileSecurityConfig(allowed_write_paths=[str(allowed)]))
    ok = await tool.execute({"operation": "write", "path": str(allowed / "a.txt"), "content": "x"})
    blocked = await tool.execute({"operation": "write", "path": str(tmp_path / "b.txt"), "content": "x"})
    assert ok["success"] is True
    assert blocked["success"] is False
    assert not (tmp_path / "b.txt").exists()


class TestFileSecurityConfig:
    def test_empty_allowlist_is_unrestricted(self, tmp_path):
        path = str(tmp_path / "any.txt")
        assert FileSecurityConfig().validate_path(path, "read") == os.path.realpath(path)

    def test_traversal_is_rejected(self, tmp_path):
        with pytest.raises(SecurityBlockedError, match="directory traversal"):
            FileSecurityConfig().validate_path(f"{tmp_path}/a/../b.txt", "read")

    def test_denied_wins_over_allowed(self, tmp_path):
        config = FileSecurityConfig(
            allowed_read_paths=[str(tmp_path)],
            denied_paths=[str(tmp_path / "private")],
        )
        with pytest.raises(SecurityBlockedError):
            config.validate_path(str(tmp_path / "private" / "x"), "read")
        assert config.validate_path(str(tmp_path / "public.txt"), "read")

    def test_allowlist_is_not_a_string_prefix_match(self, tmp_path):
        allowed = tmp_path / "data"
        sibling = tmp_path / "data-other"
        config = FileSecurityConfig(allowed_read_paths=[str(allowed)])
        with pytest.raises(SecurityBlockedError):
            config.validate_path(str(sibling / "x.txt"), "read")

    def test_symlink_is_resolved_before_allowlist_check(self, tmp_path):
        allowed = tmp_path / "allowed"
        outside = tmp_path / "outside"
        allowed.mkdir()
        outside.mkdir()
        (outside / "secret.txt").write_text("s")
        link = allowed / "link"
        link.symlink_to(outside)

        config = FileSecurityConfig(allowed_read_paths=[str(allowed)])
        with pytest.raises(SecurityBlockedError):
            config.validate_path(str(link / "secret.txt"), "read")

    def test_verbose_errors_name_the_reason(self, tmp_path):
        config = FileSecurityConfig(allowed_read_paths=[str(tmp_path / "a")], verbose_errors=True)
        with pytest.raises(SecurityBlockedError, match="path not in allowlist"):
            config.validate_path(str(tmp_path / "b.txt"), "read")

    def test_unknown_action(self, tmp_path):
        with pytest.raises(ValidationError):
            FileSecurityConfig().validate_path(str(tmp_path / "x"), "execute")


def test_sensitive_names_get_owner_only_permissions():
    assert is_sensitive_name("/etc/app/settings.yaml")
    assert is_sensitive_name("server.pem")
    assert not is_sensitive_name("report.txt")
    assert determine_permissions("credentials.json") == (0o600, 0o700)
    assert determine_permissions("report.txt") == (0o640, 0o750)


def test_check_config_permissions_flags_world_readable(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("x")
    os.chmod(path, 0o644)
    warnings = check_config_permissions(path)
    assert any("world-readable" in w for w in warnings)
    os.chmod(path, 0o600)
    assert check_config_permissions(path) == []
    assert check_config_permissions(tmp_path / "missing") == []


def test_truncation_metadata_for_full_window():
    assert truncation_metadata(0, 3, 3) == {
        "truncated": False,
        "lines_shown": 3,
        "total_lines": 3,
        "start_line": 0,
        "end_line": 2,
        "more_content": False,
    }
