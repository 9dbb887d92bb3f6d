import io
from pathlib import Path

import pytest
from rich.console import Console

from deckhand.config import Config
from deckhand.exceptions import ToolExecutionError, ToolValidationError
from deckhand.tools import FsRead, ToolContext


def make_ctx(tmp_path: Path) -> ToolContext:
    return ToolContext(cwd=tmp_path, config=Config())


def quiet() -> Console:
    return Console(file=io.StringIO())


@pytest.mark.asyncio
async def test_reads_whole_file_relative_to_cwd(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("one\ntwo\nthree\n", encoding="utf-8")
    tool = FsRead(path="notes.txt")

    await tool.validate(make_ctx(tmp_path))
    output = await tool.invoke(make_ctx(tmp_path), quiet())

    assert output.kind == "text"
    assert output.text == "one\ntwo\nthree"


@pytest.mark.asyncio
async def test_reads_line_range_and_negative_lines(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("a\nb\nc\nd\ne\n", encoding="utf-8")
    ctx = make_ctx(tmp_path)

    middle = await FsRead(path="notes.txt", start_line=2, end_line=3).invoke(ctx, quiet())
    tail = await FsRead(path="notes.txt", start_line=-2).invoke(ctx, quiet())

    assert middle.text == "b\nc"
    assert tail.text == "d\ne"


@pytest.mark.asyncio
async def test_start_after_end_is_an_execution_error(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("a\nb\nc\n", encoding="utf-8")

    with pytest.raises(ToolExecutionError):
        await FsRead(path="notes.txt", start_line=3, end_line=1).invoke(make_ctx(tmp_path), quiet())


@pytest.mark.asyncio
async def test_validate_reports_missing_and_mismatched_paths(tmp_path: Path):
    (tmp_path / "dir").mkdir()
    (tmp_path / "file.txt").write_text("x", encoding="utf-8")
    ctx = make_ctx(tmp_path)

    with pytest.raises(ToolValidationError, match="does not exist"):
        await FsRead(path="missing.txt").validate(ctx)
    with pytest.raises(ToolValidationError, match="is not a file"):
        await FsRead(path="dir").validate(ctx)
    with pytest.raises(ToolValidationError, match="is not a directory"):
        await FsRead(path="file.txt", mode="Directory").validate(ctx)


@pytest.mark.asyncio
async def test_lists_directory_to_requested_depth(tmp_path: Path):
    (tmp_path / "pkg" / "sub").mkdir(parents=True)
    (tmp_path / "pkg" / "a.py").write_text("", encoding="utf-8")
    (tmp_path / "pkg" / "sub" / "b.py").write_text("", encoding="utf-8")
    ctx = make_ctx(tmp_path)

    shallow = await FsRead(path="pkg", mode="Directory").invoke(ctx, quiet())
    deep = await FsRead(path="pkg", mode="Directory", depth=1).invoke(ctx, quiet())

    assert "a.py" in shallow.text
    assert "b.py" not in shallow.text
    assert "b.py" in deep.text


@pytest.mark.asyncio
async def test_output_larger_than_budget_is_refused(tmp_path: Path):
    (tmp_path / "big.txt").write_text("x" * 200, encoding="utf-8")
    config = Config()
    config.context.max_tool_response_size = 100

    with pytest.raises(ToolExecutionError, match="100 characters"):
        await FsRead(path="big.txt").invoke(ToolContext(cwd=tmp_path, config=config), quiet())


def test_fs_read_is_read_only_and_describes_itself(tmp_path: Path):
    console = quiet()
    FsRead(path="notes.txt", start_line=2, end_line=4).queue_description(make_ctx(tmp_path), console)

    assert FsRead.read_only is True
    assert "Reading file: notes.txt from line 2 to 4" in console.file.getvalue()
