from deckhand.tools.registry import (
    extract_shell_base_commands,
    path_matches_any,
    shell_pattern_matches,
    split_shell_segments,
)


def test_split_shell_segments_on_operators():
    assert split_shell_segments("git add . && git commit -m 'x y' | cat") == [
        ["git", "add", "."],
        ["git", "commit", "-m", "x y"],
        ["cat"],
    ]


def test_extract_base_commands_skips_wrappers_and_assignments():
    assert extract_shell_base_commands("sudo FOO=1 make install; time ./run.sh") == ["make", "./run.sh"]
    assert extract_shell_base_commands("") == []


def test_shell_pattern_matches_segments_and_basenames():
    assert shell_pattern_matches("cd src && rm -rf build", "rm *")
    assert shell_pattern_matches("/usr/bin/curl example.com", "curl")
    assert not shell_pattern_matches("ls -la", "rm *")


def test_path_matches_any_covers_directories_and_globs():
    assert path_matches_any("docs/guide.md", ["docs"])
    assert path_matches_any("src/app.py", ["src/*.py"])
    assert not path_matches_any("src/app.py", ["docs/**"])
    assert not path_matches_any("src/app.py", [])
