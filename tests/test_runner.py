from pathlib import Path
from typing import Dict, List

import pytest

from aidigest import (
    MB,
    ConfigError,
    DigestConfig,
    DigestRunner,
    FileDispatcher,
    BlockFormatter,
    OutputMode,
)

PNG_HEADER = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"


def _make_tree(root: Path, files: Dict[str, bytes]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)


def _config(tmp_path: Path, **overrides) -> DigestConfig:
    options = dict(
        input_dir=tmp_path / "project",
        output_file=tmp_path / "out" / "codebase.md",
    )
    options.update(overrides)
    options["input_dir"].mkdir(parents=True, exist_ok=True)
    return DigestConfig(**options)


def _assert_counts_balance(stats) -> None:
    assert stats.included_count + stats.ignored_count + stats.error_count == stats.total_files


def test_whitespace_removal_respects_sensitive_extensions(tmp_path: Path):
    config = _config(tmp_path, remove_whitespace=True)
    _make_tree(config.input_dir, {"a.py": b"x  y", "b.txt": b"x    y"})

    stats = DigestRunner(config).run()

    output = config.output_file.read_text(encoding="utf-8")
    assert "# a.py\n\n```py\nx  y\n```\n\n" in output
    assert "# b.txt\n\n```txt\nx y\n```\n\n" in output
    assert stats.included_count == 2
    _assert_counts_balance(stats)


def test_svg_is_rendered_as_text(tmp_path: Path):
    config = _config(tmp_path)
    svg = '<svg xmlns="http://www.w3.org/2000/svg"><circle r="4"/></svg>'
    _make_tree(config.input_dir, {"logo.svg": svg.encode("utf-8")})

    stats = DigestRunner(config).run()

    output = config.output_file.read_text(encoding="utf-8")
    assert output == f"# logo.svg\n\n```svg\n{svg}\n```\n\n"
    assert stats.binary_count == 0


def test_default_ignores_skip_node_modules(tmp_path: Path):
    config = _config(tmp_path)
    _make_tree(config.input_dir, {
        "node_modules/pkg/index.js": b"module.exports = {}",
        "src/index.js": b"console.log('hi')",
    })

    stats = DigestRunner(config).run()

    assert stats.ignored_count >= 1
    assert "node_modules/pkg/index.js" not in stats.included_files
    assert stats.included_files == ["src/index.js"]
    assert "node_modules" not in config.output_file.read_text(encoding="utf-8")


def test_disabling_default_ignores_includes_everything(tmp_path: Path):
    config = _config(tmp_path, use_default_ignores=False)
    _make_tree(config.input_dir, {"node_modules/pkg/index.js": b"module.exports = {}"})

    stats = DigestRunner(config).run()

    assert stats.included_files == ["node_modules/pkg/index.js"]
    assert stats.ignored_count == 0


def test_custom_patterns_are_applied(tmp_path: Path):
    config = _config(tmp_path, ignore_patterns=("*.log", "secrets/"))
    _make_tree(config.input_dir, {
        "app.log": b"noise",
        "secrets/token.txt": b"hunter2",
        "main.c": b"int main(void) { return 0; }",
    })

    stats = DigestRunner(config).run()

    assert stats.included_files == ["main.c"]
    assert stats.ignored_count == 2


def test_counts_balance_with_binaries_and_failures(tmp_path: Path):
    config = _config(tmp_path)
    _make_tree(config.input_dir, {
        "good.txt": b"hello",
        "pixel.png": PNG_HEADER,
        "blob.dat": b"\x00\x01\x02\x03",
        "broken.txt": b"abc\xffdef",
        "package-lock.json": b"{}",
    })

    stats = DigestRunner(config).run()

    assert stats.total_files == 5
    assert stats.included_count == 3
    assert stats.binary_count == 2
    assert stats.error_count == 1
    assert stats.ignored_count == 1
    assert sorted(stats.included_files) == ["blob.dat", "good.txt", "pixel.png"]
    assert stats.total_size == len(b"hello") + len(PNG_HEADER) + 4
    _assert_counts_balance(stats)

    output = config.output_file.read_text(encoding="utf-8")
    assert "# pixel.png\n\nThis is a binary file of type: `Image`\n\n" in output
    assert "# blob.dat\n\nThis is a binary file of type: `Binary`\n\n" in output
    assert "broken.txt" not in output


def test_empty_directory_single_mode(tmp_path: Path):
    config = _config(tmp_path)

    stats = DigestRunner(config).run()

    assert config.output_file.is_file()
    assert config.output_file.read_bytes() == b""
    assert stats.total_files == 0


def test_empty_directory_split_mode(tmp_path: Path):
    config = _config(tmp_path, output_mode=OutputMode.SPLIT)

    runner = DigestRunner(config)
    stats = runner.run()

    assert stats.total_files == 0
    assert stats.artifact_count == 0
    assert runner.artifact_paths() == []
    assert list(config.output_file.parent.iterdir()) == []


def test_split_mode_respects_ceiling(tmp_path: Path):
    config = _config(tmp_path, output_mode=OutputMode.SPLIT, max_file_size=MB)
    _make_tree(config.input_dir, {
        "half.txt": b"a" * (MB // 2),
        "bigger.txt": b"b" * int(MB * 0.6),
        "small.txt": b"c" * int(MB * 0.2),
    })

    runner = DigestRunner(config)
    stats = runner.run()

    paths = runner.artifact_paths()
    assert len(paths) >= 2
    assert stats.artifact_count == len(paths)
    for path in paths:
        assert path.read_bytes()[:3] == b"\xef\xbb\xbf"
        assert path.stat().st_size - 3 <= MB
    assert sum(size for _, size in stats.artifacts) == sum(p.stat().st_size for p in paths)
    assert stats.largest_artifact_size >= stats.smallest_artifact_size
    assert stats.average_artifact_size == sum(size for _, size in stats.artifacts) // len(paths)


def test_split_mode_every_file_lands_in_exactly_one_part(tmp_path: Path):
    config = _config(tmp_path, output_mode=OutputMode.SPLIT, max_file_size=200)
    files = {f"file{i}.txt": (f"content {i} " * 10).encode("utf-8") for i in range(12)}
    _make_tree(config.input_dir, files)

    runner = DigestRunner(config)
    stats = runner.run()

    combined = "".join(p.read_text(encoding="utf-8-sig") for p in runner.artifact_paths())
    for name in files:
        assert combined.count(f"# {name}\n") == 1
    assert stats.included_count == 12


def test_invalid_config_fails_before_any_output(tmp_path: Path):
    config = _config(tmp_path, max_file_size=0)
    with pytest.raises(ConfigError):
        DigestRunner(config)
    assert not config.output_file.exists()


@pytest.mark.parametrize(
    "overrides",
    [
        {"chunk_size": 0},
        {"workers": 0},
        {"output_pattern": "part.md"},
        {"output_pattern": "part_%d_%d.md"},
    ],
)
def test_config_validation(tmp_path: Path, overrides):
    with pytest.raises(ConfigError):
        _config(tmp_path, **overrides).validate()


def test_traversal_error_propagates(tmp_path: Path):
    config = DigestConfig(tmp_path / "missing", tmp_path / "out" / "codebase.md")
    with pytest.raises(OSError):
        DigestRunner(config).run()


class _FailingWriter:
    def __init__(self):
        self.closed = False

    def write(self, block: str) -> None:
        raise OSError("disk full")

    def close(self) -> None:
        self.closed = True

    def artifact_paths(self) -> List[Path]:
        return []


def test_write_failure_aborts_run_and_still_closes_writer(tmp_path: Path):
    config = _config(tmp_path)
    _make_tree(config.input_dir, {"a.txt": b"a", "b.txt": b"b"})
    runner = DigestRunner(config)
    runner.writer.close()
    failing = _FailingWriter()
    runner.writer = failing

    with pytest.raises(OSError, match="disk full"):
        runner.run()
    assert failing.closed


def test_dispatcher_isolates_per_file_errors(tmp_path: Path):
    _make_tree(tmp_path, {"ok.txt": b"fine", "bad.txt": b"\xff\xfe\xfd invalid"})
    dispatcher = FileDispatcher(tmp_path, BlockFormatter(), workers=2)

    results = {r.relative_path: r for r in dispatcher.process(["ok.txt", "bad.txt", "gone.txt"])}

    assert set(results) == {"ok.txt", "bad.txt", "gone.txt"}
    assert results["ok.txt"].error is None
    assert results["ok.txt"].content == "# ok.txt\n\n```txt\nfine\n```\n\n"
    assert results["ok.txt"].size == 4
    assert isinstance(results["gone.txt"].error, OSError)
    assert results["bad.txt"].error is not None
    assert results["bad.txt"].content == ""


def test_dispatcher_with_no_paths(tmp_path: Path):
    assert list(FileDispatcher(tmp_path, BlockFormatter()).process([])) == []


def test_inline_svg_markup_in_other_files_is_kept(tmp_path: Path):
    config = _config(tmp_path)
    markup = '<svg xmlns="http://www.w3.org/2000/svg"><path d="M0"/></svg>'
    _make_tree(config.input_dir, {"icon.html": markup.encode("utf-8")})

    stats = DigestRunner(config).run()

    output = config.output_file.read_text(encoding="utf-8")
    assert output == f"# icon.html\n\n```html\n{markup}\n```\n\n"
    assert stats.binary_count == 0


def test_split_rerun_skips_previous_parts_inside_input(tmp_path: Path):
    project = tmp_path / "project"
    _make_tree(project, {"a.txt": b"alpha"})
    config = DigestConfig(project, project / "codebase.md", output_mode=OutputMode.SPLIT)

    DigestRunner(config).run()
    assert (project / "codebase_part1.md").is_file()

    stats = DigestRunner(config).run()

    assert stats.included_files == ["a.txt"]
    assert stats.ignored_count == 1
