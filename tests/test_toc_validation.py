import logging
from pathlib import Path

import md2pages.cli as cli
import md2pages.core as core


def _create_source_dir(tmp_path: Path, *, documents: dict) -> Path:
    source_dir = tmp_path / "src"
    source_dir.mkdir(parents=True, exist_ok=True)
    for name, text in documents.items():
        path = source_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return source_dir


FENCED_HEADING_DOC = (
    "# Install\n\n"
    "```bash\n"
    "# comment inside code\n"
    "pip install md2pages\n"
    "```\n\n"
    "## Usage\n"
)


def test_parse_toc_markup_reads_back_levels_titles_and_anchors():
    toc = core.build_toc_markup(core.extract_headings("# One\n## Two & more\n### Three\n"))
    assert core.parse_toc_markup(toc) == [
        [1, "One", "One"],
        [2, "Two & more", "Two-more"],
        [3, "Three", "Three"],
    ]


def test_parse_toc_markup_on_empty_input():
    assert core.parse_toc_markup("") == []


def test_validate_toc_anchors_passes_for_rendered_document():
    rendered = core.render_document("# Hello, World! 你好\n\n## Details\n")
    result = core.validate_toc_anchors(rendered.toc_html, rendered.body_html)

    assert result.ok
    assert result.missing == []
    assert result.toc_count == 2
    assert result.body_anchors == ["Hello-World-你好", "Details"]
    assert result.reason == ""


def test_validate_toc_anchors_reports_heading_lines_inside_code_blocks():
    rendered = core.render_document(FENCED_HEADING_DOC)
    result = core.validate_toc_anchors(rendered.toc_html, rendered.body_html)

    assert not result.ok
    assert result.toc_anchors == ["Install", "comment-inside-code", "Usage"]
    assert result.missing == [(1, "comment inside code", "comment-inside-code")]
    assert "#comment-inside-code" in result.reason


def test_validate_toc_anchors_ignores_empty_anchors():
    rendered = core.render_document("# ???\n")
    result = core.validate_toc_anchors(rendered.toc_html, rendered.body_html)
    assert result.ok
    assert result.toc_anchors == [""]


def test_log_anchor_validation_result_logs_error_on_mismatch(monkeypatch, caplog):
    monkeypatch.setattr(core.LOG, "propagate", True)
    caplog.set_level(logging.INFO, logger="md2pages")

    rendered = core.render_document(FENCED_HEADING_DOC)
    result = core.validate_toc_anchors(rendered.toc_html, rendered.body_html)
    core.log_anchor_validation_result(result, Path("guide.md"), verbose=True, debug=False)

    errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "Anchor mismatch in guide.md" in errors[0]
    infos = [r.getMessage() for r in caplog.records if r.levelno == logging.INFO]
    assert '[2] FAIL | TOC="#comment-inside-code"' in infos
    assert '[1] OK | TOC="#Install"' in infos


def test_cli_returns_exit_code_10_on_anchor_mismatch_when_strict(tmp_path):
    source_dir = _create_source_dir(tmp_path, documents={"guide.md": FENCED_HEADING_DOC})
    out_dir = tmp_path / "out"

    assert cli.main(["--from-dir", str(source_dir), "--to-dir", str(out_dir), "--strict-anchors"]) == 10
    assert (out_dir / "guide.html").exists()


def test_cli_succeeds_on_anchor_mismatch_without_strict(tmp_path):
    source_dir = _create_source_dir(tmp_path, documents={"guide.md": FENCED_HEADING_DOC})
    out_dir = tmp_path / "out"

    assert cli.main(["--from-dir", str(source_dir), "--to-dir", str(out_dir)]) == 0


def test_run_build_pipeline_collects_anchor_failures(tmp_path):
    source_dir = _create_source_dir(
        tmp_path,
        documents={"guide.md": FENCED_HEADING_DOC, "ok.md": "# Fine\n"},
    )
    config = core.BuildConfig(from_dir=source_dir, to_dir=tmp_path / "out")

    result = core.run_build_pipeline(config)

    assert [path.name for path, _ in result.anchor_failures] == ["guide.md"]
    assert sorted(p.name for p in result.pages) == ["guide.html", "ok.html"]
