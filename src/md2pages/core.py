"""Core pipeline for md2pages."""

from __future__ import annotations

import html
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Set, Tuple

import markdown
from markdown.blockprocessors import HashHeaderProcessor, SetextHeaderProcessor
from markdown.extensions import Extension

LOG = logging.getLogger("md2pages")

CSS_HREF_ENV = "MD2PAGES_CSS_HREF"
DEFAULT_CSS_HREF = "/css/github-markdown.min.css"
DEFAULT_TOC_TITLE = "目录"
DEFAULT_LANG = "zh-CN"
DEFAULT_EXCLUDES = frozenset({".git", ".github", "node_modules", "__pycache__"})
DOCUMENT_SUFFIXES = frozenset({".md", ".markdown"})

MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "nl2br", "sane_lists"]

HEADING_LINE_RE = re.compile(r"^(#{1,6})\s+(.+)$")
# Word characters, Han ideographs, whitespace and hyphens survive.
ANCHOR_STRIP_RE = re.compile(r"[^\w\s\-\u4e00-\u9fa5]")
WHITESPACE_RUN_RE = re.compile(r"\s+")
LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")

TOC_WRAPPER_STYLE = "background: #f5f5f5; padding: 1rem; border-radius: 4px; margin-bottom: 2rem;"
TOC_TITLE_STYLE = "margin-top: 0;"
TOC_ROOT_LIST_STYLE = "list-style: none; padding-left: 0;"
TOC_NESTED_LIST_STYLE = "list-style: none; padding-left: 1.5rem;"
TOC_LINK_STYLE = "text-decoration: none; color: #0366d6;"

PAGE_STYLE = """
  body {
    width: 100%;
    margin: 0;
    padding: 0;
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
    line-height: 1.6;
    background: #fff;
    color: #333;
  }
  .markdown-body {
    width: 100%;
    max-width: 800px;
    margin: 0 auto;
    padding: 1rem;
    box-sizing: border-box;
    background: #fff !important;
    color: #333 !important;
  }
  h1, h2, h3 {
    font-size: 1.8rem;
    border-bottom: 1px solid #eee;
    padding-bottom: 0.3rem;
    color: #222 !important;
  }
  p {
    font-size: 1rem;
    line-height: 1.8;
  }
  code {
    font-size: 0.9rem;
    background: #f5f5f5 !important;
    padding: 0.2rem 0.4rem;
    border-radius: 4px;
    color: #333 !important;
  }
  pre {
    font-size: 0.9rem;
    background: #f5f5f5 !important;
    padding: 1rem;
    border-radius: 4px;
    overflow-x: auto;
    color: #333 !important;
  }
  blockquote {
    font-size: 0.95rem;
    border-left: 4px solid #eee;
    padding-left: 1rem;
    color: #666 !important;
  }
"""


@dataclass(frozen=True)
class Heading:
    level: int
    text: str
    id: str


@dataclass
class RenderedDocument:
    headings: List[Heading]
    toc_html: str
    body_html: str


@dataclass
class AnchorValidationResult:
    ok: bool
    toc_anchors: List[str]
    body_anchors: List[str]
    missing: List[Tuple[int, str, str]]
    toc_count: int
    reason: str


@dataclass
class BuildConfig:
    from_dir: Path
    to_dir: Path
    exclude: Set[str] = field(default_factory=lambda: set(DEFAULT_EXCLUDES))
    toc_title: str = DEFAULT_TOC_TITLE
    css_href: str = DEFAULT_CSS_HREF
    lang: str = DEFAULT_LANG
    disable_toc: bool = False
    strict_anchors: bool = False
    verbose: bool = False
    debug: bool = False


@dataclass
class BuildResult:
    pages: List[Path]
    copied: List[Path]
    anchor_failures: List[Tuple[Path, AnchorValidationResult]]


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_md2pages_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_md2pages_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = int((clamped / total) * width)
    filled = min(filled, width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="\n")


def derive_anchor_id(text: str) -> str:
    """Derive the anchor id for a heading text.

    Punctuation and symbols are removed, whitespace runs become a single
    hyphen. Case is preserved and duplicates are not disambiguated, so the
    same text always yields the same id.
    """
    stripped = ANCHOR_STRIP_RE.sub("", text or "")
    return WHITESPACE_RUN_RE.sub("-", stripped)


def parse_heading_line(line: str) -> Optional[Heading]:
    match = HEADING_LINE_RE.match(line)
    if not match:
        return None
    text = match.group(2).strip()
    if not text:
        return None
    return Heading(level=len(match.group(1)), text=text, id=derive_anchor_id(text))


def extract_headings(document_text: str) -> List[Heading]:
    headings: List[Heading] = []
    for line in LINE_BREAK_RE.split(document_text or ""):
        heading = parse_heading_line(line)
        if heading is not None:
            headings.append(heading)
    return headings


def build_toc_markup(headings: Iterable[Heading], title: str = DEFAULT_TOC_TITLE) -> str:
    """Render headings as a nested list of anchor links.

    Returns an empty string when there are no headings. Nesting starts from
    level 1 whatever the first heading's level is, and each level of difference
    opens or closes one ``<ul>``.
    """
    items: List[str] = []
    last_level = 1

    for heading in headings:
        if heading.level > last_level:
            items.extend(f'<ul style="{TOC_NESTED_LIST_STYLE}">' for _ in range(last_level, heading.level))
        elif heading.level < last_level:
            items.extend("</ul>" for _ in range(heading.level, last_level))
        label = html.escape(heading.text, quote=False)
        items.append(f'<li><a href="#{heading.id}" style="{TOC_LINK_STYLE}">{label}</a></li>')
        last_level = heading.level

    if not items:
        return ""

    items.extend("</ul>" for _ in range(1, last_level))
    return (
        f'<div class="toc" style="{TOC_WRAPPER_STYLE}">'
        f'<h3 style="{TOC_TITLE_STYLE}">{html.escape(title, quote=False)}</h3>'
        f'<ul style="{TOC_ROOT_LIST_STYLE}">' + "".join(items) + "</ul></div>"
    )


class AnchoredHashHeaderProcessor(HashHeaderProcessor):
    """Hash header processor that sets ``id`` from the shared heading parser."""

    def run(self, parent, blocks):
        match = self.RE.search(blocks[0])
        heading = parse_heading_line(match.group(0).strip("\n")) if match else None
        result = super().run(parent, blocks)
        if heading is not None and heading.id and len(parent):
            element = parent[-1]
            if element.tag == f"h{heading.level}":
                element.set("id", heading.id)
        return result


class AnchoredSetextHeaderProcessor(SetextHeaderProcessor):
    # Underlined headings are not listed in the TOC but stay linkable.
    def run(self, parent, blocks):
        anchor = derive_anchor_id(blocks[0].split("\n", 1)[0].strip())
        result = super().run(parent, blocks)
        if anchor and len(parent) and parent[-1].tag in ("h1", "h2"):
            parent[-1].set("id", anchor)
        return result


class HeadingAnchorExtension(Extension):
    def extendMarkdown(self, md):
        md.parser.blockprocessors.register(AnchoredHashHeaderProcessor(md.parser), "hashheader", 70)
        md.parser.blockprocessors.register(AnchoredSetextHeaderProcessor(md.parser), "setextheader", 60)


def render_markdown(document_text: str) -> str:
    md = markdown.Markdown(extensions=[*MARKDOWN_EXTENSIONS, HeadingAnchorExtension()])
    return md.convert(document_text or "")


def render_document(
    document_text: str, *, toc_title: str = DEFAULT_TOC_TITLE, disable_toc: bool = False
) -> RenderedDocument:
    headings = extract_headings(document_text)
    toc_html = "" if disable_toc else build_toc_markup(headings, title=toc_title)
    body_html = render_markdown(document_text)
    return RenderedDocument(headings=headings, toc_html=toc_html, body_html=body_html)


def render_documents(texts: Iterable[str], *, toc_title: str = DEFAULT_TOC_TITLE) -> Iterator[Tuple[str, str]]:
    for text in texts:
        rendered = render_document(text, toc_title=toc_title)
        yield rendered.toc_html, rendered.body_html


def parse_toc_markup(toc_html: str) -> List[List[Any]]:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup(toc_html or "", "html.parser")
    root_ul = soup.find("ul")
    entries: List[List[Any]] = []

    def walk_list(ul, level: int) -> None:
        for child in ul.find_all(["li", "ul"], recursive=False):
            if child.name == "ul":
                walk_list(child, level + 1)
                continue
            link = child.find("a", recursive=False)
            if link is None:
                continue
            href = link.get("href") or ""
            anchor = href.split("#", 1)[1] if "#" in href else ""
            entries.append([level, link.get_text(), anchor])

    if root_ul is not None:
        walk_list(root_ul, 1)
    return entries


def collect_heading_ids(body_html: str) -> List[str]:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup(body_html or "", "html.parser")
    return [tag["id"] for tag in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]) if tag.get("id")]


def validate_toc_anchors(toc_html: str, body_html: str) -> AnchorValidationResult:
    entries = parse_toc_markup(toc_html)
    body_anchors = collect_heading_ids(body_html)
    known = set(body_anchors)

    toc_anchors = [str(entry[2]) for entry in entries]
    missing: List[Tuple[int, str, str]] = []
    for idx, (_, title, anchor) in enumerate(entries):
        if anchor and anchor not in known:
            missing.append((idx, str(title), str(anchor)))

    ok = not missing
    reason = ""
    if not ok:
        first = missing[0]
        reason = f"TOC entry {first[0] + 1} '{first[1]}' links to missing anchor '#{first[2]}'"

    return AnchorValidationResult(
        ok=ok,
        toc_anchors=toc_anchors,
        body_anchors=body_anchors,
        missing=missing,
        toc_count=len(entries),
        reason=reason,
    )


def log_anchor_validation_result(
    result: AnchorValidationResult, source: Path, *, verbose: bool, debug: bool
) -> None:
    if result.ok:
        if verbose:
            LOG.info("Anchor validation passed for %s (%d entries)", source, result.toc_count)
        return

    LOG.error(
        "Anchor mismatch in %s (%d of %d TOC entries unresolved) | %s",
        source,
        len(result.missing),
        result.toc_count,
        result.reason,
    )

    if verbose:
        missing_idx = {idx for idx, _, _ in result.missing}
        for idx, anchor in enumerate(result.toc_anchors):
            status = "OK" if idx not in missing_idx else "FAIL"
            LOG.info("[%d] %s | TOC=\"#%s\"", idx + 1, status, anchor or "<empty>")

    if debug:
        LOG.debug("Heading ids in rendered body (%d): %s", len(result.body_anchors), result.body_anchors)


def render_page_html(
    title: str,
    toc_html: str,
    body_html: str,
    *,
    css_href: str = DEFAULT_CSS_HREF,
    lang: str = DEFAULT_LANG,
) -> str:
    return f"""<!DOCTYPE html>
<html lang="{html.escape(lang)}">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0, maximum-scale=1.0, user-scalable=no">
  <title>{html.escape(title, quote=False)}</title>
  <link rel="stylesheet" href="{html.escape(css_href)}">
<style>{PAGE_STYLE}</style>
</head>
<body>
  <div class="markdown-body">{toc_html}{body_html}</div>
</body>
</html>
"""


def is_document(path: Path) -> bool:
    return path.suffix.lower() in DOCUMENT_SUFFIXES


def output_path_for(source: Path, from_dir: Path, to_dir: Path) -> Path:
    relative = source.relative_to(from_dir)
    if is_document(source):
        return to_dir / relative.parent / f"{source.stem}.html"
    return to_dir / relative


def paths_overlap(to_dir: Path, from_dir: Path) -> bool:
    to_resolved = to_dir.resolve()
    from_resolved = from_dir.resolve()
    return to_resolved == from_resolved or to_resolved in from_resolved.parents


def prepare_output_dir(to_dir: Path, from_dir: Path) -> None:
    if paths_overlap(to_dir, from_dir):
        raise RuntimeError(f"Output directory must not contain the source directory: {to_dir}")
    if to_dir.exists():
        if not to_dir.is_dir():
            raise RuntimeError(f"Output path is not a directory: {to_dir}")
        try:
            for child in to_dir.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        except OSError as exc:
            raise RuntimeError(f"Unable to clear output directory {to_dir}: {exc}") from exc
        LOG.debug("Cleared output directory: %s", to_dir)
    try:
        to_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RuntimeError(f"Unable to create output directory {to_dir}: {exc}") from exc


def collect_source_tree(from_dir: Path, exclude: Set[str], skip: Optional[Path] = None) -> Tuple[List[Path], List[Path]]:
    directories: List[Path] = []
    files: List[Path] = []
    skip_resolved = skip.resolve() if skip is not None else None
    visited: Set[Path] = {from_dir.resolve()}

    def walk(current: Path) -> None:
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            raise RuntimeError(f"Unable to list directory {current}: {exc}") from exc
        for entry in entries:
            if entry.name in exclude:
                continue
            resolved = entry.resolve()
            if skip_resolved is not None and resolved == skip_resolved:
                continue
            if entry.is_dir():
                if resolved in visited:
                    LOG.warning("Skipping directory already visited through a link: %s", entry)
                    continue
                visited.add(resolved)
                directories.append(entry)
                walk(entry)
            else:
                files.append(entry)

    walk(from_dir)
    return directories, files


def plan_output_targets(files: List[Path], from_dir: Path, to_dir: Path) -> List[Tuple[Path, Path]]:
    planned: List[Tuple[Path, Path]] = []
    claimed = {}
    for source in files:
        target = output_path_for(source, from_dir, to_dir)
        if target in claimed:
            raise RuntimeError(f"Output collision: {claimed[target]} and {source} both map to {target}")
        claimed[target] = source
        planned.append((source, target))
    return planned


def convert_document_file(source: Path, target: Path, config: BuildConfig) -> RenderedDocument:
    try:
        md_text = source.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise RuntimeError(f"Unable to read {source}: {exc}") from exc

    rendered = render_document(md_text, toc_title=config.toc_title, disable_toc=config.disable_toc)
    if config.debug:
        LOG.debug("Headings in %s: %s", source, [(h.level, h.text, h.id) for h in rendered.headings])

    page = render_page_html(
        source.stem,
        rendered.toc_html,
        rendered.body_html,
        css_href=config.css_href,
        lang=config.lang,
    )
    try:
        safe_write_text(target, page)
    except OSError as exc:
        raise RuntimeError(f"Unable to write {target}: {exc}") from exc
    return rendered


def copy_asset_file(source: Path, target: Path) -> None:
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
    except OSError as exc:
        raise RuntimeError(f"Unable to copy {source} -> {target}: {exc}") from exc


def run_build_pipeline(config: BuildConfig) -> BuildResult:
    from_dir = config.from_dir
    to_dir = config.to_dir

    if not from_dir.exists() or not from_dir.is_dir():
        raise RuntimeError(f"Source directory not found: {from_dir}")

    directories, files = collect_source_tree(from_dir, set(config.exclude), skip=to_dir)
    planned = plan_output_targets(files, from_dir, to_dir)

    prepare_output_dir(to_dir, from_dir)
    for directory in directories:
        mirrored = to_dir / directory.relative_to(from_dir)
        try:
            mirrored.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RuntimeError(f"Unable to create directory {mirrored}: {exc}") from exc

    result = BuildResult(pages=[], copied=[], anchor_failures=[])
    total = len(planned)
    for idx, (source, target) in enumerate(planned, start=1):
        if is_document(source):
            rendered = convert_document_file(source, target, config)
            result.pages.append(target)
            if rendered.toc_html:
                validation = validate_toc_anchors(rendered.toc_html, rendered.body_html)
                log_anchor_validation_result(validation, source, verbose=config.verbose, debug=config.debug)
                if not validation.ok:
                    result.anchor_failures.append((source, validation))
            action = "Converted"
        else:
            copy_asset_file(source, target)
            result.copied.append(target)
            action = "Copied"
        if config.verbose:
            _log_verbose_progress("Build", idx, total, f"{action}: {source} -> {target}")

    LOG.info(
        "Build complete: %d page(s), %d copied file(s) in %s",
        len(result.pages),
        len(result.copied),
        to_dir,
    )
    return result
