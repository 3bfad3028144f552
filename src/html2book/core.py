"""Core pipeline for html2book."""

from __future__ import annotations

import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

LOG = logging.getLogger("html2book")

EXIT_INVALID_ARGS = 6
EXIT_OUTPUT_DIR = 7
EXIT_CONVERSION = 8
EXIT_BOOK_FILES = 9

DEFAULT_SUFFIX = "_converted"
DEFAULT_RENAME_PREFIX = "_"
SOURCE_EXTENSIONS = (".html", ".htm")
MARKUP_EXTENSION = ".md"
BOOK_TOML_NAME = "book.toml"
SUMMARY_NAME = "SUMMARY.md"
GENERATED_FILES = frozenset({BOOK_TOML_NAME, SUMMARY_NAME})
INTRO_CANDIDATES = ("README.md", "readme.md", "index.md", "index.html", "index.htm")
TEMP_RENAME_SUFFIX = "_temp_rename"

Converter = Callable[[str], str]


@dataclass(frozen=True)
class RenameRule:
    """Naming policy shared by the case normalizer and the link rewriter."""

    prefix: str = DEFAULT_RENAME_PREFIX
    fold_file_names: bool = False

    @staticmethod
    def fold(segment: str) -> str:
        return segment.lower()

    def directory_name(self, name: str) -> str:
        return self.fold(name)

    @staticmethod
    def is_source_document(name: str) -> bool:
        return name.lower().endswith(SOURCE_EXTENSIONS)

    @staticmethod
    def is_markup_document(name: str) -> bool:
        return name.lower().endswith(MARKUP_EXTENSION)

    @staticmethod
    def markup_name(name: str) -> str:
        stem = name
        lowered = stem.lower()
        for ext in SOURCE_EXTENSIONS:
            if lowered.endswith(ext):
                stem = stem[: -len(ext)]
                break
        while stem.lower().endswith(MARKUP_EXTENSION):
            stem = stem[: -len(MARKUP_EXTENSION)]
        return stem + MARKUP_EXTENSION

    def document_name(self, name: str) -> str:
        """Final name of the Markdown document produced for ``name``."""
        markup = self.markup_name(name)
        return self.fold(markup) if self.fold_file_names else markup

    def canonical_file_name(self, name: str) -> str:
        if not self.fold_file_names or name in GENERATED_FILES:
            return name
        if self.is_source_document(name) or self.is_markup_document(name):
            return self.fold(name)
        return name

    def original_name(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def is_renamed_original(self, name: str, sibling_names: Set[str]) -> bool:
        if not self.prefix or not self.is_source_document(name):
            return False
        if not name.startswith(self.prefix):
            return False
        return self.markup_name(name[len(self.prefix) :]) in sibling_names


@dataclass
class ConversionConfig:
    input_dir: Path
    suffix: str = DEFAULT_SUFFIX
    rename_prefix: str = DEFAULT_RENAME_PREFIX
    mdbook_only: bool = False
    fold_file_names: bool = False
    verbose: bool = False
    debug: bool = False

    @property
    def rule(self) -> RenameRule:
        return RenameRule(prefix=self.rename_prefix, fold_file_names=self.fold_file_names)

    @property
    def output_dir(self) -> Path:
        return resolve_output_dir(self.input_dir, self.suffix)


@dataclass
class TreeNode:
    name: str
    relative_path: str
    is_directory: bool
    children: List["TreeNode"] = field(default_factory=list)


@dataclass
class CaseNormalizationReport:
    renamed: List[Tuple[str, str]] = field(default_factory=list)
    merged: List[Tuple[str, str]] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)


LOG_FORMAT = "%(levelname)s: %(message)s"


def log_level_for(config: ConversionConfig) -> int:
    if config.debug:
        return logging.DEBUG
    return logging.INFO if config.verbose else logging.WARNING


def setup_logging(config: ConversionConfig) -> None:
    """Send html2book records to the current stderr at the level the run asked for."""
    level = log_level_for(config)
    LOG.setLevel(level)
    LOG.propagate = False
    # Drop handlers bound to a previous stderr (repeated in-process runs).
    for handler in list(LOG.handlers):
        LOG.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)
    LOG.addHandler(handler)


def _document_progress(current: int, total: int, detail: str, width: int = 20) -> str:
    filled = min(width, int(width * current / total)) if total > 0 else 0
    bar = "#" * filled + "." * (width - filled)
    percent = (current / total) * 100.0 if total > 0 else 0.0
    return f"Converting [{bar}] {current}/{total} ({percent:.0f}%) | {detail}"


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="\n")


def relative_to_output(path: Path, out_dir: Path) -> str:
    try:
        return path.relative_to(out_dir).as_posix()
    except ValueError:
        return path.as_posix()


def resolve_output_dir(input_dir: Path, suffix: str) -> Path:
    input_dir = Path(os.path.normpath(str(input_dir)))
    return input_dir.parent / f"{input_dir.name}{suffix}"


def prepare_output_tree(input_dir: Path, out_dir: Path) -> bool:
    """Copy ``input_dir`` into ``out_dir``; return False when an existing output is reused."""
    if not input_dir.is_dir():
        raise RuntimeError(f"Input directory not found: {input_dir}")
    if out_dir.exists():
        if not out_dir.is_dir():
            raise RuntimeError(f"Output path is not a directory: {out_dir}")
        LOG.warning("Output directory already exists, reusing it: %s", out_dir)
        return False
    try:
        shutil.copytree(input_dir, out_dir)
    except (OSError, shutil.Error) as exc:
        raise RuntimeError(f"Unable to copy {input_dir} -> {out_dir}: {exc}") from exc
    LOG.info("Copied input tree: %s -> %s", input_dir, out_dir)
    return True


# --- conversion -------------------------------------------------------------

_META_CHARSET_RE = re.compile(r"charset=[\"']?([A-Za-z0-9_-]+)", re.IGNORECASE)


def _detect_meta_charset(data: bytes) -> Optional[str]:
    head = data[:4096].decode("latin-1", errors="ignore")
    match = _META_CHARSET_RE.search(head)
    if not match:
        return None
    return match.group(1).strip().lower()


def decode_html_bytes(data: bytes) -> str:
    charset = _detect_meta_charset(data)
    candidates = []
    if charset:
        candidates.append(charset)
    candidates.extend(["utf-8", "cp1252"])

    for enc in candidates:
        try:
            return data.decode(enc)
        except (LookupError, UnicodeDecodeError):
            continue
    return data.decode("latin-1", errors="replace")


def convert_html_to_markdown(raw_html: str) -> str:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    try:
        from markdownify import markdownify as md_convert  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"markdownify not available: {exc}") from exc

    soup = BeautifulSoup(raw_html, "html.parser")
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()
    content = soup.body if soup.body is not None else soup

    # Autolinks (<href>) would escape link rewriting.
    md_text = md_convert(str(content), heading_style="ATX", autolinks=False)
    return md_text.strip() + "\n"


# --- link rewriting ---------------------------------------------------------

LINK_RE = re.compile(
    r"""
    (?P<bang>!?)\[(?P<label>(?:[^\[\]]|\[[^\[\]]*\])*)\]\(
    (?:<(?P<angle>[^<>\n]*)>|(?P<bare>[^)\n]*?))
    (?P<title>\s+"[^"\n]*"|\s+'[^'\n]*')?
    (?P<close>\s*\))
    """,
    re.VERBOSE,
)
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:")
_TAIL_RE = re.compile(r"[?#]")


def _is_document_target(path: str) -> bool:
    name = path.rsplit("/", 1)[-1]
    return RenameRule.is_source_document(name) or RenameRule.is_markup_document(name)


def rewrite_link_target(target: str, rule: RenameRule) -> str:
    if not target or target.startswith("#"):
        return target
    tail_match = _TAIL_RE.search(target)
    if tail_match:
        path, tail = target[: tail_match.start()], target[tail_match.start() :]
    else:
        path, tail = target, ""
    if not path:
        return target

    is_document = _is_document_target(path)
    if _SCHEME_RE.match(path) or path.startswith("/"):
        # Points outside the local tree: extension swap only.
        if not is_document:
            return target
        head, sep, name = path.rpartition("/")
        return f"{head}{sep}{rule.markup_name(name)}{tail}"

    segments = path.replace("\\", "/").split("/")
    dirs = [rule.directory_name(segment) for segment in segments[:-1]]
    name = segments[-1]
    if is_document:
        name = rule.document_name(name)
    return "/".join(dirs + [name]) + tail


def rewrite_links(md_text: str, rule: RenameRule) -> str:
    """Point every relative reference at the final, normalized output path."""

    def repl(match: re.Match) -> str:
        label = match.group("label")
        if "](" in label:
            label = rewrite_links(label, rule)
        angle = match.group("angle")
        if angle is not None:
            destination = f"<{rewrite_link_target(angle, rule)}>"
        else:
            destination = rewrite_link_target(match.group("bare"), rule)
        title = match.group("title") or ""
        return f"{match.group('bang')}[{label}]({destination}{title}{match.group('close')}"

    return LINK_RE.sub(repl, md_text or "")


# --- document sweep ---------------------------------------------------------


def _sorted_entries(directory: Path) -> List[os.DirEntry]:
    with os.scandir(directory) as it:
        return sorted(it, key=lambda entry: entry.name)


def find_source_documents(root: Path, rule: RenameRule) -> List[Path]:
    documents: List[Path] = []
    stack: List[Path] = [root]
    while stack:
        current = stack.pop()
        entries = _sorted_entries(current)
        names = {entry.name for entry in entries}
        subdirs: List[Path] = []
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                subdirs.append(Path(entry.path))
            elif rule.is_source_document(entry.name) and not rule.is_renamed_original(entry.name, names):
                documents.append(Path(entry.path))
        stack.extend(reversed(subdirs))
    return documents


def convert_single_document(
    source_path: Path,
    rule: RenameRule,
    converter: Converter,
) -> Path:
    try:
        raw_html = decode_html_bytes(source_path.read_bytes())
    except OSError as exc:
        raise RuntimeError(f"Unable to read {source_path}: {exc}") from exc

    try:
        md_text = converter(raw_html)
    except Exception as exc:
        raise RuntimeError(f"Unable to convert {source_path}: {exc}") from exc

    md_text = rewrite_links(md_text, rule)
    md_path = source_path.with_name(rule.markup_name(source_path.name))
    if md_path.exists():
        LOG.debug("Overwriting existing Markdown document: %s", md_path)
    try:
        safe_write_text(md_path, md_text)
    except OSError as exc:
        raise RuntimeError(f"Unable to write {md_path}: {exc}") from exc
    LOG.debug("Converted: %s -> %s", source_path, md_path)
    return md_path


def convert_documents(
    out_dir: Path,
    rule: RenameRule,
    converter: Optional[Converter] = None,
    verbose: bool = False,
) -> List[Path]:
    converter = converter or convert_html_to_markdown
    try:
        documents = find_source_documents(out_dir, rule)
    except OSError as exc:
        raise RuntimeError(f"Unable to scan {out_dir}: {exc}") from exc

    written: List[Path] = []
    total = len(documents)
    for idx, source_path in enumerate(documents, start=1):
        if verbose:
            LOG.info(_document_progress(idx, total, relative_to_output(source_path, out_dir)))
        written.append(convert_single_document(source_path, rule, converter))
    LOG.info("Converted %d document(s) in %s", len(written), out_dir)
    return written


def rename_source_documents(out_dir: Path, rule: RenameRule) -> List[Path]:
    if not rule.prefix:
        LOG.info("Empty rename prefix; original documents keep their names.")
        return []
    try:
        documents = find_source_documents(out_dir, rule)
    except OSError as exc:
        raise RuntimeError(f"Unable to scan {out_dir}: {exc}") from exc

    renamed: List[Path] = []
    for source_path in documents:
        target = source_path.with_name(rule.original_name(source_path.name))
        if target.exists():
            LOG.warning("Rename target already exists, skipping: %s", target)
            continue
        try:
            source_path.rename(target)
        except OSError as exc:
            LOG.error("Unable to rename %s -> %s: %s", source_path, target, exc)
            continue
        LOG.debug("Renamed original: %s -> %s", source_path, target)
        renamed.append(target)
    return renamed


# --- case normalization -----------------------------------------------------


def rename_segment(path: Path, new_name: str) -> Path:
    """Rename the last segment of ``path``, forcing case-only changes through a temporary name."""
    if path.name == new_name:
        return path
    target = path.with_name(new_name)
    temp = path.with_name(path.name + TEMP_RENAME_SUFFIX)
    if temp.exists():
        raise OSError(f"temporary rename target already exists: {temp}")
    path.rename(temp)
    try:
        temp.rename(target)
    except OSError as exc:
        try:
            temp.rename(path)
        except OSError as rollback_exc:
            raise OSError(f"{exc}; rollback to {path} failed: {rollback_exc}") from exc
        raise
    return target


def _same_entry(a: Path, b: Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def merge_directory(source: Path, destination: Path, report: CaseNormalizationReport) -> None:
    """Copy ``source`` into ``destination`` without overwriting existing entries."""
    for entry in _sorted_entries(source):
        src_path = Path(entry.path)
        dst_path = destination / entry.name
        if entry.is_dir(follow_symlinks=False):
            if dst_path.is_dir():
                merge_directory(src_path, dst_path, report)
            elif dst_path.exists():
                LOG.warning("Merge conflict, keeping existing file: %s (dropped directory %s)", dst_path, src_path)
                report.conflicts.append(dst_path.as_posix())
            else:
                shutil.copytree(src_path, dst_path)
        elif dst_path.exists():
            LOG.warning("Merge conflict, keeping existing entry: %s (dropped %s)", dst_path, src_path)
            report.conflicts.append(dst_path.as_posix())
        else:
            shutil.copy2(src_path, dst_path)


def list_directories(root: Path) -> List[Path]:
    """All directories below ``root``, parents before children."""
    ordered: List[Path] = []
    stack: List[Path] = [root]
    while stack:
        current = stack.pop()
        if current is not root:
            ordered.append(current)
        subdirs = [Path(entry.path) for entry in _sorted_entries(current) if entry.is_dir(follow_symlinks=False)]
        stack.extend(reversed(subdirs))
    return ordered


def _fold_file_names(directory: Path, rule: RenameRule, report: CaseNormalizationReport) -> None:
    for entry in _sorted_entries(directory):
        if entry.is_dir(follow_symlinks=False):
            continue
        canonical = rule.canonical_file_name(entry.name)
        if canonical == entry.name:
            continue
        path = Path(entry.path)
        target = path.with_name(canonical)
        if target.exists() and not _same_entry(path, target):
            LOG.warning("Case collision, keeping existing file: %s (left %s in place)", target, path)
            report.conflicts.append(path.as_posix())
            continue
        try:
            rename_segment(path, canonical)
        except OSError as exc:
            LOG.error("Unable to rename %s -> %s: %s", path, canonical, exc)
            report.failures.append((path.as_posix(), str(exc)))
            continue
        report.renamed.append((path.as_posix(), target.as_posix()))


def _normalize_directory(directory: Path, rule: RenameRule, report: CaseNormalizationReport) -> None:
    if rule.fold_file_names:
        _fold_file_names(directory, rule, report)

    canonical = rule.directory_name(directory.name)
    if canonical == directory.name:
        return
    target = directory.with_name(canonical)
    if target.exists() and not _same_entry(directory, target):
        if not target.is_dir():
            LOG.warning("Case collision with a file, leaving directory as-is: %s", directory)
            report.conflicts.append(directory.as_posix())
            return
        LOG.warning("Case collision, merging %s into %s", directory, target)
        merge_directory(directory, target, report)
        shutil.rmtree(directory)
        report.merged.append((directory.as_posix(), target.as_posix()))
        return
    rename_segment(directory, canonical)
    report.renamed.append((directory.as_posix(), target.as_posix()))
    LOG.debug("Renamed directory: %s -> %s", directory, target)


def normalize_tree_case(root: Path, rule: RenameRule) -> CaseNormalizationReport:
    report = CaseNormalizationReport()
    try:
        directories = list_directories(root)
    except OSError as exc:
        raise RuntimeError(f"Unable to scan {root}: {exc}") from exc

    for directory in reversed(directories):
        try:
            _normalize_directory(directory, rule, report)
        except (OSError, shutil.Error) as exc:
            LOG.error("Unable to normalize case of %s: %s", directory, exc)
            report.failures.append((directory.as_posix(), str(exc)))

    if rule.fold_file_names:
        try:
            _fold_file_names(root, rule, report)
        except OSError as exc:
            LOG.error("Unable to normalize case of %s: %s", root, exc)
            report.failures.append((root.as_posix(), str(exc)))

    LOG.info(
        "Case normalization: %d renamed, %d merged, %d conflict(s), %d failure(s)",
        len(report.renamed),
        len(report.merged),
        len(report.conflicts),
        len(report.failures),
    )
    return report


# --- indexing and outline ---------------------------------------------------


def _is_indexed_name(name: str) -> bool:
    return not name.startswith(".") and name not in GENERATED_FILES


def sort_tree_children(nodes: List[TreeNode]) -> List[TreeNode]:
    return sorted(nodes, key=lambda node: (not node.is_directory, node.name))


def _index_directory(directory: Path, rel_dir: str, rule: RenameRule, exclude: Set[str]) -> List[TreeNode]:
    entries = [entry for entry in _sorted_entries(directory) if _is_indexed_name(entry.name)]
    names = {entry.name for entry in entries}
    nodes: Dict[str, TreeNode] = {}

    for entry in entries:
        rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
        if entry.is_dir(follow_symlinks=False):
            children = _index_directory(Path(entry.path), rel_path, rule, exclude)
            if children:
                nodes[rel_path] = TreeNode(entry.name, rel_path, True, children)
            continue
        if rule.is_markup_document(entry.name):
            doc_path = rel_path
        elif rule.is_source_document(entry.name):
            if rule.is_renamed_original(entry.name, names):
                continue
            markup = rule.markup_name(entry.name)
            doc_path = f"{rel_dir}/{markup}" if rel_dir else markup
        else:
            continue
        if doc_path in exclude:
            continue
        existing = nodes.get(doc_path)
        # The Markdown sibling wins over a not yet converted source document.
        if existing is None or rule.is_markup_document(entry.name):
            nodes[doc_path] = TreeNode(entry.name, doc_path, False)

    return sort_tree_children(list(nodes.values()))


def build_directory_tree(root: Path, rule: RenameRule, exclude: Optional[Set[str]] = None) -> TreeNode:
    try:
        children = _index_directory(root, "", rule, set(exclude or ()))
    except OSError as exc:
        raise RuntimeError(f"Unable to index {getattr(exc, 'filename', None) or root}: {exc}") from exc
    return TreeNode(name=root.name, relative_path="", is_directory=True, children=children)


def find_intro_file(out_dir: Path) -> Optional[str]:
    names = set(os.listdir(out_dir))
    for candidate in INTRO_CANDIDATES:
        if candidate in names:
            if RenameRule.is_source_document(candidate):
                return RenameRule.markup_name(candidate)
            return candidate
    return None


def _format_destination(path: str) -> str:
    return f"<{path}>" if " " in path else path


def _document_label(node: TreeNode) -> str:
    name = node.relative_path.rsplit("/", 1)[-1]
    return name[: -len(MARKUP_EXTENSION)]


def _write_summary_entries(lines: List[str], nodes: List[TreeNode], depth: int) -> None:
    indent = "  " * depth
    for node in nodes:
        if node.is_directory:
            lines.append(f"{indent}- [{node.name}]()")
            _write_summary_entries(lines, node.children, depth + 1)
        else:
            lines.append(f"{indent}- [{_document_label(node)}]({_format_destination(node.relative_path)})")


def render_summary(tree: TreeNode, intro_path: Optional[str] = None) -> str:
    lines: List[str] = ["# Summary", ""]
    if intro_path:
        lines.append(f"[Introduction]({_format_destination(intro_path)})")
        lines.append("")
    _write_summary_entries(lines, tree.children, 0)
    return "\n".join(lines).rstrip("\n") + "\n"


def write_summary(out_dir: Path, rule: RenameRule) -> Path:
    try:
        intro_path = find_intro_file(out_dir)
    except OSError as exc:
        raise RuntimeError(f"Unable to index {out_dir}: {exc}") from exc
    tree = build_directory_tree(out_dir, rule, exclude={intro_path} if intro_path else None)
    summary_path = out_dir / SUMMARY_NAME
    try:
        safe_write_text(summary_path, render_summary(tree, intro_path))
    except OSError as exc:
        raise RuntimeError(f"Unable to write {summary_path}: {exc}") from exc
    return summary_path


def book_title(out_dir: Path) -> str:
    return out_dir.name.replace("_", " ").replace("-", " ")


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_book_toml(out_dir: Path) -> Path:
    title = _toml_string(book_title(out_dir))
    content = (
        "[book]\n"
        f"title = {title}\n"
        f"description = {title}\n"
        'authors = ["Generated by html2book"]\n'
        'src = "."\n'
        "\n"
        "[build]\n"
        'build-dir = "book"\n'
        "create-missing = false\n"
        "\n"
        "[output.html]\n"
        'default-theme = "navy"\n'
        'preferred-dark-theme = "navy"\n'
    )
    book_path = out_dir / BOOK_TOML_NAME
    try:
        safe_write_text(book_path, content)
    except OSError as exc:
        raise RuntimeError(f"Unable to write {book_path}: {exc}") from exc
    return book_path


# --- pipelines --------------------------------------------------------------


def run_conversion_pipeline(
    out_dir: Path,
    config: ConversionConfig,
    converter: Optional[Converter] = None,
) -> CaseNormalizationReport:
    rule = config.rule
    LOG.info("Converting HTML documents in %s", out_dir)
    convert_documents(out_dir, rule, converter=converter, verbose=config.verbose)
    LOG.info("Renaming original HTML documents with prefix %r", rule.prefix)
    rename_source_documents(out_dir, rule)
    LOG.info("Normalizing path case in %s", out_dir)
    return normalize_tree_case(out_dir, rule)


def generate_book_files(out_dir: Path, config: ConversionConfig) -> Tuple[Path, Path]:
    book_path = write_book_toml(out_dir)
    summary_path = write_summary(out_dir, config.rule)
    LOG.info("Generated %s and %s", book_path, summary_path)
    return book_path, summary_path
