import random
import re
from pathlib import Path

import pytest

import html2book.core as core
from html2book.core import RenameRule, TreeNode


def _write(path: Path, text: str = "x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_sort_tree_children_is_deterministic():
    nodes = [
        TreeNode("b.md", "b.md", False),
        TreeNode("zeta", "zeta", True),
        TreeNode("A.md", "A.md", False),
        TreeNode("alpha", "alpha", True),
        TreeNode("a.md", "a.md", False),
    ]
    expected = ["alpha", "zeta", "A.md", "a.md", "b.md"]
    for seed in range(5):
        shuffled = list(nodes)
        random.Random(seed).shuffle(shuffled)
        assert [n.name for n in core.sort_tree_children(shuffled)] == expected


def test_build_directory_tree_filters_and_orders(tmp_path):
    _write(tmp_path / "zz.md")
    _write(tmp_path / "_zz.html")
    _write(tmp_path / "aa.md")
    _write(tmp_path / ".hidden.md")
    _write(tmp_path / ".git" / "x.md")
    _write(tmp_path / "book.toml")
    _write(tmp_path / "SUMMARY.md")
    _write(tmp_path / "style.css")
    _write(tmp_path / "images" / "logo.png")
    _write(tmp_path / "guide" / "b.md")
    _write(tmp_path / "guide" / "nested" / "c.html")

    tree = core.build_directory_tree(tmp_path, RenameRule())

    assert [(n.name, n.is_directory) for n in tree.children] == [
        ("guide", True),
        ("aa.md", False),
        ("zz.md", False),
    ]
    guide = tree.children[0]
    assert guide.relative_path == "guide"
    assert [n.relative_path for n in guide.children] == ["guide/nested", "guide/b.md"]
    assert [n.relative_path for n in guide.children[0].children] == ["guide/nested/c.md"]


def test_source_and_markdown_siblings_are_listed_once(tmp_path):
    _write(tmp_path / "page.html")
    _write(tmp_path / "page.md")
    _write(tmp_path / "_solo.html")

    tree = core.build_directory_tree(tmp_path, RenameRule())

    assert [(n.name, n.relative_path) for n in tree.children] == [
        ("_solo.html", "_solo.md"),
        ("page.md", "page.md"),
    ]


def test_render_summary_nests_directories():
    tree = TreeNode(
        "root",
        "",
        True,
        [
            TreeNode("api", "api", True, [TreeNode("my page.md", "api/my page.md", False)]),
            TreeNode("start.md", "start.md", False),
        ],
    )

    assert core.render_summary(tree, "README.md") == (
        "# Summary\n"
        "\n"
        "[Introduction](README.md)\n"
        "\n"
        "- [api]()\n"
        "  - [my page](<api/my page.md>)\n"
        "- [start](start.md)\n"
    )


@pytest.mark.parametrize(
    "names, expected",
    [
        (["README.md", "index.md"], "README.md"),
        (["index.md", "_index.html"], "index.md"),
        (["index.html"], "index.md"),
        (["other.md"], None),
    ],
)
def test_find_intro_file(tmp_path, names, expected):
    for name in names:
        _write(tmp_path / name)
    assert core.find_intro_file(tmp_path) == expected


def test_summary_links_match_documents_exactly_once(tmp_path):
    _write(tmp_path / "index.md")
    _write(tmp_path / "_index.html")
    _write(tmp_path / "a.md")
    _write(tmp_path / "x" / "b.md")
    _write(tmp_path / "x" / "_b.html")
    _write(tmp_path / "x" / "y" / "c.md")
    _write(tmp_path / "x" / "y" / "d.html")

    summary_path = core.write_summary(tmp_path, RenameRule())
    summary = summary_path.read_text(encoding="utf-8")

    links = re.findall(r"\]\(([^)]+)\)", summary)
    assert sorted(links) == ["a.md", "index.md", "x/b.md", "x/y/c.md", "x/y/d.md"]
    assert summary.startswith("# Summary\n\n[Introduction](index.md)\n\n")
    assert "- [x]()\n  - [y]()\n    - [c](x/y/c.md)\n" in summary


def test_index_failure_raises_runtime_error(tmp_path, monkeypatch):
    _write(tmp_path / "a.md")

    def broken_scandir(path):
        raise PermissionError(13, "denied", str(path))

    monkeypatch.setattr(core.os, "scandir", broken_scandir)

    with pytest.raises(RuntimeError, match="Unable to index"):
        core.build_directory_tree(tmp_path, RenameRule())


def test_book_toml_title_from_directory_name(tmp_path):
    out_dir = tmp_path / "my-user_guide_converted"
    out_dir.mkdir()

    book_path = core.write_book_toml(out_dir)
    content = book_path.read_text(encoding="utf-8")

    assert content.startswith("[book]\n")
    assert 'title = "my user guide converted"' in content
    assert 'description = "my user guide converted"' in content
    assert 'src = "."' in content
    assert 'build-dir = "book"' in content
