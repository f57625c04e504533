from __future__ import annotations

import ast
from dataclasses import dataclass
from pathlib import Path
from typing import List


@dataclass(frozen=True)
class MissingDocstring:
    path: Path
    lineno: int
    qualname: str


def _find_missing_docstrings(py_path: Path) -> List[MissingDocstring]:
    tree = ast.parse(py_path.read_text(encoding="utf-8"), filename=str(py_path))
    missing: List[MissingDocstring] = []

    class Visitor(ast.NodeVisitor):
        def __init__(self) -> None:
            self.stack: List[str] = []

        def _check(self, node) -> None:
            if ast.get_docstring(node) is None:
                qualname = ".".join(self.stack + [node.name])
                missing.append(MissingDocstring(py_path, node.lineno, qualname))
            self.stack.append(node.name)
            self.generic_visit(node)
            self.stack.pop()

        visit_ClassDef = _check  # noqa: N815
        visit_FunctionDef = _check  # noqa: N815
        visit_AsyncFunctionDef = _check  # noqa: N815

    Visitor().visit(tree)
    return missing


def test_docstrings_present_for_all_defs_under_src() -> None:
    """
    Docstring 合规护栏。

    规则：
    - 扫描 `src/ag_bridge` 下所有 `.py` 文件；
    - 对每个 `class/def/async def` 要求存在 docstring（包含嵌套定义）。
    """

    repo_root = Path(__file__).resolve().parents[1]
    root = repo_root / "src" / "ag_bridge"
    assert root.is_dir()

    missing: List[MissingDocstring] = []
    for py_path in sorted(root.rglob("*.py")):
        missing.extend(_find_missing_docstrings(py_path))

    if not missing:
        return

    lines = ["missing docstrings:"]
    for m in missing:
        lines.append(f"- {m.path.relative_to(repo_root)}:{m.lineno} {m.qualname}")
    raise AssertionError("\n".join(lines))
