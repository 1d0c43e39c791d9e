import ast
import re
import unittest
from pathlib import Path

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - python < 3.11
    tomllib = None


ROOT = Path(__file__).resolve().parents[1]
# Distribution name -> import name where they differ.
IMPORT_NAMES = {"python-dotenv": "dotenv"}


def _imported_roots(path: Path) -> set:
    tree = ast.parse(path.read_text(encoding="utf-8"))
    roots = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            roots.update(alias.name.split(".")[0] for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module and node.level == 0:
            roots.add(node.module.split(".")[0])
    return roots


class BootstrapScriptTests(unittest.TestCase):
    def test_bootstrap_runs_from_plain_checkout(self) -> None:
        roots = _imported_roots(ROOT / "no_headless" / "bootstrap_session.py")
        self.assertIn("playwright", roots)
        self.assertNotIn("agents", roots)
        self.assertNotIn("routers", roots)


@unittest.skipUnless(tomllib is not None, "tomllib needs python 3.11+")
class DeclaredDependencyTests(unittest.TestCase):
    def test_every_runtime_dependency_is_imported(self) -> None:
        project = tomllib.loads((ROOT / "pyproject.toml").read_text(encoding="utf-8"))["project"]
        imported = set()
        for path in [ROOT / "main.py", *ROOT.glob("agents/**/*.py"), *ROOT.glob("routers/*.py")]:
            imported |= _imported_roots(path)

        for requirement in project["dependencies"]:
            dist = re.split(r"[<>=!~\[; ]", requirement, maxsplit=1)[0]
            module = IMPORT_NAMES.get(dist, dist.replace("-", "_"))
            self.assertIn(module, imported, f"{dist} is declared but never imported")


if __name__ == "__main__":
    unittest.main()
