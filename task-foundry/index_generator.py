"""Regenerate the auto-registration index of each tool-server package.

Tool modules register themselves on import, so every package keeps a
``src/tools/__init__.py`` importing all of its tool modules, and its
``src/server_setup.py`` must import that package. Tasks only add tool
modules; the index is rebuilt here once their branches are merged.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

TOOLS_DIR = Path("src") / "tools"
INDEX_FILE = "__init__.py"
SETUP_FILE = Path("src") / "server_setup.py"
TOOLS_IMPORT = "from . import tools  # noqa: F401"

INDEX_HEADER = '''"""Tool registry index.

Auto-generated after integration; do not edit. Importing this package
imports every tool module so each one registers itself.
"""

'''

_IMPORT_LINE = re.compile(r"^(?:from\s+\S+\s+import\s+.+|import\s+\S+.*)$")


@dataclass
class IndexReport:
    changed_files: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def tool_modules(package_dir: Path) -> list[str]:
    """Names of the importable tool modules in a package, sorted."""
    tools_dir = package_dir / TOOLS_DIR
    if not tools_dir.is_dir():
        return []
    return sorted(
        p.stem
        for p in tools_dir.glob("*.py")
        if p.name != INDEX_FILE and not p.name.startswith("_")
    )


def render_index(modules: list[str]) -> str:
    lines = [f"from . import {name}  # noqa: F401" for name in modules]
    return INDEX_HEADER + "\n".join(lines) + "\n"


def write_index(package_dir: Path) -> Path | None:
    """Rewrite the package's tools index. Returns its path if the content changed."""
    modules = tool_modules(package_dir)
    if not modules:
        logger.info("No tool modules in %s, leaving index alone", package_dir)
        return None

    index_path = package_dir / TOOLS_DIR / INDEX_FILE
    content = render_index(modules)
    if index_path.exists() and index_path.read_text() == content:
        return None
    index_path.write_text(content)
    logger.info("Generated %s with %d tool(s)", index_path, len(modules))
    return index_path


def patch_setup_import(package_dir: Path) -> Path | None:
    """Make server_setup.py import the tools package. Returns its path if edited."""
    setup_path = package_dir / SETUP_FILE
    if not setup_path.exists() or not (package_dir / TOOLS_DIR / INDEX_FILE).exists():
        return None

    content = setup_path.read_text()
    if re.search(r"^from\s+\.\s+import\s+tools\b", content, re.MULTILINE):
        return None

    lines = content.splitlines()
    last_import = -1
    in_parens = False
    for i, line in enumerate(lines):
        if in_parens:
            last_import = i
            in_parens = ")" not in line
        elif _IMPORT_LINE.match(line):
            last_import = i
            in_parens = line.rstrip().endswith("(")
    if last_import < 0:
        raise ValueError(f"no import statement found in {setup_path}")

    lines[last_import + 1:last_import + 1] = [
        "",
        "# Import tools to trigger registration",
        TOOLS_IMPORT,
    ]
    setup_path.write_text("\n".join(lines) + "\n")
    logger.info("Updated %s with tools import", setup_path)
    return setup_path


def package_dirs(packages_root: Path, template_dir: str = "template") -> list[Path]:
    if not packages_root.is_dir():
        return []
    return sorted(
        d for d in packages_root.iterdir() if d.is_dir() and d.name != template_dir
    )


def regenerate_indexes(packages_root: str | Path, template_dir: str = "template") -> IndexReport:
    """Regenerate every package's index and patch its setup file.

    Problems are collected per package rather than raised.
    """
    packages_root = Path(packages_root)
    report = IndexReport()
    if not packages_root.is_dir():
        logger.info("No packages directory at %s", packages_root)
        return report

    packages = package_dirs(packages_root, template_dir)
    logger.info("Processing packages: %s", ", ".join(p.name for p in packages))
    for package_dir in packages:
        try:
            index_path = write_index(package_dir)
            if index_path:
                report.changed_files.append(index_path)
        except OSError as e:
            report.errors.append(f"Failed to generate tools index for {package_dir.name}: {e}")
            continue
        try:
            setup_path = patch_setup_import(package_dir)
            if setup_path:
                report.changed_files.append(setup_path)
        except (OSError, ValueError) as e:
            report.errors.append(f"Failed to update server_setup.py for {package_dir.name}: {e}")
    return report
