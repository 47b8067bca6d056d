"""
Import-boundary enforcement for the reconciliation layers.

1. Engine purity      - recon_engines/** may not import DB, ORM, models,
                         services, or config layers.
2. Engine no-impure   - recon_engines/** may not read the wall clock or
                         the process environment.
3. Kernel boundary    - recon_kernel/** may not import upward; the domain
                         package may not import sqlalchemy.
4. Config entrypoint  - only recon_config itself may import its loader.

All scanning is done via AST. These tests are read-only.
"""

import ast
import glob
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _python_files(package: str) -> list[str]:
    """Return all .py files under *package*, sorted for deterministic order."""
    return sorted(glob.glob(str(ROOT / package / "**" / "*.py"), recursive=True))


def _parse(filepath: str) -> ast.AST | None:
    try:
        return ast.parse(Path(filepath).read_text(), filename=filepath)
    except (SyntaxError, UnicodeDecodeError):
        return None


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Return (line_number, module_string) for every import in *filepath*."""
    tree = _parse(filepath)
    if tree is None:
        return []

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _matches_any(module: str, prefixes: tuple[str, ...]) -> bool:
    """True if *module* equals or is a child of any prefix."""
    for prefix in prefixes:
        if module == prefix or module.startswith(f"{prefix}."):
            return True
    return False


def _extract_attribute_calls(filepath: str) -> list[tuple[int, str]]:
    """Return (line_number, 'receiver.attr') for two-level attribute nodes."""
    tree = _parse(filepath)
    if tree is None:
        return []

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
            results.append((node.lineno, f"{node.value.id}.{node.attr}"))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            if _matches_any(module, forbidden):
                rel = Path(filepath).relative_to(ROOT)
                found.append(f"{rel}:{lineno} imports {module}")
    return found


# ---------------------------------------------------------------------------
# 1. TestEnginePurity
# ---------------------------------------------------------------------------

class TestEnginePurity:
    """Engines are pure functions of their inputs."""

    FORBIDDEN_PREFIXES = (
        "sqlalchemy",
        "recon_kernel.db",
        "recon_kernel.models",
        "recon_services",
        "recon_config",
    )

    def test_engines_exist(self):
        assert _python_files("recon_engines")

    def test_no_forbidden_imports(self):
        violations = _violations("recon_engines", self.FORBIDDEN_PREFIXES)
        assert not violations, "Engine imports outside its layer:\n" + "\n".join(violations)


# ---------------------------------------------------------------------------
# 2. TestEngineNoImpureFunctions
# ---------------------------------------------------------------------------

class TestEngineNoImpureFunctions:
    """Engines never read the clock or environment; time.monotonic is allowed."""

    FORBIDDEN_CALLS = {
        "datetime.now",
        "datetime.utcnow",
        "date.today",
        "time.time",
        "os.environ",
        "os.getenv",
    }

    def test_no_impure_calls(self):
        violations = []
        for filepath in _python_files("recon_engines"):
            for lineno, call in _extract_attribute_calls(filepath):
                if call in self.FORBIDDEN_CALLS:
                    rel = Path(filepath).relative_to(ROOT)
                    violations.append(f"{rel}:{lineno} uses {call}")

        assert not violations, "Impure calls in engines:\n" + "\n".join(violations)


# ---------------------------------------------------------------------------
# 3. TestKernelBoundary
# ---------------------------------------------------------------------------

class TestKernelBoundary:

    def test_kernel_does_not_import_upward(self):
        violations = _violations(
            "recon_kernel", ("recon_services", "recon_engines", "recon_config"),
        )
        assert not violations, "Kernel imports upward:\n" + "\n".join(violations)

    def test_domain_has_no_orm(self):
        violations = _violations(
            "recon_kernel/domain",
            ("sqlalchemy", "recon_kernel.db", "recon_kernel.models"),
        )
        assert not violations, "Domain imports persistence:\n" + "\n".join(violations)


# ---------------------------------------------------------------------------
# 4. TestConfigEntrypoint
# ---------------------------------------------------------------------------

class TestConfigEntrypoint:
    """Callers go through get_active_config; schema types may be shared."""

    def test_loader_only_used_inside_config(self):
        violations = []
        for package in ("recon_kernel", "recon_engines", "recon_services"):
            violations.extend(_violations(package, ("recon_config.loader",)))

        assert not violations, "Loader imported directly:\n" + "\n".join(violations)
