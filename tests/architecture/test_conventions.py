"""
Convention Enforcement Tests.

Catch what import-based layer rules cannot: frozen dataclass conventions,
immutable collections, silent exception swallowing, and port contracts.
"""

import ast
import inspect
from pathlib import Path

from criticality.domain import interfaces
from criticality.domain.interfaces import (
    DecisionLedgerInterface,
    ExternalOperations,
    NotificationServiceInterface,
)
from criticality.infrastructure.notifications.webhook import WebhookNotificationService
from criticality.infrastructure.operations import NoopOperations
from criticality.infrastructure.persistence.ledger import (
    FilesystemDecisionLedger,
    InMemoryDecisionLedger,
)

SRC_ROOT = Path(__file__).parent.parent.parent / "src" / "criticality"

DOMAIN_DATACLASS_FILES = ("models.py", "escalation.py", "blocking.py", "transitions.py")


def dataclass_info(filepath: Path) -> list[tuple[ast.ClassDef, bool]]:
    """(class node, is_frozen) for each @dataclass in a file."""
    tree = ast.parse(filepath.read_text())
    results = []
    for node in ast.walk(tree):
        if not isinstance(node, ast.ClassDef):
            continue
        for decorator in node.decorator_list:
            if isinstance(decorator, ast.Name) and decorator.id == "dataclass":
                results.append((node, False))
            elif (
                isinstance(decorator, ast.Call)
                and isinstance(decorator.func, ast.Name)
                and decorator.func.id == "dataclass"
            ):
                frozen = any(
                    kw.arg == "frozen"
                    and isinstance(kw.value, ast.Constant)
                    and kw.value.value is True
                    for kw in decorator.keywords
                )
                results.append((node, frozen))
    return results


class TestFrozenDataclassConvention:
    """All domain dataclasses must be frozen."""

    def test_domain_dataclasses_are_frozen(self) -> None:
        violations = [
            f"{name}:{node.name}"
            for name in DOMAIN_DATACLASS_FILES
            for node, frozen in dataclass_info(SRC_ROOT / "domain" / name)
            if not frozen
        ]

        assert not violations, f"Domain dataclasses must be frozen. Violations: {violations}"


class TestImmutableCollections:
    """Frozen domain model fields use tuple, not list."""

    def test_domain_models_use_tuples_not_lists(self) -> None:
        violations = []
        for name in DOMAIN_DATACLASS_FILES:
            path = SRC_ROOT / "domain" / name
            source = path.read_text()
            for node, _ in dataclass_info(path):
                for item in node.body:
                    if not isinstance(item, ast.AnnAssign):
                        continue
                    annotation = ast.get_source_segment(source, item.annotation) or ""
                    if "list[" in annotation.lower():
                        violations.append(f"{node.name}.{getattr(item.target, 'id', '?')}")

        assert not violations, "Frozen dataclass fields should use tuple: " + ", ".join(
            violations
        )


class TestNoSilentExceptionSwallowing:
    """No 'except ...: pass' anywhere in src/criticality."""

    def test_no_bare_except_pass(self) -> None:
        violations = []
        for py_file in SRC_ROOT.rglob("*.py"):
            source = py_file.read_text()
            for node in ast.walk(ast.parse(source)):
                if not isinstance(node, ast.ExceptHandler):
                    continue
                if node.type is None:
                    violations.append(f"{py_file.name}:{node.lineno}: bare except")
                    continue
                if len(node.body) == 1:
                    stmt = node.body[0]
                    is_ellipsis = (
                        isinstance(stmt, ast.Expr)
                        and isinstance(stmt.value, ast.Constant)
                        and stmt.value.value is ...
                    )
                    if isinstance(stmt, ast.Pass) or is_ellipsis:
                        violations.append(f"{py_file.name}:{node.lineno}: except: pass")

        assert not violations, "Silent exception swallowing found:\n" + "\n".join(
            f"  - {v}" for v in violations
        )


class TestPortConventions:
    """Port contracts in domain/interfaces.py."""

    def test_all_port_methods_are_abstract(self) -> None:
        violations = []
        for name, cls in inspect.getmembers(interfaces, inspect.isclass):
            if not inspect.isabstract(cls) or cls.__module__ != interfaces.__name__:
                continue
            for method_name, method in inspect.getmembers(cls, predicate=inspect.isfunction):
                if method_name.startswith("_"):
                    continue
                if not getattr(method, "__isabstractmethod__", False):
                    violations.append(f"{name}.{method_name}")

        assert not violations, f"Public port methods must be abstract: {violations}"

    def test_adapters_implement_their_ports(self) -> None:
        adapters = {
            DecisionLedgerInterface: (InMemoryDecisionLedger, FilesystemDecisionLedger),
            NotificationServiceInterface: (WebhookNotificationService,),
            ExternalOperations: (NoopOperations,),
        }

        for port, implementations in adapters.items():
            for impl in implementations:
                assert issubclass(impl, port)
                assert not inspect.isabstract(impl), f"{impl.__name__} leaves methods abstract"
