"""API contract map: backend route signatures versus frontend call sites.

The map is built with regular expressions over Python route decorators and
JavaScript-style ``apiClient``/``fetch`` calls.  It is precise enough to notice
that an implementation changed the observable surface and to flag views that
call an endpoint the backend no longer serves.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from ..utils.slug import slugify
from .scans import iter_sources

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
_METHOD_ORDER = {method: index for index, method in enumerate(HTTP_METHODS)}

_ROUTER_DECL = re.compile(
    r"^(\w+)\s*=\s*(?:\w+\.)?(?:APIRouter|Blueprint)\s*\(([^)]*)\)", re.MULTILINE
)
_PREFIX_ARG = re.compile(r"\b(?:url_)?prefix\s*=\s*[\"']([^\"']*)[\"']")
_VERB_ROUTE = re.compile(
    r"^[ \t]*@(\w+)\.(get|post|put|patch|delete)\s*\(\s*[\"']([^\"']*)[\"']", re.MULTILINE
)
_ROUTE_ROUTE = re.compile(r"^[ \t]*@(\w+)\.route\s*\(\s*[\"']([^\"']*)[\"']([^\n]*)", re.MULTILINE)
_METHODS_ARG = re.compile(r"methods\s*=\s*[\[(]([^\])]*)[\])]")
_DECORATOR_NAME = re.compile(r"^[ \t]*@([\w.]+)\s*(\(([^\n]*)\))?", re.MULTILINE)
_ROLE_ARGS = re.compile(r"[\"']([A-Za-z_][\w-]*)[\"']")
_PATH_PARAM = re.compile(r"<(?:[^:<>]+:)?([^<>]+)>|\{([^{}:]+)(?::[^{}]*)?\}|\$\{\s*([^}]+?)\s*\}")

_CLIENT_CALL = re.compile(r"apiClient\.(get|post|put|patch|delete)\s*\(\s*([`'\"])(.*?)\2", re.IGNORECASE)
_FETCH_CALL = re.compile(r"fetch\s*\(\s*([`'\"])(/.*?)\1([^;]{0,200})", re.DOTALL)
_FETCH_METHOD = re.compile(r"method\s*:\s*[`'\"]([A-Za-z]+)[`'\"]")

_AUTH_HINT = re.compile(r"login|auth|token|session", re.IGNORECASE)


@dataclass(slots=True)
class Endpoint:
    method: str
    path: str
    role: str = "public"
    guards: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.method} {self.path}"

    @property
    def signature(self) -> str:
        return f"{self.role}|{','.join(sorted(self.guards))}"


@dataclass(slots=True)
class ViewContract:
    name: str
    api_calls: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "apiCalls": list(self.api_calls)}


@dataclass(slots=True)
class ContractSnapshot:
    """Canonical contract map of one working tree."""

    signatures: Dict[str, str] = field(default_factory=dict)
    views: List[ViewContract] = field(default_factory=list)

    @property
    def endpoints(self) -> List[str]:
        return sorted(self.signatures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend": {key: self.signatures[key] for key in sorted(self.signatures)},
            "frontend": [view.to_dict() for view in self.views],
        }

    def digest(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class ContractDiff:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)

    @property
    def changed_endpoints(self) -> List[str]:
        return sorted(set(self.added) | set(self.modified))

    def to_dict(self) -> Dict[str, Any]:
        return {"apiChanges": {"added": self.added, "removed": self.removed, "modified": self.modified}}


# ---------------------------------------------------------------- helpers
def normalise_api_path(path: str) -> str:
    """Strip query strings and rewrite ``<id>``, ``{id}`` and ``${id}`` as ``:id``."""

    raw = (path or "").strip().split("?", 1)[0].split("#", 1)[0]

    def _replace(match: re.Match[str]) -> str:
        name = next(group for group in match.groups() if group)
        name = name.strip().split(".")[-1]
        return f":{name}"

    normalised = _PATH_PARAM.sub(_replace, raw)
    normalised = re.sub(r"/{2,}", "/", normalised)
    if len(normalised) > 1:
        normalised = normalised.rstrip("/")
    return normalised or "/"


def _join(prefix: str, path: str) -> str:
    left = (prefix or "").rstrip("/")
    right = path if path.startswith("/") else f"/{path}"
    return normalise_api_path(f"{left}{right}" if right != "/" else left or "/")


def _router_prefixes(content: str) -> Dict[str, str]:
    prefixes: Dict[str, str] = {}
    for match in _ROUTER_DECL.finditer(content):
        prefix = _PREFIX_ARG.search(match.group(2))
        prefixes[match.group(1)] = prefix.group(1) if prefix else ""
    return prefixes


def _decorator_block(content: str, start: int) -> str:
    """Return the decorator lines surrounding the decorator at ``start``."""
    lines = content.split("\n")
    index = content.count("\n", 0, start)
    first = index
    while first > 0 and lines[first - 1].lstrip().startswith("@"):
        first -= 1
    last = index
    while last + 1 < len(lines) and lines[last + 1].lstrip().startswith("@"):
        last += 1
    return "\n".join(lines[first : last + 1])


def _guards_and_role(block: str) -> Tuple[List[str], str]:
    guards: set[str] = set()
    roles: set[str] = set()
    for match in _DECORATOR_NAME.finditer(block):
        name = match.group(1)
        tail = name.split(".")[-1]
        if tail.lower() in {"get", "post", "put", "patch", "delete", "route"}:
            continue
        guards.add(tail)
        if "role" in tail.lower() and match.group(3):
            roles.update(_ROLE_ARGS.findall(match.group(3)))
    if roles:
        role = "|".join(sorted(roles))
    elif any(_AUTH_HINT.search(guard) for guard in guards):
        role = "authenticated"
    else:
        role = "public"
    return sorted(guards), role


def extract_endpoints(content: str) -> List[Endpoint]:
    """Return the route endpoints declared in one Python module."""
    prefixes = _router_prefixes(content)
    endpoints: List[Endpoint] = []
    for match in _VERB_ROUTE.finditer(content):
        guards, role = _guards_and_role(_decorator_block(content, match.start()))
        path = _join(prefixes.get(match.group(1), ""), match.group(3))
        endpoints.append(Endpoint(match.group(2).upper(), path, role, guards))
    for match in _ROUTE_ROUTE.finditer(content):
        guards, role = _guards_and_role(_decorator_block(content, match.start()))
        path = _join(prefixes.get(match.group(1), ""), match.group(2))
        methods_arg = _METHODS_ARG.search(match.group(3))
        methods = (
            [method.upper() for method in _ROLE_ARGS.findall(methods_arg.group(1))] if methods_arg else ["GET"]
        )
        for method in methods:
            endpoints.append(Endpoint(method, path, role, guards))
    return endpoints


def extract_api_calls(content: str) -> List[str]:
    """Return ``"METHOD /path"`` entries for the API calls made by one view."""
    calls: set[str] = set()
    for match in _CLIENT_CALL.finditer(content):
        calls.add(f"{match.group(1).upper()} {normalise_api_path(match.group(3))}")
    for match in _FETCH_CALL.finditer(content):
        method_match = _FETCH_METHOD.search(match.group(3))
        method = method_match.group(1).upper() if method_match else "GET"
        calls.add(f"{method} {normalise_api_path(match.group(2))}")
    return sorted(calls)


# -------------------------------------------------------------- snapshots
def compute_contract_snapshot(
    repo_root: Path,
    backend_files: Iterable[str],
    frontend_files: Iterable[str],
) -> ContractSnapshot:
    """Scan the tree and return the backend signature map and view calls."""

    endpoints: List[Endpoint] = []
    for _, content in iter_sources(repo_root, backend_files):
        endpoints.extend(extract_endpoints(content))
    endpoints.sort(key=lambda item: (item.path, _METHOD_ORDER.get(item.method, 99), item.signature))
    signatures = {endpoint.key: endpoint.signature for endpoint in endpoints}

    views: List[ViewContract] = []
    for path, content in iter_sources(repo_root, sorted(frontend_files)):
        calls = extract_api_calls(content)
        if calls:
            views.append(ViewContract(name=path, api_calls=calls))
    return ContractSnapshot(signatures=signatures, views=views)


def diff_contracts(baseline: Mapping[str, str], current: Mapping[str, str]) -> ContractDiff:
    added = sorted(key for key in current if key not in baseline)
    removed = sorted(key for key in baseline if key not in current)
    modified = sorted(key for key in current if key in baseline and baseline[key] != current[key])
    return ContractDiff(added=added, removed=removed, modified=modified)


def full_contract_snapshot(snapshot: ContractSnapshot, diff: ContractDiff) -> Dict[str, Any]:
    return {
        "backend": {
            "endpoints": snapshot.endpoints,
            "diff": {"added": diff.added, "removed": diff.removed, "modified": diff.modified},
        },
        "frontend": {"views": [view.to_dict() for view in snapshot.views]},
    }


def check_integrity(snapshot: ContractSnapshot) -> Dict[str, Any]:
    """Report every view call whose endpoint the backend does not serve."""
    served = set(snapshot.signatures)
    missing = sorted({call for view in snapshot.views for call in view.api_calls if call not in served})
    return {"integrity": {"status": "FAILED" if missing else "PASS", "missing": missing}}


def build_impact_report(changed_files: Iterable[str]) -> Dict[str, Any]:
    """Map changed Python files to their dotted module names."""
    changed = sorted({path for path in changed_files if path.endswith(".py")})
    modules = sorted({Path(path).with_suffix("").as_posix().replace("/", ".") for path in changed})
    return {"impact": {"changedFiles": changed, "modules": modules}}


# ------------------------------------------------------- placeholder tests
def placeholder_test_name(endpoint: str) -> str:
    method, _, path = endpoint.partition(" ")
    slug = slugify(path.replace(":", ""), fallback="root", separator="_", max_length=60)
    return f"test_{method.lower()}_{slug}.py"


def placeholder_test_source(endpoint: str) -> str:
    function = placeholder_test_name(endpoint)[: -len(".py")]
    return "\n".join(
        [
            f'"""Generated placeholder for {endpoint}."""',
            "",
            "import pytest",
            "",
            "",
            f'@pytest.mark.skip(reason="placeholder for {endpoint}; replace with a real request test")',
            f"def {function}() -> None:",
            f'    raise AssertionError("{endpoint} has no test yet")',
            "",
        ]
    )


def write_placeholder_tests(target_dir: Path, diff: ContractDiff) -> List[Path]:
    """Write one skipped test module per added or modified endpoint."""
    written: List[Path] = []
    targets = diff.changed_endpoints
    if not targets:
        return written
    target_dir.mkdir(parents=True, exist_ok=True)
    for endpoint in targets:
        path = target_dir / placeholder_test_name(endpoint)
        if path.exists():
            continue
        path.write_text(placeholder_test_source(endpoint), encoding="utf-8")
        written.append(path)
    return written


__all__ = [
    "ContractDiff",
    "ContractSnapshot",
    "Endpoint",
    "ViewContract",
    "build_impact_report",
    "check_integrity",
    "compute_contract_snapshot",
    "diff_contracts",
    "extract_api_calls",
    "extract_endpoints",
    "full_contract_snapshot",
    "normalise_api_path",
    "placeholder_test_name",
    "placeholder_test_source",
    "write_placeholder_tests",
]
