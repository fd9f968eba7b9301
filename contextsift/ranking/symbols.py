"""Pattern-based symbol extraction and structural scoring.

This is deliberately *not* a parser: a handful of regular expressions recognize
declarations, exports and imports across JavaScript/TypeScript, Python, Ruby,
Go, Rust and similar languages. Scoring only needs identifier names and
positions, so the precision lost against a real syntax tree is accepted in
exchange for zero setup cost and no per-language grammars.
"""

import bisect
import logging
import math
import posixpath
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .types import CandidateFile, Query, SignalScore, Symbol, WorkflowPosition, split_words

logger = logging.getLogger(__name__)

_FLAGS = re.MULTILINE

_CLASS_PATTERNS = [
    re.compile(
        r"(?:^|\s)(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+([A-Za-z_$][\w$]*)",
        _FLAGS,
    ),
]

_FUNCTION_PATTERNS = [
    # python / ruby
    re.compile(r"^[ \t]*(?:async\s+)?def\s+(?:self\.)?([A-Za-z_]\w*[?!]?)", _FLAGS),
    # javascript function declarations
    re.compile(
        r"^[ \t]*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*([A-Za-z_$][\w$]*)",
        _FLAGS,
    ),
    # arrow functions bound to a name
    re.compile(
        r"^[ \t]*(?:export\s+)?(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*(?::[^=]+)?="
        r"\s*(?:async\s*)?(?:\([^)]*\)|[A-Za-z_$][\w$]*)\s*(?::[^=]+)?=>",
        _FLAGS,
    ),
    # go / rust / kotlin
    re.compile(
        r"^[ \t]*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:fn|fun|func)\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)",
        _FLAGS,
    ),
    # class methods: `async save(user: User): Promise<void> {`
    re.compile(
        r"^[ \t]*(?:(?:public|private|protected|static|async|override|virtual|internal|final|readonly)\s+)*"
        r"([A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*\([^)]*\)\s*(?::\s*[^{;=]+)?\{",
        _FLAGS,
    ),
]

_NOT_FUNCTIONS = frozenset(
    {
        "if",
        "for",
        "while",
        "with",
        "try",
        "catch",
        "switch",
        "case",
        "return",
        "function",
        "elif",
        "else",
        "new",
        "typeof",
        "constructor",
    }
)

_EXPORT_DECL = re.compile(
    r"^[ \t]*export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?:function\s*\*?|abstract\s+class|class|const|let|var|interface|type|enum)\s+([A-Za-z_$][\w$]*)",
    _FLAGS,
)
_EXPORT_DEFAULT_NAME = re.compile(r"^[ \t]*export\s+default\s+([A-Za-z_$][\w$]*)\s*;?\s*$", _FLAGS)
_EXPORT_LIST = re.compile(r"^[ \t]*export\s*\{([^}]*)\}", _FLAGS)
_COMMONJS_EXPORT = re.compile(r"^[ \t]*(?:module\.)?exports\.([A-Za-z_$][\w$]*)\s*=", _FLAGS)
_COMMONJS_EXPORT_LIST = re.compile(r"module\.exports\s*=\s*\{([^}]*)\}", _FLAGS)

_ES_IMPORT = re.compile(r"^[ \t]*import\s+(?:type\s+)?([^'\";]+?)\s+from\s+['\"]([^'\"]+)['\"]", _FLAGS)
_ES_SIDE_EFFECT_IMPORT = re.compile(r"^[ \t]*import\s+['\"]([^'\"]+)['\"]", _FLAGS)
_REQUIRE = re.compile(
    r"(?:(?:const|let|var)\s+(\{[^}]*\}|[A-Za-z_$][\w$]*)\s*=\s*)?require\(\s*['\"]([^'\"]+)['\"]\s*\)"
)
_PY_FROM_IMPORT = re.compile(r"^[ \t]*from\s+([\w.]+)\s+import\s+(\([^)]*\)|[^\n#]+)", _FLAGS)
_PY_IMPORT = re.compile(r"^[ \t]*import\s+([\w.]+)(?:\s+as\s+\w+)?[ \t]*$", _FLAGS)
_RUBY_REQUIRE = re.compile(r"^[ \t]*require(?:_relative)?\s+['\"]([^'\"]+)['\"]", _FLAGS)

RESOLVE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".vue", ".py", ".rb")

UNSUPPORTED_EXTENSIONS = (
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".lock",
    ".ico",
    ".woff",
    ".woff2",
    ".pdf",
    ".zip",
    ".tar",
    ".gz",
    ".exe",
    ".dll",
    ".so",
    ".dylib",
    ".mp3",
    ".mp4",
    ".avi",
    ".mov",
    ".wav",
    ".flac",
)
SKIP_DIRS = (
    "/node_modules/",
    "/.git/",
    "/dist/",
    "/build/",
    "/.nuxt/",
    "/.output/",
    "/coverage/",
    "/public/",
    "/__pycache__/",
    "/.venv/",
)


def is_supported_path(path: str) -> bool:
    """Whether a file is worth scanning: not a binary asset, not in a build/vendor dir."""
    lowered = "/" + path.lower().lstrip("/")
    if lowered.endswith(UNSUPPORTED_EXTENSIONS):
        return False
    return not any(skip in lowered for skip in SKIP_DIRS)


def _split_names(spec: str) -> list[str]:
    """Parse an import/export name list into local names.

    "{ a, b as c }" -> ["a", "b"] for imports (the original name is what the
    other module exports); "React, { useState }" -> ["React", "useState"].
    """
    spec = spec.strip().strip("()")
    names = []
    for part in re.split(r"[,{}\n]", spec):
        part = part.strip()
        if not part or part == "*":
            continue
        if part.startswith("* as "):
            continue
        part = re.sub(r"^type\s+", "", part)
        name = part.split(" as ")[0].strip()
        if re.fullmatch(r"[A-Za-z_$][\w$]*", name):
            names.append(name)
    return names


def _export_alias_names(spec: str) -> list[str]:
    """Names made visible by `export { a, b as c }` -> ["a", "c"]."""
    names = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        name = part.split(" as ")[-1].strip()
        if re.fullmatch(r"[A-Za-z_$][\w$]*", name):
            names.append(name)
    return names


@dataclass(frozen=True)
class WorkflowLink:
    """A file's structural relationship to the entry point."""

    position: WorkflowPosition
    referenced_names: tuple[str, ...] = ()


class PathIndex:
    """Candidate paths indexed by exact path and by every trailing segment run.

    `find_suffix("auth/login.ts")` returns the lowest path ending in
    `/auth/login.ts` (or equal to it) in constant time.
    """

    def __init__(self, paths: Iterable[str]):
        self.paths = frozenset(paths)
        self._by_suffix: dict[str, str] = {}
        for path in sorted(self.paths):
            parts = path.lstrip("/").split("/")
            for i in range(len(parts)):
                self._by_suffix.setdefault("/".join(parts[i:]), path)

    def __contains__(self, path: object) -> bool:
        return path in self.paths

    def __len__(self) -> int:
        return len(self.paths)

    def find_suffix(self, suffix: str) -> str | None:
        return self._by_suffix.get(suffix.lstrip("/"))


def _entry_stem(path: str) -> str:
    """Name an import must mention to refer to `path`."""
    name = posixpath.basename(path)
    stem = name.split(".", 1)[0]
    if stem in ("index", "__init__"):
        return posixpath.basename(posixpath.dirname(path)) or stem
    return stem


class SymbolExtractor:
    """Extract identifiers with regexes and score them against a query."""

    KIND_WEIGHTS = {
        "class": 1.0,
        "function": 0.8,
        "export": 0.5,
        "import": 0.4,
    }
    PATH_WEIGHT = 0.6
    CONTENT_WEIGHT = 0.1
    CONTENT_CAP = 0.5
    MULTI_TOKEN_BOOST = 0.25

    # (path fragment, multiplier); first match wins
    FILE_TYPE_WEIGHTS = (
        ("/model", 1.2),
        ("/controller", 1.1),
        ("/service", 1.1),
        ("/component", 1.1),
        ("/job", 1.0),
        ("/migrat", 0.7),
        ("/config", 0.6),
        ("/spec", 0.8),
        ("/test", 0.8),
    )

    def __init__(self, workflow_bonus: float = 0.75, saturation: float = 2.0):
        self.workflow_bonus = workflow_bonus
        self.saturation = saturation

    # --- extraction ---

    def extract_symbols(self, file: CandidateFile) -> tuple[Symbol, ...]:
        """Return the symbols of a file, extracting them on first use."""
        if file.symbols is None:
            file.symbols = self._extract(file.content)
        return file.symbols

    def _extract(self, content: str) -> tuple[Symbol, ...]:
        line_starts = [0] + [m.end() for m in re.finditer(r"\n", content)]

        def position(offset: int) -> tuple[int, int]:
            line = bisect.bisect_right(line_starts, offset) - 1
            return line, offset - line_starts[line]

        found: dict[tuple[str, str, int], Symbol] = {}

        def add(name: str, kind, offset: int, source: str | None = None):
            line, column = position(offset)
            key = (name, kind, line)
            if key not in found:
                found[key] = Symbol(name, kind, line, column, source)

        for pattern in _CLASS_PATTERNS:
            for m in pattern.finditer(content):
                add(m.group(1), "class", m.start(1))

        for pattern in _FUNCTION_PATTERNS:
            for m in pattern.finditer(content):
                name = m.group(1)
                if name in _NOT_FUNCTIONS:
                    continue
                line, _ = position(m.start(1))
                # the same function is often caught by two patterns
                if any(
                    s.kind == "function" and s.name == name and abs(s.line - line) <= 2
                    for s in found.values()
                ):
                    continue
                add(name, "function", m.start(1))

        for m in _EXPORT_DECL.finditer(content):
            add(m.group(1), "export", m.start(1))
        for m in _EXPORT_DEFAULT_NAME.finditer(content):
            add(m.group(1), "export", m.start(1))
        for m in _COMMONJS_EXPORT.finditer(content):
            add(m.group(1), "export", m.start(1))
        for pattern in (_EXPORT_LIST, _COMMONJS_EXPORT_LIST):
            for m in pattern.finditer(content):
                for name in _export_alias_names(m.group(1)):
                    add(name, "export", m.start(1))

        for m in _ES_IMPORT.finditer(content):
            module = m.group(2)
            add(module, "import", m.start(2))
            for name in _split_names(m.group(1)):
                add(name, "imported_name", m.start(1), source=module)
        for m in _ES_SIDE_EFFECT_IMPORT.finditer(content):
            add(m.group(1), "import", m.start(1))
        for m in _REQUIRE.finditer(content):
            module = m.group(2)
            add(module, "import", m.start(2))
            if m.group(1) and m.group(1).startswith("{"):
                for name in _split_names(m.group(1)):
                    add(name, "imported_name", m.start(1), source=module)
        for m in _PY_FROM_IMPORT.finditer(content):
            module = m.group(1)
            add(module, "import", m.start(1))
            for name in _split_names(m.group(2)):
                add(name, "imported_name", m.start(2), source=module)
        for m in _PY_IMPORT.finditer(content):
            add(m.group(1), "import", m.start(1))
        for m in _RUBY_REQUIRE.finditer(content):
            add(m.group(1), "import", m.start(1))

        return tuple(sorted(found.values(), key=lambda s: (s.line, s.column, s.kind, s.name)))

    # --- import resolution and workflow ---

    @staticmethod
    def resolve_import(
        module: str, from_path: str, paths: PathIndex | Iterable[str]
    ) -> str | None:
        """Resolve an import target to one of the candidate paths, if any.

        Pass a `PathIndex` when resolving many imports against the same paths.
        """
        base: str
        if module.startswith(("./", "../")):
            base = posixpath.normpath(posixpath.join(posixpath.dirname(from_path), module))
        elif module.startswith("."):
            # python relative import: ".models" / "..core.models"
            dots = len(module) - len(module.lstrip("."))
            directory = posixpath.dirname(from_path)
            for _ in range(dots - 1):
                directory = posixpath.dirname(directory)
            rest = module[dots:].replace(".", "/")
            base = posixpath.join(directory, rest) if rest else directory
        elif module.startswith(("~/", "@/")):
            base = module[2:]
        elif "/" not in module and "." in module:
            base = module.replace(".", "/")
        else:
            base = module

        candidates = [base]
        candidates += [base + ext for ext in RESOLVE_EXTENSIONS]
        candidates += [f"{base}/index{ext}" for ext in RESOLVE_EXTENSIONS]
        candidates.append(f"{base}/__init__.py")

        index = paths if isinstance(paths, PathIndex) else PathIndex(paths)
        for candidate in candidates:
            if candidate in index:
                return candidate
        for candidate in candidates:
            matched = index.find_suffix(candidate)
            if matched:
                return matched
        return None

    def _imports(self, file: CandidateFile) -> dict[str, list[str]]:
        """Imported modules of `file` and the names imported from each."""
        by_module: dict[str, list[str]] = {}
        for symbol in self.extract_symbols(file):
            if symbol.kind == "import":
                by_module.setdefault(symbol.name, [])
            elif symbol.kind == "imported_name" and symbol.source:
                by_module.setdefault(symbol.source, []).append(symbol.name)
        return by_module

    def dependencies(
        self, file: CandidateFile, paths: PathIndex | Iterable[str]
    ) -> dict[str, tuple[str, ...]]:
        """Map each candidate path imported by `file` to the names imported from it."""
        index = paths if isinstance(paths, PathIndex) else PathIndex(paths)
        deps: dict[str, list[str]] = {}
        for module, names in self._imports(file).items():
            target = self.resolve_import(module, file.path, index)
            if target and target != file.path:
                deps.setdefault(target, []).extend(names)
        return {target: tuple(dict.fromkeys(names)) for target, names in deps.items()}

    def _imports_path(self, file: CandidateFile, target: str, index: PathIndex) -> bool:
        """Whether `file` imports `target`; only imports naming it are resolved."""
        stem = _entry_stem(target)
        for module in self._imports(file):
            # bare dots (`from . import x`, `..`) resolve to a package index
            if stem not in module and module.strip("./"):
                continue
            if self.resolve_import(module, file.path, index) == target:
                return True
        return False

    @staticmethod
    def find_entry_point(entry_point_file: str, paths: Iterable[str]) -> str | None:
        wanted = entry_point_file.strip().lstrip("./").lstrip("/")
        paths = sorted(paths)
        for path in paths:
            if path.lstrip("./").lstrip("/") == wanted:
                return path
        for path in paths:
            if path.endswith("/" + wanted):
                return path
        return None

    def workflow_positions(
        self, entry_point_file: str | None, files: Sequence[CandidateFile]
    ) -> dict[str, WorkflowLink]:
        """Position of each related file relative to the entry point.

        Files the entry point imports are downstream; files importing the entry
        point are upstream; the entry point itself is the entry.
        """
        if not entry_point_file:
            return {}
        index = PathIndex(f.path for f in files)
        entry_path = self.find_entry_point(entry_point_file, index.paths)
        if entry_path is None:
            logger.debug(f"Entry point {entry_point_file} is not among the candidates")
            return {}

        entry = next(f for f in files if f.path == entry_path)
        links: dict[str, WorkflowLink] = {entry_path: WorkflowLink("entry")}
        for target, names in sorted(self.dependencies(entry, index).items()):
            links[target] = WorkflowLink("downstream", names)
        for file in files:
            if file.path in links:
                continue
            if self._imports_path(file, entry_path, index):
                links[file.path] = WorkflowLink("upstream")
        return links

    # --- scoring ---

    def _file_type_multiplier(self, path: str) -> float:
        lowered = "/" + path.lower().lstrip("/")
        for fragment, multiplier in self.FILE_TYPE_WEIGHTS:
            if fragment in lowered:
                return multiplier
        return 1.0

    @staticmethod
    def _name_match(token: str, names: Iterable[str]) -> str | None:
        """Return "exact" or "partial" for the best match of token among names."""
        best = None
        for name in names:
            lowered = name.lower()
            words = split_words(name)
            if token == lowered or token in words:
                return "exact"
            if token in lowered or any(len(w) >= 3 and token.startswith(w) for w in words):
                best = "partial"
        return best

    def score(
        self,
        query: Query,
        file: CandidateFile,
        workflow: dict[str, WorkflowLink] | None = None,
    ) -> SignalScore:
        symbols = self.extract_symbols(file)
        names_by_kind: dict[str, list[str]] = {kind: [] for kind in self.KIND_WEIGHTS}
        for symbol in symbols:
            kind = "import" if symbol.kind == "imported_name" else symbol.kind
            names_by_kind[kind].append(symbol.name)

        path_lower = file.path.lower()
        content_lower = file.content.lower()
        raw = 0.0
        matches: list[str] = []
        matched_tokens: set[str] = set()

        for token in query.tokens:
            if token in path_lower:
                raw += self.PATH_WEIGHT
                matches.append(f'Path matches "{token}"')
                matched_tokens.add(token)

            for kind, weight in self.KIND_WEIGHTS.items():
                match = self._name_match(token, names_by_kind[kind])
                if match == "exact":
                    raw += weight
                    matches.append(f'{kind.capitalize()} name matches "{token}"')
                    matched_tokens.add(token)
                elif match == "partial":
                    raw += weight / 2
                    matches.append(f'{kind.capitalize()} name contains "{token}"')
                    matched_tokens.add(token)

            occurrences = content_lower.count(token)
            if occurrences:
                raw += min(occurrences * self.CONTENT_WEIGHT, self.CONTENT_CAP)
                matches.append(f'Content matches "{token}"')
                matched_tokens.add(token)

        # reward files matching several distinct query tokens
        if len(matched_tokens) > 1:
            raw *= 1 + (len(matched_tokens) - 1) * self.MULTI_TOKEN_BOOST
        raw *= self._file_type_multiplier(file.path)

        link = (workflow or {}).get(file.path)
        if link is not None:
            if link.position == "entry":
                raw += self.workflow_bonus
                matches.append("Entry point of the workflow")
            elif link.position == "downstream":
                raw += self.workflow_bonus
                exported = {
                    s.name
                    for s in symbols
                    if s.kind in ("export", "function", "class")
                }
                referenced = sorted(exported.intersection(link.referenced_names))
                if referenced:
                    raw += self.workflow_bonus / 2
                    matches.append(f"Imported by entry point: {', '.join(referenced)}")
                else:
                    matches.append("Imported by entry point")
            elif link.position == "upstream":
                raw += self.workflow_bonus / 2
                matches.append("Imports the entry point")

        value = 1.0 - math.exp(-raw / self.saturation) if raw > 0 else 0.0
        return SignalScore(value=value, matches=tuple(matches))
