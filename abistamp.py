#!/usr/bin/env python3
"""
abistamp - ABI stability assertions for firmware/host boundaries

High-level goals:
- Parse one C translation unit (via Clang) and record the layout of an
  allow-listed set of structs, enums and macros
- Apply a per-symbol compatibility policy (exact match or append-only growth)
- Emit a deterministic C file of static assertions that breaks the build as
  soon as a checked layout or value drifts

The extraction core works on plain descriptors, so it can be driven by any
front-end (or by tests) without a compiler in the loop.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Literal, Mapping, Optional, Set, Tuple, Union
import argparse
import os
import re
import shlex
import sys
import tempfile

import yaml
from clang import cindex as clang_cindex


__version__ = "0.1.0"


# ============================================================
# ====================== DIAGNOSTICS =========================
# ============================================================

class AbiStampError(Exception):
    """Base class for failures that abort a run."""


class ConfigError(AbiStampError):
    pass


class OutputError(AbiStampError):
    pass


class FrontendError(AbiStampError):
    pass


class CollectorStateError(AbiStampError):
    pass


class Diagnostics:
    """
    Warning channel shared by the extractor, catalog and sequencer.

    Messages go to ``stream`` (``sys.stderr`` when unset, looked up at write
    time) and are also kept in ``warnings`` for callers that want to inspect
    them after a run.
    """

    def __init__(self, stream: Optional[Any] = None) -> None:
        self.stream = stream
        self.warnings: List[str] = []

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self._write(f"[abistamp] warning: {message}\n")

    def error(self, message: str) -> None:
        self._write(f"[abistamp] error: {message}\n")

    def _write(self, text: str) -> None:
        stream = self.stream if self.stream is not None else sys.stderr
        stream.write(text)


# ============================================================
# ================= FRONT-END DESCRIPTORS ====================
# ============================================================

@dataclass
class FieldDescriptor:
    name: Optional[str]
    offset: Optional[int]  # bytes
    size: Optional[int]    # bytes, None when the front-end cannot size it


@dataclass
class EnumeratorDescriptor:
    name: str
    value: Any  # only plain ints are accepted


@dataclass
class TypeDescriptor:
    """
    One "declaration finished" event from a front-end.
    """
    kind: Literal["struct", "union", "enum"]
    name: Optional[str]
    size: Optional[int] = None
    fields: List[FieldDescriptor] = field(default_factory=list)
    enumerators: List[EnumeratorDescriptor] = field(default_factory=list)
    location: Optional[str] = None  # "file:line", diagnostics only


# ============================================================
# ==================== CATALOG RECORDS =======================
# ============================================================

@dataclass(frozen=True)
class FieldLayout:
    name: str
    offset: int
    size: Optional[int]


@dataclass(frozen=True)
class StructRecord:
    name: str
    total_size: int
    fields: Tuple[FieldLayout, ...] = ()
    kind: Literal["struct"] = "struct"


@dataclass(frozen=True)
class EnumRecord:
    name: str
    members: Tuple[Tuple[str, int], ...] = ()
    kind: Literal["enum"] = "enum"


@dataclass(frozen=True)
class MacroRecord:
    name: str
    value: str
    signature: str = ""  # definition head, e.g. "F(a, b)"; defaults to name
    kind: Literal["macro"] = "macro"

    @property
    def head(self) -> str:
        return self.signature or self.name


CatalogedSymbol = Union[StructRecord, EnumRecord, MacroRecord]

_RECORD_KIND = {"struct": "struct", "union": "struct", "enum": "enum"}


# ============================================================
# ================== ALLOW-LIST & POLICY =====================
# ============================================================

@dataclass(frozen=True)
class AllowList:
    exact: FrozenSet[str] = frozenset()
    prefixes: Tuple[str, ...] = ()
    # name -> "struct" | "enum" | "macro" for names listed by kind
    kinds: Mapping[str, str] = field(default_factory=dict)

    def is_wanted(self, name: str) -> bool:
        if name in self.exact:
            return True
        return any(name.startswith(prefix) for prefix in self.prefixes)


@dataclass(frozen=True)
class PolicyRegistry:
    """
    Symbols listed here may grow at the end; everything else must match
    exactly.
    """
    growable_structs: FrozenSet[str] = frozenset()
    growable_enums: FrozenSet[str] = frozenset()

    def is_growable_struct(self, name: str) -> bool:
        return name in self.growable_structs

    def is_growable_enum(self, name: str) -> bool:
        return name in self.growable_enums


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

DEFAULT_BANNER = (
    "This file enforces ABI stability of the types and constants shared\n"
    "between two independently built binaries.\n"
    "\n"
    "If one of the asserts below fires, your change breaks the ABI in a way\n"
    "the other side cannot cope with.\n"
    "\n"
    "This file was generated automatically by abistamp."
)


@dataclass(frozen=True)
class PreambleConfig:
    banner: str = DEFAULT_BANNER
    defines: Tuple[str, ...] = ()
    includes: Tuple[str, ...] = ()
    static_assert: Optional[str] = None  # e.g. "ct_assert"; None -> _Static_assert
    offsetof: Optional[str] = None       # e.g. "NV_OFFSETOF"; None -> offsetof


@dataclass(frozen=True)
class AbiStampConfig:
    allow_list: AllowList = field(default_factory=AllowList)
    policy: PolicyRegistry = field(default_factory=PolicyRegistry)
    target_unit: Optional[str] = None
    output: Optional[str] = None
    preamble: PreambleConfig = field(default_factory=PreambleConfig)
    clang_args: Tuple[str, ...] = ()


_KNOWN_CONFIG_KEYS = {"target_unit", "output", "wanted", "growable", "preamble", "clang_args"}
_WANTED_KIND_KEYS = {"structs": "struct", "enums": "enum", "macros": "macro"}
_X_MACRO_RE = re.compile(r"^\s*(X_STRUCT|X_ENUM|X_MACRO|X_MACRO_PREFIX)\s*\(\s*([A-Za-z_]\w*)\s*\)", re.M)
_X_MACRO_KIND = {"X_STRUCT": "struct", "X_ENUM": "enum", "X_MACRO": "macro"}


def _strip_c_comments(content: str) -> str:
    content = re.sub(r"/\*.*?\*/", "", content, flags=re.S)
    return re.sub(r"//.*?$", "", content, flags=re.M)


def load_wanted_header(path: str) -> Tuple[List[Tuple[str, str]], List[str]]:
    """
    Read an X-macro allow-list header:

        X_STRUCT(GspSystemInfo)
        X_ENUM(NV_VGPU_MSG_FUNCTION)
        X_MACRO(NV_VGPU_MSG_SIGNATURE_VALID)
        X_MACRO_PREFIX(NV_VGPU_MSG_EVENT_)

    Returns ``([(kind, name), ...], [prefix, ...])`` in file order.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            content = handle.read()
    except OSError as exc:
        raise ConfigError(f"Could not read wanted header {path}: {exc}") from exc

    named: List[Tuple[str, str]] = []
    prefixes: List[str] = []
    for match in _X_MACRO_RE.finditer(_strip_c_comments(content)):
        macro, name = match.group(1), match.group(2)
        if macro == "X_MACRO_PREFIX":
            prefixes.append(name)
        else:
            named.append((_X_MACRO_KIND[macro], name))
    return named, prefixes


def _str_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, (str, int)) and not isinstance(v, bool) for v in value):
        return [str(v) for v in value]
    raise ConfigError(f"'{where}' must be a list of strings")


def _resolve_path(base_dir: str, value: str) -> str:
    if os.path.isabs(value):
        return value
    return os.path.normpath(os.path.join(base_dir, value))


def config_from_mapping(
    raw: Any,
    base_dir: str = ".",
    diagnostics: Optional[Diagnostics] = None,
) -> AbiStampConfig:
    """
    Build an AbiStampConfig from an already-parsed YAML document.
    """
    diagnostics = diagnostics or Diagnostics()
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a mapping")

    for key in sorted(set(raw) - _KNOWN_CONFIG_KEYS):
        diagnostics.warn(f"Ignoring unknown config key '{key}'")

    kinds: Dict[str, str] = {}
    untyped: List[str] = []
    prefixes: List[str] = []

    def declare(kind: str, name: str) -> None:
        previous = kinds.get(name)
        if previous is not None and previous != kind:
            raise ConfigError(f"'{name}' is listed both as {previous} and as {kind}")
        kinds[name] = kind

    wanted = raw.get("wanted")
    if isinstance(wanted, list) or wanted is None:
        untyped.extend(_str_list(wanted, "wanted"))
    elif isinstance(wanted, dict):
        for key, kind in _WANTED_KIND_KEYS.items():
            for name in _str_list(wanted.get(key), f"wanted.{key}"):
                declare(kind, name)
        untyped.extend(_str_list(wanted.get("names"), "wanted.names"))
        prefixes.extend(_str_list(wanted.get("prefixes"), "wanted.prefixes"))
        header = wanted.get("header")
        if header is not None:
            if not isinstance(header, str):
                raise ConfigError("'wanted.header' must be a path")
            named, header_prefixes = load_wanted_header(_resolve_path(base_dir, header))
            for kind, name in named:
                declare(kind, name)
            prefixes.extend(header_prefixes)
    else:
        raise ConfigError("'wanted' must be a list or a mapping")

    growable = raw.get("growable") or {}
    if not isinstance(growable, dict):
        raise ConfigError("'growable' must be a mapping")
    growable_structs = frozenset(_str_list(growable.get("structs"), "growable.structs"))
    growable_enums = frozenset(_str_list(growable.get("enums"), "growable.enums"))

    allow_list = AllowList(
        exact=frozenset(kinds) | frozenset(untyped),
        prefixes=tuple(dict.fromkeys(prefixes)),
        kinds=dict(kinds),
    )
    for name in sorted(growable_structs | growable_enums):
        if not allow_list.is_wanted(name):
            diagnostics.warn(f"Growable symbol {name} is not in the wanted list")

    preamble_raw = raw.get("preamble") or {}
    if not isinstance(preamble_raw, dict):
        raise ConfigError("'preamble' must be a mapping")
    banner = preamble_raw.get("banner", DEFAULT_BANNER)
    if not isinstance(banner, str):
        raise ConfigError("'preamble.banner' must be a string")
    preamble = PreambleConfig(
        banner=banner.rstrip("\n"),
        defines=tuple(_str_list(preamble_raw.get("defines"), "preamble.defines")),
        includes=tuple(_str_list(preamble_raw.get("includes"), "preamble.includes")),
        static_assert=_optional_str(preamble_raw, "static_assert", "preamble.static_assert"),
        offsetof=_optional_str(preamble_raw, "offsetof", "preamble.offsetof"),
    )

    output = _optional_str(raw, "output", "output")
    return AbiStampConfig(
        allow_list=allow_list,
        policy=PolicyRegistry(growable_structs=growable_structs, growable_enums=growable_enums),
        target_unit=_optional_str(raw, "target_unit", "target_unit"),
        output=_resolve_path(base_dir, output) if output else None,
        preamble=preamble,
        clang_args=tuple(_str_list(raw.get("clang_args"), "clang_args")),
    )


def _optional_str(raw: Dict[str, Any], key: str, where: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"'{where}' must be a non-empty string")
    return value


def load_config(path: str, diagnostics: Optional[Diagnostics] = None) -> AbiStampConfig:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    base_dir = os.path.dirname(os.path.abspath(path))
    return config_from_mapping(raw, base_dir=base_dir, diagnostics=diagnostics)


# ============================================================
# ================ DECLARATION EXTRACTION ====================
# ============================================================

def _where(desc: TypeDescriptor) -> str:
    return f" ({desc.location})" if desc.location else ""


def extract_struct(desc: TypeDescriptor, diagnostics: Diagnostics) -> Optional[StructRecord]:
    """
    Normalize a struct-like descriptor. Anonymous types and types without a
    computable size yield None; partial layouts are never cataloged.
    """
    if not desc.name or desc.size is None:
        return None

    where = _where(desc)
    named = [f for f in desc.fields if f.name]
    fields: List[FieldLayout] = []
    for index, fd in enumerate(named):
        if fd.offset is None:
            diagnostics.warn(f"Failed to get offset for {desc.name}.{fd.name}{where}")
            continue
        if fd.size is None and index != len(named) - 1:
            diagnostics.warn(f"Failed to get size for {desc.name}.{fd.name}{where}")
        fields.append(FieldLayout(name=fd.name, offset=fd.offset, size=fd.size))  # type: ignore[arg-type]

    return StructRecord(name=desc.name, total_size=desc.size, fields=tuple(fields))


def extract_enum(desc: TypeDescriptor, diagnostics: Diagnostics) -> Optional[EnumRecord]:
    if not desc.name:
        return None

    where = _where(desc)
    members: List[Tuple[str, int]] = []
    for enumerator in desc.enumerators:
        value = enumerator.value
        if value is None:
            diagnostics.warn(f"No value for enumerator {desc.name}.{enumerator.name}{where}")
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            diagnostics.warn(f"Enumerator {desc.name}.{enumerator.name} is not an integer{where}")
            continue
        members.append((enumerator.name, int(value)))
    return EnumRecord(name=desc.name, members=tuple(members))


def extract_declaration(desc: TypeDescriptor, diagnostics: Diagnostics) -> Optional[CatalogedSymbol]:
    if desc.kind in ("struct", "union"):
        return extract_struct(desc, diagnostics)
    if desc.kind == "enum":
        return extract_enum(desc, diagnostics)
    return None


_MACRO_HEAD_RE = re.compile(r"[A-Za-z_]\w*\([^)]*\)")


def parse_macro_definition(definition: str) -> Optional[Tuple[str, str]]:
    """
    Split "NAME body" into its head and body. A function-like head keeps its
    whole parameter list, spaces included. Definitions without a body (empty
    macros) have no value and return None.
    """
    match = _MACRO_HEAD_RE.match(definition)
    if match:
        head, rest = match.group(0), definition[match.end():]
        if not rest.startswith(" "):
            return None
    else:
        head, sep, rest = definition.partition(" ")
        if not sep:
            return None
    return head, rest.lstrip(" ")


def extract_macro(name: str, definition: str) -> Optional[MacroRecord]:
    parsed = parse_macro_definition(definition)
    if parsed is None:
        return None
    head, value = parsed
    return MacroRecord(name=name, value=value, signature=head if head != name else "")


# ============================================================
# ===================== SYMBOL CATALOG =======================
# ============================================================

class SymbolCatalog:
    """
    Name-keyed store of extracted records. The first record inserted under a
    name wins; iteration is always in name order so output is diff-stable.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, CatalogedSymbol] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str) -> Optional[CatalogedSymbol]:
        return self._entries.get(name)

    def add(self, record: CatalogedSymbol) -> bool:
        if record.name in self._entries:
            return False
        self._entries[record.name] = record
        return True

    def missing(self, names: Iterable[str]) -> List[str]:
        return sorted(name for name in set(names) if name not in self._entries)

    def in_name_order(self) -> List[CatalogedSymbol]:
        return [self._entries[name] for name in sorted(self._entries)]


# ============================================================
# ================== ASSERTION RENDERING =====================
# ============================================================

def _render_struct(record: StructRecord, policy: PolicyRegistry) -> List[str]:
    name = record.name
    lines: List[str] = []
    if policy.is_growable_struct(name):
        lines.append("// Appending to the end of the struct is okay.")
        lines.append(f"ABI_CHECK_SIZE_GE({name}, {record.total_size});")
    else:
        lines.append(f"ABI_CHECK_SIZE_EQ({name}, {record.total_size});")

    last = len(record.fields) - 1
    for index, fl in enumerate(record.fields):
        if fl.size is None:
            if index == last:
                lines.append(f"ABI_CHECK_FIELD_FLEXIBLE({name}, {fl.name}, {fl.offset});")
            else:
                lines.append(f"ABI_CHECK_OFFSET({name}, {fl.name}, {fl.offset});")
            continue
        lines.append(f"ABI_CHECK_FIELD({name}, {fl.name}, {fl.offset}, {fl.size});")
    return lines


def _render_enum(record: EnumRecord, policy: PolicyRegistry) -> List[str]:
    name = record.name
    growable = policy.is_growable_enum(name)
    last = len(record.members) - 1
    lines: List[str] = []
    for index, (member, value) in enumerate(record.members):
        if growable and index == last:
            lines.append("// Appending to the end of this enum is okay.")
            lines.append(f"ABI_CHECK_ENUM_VAL_GE({name}, {member}, {value});")
        else:
            lines.append(f"ABI_CHECK_ENUM_VAL_EQ({name}, {member}, {value});")
    return lines


def _render_macro(record: MacroRecord, policy: PolicyRegistry) -> List[str]:
    # A redefinition compiles only if it is token-identical, which is the check.
    return [f"#define {record.head} {record.value}"]


_RENDERERS = {
    "struct": _render_struct,
    "enum": _render_enum,
    "macro": _render_macro,
}


def render_symbol(record: CatalogedSymbol, policy: PolicyRegistry) -> List[str]:
    return _RENDERERS[record.kind](record, policy)  # type: ignore[operator]


def render_catalog(catalog: SymbolCatalog, policy: PolicyRegistry) -> str:
    chunks: List[str] = []
    for record in catalog.in_name_order():
        lines = render_symbol(record, policy)
        if lines:
            chunks.append("\n" + "\n".join(lines) + "\n")
    return "".join(chunks)


def _format_include(include: str) -> str:
    if include.startswith(("<", '"')):
        return f"#include {include}"
    return f'#include "{include}"'


def render_preamble(preamble: PreambleConfig) -> str:
    lines: List[str] = ["//"]
    for text in preamble.banner.split("\n") if preamble.banner else []:
        lines.append(f"// {text}".rstrip())
    lines.append("//")
    lines.append("")

    if preamble.defines:
        lines.extend(preamble.defines)
    if preamble.offsetof is None:
        lines.append("#include <stddef.h>")
    lines.extend(_format_include(inc) for inc in preamble.includes)
    lines.append("")

    if preamble.static_assert:
        assert_body = f"{preamble.static_assert}(cond)"
    else:
        assert_body = "_Static_assert(cond, #cond)"
    offsetof = preamble.offsetof or "offsetof"
    lines.extend([
        f"#define ABI_STATIC_ASSERT(cond)                      {assert_body}",
        f"#define ABI_OFFSETOF(str, fld)                       {offsetof}(str, fld)",
        "#define ABI_CHECK_SIZE_EQ(str, size)                 ABI_STATIC_ASSERT(sizeof(str) == size)",
        "#define ABI_CHECK_SIZE_GE(str, size)                 ABI_STATIC_ASSERT(sizeof(str) >= size)",
        "#define ABI_CHECK_ENUM_VAL_EQ(enumname, name, value) ABI_STATIC_ASSERT(name == value)",
        "#define ABI_CHECK_ENUM_VAL_GE(enumname, name, value) ABI_STATIC_ASSERT(name >= value)",
        "#define ABI_CHECK_OFFSET(str, fld, offset)           ABI_STATIC_ASSERT(ABI_OFFSETOF(str, fld) == offset)",
        "#define ABI_CHECK_FIELD(str, fld, offset, size)      \\",
        "    ABI_CHECK_OFFSET(str, fld, offset);              \\",
        "    ABI_CHECK_SIZE_EQ((((str*)0)->fld), size)",
        "#define ABI_CHECK_FIELD_FLEXIBLE(str, fld, offset)   \\",
        "    ABI_CHECK_OFFSET(str, fld, offset);              \\",
        "    ABI_STATIC_ASSERT(offset <= sizeof(str))",
    ])
    return "\n".join(lines) + "\n"


def render_artifact(catalog: SymbolCatalog, policy: PolicyRegistry, preamble: PreambleConfig) -> str:
    return render_preamble(preamble) + render_catalog(catalog, policy)


# ============================================================
# ==================== EVENT SEQUENCER =======================
# ============================================================

CollectorState = Literal["idle", "collecting", "finalizing", "done"]


class AbiCollector:
    """
    Single-pass driver for one translation unit.

    idle -> collecting   begin_unit() on the target unit
    collecting           on_declaration() per finished type
    -> finalizing        finish_unit(): macro scan, missing check, render
    -> done              terminal; further events are ignored

    Units other than the target never leave ``idle`` and every event for
    them is a no-op.
    """

    def __init__(self, config: AbiStampConfig, diagnostics: Optional[Diagnostics] = None) -> None:
        self.config = config
        self.diagnostics = diagnostics or Diagnostics()
        self.catalog = SymbolCatalog()
        self.state: CollectorState = "idle"
        self._unit_seen = False
        self._kind_mismatches: Set[Tuple[str, str]] = set()

    def begin_unit(self, unit_name: str) -> bool:
        if self._unit_seen:
            raise CollectorStateError(f"collector already started (state '{self.state}')")
        self._unit_seen = True
        target = self.config.target_unit
        if target is not None and os.path.basename(unit_name) != os.path.basename(target):
            return False
        self.state = "collecting"
        return True

    @property
    def active(self) -> bool:
        return self.state == "collecting"

    def on_declaration(self, desc: TypeDescriptor) -> None:
        if self.state != "collecting":
            return
        name = desc.name
        if not name or not self.config.allow_list.is_wanted(name):
            return
        kind = _RECORD_KIND.get(desc.kind)
        if kind is None:
            return
        if self._already_cataloged(name, kind) or not self._kind_matches_config(name, kind):
            return
        record = extract_declaration(desc, self.diagnostics)
        if record is not None:
            self.catalog.add(record)

    def collect(self, descriptors: Iterable[TypeDescriptor]) -> None:
        for desc in descriptors:
            self.on_declaration(desc)

    def finish_unit(self, macro_table: Mapping[str, str]) -> Optional[str]:
        """
        Run the end-of-unit phase and return the rendered catalog body
        (without preamble), or None when this unit is not being collected.
        """
        if self.state != "collecting":
            return None
        self.state = "finalizing"

        allow_list = self.config.allow_list
        for name in sorted(macro_table):
            if not allow_list.is_wanted(name) or self._already_cataloged(name, "macro"):
                continue
            if not self._kind_matches_config(name, "macro"):
                continue
            record = extract_macro(name, macro_table[name])
            if record is not None:
                self.catalog.add(record)

        for name in self.catalog.missing(allow_list.exact):
            self.diagnostics.warn(f"Missing wanted symbol {name}")

        body = render_catalog(self.catalog, self.config.policy)
        self.state = "done"
        return body

    def _kind_matches_config(self, name: str, kind: str) -> bool:
        declared = self.config.allow_list.kinds.get(name)
        if declared is None or declared == kind:
            return True
        if (name, kind) not in self._kind_mismatches:
            self._kind_mismatches.add((name, kind))
            self.diagnostics.warn(f"Config lists {name} as {declared} but a {kind} was found; ignoring it")
        return False

    def _already_cataloged(self, name: str, kind: str) -> bool:
        existing = self.catalog.get(name)
        if existing is None:
            return False
        if existing.kind != kind:
            self.diagnostics.warn(
                f"Name collision: {name} is already cataloged as {existing.kind}, ignoring {kind}"
            )
        return True


# ============================================================
# ==================== ARTIFACT OUTPUT =======================
# ============================================================

class ArtifactWriter:
    """
    Writes the artifact through a temporary file next to the target and only
    moves it into place on commit(), so a failed run never leaves a truncated
    file behind.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._handle: Optional[Any] = None
        self._tmp_path: Optional[str] = None

    def open(self, preamble_text: str = "") -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, self._tmp_path = tempfile.mkstemp(
                prefix=f".{os.path.basename(self.path)}.", suffix=".tmp", dir=directory
            )
            self._handle = os.fdopen(fd, "w", encoding="utf-8", newline="\n")
        except OSError as exc:
            raise OutputError(f"Failed to open output file {self.path}: {exc}") from exc
        if preamble_text:
            self.write(preamble_text)

    def write(self, text: str) -> None:
        if self._handle is None:
            raise OutputError("output file is not open")
        try:
            self._handle.write(text)
        except OSError as exc:
            raise OutputError(f"Failed to write output file {self.path}: {exc}") from exc

    def commit(self) -> None:
        if self._handle is None or self._tmp_path is None:
            raise OutputError("output file is not open")
        try:
            self._handle.close()
            umask = os.umask(0)
            os.umask(umask)
            os.chmod(self._tmp_path, 0o666 & ~umask)
            os.replace(self._tmp_path, self.path)
        except OSError as exc:
            self.discard()
            raise OutputError(f"Failed to write output file {self.path}: {exc}") from exc
        self._handle = None
        self._tmp_path = None

    def discard(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        if self._tmp_path is not None:
            if os.path.exists(self._tmp_path):
                os.unlink(self._tmp_path)
            self._tmp_path = None

    def __enter__(self) -> "ArtifactWriter":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is not None:
            self.discard()


# ============================================================
# ===================== CLANG FRONT-END ======================
# ============================================================

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_]\w*$")


def default_clang_args(extra: Iterable[str] = ()) -> List[str]:
    """
    Clang arguments for the target unit. ABISTAMP_CLANG_ARGS is appended
    after the built-in defaults and before caller-supplied flags.
    """
    base = ["-x", "c", "-std=c11"]
    env = os.environ.get("ABISTAMP_CLANG_ARGS")
    if env:
        base.extend(shlex.split(env))
    base.extend(extra)
    return base


def parse_translation_unit(
    path: str,
    args: Optional[List[str]] = None,
    unsaved_files: Optional[List[Tuple[str, str]]] = None,
) -> "clang_cindex.TranslationUnit":
    if not os.path.exists(path):
        raise FrontendError(f"Input file not found: {path}")
    args = default_clang_args() if args is None else args
    try:
        index = clang_cindex.Index.create()
        tu = index.parse(
            path,
            args=args,
            unsaved_files=unsaved_files,
            options=clang_cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD,
        )
    except clang_cindex.TranslationUnitLoadError as exc:
        raise FrontendError(f"libclang could not parse '{path}': {exc}") from exc

    errors = [d for d in tu.diagnostics if d.severity >= clang_cindex.Diagnostic.Error]
    if errors:
        details = "; ".join(f"{_location_text(d.location)}: {d.spelling}" for d in errors)
        raise FrontendError(f"'{path}' does not compile: {details}")
    return tu


def _location_text(location: "clang_cindex.SourceLocation") -> Optional[str]:
    if location is None or location.file is None:
        return None
    return f"{location.file.name}:{location.line}"


def _layout_value(value: int) -> Optional[int]:
    # libclang reports layout errors as negative CXTypeLayoutError codes.
    return value if value >= 0 else None


def _identifier(spelling: Optional[str]) -> Optional[str]:
    if spelling and _IDENTIFIER_RE.match(spelling):
        return spelling
    return None


def _descriptor_from_decl(
    decl: "clang_cindex.Cursor",
    name: str,
    diagnostics: Diagnostics,
) -> Optional[TypeDescriptor]:
    location = _location_text(decl.location)
    if decl.kind == clang_cindex.CursorKind.ENUM_DECL:
        enumerators = [
            EnumeratorDescriptor(name=child.spelling, value=child.enum_value)
            for child in decl.get_children()
            if child.kind == clang_cindex.CursorKind.ENUM_CONSTANT_DECL
        ]
        return TypeDescriptor(kind="enum", name=name, enumerators=enumerators, location=location)

    kind: Literal["struct", "union"] = "union" if decl.kind == clang_cindex.CursorKind.UNION_DECL else "struct"
    fields: List[FieldDescriptor] = []
    for child in decl.type.get_fields():
        field_name = _identifier(child.spelling)
        if field_name and child.is_bitfield():
            diagnostics.warn(f"Skipping bit-field {name}.{field_name}")
            continue
        fields.append(
            FieldDescriptor(
                name=field_name,
                offset=_bits_to_bytes(child.get_field_offsetof()),
                size=_layout_value(child.type.get_size()),
            )
        )
    return TypeDescriptor(
        kind=kind,
        name=name,
        size=_layout_value(decl.type.get_size()),
        fields=fields,
        location=location,
    )


def _bits_to_bytes(bits: int) -> Optional[int]:
    if bits < 0:
        return None
    return bits // 8


def iter_type_descriptors(
    tu: "clang_cindex.TranslationUnit",
    diagnostics: Optional[Diagnostics] = None,
) -> Iterator[TypeDescriptor]:
    """
    Yield one descriptor per struct/union/enum definition, in the order the
    compiler finishes them. Typedefs of defined records/enums are reported
    under the typedef name as well.
    """
    diagnostics = diagnostics or Diagnostics()
    tag_kinds = (
        clang_cindex.CursorKind.STRUCT_DECL,
        clang_cindex.CursorKind.UNION_DECL,
        clang_cindex.CursorKind.ENUM_DECL,
    )

    def visit(cursor: "clang_cindex.Cursor") -> Iterator[TypeDescriptor]:
        for child in cursor.get_children():
            if child.kind == clang_cindex.CursorKind.FUNCTION_DECL:
                continue
            if child.kind in tag_kinds:
                # Nested definitions finish before their parent.
                yield from visit(child)
                name = _identifier(child.spelling)
                if name and child.is_definition():
                    desc = _descriptor_from_decl(child, name, diagnostics)
                    if desc is not None:
                        yield desc
            elif child.kind == clang_cindex.CursorKind.TYPEDEF_DECL:
                yield from visit(child)
                decl = child.underlying_typedef_type.get_canonical().get_declaration()
                if decl.kind in tag_kinds and decl.is_definition():
                    desc = _descriptor_from_decl(decl, child.spelling, diagnostics)
                    if desc is not None:
                        yield desc

    yield from visit(tu.cursor)


def _join_tokens(tokens: List["clang_cindex.Token"]) -> str:
    # Like a preprocessor printing a definition: whitespace collapses to one space.
    parts: List[str] = []
    prev_end: Optional[int] = None
    for token in tokens:
        start = token.extent.start.offset
        if prev_end is not None and start > prev_end:
            parts.append(" ")
        parts.append(token.spelling)
        prev_end = token.extent.end.offset
    return "".join(parts)


def macro_definition_from_cursor(cursor: "clang_cindex.Cursor") -> Optional[str]:
    """
    Rebuild "NAME body" (or "NAME(args) body") for a MACRO_DEFINITION cursor.
    An empty body yields just the head.
    """
    end = cursor.extent.end.offset
    tokens = [t for t in cursor.get_tokens() if t.extent.start.offset < end]
    if len(tokens) >= 2 and tokens[0].spelling == "#" and tokens[1].spelling == "define":
        tokens = tokens[2:]
    if not tokens or tokens[0].spelling != cursor.spelling:
        return None

    head_len = 1
    if (
        len(tokens) > 1
        and tokens[1].spelling == "("
        and tokens[1].extent.start.offset == tokens[0].extent.end.offset
    ):
        while head_len < len(tokens) and tokens[head_len].spelling != ")":
            head_len += 1
        head_len += 1

    head = _join_tokens(tokens[:head_len])
    body = _join_tokens(tokens[head_len:])
    return f"{head} {body}" if body else head


_UNDEFINED_MARKER = "ABISTAMP_UNDEFINED_"


def _undefined_at_end(path: str, args: List[str], names: Iterable[str]) -> Set[str]:
    """
    Names from ``names`` that are not defined at the end of the unit.

    The preprocessing record has no #undef entries, so the unit is parsed
    again with an #ifndef trailer appended to the main file; every marker
    macro that comes out defined names a macro that was #undef'd.
    """
    names = sorted(names)
    if not names:
        return set()
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            text = handle.read()
    except OSError as exc:
        raise FrontendError(f"Could not read '{path}': {exc}") from exc
    if text and not text.endswith("\n"):
        text += "\n"
    trailer = "".join(f"#ifndef {name}\n#define {_UNDEFINED_MARKER}{name}\n#endif\n" for name in names)
    tu = parse_translation_unit(path, args, unsaved_files=[(path, text + trailer)])

    undefined: Set[str] = set()
    for cursor in tu.cursor.get_children():
        if cursor.kind == clang_cindex.CursorKind.MACRO_DEFINITION and cursor.spelling.startswith(_UNDEFINED_MARKER):
            undefined.add(cursor.spelling[len(_UNDEFINED_MARKER):])
    return undefined


def collect_macro_table(
    tu: "clang_cindex.TranslationUnit",
    args: Optional[List[str]] = None,
) -> Dict[str, str]:
    """
    name -> definition text for every macro from a file that is still
    defined when the unit ends. Later definitions replace earlier ones, as
    they do in the preprocessor.
    """
    table: Dict[str, str] = {}
    for cursor in tu.cursor.get_children():
        if cursor.kind != clang_cindex.CursorKind.MACRO_DEFINITION:
            continue
        if cursor.location.file is None:
            continue
        definition = macro_definition_from_cursor(cursor)
        if definition is not None:
            table[cursor.spelling] = definition

    args = default_clang_args() if args is None else args
    for name in _undefined_at_end(tu.spelling, args, table):
        del table[name]
    return table


# ============================================================
# ======================= PIPELINE ===========================
# ============================================================

def generate_artifact(
    config: AbiStampConfig,
    unit_name: str,
    descriptors: Iterable[TypeDescriptor],
    macro_table: Mapping[str, str],
    diagnostics: Optional[Diagnostics] = None,
) -> Optional[str]:
    """
    Run one unit through the collector and return the full artifact text,
    or None when ``unit_name`` is not the configured target.
    """
    collector = AbiCollector(config, diagnostics)
    if not collector.begin_unit(unit_name):
        return None
    collector.collect(descriptors)
    body = collector.finish_unit(macro_table)
    return render_preamble(config.preamble) + (body or "")


def run_on_source(
    config: AbiStampConfig,
    source: str,
    output: str,
    extra_clang_args: Iterable[str] = (),
    diagnostics: Optional[Diagnostics] = None,
) -> bool:
    """
    Parse ``source`` with libclang and write the artifact to ``output``.
    Returns False without touching ``output`` when ``source`` is not the
    target unit.
    """
    diagnostics = diagnostics or Diagnostics()
    collector = AbiCollector(config, diagnostics)
    if not collector.begin_unit(source):
        return False

    with ArtifactWriter(output) as writer:
        writer.open(render_preamble(config.preamble))
        args = default_clang_args(list(config.clang_args) + list(extra_clang_args))
        tu = parse_translation_unit(source, args)
        collector.collect(iter_type_descriptors(tu, diagnostics))
        writer.write(collector.finish_unit(collect_macro_table(tu, args)) or "")
        writer.commit()
    return True


# ============================================================
# ============================ CLI ===========================
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
      abistamp generate --config abi.yaml --out build/abi_check.c src/abi_check.c
    """
    parser = argparse.ArgumentParser(
        prog="abistamp",
        description="abistamp: generate ABI stability assertions for a C translation unit"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_p = subparsers.add_parser(
        "generate",
        help="Extract allow-listed layouts from one translation unit and write the assertion file."
    )
    gen_p.add_argument("--config", required=True, metavar="CONFIG_YAML", help="YAML configuration file.")
    gen_p.add_argument("--out", metavar="OUT_C", help="Output path (overrides 'output' in the config).")
    gen_p.add_argument(
        "--clang-arg",
        action="append",
        default=[],
        metavar="ARG",
        help="Extra argument passed to libclang (repeatable).",
    )
    gen_p.add_argument("source", help="C translation unit to analyze.")

    args = parser.parse_args(argv)
    diagnostics = Diagnostics()

    if args.command == "generate":
        try:
            config = load_config(args.config, diagnostics)
            output = args.out or config.output
            if not output:
                raise ConfigError("no output path: set 'output' in the config or pass --out")
        except ConfigError as exc:
            diagnostics.error(str(exc))
            return 2

        try:
            run_on_source(config, args.source, output, args.clang_arg, diagnostics)
        except (OutputError, FrontendError) as exc:
            diagnostics.error(str(exc))
            return 1
        return 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
