#!/usr/bin/env python3
"""Extract Django model declarations and naive query call sites from a source tree.

Walks a directory of Python sources, parses each file in-process with ``ast``
and collects every top-level class deriving from ``Model`` with its field
declarations. Lines that look like ORM manager calls are captured verbatim.

Usage:
    python extract_models.py --input ./myapp [--exclude GLOB ...] [--indent N]
"""

from __future__ import annotations

import argparse
import ast
import dataclasses
import fnmatch
import json
import os
import sys
from pathlib import Path
from typing import Iterable, Iterator


MODEL_BASE = "Model"
PRIMARY_KEY_NAME = "id"
SOURCE_SUFFIX = ".py"
DEFAULT_EXCLUDE = ["__pycache__", ".git", ".hg", ".venv", "venv", "node_modules"]

FOREIGN_KEY = "foreign-key"
ONE_TO_ONE = "one-to-one"
MANY_TO_MANY = "many-to-many"

RELATION_KINDS: dict[str, str] = {
    "ForeignKey": FOREIGN_KEY,
    "OneToOneField": ONE_TO_ONE,
    "ManyToManyField": MANY_TO_MANY,
}

QUERY_MARKER = ".objects."
QUERY_CALLS = ("filter(", "get(", "create(")


class ScanError(Exception):
    pass


class ParseError(ValueError):
    def __init__(self, path: str, lineno: int | None, message: str) -> None:
        self.path = path
        self.message = message
        self.lineno = lineno
        location = f"{path}:{lineno}" if lineno is not None else path
        super().__init__(f"{location}: {message}")


@dataclasses.dataclass(frozen=True)
class Field:
    name: str
    field_type: str
    nullable: bool = False
    unique: bool = False
    relation: str | None = None
    related_to: str | None = None

    def is_relation(self) -> bool:
        return self.relation is not None

    def is_foreign_key(self) -> bool:
        return self.relation in (FOREIGN_KEY, ONE_TO_ONE)

    def is_many_to_many(self) -> bool:
        return self.relation == MANY_TO_MANY

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.field_type,
            "nullable": self.nullable,
            "unique": self.unique,
            "relation": self.relation,
            "related_to": self.related_to,
        }


@dataclasses.dataclass(frozen=True)
class Model:
    name: str
    fields: tuple[Field, ...] = ()
    source_path: str | None = None

    def to_dict(self) -> dict:
        return {"name": self.name, "fields": [f.to_dict() for f in self.fields]}


@dataclasses.dataclass(frozen=True)
class ExtractionResult:
    models: tuple[Model, ...] = ()
    queries: tuple[str, ...] = ()
    errors: tuple[ParseError, ...] = ()
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "models": [m.to_dict() for m in self.models],
            "queries": list(self.queries),
            "errors": [str(e) for e in self.errors],
            "warnings": list(self.warnings),
        }


def is_excluded(name: str, exclude: Iterable[str]) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in exclude)


def iter_source_files(root: Path, exclude: Iterable[str] | None = None) -> Iterator[Path]:
    patterns = DEFAULT_EXCLUDE + list(exclude or [])
    if not root.is_dir():
        raise ScanError(f"input is not a directory: {root}")

    def on_error(exc: OSError) -> None:
        raise ScanError(f"cannot read directory {exc.filename}: {exc.strerror}") from exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        # Prune in place so os.walk never descends into excluded directories.
        dirnames[:] = sorted(d for d in dirnames if not is_excluded(d, patterns))
        for filename in sorted(filenames):
            if filename.endswith(SOURCE_SUFFIX) and not is_excluded(filename, patterns):
                yield Path(dirpath) / filename


def scan_sources(root: Path, exclude: Iterable[str] | None = None) -> Iterator[tuple[Path, bytes]]:
    """Yield the raw content of every candidate source file under ``root``."""
    for path in iter_source_files(root, exclude):
        try:
            yield path, path.read_bytes()
        except OSError as exc:
            raise ScanError(f"cannot read {path}: {exc.strerror}") from exc


def decode_source(raw: bytes, path: str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(path, None, f"not valid UTF-8 ({exc.reason})") from exc


def parse_source(text: str, path: str = "<unknown>") -> ast.Module:
    try:
        return ast.parse(text, filename=path)
    except SyntaxError as exc:
        raise ParseError(path, exc.lineno, exc.msg) from exc
    except ValueError as exc:
        # Older interpreters reject null bytes with ValueError instead of SyntaxError.
        raise ParseError(path, None, str(exc)) from exc


def dotted_tail(node: ast.expr) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return ""


def is_model_class(node: ast.ClassDef) -> bool:
    return any(dotted_tail(base) == MODEL_BASE for base in node.bases)


def literal_bool(node: ast.expr) -> bool | None:
    if isinstance(node, ast.Constant) and isinstance(node.value, bool):
        return node.value
    return None


def relation_target(call: ast.Call, owner: str) -> str | None:
    target: ast.expr | None = call.args[0] if call.args else None
    if target is None:
        target = next((k.value for k in call.keywords if k.arg == "to"), None)
    if isinstance(target, ast.Name):
        return target.id
    if isinstance(target, ast.Constant) and isinstance(target.value, str) and target.value:
        if target.value == "self":
            return owner
        return target.value.rsplit(".", 1)[-1]
    return None


def field_target(stmt: ast.stmt) -> tuple[str, ast.Call] | None:
    if isinstance(stmt, ast.Assign):
        if len(stmt.targets) != 1:
            return None
        target, value = stmt.targets[0], stmt.value
    elif isinstance(stmt, ast.AnnAssign):
        target, value = stmt.target, stmt.value
    else:
        return None
    if not isinstance(target, ast.Name) or not isinstance(value, ast.Call):
        return None
    return target.id, value


def is_silent_statement(stmt: ast.stmt) -> bool:
    if isinstance(stmt, ast.Pass):
        return True
    return isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant) and isinstance(stmt.value.value, str)


def build_field(name: str, call: ast.Call, owner: str, where: str, warnings: list[str]) -> Field:
    field_type = dotted_tail(call.func)
    flags = {"null": False, "unique": False}
    for keyword in call.keywords:
        if keyword.arg not in flags:
            continue
        value = literal_bool(keyword.value)
        if value is None:
            warnings.append(f"{where}: {owner}.{name}: ignoring non-literal {keyword.arg}=")
            continue
        flags[keyword.arg] = value

    relation = RELATION_KINDS.get(field_type)
    related_to = None
    if relation is not None:
        related_to = relation_target(call, owner)
        if related_to is None:
            warnings.append(f"{where}: {owner}.{name}: relation target is not a literal name")

    return Field(
        name=name,
        field_type=field_type,
        nullable=flags["null"],
        unique=flags["unique"],
        relation=relation,
        related_to=related_to,
    )


def extract_models(text: str, path: str = "<unknown>") -> tuple[list[Model], list[str]]:
    tree = parse_source(text, path)
    models: list[Model] = []
    warnings: list[str] = []

    for node in tree.body:
        if not isinstance(node, ast.ClassDef) or not is_model_class(node):
            continue
        fields: dict[str, Field] = {}
        for stmt in node.body:
            where = f"{path}:{stmt.lineno}"
            match = field_target(stmt)
            if match is None:
                if not is_silent_statement(stmt):
                    warnings.append(f"{where}: {node.name}: skipped {type(stmt).__name__} statement")
                continue
            name, call = match
            if name.lower() == PRIMARY_KEY_NAME:
                warnings.append(f"{where}: {node.name}.{name}: skipped, the implicit primary key is always {PRIMARY_KEY_NAME}")
                continue
            if name in fields:
                warnings.append(f"{where}: {node.name}: redefines field {name}")
            # Last binding wins, in the position of the first declaration.
            fields[name] = build_field(name, call, node.name, where, warnings)
        models.append(Model(name=node.name, fields=tuple(fields.values()), source_path=path))

    return models, warnings


def collect_queries(text: str, source_name: str) -> list[str]:
    queries: list[str] = []
    if QUERY_MARKER not in text:
        return queries
    for line in text.splitlines():
        if QUERY_MARKER in line and any(call in line for call in QUERY_CALLS):
            queries.append(f"-- from: {source_name}\n-- {line.strip()}")
    return queries


def extract_tree(root: Path, exclude: Iterable[str] | None = None) -> ExtractionResult:
    models: list[Model] = []
    queries: list[str] = []
    errors: list[ParseError] = []
    warnings: list[str] = []

    for path, raw in scan_sources(root, exclude):
        source_name = path.relative_to(root).as_posix()
        try:
            text = decode_source(raw, source_name)
            file_models, file_warnings = extract_models(text, source_name)
        except ParseError as exc:
            errors.append(exc)
            continue
        models.extend(file_models)
        warnings.extend(file_warnings)
        queries.extend(collect_queries(text, source_name))

    return ExtractionResult(
        models=tuple(models),
        queries=tuple(queries),
        errors=tuple(errors),
        warnings=tuple(warnings),
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract Django models and query call sites as JSON")
    parser.add_argument("--input", required=True, help="Path to the Django app to scan")
    parser.add_argument(
        "--exclude",
        action="append",
        default=None,
        help=f"Extra directory/file glob to skip, repeatable (always skipped: {', '.join(DEFAULT_EXCLUDE)})",
    )
    parser.add_argument("--indent", type=int, default=None, help="Indent the JSON output")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        result = extract_tree(Path(args.input), args.exclude)
    except ScanError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    for error in result.errors:
        print(f"[parse] {error}", file=sys.stderr)
    print(json.dumps(result.to_dict(), indent=args.indent))
    return 2 if result.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
