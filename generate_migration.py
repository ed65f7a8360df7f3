#!/usr/bin/env python3
"""Generate schema SQL, an up/down migration pair, query stubs and sqlc.yaml from Django models."""

from __future__ import annotations

import argparse
import dataclasses
import difflib
import sys
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Iterator, Sequence

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from extract_models import ONE_TO_ONE, ExtractionResult, Field, Model, ScanError, extract_tree


DEFAULT_DIALECT = "postgres"
DEFAULT_OUTPUT = "./out"

# Dialect selector -> sqlc engine identifier.
DIALECTS: dict[str, str] = {
    "postgres": "postgresql",
    "mysql": "mysql",
}

SQL_TYPES: dict[str, str] = {
    "CharField": "TEXT",
    "TextField": "TEXT",
    "IntegerField": "INTEGER",
    "FloatField": "REAL",
    "BooleanField": "BOOLEAN",
    "DateField": "TIMESTAMP",
    "DateTimeField": "TIMESTAMP",
}
FALLBACK_SQL_TYPE = "TEXT"
KEY_SQL_TYPE = "INTEGER"
PRIMARY_KEY_COLUMN = "id SERIAL PRIMARY KEY"

SCHEMA_FILE = "schema.sql"
QUERY_FILE = "query.sql"
CONFIG_FILE = "sqlc.yaml"
MIGRATIONS_DIR = "migrations"
MIGRATION_NAME = "create_tables"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

CONFIG_KEYS = {"input", "output", "dialect", "exclude", "strict_relations"}


class GenerationError(ValueError):
    pass


class UnresolvedRelationError(GenerationError):
    def __init__(self, unresolved: list[tuple[str, str, str | None]]) -> None:
        self.unresolved = unresolved
        details = ", ".join(f"{m}.{f} -> {t or '?'}" for m, f, t in unresolved)
        super().__init__(f"unresolved relation targets: {details}")


@dataclasses.dataclass(frozen=True)
class Migration:
    timestamp: str
    up: str
    down: str

    @property
    def up_filename(self) -> str:
        return f"{self.timestamp}_{MIGRATION_NAME}.up.sql"

    @property
    def down_filename(self) -> str:
        return f"{self.timestamp}_{MIGRATION_NAME}.down.sql"


@dataclasses.dataclass(frozen=True)
class Artifacts:
    schema: str
    migration: Migration
    queries: str
    config: str


def to_snake(name: str) -> str:
    return name.replace(" ", "_").lower()


def check_dialect(dialect: str) -> str:
    if not dialect:
        raise GenerationError("dialect must not be empty")
    if dialect not in DIALECTS:
        raise GenerationError(f"unsupported dialect {dialect!r} (expected one of: {', '.join(DIALECTS)})")
    return dialect


def sql_type(field_type: str, dialect: str) -> str:
    # Mapping is identical for every supported dialect today.
    return SQL_TYPES.get(field_type, FALLBACK_SQL_TYPE)


def render_column(name: str, col_type: str, nullable: bool, unique: bool) -> str:
    parts = [name, col_type]
    if not nullable:
        parts.append("NOT NULL")
    if unique:
        parts.append("UNIQUE")
    return " ".join(parts)


def render_body(lines: list[str]) -> str:
    out: list[str] = []
    for idx, line in enumerate(lines):
        trailing = "," if idx < len(lines) - 1 else ""
        out.append(f"    {line}{trailing}")
    return "\n".join(out)


def key_column(field: Field) -> str:
    return f"{to_snake(field.name)}_id"


def join_tables(model: Model) -> Iterator[tuple[str, Field]]:
    """Yield (join table name, field) for every many-to-many field with a known target."""
    for field in model.fields:
        if field.is_many_to_many() and field.related_to:
            yield f"{to_snake(model.name)}_{to_snake(field.name)}", field


def render_table_sql(model: Model, dialect: str) -> str:
    table = to_snake(model.name)
    lines: list[str] = [PRIMARY_KEY_COLUMN]

    for field in model.fields:
        # The implicit primary key owns the id column.
        if field.is_relation() or to_snake(field.name) == "id":
            continue
        lines.append(render_column(to_snake(field.name), sql_type(field.field_type, dialect), field.nullable, field.unique))

    foreign_keys = [f for f in model.fields if f.is_foreign_key()]
    for field in foreign_keys:
        unique = field.unique or field.relation == ONE_TO_ONE
        lines.append(render_column(key_column(field), KEY_SQL_TYPE, field.nullable, unique))
    for field in foreign_keys:
        if field.related_to:
            lines.append(f"FOREIGN KEY ({key_column(field)}) REFERENCES {to_snake(field.related_to)}(id)")

    return f"CREATE TABLE {table} (\n{render_body(lines)}\n);"


def render_join_table_sql(join: str, model: Model, field: Field) -> str:
    owner = to_snake(model.name)
    target = to_snake(field.related_to or "")
    if owner == target:
        owner_col, target_col = f"from_{owner}_id", f"to_{target}_id"
    else:
        owner_col, target_col = f"{owner}_id", f"{target}_id"
    lines = [
        f"{owner_col} {KEY_SQL_TYPE} REFERENCES {owner}(id)",
        f"{target_col} {KEY_SQL_TYPE} REFERENCES {target}(id)",
    ]
    return f"CREATE TABLE {join} (\n{render_body(lines)}\n);"


def generate_schema_sql(models: Sequence[Model], dialect: str) -> str:
    check_dialect(dialect)
    statements: list[str] = []
    for model in models:
        statements.append(render_table_sql(model, dialect))
        for join, field in join_tables(model):
            statements.append(render_join_table_sql(join, model, field))
    return "".join(f"{stmt}\n\n" for stmt in statements)


def generate_up_sql(models: Sequence[Model], dialect: str) -> str:
    return generate_schema_sql(models, dialect)


def generate_down_sql(models: Sequence[Model], dialect: str) -> str:
    check_dialect(dialect)
    lines: list[str] = []
    for model in models:
        # Join tables reference their owner, so they go first.
        for join, _ in join_tables(model):
            lines.append(f"DROP TABLE IF EXISTS {join};")
        lines.append(f"DROP TABLE IF EXISTS {to_snake(model.name)};")
    return "".join(f"{line}\n" for line in lines)


def migration_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def generate_migration(models: Sequence[Model], dialect: str, timestamp: str | None = None) -> Migration:
    return Migration(
        timestamp=timestamp or migration_timestamp(),
        up=generate_up_sql(models, dialect),
        down=generate_down_sql(models, dialect),
    )


def generate_sqlc_config(dialect: str) -> str:
    check_dialect(dialect)
    doc = {
        "version": "2",
        "sql": [
            {
                "engine": DIALECTS[dialect],
                "queries": f"./{QUERY_FILE}",
                "schema": f"./{SCHEMA_FILE}",
                "gen": {"go": {"package": "db", "out": "./db"}},
            }
        ],
    }
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def render_queries(queries: Sequence[str]) -> str:
    return "\n\n".join(queries)


def find_duplicate_models(models: Sequence[Model]) -> list[str]:
    counts = Counter(m.name for m in models)
    return sorted(name for name, count in counts.items() if count > 1)


def find_unresolved_relations(models: Sequence[Model]) -> list[tuple[str, str, str | None]]:
    declared = {m.name for m in models}
    unresolved: list[tuple[str, str, str | None]] = []
    for model in models:
        for field in model.fields:
            if not field.is_relation():
                continue
            if field.related_to is None or field.related_to not in declared:
                unresolved.append((model.name, field.name, field.related_to))
    return unresolved


def validate_relations(models: Sequence[Model]) -> None:
    unresolved = find_unresolved_relations(models)
    if unresolved:
        raise UnresolvedRelationError(unresolved)


def generate_outputs(result: ExtractionResult, dialect: str, timestamp: str | None = None) -> Artifacts:
    check_dialect(dialect)
    return Artifacts(
        schema=generate_schema_sql(result.models, dialect),
        migration=generate_migration(result.models, dialect, timestamp),
        queries=render_queries(result.queries),
        config=generate_sqlc_config(dialect),
    )


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def write_artifacts(out_dir: Path, artifacts: Artifacts) -> list[Path]:
    migrations = out_dir / MIGRATIONS_DIR
    files = [
        (out_dir / SCHEMA_FILE, artifacts.schema),
        (migrations / artifacts.migration.up_filename, artifacts.migration.up),
        (migrations / artifacts.migration.down_filename, artifacts.migration.down),
        (out_dir / QUERY_FILE, artifacts.queries),
        (out_dir / CONFIG_FILE, artifacts.config),
    ]
    for path, content in files:
        write_text(path, content)
    return [path for path, _ in files]


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = path.read_text(encoding="utf-8")
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for idx, line in enumerate(diff):
        if idx > 200:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False


def check_artifacts(out_dir: Path, artifacts: Artifacts) -> bool:
    # Migrations are timestamped per run and cannot drift.
    results = [
        check_equal(out_dir / SCHEMA_FILE, artifacts.schema),
        check_equal(out_dir / QUERY_FILE, artifacts.queries),
        check_equal(out_dir / CONFIG_FILE, artifacts.config),
    ]
    return all(results)


def load_config(path: Path) -> dict:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    unknown = sorted(set(data) - CONFIG_KEYS)
    if unknown:
        raise ValueError(f"{path}: unknown config keys: {', '.join(unknown)}")
    exclude = data.get("exclude", [])
    if not isinstance(exclude, list):
        raise ValueError(f"{path}: exclude must be a list")
    return data


def resolve_settings(args: argparse.Namespace) -> argparse.Namespace:
    config = load_config(Path(args.config)) if args.config else {}
    settings = argparse.Namespace(
        input=args.input or config.get("input"),
        output=args.output or config.get("output") or DEFAULT_OUTPUT,
        dialect=args.dialect or config.get("dialect") or DEFAULT_DIALECT,
        exclude=list(config.get("exclude", [])) + list(args.exclude or []),
        strict_relations=args.strict_relations or bool(config.get("strict_relations", False)),
    )
    if not settings.input:
        raise ValueError("--input is required (or set 'input' in the config file)")
    if settings.dialect not in DIALECTS:
        raise ValueError(f"unsupported dialect {settings.dialect!r} (expected one of: {', '.join(DIALECTS)})")
    return settings


def print_dry_run(result: ExtractionResult) -> None:
    print("=== Models ===")
    for model in result.models:
        fields = ", ".join(
            f"{f.name} {f.field_type}" + (f" -> {f.related_to}" if f.related_to else "") for f in model.fields
        )
        print(f"{model.name}: [{fields}]")
    print("=== Queries ===")
    for query in result.queries:
        print(query)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert Django models into SQL schema, migrations and an sqlc configuration",
        epilog="Example: django2sqlc --input ./myapp --output ./out --dialect postgres",
    )
    parser.add_argument("--input", help="Path to the Django app (required unless set in --config)")
    parser.add_argument("--output", help=f"Output directory (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--dialect", choices=sorted(DIALECTS), help=f"SQL dialect (default: {DEFAULT_DIALECT})")
    parser.add_argument("--exclude", action="append", help="Extra directory/file glob to skip, repeatable")
    parser.add_argument("--config", help="YAML file with default settings")
    parser.add_argument("--dry-run", action="store_true", help="Print models and queries without writing files")
    parser.add_argument("--check", action="store_true", help="Verify outputs are up-to-date without writing")
    parser.add_argument(
        "--strict-relations",
        action="store_true",
        help="Fail when a relation points at a model that was not found",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = resolve_settings(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    try:
        result = extract_tree(Path(settings.input), settings.exclude)
    except ScanError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    for error in result.errors:
        print(f"[parse] {error}", file=sys.stderr)
    for warning in result.warnings:
        print(f"[warn] {warning}", file=sys.stderr)
    for name in find_duplicate_models(result.models):
        print(f"[warn] model {name} is declared more than once", file=sys.stderr)

    if settings.strict_relations:
        try:
            validate_relations(result.models)
        except UnresolvedRelationError as exc:
            print(f"[error] {exc}", file=sys.stderr)
            return 1
    else:
        for model, field, target in find_unresolved_relations(result.models):
            print(f"[warn] {model}.{field}: relation target {target or '?'} is not a known model", file=sys.stderr)

    if args.dry_run:
        print_dry_run(result)
        return 0

    artifacts = generate_outputs(result, settings.dialect)
    out_dir = Path(settings.output)

    if args.check:
        return 0 if check_artifacts(out_dir, artifacts) else 1

    for path in write_artifacts(out_dir, artifacts):
        print(f"Generated {path}")
    if result.errors:
        print(f"[parse] {len(result.errors)} file(s) could not be parsed and were skipped", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
