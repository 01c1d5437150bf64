"""
DDL export: the CREATE statements of the clinic schema as SQL text,
in foreign-key dependency order (reference tables before dependents).
"""
from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_mock_engine

from . import models  # noqa: F401  (registers the tables on Base.metadata)
from .db import Base

SUPPORTED_DIALECTS = ("mysql", "postgresql", "sqlite")


def table_creation_order() -> list[str]:
    return [t.name for t in Base.metadata.sorted_tables]


def render_ddl(dialect: str = "mysql") -> str:
    if dialect not in SUPPORTED_DIALECTS:
        raise ValueError(f"Unsupported dialect '{dialect}' (use one of: {', '.join(SUPPORTED_DIALECTS)}).")

    statements: list[str] = []

    def executor(sql, *multiparams, **params) -> None:
        statements.append(str(sql.compile(dialect=mock.dialect)).strip() + ";")

    mock = create_mock_engine(f"{dialect}://", executor)
    Base.metadata.create_all(mock, checkfirst=False)

    header = f"-- Clinic booking schema ({dialect})\n-- Tables: {', '.join(table_creation_order())}\n\n"
    return header + "\n\n".join(statements) + "\n"


def write_ddl(path: str | Path, dialect: str = "mysql") -> Path:
    out = Path(path)
    out.write_text(render_ddl(dialect), encoding="utf-8")
    return out
