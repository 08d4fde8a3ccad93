"""
SQL schema templates for the docshift persistence backends.

Tables:
    - documents / docshift_meta: SQLite document store and database identity
    - docshift_indexes: Composite index definitions deployed to a SQLite database
    - docshift_control_plane: Single-row registry state

Supported backends:
    - sqlite (default): aiosqlite-backed stores
    - postgresql: control plane through SQLAlchemy

Usage:
    from docshift.schemas import get_schema

    # Everything a SQLite database needs
    sql = get_schema("all", backend="sqlite")

    # Only the control plane table for PostgreSQL
    sql = get_schema("control_plane", backend="postgresql")
"""

from pathlib import Path
from typing import Literal

SchemaName = Literal["documents", "indexes", "control_plane", "all"]

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"

_ALL_ORDER: tuple[str, ...] = ("documents", "indexes", "control_plane")


def get_schema(name: SchemaName = "all", backend: BackendName = "sqlite") -> str:
    """
    Get a SQL schema template.

    Args:
        name: Schema name, or "all" for every schema the backend ships
        backend: Database backend

    Returns:
        SQL text (may contain several statements)

    Raises:
        FileNotFoundError: If the backend has no template with that name
    """
    backend_dir = _TEMPLATES_DIR / backend
    if name == "all":
        parts = [
            (backend_dir / f"{part}.sql").read_text()
            for part in _ALL_ORDER
            if (backend_dir / f"{part}.sql").exists()
        ]
        return "\n\n".join(parts)

    path = backend_dir / f"{name}.sql"
    if not path.exists():
        raise FileNotFoundError(f"No {backend} schema named '{name}' at {path}")
    return path.read_text()


__all__ = ["BackendName", "SchemaName", "get_schema"]
