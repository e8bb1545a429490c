"""SQLModel engine construction for the local replica store."""
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

# Import models so SQLModel.metadata knows about all tables
import app.models.transaction  # noqa: F401
import app.models.aggregate  # noqa: F401
import app.models.sync  # noqa: F401


def make_engine(url: str, echo: bool = False) -> Engine:
    """Create the store handle for one replica.

    Every component receives this engine explicitly; there is no
    process-wide store.  In-memory SQLite URLs share a single connection
    so all sessions see the same database.
    """
    connect_args = {"check_same_thread": False}
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url, connect_args=connect_args, poolclass=StaticPool, echo=echo
        )
    return create_engine(url, connect_args=connect_args, echo=echo)
