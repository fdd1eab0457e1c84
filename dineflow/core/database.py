"""
Conexión a base de datos
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from dineflow.core.config import settings

def build_engine(database_url: str):
    """Crea el engine; sqlite necesita check_same_thread=False para FastAPI"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)

engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)

Base = declarative_base()


def init_db() -> None:
    """Crea las tablas si no existen"""
    import dineflow.models  # noqa: F401  registra los modelos en Base.metadata

    Base.metadata.create_all(bind=engine)
