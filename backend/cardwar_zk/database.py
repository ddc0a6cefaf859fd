"""
=============================================================================
CARDWAR ZK - Conexión a Base de Datos
=============================================================================
Engine async de SQLAlchemy. El aprovisionamiento del esquema en producción
es externo; init_models() existe para desarrollo y pruebas.
=============================================================================
"""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker

from .models import Base


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Crea el engine async (asyncpg en producción, aiosqlite en pruebas)."""
    return create_async_engine(database_url, pool_pre_ping=True, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False: los snapshots se leen después del commit
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Crea las tablas que falten."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
