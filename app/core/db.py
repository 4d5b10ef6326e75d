from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from .config import settings
from .base import Base

engine = create_async_engine(settings.POSTGRES_DSN, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def get_session():
    async with SessionLocal() as session:
        yield session

def _import_models():
    # register every mapped class on Base.metadata
    from app.modules.tenants import models as _tenants  # noqa: F401
    from app.modules.directory import models as _directory  # noqa: F401
    from app.modules.sessions import models as _sessions  # noqa: F401
    from app.modules.reschedule import models as _reschedule  # noqa: F401
    from app.modules.prescriptions import models as _prescriptions  # noqa: F401
    from app.modules.events import outbox as _outbox  # noqa: F401

async def init_models():
    ## In dev-only "create_all" mode, keep old behavior; otherwise, migrations own the schema.
    if settings.DB_MANAGE.lower() == "create_all":
        _import_models()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
