from sqlalchemy import engine_from_config, pool
from alembic import context
from bookstore.core.config import settings
from bookstore.db.session import Base
import bookstore.db.models  # noqa

config = context.config
target_metadata = Base.metadata

# other services share this database, each with its own version table
VERSION_TABLE = "alembic_version_bookstore"

def _options():
    return {"target_metadata": target_metadata, "version_table": VERSION_TABLE, "compare_type": True}

def run_migrations_offline():
    context.configure(
        url=settings.POSTGRES_DSN,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_options(),
    )
    with context.begin_transaction():
        context.run_migrations()

def run_migrations_online():
    connectable = engine_from_config(
        {"sqlalchemy.url": settings.POSTGRES_DSN},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_options())
        with context.begin_transaction():
            context.run_migrations()

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
