from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# config.py loads .env itself; hosted deployments set env vars directly
import config as app_config
from models import Base

# Alembic Config object
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url():
    if not app_config.DATABASE_URL:
        raise RuntimeError("DATABASE_URL env var is not set")
    return app_config.DATABASE_URL


# Uploaded files and the rate limit store are not tables; nothing to skip yet.
def include_object(object, name, type_, reflected, compare_to):
    return True


def run_migrations_offline():
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,      # detect column type changes
        render_as_batch=get_url().startswith("sqlite"),
        include_object=include_object,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # sqlite can't ALTER most columns in place
            render_as_batch=connection.dialect.name == "sqlite",
            include_object=include_object,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
