import os
from logging.config import fileConfig

from alembic import context

# This is the Flask app and db setup
import sys
# Ensure the project root is in sys.path so app and extensions can be imported
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import create_app
from extensions import db as _db
import flowstack_database  # noqa: F401  registers the models on the metadata

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# alembic.ini sits next to this file
alembic_ini_path = os.path.abspath(os.path.join(os.path.dirname(__file__), 'alembic.ini'))
fileConfig(alembic_ini_path, disable_existing_loggers=False)

# Metadata of the Flask-SQLAlchemy db instance, for autogenerate
target_metadata = _db.metadata

# Create the Flask app instance once
app = create_app()


def run_migrations_offline():
    """Run migrations in 'offline' mode.

    Emits SQL for the configured database URL without connecting.
    """
    url = app.config['SQLALCHEMY_DATABASE_URI']
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Run migrations in 'online' mode against the app's engine."""
    with app.app_context():
        connectable = _db.engine

        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                render_as_batch=connection.dialect.name == 'sqlite'
            )

            with context.begin_transaction():
                context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
