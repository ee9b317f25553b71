from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every favilla table."""


# Register model metadata for create_all and Alembic autogenerate
import favilla_api.models  # noqa: E402,F401
