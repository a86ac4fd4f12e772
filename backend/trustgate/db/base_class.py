from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# Consistent constraint names across PostgreSQL and SQLite
convention = {
    "ix": "ix_%(table_name)s_%(column_0_N_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_N_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata_obj = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    """Declarative base shared by all trustgate models."""

    metadata = metadata_obj
