"""
tripfence/DB/base_class.py
=================================
SQLAlchemy Base Model Definition
=================================

Declarative base class for all database models. Provides the automatic
table naming convention and SQLAlchemy 2.0 style declarative mapping.

Convention:
----------
Table names are derived from class names using lowercase conversion
unless a model declares its own __tablename__ directive:
    - Trip → trip (models in this package override to plural names)

Note:
    All models must inherit from this Base class to be registered with
    SQLAlchemy's metadata and discovered by Alembic migrations.
"""

from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models in the application.

    Features:
        - Automatic table naming: Converts class name to lowercase
        - Metadata registration: All models are registered in Base.metadata
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return cls.__name__.lower()
