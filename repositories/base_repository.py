"""
Base Repository - Common base class for all repositories
Implements shared database operations following the Repository Pattern

Repositories never commit on their own. The service that owns the unit of
work decides when to commit, so a state write and the records that describe
it land together or not at all.
"""

from typing import TypeVar, Generic, List, Optional, Dict, Any, Type
from sqlalchemy.orm import Session, Query
from sqlalchemy.exc import SQLAlchemyError, OperationalError, InterfaceError
from sqlalchemy import desc, asc
from dataclasses import dataclass
from enum import Enum
import logging

from services.common.errors import TransientIOError

logger = logging.getLogger(__name__)

# Type variable for model classes
T = TypeVar('T')


class SortOrder(Enum):
    """Sort order options"""
    ASC = "asc"
    DESC = "desc"


@dataclass
class PaginationParams:
    """Parameters for pagination"""
    page: int = 1
    per_page: int = 20

    @property
    def offset(self) -> int:
        """Calculate offset for query"""
        return (self.page - 1) * self.per_page

    @property
    def limit(self) -> int:
        return self.per_page


@dataclass
class PaginatedResult(Generic[T]):
    """Result of a paginated query"""
    items: List[T]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        """Calculate total number of pages"""
        return (self.total + self.per_page - 1) // self.per_page if self.per_page > 0 else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages


def translate_storage_error(error: SQLAlchemyError) -> Exception:
    """
    Map driver-level failures onto the domain taxonomy.

    Connection drops and lock timeouts are transient and worth retrying;
    anything else (integrity violations, programming errors) is returned
    unchanged so it propagates as-is.
    """
    if isinstance(error, (OperationalError, InterfaceError)):
        return TransientIOError(f"Storage unavailable: {error}")
    return error


class BaseRepository(Generic[T]):
    """
    Base repository with common CRUD operations.

    Subclasses add the model-specific queries. Failures are logged and
    re-raised; reads never mask a storage outage as "not found".
    """

    def __init__(self, session: Session, model_class: Type[T]):
        """
        Initialize repository with database session and model class.

        Args:
            session: SQLAlchemy database session
            model_class: The model class this repository manages
        """
        self.session = session
        self.model_class = model_class

    # CREATE Operations

    def create(self, **kwargs) -> T:
        """
        Create a new entity and flush it to obtain its id.

        Args:
            **kwargs: Attributes for the new entity

        Returns:
            Created entity instance

        Raises:
            TransientIOError: If the database is unreachable
        """
        try:
            entity = self.model_class(**kwargs)
            self.session.add(entity)
            self.session.flush()
            logger.debug(f"Created {self.model_class.__name__} with id {entity.id}")
            return entity
        except SQLAlchemyError as e:
            logger.error(f"Error creating {self.model_class.__name__}: {e}")
            self.session.rollback()
            raise translate_storage_error(e) from e

    # READ Operations

    def get_by_id(self, entity_id: int) -> Optional[T]:
        """
        Get entity by ID.

        Returns:
            Entity instance or None if not found
        """
        try:
            return self.session.get(self.model_class, entity_id)
        except SQLAlchemyError as e:
            logger.error(f"Error getting {self.model_class.__name__} by id {entity_id}: {e}")
            raise translate_storage_error(e) from e

    def find_by(self, **filters) -> List[T]:
        """
        Find entities by specific field values.

        Args:
            **filters: Field-value pairs to filter by

        Returns:
            List of matching entities
        """
        try:
            return self._build_query(filters).all()
        except SQLAlchemyError as e:
            logger.error(f"Error finding {self.model_class.__name__} by filters: {e}")
            raise translate_storage_error(e) from e

    def count(self, **filters) -> int:
        try:
            return self._build_query(filters).count()
        except SQLAlchemyError as e:
            logger.error(f"Error counting {self.model_class.__name__}: {e}")
            raise translate_storage_error(e) from e

    def get_paginated(self,
                      pagination: PaginationParams,
                      filters: Optional[Dict[str, Any]] = None,
                      order_by: Optional[str] = None,
                      order: SortOrder = SortOrder.ASC) -> PaginatedResult[T]:
        """
        Get paginated results with optional filtering and ordering.

        Args:
            pagination: Pagination parameters
            filters: Dictionary of filters to apply
            order_by: Field name to order by
            order: Sort order

        Returns:
            PaginatedResult with items and metadata
        """
        try:
            query = self._build_query(filters)

            if order_by:
                order_field = getattr(self.model_class, order_by, None)
                if order_field is not None:
                    query = query.order_by(
                        desc(order_field) if order == SortOrder.DESC else asc(order_field)
                    )

            total = query.count()
            items = query.offset(pagination.offset).limit(pagination.limit).all()

            return PaginatedResult(
                items=items,
                total=total,
                page=pagination.page,
                per_page=pagination.per_page
            )
        except SQLAlchemyError as e:
            logger.error(f"Error getting paginated {self.model_class.__name__}: {e}")
            raise translate_storage_error(e) from e

    # UPDATE Operations

    def update_where(self, criteria: List[Any], updates: Dict[str, Any]) -> int:
        """
        Conditional bulk update: UPDATE ... SET updates WHERE criteria.

        This is the compare-and-set primitive used wherever two workers may
        race for the same row. The caller inspects the returned rowcount;
        zero means another writer got there first.

        Args:
            criteria: SQLAlchemy filter expressions, ANDed together
            updates: Column-value pairs to write

        Returns:
            Number of rows updated
        """
        try:
            query = self.session.query(self.model_class)
            for criterion in criteria:
                query = query.filter(criterion)
            count = query.update(updates, synchronize_session=False)
            self.session.flush()
            logger.debug(f"Conditionally updated {count} {self.model_class.__name__} rows")
            return count
        except SQLAlchemyError as e:
            logger.error(f"Error in conditional update of {self.model_class.__name__}: {e}")
            self.session.rollback()
            raise translate_storage_error(e) from e

    # Transaction Management

    def commit(self) -> None:
        """Commit the current transaction."""
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise translate_storage_error(e) from e

    def rollback(self) -> None:
        """Rollback the current transaction."""
        self.session.rollback()

    def refresh(self, entity: T) -> T:
        """Reload an entity's columns from the database."""
        self.session.refresh(entity)
        return entity

    # Helper Methods

    def _build_query(self, filters: Optional[Dict[str, Any]] = None) -> Query:
        """
        Build a query with filters.

        Lists become IN clauses and None becomes IS NULL.
        """
        query = self.session.query(self.model_class)

        if filters:
            for field, value in filters.items():
                if hasattr(self.model_class, field):
                    column = getattr(self.model_class, field)
                    if isinstance(value, (list, tuple)):
                        query = query.filter(column.in_(value))
                    elif value is None:
                        query = query.filter(column.is_(None))
                    else:
                        query = query.filter(column == value)

        return query
