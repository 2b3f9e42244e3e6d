"""
Base repository class for data access layer.

The repository pattern provides:
1. Separation of data access logic from lifecycle logic
2. Single place for query logic (easier to maintain)
3. Easier testing (can mock repositories)

Example:
    class MarketRepository(BaseRepository[Market]):
        def find_for_event(self, event_id: str) -> List[Market]:
            return self.where(Market.event_id == event_id)
"""
from abc import ABC
from typing import TypeVar, Generic, Type, Optional, List
from sqlalchemy import desc, func
from sqlalchemy.orm import Query, Session

T = TypeVar("T")


class BaseRepository(Generic[T], ABC):
    """
    Base repository class providing common data access methods.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        self.model_type = model_type
        self.db = db

    # ========================================================================
    # CRUD Operations
    # ========================================================================

    def find_by_id(self, id: str) -> Optional[T]:
        """Find a single record by ID."""
        return self.db.query(self.model_type).filter(self.model_type.id == id).first()

    def create(self, **kwargs) -> T:
        """
        Create a new record.

        Returns:
            The created record (not yet committed to database)
        """
        instance = self.model_type(**kwargs)
        self.db.add(instance)
        return instance

    # ========================================================================
    # Query Builders
    # ========================================================================

    def query(self) -> Query:
        """Get a new query object for this model."""
        return self.db.query(self.model_type)

    def where(self, *criterion) -> List[T]:
        """Filter records using SQLAlchemy expressions."""
        return self.db.query(self.model_type).filter(*criterion).all()

    def where_first(self, *criterion) -> Optional[T]:
        """Filter records using SQLAlchemy expressions and return first match."""
        return self.db.query(self.model_type).filter(*criterion).first()

    # ========================================================================
    # Existence Checks & Aggregation
    # ========================================================================

    def exists_where(self, *criterion) -> bool:
        """Check if any record matching the criterion exists."""
        return self.db.query(
            self.db.query(self.model_type).filter(*criterion).exists()
        ).scalar()

    def count(self, *criterion) -> int:
        """Count records matching optional criterion."""
        query = self.db.query(func.count(self.model_type.id))
        if criterion:
            query = query.filter(*criterion)
        return query.scalar() or 0

    def group_by_and_count(self, group_field: str, *additional_criterion) -> List[tuple]:
        """
        Group by a field and count records in each group.

        Returns:
            List of tuples: [(group_value, count), ...] ordered by count descending
        """
        column = getattr(self.model_type, group_field)
        query = self.db.query(column, func.count(self.model_type.id))
        if additional_criterion:
            query = query.filter(*additional_criterion)
        return query.group_by(column).order_by(desc(func.count(self.model_type.id))).all()

    # ========================================================================
    # Save Operations
    # ========================================================================

    def save(self) -> None:
        """Commit pending changes to the database."""
        self.db.commit()

    def flush(self) -> None:
        """Flush pending changes without committing."""
        self.db.flush()

    def rollback(self) -> None:
        """Rollback pending changes."""
        self.db.rollback()
