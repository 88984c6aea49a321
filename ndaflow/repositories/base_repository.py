from typing import Generic, TypeVar, Type, Any, Dict

from sqlalchemy import UniqueConstraint, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ndaflow.core.exceptions import ConfigurationError, ValidationError
from ndaflow.utils.logging import get_logger

ModelType = TypeVar("ModelType")

LOGGER = get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def natural_key_columns(model: Type[Any]) -> tuple[str, ...]:
    """Return the columns of the model's first unique constraint.

    Result tables declare exactly one unique constraint, which is the natural
    key used to deduplicate records across retries.
    """
    for constraint in model.__table__.constraints:
        if isinstance(constraint, UniqueConstraint):
            return tuple(column.name for column in constraint.columns)
    raise ConfigurationError(f"{model.__name__} declares no natural key")


async def upsert_by_natural_key(
    session: AsyncSession,
    model: Type[Any],
    key: Dict[str, Any],
    payload: Dict[str, Any],
) -> None:
    """Insert a row for ``key`` or update the existing one in place.

    Calling this twice with the same ``key`` and ``payload`` leaves the table
    in the same state as calling it once. The caller owns the transaction.

    Args:
        session: Session whose transaction the write joins
        model: Mapped model with a natural key unique constraint
        key: Values for every natural key column, and nothing else
        payload: Remaining column values; ``id`` is only used on insert

    Raises:
        ValidationError: If ``key`` does not name exactly the natural key columns
    """
    key_columns = natural_key_columns(model)
    if set(key) != set(key_columns):
        raise ValidationError(
            f"Key {sorted(key)} does not match natural key {sorted(key_columns)} of {model.__tablename__}"
        )

    dialect = session.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise ConfigurationError(f"Upserts are not supported on dialect '{dialect}'")

    stmt = insert(model).values(**payload, **key)
    updates = {
        column: stmt.excluded[column]
        for column in payload
        if column not in key_columns and column != "id"
    }
    if updates:
        stmt = stmt.on_conflict_do_update(index_elements=list(key_columns), set_=updates)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(key_columns))

    try:
        await session.execute(stmt)
    except SQLAlchemyError as e:
        LOGGER.error(
            f"Upsert into {model.__tablename__} failed: {str(e)}",
            exc_info=True,
            extra={"key": {k: str(v) for k, v in key.items()}},
        )
        raise


class BaseRepository(Generic[ModelType]):
    """Base repository implementing common CRUD operations.

    This class provides a standard interface for database interactions,
    reducing boilerplate code in specific repositories.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        """Initialize the repository.

        Args:
            session: SQLAlchemy async session
            model: The SQLAlchemy model class this repository manages
        """
        self.session = session
        self.model = model
        self.logger = LOGGER

    async def create(self, **kwargs) -> ModelType:
        """Create a new record and flush it; the caller commits.

        Args:
            **kwargs: Fields and values for the new record

        Returns:
            The created record
        """
        try:
            instance = self.model(**kwargs)
            self.session.add(instance)
            await self.session.flush()
            return instance
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error creating {self.model.__name__}: {str(e)}",
                exc_info=True
            )
            raise

    async def delete_where(self, **filters: Any) -> int:
        """Delete every record matching the given column values.

        Returns:
            Number of deleted rows
        """
        try:
            query = delete(self.model)
            for field, value in filters.items():
                query = query.where(getattr(self.model, field) == value)
            result = await self.session.execute(query)
            return result.rowcount or 0
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error deleting {self.model.__name__} where {filters}: {str(e)}",
                exc_info=True
            )
            raise
