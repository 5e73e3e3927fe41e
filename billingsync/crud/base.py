from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union, Tuple
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, func, and_
from billingsync.models.base import Base
from billingsync.core.exceptions import NotFoundError

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)

class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """Generic data access for one model.

    Writes only flush; the caller's UnitOfWork decides when to commit.
    """

    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def get(self, db: AsyncSession, id: Any, *, raise_if_not_found: bool = True) -> Optional[ModelType]:
        """Get a single record by ID"""
        result = await db.execute(select(self.model).where(self.model.id == id))
        obj = result.scalar_one_or_none()

        if raise_if_not_found and obj is None:
            raise NotFoundError(f"{self.model.__name__}")

        return obj

    async def get_multi(
        self,
        db: AsyncSession,
        *,
        skip: int = 0,
        limit: int = 100,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        order_desc: bool = True,
    ) -> Tuple[List[ModelType], int]:
        """Get multiple records with pagination and filtering"""
        query = select(self.model)

        # Apply filters
        if filters:
            filter_conditions = self._build_filters(filters)
            if filter_conditions:
                query = query.where(and_(*filter_conditions))

        # Get total count for pagination
        count_query = select(func.count()).select_from(query.subquery())
        total_result = await db.execute(count_query)
        total = total_result.scalar()

        # Apply ordering
        if order_by and hasattr(self.model, order_by):
            order_field = getattr(self.model, order_by)
            query = query.order_by(order_field.desc() if order_desc else order_field.asc())
        else:
            # Default ordering by created_at desc
            query = query.order_by(self.model.created_at.desc())

        query = query.offset(skip).limit(limit)

        result = await db.execute(query)
        items = result.scalars().all()

        return items, total

    async def create(self, db: AsyncSession, *, obj_in: Union[CreateSchemaType, Dict[str, Any]]) -> ModelType:
        """Create a new record"""
        # model_dump() keeps Python types (date, datetime, UUID) intact
        if isinstance(obj_in, dict):
            obj_in_data = dict(obj_in)
        else:
            obj_in_data = obj_in.model_dump(exclude_unset=True)

        db_obj = self.model(**obj_in_data)
        db.add(db_obj)
        await db.flush()
        return db_obj

    async def update(
        self,
        db: AsyncSession,
        *,
        db_obj: ModelType,
        obj_in: Union[UpdateSchemaType, Dict[str, Any]]
    ) -> ModelType:
        """Update a record"""
        if isinstance(obj_in, dict):
            update_data = obj_in
        else:
            update_data = obj_in.model_dump(exclude_unset=True)

        for field, value in update_data.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)

        db.add(db_obj)
        await db.flush()
        return db_obj

    async def update_by_id(
        self,
        db: AsyncSession,
        *,
        id: Any,
        obj_in: Union[UpdateSchemaType, Dict[str, Any]],
        raise_if_not_found: bool = True
    ) -> Optional[ModelType]:
        """Update a record by ID"""
        db_obj = await self.get(db, id=id, raise_if_not_found=raise_if_not_found)
        if db_obj:
            return await self.update(db, db_obj=db_obj, obj_in=obj_in)
        return None

    async def remove_where(self, db: AsyncSession, *conditions) -> int:
        """Hard delete every record matching the conditions"""
        result = await db.execute(delete(self.model).where(and_(*conditions)))
        return result.rowcount or 0

    async def count(
        self,
        db: AsyncSession,
        *,
        filters: Optional[Dict[str, Any]] = None
    ) -> int:
        """Count records with optional filters"""
        query = select(func.count()).select_from(self.model)

        if filters:
            filter_conditions = self._build_filters(filters)
            if filter_conditions:
                query = query.where(and_(*filter_conditions))

        result = await db.execute(query)
        return result.scalar()

    def _build_filters(self, filters: Dict[str, Any]) -> list:
        filter_conditions = []
        for field, value in filters.items():
            if not hasattr(self.model, field):
                continue
            field_obj = getattr(self.model, field)
            if isinstance(value, (list, tuple)):
                filter_conditions.append(field_obj.in_(value))
            elif isinstance(value, dict):
                # Handle range queries like {"gte": 10, "lte": 20}
                for op, val in value.items():
                    if op == "gte":
                        filter_conditions.append(field_obj >= val)
                    elif op == "lte":
                        filter_conditions.append(field_obj <= val)
                    elif op == "gt":
                        filter_conditions.append(field_obj > val)
                    elif op == "lt":
                        filter_conditions.append(field_obj < val)
                    elif op == "ne":
                        filter_conditions.append(field_obj != val)
            else:
                filter_conditions.append(field_obj == value)
        return filter_conditions
