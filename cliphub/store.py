"""
Entity Store — durable document storage for users, posts, comments,
collections, likes and the rest of the tables in `cliphub.models`.

Contract:
  • create / read / update / delete by primary key
  • query by equality / range filters with an explicit sort order and a
    keyset page token (the tuple of sort-key values of the last row served)
  • every public call runs in its own transaction — writes on a single
    entity are atomic; nothing here spans entities unless the method says so
  • NotFound when an id does not resolve, Conflict on a uniqueness violation,
    Unavailable on timeout or a driver failure (never a raw SQLAlchemy error)

Counter columns are only moved with `increment` (a single atomic
`SET c = c + delta` statement) or rebuilt with `recount`; callers never
read-modify-write them.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy import and_, case, delete, func, inspect, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cliphub.errors import Conflict, NotFound, Unavailable
from cliphub.models import IdempotencyRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OPS = {
    "eq": lambda col, v: col == v,
    "ne": lambda col, v: col != v,
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "in": lambda col, v: col.in_(list(v)),
    "is_null": lambda col, v: col.is_(None) if v else col.is_not(None),
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in _OPS:
            raise ValueError(f"Unsupported filter op {self.op!r}")


def eq(name: str, value: Any) -> Filter:
    return Filter(name, "eq", value)


@dataclass(frozen=True)
class SortKey:
    field: str
    descending: bool = True


@dataclass
class Page:
    items: list
    # Sort-key values of the last item; None when the listing is exhausted
    next_token: Optional[tuple] = None


@dataclass
class IdempotencyMark:
    """An idempotency record to be written in the same transaction as an edge."""

    actor_id: str
    key: str
    operation: str
    result: dict = field(default_factory=dict)

    def to_record(self) -> IdempotencyRecord:
        return IdempotencyRecord(
            actor_id=self.actor_id,
            key=self.key,
            operation=self.operation,
            result=self.result,
        )


def _pk_columns(model) -> list:
    return list(inspect(model).primary_key)


def _pk_clause(model, ident):
    cols = _pk_columns(model)
    values = ident if isinstance(ident, tuple) else (ident,)
    if len(values) != len(cols):
        raise ValueError(f"{model.__name__} key needs {len(cols)} values, got {len(values)}")
    return and_(*[c == v for c, v in zip(cols, values)])


def _where(model, filters: Sequence[Filter]) -> list:
    return [_OPS[f.op](getattr(model, f.field), f.value) for f in filters]


def _keyset_clause(model, order: Sequence[SortKey], after: tuple):
    """
    Rows strictly after `after` in the given order:
      (k1 beyond v1) OR (k1 = v1 AND k2 beyond v2) OR ...
    """
    if len(after) != len(order):
        raise ValueError("Page token does not match the sort order")
    branches = []
    for i, key in enumerate(order):
        col = getattr(model, key.field)
        beyond = col < after[i] if key.descending else col > after[i]
        prefix = [getattr(model, order[j].field) == after[j] for j in range(i)]
        branches.append(and_(*prefix, beyond))
    return or_(*branches)


class EntityStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        timeout: float = 5.0,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.timeout = timeout

    # ── Transaction runner ────────────────────────────────────────────────

    async def _run(self, op: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _txn() -> T:
            async with self._sessionmaker() as session:
                async with session.begin():
                    return await work(session)

        try:
            return await asyncio.wait_for(_txn(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Entity store %s timed out after %.2fs", op, self.timeout)
            raise Unavailable(f"Entity store {op} timed out") from exc
        except IntegrityError as exc:
            raise Conflict(f"Uniqueness constraint violated during {op}") from exc
        except (DBAPIError, SQLAlchemyError) as exc:
            logger.warning("Entity store %s failed: %s", op, exc)
            raise Unavailable(f"Entity store {op} failed") from exc

    # ── Reads ──────────────────────────────────────────────────────────────

    async def find(self, model: type[T], ident) -> Optional[T]:
        async def work(session: AsyncSession):
            return await session.get(model, ident)

        return await self._run(f"find {model.__name__}", work)

    async def get(self, model: type[T], ident) -> T:
        obj = await self.find(model, ident)
        if obj is None:
            raise NotFound(
                f"{model.__name__} not found",
                {"entity": model.__name__.lower(), "id": str(ident)},
            )
        return obj

    async def get_many(self, model: type[T], idents: Sequence[str]) -> dict[str, T]:
        """Batch fetch by single-column primary key. Missing ids are omitted."""
        unique = list(dict.fromkeys(i for i in idents if i))
        if not unique:
            return {}
        pk = _pk_columns(model)[0]

        async def work(session: AsyncSession):
            rows = await session.execute(select(model).where(pk.in_(unique)))
            return {getattr(o, pk.key): o for o in rows.scalars().all()}

        return await self._run(f"get_many {model.__name__}", work)

    async def query(
        self,
        model: type[T],
        filters: Sequence[Filter] = (),
        order: Sequence[SortKey] = (),
        limit: int = 20,
        after: Optional[tuple] = None,
    ) -> Page:
        order = list(order) or [SortKey(c.key, descending=False) for c in _pk_columns(model)]

        async def work(session: AsyncSession):
            stmt = select(model).where(*_where(model, filters))
            if after is not None:
                stmt = stmt.where(_keyset_clause(model, order, after))
            for key in order:
                col = getattr(model, key.field)
                stmt = stmt.order_by(col.desc() if key.descending else col.asc())
            rows = (await session.execute(stmt.limit(limit + 1))).scalars().all()
            items = list(rows[:limit])
            next_token = None
            if len(rows) > limit and items:
                last = items[-1]
                next_token = tuple(getattr(last, k.field) for k in order)
            return Page(items=items, next_token=next_token)

        return await self._run(f"query {model.__name__}", work)

    async def count(self, model, filters: Sequence[Filter] = ()) -> int:
        async def work(session: AsyncSession):
            stmt = select(func.count()).select_from(model).where(*_where(model, filters))
            return int((await session.execute(stmt)).scalar_one())

        return await self._run(f"count {model.__name__}", work)

    async def get_idempotency(self, actor_id: str, key: str) -> Optional[IdempotencyRecord]:
        return await self.find(IdempotencyRecord, (actor_id, key))

    # ── Writes ─────────────────────────────────────────────────────────────

    async def insert(self, obj: T, idempotency: Optional[IdempotencyMark] = None) -> T:
        async def work(session: AsyncSession):
            session.add(obj)
            if idempotency is not None:
                session.add(idempotency.to_record())
            await session.flush()
            return obj

        return await self._run(f"insert {type(obj).__name__}", work)

    async def insert_edge(self, edge, idempotency: Optional[IdempotencyMark] = None) -> bool:
        """
        Create an edge row. Returns False when the edge already exists (the
        unique key decides races between concurrent writers). Raises Conflict
        when the idempotency key was claimed in the meantime.
        """
        try:
            await self.insert(edge, idempotency)
            return True
        except Conflict:
            if idempotency is not None and await self.get_idempotency(
                idempotency.actor_id, idempotency.key
            ):
                raise
            return False

    async def delete_edge(
        self, model, ident, idempotency: Optional[IdempotencyMark] = None
    ) -> bool:
        """Delete an edge row. Returns True only if this call removed it."""

        async def work(session: AsyncSession):
            result = await session.execute(delete(model).where(_pk_clause(model, ident)))
            if idempotency is not None:
                session.add(idempotency.to_record())
                await session.flush()
            return result.rowcount == 1

        return await self._run(f"delete_edge {model.__name__}", work)

    async def update(
        self,
        model,
        ident,
        values: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Conditional single-row update. Returns False when the row exists but
        does not hold the `expected` values; raises NotFound when it is gone.
        """

        async def work(session: AsyncSession):
            clauses = [_pk_clause(model, ident)]
            for name, value in (expected or {}).items():
                col = getattr(model, name)
                clauses.append(col.is_(None) if value is None else col == value)
            result = await session.execute(
                update(model).where(*clauses).values(**values).execution_options(
                    synchronize_session=False
                )
            )
            if result.rowcount:
                return True
            exists = await session.execute(
                select(func.count()).select_from(model).where(_pk_clause(model, ident))
            )
            if not exists.scalar_one():
                raise NotFound(
                    f"{model.__name__} not found",
                    {"entity": model.__name__.lower(), "id": str(ident)},
                )
            return False

        return await self._run(f"update {model.__name__}", work)

    async def compare_and_set(
        self, model, ident, values: dict[str, Any], expected: dict[str, Any]
    ) -> bool:
        """Apply `values` only while the row still holds `expected`."""
        return await self.update(model, ident, values, expected=expected)

    async def delete(self, model, ident) -> bool:
        async def work(session: AsyncSession):
            result = await session.execute(delete(model).where(_pk_clause(model, ident)))
            return result.rowcount == 1

        return await self._run(f"delete {model.__name__}", work)

    async def delete_where(self, model, filters: Sequence[Filter]) -> int:
        if not filters:
            raise ValueError("delete_where requires at least one filter")

        async def work(session: AsyncSession):
            result = await session.execute(delete(model).where(*_where(model, filters)))
            return result.rowcount or 0

        return await self._run(f"delete_where {model.__name__}", work)

    # ── Counters ──────────────────────────────────────────────────────────

    async def increment(self, model, ident, counter: str, delta: int, floor: int = 0) -> int:
        """Atomically add `delta` to a counter column (never below `floor`)."""
        col = getattr(model, counter)

        async def work(session: AsyncSession):
            moved = col + delta
            result = await session.execute(
                update(model)
                .where(_pk_clause(model, ident))
                .values({counter: case((moved < floor, floor), else_=moved)})
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                raise NotFound(
                    f"{model.__name__} not found",
                    {"entity": model.__name__.lower(), "id": str(ident)},
                )
            value = await session.execute(select(col).where(_pk_clause(model, ident)))
            return int(value.scalar_one())

        return await self._run(f"increment {model.__name__}.{counter}", work)

    async def recount(
        self,
        model,
        ident,
        counter: str,
        source,
        source_filters: Sequence[Filter],
    ) -> tuple[int, int]:
        """
        Rebuild a counter as the true number of `source` rows matching
        `source_filters`, in one statement. Returns (previous, corrected).
        """
        col = getattr(model, counter)
        truth = (
            select(func.count())
            .select_from(source)
            .where(*_where(source, source_filters))
            .scalar_subquery()
        )

        async def work(session: AsyncSession):
            before = await session.execute(select(col).where(_pk_clause(model, ident)))
            previous = before.scalar_one_or_none()
            if previous is None:
                raise NotFound(
                    f"{model.__name__} not found",
                    {"entity": model.__name__.lower(), "id": str(ident)},
                )
            await session.execute(
                update(model)
                .where(_pk_clause(model, ident))
                .values({counter: truth})
                .execution_options(synchronize_session=False)
            )
            after = await session.execute(select(col).where(_pk_clause(model, ident)))
            return int(previous), int(after.scalar_one())

        return await self._run(f"recount {model.__name__}.{counter}", work)
