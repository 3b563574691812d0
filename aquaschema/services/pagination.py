from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession


T = TypeVar("T")

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


def clamp_paging(page: int, limit: int) -> tuple[int, int]:
    # Keep offsets non-negative and page sizes bounded for list endpoints.
    return max(1, int(page)), min(MAX_PAGE_SIZE, max(1, int(limit)))


async def paginate(session: AsyncSession, statement: Select, *, page: int, limit: int) -> Page:
    page, limit = clamp_paging(page, limit)
    total = await session.scalar(
        select(func.count()).select_from(statement.order_by(None).subquery())
    )
    result = await session.execute(statement.offset((page - 1) * limit).limit(limit))
    return Page(items=list(result.scalars().all()), total=int(total or 0), page=page, limit=limit)
