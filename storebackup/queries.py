from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Item


def get_items(session: Session, limit: int | None = None) -> list[Item]:
    stmt = select(Item).order_by(Item.id.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.scalars(stmt).all())


def item_names(session: Session) -> list[str]:
    return list(session.scalars(select(Item.name).order_by(Item.id.asc())).all())


def add_item(session: Session, name: str) -> Item:
    item = Item(name=name)
    session.add(item)
    return item
