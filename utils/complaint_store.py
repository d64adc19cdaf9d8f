"""Row-level store for complaints and responses on top of the SQLAlchemy session.

Every write is a single round-trip that commits on its own, unless it runs
inside :meth:`ComplaintStore.transaction`, in which case the enclosing block
commits or rolls back all of its writes together.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import RelationshipProperty, selectinload

from extensions import db
from models import Complaint, ComplaintResponse, ComplaintStatusHistory

TABLES = {
    "complaints": Complaint,
    "complaint_responses": ComplaintResponse,
    "complaint_status_history": ComplaintStatusHistory,
}

APPEND_ONLY_TABLES = frozenset({"complaint_responses", "complaint_status_history"})


class StoreError(Exception):
    """Raised when a complaint store operation fails."""


def _model_for(table: str):
    model = TABLES.get(table)
    if model is None:
        raise StoreError(f"Unknown table {table!r}")
    return model


def _column(model, name: str):
    column = getattr(model, name, None)
    if column is None or not hasattr(column, "property"):
        raise StoreError(f"Unknown column {model.__tablename__}.{name}")
    return column


def _load_option(model, path: str):
    option = None
    current = model
    for part in path.split("."):
        relation = _column(current, part)
        if not isinstance(relation.property, RelationshipProperty):
            raise StoreError(f"{path!r} is not a relationship of {model.__tablename__}")
        option = selectinload(relation) if option is None else option.selectinload(relation)
        current = relation.property.mapper.class_
    return option


class ComplaintStore:
    def __init__(self) -> None:
        self._depth = 0

    @property
    def session(self):
        return db.session

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _finish_write(self) -> None:
        if self._depth:
            self.session.flush()
        else:
            self.session.commit()

    def _fail(self, action: str, table: str, exc: SQLAlchemyError) -> StoreError:
        if not self._depth:
            self.session.rollback()
        current_app.logger.warning(
            "Complaint store operation failed",
            extra={"action": action, "table": table, "error": str(exc)},
        )
        return StoreError(str(getattr(exc, "orig", None) or exc))

    def insert_row(self, table: str, fields: Mapping[str, Any]):
        model = _model_for(table)
        try:
            row = model(**dict(fields))
            self.session.add(row)
            self._finish_write()
            return row
        except SQLAlchemyError as exc:
            raise self._fail("insert", table, exc) from exc

    def update_row(self, table: str, row_id, fields: Mapping[str, Any]):
        """Overwrite ``fields`` on one row; returns the row or ``None`` when nothing matched."""
        model = _model_for(table)
        if table in APPEND_ONLY_TABLES:
            raise StoreError(f"Rows in {table} are append-only")
        try:
            row = self.session.get(model, row_id)
            if row is None:
                return None
            blocked = set(fields) & getattr(row, "immutable_fields", set())
            if blocked:
                raise StoreError(f"Immutable fields cannot be updated: {', '.join(sorted(blocked))}")
            for key in fields:
                _column(model, key)
            for key, value in fields.items():
                setattr(row, key, value)
            self._finish_write()
            return row
        except SQLAlchemyError as exc:
            raise self._fail("update", table, exc) from exc

    def get_row(self, table: str, row_id, joins: Iterable[str] = ()):
        model = _model_for(table)
        try:
            query = model.query.filter(_column(model, "id") == row_id)
            for path in joins:
                query = query.options(_load_option(model, path))
            return query.first()
        except SQLAlchemyError as exc:
            raise self._fail("get", table, exc) from exc

    def select_rows(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = "created_at",
        descending: bool = True,
        joins: Iterable[str] = (),
    ) -> List:
        model = _model_for(table)
        try:
            query = model.query
            for name, value in (filters or {}).items():
                column = _column(model, name)
                if isinstance(value, (list, tuple, set, frozenset)):
                    query = query.filter(column.in_(list(value)))
                elif value is None:
                    query = query.filter(column.is_(None))
                else:
                    query = query.filter(column == value)
            for path in joins:
                query = query.options(_load_option(model, path))
            if order_by:
                column = _column(model, order_by)
                query = query.order_by(column.desc() if descending else column.asc())
            return query.all()
        except SQLAlchemyError as exc:
            raise self._fail("select", table, exc) from exc

    @contextmanager
    def transaction(self):
        """Group writes so they commit together or not at all."""
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield self
            if outermost:
                self.session.commit()
        except SQLAlchemyError as exc:
            if outermost:
                self.session.rollback()
            current_app.logger.warning("Complaint store transaction failed", extra={"error": str(exc)})
            raise StoreError(str(getattr(exc, "orig", None) or exc)) from exc
        except Exception:
            if outermost:
                self.session.rollback()
            raise
        finally:
            self._depth -= 1
