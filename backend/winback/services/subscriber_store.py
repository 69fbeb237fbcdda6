"""
Subscriber Store.

WHAT:
    Thin persistence layer over the sms_subscribers table:
    find / get / conditional_update / transition / aggregate.

WHY:
    Workers, webhook handlers and operator endpoints never hold in-memory
    locks; they coordinate only through compare-and-swap updates on a single
    row. conditional_update issues one UPDATE ... WHERE id = :id AND <expected>
    and reports whether exactly one row matched. Every successful write bumps
    `version`, so callers can also guard on the version they last read.

DESIGN:
    - Uses SQLAlchemy Core update() so the guard is evaluated by the database,
      not by the ORM identity map.
    - Commits immediately: a claim must be durable before any side effect
      (discount creation, SMS send) happens.
    - Rows passed as `add` are written in the same transaction as the
      update and discarded when the guard does not match.
    - Errors from the database propagate unchanged.

REFERENCES:
    - winback/services/claim_manager.py
    - winback/services/attribution_service.py
    - winback/services/lifecycle.py
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ..models import CodeNamespaceEnum, RecoveryStateEnum, RetiredCode, Subscriber
from .clock import Clock
from .lifecycle import validate_transition

logger = logging.getLogger(__name__)


def _coerce_id(subscriber_id) -> UUID:
    return subscriber_id if isinstance(subscriber_id, UUID) else UUID(str(subscriber_id))


class SubscriberStore:
    """
    SQLAlchemy-backed subscriber store.

    Usage:
        store = SubscriberStore(db)
        row = store.conditional_update(
            subscriber.id,
            expected={"recovery_sent": False, "converted": False},
            fields={"recovery_sent": True},
        )
        if row is None:
            # someone else got there first
            ...
    """

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscriber_id) -> Optional[Subscriber]:
        """Fresh read of one row (bypasses any stale identity-map state)."""
        stmt = (
            select(Subscriber)
            .where(Subscriber.id == _coerce_id(subscriber_id))
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_phone(self, phone: str) -> Optional[Subscriber]:
        return self.db.execute(select(Subscriber).where(Subscriber.phone == phone)).scalar_one_or_none()

    def find(
        self,
        *criteria,
        order_by: Optional[Sequence] = None,
        limit: Optional[int] = None,
        exclude_ids: Optional[Iterable] = None,
    ) -> List[Subscriber]:
        """Select subscribers matching SQLAlchemy criteria."""
        stmt = select(Subscriber).where(*criteria)
        excluded = [_coerce_id(i) for i in (exclude_ids or [])]
        if excluded:
            stmt = stmt.where(Subscriber.id.notin_(excluded))
        if order_by is not None:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        stmt = stmt.execution_options(populate_existing=True)
        return list(self.db.execute(stmt).scalars().all())

    def find_by_code(self, code: str, namespace: CodeNamespaceEnum) -> Optional[Subscriber]:
        """Exact lookup on the code column of the given namespace.

        Falls back to retired codes, so a code replaced by a resend still
        resolves to the subscriber it was issued to.
        """
        column = Subscriber.recovery_code if namespace == CodeNamespaceEnum.recovery else Subscriber.primary_code
        stmt = select(Subscriber).where(column == code).execution_options(populate_existing=True)
        owner = self.db.execute(stmt).scalar_one_or_none()
        if owner is not None:
            return owner
        retired = self.find_retired_code(code, namespace)
        return self.get(retired.subscriber_id) if retired is not None else None

    def find_retired_code(self, code: str, namespace: CodeNamespaceEnum) -> Optional[RetiredCode]:
        stmt = select(RetiredCode).where(RetiredCode.code == code, RetiredCode.namespace == namespace)
        return self.db.execute(stmt).scalar_one_or_none()

    def code_exists(self, code: str) -> bool:
        """True if the code was ever issued, in either namespace, live or retired."""
        stmt = select(Subscriber.id).where(
            or_(Subscriber.primary_code == code, Subscriber.recovery_code == code)
        ).limit(1)
        if self.db.execute(stmt).first() is not None:
            return True
        retired = select(RetiredCode.id).where(RetiredCode.code == code).limit(1)
        return self.db.execute(retired).first() is not None

    def count(self, *criteria) -> int:
        stmt = select(func.count(Subscriber.id)).where(*criteria)
        return int(self.db.execute(stmt).scalar() or 0)

    def aggregate(self, columns: Dict[str, Any], *criteria) -> Dict[str, Any]:
        """Run one aggregate SELECT and return {label: value}.

        Example:
            store.aggregate({"revenue": func.sum(Subscriber.conversion_order_total)},
                            Subscriber.converted.is_(True))
        """
        stmt = select(*[expr.label(label) for label, expr in columns.items()]).where(*criteria)
        row = self.db.execute(stmt).one()
        return dict(row._mapping)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _guards(self, expected: Dict[str, Any]) -> list:
        guards = []
        for name, value in expected.items():
            column = getattr(Subscriber, name)
            if isinstance(value, (list, tuple, set, frozenset)):
                guards.append(column.in_(list(value)))
            elif value is None:
                guards.append(column.is_(None))
            else:
                guards.append(column == value)
        return guards

    def conditional_update(
        self,
        subscriber_id,
        expected: Dict[str, Any],
        fields: Dict[str, Any],
        add: Sequence = (),
    ) -> Optional[Subscriber]:
        """Compare-and-swap on one row.

        Args:
            subscriber_id: Row id
            expected: {column: value} guards; list/tuple/set values become IN,
                None becomes IS NULL
            fields: {column: value} to write; values may be SQL expressions
                (e.g. Subscriber.total_messages_sent + 1)
            add: New ORM rows committed together with the update, or not at
                all when the guard does not match

        Returns:
            The refreshed subscriber when exactly one row matched, else None.
        """
        sid = _coerce_id(subscriber_id)
        values = dict(fields)
        values["version"] = Subscriber.version + 1
        values["updated_at"] = self.clock.now()

        stmt = (
            update(Subscriber)
            .where(Subscriber.id == sid, *self._guards(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            if result.rowcount != 1:
                self.db.rollback()
                logger.debug(f"[STORE] Conditional update matched {result.rowcount} rows for {sid}")
                return None
            for row in add:
                self.db.add(row)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return self.get(sid)

    def transition(
        self,
        subscriber_id,
        from_states: Iterable[RecoveryStateEnum],
        to_state: RecoveryStateEnum,
        expected: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, Any]] = None,
        add: Sequence = (),
    ) -> Optional[Subscriber]:
        """Conditional update that also moves recovery_state.

        The transition is validated against the lifecycle table and the
        source states are part of the WHERE clause.
        """
        sources = list(from_states)
        validate_transition(sources, to_state)
        guards = dict(expected or {})
        guards["recovery_state"] = sources
        values = dict(fields or {})
        values["recovery_state"] = to_state
        return self.conditional_update(subscriber_id, guards, values, add=add)

    def create(self, **fields) -> Subscriber:
        subscriber = Subscriber(**fields)
        now = self.clock.now()
        subscriber.created_at = fields.get("created_at", now)
        subscriber.updated_at = now
        self.db.add(subscriber)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(subscriber)
        return subscriber
