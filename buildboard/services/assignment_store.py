from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import date
from typing import Any

import sqlalchemy as sa
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from buildboard.domain.access_context import ContextType
from buildboard.domain.assignment_state import assignment_state
from buildboard.domain.models import (
    AssignmentFilters,
    AssignmentRead,
    Location,
    Organization,
    Project,
    Role,
    User,
    UserAssignment,
    now_utc,
)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
UNKNOWN_CONTEXT_NAME = "Unknown"

logger = logging.getLogger(__name__)

FilterClause = Callable[[Any, date], ColumnElement[bool]]


def active_clause(today: date) -> ColumnElement[bool]:
    return sa.and_(
        col(UserAssignment.is_deleted).is_(False),
        sa.or_(col(UserAssignment.start_date).is_(None), col(UserAssignment.start_date) <= today),
        sa.or_(col(UserAssignment.end_date).is_(None), col(UserAssignment.end_date) >= today),
    )


def org_user_ids(organization_id: str) -> sa.Select[Any]:
    return sa.select(User.id).where(col(User.organization_id) == organization_id)


# Each list filter maps to one predicate; only filters the caller set are applied.
FILTER_CLAUSES: tuple[tuple[str, FilterClause], ...] = (
    ("user_id", lambda value, _today: col(UserAssignment.user_id) == value),
    ("role_id", lambda value, _today: col(UserAssignment.role_id) == value),
    ("context_type", lambda value, _today: col(UserAssignment.context_type) == ContextType(value).value),
    ("context_id", lambda value, _today: col(UserAssignment.context_id) == value),
    ("organization_id", lambda value, _today: col(User.organization_id) == value),
    ("is_primary", lambda value, _today: col(UserAssignment.is_primary).is_(bool(value))),
    ("trade_type", lambda value, _today: col(UserAssignment.trade_type) == value),
    ("is_active", lambda value, today: active_clause(today) if value else sa.not_(active_clause(today))),
    ("start_date_from", lambda value, _today: col(UserAssignment.start_date) >= value),
    ("start_date_to", lambda value, _today: col(UserAssignment.start_date) <= value),
)


def normalize_paging(page: int, page_size: int) -> tuple[int, int]:
    if page < 1:
        page = 1
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE
    return page, page_size


def build_filter_clauses(filters: AssignmentFilters, today: date) -> list[ColumnElement[bool]]:
    clauses: list[ColumnElement[bool]] = []
    for name, build in FILTER_CLAUSES:
        value = getattr(filters, name)
        if value is None:
            continue
        clauses.append(build(value, today))
    if not filters.include_deleted:
        clauses.append(col(UserAssignment.is_deleted).is_(False))
    return clauses


class AssignmentStore:
    """Data access for user assignments.

    Every read is scoped to one organization by joining the assignee's
    organization, so rows of other organizations never leak into a result.
    Methods run inside the caller's session and never commit.
    """

    def scoped_select(self, organization_id: str) -> Any:
        return (
            select(UserAssignment)
            .join(User, col(User.id) == col(UserAssignment.user_id))
            .where(col(User.organization_id) == organization_id)
        )

    def insert(self, session: Session, assignment: UserAssignment) -> UserAssignment:
        session.add(assignment)
        session.flush()
        return assignment

    def get(
        self,
        session: Session,
        organization_id: str,
        assignment_id: str,
        *,
        include_deleted: bool = False,
    ) -> UserAssignment | None:
        statement = self.scoped_select(organization_id).where(col(UserAssignment.id) == assignment_id)
        if not include_deleted:
            statement = statement.where(col(UserAssignment.is_deleted).is_(False))
        return session.exec(statement).first()

    def list_page(
        self,
        session: Session,
        organization_id: str,
        filters: AssignmentFilters,
        today: date,
    ) -> tuple[list[UserAssignment], int, int, int]:
        page, page_size = normalize_paging(filters.page, filters.page_size)
        statement = self.scoped_select(organization_id)
        for clause in build_filter_clauses(filters, today):
            statement = statement.where(clause)

        count_statement = sa.select(sa.func.count()).select_from(statement.subquery())
        total = int(session.execute(count_statement).scalar_one())
        rows = list(
            session.exec(
                statement.order_by(col(UserAssignment.created_at).desc(), col(UserAssignment.id))
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
        )
        return rows, total, page, page_size

    def list_for_user(
        self,
        session: Session,
        organization_id: str,
        user_id: str,
    ) -> list[UserAssignment]:
        statement = (
            self.scoped_select(organization_id)
            .where(col(UserAssignment.user_id) == user_id)
            .where(col(UserAssignment.is_deleted).is_(False))
            .order_by(col(UserAssignment.created_at).desc())
        )
        return list(session.exec(statement).all())

    def active_for_user(
        self,
        session: Session,
        organization_id: str,
        user_id: str,
        today: date,
        *,
        context_type: ContextType | None = None,
        context_id: str | None = None,
    ) -> list[UserAssignment]:
        statement = (
            self.scoped_select(organization_id)
            .where(col(UserAssignment.user_id) == user_id)
            .where(active_clause(today))
        )
        if context_type is not None:
            statement = statement.where(col(UserAssignment.context_type) == context_type.value)
        if context_id is not None:
            statement = statement.where(col(UserAssignment.context_id) == context_id)
        return list(session.exec(statement.order_by(col(UserAssignment.created_at).desc())).all())

    def for_context(
        self,
        session: Session,
        organization_id: str,
        context_type: ContextType,
        context_id: str,
    ) -> list[UserAssignment]:
        statement = (
            self.scoped_select(organization_id)
            .where(col(UserAssignment.context_type) == context_type.value)
            .where(col(UserAssignment.context_id) == context_id)
            .where(col(UserAssignment.is_deleted).is_(False))
            .order_by(col(UserAssignment.created_at).desc())
        )
        return list(session.exec(statement).all())

    def update_fields(
        self,
        session: Session,
        organization_id: str,
        assignment_id: str,
        values: dict[str, Any],
    ) -> int:
        statement = (
            sa.update(UserAssignment)
            .where(col(UserAssignment.id) == assignment_id)
            .where(col(UserAssignment.is_deleted).is_(False))
            .where(col(UserAssignment.user_id).in_(org_user_ids(organization_id)))
            .values(**values)
        )
        return int(session.execute(statement).rowcount or 0)

    def soft_delete(self, session: Session, organization_id: str, assignment_id: str, actor_id: str) -> int:
        return self.update_fields(
            session,
            organization_id,
            assignment_id,
            {"is_deleted": True, "updated_by": actor_id, "updated_at": now_utc()},
        )

    def transferable_ids(
        self,
        session: Session,
        organization_id: str,
        from_user_id: str,
        assignment_ids: list[str] | None,
        today: date,
    ) -> list[str]:
        statement = (
            sa.select(UserAssignment.id)
            .where(col(UserAssignment.user_id) == from_user_id)
            .where(col(UserAssignment.user_id).in_(org_user_ids(organization_id)))
        )
        if assignment_ids is None:
            statement = statement.where(active_clause(today))
        else:
            statement = statement.where(col(UserAssignment.id).in_(assignment_ids)).where(
                col(UserAssignment.is_deleted).is_(False)
            )
        return [str(item) for item in session.execute(statement.with_for_update()).scalars().all()]

    def reassign(
        self,
        session: Session,
        from_user_id: str,
        to_user_id: str,
        assignment_ids: list[str],
        *,
        actor_id: str,
        preserve_primary: bool,
    ) -> int:
        values: dict[str, Any] = {"user_id": to_user_id, "updated_by": actor_id, "updated_at": now_utc()}
        if not preserve_primary:
            values["is_primary"] = False
        statement = (
            sa.update(UserAssignment)
            .where(col(UserAssignment.id).in_(assignment_ids))
            .where(col(UserAssignment.user_id) == from_user_id)
            .where(col(UserAssignment.is_deleted).is_(False))
            .values(**values)
        )
        return int(session.execute(statement).rowcount or 0)

    def demote_primaries(
        self,
        session: Session,
        user_id: str,
        context_type: str,
        *,
        keep_ids: Iterable[str],
        actor_id: str,
    ) -> int:
        statement = (
            sa.update(UserAssignment)
            .where(col(UserAssignment.user_id) == user_id)
            .where(col(UserAssignment.context_type) == context_type)
            .where(col(UserAssignment.is_primary).is_(True))
            .where(col(UserAssignment.is_deleted).is_(False))
            .where(col(UserAssignment.id).not_in(list(keep_ids)))
            .values(is_primary=False, updated_by=actor_id, updated_at=now_utc())
        )
        demoted = int(session.execute(statement).rowcount or 0)
        if demoted:
            logger.info("demoted %d primary %s assignments of user %s", demoted, context_type, user_id)
        return demoted

    def context_names(self, session: Session, contexts: Iterable[tuple[str, str]]) -> dict[tuple[str, str], str]:
        wanted: dict[str, set[str]] = {}
        for context_type, context_id in contexts:
            wanted.setdefault(context_type, set()).add(context_id)
        names: dict[tuple[str, str], str] = {}
        tables: dict[str, Any] = {
            ContextType.ORGANIZATION.value: Organization,
            ContextType.LOCATION.value: Location,
            ContextType.PROJECT.value: Project,
        }
        for context_type, ids in wanted.items():
            table = tables.get(context_type)
            if table is None:
                continue
            for item in session.exec(select(table).where(col(table.id).in_(ids))).all():
                names[(context_type, item.id)] = item.name
        return names

    def enrich(self, session: Session, rows: list[UserAssignment], today: date) -> list[AssignmentRead]:
        if not rows:
            return []
        user_ids = {row.user_id for row in rows}
        role_ids = {row.role_id for row in rows}
        users = {item.id: item for item in session.exec(select(User).where(col(User.id).in_(user_ids))).all()}
        roles = {item.id: item for item in session.exec(select(Role).where(col(Role.id).in_(role_ids))).all()}
        context_names = self.context_names(session, [(row.context_type, row.context_id) for row in rows])

        enriched: list[AssignmentRead] = []
        for row in rows:
            read = AssignmentRead.model_validate(row)
            user = users.get(row.user_id)
            if user is not None:
                read.user_name = f"{user.first_name} {user.last_name}".strip()
                read.user_email = user.email
            role = roles.get(row.role_id)
            if role is not None:
                read.role_name = role.name
            read.context_name = context_names.get((row.context_type, row.context_id), UNKNOWN_CONTEXT_NAME)
            read.state = assignment_state(row, today)
            enriched.append(read)
        return enriched
