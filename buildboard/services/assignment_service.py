from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import date, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from buildboard.domain.access_context import ContextType, is_assignment_active, today_utc
from buildboard.domain.errors import AssignmentNotFoundError, ConflictError, ValidationError
from buildboard.domain.models import (
    AssignmentCreate,
    AssignmentFilters,
    AssignmentPage,
    AssignmentRead,
    AssignmentTransferRead,
    AssignmentTransferRequest,
    AssignmentUpdate,
    BulkAssignmentCreate,
    BulkAssignmentRead,
    ContextAssignmentSummary,
    EventEnvelope,
    Organization,
    UserAssignment,
    UserAssignmentSummary,
    UserContextsRead,
    now_utc,
)
from buildboard.infra import events
from buildboard.infra.db import get_engine
from buildboard.services.assignment_store import UNKNOWN_CONTEXT_NAME, AssignmentStore
from buildboard.services.context_validator import ContextValidator

DATE_FORMAT = "%Y-%m-%d"
WIRE_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")

logger = logging.getLogger(__name__)


def parse_wire_date(value: str | None, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    message = f"invalid {field_name} format, expected YYYY-MM-DD"
    # strptime alone accepts unpadded months and days
    if WIRE_DATE_PATTERN.fullmatch(value) is None:
        raise ValidationError(message)
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError as exc:
        raise ValidationError(message) from exc


def _check_window(start_date: date | None, end_date: date | None) -> None:
    if start_date is not None and end_date is not None and end_date < start_date:
        raise ValidationError("end_date must not be before start_date")


class AssignmentService:
    def __init__(
        self,
        store: AssignmentStore | None = None,
        validator: ContextValidator | None = None,
    ) -> None:
        self._store = store or AssignmentStore()
        self._validator = validator or ContextValidator()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _event(
        self,
        event_type: str,
        organization_id: str,
        actor_id: str,
        payload: dict[str, Any],
    ) -> EventEnvelope:
        return EventEnvelope(
            event_type=event_type,
            organization_id=organization_id,
            actor_id=actor_id,
            payload=payload,
        )

    def create_assignment(
        self,
        organization_id: str,
        actor_id: str,
        payload: AssignmentCreate,
        *,
        today: date | None = None,
    ) -> AssignmentRead:
        start_date = parse_wire_date(payload.start_date, "start_date")
        end_date = parse_wire_date(payload.end_date, "end_date")
        _check_window(start_date, end_date)

        with self._session() as session:
            self._validator.validate(session, payload.context_type, payload.context_id, organization_id)
            self._validator.require_user(session, organization_id, payload.user_id)
            self._validator.require_role(session, organization_id, payload.role_id)

            row = UserAssignment(
                user_id=payload.user_id,
                role_id=payload.role_id,
                context_type=payload.context_type.value,
                context_id=payload.context_id,
                trade_type=payload.trade_type,
                is_primary=payload.is_primary,
                start_date=start_date,
                end_date=end_date,
                created_by=actor_id,
                updated_by=actor_id,
            )
            try:
                self._store.insert(session, row)
                if row.is_primary:
                    self._store.demote_primaries(
                        session,
                        row.user_id,
                        row.context_type,
                        keep_ids=[row.id],
                        actor_id=actor_id,
                    )
                event = self._event(
                    events.ASSIGNMENT_CREATED,
                    organization_id,
                    actor_id,
                    {"assignment_id": row.id, "user_id": row.user_id, "role_id": row.role_id},
                )
                events.event_bus.record(event, session)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("assignment already exists for this user, role and context") from exc

            events.event_bus.dispatch(event)
            logger.info(
                "created assignment %s for user %s on %s:%s",
                row.id,
                row.user_id,
                row.context_type,
                row.context_id,
            )
            return self._store.enrich(session, [row], today or today_utc())[0]

    def get_assignment(
        self,
        organization_id: str,
        assignment_id: str,
        *,
        today: date | None = None,
    ) -> AssignmentRead:
        with self._session() as session:
            row = self._store.get(session, organization_id, assignment_id)
            if row is None:
                raise AssignmentNotFoundError("assignment not found")
            return self._store.enrich(session, [row], today or today_utc())[0]

    def update_assignment(
        self,
        organization_id: str,
        actor_id: str,
        assignment_id: str,
        payload: AssignmentUpdate,
        *,
        today: date | None = None,
    ) -> AssignmentRead:
        fields_set = payload.model_fields_set
        values: dict[str, Any] = {}
        if "role_id" in fields_set and payload.role_id is not None:
            values["role_id"] = payload.role_id
        if "trade_type" in fields_set:
            values["trade_type"] = payload.trade_type
        if "is_primary" in fields_set and payload.is_primary is not None:
            values["is_primary"] = payload.is_primary
        if "start_date" in fields_set:
            values["start_date"] = parse_wire_date(payload.start_date, "start_date")
        if "end_date" in fields_set:
            values["end_date"] = parse_wire_date(payload.end_date, "end_date")
        if not values:
            raise ValidationError("no fields to update")

        with self._session() as session:
            existing = self._store.get(session, organization_id, assignment_id)
            if existing is None:
                raise AssignmentNotFoundError("assignment not found")
            _check_window(
                values.get("start_date", existing.start_date),
                values.get("end_date", existing.end_date),
            )
            if "role_id" in values:
                self._validator.require_role(session, organization_id, values["role_id"])

            changed = sorted(values)
            values["updated_by"] = actor_id
            values["updated_at"] = now_utc()
            try:
                updated = self._store.update_fields(session, organization_id, assignment_id, values)
                if updated == 0:
                    raise AssignmentNotFoundError("assignment not found")
                if values.get("is_primary"):
                    self._store.demote_primaries(
                        session,
                        existing.user_id,
                        existing.context_type,
                        keep_ids=[assignment_id],
                        actor_id=actor_id,
                    )
                event = self._event(
                    events.ASSIGNMENT_UPDATED,
                    organization_id,
                    actor_id,
                    {"assignment_id": assignment_id, "fields": changed},
                )
                events.event_bus.record(event, session)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("assignment already exists for this user, role and context") from exc

            events.event_bus.dispatch(event)
            logger.info("updated assignment %s fields=%s", assignment_id, ",".join(changed))
            session.refresh(existing)
            return self._store.enrich(session, [existing], today or today_utc())[0]

    def delete_assignment(self, organization_id: str, actor_id: str, assignment_id: str) -> None:
        with self._session() as session:
            deleted = self._store.soft_delete(session, organization_id, assignment_id, actor_id)
            if deleted == 0:
                raise AssignmentNotFoundError("assignment not found")
            event = self._event(
                events.ASSIGNMENT_DELETED,
                organization_id,
                actor_id,
                {"assignment_id": assignment_id},
            )
            events.event_bus.record(event, session)
            session.commit()
        events.event_bus.dispatch(event)
        logger.info("soft-deleted assignment %s", assignment_id)

    def create_bulk_assignments(
        self,
        organization_id: str,
        actor_id: str,
        payload: BulkAssignmentCreate,
        *,
        today: date | None = None,
    ) -> BulkAssignmentRead:
        start_date = parse_wire_date(payload.start_date, "start_date")
        end_date = parse_wire_date(payload.end_date, "end_date")
        _check_window(start_date, end_date)

        created_ids: list[str] = []
        with self._session() as session:
            self._validator.validate(session, payload.context_type, payload.context_id, organization_id)
            self._validator.require_role(session, organization_id, payload.role_id)

            for user_id in payload.user_ids:
                self._validator.require_user(session, organization_id, user_id)
                row = UserAssignment(
                    user_id=user_id,
                    role_id=payload.role_id,
                    context_type=payload.context_type.value,
                    context_id=payload.context_id,
                    trade_type=payload.trade_type,
                    is_primary=payload.is_primary,
                    start_date=start_date,
                    end_date=end_date,
                    created_by=actor_id,
                    updated_by=actor_id,
                )
                try:
                    self._store.insert(session, row)
                    if row.is_primary:
                        self._store.demote_primaries(
                            session,
                            user_id,
                            row.context_type,
                            keep_ids=[row.id],
                            actor_id=actor_id,
                        )
                except IntegrityError as exc:
                    session.rollback()
                    logger.warning("bulk assignment rolled back at user %s", user_id)
                    raise ConflictError(f"failed to create assignment for user {user_id}") from exc
                created_ids.append(row.id)

            event = self._event(
                events.ASSIGNMENT_BULK_CREATED,
                organization_id,
                actor_id,
                {
                    "assignment_ids": created_ids,
                    "role_id": payload.role_id,
                    "context_type": payload.context_type.value,
                    "context_id": payload.context_id,
                },
            )
            events.event_bus.record(event, session)
            session.commit()
        events.event_bus.dispatch(event)
        logger.info("bulk created %d assignments on %s:%s", len(created_ids), payload.context_type, payload.context_id)

        return BulkAssignmentRead(
            assignments=self._read_back(organization_id, created_ids, today or today_utc()),
            created_count=len(created_ids),
        )

    def _read_back(self, organization_id: str, assignment_ids: list[str], today: date) -> list[AssignmentRead]:
        results: list[AssignmentRead] = []
        with self._session() as session:
            for assignment_id in assignment_ids:
                try:
                    row = self._store.get(session, organization_id, assignment_id)
                    if row is None:
                        raise AssignmentNotFoundError(f"assignment {assignment_id} not found after create")
                    results.extend(self._store.enrich(session, [row], today))
                except (AssignmentNotFoundError, SQLAlchemyError) as exc:
                    session.rollback()
                    logger.warning("skipping created assignment %s in response: %s", assignment_id, exc)
        return results

    def transfer_assignments(
        self,
        organization_id: str,
        actor_id: str,
        payload: AssignmentTransferRequest,
        *,
        today: date | None = None,
    ) -> AssignmentTransferRead:
        if payload.from_user_id == payload.to_user_id:
            raise ValidationError("from_user_id and to_user_id must differ")
        assignment_ids = payload.assignment_ids or None

        with self._session() as session:
            self._validator.require_user(session, organization_id, payload.from_user_id)
            self._validator.require_user(session, organization_id, payload.to_user_id)

            candidate_ids = self._store.transferable_ids(
                session,
                organization_id,
                payload.from_user_id,
                assignment_ids,
                today or today_utc(),
            )
            if not candidate_ids:
                raise ConflictError("no assignments found to transfer")
            try:
                moved = self._store.reassign(
                    session,
                    payload.from_user_id,
                    payload.to_user_id,
                    candidate_ids,
                    actor_id=actor_id,
                    preserve_primary=payload.preserve_primary,
                )
                if moved == 0:
                    session.rollback()
                    raise ConflictError("no assignments found to transfer")
                if payload.preserve_primary:
                    self._demote_for_preserved_primaries(session, payload.to_user_id, candidate_ids, actor_id)
                event = self._event(
                    events.ASSIGNMENT_TRANSFERRED,
                    organization_id,
                    actor_id,
                    {
                        "from_user_id": payload.from_user_id,
                        "to_user_id": payload.to_user_id,
                        "assignment_ids": candidate_ids,
                    },
                )
                events.event_bus.record(event, session)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("target user already holds one of the transferred assignments") from exc

        events.event_bus.dispatch(event)
        logger.info(
            "transferred %d assignments from user %s to user %s",
            moved,
            payload.from_user_id,
            payload.to_user_id,
        )
        return AssignmentTransferRead(transferred_count=moved)

    def _demote_for_preserved_primaries(
        self,
        session: Session,
        to_user_id: str,
        moved_ids: list[str],
        actor_id: str,
    ) -> None:
        statement = (
            select(UserAssignment.context_type)
            .where(col(UserAssignment.id).in_(moved_ids))
            .where(col(UserAssignment.is_primary).is_(True))
        )
        for context_type in set(session.exec(statement).all()):
            self._store.demote_primaries(session, to_user_id, context_type, keep_ids=moved_ids, actor_id=actor_id)

    def get_assignments(
        self,
        organization_id: str,
        filters: AssignmentFilters,
        *,
        today: date | None = None,
    ) -> AssignmentPage:
        current = today or today_utc()
        with self._session() as session:
            rows, total, page, page_size = self._store.list_page(session, organization_id, filters, current)
            return AssignmentPage(
                assignments=self._store.enrich(session, rows, current),
                total_count=total,
                page=page,
                page_size=page_size,
            )

    def get_user_assignments(
        self,
        organization_id: str,
        user_id: str,
        *,
        today: date | None = None,
    ) -> UserAssignmentSummary:
        current = today or today_utc()
        with self._session() as session:
            user = self._validator.require_user(session, organization_id, user_id)
            organization = session.get(Organization, organization_id)
            rows = self._store.list_for_user(session, organization_id, user_id)
            by_type = Counter(row.context_type for row in rows)
            return UserAssignmentSummary(
                user_id=user.id,
                user_name=f"{user.first_name} {user.last_name}".strip(),
                user_email=user.email,
                organization_id=organization_id,
                organization_name=organization.name if organization is not None else UNKNOWN_CONTEXT_NAME,
                total_assignments=len(rows),
                active_assignments=sum(1 for row in rows if is_assignment_active(row, current)),
                assignments_by_type=dict(by_type),
                assignments=self._store.enrich(session, rows, current),
            )

    def get_context_assignments(
        self,
        organization_id: str,
        context_type: ContextType,
        context_id: str,
        *,
        today: date | None = None,
    ) -> ContextAssignmentSummary:
        current = today or today_utc()
        with self._session() as session:
            rows = self._store.for_context(session, organization_id, context_type, context_id)
            names = self._store.context_names(session, [(context_type.value, context_id)])
            return ContextAssignmentSummary(
                context_type=context_type,
                context_id=context_id,
                context_name=names.get((context_type.value, context_id), UNKNOWN_CONTEXT_NAME),
                organization_id=organization_id,
                assignments=self._store.enrich(session, rows, current),
            )

    def get_user_contexts(
        self,
        organization_id: str,
        user_id: str,
        context_type: ContextType,
        *,
        today: date | None = None,
    ) -> UserContextsRead:
        with self._session() as session:
            rows = self._store.active_for_user(
                session,
                organization_id,
                user_id,
                today or today_utc(),
                context_type=context_type,
            )
            return UserContextsRead(
                user_id=user_id,
                context_type=context_type,
                context_ids=sorted({row.context_id for row in rows}),
            )

    def get_active_assignments(
        self,
        organization_id: str,
        user_id: str,
        *,
        today: date | None = None,
    ) -> list[AssignmentRead]:
        current = today or today_utc()
        with self._session() as session:
            rows = self._store.active_for_user(session, organization_id, user_id, current)
            return self._store.enrich(session, rows, current)
