from __future__ import annotations

from contextvars import ContextVar

organization_id_ctx: ContextVar[str | None] = ContextVar("organization_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)


def set_request_context(organization_id: str | None, user_id: str | None) -> None:
    organization_id_ctx.set(organization_id)
    user_id_ctx.set(user_id)


def get_organization_id() -> str | None:
    return organization_id_ctx.get()


def get_user_id() -> str | None:
    return user_id_ctx.get()


def request_context() -> dict[str, str]:
    return {
        "organization_id": get_organization_id() or "-",
        "user_id": get_user_id() or "-",
    }
