from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from buildboard import main as app_main
from buildboard.domain.access_context import ContextType
from buildboard.domain.models import PermissionCheckRequest
from buildboard.infra import audit, db
from buildboard.services.access_resolver import AccessResolver
from buildboard.services.permission_evaluator import PermissionEvaluator


@pytest.fixture()
def access_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    test_engine = db.build_engine(f"sqlite:///{tmp_path / 'access_test.db'}")
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _days(offset: int) -> str:
    return (datetime.now(UTC).date() + timedelta(days=offset)).isoformat()


def _post(client: TestClient, path: str, token: str, body: dict[str, Any], expected: int = 201) -> dict[str, Any]:
    response = client.post(path, json=body, headers=_auth_header(token))
    assert response.status_code == expected, response.text
    return response.json()


def _bootstrap(client: TestClient, name: str) -> tuple[str, str, str]:
    org_id = _post(client, "/api/organization/organizations", "", {"name": name})["id"]
    email = f"admin@{name}.test"
    admin_id = _post(
        client,
        "/api/organization/bootstrap-admin",
        "",
        {"organization_id": org_id, "email": email},
    )["id"]
    token = _post(
        client,
        "/api/organization/dev-login",
        "",
        {"organization_id": org_id, "email": email},
        expected=200,
    )["access_token"]
    return org_id, admin_id, token


def _role_id(client: TestClient, token: str, name: str) -> str:
    response = client.get("/api/organization/roles", headers=_auth_header(token))
    return next(item["id"] for item in response.json() if item["name"] == name)


def _grant(
    client: TestClient,
    token: str,
    user_id: str,
    role_id: str,
    context_type: str,
    context_id: str,
    **extra: Any,
) -> dict[str, Any]:
    return _post(
        client,
        "/api/assignments",
        token,
        {"user_id": user_id, "role_id": role_id, "context_type": context_type, "context_id": context_id, **extra},
    )


@pytest.fixture()
def estate(access_client: TestClient) -> dict[str, Any]:
    org_id, admin_id, token = _bootstrap(access_client, "estate")
    locations = {
        name: _post(access_client, "/api/organization/locations", token, {"name": name})["id"]
        for name in ("L1", "L3", "L9")
    }
    projects = {
        "P7": _post(
            access_client,
            "/api/organization/projects",
            token,
            {"location_id": locations["L3"], "name": "P7"},
        )["id"],
        "P8": _post(
            access_client,
            "/api/organization/projects",
            token,
            {"location_id": locations["L1"], "name": "P8"},
        )["id"],
    }
    user_id = _post(access_client, "/api/organization/users", token, {"email": "wes@estate.test"})["id"]
    return {
        "org_id": org_id,
        "admin_id": admin_id,
        "token": token,
        "locations": locations,
        "projects": projects,
        "user_id": user_id,
        "worker_role": _role_id(access_client, token, "FieldWorker"),
        "manager_role": _role_id(access_client, token, "LocationManager"),
    }


def _access(client: TestClient, estate: dict[str, Any], user_id: str) -> dict[str, Any]:
    response = client.get(f"/api/assignments/users/{user_id}/access", headers=_auth_header(estate["token"]))
    assert response.status_code == 200
    return response.json()


def test_project_and_location_grants_resolve_to_locations(access_client: TestClient, estate: dict[str, Any]) -> None:
    locations = estate["locations"]
    _grant(
        access_client, estate["token"], estate["user_id"], estate["worker_role"], "project", estate["projects"]["P7"]
    )
    _grant(access_client, estate["token"], estate["user_id"], estate["manager_role"], "location", locations["L9"])

    body = _access(access_client, estate, estate["user_id"])
    assert body["is_org_wide"] is False
    assert body["location_ids"] == sorted([locations["L3"], locations["L9"]])
    assert body["access_contexts"] == sorted([f"LOC:{locations['L9']}", f"PROJ:{estate['projects']['P7']}"])

    login = _post(
        access_client,
        "/api/organization/dev-login",
        "",
        {"organization_id": estate["org_id"], "email": "wes@estate.test"},
        expected=200,
    )
    assert login["access_contexts"] == body["access_contexts"]


def test_deleted_project_grant_is_skipped(access_client: TestClient, estate: dict[str, Any]) -> None:
    _grant(
        access_client, estate["token"], estate["user_id"], estate["worker_role"], "project", estate["projects"]["P8"]
    )
    _grant(
        access_client, estate["token"], estate["user_id"], estate["worker_role"], "project", estate["projects"]["P7"]
    )
    deleted = access_client.delete(
        f"/api/organization/projects/{estate['projects']['P8']}",
        headers=_auth_header(estate["token"]),
    )
    assert deleted.status_code == 204

    body = _access(access_client, estate, estate["user_id"])
    assert body["location_ids"] == [estate["locations"]["L3"]]


def test_organization_grant_sees_every_live_location(access_client: TestClient, estate: dict[str, Any]) -> None:
    _grant(access_client, estate["token"], estate["user_id"], estate["manager_role"], "organization", estate["org_id"])
    _grant(
        access_client, estate["token"], estate["user_id"], estate["manager_role"], "location", estate["locations"]["L9"]
    )
    _grant(
        access_client, estate["token"], estate["user_id"], estate["worker_role"], "project", estate["projects"]["P7"]
    )
    access_client.delete(
        f"/api/organization/locations/{estate['locations']['L1']}",
        headers=_auth_header(estate["token"]),
    )

    body = _access(access_client, estate, estate["user_id"])
    assert body["is_org_wide"] is True
    assert body["location_ids"] == sorted([estate["locations"]["L3"], estate["locations"]["L9"]])
    assert body["access_contexts"] == sorted(
        [
            f"LOC:{estate['locations']['L9']}",
            f"ORG:{estate['org_id']}",
            f"PROJ:{estate['projects']['P7']}",
        ]
    )


def test_super_admin_without_assignments_is_org_wide(access_client: TestClient, estate: dict[str, Any]) -> None:
    root_id = _post(
        access_client,
        "/api/organization/users",
        estate["token"],
        {"email": "root@estate.test", "is_super_admin": True},
    )["id"]

    body = _access(access_client, estate, root_id)
    assert body["is_org_wide"] is True
    assert len(body["location_ids"]) == 3
    assert body["access_contexts"] == []


def test_expired_and_future_grants_do_not_resolve(access_client: TestClient, estate: dict[str, Any]) -> None:
    locations = estate["locations"]
    _grant(
        access_client,
        estate["token"],
        estate["user_id"],
        estate["manager_role"],
        "location",
        locations["L1"],
        start_date=_days(-30),
        end_date=_days(-1),
    )
    _grant(
        access_client,
        estate["token"],
        estate["user_id"],
        estate["manager_role"],
        "location",
        locations["L3"],
        start_date=_days(1),
    )
    _grant(
        access_client,
        estate["token"],
        estate["user_id"],
        estate["manager_role"],
        "location",
        locations["L9"],
        start_date=_days(0),
        end_date=_days(0),
    )

    body = _access(access_client, estate, estate["user_id"])
    assert body["location_ids"] == [locations["L9"]]

    later = datetime.now(UTC).date() + timedelta(days=5)
    resolution = AccessResolver().resolve_accessible_locations(estate["user_id"], estate["org_id"], today=later)
    assert resolution.location_ids == frozenset({locations["L3"]})


def test_unknown_user_resolves_to_nothing(access_client: TestClient, estate: dict[str, Any]) -> None:
    body = _access(access_client, estate, "ghost")
    assert body == {
        "user_id": "ghost",
        "organization_id": estate["org_id"],
        "is_org_wide": False,
        "location_ids": [],
        "access_contexts": [],
    }


def _check(client: TestClient, estate: dict[str, Any], **body: Any) -> dict[str, Any]:
    return _post(
        client,
        "/api/assignments/check-permission",
        estate["token"],
        {"user_id": estate["user_id"], "permission": "project.read", **body},
        expected=200,
    )


def test_permission_check_defaults_to_direct_match(access_client: TestClient, estate: dict[str, Any]) -> None:
    project_id = estate["projects"]["P7"]
    _grant(access_client, estate["token"], estate["user_id"], estate["worker_role"], "project", project_id)

    direct = _check(access_client, estate, context_type="project", context_id=project_id)
    assert direct == {
        "has_permission": True,
        "reason": "Direct assignment found for project.read",
        "user_roles": ["FieldWorker"],
        "inherited_from": [],
    }

    miss = _check(access_client, estate, context_type="project", context_id=estate["projects"]["P8"])
    assert miss["has_permission"] is False
    assert miss["reason"] == "No direct assignment found"


def test_location_grant_needs_inherited_mode_for_projects(access_client: TestClient, estate: dict[str, Any]) -> None:
    location_id = estate["locations"]["L3"]
    _grant(access_client, estate["token"], estate["user_id"], estate["manager_role"], "location", location_id)

    direct_only = _check(access_client, estate, context_type="project", context_id=estate["projects"]["P7"])
    assert direct_only["has_permission"] is False

    inherited = _check(
        access_client,
        estate,
        context_type="project",
        context_id=estate["projects"]["P7"],
        include_inherited=True,
    )
    assert inherited["has_permission"] is True
    assert inherited["reason"] == "Inherited assignment found for project.read"
    assert inherited["user_roles"] == ["LocationManager"]
    assert inherited["inherited_from"] == [f"LOC:{location_id}"]

    other = _check(
        access_client,
        estate,
        context_type="project",
        context_id=estate["projects"]["P8"],
        include_inherited=True,
    )
    assert other["has_permission"] is False
    assert other["reason"] == "No direct or inherited assignment found"


def test_organization_grant_covers_descendants_when_inherited(
    access_client: TestClient,
    estate: dict[str, Any],
) -> None:
    _grant(access_client, estate["token"], estate["user_id"], estate["manager_role"], "organization", estate["org_id"])
    evaluator = PermissionEvaluator()

    for context_type, context_id in (
        (ContextType.LOCATION, estate["locations"]["L1"]),
        (ContextType.PROJECT, estate["projects"]["P8"]),
    ):
        result = evaluator.check_permission(
            estate["org_id"],
            PermissionCheckRequest(
                user_id=estate["user_id"],
                context_type=context_type,
                context_id=context_id,
                permission="project.read",
                include_inherited=True,
            ),
        )
        assert result.has_permission is True
        assert result.inherited_from == [f"ORG:{estate['org_id']}"]

    direct = evaluator.check_permission(
        estate["org_id"],
        PermissionCheckRequest(
            user_id=estate["user_id"],
            context_type=ContextType.ORGANIZATION,
            context_id=estate["org_id"],
            permission="project.read",
            include_inherited=True,
        ),
    )
    assert direct.reason == "Direct assignment found for project.read"
    assert direct.inherited_from == []

    unknown_project = evaluator.check_permission(
        estate["org_id"],
        PermissionCheckRequest(
            user_id=estate["user_id"],
            context_type=ContextType.PROJECT,
            context_id="missing",
            permission="project.read",
            include_inherited=True,
        ),
    )
    assert unknown_project.has_permission is False


def test_revoked_grant_denies_immediately(access_client: TestClient, estate: dict[str, Any]) -> None:
    project_id = estate["projects"]["P7"]
    created = _grant(access_client, estate["token"], estate["user_id"], estate["worker_role"], "project", project_id)
    assert _check(access_client, estate, context_type="project", context_id=project_id)["has_permission"] is True

    access_client.delete(f"/api/assignments/{created['id']}", headers=_auth_header(estate["token"]))
    assert _check(access_client, estate, context_type="project", context_id=project_id)["has_permission"] is False
