from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from buildboard import main as app_main
from buildboard.domain.models import AuditLog, EventRecord, Location, Role, UserAssignment
from buildboard.infra import audit, db
from buildboard.infra.auth import decode_access_token
from buildboard.services.assignment_store import AssignmentStore


@pytest.fixture()
def org_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    test_engine = db.build_engine(f"sqlite:///{tmp_path / 'organization_test.db'}")
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, org_id: str, email: str) -> dict[str, Any]:
    response = client.post("/api/organization/dev-login", json={"organization_id": org_id, "email": email})
    assert response.status_code == 200
    return response.json()


def _bootstrap(client: TestClient, name: str) -> tuple[str, str, str]:
    org_resp = client.post("/api/organization/organizations", json={"name": name})
    assert org_resp.status_code == 201
    org_id = org_resp.json()["id"]
    admin_resp = client.post(
        "/api/organization/bootstrap-admin",
        json={"organization_id": org_id, "email": f"admin@{name}.test", "first_name": "Ada"},
    )
    assert admin_resp.status_code == 201
    token = _login(client, org_id, f"admin@{name}.test")["access_token"]
    return org_id, admin_resp.json()["id"], token


def _create_user(client: TestClient, token: str, email: str) -> str:
    response = client.post("/api/organization/users", json={"email": email}, headers=_auth_header(token))
    assert response.status_code == 201
    return response.json()["id"]


def _role_id(client: TestClient, token: str, name: str) -> str:
    response = client.get("/api/organization/roles", headers=_auth_header(token))
    return next(item["id"] for item in response.json() if item["name"] == name)


def _grant(client: TestClient, token: str, user_id: str, role_id: str, context_type: str, context_id: str) -> None:
    response = client.post(
        "/api/assignments",
        json={"user_id": user_id, "role_id": role_id, "context_type": context_type, "context_id": context_id},
        headers=_auth_header(token),
    )
    assert response.status_code == 201, response.text


def test_bootstrap_admin_only_once(org_client: TestClient) -> None:
    org_id, admin_id, token = _bootstrap(org_client, "once")
    again = org_client.post(
        "/api/organization/bootstrap-admin",
        json={"organization_id": org_id, "email": "second@once.test"},
    )
    assert again.status_code == 409

    missing = org_client.post(
        "/api/organization/bootstrap-admin",
        json={"organization_id": "missing", "email": "x@once.test"},
    )
    assert missing.status_code == 404

    held = org_client.get(f"/api/assignments/users/{admin_id}", headers=_auth_header(token)).json()
    assert held["assignments_by_type"] == {"organization": 1}
    assert held["assignments"][0]["role_name"] == "SuperAdmin"
    assert held["assignments"][0]["is_primary"] is True

    duplicate_org = org_client.post("/api/organization/organizations", json={"name": "once"})
    assert duplicate_org.status_code == 409


def test_dev_login_claims_carry_permissions_and_contexts(org_client: TestClient) -> None:
    org_id, admin_id, token = _bootstrap(org_client, "claims")
    admin_claims = decode_access_token(token)
    assert admin_claims["sub"] == admin_id
    assert admin_claims["organization_id"] == org_id
    assert admin_claims["is_super_admin"] is True
    assert admin_claims["permissions"] == ["*"]
    assert admin_claims["access_contexts"] == [f"ORG:{org_id}"]

    location = org_client.post("/api/organization/locations", json={"name": "yard"}, headers=_auth_header(token))
    location_id = location.json()["id"]
    project = org_client.post(
        "/api/organization/projects",
        json={"location_id": location_id, "name": "tower"},
        headers=_auth_header(token),
    ).json()
    worker_id = _create_user(org_client, token, "wes@claims.test")
    _grant(org_client, token, worker_id, _role_id(org_client, token, "FieldWorker"), "project", project["id"])
    _grant(org_client, token, worker_id, _role_id(org_client, token, "ProjectManager"), "location", location_id)

    login = _login(org_client, org_id, "wes@claims.test")
    assert login["permissions"] == ["assignment.read", "project.read", "project.write"]
    assert login["access_contexts"] == sorted([f"LOC:{location_id}", f"PROJ:{project['id']}"])
    worker_claims = decode_access_token(login["access_token"])
    assert worker_claims["is_super_admin"] is False
    assert worker_claims["permissions"] == login["permissions"]

    unknown = org_client.post("/api/organization/dev-login", json={"organization_id": org_id, "email": "nobody@x"})
    assert unknown.status_code == 401
    other_org = org_client.post(
        "/api/organization/dev-login",
        json={"organization_id": "elsewhere", "email": "wes@claims.test"},
    )
    assert other_org.status_code == 401


def test_location_creation_grants_creator(org_client: TestClient) -> None:
    org_id, admin_id, token = _bootstrap(org_client, "grant")
    response = org_client.post(
        "/api/organization/locations",
        json={"name": "north yard", "address": "1 Quarry Rd"},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    location = response.json()
    assert location["created_by"] == admin_id

    context = org_client.get(f"/api/assignments/contexts/location/{location['id']}", headers=_auth_header(token))
    grants = context.json()["assignments"]
    assert [(item["user_id"], item["role_name"]) for item in grants] == [(admin_id, "SuperAdmin")]
    assert context.json()["context_name"] == "north yard"

    with Session(db.get_engine()) as session:
        recorded = session.exec(select(EventRecord).where(EventRecord.event_type == "location.created")).all()
    assert len(recorded) == 1
    assert recorded[0].organization_id == org_id
    assert recorded[0].payload["location_id"] == location["id"]


def test_location_creation_is_all_or_nothing(org_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    org_id, _admin_id, token = _bootstrap(org_client, "atomic")

    def failing_insert(self: AssignmentStore, session: Session, assignment: UserAssignment) -> UserAssignment:
        raise IntegrityError("INSERT", {}, Exception("grant rejected"))

    monkeypatch.setattr(AssignmentStore, "insert", failing_insert)
    response = org_client.post("/api/organization/locations", json={"name": "lost"}, headers=_auth_header(token))
    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error", "error": {"type": "store"}}

    with Session(db.get_engine()) as session:
        assert session.exec(select(Location).where(Location.organization_id == org_id)).all() == []


def test_location_creation_needs_super_admin_role(org_client: TestClient) -> None:
    org_id, _admin_id, token = _bootstrap(org_client, "norole")
    with Session(db.get_engine()) as session:
        role = session.exec(select(Role).where(Role.name == "SuperAdmin")).one()
        role.name = "Owner"
        session.add(role)
        session.commit()

    response = org_client.post("/api/organization/locations", json={"name": "orphan"}, headers=_auth_header(token))
    assert response.status_code == 404
    assert response.json()["detail"] == "SuperAdmin role not found"

    with Session(db.get_engine()) as session:
        assert session.exec(select(Location).where(Location.organization_id == org_id)).all() == []


def test_location_reads_follow_resolved_access(org_client: TestClient) -> None:
    org_id, _admin_id, token = _bootstrap(org_client, "coarse")
    headers = _auth_header(token)
    yard = org_client.post("/api/organization/locations", json={"name": "yard"}, headers=headers).json()["id"]
    depot = org_client.post("/api/organization/locations", json={"name": "depot"}, headers=headers).json()["id"]
    project = org_client.post(
        "/api/organization/projects",
        json={"location_id": yard, "name": "tower"},
        headers=headers,
    ).json()["id"]
    worker_id = _create_user(org_client, token, "wes@coarse.test")
    _grant(org_client, token, worker_id, _role_id(org_client, token, "FieldWorker"), "project", project)

    worker_headers = _auth_header(_login(org_client, org_id, "wes@coarse.test")["access_token"])
    allowed = org_client.get(f"/api/organization/locations/{yard}", headers=worker_headers)
    assert allowed.status_code == 200
    assert allowed.json()["name"] == "yard"
    denied = org_client.get(f"/api/organization/locations/{depot}", headers=worker_headers)
    assert denied.status_code == 403

    listed = org_client.get("/api/organization/locations", headers=worker_headers)
    assert [item["id"] for item in listed.json()] == [yard]
    projects = org_client.get("/api/organization/projects", headers=worker_headers)
    assert [item["id"] for item in projects.json()] == [project]

    admin_view = org_client.get("/api/organization/locations", headers=headers)
    assert {item["id"] for item in admin_view.json()} == {yard, depot}
    assert org_client.get(f"/api/organization/locations/{depot}", headers=headers).status_code == 200


def test_organization_routes_require_permissions(org_client: TestClient) -> None:
    org_id, _admin_id, token = _bootstrap(org_client, "perm")
    _create_user(org_client, token, "wes@perm.test")
    worker_headers = _auth_header(_login(org_client, org_id, "wes@perm.test")["access_token"])

    assert org_client.get("/api/organization/users").status_code == 401
    assert org_client.get("/api/organization/users", headers={"Authorization": "Bearer junk"}).status_code == 401
    denied = org_client.post("/api/organization/users", json={"email": "x@perm.test"}, headers=worker_headers)
    assert denied.status_code == 403
    assert denied.json()["detail"] == "Missing permission: organization.write"


def test_custom_roles_are_organization_scoped(org_client: TestClient) -> None:
    _north_id, _north_admin, north_token = _bootstrap(org_client, "rolesnorth")
    _south_id, _south_admin, south_token = _bootstrap(org_client, "rolessouth")

    created = org_client.post(
        "/api/organization/roles",
        json={
            "name": "Surveyor",
            "category": "field",
            "access_level": "location",
            "permissions": ["project.read", "bogus.perm"],
        },
        headers=_auth_header(north_token),
    )
    assert created.status_code == 201
    role = created.json()
    assert role["role_type"] == "custom"
    assert role["permissions"] == ["project.read"]

    def role_names(token: str) -> set[str]:
        response = org_client.get("/api/organization/roles", headers=_auth_header(token))
        return {item["name"] for item in response.json()}

    north_names = role_names(north_token)
    south_names = role_names(south_token)
    assert "Surveyor" in north_names
    assert "Surveyor" not in south_names
    assert {"SuperAdmin", "LocationManager", "ProjectManager", "FieldWorker"} <= south_names

    foreign = org_client.get(f"/api/organization/roles/{role['id']}", headers=_auth_header(south_token))
    assert foreign.status_code == 404


def test_write_requests_are_audited(org_client: TestClient) -> None:
    org_id, admin_id, token = _bootstrap(org_client, "audited")
    worker_id = _create_user(org_client, token, "wes@audited.test")
    location_id = org_client.post(
        "/api/organization/locations",
        json={"name": "yard"},
        headers=_auth_header(token),
    ).json()["id"]
    _grant(org_client, token, worker_id, _role_id(org_client, token, "FieldWorker"), "location", location_id)

    with Session(db.get_engine()) as session:
        rows = session.exec(select(AuditLog).where(AuditLog.organization_id == org_id)).all()
    actions = {row.action: row for row in rows}
    assert "location.create" in actions
    assert actions["location.create"].resource == f"location:{location_id}"
    assert actions["location.create"].actor_id == admin_id
    assert actions["assignment.create"].status_code == 201
    assert actions["assignment.create"].detail["outcome"] == "success"
