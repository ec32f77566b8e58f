from __future__ import annotations

import asyncio
import os
import time
from typing import Any
from uuid import uuid4

import httpx


def _assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def _wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    last_status = "n/a"
    last_body = ""
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
            last_status = str(response.status_code)
            last_body = response.text
        except httpx.HTTPError as exc:
            last_status = "http_error"
            last_body = str(exc)
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}, last_status={last_status}, detail={last_body}")


async def _post_json(
    client: httpx.AsyncClient,
    path: str,
    body: dict[str, Any],
    *,
    token: str | None = None,
    expected: int = 201,
) -> dict[str, Any]:
    headers = _auth_headers(token) if token else None
    response = await client.post(path, json=body, headers=headers)
    _assert_status(response, expected)
    return response.json()


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    run_id = uuid4().hex[:8]
    admin_email = f"smoke-admin-{run_id}@buildboard.test"

    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await _wait_ok(client, "/healthz")
        await _wait_ok(client, "/readyz")

        organization = await _post_json(client, "/api/organization/organizations", {"name": f"smoke-org-{run_id}"})
        organization_id = organization["id"]
        await _post_json(
            client,
            "/api/organization/bootstrap-admin",
            {"organization_id": organization_id, "email": admin_email},
        )
        login = await _post_json(
            client,
            "/api/organization/dev-login",
            {"organization_id": organization_id, "email": admin_email},
            expected=200,
        )
        token = login["access_token"]

        location = await _post_json(client, "/api/organization/locations", {"name": "smoke yard"}, token=token)
        project = await _post_json(
            client,
            "/api/organization/projects",
            {"location_id": location["id"], "name": "smoke tower"},
            token=token,
        )
        worker = await _post_json(
            client,
            "/api/organization/users",
            {"email": f"smoke-worker-{run_id}@buildboard.test"},
            token=token,
        )

        roles_resp = await client.get("/api/organization/roles", headers=_auth_headers(token))
        _assert_status(roles_resp, 200)
        role_id = next(item["id"] for item in roles_resp.json() if item["name"] == "FieldWorker")

        assignment = await _post_json(
            client,
            "/api/assignments",
            {
                "user_id": worker["id"],
                "role_id": role_id,
                "context_type": "project",
                "context_id": project["id"],
            },
            token=token,
        )

        check = await _post_json(
            client,
            "/api/assignments/check-permission",
            {
                "user_id": worker["id"],
                "context_type": "project",
                "context_id": project["id"],
                "permission": "project.read",
            },
            token=token,
            expected=200,
        )
        if not check["has_permission"]:
            raise RuntimeError(f"permission check denied a fresh assignment: {check}")

        access_resp = await client.get(
            f"/api/assignments/users/{worker['id']}/access",
            headers=_auth_headers(token),
        )
        _assert_status(access_resp, 200)
        if location["id"] not in access_resp.json()["location_ids"]:
            raise RuntimeError("access resolution missed the project's location")

        delete_resp = await client.delete(
            f"/api/assignments/{assignment['id']}",
            headers=_auth_headers(token),
        )
        _assert_status(delete_resp, 204)

        active_resp = await client.get(
            f"/api/assignments/users/{worker['id']}/active",
            headers=_auth_headers(token),
        )
        _assert_status(active_resp, 200)
        if active_resp.json():
            raise RuntimeError("deleted assignment still reported as active")

    print("verify_smoke: healthz/readyz + assignment CRUD + permission check + access resolution ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
