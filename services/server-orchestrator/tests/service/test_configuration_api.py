from fastapi import status
from httpx import AsyncClient
import pytest

from server_orchestrator.models import ResourceKind

NAS_SERVER = {"name": "nas-a", "protocol": "NAS", "isDynamic": True, "nas": {"directory": "input"}}


def _import_body(*servers: dict, strategy: str = "Skip") -> dict:
    return {"configuration": {"version": "2.0", "servers": list(servers)}, "strategy": strategy}


@pytest.mark.asyncio
async def test_export_is_a_json_download(async_client: AsyncClient):
    response = await async_client.get("/api/configuration/export")

    assert response.status_code == status.HTTP_200_OK
    disposition = response.headers["Content-Disposition"]
    assert disposition.startswith('attachment; filename="file-simulator-config-')
    assert disposition.endswith('.json"')
    data = response.json()
    assert data["version"] == "2.0"
    assert len(data["servers"]) == 7
    assert all(server["isDynamic"] is False for server in data["servers"])


@pytest.mark.asyncio
async def test_preview_includes_dynamic_credentials(async_client: AsyncClient):
    payload = {"name": "ftp-a", "credentials": {"username": "tester", "password": "secret123"}}
    await async_client.post("/api/servers/ftp", json=payload)

    response = await async_client.get("/api/configuration/preview", params={"description": "backup"})

    data = response.json()
    assert data["metadata"]["description"] == "backup"
    ftp = next(server for server in data["servers"] if server["name"] == "ftp-a")
    assert ftp["ftp"]["password"] == "secret123"
    assert ftp["ftp"]["passivePortStart"] is not None


@pytest.mark.asyncio
async def test_validate_reports_plan_without_creating(async_client: AsyncClient, registry):
    body = _import_body(NAS_SERVER, {**NAS_SERVER, "name": "nas-backup"})

    response = await async_client.post("/api/configuration/validate", json=body)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["created"] == ["nas-a"]
    assert data["skipped"] == ["nas-backup (conflict)"]
    assert data["totalProcessed"] == 2
    assert registry.get("nas-a") is None


@pytest.mark.asyncio
async def test_import_creates_servers(async_client: AsyncClient, registry):
    response = await async_client.post("/api/configuration/import", json=_import_body(NAS_SERVER))

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["created"] == ["nas-a"]
    assert registry.get("nas-a").status == "Running"

    response = await async_client.post("/api/configuration/import", json=_import_body(NAS_SERVER))
    assert response.json()["skipped"] == ["nas-a (conflict)"]


@pytest.mark.asyncio
async def test_import_with_failures_returns_207(async_client: AsyncClient, platform):
    platform.fail_create.add(ResourceKind.WORKLOAD)

    response = await async_client.post(
        "/api/configuration/import", json=_import_body(NAS_SERVER), params={"wait": "true"}
    )

    assert response.status_code == status.HTTP_207_MULTI_STATUS
    assert "nas-a" in response.json()["failed"]


@pytest.mark.asyncio
async def test_import_rejects_empty_or_unknown_version(async_client: AsyncClient):
    response = await async_client.post("/api/configuration/import", json=_import_body())
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"]["error"] == "InvalidConfiguration"

    body = _import_body(NAS_SERVER)
    body["configuration"]["version"] = "1.0"
    response = await async_client.post("/api/configuration/import", json=body)
    assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.asyncio
async def test_import_rejects_unknown_strategy(async_client: AsyncClient):
    response = await async_client.post(
        "/api/configuration/import", json=_import_body(NAS_SERVER, strategy="Merge")
    )

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
