"""Tests for household profiles API."""

import pytest
from httpx import AsyncClient

HOUSEHOLD = {
    "name": "Johnson household",
    "county": "Baltimore City",
    "household_size": 3,
    "monthly_income": 2800,
    "members": [
        {"name": "Dana Johnson", "age": 34, "relationship": "self"},
        {"name": "Ray Johnson", "age": 8, "relationship": "child"},
    ],
}


@pytest.mark.asyncio
async def test_create_household(client: AsyncClient, auth_headers, tenant_and_user):
    _, admin = tenant_and_user
    response = await client.post("/api/v1/households/", json=HOUSEHOLD, headers=auth_headers)
    assert response.status_code == 201
    data = response.json()
    assert data["name"] == "Johnson household"
    assert data["user_id"] == str(admin.id)
    assert data["members"][1] == {"name": "Ray Johnson", "age": 8, "relationship": "child"}


@pytest.mark.asyncio
async def test_create_household_validation(client: AsyncClient, auth_headers):
    response = await client.post(
        "/api/v1/households/", json={"name": "Bad", "household_size": 0}, headers=auth_headers
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_staff_creates_for_taxpayer(client: AsyncClient, make_user):
    taxpayer, taxpayer_headers = await make_user("taxpayer")
    _, navigator_headers = await make_user("navigator")

    response = await client.post(
        "/api/v1/households/", json={**HOUSEHOLD, "user_id": str(taxpayer.id)}, headers=navigator_headers
    )
    assert response.status_code == 201
    assert response.json()["user_id"] == str(taxpayer.id)

    # The taxpayer sees it in their own list
    listing = await client.get("/api/v1/households/", headers=taxpayer_headers)
    assert listing.json()["total"] == 1


@pytest.mark.asyncio
async def test_taxpayer_cannot_create_for_others(client: AsyncClient, make_user, tenant_and_user):
    _, admin = tenant_and_user
    _, headers = await make_user("taxpayer")
    response = await client.post(
        "/api/v1/households/", json={**HOUSEHOLD, "user_id": str(admin.id)}, headers=headers
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_staff_cannot_create_for_other_tenant(client: AsyncClient, auth_headers, make_user):
    outsider, _ = await make_user("taxpayer", new_tenant=True)
    response = await client.post(
        "/api/v1/households/", json={**HOUSEHOLD, "user_id": str(outsider.id)}, headers=auth_headers
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_scoping(client: AsyncClient, auth_headers, make_user):
    _, taxpayer_headers = await make_user("taxpayer")
    await client.post("/api/v1/households/", json=HOUSEHOLD, headers=auth_headers)
    await client.post("/api/v1/households/", json={**HOUSEHOLD, "name": "Mine"}, headers=taxpayer_headers)

    staff_view = await client.get("/api/v1/households/", headers=auth_headers)
    assert staff_view.json()["total"] == 2

    own_view = await client.get("/api/v1/households/", headers=taxpayer_headers)
    assert [h["name"] for h in own_view.json()["items"]] == ["Mine"]


@pytest.mark.asyncio
async def test_taxpayer_cannot_read_others(client: AsyncClient, auth_headers, make_user):
    _, taxpayer_headers = await make_user("taxpayer")
    created = await client.post("/api/v1/households/", json=HOUSEHOLD, headers=auth_headers)

    response = await client.get(f"/api/v1/households/{created.json()['id']}", headers=taxpayer_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_other_tenant_forbidden(client: AsyncClient, auth_headers, make_user):
    _, outsider_headers = await make_user("admin", new_tenant=True)
    created = await client.post("/api/v1/households/", json=HOUSEHOLD, headers=auth_headers)

    response = await client.get(f"/api/v1/households/{created.json()['id']}", headers=outsider_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_update_household(client: AsyncClient, auth_headers):
    created = await client.post("/api/v1/households/", json=HOUSEHOLD, headers=auth_headers)
    household_id = created.json()["id"]

    response = await client.put(
        f"/api/v1/households/{household_id}",
        json={"monthly_income": 3100, "members": [{"name": "Dana Johnson"}]},
        headers=auth_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["monthly_income"] == 3100
    assert data["household_size"] == 3
    assert data["members"] == [{"name": "Dana Johnson", "age": None, "relationship": None}]


@pytest.mark.asyncio
async def test_delete_household(client: AsyncClient, auth_headers):
    created = await client.post("/api/v1/households/", json=HOUSEHOLD, headers=auth_headers)
    household_id = created.json()["id"]

    response = await client.delete(f"/api/v1/households/{household_id}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["message"] == "Household deleted"

    missing = await client.get(f"/api/v1/households/{household_id}", headers=auth_headers)
    assert missing.status_code == 404
