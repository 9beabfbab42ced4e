"""Tests for user endpoints."""

from fastapi import status


def test_create_and_get_user(client) -> None:
    r = client.post("/api/v1/users", json={"handle": "alice"})
    assert r.status_code == status.HTTP_201_CREATED
    data = r.json()
    assert data["handle"] == "alice"
    assert data["number_of_posts"] == 0
    assert data["number_of_posts_liked"] == 0
    assert data["number_of_comments"] == 0

    r = client.get(f"/api/v1/users/{data['id']}")
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == data


def test_duplicate_handle_conflicts(client) -> None:
    assert client.post("/api/v1/users", json={"handle": "bob"}).status_code == 201

    r = client.post("/api/v1/users", json={"handle": "bob"})
    assert r.status_code == status.HTTP_409_CONFLICT


def test_invalid_handle(client) -> None:
    r = client.post("/api/v1/users", json={"handle": ""})
    assert r.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_unknown_user(client) -> None:
    r = client.get("/api/v1/users/9999")
    assert r.status_code == status.HTTP_404_NOT_FOUND
