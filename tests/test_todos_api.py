from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient

from todo_backend.errors import InfrastructureError
from todo_backend.main import create_app
from todo_backend.repositories import MAX_OFFSET, InMemoryTodoRepository, in_memory_repositories

from conftest import make_settings


def create_todo_payload(title="Test Task", description="Do something", priority=None, due_date=None):
    payload = {"title": title, "description": description}
    if priority is not None:
        payload["priority"] = priority
    if due_date is not None:
        payload["dueDate"] = due_date
    return payload


def assert_todo_shape(todo: dict):
    # Basic structure validation
    for key in ["id", "ownerId", "title", "status", "createdAt", "updatedAt", "version", "overdue"]:
        assert key in todo
    # Optional fields
    for key in ["description", "priority", "dueDate", "deletedAt"]:
        assert key in todo
    assert isinstance(todo["id"], str)
    assert todo["status"] in ("INCOMPLETE", "COMPLETED")
    datetime.fromisoformat(todo["createdAt"].replace("Z", "+00:00"))
    datetime.fromisoformat(todo["updatedAt"].replace("Z", "+00:00"))
    if todo["dueDate"] is not None:
        date.fromisoformat(todo["dueDate"])


def create(client, headers, **kwargs):
    res = client.post("/todos", json=create_todo_payload(**kwargs), headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


class TestHealth:
    def test_health_check(self, client):
        for path in ("/", "/health"):
            res = client.get(path)
            assert res.status_code == 200
            data = res.json()
            assert data["message"] == "Healthy"
            assert data["backend"] in ("memory", "sqlite")

    def test_frontend_status_endpoint(self, client):
        res = client.get("/api/health")
        assert res.status_code == 200
        data = res.json()
        assert data["status"] == "UP"
        assert data["message"] == "Todo Backend is running"
        assert data["backend"] == "memory"


class TestScenario:
    def test_register_login_create_toggle_delete(self, client):
        res = client.post(
            "/auth/register",
            json={"email": "alice@example.com", "password": "Passw0rd!", "displayName": "Alice"},
        )
        assert res.status_code == 201

        res = client.post("/auth/login", json={"email": "alice@example.com", "password": "Passw0rd!"})
        assert res.status_code == 200
        token = res.json()["accessToken"]
        assert token
        headers = {"Authorization": f"Bearer {token}"}

        res = client.post("/todos", json={"title": "Buy milk"}, headers=headers)
        assert res.status_code == 201
        todo = res.json()
        assert todo["status"] == "INCOMPLETE"

        res = client.patch(f"/todos/{todo['id']}/toggle", headers=headers)
        assert res.status_code == 200
        assert res.json()["status"] == "COMPLETED"

        res = client.delete(f"/todos/{todo['id']}", headers=headers)
        assert res.status_code == 204
        assert res.text == ""

        res = client.get(f"/todos/{todo['id']}", headers=headers)
        assert res.status_code == 404


class TestTodosCRUD:
    def test_create_todo_minimal(self, client, alice):
        me = client.get("/auth/me", headers=alice).json()
        todo = create(client, alice, title="Buy milk", description=None)
        assert_todo_shape(todo)
        assert todo["title"] == "Buy milk"
        assert todo["description"] is None
        assert todo["status"] == "INCOMPLETE"
        assert todo["ownerId"] == me["id"]
        assert todo["version"] == 1
        assert todo["overdue"] is False

    def test_create_todo_trims_title_and_accepts_datetime_due_date(self, client, alice):
        todo = create(client, alice, title="  Pay bills  ", priority="high", due_date="2099-12-25T13:45:00")
        assert todo["title"] == "Pay bills"
        assert todo["priority"] == "HIGH"
        assert todo["dueDate"] == "2099-12-25"

    def test_create_rejects_past_due_date(self, client, alice):
        res = client.post("/todos", json=create_todo_payload(due_date="2000-01-01"), headers=alice)
        assert res.status_code == 400
        body = res.json()
        assert body["error"] == "ValidationError"
        assert [d["field"] for d in body["detail"]] == ["dueDate"]

    def test_create_validation_error_title(self, client, alice):
        for title in ["   ", "x" * 201]:
            res = client.post("/todos", json={"title": title}, headers=alice)
            assert res.status_code == 400
            body = res.json()
            assert body["error"] == "ValidationError"
            assert body["detail"][0]["field"] == "title"

    def test_create_validation_error_description_too_long(self, client, alice):
        res = client.post("/todos", json={"title": "ok", "description": "d" * 2001}, headers=alice)
        assert res.status_code == 400
        assert res.json()["detail"][0]["field"] == "description"

    def test_create_structural_errors_are_400(self, client, alice):
        res = client.post("/todos", json={"description": "no title"}, headers=alice)
        assert res.status_code == 400
        body = res.json()
        assert body["error"] == "ValidationError"
        assert body["message"] == "Request validation failed"
        assert any(d["field"] == "title" for d in body["detail"])

        res = client.post("/todos", json={"title": "x", "priority": "URGENT"}, headers=alice)
        assert res.status_code == 400

        res = client.post("/todos", json={"title": "x", "dueDate": "not-a-date"}, headers=alice)
        assert res.status_code == 400

    def test_get_todo_and_not_found(self, client, alice):
        todo = create(client, alice, title="Read book")

        res_get = client.get(f"/todos/{todo['id']}", headers=alice)
        assert res_get.status_code == 200
        assert res_get.json()["title"] == "Read book"

        res_404 = client.get("/todos/does-not-exist", headers=alice)
        assert res_404.status_code == 404
        assert res_404.json() == {"error": "NotFoundError", "message": "Todo not found"}

    def test_put_partial_update(self, client, alice):
        todo = create(client, alice, title="Partial", description="X", priority="LOW", due_date="2099-01-01")

        res = client.put(f"/todos/{todo['id']}", json={"title": "Partial Updated", "priority": None}, headers=alice)
        assert res.status_code == 200
        patched = res.json()
        assert patched["title"] == "Partial Updated"
        assert patched["priority"] is None
        # untouched fields keep their values
        assert patched["description"] == "X"
        assert patched["dueDate"] == "2099-01-01"
        assert patched["version"] == todo["version"] + 1

    def test_put_can_change_status(self, client, alice):
        todo = create(client, alice)
        res = client.put(f"/todos/{todo['id']}", json={"status": "COMPLETED"}, headers=alice)
        assert res.status_code == 200
        assert res.json()["status"] == "COMPLETED"

    def test_put_requires_a_field(self, client, alice):
        todo = create(client, alice)
        res = client.put(f"/todos/{todo['id']}", json={}, headers=alice)
        assert res.status_code == 400
        assert res.json()["detail"][0]["field"] == "body"

    def test_put_rejects_blank_title_and_past_due_date(self, client, alice):
        todo = create(client, alice)
        res = client.put(f"/todos/{todo['id']}", json={"title": " ", "dueDate": "2001-02-03"}, headers=alice)
        assert res.status_code == 400
        assert sorted(d["field"] for d in res.json()["detail"]) == ["dueDate", "title"]
        # nothing was applied
        assert client.get(f"/todos/{todo['id']}", headers=alice).json()["title"] == todo["title"]

    def test_put_version_conflict(self, client, alice):
        todo = create(client, alice)
        res = client.put(f"/todos/{todo['id']}", json={"title": "first", "version": todo["version"]}, headers=alice)
        assert res.status_code == 200

        stale = client.put(f"/todos/{todo['id']}", json={"title": "second", "version": todo["version"]}, headers=alice)
        assert stale.status_code == 409
        assert stale.json()["error"] == "ConflictError"
        assert client.get(f"/todos/{todo['id']}", headers=alice).json()["title"] == "first"

    def test_put_not_found(self, client, alice):
        res = client.put("/todos/424242", json={"title": "Nope"}, headers=alice)
        assert res.status_code == 404

    def test_toggle_twice_restores_status(self, client, alice):
        todo = create(client, alice)
        first = client.patch(f"/todos/{todo['id']}/toggle", headers=alice).json()
        second = client.patch(f"/todos/{todo['id']}/toggle", headers=alice).json()
        assert first["status"] == "COMPLETED"
        assert second["status"] == todo["status"]

    def test_delete_todo(self, client, alice):
        todo = create(client, alice, title="ToDelete")

        res_del = client.delete(f"/todos/{todo['id']}", headers=alice)
        assert res_del.status_code == 204
        assert res_del.text == ""

        # Deleting again, toggling or updating is 404
        assert client.delete(f"/todos/{todo['id']}", headers=alice).status_code == 404
        assert client.patch(f"/todos/{todo['id']}/toggle", headers=alice).status_code == 404
        assert client.put(f"/todos/{todo['id']}", json={"title": "x"}, headers=alice).status_code == 404


class TestAuthorization:
    def test_protected_endpoints_require_token(self, client, alice):
        todo = create(client, alice)
        calls = [
            ("get", "/todos", None),
            ("post", "/todos", {"title": "x"}),
            ("get", f"/todos/{todo['id']}", None),
            ("put", f"/todos/{todo['id']}", {"title": "x"}),
            ("patch", f"/todos/{todo['id']}/toggle", None),
            ("delete", f"/todos/{todo['id']}", None),
        ]
        for method, path, body in calls:
            kwargs = {"json": body} if body is not None else {}
            for headers in ({}, {"Authorization": "Bearer not-a-jwt"}, {"Authorization": "Basic YTpi"}):
                res = client.request(method.upper(), path, headers=headers, **kwargs)
                assert res.status_code == 401, (method, path, headers)
                assert res.headers.get("WWW-Authenticate") == "Bearer"

    def test_users_cannot_touch_each_others_todos(self, client, alice, bob):
        todo = create(client, alice, title="Alice's secret")

        assert client.get(f"/todos/{todo['id']}", headers=bob).status_code in (403, 404)
        assert client.put(f"/todos/{todo['id']}", json={"title": "pwned"}, headers=bob).status_code in (403, 404)
        assert client.patch(f"/todos/{todo['id']}/toggle", headers=bob).status_code in (403, 404)
        assert client.delete(f"/todos/{todo['id']}", headers=bob).status_code in (403, 404)

        assert client.get("/todos", headers=bob).json()["totalElements"] == 0
        still = client.get(f"/todos/{todo['id']}", headers=alice).json()
        assert still["title"] == "Alice's secret"
        assert still["status"] == "INCOMPLETE"

    def test_admin_only_listing_options(self, client, alice):
        assert client.get("/todos?allUsers=true", headers=alice).status_code == 403
        res = client.get("/todos?includeDeleted=true", headers=alice)
        assert res.status_code == 403
        assert res.json()["error"] == "AuthorizationError"


class TestListPaginationFilteringSorting:
    def seed_todos(self, client, headers, count=10):
        created = []
        for i in range(count):
            created.append(
                create(
                    client,
                    headers,
                    title=f"Task {i}",
                    description=f"Desc {i}",
                    priority=["LOW", "MEDIUM", "HIGH"][i % 3],
                    due_date=f"2099-01-{i + 1:02d}",
                )
            )
        return created

    def test_twenty_five_todos_in_pages_of_twenty(self, client, alice):
        self.seed_todos(client, alice, 25)
        first = client.get("/todos?page=0&size=20", headers=alice).json()
        second = client.get("/todos?page=1&size=20", headers=alice).json()
        assert first["totalElements"] == 25
        assert first["totalPages"] == 2
        assert len(first["content"]) == 20
        assert len(second["content"]) == 5

    def test_pages_cover_every_item_once(self, client, alice):
        created = self.seed_todos(client, alice, 13)
        seen = []
        pages = client.get("/todos?size=4", headers=alice).json()["totalPages"]
        assert pages == 4
        for page in range(pages):
            seen += [t["id"] for t in client.get(f"/todos?size=4&page={page}", headers=alice).json()["content"]]
        assert len(seen) == len(set(seen))
        assert set(seen) == {t["id"] for t in created}

    def test_default_page_size_and_limits(self, client, alice):
        body = client.get("/todos", headers=alice).json()
        assert body["size"] == 20
        assert body["page"] == 0
        assert body["totalPages"] == 0
        assert client.get("/todos?size=101", headers=alice).status_code == 400
        assert client.get("/todos?size=0", headers=alice).status_code == 400
        assert client.get("/todos?page=-1", headers=alice).status_code == 400
        res = client.get(f"/todos?page={10**18}&size=100", headers=alice)
        assert res.status_code == 400
        assert res.json()["detail"][0]["field"] == "page"

    def test_filter_by_status(self, client, alice):
        created = self.seed_todos(client, alice, 6)
        for todo in created[::2]:
            client.patch(f"/todos/{todo['id']}/toggle", headers=alice)

        done = client.get("/todos?status=COMPLETED&size=100", headers=alice).json()
        assert done["totalElements"] == 3
        assert all(t["status"] == "COMPLETED" for t in done["content"])
        open_ = client.get("/todos?status=incomplete&size=100", headers=alice).json()
        assert open_["totalElements"] == 3
        assert client.get("/todos?status=DONE", headers=alice).status_code == 400

    def test_filter_by_priority(self, client, alice):
        self.seed_todos(client, alice, 9)
        high = client.get("/todos?priority=HIGH", headers=alice).json()
        assert high["totalElements"] == 3
        both = client.get("/todos?priority=HIGH&priority=low", headers=alice).json()
        assert {t["priority"] for t in both["content"]} == {"HIGH", "LOW"}
        assert both["totalElements"] == 6
        assert client.get("/todos?priority=LOW,MEDIUM", headers=alice).json()["totalElements"] == 6
        assert client.get("/todos?priority=URGENT", headers=alice).status_code == 400

    def test_search_matches_title_and_description(self, client, alice):
        self.seed_todos(client, alice, 5)
        data_title = client.get("/todos", params={"search": "task 1"}, headers=alice).json()
        assert [t["title"] for t in data_title["content"]] == ["Task 1"]

        data_desc = client.get("/todos", params={"search": "DESC 2"}, headers=alice).json()
        assert [t["description"] for t in data_desc["content"]] == ["Desc 2"]

    def test_due_date_bounds(self, client, alice):
        self.seed_todos(client, alice, 5)  # due 2099-01-01 .. 2099-01-05
        create(client, alice, title="undated")
        res = client.get("/todos?dueAfter=2099-01-01&dueBefore=2099-01-05&size=100", headers=alice).json()
        assert sorted(t["dueDate"] for t in res["content"]) == ["2099-01-02", "2099-01-03", "2099-01-04"]

    def test_sorting(self, client, alice):
        self.seed_todos(client, alice, 5)
        create(client, alice, title="aardvark")

        default_items = client.get("/todos", headers=alice).json()["content"]
        created_ts = [t["createdAt"] for t in default_items]
        assert created_ts == sorted(created_ts, reverse=True)

        by_title = client.get("/todos?sortBy=title&sortDir=asc", headers=alice).json()["content"]
        assert by_title[0]["title"] == "aardvark"
        assert [t["title"] for t in by_title[1:]] == [f"Task {i}" for i in range(5)]

        for direction in ("asc", "desc"):
            by_due = client.get(f"/todos?sortBy=dueDate&sortDir={direction}", headers=alice).json()["content"]
            dues = [t["dueDate"] for t in by_due]
            # undated todos come last in both directions
            assert dues[-1] is None
            assert dues[:-1] == sorted(dues[:-1], reverse=direction == "desc")

    def test_invalid_sort_params(self, client, alice):
        res = client.get("/todos?sortBy=priority", headers=alice)
        assert res.status_code == 400
        assert res.json()["detail"][0]["field"] == "sortBy"
        res = client.get("/todos?sortDir=sideways", headers=alice)
        assert res.status_code == 400
        assert res.json()["detail"][0]["field"] == "sortDir"


class TestSoftDelete:
    def test_deleted_todos_hidden_from_every_listing(self, client, alice):
        keep = create(client, alice, title="keep me", priority="HIGH", due_date="2099-05-05")
        gone = create(client, alice, title="delete me", priority="HIGH", due_date="2099-05-05")
        client.patch(f"/todos/{gone['id']}/toggle", headers=alice)
        assert client.delete(f"/todos/{gone['id']}", headers=alice).status_code == 204

        queries = [
            "",
            "?status=COMPLETED",
            "?status=INCOMPLETE",
            "?priority=HIGH",
            "?search=delete",
            "?dueBefore=2100-01-01",
            "?sortBy=title&sortDir=asc",
        ]
        for q in queries:
            ids = {t["id"] for t in client.get(f"/todos{q}", headers=alice).json()["content"]}
            assert gone["id"] not in ids, q
        assert keep["id"] in {t["id"] for t in client.get("/todos", headers=alice).json()["content"]}

    def test_admin_can_see_deleted_todos(self, client, alice, admin):
        gone = create(client, alice, title="audit me")
        client.delete(f"/todos/{gone['id']}", headers=alice)

        assert client.get("/todos?allUsers=true", headers=admin).json()["totalElements"] == 0
        res = client.get("/todos?allUsers=true&includeDeleted=true", headers=admin)
        assert res.status_code == 200
        items = res.json()["content"]
        assert [t["id"] for t in items] == [gone["id"]]
        assert items[0]["deletedAt"] is not None


class TestInfrastructureErrors:
    def test_persistence_failure_is_a_generic_500(self, caplog):
        class BrokenTodoRepository(InMemoryTodoRepository):
            def search(self, owner_id, flt, page):
                raise InfrastructureError("disk /var/data/todos.db is on fire")

        repos = in_memory_repositories()
        repos.todos = BrokenTodoRepository()
        client = TestClient(create_app(settings=make_settings(), repositories=repos))
        client.post(
            "/auth/register",
            json={"email": "carol@example.com", "password": "Passw0rd!", "displayName": "Carol"},
        )
        token = client.post("/auth/login", json={"email": "carol@example.com", "password": "Passw0rd!"}).json()
        res = client.get("/todos", headers={"Authorization": f"Bearer {token['accessToken']}"})
        assert res.status_code == 500
        assert res.json() == {"error": "InfrastructureError", "message": "Internal server error"}
        assert "on fire" not in res.text
        assert "on fire" in caplog.text


class TestSqliteBackend:
    @pytest.fixture
    def sqlite_client(self, tmp_path):
        settings = make_settings(persistence_backend="sqlite", sqlite_db_path=str(tmp_path / "data" / "todos.db"))
        return TestClient(create_app(settings=settings))

    def login_as(self, client, email):
        client.post(
            "/auth/register",
            json={"email": email, "password": "Passw0rd!", "displayName": "Tester"},
        )
        res = client.post("/auth/login", json={"email": email, "password": "Passw0rd!"})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['accessToken']}"}

    def test_full_flow_on_sqlite(self, sqlite_client, tmp_path):
        client = sqlite_client
        assert client.get("/health").json()["backend"] == "sqlite"
        assert (tmp_path / "data" / "todos.db").exists()
        headers = self.login_as(client, "alice@example.com")

        todo = create(client, headers, title="École visit", priority="HIGH", due_date="2099-03-01")
        create(client, headers, title="dentist")
        found = client.get("/todos", params={"search": "école"}, headers=headers).json()
        assert [t["id"] for t in found["content"]] == [todo["id"]]

        toggled = client.patch(f"/todos/{todo['id']}/toggle", headers=headers).json()
        assert toggled["status"] == "COMPLETED"
        stale = client.put(f"/todos/{todo['id']}", json={"title": "x", "version": todo["version"]}, headers=headers)
        assert stale.status_code == 409

        assert client.delete(f"/todos/{todo['id']}", headers=headers).status_code == 204
        assert client.get(f"/todos/{todo['id']}", headers=headers).status_code == 404
        assert client.get("/todos", headers=headers).json()["totalElements"] == 1

        other = self.login_as(client, "bob@example.com")
        assert client.get("/todos", headers=other).json()["totalElements"] == 0

    def test_huge_page_is_rejected(self, sqlite_client):
        headers = self.login_as(sqlite_client, "alice@example.com")
        res = sqlite_client.get(f"/todos?page={10**18}&size=100", headers=headers)
        assert res.status_code == 400
        assert res.json()["detail"][0]["field"] == "page"
        last = sqlite_client.get(f"/todos?page={MAX_OFFSET // 100}&size=100", headers=headers)
        assert last.status_code == 200
        assert last.json()["content"] == []
