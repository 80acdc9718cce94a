from fastapi.testclient import TestClient

from stable_todo.application import create_app
from stable_todo.models import Priority, TaskStatus
from stable_todo.repositories import open_repository
from stable_todo.schemas import TodoPayload
from stable_todo.service import TodoService
from stable_todo.settings import Settings

OWNER = "rwlgt-iiaaa-aaaaa-aaaaq-cai"


def file_settings(tmp_path, **overrides):
    return Settings(
        persistence_backend="file",
        stable_memory_path=str(tmp_path / "stable_memory.bin"),
        bucket_size_in_pages=1,
        **overrides,
    )


class TestServiceRestart:
    def test_records_and_counter_survive_restart(self, tmp_path):
        settings = file_settings(tmp_path)

        repository = open_repository(settings)
        service = TodoService(repository)
        first = service.add_todo(TodoPayload(title="Water plants", priority=Priority.MEDIUM), OWNER)
        second = service.add_todo(TodoPayload(title="Call mom", due_date=123), OWNER)
        service.update_status(first["id"], TaskStatus.COMPLETED, OWNER)
        service.delete_todo(second["id"], OWNER)
        before = service.get_todo(first["id"])
        repository.close()

        repository = open_repository(settings)
        service = TodoService(repository)
        assert service.get_todo(first["id"]) == before
        assert len(repository) == 1
        assert repository.last_id() == 2
        assert service.add_todo(TodoPayload(title="After restart"), OWNER)["id"] == 3
        repository.close()

    def test_many_records_survive_restart(self, tmp_path):
        settings = file_settings(tmp_path)
        repository = open_repository(settings)
        service = TodoService(repository)
        for i in range(150):
            service.add_todo(TodoPayload(title=f"task {i}", description="x" * 300), OWNER)
        repository.close()

        repository = open_repository(settings)
        assert [todo_id for todo_id, _ in repository.items()] == list(range(1, 151))
        assert repository.get(75)["title"] == "task 74"
        repository.close()

    def test_memory_backend_starts_empty_every_time(self):
        settings = Settings(persistence_backend="memory", bucket_size_in_pages=1)
        repository = open_repository(settings)
        TodoService(repository).add_todo(TodoPayload(title="volatile"), OWNER)
        repository.close()
        assert open_repository(settings).last_id() == 0


class TestApiRestart:
    def test_api_serves_records_written_before_restart(self, tmp_path):
        settings = file_settings(tmp_path)

        with TestClient(create_app(settings)) as client:
            res = client.post(
                "/api/v1/todos/",
                json={"title": "Survive", "priority": "High"},
                headers={"X-Caller-Principal": OWNER},
            )
            assert res.status_code == 201
            created = res.json()
            assert client.get("/").json()["backend"] == "file"

        with TestClient(create_app(settings)) as client:
            res = client.get(f"/api/v1/todos/{created['id']}")
            assert res.status_code == 200
            assert res.json() == created

            res_next = client.post("/api/v1/todos/", json={"title": "Next"}, headers={"X-Caller-Principal": OWNER})
            assert res_next.json()["id"] == created["id"] + 1
