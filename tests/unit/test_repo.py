"""Unit tests for the document repositories."""

import pytest

from thesisflow.audit import AuditLog
from thesisflow.errors import NotFoundError, StorageError
from thesisflow.repo import DocumentRepository, InMemoryRepository, JsonFileRepository, Store


class TestInMemoryRepository:
    """Test the in-memory repository used as a fake in tests and scripts."""

    def test_partial_update_and_none_removes(self):
        # Arrange
        repo = InMemoryRepository("theses")
        repo.put("t1", {"title": "A", "status": "submitted", "note": "x"})

        # Act
        updated = repo.update("t1", {"status": "with_supervisor", "note": None})

        # Assert
        assert updated == {"id": "t1", "title": "A", "status": "with_supervisor"}

    def test_returned_documents_are_copies(self):
        """Mutating a returned document never changes the stored one."""
        repo = InMemoryRepository("users")
        repo.put("u1", {"assigned_students": ["s1"]})

        doc = repo.get("u1")
        doc["assigned_students"].append("s2")

        assert repo.get("u1")["assigned_students"] == ["s1"]

    def test_update_missing_document(self):
        repo = InMemoryRepository("users")
        with pytest.raises(NotFoundError):
            repo.update("nope", {"a": 1})

    def test_require_and_find(self):
        repo = InMemoryRepository("users")
        repo.put("u1", {"role": "student"})
        repo.put("u2", {"role": "supervisor"})

        assert [d["id"] for d in repo.find(role="supervisor")] == ["u2"]
        assert repo.first(role="dean") is None
        with pytest.raises(NotFoundError, match="Student not found"):
            repo.require("u9", "Student")


class TestJsonFileRepository:
    """Test the JSON-file repository with backups."""

    def test_persists_across_instances(self, tmp_path):
        # Arrange
        path = tmp_path / "users.json"
        JsonFileRepository(path).put("u1", {"full_name": "Sara"})

        # Act
        doc = JsonFileRepository(path).get("u1")

        # Assert
        assert doc == {"id": "u1", "full_name": "Sara"}

    def test_corrupt_file_falls_back_to_backup(self, tmp_path):
        """A damaged primary file is read from the newest snapshot and audited."""
        # Arrange
        audit = AuditLog(tmp_path / "audit")
        repo = JsonFileRepository(tmp_path / "theses.json", audit=audit)
        repo.put("t1", {"title": "A"})
        repo.put("t2", {"title": "B"})
        repo.path.write_text("{not json", encoding="utf-8")

        # Act
        doc = repo.get("t1")

        # Assert
        assert doc["title"] == "A"
        warnings = audit.records(level="WARN")
        assert warnings and warnings[-1]["action"] == "JSON_READ_FAILED"

    def test_unreadable_without_backups_raises(self, tmp_path):
        repo = JsonFileRepository(tmp_path / "theses.json")
        repo.path.write_text("[]", encoding="utf-8")
        for snap in repo.backup_dir.glob("*.json"):
            snap.unlink()

        with pytest.raises(StorageError, match="unreadable"):
            repo.all()

    def test_delete(self, tmp_path):
        repo = JsonFileRepository(tmp_path / "requests.json")
        repo.put("r1", {"status": "pending"})

        assert repo.delete("r1") is True
        assert repo.delete("r1") is False
        assert repo.get("r1") is None


class TestStore:
    def test_thesis_of_student(self):
        store = Store.in_memory()
        store.theses.put("t1", {"student": "s1"})

        assert store.thesis_of("s1")["id"] == "t1"
        assert store.thesis_of("s2") is None


class TestDocumentRepositoryInterface:
    def test_backend_must_implement_every_operation(self):
        class GetOnly(DocumentRepository):
            def get(self, doc_id):
                return None

        with pytest.raises(TypeError):
            GetOnly()

    def test_shipped_backends_are_repositories(self, tmp_path):
        assert isinstance(InMemoryRepository(), DocumentRepository)
        assert isinstance(JsonFileRepository(tmp_path / "docs.json"), DocumentRepository)
