# tests/test_repository.py
"""
Tests for SQLite pattern storage.

Covers:
- Row round trips and storage-level filters
- Reinforcement and access bookkeeping
- Nested transactions and rollback
- Fisher state slot and consolidation history
- File-backed persistence across reopen
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from pattern_nexus import (
    ConsolidationResult,
    PatternQuery,
    PatternValidationError,
    PersistenceError,
    SQLitePatternRepository,
    create_pattern_repository,
)


class TestRows:
    def test_insert_and_get(self, repository, make_stored):
        pattern = make_stored("p1", [0.1, 0.2, 0.3, 0.4], importance=0.25)
        repository.insert(pattern)

        loaded = repository.get("p1")
        assert loaded.id == "p1"
        assert loaded.skill_id == "community/jest-helper"
        assert loaded.skill.category == "testing"
        assert loaded.context.frameworks == ["react"]
        assert loaded.reward == 1.0
        assert loaded.importance == pytest.approx(0.25)
        np.testing.assert_allclose(loaded.context_embedding, [0.1, 0.2, 0.3, 0.4], rtol=1e-6)
        assert loaded.created_at.tzinfo is not None
        assert abs((loaded.created_at - pattern.created_at).total_seconds()) < 1e-3

    def test_missing(self, repository):
        assert repository.get("nope") is None
        assert repository.get_importance("nope") is None
        assert not repository.exists("nope")

    def test_duplicate_id_is_persistence_error(self, repository, make_stored):
        repository.insert(make_stored("p1", [1, 0, 0, 0]))
        with pytest.raises(PersistenceError):
            repository.insert(make_stored("p1", [0, 1, 0, 0]))
        assert repository.count() == 1

    def test_wrong_embedding_length_rejected(self, repository, make_stored):
        with pytest.raises(PatternValidationError):
            repository.insert(make_stored("p1", [1.0, 0.0]))

    def test_negative_importance_rejected(self, repository, make_stored):
        with pytest.raises(PatternValidationError):
            repository.insert(make_stored("p1", [1, 0, 0, 0], importance=-0.1))

    def test_reinforce(self, repository, make_stored):
        repository.insert(make_stored("p1", [1, 0, 0, 0], importance=0.1))
        later = datetime.now(timezone.utc) + timedelta(minutes=5)
        repository.reinforce("p1", 0.05, later)

        loaded = repository.get("p1")
        assert loaded.access_count == 1
        assert loaded.importance == pytest.approx(0.15)
        assert abs((loaded.last_accessed_at - later).total_seconds()) < 1e-3

    def test_reinforce_missing_row(self, repository):
        with pytest.raises(PersistenceError):
            repository.reinforce("nope", 0.1, datetime.now(timezone.utc))

    def test_record_access_boosts_importance(self, repository, make_stored):
        repository.insert(make_stored("p1", [1, 0, 0, 0], importance=0.2))
        repository.insert(make_stored("p2", [0, 1, 0, 0], importance=0.2))
        repository.record_access(["p1"], datetime.now(timezone.utc), importance_boost=0.01)

        assert repository.get("p1").access_count == 1
        assert repository.get_importance("p1") == pytest.approx(0.202)
        assert repository.get_importance("p2") == pytest.approx(0.2)

    def test_update_importances_clamps_at_zero(self, repository, make_stored):
        repository.insert(make_stored("p1", [1, 0, 0, 0]))
        repository.update_importances([("p1", -3.0)])
        assert repository.get_importance("p1") == 0.0

    def test_delete_many(self, repository, make_stored):
        for i in range(3):
            repository.insert(make_stored(f"p{i}", [1, i, 0, 0]))
        assert repository.delete_many(["p0", "p2", "missing"]) == 2
        assert repository.list_ids() == ["p1"]
        assert repository.delete_many([]) == 0

    def test_mean_embedding(self, repository, make_stored):
        np.testing.assert_array_equal(repository.mean_embedding(), np.zeros(4))
        repository.insert(make_stored("a", [1, 0, 0, 0]))
        repository.insert(make_stored("b", [0, 1, 0, 0]))
        np.testing.assert_allclose(repository.mean_embedding(), [0.5, 0.5, 0, 0])

    def test_counts(self, repository, make_stored):
        old = datetime.now(timezone.utc) - timedelta(days=2)
        repository.insert(make_stored("old", [1, 0, 0, 0], created_at=old))
        repository.insert(make_stored("new", [0, 1, 0, 0], outcome="dismiss"))

        assert repository.count() == 2
        assert repository.count_created_since(old + timedelta(days=1)) == 1
        by_outcome = repository.count_by_outcome()
        assert by_outcome["accept"] == 1
        assert by_outcome["dismiss"] == 1
        assert by_outcome["uninstall"] == 0

    def test_scoring_rows(self, repository, make_stored):
        repository.insert(make_stored("p1", [1, 0, 0, 0], outcome="dismiss"))
        (row,) = list(repository.iter_scoring_rows())
        assert row.pattern_id == "p1"
        assert row.reward == -0.5
        assert row.access_count == 0


class TestScan:
    @pytest.fixture
    def populated(self, repository, make_stored):
        repository.insert(make_stored("a", [1, 0, 0, 0], skill_id="x/one", importance=0.5))
        repository.insert(
            make_stored("b", [0, 1, 0, 0], skill_id="x/two", outcome="dismiss", importance=0.05)
        )
        repository.insert(
            make_stored("c", [0, 0, 1, 0], skill_id="x/one", category="docs", outcome="usage")
        )
        return repository

    def test_no_filter(self, populated):
        assert {p.id for p in populated.scan()} == {"a", "b", "c"}

    def test_skill_filter(self, populated):
        assert {p.id for p in populated.scan(PatternQuery(skill_id="x/one"))} == {"a", "c"}

    def test_category_filter(self, populated):
        assert [p.id for p in populated.scan(PatternQuery(category="docs"))] == ["c"]

    def test_min_importance(self, populated):
        assert [p.id for p in populated.scan(PatternQuery(min_importance=0.3))] == ["a"]

    def test_outcome_filter(self, populated):
        assert [p.id for p in populated.scan(PatternQuery(outcome_type="dismiss"))] == ["b"]

    def test_positive_only(self, populated):
        assert {p.id for p in populated.scan(PatternQuery(positive_only=True))} == {"a", "c"}

    def test_no_match_is_empty(self, populated):
        assert populated.scan(PatternQuery(skill_id="nobody/nothing")) == []


class TestTransactions:
    def test_rollback(self, repository, make_stored):
        with pytest.raises(RuntimeError):
            with repository.transaction():
                repository.insert(make_stored("p1", [1, 0, 0, 0]))
                raise RuntimeError("boom")
        assert repository.count() == 0

    def test_nested_joins_outer(self, repository, make_stored):
        with pytest.raises(RuntimeError):
            with repository.transaction():
                with repository.transaction():
                    repository.insert(make_stored("p1", [1, 0, 0, 0]))
                repository.insert(make_stored("p2", [0, 1, 0, 0]))
                raise RuntimeError("boom")
        assert repository.count() == 0

    def test_commit(self, repository, make_stored):
        with repository.transaction():
            repository.insert(make_stored("p1", [1, 0, 0, 0]))
            repository.insert(make_stored("p2", [0, 1, 0, 0]))
        assert repository.count() == 2

    def test_closed_repository(self, make_stored):
        repo = SQLitePatternRepository(None, dimensions=4)
        repo.close()
        with pytest.raises(PersistenceError):
            repo.count()
        repo.close()


class TestFisherAndHistory:
    def test_fisher_slot(self, repository):
        assert repository.load_fisher_state() is None

        decayed = datetime(2024, 5, 1, tzinfo=timezone.utc)
        repository.save_fisher_state(b"\x01\x02", 3, last_decay_at=decayed)
        repository.save_fisher_state(b"\x03\x04", 4)

        state = repository.load_fisher_state()
        assert state.matrix_data == b"\x03\x04"
        assert state.update_count == 4
        assert state.dimensions == 4
        assert state.last_decay_at == decayed

    def test_history_and_summary(self, repository):
        summary = repository.consolidation_summary()
        assert summary["total_consolidations"] == 0
        assert summary["last_consolidation"] is None

        first = datetime(2024, 1, 1, tzinfo=timezone.utc)
        second = first + timedelta(hours=2)
        repository.append_consolidation(
            ConsolidationResult(
                consolidated=True, patterns_processed=10, patterns_preserved=10,
                preservation_rate=1.0, timestamp=first,
            )
        )
        repository.append_consolidation(
            ConsolidationResult(
                consolidated=True, patterns_processed=10, patterns_preserved=9,
                patterns_pruned=1, preservation_rate=0.9, timestamp=second,
            )
        )

        history = repository.consolidation_history(limit=5)
        assert [r.timestamp for r in history] == [second, first]

        summary = repository.consolidation_summary()
        assert summary["total_consolidations"] == 2
        assert summary["last_consolidation"] == second
        assert summary["average_preservation_rate"] == pytest.approx(0.95)
        assert summary["patterns_pruned"] == 1


class TestFileBacked:
    def test_survives_reopen(self, tmp_path, make_stored):
        db_path = tmp_path / "nested" / "patterns.db"
        repo = SQLitePatternRepository(str(db_path), dimensions=4)
        repo.insert(make_stored("p1", [1, 0, 0, 0]))
        repo.save_fisher_state(b"\x00" * 8, 1)
        repo.close()

        reopened = SQLitePatternRepository(str(db_path), dimensions=4)
        assert reopened.get("p1") is not None
        assert reopened.load_fisher_state().update_count == 1
        assert reopened.size_bytes() > 0
        reopened.close()

    def test_factory(self, tmp_path):
        repo = create_pattern_repository(f"sqlite://{tmp_path / 'p.db'}", dimensions=4)
        assert repo.db_path == str(tmp_path / "p.db")
        repo.close()

        memory = create_pattern_repository("memory", dimensions=4)
        assert memory.db_path == ":memory:"
        memory.close()

        with pytest.raises(ValueError):
            create_pattern_repository("postgres", dimensions=4)
