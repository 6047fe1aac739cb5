"""Tests for the work-note repository."""

from __future__ import annotations

from notesync.db.models import Department, Person, SearchFilters, WorkNote


def _fts_count(conn, work_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM notes_fts WHERE work_id = ?", (work_id,)
    ).fetchone()[0]


# ------------------------------------------------------------------
# Work notes
# ------------------------------------------------------------------

def test_save_new_work_note(repo, make_note):
    note = make_note("WORK-1", title="Budget", content="Quarterly budget review")
    assert note.created_at == note.updated_at
    assert note.embedded_at is None

    stored = repo.get_work_note("WORK-1")
    assert stored.title == "Budget"
    assert stored.content_raw == "Quarterly budget review"


def test_get_work_note_not_found(repo):
    assert repo.get_work_note("missing") is None


def test_update_bumps_updated_at_and_clears_embedded_at(repo, make_note):
    first = make_note("WORK-1")
    repo.set_embedded_at_if_updated_at_matches("WORK-1", first.updated_at, "2024-02-01T00:00:00")

    second = repo.save_work_note(WorkNote("WORK-1", "Weekly sync", "Changed"))
    assert second.updated_at > first.updated_at
    assert second.created_at == first.created_at
    assert repo.get_work_note("WORK-1").embedded_at is None


def test_save_keeps_single_fts_row(tmp_db, repo, make_note):
    make_note("WORK-1")
    repo.save_work_note(WorkNote("WORK-1", "Weekly sync", "Changed"))
    assert _fts_count(tmp_db, "WORK-1") == 1


def test_delete_work_note(tmp_db, repo, make_note):
    make_note("WORK-1")
    repo.save_person(Person("P1", "Alice"))
    repo.link_person("WORK-1", "P1")

    assert repo.delete_work_note("WORK-1") is True
    assert repo.get_work_note("WORK-1") is None
    assert _fts_count(tmp_db, "WORK-1") == 0
    links = tmp_db.execute("SELECT COUNT(*) FROM work_note_person").fetchone()[0]
    assert links == 0


def test_delete_missing_work_note(repo):
    assert repo.delete_work_note("missing") is False


def test_count_work_notes(repo, make_note):
    make_note("WORK-1")
    make_note("WORK-2")
    assert repo.count_work_notes() == 2


# ------------------------------------------------------------------
# Persons / departments
# ------------------------------------------------------------------

def test_save_and_get_person(repo):
    repo.save_person(Person("P1", "Alice Johnson", current_dept="Finance"))
    person = repo.get_person("P1")
    assert person.name == "Alice Johnson"
    assert person.current_dept == "Finance"
    assert person.updated_at is not None


def test_save_person_upserts(repo):
    repo.save_person(Person("P1", "Alice"))
    repo.save_person(Person("P1", "Alice Johnson"))
    assert repo.get_person("P1").name == "Alice Johnson"


def test_save_and_get_department(repo):
    repo.save_department(Department("Finance", "Budgets and payroll"))
    dept = repo.get_department("Finance")
    assert dept.description == "Budgets and payroll"
    assert dept.is_active is True


def test_link_person_idempotent(tmp_db, repo, make_note):
    make_note("WORK-1")
    repo.save_person(Person("P1", "Alice"))
    repo.link_person("WORK-1", "P1")
    repo.link_person("WORK-1", "P1")
    assert tmp_db.execute("SELECT COUNT(*) FROM work_note_person").fetchone()[0] == 1


# ------------------------------------------------------------------
# Snapshots and the guarded update
# ------------------------------------------------------------------

def test_snapshot_includes_people_and_department(repo, make_note):
    make_note("WORK-1", category="ops", created_at="2024-03-05T08:30:00.000000+00:00")
    repo.save_person(Person("P2", "Bob", current_dept="Ops"))
    repo.save_person(Person("P1", "Alice", current_dept="Finance"))
    repo.link_person("WORK-1", "P2")
    repo.link_person("WORK-1", "P1")

    snapshot = repo.get_record_snapshot("WORK-1")
    assert snapshot.person_ids == ("P1", "P2")
    assert snapshot.dept_name == "Finance"
    assert snapshot.category == "ops"
    assert snapshot.created_at_bucket == "2024-03-05"


def test_snapshot_missing_record(repo):
    assert repo.get_record_snapshot("missing") is None


def test_snapshots_batch_skips_missing(repo, make_note):
    make_note("WORK-1")
    make_note("WORK-2")
    snapshots = repo.get_record_snapshots_batch(["WORK-1", "missing", "WORK-2"])
    assert set(snapshots) == {"WORK-1", "WORK-2"}
    assert snapshots["WORK-1"].person_ids == ()
    assert snapshots["WORK-1"].dept_name is None


def test_snapshots_batch_empty(repo):
    assert repo.get_record_snapshots_batch([]) == {}


def test_guarded_update_matches(repo, make_note):
    note = make_note("WORK-1")
    assert repo.set_embedded_at_if_updated_at_matches("WORK-1", note.updated_at, "2024-02-01") is True
    assert repo.get_work_note("WORK-1").embedded_at == "2024-02-01"


def test_guarded_update_after_concurrent_change(repo, make_note):
    note = make_note("WORK-1")
    repo.save_work_note(WorkNote("WORK-1", "Weekly sync", "Edited meanwhile"))
    assert repo.set_embedded_at_if_updated_at_matches("WORK-1", note.updated_at, "2024-02-01") is False
    assert repo.get_work_note("WORK-1").embedded_at is None


def test_guarded_update_on_deleted_record(repo, make_note):
    note = make_note("WORK-1")
    repo.delete_work_note("WORK-1")
    assert repo.set_embedded_at_if_updated_at_matches("WORK-1", note.updated_at, "2024-02-01") is False


# ------------------------------------------------------------------
# Paging
# ------------------------------------------------------------------

def test_list_record_ids_page_walks_in_creation_order(repo, make_note):
    for i in range(5):
        make_note(f"WORK-{i}")

    ids, cursor = repo.list_record_ids_page(None, 2)
    assert ids == ["WORK-0", "WORK-1"]
    ids, cursor = repo.list_record_ids_page(cursor, 2)
    assert ids == ["WORK-2", "WORK-3"]
    ids, cursor = repo.list_record_ids_page(cursor, 2)
    assert ids == ["WORK-4"]
    assert cursor is None


def test_list_record_ids_page_exact_multiple(repo, make_note):
    for i in range(4):
        make_note(f"WORK-{i}")

    ids, cursor = repo.list_record_ids_page(None, 2)
    ids, cursor = repo.list_record_ids_page(cursor, 2)
    assert ids == ["WORK-2", "WORK-3"]
    assert cursor is not None
    ids, cursor = repo.list_record_ids_page(cursor, 2)
    assert ids == []
    assert cursor is None


def test_list_record_ids_page_same_created_at_breaks_ties_by_id(repo, make_note):
    same = "2024-01-01T00:00:00.000000+00:00"
    for work_id in ("WORK-C", "WORK-A", "WORK-B"):
        make_note(work_id, created_at=same)

    ids, cursor = repo.list_record_ids_page(None, 2)
    assert ids == ["WORK-A", "WORK-B"]
    ids, _ = repo.list_record_ids_page(cursor, 2)
    assert ids == ["WORK-C"]


def test_list_pending_ids_page_excludes_embedded(repo, make_note):
    first = make_note("WORK-1")
    make_note("WORK-2")
    repo.set_embedded_at_if_updated_at_matches("WORK-1", first.updated_at, "2024-02-01")

    ids, cursor = repo.list_pending_ids_page(None, 10)
    assert ids == ["WORK-2"]
    assert cursor is None


def test_get_embedding_stats(repo, make_note):
    first = make_note("WORK-1")
    make_note("WORK-2")
    make_note("WORK-3")
    repo.set_embedded_at_if_updated_at_matches("WORK-1", first.updated_at, "2024-02-01")
    assert repo.get_embedding_stats() == {"total": 3, "embedded": 1, "pending": 2}


# ------------------------------------------------------------------
# Filters
# ------------------------------------------------------------------

def _filter_fixture(repo, make_note):
    make_note("WORK-1", category="ops", created_at="2024-01-01T10:00:00.000000+00:00")
    make_note("WORK-2", category="finance", created_at="2024-01-02T10:00:00.000000+00:00")
    make_note("WORK-3", category="ops", created_at="2024-01-03T10:00:00.000000+00:00")
    repo.save_person(Person("P1", "Alice", current_dept="Finance"))
    repo.save_person(Person("P2", "Bob", current_dept="Ops"))
    repo.link_person("WORK-2", "P1")
    repo.link_person("WORK-3", "P1")
    repo.link_person("WORK-3", "P2")


def test_filter_by_category(repo, make_note):
    _filter_fixture(repo, make_note)
    result = repo.filter_work_note_ids(["WORK-1", "WORK-2", "WORK-3"], SearchFilters(category="ops"))
    assert set(result) == {"WORK-1", "WORK-3"}


def test_filter_by_person(repo, make_note):
    _filter_fixture(repo, make_note)
    result = repo.filter_work_note_ids(["WORK-1", "WORK-2", "WORK-3"], SearchFilters(person_id="P1"))
    assert set(result) == {"WORK-2", "WORK-3"}


def test_filter_by_department(repo, make_note):
    _filter_fixture(repo, make_note)
    result = repo.filter_work_note_ids(["WORK-1", "WORK-2", "WORK-3"], SearchFilters(dept_name="Ops"))
    assert set(result) == {"WORK-3"}


def test_filter_by_date_range_inclusive(repo, make_note):
    _filter_fixture(repo, make_note)
    result = repo.filter_work_note_ids(
        ["WORK-1", "WORK-2", "WORK-3"],
        SearchFilters(date_from="2024-01-02", date_to="2024-01-02"),
    )
    assert set(result) == {"WORK-2"}


def test_filter_drops_unknown_ids(repo, make_note):
    _filter_fixture(repo, make_note)
    result = repo.filter_work_note_ids(["WORK-1", "gone"])
    assert set(result) == {"WORK-1"}
    assert result["WORK-1"].category == "ops"


def test_filter_empty_ids(repo):
    assert repo.filter_work_note_ids([]) == {}
