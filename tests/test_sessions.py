import pytest

from app.api.schemas.legacy_import import (
    Confidence,
    FileAnalysis,
    ImportResult,
    MappingEntry,
    ProgressStatus,
    SessionStatus,
)
from app.domain.legacy import sessions
from app.domain.legacy.errors import (
    InvalidProgressTransition,
    InvalidSessionTransition,
    SessionNotFoundError,
)


def _analysis():
    return [
        FileAnalysis(
            filename="dbo.Partner.csv",
            full_path="export/dbo.Partner.csv",
            row_count=10,
            suggested_target="partners",
            confidence=Confidence.EXACT,
            accepted=True,
        ),
        FileAnalysis(filename="kontakti.csv", full_path="kontakti.csv", row_count=4, suggested_target="contacts"),
        FileAnalysis(filename="prazno.csv", full_path="prazno.csv", is_empty=True, auto_skip=True),
    ]


@pytest.fixture
def session(engine, tenant_id):
    return sessions.create_session(tenant_id=tenant_id, archive_name="export.zip", storage_path="legacy/export.zip")


def test_new_session_is_uploading(session, tenant_id):
    assert session.status == SessionStatus.UPLOADING
    assert session.tenant_id == tenant_id
    assert sessions.get_session(session.id, tenant_id).archive_name == "export.zip"


def test_sessions_are_tenant_scoped(session):
    with pytest.raises(SessionNotFoundError):
        sessions.get_session(session.id, "someone-else")


def test_allowed_lifecycle(session, tenant_id):
    sessions.transition(session.id, tenant_id, SessionStatus.ANALYZING)
    sessions.transition(session.id, tenant_id, SessionStatus.ANALYZING)
    sessions.transition(session.id, tenant_id, SessionStatus.IMPORTING)
    done = sessions.transition(
        session.id,
        tenant_id,
        SessionStatus.DONE,
        import_results={"dbo.Partner.csv": ImportResult(inserted=7, skipped=3)},
    )

    assert done.status == SessionStatus.DONE
    assert done.import_results["dbo.Partner.csv"].inserted == 7


def test_cannot_import_before_analysis(session, tenant_id):
    with pytest.raises(InvalidSessionTransition) as excinfo:
        sessions.transition(session.id, tenant_id, SessionStatus.IMPORTING)
    assert excinfo.value.current == "uploading"


def test_terminal_sessions_stay_terminal(session, tenant_id):
    failed = sessions.fail_session(session.id, tenant_id, "Archive is corrupted")
    assert failed.status == SessionStatus.FAILED
    assert failed.error_message == "Archive is corrupted"

    with pytest.raises(InvalidSessionTransition):
        sessions.transition(session.id, tenant_id, SessionStatus.ANALYZING)


def test_file_decisions(session, tenant_id):
    sessions.save_analysis(session.id, tenant_id, _analysis())

    updated = sessions.update_file_decision(
        session.id, tenant_id, "kontakti.csv", accepted=True, override_target="partners"
    )
    by_name = {item.filename: item for item in updated.analysis}
    assert by_name["kontakti.csv"].accepted is True
    assert by_name["kontakti.csv"].effective_target == "partners"

    mapping = sessions.confirmed_mapping_from_analysis(updated)
    assert mapping == [
        MappingEntry(filename="dbo.Partner.csv", full_path="export/dbo.Partner.csv", target_table="partners"),
        MappingEntry(filename="kontakti.csv", full_path="kontakti.csv", target_table="partners"),
    ]


def test_accepting_without_target_is_rejected(session, tenant_id):
    sessions.save_analysis(session.id, tenant_id, _analysis())

    with pytest.raises(ValueError):
        sessions.update_file_decision(session.id, tenant_id, "prazno.csv", accepted=True)


def test_decision_for_unknown_file(session, tenant_id):
    sessions.save_analysis(session.id, tenant_id, _analysis())

    with pytest.raises(SessionNotFoundError):
        sessions.update_file_decision(session.id, tenant_id, "missing.csv", accepted=False)


def test_progress_moves_forward_only(session, tenant_id):
    mappings = [
        MappingEntry(filename="dbo.Item.csv", target_table="products"),
        MappingEntry(filename="dbo.Partner.csv", target_table="partners"),
    ]
    entries = sessions.init_progress(session.id, tenant_id, mappings)
    assert {entry.status for entry in entries} == {ProgressStatus.PENDING}

    sessions.mark_running(session.id, "dbo.Item.csv")
    sessions.mark_done(session.id, "dbo.Item.csv", ImportResult(inserted=5))
    sessions.mark_error(session.id, "dbo.Partner.csv", "File not found in archive")

    by_name = {entry.filename: entry for entry in sessions.list_progress(session.id, tenant_id)}
    assert by_name["dbo.Item.csv"].status == ProgressStatus.DONE
    assert by_name["dbo.Item.csv"].result.inserted == 5
    assert by_name["dbo.Item.csv"].started_at is not None
    assert by_name["dbo.Partner.csv"].status == ProgressStatus.ERROR
    assert by_name["dbo.Partner.csv"].error_message == "File not found in archive"

    with pytest.raises(InvalidProgressTransition):
        sessions.mark_running(session.id, "dbo.Item.csv")


def test_single_file_progress_restarts_finished_entry(session, tenant_id):
    mapping = MappingEntry(filename="dbo.Item.csv", target_table="products")
    sessions.ensure_progress(session.id, tenant_id, mapping)
    sessions.mark_running(session.id, "dbo.Item.csv")
    sessions.mark_done(session.id, "dbo.Item.csv", ImportResult())

    sessions.ensure_progress(session.id, tenant_id, mapping)

    (entry,) = sessions.list_progress(session.id, tenant_id)
    assert entry.status == ProgressStatus.PENDING
