import pytest

from examsecure.errors import SessionNotFound, InvalidTransition
from examsecure.protocol import SessionStatus


def test_get_user(users):
    assert users.get_user("s1")["role"] == "student"
    assert users.get_user("nobody") is None


def test_status_round_trip(storage, exam_session):
    for status in ("paused", "active", "paused", "active", "completed"):
        assert storage.update_session_status("sess-1", status) == SessionStatus(status)
        assert storage.get_session("sess-1")["status"] == status
    assert storage.get_session("sess-1")["ended_at"]


@pytest.mark.parametrize("terminal", ["completed", "terminated"])
@pytest.mark.parametrize("requested", ["active", "paused", "completed", "terminated"])
def test_terminal_states_accept_nothing(storage, exam_session, terminal, requested):
    storage.update_session_status("sess-1", terminal)
    with pytest.raises(InvalidTransition) as exc:
        storage.update_session_status("sess-1", requested)
    assert exc.value.current == terminal
    assert storage.get_session("sess-1")["status"] == terminal


def test_paused_session_can_be_terminated(storage, exam_session):
    storage.update_session_status("sess-1", "paused")
    storage.update_session_status("sess-1", "terminated")
    assert storage.get_session("sess-1")["status"] == "terminated"


def test_unknown_session(storage):
    with pytest.raises(SessionNotFound):
        storage.update_session_status("missing", "paused")
    assert storage.update_session_time("missing", 10) is False


def test_session_time(storage, exam_session):
    assert storage.update_session_time("sess-1", 120) is True
    assert storage.get_session("sess-1")["time_remaining"] == 120
    storage.update_session_time("sess-1", -5)
    assert storage.get_session("sess-1")["time_remaining"] == 0

    storage.update_session_status("sess-1", "terminated")
    assert storage.update_session_time("sess-1", 50) is False
    assert storage.get_session("sess-1")["time_remaining"] == 0


def test_flagged_activity_for_unknown_session(storage):
    assert storage.add_flagged_activity("missing", {"type": "tab_switch"}) is False
    assert storage.get_flagged_activities("missing") == []


def test_system_stats(storage, exam_session):
    storage.create_session("exam-1", "s2", 60, session_id="sess-2")
    storage.update_session_status("sess-2", "completed")
    storage.add_flagged_activity("sess-1", {"type": "copy", "studentId": "s1"})
    storage.add_flagged_activity("sess-1", {"type": "paste", "studentId": "s1"})

    stats = storage.get_system_stats()
    assert stats["totalUsers"] == 5
    assert stats["completionRate"] == 50.0
    assert stats["flaggedSessions"] == 1


def test_complete_session_stores_answers_and_result(storage, exam_session):
    answers = [{"question_id": "q1", "answer": "4", "is_correct": True, "points_awarded": 1.0}]
    stored, result = storage.complete_session("sess-1", answers, 2.0, 1.0, 50.0, "F")

    assert [a["question_id"] for a in stored] == ["q1"]
    assert result["percentage"] == 50.0
    assert storage.get_session("sess-1")["status"] == "completed"


def test_complete_session_after_termination_writes_nothing(storage, exam_session):
    storage.update_session_status("sess-1", "terminated")
    answers = [{"question_id": "q1", "answer": "4", "is_correct": True, "points_awarded": 1.0}]

    with pytest.raises(InvalidTransition):
        storage.complete_session("sess-1", answers, 1.0, 1.0, 100.0, "A")

    assert storage.get_session_answers("sess-1") == []
    assert storage.get_result_by_session("sess-1") is None
    assert storage.get_session("sess-1")["status"] == "terminated"


def test_complete_unknown_session(storage):
    with pytest.raises(SessionNotFound):
        storage.complete_session("missing", [], 0, 0, 0.0, "F")


def test_question_templates(storage):
    kept = storage.create_question_template("physics", "Drop a {object}", "Easy", {"object": ["ball"]})
    gone = storage.create_question_template("chemistry", "Heat {compound}", "Medium")

    assert kept["variables"] == {"object": ["ball"]}
    assert kept["active"] is True
    assert [t["template_id"] for t in storage.get_question_templates("physics")] == [kept["template_id"]]

    assert storage.delete_question_template(gone["template_id"]) is True
    assert storage.delete_question_template(gone["template_id"]) is False
    assert [t["template_id"] for t in storage.get_question_templates()] == [kept["template_id"]]


def test_question_analytics(storage, users):
    storage.create_lab_question("s1", "physics", "q", {"a": 1}, "Easy", "Q1_0")
    storage.create_lab_question("s2", "physics", "q", {"a": 2}, "Easy", "Q1_1")
    storage.create_lab_question("s1", "chemistry", "q", {}, "Hard", "Q2_0")

    analytics = storage.get_question_analytics()
    assert analytics["totalStudents"] == 2
    assert analytics["totalQuestions"] == 3
    assert analytics["subjectDistribution"] == {"physics": 2, "chemistry": 1}
    assert analytics["difficultyDistribution"] == {"Easy": 2, "Hard": 1}
    assert sorted(q["parameters"]["a"] for q in storage.get_lab_questions("physics")) == [1, 2]
