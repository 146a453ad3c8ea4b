import json

import pytest

from conftest import FakeSocket


def register(client, email, role, password="secret"):
    resp = client.post("/api/register", json={"fullName": email.split("@")[0], "email": email,
                                             "password": password, "role": role})
    assert resp.status_code == 200, resp.get_json()
    user_id = resp.get_json()["userId"]
    resp = client.post("/api/login", json={"email": email, "password": password})
    assert resp.status_code == 200
    return user_id, {"Authorization": "Bearer " + resp.get_json()["token"]}


@pytest.fixture
def people(client):
    return {
        "instructor": register(client, "ins@example.com", "instructor"),
        "proctor": register(client, "pro@example.com", "proctor"),
        "student": register(client, "stu@example.com", "student"),
    }


@pytest.fixture
def live_exam(client, people):
    _, headers = people["instructor"]
    resp = client.post("/api/exams", headers=headers,
                       json={"title": "Physics 101", "duration": 30, "shuffleQuestions": False})
    assert resp.status_code == 201
    exam_id = resp.get_json()["exam"]["exam_id"]
    for content, answer in (("2 + 2?", "4"), ("3 * 3?", "9")):
        resp = client.post(f"/api/exams/{exam_id}/questions", headers=headers,
                           json={"content": content, "options": ["4", "9", "6"], "correctAnswer": answer})
        assert resp.status_code == 201
    assert client.post(f"/api/exams/{exam_id}/start", headers=headers).status_code == 200
    return exam_id


def start_paper(client, people, exam_id):
    _, headers = people["student"]
    resp = client.post(f"/api/exams/{exam_id}/paper", headers=headers, json={})
    assert resp.status_code == 200
    return resp.get_json()


def test_health(client):
    assert client.get("/health").get_json() == {"ok": True, "connections": 0}


def test_login_and_me(client, people):
    user_id, headers = people["student"]
    body = client.get("/api/me", headers=headers).get_json()
    assert body["userId"] == user_id
    assert body["role"] == "student"


def test_bad_credentials(client, people):
    resp = client.post("/api/login", json={"email": "stu@example.com", "password": "wrong"})
    assert resp.status_code == 401
    assert client.get("/api/me").status_code == 401


def test_duplicate_and_invalid_registration(client, people):
    resp = client.post("/api/register", json={"fullName": "x", "email": "stu@example.com", "password": "p"})
    assert resp.status_code == 400
    resp = client.post("/api/register", json={"fullName": "x", "email": "new@example.com",
                                             "password": "p", "role": "admin"})
    assert resp.status_code == 400


def test_students_cannot_author_exams(client, people):
    _, headers = people["student"]
    assert client.post("/api/exams", headers=headers, json={"title": "x", "duration": 5}).status_code == 403


def test_paper_hides_answers_and_sets_timer(client, people, live_exam):
    paper = start_paper(client, people, live_exam)
    assert paper["session"]["status"] == "active"
    assert paper["session"]["time_remaining"] == 30 * 60
    assert [q["content"] for q in paper["questions"]] == ["2 + 2?", "3 * 3?"]
    assert all("correct_answer" not in q for q in paper["questions"])


def test_paper_requires_active_exam(client, people):
    _, ins_headers = people["instructor"]
    exam_id = client.post("/api/exams", headers=ins_headers,
                          json={"title": "Draft", "duration": 10}).get_json()["exam"]["exam_id"]
    _, headers = people["student"]
    assert client.post(f"/api/exams/{exam_id}/paper", headers=headers, json={}).status_code == 400


def test_submit_grades_and_completes(client, people, live_exam):
    paper = start_paper(client, people, live_exam)
    session_id = paper["session"]["session_id"]
    by_content = {q["content"]: q["question_id"] for q in paper["questions"]}
    _, headers = people["student"]

    resp = client.post(f"/api/sessions/{session_id}/submit", headers=headers, json={"answers": [
        {"questionId": by_content["2 + 2?"], "answer": "4", "timeSpent": 12},
        {"questionId": by_content["3 * 3?"], "answer": "6"},
    ]})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["result"]["percentage"] == 50.0
    assert body["result"]["grade"] == "F"

    results = client.get(f"/api/sessions/{session_id}/results", headers=headers).get_json()
    assert results["session"]["status"] == "completed"
    assert len(results["answers"]) == 2

    again = client.post(f"/api/sessions/{session_id}/submit", headers=headers, json={"answers": []})
    assert again.status_code == 409


def test_repeated_answers_count_once(client, people, live_exam):
    paper = start_paper(client, people, live_exam)
    session_id = paper["session"]["session_id"]
    by_content = {q["content"]: q["question_id"] for q in paper["questions"]}
    _, headers = people["student"]

    first = {"questionId": by_content["2 + 2?"], "answer": "4"}
    resp = client.post(f"/api/sessions/{session_id}/submit", headers=headers, json={"answers": [
        first, {"questionId": by_content["2 + 2?"], "answer": "5"}, first, first,
    ]})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["result"]["earned_points"] == 1.0
    assert body["result"]["total_points"] == 2.0
    assert body["result"]["percentage"] == 50.0
    assert [a["answer"] for a in body["answers"]] == ["4"]


def test_submit_after_time_runs_out(client, app, people, live_exam):
    session_id = start_paper(client, people, live_exam)["session"]["session_id"]
    app.extensions["examsecure"]["storage"].update_session_time(session_id, 0)
    _, headers = people["student"]

    resp = client.post(f"/api/sessions/{session_id}/submit", headers=headers, json={"answers": []})
    assert resp.status_code == 400
    resp = client.post(f"/api/sessions/{session_id}/submit", headers=headers,
                       json={"answers": [], "autoSubmit": True})
    assert resp.status_code == 200


def test_other_student_cannot_submit(client, people, live_exam):
    session_id = start_paper(client, people, live_exam)["session"]["session_id"]
    _, other = register(client, "other@example.com", "student")
    resp = client.post(f"/api/sessions/{session_id}/submit", headers=other, json={"answers": []})
    assert resp.status_code == 403


def test_proctor_rest_pause_reaches_student_socket(client, app, people, live_exam):
    session_id = start_paper(client, people, live_exam)["session"]["session_id"]
    student_id, _ = people["student"]
    _, proctor_headers = people["proctor"]

    services = app.extensions["examsecure"]
    ws = FakeSocket()
    services["channel"].handle_raw(ws, json.dumps(
        {"type": "authenticate", "token": services["identity"].make_token(student_id)}))
    services["channel"].handle_raw(ws, json.dumps({"type": "join_session", "sessionId": session_id}))

    live = client.get("/api/proctor/sessions", headers=proctor_headers).get_json()["sessions"]
    assert [s["session_id"] for s in live] == [session_id]

    resp = client.post(f"/api/proctor/sessions/{session_id}/pause", headers=proctor_headers)
    assert resp.get_json()["delivered"] == 1
    assert ws.last() == {"type": "session_paused", "message": "Your exam has been paused by the proctor"}

    resp = client.post(f"/api/proctor/sessions/{session_id}/terminate", headers=proctor_headers)
    assert resp.status_code == 200
    assert ws.last()["type"] == "session_terminated"

    resp = client.post(f"/api/proctor/sessions/{session_id}/resume", headers=proctor_headers)
    assert resp.status_code == 409
    assert client.post("/api/proctor/sessions/missing/pause", headers=proctor_headers).status_code == 404


def test_students_cannot_use_proctor_endpoints(client, people, live_exam):
    session_id = start_paper(client, people, live_exam)["session"]["session_id"]
    _, headers = people["student"]
    assert client.post(f"/api/proctor/sessions/{session_id}/pause", headers=headers).status_code == 403


def test_generate_lab_questions(client, people):
    register(client, "stu2@example.com", "student")
    _, headers = people["instructor"]

    resp = client.post("/api/questions/generate", headers=headers, json={"subject": "chemistry"})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["total"] == 2
    assert len({q["student_id"] for q in body["questions"]}) == 2
    first, second = body["questions"]
    assert (first["question_text"], first["parameters"]) != (second["question_text"], second["parameters"])

    assert client.post("/api/questions/generate", headers=headers, json={}).status_code == 400


def test_question_templates_crud(client, people):
    _, headers = people["instructor"]
    resp = client.post("/api/question-templates", headers=headers, json={
        "subject": "physics", "template": "Drop a {object} from {height} m",
        "difficulty": "Easy", "variables": {"object": ["ball"], "height": [5]}})
    assert resp.status_code == 201
    template = resp.get_json()["template"]
    assert template["active"] is True

    listed = client.get("/api/question-templates", headers=headers).get_json()["templates"]
    assert [t["template_id"] for t in listed] == [template["template_id"]]

    resp = client.delete(f"/api/question-templates/{template['template_id']}", headers=headers)
    assert resp.status_code == 204
    resp = client.delete(f"/api/question-templates/{template['template_id']}", headers=headers)
    assert resp.status_code == 404


def test_question_template_validation(client, people):
    _, headers = people["instructor"]
    resp = client.post("/api/question-templates", headers=headers, json={"subject": "physics", "template": "x"})
    assert resp.status_code == 400
    resp = client.post("/api/question-templates", headers=headers, json={
        "subject": "physics", "template": "x", "difficulty": "Easy", "variables": {"a": 1}})
    assert resp.status_code == 400

    _, student = people["student"]
    assert client.get("/api/question-templates", headers=student).status_code == 403


def test_stored_templates_join_generation(client, people, monkeypatch):
    from examsecure import questions
    monkeypatch.setitem(questions.QUESTION_TEMPLATES, "optics", ["Built-in {lens}"])
    monkeypatch.setitem(questions.VARIABLE_POOLS, "optics", {"lens": ["convex"]})
    _, headers = people["instructor"]
    register(client, "stu2@example.com", "student")
    client.post("/api/question-templates", headers=headers, json={
        "subject": "optics", "template": "Stored {lens}", "difficulty": "Easy",
        "variables": {"lens": ["concave"]}})

    body = client.post("/api/questions/generate", headers=headers, json={"subject": "optics"}).get_json()

    assert sorted(q["question_text"] for q in body["questions"]) == ["Built-in convex", "Stored concave"]


def test_lab_question_list_and_analytics(client, people):
    _, headers = people["instructor"]
    generated = client.post("/api/questions/generate", headers=headers, json={"subject": "mathematics"})
    assert generated.get_json()["total"] == 1

    listed = client.get("/api/questions", headers=headers).get_json()["questions"]
    assert [q["subject"] for q in listed] == ["mathematics"]

    analytics = client.get("/api/analytics", headers=headers).get_json()
    assert analytics["totalStudents"] == 1
    assert analytics["totalQuestions"] == 1
    assert analytics["subjectDistribution"] == {"mathematics": 1}
    assert sum(analytics["difficultyDistribution"].values()) == 1
