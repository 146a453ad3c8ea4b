import uuid
import random
import logging
from functools import wraps

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.security import generate_password_hash, check_password_hash

from examsecure.errors import SessionNotFound, InvalidTransition
from examsecure.protocol import Role, SessionStatus
from examsecure.questions import generate_unique_questions

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)

STAFF = ("proctor", "instructor")
AUTHORS = ("instructor", "admin")
SELF_REGISTER_ROLES = ("student", "proctor", "instructor")


def services():
    return current_app.extensions["examsecure"]


def fail(message, status):
    return jsonify({"success": False, "message": message}), status


# ----------------- AUTH HELPERS -----------------
def login_required(*roles):
    """Resolve the bearer token into ``g.user``; optionally restrict by role."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user_id, err = services()["identity"].user_id_from_auth_header(request.headers)
            if err:
                return fail(err, 401)
            user = services()["storage"].get_user(user_id)
            if not user:
                return fail("User not found", 404)
            if roles and user["role"] not in roles:
                return fail("Access denied", 403)
            g.user = user
            return view(*args, **kwargs)
        return wrapped
    return decorator


def json_body():
    return request.get_json(force=True, silent=True)


# ----------------- API: REGISTER -----------------
@api.route("/api/register", methods=["POST"])
def api_register():
    data = json_body()
    if not data:
        return fail("Expected JSON body.", 400)
    full_name = (data.get("fullName") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    role = (data.get("role") or "student").strip()

    if not full_name or not email or not password:
        return fail("Missing required fields.", 400)
    if role not in SELF_REGISTER_ROLES:
        return fail("Unsupported role.", 400)

    storage = services()["storage"]
    if storage.get_user_by_email(email):
        return fail("Email already registered.", 400)

    user_id = f"{email.split('@')[0]}_{uuid.uuid4().hex[:8]}"
    storage.create_user(user_id, role=role, full_name=full_name, email=email,
                        password_hash=generate_password_hash(password))
    logger.info("Registered %s (%s)", user_id, role)
    return jsonify({"success": True, "message": "Registered successfully", "userId": user_id})


# ----------------- API: LOGIN -----------------
@api.route("/api/login", methods=["POST"])
def api_login():
    data = json_body()
    if not data:
        return fail("Expected JSON body.", 400)
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return fail("Email and password required.", 400)

    row = services()["storage"].get_user_by_email(email)
    if not row or not row["password_hash"] or not check_password_hash(row["password_hash"], password):
        return fail("Invalid credentials.", 401)

    token = services()["identity"].make_token(row["id"], role=row["role"], name=row["full_name"], email=email)
    return jsonify({"success": True, "message": "Login successful", "token": token})


# ----------------- API: ME -----------------
@api.route("/api/me", methods=["GET"])
@login_required()
def api_me():
    user = g.user
    return jsonify({
        "success": True,
        "userId": user["id"],
        "name": user["full_name"],
        "email": user["email"],
        "role": user["role"],
    })


# ----------------- API: ADMIN -----------------
@api.route("/api/admin/stats", methods=["GET"])
@login_required("admin")
def admin_stats():
    return jsonify({"success": True, **services()["storage"].get_system_stats()})


@api.route("/api/admin/users", methods=["GET"])
@login_required("admin")
def admin_users():
    role = request.args.get("role", "").strip()
    users = services()["storage"].get_users_by_role(role) if role else []
    return jsonify({"success": True, "users": users})


# ----------------- API: EXAMS -----------------
@api.route("/api/exams", methods=["POST"])
@login_required(*AUTHORS)
def create_exam():
    data = json_body()
    if not data:
        return fail("Expected JSON body.", 400)
    title = (data.get("title") or "").strip()
    duration = data.get("duration")
    if not title or not isinstance(duration, int) or isinstance(duration, bool) or duration <= 0:
        return fail("title and a positive integer duration (minutes) are required.", 400)

    exam = services()["storage"].create_exam(
        title=title,
        instructor_id=g.user["id"],
        duration=duration,
        description=data.get("description"),
        max_attempts=data.get("maxAttempts", 1),
        shuffle_questions=data.get("shuffleQuestions", True),
        show_results=data.get("showResults", False),
    )
    return jsonify({"success": True, "exam": exam}), 201


@api.route("/api/exams", methods=["GET"])
@login_required("admin", "instructor", "student")
def list_exams():
    storage = services()["storage"]
    if g.user["role"] == "instructor":
        exams = storage.get_exams_by_instructor(g.user["id"])
    else:
        exams = storage.get_active_exams()
    return jsonify({"success": True, "exams": exams, "total": len(exams)})


def _set_exam_status(exam_id, status, message):
    storage = services()["storage"]
    exam = storage.get_exam(exam_id)
    if not exam:
        return fail("Exam not found", 404)
    if g.user["role"] != "admin" and exam["instructor_id"] != g.user["id"]:
        return fail("Access denied", 403)
    storage.update_exam_status(exam_id, status)
    return jsonify({"success": True, "message": message})


@api.route("/api/exams/<exam_id>/start", methods=["POST"])
@login_required(*AUTHORS)
def start_exam(exam_id):
    return _set_exam_status(exam_id, "active", "Exam started successfully")


@api.route("/api/exams/<exam_id>/stop", methods=["POST"])
@login_required(*AUTHORS)
def stop_exam(exam_id):
    return _set_exam_status(exam_id, "completed", "Exam stopped successfully")


# ----------------- API: QUESTIONS -----------------
@api.route("/api/exams/<exam_id>/questions", methods=["POST"])
@login_required(*AUTHORS)
def create_question(exam_id):
    data = json_body()
    if not data:
        return fail("Expected JSON body.", 400)
    storage = services()["storage"]
    if not storage.get_exam(exam_id):
        return fail("Exam not found", 404)

    content = (data.get("content") or "").strip()
    qtype = data.get("type", "multiple_choice")
    difficulty = data.get("difficulty", "medium")
    if not content:
        return fail("content is required.", 400)
    if qtype not in ("multiple_choice", "short_answer", "essay", "code"):
        return fail("Unsupported question type.", 400)
    if difficulty not in ("easy", "medium", "hard"):
        return fail("Unsupported difficulty.", 400)

    question = storage.create_question(
        exam_id, qtype, difficulty, content,
        options=data.get("options"),
        correct_answer=data.get("correctAnswer"),
        points=data.get("points", 1),
    )
    return jsonify({"success": True, "question": question}), 201


@api.route("/api/exams/<exam_id>/questions", methods=["GET"])
@login_required(*AUTHORS, "proctor")
def list_questions(exam_id):
    questions = services()["storage"].get_questions_by_exam(exam_id)
    return jsonify({"success": True, "questions": questions})


# ----------------- API: STUDENT SESSIONS -----------------
@api.route("/api/exams/<exam_id>/paper", methods=["POST"])
@login_required("student")
def request_paper(exam_id):
    storage = services()["storage"]
    exam = storage.get_exam(exam_id)
    if not exam or exam["status"] != "active":
        return fail("Exam not available", 400)

    data = json_body() or {}
    session = storage.create_session(
        exam_id=exam_id,
        student_id=g.user["id"],
        time_remaining=exam["duration"] * 60,
        student_seed=uuid.uuid4().hex,
        device_info=data.get("deviceInfo"),
        ip_address=request.remote_addr,
    )

    questions = [
        {k: v for k, v in q.items() if k != "correct_answer"}
        for q in storage.get_questions_by_exam(exam_id)
    ]
    if exam["shuffle_questions"]:
        random.shuffle(questions)

    logger.info("Session %s started for %s on exam %s", session["session_id"], g.user["id"], exam_id)
    return jsonify({
        "success": True,
        "session": session,
        "questions": questions,
        "exam": {"id": exam["exam_id"], "title": exam["title"], "duration": exam["duration"]},
    })


def grade_answer(question, answer):
    """Returns (is_correct, points). Free-text questions are left ungraded."""
    if question["type"] == "multiple_choice" or (question["type"] == "short_answer" and question["correct_answer"] is not None):
        correct = question["correct_answer"] is not None and \
            str(answer).strip().lower() == str(question["correct_answer"]).strip().lower()
        return correct, question["points"] if correct else 0.0
    return None, 0.0


def letter_grade(percentage):
    for threshold, grade in ((90, "A"), (80, "B"), (70, "C"), (60, "D")):
        if percentage >= threshold:
            return grade
    return "F"


@api.route("/api/sessions/<session_id>/submit", methods=["POST"])
@login_required("student")
def submit_session(session_id):
    storage = services()["storage"]
    session = storage.get_session(session_id)
    if not session or session["student_id"] != g.user["id"]:
        return fail("Unauthorized access to session", 403)
    if SessionStatus(session["status"]).is_terminal:
        return fail(f"Session is already {session['status']}", 409)

    data = json_body() or {}
    auto_submit = bool(data.get("autoSubmit"))
    if session["time_remaining"] is not None and session["time_remaining"] <= 0 and not auto_submit:
        return fail("Time limit exceeded", 400)

    answers = data.get("answers") or []
    if not isinstance(answers, list):
        return fail("answers must be a list.", 400)

    questions = {q["question_id"]: q for q in storage.get_questions_by_exam(session["exam_id"])}
    graded = {}
    for item in answers:
        question = questions.get(item.get("questionId")) if isinstance(item, dict) else None
        # first answer per question counts
        if question is None or question["question_id"] in graded:
            continue
        is_correct, points = grade_answer(question, item.get("answer"))
        graded[question["question_id"]] = {
            "question_id": question["question_id"],
            "answer": item.get("answer"),
            "is_correct": is_correct,
            "points_awarded": points,
            "time_spent": item.get("timeSpent"),
        }

    earned = sum(a["points_awarded"] for a in graded.values())
    total = sum(q["points"] for q in questions.values())
    percentage = round(earned / total * 100, 2) if total > 0 else 0.0
    try:
        submitted, result = storage.complete_session(
            session_id, list(graded.values()), total, earned, percentage, letter_grade(percentage))
    except InvalidTransition as e:
        # terminated by a proctor before the submission landed
        return fail(str(e), 409)

    logger.info("Session %s submitted (%s%%)", session_id, percentage)
    return jsonify({
        "success": True,
        "message": "Exam submitted successfully",
        "answers": submitted,
        "result": result,
    })


@api.route("/api/sessions/<session_id>/results", methods=["GET"])
@login_required()
def session_results(session_id):
    storage = services()["storage"]
    session = storage.get_session(session_id)
    if not session:
        return fail("Session not found", 404)
    if g.user["role"] == "student" and session["student_id"] != g.user["id"]:
        return fail("Unauthorized access", 403)
    return jsonify({
        "success": True,
        "result": storage.get_result_by_session(session_id),
        "answers": storage.get_session_answers(session_id),
        "session": session,
    })


# ----------------- API: PROCTOR -----------------
@api.route("/api/proctor/sessions", methods=["GET"])
@login_required(*STAFF)
def proctor_sessions():
    storage = services()["storage"]
    if g.user["role"] == "instructor":
        sessions = storage.get_live_sessions(instructor_id=g.user["id"])
    else:
        sessions = storage.get_live_sessions()
    return jsonify({"success": True, "sessions": sessions})


def _proctor_status(session_id, status, message):
    try:
        services()["storage"].update_session_status(session_id, status)
    except SessionNotFound:
        return fail("Session not found", 404)
    except InvalidTransition as e:
        return fail(str(e), 409)
    delivered = services()["channel"].notify_session_status(session_id, status)
    logger.info("%s %s set session %s to %s", g.user["role"], g.user["id"], session_id, status.value)
    return jsonify({"success": True, "message": message, "delivered": delivered})


@api.route("/api/proctor/sessions/<session_id>/pause", methods=["POST"])
@login_required(*STAFF)
def pause_session(session_id):
    return _proctor_status(session_id, SessionStatus.PAUSED, "Session paused successfully")


@api.route("/api/proctor/sessions/<session_id>/resume", methods=["POST"])
@login_required(*STAFF)
def resume_session(session_id):
    return _proctor_status(session_id, SessionStatus.ACTIVE, "Session resumed successfully")


@api.route("/api/proctor/sessions/<session_id>/terminate", methods=["POST"])
@login_required(*STAFF)
def terminate_session(session_id):
    return _proctor_status(session_id, SessionStatus.TERMINATED, "Session terminated successfully")


# ----------------- API: LAB QUESTIONS -----------------
@api.route("/api/questions/generate", methods=["POST"])
@login_required(*AUTHORS)
def generate_questions():
    data = json_body()
    subject = (data or {}).get("subject")
    if not subject:
        return fail("Subject is required", 400)

    storage = services()["storage"]
    students = storage.get_users_by_role(Role.STUDENT.value)
    if not students:
        return fail("No students found", 400)

    generated = generate_unique_questions(
        students, subject, max_attempts=current_app.config["QUESTION_MAX_ATTEMPTS"],
        extra_templates=storage.get_question_templates(subject, active_only=True))
    saved = []
    for item in generated:
        row = storage.create_lab_question(
            item["student_id"], subject, item["question_text"], item["parameters"],
            item["difficulty"], item["unique_id"])
        row["student_name"] = item["student_name"]
        row["expected_answer"] = item["expected_answer"]
        saved.append(row)
    return jsonify({"success": True, "questions": saved, "total": len(saved)})


@api.route("/api/questions", methods=["GET"])
@login_required(*AUTHORS)
def list_lab_questions():
    questions = services()["storage"].get_lab_questions(request.args.get("subject"))
    return jsonify({"success": True, "questions": questions})


@api.route("/api/question-templates", methods=["GET"])
@login_required(*AUTHORS)
def list_question_templates():
    templates = services()["storage"].get_question_templates(request.args.get("subject"))
    return jsonify({"success": True, "templates": templates})


@api.route("/api/question-templates", methods=["POST"])
@login_required(*AUTHORS)
def create_question_template():
    data = json_body() or {}
    subject = data.get("subject")
    template = data.get("template")
    difficulty = data.get("difficulty")
    variables = data.get("variables") or {}
    if not subject or not template or not difficulty:
        return fail("Subject, template, and difficulty are required", 400)
    if not isinstance(variables, dict) or not all(isinstance(v, list) for v in variables.values()):
        return fail("Variables must map names to lists of values", 400)

    created = services()["storage"].create_question_template(subject, template, difficulty, variables)
    logger.info("User %s added a %s question template", g.user["id"], subject)
    return jsonify({"success": True, "template": created}), 201


@api.route("/api/question-templates/<template_id>", methods=["DELETE"])
@login_required(*AUTHORS)
def delete_question_template(template_id):
    if not services()["storage"].delete_question_template(template_id):
        return fail("Template not found", 404)
    return "", 204


@api.route("/api/analytics", methods=["GET"])
@login_required(*AUTHORS)
def question_analytics():
    return jsonify({"success": True, **services()["storage"].get_question_analytics()})


# ----------------- HEALTH -----------------
@api.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True, "connections": len(services()["registry"])})
