import json
import uuid
import logging
import sqlite3
from datetime import datetime, timezone

from examsecure.errors import SessionNotFound, InvalidTransition
from examsecure.protocol import SessionStatus

logger = logging.getLogger(__name__)

# allowed moves for the persisted session status; terminal states have none
TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.ACTIVE, SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.TERMINATED},
    SessionStatus.PAUSED: {SessionStatus.PAUSED, SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.TERMINATED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.TERMINATED: set(),
}


def utc_now():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id():
    return str(uuid.uuid4())


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT UNIQUE NOT NULL,
        full_name TEXT,
        email TEXT UNIQUE,
        role TEXT NOT NULL DEFAULT 'student',
        password_hash TEXT,
        created_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exams (
        exam_id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        instructor_id TEXT NOT NULL,
        duration INTEGER NOT NULL,
        status TEXT DEFAULT 'draft',
        max_attempts INTEGER DEFAULT 1,
        shuffle_questions INTEGER DEFAULT 1,
        show_results INTEGER DEFAULT 0,
        created_at TEXT,
        updated_at TEXT,
        FOREIGN KEY (instructor_id) REFERENCES users(user_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_questions (
        question_id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL,
        type TEXT NOT NULL,
        difficulty TEXT NOT NULL,
        content TEXT NOT NULL,
        options TEXT,
        correct_answer TEXT,
        points REAL DEFAULT 1,
        created_at TEXT,
        FOREIGN KEY (exam_id) REFERENCES exams(exam_id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        status TEXT DEFAULT 'active',
        started_at TEXT,
        ended_at TEXT,
        time_remaining INTEGER,
        student_seed TEXT,
        device_info TEXT,
        ip_address TEXT,
        created_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS flagged_activities (
        activity_id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        activity_type TEXT NOT NULL,
        data TEXT,
        student_id TEXT,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_answers (
        answer_id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        question_id TEXT NOT NULL,
        answer TEXT,
        is_correct INTEGER,
        points_awarded REAL,
        time_spent INTEGER,
        answered_at TEXT,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_results (
        result_id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        total_points REAL DEFAULT 0.0,
        earned_points REAL DEFAULT 0.0,
        percentage REAL DEFAULT 0.0,
        grade TEXT,
        created_at TEXT,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS lab_questions (
        question_id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        subject TEXT NOT NULL,
        question_text TEXT NOT NULL,
        parameters TEXT,
        difficulty TEXT NOT NULL,
        unique_id TEXT NOT NULL,
        created_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS question_templates (
        template_id TEXT PRIMARY KEY,
        subject TEXT NOT NULL,
        template TEXT NOT NULL,
        variables TEXT,
        difficulty TEXT NOT NULL,
        active INTEGER DEFAULT 1,
        created_at TEXT
    );
    """,
]


def _loads(value, default=None):
    if value is None:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


class Storage:
    """sqlite-backed store for users, exams and exam sessions.

    Each call opens its own connection, so one instance can be shared by the
    request threads and the WebSocket connection threads.
    """

    def __init__(self, db_path):
        self.db_path = str(db_path)

    # ----------------- DATABASE -----------------
    def get_db_conn(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_db(self):
        conn = self.get_db_conn()
        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()

    def _fetchone(self, query, params=()):
        conn = self.get_db_conn()
        try:
            row = conn.execute(query, params).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def _fetchall(self, query, params=()):
        conn = self.get_db_conn()
        try:
            return [dict(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def _execute(self, query, params=()):
        conn = self.get_db_conn()
        try:
            cur = conn.execute(query, params)
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    # ----------------- USERS -----------------
    def create_user(self, user_id, role="student", full_name=None, email=None, password_hash=None):
        self._execute("""
            INSERT INTO users (user_id, full_name, email, role, password_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (user_id, full_name, email, role, password_hash, utc_now()))
        return self.get_user(user_id)

    def get_user(self, user_id):
        return self._fetchone("""
            SELECT user_id AS id, full_name, email, role, created_at
            FROM users WHERE user_id = ?
        """, (user_id,))

    def get_user_by_email(self, email):
        return self._fetchone("""
            SELECT user_id AS id, full_name, email, role, password_hash
            FROM users WHERE email = ?
        """, (email,))

    def get_users_by_role(self, role):
        return self._fetchall("""
            SELECT user_id AS id, full_name, email, role, created_at
            FROM users WHERE role = ? ORDER BY id
        """, (role,))

    # ----------------- EXAMS -----------------
    def create_exam(self, title, instructor_id, duration, description=None,
                    max_attempts=1, shuffle_questions=True, show_results=False):
        exam_id = new_id()
        now = utc_now()
        self._execute("""
            INSERT INTO exams (exam_id, title, description, instructor_id, duration, status,
                               max_attempts, shuffle_questions, show_results, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'draft', ?, ?, ?, ?, ?)
        """, (exam_id, title, description, instructor_id, int(duration), int(max_attempts),
              int(bool(shuffle_questions)), int(bool(show_results)), now, now))
        return self.get_exam(exam_id)

    def get_exam(self, exam_id):
        exam = self._fetchone("SELECT * FROM exams WHERE exam_id = ?", (exam_id,))
        if exam:
            exam["shuffle_questions"] = bool(exam["shuffle_questions"])
            exam["show_results"] = bool(exam["show_results"])
        return exam

    def get_exams_by_instructor(self, instructor_id):
        return self._fetchall("""
            SELECT * FROM exams WHERE instructor_id = ? ORDER BY created_at DESC
        """, (instructor_id,))

    def get_active_exams(self):
        return self._fetchall("SELECT * FROM exams WHERE status = 'active' ORDER BY created_at")

    def update_exam_status(self, exam_id, status):
        return self._execute("""
            UPDATE exams SET status = ?, updated_at = ? WHERE exam_id = ?
        """, (status, utc_now(), exam_id)) > 0

    # ----------------- QUESTIONS -----------------
    def create_question(self, exam_id, type, difficulty, content, options=None,
                        correct_answer=None, points=1):
        question_id = new_id()
        self._execute("""
            INSERT INTO exam_questions (question_id, exam_id, type, difficulty, content,
                                        options, correct_answer, points, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (question_id, exam_id, type, difficulty, content,
              json.dumps(options) if options is not None else None,
              None if correct_answer is None else str(correct_answer),
              float(points), utc_now()))
        return self._question(self._fetchone(
            "SELECT * FROM exam_questions WHERE question_id = ?", (question_id,)))

    def get_questions_by_exam(self, exam_id):
        rows = self._fetchall("""
            SELECT * FROM exam_questions WHERE exam_id = ? ORDER BY created_at, rowid
        """, (exam_id,))
        return [self._question(row) for row in rows]

    @staticmethod
    def _question(row):
        row["options"] = _loads(row["options"])
        return row

    # ----------------- SESSIONS -----------------
    def create_session(self, exam_id, student_id, time_remaining, session_id=None,
                       student_seed=None, device_info=None, ip_address=None):
        session_id = session_id or new_id()
        now = utc_now()
        self._execute("""
            INSERT INTO sessions (session_id, exam_id, student_id, status, started_at,
                                  time_remaining, student_seed, device_info, ip_address, created_at)
            VALUES (?, ?, ?, 'active', ?, ?, ?, ?, ?, ?)
        """, (session_id, exam_id, student_id, now, time_remaining, student_seed,
              json.dumps(device_info) if device_info is not None else None, ip_address, now))
        return self.get_session(session_id)

    def get_session(self, session_id):
        session = self._fetchone("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
        if not session:
            return None
        session["device_info"] = _loads(session["device_info"])
        session["flagged_activities"] = self.get_flagged_activities(session_id)
        return session

    def get_live_sessions(self, instructor_id=None):
        """Sessions that are still running, optionally only for one instructor's exams."""
        query = """
            SELECT s.session_id, s.exam_id, s.student_id, s.status, s.started_at, s.time_remaining,
                   (SELECT COUNT(*) FROM flagged_activities f WHERE f.session_id = s.session_id) AS flagged_count
            FROM sessions s JOIN exams e ON s.exam_id = e.exam_id
            WHERE s.status IN ('active', 'paused')
        """
        params = ()
        if instructor_id is not None:
            query += " AND e.instructor_id = ?"
            params = (instructor_id,)
        return self._fetchall(query + " ORDER BY s.started_at", params)

    def update_session_status(self, session_id, status):
        """Move a session to ``status``.

        Raises SessionNotFound for an unknown id and InvalidTransition when the
        session is already completed or terminated.
        """
        status = SessionStatus(status)
        sources = [s.value for s, targets in TRANSITIONS.items() if status in targets]
        ended_at = utc_now() if status.is_terminal else None

        conn = self.get_db_conn()
        try:
            cur = conn.execute("""
                UPDATE sessions SET status = ?, ended_at = COALESCE(?, ended_at)
                WHERE session_id = ? AND status IN ({})
            """.format(",".join("?" * len(sources))),
                (status.value, ended_at, session_id, *sources))
            conn.commit()
            if cur.rowcount:
                return status
            row = conn.execute("SELECT status FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            raise SessionNotFound(session_id)
        raise InvalidTransition(session_id, row["status"])

    def update_session_time(self, session_id, time_remaining):
        """Persist the client-reported countdown. Terminal sessions keep their value."""
        seconds = max(0, int(time_remaining))
        return self._execute("""
            UPDATE sessions SET time_remaining = ?
            WHERE session_id = ? AND status IN ('active', 'paused')
        """, (seconds, session_id)) > 0

    def add_flagged_activity(self, session_id, activity):
        """Append to the session's integrity log. Returns False for an unknown session."""
        return self._execute("""
            INSERT INTO flagged_activities (session_id, activity_type, data, student_id, timestamp)
            SELECT ?, ?, ?, ?, ?
            WHERE EXISTS (SELECT 1 FROM sessions WHERE session_id = ?)
        """, (session_id, activity.get("type") or "unknown",
              json.dumps(activity.get("data")), activity.get("studentId"),
              activity.get("timestamp") or utc_now(), session_id)) > 0

    def get_flagged_activities(self, session_id):
        rows = self._fetchall("""
            SELECT activity_type, data, student_id, timestamp
            FROM flagged_activities WHERE session_id = ? ORDER BY activity_id
        """, (session_id,))
        return [{
            "type": row["activity_type"],
            "data": _loads(row["data"]),
            "timestamp": row["timestamp"],
            "studentId": row["student_id"],
        } for row in rows]

    # ----------------- ANSWERS & RESULTS -----------------
    def get_session_answers(self, session_id):
        return self._fetchall("""
            SELECT * FROM exam_answers WHERE session_id = ? ORDER BY answered_at, rowid
        """, (session_id,))

    def complete_session(self, session_id, answers, total_points, earned_points, percentage, grade):
        """Store graded answers and the result, and mark the session completed.

        All in one transaction: if the session already left active/paused,
        nothing is written and InvalidTransition is raised.
        """
        now = utc_now()
        conn = self.get_db_conn()
        try:
            cur = conn.execute("""
                UPDATE sessions SET status = 'completed', ended_at = ?
                WHERE session_id = ? AND status IN ('active', 'paused')
            """, (now, session_id))
            if not cur.rowcount:
                conn.rollback()
                row = conn.execute("SELECT status FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
                if row is None:
                    raise SessionNotFound(session_id)
                raise InvalidTransition(session_id, row["status"])

            for answer in answers:
                is_correct = answer.get("is_correct")
                conn.execute("""
                    INSERT INTO exam_answers (answer_id, session_id, question_id, answer, is_correct,
                                              points_awarded, time_spent, answered_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (new_id(), session_id, answer["question_id"],
                      None if answer.get("answer") is None else str(answer["answer"]),
                      None if is_correct is None else int(is_correct),
                      answer.get("points_awarded"), answer.get("time_spent"), now))
            conn.execute("""
                INSERT INTO exam_results (result_id, session_id, total_points, earned_points,
                                          percentage, grade, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (new_id(), session_id, total_points, earned_points, percentage, grade, now))
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()
        return self.get_session_answers(session_id), self.get_result_by_session(session_id)

    def get_result_by_session(self, session_id):
        return self._fetchone("SELECT * FROM exam_results WHERE session_id = ?", (session_id,))

    # ----------------- LAB QUESTIONS -----------------
    def create_lab_question(self, student_id, subject, question_text, parameters, difficulty, unique_id):
        question_id = new_id()
        self._execute("""
            INSERT INTO lab_questions (question_id, student_id, subject, question_text,
                                       parameters, difficulty, unique_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (question_id, student_id, subject, question_text, json.dumps(parameters),
              difficulty, unique_id, utc_now()))
        row = self._fetchone("SELECT * FROM lab_questions WHERE question_id = ?", (question_id,))
        row["parameters"] = _loads(row["parameters"], {})
        return row

    def get_lab_questions(self, subject=None):
        query = "SELECT * FROM lab_questions"
        params = ()
        if subject:
            query += " WHERE subject = ?"
            params = (subject,)
        rows = self._fetchall(query + " ORDER BY created_at DESC", params)
        for row in rows:
            row["parameters"] = _loads(row["parameters"], {})
        return rows

    # ----------------- QUESTION TEMPLATES -----------------
    def _template(self, row):
        row["variables"] = _loads(row["variables"], {})
        row["active"] = bool(row["active"])
        return row

    def create_question_template(self, subject, template, difficulty, variables=None, active=True):
        template_id = new_id()
        self._execute("""
            INSERT INTO question_templates (template_id, subject, template, variables,
                                            difficulty, active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (template_id, subject, template, json.dumps(variables or {}), difficulty,
              int(bool(active)), utc_now()))
        return self._template(self._fetchone(
            "SELECT * FROM question_templates WHERE template_id = ?", (template_id,)))

    def get_question_templates(self, subject=None, active_only=False):
        query = "SELECT * FROM question_templates WHERE 1 = 1"
        params = []
        if subject:
            query += " AND subject = ?"
            params.append(subject)
        if active_only:
            query += " AND active = 1"
        rows = self._fetchall(query + " ORDER BY created_at", params)
        return [self._template(row) for row in rows]

    def delete_question_template(self, template_id):
        return self._execute("DELETE FROM question_templates WHERE template_id = ?", (template_id,)) > 0

    # ----------------- ANALYTICS -----------------
    def get_system_stats(self):
        conn = self.get_db_conn()
        try:
            total_users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            active_exams = conn.execute("SELECT COUNT(*) FROM exams WHERE status = 'active'").fetchone()[0]
            completed = conn.execute("SELECT COUNT(*) FROM sessions WHERE status = 'completed'").fetchone()[0]
            total_sessions = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
            flagged = conn.execute("SELECT COUNT(DISTINCT session_id) FROM flagged_activities").fetchone()[0]
        finally:
            conn.close()

        completion_rate = (completed / total_sessions * 100) if total_sessions > 0 else 0.0
        return {
            "totalUsers": total_users,
            "activeExams": active_exams,
            "completionRate": round(completion_rate, 2),
            "flaggedSessions": flagged,
        }

    def get_question_analytics(self):
        """Lab question counts per subject and per difficulty."""
        conn = self.get_db_conn()
        try:
            total_students = conn.execute("SELECT COUNT(*) FROM users WHERE role = 'student'").fetchone()[0]
            total_questions = conn.execute("SELECT COUNT(*) FROM lab_questions").fetchone()[0]
            subjects = conn.execute(
                "SELECT subject, COUNT(*) FROM lab_questions GROUP BY subject").fetchall()
            difficulties = conn.execute(
                "SELECT difficulty, COUNT(*) FROM lab_questions GROUP BY difficulty").fetchall()
        finally:
            conn.close()

        return {
            "totalStudents": total_students,
            "totalQuestions": total_questions,
            "subjectDistribution": {row[0]: row[1] for row in subjects},
            "difficultyDistribution": {row[0]: row[1] for row in difficulties},
        }
