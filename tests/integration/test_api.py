"""
API integration tests: status codes, authorization and response shapes
"""

from datetime import timedelta

from activity_engine.core.exceptions import TerminalExternalError, TransientExternalError

SAQ_ANSWER = "There was a fire, so the fox went to find food"


def submit(client, headers, activity_id, answer, **extra):
    body = {"answer": answer}
    body.update(extra)
    return client.post(f"/api/quiz/{activity_id}/submit", json=body, headers=headers)


class TestStatus:
    def test_status_reports_database(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "online"
        assert body["version"] == "1.0.0"
        assert "database" in body

    def test_missing_token_is_401(self, client, student):
        response = client.get(f"/api/students/{student.id}/srs-health")
        assert response.status_code == 401

    def test_garbage_token_is_401(self, client, student):
        response = client.get(
            f"/api/students/{student.id}/srs-health",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401


class TestQuizRoutes:
    def test_graded_submission(self, client, auth_headers, student, mcq):
        response = submit(client, auth_headers(student), mcq.id, "table")

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "graded"
        assert body["attempt"]["status"] == "graded"
        assert body["attempt"]["score"] == 1.0
        assert body["progression"]["xp_delta"] == 2

    def test_resubmission_is_reported_as_duplicate(
        self, client, auth_headers, student, mcq, clock
    ):
        when = clock().isoformat()
        first = submit(client, auth_headers(student), mcq.id, "table", submitted_at=when)
        second = submit(client, auth_headers(student), mcq.id, "table", submitted_at=when)

        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert second.json()["attempt"]["id"] == first.json()["attempt"]["id"]

    def test_pending_submission_is_202_and_reconciles(
        self, client, auth_headers, student, admin, saq, stub_feedback
    ):
        stub_feedback.fail_next(*[TransientExternalError("busy")] * 3)

        response = submit(client, auth_headers(student), saq.id, SAQ_ANSWER)

        assert response.status_code == 202
        attempt_id = response.json()["attempt"]["id"]
        assert response.json()["attempt"]["status"] == "grading_pending"

        forbidden = client.post("/api/quiz/reconcile", headers=auth_headers(student))
        assert forbidden.status_code == 403

        sweep = client.post("/api/quiz/reconcile", headers=auth_headers(admin))
        assert sweep.status_code == 200
        assert sweep.json()["graded"] == 1
        assert sweep.json()["attempt_ids"] == [attempt_id]

        fetched = client.get(f"/api/quiz/attempts/{attempt_id}", headers=auth_headers(student))
        assert fetched.status_code == 200
        assert fetched.json()["status"] == "graded"

    def test_reconcile_graded_attempt_is_409(
        self, client, auth_headers, student, system_user, mcq
    ):
        attempt_id = submit(client, auth_headers(student), mcq.id, "table").json()[
            "attempt"
        ]["id"]
        response = client.post(
            f"/api/quiz/attempts/{attempt_id}/reconcile", headers=auth_headers(system_user)
        )
        assert response.status_code == 409
        assert response.json()["error"] == "already_graded"

    def test_malformed_answer_is_400(self, client, auth_headers, student, mcq):
        response = submit(client, auth_headers(student), mcq.id, ["table", 7])
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_unknown_activity_is_404(self, client, auth_headers, student):
        response = submit(client, auth_headers(student), 4040, "table")
        assert response.status_code == 404
        assert response.json()["error"] == "activity_not_found"

    def test_out_of_order_submission_is_409(self, client, auth_headers, student, mcq, clock):
        submit(client, auth_headers(student), mcq.id, "table")
        earlier = (clock() - timedelta(hours=1)).isoformat()

        response = submit(
            client, auth_headers(student), mcq.id, "table", submitted_at=earlier
        )

        assert response.status_code == 409
        assert response.json()["error"] == "stale_transition"

    def test_rejected_feedback_is_502(
        self, client, auth_headers, student, saq, stub_feedback
    ):
        stub_feedback.fail_next(TerminalExternalError("prompt rejected"))
        response = submit(client, auth_headers(student), saq.id, SAQ_ANSWER)
        assert response.status_code == 502
        assert response.json()["error"] == "external_rejected"

    def test_teacher_cannot_submit(self, client, auth_headers, teacher, mcq):
        response = submit(client, auth_headers(teacher), mcq.id, "table")
        assert response.status_code == 403

    def test_system_submits_on_behalf(self, client, auth_headers, system_user, student, mcq):
        missing = submit(client, auth_headers(system_user), mcq.id, "table")
        assert missing.status_code == 400

        response = submit(
            client, auth_headers(system_user), mcq.id, "table", student_id=student.id
        )
        assert response.status_code == 200
        assert response.json()["attempt"]["student_id"] == student.id

    def test_student_cannot_read_another_students_attempt(
        self, client, auth_headers, student, other_student, mcq
    ):
        attempt_id = submit(client, auth_headers(student), mcq.id, "table").json()[
            "attempt"
        ]["id"]
        response = client.get(
            f"/api/quiz/attempts/{attempt_id}", headers=auth_headers(other_student)
        )
        assert response.status_code == 403


class TestClassroomRoutes:
    def test_code_enrollment_flow(self, client, auth_headers, teacher, student, classroom):
        code = client.post(
            f"/api/classroom/{classroom.id}/generate-code", headers=auth_headers(teacher)
        )
        assert code.status_code == 200

        joined = client.post(
            f"/api/classroom/{classroom.id}/enroll",
            json={"code": code.json()["code"]},
            headers=auth_headers(student),
        )
        assert joined.status_code == 200
        assert joined.json()["active"] is True

        again = client.post(
            f"/api/classroom/{classroom.id}/enroll",
            json={"code": code.json()["code"]},
            headers=auth_headers(student),
        )
        assert again.status_code == 409

        left = client.delete(
            f"/api/classroom/{classroom.id}/unenroll", headers=auth_headers(student)
        )
        assert left.status_code == 200
        assert left.json()["active"] is False

        twice = client.delete(
            f"/api/classroom/{classroom.id}/unenroll", headers=auth_headers(student)
        )
        assert twice.status_code == 404

    def test_wrong_code_is_400(self, client, auth_headers, student, classroom):
        response = client.post(
            f"/api/classroom/{classroom.id}/enroll",
            json={"code": "NOPE99"},
            headers=auth_headers(student),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_code"

    def test_students_cannot_generate_codes(self, client, auth_headers, student, classroom):
        response = client.post(
            f"/api/classroom/{classroom.id}/generate-code", headers=auth_headers(student)
        )
        assert response.status_code == 403

    def test_other_teacher_gets_403(self, client, auth_headers, other_teacher, classroom):
        response = client.get(
            f"/api/classroom/{classroom.id}/analytics", headers=auth_headers(other_teacher)
        )
        assert response.status_code == 403

    def test_rollup(self, client, auth_headers, teacher, enrolled_student, classroom, mcq):
        submit(client, auth_headers(enrolled_student), mcq.id, "table")

        response = client.get(
            f"/api/classroom/{classroom.id}/analytics", headers=auth_headers(teacher)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["student_count"] == 1
        assert body["health_excluded"] == 0
        assert body["students"][0]["student_id"] == enrolled_student.id

    def test_unknown_classroom_is_404(self, client, auth_headers, admin):
        response = client.get("/api/classroom/9999/analytics", headers=auth_headers(admin))
        assert response.status_code == 404


class TestStudentRoutes:
    def test_health_without_reviews_is_no_data(self, client, auth_headers, student):
        response = client.get(
            f"/api/students/{student.id}/srs-health", headers=auth_headers(student)
        )
        assert response.status_code == 200
        assert response.json()["health"] is None
        assert response.json()["status"] == "no_data"

    def test_velocity_and_ledger(self, client, auth_headers, student, mcq):
        submit(client, auth_headers(student), mcq.id, "table")

        velocity = client.get(
            "/api/students/velocity",
            params={"student_id": student.id},
            headers=auth_headers(student),
        )
        assert velocity.status_code == 200
        assert velocity.json()["status"] == "ok"
        assert velocity.json()["graded_in_window"] == 1

        ledger = client.get(f"/api/students/{student.id}/ledger", headers=auth_headers(student))
        assert ledger.status_code == 200
        assert [e["xp_after"] for e in ledger.json()] == [2]

    def test_due_reviews(self, client, auth_headers, student, mcq, clock):
        submit(client, auth_headers(student), mcq.id, "table")
        clock.advance(days=3)

        response = client.get(
            f"/api/students/{student.id}/due-reviews", headers=auth_headers(student)
        )

        assert response.status_code == 200
        assert response.json()["activity_ids"] == [mcq.id]
        assert response.json()["overview"]["due"] == 1

    def test_next_activities_and_assignment_progress(
        self, client, auth_headers, teacher, enrolled_student, classroom, make_activity
    ):
        activities = [make_activity() for _ in range(2)]
        created = client.post(
            "/api/assignments",
            json={
                "classroom_id": classroom.id,
                "title": "Nouns",
                "activity_ids": [a.id for a in activities],
            },
            headers=auth_headers(teacher),
        )
        assert created.status_code == 200
        assert created.json()["activity_ids"] == [a.id for a in activities]

        response = client.get(
            f"/api/students/{enrolled_student.id}/assignments",
            params={"limit": 5},
            headers=auth_headers(enrolled_student),
        )

        assert response.status_code == 200
        body = response.json()
        assert [a["source"] for a in body["next_activities"]] == ["assignment", "assignment"]
        assert body["assignments"][0]["status"] == "not_started"

    def test_teacher_sees_enrolled_students_only(
        self, client, auth_headers, teacher, enrolled_student, other_student
    ):
        ok = client.get(
            f"/api/students/{enrolled_student.id}/srs-health", headers=auth_headers(teacher)
        )
        denied = client.get(
            f"/api/students/{other_student.id}/srs-health", headers=auth_headers(teacher)
        )
        assert ok.status_code == 200
        assert denied.status_code == 403


class TestAssignmentRoutes:
    def test_student_cannot_create(self, client, auth_headers, student, classroom, mcq):
        response = client.post(
            "/api/assignments",
            json={"classroom_id": classroom.id, "title": "Mine", "activity_ids": [mcq.id]},
            headers=auth_headers(student),
        )
        assert response.status_code == 403

    def test_list_for_enrolled_student(
        self, client, auth_headers, teacher, enrolled_student, other_student, classroom, mcq
    ):
        client.post(
            "/api/assignments",
            json={"classroom_id": classroom.id, "title": "Quiz", "activity_ids": [mcq.id]},
            headers=auth_headers(teacher),
        )

        listed = client.get(
            "/api/assignments",
            params={"classroom_id": classroom.id},
            headers=auth_headers(enrolled_student),
        )
        assert listed.status_code == 200
        assert [a["title"] for a in listed.json()] == ["Quiz"]

        outsider = client.get(
            "/api/assignments",
            params={"classroom_id": classroom.id},
            headers=auth_headers(other_student),
        )
        assert outsider.status_code == 403

    def test_empty_activity_list_is_400(self, client, auth_headers, teacher, classroom):
        response = client.post(
            "/api/assignments",
            json={"classroom_id": classroom.id, "title": "Empty", "activity_ids": []},
            headers=auth_headers(teacher),
        )
        assert response.status_code == 400
