import pytest

from backend import BackendError
from conftest import FakeClient


QUESTIONS = [
    {"id": "q1", "title": "How many donkeys?", "type": "number", "required": True, "isPublic": True},
    {"id": "q2", "title": "Location", "type": "location", "required": True, "isPublic": True},
]


def _inserted(store, table):
    return [c for c in store.called("insert") if c[1] == table]


# --- authentication comes first ---

@pytest.mark.parametrize(
    "method, path",
    [
        ("post", "/api/surveys"),
        ("post", "/api/surveys/s1"),
        ("get", "/api/user/stats"),
        ("post", "/api/users/ensure"),
        ("post", "/api/users/direct-create"),
        ("get", "/api/admin/surveys"),
        ("patch", "/api/admin/surveys"),
        ("get", "/api/admin/users"),
        ("patch", "/api/admin/users"),
        ("post", "/api/rewards/r1/claim"),
        ("get", "/api/rewards/history"),
    ],
)
def test_anonymous_callers_get_401_even_with_a_bad_body(client, method, path):
    resp = getattr(client, method)(path, data="not json", content_type="text/plain")
    assert resp.status_code == 401
    assert "error" in resp.get_json()


def test_admin_endpoints_refuse_non_admins(client, store, login):
    store.add_user_row("u1", role="data_collector")
    login("u1")
    assert client.get("/api/admin/surveys").status_code == 403
    assert client.patch("/api/admin/surveys", json={"id": "s1", "status": "approved"}).status_code == 403
    assert client.get("/api/admin/users").status_code == 403


def test_admin_role_lookup_failure_is_a_refusal(client, store, login):
    store.add_user_row("u1", role="admin")
    store.fail("select", BackendError("permission denied"), table="users")
    login("u1")
    assert client.get("/api/admin/users").status_code == 403


def test_admin_lists_pending_surveys_with_creator(client, store, login):
    store.add_user_row("admin1", role="admin")
    store.add_user_row("u1", name="Amina", email="amina@example.org")
    store.add_survey(created_by="u1", status="pending", title="Pending one")
    store.add_survey(created_by="u1", status="approved", title="Live one")
    login("admin1")

    resp = client.get("/api/admin/surveys")

    assert resp.status_code == 200
    (row,) = resp.get_json()
    assert row["title"] == "Pending one"
    assert row["users"] == {"name": "Amina", "email": "amina@example.org"}


def test_admin_review_stamps_approver(client, store, login):
    store.add_user_row("admin1", role="admin")
    survey = store.add_survey(status="pending", is_public=False)
    login("admin1")

    resp = client.patch("/api/admin/surveys", json={"id": survey["id"], "status": "approved", "is_public": True})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "approved"
    assert body["approved_by"] == "admin1"
    assert body["approved_at"]
    assert body["is_public"] is True


def test_admin_review_rejects_unknown_status(client, store, login):
    store.add_user_row("admin1", role="admin")
    login("admin1")
    resp = client.patch("/api/admin/users", json={"id": "u1", "status": "banned"})
    assert resp.status_code == 400


def test_admin_review_missing_survey_is_404(client, store, login):
    store.add_user_row("admin1", role="admin")
    login("admin1")
    resp = client.patch("/api/admin/surveys", json={"id": "missing", "status": "rejected"})
    assert resp.status_code == 404


# --- surveys ---

def test_public_listing_only_has_approved_public_surveys(client, store):
    store.add_survey(status="approved", is_public=True, title="A")
    store.add_survey(status="approved", is_public=False, title="B")
    store.add_survey(status="pending", is_public=True, title="C")
    resp = client.get("/api/surveys")
    assert [s["title"] for s in resp.get_json()] == ["A"]


def test_create_survey_validates_after_auth(client, store, login):
    store.add_user_row("u1")
    login("u1")
    resp = client.post("/api/surveys", json={"title": "", "questions": []})
    assert resp.status_code == 400
    assert resp.get_json()["field"] == "title"
    assert not _inserted(store, "surveys")


@pytest.mark.parametrize(
    "body",
    [
        {"title": "Donkeys"},
        {"title": "Donkeys", "questions": "q1,q2"},
        {"title": "Donkeys", "questions": {"id": "q1"}},
    ],
)
def test_create_survey_needs_a_question_list(client, store, login, body):
    store.add_user_row("u1")
    login("u1")

    resp = client.post("/api/surveys", json=body)

    assert resp.status_code == 400
    assert resp.get_json()["field"] == "questions"
    assert store.tables["surveys"] == []
    assert not _inserted(store, "surveys")


def test_create_survey_is_pending_regardless_of_input(client, store, login):
    store.add_user_row("u1")
    login("u1")

    resp = client.post("/api/surveys", json={"title": "Donkeys", "questions": QUESTIONS, "status": "approved"})

    assert resp.status_code == 201
    assert resp.get_json()["status"] == "pending"
    assert resp.get_json()["created_by"] == "u1"


def test_create_survey_without_user_row_reports_provisioning(client, store, login):
    login("u1")
    resp = client.post("/api/surveys", json={"title": "Donkeys", "questions": QUESTIONS})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "User record not found. Please contact your administrator."


def test_get_survey_404(client):
    resp = client.get("/api/surveys/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Survey not found"}


def test_submit_response_awards_points(client, store, login):
    store.add_user_row("u1", points=0)
    survey = store.add_survey(status="approved", questions=QUESTIONS)
    login("u1")

    resp = client.post(
        f"/api/surveys/{survey['id']}",
        json={
            "responses": {"q1": "4", "q2": "-3.39,38.56"},
            "location": {"latitude": -3.39, "longitude": 38.56},
        },
    )

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["points_earned"] == 100
    assert body["location"] == {"latitude": -3.39, "longitude": 38.56}
    assert store.tables["users"][0]["points"] == body["points_earned"]


def test_submit_response_reports_missing_answers(client, store, login):
    survey = store.add_survey(status="approved", questions=QUESTIONS)
    login("u1")
    resp = client.post(f"/api/surveys/{survey['id']}", json={"responses": {}})
    assert resp.status_code == 400
    assert set(resp.get_json()["errors"]) == {"q1", "q2"}


def test_database_errors_pass_the_message_through(client, store):
    store.fail("select", BackendError("relation \"surveys\" does not exist", status=404, code="42P01"), table="surveys")
    resp = client.get("/api/surveys")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "relation \"surveys\" does not exist"}


# --- stats ---

def test_stats_for_session(client, store, login):
    store.add_user_row("u1", points=250, surveys_completed=3)
    login("u1")
    assert client.get("/api/user/stats").get_json() == {"points": 250, "surveys_completed": 3}


def test_stats_default_to_zero_when_query_fails(client, store, login):
    store.add_user_row("u1", points=250)
    store.fail("select", BackendError("boom"), table="users")
    login("u1")
    resp = client.get("/api/user/stats")
    assert resp.status_code == 200
    assert resp.get_json() == {"points": 0, "surveys_completed": 0}


def test_stats_without_anon_config_is_500(client, flask_app, login):
    login("u1")
    flask_app.config["SUPABASE_ANON_KEY"] = ""
    resp = client.get("/api/user/stats")
    assert resp.status_code == 500
    assert "not configured" in resp.get_json()["error"]


# --- provisioning endpoints ---

def test_ensure_creates_then_reports_existing(client, store, login):
    login("u1", name="Amina")
    first = client.post("/api/users/ensure")
    second = client.post("/api/users/ensure")
    assert first.get_json()["created"] is True
    assert second.get_json()["exists"] is True
    assert store.tables["users"][0]["name"] == "Amina"
    assert store.tables["users"][0]["role"] == "data_collector"


def test_ensure_without_service_key_is_explicit_500(client, flask_app, login):
    login("u1")
    flask_app.config["SUPABASE_SERVICE_KEY"] = ""
    resp = client.post("/api/users/ensure")
    assert resp.status_code == 500
    assert resp.get_json() == {
        "error": "Service role key not available. Cannot bypass RLS policies.",
        "success": False,
    }


def test_direct_create_only_for_own_account(client, store, login):
    login("u1")
    other = client.post("/api/users/direct-create", json={"userId": "u2", "email": "x@example.org"})
    assert other.status_code == 403

    own = client.post(
        "/api/users/direct-create",
        json={"userId": "u1", "email": "u1@example.org", "name": "Given Name", "role": "admin"},
    )
    assert own.status_code == 200
    assert own.get_json()["success"] is True
    assert store.tables["users"][0]["role"] == "data_collector"
    assert store.tables["users"][0]["name"] == "Given Name"


# --- map / rewards ---

def test_map_points_endpoint(client, store):
    survey = store.add_survey(status="approved", is_public=True, questions=QUESTIONS)
    store.tables["survey_responses"].append(
        {"id": "r1", "survey_id": survey["id"], "responses": {"q1": "2"}, "location": {"latitude": -3.3, "longitude": 38.5}}
    )
    (point,) = client.get("/api/map/points").get_json()
    assert point["answers"] == [{"question": "How many donkeys?", "answer": "2"}]


def test_rewards_catalogue_is_public(client):
    resp = client.get("/api/rewards")
    assert resp.status_code == 200
    assert len(resp.get_json()) == 3


def test_claim_with_insufficient_points(client, store, login):
    store.add_user_row("u1", points=100)
    store.tables["rewards"] = [{"id": "r1", "name": "T-Shirt", "points": 1000}]
    login("u1")
    resp = client.post("/api/rewards/r1/claim")
    assert resp.status_code == 400
    assert resp.get_json()["needed"] == 900


def test_claim_success(client, store, login):
    store.add_user_row("u1", points=1200)
    store.tables["rewards"] = [{"id": "r1", "name": "T-Shirt", "points": 1000}]
    login("u1")
    resp = client.post("/api/rewards/r1/claim")
    assert resp.status_code == 201
    assert resp.get_json()["balance"] == 200


def test_claim_conflict_when_balance_moves(client, store, login, monkeypatch):
    store.add_user_row("u1", points=1200)
    store.tables["rewards"] = [{"id": "r1", "name": "T-Shirt", "points": 1000}]
    login("u1")
    real_update = FakeClient.update

    def racing_update(self, table, values, filters):
        store.tables["users"][0]["points"] = 1150
        return real_update(self, table, values, filters)

    monkeypatch.setattr(FakeClient, "update", racing_update)

    resp = client.post("/api/rewards/r1/claim")

    assert resp.status_code == 409
    assert "balance changed" in resp.get_json()["error"]
    assert store.tables["claimed_rewards"] == []
    assert store.tables["users"][0]["points"] == 1150


# --- bearer tokens and fallbacks ---

def test_bearer_token_authenticates_api_calls(client, store):
    store.add_user_row("u1", points=5)
    user = store.add_auth_user("u1", "u1@example.org")
    token = store.issue_session(user)["access_token"]

    ok = client.get("/api/user/stats", headers={"Authorization": f"Bearer {token}"})
    bad = client.get("/api/user/stats", headers={"Authorization": "Bearer forged"})

    assert ok.status_code == 200 and ok.get_json()["points"] == 5
    assert bad.status_code == 401


def test_unknown_api_routes_answer_json(client):
    resp = client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Not found"
    resp = client.delete("/api/surveys")
    assert resp.status_code == 405
    assert resp.get_json()["error"] == "Method not allowed"
