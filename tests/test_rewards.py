import pytest

import rewards
from backend import BackendError, NotFound
from conftest import ANON_KEY, SERVICE_KEY


QUESTIONS = [{"id": f"q{i}"} for i in range(4)]


def test_points_range_from_fifty_to_one_hundred():
    assert rewards.points_for_submission(QUESTIONS, {}) == 50
    assert rewards.points_for_submission(QUESTIONS, {"q0": "a", "q1": "b"}) == 75
    assert rewards.points_for_submission(QUESTIONS, {q["id"]: "x" for q in QUESTIONS}) == 100
    assert rewards.points_for_submission([], {}) == 50


def test_catalogue_is_ordered_and_falls_back_to_samples(store):
    client = store.factory("u", ANON_KEY)
    fallback = rewards.list_rewards(client)
    assert [r["name"] for r in fallback] == ["1GB Internet", "Coffee Mug", "T-Shirt"]

    store.tables["rewards"] = [
        {"id": "r2", "name": "Mug", "points": 750},
        {"id": "r1", "name": "Data", "points": 300},
    ]
    assert [r["id"] for r in rewards.list_rewards(client)] == ["r1", "r2"]

    store.fail("select", BackendError("relation does not exist"), table="rewards")
    assert len(rewards.list_rewards(client)) == 3


def test_stats_default_to_zero_on_failure(store):
    service = store.factory("u", SERVICE_KEY)
    store.add_user_row("u1", points=120, surveys_completed=2)
    assert rewards.get_user_stats(service, "u1") == {"points": 120, "surveys_completed": 2}

    store.fail("select", BackendError("timeout"), table="users")
    assert rewards.get_user_stats(service, "u1") == {"points": 0, "surveys_completed": 0}
    assert rewards.get_user_stats(None, "u1") == {"points": 0, "surveys_completed": 0}


def test_award_points_never_raises(store):
    client = store.factory("u", ANON_KEY, "tok")
    store.add_user_row("u1", points=10)
    assert rewards.award_points(client, "u1", 60) is True
    assert store.tables["users"][0]["points"] == 70

    store.fail("rpc", BackendError("function missing"))
    assert rewards.award_points(client, "u1", 60) is False


def test_claim_refused_when_points_are_short(store):
    service = store.factory("u", SERVICE_KEY)
    store.tables["rewards"] = [{"id": "r1", "name": "T-Shirt", "points": 1000}]
    store.add_user_row("u1", points=400)

    with pytest.raises(rewards.InsufficientPoints) as exc:
        rewards.claim_reward(service, "u1", "r1")

    assert exc.value.needed == 600
    assert store.tables["claimed_rewards"] == []
    assert store.tables["users"][0]["points"] == 400


def test_claim_deducts_points_and_records_processing_claim(store):
    service = store.factory("u", SERVICE_KEY)
    store.tables["rewards"] = [{"id": "r1", "name": "1GB Internet", "points": 500}]
    store.add_user_row("u1", points=650)

    claim = rewards.claim_reward(service, "u1", "r1")

    assert claim["status"] == "processing"
    assert claim["points"] == 500
    assert claim["balance"] == 150
    assert store.tables["users"][0]["points"] == 150
    assert len(store.tables["claimed_rewards"]) == 1


def test_failed_claim_refunds_on_top_of_current_balance(store, monkeypatch):
    service = store.factory("u", SERVICE_KEY)
    store.tables["rewards"] = [{"id": "r1", "name": "1GB Internet", "points": 500}]
    store.add_user_row("u1", points=650)

    def insert_after_award(table, row):
        store.tables["users"][0]["points"] += 80
        raise BackendError("claims table offline")

    monkeypatch.setattr(service, "insert", insert_after_award)

    with pytest.raises(BackendError, match="claims table offline"):
        rewards.claim_reward(service, "u1", "r1")

    assert store.tables["users"][0]["points"] == 730
    assert store.tables["claimed_rewards"] == []


def test_failed_refund_keeps_the_insert_error(store, monkeypatch):
    service = store.factory("u", SERVICE_KEY)
    store.tables["rewards"] = [{"id": "r1", "name": "1GB Internet", "points": 500}]
    store.add_user_row("u1", points=650)
    store.fail("insert", BackendError("claims table offline"), table="claimed_rewards")
    real_update = service.update
    updates = []

    def update_once(table, values, filters):
        updates.append(values)
        if len(updates) > 1:
            raise BackendError("connection reset")
        return real_update(table, values, filters)

    monkeypatch.setattr(service, "update", update_once)

    with pytest.raises(BackendError, match="claims table offline"):
        rewards.claim_reward(service, "u1", "r1")

    assert updates == [{"points": 150}, {"points": 650}]


def test_claim_conflict_when_balance_moves(store, monkeypatch):
    service = store.factory("u", SERVICE_KEY)
    store.tables["rewards"] = [{"id": "r1", "name": "1GB Internet", "points": 500}]
    store.add_user_row("u1", points=650)
    real_select_one = service.select_one

    def stale_read(table, columns="*", filters=None):
        row = real_select_one(table, columns=columns, filters=filters)
        if table == "users":
            store.tables["users"][0]["points"] = 700
        return row

    monkeypatch.setattr(service, "select_one", stale_read)

    with pytest.raises(rewards.ClaimConflict):
        rewards.claim_reward(service, "u1", "r1")

    assert store.tables["users"][0]["points"] == 700
    assert store.tables["claimed_rewards"] == []


def test_claim_unknown_reward(store):
    service = store.factory("u", SERVICE_KEY)
    store.add_user_row("u1", points=650)
    with pytest.raises(NotFound):
        rewards.claim_reward(service, "u1", "nope")


def test_claim_history_flattens_reward_name(store):
    client = store.factory("u", ANON_KEY, "tok")
    store.tables["rewards"] = [{"id": "r1", "name": "Coffee Mug", "points": 750}]
    store.tables["claimed_rewards"] = [
        {"id": "c1", "user_id": "u1", "reward_id": "r1", "points": 750, "claimed_at": "2024-01-01", "status": "delivered"},
        {"id": "c2", "user_id": "u1", "reward_id": "r1", "points": 750, "claimed_at": "2024-03-01", "status": "processing"},
        {"id": "c3", "user_id": "u2", "reward_id": "r1", "points": 750, "claimed_at": "2024-02-01", "status": "processing"},
    ]

    history = rewards.claim_history(client, "u1")

    assert [h["id"] for h in history] == ["c2", "c1"]
    assert history[0]["reward_name"] == "Coffee Mug"
