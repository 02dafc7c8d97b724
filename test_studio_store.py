import uuid

import studio_store


def new_user():
    return f"user-{uuid.uuid4().hex[:8]}"


def test_history_newest_first():
    user = new_user()
    studio_store.add_to_history(user, "data:image/png;base64,AAA", "p1", "Cover", "📸", timestamp=1000)
    studio_store.add_to_history(user, "data:image/png;base64,BBB", "p2", "School", "🏫", timestamp=2000)

    items = studio_store.get_history(user)
    assert [i["prompt"] for i in items] == ["p2", "p1"]
    assert items[0]["style_title"] == "School"
    assert items[0]["emoji"] == "🏫"
    # Listing stays light; the image is fetched per entry
    assert "image_url" not in items[0]
    assert studio_store.get_history_image(user, items[0]["id"]) == "data:image/png;base64,BBB"


def test_history_image_scoped_to_owner():
    alice, bob = new_user(), new_user()
    item_id = studio_store.add_to_history(alice, "data:image/png;base64,AAA", "p", "T", "✨")

    assert studio_store.get_history_image(alice, item_id) == "data:image/png;base64,AAA"
    assert studio_store.get_history_image(bob, item_id) is None
    assert studio_store.get_history_image(alice, "missing") is None


def test_history_is_capped(monkeypatch):
    monkeypatch.setattr(studio_store, "HISTORY_LIMIT", 3)
    user = new_user()
    for ts in range(5):
        studio_store.add_to_history(user, "data:,", f"p{ts}", "T", "✨", timestamp=ts)

    items = studio_store.get_history(user)
    assert [i["prompt"] for i in items] == ["p4", "p3", "p2"]


def test_history_upsert_by_id():
    user = new_user()
    item_id = studio_store.add_to_history(user, "data:,", "first", "T", "✨", item_id="fixed-id", timestamp=1)
    assert item_id == "fixed-id"
    studio_store.add_to_history(user, "data:,", "second", "T", "✨", item_id="fixed-id", timestamp=2)

    items = studio_store.get_history(user)
    assert len(items) == 1
    assert items[0]["prompt"] == "second"


def test_clear_history_only_touches_one_user():
    alice, bob = new_user(), new_user()
    studio_store.add_to_history(alice, "data:,", "a", "T", "✨")
    studio_store.add_to_history(alice, "data:,", "a2", "T", "✨")
    studio_store.add_to_history(bob, "data:,", "b", "T", "✨")

    assert studio_store.clear_history(alice) == 2
    assert studio_store.get_history(alice) == []
    assert len(studio_store.get_history(bob)) == 1


def test_subscription_upsert_keeps_known_ids():
    user = new_user()
    studio_store.set_subscription(user, "dodo", "cus_1", "sub_1", "active", "2026-01-01", "2026-02-01", "prod_pro")
    studio_store.set_subscription(user, "dodo", None, None, "cancelled", None, None, None)

    sub = studio_store.get_subscription(user)
    assert sub["status"] == "cancelled"
    assert sub["customer_id"] == "cus_1"
    assert sub["subscription_id"] == "sub_1"
    assert sub["period_start"] == "2026-01-01"
    assert sub["period_end"] is None
    assert studio_store.get_subscription(new_user()) is None


def test_webhook_recorded_once():
    webhook_id = f"wh_{uuid.uuid4().hex}"
    assert not studio_store.is_webhook_processed(webhook_id)
    assert studio_store.record_webhook(webhook_id, "subscription.active") is True
    assert studio_store.record_webhook(webhook_id, "subscription.active") is False
    assert studio_store.is_webhook_processed(webhook_id)
